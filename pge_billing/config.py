"""Configuration management for pge-billing.

This module centralizes file-system paths, environment variables, logging and
the JSON tunables used by the retrieval-and-extraction pipeline.

Configuration sources
---------------------
* ``.env``: portal URL, look-back window, account id, download directory and
  base64-encoded credentials. Written back by the CLI when credentials are
  passed on the command line so later runs need no arguments.
* ``config/config.json``: portal selectors, waits, retry policy, rasterizer and
  OCR options, and the field extraction rules table.

Everything is folded once into an immutable :class:`Settings` value by
:func:`load_settings`. Components receive that value at construction and never
read the process environment themselves.

Environment variables
---------------------
``PGE_USERNAME`` and ``PGE_PASSWORD`` (base64), ``PGE_URL``,
``PGE_LAST_N_MONTHS``, ``PGE_ACCOUNT_ID`` and ``PGE_DOWNLOAD_DIR`` describe the
portal account. ``DATA_DIR`` and ``LOGS_DIR`` override the default directories;
``MISTRAL_API_KEY`` enables the optional Mistral OCR engine. Directories are
created eagerly on import so downstream callers can rely on their existence.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from dotenv import load_dotenv, set_key

from pge_billing.exceptions import ConfigurationError

if TYPE_CHECKING:
    from collections.abc import Mapping

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"
ENV_FILE = PROJECT_ROOT / ".env"

# Load environment variables from .env file
load_dotenv(ENV_FILE)

DATA_DIR = Path(os.getenv("DATA_DIR", PROJECT_ROOT / "data"))
LOGS_DIR = Path(os.getenv("LOGS_DIR", PROJECT_ROOT / "logs"))

# Ensure directories exist
DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)

# API Keys
MISTRAL_API_KEY = os.getenv("MISTRAL_API_KEY", "")

# The portal exposes at most 24 months of statements.
MAX_LOOKBACK_MONTHS = 24
DEFAULT_RETRY_COUNT = 2


@dataclass(frozen=True)
class Credentials:
    """Portal account credentials in clear text (decoded from ``.env``)."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


@dataclass(frozen=True)
class Settings:
    """Explicit run configuration handed to every pipeline component.

    Attributes
    ----------
    portal_url : str
        Billing history URL; login redirects are handled by the session manager.
    last_n_months : int
        Look-back window, clamped to ``[1, MAX_LOOKBACK_MONTHS]``.
    credentials : Credentials | None
        Optional account credentials; a restored session may make them unnecessary.
    account_id : str | None
        Digits prefixed to downloaded statement filenames. When ``None`` the
        cache accepts any account prefix and downloads infer it from the cache.
    download_dir : Path
        Local document cache (the browser download location).
    images_dir : Path
        Raster image cache derived from ``DATA_DIR``.
    session_dir : Path
        Location of the cookie and local-storage snapshots.
    output_path : Path
        Destination CSV file.
    headless : bool
        Run the browser without a visible window.
    config : dict[str, Any]
        Parsed ``config/config.json`` tunables.
    """

    portal_url: str
    last_n_months: int = MAX_LOOKBACK_MONTHS
    credentials: Credentials | None = None
    account_id: str | None = None
    download_dir: Path = field(default_factory=lambda: Path.home() / "Downloads")
    images_dir: Path = field(default_factory=lambda: DATA_DIR / "images")
    session_dir: Path = field(default_factory=lambda: DATA_DIR / "session")
    output_path: Path = field(default_factory=lambda: DATA_DIR / "output" / "billings.csv")
    headless: bool = False
    config: dict[str, Any] = field(default_factory=dict)

    def section(self, name: str) -> dict[str, Any]:
        """Return a top-level ``config.json`` section, or an empty mapping."""
        value = self.config.get(name, {})
        return value if isinstance(value, dict) else {}


def get_config() -> dict[str, Any]:
    """Load the project tunables from ``config/config.json``.

    Returns
    -------
    dict[str, Any]
        Parsed contents including ``portal``, ``retry``, ``rasterizer``,
        ``ocr`` and ``extraction`` sections.

    Raises
    ------
    FileNotFoundError
        If ``config/config.json`` is missing.
    json.JSONDecodeError
        If the file exists but is not valid JSON.
    """
    config_path = CONFIG_DIR / "config.json"
    if not config_path.exists():
        msg = f"Configuration file not found: {config_path}"
        raise FileNotFoundError(msg)

    with Path(config_path).open(encoding="utf-8") as f:
        return json.load(f)  # type: ignore[no-any-return]


def setup_logging(name: str = "pge_billing") -> logging.Logger:
    """Configure a console+file logger if not already present.

    Parameters
    ----------
    name : str, optional
        Logger namespace; reused to avoid duplicate handlers.

    Returns
    -------
    logging.Logger
        Logger with INFO-level console handler and DEBUG-level file handler
        under ``LOGS_DIR``.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(logging.DEBUG)

        # Console handler
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_format = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
        console_handler.setFormatter(console_format)
        logger.addHandler(console_handler)

        # File handler
        log_filename = f"{datetime.now(UTC).strftime('%Y-%m-%d')}_run.log"
        file_handler = logging.FileHandler(LOGS_DIR / log_filename)
        file_handler.setLevel(logging.DEBUG)
        file_format = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        file_handler.setFormatter(file_format)
        logger.addHandler(file_handler)

    return logger


def get_mistral_client() -> Any:
    """Instantiate the synchronous Mistral SDK client.

    Returns
    -------
    mistralai.Mistral
        Client configured with ``MISTRAL_API_KEY``.

    Raises
    ------
    ConfigurationError
        If ``MISTRAL_API_KEY`` is absent.
    """
    if not MISTRAL_API_KEY:
        msg = "MISTRAL_API_KEY is not set"
        raise ConfigurationError(msg)

    from mistralai import Mistral

    return Mistral(api_key=MISTRAL_API_KEY)


# =============================================================================
# Credential Encoding
# =============================================================================


def encode_base64(value: str) -> str:
    """Encode a UTF-8 string as base64 text."""
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def decode_base64(value: str) -> str:
    """Decode base64 text back to a UTF-8 string.

    Raises
    ------
    ConfigurationError
        If ``value`` is not valid base64.
    """
    try:
        return base64.b64decode(value.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError) as err:
        msg = "Stored credential is not valid base64; re-run with --username/--password"
        raise ConfigurationError(msg) from err


def clamp_months(months: int | str | None) -> int:
    """Clamp a look-back window to ``[1, MAX_LOOKBACK_MONTHS]``.

    ``None`` or an unparsable value selects the full window.
    """
    try:
        value = int(months) if months is not None else MAX_LOOKBACK_MONTHS
    except ValueError:
        return MAX_LOOKBACK_MONTHS
    return max(1, min(value, MAX_LOOKBACK_MONTHS))


def persist_portal_settings(
    username: str,
    password: str,
    url: str,
    last_n_months: int | None = None,
    env_file: Path = ENV_FILE,
) -> Path:
    """Write portal settings to ``.env`` for reuse by later runs.

    Parameters
    ----------
    username, password : str
        Clear-text credentials; stored base64 encoded.
    url : str
        Billing history URL.
    last_n_months : int, optional
        Look-back window; clamped and defaulted to the full window.
    env_file : Path, optional
        Target dotenv file.

    Returns
    -------
    Path
        The dotenv file written.
    """
    env_file.parent.mkdir(parents=True, exist_ok=True)
    env_file.touch(exist_ok=True)

    set_key(str(env_file), "PGE_USERNAME", encode_base64(username))
    set_key(str(env_file), "PGE_PASSWORD", encode_base64(password))
    set_key(str(env_file), "PGE_URL", url)
    set_key(str(env_file), "PGE_LAST_N_MONTHS", str(clamp_months(last_n_months)))
    return env_file


def load_settings(
    environ: Mapping[str, str] | None = None,
    config: dict[str, Any] | None = None,
) -> Settings:
    """Build the run :class:`Settings` from environment values and tunables.

    Parameters
    ----------
    environ : Mapping[str, str], optional
        Source of ``PGE_*`` values; defaults to the process environment (which
        already includes ``.env`` values loaded at import).
    config : dict[str, Any], optional
        Parsed tunables; defaults to :func:`get_config`.

    Returns
    -------
    Settings
        Immutable configuration value.

    Raises
    ------
    ConfigurationError
        If the portal URL is missing or stored credentials cannot be decoded.
    """
    env = os.environ if environ is None else environ
    tunables = get_config() if config is None else config

    portal_url = env.get("PGE_URL", "").strip()
    if not portal_url:
        msg = "Portal URL is not configured; pass --url or set PGE_URL"
        raise ConfigurationError(msg)

    credentials = None
    raw_user, raw_password = env.get("PGE_USERNAME"), env.get("PGE_PASSWORD")
    if raw_user and raw_password:
        credentials = Credentials(decode_base64(raw_user), decode_base64(raw_password))

    overrides: dict[str, Any] = {}
    download_dir = env.get("PGE_DOWNLOAD_DIR")
    if download_dir:
        overrides["download_dir"] = Path(download_dir).expanduser()

    return Settings(
        portal_url=portal_url,
        last_n_months=clamp_months(env.get("PGE_LAST_N_MONTHS")),
        credentials=credentials,
        account_id=env.get("PGE_ACCOUNT_ID") or None,
        config=tunables,
        **overrides,
    )
