"""Pytest configuration for pge_billing tests.

This module provides:
- FakeWebSession: in-memory stand-in for the Playwright-backed WebSession
- Fixtures for a scratch statement cache and run settings under ``tmp_path``
- Helpers for portal bill timestamps (epoch milliseconds)
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import UTC, date, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest
from dotenv import load_dotenv

from pge_billing.config import Settings, get_config
from pge_billing.exceptions import NavigationTimeout, WebSessionError
from pge_billing.scraper.browser import BillLink, PortalSelectors

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

# Load environment variables from project .env so MISTRAL_API_KEY is available in tests
PROJECT_ROOT = Path(__file__).parent.parent
load_dotenv(PROJECT_ROOT / ".env")

PORTAL_URL = "https://m.pge.com/#myaccount/dashboard/summary"
LOGIN_URL = "https://www.pge.com/en/login"


def bill_timestamp(bill_date: date) -> str:
    """Render a bill date the way the portal stores it in ``data-date``."""
    moment = datetime(bill_date.year, bill_date.month, bill_date.day, 8, tzinfo=UTC)
    return str(int(moment.timestamp() * 1000))


class FakeWebSession:
    """Scriptable WebSession that records every effect.

    Parameters
    ----------
    require_login : bool
        Navigation redirects to the login page until credentials are submitted
        or valid cookies are restored.
    accept_login : bool
        Whether submitting the login form succeeds.
    consent : bool
        Show the cookie consent dialog until it is rejected.
    rows : dict[int, list[str | None]]
        History rows by 1-based rank; each entry is a link's ``data-date`` value.
    row_errors : set[int]
        Ranks whose lookup raises ``WebSessionError``.
    drop_downloads : int
        Number of initial downloads that fire but never land on disk.
    download_errors : int
        Number of initial download clicks that raise ``NavigationTimeout``.
    cookies_valid : bool
        Whether restored cookies count as a live session.
    """

    def __init__(
        self,
        require_login: bool = True,
        accept_login: bool = True,
        consent: bool = False,
        rows: dict[int, list[str | None]] | None = None,
        row_errors: set[int] | None = None,
        drop_downloads: int = 0,
        download_errors: int = 0,
        cookies_valid: bool = False,
    ) -> None:
        self.selectors = PortalSelectors()
        self.accept_login = accept_login
        self.consent = consent
        self.rows = rows or {}
        self.row_errors = row_errors or set()
        self.drop_downloads = drop_downloads
        self.download_errors = download_errors
        self.cookies_valid = cookies_valid
        self.logged_in = not require_login

        self.url = "about:blank"
        self.visits: list[str] = []
        self.pauses: list[float] = []
        self.clicks: list[str] = []
        self.typed: dict[str, str] = {}
        self.downloads: list[str] = []
        self.reloads = 0
        self.cookie_jar: list[dict[str, Any]] = []
        self.storage: dict[str, str] = {}
        self.restored_cookies: list[dict[str, Any]] = []
        self.restored_storage: dict[str, str] = {}

    # Navigation -----------------------------------------------------------

    def goto(self, url: str) -> None:
        self.visits.append(url)
        self.url = url if self.logged_in else LOGIN_URL

    def reload(self) -> None:
        self.reloads += 1

    def current_url(self) -> str:
        return self.url

    def pause(self, seconds: float) -> None:
        self.pauses.append(seconds)

    # Elements -------------------------------------------------------------

    def _visible(self, selector: str) -> bool:
        s = self.selectors
        if selector == s.consent_reject:
            return self.consent
        if selector in (s.username_field, s.password_field, s.login_submit):
            return not self.logged_in
        if selector in (s.history_button, s.history_container, s.signed_in_indicator):
            return self.logged_in
        return False

    def wait_for(self, selector: str, timeout: float, state: str = "visible") -> None:
        visible = self._visible(selector)
        if visible == (state == "hidden"):
            msg = f"Timed out after {timeout}s waiting for {selector} to be {state}"
            raise NavigationTimeout(msg)

    def is_present(self, selector: str) -> bool:
        return self._visible(selector)

    def click(self, selector: str, timeout: float, navigation_timeout: float | None = None) -> None:
        self.clicks.append(selector)
        if not self._visible(selector):
            msg = f"Timed out after {timeout}s clicking {selector}"
            raise NavigationTimeout(msg)
        if selector == self.selectors.consent_reject:
            self.consent = False
        elif selector == self.selectors.login_submit and self.accept_login:
            self.logged_in = True
            self.cookie_jar = [{"name": "SMSESSION", "value": "abc123", "domain": ".pge.com", "path": "/"}]
            self.storage = {"auth.token": "xyz"}

    def type_text(self, selector: str, text: str) -> None:
        self.typed[selector] = text

    # Session state --------------------------------------------------------

    def cookies(self) -> list[dict[str, Any]]:
        return list(self.cookie_jar)

    def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        self.restored_cookies.extend(cookies)
        if cookies and self.cookies_valid:
            self.logged_in = True

    def local_storage(self) -> dict[str, str]:
        return dict(self.storage)

    def restore_local_storage(self, items: dict[str, str]) -> None:
        self.restored_storage.update(items)

    # Statement history ----------------------------------------------------

    def history_row_links(self, rank: int) -> list[BillLink] | None:
        if rank in self.row_errors:
            msg = f"Row {rank} detached while scrolling"
            raise WebSessionError(msg)
        stamps = self.rows.get(rank)
        if stamps is None:
            return None
        return [BillLink(rank, position, handle=stamp) for position, stamp in enumerate(stamps)]

    def read_attribute(self, link: BillLink, name: str) -> str | None:
        return link.handle

    def download(self, link: BillLink, destination: Path, timeout: float) -> Path:
        self.downloads.append(destination.name)
        if self.download_errors > 0:
            self.download_errors -= 1
            msg = f"Timed out during download: {destination.name}"
            raise NavigationTimeout(msg)
        if self.drop_downloads > 0:
            self.drop_downloads -= 1
            return destination
        destination.parent.mkdir(parents=True, exist_ok=True)
        destination.write_bytes(b"%PDF-1.4\n")
        return destination


class SessionFactory:
    """Context-manager factory handing out one fake session and counting opens."""

    def __init__(self, session: FakeWebSession) -> None:
        self.session = session
        self.opened = 0

    @contextmanager
    def __call__(self) -> Iterator[FakeWebSession]:
        self.opened += 1
        yield self.session


def touch_statements(directory: Path, *names: str) -> list[Path]:
    """Create placeholder statement PDFs in ``directory``."""
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for name in names:
        path = directory / name
        path.write_bytes(b"%PDF-1.4\n")
        paths.append(path)
    return paths


@pytest.fixture
def download_dir(tmp_path: Path) -> Path:
    """Empty statement cache directory."""
    path = tmp_path / "Downloads"
    path.mkdir()
    return path


@pytest.fixture
def make_web_session() -> Callable[..., FakeWebSession]:
    """Factory for :class:`FakeWebSession` instances."""
    return FakeWebSession


@pytest.fixture
def settings(tmp_path: Path, download_dir: Path) -> Settings:
    """Run settings with every path under ``tmp_path`` and the shipped tunables."""
    return Settings(
        portal_url=PORTAL_URL,
        last_n_months=3,
        account_id="6491",
        download_dir=download_dir,
        images_dir=tmp_path / "images",
        session_dir=tmp_path / "session",
        output_path=tmp_path / "output" / "billings.csv",
        headless=True,
        config=get_config(),
    )
