"""OCR engines producing plain text from a statement image.

Two engines are available:

* ``tesseract`` (default): local Tesseract through ``pytesseract``.
* ``mistral``: hosted Mistral OCR, for scans Tesseract reads poorly. Requires
  ``MISTRAL_API_KEY``.

Both raise :class:`~pge_billing.exceptions.OcrError` when the engine itself
fails. Finding no text is not an error; it simply yields empty fields later.
"""

from __future__ import annotations

import base64
from typing import TYPE_CHECKING, Any, Protocol

from pge_billing.config import get_mistral_client, setup_logging
from pge_billing.exceptions import OcrError

if TYPE_CHECKING:
    from pathlib import Path

    from pge_billing.config import Settings

logger = setup_logging(__name__)

MISTRAL_OCR_MODEL = "mistral-ocr-latest"

# MIME type mapping for common image formats
_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}


class OcrEngine(Protocol):
    """Capability turning an image file into recognized text."""

    name: str

    def image_to_text(self, image_path: Path) -> str: ...


class TesseractEngine:
    """Tesseract OCR via ``pytesseract``.

    Parameters
    ----------
    lang : str, optional
        Tesseract language code.
    config : str, optional
        Extra Tesseract CLI options (e.g. ``"--psm 6"``).
    tesseract_cmd : str, optional
        Path to the ``tesseract`` binary when it is not on ``PATH``.
    """

    name = "tesseract"

    def __init__(self, lang: str = "eng", config: str = "", tesseract_cmd: str | None = None) -> None:
        self.lang = lang
        self.config = config
        self.tesseract_cmd = tesseract_cmd

    def image_to_text(self, image_path: Path) -> str:
        import pytesseract
        from PIL import Image

        if self.tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self.tesseract_cmd

        logger.info("Starting OCR on image: %s", image_path.name)
        try:
            with Image.open(image_path) as image:
                text = pytesseract.image_to_string(image, lang=self.lang, config=self.config)
        except (OSError, pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as e:
            msg = f"Tesseract failed on {image_path.name}: {e}"
            raise OcrError(msg) from e

        return str(text or "")


class MistralOcrEngine:
    """Mistral OCR over a base64 data URL of the image."""

    name = "mistral"

    def __init__(self, model: str = MISTRAL_OCR_MODEL, client: Any = None) -> None:
        self.model = model
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_mistral_client()
        return self._client

    def image_to_text(self, image_path: Path) -> str:
        document = {"type": "image_url", "image_url": _encode_image(image_path)}

        logger.info("Calling Mistral OCR for: %s", image_path.name)
        try:
            response = self.client.ocr.process(model=self.model, document=document)
        except Exception as e:
            msg = f"Mistral OCR failed on {image_path.name}: {e}"
            raise OcrError(msg) from e

        return "\n".join(page.markdown for page in response.pages)


def _encode_image(image_path: Path) -> str:
    """Encode an image file to a base64 data URL."""
    mime_type = _MIME_TYPES.get(image_path.suffix.lower(), "image/png")
    try:
        encoded = base64.standard_b64encode(image_path.read_bytes()).decode("utf-8")
    except OSError as e:
        msg = f"Cannot read image {image_path}: {e}"
        raise OcrError(msg) from e
    return f"data:{mime_type};base64,{encoded}"


def create_ocr_engine(settings: Settings) -> OcrEngine:
    """Instantiate the engine selected by the ``ocr`` config section.

    Raises
    ------
    ValueError
        If the configured engine name is unknown.
    """
    options = settings.section("ocr")
    engine = options.get("engine", "tesseract")

    if engine == "tesseract":
        return TesseractEngine(
            lang=options.get("lang", "eng"),
            config=options.get("tesseract_config", ""),
            tesseract_cmd=options.get("tesseract_cmd"),
        )
    if engine == "mistral":
        return MistralOcrEngine(model=options.get("model", MISTRAL_OCR_MODEL))

    msg = f"Unknown OCR engine: {engine}"
    raise ValueError(msg)
