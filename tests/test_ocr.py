"""Tests for the OCR engines."""

from __future__ import annotations

import base64
from dataclasses import replace
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import pytesseract
from PIL import Image

from pge_billing.config import Settings
from pge_billing.exceptions import OcrError
from pge_billing.extractor.ocr import MistralOcrEngine, TesseractEngine, create_ocr_engine


@pytest.fixture
def png_path(tmp_path: Path) -> Path:
    path = tmp_path / "6491custbill01062025.png"
    Image.new("RGB", (20, 10), "white").save(path)
    return path


class TestTesseractEngine:
    """Tests for local Tesseract OCR."""

    def test_returns_text(self, png_path: Path) -> None:
        with patch("pytesseract.image_to_string", return_value="Current Gas Charges $12.00") as mock_ocr:
            text = TesseractEngine(lang="eng", config="--psm 6").image_to_text(png_path)

        assert text == "Current Gas Charges $12.00"
        assert mock_ocr.call_args.kwargs == {"lang": "eng", "config": "--psm 6"}

    def test_tesseract_missing(self, png_path: Path) -> None:
        with patch("pytesseract.image_to_string", side_effect=pytesseract.TesseractNotFoundError()):
            with pytest.raises(OcrError, match="Tesseract failed"):
                TesseractEngine().image_to_text(png_path)

    def test_unreadable_image(self, tmp_path: Path) -> None:
        bogus = tmp_path / "broken.png"
        bogus.write_bytes(b"not an image")

        with pytest.raises(OcrError):
            TesseractEngine().image_to_text(bogus)


class TestMistralOcrEngine:
    """Tests for hosted Mistral OCR."""

    def test_sends_data_url_and_joins_pages(self, png_path: Path) -> None:
        client = MagicMock()
        client.ocr.process.return_value.pages = [MagicMock(markdown="page one"), MagicMock(markdown="page two")]

        text = MistralOcrEngine(client=client).image_to_text(png_path)

        assert text == "page one\npage two"
        kwargs = client.ocr.process.call_args.kwargs
        assert kwargs["model"] == "mistral-ocr-latest"
        data_url = kwargs["document"]["image_url"]
        assert data_url.startswith("data:image/png;base64,")
        assert base64.b64decode(data_url.split(",", 1)[1]) == png_path.read_bytes()

    def test_api_failure(self, png_path: Path) -> None:
        client = MagicMock()
        client.ocr.process.side_effect = RuntimeError("429 Too Many Requests")

        with pytest.raises(OcrError, match="Mistral OCR failed"):
            MistralOcrEngine(client=client).image_to_text(png_path)

    def test_missing_image(self, tmp_path: Path) -> None:
        with pytest.raises(OcrError, match="Cannot read image"):
            MistralOcrEngine(client=MagicMock()).image_to_text(tmp_path / "absent.png")


class TestCreateOcrEngine:
    """Tests for engine selection from configuration."""

    def test_default_is_tesseract(self, settings: Settings) -> None:
        engine = create_ocr_engine(settings)
        assert isinstance(engine, TesseractEngine)
        assert engine.lang == "eng"

    def test_mistral(self, settings: Settings) -> None:
        config = {**settings.config, "ocr": {"engine": "mistral", "model": "mistral-ocr-2505"}}
        engine = create_ocr_engine(replace(settings, config=config))

        assert isinstance(engine, MistralOcrEngine)
        assert engine.model == "mistral-ocr-2505"

    def test_unknown_engine(self, settings: Settings) -> None:
        config = {**settings.config, "ocr": {"engine": "easyocr"}}
        with pytest.raises(ValueError, match="Unknown OCR engine"):
            create_ocr_engine(replace(settings, config=config))
