"""Rasterize the first page of a statement PDF into a cached PNG.

The default backend shells out to ImageMagick (``magick -density 150
file.pdf[0]``). PyMuPDF can be selected instead through the ``rasterizer``
section of ``config.json`` on machines without ImageMagick/Ghostscript.

The image cache is keyed by filename only: once ``<stem>.png`` exists it is
reused as-is and never recomputed.
"""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pge_billing.config import setup_logging
from pge_billing.exceptions import ConversionError

if TYPE_CHECKING:
    from pathlib import Path

    from pge_billing.config import Settings
    from pge_billing.statements import LocalDocument, StatementPeriod

logger = setup_logging(__name__)

BACKENDS = ("magick", "pymupdf")
DEFAULT_DENSITY = 150


@dataclass(frozen=True)
class RasterImage:
    """A statement period bound to its cached first-page image."""

    period: StatementPeriod
    path: Path
    source: Path


class DocumentConverter:
    """Idempotent first-page rasterizer.

    Parameters
    ----------
    images_dir : Path
        Image cache directory; created on first use.
    backend : str, optional
        ``"magick"`` (external ImageMagick process) or ``"pymupdf"``.
    density : int, optional
        Render resolution in DPI.
    executable : str, optional
        ImageMagick binary name or path.
    timeout : float, optional
        Seconds allowed for one external conversion.
    """

    def __init__(
        self,
        images_dir: Path,
        backend: str = "magick",
        density: int = DEFAULT_DENSITY,
        executable: str = "magick",
        timeout: float = 120.0,
    ) -> None:
        if backend not in BACKENDS:
            msg = f"Unknown rasterizer backend: {backend}. Must be one of {', '.join(BACKENDS)}."
            raise ValueError(msg)
        self.images_dir = images_dir
        self.backend = backend
        self.density = density
        self.executable = executable
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> DocumentConverter:
        options = settings.section("rasterizer")
        return cls(
            images_dir=settings.images_dir,
            backend=options.get("backend", "magick"),
            density=int(options.get("density", DEFAULT_DENSITY)),
            executable=options.get("executable", "magick"),
            timeout=float(options.get("timeout", 120.0)),
        )

    def image_path_for(self, document: LocalDocument) -> Path:
        return self.images_dir / f"{document.path.stem}.png"

    def to_raster_image(self, document: LocalDocument) -> RasterImage:
        """Return the cached first-page image, rendering it if absent.

        Raises
        ------
        ConversionError
            If the source PDF is missing or the rasterizer fails.
        """
        image_path = self.image_path_for(document)
        image = RasterImage(document.period, image_path, document.path)

        if image_path.exists():
            logger.debug("Using cached image: %s", image_path.name)
            return image

        if not document.path.exists():
            msg = f"Statement not found: {document.path}"
            raise ConversionError(msg)

        self.images_dir.mkdir(parents=True, exist_ok=True)
        if self.backend == "magick":
            self._convert_with_magick(document.path, image_path)
        else:
            self._convert_with_pymupdf(document.path, image_path)

        if not image_path.exists():
            msg = f"Rasterizer produced no image for {document.filename}"
            raise ConversionError(msg)

        logger.info("Converted page 1 of %s to image: %s", document.filename, image_path.name)
        return image

    def _convert_with_magick(self, pdf_path: Path, image_path: Path) -> None:
        executable = shutil.which(self.executable)
        if executable is None:
            msg = f"ImageMagick executable not found: {self.executable}"
            raise ConversionError(msg)

        # [0] selects the first page
        command = [
            executable,
            "-density",
            str(self.density),
            f"{pdf_path}[0]",
            "-quality",
            "100",
            str(image_path),
        ]
        logger.debug("Executing command: %s", " ".join(command))

        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            msg = f"ImageMagick failed for {pdf_path.name}: {e.stderr.strip() or e}"
            raise ConversionError(msg) from e
        except subprocess.TimeoutExpired as e:
            msg = f"ImageMagick timed out after {self.timeout}s for {pdf_path.name}"
            raise ConversionError(msg) from e

        if completed.stderr:
            logger.debug("Convert stderr: %s", completed.stderr.strip())

    def _convert_with_pymupdf(self, pdf_path: Path, image_path: Path) -> None:
        import fitz  # PyMuPDF

        try:
            with fitz.open(pdf_path) as doc:
                if len(doc) == 0:
                    msg = f"Statement has no pages: {pdf_path.name}"
                    raise ConversionError(msg)
                pixmap = doc[0].get_pixmap(dpi=self.density)
                pixmap.save(image_path)
        except ConversionError:
            raise
        except Exception as e:
            msg = f"PyMuPDF failed for {pdf_path.name}: {e}"
            raise ConversionError(msg) from e
