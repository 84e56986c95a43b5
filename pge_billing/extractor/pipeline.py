"""Parallel conversion and extraction stage.

Each resolved statement is rasterized and OCR'd in its own task. Tasks share
nothing but the result slot keyed by filename, run in no particular order, and
a failing document never cancels its siblings: its error is recorded and the
stage waits for every other task to settle.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pge_billing.config import setup_logging
from pge_billing.exceptions import ConversionError, OcrError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from pge_billing.extractor.converter import DocumentConverter
    from pge_billing.extractor.fields import ExtractedFields, FieldExtractor
    from pge_billing.statements import LocalDocument

logger = setup_logging(__name__)

DEFAULT_MAX_WORKERS = 4


@dataclass
class ExtractionBatch:
    """Per-document results of the fan-out, keyed by statement filename."""

    results: dict[str, ExtractedFields] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> int:
        return len(self.results)


def process_document(
    document: LocalDocument,
    converter: DocumentConverter,
    extractor: FieldExtractor,
) -> ExtractedFields:
    """Rasterize one statement and extract its charges."""
    image = converter.to_raster_image(document)
    return extractor.extract(image)


def extract_documents(
    documents: Sequence[LocalDocument],
    converter: DocumentConverter,
    extractor: FieldExtractor,
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> ExtractionBatch:
    """Run :func:`process_document` over all documents concurrently.

    Parameters
    ----------
    documents : Sequence[LocalDocument]
        Statements to process; duplicates by filename are processed once.
    converter : DocumentConverter
        First-page rasterizer.
    extractor : FieldExtractor
        OCR plus field parsing.
    max_workers : int, optional
        Thread pool size.

    Returns
    -------
    ExtractionBatch
        Successful extractions and per-document failure messages.
    """
    batch = ExtractionBatch()
    unique = {doc.filename: doc for doc in documents}
    if not unique:
        return batch

    with ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="extract") as pool:
        futures = {
            pool.submit(process_document, doc, converter, extractor): name for name, doc in unique.items()
        }
        for future in as_completed(futures):
            name = futures[future]
            try:
                batch.results[name] = future.result()
            except (ConversionError, OcrError) as e:
                logger.error("Error processing %s: %s", name, e)
                batch.failures[name] = str(e)
            except Exception as e:
                # Unexpected per-document failures must not take down the other documents
                logger.exception("Unexpected error processing %s", name)
                batch.failures[name] = f"{type(e).__name__}: {e}"

    logger.info("Extracted %d of %d statements", batch.succeeded, len(unique))
    return batch
