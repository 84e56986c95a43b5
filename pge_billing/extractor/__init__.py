"""Extractor module: rasterize statements, OCR them and parse charges.

Key exports:
    DocumentConverter: Idempotent first-page rasterizer (ImageMagick or PyMuPDF)
    FieldExtractor: OCR plus rules-table parsing of the three charges
    extract_documents: Parallel fan-out with per-document failure isolation
"""

from pge_billing.extractor.converter import DocumentConverter, RasterImage
from pge_billing.extractor.fields import (
    DEFAULT_RULES,
    ExtractedFields,
    FieldExtractor,
    FieldRule,
    parse_charges,
    rules_from_config,
)
from pge_billing.extractor.ocr import MistralOcrEngine, OcrEngine, TesseractEngine, create_ocr_engine
from pge_billing.extractor.pipeline import ExtractionBatch, extract_documents, process_document

__all__ = [
    "DEFAULT_RULES",
    # Conversion
    "DocumentConverter",
    "ExtractedFields",
    # Fan-out
    "ExtractionBatch",
    # Field parsing
    "FieldExtractor",
    "FieldRule",
    # OCR
    "MistralOcrEngine",
    "OcrEngine",
    "RasterImage",
    "TesseractEngine",
    "create_ocr_engine",
    "extract_documents",
    "parse_charges",
    "process_document",
    "rules_from_config",
]
