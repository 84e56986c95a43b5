"""pge-billing: PG&E statement download and charge extraction.

The package logs into the PG&E account portal, downloads the monthly bill
statements missing from a local cache, OCRs the first page of each statement,
and writes the extracted charges to a CSV file.

Architecture
------------
* ``statements``: Billing periods, statement filenames and the local PDF cache.
* ``scraper``: Playwright session management and on-demand statement downloads.
* ``extractor``: First-page rasterization (ImageMagick/PyMuPDF), OCR (Tesseract or
  Mistral) and rules-based charge parsing, run in parallel.
* ``writer``: Billing record aggregation and CSV output via pandas.

Configuration and credentials
-----------------------------
Portal settings live in ``.env`` (``PGE_USERNAME`` and ``PGE_PASSWORD`` base64
encoded, ``PGE_URL``, ``PGE_LAST_N_MONTHS``). Selectors, timeouts, OCR and
extraction rules live in ``config/config.json``. Paths default to the ``data/``
and ``logs/`` trees but respect ``DATA_DIR`` and ``LOGS_DIR`` overrides.

Examples
--------
First run, saving credentials:

    >>> python -m pge_billing.main --username me --password s3cret --url https://m.pge.com/

Re-parse cached statements only:

    >>> python -m pge_billing.main --skip-download
"""

from pge_billing.config import clamp_months

__version__ = "0.1.0"
__all__ = ["__version__", "clamp_months"]


def get_version() -> str:
    """Return the current package version string."""
    return __version__


__all__.append("get_version")
