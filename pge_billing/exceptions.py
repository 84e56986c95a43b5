"""Error taxonomy for the retrieval-and-extraction pipeline.

Session-level and output-level errors abort a run. Per-document errors
(conversion, OCR, filename parsing) are caught at the fan-out boundary and only
drop the affected document.
"""

from __future__ import annotations


class BillingError(Exception):
    """Base class for all pge-billing errors."""


class ConfigurationError(BillingError):
    """Settings are missing or cannot be decoded."""


class WebSessionError(BillingError):
    """A browser step failed (click, navigation, attribute read)."""


class NavigationTimeout(WebSessionError):
    """An expected element or navigation did not appear within its bound."""


class AuthenticationError(BillingError):
    """Authentication failed after all retries; fatal for the run."""


class DownloadUnconfirmed(BillingError):
    """A clicked download never landed in the document cache."""


class ConversionError(BillingError):
    """Rasterizing a statement's first page failed."""


class OcrError(BillingError):
    """The OCR engine itself failed (not a missing pattern match)."""


class FilenameParseError(BillingError):
    """A statement filename does not carry a valid MMDDYYYY date."""


class OutputWriteError(BillingError):
    """The billing CSV could not be written."""
