"""Cache-aware coordinator for statement downloads.

The coordinator first checks the local document cache for every requested
period. When all of them are present it returns immediately without opening a
browser, so repeated runs over a fully cached window do no network work.

Otherwise it authenticates once and walks the portal's history rows in rank
order (row 1 is the most recent statement). Each document-view link carries the
exact bill date; the cache is checked again for that date before clicking, since
row order does not line up one-to-one with the requested periods. Row and link
failures skip ahead instead of aborting the scan.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from functools import partial
from typing import TYPE_CHECKING

from pge_billing.config import MAX_LOOKBACK_MONTHS, setup_logging
from pge_billing.exceptions import AuthenticationError, ConfigurationError, DownloadUnconfirmed, WebSessionError
from pge_billing.scraper.browser import PortalSelectors, browser_session
from pge_billing.scraper.session import SessionManager
from pge_billing.statements import DocumentCache, LocalDocument, StatementPeriod, statement_filename

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from contextlib import AbstractContextManager
    from pathlib import Path

    from pge_billing.config import Settings
    from pge_billing.scraper.browser import BillLink, WebSession

    SessionFactory = Callable[[], AbstractContextManager[WebSession]]

logger = setup_logging(__name__)


@dataclass
class DownloadReport:
    """Outcome of :meth:`DownloadCoordinator.resolve`.

    Attributes
    ----------
    documents : list[LocalDocument]
        Resolved statements, in resolution order (no global sort).
    cache_hits : int
        Documents served from the local cache.
    download_attempts : int
        Download clicks issued, retries included.
    session_opened : bool
        Whether a browser session was needed at all.
    skipped_rows : list[int]
        Ranks of history rows that were absent or failed.
    unconfirmed : list[str]
        Filenames clicked but never observed in the cache, even after a retry.
    ambiguous : dict[StatementPeriod, list[str]]
        Periods matched by more than one cached file.
    """

    documents: list[LocalDocument] = field(default_factory=list)
    cache_hits: int = 0
    download_attempts: int = 0
    session_opened: bool = False
    skipped_rows: list[int] = field(default_factory=list)
    unconfirmed: list[str] = field(default_factory=list)
    ambiguous: dict[StatementPeriod, list[str]] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.unconfirmed


def bill_date_from_timestamp(raw: str | None) -> date:
    """Convert an epoch-milliseconds attribute value to a UTC calendar date.

    Raises
    ------
    ValueError
        If ``raw`` is missing or not an integer.
    """
    if raw is None or not raw.strip():
        msg = "Bill link has no date attribute"
        raise ValueError(msg)
    return datetime.fromtimestamp(int(raw.strip()) / 1000, tz=UTC).date()


class DownloadCoordinator:
    """Resolve statement periods to local documents, downloading only gaps.

    Parameters
    ----------
    cache : DocumentCache
        Local document cache; downloads are saved into its directory.
    session_manager : SessionManager
        Authenticates the browser session before the history scan.
    session_factory : SessionFactory
        Zero-argument callable returning a context manager that yields a
        :class:`~pge_billing.scraper.browser.WebSession`. Called at most once per
        resolve, and never when the cache is complete.
    portal_url : str
        Billing history URL.
    account_id : str, optional
        Filename prefix for new downloads; inferred from the cache when omitted.
    allow_download : bool, optional
        When ``False`` only the cache is consulted.
    download_timeout : float, optional
        Seconds to wait for the browser download event.
    confirm_timeout : float, optional
        Seconds to poll the cache for the saved file after a download.
    retry_backoff : float, optional
        Pause before the single retry of an unconfirmed download.
    date_attribute : str, optional
        Link attribute holding the bill timestamp.
    """

    def __init__(
        self,
        cache: DocumentCache,
        session_manager: SessionManager,
        session_factory: SessionFactory,
        portal_url: str,
        account_id: str | None = None,
        allow_download: bool = True,
        download_timeout: float = 60.0,
        confirm_timeout: float = 10.0,
        retry_backoff: float = 5.0,
        date_attribute: str = "data-date",
    ) -> None:
        self.cache = cache
        self.session_manager = session_manager
        self.session_factory = session_factory
        self.portal_url = portal_url
        self.account_id = account_id
        self.allow_download = allow_download
        self.download_timeout = download_timeout
        self.confirm_timeout = confirm_timeout
        self.retry_backoff = retry_backoff
        self.date_attribute = date_attribute

    @classmethod
    def from_settings(cls, settings: Settings, allow_download: bool = True) -> DownloadCoordinator:
        portal = settings.section("portal")
        downloads = settings.section("downloads")
        selectors = PortalSelectors.from_config(portal.get("selectors"))
        waits = portal.get("waits", {})
        factory = partial(
            browser_session,
            selectors=selectors,
            headless=settings.headless,
            timeout=float(portal.get("default_timeout", 30.0)),
            row_settle_seconds=float(waits.get("row_settle", 1.0)),
        )
        return cls(
            cache=DocumentCache(settings.download_dir, settings.account_id),
            session_manager=SessionManager.from_settings(settings),
            session_factory=factory,
            portal_url=settings.portal_url,
            account_id=settings.account_id,
            allow_download=allow_download,
            download_timeout=float(downloads.get("download_timeout", 60.0)),
            confirm_timeout=float(downloads.get("confirm_timeout", 10.0)),
            retry_backoff=float(downloads.get("retry_backoff", 5.0)),
            date_attribute=selectors.bill_date_attribute,
        )

    def resolve_documents(self, periods: Sequence[StatementPeriod]) -> list[LocalDocument]:
        """Return local documents for ``periods`` (see :meth:`resolve`)."""
        return self.resolve(periods).documents

    def resolve(self, periods: Sequence[StatementPeriod]) -> DownloadReport:
        """Resolve periods against the cache and fill gaps from the portal.

        Parameters
        ----------
        periods : Sequence[StatementPeriod]
            Requested look-back window; at most ``MAX_LOOKBACK_MONTHS`` rows are scanned.

        Returns
        -------
        DownloadReport
            Resolved documents plus counters and warnings.

        Raises
        ------
        AuthenticationError
            If the portal login fails after all retries.
        ConfigurationError
            If a download is needed but no account id is known.
        """
        report = DownloadReport()
        self.cache.ambiguous.clear()
        hits, missing = self._check_cache(periods)
        report.ambiguous = dict(self.cache.ambiguous)

        if not missing:
            logger.info("All %d statements are cached, skipping download", len(hits))
            report.documents = hits
            report.cache_hits = len(hits)
            return report

        logger.info("%d of %d statements missing locally: %s", len(missing), len(periods), ", ".join(map(str, missing)))

        if not self.allow_download:
            logger.warning("Download disabled; continuing with %d cached statements", len(hits))
            report.documents = hits
            report.cache_hits = len(hits)
            return report

        account_id = self.account_id or self.cache.infer_account_id()
        if account_id is None:
            msg = "Account id is unknown; set PGE_ACCOUNT_ID to name downloaded statements"
            raise ConfigurationError(msg)

        limit = min(len(periods), MAX_LOOKBACK_MONTHS)
        with self.session_factory() as session:
            report.session_opened = True
            result = self.session_manager.ensure_authenticated(session, self.portal_url)
            if not result.success:
                raise AuthenticationError(result.error or "Authentication failed")

            logger.info("Getting the last %d months of bills", limit)
            self._scan_history(session, limit, account_id, report)

        logger.info(
            "Resolved %d statements (%d cached, %d download attempts)",
            len(report.documents),
            report.cache_hits,
            report.download_attempts,
        )
        if report.unconfirmed:
            logger.warning("Downloads not confirmed: %s", ", ".join(report.unconfirmed))
        return report

    def _check_cache(
        self,
        periods: Sequence[StatementPeriod],
    ) -> tuple[list[LocalDocument], list[StatementPeriod]]:
        hits: list[LocalDocument] = []
        missing: list[StatementPeriod] = []
        for period in periods[:MAX_LOOKBACK_MONTHS]:
            document = self.cache.find(period)
            if document is None:
                missing.append(period)
            else:
                hits.append(document)
        return hits, missing

    def _scan_history(
        self,
        session: WebSession,
        limit: int,
        account_id: str,
        report: DownloadReport,
    ) -> None:
        seen: set[str] = set()
        for rank in range(1, limit + 1):
            try:
                links = session.history_row_links(rank)
            except WebSessionError as e:
                logger.warning("Skipping row %d due to error: %s", rank, e)
                report.skipped_rows.append(rank)
                continue

            if links is None:
                logger.info("No row found for index %d, skipping...", rank)
                report.skipped_rows.append(rank)
                continue

            logger.info("Processing row %d", rank)
            for link in links:
                document = self._resolve_link(session, link, account_id, report)
                if document is not None and document.filename not in seen:
                    seen.add(document.filename)
                    report.documents.append(document)

    def _resolve_link(
        self,
        session: WebSession,
        link: BillLink,
        account_id: str,
        report: DownloadReport,
    ) -> LocalDocument | None:
        try:
            bill_date = bill_date_from_timestamp(session.read_attribute(link, self.date_attribute))
        except (WebSessionError, ValueError, OverflowError, OSError) as e:
            logger.warning("Skip to the next link of row %d: %s", link.rank, e)
            return None

        cached = self.cache.find_date(bill_date)
        if cached is not None:
            logger.info("File %s already exists, skip downloading...", cached.filename)
            report.cache_hits += 1
            return cached

        return self._download(session, link, bill_date, account_id, report)

    def _download(
        self,
        session: WebSession,
        link: BillLink,
        bill_date: date,
        account_id: str,
        report: DownloadReport,
    ) -> LocalDocument | None:
        """Click a link, then poll the cache; retry once before giving up."""
        destination = self.cache.directory / statement_filename(account_id, bill_date)

        for attempt in (1, 2):
            report.download_attempts += 1
            try:
                document = self._download_once(session, link, bill_date, destination)
            except DownloadUnconfirmed as e:
                logger.warning("%s (attempt %d)", e, attempt)
                if attempt == 1:
                    session.pause(self.retry_backoff)
                continue

            logger.info("Downloaded %s (bill date %s)", document.filename, bill_date.isoformat())
            return document

        report.unconfirmed.append(destination.name)
        logger.warning("Download of %s could not be confirmed; omitting it", destination.name)
        return None

    def _download_once(
        self,
        session: WebSession,
        link: BillLink,
        bill_date: date,
        destination: Path,
    ) -> LocalDocument:
        """Click once and wait for the statement to appear in the cache.

        Raises
        ------
        DownloadUnconfirmed
            If the file is not observed before ``confirm_timeout``, or the
            download directory cannot be read.
        """
        try:
            session.download(link, destination, self.download_timeout)
        except (WebSessionError, OSError) as e:
            logger.debug("Download event for %s failed: %s", destination.name, e)

        try:
            document = self.cache.wait_for(bill_date, self.confirm_timeout)
        except OSError as e:
            msg = f"Cannot read {self.cache.directory} while confirming {destination.name}: {e}"
            raise DownloadUnconfirmed(msg) from e
        if document is None:
            msg = f"{destination.name} not found after download"
            raise DownloadUnconfirmed(msg)
        return document
