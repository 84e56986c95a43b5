"""Scraper module for retrieving statements from the PG&E billing portal.

Primary components:
- DownloadCoordinator: resolve statement periods to local PDFs, downloading gaps
- SessionManager: bounded-retry login with persisted session snapshots
- browser_session: Playwright lifecycle yielding a WebSession

Statements land in the user's download directory under the
``<account>custbill<MMDDYYYY>.pdf`` naming convention.
"""

from pge_billing.scraper.bill_downloader import DownloadCoordinator, DownloadReport
from pge_billing.scraper.browser import (
    BillLink,
    PlaywrightSession,
    PortalSelectors,
    WebSession,
    browser_session,
)
from pge_billing.scraper.session import (
    AttemptOutcome,
    AuthAction,
    AuthResult,
    AuthStatus,
    SessionManager,
    SessionSnapshotStore,
    SessionState,
    advance,
)

__all__ = [
    "AttemptOutcome",
    "AuthAction",
    "AuthResult",
    "AuthStatus",
    "BillLink",
    # Download coordination
    "DownloadCoordinator",
    "DownloadReport",
    "PlaywrightSession",
    # Browser utilities
    "PortalSelectors",
    # Authentication
    "SessionManager",
    "SessionSnapshotStore",
    "SessionState",
    "WebSession",
    "advance",
    "browser_session",
]
