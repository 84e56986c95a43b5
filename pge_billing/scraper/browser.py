"""Browser automation utilities using Playwright.

The pipeline drives the portal through the small :class:`WebSession` protocol
so that authentication and download logic never touch Playwright directly.
:class:`PlaywrightSession` is the production implementation; tests substitute
an in-memory fake.

Main components:
- PortalSelectors: CSS/XPath selectors for the billing portal, overridable from config
- WebSession: the capability the session manager and download coordinator rely on
- PlaywrightSession: WebSession over a single Playwright page
- browser_session: Context manager for the complete browser lifecycle

Notes
-----
Exactly one page is open per run. Every call blocks until the browser step
completes or its timeout expires; Playwright timeouts surface as
:class:`~pge_billing.exceptions.NavigationTimeout`.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass, fields
from typing import TYPE_CHECKING, Any, Protocol

from playwright.sync_api import Browser, BrowserContext, Page, sync_playwright
from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeout

from pge_billing.config import setup_logging
from pge_billing.exceptions import NavigationTimeout, WebSessionError

if TYPE_CHECKING:
    from collections.abc import Callable, Generator
    from pathlib import Path

    from playwright.sync_api import Locator, Playwright

logger = setup_logging(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/119.0.0.0 Safari/537.36"
)


@dataclass(frozen=True)
class PortalSelectors:
    """Selectors for the billing portal.

    Attributes
    ----------
    consent_reject : str
        "Reject all" button of the cookie consent dialog.
    signed_in_indicator : str
        Header element only present for an authenticated user.
    username_field, password_field, login_submit : str
        Login form controls.
    history_button : str
        Control unlocking the 24-month statement history.
    history_container : str
        Table body that holds the historical records once unlocked.
    history_row : str
        XPath for statement rows; indexed by 1-based rank, most recent first.
    bill_link : str
        Document-view link inside a history row.
    bill_date_attribute : str
        Link attribute carrying the bill date as epoch milliseconds.
    """

    consent_reject: str = "#onetrust-reject-all-handler"
    signed_in_indicator: str = ".pge_coc-header-siginedin_gp"
    username_field: str = "#usernameField"
    password_field: str = "#passwordField"
    login_submit: str = "#home_login_submit"
    history_button: str = "#href-view-24month-history"
    history_container: str = "tbody.desktop-pdpore-table.account-list-tbody.scrollTable"
    history_row: str = (
        '//tr[contains(@class, "billed_history_panel")][.//span[contains(text(), "Bill Charges")]]'
    )
    bill_link: str = 'a[title="view bill pdf"]'
    bill_date_attribute: str = "data-date"

    @classmethod
    def from_config(cls, overrides: dict[str, str] | None) -> PortalSelectors:
        """Build selectors, replacing defaults with any configured values."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (overrides or {}).items() if k in known})


@dataclass(frozen=True)
class BillLink:
    """Opaque handle to one document-view link of a history row."""

    rank: int
    position: int
    handle: Any = None


class WebSession(Protocol):
    """Blocking browser capability used by the pipeline.

    Timeouts are in seconds. Methods raise
    :class:`~pge_billing.exceptions.NavigationTimeout` when an awaited condition
    does not occur in time, and
    :class:`~pge_billing.exceptions.WebSessionError` for any other browser failure.
    """

    def goto(self, url: str) -> None: ...

    def reload(self) -> None: ...

    def current_url(self) -> str: ...

    def pause(self, seconds: float) -> None: ...

    def wait_for(self, selector: str, timeout: float, state: str = "visible") -> None: ...

    def is_present(self, selector: str) -> bool: ...

    def click(self, selector: str, timeout: float, navigation_timeout: float | None = None) -> None: ...

    def type_text(self, selector: str, text: str) -> None: ...

    def cookies(self) -> list[dict[str, Any]]: ...

    def add_cookies(self, cookies: list[dict[str, Any]]) -> None: ...

    def local_storage(self) -> dict[str, str]: ...

    def restore_local_storage(self, items: dict[str, str]) -> None: ...

    def history_row_links(self, rank: int) -> list[BillLink] | None: ...

    def read_attribute(self, link: BillLink, name: str) -> str | None: ...

    def download(self, link: BillLink, destination: Path, timeout: float) -> Path: ...


def _translate_errors(action: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Wrap a PlaywrightSession method so Playwright errors become WebSession errors."""

    def decorator(method: Callable[..., Any]) -> Callable[..., Any]:
        def wrapper(self: PlaywrightSession, *args: Any, **kwargs: Any) -> Any:
            try:
                return method(self, *args, **kwargs)
            except PlaywrightTimeout as e:
                msg = f"Timed out during {action}: {e}"
                raise NavigationTimeout(msg) from e
            except PlaywrightError as e:
                msg = f"Browser error during {action}: {e}"
                raise WebSessionError(msg) from e

        wrapper.__name__ = method.__name__
        wrapper.__doc__ = method.__doc__
        return wrapper

    return decorator


class PlaywrightSession:
    """WebSession backed by one Playwright page.

    Parameters
    ----------
    context : BrowserContext
        Context owning the page; used for cookies and init scripts.
    page : Page
        The single page driven for the whole run.
    selectors : PortalSelectors
        Selectors used to address history rows and their links.
    row_settle_seconds : float
        Fixed pause after scrolling a row into view (no readiness signal exists).
    """

    def __init__(
        self,
        context: BrowserContext,
        page: Page,
        selectors: PortalSelectors,
        row_settle_seconds: float = 1.0,
    ) -> None:
        self.context = context
        self.page = page
        self.selectors = selectors
        self.row_settle_seconds = row_settle_seconds

    @_translate_errors("navigation")
    def goto(self, url: str) -> None:
        self.page.goto(url, wait_until="networkidle")

    @_translate_errors("reload")
    def reload(self) -> None:
        self.page.reload(wait_until="networkidle")

    def current_url(self) -> str:
        return self.page.url

    @_translate_errors("pause")
    def pause(self, seconds: float) -> None:
        self.page.wait_for_timeout(seconds * 1000)

    @_translate_errors("wait for element")
    def wait_for(self, selector: str, timeout: float, state: str = "visible") -> None:
        self.page.wait_for_selector(selector, state=state, timeout=timeout * 1000)  # type: ignore[arg-type]

    @_translate_errors("element lookup")
    def is_present(self, selector: str) -> bool:
        return self.page.query_selector(selector) is not None

    @_translate_errors("click")
    def click(self, selector: str, timeout: float, navigation_timeout: float | None = None) -> None:
        locator = self.page.locator(selector).first
        if navigation_timeout is None:
            locator.click(timeout=timeout * 1000)
            return

        # Post-login redirects may chain through several pages
        with self.page.expect_navigation(wait_until="networkidle", timeout=navigation_timeout * 1000):
            locator.click(timeout=timeout * 1000)

    @_translate_errors("typing")
    def type_text(self, selector: str, text: str) -> None:
        self.page.locator(selector).first.press_sequentially(text)

    @_translate_errors("cookie read")
    def cookies(self) -> list[dict[str, Any]]:
        return [dict(cookie) for cookie in self.context.cookies()]

    @_translate_errors("cookie restore")
    def add_cookies(self, cookies: list[dict[str, Any]]) -> None:
        if cookies:
            self.context.add_cookies(cookies)  # type: ignore[arg-type]

    @_translate_errors("local storage read")
    def local_storage(self) -> dict[str, str]:
        items = self.page.evaluate("() => Object.assign({}, window.localStorage)")
        return {str(k): str(v) for k, v in (items or {}).items()}

    @_translate_errors("local storage restore")
    def restore_local_storage(self, items: dict[str, str]) -> None:
        if not items:
            return
        # Seed only keys the site has not set itself during this run
        script = (
            "(() => { const items = %s;"
            " for (const [k, v] of Object.entries(items)) {"
            "  if (window.localStorage.getItem(k) === null) window.localStorage.setItem(k, v);"
            " } })();"
        ) % json.dumps(items)
        self.context.add_init_script(script)

    def _row(self, rank: int) -> Locator:
        return self.page.locator(f"xpath=({self.selectors.history_row})[{rank}]")

    @_translate_errors("history row lookup")
    def history_row_links(self, rank: int) -> list[BillLink] | None:
        row = self._row(rank)
        if row.count() == 0:
            return None

        row.first.scroll_into_view_if_needed()
        self.pause(self.row_settle_seconds)

        links = row.first.locator(self.selectors.bill_link)
        return [
            BillLink(rank=rank, position=i, handle=links.nth(i))
            for i in range(links.count())
            if links.nth(i).is_visible()
        ]

    @_translate_errors("attribute read")
    def read_attribute(self, link: BillLink, name: str) -> str | None:
        return link.handle.get_attribute(name)  # type: ignore[no-any-return]

    @_translate_errors("download")
    def download(self, link: BillLink, destination: Path, timeout: float) -> Path:
        """Click a bill link and save the resulting download to ``destination``."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        # expect_download waits for download event triggered by the click
        with self.page.expect_download(timeout=timeout * 1000) as download_info:
            link.handle.click()

        download_info.value.save_as(destination)
        return destination


def create_browser(playwright: Playwright, headless: bool = False) -> Browser:
    """Create a Chromium browser instance.

    Parameters
    ----------
    playwright : Playwright
        Playwright instance from sync_playwright context.
    headless : bool, optional
        Run browser in headless mode. The portal is friendlier to a visible
        window, so the default is False.

    Returns
    -------
    Browser
        Configured Chromium browser instance.
    """
    return playwright.chromium.launch(
        headless=headless,
        args=[
            "--disable-blink-features=AutomationControlled",
            "--disable-dev-shm-usage",  # Prevents /dev/shm overflow in Docker
        ],
    )


def create_browser_context(browser: Browser) -> BrowserContext:
    """Create a browser context with a desktop Chrome fingerprint and downloads enabled."""
    return browser.new_context(
        viewport={"width": 1920, "height": 1080},
        user_agent=USER_AGENT,
        accept_downloads=True,
    )


@contextmanager
def browser_session(
    selectors: PortalSelectors | None = None,
    headless: bool = False,
    timeout: float = 30.0,
    row_settle_seconds: float = 1.0,
) -> Generator[PlaywrightSession, None, None]:
    """Context manager for a complete browser session.

    Parameters
    ----------
    selectors : PortalSelectors, optional
        Portal selectors; defaults to the built-in set.
    headless : bool, optional
        Run browser in headless mode.
    timeout : float, optional
        Default Playwright timeout in seconds for actions without their own bound.
    row_settle_seconds : float, optional
        Pause after scrolling each history row into view.

    Yields
    ------
    PlaywrightSession
        Session over a fresh page.

    Notes
    -----
    Ensures proper cleanup of all browser resources even on exceptions.
    """
    with sync_playwright() as playwright:
        browser = create_browser(playwright, headless=headless)
        context = create_browser_context(browser)
        context.set_default_timeout(timeout * 1000)
        page = context.new_page()
        logger.debug("Browser session opened (headless=%s)", headless)

        try:
            yield PlaywrightSession(context, page, selectors or PortalSelectors(), row_settle_seconds)
        finally:
            # Cleanup in reverse order: context closes pages, browser closes contexts
            context.close()
            browser.close()
            logger.debug("Browser session closed")
