"""Portal authentication with bounded retries and persisted session snapshots.

The retry policy is the pure function :func:`advance`, which maps the current
:class:`SessionState` and the outcome of the last step to the next state and the
action to perform. :class:`SessionManager` is the effectful executor: it performs
each action against a :class:`~pge_billing.scraper.browser.WebSession` and feeds
the outcome back into :func:`advance`.

State machine
-------------
``Unauthenticated | Expired -> Authenticating -> Authenticated | Unauthenticated``

A restored snapshot starts in ``Expired`` (valid cookies are plausible but not
verified). Each failed attempt returns to ``Unauthenticated``; after
``max_attempts`` failures the manager gives up and the run is aborted by the
caller.
"""

from __future__ import annotations

import json
import os
import random
import tempfile
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pge_billing.config import DEFAULT_RETRY_COUNT, setup_logging
from pge_billing.exceptions import NavigationTimeout, WebSessionError
from pge_billing.scraper.browser import PortalSelectors

if TYPE_CHECKING:
    from pge_billing.config import Credentials, Settings
    from pge_billing.scraper.browser import WebSession

logger = setup_logging(__name__)

DEFAULT_TIMEOUTS: dict[str, float] = {
    "consent": 2.0,
    "login_submit": 10.0,
    "post_login_navigation": 30.0,
    "history_button": 6.0,
    "history_container": 30.0,
}
DEFAULT_WAITS: dict[str, float] = {
    "after_navigation": 2.0,
    "before_submit": 3.0,
}
DEFAULT_BACKOFF: dict[str, float] = {
    "reload_delay": 1.0,
    "jitter_min": 6.0,
    "jitter_max": 10.0,
}


class AuthStatus(Enum):
    """Authentication status of the browser session."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


class AttemptOutcome(Enum):
    """Result reported by the executor for the step it just performed."""

    START = "start"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class AuthAction(Enum):
    """Next effect the executor must perform."""

    ATTEMPT = "attempt"
    RETRY = "retry"
    PERSIST = "persist"
    GIVE_UP = "give_up"
    NONE = "none"


@dataclass(frozen=True)
class SessionState:
    """Authentication status plus the opaque artifacts that can restore it."""

    status: AuthStatus = AuthStatus.UNAUTHENTICATED
    cookies: list[dict[str, Any]] = field(default_factory=list)
    storage: dict[str, str] = field(default_factory=dict)
    attempts: int = 0


@dataclass(frozen=True)
class Transition:
    """Output of :func:`advance`."""

    state: SessionState
    action: AuthAction


@dataclass(frozen=True)
class AuthResult:
    """Result of :meth:`SessionManager.ensure_authenticated`."""

    success: bool
    state: SessionState
    error: str | None = None


def advance(state: SessionState, outcome: AttemptOutcome, max_attempts: int) -> Transition:
    """Compute the next state and action of the login retry loop.

    Parameters
    ----------
    state : SessionState
        Current state.
    outcome : AttemptOutcome
        ``START`` to begin (or resume after a retry), otherwise the result of
        the attempt that just ran.
    max_attempts : int
        Number of failed attempts after which the loop gives up.

    Returns
    -------
    Transition
        Next state and the action the executor must perform.

    Raises
    ------
    ValueError
        If ``outcome`` is not valid for ``state.status``.
    """
    if outcome is AttemptOutcome.START:
        if state.status is AuthStatus.AUTHENTICATED:
            return Transition(state, AuthAction.NONE)
        if state.status is AuthStatus.AUTHENTICATING:
            msg = "Cannot start an attempt while one is already in progress"
            raise ValueError(msg)
        return Transition(replace(state, status=AuthStatus.AUTHENTICATING), AuthAction.ATTEMPT)

    if state.status is not AuthStatus.AUTHENTICATING:
        msg = f"Outcome {outcome.value} is only valid while authenticating (status: {state.status.value})"
        raise ValueError(msg)

    attempts = state.attempts + 1
    if outcome is AttemptOutcome.SUCCEEDED:
        return Transition(
            replace(state, status=AuthStatus.AUTHENTICATED, attempts=attempts),
            AuthAction.PERSIST,
        )

    failed = replace(state, status=AuthStatus.UNAUTHENTICATED, attempts=attempts)
    if attempts >= max_attempts:
        return Transition(failed, AuthAction.GIVE_UP)
    return Transition(failed, AuthAction.RETRY)


def _atomic_write_json(path: Path, payload: Any) -> None:
    """Write JSON atomically (write to temp, then rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(suffix=".json", prefix=f".{path.stem}_", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
            f.write("\n")
        Path(temp_path).replace(path)
    except Exception:
        if Path(temp_path).exists():
            Path(temp_path).unlink()
        raise


@dataclass
class SessionSnapshotStore:
    """Cookie and local-storage snapshots persisted as two independent files.

    Each file is replaced atomically on its own, so an interrupted save leaves
    at least one artifact intact and never a half-written file.
    """

    directory: Path
    cookies_name: str = "cookies.json"
    storage_name: str = "local_storage.json"

    @property
    def cookies_path(self) -> Path:
        return self.directory / self.cookies_name

    @property
    def storage_path(self) -> Path:
        return self.directory / self.storage_name

    def _read(self, path: Path, expected: type) -> Any:
        if not path.exists():
            return expected()
        try:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable session snapshot %s: %s", path.name, e)
            return expected()
        if not isinstance(data, expected):
            logger.warning("Ignoring malformed session snapshot %s", path.name)
            return expected()
        return data

    def load(self) -> tuple[list[dict[str, Any]], dict[str, str]]:
        """Return ``(cookies, storage)``; missing or corrupt artifacts load empty."""
        return self._read(self.cookies_path, list), self._read(self.storage_path, dict)

    def save(self, cookies: list[dict[str, Any]], storage: dict[str, str]) -> None:
        _atomic_write_json(self.cookies_path, cookies)
        _atomic_write_json(self.storage_path, storage)
        logger.debug("Saved session snapshot: %d cookies, %d storage keys", len(cookies), len(storage))


class SessionManager:
    """Executor for the login state machine.

    Parameters
    ----------
    credentials : Credentials | None
        Account credentials; only needed when the restored session is not valid.
    selectors : PortalSelectors
        Portal selectors for consent, login and history controls.
    snapshot_store : SessionSnapshotStore
        Where session snapshots are read at start and written on success.
    max_attempts : int, optional
        Attempts before terminal failure (``N_RETRY``).
    timeouts, waits, backoff : dict[str, float], optional
        Overrides for :data:`DEFAULT_TIMEOUTS`, :data:`DEFAULT_WAITS` and
        :data:`DEFAULT_BACKOFF`, in seconds.
    """

    def __init__(
        self,
        credentials: Credentials | None,
        selectors: PortalSelectors,
        snapshot_store: SessionSnapshotStore,
        max_attempts: int = DEFAULT_RETRY_COUNT,
        timeouts: dict[str, float] | None = None,
        waits: dict[str, float] | None = None,
        backoff: dict[str, float] | None = None,
    ) -> None:
        self.credentials = credentials
        self.selectors = selectors
        self.snapshot_store = snapshot_store
        self.max_attempts = max(1, max_attempts)
        self.timeouts = {**DEFAULT_TIMEOUTS, **(timeouts or {})}
        self.waits = {**DEFAULT_WAITS, **(waits or {})}
        self.backoff = {**DEFAULT_BACKOFF, **(backoff or {})}

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionManager:
        portal = settings.section("portal")
        retry = settings.section("retry")
        return cls(
            credentials=settings.credentials,
            selectors=PortalSelectors.from_config(portal.get("selectors")),
            snapshot_store=SessionSnapshotStore(settings.session_dir),
            max_attempts=int(retry.get("max_attempts", DEFAULT_RETRY_COUNT)),
            timeouts=portal.get("timeouts"),
            waits=portal.get("waits"),
            backoff=retry.get("backoff"),
        )

    # -------------------------------------------------------------------------
    # Driver
    # -------------------------------------------------------------------------

    def ensure_authenticated(self, session: WebSession, portal_url: str) -> AuthResult:
        """Authenticate ``session`` and unlock the statement history.

        Returns
        -------
        AuthResult
            ``success`` is ``False`` only after ``max_attempts`` failed attempts.
        """
        state = self.restore_snapshot(session)
        transition = advance(state, AttemptOutcome.START, self.max_attempts)

        while True:
            state, action = transition.state, transition.action
            logger.debug("Session %s -> %s", state.status.value, action.value)

            if action is AuthAction.ATTEMPT:
                logger.info("Login attempt %d/%d", state.attempts + 1, self.max_attempts)
                outcome = AttemptOutcome.SUCCEEDED if self._attempt(session, portal_url) else AttemptOutcome.FAILED
                transition = advance(state, outcome, self.max_attempts)
            elif action is AuthAction.RETRY:
                logger.info("Failed to log in, refreshing page and retrying...")
                self._recover(session)
                transition = advance(state, AttemptOutcome.START, self.max_attempts)
            elif action is AuthAction.PERSIST:
                logger.info("Successfully logged in")
                return AuthResult(True, self._persist(session, state))
            elif action is AuthAction.NONE:
                return AuthResult(True, state)
            else:
                logger.error("Failed to log in after %d attempts", state.attempts)
                return AuthResult(False, state, f"Authentication failed after {state.attempts} attempts")

    def restore_snapshot(self, session: WebSession) -> SessionState:
        """Load the persisted snapshot into ``session`` before the first attempt."""
        cookies, storage = self.snapshot_store.load()
        if not cookies and not storage:
            return SessionState()

        try:
            session.add_cookies(cookies)
            session.restore_local_storage(storage)
        except WebSessionError as e:
            logger.warning("Could not restore previous session, starting fresh: %s", e)
            return SessionState()

        logger.info("Restored previous session (%d cookies, %d storage keys)", len(cookies), len(storage))
        return SessionState(AuthStatus.EXPIRED, cookies, storage)

    # -------------------------------------------------------------------------
    # Effects
    # -------------------------------------------------------------------------

    def _attempt(self, session: WebSession, portal_url: str) -> bool:
        """Run one full login-and-unlock attempt; any step failure abandons it."""
        try:
            self._dismiss_consent(session)

            logger.info("Initial navigation to %s", portal_url)
            session.goto(portal_url)
            session.pause(self.waits["after_navigation"])

            if "login" in session.current_url().lower():
                logger.info("Redirected to login page")
                if session.is_present(self.selectors.signed_in_indicator):
                    logger.info("Already logged in")
                elif not self._submit_credentials(session):
                    return False

            logger.info("After handling login, navigating to %s", portal_url)
            session.goto(portal_url)
            logger.debug("Current page: %s", session.current_url())

            session.wait_for(self.selectors.history_button, self.timeouts["history_button"])
            session.click(self.selectors.history_button, self.timeouts["history_button"])
            session.wait_for(
                self.selectors.history_container,
                self.timeouts["history_container"],
                state="attached",
            )
        except WebSessionError as e:
            logger.warning("Failed to log in: %s", e)
            return False

        return True

    def _submit_credentials(self, session: WebSession) -> bool:
        if self.credentials is None:
            logger.error("Login form shown but no credentials are configured")
            return False

        logger.info("Filling in username and password")
        session.type_text(self.selectors.username_field, self.credentials.username)
        session.type_text(self.selectors.password_field, self.credentials.password)
        session.wait_for(self.selectors.login_submit, self.timeouts["login_submit"])

        # Fixed pause: the form rejects instant submissions
        session.pause(self.waits["before_submit"])
        session.click(
            self.selectors.login_submit,
            self.timeouts["login_submit"],
            navigation_timeout=self.timeouts["post_login_navigation"],
        )
        logger.info("Clicked login button")
        return True

    def _dismiss_consent(self, session: WebSession) -> None:
        """Reject the cookie consent dialog if it shows up; absence is fine."""
        selector = self.selectors.consent_reject
        try:
            session.wait_for(selector, self.timeouts["consent"])
        except NavigationTimeout:
            logger.info("No cookie consent window found")
            return

        try:
            session.click(selector, self.timeouts["consent"])
            # The dialog blocks the login button until it is hidden
            session.wait_for(selector, self.timeouts["consent"], state="hidden")
        except WebSessionError as e:
            logger.info("Cookie consent window could not be dismissed: %s", e)

    def _recover(self, session: WebSession) -> None:
        """Reload the page and back off for a jittered delay before the next attempt."""
        delay = random.uniform(self.backoff["jitter_min"], self.backoff["jitter_max"])
        try:
            session.pause(self.backoff["reload_delay"])
            session.reload()
            logger.debug("Waiting %.1fs before retry", delay)
            session.pause(delay)
        except WebSessionError as e:
            logger.warning("Recovery failed, next attempt will navigate afresh: %s", e)

    def _persist(self, session: WebSession, state: SessionState) -> SessionState:
        """Capture and store the session snapshot; failure to store is not fatal."""
        try:
            cookies = session.cookies()
            storage = session.local_storage()
        except WebSessionError as e:
            logger.warning("Could not capture session snapshot: %s", e)
            return state

        try:
            self.snapshot_store.save(cookies, storage)
        except OSError as e:
            logger.warning("Could not save session snapshot: %s", e)

        return replace(state, cookies=cookies, storage=storage)
