"""
Authentication module: UI login and session persistence.

Flow:
  - Replay cookies from the persisted session file and open the app.
  - Decide whether that session still authenticates.
  - If not (or if no file exists), log in through the form, hand control to
    a human when a verification challenge appears, then persist the new
    cookies for the next run.

Machine tokens for the REST API live in crm_e2e.oauth.
"""

import enum
import json
import logging
import os

from filelock import FileLock
from playwright.sync_api import Error as PlaywrightError

from crm_e2e.errors import AuthenticationError, WaitTimeoutError
from crm_e2e.utils import capture_diagnostics, get_session_path
from crm_e2e.waits import fixed_delay, page_sleeper, poll_until

logger = logging.getLogger("crm_e2e")

# Lightning keeps long-polling; never use "networkidle"
WAIT_STRATEGY = "domcontentloaded"
NAV_TIMEOUT = 60_000

# Seconds another process may wait for the session bootstrap to finish
LOCK_TIMEOUT = 600

# Verification ("Verify Your Identity") interstitial
CHALLENGE_URL_MARKERS = ["/_ui/identity/verification", "/identity/verification"]
CHALLENGE_SELECTORS = ["input#emc", "input#tc", "text=Verify Your Identity"]


class SessionState(enum.Enum):
    NO_SESSION = "no_session"
    SESSION_UNTESTED = "session_untested"
    SESSION_VALID = "session_valid"
    SESSION_EXPIRED = "session_expired"
    AUTHENTICATING = "authenticating"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AUTHENTICATED = "authenticated"


def is_authenticated_url(url: str, markers) -> bool:
    """True if *url* is inside the application shell."""
    return any(marker in (url or "") for marker in markers)


def count_visible(page, selectors) -> int:
    """How many of *selectors* currently match a visible element."""
    visible = 0
    for selector in selectors:
        try:
            if page.locator(selector).first.is_visible():
                visible += 1
        except PlaywrightError:
            continue
    return visible


# ── Session file ─────────────────────────────────────────────────────────

def load_session(session_path: str) -> dict | None:
    """Read the persisted session. Returns None when absent or unusable."""
    if not os.path.exists(session_path):
        return None
    try:
        with open(session_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Session file unreadable ({e}) — ignoring it")
        return None
    if not isinstance(data, dict) or not isinstance(data.get("cookies"), list):
        logger.warning("Session file has no cookies array — ignoring it")
        return None
    return data


def delete_session(session_path: str) -> None:
    try:
        os.remove(session_path)
        logger.info(f"Deleted stale session: {session_path}")
    except FileNotFoundError:
        pass


def save_session(context, session_path: str) -> None:
    """Save browser session (cookies + origins) for future runs."""
    directory = os.path.dirname(session_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    context.storage_state(path=session_path)
    logger.info(f"Session saved to: {session_path}")


# ── Second-factor hand-off ───────────────────────────────────────────────

def console_confirmation(page) -> None:
    """Block until a human confirms on the console that verification is done."""
    print("\n" + "=" * 60)
    print("  VERIFICATION REQUIRED")
    print("=" * 60)
    print("\n  Complete the identity verification in the browser window,")
    print("  then come back here.")
    input("\n  Press Enter once you are signed in: ")


def inspector_confirmation(page) -> None:
    """Open the Playwright Inspector; resuming it signals completion."""
    logger.info("Pausing in Playwright Inspector — resume once verification is done")
    page.pause()


# ── Session manager ──────────────────────────────────────────────────────

class SessionManager:
    """
    Owns the authenticated browser context for one run.

    Args:
        context: Playwright BrowserContext to authenticate.
        config: CrmConfig.
        confirm: Called with the page when a verification challenge is shown;
            must return only once the challenge has been completed.
        session_path: Override for the persisted session file.
    """

    def __init__(self, context, config, confirm=console_confirmation, session_path: str = None):
        self._context = context
        self._config = config
        self._confirm = confirm
        self._session_path = session_path or get_session_path(config)
        self._lock = FileLock(self._session_path + ".lock", timeout=LOCK_TIMEOUT)
        self.state = SessionState.NO_SESSION
        self.interactive_logins = 0

    def _set_state(self, state: SessionState) -> None:
        logger.debug(f"  [session] {self.state.value} → {state.value}")
        self.state = state

    def _is_authenticated(self, page) -> bool:
        return is_authenticated_url(page.url, self._config.authenticated_url_markers)

    def _challenge_shown(self, page) -> bool:
        if any(marker in page.url for marker in CHALLENGE_URL_MARKERS):
            return True
        return count_visible(page, CHALLENGE_SELECTORS) > 0

    # ── Persisted session ────────────────────────────────────────────────

    def check_persisted_session(self, page, session: dict) -> bool:
        """
        Apply persisted cookies, open the app and decide if they still work.

        An app-shell URL is accepted straight away. Otherwise the session is
        only declared expired once at least login_indicator_minimum login-form
        elements are visible together; a lone match is noise. If neither
        signal shows up within the budget the session is kept.
        """
        self._set_state(SessionState.SESSION_UNTESTED)
        cfg = self._config
        logger.info("Checking if saved session is still valid...")

        try:
            self._context.add_cookies(session["cookies"])
            page.goto(cfg.base_url, wait_until=WAIT_STRATEGY, timeout=cfg.scaled(NAV_TIMEOUT))
        except PlaywrightError as e:
            logger.warning(f"Session check failed: {e}")
            self._set_state(SessionState.SESSION_EXPIRED)
            return False

        def verdict():
            if self._is_authenticated(page):
                return SessionState.SESSION_VALID
            seen = count_visible(page, cfg.login_indicators)
            if seen >= cfg.login_indicator_minimum:
                return SessionState.SESSION_EXPIRED
            if seen:
                logger.debug(f"  [session] {seen} login indicator(s) visible — not conclusive")
            return None

        try:
            result = poll_until(
                verdict,
                cfg.scaled(cfg.session_check_timeout_ms),
                "session verdict",
                delay=fixed_delay(1_000),
                sleep=page_sleeper(page),
            )
        except WaitTimeoutError:
            logger.warning(f"Session check inconclusive — keeping session (URL: {page.url})")
            result = SessionState.SESSION_VALID

        self._set_state(result)
        if result is SessionState.SESSION_VALID:
            logger.info(f"Session is valid — landed on: {page.url}")
            return True
        logger.info(f"Session expired — login form shown at: {page.url}")
        return False

    # ── Interactive login ────────────────────────────────────────────────

    def login(self, page) -> None:
        """
        Log in through the form, pausing for a human on a verification challenge.

        Raises:
            AuthenticationError: the form could not be submitted or the app
                shell never loaded. Not retried.
        """
        cfg = self._config
        cfg.require("base_url", "username", "password")
        self._set_state(SessionState.AUTHENTICATING)
        self.interactive_logins += 1

        logger.info("Starting login flow...")
        try:
            page.goto(cfg.base_url, wait_until=WAIT_STRATEGY, timeout=cfg.scaled(NAV_TIMEOUT))
            page.get_by_label("Username").fill(cfg.username)
            page.get_by_label("Password").fill(cfg.password)
            page.get_by_role("button", name="Log In").click()
        except PlaywrightError as e:
            capture_diagnostics(page, "login_form")
            raise AuthenticationError(f"Login form could not be submitted: {e}") from e
        logger.info(f"Login form submitted for {cfg.username}")

        def outcome():
            if self._is_authenticated(page):
                return "authenticated"
            if self._challenge_shown(page):
                return "challenge"
            return None

        try:
            result = poll_until(
                outcome,
                cfg.scaled(cfg.login_timeout_ms),
                "login outcome",
                delay=fixed_delay(1_000),
                sleep=page_sleeper(page),
            )
        except WaitTimeoutError:
            result = None

        if result == "challenge":
            self._set_state(SessionState.AWAITING_CONFIRMATION)
            logger.info("Verification challenge detected — waiting for manual completion")
            self._confirm(page)
            try:
                page.wait_for_load_state(WAIT_STRATEGY, timeout=cfg.scaled(NAV_TIMEOUT))
            except PlaywrightError:
                pass

        if not self._is_authenticated(page):
            logger.error(f"Final URL after login: {page.url}")
            capture_diagnostics(page, "login_failed")
            raise AuthenticationError(
                f"Login failed — application did not load after sign-in (URL: {page.url}). "
                f"Check credentials and verification."
            )

        self._set_state(SessionState.AUTHENTICATED)
        logger.info(f"Login successful! Landed on: {page.url}")

    # ── Full flow ────────────────────────────────────────────────────────

    def authenticate(self):
        """
        Return a page in an authenticated context, reusing cookies when possible.

        The session file is locked for the whole bootstrap so parallel
        workers never read a half-written file or log in concurrently.
        """
        page = self._context.pages[0] if self._context.pages else self._context.new_page()

        with self._lock:
            session = load_session(self._session_path)
            if session is None:
                logger.info("No saved session found.")
                self._set_state(SessionState.NO_SESSION)
            elif self.check_persisted_session(page, session):
                return page
            else:
                delete_session(self._session_path)
                self._context.clear_cookies()

            self.login(page)
            save_session(self._context, self._session_path)
        return page


def authenticate(context, config, confirm=console_confirmation):
    """Convenience wrapper: build a SessionManager and return the authenticated page."""
    return SessionManager(context, config, confirm=confirm).authenticate()
