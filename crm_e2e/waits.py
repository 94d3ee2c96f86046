"""
Polling primitive and the condition waits built on it.

Every wait here is bounded: it either returns the first truthy result of
its probe or raises WaitTimeoutError once the budget is spent. Probes may
run many times, so they must be safe to repeat (visibility checks and URL
reads, never clicks).

Between attempts the loop sleeps through page.wait_for_timeout() when a
page is available, so Playwright keeps dispatching page events while we
wait.
"""

import logging
import time
from typing import Callable, Optional

from playwright.sync_api import Error as PlaywrightError

from crm_e2e.errors import WaitTimeoutError

logger = logging.getLogger("crm_e2e")

BACKOFF_BASE_MS = 500
BACKOFF_CAP_MS = 2_000
DEFAULT_TIMEOUT_MS = 10_000

# Any of these rendered means the Lightning shell is interactive.
LIGHTNING_READY = "lightning-formatted-text, lightning-input, one-appnav"


def linear_backoff(base_ms: int = BACKOFF_BASE_MS, cap_ms: int = BACKOFF_CAP_MS) -> Callable[[int], int]:
    """Delay that grows with the attempt number: min(attempt * base, cap)."""
    def delay(attempt: int) -> int:
        return min(attempt * base_ms, cap_ms)
    return delay


def fixed_delay(ms: int) -> Callable[[int], int]:
    """Same delay after every attempt."""
    return lambda attempt: ms


def backoff_from(config) -> Callable[[int], int]:
    """linear_backoff() using the tuned constants from a CrmConfig."""
    return linear_backoff(config.backoff_base_ms, config.backoff_cap_ms)


def page_sleeper(page) -> Callable[[int], None]:
    """Sleep through the page so Playwright keeps servicing it."""
    return page.wait_for_timeout


def _thread_sleep(ms: float) -> None:
    time.sleep(ms / 1000)


def poll_until(
    action: Callable[[], object],
    timeout_ms: int,
    description: str,
    *,
    delay: Optional[Callable[[int], int]] = None,
    sleep: Optional[Callable[[float], None]] = None,
    clock: Callable[[], float] = time.monotonic,
):
    """
    Call *action* until it returns something truthy or *timeout_ms* runs out.

    Exceptions from *action* count as a failed attempt. The wait after the
    last attempt is clipped to the remaining budget, so a failing poll
    raises within timeout_ms plus one attempt's own latency.

    Args:
        action: Zero-arg probe. A truthy return value ends the poll.
        timeout_ms: Total budget in milliseconds.
        description: What is being awaited, used in logs and the error.
        delay: attempt number (1-based) -> ms to wait. Defaults to linear_backoff().
        sleep: ms -> None. Defaults to time.sleep.
        clock: Monotonic seconds source.

    Returns:
        The first truthy value returned by *action*.

    Raises:
        WaitTimeoutError: with elapsed time, budget and the last probe error.
    """
    delay = delay or linear_backoff()
    sleep = sleep or _thread_sleep

    start = clock()
    attempt = 0
    last_error = None
    while True:
        attempt += 1
        try:
            result = action()
        except Exception as exc:
            last_error = exc
            logger.debug(f"  [poll] {description} — attempt {attempt} raised: {exc}")
        else:
            if result:
                if attempt > 1:
                    logger.debug(f"  [poll] {description} — satisfied on attempt {attempt}")
                return result
            logger.debug(f"  [poll] {description} — not yet (attempt {attempt})")

        elapsed_ms = (clock() - start) * 1000
        remaining_ms = timeout_ms - elapsed_ms
        if remaining_ms <= 0:
            logger.warning(
                f"Gave up waiting for {description} after {attempt} attempt(s), {int(elapsed_ms)}ms"
            )
            raise WaitTimeoutError(description, timeout_ms, int(elapsed_ms), last_error)

        sleep(min(delay(attempt), remaining_ms))


# ── Condition waits ──────────────────────────────────────────────────────

def wait_for_url(page, marker: str = "/lightning/r/", timeout_ms: int = DEFAULT_TIMEOUT_MS,
                 delay: Optional[Callable[[int], int]] = None) -> str:
    """Wait until *marker* appears in page.url. Returns the matching URL."""
    url = poll_until(
        lambda: page.url if marker in page.url else None,
        timeout_ms,
        f"URL containing '{marker}'",
        delay=delay or fixed_delay(500),
        sleep=page_sleeper(page),
    )
    logger.info(f"✅ Record page URL detected: {url}")
    return url


def expect_text_visible(page, text: str, timeout_ms: int = DEFAULT_TIMEOUT_MS, *,
                        exact: bool = False, delay: Optional[Callable[[int], int]] = None) -> None:
    """Wait until *text* is visible anywhere on the page."""
    locator = page.get_by_text(text, exact=exact).first
    poll_until(
        locator.is_visible,
        timeout_ms,
        f"text '{text}' visible",
        delay=delay,
        sleep=page_sleeper(page),
    )
    logger.info(f"✅ \"{text}\" is visible")


def wait_for_locator_visible(locator, timeout_ms: int = DEFAULT_TIMEOUT_MS, *,
                             description: str = "locator visible",
                             delay: Optional[Callable[[int], int]] = None) -> None:
    """Wait until an already-resolved locator is visible."""
    poll_until(
        locator.is_visible,
        timeout_ms,
        description,
        delay=delay,
        sleep=page_sleeper(locator.page),
    )


def wait_for_lightning_load(page, timeout_ms: int = 15_000, *,
                            delay: Optional[Callable[[int], int]] = None,
                            clock: Callable[[], float] = time.monotonic) -> None:
    """
    Wait for DOM content plus at least one rendered Lightning component.

    Both phases share one *timeout_ms* budget; the component poll only gets
    what the load-state wait left over.
    """
    description = "Lightning components rendered"
    started = clock()

    def elapsed_ms() -> int:
        return int((clock() - started) * 1000)

    try:
        page.wait_for_load_state("domcontentloaded", timeout=timeout_ms)
    except PlaywrightError as e:
        raise WaitTimeoutError(description, timeout_ms, elapsed_ms(), e) from e

    remaining_ms = timeout_ms - elapsed_ms()
    if remaining_ms <= 0:
        raise WaitTimeoutError(description, timeout_ms, elapsed_ms())
    try:
        poll_until(
            lambda: page.query_selector(LIGHTNING_READY),
            remaining_ms,
            description,
            delay=delay,
            sleep=page_sleeper(page),
            clock=clock,
        )
    except WaitTimeoutError as e:
        raise WaitTimeoutError(description, timeout_ms, elapsed_ms(), e.last_error) from e
    logger.info(f"⚡ Lightning UI ready in {elapsed_ms()}ms")


def retry(fn: Callable[[], object], retries: int = 5, delay_ms: int = 1_000,
          on_retry: Optional[Callable[[Exception, int], None]] = None,
          sleep: Optional[Callable[[float], None]] = None):
    """
    Call *fn* up to *retries* times, re-raising the final failure.

    Unlike poll_until this counts attempts rather than time and treats only
    exceptions as failure. Suited to REST polling and SOQL checks.
    """
    if retries < 1:
        raise ValueError(f"retries must be >= 1, got: {retries!r}")
    sleep = sleep or _thread_sleep
    for attempt in range(1, retries + 1):
        try:
            return fn()
        except Exception as exc:
            if attempt == retries:
                raise
            if on_retry is not None:
                on_retry(exc, attempt)
            logger.warning(f"🔁 Attempt {attempt}/{retries} failed: {exc}")
            sleep(delay_ms)
