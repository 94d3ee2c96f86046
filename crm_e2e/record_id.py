"""
Record ID extraction from the current page location.

After Save, Lightning navigates to `/lightning/r/{Object}/{id}/view`, but
the URL often settles late and occasionally arrives without the object
segment (`/lightning/r/{id}/view`) until the page is reloaded.
"""

import logging
import re

from playwright.sync_api import Error as PlaywrightError

from crm_e2e.errors import RecordIdNotFoundError, WaitTimeoutError
from crm_e2e.utils import capture_diagnostics
from crm_e2e.waits import linear_backoff, page_sleeper, poll_until

logger = logging.getLogger("crm_e2e")

# 15-char case-sensitive or 18-char case-insensitive record ID
RECORD_ID = r"[a-zA-Z0-9]{15,18}"

_FALLBACK_RE = re.compile(rf"/r/({RECORD_ID})/view")

_LIVE_HREF_JS = "() => window.location.href"


def _strict_re(object_name: str):
    return re.compile(rf"/{re.escape(object_name)}/({RECORD_ID})/view")


def match_record_id(url: str, object_name: str, allow_fallback: bool = True) -> str | None:
    """Return the record ID in *url*, or None. Strict (object-qualified) pattern wins."""
    if not url:
        return None
    m = _strict_re(object_name).search(url)
    if m:
        return m.group(1)
    if allow_fallback:
        m = _FALLBACK_RE.search(url)
        if m:
            return m.group(1)
    return None


def _live_href(page) -> str:
    try:
        return page.evaluate(_LIVE_HREF_JS) or ""
    except PlaywrightError as e:
        # Execution context is torn down mid-navigation
        logger.debug(f"  window.location.href unavailable: {e}")
        return ""


def extract_record_id(page, object_name: str, timeout_ms: int = 10_000, *,
                      allow_fallback: bool = True, delay=None) -> str:
    """
    Poll the page location until it carries a record ID for *object_name*.

    Each attempt reads page.url and the live window.location.href, tries the
    strict `/{Object}/{id}/view` pattern on both, then (when *allow_fallback*)
    the loose `/r/{id}/view` pattern on both. If the first attempt finds the
    object segment missing, the page is reloaded exactly once.

    Raises:
        RecordIdNotFoundError: no ID appeared within *timeout_ms*.
    """
    strict = _strict_re(object_name)
    state = {"attempt": 0, "reloaded": False, "last_url": ""}

    def probe():
        state["attempt"] += 1
        url = page.url
        href = _live_href(page)
        state["last_url"] = href or url

        for source, candidate in (("page.url", url), ("window.location.href", href)):
            m = strict.search(candidate)
            if m:
                logger.info(f"✅ Found {object_name} ID in {source} (attempt {state['attempt']}): {m.group(1)}")
                return m.group(1)

        if allow_fallback:
            for source, candidate in (("page.url", url), ("window.location.href", href)):
                m = _FALLBACK_RE.search(candidate)
                if m:
                    logger.info(
                        f"✅ Found {object_name} ID in {source} using fallback pattern "
                        f"(attempt {state['attempt']}): {m.group(1)}"
                    )
                    return m.group(1)

        if state["attempt"] == 1 and not state["reloaded"] and f"/{object_name}/" not in url:
            state["reloaded"] = True
            logger.info(f"⚠️ URL missing /{object_name}/ segment, reloading once...")
            try:
                page.reload(wait_until="load", timeout=3_000)
                page.wait_for_timeout(500)
            except PlaywrightError as e:
                logger.info(f"⚠️ Reload failed ({e}), continuing with polling")
        return None

    try:
        return poll_until(
            probe,
            timeout_ms,
            f"{object_name} record ID",
            delay=delay or linear_backoff(),
            sleep=page_sleeper(page),
        )
    except WaitTimeoutError as e:
        capture_diagnostics(page, f"record_id_{object_name}")
        raise RecordIdNotFoundError(object_name, timeout_ms, e.elapsed_ms, state["last_url"]) from e
