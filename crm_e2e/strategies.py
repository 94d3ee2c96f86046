"""
Strategy chains: ordered fallbacks for one semantic UI action.

Lightning re-renders and renames its markup often, so "click Save" or
"pick Acme from the lookup" is expressed as a list of concrete attempts,
most reliable first. The chain runs them in order, isolates each attempt's
errors, stops at the first success and raises StrategyExhaustedError when
nothing worked.

Strategies mutate the page (click/fill). They are tried once each; the
chain never loops over them.
"""

import logging
import re
from collections import namedtuple
from typing import Callable, Optional, Sequence

from crm_e2e.errors import StrategyExhaustedError
from crm_e2e.utils import capture_diagnostics
from crm_e2e.waits import page_sleeper

logger = logging.getLogger("crm_e2e")

# attempt(timeout_ms) -> truthy on success; a falsy return or a raise means "try next".
Strategy = namedtuple("Strategy", ["name", "attempt"])

COMBOBOX_ITEM = "lightning-base-combobox-item"

# Lookups append a "Show more results for "<query>"" row that also matches
# the query text. It opens a search dialog and is never a record.
MORE_RESULTS_MARKER = "Show more"
_MORE_RESULTS_RE = re.compile(r"show\s+more", re.I)


def is_more_results_option(label: Optional[str]) -> bool:
    """True for the lookup's "Show more results" meta-row."""
    return bool(label) and bool(_MORE_RESULTS_RE.search(label))


def run_strategy_chain(
    intent: str,
    strategies: Sequence[Strategy],
    *,
    attempt_timeout_ms: int,
    settle_ms: int = 500,
    page=None,
    sleep: Optional[Callable[[float], None]] = None,
) -> str:
    """
    Try each strategy in order until one succeeds.

    Args:
        intent: Human-readable goal, e.g. "click Save".
        strategies: Ordered by reliability, best first.
        attempt_timeout_ms: Handed to every attempt; keeps one hanging
            strategy from starving the rest.
        settle_ms: Pause after the winning attempt so the UI can react.
        page: Used for the settle pause and for diagnostics on exhaustion.
        sleep: ms -> None override for the settle pause.

    Returns:
        The name of the strategy that succeeded.

    Raises:
        StrategyExhaustedError: every strategy failed.
    """
    if sleep is None and page is not None:
        sleep = page_sleeper(page)

    last_error = None
    for index, strategy in enumerate(strategies, start=1):
        try:
            ok = strategy.attempt(attempt_timeout_ms)
        except Exception as exc:
            last_error = exc
            logger.debug(f"  ⚠️ [{intent}] strategy {index} ({strategy.name}) failed: {exc}")
            continue
        if not ok:
            last_error = f"strategy '{strategy.name}' found no match"
            logger.debug(f"  ⚠️ [{intent}] strategy {index} ({strategy.name}) found no match")
            continue

        logger.info(f"✅ {intent} — strategy {index} ({strategy.name})")
        if settle_ms and sleep is not None:
            sleep(settle_ms)
        return strategy.name

    logger.error(f"❌ {intent} — all {len(strategies)} strategies failed")
    if page is not None:
        capture_diagnostics(page, f"strategy_exhausted_{intent}")
    raise StrategyExhaustedError(intent, len(strategies), last_error)


# ── Dropdown / lookup options ────────────────────────────────────────────

def dropdown_option_strategies(page, value: str) -> list:
    """Strategies that click the lookup result labelled *value*."""

    def first_real_match(timeout_ms):
        options = page.locator(COMBOBOX_ITEM).filter(has_text=value)
        for i in range(options.count()):
            option = options.nth(i)
            if is_more_results_option(option.text_content(timeout=timeout_ms)):
                continue
            option.click(timeout=timeout_ms)
            return True
        return False

    def exact_title(timeout_ms):
        if is_more_results_option(value):
            return False
        page.locator(f'{COMBOBOX_ITEM}[title="{value}"]').click(timeout=timeout_ms)
        return True

    def text_without_marker(timeout_ms):
        (page.locator(COMBOBOX_ITEM)
             .filter(has_text=value)
             .filter(has_not_text=MORE_RESULTS_MARKER)
             .first
             .click(timeout=timeout_ms))
        return True

    return [
        Strategy("combobox item, skipping 'Show more'", first_real_match),
        Strategy("combobox item by exact title", exact_title),
        Strategy("combobox item filtered without 'Show more'", text_without_marker),
    ]


def picklist_option_strategies(page, value: str) -> list:
    """Strategies that pick *value* from an open picklist (Type, Stage, Status)."""

    def by_data_value(timeout_ms):
        page.locator(f'[data-value="{value}"]').first.click(timeout=timeout_ms)
        return True

    def by_option_role(timeout_ms):
        # The path indicator renders the same option first; the open list is last.
        page.get_by_role("option", name=value, exact=True).last.click(timeout=timeout_ms)
        return True

    def by_exact_text(timeout_ms):
        page.get_by_text(value, exact=True).last.click(timeout=timeout_ms)
        return True

    return [
        Strategy("data-value attribute", by_data_value),
        Strategy("option role, exact name", by_option_role),
        Strategy("exact text", by_exact_text),
    ]


def select_picklist_value(page, dropdown, value: str, config) -> str:
    """Open *dropdown* and choose *value* through the picklist chain."""
    dropdown.click()
    page.wait_for_timeout(500)
    return run_strategy_chain(
        f"select '{value}'",
        picklist_option_strategies(page, value),
        attempt_timeout_ms=config.scaled(config.dropdown_attempt_timeout_ms),
        settle_ms=config.settle_ms,
        page=page,
    )


def select_lookup_option(page, lookup_input, value: str, config, max_attempts: int = 3) -> str:
    """
    Type *value* into a lookup field and pick the matching record.

    The search results render late and sometimes not at all, so the whole
    type-and-pick sequence is repeated up to *max_attempts* times. After a
    pick, Tab commits the selection and the field must be non-empty.

    Returns the value left in the input.
    """
    intent = f"select lookup '{value}'"
    last_error = None

    for attempt in range(1, max_attempts + 1):
        logger.info(f"🔄 Lookup attempt {attempt}/{max_attempts} for: {value}")
        try:
            lookup_input.click()
            page.wait_for_timeout(300)
            lookup_input.clear()
            page.wait_for_timeout(300)
            lookup_input.fill(value)

            page.wait_for_selector(COMBOBOX_ITEM, state="visible", timeout=config.scaled(8_000))
            # results keep streaming in after the first row shows
            page.wait_for_timeout(1_500)

            run_strategy_chain(
                intent,
                dropdown_option_strategies(page, value),
                attempt_timeout_ms=config.scaled(config.dropdown_attempt_timeout_ms),
                settle_ms=config.settle_ms,
                page=page,
            )
            break
        except Exception as exc:
            last_error = exc
            logger.warning(f"  ⚠️ Lookup attempt {attempt} failed: {exc}")
    else:
        raise StrategyExhaustedError(intent, max_attempts, last_error)

    page.keyboard.press("Tab")
    page.wait_for_timeout(500)

    try:
        selected = lookup_input.input_value()
    except Exception:
        selected = ""
    logger.info(f"📋 Lookup field value after selection: \"{selected}\"")
    if not selected.strip():
        raise StrategyExhaustedError(intent, max_attempts, "lookup field is empty after selection")
    return selected


# ── Save button ──────────────────────────────────────────────────────────

def save_button_strategies(page) -> list:
    """Eight ways to press Save, from stable attributes down to a forced click."""

    def click(locator, **kwargs):
        def attempt(timeout_ms):
            locator().click(timeout=timeout_ms, **kwargs)
            return True
        return attempt

    return [
        Strategy("name=SaveEdit", click(lambda: page.locator('button[name="SaveEdit"]'))),
        Strategy("modal footer", click(
            lambda: page.locator('.slds-modal__footer button:has-text("Save")').first)),
        Strategy("button role", click(lambda: page.get_by_role("button", name="Save").first)),
        Strategy("title attribute", click(lambda: page.locator('button[title="Save"]'))),
        Strategy("form button", click(lambda: page.locator('form button:has-text("Save")').first)),
        Strategy("exact text", click(lambda: page.get_by_text("Save", exact=True).first)),
        Strategy("brand button", click(
            lambda: page.locator('.slds-button.slds-button_brand:has-text("Save")').first)),
        Strategy("forced click", click(
            lambda: page.locator('button:has-text("Save")').first, force=True)),
    ]


def click_save(page, config) -> str:
    """Press the record form's Save button. Returns the winning strategy name."""
    return run_strategy_chain(
        "click Save",
        save_button_strategies(page),
        attempt_timeout_ms=config.scaled(config.save_attempt_timeout_ms),
        settle_ms=config.settle_ms,
        page=page,
    )
