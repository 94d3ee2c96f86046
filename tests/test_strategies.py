from unittest.mock import MagicMock, Mock

import pytest

from crm_e2e import strategies
from crm_e2e.errors import StrategyExhaustedError
from crm_e2e.strategies import (
    COMBOBOX_ITEM,
    Strategy,
    click_save,
    dropdown_option_strategies,
    is_more_results_option,
    picklist_option_strategies,
    run_strategy_chain,
    save_button_strategies,
    select_lookup_option,
    select_picklist_value,
)


# ── Chain mechanics ──────────────────────────────────────────────────────

def _failing(name, calls):
    def attempt(timeout_ms):
        calls.append((name, timeout_ms))
        raise TimeoutError(f"{name} timed out")
    return Strategy(name, attempt)


def _succeeding(name, calls):
    def attempt(timeout_ms):
        calls.append((name, timeout_ms))
        return True
    return Strategy(name, attempt)


@pytest.mark.parametrize("k", [1, 2, 4])
def test_stops_at_first_success(k):
    calls = []
    chain = [_failing(f"s{i}", calls) for i in range(1, k)]
    chain.append(_succeeding(f"s{k}", calls))
    chain.append(_succeeding("never", calls))

    winner = run_strategy_chain("click Save", chain, attempt_timeout_ms=3_000, settle_ms=0)

    assert winner == f"s{k}"
    assert [name for name, _ in calls] == [f"s{i}" for i in range(1, k + 1)]
    assert all(timeout == 3_000 for _, timeout in calls)


def test_falsy_result_moves_to_next_strategy():
    second = Mock(return_value=True)
    chain = [Strategy("no match", lambda t: False), Strategy("second", second)]
    assert run_strategy_chain("pick", chain, attempt_timeout_ms=100, settle_ms=0) == "second"
    second.assert_called_once_with(100)


def test_exhaustion_names_intent_and_last_error(no_diagnostics):
    calls = []
    chain = [_failing("a", calls), _failing("b", calls), _failing("c", calls)]
    page = Mock()

    with pytest.raises(StrategyExhaustedError) as exc_info:
        run_strategy_chain("click Save", chain, attempt_timeout_ms=50, page=page)

    err = exc_info.value
    assert err.intent == "click Save"
    assert err.attempts == 3
    assert "c timed out" in str(err.last_error)
    assert "click Save" in str(err)
    assert len(calls) == 3
    no_diagnostics.assert_called_once()


def test_settle_pause_after_success():
    page = Mock()
    run_strategy_chain("pick", [Strategy("ok", lambda t: True)], attempt_timeout_ms=10, settle_ms=500, page=page)
    page.wait_for_timeout.assert_called_once_with(500)


# ── Lookup dropdown ──────────────────────────────────────────────────────

class FakeOption:
    def __init__(self, text, title=None):
        self.text = text
        self.title = title if title is not None else text
        self.clicks = 0
        self.timeouts = []

    def text_content(self, timeout=None):
        self.timeouts.append(timeout)
        return self.text

    def click(self, timeout=None, **kwargs):
        self.timeouts.append(timeout)
        self.clicks += 1


class FakeOptions:
    """Just enough of a Playwright Locator over lookup rows."""

    def __init__(self, options):
        self._options = list(options)

    def filter(self, has_text=None, has_not_text=None):
        kept = self._options
        if has_text is not None:
            kept = [o for o in kept if has_text in o.text]
        if has_not_text is not None:
            kept = [o for o in kept if has_not_text not in o.text]
        return FakeOptions(kept)

    def count(self):
        return len(self._options)

    def nth(self, index):
        return self._options[index]

    @property
    def first(self):
        return self

    def click(self, timeout=None, **kwargs):
        if not self._options:
            raise TimeoutError(f"Timeout {timeout}ms exceeded waiting for locator")
        self._options[0].click(timeout=timeout)


class FakeLookupPage:
    def __init__(self, options):
        self.options = options

    def locator(self, selector):
        if selector == COMBOBOX_ITEM:
            return FakeOptions(self.options)
        if selector.startswith(f"{COMBOBOX_ITEM}[title="):
            title = selector.split('title="', 1)[1].rstrip('"]')
            return FakeOptions([o for o in self.options if o.title == title])
        raise AssertionError(f"unexpected selector {selector}")

    def wait_for_timeout(self, ms):
        pass


@pytest.mark.parametrize("label, expected", [
    ('Show more results for "Acme"', True),
    ("show  more results", True),
    ("Acme Corp", False),
    ("", False),
    (None, False),
])
def test_more_results_marker(label, expected):
    assert is_more_results_option(label) is expected


def test_dropdown_skips_show_more_row():
    show_more = FakeOption('Show more results for "Acme"', title='Show more results for "Acme"')
    acme = FakeOption("Acme")
    page = FakeLookupPage([show_more, acme])

    winner = run_strategy_chain("select Acme", dropdown_option_strategies(page, "Acme"),
                                attempt_timeout_ms=3_000, settle_ms=0, page=page)

    assert winner == "combobox item, skipping 'Show more'"
    assert acme.clicks == 1
    assert show_more.clicks == 0


def test_dropdown_never_picks_show_more_even_when_only_match():
    show_more = FakeOption('Show more results for "Acme"', title='Show more results for "Acme"')
    page = FakeLookupPage([show_more])

    with pytest.raises(StrategyExhaustedError):
        run_strategy_chain("select Acme", dropdown_option_strategies(page, "Acme"),
                           attempt_timeout_ms=3_000, settle_ms=0, page=page)
    assert show_more.clicks == 0


def test_dropdown_falls_back_to_title_attribute():
    # Row text differs from the record name; only the title matches.
    renamed = FakeOption("Something else", title="Acme")
    page = FakeLookupPage([renamed])

    winner = run_strategy_chain("select Acme", dropdown_option_strategies(page, "Acme"),
                                attempt_timeout_ms=10, settle_ms=0, page=page)

    assert winner == "combobox item by exact title"
    assert renamed.clicks == 1


def test_dropdown_row_reads_use_attempt_timeout():
    show_more = FakeOption('Show more results for "Acme"')
    acme = FakeOption("Acme")
    page = FakeLookupPage([show_more, acme])

    assert dropdown_option_strategies(page, "Acme")[0].attempt(3_000) is True

    assert show_more.timeouts == [3_000]
    assert acme.timeouts == [3_000, 3_000]


def test_select_lookup_retries_whole_sequence(monkeypatch, config):
    chain = Mock(return_value="combobox item, skipping 'Show more'")
    monkeypatch.setattr(strategies, "run_strategy_chain", chain)
    page = MagicMock()
    page.wait_for_selector.side_effect = [TimeoutError("no results"), None]
    lookup = MagicMock()
    lookup.input_value.return_value = "Acme"

    assert select_lookup_option(page, lookup, "Acme", config) == "Acme"
    assert lookup.fill.call_count == 2
    chain.assert_called_once()
    page.keyboard.press.assert_called_once_with("Tab")


def test_select_lookup_gives_up_after_max_attempts(monkeypatch, config):
    monkeypatch.setattr(strategies, "run_strategy_chain", Mock(side_effect=StrategyExhaustedError("x", 3)))
    page = MagicMock()
    lookup = MagicMock()

    with pytest.raises(StrategyExhaustedError) as exc_info:
        select_lookup_option(page, lookup, "Acme", config, max_attempts=3)
    assert exc_info.value.attempts == 3
    assert lookup.fill.call_count == 3
    page.keyboard.press.assert_not_called()


def test_select_lookup_rejects_empty_field(monkeypatch, config):
    monkeypatch.setattr(strategies, "run_strategy_chain", Mock(return_value="ok"))
    page = MagicMock()
    lookup = MagicMock()
    lookup.input_value.return_value = "   "

    with pytest.raises(StrategyExhaustedError, match="empty"):
        select_lookup_option(page, lookup, "Acme", config)


# ── Save button ──────────────────────────────────────────────────────────

def test_save_strategies_are_ordered_most_reliable_first():
    names = [s.name for s in save_button_strategies(MagicMock())]
    assert len(names) == 8
    assert names[0] == "name=SaveEdit"
    assert names[-1] == "forced click"


def test_click_save_falls_through_to_modal_footer(config):
    page = MagicMock()
    save_edit = MagicMock()
    save_edit.click.side_effect = TimeoutError("button[name=SaveEdit] not found")
    footer = MagicMock()

    def locator(selector):
        if selector == 'button[name="SaveEdit"]':
            return save_edit
        if selector.startswith(".slds-modal__footer"):
            return footer
        raise AssertionError(f"strategy past the footer was tried: {selector}")

    page.locator.side_effect = locator

    assert click_save(page, config) == "modal footer"
    footer.first.click.assert_called_once_with(timeout=config.scaled(config.save_attempt_timeout_ms))


# ── Picklists ────────────────────────────────────────────────────────────

def test_picklist_strategies_order():
    names = [s.name for s in picklist_option_strategies(MagicMock(), "Prospect")]
    assert names == ["data-value attribute", "option role, exact name", "exact text"]


def test_picklist_falls_through_to_option_role(config):
    page = MagicMock()
    page.locator.return_value.first.click.side_effect = TimeoutError("no [data-value]")
    dropdown = MagicMock()

    winner = select_picklist_value(page, dropdown, "Prospect", config)

    assert winner == "option role, exact name"
    dropdown.click.assert_called_once()
    page.locator.assert_called_once_with('[data-value="Prospect"]')
    page.get_by_role.assert_called_once_with("option", name="Prospect", exact=True)
    page.get_by_role.return_value.last.click.assert_called_once_with(
        timeout=config.scaled(config.dropdown_attempt_timeout_ms))
    page.get_by_text.assert_not_called()


def test_picklist_last_resort_exact_text(config):
    page = MagicMock()
    page.locator.return_value.first.click.side_effect = TimeoutError("no [data-value]")
    page.get_by_role.return_value.last.click.side_effect = TimeoutError("no option role")

    assert select_picklist_value(page, MagicMock(), "Closed Won", config) == "exact text"
    page.get_by_text.assert_called_once_with("Closed Won", exact=True)
