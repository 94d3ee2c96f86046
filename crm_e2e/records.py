"""
Record workflows: create, edit, convert and delete CRM records through the UI.

Every workflow finishes on a record view and, when it creates something,
returns the record ID read back from the URL. Element picking goes through
the strategy chains in crm_e2e.strategies; waiting goes through
crm_e2e.waits.
"""

import logging
import time

from crm_e2e.errors import RecordSaveError
from crm_e2e.record_id import extract_record_id
from crm_e2e.strategies import click_save, select_lookup_option, select_picklist_value
from crm_e2e.utils import capture_diagnostics
from crm_e2e.waits import backoff_from, expect_text_visible, wait_for_lightning_load, wait_for_url

logger = logging.getLogger("crm_e2e")

WAIT_STRATEGY = "domcontentloaded"
NAV_TIMEOUT = 60_000

_VALIDATION_ERRORS = (
    '.slds-form-element__help, .slds-theme_error, '
    '[data-aura-class="forceFormValidationError"]'
)


def unique_name(base: str) -> str:
    """Suffix *base* with a millisecond timestamp so each run creates a new record."""
    return f"{base}_{int(time.time() * 1000)}"


# ── Navigation ───────────────────────────────────────────────────────────

def navigate_to_list(page, config, object_name: str) -> None:
    url = config.list_url(object_name)
    logger.info(f"Navigating to: {url}")
    page.goto(url, wait_until=WAIT_STRATEGY, timeout=config.scaled(NAV_TIMEOUT))


def open_record(page, config, object_name: str, record_id: str) -> None:
    """Open the record view unless the page is already on it."""
    if record_id in page.url:
        return
    url = config.record_url(object_name, record_id)
    logger.info(f"Opening {object_name} {record_id}")
    page.goto(url, wait_until=WAIT_STRATEGY, timeout=config.scaled(NAV_TIMEOUT))
    wait_for_lightning_load(page, timeout_ms=config.scaled(15_000), delay=backoff_from(config))


def _open_actions_menu(page, item: str) -> None:
    page.get_by_role("button", name="Show more actions").click()
    page.wait_for_timeout(300)
    page.get_by_role("menuitem", name=item).click()
    page.wait_for_timeout(1_000)


# ── Save and read back ───────────────────────────────────────────────────

def check_save_errors(page, object_name: str) -> None:
    """Raise RecordSaveError if the form shows validation errors or never left /new."""
    try:
        messages = page.locator(_VALIDATION_ERRORS).all_text_contents()
    except Exception:
        messages = []
    errors = [m.strip() for m in messages if m.strip()]
    if errors:
        capture_diagnostics(page, f"{object_name}_validation_errors")
        raise RecordSaveError(f"{object_name} save failed with validation errors: {', '.join(errors)}")

    if "/new" in page.url:
        capture_diagnostics(page, f"{object_name}_still_on_new")
        raise RecordSaveError(f"{object_name} was not saved. Still on the \"new\" page. URL: {page.url}")


def save_and_capture_id(page, config, object_name: str, success_text: str = "was created") -> str:
    """Press Save, confirm the toast and return the new record's ID."""
    click_save(page, config)
    page.wait_for_timeout(config.scaled(1_000))
    check_save_errors(page, object_name)

    delay = backoff_from(config)
    timeout_ms = config.scaled(config.record_id_timeout_ms)
    expect_text_visible(page, success_text, timeout_ms, delay=delay)
    wait_for_url(page, "/lightning/r/", timeout_ms)
    return extract_record_id(page, object_name, timeout_ms, delay=delay)


# ── Accounts ─────────────────────────────────────────────────────────────

def create_account(page, config, base_name: str, account_type: str) -> tuple:
    """Create an Account. Returns (account_name, account_id)."""
    navigate_to_list(page, config, "Account")
    account_name = unique_name(base_name)

    page.get_by_role("button", name="New").click()
    page.get_by_role("textbox", name="Account Name").fill(account_name)
    select_picklist_value(page, page.get_by_role("combobox", name="Type"), account_type, config)

    account_id = save_and_capture_id(page, config, "Account")
    logger.info(f"✅ Created Account: {account_name} | ID: {account_id}")
    return account_name, account_id


def edit_record(page, config, object_name: str, record_id: str,
                textboxes: dict = None, picklists: dict = None) -> None:
    """Open the Edit dialog, fill fields by label and save."""
    open_record(page, config, object_name, record_id)
    _open_actions_menu(page, "Edit")

    for label, value in (textboxes or {}).items():
        page.get_by_role("textbox", name=label).fill(value)
    for label, value in (picklists or {}).items():
        select_picklist_value(page, page.get_by_role("combobox", name=label), value, config)

    click_save(page, config)
    expect_text_visible(page, "was saved", config.scaled(10_000), delay=backoff_from(config))
    logger.info(f"✅ {object_name} {record_id} successfully updated")


def edit_account(page, config, account_id: str, **fields) -> None:
    """Update Account fields: name, account_number, phone, website (text) and type (picklist)."""
    labels = {
        "name": "Account Name",
        "account_number": "Account Number",
        "phone": "Phone",
        "website": "Website",
    }
    textboxes = {labels[k]: v for k, v in fields.items() if k in labels}
    picklists = {"Type": fields["type"]} if "type" in fields else None
    edit_record(page, config, "Account", account_id, textboxes=textboxes, picklists=picklists)


def delete_account(page, config, account_id: str) -> None:
    open_record(page, config, "Account", account_id)
    _open_actions_menu(page, "Delete")
    page.get_by_role("button", name="Delete").click()
    expect_text_visible(page, "was deleted", config.scaled(10_000), delay=backoff_from(config))
    logger.info(f"✅ Account {account_id} deleted")


# ── Contacts ─────────────────────────────────────────────────────────────

def create_contact(page, config, first_name: str, last_name: str, account_name: str) -> tuple:
    """Create a Contact linked to an existing Account. Returns (full_name, contact_id)."""
    navigate_to_list(page, config, "Contact")
    unique_last = unique_name(last_name)

    new_button = page.get_by_role("button", name="New")
    new_button.wait_for(state="visible", timeout=config.scaled(10_000))
    new_button.click()

    first_input = page.get_by_role("textbox", name="First Name")
    first_input.wait_for(state="visible", timeout=config.scaled(10_000))
    first_input.fill(first_name)
    page.get_by_role("textbox", name="Last Name").fill(unique_last)

    select_lookup_option(page, page.get_by_role("combobox", name="Account Name"), account_name, config)
    page.wait_for_timeout(1_200)

    email = page.get_by_role("textbox", name="Email")
    if email.is_visible():
        email.fill(f"{first_name}.{unique_last}@example.com".lower())

    contact_id = save_and_capture_id(page, config, "Contact")
    full_name = f"{first_name} {unique_last}"
    logger.info(f"✅ Created Contact: {full_name} | ID: {contact_id}")
    return full_name, contact_id


# ── Leads ────────────────────────────────────────────────────────────────

def create_lead(page, config, first_name: str, last_name: str, company: str,
                status: str, lead_source: str) -> tuple:
    """Create a Lead. Returns (lead_name, lead_id)."""
    navigate_to_list(page, config, "Lead")
    wait_for_lightning_load(page, timeout_ms=config.scaled(15_000), delay=backoff_from(config))
    unique_last = unique_name(last_name)

    page.get_by_role("button", name="New").click()
    page.get_by_role("textbox", name="First Name").fill(first_name)
    page.get_by_role("textbox", name="Last Name").fill(unique_last)
    page.get_by_role("textbox", name="Company").fill(company)
    select_picklist_value(page, page.get_by_role("combobox", name="Lead Status"), status, config)
    select_picklist_value(page, page.get_by_role("combobox", name="Lead Source"), lead_source, config)

    lead_id = save_and_capture_id(page, config, "Lead")
    lead_name = f"{first_name} {unique_last}"
    logger.info(f"✅ Created Lead: {lead_name} ({lead_id})")
    return lead_name, lead_id


def convert_lead(page, config, lead_id: str) -> None:
    open_record(page, config, "Lead", lead_id)
    _open_actions_menu(page, "Convert")
    page.get_by_role("button", name="Convert", exact=True).click()
    expect_text_visible(page, "Your lead has been converted", config.scaled(60_000),
                        delay=backoff_from(config))
    page.get_by_role("button", name="Cancel and close", exact=True).first.click()
    logger.info(f"✅ Lead {lead_id} successfully converted.")


def move_lead_through_statuses(page, config, lead_id: str, statuses) -> None:
    for status in statuses:
        edit_record(page, config, "Lead", lead_id, picklists={"Lead Status": status})
        expect_text_visible(page, status, config.scaled(15_000), delay=backoff_from(config))
        logger.info(f"✅ Moved Lead {lead_id} to {status}")


# ── Opportunities ────────────────────────────────────────────────────────

def create_opportunity(page, config, name: str, close_date: str, stage: str, account_name: str) -> tuple:
    """Create an Opportunity on an existing Account. Returns (opportunity_name, opportunity_id)."""
    navigate_to_list(page, config, "Opportunity")
    opp_name = unique_name(name)

    page.get_by_role("button", name="New").click()
    page.get_by_role("textbox", name="Opportunity Name").fill(opp_name)
    select_lookup_option(page, page.get_by_role("combobox", name="Account Name"), account_name, config)

    close_date_input = page.get_by_role("textbox", name="*Close Date")
    close_date_input.click()
    close_date_input.fill(close_date)
    select_picklist_value(page, page.get_by_role("combobox", name="Stage"), stage, config)

    opp_id = save_and_capture_id(page, config, "Opportunity")
    logger.info(f"✅ Created Opportunity: {opp_name}, ID: {opp_id}")
    return opp_name, opp_id


def move_opportunity_stage(page, config, opportunity_id: str, target_stage: str) -> None:
    logger.info(f"🚀 Moving {opportunity_id} to stage: {target_stage}")
    open_record(page, config, "Opportunity", opportunity_id)
    page.get_by_role("tab", name="Details").click()
    page.wait_for_timeout(500)
    edit_record(page, config, "Opportunity", opportunity_id, picklists={"Stage": target_stage})


def validate_record(page, config, object_name: str, record_id: str, *expected_texts: str) -> None:
    """Open a record and wait for each expected value to be visible."""
    open_record(page, config, object_name, record_id)
    for text in expected_texts:
        expect_text_visible(page, text, config.scaled(10_000), delay=backoff_from(config))
    logger.info(f"✅ {object_name} {record_id} shows: {', '.join(expected_texts)}")
