"""
CRM End-to-End Automation — Entry Point

Usage:
    python main.py login                       # create or validate the saved session
    python main.py token --flow password       # fetch an API token (password grant)
    python main.py token --flow jwt            # fetch an API token (JWT bearer)
    python main.py create-account "Acme" Prospect
    python main.py --config path/to/config.yaml ...
"""

import argparse
import sys

from playwright.sync_api import sync_playwright

from crm_e2e.auth import SessionManager, console_confirmation, inspector_confirmation
from crm_e2e.errors import CrmAutomationError
from crm_e2e.oauth import authenticate_with_jwt, get_jwt_config, get_oauth_response
from crm_e2e.records import create_account
from crm_e2e.utils import capture_diagnostics, load_config, setup_logging


def _run_token(logger, config, flow: str) -> int:
    if flow == "jwt":
        jwt_config = get_jwt_config(config)
        logger.info(f"Client ID:  {jwt_config.client_id}")
        logger.info(f"Username:   {jwt_config.username}")
        logger.info(f"Login URL:  {jwt_config.login_url}")
        token = authenticate_with_jwt(jwt_config)
    else:
        token = get_oauth_response(config)

    logger.info(f"Access Token: {token.access_token[:12]}…")
    logger.info(f"Instance URL: {token.instance_url}")
    logger.info(f"Token Type:   {token.token_type}")
    return 0


def _run_browser(logger, config, args) -> int:
    confirm = inspector_confirmation if args.inspector else console_confirmation

    with sync_playwright() as p:
        browser = p.chromium.launch(
            headless=config.headless,
            slow_mo=0 if config.headless else 200,
        )
        ctx_opts: dict = {}
        if config.headless:
            # Default 800×600 collapses the Lightning layout
            ctx_opts["viewport"] = {"width": 1920, "height": 1080}
        context = browser.new_context(**ctx_opts)
        page = None

        try:
            sessions = SessionManager(context, config, confirm=confirm)
            page = sessions.authenticate()
            logger.info(f"Session state: {sessions.state.value}")

            if args.command == "create-account":
                name, record_id = create_account(page, config, args.name, args.type)
                logger.info(f"Account ready: {name} → {config.record_url('Account', record_id)}")
            return 0
        except CrmAutomationError as e:
            logger.error(f"{e.__class__.__name__}: {e}")
            if page is not None:
                capture_diagnostics(page, args.command.replace("-", "_"))
            return 1
        finally:
            logger.info("Closing browser...")
            browser.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="End-to-end automation for the CRM web app and REST API")
    parser.add_argument("--config", "-c", default=None, help="Path to config.yaml (default: ./config.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    login_p = sub.add_parser("login", help="Create or validate the persisted session")
    login_p.add_argument("--inspector", action="store_true",
                         help="Wait in the Playwright Inspector instead of the console during verification")

    token_p = sub.add_parser("token", help="Fetch an OAuth access token")
    token_p.add_argument("--flow", choices=("password", "jwt"), default="password")

    acct_p = sub.add_parser("create-account", help="Create an Account through the UI")
    acct_p.add_argument("name")
    acct_p.add_argument("type")
    acct_p.add_argument("--inspector", action="store_true")

    args = parser.parse_args(argv)

    logger = setup_logging()
    config = load_config(args.config)
    logger.info("Configuration loaded:")
    logger.info(f"  App URL:    {config.base_url or '<unset>'}")
    logger.info(f"  Login URL:  {config.login_url}")
    logger.info(f"  Username:   {config.username or '<unset>'}")
    logger.info(f"  Headless:   {config.headless}")

    try:
        if args.command == "token":
            return _run_token(logger, config, args.flow)
        return _run_browser(logger, config, args)
    except CrmAutomationError as e:
        logger.error(f"{e.__class__.__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
