"""
Utility functions: config loading, logging setup, and helpers.

Configuration is resolved once per process into a CrmConfig and handed to
every component that needs it:
  defaults  <  config.yaml  <  .env  <  process environment
"""

import os
import re
import logging
from dataclasses import dataclass, field, fields
from datetime import datetime

import yaml
from dotenv import load_dotenv

from crm_e2e.errors import ConfigError


ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
LOG_DIR = os.path.join(ROOT_DIR, "logs")
SCREENSHOT_DIR = os.path.join(LOG_DIR, "screenshots")
HTMLDUMP_DIR   = os.path.join(LOG_DIR, "htmldumps")

LOGGER_NAME = "crm_e2e"


def setup_logging() -> logging.Logger:
    """Configure and return the project logger."""
    os.makedirs(LOG_DIR, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = os.path.join(LOG_DIR, f"run_{timestamp}.log")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Prevent duplicate handlers on repeated calls
    if logger.handlers:
        return logger

    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%H:%M:%S"))

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)-8s %(name)s — %(message)s"))

    logger.addHandler(ch)
    logger.addHandler(fh)

    logger.info(f"Log file: {log_file}")
    return logger


# ── Configuration ────────────────────────────────────────────────────────

DEFAULT_LOGIN_URL = "https://login.salesforce.com"

# Path fragments that only appear once the app shell has loaded.
DEFAULT_AUTHENTICATED_MARKERS = ["/lightning/", "/one/one.app", "/home/home.jsp"]

# Elements of the standard login form.
DEFAULT_LOGIN_INDICATORS = ["input#username", "input#password", "#Login"]


@dataclass
class CrmConfig:
    # Application URLs
    base_url: str = ""
    accounts_url: str = ""
    contacts_url: str = ""
    leads_url: str = ""
    opportunities_url: str = ""
    accounts_record_url: str = ""
    contacts_record_url: str = ""
    leads_record_url: str = ""
    opportunities_record_url: str = ""

    # Credentials
    username: str = ""
    password: str = ""
    security_token: str = ""
    client_id: str = ""
    client_secret: str = ""
    jwt_client_id: str = ""
    login_url: str = DEFAULT_LOGIN_URL
    private_key: str = ""
    private_key_path: str = "server.key"

    # Direct API access
    access_token: str = ""
    api_url: str = ""
    api_version: str = "64.0"

    # Session reuse
    session_file: str = "auth.json"
    authenticated_url_markers: list = field(default_factory=lambda: list(DEFAULT_AUTHENTICATED_MARKERS))
    login_indicators: list = field(default_factory=lambda: list(DEFAULT_LOGIN_INDICATORS))
    login_indicator_minimum: int = 2
    session_check_timeout_ms: int = 15_000
    login_timeout_ms: int = 30_000

    # Timing
    timeout_multiplier: float = 1.0
    backoff_base_ms: int = 500
    backoff_cap_ms: int = 2_000
    dropdown_attempt_timeout_ms: int = 3_000
    save_attempt_timeout_ms: int = 5_000
    settle_ms: int = 500
    record_id_timeout_ms: int = 10_000

    # Browser
    headless: bool = False

    def scaled(self, base_ms: int) -> int:
        """Scale a timeout by timeout_multiplier, rounded up to the nearest 100ms."""
        scaled = int(base_ms * self.timeout_multiplier)
        return ((scaled + 99) // 100) * 100

    def require(self, *names: str) -> None:
        """Raise ConfigError naming every listed field that is empty."""
        missing = [n for n in names if not getattr(self, n)]
        if missing:
            env_names = [_FIELD_TO_ENV.get(n, n) for n in missing]
            raise ConfigError(f"Missing required configuration: {', '.join(env_names)}")

    def record_url(self, object_name: str, record_id: str) -> str:
        """Build `{base_record_url}{id}/view` for one of the known objects."""
        base = getattr(self, f"{_object_key(object_name)}_record_url", "")
        if not base:
            base = f"{self.base_url.rstrip('/')}/lightning/r/{object_name}/"
        return f"{base}{record_id}/view"

    def list_url(self, object_name: str) -> str:
        url = getattr(self, f"{_object_key(object_name)}_url", "")
        if not url:
            raise ConfigError(f"No list URL configured for {object_name}")
        return url


def _object_key(object_name: str) -> str:
    return {
        "account": "accounts",
        "contact": "contacts",
        "lead": "leads",
        "opportunity": "opportunities",
    }.get(object_name.lower(), object_name.lower())


_ENV_TO_FIELD = {
    "SALESFORCE_URL": "base_url",
    "SALESFORCE_ACCOUNTS_URL": "accounts_url",
    "SALESFORCE_CONTACTS_URL": "contacts_url",
    "SALESFORCE_LEADS_URL": "leads_url",
    "SALESFORCE_OPPORTUNITIES_URL": "opportunities_url",
    "SALESFORCE_ACCOUNTS_R_URL": "accounts_record_url",
    "SALESFORCE_CONTACTS_R_URL": "contacts_record_url",
    "SALESFORCE_LEADS_R_URL": "leads_record_url",
    "SALESFORCE_OPPORTUNITIES_R_URL": "opportunities_record_url",
    "SALESFORCE_USERNAME": "username",
    "SALESFORCE_PASSWORD": "password",
    "SALESFORCE_SECURITY_TOKEN": "security_token",
    "SALESFORCE_CLIENT_ID": "client_id",
    "SALESFORCE_CLIENT_SECRET": "client_secret",
    "SALESFORCE_JWT_CLIENT_ID": "jwt_client_id",
    "SALESFORCE_LOGIN_URL": "login_url",
    "SALESFORCE_PRIVATE_KEY": "private_key",
    "SALESFORCE_ACCESS_TOKEN": "access_token",
    "SALESFORCE_API_URL": "api_url",
}
_FIELD_TO_ENV = {v: k for k, v in _ENV_TO_FIELD.items()}


def _coerce(name: str, value, default):
    """Convert a raw YAML/env value to the type of the field's default."""
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"{name} must be an integer, got: {value!r}")
    if isinstance(default, float):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValueError(f"{name} must be a number, got: {value!r}")
    if isinstance(default, list):
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return list(value)
    return "" if value is None else str(value)


def load_config(config_path: str = None, env_file: str = None) -> CrmConfig:
    """Build the process-wide CrmConfig from defaults, YAML, .env and environment."""
    explicit = config_path is not None
    if config_path is None:
        config_path = os.path.join(ROOT_DIR, "config.yaml")

    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    elif explicit:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    # .env never overrides variables already exported in the shell
    load_dotenv(env_file or os.path.join(ROOT_DIR, ".env"), override=False)
    for env_name, field_name in _ENV_TO_FIELD.items():
        value = os.environ.get(env_name)
        if value:
            raw[field_name] = value

    # The JWT flow falls back to the generic connected-app id
    if not raw.get("jwt_client_id") and raw.get("client_id"):
        raw["jwt_client_id"] = raw["client_id"]

    defaults = CrmConfig()
    known = {f.name for f in fields(CrmConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ValueError(f"Unknown config key(s): {', '.join(unknown)}")

    values = {k: _coerce(k, v, getattr(defaults, k)) for k, v in raw.items() if v is not None}
    config = CrmConfig(**values)

    if config.timeout_multiplier < 0.1:
        raise ValueError(
            f"timeout_multiplier must be a number >= 0.1, got: {config.timeout_multiplier!r}"
        )
    if config.login_indicator_minimum < 1:
        raise ValueError(
            f"login_indicator_minimum must be int >= 1, got: {config.login_indicator_minimum!r}"
        )
    if config.backoff_base_ms < 1 or config.backoff_cap_ms < config.backoff_base_ms:
        raise ValueError(
            f"backoff_cap_ms ({config.backoff_cap_ms}) must be >= backoff_base_ms "
            f"({config.backoff_base_ms}) >= 1"
        )
    if not config.base_url.startswith(("http://", "https://")) and config.base_url:
        raise ValueError(f"base_url must be an http(s) URL, got: {config.base_url!r}")

    return config


def get_session_path(config: CrmConfig) -> str:
    """Return the path to the persisted session (cookies) file."""
    if os.path.isabs(config.session_file):
        return config.session_file
    return os.path.join(ROOT_DIR, config.session_file)


# ── Diagnostics ──────────────────────────────────────────────────────────

def capture_diagnostics(page, label: str = "error") -> str | None:
    """
    Capture as much diagnostic data as a possibly-broken page allows.

    Chain:
      1. log page.url and page.title()
      2. page.screenshot() with a hard 5s timeout
      3. on failure → page.content() saved as an .html dump

    Returns the file path of the saved screenshot or HTML dump, or None.
    """
    logger = logging.getLogger(LOGGER_NAME)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    safe_label = re.sub(r"[^\w\-]", "_", label)[:80]

    try:
        current_url = page.url
    except Exception:
        current_url = "<unavailable>"
    try:
        current_title = page.title()
    except Exception:
        current_title = "<unavailable>"
    logger.debug(f"[diag] url={current_url}  title={current_title}")

    try:
        os.makedirs(SCREENSHOT_DIR, exist_ok=True)
        filepath = os.path.join(SCREENSHOT_DIR, f"{timestamp}_{safe_label}.png")
        page.screenshot(path=filepath, full_page=False, timeout=5_000)
        logger.info(f"📸 Screenshot saved: {filepath}")
        return filepath
    except Exception as ss_err:
        logger.debug(f"Screenshot failed ({ss_err}) — falling back to HTML dump")

    try:
        os.makedirs(HTMLDUMP_DIR, exist_ok=True)
        html_filepath = os.path.join(HTMLDUMP_DIR, f"{timestamp}_{safe_label}.html")
        html_content = page.content()
        with open(html_filepath, "w", encoding="utf-8") as f:
            f.write(html_content)
        logger.info(f"📄 HTML dump saved: {html_filepath}")
        return html_filepath
    except Exception as html_err:
        logger.warning(f"HTML dump also failed: {html_err}")
        return None
