"""
Machine-to-machine tokens for REST API tests.

Two stateless flows against `{login_url}/services/oauth2/token`:
  - password grant  (username + password+security token + client id/secret)
  - JWT bearer      (RS256-signed assertion, 5-minute lifetime)

Nothing is cached and nothing is retried: a non-2xx response raises
AuthenticationError carrying the status code and response body.
"""

import logging
import os
import time
from dataclasses import dataclass

import jwt
import requests as _requests

from crm_e2e.errors import AuthenticationError, ConfigError
from crm_e2e.utils import ROOT_DIR

logger = logging.getLogger("crm_e2e")

TOKEN_PATH = "/services/oauth2/token"
JWT_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:jwt-bearer"
JWT_ALGORITHM = "RS256"
JWT_LIFETIME_S = 300

_TIMEOUT = 30  # seconds per token request


@dataclass(frozen=True)
class OAuthToken:
    access_token: str
    instance_url: str
    token_type: str = "Bearer"
    issued_at: str = ""
    signature: str = ""
    id: str = ""

    @classmethod
    def from_response(cls, body: dict) -> "OAuthToken":
        return cls(
            access_token=body["access_token"],
            instance_url=body.get("instance_url", ""),
            token_type=body.get("token_type", "Bearer"),
            issued_at=body.get("issued_at", ""),
            signature=body.get("signature", ""),
            id=body.get("id", ""),
        )


@dataclass(frozen=True)
class JWTConfig:
    client_id: str
    username: str
    login_url: str
    private_key: str


def _token_url(login_url: str) -> str:
    return f"{login_url.rstrip('/')}{TOKEN_PATH}"


def _request_token(login_url: str, form: dict, flow: str, session=None) -> OAuthToken:
    """POST a form-encoded token request and parse the reply."""
    http = session or _requests
    response = http.post(_token_url(login_url), data=form, timeout=_TIMEOUT)
    if not response.ok:
        logger.error(f"❌ {flow} token request failed: {response.status_code}")
        raise AuthenticationError(
            f"{flow} authentication failed: {response.status_code} - {response.text}",
            status_code=response.status_code,
            body=response.text,
        )
    token = OAuthToken.from_response(response.json())
    logger.info(f"✅ {flow} authentication successful — instance: {token.instance_url}")
    return token


# ── Password grant ───────────────────────────────────────────────────────

def get_oauth_response(config, session=None) -> OAuthToken:
    """Exchange username/password(+security token) for an access token."""
    config.require("username", "password", "client_id", "client_secret")
    form = {
        "grant_type": "password",
        "client_id": config.client_id,
        "client_secret": config.client_secret,
        "username": config.username,
        "password": config.password + config.security_token,
    }
    return _request_token(config.login_url, form, "OAuth password", session=session)


def get_access_token(config, session=None) -> str:
    """Password grant, returning only the access token."""
    return get_oauth_response(config, session=session).access_token


# ── JWT bearer ───────────────────────────────────────────────────────────

def _normalize_private_key(key: str) -> str:
    # CI secrets often carry the PEM with literal "\n" sequences
    key = key.replace("\\n", "\n").strip() + "\n"
    if "-----BEGIN" not in key:
        logger.error("❌ Private key format error: missing BEGIN marker")
    return key


def get_jwt_config(config) -> JWTConfig:
    """
    Resolve JWT settings: inline SALESFORCE_PRIVATE_KEY first, else the key file.

    Raises:
        ConfigError: client id, username or key is missing.
    """
    private_key = config.private_key
    if not private_key and config.private_key_path:
        key_path = config.private_key_path
        if not os.path.isabs(key_path):
            key_path = os.path.join(ROOT_DIR, key_path)
        if os.path.exists(key_path):
            with open(key_path, "r", encoding="utf-8") as f:
                private_key = f.read()

    client_id = config.jwt_client_id or config.client_id
    if not client_id or not config.username or not private_key:
        raise ConfigError(
            "Missing JWT configuration. Required: SALESFORCE_JWT_CLIENT_ID, "
            "SALESFORCE_USERNAME, SALESFORCE_PRIVATE_KEY (or server.key file)"
        )

    private_key = _normalize_private_key(private_key)
    logger.debug(f"🔑 Private key loaded, length: {len(private_key)}")
    return JWTConfig(
        client_id=client_id,
        username=config.username,
        login_url=config.login_url,
        private_key=private_key,
    )


def build_assertion(jwt_config: JWTConfig, now: float = None) -> str:
    """Sign the bearer assertion: iss=client id, sub=username, aud=login URL."""
    now = time.time() if now is None else now
    claims = {
        "iss": jwt_config.client_id,
        "sub": jwt_config.username,
        "aud": jwt_config.login_url,
        "exp": int(now) + JWT_LIFETIME_S,
    }
    return jwt.encode(claims, jwt_config.private_key, algorithm=JWT_ALGORITHM)


def authenticate_with_jwt(jwt_config: JWTConfig, session=None) -> OAuthToken:
    """Exchange a freshly signed assertion for an access token."""
    form = {
        "grant_type": JWT_GRANT_TYPE,
        "assertion": build_assertion(jwt_config),
    }
    return _request_token(jwt_config.login_url, form, "JWT", session=session)
