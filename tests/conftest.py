"""
Shared fixtures: a fast CrmConfig, RSA keys for JWT tests and a live mock CRM server.
"""

import threading
from unittest.mock import Mock

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from werkzeug.serving import make_server

from crm_e2e.utils import CrmConfig

from tests import mock_crm


@pytest.fixture
def config(tmp_path):
    """Config with short budgets so failing polls end quickly."""
    return CrmConfig(
        base_url="https://acme.my.salesforce.com",
        accounts_url="https://acme.lightning.force.com/lightning/o/Account/list",
        accounts_record_url="https://acme.lightning.force.com/lightning/r/Account/",
        username=mock_crm.USERNAME,
        password=mock_crm.PASSWORD,
        security_token=mock_crm.SECURITY_TOKEN,
        client_id=mock_crm.CLIENT_ID,
        client_secret=mock_crm.CLIENT_SECRET,
        session_file=str(tmp_path / "auth.json"),
        session_check_timeout_ms=50,
        login_timeout_ms=50,
        record_id_timeout_ms=50,
        settle_ms=0,
    )


@pytest.fixture(autouse=True)
def no_diagnostics(monkeypatch):
    """Keep tests from writing screenshots/HTML dumps under logs/."""
    capture = Mock(return_value=None)
    for module in ("crm_e2e.strategies", "crm_e2e.record_id", "crm_e2e.auth", "crm_e2e.records"):
        monkeypatch.setattr(f"{module}.capture_diagnostics", capture)
    return capture


@pytest.fixture(scope="session")
def rsa_keys():
    """(private_pem, public_pem) for signing and verifying JWT assertions."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def crm_server(rsa_keys):
    """Serve mock_crm on an ephemeral port. Yields (base_url, app)."""
    app = mock_crm.create_app(public_key=rsa_keys[1])
    server = make_server("127.0.0.1", 0, app)
    thread = threading.Thread(target=server.serve_forever, daemon=True, name="mock-crm")
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_port}", app
    finally:
        server.shutdown()
        thread.join(timeout=5)
