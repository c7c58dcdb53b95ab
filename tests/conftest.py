"""
Pytest configuration and shared fixtures.

Environment variables default to a throwaway SQLite file and a dummy
gateway; anything already exported (e.g. from .env.test) wins. Settings are
reloaded before any app import so these values are the ones used.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_wa_inbox.db")
os.environ.setdefault("LOG_LEVEL", "INFO")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("GATEWAY_BASE_URL", "http://gateway.test")
os.environ.setdefault("GATEWAY_API_KEY", "test-api-key")
os.environ.setdefault("PUBLIC_BASE_URL", "http://inbox.test")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from wa_inbox.config import get_settings
get_settings.cache_clear()

from fastapi.testclient import TestClient

from wa_inbox.gateway import (
    ConnectionState,
    CreateInstanceResult,
    GatewayError,
    QrArtifacts,
    QrCode,
    SendResult,
)
from wa_inbox.main import app, get_gateway_client
from wa_inbox import models  # noqa: F401  registers tables with Base.metadata
from wa_inbox.storage import Base, SessionLocal, engine, create_account, update_instance_state


class FakeGateway:
    """
    Stand-in for EvolutionClient.

    Records every call as (method, args). Set `fail` to a set of method
    names that should raise GatewayError, and tweak the canned answers.
    """

    def __init__(self):
        self.calls = []
        self.fail = set()
        self.create_result = CreateInstanceResult(
            status="connecting",
            qr=QrCode(image="data:image/png;base64,QR1", pairing_code="PAIR-1"),
        )
        self.state = "connecting"
        self.qr = QrArtifacts(image="data:image/png;base64,QR2", code="PAIR-2")
        self.send_result = SendResult(id="SENT1", timestamp=1700000000, status="PENDING")

    def _call(self, name, *args):
        self.calls.append((name, args))
        if name in self.fail:
            raise GatewayError(f"{name} failed: 500 - boom", status_code=500)

    def called(self, name):
        return [args for call, args in self.calls if call == name]

    def create(self, instance_name):
        self._call("create", instance_name)
        return self.create_result

    def fetch_qr(self, instance_name):
        self._call("fetch_qr", instance_name)
        return self.qr

    def connection_state(self, instance_name):
        self._call("connection_state", instance_name)
        return ConnectionState(state=self.state)

    def set_webhook(self, instance_name, callback_url, headers=None):
        self._call("set_webhook", instance_name, callback_url, headers)
        return {}

    def logout(self, instance_name):
        self._call("logout", instance_name)

    def delete(self, instance_name):
        self._call("delete", instance_name)

    def send_message(self, instance_name, message):
        self._call("send_message", instance_name, message)
        return self.send_result


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture(scope="function")
def client(fake_gateway):
    """Create test client with fresh database and a fake gateway for each test."""
    Base.metadata.create_all(bind=engine)
    app.dependency_overrides[get_gateway_client] = lambda: fake_gateway

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    """Session on a fresh schema, for tests that bypass HTTP."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def make_account():
    """Create an account, optionally owning an instance, in its own session."""
    counter = {"n": 0}

    def _make(instance_name=None, **instance_fields):
        counter["n"] += 1
        with SessionLocal() as session:
            account = create_account(session, username=f"user{counter['n']}")
            if instance_name is not None:
                account = update_instance_state(
                    session, account, instance_name=instance_name, **instance_fields
                )
            return account.id

    return _make


@pytest.fixture
def webhook_headers():
    return {
        "Content-Type": "application/json",
        "X-Webhook-Secret": os.environ["WEBHOOK_SECRET"],
    }
