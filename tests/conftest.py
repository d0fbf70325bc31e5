import base64
import datetime as dt
import os
import uuid
from typing import Any

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from standardwebhooks import Webhook

from main import app
from paysync.api import get_provider, get_settings, get_store
from paysync.config import Settings
from paysync.models import UpstreamError
from paysync.repositories import RecordStore, build_engine, create_db_and_tables


WEBHOOK_KEY = "whsec_" + base64.b64encode(b"paysync-test-signing-secret-0001").decode()
CHECKOUT_BASE = "https://test.checkout.example.com"


class FakeProvider:
    """In-memory stand-in for the payment provider gateway."""

    def __init__(self) -> None:
        self.customers: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.create_customer_response: dict[str, Any] | None = None
        self.create_customer_error: Exception | None = None

    def create_customer(self, *, email: str, name: str) -> dict[str, Any]:
        self.calls.append(("create_customer", {"email": email, "name": name}))
        if self.create_customer_error is not None:
            raise self.create_customer_error
        if self.create_customer_response is not None:
            return self.create_customer_response
        customer = {"customer_id": f"cus_{len(self.customers) + 1:04d}", "email": email, "name": name}
        self.customers[customer["customer_id"]] = customer
        return customer

    def fail_with(self, message: str) -> None:
        self.create_customer_error = UpstreamError(message, status_code=502)


@pytest.fixture
def store() -> RecordStore:
    record_store = RecordStore(build_engine("sqlite://"))
    create_db_and_tables(record_store.engine)
    return record_store


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def settings() -> Settings:
    return Settings(database_url="sqlite://", webhook_key=WEBHOOK_KEY, checkout_base_url=CHECKOUT_BASE)


@pytest.fixture
def test_app(store, provider, settings):
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_settings] = lambda: settings
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def sign():
    def _sign(body: str, key: str = WEBHOOK_KEY, timestamp: dt.datetime | None = None) -> dict[str, str]:
        msg_id = f"msg_{uuid.uuid4().hex}"
        ts = timestamp or dt.datetime.now(dt.timezone.utc)
        signature = Webhook(key).sign(msg_id=msg_id, timestamp=ts, data=body)
        return {
            "webhook-id": msg_id,
            "webhook-timestamp": str(int(ts.timestamp())),
            "webhook-signature": signature,
            "Content-Type": "application/json",
        }

    return _sign
