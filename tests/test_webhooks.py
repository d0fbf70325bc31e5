import base64
import json

import pytest
from httpx import ASGITransport, AsyncClient
from sqlmodel import Session, select

from paysync.api import get_settings
from paysync.models import Payment, Subscription, SubscriptionStatus, WebhookEvent


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _subscription_event(
    event_type: str,
    subscription_id: str = "sub_real_001",
    customer_id: str = "cus_0001",
    email: str = "buyer@example.com",
    product_id: str = "prod_monthly",
    amount: int = 2999,
    next_billing_date: str = "2026-11-18T00:00:00Z",
    **extra,
) -> str:
    data = {
        "payload_type": "Subscription",
        "subscription_id": subscription_id,
        "customer": {"customer_id": customer_id, "email": email, "name": "Buyer"},
        "product_id": product_id,
        "status": "active",
        "recurring_pre_tax_amount": amount,
        "payment_frequency_interval": "Month",
        "next_billing_date": next_billing_date,
        "currency": "USD",
        **extra,
    }
    event = {"business_id": "bus_1", "type": event_type, "data": data, "timestamp": "2026-10-18T12:00:00Z"}
    return json.dumps(event, separators=(",", ":"))


def _payment_event(payment_id: str = "pay_001", customer_id: str = "cus_0001", **extra) -> str:
    data = {
        "payload_type": "Payment",
        "payment_id": payment_id,
        "customer": {"customer_id": customer_id, "email": "buyer@example.com", "name": "Buyer"},
        "total_amount": 2999,
        "currency": "USD",
        "status": "succeeded",
        "payment_method": "card",
        **extra,
    }
    event = {"type": "payment.succeeded", "data": data, "timestamp": "2026-10-18T12:00:00Z"}
    return json.dumps(event, separators=(",", ":"))


def _rows(store, model) -> list:
    with Session(store.engine) as session:
        return list(session.exec(select(model)).all())


async def _signup_and_subscribe(client: AsyncClient, email: str = "buyer@example.com", product_id: str = "prod_monthly"):
    signup = await client.post("/signup", json={"email": email, "name": "Buyer"})
    assert signup.status_code == 201
    subscribe = await client.post(
        "/subscribe",
        json={"customer_email": email, "product_id": product_id, "billing_interval": "month"},
    )
    assert subscribe.status_code == 201
    return signup.json()["customer"], subscribe.json()


@pytest.mark.anyio
async def test_invalid_signature_rejected_before_audit(test_app, store, sign) -> None:
    body = _subscription_event("subscription.active")
    headers = sign(body, key="whsec_" + base64.b64encode(b"some-other-signing-secret-000000").decode())
    async with _client(test_app) as client:
        response = await client.post("/webhook", content=body, headers=headers)
    assert response.status_code == 401
    assert _rows(store, WebhookEvent) == []
    assert _rows(store, Subscription) == []


@pytest.mark.anyio
async def test_missing_signature_headers_rejected(test_app, store) -> None:
    body = _subscription_event("subscription.active")
    async with _client(test_app) as client:
        response = await client.post("/webhook", content=body, headers={"Content-Type": "application/json"})
    assert response.status_code == 401
    assert _rows(store, WebhookEvent) == []


@pytest.mark.anyio
async def test_unsigned_webhook_accepted_without_signing_key(test_app, store, settings) -> None:
    test_app.dependency_overrides[get_settings] = lambda: settings.model_copy(update={"webhook_key": None})
    body = _subscription_event("subscription.active")
    async with _client(test_app) as client:
        response = await client.post("/webhook", content=body)
    assert response.status_code == 200
    assert len(_rows(store, Subscription)) == 1


@pytest.mark.anyio
async def test_malformed_json_rejected_before_audit(test_app, store, sign) -> None:
    body = '{"type": "subscription.active", "data": '
    async with _client(test_app) as client:
        response = await client.post("/webhook", content=body, headers=sign(body))
    assert response.status_code == 400
    assert _rows(store, WebhookEvent) == []


@pytest.mark.anyio
async def test_placeholder_merged_into_single_active_row(test_app, store, sign) -> None:
    async with _client(test_app) as client:
        customer, subscribed = await _signup_and_subscribe(client)
        placeholder_id = subscribed["provider_subscription_id"]

        body = _subscription_event("subscription.active", customer_id=customer["provider_customer_id"])
        response = await client.post("/webhook", content=body, headers=sign(body))
        assert response.status_code == 200
        assert response.json()["event_type"] == "subscription.active"

    subscriptions = _rows(store, Subscription)
    assert len(subscriptions) == 1
    subscription = subscriptions[0]
    assert subscription.id == subscribed["subscription"]["id"]
    assert subscription.provider_subscription_id == "sub_real_001"
    assert subscription.provider_subscription_id != placeholder_id
    assert subscription.status == SubscriptionStatus.active
    assert subscription.amount == 2999
    assert subscription.billing_interval == "month"
    assert subscription.next_billing_date is not None


@pytest.mark.anyio
async def test_duplicate_active_delivery_is_idempotent(test_app, store, sign) -> None:
    async with _client(test_app) as client:
        customer, _ = await _signup_and_subscribe(client)
        body = _subscription_event("subscription.active", customer_id=customer["provider_customer_id"])

        first = await client.post("/webhook", content=body, headers=sign(body))
        after_first = _rows(store, Subscription)
        second = await client.post("/webhook", content=body, headers=sign(body))
        after_second = _rows(store, Subscription)

    assert first.status_code == 200
    assert second.status_code == 200
    assert len(after_second) == 1
    fields = ("id", "provider_subscription_id", "status", "amount", "currency", "billing_interval", "next_billing_date")
    assert [getattr(after_first[0], f) for f in fields] == [getattr(after_second[0], f) for f in fields]

    audit_rows = _rows(store, WebhookEvent)
    assert len(audit_rows) == 2
    assert all(row.processed for row in audit_rows)


@pytest.mark.anyio
async def test_active_without_placeholder_inserts_new_row(test_app, store, sign) -> None:
    body = _subscription_event("subscription.active", subscription_id="sub_console_1", customer_id="cus_console")
    async with _client(test_app) as client:
        response = await client.post("/webhook", content=body, headers=sign(body))
        customer = await client.get("/customers/buyer@example.com")

    assert response.status_code == 200
    subscriptions = _rows(store, Subscription)
    assert len(subscriptions) == 1
    assert subscriptions[0].provider_subscription_id == "sub_console_1"
    assert subscriptions[0].status == SubscriptionStatus.active
    assert customer.status_code == 200
    assert customer.json()["customer"]["provider_customer_id"] == "cus_console"


@pytest.mark.anyio
async def test_placeholder_for_other_product_is_left_pending(test_app, store, sign) -> None:
    async with _client(test_app) as client:
        customer, _ = await _signup_and_subscribe(client, product_id="prod_yearly")
        body = _subscription_event("subscription.active", customer_id=customer["provider_customer_id"])
        response = await client.post("/webhook", content=body, headers=sign(body))

    assert response.status_code == 200
    statuses = sorted((row.product_id, row.status.value) for row in _rows(store, Subscription))
    assert statuses == [("prod_monthly", "active"), ("prod_yearly", "pending")]


@pytest.mark.anyio
async def test_cancelled_then_replayed_active_does_not_regress(test_app, store, sign) -> None:
    async with _client(test_app) as client:
        customer, _ = await _signup_and_subscribe(client)
        cid = customer["provider_customer_id"]
        for event_type in ("subscription.active", "subscription.cancelled", "subscription.active"):
            body = _subscription_event(event_type, customer_id=cid)
            response = await client.post("/webhook", content=body, headers=sign(body))
            assert response.status_code == 200

    subscriptions = _rows(store, Subscription)
    assert len(subscriptions) == 1
    assert subscriptions[0].status == SubscriptionStatus.cancelled


@pytest.mark.anyio
async def test_renewal_refreshes_billing_fields(test_app, store, sign) -> None:
    async with _client(test_app) as client:
        customer, _ = await _signup_and_subscribe(client)
        cid = customer["provider_customer_id"]
        activate = _subscription_event("subscription.active", customer_id=cid)
        await client.post("/webhook", content=activate, headers=sign(activate))

        renew = _subscription_event(
            "subscription.renewed",
            customer_id=cid,
            amount=3499,
            next_billing_date="2026-12-18T00:00:00Z",
        )
        response = await client.post("/webhook", content=renew, headers=sign(renew))

    assert response.status_code == 200
    subscription = _rows(store, Subscription)[0]
    assert subscription.status == SubscriptionStatus.active
    assert subscription.amount == 3499
    assert subscription.next_billing_date.month == 12


@pytest.mark.anyio
async def test_event_without_subscription_id_is_skipped(test_app, store, sign) -> None:
    body = _subscription_event("subscription.active", subscription_id=None)
    async with _client(test_app) as client:
        response = await client.post("/webhook", content=body, headers=sign(body))

    assert response.status_code == 200
    assert _rows(store, Subscription) == []
    assert [row.processed for row in _rows(store, WebhookEvent)] == [True]


@pytest.mark.anyio
async def test_subscription_event_without_customer_is_skipped(test_app, store, sign) -> None:
    body = _subscription_event("subscription.active", customer=None)
    async with _client(test_app) as client:
        response = await client.post("/webhook", content=body, headers=sign(body))

    assert response.status_code == 200
    assert _rows(store, Subscription) == []


@pytest.mark.anyio
async def test_unknown_event_type_is_audited_and_processed(test_app, store, sign) -> None:
    body = json.dumps({"type": "dispute.opened", "data": {"payload_type": "Dispute", "dispute_id": "dsp_1"}})
    async with _client(test_app) as client:
        response = await client.post("/webhook", content=body, headers=sign(body))

    assert response.status_code == 200
    audit_rows = _rows(store, WebhookEvent)
    assert len(audit_rows) == 1
    assert audit_rows[0].event_type == "dispute.opened"
    assert audit_rows[0].processed is True
    assert audit_rows[0].data == {"payload_type": "Dispute", "dispute_id": "dsp_1"}
    assert _rows(store, Subscription) == []
    assert _rows(store, Payment) == []


@pytest.mark.anyio
async def test_payment_succeeded_recorded_once(test_app, store, sign) -> None:
    async with _client(test_app) as client:
        customer, _ = await _signup_and_subscribe(client)
        cid = customer["provider_customer_id"]
        activate = _subscription_event("subscription.active", customer_id=cid)
        await client.post("/webhook", content=activate, headers=sign(activate))

        body = _payment_event(customer_id=cid, subscription_id="sub_real_001")
        first = await client.post("/webhook", content=body, headers=sign(body))
        second = await client.post("/webhook", content=body, headers=sign(body))

    assert first.status_code == 200
    assert second.status_code == 200
    payments = _rows(store, Payment)
    assert len(payments) == 1
    assert payments[0].provider_payment_id == "pay_001"
    assert payments[0].amount == 2999
    assert payments[0].status.value == "succeeded"
    assert payments[0].subscription_id == _rows(store, Subscription)[0].id


@pytest.mark.anyio
async def test_payment_for_unknown_customer_is_skipped(test_app, store, sign) -> None:
    body = _payment_event(customer_id="cus_missing")
    async with _client(test_app) as client:
        response = await client.post("/webhook", content=body, headers=sign(body))

    assert response.status_code == 200
    assert _rows(store, Payment) == []
    assert [row.processed for row in _rows(store, WebhookEvent)] == [True]


@pytest.mark.anyio
async def test_processing_failure_leaves_audit_row_unprocessed(test_app, store, sign, monkeypatch) -> None:
    from paysync.models import StorageError

    def broken_lookup(provider_subscription_id):
        raise StorageError("connection reset")

    monkeypatch.setattr(store, "get_subscription_by_provider_id", broken_lookup)
    body = _subscription_event("subscription.active")
    async with _client(test_app) as client:
        response = await client.post("/webhook", content=body, headers=sign(body))

    assert response.status_code == 500
    audit_rows = _rows(store, WebhookEvent)
    assert len(audit_rows) == 1
    assert audit_rows[0].processed is False
    assert "connection reset" in audit_rows[0].error_message


@pytest.mark.anyio
async def test_webhooks_listing_and_metrics(test_app, sign) -> None:
    body = json.dumps({"type": "refund.succeeded", "data": {}})
    async with _client(test_app) as client:
        await client.post("/webhook", content=body, headers=sign(body))
        listing = await client.get("/webhooks")
        metrics = await client.get("/metrics")
        admin_metrics = await client.get("/admin/metrics")

    assert listing.status_code == 200
    assert listing.json()[0]["event_type"] == "refund.succeeded"
    assert metrics.status_code == 200
    assert "webhook_ignored_total" in metrics.text
    assert admin_metrics.json()["webhook_ignored"] >= 1


@pytest.mark.anyio
async def test_routes_also_served_under_api_prefix(test_app, store, sign) -> None:
    body = _subscription_event("subscription.cancelled", subscription_id="sub_api_1")
    async with _client(test_app) as client:
        health = await client.get("/api/")
        response = await client.post("/api/webhook", content=body, headers=sign(body))

    assert health.json()["status"] == "healthy"
    assert response.status_code == 200
    assert _rows(store, Subscription)[0].status == SubscriptionStatus.cancelled
