import datetime as dt
import logging
import time
import uuid
from typing import Any, Callable, Mapping, Protocol

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from paysync.config import Settings, checkout_url
from paysync.models import (
    AlreadyExistsError,
    ConflictError,
    Customer,
    CustomerIdentity,
    EventType,
    NotFoundError,
    ParseError,
    PaySyncError,
    Payment,
    PaymentEventData,
    PaymentStatus,
    SignupIn,
    SubscribeIn,
    Subscription,
    SubscriptionEventData,
    SubscriptionInitiated,
    SubscriptionStatus,
    UpstreamError,
    ValidationError,
    VerificationError,
    WebhookEnvelope,
    WebhookEvent,
    WebhookResult,
)
from paysync.repositories import RecordStore


logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "temp_"
MAX_RECONCILE_ATTEMPTS = 3
DEFAULT_CURRENCY = "USD"
DEFAULT_BILLING_INTERVAL = "month"
UNKNOWN_PRODUCT_ID = "unknown"

METRICS: dict[str, int] = {
    "webhook_received": 0,
    "webhook_processed": 0,
    "webhook_failed": 0,
    "webhook_ignored": 0,
    "webhook_rejected": 0,
}

# Target statuses reachable from each current status. Nothing leaves cancelled.
ALLOWED_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.pending: {SubscriptionStatus.active, SubscriptionStatus.cancelled},
    SubscriptionStatus.active: {SubscriptionStatus.active, SubscriptionStatus.cancelled},
    SubscriptionStatus.paused: {SubscriptionStatus.active, SubscriptionStatus.cancelled},
    SubscriptionStatus.expired: {SubscriptionStatus.active, SubscriptionStatus.cancelled},
    SubscriptionStatus.failed: {SubscriptionStatus.active, SubscriptionStatus.cancelled},
    SubscriptionStatus.cancelled: {SubscriptionStatus.cancelled},
}


class CustomerProvider(Protocol):
    def create_customer(self, *, email: str, name: str) -> dict[str, Any]: ...


class SignatureVerifier(Protocol):
    def verify(self, payload: bytes, headers: Mapping[str, str]) -> None: ...


def _parse_timestamp(value: Any) -> dt.datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return dt.datetime.fromtimestamp(value, dt.timezone.utc)
    if isinstance(value, str):
        try:
            parsed = dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("timestamp_unparseable value=%s", value)
            return None
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=dt.timezone.utc)
        return parsed.astimezone(dt.timezone.utc)
    return None


def signup_customer(store: RecordStore, provider: CustomerProvider, signup: SignupIn) -> Customer:
    try:
        if store.get_customer_by_email(signup.email) is not None:
            raise AlreadyExistsError(f"customer with email {signup.email} already exists")

        logger.info("provider_customer_create email=%s", signup.email)
        remote = provider.create_customer(email=signup.email, name=signup.name)
        provider_customer_id = remote.get("customer_id")
        if not provider_customer_id:
            raise UpstreamError("provider returned no customer_id")

        try:
            customer = store.insert_customer(
                email=signup.email,
                name=signup.name,
                provider_customer_id=str(provider_customer_id),
            )
        except ConflictError as exc:
            if store.get_customer_by_email(signup.email) is not None:
                raise AlreadyExistsError(f"customer with email {signup.email} already exists") from exc
            raise
    except PaySyncError as exc:
        exc.with_context(f"signup email={signup.email}")
        raise

    logger.info("customer_created customer_id=%s provider_customer_id=%s", customer.id, customer.provider_customer_id)
    return customer


def sync_customer_from_webhook(
    store: RecordStore,
    provider_customer_id: str,
    email: str | None,
    name: str | None,
) -> Customer | None:
    customer = store.get_customer_by_provider_id(provider_customer_id)
    if customer is not None:
        return customer
    if not email:
        logger.warning("customer_sync_skipped provider_customer_id=%s reason=missing_email", provider_customer_id)
        return None

    logger.info("customer_created_from_webhook provider_customer_id=%s", provider_customer_id)
    try:
        return store.insert_customer(email=email, name=name or "", provider_customer_id=provider_customer_id)
    except ConflictError:
        existing = store.get_customer_by_provider_id(provider_customer_id)
        if existing is None:
            raise
        return existing


def ensure_customer(store: RecordStore, provider: CustomerProvider, identity: CustomerIdentity) -> Customer:
    if identity.provider_customer_id:
        customer = sync_customer_from_webhook(store, identity.provider_customer_id, identity.email, identity.name)
        if customer is None:
            raise ValidationError("email is required to create a customer from provider data")
        return customer
    if not identity.email or not identity.name:
        raise ValidationError("email and name are required")
    return signup_customer(store, provider, SignupIn(email=identity.email, name=identity.name))


def generate_placeholder_id(now: float | None = None) -> str:
    millis = int((time.time() if now is None else now) * 1000)
    return f"{PLACEHOLDER_PREFIX}{millis}_{uuid.uuid4().hex[:9]}"


def is_placeholder_id(provider_subscription_id: str | None) -> bool:
    return bool(provider_subscription_id) and provider_subscription_id.startswith(PLACEHOLDER_PREFIX)


def initiate_subscription(store: RecordStore, settings: Settings, subscribe: SubscribeIn) -> SubscriptionInitiated:
    """Record a pending subscription and return the hosted checkout link."""
    try:
        customer = store.get_customer_by_email(subscribe.customer_email)
        if customer is None:
            raise NotFoundError("customer not found, must sign up first")

        placeholder_id = generate_placeholder_id()
        subscription = store.insert_subscription(
            customer_id=customer.id,
            provider_subscription_id=placeholder_id,
            product_id=subscribe.product_id,
            status=SubscriptionStatus.pending,
            billing_interval=subscribe.billing_interval,
            amount=0,
            currency=DEFAULT_CURRENCY,
        )
    except PaySyncError as exc:
        exc.with_context(f"subscribe email={subscribe.customer_email} product_id={subscribe.product_id}")
        raise

    logger.info(
        "subscription_pending subscription_id=%s placeholder_id=%s trial_period_days=%s",
        subscription.id,
        placeholder_id,
        subscribe.trial_period_days,
    )
    return SubscriptionInitiated(
        subscription=subscription,
        checkout_url=checkout_url(settings.checkout_base_url, subscribe.product_id, subscribe.customer_email),
        placeholder_id=placeholder_id,
    )


def _billing_values(data: SubscriptionEventData) -> dict[str, Any]:
    values: dict[str, Any] = {}
    if data.recurring_pre_tax_amount is not None:
        values["amount"] = data.recurring_pre_tax_amount
    if data.payment_frequency_interval:
        values["billing_interval"] = data.payment_frequency_interval.lower()
    if data.currency:
        values["currency"] = data.currency
    next_billing_date = _parse_timestamp(data.next_billing_date)
    if next_billing_date is not None:
        values["next_billing_date"] = next_billing_date
    return values


def _confirmed_values(data: SubscriptionEventData, target_status: SubscriptionStatus) -> dict[str, Any]:
    return {
        "provider_subscription_id": data.subscription_id,
        "product_id": data.product_id or UNKNOWN_PRODUCT_ID,
        "status": target_status,
        "billing_interval": (data.payment_frequency_interval or DEFAULT_BILLING_INTERVAL).lower(),
        "amount": data.recurring_pre_tax_amount or 0,
        "currency": data.currency or DEFAULT_CURRENCY,
        "next_billing_date": _parse_timestamp(data.next_billing_date),
    }


def _apply_transition(
    store: RecordStore,
    subscription: Subscription,
    data: SubscriptionEventData,
    target_status: SubscriptionStatus,
) -> Subscription:
    current = SubscriptionStatus(subscription.status)
    if target_status not in ALLOWED_TRANSITIONS[current]:
        logger.warning(
            "subscription_transition_refused subscription_id=%s from=%s to=%s",
            subscription.id,
            current.value,
            target_status.value,
        )
        return subscription

    values: dict[str, Any] = {"status": target_status}
    if target_status == SubscriptionStatus.active:
        values.update(_billing_values(data))
    updated = store.update_subscription(subscription.id, values)
    if updated is None:
        raise ConflictError(f"subscription {subscription.id} disappeared during update")
    logger.info(
        "subscription_updated subscription_id=%s from=%s to=%s",
        updated.id,
        current.value,
        target_status.value,
    )
    return updated


def _reconcile_once(
    store: RecordStore,
    data: SubscriptionEventData,
    target_status: SubscriptionStatus,
) -> Subscription | None:
    existing = store.get_subscription_by_provider_id(data.subscription_id)
    if existing is not None:
        return _apply_transition(store, existing, data, target_status)

    if data.customer is None or not data.customer.customer_id:
        logger.warning(
            "subscription_event_skipped provider_subscription_id=%s reason=missing_customer",
            data.subscription_id,
        )
        return None
    customer = sync_customer_from_webhook(store, data.customer.customer_id, data.customer.email, data.customer.name)
    if customer is None:
        return None

    values = _confirmed_values(data, target_status)
    placeholder = store.find_pending_placeholder(customer.id, values["product_id"], PLACEHOLDER_PREFIX)
    if placeholder is not None:
        claimed = store.claim_placeholder(placeholder.id, placeholder.provider_subscription_id, values)
        if claimed is None:
            raise ConflictError(f"placeholder {placeholder.provider_subscription_id} was claimed concurrently")
        logger.info(
            "subscription_placeholder_claimed subscription_id=%s placeholder_id=%s provider_subscription_id=%s status=%s",
            claimed.id,
            placeholder.provider_subscription_id,
            data.subscription_id,
            target_status.value,
        )
        return claimed

    created = store.insert_subscription(customer_id=customer.id, **values)
    logger.info(
        "subscription_created subscription_id=%s provider_subscription_id=%s status=%s",
        created.id,
        data.subscription_id,
        target_status.value,
    )
    return created


def reconcile_subscription(
    store: RecordStore,
    data: SubscriptionEventData,
    target_status: SubscriptionStatus,
) -> Subscription | None:
    """Update the row holding the real id, else claim the newest pending placeholder, else insert."""
    if not data.subscription_id or is_placeholder_id(data.subscription_id):
        logger.warning("subscription_event_skipped reason=missing_subscription_id")
        return None

    attempt = 1
    while True:
        try:
            return _reconcile_once(store, data, target_status)
        except ConflictError as exc:
            if attempt >= MAX_RECONCILE_ATTEMPTS:
                exc.with_context(f"reconcile provider_subscription_id={data.subscription_id}")
                raise
            logger.warning(
                "subscription_reconcile_retry provider_subscription_id=%s attempt=%s error=%s",
                data.subscription_id,
                attempt,
                exc,
            )
            attempt += 1
        except PaySyncError as exc:
            exc.with_context(f"reconcile provider_subscription_id={data.subscription_id}")
            raise


def record_payment(store: RecordStore, data: PaymentEventData, status: PaymentStatus) -> Payment | None:
    if not data.payment_id or data.customer is None or not data.customer.customer_id:
        logger.warning("payment_event_skipped reason=missing_payment_or_customer")
        return None

    try:
        customer = store.get_customer_by_provider_id(data.customer.customer_id)
        if customer is None:
            logger.warning(
                "payment_event_skipped payment_id=%s provider_customer_id=%s reason=unknown_customer",
                data.payment_id,
                data.customer.customer_id,
            )
            return None

        subscription_id = None
        if data.subscription_id:
            subscription = store.get_subscription_by_provider_id(data.subscription_id)
            if subscription is not None:
                subscription_id = subscription.id

        payment = store.upsert_payment(
            provider_payment_id=data.payment_id,
            customer_id=customer.id,
            subscription_id=subscription_id,
            amount=data.total_amount or 0,
            currency=data.currency or DEFAULT_CURRENCY,
            status=status,
            payment_method=data.payment_method,
        )
    except PaySyncError as exc:
        exc.with_context(f"record payment payment_id={data.payment_id}")
        raise

    logger.info("payment_recorded payment_id=%s customer_id=%s status=%s", data.payment_id, customer.id, status.value)
    return payment


def _event_data(model: type[BaseModel], envelope: WebhookEnvelope) -> Any:
    try:
        return model.model_validate(envelope.data)
    except PydanticValidationError as exc:
        logger.warning(
            "webhook_payload_skipped event_type=%s reason=unexpected_shape errors=%s",
            envelope.type,
            exc.error_count(),
        )
        return None


def _handle_subscription_event(store: RecordStore, envelope: WebhookEnvelope, target_status: SubscriptionStatus) -> None:
    data = _event_data(SubscriptionEventData, envelope)
    if data is not None:
        reconcile_subscription(store, data, target_status)


def _handle_subscription_active(store: RecordStore, envelope: WebhookEnvelope) -> None:
    _handle_subscription_event(store, envelope, SubscriptionStatus.active)


def _handle_subscription_cancelled(store: RecordStore, envelope: WebhookEnvelope) -> None:
    _handle_subscription_event(store, envelope, SubscriptionStatus.cancelled)


def _handle_subscription_renewed(store: RecordStore, envelope: WebhookEnvelope) -> None:
    # Renewal keeps the subscription active and refreshes its billing fields.
    _handle_subscription_event(store, envelope, SubscriptionStatus.active)


def _handle_payment_succeeded(store: RecordStore, envelope: WebhookEnvelope) -> None:
    data = _event_data(PaymentEventData, envelope)
    if data is not None:
        record_payment(store, data, PaymentStatus.succeeded)


EVENT_HANDLERS: dict[EventType, Callable[[RecordStore, WebhookEnvelope], None]] = {
    EventType.subscription_active: _handle_subscription_active,
    EventType.subscription_cancelled: _handle_subscription_cancelled,
    EventType.subscription_renewed: _handle_subscription_renewed,
    EventType.payment_succeeded: _handle_payment_succeeded,
}


def parse_envelope(raw_body: bytes) -> WebhookEnvelope:
    try:
        return WebhookEnvelope.model_validate_json(raw_body)
    except PydanticValidationError as exc:
        raise ParseError(f"invalid webhook body ({exc.error_count()} error(s))") from exc


def dispatch_event(store: RecordStore, envelope: WebhookEnvelope) -> bool:
    """Run the handler for the envelope's type; returns False when the type has none."""
    event_type = EventType.parse(envelope.type)
    if event_type is None:
        logger.info("webhook_ignored event_type=%s", envelope.type)
        return False
    EVENT_HANDLERS[event_type](store, envelope)
    return True


def _mark_failed(store: RecordStore, event: WebhookEvent, message: str) -> None:
    METRICS["webhook_failed"] += 1
    logger.warning("webhook_failed event_type=%s audit_id=%s error=%s", event.event_type, event.id, message)
    try:
        store.mark_webhook_failed(event.id, message)
    except PaySyncError:
        logger.exception("webhook_mark_failed_error audit_id=%s", event.id)


def handle_webhook(
    store: RecordStore,
    raw_body: bytes,
    headers: Mapping[str, str],
    verifier: SignatureVerifier | None = None,
) -> WebhookResult:
    METRICS["webhook_received"] += 1
    if verifier is not None:
        try:
            verifier.verify(raw_body, headers)
        except VerificationError:
            METRICS["webhook_rejected"] += 1
            logger.warning("webhook_rejected reason=signature webhook_id=%s", headers.get("webhook-id"))
            raise
    else:
        logger.info("webhook_signature_skipped reason=no_signing_key")

    try:
        envelope = parse_envelope(raw_body)
    except ParseError:
        METRICS["webhook_rejected"] += 1
        logger.warning("webhook_rejected reason=parse webhook_id=%s", headers.get("webhook-id"))
        raise

    event = store.log_webhook_event(envelope.type, envelope.data)
    try:
        handled = dispatch_event(store, envelope)
    except Exception as exc:
        _mark_failed(store, event, str(exc))
        raise

    store.mark_webhook_processed(event.id)
    METRICS["webhook_processed" if handled else "webhook_ignored"] += 1
    logger.info("webhook_processed event_type=%s audit_id=%s handled=%s", envelope.type, event.id, handled)
    return WebhookResult(event_type=envelope.type, audit_id=event.id, handled=handled)


def list_webhook_events(store: RecordStore, limit: int = 50) -> list[WebhookEvent]:
    return store.list_webhook_events(limit=limit)


def get_metrics() -> dict[str, int]:
    return dict(METRICS)
