import datetime as dt
from functools import lru_cache
from typing import Iterator, NoReturn

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from starlette.concurrency import run_in_threadpool

from paysync.config import Settings, load_settings
from paysync.models import (
    CustomerOut,
    ErrorKind,
    PaySyncError,
    SignupIn,
    SignupOut,
    SubscribeIn,
    SubscribeOut,
    Subscription,
    WebhookEvent,
    WebhookResult,
)
from paysync.provider import DodoPaymentsGateway
from paysync.repositories import RecordStore, build_engine
from paysync.services import (
    get_metrics,
    handle_webhook,
    initiate_subscription,
    list_webhook_events,
    signup_customer,
)
from paysync.verification import StandardWebhookVerifier


router = APIRouter()

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.validation: status.HTTP_400_BAD_REQUEST,
    ErrorKind.parse: status.HTTP_400_BAD_REQUEST,
    ErrorKind.not_found: status.HTTP_404_NOT_FOUND,
    ErrorKind.conflict: status.HTTP_409_CONFLICT,
    ErrorKind.verification: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.upstream: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorKind.storage: status.HTTP_500_INTERNAL_SERVER_ERROR,
}
# Anything past verification and parsing is a processing failure the provider should retry.
WEBHOOK_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.verification: status.HTTP_401_UNAUTHORIZED,
    ErrorKind.parse: status.HTTP_400_BAD_REQUEST,
}


@lru_cache
def get_settings() -> Settings:
    return load_settings()


@lru_cache
def get_store() -> RecordStore:
    return RecordStore(build_engine(get_settings().database_url))


def get_provider(settings: Settings = Depends(get_settings)) -> Iterator[DodoPaymentsGateway]:
    with DodoPaymentsGateway(
        api_key=settings.provider_api_key,
        environment=settings.provider_environment,
        base_url=settings.provider_base_url,
        timeout=settings.provider_timeout_seconds,
    ) as gateway:
        yield gateway


def get_verifier(settings: Settings = Depends(get_settings)) -> StandardWebhookVerifier | None:
    if not settings.webhook_key:
        return None
    return StandardWebhookVerifier(settings.webhook_key)


def _raise_http(exc: PaySyncError, mapping: dict[ErrorKind, int] = STATUS_BY_KIND) -> NoReturn:
    status_code = mapping.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    raise HTTPException(status_code=status_code, detail=str(exc)) from exc


@router.get("/")
async def health_check():
    return {
        "service": "paysync",
        "status": "healthy",
        "timestamp": dt.datetime.now(dt.timezone.utc).isoformat(),
    }


@router.post("/signup", response_model=SignupOut, status_code=status.HTTP_201_CREATED)
def signup_endpoint(
    signup_in: SignupIn,
    store: RecordStore = Depends(get_store),
    provider: DodoPaymentsGateway = Depends(get_provider),
):
    try:
        customer = signup_customer(store, provider, signup_in)
    except PaySyncError as exc:
        _raise_http(exc)
    return SignupOut(customer=customer)


@router.post("/subscribe", response_model=SubscribeOut, status_code=status.HTTP_201_CREATED)
def subscribe_endpoint(
    subscribe_in: SubscribeIn,
    store: RecordStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
):
    try:
        initiated = initiate_subscription(store, settings, subscribe_in)
    except PaySyncError as exc:
        _raise_http(exc)
    return SubscribeOut(
        subscription=initiated.subscription,
        payment_link=initiated.checkout_url,
        provider_subscription_id=initiated.placeholder_id,
    )


@router.get("/customers/{email}", response_model=CustomerOut)
def get_customer_endpoint(email: str, store: RecordStore = Depends(get_store)):
    try:
        customer = store.get_customer_by_email(email)
    except PaySyncError as exc:
        _raise_http(exc)
    if customer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    return CustomerOut(customer=customer)


@router.get("/customers/{email}/subscriptions", response_model=list[Subscription])
def list_customer_subscriptions_endpoint(email: str, store: RecordStore = Depends(get_store)):
    try:
        customer = store.get_customer_by_email(email)
        if customer is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
        return store.list_subscriptions(customer.id)
    except PaySyncError as exc:
        _raise_http(exc)


@router.post("/webhook", response_model=WebhookResult)
async def webhook_receiver(
    request: Request,
    store: RecordStore = Depends(get_store),
    verifier: StandardWebhookVerifier | None = Depends(get_verifier),
):
    raw_body = await request.body()
    try:
        return await run_in_threadpool(handle_webhook, store, raw_body, request.headers, verifier)
    except PaySyncError as exc:
        _raise_http(exc, WEBHOOK_STATUS_BY_KIND)


@router.get("/webhooks", response_model=list[WebhookEvent])
def list_webhook_events_endpoint(limit: int = 50, store: RecordStore = Depends(get_store)):
    try:
        return list_webhook_events(store, limit=max(1, min(limit, 500)))
    except PaySyncError as exc:
        _raise_http(exc)


@router.get("/admin/metrics")
async def metrics_endpoint():
    return get_metrics()


@router.get("/metrics")
async def prometheus_metrics_endpoint() -> Response:
    metrics = get_metrics()
    body_lines = [
        "# HELP webhook_received_total Number of webhook deliveries received.",
        "# TYPE webhook_received_total counter",
        f"webhook_received_total {metrics.get('webhook_received', 0)}",
        "# HELP webhook_processed_total Number of webhook events applied.",
        "# TYPE webhook_processed_total counter",
        f"webhook_processed_total {metrics.get('webhook_processed', 0)}",
        "# HELP webhook_ignored_total Number of webhook events with no handler.",
        "# TYPE webhook_ignored_total counter",
        f"webhook_ignored_total {metrics.get('webhook_ignored', 0)}",
        "# HELP webhook_failed_total Number of webhook events that failed processing.",
        "# TYPE webhook_failed_total counter",
        f"webhook_failed_total {metrics.get('webhook_failed', 0)}",
        "# HELP webhook_rejected_total Number of webhook deliveries rejected before processing.",
        "# TYPE webhook_rejected_total counter",
        f"webhook_rejected_total {metrics.get('webhook_rejected', 0)}",
    ]
    return Response(
        content="\n".join(body_lines) + "\n",
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
