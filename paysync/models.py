import datetime as dt
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class SubscriptionStatus(str, Enum):
    pending = "pending"
    active = "active"
    cancelled = "cancelled"
    paused = "paused"
    expired = "expired"
    failed = "failed"


class PaymentStatus(str, Enum):
    succeeded = "succeeded"
    failed = "failed"
    processing = "processing"
    cancelled = "cancelled"


class EventType(str, Enum):
    subscription_active = "subscription.active"
    subscription_cancelled = "subscription.cancelled"
    subscription_renewed = "subscription.renewed"
    payment_succeeded = "payment.succeeded"

    @classmethod
    def parse(cls, value: str | None) -> "EventType | None":
        try:
            return cls(value)
        except ValueError:
            return None


class SignupIn(BaseModel):
    email: str = PydanticField(min_length=1)
    name: str = PydanticField(min_length=1)


class SubscribeIn(BaseModel):
    customer_email: str = PydanticField(min_length=1)
    product_id: str = PydanticField(min_length=1)
    billing_interval: str = PydanticField(min_length=1)
    trial_period_days: int | None = PydanticField(default=None, ge=0)


class CustomerIdentity(BaseModel):
    """Who a customer is, as known at signup (no provider id) or from a webhook."""

    email: str | None = None
    name: str | None = None
    provider_customer_id: str | None = None


class WebhookEnvelope(BaseModel):
    type: str
    data: dict[str, Any] = PydanticField(default_factory=dict)
    timestamp: str | None = None
    business_id: str | None = None

    model_config = ConfigDict(extra="allow")


class WebhookCustomer(BaseModel):
    customer_id: str | None = None
    email: str | None = None
    name: str | None = None

    model_config = ConfigDict(extra="allow")


class SubscriptionEventData(BaseModel):
    payload_type: Literal["Subscription"] = "Subscription"
    subscription_id: str | None = None
    customer: WebhookCustomer | None = None
    product_id: str | None = None
    status: str | None = None
    recurring_pre_tax_amount: int | None = PydanticField(default=None, ge=0)
    payment_frequency_interval: str | None = None
    next_billing_date: str | None = None
    cancelled_at: str | None = None
    currency: str | None = None

    model_config = ConfigDict(extra="allow")


class PaymentEventData(BaseModel):
    payload_type: Literal["Payment"] = "Payment"
    payment_id: str | None = None
    subscription_id: str | None = None
    customer: WebhookCustomer | None = None
    total_amount: int | None = PydanticField(default=None, ge=0)
    currency: str | None = None
    status: str | None = None
    payment_method: str | None = None

    model_config = ConfigDict(extra="allow")


class Customer(SQLModel, table=True):
    __tablename__ = "customers"

    id: int | None = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str
    provider_customer_id: str = Field(index=True, unique=True)
    created_at: dt.datetime = Field(default_factory=utcnow)
    updated_at: dt.datetime = Field(default_factory=utcnow)


class Subscription(SQLModel, table=True):
    __tablename__ = "subscriptions"
    __table_args__ = (Index("ix_subscriptions_pending_lookup", "customer_id", "product_id", "status"),)

    id: int | None = Field(default=None, primary_key=True)
    customer_id: int = Field(foreign_key="customers.id", ondelete="CASCADE", index=True)
    provider_subscription_id: str = Field(index=True, unique=True)
    product_id: str
    status: SubscriptionStatus = SubscriptionStatus.pending
    billing_interval: str
    amount: int = Field(default=0, ge=0)
    currency: str = "USD"
    next_billing_date: dt.datetime | None = None
    created_at: dt.datetime = Field(default_factory=utcnow)
    updated_at: dt.datetime = Field(default_factory=utcnow)


class Payment(SQLModel, table=True):
    __tablename__ = "payments"

    id: int | None = Field(default=None, primary_key=True)
    customer_id: int = Field(foreign_key="customers.id", ondelete="CASCADE", index=True)
    subscription_id: int | None = Field(default=None, foreign_key="subscriptions.id", ondelete="SET NULL")
    provider_payment_id: str = Field(index=True, unique=True)
    amount: int = Field(default=0, ge=0)
    currency: str = "USD"
    status: PaymentStatus
    payment_method: str | None = None
    created_at: dt.datetime = Field(default_factory=utcnow)
    updated_at: dt.datetime = Field(default_factory=utcnow)


class WebhookEvent(SQLModel, table=True):
    __tablename__ = "webhook_events"

    id: int | None = Field(default=None, primary_key=True)
    event_type: str = Field(index=True)
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    processed: bool = Field(default=False, index=True)
    created_at: dt.datetime = Field(default_factory=utcnow, index=True)
    processed_at: dt.datetime | None = None
    error_message: str | None = None


class SignupOut(BaseModel):
    success: bool = True
    customer: Customer
    message: str = "Customer created successfully"


class SubscriptionInitiated(BaseModel):
    subscription: Subscription
    checkout_url: str
    placeholder_id: str


class SubscribeOut(BaseModel):
    success: bool = True
    subscription: Subscription
    payment_link: str
    provider_subscription_id: str
    message: str = "Subscription created successfully"


class CustomerOut(BaseModel):
    success: bool = True
    customer: Customer


class WebhookResult(BaseModel):
    success: bool = True
    event_type: str
    audit_id: int | None = None
    handled: bool = True
    message: str = "Webhook processed successfully"


class ErrorKind(str, Enum):
    validation = "validation"
    not_found = "not_found"
    conflict = "conflict"
    verification = "verification"
    parse = "parse"
    upstream = "upstream"
    storage = "storage"


class PaySyncError(Exception):
    kind: ErrorKind = ErrorKind.storage

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.context: list[str] = []

    def with_context(self, context: str) -> "PaySyncError":
        self.context.insert(0, context)
        return self

    def __str__(self) -> str:
        return ": ".join([*self.context, self.message])


class ValidationError(PaySyncError):
    kind = ErrorKind.validation


class NotFoundError(PaySyncError):
    kind = ErrorKind.not_found


class ConflictError(PaySyncError):
    kind = ErrorKind.conflict


class AlreadyExistsError(ConflictError):
    pass


class VerificationError(PaySyncError):
    kind = ErrorKind.verification


class ParseError(PaySyncError):
    kind = ErrorKind.parse


class UpstreamError(PaySyncError):
    kind = ErrorKind.upstream

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class StorageError(PaySyncError):
    kind = ErrorKind.storage
