import logging
from typing import Any, Callable, TypeVar

from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, col, create_engine, select

from paysync.models import (
    ConflictError,
    Customer,
    Payment,
    PaymentStatus,
    StorageError,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
    utcnow,
)


logger = logging.getLogger(__name__)
T = TypeVar("T")


def build_engine(database_url: str) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, pool_pre_ping=True)
    kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(database_url, **kwargs)


def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


class RecordStore:
    """Typed access to the relational store, one short-lived session per call."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def _run(self, operation: str, fn: Callable[[Session], T]) -> T:
        try:
            with Session(self.engine, expire_on_commit=False) as session:
                return fn(session)
        except IntegrityError as exc:
            raise ConflictError(f"{operation} violates a uniqueness constraint ({exc.orig})") from exc
        except SQLAlchemyError as exc:
            raise StorageError(f"{operation} failed: {exc}") from exc

    def _insert(self, operation: str, row: T) -> T:
        def insert(session: Session) -> T:
            session.add(row)
            session.commit()
            return row

        return self._run(operation, insert)

    def _first(self, operation: str, statement: Any) -> Any:
        return self._run(operation, lambda session: session.exec(statement).first())

    def insert_customer(self, *, email: str, name: str, provider_customer_id: str) -> Customer:
        customer = Customer(email=email, name=name, provider_customer_id=provider_customer_id)
        return self._insert("insert customer", customer)

    def get_customer(self, customer_id: int) -> Customer | None:
        return self._run("get customer", lambda session: session.get(Customer, customer_id))

    def get_customer_by_email(self, email: str) -> Customer | None:
        statement = select(Customer).where(Customer.email == email)
        return self._first("get customer by email", statement)

    def get_customer_by_provider_id(self, provider_customer_id: str) -> Customer | None:
        statement = select(Customer).where(Customer.provider_customer_id == provider_customer_id)
        return self._first("get customer by provider id", statement)

    def insert_subscription(self, **values: Any) -> Subscription:
        return self._insert("insert subscription", Subscription(**values))

    def get_subscription(self, subscription_id: int) -> Subscription | None:
        return self._run("get subscription", lambda session: session.get(Subscription, subscription_id))

    def get_subscription_by_provider_id(self, provider_subscription_id: str) -> Subscription | None:
        statement = select(Subscription).where(Subscription.provider_subscription_id == provider_subscription_id)
        return self._first("get subscription by provider id", statement)

    def list_subscriptions(self, customer_id: int) -> list[Subscription]:
        statement = (
            select(Subscription)
            .where(Subscription.customer_id == customer_id)
            .order_by(col(Subscription.created_at).desc(), col(Subscription.id).desc())
        )
        return self._run("list subscriptions", lambda session: list(session.exec(statement).all()))

    def update_subscription(self, subscription_id: int, values: dict[str, Any]) -> Subscription | None:
        def apply(session: Session) -> Subscription | None:
            subscription = session.get(Subscription, subscription_id)
            if subscription is None:
                return None
            for field, value in values.items():
                setattr(subscription, field, value)
            subscription.updated_at = utcnow()
            session.add(subscription)
            session.commit()
            return subscription

        return self._run("update subscription", apply)

    def find_pending_placeholder(self, customer_id: int, product_id: str, prefix: str) -> Subscription | None:
        statement = (
            select(Subscription)
            .where(
                Subscription.customer_id == customer_id,
                Subscription.product_id == product_id,
                Subscription.status == SubscriptionStatus.pending,
                col(Subscription.provider_subscription_id).startswith(prefix, autoescape=True),
            )
            .order_by(col(Subscription.created_at).desc(), col(Subscription.id).desc())
            .limit(1)
        )
        return self._first("find pending placeholder", statement)

    def claim_placeholder(
        self,
        subscription_id: int,
        placeholder_id: str,
        values: dict[str, Any],
    ) -> Subscription | None:
        """Overwrite the row only while it still holds ``placeholder_id`` and is pending."""

        def claim(session: Session) -> Subscription | None:
            statement = (
                update(Subscription)
                .where(
                    col(Subscription.id) == subscription_id,
                    col(Subscription.provider_subscription_id) == placeholder_id,
                    col(Subscription.status) == SubscriptionStatus.pending,
                )
                .values(**values, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            result = session.execute(statement)
            if result.rowcount != 1:
                session.rollback()
                return None
            session.commit()
            return session.get(Subscription, subscription_id)

        return self._run("claim placeholder subscription", claim)

    def insert_payment(self, **values: Any) -> Payment:
        return self._insert("insert payment", Payment(**values))

    def get_payment_by_provider_id(self, provider_payment_id: str) -> Payment | None:
        statement = select(Payment).where(Payment.provider_payment_id == provider_payment_id)
        return self._first("get payment by provider id", statement)

    def upsert_payment(self, *, provider_payment_id: str, **values: Any) -> Payment:
        def upsert(session: Session) -> Payment:
            statement = select(Payment).where(Payment.provider_payment_id == provider_payment_id)
            payment = session.exec(statement).first()
            if payment is None:
                payment = Payment(provider_payment_id=provider_payment_id, **values)
            else:
                for field, value in values.items():
                    setattr(payment, field, value)
                payment.updated_at = utcnow()
            session.add(payment)
            session.commit()
            return payment

        return self._run("upsert payment", upsert)

    def update_payment_status(
        self,
        provider_payment_id: str,
        status: PaymentStatus,
        payment_method: str | None = None,
    ) -> Payment | None:
        def apply(session: Session) -> Payment | None:
            statement = select(Payment).where(Payment.provider_payment_id == provider_payment_id)
            payment = session.exec(statement).first()
            if payment is None:
                return None
            payment.status = status
            if payment_method is not None:
                payment.payment_method = payment_method
            payment.updated_at = utcnow()
            session.add(payment)
            session.commit()
            return payment

        return self._run("update payment status", apply)

    def log_webhook_event(self, event_type: str, data: dict[str, Any]) -> WebhookEvent:
        event = WebhookEvent(event_type=event_type, data=data, processed=False)
        return self._insert("log webhook event", event)

    def get_webhook_event(self, event_id: int) -> WebhookEvent | None:
        return self._run("get webhook event", lambda session: session.get(WebhookEvent, event_id))

    def mark_webhook_processed(self, event_id: int) -> WebhookEvent | None:
        def mark(session: Session) -> WebhookEvent | None:
            event = session.get(WebhookEvent, event_id)
            if event is None:
                return None
            event.processed = True
            event.processed_at = utcnow()
            event.error_message = None
            session.add(event)
            session.commit()
            return event

        return self._run("mark webhook processed", mark)

    def mark_webhook_failed(self, event_id: int, message: str) -> WebhookEvent | None:
        def mark(session: Session) -> WebhookEvent | None:
            event = session.get(WebhookEvent, event_id)
            if event is None:
                return None
            event.processed = False
            event.error_message = message
            session.add(event)
            session.commit()
            return event

        return self._run("mark webhook failed", mark)

    def list_webhook_events(self, limit: int = 50) -> list[WebhookEvent]:
        statement = select(WebhookEvent).order_by(col(WebhookEvent.id).desc()).limit(limit)
        return self._run("list webhook events", lambda session: list(session.exec(statement).all()))
