import logging
from typing import Any, Callable

from dodopayments import APIError, APIStatusError, DodoPayments

from paysync.models import UpstreamError


logger = logging.getLogger(__name__)

DEFAULT_BILLING: dict[str, str] = {
    "city": "Default City",
    "country": "US",
    "state": "Default State",
    "street": "Default Street",
    "zipcode": "00000",
}


class DodoPaymentsGateway:
    """Wraps the Dodo Payments SDK; every call returns a plain dict or raises ``UpstreamError``."""

    def __init__(
        self,
        api_key: str = "",
        environment: str = "test_mode",
        base_url: str | None = None,
        timeout: float = 30.0,
        client: Any = None,
    ):
        if client is None:
            options: dict[str, Any] = {"bearer_token": api_key, "timeout": timeout}
            if base_url:
                options["base_url"] = base_url
            else:
                options["environment"] = environment
            client = DodoPayments(**options)
        self._client = client

    def __enter__(self) -> "DodoPaymentsGateway":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _call(self, operation: str, method: Callable[..., Any], *args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            result = method(*args, **kwargs)
        except APIStatusError as exc:
            logger.warning(
                "provider_call_failed operation=%s status=%s body=%s",
                operation,
                exc.status_code,
                exc.body,
            )
            raise UpstreamError(f"{operation} failed with status {exc.status_code}", status_code=exc.status_code) from exc
        except APIError as exc:
            logger.warning("provider_call_failed operation=%s error=%s", operation, exc)
            raise UpstreamError(f"{operation} failed: {type(exc).__name__}") from exc
        return result.to_dict()

    def create_customer(self, *, email: str, name: str) -> dict[str, Any]:
        return self._call("create customer", self._client.customers.create, email=email, name=name)

    def get_customer(self, customer_id: str) -> dict[str, Any]:
        return self._call("retrieve customer", self._client.customers.retrieve, customer_id)

    def update_customer(self, customer_id: str, *, email: str | None = None, name: str | None = None) -> dict[str, Any]:
        updates = {key: value for key, value in (("email", email), ("name", name)) if value is not None}
        return self._call("update customer", self._client.customers.update, customer_id, extra_body=updates)

    def create_subscription(
        self,
        *,
        customer_id: str,
        product_id: str,
        billing_interval: str,
        quantity: int = 1,
        trial_period_days: int | None = None,
        payment_frequency_count: int = 1,
        payment_frequency_interval: str | None = None,
        billing: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if trial_period_days is not None:
            options["trial_period_days"] = trial_period_days
        return self._call(
            "create subscription",
            self._client.subscriptions.create,
            customer={"customer_id": customer_id},
            product_id=product_id,
            quantity=quantity,
            billing=billing or DEFAULT_BILLING,
            extra_body={
                "payment_frequency_count": payment_frequency_count,
                "payment_frequency_interval": payment_frequency_interval or billing_interval,
            },
            **options,
        )

    def get_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self._call("retrieve subscription", self._client.subscriptions.retrieve, subscription_id)

    def update_subscription(self, subscription_id: str, updates: dict[str, Any]) -> dict[str, Any]:
        return self._call("update subscription", self._client.subscriptions.update, subscription_id, extra_body=updates)

    def cancel_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self.update_subscription(subscription_id, {"cancel_at_next_billing_date": True})

    def create_payment(
        self,
        *,
        customer_id: str,
        product_cart: list[dict[str, Any]],
        billing: dict[str, Any],
    ) -> dict[str, Any]:
        return self._call(
            "create payment",
            self._client.payments.create,
            customer={"customer_id": customer_id},
            product_cart=product_cart,
            billing=billing,
        )

    def get_payment(self, payment_id: str) -> dict[str, Any]:
        return self._call("retrieve payment", self._client.payments.retrieve, payment_id)

    def create_product(
        self,
        *,
        name: str,
        price: dict[str, Any],
        description: str | None = None,
        tax_category: str = "saas",
    ) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if description is not None:
            options["description"] = description
        return self._call(
            "create product",
            self._client.products.create,
            name=name,
            price=price,
            tax_category=tax_category,
            **options,
        )

    def get_product(self, product_id: str) -> dict[str, Any]:
        return self._call("retrieve product", self._client.products.retrieve, product_id)
