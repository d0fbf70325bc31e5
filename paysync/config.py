from typing import Literal
from urllib.parse import quote, urlencode

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_DATABASE_URL = "sqlite:///./paysync.db"
DEFAULT_CHECKOUT_URL = "https://test.checkout.dodopayments.com"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_ignore_empty=True,
        extra="ignore",
        populate_by_name=True,
    )

    database_url: str = Field(default=DEFAULT_DATABASE_URL, validation_alias="DATABASE_URL")
    provider_api_key: str = Field(default="", validation_alias="DODO_PAYMENTS_API_KEY")
    provider_environment: Literal["test_mode", "live_mode"] = Field(
        default="test_mode",
        validation_alias="DODO_PAYMENTS_ENVIRONMENT",
    )
    provider_base_url: str | None = Field(default=None, validation_alias="DODO_PAYMENTS_BASE_URL")
    provider_timeout_seconds: float = Field(default=30.0, gt=0, validation_alias="PROVIDER_TIMEOUT_SECONDS")
    webhook_key: str | None = Field(default=None, validation_alias="DODO_PAYMENTS_WEBHOOK_KEY")
    checkout_base_url: str = Field(default=DEFAULT_CHECKOUT_URL, validation_alias="DODO_CHECKOUT_URL")

    def missing_required(self) -> list[str]:
        values = {
            "DODO_PAYMENTS_API_KEY": self.provider_api_key,
            "DODO_PAYMENTS_WEBHOOK_KEY": self.webhook_key,
        }
        return [name for name, value in values.items() if not value]


def load_settings() -> Settings:
    return Settings()


def checkout_url(base_url: str, product_id: str, customer_email: str | None = None) -> str:
    """Hosted checkout link for a product. Pure: no store or network access."""
    url = f"{base_url.rstrip('/')}/buy/{quote(product_id, safe='')}"
    if customer_email:
        url = f"{url}?{urlencode({'email': customer_email})}"
    return url
