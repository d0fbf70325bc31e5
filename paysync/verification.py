from typing import Mapping

from standardwebhooks import Webhook, WebhookVerificationError

from paysync.models import VerificationError


WEBHOOK_HEADERS = ("webhook-id", "webhook-signature", "webhook-timestamp")


class StandardWebhookVerifier:
    """Checks Standard Webhooks signatures (``webhook-*`` headers) against a shared key."""

    def __init__(self, key: str):
        try:
            self._webhook = Webhook(key)
        except (ValueError, RuntimeError) as exc:
            raise RuntimeError("DODO_PAYMENTS_WEBHOOK_KEY is not a valid signing key") from exc

    def verify(self, payload: bytes, headers: Mapping[str, str]) -> None:
        selected = {name: headers.get(name) or "" for name in WEBHOOK_HEADERS}
        try:
            self._webhook.verify(payload, selected, json_parse=False)
        except WebhookVerificationError as exc:
            raise VerificationError(f"webhook signature rejected: {exc}") from exc
        except ValueError as exc:
            # Non UTF-8 body or a signature header that is not "v1,<sig>".
            raise VerificationError("webhook signature rejected: malformed request") from exc
