"""API-key REST gateway with timestamped HMAC webhooks (Paddle Billing)."""

import hashlib
import json
import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP

from payrecon.errors import StatusCheckUnsupported
from payrecon.gateways.base import PaymentGateway, as_text, dig, load_json_object, minor_to_major
from payrecon.models import CanonicalWebhookEvent, EventStatus, PaymentSession, ProviderStatus
from payrecon.utils.crypto import hmac_hex, signatures_match

logger = logging.getLogger(__name__)

LIVE_API_URL = "https://api.paddle.com"
SANDBOX_API_URL = "https://sandbox-api.paddle.com"

_EVENT_STATUS = {
    "transaction.completed": EventStatus.COMPLETED,
    "transaction.paid": EventStatus.PENDING,
    "transaction.payment_failed": EventStatus.FAILED,
    "transaction.canceled": EventStatus.FAILED,
}

# transaction.created / transaction.updated carry their status in data.status
_TRANSACTION_STATUS = {
    "draft": EventStatus.PENDING,
    "ready": EventStatus.PENDING,
    "billed": EventStatus.PENDING,
    "paid": EventStatus.PENDING,
    "past_due": EventStatus.PENDING,
    "completed": EventStatus.COMPLETED,
    "canceled": EventStatus.FAILED,
}


def _transaction_status(value) -> EventStatus | None:
    return _TRANSACTION_STATUS.get(value) if isinstance(value, str) else None


def parse_signature_header(header: str) -> tuple[str | None, list[str]]:
    """Split ``ts=...;h1=...`` into the timestamp and every h1 value."""
    timestamp = None
    digests = []
    for part in header.split(";"):
        key, sep, value = part.partition("=")
        if not sep:
            continue
        key, value = key.strip(), value.strip()
        if key == "ts":
            timestamp = value
        elif key == "h1" and value:
            digests.append(value)
    return timestamp, digests


class PaddleGateway(PaymentGateway):
    name = "paddle"
    intent_prefix = "pdl"
    supported_currencies = frozenset({"USD", "EUR", "GBP", "CAD", "AUD", "PKR", "INR", "ZAR"})
    status_poll_after = timedelta(minutes=30)
    signature_header = "Paddle-Signature"

    def __init__(self, api_key: str, webhook_secret: str, api_url: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.api_url = (api_url or (SANDBOX_API_URL if self.sandbox else LIVE_API_URL)).rstrip("/")

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    def create_payment_session(
        self,
        amount,
        currency,
        description,
        return_url=None,
        cancel_url=None,
        metadata=None,
    ) -> PaymentSession:
        value, code = self._validate_request(amount, currency)
        payment_intent_id = self.new_payment_intent_id()
        custom_data = {str(key): str(val) for key, val in (metadata or {}).items()}
        custom_data["payment_intent_id"] = payment_intent_id
        unit_amount = str(int((value * 100).to_integral_value(rounding=ROUND_HALF_UP)))

        body = {
            "items": [
                {
                    "quantity": 1,
                    "price": {
                        "description": description,
                        "name": description,
                        "unit_price": {"amount": unit_amount, "currency_code": code},
                        "product": {"name": description, "tax_category": "standard"},
                    }
                }
            ],
            "currency_code": code,
            "custom_data": custom_data,
        }
        if return_url:
            body["checkout"] = {"url": return_url}

        data = self._request_json(
            "POST",
            f"{self.api_url}/transactions",
            operation="create transaction",
            json=body,
            headers=self._headers(),
            payment_intent_id=payment_intent_id,
        )
        transaction_id = dig(data, "data", "id")
        if not isinstance(transaction_id, str) or not transaction_id:
            raise self._protocol_error("create transaction: response has no data.id", json.dumps(data, default=str))

        checkout_url = dig(data, "data", "checkout", "url")
        logger.info("paddle transaction %s created for %s", transaction_id, payment_intent_id)
        return PaymentSession(
            payment_intent_id=payment_intent_id,
            # Paddle.js can open a checkout from the transaction id alone.
            checkout_reference=checkout_url or transaction_id,
            provider=self.name,
            amount=value,
            currency=code,
            created_at=self._clock(),
            provider_metadata={
                "provider_transaction_id": transaction_id,
                "transaction_status": dig(data, "data", "status"),
                "cancel_url": cancel_url,
            },
        )

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        if not signature or not isinstance(payload, (bytes, bytearray)):
            return False
        timestamp, digests = parse_signature_header(signature)
        if not timestamp or not digests or not (timestamp.isascii() and timestamp.isdigit()):
            return False
        expected = hmac_hex(self.webhook_secret, timestamp.encode("ascii") + b":" + bytes(payload), hashlib.sha256)
        # Several h1 values appear while a secret is being rotated.
        return any(signatures_match(expected, digest) for digest in digests)

    def parse_webhook_event(self, payload: bytes) -> CanonicalWebhookEvent | None:
        event = load_json_object(payload)
        if event is None:
            return None
        event_type = event.get("event_type")
        data = event.get("data")
        if not isinstance(event_type, str) or not isinstance(data, dict):
            return None

        if event_type in ("transaction.created", "transaction.updated"):
            status = _transaction_status(data.get("status"))
        else:
            status = _EVENT_STATUS.get(event_type)
        if status is None:
            return None

        payment_intent_id = as_text(dig(data, "custom_data", "payment_intent_id"))
        transaction_id = as_text(data.get("id"))
        if not (payment_intent_id or transaction_id):
            return None

        total = dig(data, "details", "totals", "total")
        if total is None:
            total = dig(data, "totals", "total")
        currency = data.get("currency_code")
        failure_reason = None
        if status is EventStatus.FAILED:
            failure_reason = as_text(dig(data, "payments", 0, "error_code")) or event_type
        return CanonicalWebhookEvent(
            event_type=event_type,
            status=status,
            payment_intent_id=payment_intent_id,
            provider_transaction_id=transaction_id,
            amount=minor_to_major(total),
            currency=currency.upper() if isinstance(currency, str) and currency else None,
            raw_payload=event,
            provider=self.name,
            event_id=as_text(event.get("event_id") or event.get("notification_id")),
            failure_reason=failure_reason,
        )

    def get_payment_status(self, payment_intent_id, provider_transaction_id=None) -> ProviderStatus:
        if not provider_transaction_id:
            raise StatusCheckUnsupported(
                f"Paddle status lookup for {payment_intent_id} needs the Paddle transaction id", self.name
            )
        data = self._request_json(
            "GET",
            f"{self.api_url}/transactions/{provider_transaction_id}",
            operation="get transaction",
            headers=self._headers(),
            payment_intent_id=payment_intent_id,
        )
        transaction = dig(data, "data")
        status = _transaction_status(dig(transaction, "status"))
        if status is None:
            raise self._protocol_error("get transaction: unknown transaction status", json.dumps(data, default=str))
        total = dig(transaction, "details", "totals", "total")
        currency = dig(transaction, "currency_code")
        return ProviderStatus(
            status=status,
            transaction_id=provider_transaction_id,
            amount=minor_to_major(total),
            currency=currency.upper() if isinstance(currency, str) and currency else None,
            raw=data,
        )
