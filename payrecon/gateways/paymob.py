"""Token-authenticated REST gateway (Paymob Accept).

Session creation is three calls: authenticate, register the order, then
request a payment key that the hosted iframe consumes.
"""

import hashlib
import json
import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

from payrecon.errors import ConfigurationError, GatewayProtocolError
from payrecon.gateways.base import PaymentGateway, as_text, dig, load_json_object, minor_to_major
from payrecon.gateways.token_cache import TokenCache
from payrecon.models import CanonicalWebhookEvent, EventStatus, PaymentSession, ProviderStatus
from payrecon.utils.crypto import hmac_hex, signatures_match

logger = logging.getLogger(__name__)

BASE_URL = "https://accept.paymob.com/api"
# Paymob tokens live for an hour; refresh a little early.
TOKEN_TTL_SECONDS = 50 * 60


def _transaction_status(obj: dict) -> EventStatus | None:
    success = obj.get("success")
    if not isinstance(success, bool):
        return None
    if success:
        return EventStatus.COMPLETED
    if obj.get("pending") is True:
        return EventStatus.PENDING
    return EventStatus.FAILED


class PaymobGateway(PaymentGateway):
    name = "paymob"
    intent_prefix = "pm"
    supported_currencies = frozenset({"EGP", "PKR", "USD", "SAR", "AED", "OMR"})
    status_poll_after = timedelta(minutes=10)
    signature_header = "X-Paymob-Hmac"
    signature_query_param = "hmac"

    def __init__(
        self,
        api_key: str,
        integration_id: str | int,
        hmac_secret: str | None = None,
        iframe_id: str | None = None,
        token_cache: TokenCache | None = None,
        base_url: str = BASE_URL,
        **kwargs,
    ):
        super().__init__(**kwargs)
        if not str(integration_id).isdigit():
            raise ConfigurationError(
                f"PAYMENT_PAYMOB_INTEGRATION_ID must be numeric, got {integration_id!r}", self.name
            )
        self.api_key = api_key
        self.integration_id = int(integration_id)
        self.hmac_secret = hmac_secret or api_key
        self.iframe_id = iframe_id
        self.base_url = base_url.rstrip("/")
        self.tokens = token_cache or TokenCache(TOKEN_TTL_SECONDS)

    def _fetch_token(self) -> str:
        data = self._request_json(
            "POST",
            f"{self.base_url}/auth/tokens",
            operation="authenticate",
            json={"api_key": self.api_key},
        )
        token = dig(data, "token")
        if not isinstance(token, str) or not token:
            raise self._protocol_error("authenticate: response has no token", json.dumps(data, default=str))
        logger.debug("paymob auth token refreshed")
        return token

    def _auth_token(self) -> str:
        return self.tokens.get_or_fetch(self._fetch_token)

    def _on_auth_rejected(self) -> None:
        self.tokens.invalidate()

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
        metadata = dict(metadata or {})
        payment_intent_id = self.new_payment_intent_id()
        amount_cents = int((value * 100).to_integral_value(rounding=ROUND_HALF_UP))
        token = self._auth_token()
        headers = {"Authorization": f"Bearer {token}"}

        order = self._request_json(
            "POST",
            f"{self.base_url}/ecommerce/orders",
            operation="register order",
            json={
                "auth_token": token,
                "delivery_needed": False,
                "amount_cents": amount_cents,
                "currency": code,
                "merchant_order_id": payment_intent_id,
                "items": [
                    {
                        "name": description,
                        "amount_cents": amount_cents,
                        "description": description,
                        "quantity": 1,
                    }
                ],
            },
            headers=headers,
            payment_intent_id=payment_intent_id,
        )
        order_id = dig(order, "id")
        if order_id is None:
            raise self._protocol_error("register order: response has no id", json.dumps(order, default=str))

        name = str(metadata.get("customer_name") or "Customer").strip()
        first_name, _, last_name = name.partition(" ")
        billing = {
            "first_name": first_name or "Customer",
            "last_name": last_name.strip() or "NA",
            "email": metadata.get("customer_email") or "NA",
            "phone_number": metadata.get("customer_phone") or "NA",
            "apartment": "NA",
            "floor": "NA",
            "street": "NA",
            "building": "NA",
            "shipping_method": "NA",
            "postal_code": "NA",
            "city": "NA",
            "country": "NA",
            "state": "NA",
        }
        key = self._request_json(
            "POST",
            f"{self.base_url}/acceptance/payment_keys",
            operation="request payment key",
            json={
                "auth_token": token,
                "amount_cents": amount_cents,
                "expiration": 3600,
                "order_id": order_id,
                "billing_data": billing,
                "currency": code,
                "integration_id": self.integration_id,
            },
            headers=headers,
            payment_intent_id=payment_intent_id,
        )
        payment_token = dig(key, "token")
        if not isinstance(payment_token, str) or not payment_token:
            raise self._protocol_error("request payment key: response has no token", json.dumps(key, default=str))

        checkout = None
        if self.iframe_id:
            checkout = f"{self.base_url}/acceptance/iframes/{self.iframe_id}?payment_token={payment_token}"

        logger.info("paymob order %s registered for %s", order_id, payment_intent_id)
        return PaymentSession(
            payment_intent_id=payment_intent_id,
            checkout_reference=checkout or payment_token,
            provider=self.name,
            amount=value,
            currency=code,
            created_at=self._clock(),
            provider_metadata={
                "order_id": str(order_id),
                "payment_token": payment_token,
                "amount_cents": amount_cents,
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        )

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        if not signature or not isinstance(payload, (bytes, bytearray)):
            return False
        expected = hmac_hex(self.hmac_secret, bytes(payload), hashlib.sha512)
        return signatures_match(expected, signature)

    def parse_webhook_event(self, payload: bytes) -> CanonicalWebhookEvent | None:
        data = load_json_object(payload)
        if data is None or data.get("type", "TRANSACTION") != "TRANSACTION":
            return None
        obj = data.get("obj")
        if not isinstance(obj, dict):
            return None
        status = _transaction_status(obj)
        payment_intent_id = as_text(dig(obj, "order", "merchant_order_id"))
        transaction_id = as_text(obj.get("id"))
        if status is None or not (payment_intent_id or transaction_id):
            return None

        failure_reason = None
        if status is EventStatus.FAILED:
            failure_reason = dig(obj, "data", "message") or "Paymob transaction declined"
        currency = obj.get("currency")
        return CanonicalWebhookEvent(
            event_type=f"payment.{status.value}",
            status=status,
            payment_intent_id=payment_intent_id,
            provider_transaction_id=transaction_id,
            amount=minor_to_major(obj.get("amount_cents")),
            currency=currency.upper() if isinstance(currency, str) and currency else None,
            raw_payload=data,
            provider=self.name,
            failure_reason=str(failure_reason) if failure_reason else None,
        )

    def get_payment_status(self, payment_intent_id, provider_transaction_id=None) -> ProviderStatus:
        token = self._auth_token()
        try:
            data = self._request_json(
                "POST",
                f"{self.base_url}/ecommerce/orders/transaction_inquiry",
                operation="transaction inquiry",
                json={"auth_token": token, "merchant_order_id": payment_intent_id},
                headers={"Authorization": f"Bearer {token}"},
                payment_intent_id=payment_intent_id,
            )
        except GatewayProtocolError as exc:
            # No transaction yet for this order.
            if exc.status_code == 404:
                return ProviderStatus(status=EventStatus.PENDING)
            raise
        if not isinstance(data, dict):
            raise self._protocol_error("transaction inquiry: expected an object", json.dumps(data, default=str))
        status = _transaction_status(data)
        if status is None:
            raise self._protocol_error("transaction inquiry: no success flag", json.dumps(data, default=str))
        transaction_id = data.get("id")
        currency = data.get("currency")
        return ProviderStatus(
            status=status,
            transaction_id=str(transaction_id) if transaction_id is not None else None,
            amount=minor_to_major(data.get("amount_cents")),
            currency=currency.upper() if isinstance(currency, str) and currency else None,
            raw=data,
        )
