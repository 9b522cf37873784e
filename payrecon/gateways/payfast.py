"""Redirect-form gateway: the payer posts a signed form to PayFast, which
reports back through ITN (instant transaction notification) callbacks."""

import html
import json
import logging
from datetime import timedelta
from urllib.parse import parse_qsl

from payrecon.errors import StatusCheckUnsupported
from payrecon.gateways.base import PaymentGateway, to_money
from payrecon.models import CanonicalWebhookEvent, EventStatus, PaymentSession, ProviderStatus
from payrecon.utils.crypto import form_signature, signatures_match

logger = logging.getLogger(__name__)

LIVE_URL = "https://www.payfast.co.za"
SANDBOX_URL = "https://sandbox.payfast.co.za"
PROCESS_PATH = "/eng/process"

_ITN_STATUS = {
    "COMPLETE": EventStatus.COMPLETED,
    "FAILED": EventStatus.FAILED,
    "CANCELLED": EventStatus.FAILED,
    "PENDING": EventStatus.PENDING,
}


class PayFastGateway(PaymentGateway):
    name = "payfast"
    intent_prefix = "pf"
    supports_status_check = False
    status_poll_after = timedelta(hours=1)
    signature_header = None
    signature_query_param = None

    def __init__(
        self,
        merchant_id: str,
        merchant_key: str,
        passphrase: str | None = None,
        supported_currencies: tuple[str, ...] | list[str] = ("ZAR",),
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.merchant_id = merchant_id
        self.merchant_key = merchant_key
        self.passphrase = passphrase or None
        self.supported_currencies = frozenset(code.upper() for code in supported_currencies)
        self.base_url = SANDBOX_URL if self.sandbox else LIVE_URL

    def sign(self, fields) -> str:
        return form_signature(fields, self.passphrase)

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
        first_name, _, last_name = str(metadata.get("customer_name") or "").strip().partition(" ")

        fields = {
            "merchant_id": self.merchant_id,
            "merchant_key": self.merchant_key,
            "return_url": return_url or "",
            "cancel_url": cancel_url or "",
            "notify_url": str(metadata.get("notify_url") or ""),
            "name_first": first_name or "Customer",
            "name_last": last_name.strip(),
            "email_address": str(metadata.get("customer_email") or ""),
            "cell_number": str(metadata.get("customer_phone") or ""),
            "m_payment_id": payment_intent_id,
            "amount": f"{value:.2f}",
            "item_name": description,
            "custom_str1": json.dumps(metadata, sort_keys=True, default=str),
        }
        fields = {key: val for key, val in fields.items() if val != ""}
        fields["signature"] = self.sign(fields)
        action = f"{self.base_url}{PROCESS_PATH}"

        logger.info("payfast form signed for %s amount=%s %s", payment_intent_id, fields["amount"], code)
        return PaymentSession(
            payment_intent_id=payment_intent_id,
            checkout_reference=action,
            provider=self.name,
            amount=value,
            currency=code,
            created_at=self._clock(),
            provider_metadata={
                "form_fields": fields,
                "form_html": self.render_form(action, fields),
            },
        )

    @staticmethod
    def render_form(action: str, fields: dict[str, str]) -> str:
        inputs = "\n".join(
            f'  <input type="hidden" name="{html.escape(key)}" value="{html.escape(value)}">'
            for key, value in fields.items()
        )
        return (
            f'<form action="{html.escape(action)}" method="post" id="payfast-form">\n'
            f"{inputs}\n"
            '  <button type="submit">Pay now</button>\n'
            "</form>"
        )

    @staticmethod
    def _parse_form(payload) -> list[tuple[str, str]] | None:
        if isinstance(payload, (bytes, bytearray)):
            try:
                payload = bytes(payload).decode("utf-8")
            except UnicodeDecodeError:
                return None
        if not isinstance(payload, str):
            return None
        try:
            return parse_qsl(payload, keep_blank_values=True)
        except ValueError:
            return None

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        fields = self._parse_form(payload)
        if not fields:
            return False
        received = dict(fields).get("signature") or signature
        return signatures_match(self.sign(fields), received)

    def parse_webhook_event(self, payload: bytes) -> CanonicalWebhookEvent | None:
        fields = self._parse_form(payload)
        if not fields:
            return None
        params = dict(fields)
        raw_status = (params.get("payment_status") or "").strip().upper()
        status = _ITN_STATUS.get(raw_status)
        payment_intent_id = params.get("m_payment_id") or None
        transaction_id = params.get("pf_payment_id") or params.get("payment_id") or None
        if status is None or not (payment_intent_id or transaction_id):
            return None

        amount = to_money(params.get("amount_gross") or params.get("amount"))
        return CanonicalWebhookEvent(
            event_type=f"payment.{status.value}",
            status=status,
            payment_intent_id=payment_intent_id,
            provider_transaction_id=transaction_id,
            amount=amount,
            currency=(params.get("currency") or "").upper() or None,
            raw_payload=params,
            provider=self.name,
            failure_reason=f"PayFast reported {raw_status}" if status is EventStatus.FAILED else None,
        )

    def get_payment_status(self, payment_intent_id, provider_transaction_id=None) -> ProviderStatus:
        raise StatusCheckUnsupported("PayFast reports payment status only through ITN callbacks", self.name)
