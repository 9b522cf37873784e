"""Builders for provider payloads and records, with sensible defaults.

Shared by the test suite and the load test so both speak the exact wire
formats the adapters parse.
"""

import hashlib
import json
import time
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from urllib.parse import urlencode

from payrecon.models import CanonicalWebhookEvent, EventStatus, PaymentRecord, PaymentStatus
from payrecon.utils.crypto import form_signature, hmac_hex


class PaymentRecordFactory:
    """Factory for creating PaymentRecord instances with sensible defaults."""

    @staticmethod
    def create(**overrides) -> PaymentRecord:
        now = datetime.now(timezone.utc)
        defaults = {
            "payment_intent_id": f"pi_{uuid.uuid4().hex[:16]}",
            "status": PaymentStatus.PENDING,
            "amount": Decimal("100.00"),
            "currency": "USD",
            "created_at": now,
            "updated_at": now,
            "provider": "mock",
        }
        defaults.update(overrides)
        return PaymentRecord(**defaults)


class WebhookFactory:
    """Factory for canonical events and provider-native webhook bodies."""

    @staticmethod
    def canonical_event(status: EventStatus = EventStatus.COMPLETED, **overrides) -> CanonicalWebhookEvent:
        defaults = {
            "event_type": f"payment.{status.value}",
            "status": status,
            "payment_intent_id": f"pi_{uuid.uuid4().hex[:16]}",
            "provider_transaction_id": f"txn_{uuid.uuid4().hex[:12]}",
            "amount": Decimal("100.00"),
            "currency": "USD",
            "raw_payload": {},
            "provider": "mock",
        }
        defaults.update(overrides)
        return CanonicalWebhookEvent(**defaults)

    @staticmethod
    def payfast_itn(
        payment_intent_id: str,
        payment_status: str = "COMPLETE",
        amount: str = "100.00",
        passphrase: str | None = None,
        merchant_id: str = "10000100",
        **extra: str,
    ) -> bytes:
        """Signed ITN form body as PayFast POSTs it."""
        fields = {
            "m_payment_id": payment_intent_id,
            "pf_payment_id": extra.pop("pf_payment_id", str(uuid.uuid4().int % 10**7)),
            "payment_status": payment_status,
            "item_name": extra.pop("item_name", "Pro license"),
            "amount_gross": amount,
            "amount_fee": extra.pop("amount_fee", "-2.30"),
            "amount_net": extra.pop("amount_net", amount),
            "merchant_id": merchant_id,
        }
        fields.update(extra)
        fields["signature"] = form_signature(fields, passphrase)
        return urlencode(fields).encode("utf-8")

    @staticmethod
    def paddle_event(
        payment_intent_id: str | None,
        event_type: str = "transaction.completed",
        total_cents: int = 10000,
        currency: str = "USD",
        transaction_id: str | None = None,
        event_id: str | None = None,
        data_status: str | None = None,
    ) -> bytes:
        data = {
            "id": transaction_id or f"txn_{uuid.uuid4().hex[:20]}",
            "status": data_status or ("completed" if event_type == "transaction.completed" else "billed"),
            "currency_code": currency,
            "details": {"totals": {"total": str(total_cents)}},
            "custom_data": {"payment_intent_id": payment_intent_id} if payment_intent_id else None,
        }
        event = {
            "event_id": event_id or f"evt_{uuid.uuid4().hex[:20]}",
            "event_type": event_type,
            "occurred_at": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }
        return json.dumps(event).encode("utf-8")

    @staticmethod
    def paddle_signature(payload: bytes, secret: str, timestamp: int | None = None) -> str:
        ts = str(timestamp if timestamp is not None else int(time.time()))
        digest = hmac_hex(secret, ts.encode("ascii") + b":" + payload, hashlib.sha256)
        return f"ts={ts};h1={digest}"

    @staticmethod
    def paymob_callback(
        payment_intent_id: str | None,
        success: bool = True,
        pending: bool = False,
        amount_cents: int = 10000,
        currency: str = "EGP",
        transaction_id: int | None = None,
    ) -> bytes:
        obj = {
            "id": transaction_id if transaction_id is not None else uuid.uuid4().int % 10**9,
            "pending": pending,
            "success": success,
            "amount_cents": amount_cents,
            "currency": currency,
            "order": {"id": uuid.uuid4().int % 10**8, "merchant_order_id": payment_intent_id},
            "data": {"message": "Approved" if success else "Do not honour"},
        }
        return json.dumps({"type": "TRANSACTION", "obj": obj}).encode("utf-8")

    @staticmethod
    def paymob_signature(payload: bytes, secret: str) -> str:
        return hmac_hex(secret, payload, hashlib.sha512)

    @staticmethod
    def mock_event(
        payment_intent_id: str,
        status: str = "completed",
        amount: str = "100.00",
        currency: str = "USD",
        event_id: str | None = None,
    ) -> bytes:
        body = {
            "event_id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "event_type": f"payment.{status}",
            "payment_intent_id": payment_intent_id,
            "transaction_id": f"txn_{uuid.uuid4().hex[:16]}",
            "status": status,
            "amount": amount,
            "currency": currency,
        }
        return json.dumps(body, sort_keys=True).encode("utf-8")
