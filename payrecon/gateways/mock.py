"""Development gateway that settles payments on virtual time.

A created payment moves to processing after ``auto_complete_seconds`` and
is settled ``processing_seconds`` later. Each transition emits a webhook to
the registered listeners, the same bytes a real provider would POST.
"""

import json
import logging
import random
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable
from urllib.parse import quote

from payrecon.errors import GatewayProtocolError
from payrecon.gateways.base import PaymentGateway, as_text, load_json_object, to_decimal
from payrecon.gateways.scheduler import VirtualScheduler
from payrecon.models import (
    CanonicalWebhookEvent,
    EventStatus,
    PaymentSession,
    PaymentStatus,
    ProviderStatus,
)

logger = logging.getLogger(__name__)

WebhookListener = Callable[[bytes, str | None], object]

_PAYLOAD_STATUS = {
    "pending": EventStatus.PENDING,
    "processing": EventStatus.PENDING,
    "completed": EventStatus.COMPLETED,
    "failed": EventStatus.FAILED,
}


@dataclass
class MockPayment:
    payment_intent_id: str
    transaction_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    created_at: datetime
    completed_at: datetime | None = None


class MockGateway(PaymentGateway):
    name = "mock"
    intent_prefix = "mock"
    supported_currencies = frozenset({"USD", "EUR", "GBP", "PKR", "ZAR", "EGP"})
    status_poll_after = timedelta(seconds=30)
    signature_header = "X-Mock-Signature"

    def __init__(
        self,
        scheduler: VirtualScheduler | None = None,
        auto_complete_seconds: float = 3.0,
        processing_seconds: float = 1.0,
        success_rate: float = 1.0,
        seed: int | None = None,
        **kwargs,
    ):
        self.scheduler = scheduler or VirtualScheduler()
        kwargs.setdefault("sandbox", True)
        super().__init__(clock=self.scheduler.now, **kwargs)
        self.auto_complete_seconds = auto_complete_seconds
        self.processing_seconds = processing_seconds
        self.success_rate = min(1.0, max(0.0, success_rate))
        self._random = random.Random(seed)
        self._payments: dict[str, MockPayment] = {}
        self._listeners: list[WebhookListener] = []
        self._lock = threading.Lock()

    def on_webhook(self, listener: WebhookListener) -> None:
        """Register a receiver for emitted webhooks (payload, signature)."""
        self._listeners.append(listener)

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
        payment = MockPayment(
            payment_intent_id=payment_intent_id,
            transaction_id=f"txn_{uuid.uuid4().hex[:16]}",
            amount=value,
            currency=code,
            status=PaymentStatus.PENDING,
            created_at=self._clock(),
        )
        with self._lock:
            self._payments[payment_intent_id] = payment
        if self.auto_complete_seconds is not None:
            self.scheduler.call_later(self.auto_complete_seconds, self._begin_processing, payment_intent_id)

        checkout = f"/mock-payment?payment_intent={payment_intent_id}&return_url={quote(return_url or '', safe='')}"
        logger.info("mock payment %s created, settles in %ss", payment_intent_id, self.auto_complete_seconds)
        return PaymentSession(
            payment_intent_id=payment_intent_id,
            checkout_reference=checkout,
            provider=self.name,
            amount=value,
            currency=code,
            created_at=payment.created_at,
            provider_metadata={
                "provider_transaction_id": payment.transaction_id,
                "client_secret": f"mock_secret_{payment_intent_id}",
                "description": description,
                "cancel_url": cancel_url,
            },
        )

    def _begin_processing(self, payment_intent_id: str) -> None:
        with self._lock:
            payment = self._payments.get(payment_intent_id)
            if payment is None or payment.status is not PaymentStatus.PENDING:
                return
            payment.status = PaymentStatus.PROCESSING
            succeed = self._random.random() < self.success_rate
            payload = self._webhook_payload(payment)
        self._emit(payload)
        self.scheduler.call_later(self.processing_seconds, self._settle, payment_intent_id, succeed)

    def _settle(self, payment_intent_id: str, succeed: bool) -> None:
        with self._lock:
            payment = self._payments.get(payment_intent_id)
            if payment is None or payment.status is not PaymentStatus.PROCESSING:
                return
            payment.status = PaymentStatus.COMPLETED if succeed else PaymentStatus.FAILED
            payment.completed_at = self._clock()
            payload = self._webhook_payload(payment)
        self._emit(payload)

    def _emit(self, payload: bytes) -> None:
        for listener in list(self._listeners):
            listener(payload, None)

    @staticmethod
    def _webhook_payload(payment: MockPayment) -> bytes:
        body = {
            "event_id": f"evt_{uuid.uuid4().hex[:16]}",
            "event_type": f"payment.{payment.status.value}",
            "payment_intent_id": payment.payment_intent_id,
            "transaction_id": payment.transaction_id,
            "status": payment.status.value,
            "amount": str(payment.amount),
            "currency": payment.currency,
        }
        return json.dumps(body, sort_keys=True).encode("utf-8")

    def trigger_webhook(self, payment_intent_id: str, status: PaymentStatus = PaymentStatus.COMPLETED) -> bytes:
        """Force a payment into ``status`` and return the webhook body a provider would send."""
        with self._lock:
            payment = self._payments.get(payment_intent_id)
            if payment is None:
                raise KeyError(f"Unknown mock payment {payment_intent_id}")
            payment.status = status
            if status.is_terminal:
                payment.completed_at = self._clock()
            return self._webhook_payload(payment)

    def verify_webhook_signature(self, payload: bytes, signature: str | None) -> bool:
        return True

    def parse_webhook_event(self, payload: bytes) -> CanonicalWebhookEvent | None:
        data = load_json_object(payload)
        if data is None:
            return None
        raw_status = data.get("status")
        status = _PAYLOAD_STATUS.get(raw_status) if isinstance(raw_status, str) else None
        payment_intent_id = data.get("payment_intent_id")
        if status is None or not isinstance(payment_intent_id, str) or not payment_intent_id:
            return None
        currency = data.get("currency")
        return CanonicalWebhookEvent(
            event_type=str(data.get("event_type") or f"payment.{status.value}"),
            status=status,
            payment_intent_id=payment_intent_id,
            provider_transaction_id=as_text(data.get("transaction_id")),
            amount=to_decimal(data.get("amount")),
            currency=currency.upper() if isinstance(currency, str) and currency else None,
            raw_payload=data,
            provider=self.name,
            event_id=as_text(data.get("event_id")),
            failure_reason="Mock payment declined" if status is EventStatus.FAILED else None,
        )

    def get_payment_status(self, payment_intent_id, provider_transaction_id=None) -> ProviderStatus:
        with self._lock:
            payment = self._payments.get(payment_intent_id)
            if payment is None:
                raise GatewayProtocolError(f"Unknown mock payment {payment_intent_id}", self.name)
            return ProviderStatus(
                status=_PAYLOAD_STATUS[payment.status.value],
                transaction_id=payment.transaction_id,
                amount=payment.amount,
                currency=payment.currency,
                raw={"status": payment.status.value},
            )

    def payments(self) -> list[MockPayment]:
        with self._lock:
            return list(self._payments.values())

    def clear(self) -> None:
        with self._lock:
            self._payments.clear()
