"""Outbound payment flow: create sessions and settle redirect returns."""

import logging

from payrecon.errors import UnknownOutcome
from payrecon.gateways.base import PaymentGateway, to_decimal
from payrecon.models import (
    PayerStatus,
    PaymentConfirmation,
    PaymentRecord,
    PaymentSession,
    PaymentStatus,
    ProviderStatus,
)
from payrecon.observability.logging import log_context
from payrecon.reconciliation.engine import ReconciliationEngine

logger = logging.getLogger(__name__)


class PaymentService:
    """Glue between one gateway adapter and the reconciliation engine."""

    def __init__(self, gateway: PaymentGateway, engine: ReconciliationEngine):
        self.gateway = gateway
        self.engine = engine

    def create_payment_session(
        self,
        amount,
        currency: str,
        description: str,
        return_url: str | None = None,
        cancel_url: str | None = None,
        metadata: dict | None = None,
    ) -> PaymentSession:
        """Create a provider session and track it as a pending payment.

        On UnknownOutcome the intent is still tracked as pending, so a later
        webhook or status poll can settle it, and the error is re-raised.
        """
        with log_context(provider=self.gateway.name):
            try:
                session = self.gateway.create_payment_session(
                    amount,
                    currency,
                    description,
                    return_url=return_url,
                    cancel_url=cancel_url,
                    metadata=metadata,
                )
            except UnknownOutcome as exc:
                if exc.payment_intent_id:
                    logger.warning("session outcome unknown for %s, tracking as pending", exc.payment_intent_id)
                    self.engine.register_pending(
                        exc.payment_intent_id,
                        provider=self.gateway.name,
                        amount=to_decimal(amount),
                        currency=(currency or "").upper() or None,
                        metadata=metadata,
                    )
                raise
            self.engine.register_session(session, metadata=metadata)
        logger.info("payment session %s created via %s", session.payment_intent_id, self.gateway.name)
        return session

    def confirm_payment(self, payment_intent_id: str) -> PaymentConfirmation:
        """Redirect-return check. A known outcome is applied to the record right away."""
        record = self.engine.store.get(payment_intent_id)
        extra = {"provider_transaction_id": record.provider_transaction_id} if record else None
        with log_context(provider=self.gateway.name, payment_intent_id=payment_intent_id):
            confirmation = self.gateway.confirm_payment(payment_intent_id, extra)
            if confirmation.outcome_known:
                self.engine.reconcile_status(
                    payment_intent_id,
                    ProviderStatus(
                        status=confirmation.status,
                        transaction_id=confirmation.transaction_id,
                        amount=confirmation.amount,
                        currency=confirmation.currency,
                    ),
                    provider=self.gateway.name,
                )
        return confirmation

    def get_payment(self, payment_intent_id: str) -> PaymentRecord | None:
        return self.engine.store.get(payment_intent_id)

    def payer_status(self, payment_intent_id: str) -> PayerStatus:
        """What to show the payer. Only an explicit failure is shown as failed."""
        record = self.get_payment(payment_intent_id)
        if record is None:
            return PayerStatus.CONFIRMING
        if record.status is PaymentStatus.COMPLETED:
            return PayerStatus.PAID
        if record.status is PaymentStatus.FAILED:
            return PayerStatus.FAILED
        return PayerStatus.CONFIRMING
