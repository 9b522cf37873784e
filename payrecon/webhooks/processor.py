"""Inbound webhook handling kept apart from the HTTP layer.

Order is fixed: verify the signature over the raw bytes, then normalize,
then reconcile. A webhook that fails verification is never parsed.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from payrecon.errors import SignatureVerificationFailed
from payrecon.gateways.base import PaymentGateway
from payrecon.models import WebhookDelivery, WebhookOutcome
from payrecon.observability.alerting import AlertManager
from payrecon.observability.logging import log_context
from payrecon.observability.metrics import MetricsCollector
from payrecon.reconciliation.engine import ReconcileOutcome, ReconcileResult, ReconciliationEngine
from payrecon.utils.crypto import payload_fingerprint
from payrecon.webhooks.audit import WebhookAuditLog

logger = logging.getLogger(__name__)

_OUTCOME = {
    ReconcileOutcome.APPLIED: WebhookOutcome.PROCESSED,
    ReconcileOutcome.DUPLICATE: WebhookOutcome.DUPLICATE,
    ReconcileOutcome.UNMATCHED: WebhookOutcome.UNMATCHED,
    ReconcileOutcome.REJECTED: WebhookOutcome.REJECTED_AMOUNT,
}


@dataclass(frozen=True)
class WebhookResult:
    webhook_id: str
    outcome: WebhookOutcome
    payment_intent_id: str | None = None
    detail: str | None = None
    reconcile: ReconcileResult | None = None

    @property
    def http_status(self) -> int:
        # Everything we authenticated is acknowledged so the provider stops retrying.
        return 401 if self.outcome is WebhookOutcome.REJECTED_SIGNATURE else 200


class WebhookProcessor:
    """verify -> parse -> reconcile for one provider."""

    def __init__(
        self,
        gateway: PaymentGateway,
        engine: ReconciliationEngine,
        audit_log: WebhookAuditLog | None = None,
        metrics: MetricsCollector | None = None,
        alerts: AlertManager | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.gateway = gateway
        self.engine = engine
        self.audit_log = audit_log if audit_log is not None else WebhookAuditLog()
        self.metrics = metrics
        self.alerts = alerts
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def provider(self) -> str:
        return self.gateway.name

    def verify(self, payload: bytes, signature: str | None) -> None:
        if not self.gateway.verify_webhook_signature(payload, signature):
            raise SignatureVerificationFailed(f"{self.provider} webhook signature verification failed", self.provider)

    def handle(
        self,
        payload: bytes,
        signature: str | None,
        *,
        replay: bool = False,
        webhook_id: str | None = None,
    ) -> WebhookResult:
        webhook_id = webhook_id or f"wh_{uuid.uuid4().hex[:16]}"
        with log_context(provider=self.provider, webhook_id=webhook_id):
            try:
                self.verify(payload, signature)
            except SignatureVerificationFailed as exc:
                logger.warning(
                    "rejected webhook: %s (bytes=%d sha256=%s signature=%s...)",
                    exc,
                    len(payload),
                    payload_fingerprint(payload),
                    (signature or "")[:12],
                )
                return self._finish(
                    webhook_id, payload, signature, WebhookOutcome.REJECTED_SIGNATURE, replay, detail=str(exc)
                )

            event = self.gateway.parse_webhook_event(payload)
            if event is None:
                logger.info("ignored unrecognized webhook (bytes=%d)", len(payload))
                return self._finish(
                    webhook_id, payload, signature, WebhookOutcome.IGNORED, replay, detail="unrecognized event"
                )

            result = self.engine.apply_event(event)
            return self._finish(
                webhook_id,
                payload,
                signature,
                _OUTCOME[result.outcome],
                replay,
                payment_intent_id=result.payment_intent_id,
                detail=result.detail,
                reconcile=result,
            )

    def _finish(
        self,
        webhook_id: str,
        payload: bytes,
        signature: str | None,
        outcome: WebhookOutcome,
        replay: bool,
        payment_intent_id: str | None = None,
        detail: str | None = None,
        reconcile: ReconcileResult | None = None,
    ) -> WebhookResult:
        self.audit_log.log(
            WebhookDelivery(
                webhook_id=webhook_id,
                provider=self.provider,
                received_at=self._clock(),
                payload=bytes(payload),
                signature=signature,
                outcome=outcome,
                payment_intent_id=payment_intent_id,
                detail=detail,
                replay=replay,
            )
        )
        if self.metrics is not None:
            self.metrics.record(outcome, self.provider)
        if self.alerts is not None:
            self.alerts.check()
        return WebhookResult(
            webhook_id=webhook_id,
            outcome=outcome,
            payment_intent_id=payment_intent_id,
            detail=detail,
            reconcile=reconcile,
        )
