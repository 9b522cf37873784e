"""Applies provider events to payment records exactly once.

Terminal states are sticky, every status transition bumps ``version`` by
one through a compare-and-set, and the write that first reaches
``completed`` leaves a durable marker that is cleared only after the
downstream collaborator accepted the completion.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable

from payrecon.errors import (
    ConcurrentUpdateError,
    GatewayProtocolError,
    GatewayUnavailable,
    StatusCheckUnsupported,
    UnknownOutcome,
)
from payrecon.models import (
    CanonicalWebhookEvent,
    EventStatus,
    PaymentRecord,
    PaymentSession,
    PaymentStatus,
    ProviderStatus,
)
from payrecon.observability.logging import log_context
from payrecon.reconciliation.collaborators import CompletionCollaborator
from payrecon.reconciliation.retry import RetryManager
from payrecon.reconciliation.store import PaymentRecordStore

logger = logging.getLogger(__name__)

_TARGET_STATUS = {
    EventStatus.COMPLETED: PaymentStatus.COMPLETED,
    EventStatus.FAILED: PaymentStatus.FAILED,
    EventStatus.PENDING: PaymentStatus.PROCESSING,
}


class ReconcileOutcome(Enum):
    APPLIED = "APPLIED"
    DUPLICATE = "DUPLICATE"
    UNMATCHED = "UNMATCHED"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    payment_intent_id: str | None
    record: PaymentRecord | None = None
    previous_status: PaymentStatus | None = None
    detail: str | None = None


class ReconciliationEngine:
    def __init__(
        self,
        store: PaymentRecordStore,
        collaborator: CompletionCollaborator,
        retry_manager: RetryManager | None = None,
        clock: Callable[[], datetime] | None = None,
        max_write_attempts: int = 5,
    ):
        self.store = store
        self.collaborator = collaborator
        self.retry_manager = retry_manager or RetryManager()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_write_attempts = max_write_attempts

    def now(self) -> datetime:
        return self._clock()

    def register_session(self, session: PaymentSession, metadata: dict | None = None) -> PaymentRecord:
        """Seed a pending record for a freshly created session. No-op if one exists."""
        return self.register_pending(
            session.payment_intent_id,
            provider=session.provider,
            amount=session.amount,
            currency=session.currency,
            provider_transaction_id=session.provider_transaction_id,
            created_at=session.created_at,
            metadata=metadata,
        )

    def register_pending(
        self,
        payment_intent_id: str,
        provider: str | None = None,
        amount=None,
        currency: str | None = None,
        provider_transaction_id: str | None = None,
        created_at: datetime | None = None,
        metadata: dict | None = None,
    ) -> PaymentRecord:
        now = self._clock()
        record = PaymentRecord(
            payment_intent_id=payment_intent_id,
            status=PaymentStatus.PENDING,
            amount=amount,
            currency=currency,
            created_at=created_at or now,
            updated_at=now,
            provider=provider,
            provider_transaction_id=provider_transaction_id,
            metadata=dict(metadata or {}),
        )
        if self.store.insert(record):
            logger.info("registered pending payment %s (%s %s via %s)", payment_intent_id, amount, currency, provider)
            return record
        return self.store.get(payment_intent_id)

    def apply_event(self, event: CanonicalWebhookEvent) -> ReconcileResult:
        """Apply one normalized event. Never raises for duplicates."""
        payment_intent_id = self._resolve_intent(event)
        if payment_intent_id is None:
            logger.warning(
                "unmatched %s event from %s (transaction %s)",
                event.event_type,
                event.provider,
                event.provider_transaction_id,
            )
            return ReconcileResult(ReconcileOutcome.UNMATCHED, None, detail="no payment intent for event")

        with log_context(payment_intent_id=payment_intent_id, provider=event.provider):
            result = self._apply(payment_intent_id, event)
            if result.outcome is ReconcileOutcome.APPLIED and result.record.status is PaymentStatus.COMPLETED:
                self.propagate_completion(payment_intent_id)
                result = replace(result, record=self.store.get(payment_intent_id))
        return result

    def _resolve_intent(self, event: CanonicalWebhookEvent) -> str | None:
        if event.payment_intent_id:
            return event.payment_intent_id
        if event.provider_transaction_id:
            record = self.store.find_by_provider_transaction_id(event.provider or None, event.provider_transaction_id)
            if record is not None:
                return record.payment_intent_id
        return None

    def _apply(self, payment_intent_id: str, event: CanonicalWebhookEvent) -> ReconcileResult:
        for _ in range(self.max_write_attempts):
            current = self.store.get(payment_intent_id)
            if current is None:
                # Webhook beat the outbound path, or the session was created elsewhere.
                self.register_pending(
                    payment_intent_id,
                    provider=event.provider or None,
                    amount=event.amount,
                    currency=event.currency,
                    provider_transaction_id=event.provider_transaction_id,
                )
                continue

            decision = self._decide(current, event)
            if isinstance(decision, ReconcileResult):
                return decision
            if self.store.compare_and_set(decision, expected_version=current.version):
                logger.info(
                    "payment %s %s -> %s (version %d, %s from %s)",
                    payment_intent_id,
                    current.status.value,
                    decision.status.value,
                    decision.version,
                    event.event_type,
                    event.source,
                )
                return ReconcileResult(
                    ReconcileOutcome.APPLIED,
                    payment_intent_id,
                    record=decision,
                    previous_status=current.status,
                )
            logger.info("version conflict on %s at version %d, re-evaluating", payment_intent_id, current.version)
        raise ConcurrentUpdateError(payment_intent_id, self.max_write_attempts)

    def _decide(self, current: PaymentRecord, event: CanonicalWebhookEvent) -> PaymentRecord | ReconcileResult:
        def duplicate(detail: str) -> ReconcileResult:
            logger.info("duplicate %s for %s: %s", event.event_type, current.payment_intent_id, detail)
            return ReconcileResult(
                ReconcileOutcome.DUPLICATE,
                current.payment_intent_id,
                record=current,
                previous_status=current.status,
                detail=detail,
            )

        if current.status.is_terminal:
            return duplicate(f"payment already {current.status.value}")
        if event.event_id and event.event_id == current.last_event_id:
            return duplicate(f"event {event.event_id} already applied")
        target = _TARGET_STATUS[event.status]
        if target is current.status:
            return duplicate(f"payment already {target.value}")

        mismatch = self._amount_mismatch(current, event)
        if mismatch:
            logger.error("rejected %s for %s: %s", event.event_type, current.payment_intent_id, mismatch)
            return ReconcileResult(
                ReconcileOutcome.REJECTED,
                current.payment_intent_id,
                record=current,
                previous_status=current.status,
                detail=mismatch,
            )

        now = self._clock()
        changes = {
            "status": target,
            "version": current.version + 1,
            "updated_at": now,
            "last_event_id": event.event_id or current.last_event_id,
            "provider": current.provider or event.provider or None,
            "provider_transaction_id": current.provider_transaction_id or event.provider_transaction_id,
            "amount": current.amount if current.amount is not None else event.amount,
            "currency": current.currency or event.currency,
        }
        if target is PaymentStatus.COMPLETED:
            changes.update(
                completed_at=now,
                completion_pending=True,
                propagation_attempts=0,
                next_propagation_at=None,
                propagation_abandoned=False,
            )
        elif target is PaymentStatus.FAILED:
            changes["failure_reason"] = event.failure_reason or "payment failed at provider"
        return replace(current, **changes)

    @staticmethod
    def _amount_mismatch(current: PaymentRecord, event: CanonicalWebhookEvent) -> str | None:
        if current.amount is not None and event.amount is not None and current.amount != event.amount:
            return f"amount {event.amount} does not match expected {current.amount}"
        if current.currency and event.currency and current.currency.upper() != event.currency.upper():
            return f"currency {event.currency} does not match expected {current.currency}"
        return None

    def propagate_completion(self, payment_intent_id: str) -> bool:
        """Push a completion downstream while its marker is set. True once delivered."""
        record = self.store.get(payment_intent_id)
        if record is None or not record.completion_pending:
            return False
        try:
            self.collaborator.apply_payment_completion(
                payment_intent_id,
                record.amount,
                record.currency,
                dict(record.metadata),
            )
        except Exception:
            logger.exception("completion propagation failed for %s", payment_intent_id)
            self._update_marker(payment_intent_id, self._failed_attempt)
            return False
        self._update_marker(payment_intent_id, self._delivered)
        logger.info("completion of %s delivered downstream", payment_intent_id)
        return True

    def propagate_pending_completions(self, now: datetime | None = None) -> int:
        """Retry every due completion marker, e.g. after a crash. Returns deliveries made."""
        due = self.store.pending_completions(now or self._clock())
        return sum(1 for record in due if self.propagate_completion(record.payment_intent_id))

    def _delivered(self, record: PaymentRecord) -> PaymentRecord:
        return replace(record, completion_pending=False, next_propagation_at=None)

    def _failed_attempt(self, record: PaymentRecord) -> PaymentRecord:
        attempts = record.propagation_attempts + 1
        next_at = self.retry_manager.next_attempt_at(attempts, self._clock())
        if next_at is None:
            logger.error(
                "giving up on completion of %s after %d attempts",
                record.payment_intent_id,
                attempts,
            )
        return replace(
            record,
            propagation_attempts=attempts,
            next_propagation_at=next_at,
            propagation_abandoned=next_at is None,
        )

    def _update_marker(self, payment_intent_id: str, change: Callable[[PaymentRecord], PaymentRecord]) -> None:
        # Marker bookkeeping is not a status transition: version stays put.
        for _ in range(self.max_write_attempts):
            current = self.store.get(payment_intent_id)
            if current is None or not current.completion_pending:
                return
            if self.store.compare_and_set(change(current), expected_version=current.version):
                return
        raise ConcurrentUpdateError(payment_intent_id, self.max_write_attempts)

    def reconcile_status(
        self,
        payment_intent_id: str,
        provider_status: ProviderStatus,
        provider: str | None = None,
    ) -> ReconcileResult:
        """Apply a polled status through the same rules as a webhook."""
        if provider is None:
            record = self.store.get(payment_intent_id)
            provider = record.provider if record else None
        event = CanonicalWebhookEvent(
            event_type=f"status.{provider_status.status.value}",
            status=provider_status.status,
            payment_intent_id=payment_intent_id,
            provider_transaction_id=provider_status.transaction_id,
            amount=provider_status.amount,
            currency=provider_status.currency,
            raw_payload=provider_status.raw,
            provider=provider or "",
            failure_reason="provider reported failure" if provider_status.status is EventStatus.FAILED else None,
            source="poll",
        )
        return self.apply_event(event)

    def poll_stale_pending(self, gateway, older_than: timedelta | None = None) -> list[ReconcileResult]:
        """Poll the provider for payments stuck in pending/processing."""
        if not gateway.supports_status_check:
            return []
        cutoff = self._clock() - (older_than if older_than is not None else gateway.status_poll_after)
        stale = self.store.list_stale(
            (PaymentStatus.PENDING, PaymentStatus.PROCESSING),
            updated_before=cutoff,
            provider=gateway.name,
        )
        results = []
        for record in stale:
            with log_context(payment_intent_id=record.payment_intent_id, provider=gateway.name):
                try:
                    status = gateway.get_payment_status(
                        record.payment_intent_id,
                        provider_transaction_id=record.provider_transaction_id,
                    )
                except StatusCheckUnsupported as exc:
                    logger.warning("cannot poll %s, waiting for a webhook: %s", record.payment_intent_id, exc)
                    continue
                except (UnknownOutcome, GatewayUnavailable) as exc:
                    logger.warning("status poll for %s deferred: %s", record.payment_intent_id, exc)
                    continue
                except GatewayProtocolError:
                    logger.exception("status poll for %s returned an unreadable answer", record.payment_intent_id)
                    continue
                results.append(self.reconcile_status(record.payment_intent_id, status, provider=gateway.name))
        logger.info("polled %d stale %s payments, %d answered", len(stale), gateway.name, len(results))
        return results
