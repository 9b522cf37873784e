from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from payrecon.errors import ConcurrentUpdateError
from payrecon.models import EventStatus, PaymentStatus, ProviderStatus
from payrecon.reconciliation.engine import ReconcileOutcome, ReconciliationEngine
from payrecon.reconciliation.retry import RetryManager
from payrecon.reconciliation.store import InMemoryPaymentRecordStore


pytestmark = pytest.mark.unit


class ConflictingStore(InMemoryPaymentRecordStore):
    """Store where another writer sneaks in before our conditional writes."""

    def __init__(self, interleave=None, conflicts=0):
        super().__init__()
        self.interleave = interleave
        self.conflicts = conflicts
        self.cas_calls = 0

    def compare_and_set(self, record, expected_version):
        self.cas_calls += 1
        if self.conflicts:
            self.conflicts -= 1
            if self.interleave is not None:
                current = self.get(record.payment_intent_id)
                super().compare_and_set(self.interleave(current), current.version)
            return False
        return super().compare_and_set(record, expected_version)


@pytest.fixture
def pending(engine):
    def _register(payment_intent_id="pi_1", amount="1000.00", currency="USD", **kwargs):
        return engine.register_pending(
            payment_intent_id, provider="mock", amount=Decimal(amount), currency=currency, **kwargs
        )

    return _register


class TestRegistration:

    def test_register_seeds_pending_record(self, engine, pending, clock):
        record = pending(metadata={"license_id": "L-1"})
        assert record.status is PaymentStatus.PENDING
        assert record.version == 0
        assert record.updated_at == clock.now
        assert engine.store.get("pi_1").metadata == {"license_id": "L-1"}

    def test_register_is_idempotent(self, engine, pending):
        """Registering twice keeps the first record."""
        first = pending()
        second = pending(amount="5.00")
        assert second == first

    def test_register_session(self, engine, mock_gateway):
        session = mock_gateway.create_payment_session("42.50", "USD", "Pro license")
        record = engine.register_session(session, metadata={"user": "u1"})
        assert record.payment_intent_id == session.payment_intent_id
        assert record.provider == "mock"
        assert record.amount == Decimal("42.50")
        assert record.provider_transaction_id == session.provider_transaction_id


class TestExactlyOnceCompletion:

    def test_two_completion_webhooks_propagate_once(self, engine, pending, collaborator, webhook_factory):
        """Two completion webhooks for pi_1 reach the ledger exactly once."""
        pending(metadata={"license_id": "L-1"})
        first = webhook_factory.canonical_event(
            EventStatus.COMPLETED, payment_intent_id="pi_1", amount=Decimal("1000.00"), event_id="evt_a"
        )
        second = webhook_factory.canonical_event(
            EventStatus.COMPLETED, payment_intent_id="pi_1", amount=Decimal("1000.00"), event_id="evt_b"
        )

        results = [engine.apply_event(first), engine.apply_event(second)]

        assert [r.outcome for r in results] == [ReconcileOutcome.APPLIED, ReconcileOutcome.DUPLICATE]
        assert len(collaborator.calls) == 1
        call = collaborator.calls[0]
        assert (call.payment_intent_id, call.amount, call.currency) == ("pi_1", Decimal("1000.00"), "USD")
        assert call.metadata == {"license_id": "L-1"}

    def test_applied_completion_updates_record(self, engine, pending, webhook_factory, clock):
        pending()
        clock.advance(seconds=5)
        result = engine.apply_event(
            webhook_factory.canonical_event(payment_intent_id="pi_1", amount=Decimal("1000.00"), event_id="evt_a")
        )

        assert result.previous_status is PaymentStatus.PENDING
        record = result.record
        assert record.status is PaymentStatus.COMPLETED
        assert record.version == 1
        assert record.completed_at == clock.now
        assert record.last_event_id == "evt_a"
        assert record.completion_pending is False

    def test_same_event_id_is_duplicate(self, engine, pending, webhook_factory):
        """A redelivered provider event id is discarded."""
        pending()
        engine.apply_event(
            webhook_factory.canonical_event(
                EventStatus.PENDING, payment_intent_id="pi_1", amount=Decimal("1000.00"), event_id="evt_a"
            )
        )
        replayed = webhook_factory.canonical_event(
            EventStatus.COMPLETED, payment_intent_id="pi_1", amount=Decimal("1000.00"), event_id="evt_a"
        )
        result = engine.apply_event(replayed)
        assert result.outcome is ReconcileOutcome.DUPLICATE
        assert "evt_a" in result.detail


class TestTerminalStickiness:

    def test_failure_after_completion_is_ignored(self, engine, pending, webhook_factory, collaborator):
        """Terminal states are sticky: completed never becomes failed."""
        pending()
        engine.apply_event(webhook_factory.canonical_event(payment_intent_id="pi_1", amount=Decimal("1000.00")))
        result = engine.apply_event(
            webhook_factory.canonical_event(EventStatus.FAILED, payment_intent_id="pi_1", amount=Decimal("1000.00"))
        )
        assert result.outcome is ReconcileOutcome.DUPLICATE
        assert engine.store.get("pi_1").status is PaymentStatus.COMPLETED
        assert len(collaborator.calls) == 1

    def test_completion_after_failure_is_ignored(self, engine, pending, webhook_factory, collaborator):
        pending()
        engine.apply_event(
            webhook_factory.canonical_event(
                EventStatus.FAILED, payment_intent_id="pi_1", amount=None, failure_reason="declined"
            )
        )
        result = engine.apply_event(
            webhook_factory.canonical_event(payment_intent_id="pi_1", amount=Decimal("1000.00"))
        )
        assert result.outcome is ReconcileOutcome.DUPLICATE
        record = engine.store.get("pi_1")
        assert record.status is PaymentStatus.FAILED
        assert record.failure_reason == "declined"
        assert collaborator.calls == []

    def test_late_pending_does_not_regress(self, engine, pending, webhook_factory):
        """completed followed by a late pending stays completed."""
        pending()
        engine.apply_event(webhook_factory.canonical_event(payment_intent_id="pi_1", amount=Decimal("1000.00")))
        result = engine.apply_event(webhook_factory.canonical_event(EventStatus.PENDING, payment_intent_id="pi_1"))
        assert result.outcome is ReconcileOutcome.DUPLICATE
        assert engine.store.get("pi_1").version == 1

    def test_pending_then_completed_bumps_version_twice(self, engine, pending, webhook_factory):
        """Each accepted transition bumps the version by exactly one."""
        pending()
        first = engine.apply_event(
            webhook_factory.canonical_event(EventStatus.PENDING, payment_intent_id="pi_1", amount=None)
        )
        assert first.record.status is PaymentStatus.PROCESSING
        second = engine.apply_event(
            webhook_factory.canonical_event(payment_intent_id="pi_1", amount=Decimal("1000.00"))
        )
        assert second.previous_status is PaymentStatus.PROCESSING
        assert second.record.version == 2

    def test_failed_event_without_reason_gets_default(self, engine, pending, webhook_factory):
        pending()
        engine.apply_event(webhook_factory.canonical_event(EventStatus.FAILED, payment_intent_id="pi_1", amount=None))
        assert engine.store.get("pi_1").failure_reason == "payment failed at provider"


class TestMatching:

    def test_amount_mismatch_is_rejected(self, engine, pending, webhook_factory, collaborator):
        """A completion for the wrong amount is refused without a transition."""
        pending()
        result = engine.apply_event(
            webhook_factory.canonical_event(payment_intent_id="pi_1", amount=Decimal("1.00"))
        )
        assert result.outcome is ReconcileOutcome.REJECTED
        assert "1.00" in result.detail
        assert engine.store.get("pi_1").status is PaymentStatus.PENDING
        assert collaborator.calls == []

    def test_currency_mismatch_is_rejected(self, engine, pending, webhook_factory):
        pending()
        result = engine.apply_event(
            webhook_factory.canonical_event(payment_intent_id="pi_1", amount=Decimal("1000.00"), currency="EUR")
        )
        assert result.outcome is ReconcileOutcome.REJECTED

    def test_currency_compare_ignores_case(self, engine, pending, webhook_factory):
        pending()
        result = engine.apply_event(
            webhook_factory.canonical_event(payment_intent_id="pi_1", amount=Decimal("1000.0"), currency="usd")
        )
        assert result.outcome is ReconcileOutcome.APPLIED

    def test_event_without_amount_is_accepted(self, engine, pending, webhook_factory):
        pending()
        result = engine.apply_event(
            webhook_factory.canonical_event(payment_intent_id="pi_1", amount=None, currency=None)
        )
        assert result.outcome is ReconcileOutcome.APPLIED
        assert result.record.amount == Decimal("1000.00")

    def test_resolves_by_transaction_id(self, engine, pending, webhook_factory):
        """Events without our intent id are matched by the provider transaction id."""
        pending(provider_transaction_id="txn_42")
        result = engine.apply_event(
            webhook_factory.canonical_event(
                payment_intent_id=None, provider_transaction_id="txn_42", amount=Decimal("1000.00")
            )
        )
        assert result.outcome is ReconcileOutcome.APPLIED
        assert result.payment_intent_id == "pi_1"

    def test_unknown_transaction_is_unmatched(self, engine, webhook_factory):
        result = engine.apply_event(
            webhook_factory.canonical_event(payment_intent_id=None, provider_transaction_id="txn_missing")
        )
        assert result.outcome is ReconcileOutcome.UNMATCHED
        assert result.payment_intent_id is None

    def test_webhook_before_session_seeds_record(self, engine, webhook_factory, collaborator):
        """A webhook that beats the outbound path creates the record itself."""
        result = engine.apply_event(
            webhook_factory.canonical_event(payment_intent_id="pi_early", amount=Decimal("12.00"))
        )
        assert result.outcome is ReconcileOutcome.APPLIED
        assert result.previous_status is PaymentStatus.PENDING
        assert result.record.amount == Decimal("12.00")
        assert collaborator.calls_for("pi_early")


class TestConcurrency:

    def test_retries_after_losing_a_write(self, collaborator, clock, webhook_factory):
        """Losing the compare-and-set reloads and tries again."""
        store = ConflictingStore(conflicts=1)
        engine = ReconciliationEngine(store, collaborator, clock=clock)
        engine.register_pending("pi_1", provider="mock", amount=Decimal("100.00"), currency="USD")

        result = engine.apply_event(webhook_factory.canonical_event(payment_intent_id="pi_1"))

        assert result.outcome is ReconcileOutcome.APPLIED
        assert store.cas_calls >= 2

    def test_re_evaluates_against_concurrent_winner(self, collaborator, clock, webhook_factory):
        """If a concurrent writer completed the payment, the retry becomes a duplicate."""
        store = ConflictingStore(
            interleave=lambda r: replace(r, status=PaymentStatus.FAILED, version=r.version + 1),
            conflicts=1,
        )
        engine = ReconciliationEngine(store, collaborator, clock=clock)
        engine.register_pending("pi_1", provider="mock", amount=Decimal("100.00"), currency="USD")

        result = engine.apply_event(webhook_factory.canonical_event(payment_intent_id="pi_1"))

        assert result.outcome is ReconcileOutcome.DUPLICATE
        assert store.get("pi_1").status is PaymentStatus.FAILED
        assert collaborator.calls == []

    def test_gives_up_after_bounded_attempts(self, collaborator, clock, webhook_factory):
        """Endless contention ends in ConcurrentUpdateError, not a loop."""
        store = ConflictingStore(conflicts=100)
        engine = ReconciliationEngine(store, collaborator, clock=clock, max_write_attempts=3)
        engine.register_pending("pi_1", provider="mock", amount=Decimal("100.00"), currency="USD")

        with pytest.raises(ConcurrentUpdateError) as excinfo:
            engine.apply_event(webhook_factory.canonical_event(payment_intent_id="pi_1"))
        assert excinfo.value.attempts == 3
        assert store.cas_calls == 3


class TestPropagation:

    def test_failed_propagation_keeps_marker(self, engine, pending, webhook_factory, collaborator, clock):
        """A ledger failure leaves the completion marker for a later retry."""
        pending()
        collaborator.fail_next()

        result = engine.apply_event(
            webhook_factory.canonical_event(payment_intent_id="pi_1", amount=Decimal("1000.00"))
        )

        assert result.outcome is ReconcileOutcome.APPLIED
        record = result.record
        assert record.status is PaymentStatus.COMPLETED
        assert record.completion_pending is True
        assert record.propagation_attempts == 1
        assert record.next_propagation_at == clock.now + timedelta(seconds=30)
        assert record.version == 1

    def test_retry_waits_for_backoff(self, engine, pending, webhook_factory, collaborator, clock):
        pending()
        collaborator.fail_next()
        engine.apply_event(webhook_factory.canonical_event(payment_intent_id="pi_1", amount=Decimal("1000.00")))

        assert engine.propagate_pending_completions() == 0
        clock.advance(seconds=30)
        assert engine.propagate_pending_completions() == 1

        assert len(collaborator.calls_for("pi_1")) == 1
        record = engine.store.get("pi_1")
        assert record.completion_pending is False
        assert record.next_propagation_at is None

    def test_abandons_after_schedule_exhausted(self, store, collaborator, clock, webhook_factory):
        engine = ReconciliationEngine(store, collaborator, retry_manager=RetryManager([10, 20]), clock=clock)
        engine.register_pending("pi_1", provider="mock", amount=Decimal("100.00"), currency="USD")
        collaborator.fail_next(times=10)

        engine.apply_event(webhook_factory.canonical_event(payment_intent_id="pi_1"))
        for _ in range(5):
            clock.advance(minutes=1)
            engine.propagate_pending_completions()

        record = store.get("pi_1")
        assert record.propagation_attempts == 3
        assert record.propagation_abandoned is True
        assert record.completion_pending is True
        assert store.pending_completions(clock.now) == []
        assert collaborator.calls == []

    def test_crash_recovery_delivers_marker(self, store, engine, collaborator, record_factory, webhook_factory, clock):
        """A marker left by a crash is delivered exactly once on drain."""
        # Completed and marked, but the process died before the downstream call.
        store.insert(
            record_factory.create(
                payment_intent_id="pi_crash",
                status=PaymentStatus.COMPLETED,
                version=1,
                completed_at=clock.now,
                completion_pending=True,
            )
        )

        assert engine.propagate_pending_completions() == 1
        assert len(collaborator.calls_for("pi_crash")) == 1

        duplicate = engine.apply_event(webhook_factory.canonical_event(payment_intent_id="pi_crash"))
        assert duplicate.outcome is ReconcileOutcome.DUPLICATE
        assert len(collaborator.calls_for("pi_crash")) == 1

    def test_propagate_without_marker_is_noop(self, engine, pending, collaborator):
        pending()
        assert engine.propagate_completion("pi_1") is False
        assert engine.propagate_completion("pi_missing") is False
        assert collaborator.calls == []


class TestStatusPolling:

    def test_polled_pending_is_applied_like_a_pending_webhook(self, engine, pending, collaborator):
        """pending -> processing once, then no further change while the provider says pending."""
        pending()
        first = engine.reconcile_status("pi_1", ProviderStatus(EventStatus.PENDING))
        assert first.outcome is ReconcileOutcome.APPLIED
        assert first.record.status is PaymentStatus.PROCESSING
        assert first.record.version == 1

        again = engine.reconcile_status("pi_1", ProviderStatus(EventStatus.PENDING))
        assert again.outcome is ReconcileOutcome.DUPLICATE
        assert engine.store.get("pi_1").version == 1
        assert collaborator.calls == []

    def test_polled_completion_goes_through_engine(self, engine, pending, collaborator):
        pending()
        result = engine.reconcile_status(
            "pi_1", ProviderStatus(EventStatus.COMPLETED, transaction_id="txn_9", amount=Decimal("1000.00"))
        )
        assert result.outcome is ReconcileOutcome.APPLIED
        assert result.record.provider_transaction_id == "txn_9"
        assert len(collaborator.calls) == 1

    def test_poll_stale_pending_settles_mock_payment(self, engine, mock_gateway, scheduler, clock, collaborator):
        session = mock_gateway.create_payment_session("100", "USD", "Pro license")
        engine.register_session(session)
        clock.advance(seconds=31)

        still_pending = engine.poll_stale_pending(mock_gateway)
        assert [r.outcome for r in still_pending] == [ReconcileOutcome.APPLIED]
        assert still_pending[0].record.status is PaymentStatus.PROCESSING

        scheduler.advance(10)
        clock.advance(seconds=31)
        settled = engine.poll_stale_pending(mock_gateway)
        assert [r.outcome for r in settled] == [ReconcileOutcome.APPLIED]
        assert len(collaborator.calls_for(session.payment_intent_id)) == 1

    def test_fresh_records_are_not_polled(self, engine, mock_gateway):
        engine.register_session(mock_gateway.create_payment_session("100", "USD", "Item"))
        assert engine.poll_stale_pending(mock_gateway) == []

    def test_other_providers_are_not_polled(self, engine, mock_gateway, clock):
        """Polling one gateway leaves other providers' records alone."""
        engine.register_pending("pdl_1", provider="paddle", amount=Decimal("5"), currency="USD")
        clock.advance(hours=2)
        assert engine.poll_stale_pending(mock_gateway) == []

    def test_unreadable_answer_is_skipped(self, engine, mock_gateway, clock):
        """A protocol error on one record does not stop the others."""
        engine.register_pending("mock_ghost", provider="mock", amount=Decimal("5"), currency="USD")
        good = mock_gateway.create_payment_session("100", "USD", "Item")
        engine.register_session(good)
        mock_gateway.trigger_webhook(good.payment_intent_id)
        clock.advance(minutes=5)

        results = engine.poll_stale_pending(mock_gateway)

        assert [r.payment_intent_id for r in results] == [good.payment_intent_id]

    def test_gateway_without_status_api_is_skipped(self, engine, payfast_gateway, clock):
        engine.register_pending("pf_1", provider="payfast", amount=Decimal("5"), currency="ZAR")
        clock.advance(days=1)
        assert engine.poll_stale_pending(payfast_gateway) == []

    def test_record_without_transaction_id_waits_for_webhook(self, engine, paddle_gateway, clock, caplog):
        """A timed-out Paddle session cannot be polled; say so loudly instead of retrying silently."""
        engine.register_pending("pdl_lost", provider="paddle", amount=Decimal("49.99"), currency="USD")
        clock.advance(hours=2)

        with caplog.at_level("WARNING", logger="payrecon.reconciliation.engine"):
            assert engine.poll_stale_pending(paddle_gateway) == []

        assert "cannot poll pdl_lost" in caplog.text
        assert engine.store.get("pdl_lost").status is PaymentStatus.PENDING
