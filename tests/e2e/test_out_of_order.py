"""E2E tests for webhooks that arrive out of order."""

from decimal import Decimal

import pytest
import requests

from payrecon.models import PaymentStatus


pytestmark = pytest.mark.e2e


@pytest.fixture
def send(receiver, webhook_factory, paddle_secret):
    def _send(event_type, **kwargs):
        body = webhook_factory.paddle_event("pdl_1", event_type=event_type, **kwargs)
        response = requests.post(
            receiver.url_for("paddle"),
            data=body,
            headers={"Paddle-Signature": webhook_factory.paddle_signature(body, paddle_secret)},
            timeout=5,
        )
        return response.json()["outcome"]

    return _send


@pytest.fixture(autouse=True)
def pending_paddle(engine):
    engine.register_pending("pdl_1", provider="paddle", amount=Decimal("100.00"), currency="USD")


class TestOutOfOrder:

    def test_completed_before_paid(self, send, engine, collaborator):
        """A late transaction.paid after completion is a duplicate."""
        assert send("transaction.completed") == "PROCESSED"
        assert send("transaction.paid") == "DUPLICATE"

        record = engine.store.get("pdl_1")
        assert record.status is PaymentStatus.COMPLETED
        assert record.version == 1
        assert len(collaborator.calls) == 1

    def test_paid_then_completed(self, send, engine):
        assert send("transaction.paid") == "PROCESSED"
        assert engine.store.get("pdl_1").status is PaymentStatus.PROCESSING
        assert send("transaction.completed") == "PROCESSED"
        assert engine.store.get("pdl_1").version == 2

    def test_late_failure_after_completion(self, send, engine, collaborator):
        send("transaction.completed")
        assert send("transaction.payment_failed") == "DUPLICATE"
        assert engine.store.get("pdl_1").status is PaymentStatus.COMPLETED
        assert len(collaborator.calls) == 1

    def test_late_completion_after_failure(self, send, engine, collaborator):
        """The first terminal state wins."""
        send("transaction.canceled")
        assert send("transaction.completed") == "DUPLICATE"
        assert engine.store.get("pdl_1").status is PaymentStatus.FAILED
        assert collaborator.calls == []

    def test_updated_event_uses_data_status(self, send, engine):
        assert send("transaction.updated", data_status="completed") == "PROCESSED"
        assert engine.store.get("pdl_1").status is PaymentStatus.COMPLETED
