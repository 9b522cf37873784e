from decimal import Decimal

import pytest

from payrecon.errors import UnknownOutcome
from payrecon.gateways.mock import MockGateway
from payrecon.models import EventStatus, PayerStatus, PaymentStatus
from payrecon.service import PaymentService


pytestmark = pytest.mark.unit


class TimingOutGateway(MockGateway):
    """Mock whose session call is sent but never answered."""

    def create_payment_session(self, amount, currency, description, return_url=None, cancel_url=None, metadata=None):
        raise UnknownOutcome("create_payment_session timed out", self.name, payment_intent_id="mock_lost")


@pytest.fixture
def service(mock_gateway, engine):
    return PaymentService(mock_gateway, engine)


class TestCreateSession:

    def test_session_is_tracked_as_pending(self, service, engine):
        session = service.create_payment_session("100", "usd", "Pro license", metadata={"license_id": "L-1"})

        record = engine.store.get(session.payment_intent_id)
        assert record.status is PaymentStatus.PENDING
        assert record.amount == Decimal("100")
        assert record.currency == "USD"
        assert record.metadata == {"license_id": "L-1"}
        assert service.payer_status(session.payment_intent_id) is PayerStatus.CONFIRMING

    def test_unknown_outcome_still_tracks_intent(self, scheduler, engine):
        """A timed-out create leaves a pending record so webhooks can settle it."""
        service = PaymentService(TimingOutGateway(scheduler=scheduler), engine)

        with pytest.raises(UnknownOutcome):
            service.create_payment_session("49.99", "usd", "Pro license")

        record = engine.store.get("mock_lost")
        assert record.status is PaymentStatus.PENDING
        assert record.amount == Decimal("49.99")
        assert record.currency == "USD"
        assert service.payer_status("mock_lost") is PayerStatus.CONFIRMING


class TestConfirmPayment:

    def test_pending_provider_changes_nothing(self, service, engine):
        session = service.create_payment_session("100", "USD", "Pro license")
        confirmation = service.confirm_payment(session.payment_intent_id)

        assert confirmation.outcome_known is False
        assert confirmation.status is EventStatus.PENDING
        assert engine.store.get(session.payment_intent_id).version == 0

    def test_settled_payment_is_applied(self, service, scheduler, collaborator):
        session = service.create_payment_session("100", "USD", "Pro license")
        scheduler.advance(10)

        confirmation = service.confirm_payment(session.payment_intent_id)

        assert confirmation.success is True
        assert service.get_payment(session.payment_intent_id).status is PaymentStatus.COMPLETED
        assert service.payer_status(session.payment_intent_id) is PayerStatus.PAID
        assert len(collaborator.calls_for(session.payment_intent_id)) == 1

    def test_failed_payment_is_shown_as_failed(self, scheduler, engine):
        """The payer sees failed only after an explicit failed status."""
        service = PaymentService(MockGateway(scheduler=scheduler, success_rate=0.0, seed=1), engine)
        session = service.create_payment_session("100", "USD", "Pro license")
        scheduler.advance(10)

        assert service.confirm_payment(session.payment_intent_id).success is False
        assert service.payer_status(session.payment_intent_id) is PayerStatus.FAILED

    def test_provider_without_status_api_stays_confirming(self, payfast_gateway, engine):
        """PayFast returns leave the payer in confirming until the ITN arrives."""
        service = PaymentService(payfast_gateway, engine)
        session = service.create_payment_session("100", "ZAR", "Pro license")

        confirmation = service.confirm_payment(session.payment_intent_id)

        assert confirmation.outcome_known is False
        assert confirmation.success is False
        assert service.payer_status(session.payment_intent_id) is PayerStatus.CONFIRMING

    def test_unknown_payment_is_confirming(self, service):
        assert service.payer_status("mock_nobody") is PayerStatus.CONFIRMING
