from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from .webhook import EventStatus


@dataclass(frozen=True)
class PaymentSession:
    """Provider-side checkout created for one payment attempt. Immutable."""

    payment_intent_id: str
    checkout_reference: str | None
    provider: str
    amount: Decimal
    currency: str
    created_at: datetime
    provider_metadata: dict = field(default_factory=dict)

    @property
    def provider_transaction_id(self) -> str | None:
        return self.provider_metadata.get("provider_transaction_id")


@dataclass(frozen=True)
class ProviderStatus:
    """Answer of a provider status poll, already mapped to our vocabulary."""

    status: EventStatus
    transaction_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    raw: dict | None = None


@dataclass(frozen=True)
class PaymentConfirmation:
    success: bool
    status: EventStatus
    outcome_known: bool
    transaction_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    message: str | None = None
