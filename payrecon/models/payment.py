from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum


class PaymentStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.FAILED)


class PayerStatus(Enum):
    """What the payer is shown. Timeouts never surface as FAILED."""

    CONFIRMING = "confirming"
    PAID = "paid"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentRecord:
    """Locally owned state of one payment intent.

    ``version`` grows by one on every accepted status transition and is the
    compare-and-set token for writes. ``completion_pending`` is the durable
    marker for a completion whose downstream effect has not been confirmed.
    """

    payment_intent_id: str
    status: PaymentStatus
    amount: Decimal | None
    currency: str | None
    created_at: datetime
    updated_at: datetime
    version: int = 0
    provider: str | None = None
    provider_transaction_id: str | None = None
    last_event_id: str | None = None
    completed_at: datetime | None = None
    failure_reason: str | None = None
    completion_pending: bool = False
    propagation_attempts: int = 0
    next_propagation_at: datetime | None = None
    propagation_abandoned: bool = False
    metadata: dict = field(default_factory=dict)
