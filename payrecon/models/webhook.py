from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any


class EventStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class CanonicalWebhookEvent:
    """Provider notification normalized into one shape.

    ``status`` is derived from ``raw_payload`` alone. ``raw_payload`` is kept
    for audit and is never parsed again downstream.
    """

    event_type: str  # "payment.completed", "transaction.completed", ...
    status: EventStatus
    payment_intent_id: str | None
    provider_transaction_id: str | None
    amount: Decimal | None
    currency: str | None
    raw_payload: Any
    provider: str = ""
    event_id: str | None = None
    failure_reason: str | None = None
    source: str = "webhook"  # "webhook" | "poll"
