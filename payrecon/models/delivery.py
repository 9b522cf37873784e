from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class WebhookOutcome(Enum):
    PROCESSED = "PROCESSED"
    DUPLICATE = "DUPLICATE"
    IGNORED = "IGNORED"
    UNMATCHED = "UNMATCHED"
    REJECTED_AMOUNT = "REJECTED_AMOUNT"
    REJECTED_SIGNATURE = "REJECTED_SIGNATURE"


@dataclass
class WebhookDelivery:
    """One inbound webhook as received, with what we did about it."""

    webhook_id: str
    provider: str
    received_at: datetime
    payload: bytes
    signature: str | None
    outcome: WebhookOutcome
    payment_intent_id: str | None = None
    detail: str | None = None
    replay: bool = False
