from .payment import PayerStatus, PaymentRecord, PaymentStatus
from .session import PaymentConfirmation, PaymentSession, ProviderStatus
from .webhook import CanonicalWebhookEvent, EventStatus
from .delivery import WebhookDelivery, WebhookOutcome

__all__ = [
    "PaymentRecord", "PaymentStatus", "PayerStatus",
    "PaymentSession", "PaymentConfirmation", "ProviderStatus",
    "CanonicalWebhookEvent", "EventStatus",
    "WebhookDelivery", "WebhookOutcome",
]
