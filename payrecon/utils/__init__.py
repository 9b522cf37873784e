from .crypto import form_signature, hmac_hex, payload_fingerprint, signatures_match
from .factories import PaymentRecordFactory, WebhookFactory

__all__ = [
    "form_signature", "hmac_hex", "payload_fingerprint", "signatures_match",
    "PaymentRecordFactory", "WebhookFactory",
]
