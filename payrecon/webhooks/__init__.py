from .audit import WebhookAuditLog
from .processor import WebhookProcessor, WebhookResult
from .server import WebhookReceiverServer

__all__ = [
    "WebhookAuditLog",
    "WebhookProcessor",
    "WebhookResult",
    "WebhookReceiverServer",
]
