from collections.abc import Mapping

from payrecon.models import WebhookDelivery, WebhookOutcome
from payrecon.webhooks.audit import WebhookAuditLog
from payrecon.webhooks.processor import WebhookProcessor, WebhookResult


class WebhookReplayManager:
    """Re-runs logged webhooks through their processor.

    Replays go through signature verification again, and an event that was
    already applied comes back as DUPLICATE.
    """

    def __init__(self, processors: Mapping[str, WebhookProcessor], audit_log: WebhookAuditLog):
        self.processors = processors
        self.audit_log = audit_log

    def replay(self, webhook_id: str) -> WebhookResult:
        delivery = self.audit_log.get(webhook_id)
        if delivery is None:
            raise ValueError(f"Webhook {webhook_id} not found for replay")
        return self._replay(delivery)

    def _replay(self, delivery: WebhookDelivery) -> WebhookResult:
        processor = self.processors.get(delivery.provider)
        if processor is None:
            raise ValueError(f"No processor for provider {delivery.provider}")
        return processor.handle(delivery.payload, delivery.signature, replay=True)

    def replay_unmatched(self) -> dict[str, WebhookResult]:
        """Replay webhooks that arrived before any record could be matched.

        Returns a dict mapping the original webhook_id to the replay result.
        """
        results = {}
        for delivery in self.audit_log.get_deliveries(outcome=WebhookOutcome.UNMATCHED):
            if delivery.replay:
                continue
            results[delivery.webhook_id] = self._replay(delivery)
        return results
