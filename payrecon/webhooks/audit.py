import threading
from collections import deque

from payrecon.models import WebhookDelivery, WebhookOutcome

DEFAULT_MAX_ENTRIES = 10_000


class WebhookAuditLog:
    """Thread-safe record of recent inbound webhooks and what became of them.

    Keeps at most ``max_entries`` deliveries; the oldest are dropped first.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        if max_entries < 1:
            raise ValueError(f"max_entries must be positive, got {max_entries}")
        self.max_entries = max_entries
        self._deliveries: deque[WebhookDelivery] = deque()
        self._by_id: dict[str, WebhookDelivery] = {}
        self._lock = threading.Lock()

    def log(self, delivery: WebhookDelivery) -> None:
        with self._lock:
            if len(self._deliveries) >= self.max_entries:
                evicted = self._deliveries.popleft()
                if self._by_id.get(evicted.webhook_id) is evicted:
                    self._reindex(evicted.webhook_id)
            self._deliveries.append(delivery)
            self._by_id.setdefault(delivery.webhook_id, delivery)

    def _reindex(self, webhook_id: str) -> None:
        retained = next((d for d in self._deliveries if d.webhook_id == webhook_id), None)
        if retained is None:
            del self._by_id[webhook_id]
        else:
            self._by_id[webhook_id] = retained

    def get(self, webhook_id: str) -> WebhookDelivery | None:
        with self._lock:
            return self._by_id.get(webhook_id)

    def get_deliveries(
        self,
        provider: str | None = None,
        outcome: WebhookOutcome | None = None,
        payment_intent_id: str | None = None,
    ) -> list[WebhookDelivery]:
        with self._lock:
            return [
                d for d in self._deliveries
                if (provider is None or d.provider == provider)
                and (outcome is None or d.outcome is outcome)
                and (payment_intent_id is None or d.payment_intent_id == payment_intent_id)
            ]

    def get_rejected(self) -> list[WebhookDelivery]:
        return self.get_deliveries(outcome=WebhookOutcome.REJECTED_SIGNATURE)

    def __len__(self) -> int:
        with self._lock:
            return len(self._deliveries)

    def clear(self) -> None:
        with self._lock:
            self._deliveries.clear()
            self._by_id.clear()
