import logging
import threading

from payrecon.models import WebhookOutcome
from payrecon.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)

ALERT_TYPE = "webhook_signature_rejection_rate"


class AlertManager:
    """Fires when too many inbound webhooks fail signature verification.

    A burst of bad signatures means a misconfigured secret or someone
    forging notifications. Fires once, then re-arms when the rate drops.
    """

    def __init__(
        self,
        metrics: MetricsCollector,
        threshold: float = 0.10,
        min_webhooks: int = 1,
        callback=None,
    ):
        self.metrics = metrics
        self.threshold = threshold
        self.min_webhooks = max(1, min_webhooks)
        self.callback = callback
        self._armed = True
        self._history: list[dict] = []
        self._lock = threading.Lock()

    def check(self) -> dict | None:
        """Evaluate the current window. Returns the alert when one fires."""
        total = self.metrics.total_in_window()
        if total < self.min_webhooks:
            return None
        rate = self.metrics.rejection_rate()

        with self._lock:
            if rate <= self.threshold:
                self._armed = True
                return None
            if not self._armed:
                return None
            self._armed = False
            alert = self._build_alert(rate, total)
            self._history.append(alert)

        logger.error(alert["message"], extra={"by_provider": alert["by_provider"]})
        if self.callback is not None:
            self.callback(alert)
        return alert

    def _build_alert(self, rate: float, total: int) -> dict:
        rejected = WebhookOutcome.REJECTED_SIGNATURE
        by_provider = self.metrics.counts_by_provider(rejected)
        count = sum(by_provider.values())
        return {
            "type": ALERT_TYPE,
            "rejection_rate": rate,
            "threshold": self.threshold,
            "total_webhooks": total,
            "rejected_webhooks": count,
            "by_provider": by_provider,
            "message": (
                f"Webhook signature rejection rate {rate:.1%} above {self.threshold:.1%} "
                f"({count}/{total} webhooks rejected)"
            ),
        }

    def get_alerts(self) -> list[dict]:
        with self._lock:
            return list(self._history)

    def reset(self) -> None:
        with self._lock:
            self._armed = True
            self._history.clear()
