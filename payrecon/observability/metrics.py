import threading
import time
from collections import Counter
from typing import Callable

from payrecon.models import WebhookOutcome


class MetricsCollector:
    """Counts inbound webhook outcomes over a rolling window."""

    def __init__(self, window_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self._window_seconds = window_seconds
        self._clock = clock
        self._samples: list[tuple[float, WebhookOutcome, str]] = []  # (timestamp, outcome, provider)
        self._lock = threading.Lock()

    def record(self, outcome: WebhookOutcome, provider: str = "") -> None:
        with self._lock:
            now = self._clock()
            self._samples = self._prune(now)
            self._samples.append((now, outcome, provider))

    def _prune(self, now: float) -> list[tuple[float, WebhookOutcome, str]]:
        cutoff = now - self._window_seconds
        return [sample for sample in self._samples if sample[0] >= cutoff]

    def count(self, outcome: WebhookOutcome | None = None, provider: str | None = None) -> int:
        with self._lock:
            return sum(
                1
                for _, sample_outcome, sample_provider in self._prune(self._clock())
                if (outcome is None or sample_outcome is outcome)
                and (provider is None or sample_provider == provider)
            )

    def total_in_window(self) -> int:
        return self.count()

    def counts_by_outcome(self) -> dict[str, int]:
        with self._lock:
            counts = Counter(outcome.value for _, outcome, _ in self._prune(self._clock()))
        return dict(counts)

    def counts_by_provider(self, outcome: WebhookOutcome | None = None) -> dict[str, int]:
        with self._lock:
            counts = Counter(
                provider
                for _, sample_outcome, provider in self._prune(self._clock())
                if outcome is None or sample_outcome is outcome
            )
        return dict(counts)

    def rejection_rate(self) -> float:
        """Share of webhooks rejected for a bad signature (0.0 to 1.0)."""
        with self._lock:
            window = self._prune(self._clock())
        if not window:
            return 0.0
        rejected = sum(1 for _, outcome, _ in window if outcome is WebhookOutcome.REJECTED_SIGNATURE)
        return rejected / len(window)

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()
