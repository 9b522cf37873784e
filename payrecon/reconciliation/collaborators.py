import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Protocol


class CompletionCollaborator(Protocol):
    """Downstream consumer of completed payments (license activation, ledger, ...).

    Keyed by ``payment_intent_id`` and may see the same id more than once, so
    implementations must be idempotent on it.
    """

    def apply_payment_completion(
        self,
        payment_intent_id: str,
        amount: Decimal | None,
        currency: str | None,
        metadata: dict,
    ) -> None: ...


@dataclass
class CompletionCall:
    payment_intent_id: str
    amount: Decimal | None
    currency: str | None
    metadata: dict = field(default_factory=dict)


class RecordingCollaborator:
    """Collaborator that remembers every call. Can be told to fail a few times."""

    def __init__(self):
        self._calls: list[CompletionCall] = []
        self._failures: list[Exception] = []
        self._lock = threading.Lock()

    def fail_next(self, times: int = 1, error: Exception | None = None) -> None:
        with self._lock:
            for _ in range(times):
                self._failures.append(error or RuntimeError("downstream unavailable"))

    def apply_payment_completion(self, payment_intent_id, amount, currency, metadata) -> None:
        with self._lock:
            if self._failures:
                raise self._failures.pop(0)
            self._calls.append(CompletionCall(payment_intent_id, amount, currency, dict(metadata)))

    @property
    def calls(self) -> list[CompletionCall]:
        with self._lock:
            return list(self._calls)

    def calls_for(self, payment_intent_id: str) -> list[CompletionCall]:
        return [call for call in self.calls if call.payment_intent_id == payment_intent_id]

    def clear(self) -> None:
        with self._lock:
            self._calls.clear()
            self._failures.clear()
