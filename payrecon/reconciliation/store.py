"""Payment record persistence.

Every write goes through ``compare_and_set`` on ``version``; that conditional
write is the only mutual-exclusion point between the outbound path and the
webhook path.
"""

import threading
from collections.abc import Iterable
from datetime import datetime
from typing import Protocol

from payrecon.models import PaymentRecord, PaymentStatus


class PaymentRecordStore(Protocol):
    def get(self, payment_intent_id: str) -> PaymentRecord | None: ...

    def insert(self, record: PaymentRecord) -> bool:
        """Store a new record. False when the id already exists."""
        ...

    def compare_and_set(self, record: PaymentRecord, expected_version: int) -> bool:
        """Replace the stored record only if its version is still ``expected_version``."""
        ...

    def find_by_provider_transaction_id(self, provider: str | None, transaction_id: str) -> PaymentRecord | None: ...

    def list_stale(
        self,
        statuses: Iterable[PaymentStatus],
        updated_before: datetime,
        provider: str | None = None,
    ) -> list[PaymentRecord]: ...

    def pending_completions(self, due_at: datetime) -> list[PaymentRecord]:
        """Records whose completion still has to reach the downstream collaborator."""
        ...


def propagation_due(record: PaymentRecord, due_at: datetime) -> bool:
    return (
        record.completion_pending
        and not record.propagation_abandoned
        and (record.next_propagation_at is None or record.next_propagation_at <= due_at)
    )


class InMemoryPaymentRecordStore:
    """Thread-safe dict-backed store for tests and single-process use."""

    def __init__(self):
        self._records: dict[str, PaymentRecord] = {}
        self._lock = threading.Lock()

    def get(self, payment_intent_id: str) -> PaymentRecord | None:
        with self._lock:
            return self._records.get(payment_intent_id)

    def insert(self, record: PaymentRecord) -> bool:
        with self._lock:
            if record.payment_intent_id in self._records:
                return False
            self._records[record.payment_intent_id] = record
            return True

    def compare_and_set(self, record: PaymentRecord, expected_version: int) -> bool:
        with self._lock:
            current = self._records.get(record.payment_intent_id)
            if current is None or current.version != expected_version:
                return False
            self._records[record.payment_intent_id] = record
            return True

    def find_by_provider_transaction_id(self, provider: str | None, transaction_id: str) -> PaymentRecord | None:
        with self._lock:
            for record in self._records.values():
                if record.provider_transaction_id == transaction_id and (
                    provider is None or record.provider == provider
                ):
                    return record
            return None

    def list_stale(self, statuses, updated_before, provider=None) -> list[PaymentRecord]:
        wanted = set(statuses)
        with self._lock:
            return [
                record
                for record in self._records.values()
                if record.status in wanted
                and record.updated_at < updated_before
                and (provider is None or record.provider == provider)
            ]

    def pending_completions(self, due_at: datetime) -> list[PaymentRecord]:
        with self._lock:
            return [record for record in self._records.values() if propagation_due(record, due_at)]

    def all(self) -> list[PaymentRecord]:
        with self._lock:
            return list(self._records.values())

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
