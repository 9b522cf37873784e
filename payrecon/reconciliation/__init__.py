from .collaborators import CompletionCall, CompletionCollaborator, RecordingCollaborator
from .engine import ReconcileOutcome, ReconcileResult, ReconciliationEngine
from .retry import RetryManager
from .store import InMemoryPaymentRecordStore, PaymentRecordStore

__all__ = [
    "CompletionCall", "CompletionCollaborator", "RecordingCollaborator",
    "ReconcileOutcome", "ReconcileResult", "ReconciliationEngine",
    "RetryManager", "InMemoryPaymentRecordStore", "PaymentRecordStore",
]
