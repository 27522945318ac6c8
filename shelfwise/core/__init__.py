"""Core lending logic."""
from .borrowing import BorrowEngine, validate_confirmation
from .errors import LendingError, OperationResult
from .executor import FallbackExecutor, NonTransactionalExecutor, TransactionalExecutor
from .fines import FineEngine, calculate_penalty
from .idempotency import IdempotencyCache
from .inventory import InventoryLedger
from .payments import PaymentReconciler
from .restrictions import RestrictionEngine, RestrictionPolicy
from .returns import ReturnEngine

__all__ = [
    "BorrowEngine",
    "FallbackExecutor",
    "FineEngine",
    "IdempotencyCache",
    "InventoryLedger",
    "LendingError",
    "NonTransactionalExecutor",
    "OperationResult",
    "PaymentReconciler",
    "RestrictionEngine",
    "RestrictionPolicy",
    "ReturnEngine",
    "TransactionalExecutor",
    "calculate_penalty",
    "validate_confirmation",
]
