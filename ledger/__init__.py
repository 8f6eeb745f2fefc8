"""Import transaction ledger with rollback support."""

from ledger.executor import (
    EntityExistsError,
    EntityNotFoundError,
    InMemoryMutationExecutor,
    MutationError,
    MutationExecutor,
)
from ledger.models import (
    LedgerStatistics,
    Operation,
    OperationSpec,
    OperationType,
    RollbackEligibility,
    RollbackResult,
    Transaction,
    TransactionStatus,
    TransactionSummary,
)
from ledger.rollback_manager import TransactionLedger

__all__ = [
    "EntityExistsError",
    "EntityNotFoundError",
    "InMemoryMutationExecutor",
    "MutationError",
    "MutationExecutor",
    "LedgerStatistics",
    "Operation",
    "OperationSpec",
    "OperationType",
    "RollbackEligibility",
    "RollbackResult",
    "Transaction",
    "TransactionStatus",
    "TransactionSummary",
    "TransactionLedger",
]
