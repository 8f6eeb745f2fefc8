"""Data models for the import transaction ledger."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator


class OperationType(str, Enum):
    """Kinds of mutation captured by a transaction."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class TransactionStatus(str, Enum):
    """Ledger transaction status."""

    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class OperationSpec(BaseModel):
    """
    A mutation as described by the caller, before the ledger stamps it.

    Snapshots are plain JSON-style mappings so the ledger stays agnostic to
    entity shape. Each kind carries the snapshots needed to reverse it.
    """

    operation: OperationType
    entity_type: str
    entity_id: str
    before_data: Optional[dict[str, Any]] = None
    after_data: Optional[dict[str, Any]] = None

    @model_validator(mode="after")
    def check_snapshots(self) -> "OperationSpec":
        """Require the snapshots each operation kind depends on."""
        if self.operation in (OperationType.CREATE, OperationType.UPDATE) and self.after_data is None:
            raise ValueError(f"{self.operation.value} operation requires after_data")
        if self.operation in (OperationType.UPDATE, OperationType.DELETE) and self.before_data is None:
            raise ValueError(f"{self.operation.value} operation requires before_data")
        return self

    class Config:
        frozen = True


class Operation(OperationSpec):
    """A recorded mutation."""

    id: str
    timestamp: datetime


class TransactionSummary(BaseModel):
    """Operation counts by kind."""

    creates: int = 0
    updates: int = 0
    deletes: int = 0
    total: int = 0


class Transaction(BaseModel):
    """A batch of operations recorded together."""

    id: str
    timestamp: datetime
    entity_type: str
    user_id: str
    status: TransactionStatus = TransactionStatus.COMPLETED
    summary: TransactionSummary
    operations: list[Operation] = Field(default_factory=list)
    rollback_id: Optional[str] = None


class RollbackResult(BaseModel):
    """Outcome of a rollback attempt."""

    success: bool
    rollback_id: str = ""
    operations_rolled_back: int = 0
    errors: list[str] = Field(default_factory=list)
    timestamp: datetime
    cancelled: bool = False


class RollbackEligibility(BaseModel):
    """Advisory answer to whether a transaction may be rolled back."""

    can_rollback: bool
    reason: Optional[str] = None


class LedgerStatistics(BaseModel):
    """Aggregate counts over the ledger contents."""

    total_transactions: int = 0
    completed_transactions: int = 0
    rolled_back_transactions: int = 0
    failed_transactions: int = 0
    total_operations: int = 0
    operations_by_type: dict[str, int] = Field(default_factory=dict)
