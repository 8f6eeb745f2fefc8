"""
Transaction ledger for bulk imports and their rollback.

Each bulk mutation batch is recorded as a Transaction once it has been
applied. A transaction can later be rolled back by applying the inverse of
its operations, newest first, through a MutationExecutor.

Rollback is best-effort: each operation is reversed independently, failures
are reported per operation, and the original transaction is marked
rolled_back even when some operations could not be reversed.
"""

import itertools
import json
import logging
import threading
from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Union
from uuid import uuid4

from audit.audit_logger import AuditLogger
from core.config import get_settings
from ledger.executor import MutationExecutor
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

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = 1
ROLLBACK_PREFIX = "rollback_"

OperationInput = Union[OperationSpec, Mapping[str, Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex}"


class TransactionLedger:
    """
    In-memory log of import transactions with rollback support.

    The ledger keeps the most recent max_transaction_history transactions.
    All reads and writes of the transaction map happen under one lock; the
    executor is called outside it.
    """

    def __init__(
        self,
        executor: MutationExecutor,
        max_transaction_history: Optional[int] = None,
        max_rollback_age_days: Optional[int] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the ledger.

        Args:
            executor: Data-access layer used to reverse operations.
            max_transaction_history: Transactions retained. Defaults to settings.
            max_rollback_age_days: Age limit enforced by can_rollback. Defaults to settings.
            audit_logger: Optional audit log for import and rollback events.
            clock: Returns the current aware UTC time.
        """
        settings = get_settings()
        self.executor = executor
        if max_transaction_history is None:
            max_transaction_history = settings.ledger_max_transactions
        if max_rollback_age_days is None:
            max_rollback_age_days = settings.rollback_max_age_days
        if max_transaction_history < 1:
            raise ValueError(f"max_transaction_history must be at least 1, got {max_transaction_history}")
        if max_rollback_age_days < 0:
            raise ValueError(f"max_rollback_age_days must not be negative, got {max_rollback_age_days}")

        self.max_transaction_history = max_transaction_history
        self.max_rollback_age_days = max_rollback_age_days
        self.default_history_limit = settings.ledger_history_limit
        self.audit_logger = audit_logger
        self._clock = clock or _utcnow

        self._transactions: dict[str, Transaction] = {}
        self._sequence: dict[str, int] = {}
        self._counter = itertools.count()
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_transaction(
        self,
        entity_type: str,
        user_id: str,
        operations: Sequence[OperationInput],
        user_role: str = "system",
        status: TransactionStatus = TransactionStatus.COMPLETED,
    ) -> Transaction:
        """
        Record an applied batch of operations.

        Args:
            entity_type: Logical resource name, e.g. "customers".
            user_id: Actor who ran the batch.
            operations: What happened, in application order. Operations without
                an entity_type take the transaction's.
            user_role: Actor role, used only for the audit entry.
            status: COMPLETED, or FAILED for a batch that did not finish.

        Returns:
            The stored Transaction.
        """
        transaction = self._record(entity_type, user_id, operations, status)

        if self.audit_logger:
            self.audit_logger.log_data_operation(
                user_id,
                user_role,
                "import",
                entity_type,
                transaction.summary.total,
                resource_id=transaction.id,
            )

        return transaction

    def _record(
        self,
        entity_type: str,
        user_id: str,
        operations: Sequence[OperationInput],
        status: TransactionStatus = TransactionStatus.COMPLETED,
    ) -> Transaction:
        if status == TransactionStatus.ROLLED_BACK:
            raise ValueError("Transactions can only become rolled_back through rollback()")

        timestamp = self._clock()
        specs = [
            op
            if isinstance(op, OperationSpec)
            else OperationSpec.model_validate({"entity_type": entity_type, **op})
            for op in operations
        ]
        stamped = [
            Operation(
                id=_new_id("op"),
                timestamp=timestamp,
                operation=spec.operation,
                entity_type=spec.entity_type,
                entity_id=spec.entity_id,
                before_data=spec.before_data,
                after_data=spec.after_data,
            )
            for spec in specs
        ]

        transaction = Transaction(
            id=_new_id("tx"),
            timestamp=timestamp,
            entity_type=entity_type,
            user_id=user_id,
            status=status,
            summary=self._summarize(stamped),
            operations=stamped,
        )

        with self._lock:
            self._transactions[transaction.id] = transaction
            self._sequence[transaction.id] = next(self._counter)
            self._evict()

        logger.info(
            f"Recorded transaction {transaction.id} for {entity_type} "
            f"({transaction.summary.total} operations) by {user_id}"
        )
        return transaction

    @staticmethod
    def _summarize(operations: Sequence[Operation]) -> TransactionSummary:
        kinds = [op.operation for op in operations]
        return TransactionSummary(
            creates=kinds.count(OperationType.CREATE),
            updates=kinds.count(OperationType.UPDATE),
            deletes=kinds.count(OperationType.DELETE),
            total=len(kinds),
        )

    def _recency_key(self, transaction: Transaction) -> tuple[datetime, int]:
        return transaction.timestamp, self._sequence.get(transaction.id, -1)

    def _newest_first(self) -> list[Transaction]:
        return sorted(self._transactions.values(), key=self._recency_key, reverse=True)

    def _evict(self) -> None:
        """Drop the oldest transactions beyond the history bound. Caller holds the lock."""
        if len(self._transactions) <= self.max_transaction_history:
            return

        for stale in self._newest_first()[self.max_transaction_history:]:
            del self._transactions[stale.id]
            self._sequence.pop(stale.id, None)
            logger.debug(f"Evicted transaction {stale.id}")

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(
        self,
        transaction_id: str,
        user_id: str,
        cancel_event: Optional[threading.Event] = None,
        user_role: str = "system",
    ) -> RollbackResult:
        """
        Reverse a transaction's operations, newest first.

        Only a missing transaction or one already rolled back is refused;
        age and conflict checks belong to can_rollback(). Checking and
        marking the status happen under the ledger lock, so concurrent
        calls for the same id cannot both proceed.

        Args:
            transaction_id: Transaction to reverse.
            user_id: Actor requesting the rollback.
            cancel_event: Checked between operations; once set, the
                remaining operations are skipped and reported.
            user_role: Actor role, used only for the audit entry.

        Returns:
            RollbackResult; success is True only if every operation was reversed.
        """
        with self._lock:
            transaction = self._transactions.get(transaction_id)

            if transaction is None:
                return RollbackResult(
                    success=False,
                    errors=["Transaction not found"],
                    timestamp=self._clock(),
                )

            if transaction.status == TransactionStatus.ROLLED_BACK:
                return RollbackResult(
                    success=False,
                    errors=["Transaction has already been rolled back"],
                    timestamp=self._clock(),
                )

            rollback_id = _new_id("rb")
            transaction.status = TransactionStatus.ROLLED_BACK
            transaction.rollback_id = rollback_id
            pending = list(reversed(transaction.operations))

        logger.info(
            f"Rolling back transaction {transaction_id} "
            f"({len(pending)} operations) for {user_id}"
        )

        errors: list[str] = []
        reversed_ops: list[OperationSpec] = []
        cancelled = False

        for operation in pending:
            if cancelled or (cancel_event is not None and cancel_event.is_set()):
                cancelled = True
                errors.append(f"Rollback cancelled before {operation.id}")
                continue

            try:
                self._apply_inverse(operation)
            except Exception as e:
                logger.warning(f"Failed to rollback {operation.id}: {e}")
                errors.append(f"Failed to rollback {operation.id}: {e}")
                continue

            reversed_ops.append(self.create_reverse_operation(operation))

        self._record(f"{ROLLBACK_PREFIX}{transaction.entity_type}", user_id, reversed_ops)

        if self.audit_logger:
            self.audit_logger.log_data_operation(
                user_id,
                user_role,
                "rollback",
                transaction.entity_type,
                len(reversed_ops),
                resource_id=transaction_id,
            )

        if errors:
            logger.warning(
                f"Rollback {rollback_id} of {transaction_id} finished with "
                f"{len(errors)} errors"
            )
        else:
            logger.info(f"Rollback {rollback_id} of {transaction_id} completed")

        return RollbackResult(
            success=not errors,
            rollback_id=rollback_id,
            operations_rolled_back=len(reversed_ops),
            errors=errors,
            timestamp=self._clock(),
            cancelled=cancelled,
        )

    def _apply_inverse(self, operation: Operation) -> None:
        """Ask the executor to undo one operation."""
        if operation.operation == OperationType.CREATE:
            self.executor.delete(operation.entity_type, operation.entity_id)
        elif operation.operation == OperationType.UPDATE:
            self.executor.update(operation.entity_type, operation.entity_id, operation.before_data or {})
        elif operation.operation == OperationType.DELETE:
            self.executor.create(
                operation.entity_type, operation.before_data or {}, entity_id=operation.entity_id
            )
        else:
            raise ValueError(f"Unknown operation type: {operation.operation}")

    @staticmethod
    def create_reverse_operation(original: OperationSpec) -> OperationSpec:
        """Build the structural inverse of an operation."""
        if original.operation == OperationType.CREATE:
            return OperationSpec(
                operation=OperationType.DELETE,
                entity_type=original.entity_type,
                entity_id=original.entity_id,
                before_data=original.after_data,
            )
        if original.operation == OperationType.UPDATE:
            return OperationSpec(
                operation=OperationType.UPDATE,
                entity_type=original.entity_type,
                entity_id=original.entity_id,
                before_data=original.after_data,
                after_data=original.before_data,
            )
        if original.operation == OperationType.DELETE:
            return OperationSpec(
                operation=OperationType.CREATE,
                entity_type=original.entity_type,
                entity_id=original.entity_id,
                after_data=original.before_data,
            )
        raise ValueError(f"Unknown operation type: {original.operation}")

    def can_rollback(self, transaction_id: str) -> RollbackEligibility:
        """
        Advisory check used before offering a rollback.

        Refuses missing, already rolled back and failed transactions, those
        older than the age limit, and those with a newer completed
        transaction for the same entity type.
        """
        with self._lock:
            transaction = self._transactions.get(transaction_id)

            if transaction is None:
                return RollbackEligibility(can_rollback=False, reason="Transaction not found")

            if transaction.status == TransactionStatus.ROLLED_BACK:
                return RollbackEligibility(can_rollback=False, reason="Already rolled back")

            if transaction.status == TransactionStatus.FAILED:
                return RollbackEligibility(
                    can_rollback=False, reason="Cannot rollback failed transaction"
                )

            cutoff = self._clock() - timedelta(days=self.max_rollback_age_days)
            if transaction.timestamp < cutoff:
                return RollbackEligibility(
                    can_rollback=False,
                    reason=(
                        "Transaction is too old to rollback "
                        f"(>{self.max_rollback_age_days} days)"
                    ),
                )

            newer = [
                tx
                for tx in self._history(transaction.entity_type)
                if tx.id != transaction.id
                and tx.timestamp > transaction.timestamp
                and tx.status == TransactionStatus.COMPLETED
            ]

        if newer:
            return RollbackEligibility(
                can_rollback=False,
                reason=(
                    f"Newer imports exist for {transaction.entity_type}. "
                    "Rollback may cause conflicts."
                ),
            )

        return RollbackEligibility(can_rollback=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        """Get a transaction by ID."""
        with self._lock:
            return self._transactions.get(transaction_id)

    def _history(self, entity_type: Optional[str]) -> list[Transaction]:
        transactions = self._newest_first()
        if entity_type:
            prefix = f"{ROLLBACK_PREFIX}{entity_type}"
            transactions = [
                tx
                for tx in transactions
                if tx.entity_type == entity_type or tx.entity_type.startswith(prefix)
            ]
        return transactions

    def get_transaction_history(
        self,
        entity_type: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        """
        List transactions newest first.

        Args:
            entity_type: Only this entity type and its rollback transactions.
            limit: Maximum results. Defaults to settings (50).
        """
        limit = limit if limit is not None else self.default_history_limit
        with self._lock:
            return self._history(entity_type)[:limit]

    def get_statistics(self) -> LedgerStatistics:
        """Aggregate counts over all retained transactions."""
        with self._lock:
            transactions = list(self._transactions.values())

        stats = LedgerStatistics(total_transactions=len(transactions))
        for tx in transactions:
            if tx.status == TransactionStatus.COMPLETED:
                stats.completed_transactions += 1
            elif tx.status == TransactionStatus.ROLLED_BACK:
                stats.rolled_back_transactions += 1
            elif tx.status == TransactionStatus.FAILED:
                stats.failed_transactions += 1

            stats.total_operations += len(tx.operations)
            for op in tx.operations:
                kind = op.operation.value
                stats.operations_by_type[kind] = stats.operations_by_type.get(kind, 0) + 1

        return stats

    def export_transaction_log(self, transaction_id: Optional[str] = None) -> str:
        """
        Export one or all transactions as JSON.

        Operation bodies are not exported; each transaction's "operations"
        field holds the operation count.
        """
        with self._lock:
            if transaction_id:
                found = self._transactions.get(transaction_id)
                transactions = [found] if found else []
            else:
                transactions = list(self._transactions.values())

            exported = []
            for tx in transactions:
                data = tx.model_dump(mode="json")
                data["operations"] = len(tx.operations)
                exported.append(data)

        export_data = {
            "version": EXPORT_FORMAT_VERSION,
            "exported_at": self._clock().isoformat(),
            "transaction_count": len(exported),
            "transactions": exported,
        }
        return json.dumps(export_data, indent=2)

