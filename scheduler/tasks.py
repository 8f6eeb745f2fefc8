"""Background task scheduler for invoice and import maintenance."""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional
from uuid import uuid4

from core.config import get_settings
from ledger.rollback_manager import TransactionLedger
from state_machine.invoice_state import SYSTEM_ROLE, TransitionError
from state_machine.models import InvoiceStatus
from state_machine.store import InvoiceStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Task execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskPriority(int, Enum):
    """Task priority levels."""

    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


@dataclass
class TaskResult:
    """Result of a task execution."""

    success: bool
    message: str
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    executed_at: datetime = field(default_factory=_utcnow)


@dataclass
class ScheduledTask:
    """Represents a scheduled task."""

    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    task_type: str = ""
    scheduled_at: datetime = field(default_factory=_utcnow)
    priority: TaskPriority = TaskPriority.NORMAL
    status: TaskStatus = TaskStatus.PENDING
    payload: dict[str, Any] = field(default_factory=dict)
    result: Optional[TaskResult] = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def can_retry(self) -> bool:
        """Check if task can be retried."""
        return self.retry_count < self.max_retries

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "task_type": self.task_type,
            "scheduled_at": self.scheduled_at.isoformat(),
            "priority": self.priority.name,
            "status": self.status.value,
            "payload": self.payload,
            "result": {
                "success": self.result.success,
                "message": self.result.message,
                "error": self.result.error,
                "executed_at": self.result.executed_at.isoformat(),
            } if self.result else None,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
        }


class BaseTask(ABC):
    """Base class for all scheduled tasks."""

    name: str = "base_task"
    task_type: str = "base"

    @abstractmethod
    async def execute(self, payload: dict[str, Any]) -> TaskResult:
        """
        Execute the task.

        Args:
            payload: Task-specific data.

        Returns:
            TaskResult with execution outcome.
        """
        ...

    def should_retry(self, result: TaskResult) -> bool:
        """Determine if task should be retried on failure."""
        return not result.success


class OverdueCheckTask(BaseTask):
    """Move sent and viewed invoices past their due date to overdue."""

    name = "overdue_check"
    task_type = "maintenance"

    def __init__(
        self,
        store: InvoiceStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize overdue check task.

        Args:
            store: Invoice store to scan and save.
            clock: Returns the current aware UTC time.
        """
        self.store = store
        self._clock = clock or _utcnow

    async def execute(self, payload: dict[str, Any]) -> TaskResult:
        """Mark every past-due open invoice as overdue."""
        now = self._clock()
        marked: list[str] = []
        skipped: dict[str, list[str]] = {}

        for status in (InvoiceStatus.SENT, InvoiceStatus.VIEWED):
            for fsm in self.store.list_invoices(status=status):
                due_date = fsm.invoice.due_date
                if due_date is None or due_date >= now:
                    continue

                try:
                    fsm.trigger(
                        "mark_overdue",
                        payload={"overdue_date": now.isoformat()},
                        actor_role=SYSTEM_ROLE,
                        now=now,
                    )
                except TransitionError as e:
                    logger.warning(f"Overdue check skipped invoice {fsm.invoice_id}: {e}")
                    skipped[fsm.invoice_id] = e.errors or [str(e)]
                    continue

                self.store.save_fsm(fsm)
                marked.append(fsm.invoice_id)

        return TaskResult(
            success=True,
            message=f"Marked {len(marked)} invoices overdue, skipped {len(skipped)}",
            data={"overdue": marked, "skipped": skipped},
        )

    def should_retry(self, result: TaskResult) -> bool:
        # The next scheduled pass picks up anything missed
        return False


class RollbackTask(BaseTask):
    """Roll back an import transaction in the background."""

    name = "import_rollback"
    task_type = "rollback"

    def __init__(self, ledger: TransactionLedger):
        self.ledger = ledger

    async def execute(self, payload: dict[str, Any]) -> TaskResult:
        """Roll back payload["transaction_id"] on behalf of payload["user_id"]."""
        transaction_id = payload.get("transaction_id")
        user_id = payload.get("user_id")

        if not transaction_id or not user_id:
            return TaskResult(
                success=False,
                message="Missing transaction_id or user_id",
                error="INVALID_PAYLOAD",
            )

        if not payload.get("force"):
            eligibility = self.ledger.can_rollback(transaction_id)
            if not eligibility.can_rollback:
                return TaskResult(
                    success=False,
                    message=eligibility.reason or "Rollback not allowed",
                    data={"transaction_id": transaction_id},
                    error="NOT_ELIGIBLE",
                )

        result = await asyncio.to_thread(
            self.ledger.rollback,
            transaction_id,
            user_id,
            None,
            payload.get("user_role", SYSTEM_ROLE),
        )

        return TaskResult(
            success=result.success,
            message=(
                f"Rolled back {result.operations_rolled_back} operations "
                f"of {transaction_id}"
            ),
            data=result.model_dump(mode="json"),
            error=None if result.success else "PARTIAL_ROLLBACK",
        )

    def should_retry(self, result: TaskResult) -> bool:
        # A rollback marks the transaction even on partial failure, so a retry would be refused
        return False


@dataclass
class RecurringTask:
    """A task type re-scheduled at a fixed interval while the scheduler runs."""

    task_type: str
    payload: dict[str, Any]
    interval: timedelta
    name: str
    id: str = field(default_factory=lambda: str(uuid4()))


class InvoiceScheduler:
    """Main scheduler for background tasks."""

    def __init__(
        self,
        poll_interval: Optional[float] = None,
        retry_delay: Optional[timedelta] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            poll_interval: Seconds between worker passes. Defaults to settings.
            retry_delay: Delay before retrying a failed task. Defaults to settings.
        """
        settings = get_settings()
        self.poll_interval = poll_interval or settings.scheduler_poll_interval_seconds
        self.retry_delay = (
            retry_delay
            if retry_delay is not None
            else timedelta(minutes=settings.scheduler_retry_delay_minutes)
        )
        self._tasks: dict[str, ScheduledTask] = {}
        self._handlers: dict[str, BaseTask] = {}
        self._recurring: dict[str, RecurringTask] = {}
        self._running = False
        self._worker_task: Optional[asyncio.Task] = None
        self._recurring_tasks: list[asyncio.Task] = []

    def register_handler(self, task_type: str, handler: BaseTask) -> None:
        """Register a task handler."""
        self._handlers[task_type] = handler
        logger.info(f"Registered handler for task type: {task_type}")

    def schedule(
        self,
        task_type: str,
        payload: dict[str, Any],
        run_at: Optional[datetime] = None,
        priority: TaskPriority = TaskPriority.NORMAL,
        name: Optional[str] = None,
    ) -> ScheduledTask:
        """
        Schedule a new task.

        Args:
            task_type: Type of task to run.
            payload: Task-specific data.
            run_at: When to run (default: now).
            priority: Task priority.
            name: Optional task name.

        Returns:
            The scheduled task.
        """
        now = _utcnow()
        task = ScheduledTask(
            name=name or f"{task_type}_{now.strftime('%Y%m%d%H%M%S')}",
            task_type=task_type,
            scheduled_at=run_at or now,
            priority=priority,
            payload=payload,
        )

        self._tasks[task.id] = task
        logger.info(f"Scheduled task {task.id} of type {task_type} for {task.scheduled_at}")

        return task

    def schedule_rollback(
        self,
        transaction_id: str,
        user_id: str,
        force: bool = False,
        run_at: Optional[datetime] = None,
    ) -> ScheduledTask:
        """Convenience method to schedule an import rollback."""
        return self.schedule(
            task_type=RollbackTask.task_type,
            payload={"transaction_id": transaction_id, "user_id": user_id, "force": force},
            run_at=run_at,
            priority=TaskPriority.HIGH,
            name=f"rollback_{transaction_id}",
        )

    def schedule_recurring(
        self,
        task_type: str,
        payload: dict[str, Any],
        interval: timedelta,
        name: Optional[str] = None,
    ) -> str:
        """
        Schedule a task type to be queued every interval while running.

        Returns:
            Recurring task identifier.
        """
        recurring = RecurringTask(
            task_type=task_type,
            payload=payload,
            interval=interval,
            name=name or f"recurring_{task_type}",
        )
        self._recurring[recurring.id] = recurring
        if self._running:
            self._recurring_tasks.append(asyncio.create_task(self._repeat(recurring)))
        logger.info(f"Scheduled recurring task {recurring.id} every {interval}")
        return recurring.id

    async def _repeat(self, recurring: RecurringTask) -> None:
        while self._running:
            self.schedule(
                task_type=recurring.task_type,
                payload=dict(recurring.payload),
                name=recurring.name,
            )
            await asyncio.sleep(recurring.interval.total_seconds())

    def cancel(self, task_id: str) -> bool:
        """Cancel a scheduled task."""
        task = self._tasks.get(task_id)
        if task and task.status == TaskStatus.PENDING:
            task.status = TaskStatus.CANCELLED
            logger.info(f"Cancelled task {task_id}")
            return True
        return False

    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        """Get a task by ID."""
        return self._tasks.get(task_id)

    def list_pending(self) -> list[ScheduledTask]:
        """List all pending tasks."""
        return [
            task for task in self._tasks.values()
            if task.status == TaskStatus.PENDING
        ]

    async def _execute_task(self, task: ScheduledTask) -> None:
        """Execute a single task."""
        handler = self._handlers.get(task.task_type)
        if not handler:
            logger.error(f"No handler for task type: {task.task_type}")
            task.status = TaskStatus.FAILED
            task.result = TaskResult(
                success=False,
                message=f"No handler for task type: {task.task_type}",
                error="NO_HANDLER",
            )
            return

        task.status = TaskStatus.RUNNING
        logger.info(f"Executing task {task.id} ({task.name})")

        try:
            result = await handler.execute(task.payload)
        except Exception as e:
            logger.exception(f"Task {task.id} raised exception: {e}")
            task.result = TaskResult(
                success=False,
                message=str(e),
                error="EXCEPTION",
            )
            task.status = TaskStatus.FAILED
            return

        task.result = result

        if result.success:
            task.status = TaskStatus.COMPLETED
            logger.info(f"Task {task.id} completed: {result.message}")
        elif handler.should_retry(result) and task.can_retry:
            task.retry_count += 1
            task.status = TaskStatus.PENDING
            task.scheduled_at = _utcnow() + self.retry_delay
            logger.warning(
                f"Task {task.id} failed, retry {task.retry_count}/{task.max_retries}"
            )
        else:
            task.status = TaskStatus.FAILED
            logger.error(f"Task {task.id} failed: {result.message}")

    async def run_pending(self, now: Optional[datetime] = None) -> list[ScheduledTask]:
        """
        Run every pending task that is due, highest priority first.

        Returns:
            The tasks that were executed in this pass.
        """
        now = now or _utcnow()
        due_tasks = [
            task for task in self._tasks.values()
            if task.status == TaskStatus.PENDING and task.scheduled_at <= now
        ]
        due_tasks.sort(key=lambda t: (-t.priority.value, t.scheduled_at))

        for task in due_tasks:
            await self._execute_task(task)

        return due_tasks

    async def _worker(self) -> None:
        """Background worker that processes tasks."""
        logger.info("Scheduler worker started")

        while self._running:
            await self.run_pending()
            await asyncio.sleep(self.poll_interval)

        logger.info("Scheduler worker stopped")

    async def start(self) -> None:
        """Start the worker and every registered recurring task."""
        if self._running:
            return

        self._running = True
        self._worker_task = asyncio.create_task(self._worker())
        self._recurring_tasks = [
            asyncio.create_task(self._repeat(recurring))
            for recurring in self._recurring.values()
        ]
        logger.info("Scheduler started")

    async def stop(self) -> None:
        """Stop the scheduler."""
        self._running = False
        background = [t for t in [self._worker_task, *self._recurring_tasks] if t]
        for task in background:
            task.cancel()
        for task in background:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._worker_task = None
        self._recurring_tasks = []
        logger.info("Scheduler stopped")

    def get_stats(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        status_counts: dict[str, int] = {}
        for task in self._tasks.values():
            status_counts[task.status.value] = status_counts.get(task.status.value, 0) + 1

        return {
            "total_tasks": len(self._tasks),
            "running": self._running,
            "registered_handlers": list(self._handlers.keys()),
            "recurring_tasks": len(self._recurring),
            "by_status": status_counts,
        }


def setup_invoice_scheduler(
    store: InvoiceStore,
    ledger: TransactionLedger,
    overdue_check_interval: timedelta = timedelta(hours=24),
) -> InvoiceScheduler:
    """
    Create a scheduler with the overdue check and rollback handlers.

    Args:
        store: Invoice store scanned by the overdue check.
        ledger: Ledger used by rollback tasks.
        overdue_check_interval: How often the overdue check is queued.

    Returns:
        Configured InvoiceScheduler (not yet started).
    """
    scheduler = InvoiceScheduler()

    scheduler.register_handler(OverdueCheckTask.task_type, OverdueCheckTask(store))
    scheduler.register_handler(RollbackTask.task_type, RollbackTask(ledger))

    scheduler.schedule_recurring(
        task_type=OverdueCheckTask.task_type,
        payload={},
        interval=overdue_check_interval,
        name="daily_overdue_check",
    )

    return scheduler
