"""Tests for the scheduler module."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from ledger.models import TransactionStatus
from scheduler.tasks import (
    BaseTask,
    InvoiceScheduler,
    OverdueCheckTask,
    RollbackTask,
    ScheduledTask,
    TaskPriority,
    TaskResult,
    TaskStatus,
    setup_invoice_scheduler,
)
from state_machine.invoice_state import TransitionError
from state_machine.models import InvoiceStatus
from state_machine.store import InMemoryInvoiceStore


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _create_op(entity_id: str) -> dict:
    return {
        "operation": "create",
        "entity_type": "customers",
        "entity_id": entity_id,
        "after_data": {"name": entity_id},
    }


class FlakyTask(BaseTask):
    """Task that fails every time it runs."""

    name = "flaky"
    task_type = "flaky"

    async def execute(self, payload):
        return TaskResult(success=False, message="boom", error="FLAKY")


class TestScheduledTask:
    """Test ScheduledTask dataclass."""

    def test_create_task(self):
        """Test creating a scheduled task."""
        task = ScheduledTask(
            name="test_task",
            task_type="rollback",
            payload={"transaction_id": "tx-1"},
        )

        assert task.name == "test_task"
        assert task.status == TaskStatus.PENDING
        assert task.can_retry is True

    def test_can_retry_after_max(self):
        """Test can_retry returns False after max retries."""
        task = ScheduledTask(name="test_task", retry_count=3, max_retries=3)

        assert task.can_retry is False

    def test_to_dict(self):
        """Test converting task to dictionary."""
        task = ScheduledTask(name="test_task", task_type="maintenance", priority=TaskPriority.HIGH)

        data = task.to_dict()

        assert data["name"] == "test_task"
        assert data["priority"] == "HIGH"
        assert data["status"] == "pending"
        assert data["result"] is None


class TestOverdueCheckTask:
    """Test OverdueCheckTask."""

    @pytest.fixture
    def invoices(self, store: InMemoryInvoiceStore) -> InMemoryInvoiceStore:
        """Store with invoices in several states and due dates."""
        past = _now() - timedelta(days=2)
        future = _now() + timedelta(days=2)
        store.create_invoice("INV-SENT-PAST", Decimal("10"), past, InvoiceStatus.SENT)
        store.create_invoice("INV-VIEWED-PAST", Decimal("10"), past, InvoiceStatus.VIEWED)
        store.create_invoice("INV-SENT-FUTURE", Decimal("10"), future, InvoiceStatus.SENT)
        store.create_invoice("INV-DRAFT-PAST", Decimal("10"), past, InvoiceStatus.DRAFT)
        store.create_invoice("INV-PAID-PAST", Decimal("10"), past, InvoiceStatus.PAID)
        store.create_invoice("INV-NO-DUE", Decimal("10"), None, InvoiceStatus.SENT)
        return store

    @pytest.mark.asyncio
    async def test_marks_past_due_invoices(self, invoices):
        """Test only open invoices past their due date become overdue."""
        task = OverdueCheckTask(invoices)

        result = await task.execute({})

        assert result.success is True
        assert sorted(result.data["overdue"]) == ["INV-SENT-PAST", "INV-VIEWED-PAST"]
        assert result.data["skipped"] == {}
        assert invoices.get_fsm("INV-SENT-PAST").current_state == InvoiceStatus.OVERDUE
        assert invoices.get_fsm("INV-SENT-FUTURE").current_state == InvoiceStatus.SENT
        assert invoices.get_fsm("INV-DRAFT-PAST").current_state == InvoiceStatus.DRAFT
        assert invoices.get_fsm("INV-NO-DUE").current_state == InvoiceStatus.SENT

    @pytest.mark.asyncio
    async def test_second_pass_is_noop(self, invoices):
        """Test invoices already overdue are not touched again."""
        task = OverdueCheckTask(invoices)
        await task.execute({})

        result = await task.execute({})

        assert result.data["overdue"] == []

    @pytest.mark.asyncio
    async def test_uses_task_clock_for_due_check(self, store):
        """Test the lifecycle due-date check runs against the task's clock."""
        due = _now() + timedelta(days=5)
        store.create_invoice("INV-001", Decimal("10"), due, InvoiceStatus.SENT)
        task = OverdueCheckTask(store, clock=lambda: _now() + timedelta(days=10))

        result = await task.execute({})

        assert result.data["overdue"] == ["INV-001"]
        assert result.data["skipped"] == {}
        assert store.get_fsm("INV-001").current_state == InvoiceStatus.OVERDUE

    @pytest.mark.asyncio
    async def test_rejected_transition_is_skipped(self):
        """Test invoices the lifecycle refuses are reported as skipped."""
        fsm = MagicMock()
        fsm.invoice_id = "INV-001"
        fsm.invoice.due_date = _now() - timedelta(days=1)
        fsm.trigger.side_effect = TransitionError(
            "Transition validation failed",
            current_state="sent",
            attempted_trigger="mark_overdue",
            invoice_id="INV-001",
            errors=["Transition validation failed for sent -> overdue"],
        )
        store = MagicMock()
        store.list_invoices.side_effect = lambda status: (
            [fsm] if status == InvoiceStatus.SENT else []
        )

        result = await OverdueCheckTask(store).execute({})

        assert result.success is True
        assert result.data["overdue"] == []
        assert result.data["skipped"] == {
            "INV-001": ["Transition validation failed for sent -> overdue"]
        }
        store.save_fsm.assert_not_called()

    def test_never_retries(self, store):
        """Test overdue checks are not retried."""
        task = OverdueCheckTask(store)
        assert task.should_retry(TaskResult(success=False, message="x")) is False


class TestRollbackTask:
    """Test RollbackTask."""

    @pytest.mark.asyncio
    async def test_rollback_success(self, ledger, executor):
        """Test rolling back an eligible transaction."""
        executor.create("customers", {"name": "c1"}, entity_id="c1")
        tx = ledger.record_transaction("customers", "user-1", [_create_op("c1")])
        task = RollbackTask(ledger)

        result = await task.execute({"transaction_id": tx.id, "user_id": "admin-1"})

        assert result.success is True
        assert result.data["operations_rolled_back"] == 1
        assert ledger.get_transaction(tx.id).status == TransactionStatus.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_missing_payload(self, ledger):
        """Test task fails without required payload fields."""
        task = RollbackTask(ledger)

        result = await task.execute({"transaction_id": "tx-1"})

        assert result.success is False
        assert result.error == "INVALID_PAYLOAD"

    @pytest.mark.asyncio
    async def test_not_eligible(self, ledger, clock):
        """Test a transaction blocked by a newer import."""
        first = ledger.record_transaction("customers", "user-1", [_create_op("c1")])
        clock.advance(minutes=1)
        ledger.record_transaction("customers", "user-1", [_create_op("c2")])
        task = RollbackTask(ledger)

        result = await task.execute({"transaction_id": first.id, "user_id": "admin-1"})

        assert result.success is False
        assert result.error == "NOT_ELIGIBLE"
        assert "Newer imports exist" in result.message
        assert ledger.get_transaction(first.id).status == TransactionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_force_skips_eligibility(self, ledger, executor, clock):
        """Test force rolls back despite newer imports."""
        executor.create("customers", {"name": "c1"}, entity_id="c1")
        first = ledger.record_transaction("customers", "user-1", [_create_op("c1")])
        clock.advance(minutes=1)
        ledger.record_transaction("customers", "user-1", [_create_op("c2")])
        task = RollbackTask(ledger)

        result = await task.execute(
            {"transaction_id": first.id, "user_id": "admin-1", "force": True}
        )

        assert result.success is True

    @pytest.mark.asyncio
    async def test_partial_rollback(self, ledger):
        """Test a rollback whose reversal fails."""
        tx = ledger.record_transaction("customers", "user-1", [_create_op("c1")])
        task = RollbackTask(ledger)

        result = await task.execute({"transaction_id": tx.id, "user_id": "admin-1"})

        assert result.success is False
        assert result.error == "PARTIAL_ROLLBACK"
        assert len(result.data["errors"]) == 1


class TestInvoiceScheduler:
    """Test InvoiceScheduler."""

    @pytest.fixture
    def scheduler(self):
        """Create a fresh scheduler."""
        return InvoiceScheduler(poll_interval=0.01, retry_delay=timedelta(minutes=5))

    def test_schedule_task(self, scheduler):
        """Test scheduling a task."""
        task = scheduler.schedule(task_type="maintenance", payload={})

        assert task.id in scheduler._tasks
        assert task.name.startswith("maintenance_")
        assert scheduler.list_pending() == [task]

    def test_schedule_rollback_convenience(self, scheduler):
        """Test the rollback convenience method."""
        task = scheduler.schedule_rollback("tx-1", "admin-1")

        assert task.task_type == "rollback"
        assert task.priority == TaskPriority.HIGH
        assert task.payload == {"transaction_id": "tx-1", "user_id": "admin-1", "force": False}
        assert task.name == "rollback_tx-1"

    def test_cancel_task(self, scheduler):
        """Test cancelling a pending task."""
        task = scheduler.schedule(task_type="maintenance", payload={})

        assert scheduler.cancel(task.id) is True
        assert scheduler.get_task(task.id).status == TaskStatus.CANCELLED
        assert scheduler.cancel(task.id) is False
        assert scheduler.cancel("nonexistent") is False

    @pytest.mark.asyncio
    async def test_run_pending_by_priority(self, scheduler):
        """Test due tasks run highest priority first."""
        order = []
        handler = MagicMock(spec=BaseTask)

        async def execute(payload):
            order.append(payload["n"])
            return TaskResult(success=True, message="ok")

        handler.execute = AsyncMock(side_effect=execute)
        scheduler.register_handler("work", handler)
        scheduler.schedule("work", {"n": 1}, priority=TaskPriority.LOW)
        scheduler.schedule("work", {"n": 2}, priority=TaskPriority.CRITICAL)
        scheduler.schedule("work", {"n": 3}, run_at=_now() + timedelta(hours=1))

        executed = await scheduler.run_pending()

        assert order == [2, 1]
        assert len(executed) == 2
        assert all(t.status == TaskStatus.COMPLETED for t in executed)
        assert len(scheduler.list_pending()) == 1

    @pytest.mark.asyncio
    async def test_missing_handler(self, scheduler):
        """Test tasks without a handler fail."""
        task = scheduler.schedule("unknown", {})

        await scheduler.run_pending()

        assert task.status == TaskStatus.FAILED
        assert task.result.error == "NO_HANDLER"

    @pytest.mark.asyncio
    async def test_failed_task_is_retried(self, scheduler):
        """Test a failing task is rescheduled until retries run out."""
        scheduler.register_handler("flaky", FlakyTask())
        task = scheduler.schedule("flaky", {})

        await scheduler.run_pending()

        assert task.status == TaskStatus.PENDING
        assert task.retry_count == 1
        assert task.scheduled_at > _now()

        later = _now() + timedelta(hours=1)
        for _ in range(3):
            await scheduler.run_pending(now=later)

        assert task.status == TaskStatus.FAILED
        assert task.retry_count == 3

    @pytest.mark.asyncio
    async def test_handler_exception(self, scheduler):
        """Test a raising handler marks the task failed."""
        handler = MagicMock(spec=BaseTask)
        handler.execute = AsyncMock(side_effect=RuntimeError("kaput"))
        scheduler.register_handler("work", handler)
        task = scheduler.schedule("work", {})

        await scheduler.run_pending()

        assert task.status == TaskStatus.FAILED
        assert task.result.error == "EXCEPTION"
        assert task.result.message == "kaput"

    @pytest.mark.asyncio
    async def test_rollback_not_retried(self, scheduler, ledger):
        """Test an ineligible rollback fails without retry."""
        scheduler.register_handler("rollback", RollbackTask(ledger))
        task = scheduler.schedule_rollback("tx-missing", "admin-1")

        await scheduler.run_pending()

        assert task.status == TaskStatus.FAILED
        assert task.retry_count == 0
        assert task.result.message == "Transaction not found"

    def test_get_stats(self, scheduler):
        """Test getting scheduler statistics."""
        scheduler.schedule("maintenance", {})
        cancelled = scheduler.schedule("maintenance", {})
        scheduler.cancel(cancelled.id)

        stats = scheduler.get_stats()

        assert stats["total_tasks"] == 2
        assert stats["running"] is False
        assert stats["by_status"] == {"pending": 1, "cancelled": 1}
        assert stats["recurring_tasks"] == 0

    @pytest.mark.asyncio
    async def test_start_and_stop(self, scheduler, store):
        """Test the worker runs recurring tasks until stopped."""
        scheduler.register_handler("maintenance", OverdueCheckTask(store))
        scheduler.schedule_recurring("maintenance", {}, timedelta(hours=1), name="overdue")

        await scheduler.start()
        assert scheduler.get_stats()["running"] is True
        await asyncio.sleep(0.1)
        await scheduler.stop()

        assert scheduler.get_stats()["running"] is False
        tasks = [t for t in scheduler._tasks.values() if t.name == "overdue"]
        assert len(tasks) == 1
        assert tasks[0].status == TaskStatus.COMPLETED


class TestSetupInvoiceScheduler:
    """Test the scheduler factory."""

    def test_registers_handlers(self, store, ledger):
        """Test handlers and the recurring overdue check are registered."""
        scheduler = setup_invoice_scheduler(store, ledger)

        stats = scheduler.get_stats()

        assert sorted(stats["registered_handlers"]) == ["maintenance", "rollback"]
        assert stats["recurring_tasks"] == 1
        assert stats["total_tasks"] == 0
