"""Scheduler module for background tasks."""

from scheduler.tasks import (
    InvoiceScheduler,
    OverdueCheckTask,
    RollbackTask,
    ScheduledTask,
    TaskPriority,
    TaskResult,
    TaskStatus,
    setup_invoice_scheduler,
)

__all__ = [
    "InvoiceScheduler",
    "OverdueCheckTask",
    "RollbackTask",
    "ScheduledTask",
    "TaskPriority",
    "TaskResult",
    "TaskStatus",
    "setup_invoice_scheduler",
]
