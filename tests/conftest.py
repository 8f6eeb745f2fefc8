"""
Pytest configuration and fixtures.

Environment variables are loaded before collection so Settings picks up a
local .env the same way the application does.
"""

from datetime import datetime, timedelta, timezone

import pytest
from dotenv import load_dotenv

from audit.audit_logger import AuditLogger
from ledger.executor import InMemoryMutationExecutor
from ledger.rollback_manager import TransactionLedger
from state_machine.store import InMemoryInvoiceStore

load_dotenv()


class FakeClock:
    """Controllable replacement for datetime.now(timezone.utc)."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """A clock that only moves when told to."""
    return FakeClock()


@pytest.fixture
def executor() -> InMemoryMutationExecutor:
    """Create a fresh in-memory executor for each test."""
    return InMemoryMutationExecutor()


@pytest.fixture
def ledger(executor: InMemoryMutationExecutor, clock: FakeClock) -> TransactionLedger:
    """Create a ledger over the in-memory executor."""
    return TransactionLedger(executor, clock=clock)


@pytest.fixture
def audit_logger() -> AuditLogger:
    """Create a fresh audit logger."""
    return AuditLogger(max_entries=100)


@pytest.fixture
def store() -> InMemoryInvoiceStore:
    """Create a fresh invoice store."""
    return InMemoryInvoiceStore()
