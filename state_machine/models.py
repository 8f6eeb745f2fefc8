"""Core domain models for the invoice lifecycle."""

from collections.abc import Mapping
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field, field_validator


class InvoiceStatus(str, Enum):
    """Possible invoice statuses matching state machine states."""

    DRAFT = "draft"
    SENT = "sent"
    VIEWED = "viewed"
    OVERDUE = "overdue"
    PAID = "paid"
    CANCELLED = "cancelled"


def as_utc(value: Any) -> Any:
    """Normalize a date or datetime to an aware UTC datetime."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return value


class InvoiceSnapshot(BaseModel):
    """Invoice fields the transition rules read."""

    invoice_id: Optional[str] = None
    total_amount: Decimal = Field(default=Decimal("0"), description="Invoice total")
    due_date: Optional[datetime] = None

    @field_validator("due_date", mode="before")
    @classmethod
    def normalize_due_date(cls, v: Any) -> Any:
        """Treat plain dates as midnight UTC and naive datetimes as UTC."""
        if isinstance(v, str):
            v = datetime.fromisoformat(v.replace("Z", "+00:00"))
        return as_utc(v)


# Receives the invoice as given by the caller (snapshot, mapping or object),
# the transition payload and the reference time.
TransitionCheck = Callable[[Any, Mapping[str, Any], datetime], bool]


class InvoiceStateDescriptor(BaseModel):
    """Per-status metadata used to drive the UI."""

    status: InvoiceStatus
    allowed_transitions: frozenset[InvoiceStatus] = frozenset()
    actions: tuple[str, ...] = ()
    is_editable: bool = False
    requires_reminder: bool = False

    class Config:
        frozen = True


class InvoiceTransitionRule(BaseModel):
    """A legal edge in the status graph with its authorization and data requirements."""

    from_status: InvoiceStatus
    to_status: InvoiceStatus
    trigger: str
    allowed_by: frozenset[str]
    requires_data: tuple[str, ...] = ()
    validation: Optional[TransitionCheck] = None

    class Config:
        frozen = True


class TransitionValidation(BaseModel):
    """Outcome of validating a requested transition."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
