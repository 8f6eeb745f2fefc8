"""State machine module for invoice lifecycle management."""

from state_machine.invoice_state import (
    INVOICE_STATES,
    INVOICE_TRANSITIONS,
    InvoiceFSM,
    InvoiceLifecycle,
    TransitionError,
)
from state_machine.models import (
    InvoiceSnapshot,
    InvoiceStateDescriptor,
    InvoiceStatus,
    InvoiceTransitionRule,
    TransitionValidation,
)
from state_machine.store import InMemoryInvoiceStore, InvoiceStore

__all__ = [
    "INVOICE_STATES",
    "INVOICE_TRANSITIONS",
    "InvoiceFSM",
    "InvoiceLifecycle",
    "TransitionError",
    "InvoiceSnapshot",
    "InvoiceStateDescriptor",
    "InvoiceStatus",
    "InvoiceTransitionRule",
    "TransitionValidation",
    "InMemoryInvoiceStore",
    "InvoiceStore",
]
