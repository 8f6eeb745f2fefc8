"""In-memory invoice store."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional, Protocol, Union

from state_machine.invoice_state import InvoiceFSM, StatusLike
from state_machine.models import InvoiceSnapshot, InvoiceStatus

logger = logging.getLogger(__name__)


class InvoiceStore(Protocol):
    """Protocol for invoice storage."""

    def get_fsm(self, invoice_id: str) -> Optional[InvoiceFSM]:
        """Get state machine for invoice."""
        ...

    def save_fsm(self, fsm: InvoiceFSM) -> None:
        """Save state machine."""
        ...

    def list_invoices(self, status: Optional[StatusLike] = None) -> list[InvoiceFSM]:
        """List invoices, optionally filtered by status."""
        ...


class InMemoryInvoiceStore:
    """Simple in-memory invoice store for development/testing."""

    def __init__(self) -> None:
        self._invoices: dict[str, InvoiceFSM] = {}

    def get_fsm(self, invoice_id: str) -> Optional[InvoiceFSM]:
        """Get state machine for invoice."""
        return self._invoices.get(invoice_id)

    def save_fsm(self, fsm: InvoiceFSM) -> None:
        """Save state machine."""
        self._invoices[fsm.invoice_id] = fsm

    def create_invoice(
        self,
        invoice_id: str,
        total_amount: Union[Decimal, int, str] = Decimal("0"),
        due_date: Optional[datetime] = None,
        initial_state: StatusLike = InvoiceStatus.DRAFT,
        on_transition: Optional[Callable[[str, str, str], None]] = None,
    ) -> InvoiceFSM:
        """Create and store a new invoice FSM."""
        if invoice_id in self._invoices:
            raise ValueError(f"Invoice {invoice_id} already exists")

        fsm = InvoiceFSM(
            invoice_id=invoice_id,
            invoice=InvoiceSnapshot(
                invoice_id=invoice_id,
                total_amount=total_amount,
                due_date=due_date,
            ),
            initial_state=initial_state,
            on_transition=on_transition,
        )
        self.save_fsm(fsm)
        logger.debug(f"Created invoice {invoice_id} in state {fsm.current_state.value}")
        return fsm

    def list_invoices(self, status: Optional[StatusLike] = None) -> list[InvoiceFSM]:
        """List invoices, optionally filtered by status."""
        if status is None:
            return list(self._invoices.values())
        wanted = InvoiceStatus(status)
        return [fsm for fsm in self._invoices.values() if fsm.current_state == wanted]
