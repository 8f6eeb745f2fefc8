"""Invoice lifecycle tables, transition checks, and the stateful invoice machine."""

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError
from transitions import Machine, MachineError

from state_machine.models import (
    as_utc,
    InvoiceSnapshot,
    InvoiceStateDescriptor,
    InvoiceStatus,
    InvoiceTransitionRule,
    TransitionValidation,
)

logger = logging.getLogger(__name__)

StatusLike = Union[InvoiceStatus, str]

SYSTEM_ROLE = "system"
STAFF_ROLES = frozenset({"admin", "manager", "developer", "internal"})
PAYMENT_FIELDS = ("paid_date", "payment_amount", "payment_method")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _label(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _coerce_status(value: Any) -> Optional[InvoiceStatus]:
    try:
        return InvoiceStatus(value)
    except ValueError:
        return None


# ============================================================================
# Transition checks
# ============================================================================


def _read_snapshot(invoice: Any) -> Optional[InvoiceSnapshot]:
    """Coerce caller invoice data; None when it cannot be read."""
    if isinstance(invoice, InvoiceSnapshot):
        return invoice
    if invoice is None:
        return InvoiceSnapshot()
    try:
        if isinstance(invoice, Mapping):
            return InvoiceSnapshot.model_validate(dict(invoice))
        return InvoiceSnapshot.model_validate(invoice, from_attributes=True)
    except ValidationError as e:
        logger.debug(f"Unreadable invoice data: {e.error_count()} errors")
        return None


def _has_recipient_and_sent_date(invoice: Any, data: Mapping[str, Any], now: datetime) -> bool:
    return bool(data.get("recipient_email")) and bool(data.get("sent_date"))


def _has_viewed_date(invoice: Any, data: Mapping[str, Any], now: datetime) -> bool:
    return bool(data.get("viewed_date"))


def _is_past_due(invoice: Any, data: Mapping[str, Any], now: datetime) -> bool:
    snapshot = _read_snapshot(invoice)
    if snapshot is None or snapshot.due_date is None:
        return False
    return now > snapshot.due_date


def _payment_covers_total(invoice: Any, data: Mapping[str, Any], now: datetime) -> bool:
    amount = data.get("payment_amount")
    if not data.get("paid_date") or not amount:
        return False
    snapshot = _read_snapshot(invoice)
    if snapshot is None:
        return False
    try:
        paid = Decimal(str(amount))
        if paid.is_nan():
            return False
        return paid >= snapshot.total_amount
    except InvalidOperation:
        return False


# ============================================================================
# Static tables
# ============================================================================


INVOICE_STATES: dict[InvoiceStatus, InvoiceStateDescriptor] = {
    InvoiceStatus.DRAFT: InvoiceStateDescriptor(
        status=InvoiceStatus.DRAFT,
        allowed_transitions=frozenset({InvoiceStatus.SENT, InvoiceStatus.CANCELLED}),
        actions=("edit", "send", "delete"),
        is_editable=True,
        requires_reminder=False,
    ),
    InvoiceStatus.SENT: InvoiceStateDescriptor(
        status=InvoiceStatus.SENT,
        allowed_transitions=frozenset(
            {
                InvoiceStatus.VIEWED,
                InvoiceStatus.OVERDUE,
                InvoiceStatus.PAID,
                InvoiceStatus.CANCELLED,
            }
        ),
        actions=("view", "resend", "markPaid", "cancel"),
        is_editable=False,
        requires_reminder=True,
    ),
    InvoiceStatus.VIEWED: InvoiceStateDescriptor(
        status=InvoiceStatus.VIEWED,
        allowed_transitions=frozenset(
            {InvoiceStatus.OVERDUE, InvoiceStatus.PAID, InvoiceStatus.CANCELLED}
        ),
        actions=("view", "remind", "markPaid", "cancel"),
        is_editable=False,
        requires_reminder=True,
    ),
    InvoiceStatus.OVERDUE: InvoiceStateDescriptor(
        status=InvoiceStatus.OVERDUE,
        allowed_transitions=frozenset({InvoiceStatus.PAID, InvoiceStatus.CANCELLED}),
        actions=("view", "remind", "markPaid", "cancel"),
        is_editable=False,
        requires_reminder=True,
    ),
    InvoiceStatus.PAID: InvoiceStateDescriptor(
        status=InvoiceStatus.PAID,
        allowed_transitions=frozenset({InvoiceStatus.CANCELLED}),
        actions=("view", "refund"),
        is_editable=False,
        requires_reminder=False,
    ),
    InvoiceStatus.CANCELLED: InvoiceStateDescriptor(
        status=InvoiceStatus.CANCELLED,
        allowed_transitions=frozenset(),
        actions=("view",),
        is_editable=False,
        requires_reminder=False,
    ),
}


# Cancellation edges are listed in INVOICE_STATES but have no rule, so
# can_transition() rejects them for every role.
INVOICE_TRANSITIONS: tuple[InvoiceTransitionRule, ...] = (
    InvoiceTransitionRule(
        from_status=InvoiceStatus.DRAFT,
        to_status=InvoiceStatus.SENT,
        trigger="send",
        allowed_by=STAFF_ROLES,
        requires_data=("sent_date", "recipient_email"),
        validation=_has_recipient_and_sent_date,
    ),
    InvoiceTransitionRule(
        from_status=InvoiceStatus.SENT,
        to_status=InvoiceStatus.VIEWED,
        trigger="mark_viewed",
        allowed_by=frozenset({SYSTEM_ROLE}),
        requires_data=("viewed_date",),
        validation=_has_viewed_date,
    ),
    InvoiceTransitionRule(
        from_status=InvoiceStatus.SENT,
        to_status=InvoiceStatus.OVERDUE,
        trigger="mark_overdue",
        allowed_by=frozenset({SYSTEM_ROLE}),
        requires_data=("overdue_date",),
        validation=_is_past_due,
    ),
    InvoiceTransitionRule(
        from_status=InvoiceStatus.VIEWED,
        to_status=InvoiceStatus.OVERDUE,
        trigger="mark_overdue",
        allowed_by=frozenset({SYSTEM_ROLE}),
        requires_data=("overdue_date",),
        validation=_is_past_due,
    ),
    InvoiceTransitionRule(
        from_status=InvoiceStatus.SENT,
        to_status=InvoiceStatus.PAID,
        trigger="mark_paid",
        allowed_by=STAFF_ROLES,
        requires_data=PAYMENT_FIELDS,
        validation=_payment_covers_total,
    ),
    InvoiceTransitionRule(
        from_status=InvoiceStatus.VIEWED,
        to_status=InvoiceStatus.PAID,
        trigger="mark_paid",
        allowed_by=STAFF_ROLES,
        requires_data=PAYMENT_FIELDS,
        validation=_payment_covers_total,
    ),
    InvoiceTransitionRule(
        from_status=InvoiceStatus.OVERDUE,
        to_status=InvoiceStatus.PAID,
        trigger="mark_paid",
        allowed_by=STAFF_ROLES,
        requires_data=PAYMENT_FIELDS,
        validation=_payment_covers_total,
    ),
)

_RULES_BY_EDGE: dict[tuple[InvoiceStatus, InvoiceStatus], InvoiceTransitionRule] = {
    (rule.from_status, rule.to_status): rule for rule in INVOICE_TRANSITIONS
}


def check_tables(
    states: Mapping[InvoiceStatus, InvoiceStateDescriptor] = INVOICE_STATES,
    rules: tuple[InvoiceTransitionRule, ...] = INVOICE_TRANSITIONS,
) -> None:
    """Raise RuntimeError if a rule edge is missing from its source descriptor."""
    for rule in rules:
        descriptor = states.get(rule.from_status)
        if descriptor is None or rule.to_status not in descriptor.allowed_transitions:
            raise RuntimeError(
                f"Transition rule {rule.from_status.value} -> {rule.to_status.value} "
                "is not declared in the state table"
            )


check_tables()


# ============================================================================
# Stateless lifecycle queries
# ============================================================================


class InvoiceLifecycle:
    """
    Pure lookups over the invoice status tables.

    Nothing here holds state, so every method is safe to call from any
    thread. Unknown statuses fall back to empty/False answers instead of
    raising.
    """

    @staticmethod
    def get_rule(from_status: StatusLike, to_status: StatusLike) -> Optional[InvoiceTransitionRule]:
        """Return the rule for an edge, or None if the edge has no rule."""
        source = _coerce_status(from_status)
        dest = _coerce_status(to_status)
        if source is None or dest is None:
            return None
        return _RULES_BY_EDGE.get((source, dest))

    @classmethod
    def can_transition(cls, from_status: StatusLike, to_status: StatusLike, actor_role: str) -> bool:
        """Check whether a role may move an invoice along an edge."""
        rule = cls.get_rule(from_status, to_status)
        if rule is None:
            return False
        return actor_role in rule.allowed_by or SYSTEM_ROLE in rule.allowed_by

    @staticmethod
    def get_descriptor(status: StatusLike) -> Optional[InvoiceStateDescriptor]:
        """Return the descriptor for a status, or None if unknown."""
        coerced = _coerce_status(status)
        if coerced is None:
            return None
        return INVOICE_STATES.get(coerced)

    @classmethod
    def get_valid_transitions(cls, status: StatusLike) -> frozenset[InvoiceStatus]:
        descriptor = cls.get_descriptor(status)
        return descriptor.allowed_transitions if descriptor else frozenset()

    @classmethod
    def get_available_actions(cls, status: StatusLike) -> tuple[str, ...]:
        descriptor = cls.get_descriptor(status)
        return descriptor.actions if descriptor else ()

    @classmethod
    def is_editable(cls, status: StatusLike) -> bool:
        descriptor = cls.get_descriptor(status)
        return descriptor.is_editable if descriptor else False

    @classmethod
    def requires_reminder(cls, status: StatusLike) -> bool:
        descriptor = cls.get_descriptor(status)
        return descriptor.requires_reminder if descriptor else False

    @classmethod
    def validate_transition(
        cls,
        from_status: StatusLike,
        to_status: StatusLike,
        invoice: Any,
        payload: Optional[Mapping[str, Any]],
        actor_role: str,
        now: Optional[datetime] = None,
    ) -> TransitionValidation:
        """
        Validate a requested transition.

        Runs the authorization, required-field and business checks and
        collects every failure instead of stopping at the first one. When
        the edge has no rule only the authorization failure is reported.

        Args:
            from_status: Current status.
            to_status: Requested status.
            invoice: Invoice being transitioned (snapshot, mapping or object).
                Data that cannot be read fails the business check.
            payload: Data supplied with the transition.
            actor_role: Role of the user or process asking.
            now: Reference time for date checks. Defaults to the current UTC time.

        Returns:
            TransitionValidation with all collected errors.
        """
        errors: list[str] = []
        data: Mapping[str, Any] = payload or {}
        reference_time = as_utc(now) if now is not None else _utcnow()

        if not cls.can_transition(from_status, to_status, actor_role):
            errors.append(
                f"Transition from {_label(from_status)} to {_label(to_status)} "
                f"not allowed for role {actor_role}"
            )

        rule = cls.get_rule(from_status, to_status)
        if rule is not None:
            for field_name in rule.requires_data:
                if not data.get(field_name):
                    errors.append(f"Required field missing: {field_name}")

            if rule.validation is not None and not rule.validation(invoice, data, reference_time):
                errors.append(
                    f"Transition validation failed for "
                    f"{_label(from_status)} -> {_label(to_status)}"
                )

        if errors:
            logger.debug(
                f"Rejected transition {_label(from_status)} -> {_label(to_status)} "
                f"for role {actor_role}: {errors}"
            )

        return TransitionValidation(valid=not errors, errors=errors)


# ============================================================================
# Stateful invoice machine
# ============================================================================


class TransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(
        self,
        message: str,
        current_state: str,
        attempted_trigger: str,
        invoice_id: Optional[str] = None,
        errors: Optional[list[str]] = None,
    ):
        self.current_state = current_state
        self.attempted_trigger = attempted_trigger
        self.invoice_id = invoice_id
        self.errors = errors or []
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "error": "TransitionError",
            "message": str(self),
            "current_state": self.current_state,
            "attempted_trigger": self.attempted_trigger,
            "invoice_id": self.invoice_id,
            "errors": list(self.errors),
        }


class InvoiceFSM:
    """
    Finite State Machine for a single invoice.

    States are the InvoiceStatus values. Transitions are generated from
    INVOICE_TRANSITIONS, one trigger per rule:

        - send: draft -> sent
        - mark_viewed: sent -> viewed
        - mark_overdue: sent/viewed -> overdue
        - mark_paid: sent/viewed/overdue -> paid

    Every trigger is checked with InvoiceLifecycle.validate_transition
    before the machine moves.
    """

    TRANSITIONS = [
        {
            "trigger": rule.trigger,
            "source": rule.from_status.value,
            "dest": rule.to_status.value,
        }
        for rule in INVOICE_TRANSITIONS
    ]

    def __init__(
        self,
        invoice_id: str,
        invoice: Optional[InvoiceSnapshot] = None,
        initial_state: StatusLike = InvoiceStatus.DRAFT,
        on_transition: Optional[Callable[[str, str, str], None]] = None,
    ):
        """
        Initialize the invoice state machine.

        Args:
            invoice_id: Unique identifier for the invoice
            invoice: Amount and due date read by the transition checks
            initial_state: Starting state (default: draft)
            on_transition: Optional callback called on each transition
                          with (invoice_id, source_state, dest_state)
        """
        status = _coerce_status(initial_state)
        if status is None:
            raise ValueError(f"Invalid initial state: {initial_state}")

        self.invoice_id = invoice_id
        self.invoice = invoice or InvoiceSnapshot(invoice_id=invoice_id)
        self._on_transition = on_transition
        self._history: list[dict[str, Any]] = []

        self.machine = Machine(
            model=self,
            states=[s.value for s in InvoiceStatus],
            transitions=self.TRANSITIONS,
            initial=status.value,
            auto_transitions=False,
            send_event=True,
            before_state_change=self._before_transition,
            after_state_change=self._after_transition,
        )

        self._record_history(None, status.value, "initialized", None)

    @property
    def current_state(self) -> InvoiceStatus:
        """Get the current state."""
        return InvoiceStatus(self.state)  # type: ignore[attr-defined]

    @property
    def is_terminal(self) -> bool:
        """Check if current state has no outgoing transitions."""
        return not InvoiceLifecycle.get_valid_transitions(self.current_state)

    @property
    def is_editable(self) -> bool:
        return InvoiceLifecycle.is_editable(self.current_state)

    @property
    def available_actions(self) -> tuple[str, ...]:
        return InvoiceLifecycle.get_available_actions(self.current_state)

    @property
    def history(self) -> list[dict[str, Any]]:
        """Get transition history."""
        return self._history.copy()

    def _before_transition(self, event: Any) -> None:
        logger.debug(
            f"Invoice {self.invoice_id}: Attempting transition "
            f"'{event.event.name}' from '{self.state}'"  # type: ignore[attr-defined]
        )

    def _after_transition(self, event: Any) -> None:
        source = event.transition.source
        dest = event.transition.dest
        trigger = event.event.name

        self._record_history(source, dest, trigger, event.kwargs.get("actor_role"))

        logger.info(
            f"Invoice {self.invoice_id}: Transition '{trigger}' "
            f"completed: {source} -> {dest}"
        )

        if self._on_transition:
            self._on_transition(self.invoice_id, source, dest)

    def _record_history(
        self, source: Optional[str], dest: str, trigger: str, actor_role: Optional[str]
    ) -> None:
        self._history.append(
            {
                "timestamp": _utcnow().isoformat(),
                "source": source,
                "dest": dest,
                "trigger": trigger,
                "actor_role": actor_role,
            }
        )

    def can_trigger(self, trigger: str) -> bool:
        """Check if a trigger can be executed from current state."""
        may_method = getattr(self, f"may_{trigger}", None)
        if may_method:
            return may_method()
        return False

    def get_available_triggers(self) -> list[str]:
        """Get list of triggers available from current state."""
        available = []
        for rule in INVOICE_TRANSITIONS:
            if rule.from_status == self.current_state and rule.trigger not in available:
                available.append(rule.trigger)
        return available

    def _destination(self, trigger_name: str) -> Optional[InvoiceStatus]:
        for rule in INVOICE_TRANSITIONS:
            if rule.from_status == self.current_state and rule.trigger == trigger_name:
                return rule.to_status
        return None

    def trigger(
        self,
        trigger_name: str,
        payload: Optional[Mapping[str, Any]] = None,
        actor_role: str = SYSTEM_ROLE,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """
        Execute a state transition.

        Args:
            trigger_name: Name of the trigger to execute
            payload: Data required by the transition rule
            actor_role: Role of whoever requests the transition
            now: Reference time for date checks (default: current UTC time)

        Returns:
            Dictionary with transition result

        Raises:
            TransitionError: If the transition is not valid from current state
                or the transition checks fail
        """
        if self.is_terminal:
            raise TransitionError(
                f"Cannot transition from terminal state '{self.current_state.value}'",
                current_state=self.current_state.value,
                attempted_trigger=trigger_name,
                invoice_id=self.invoice_id,
            )

        dest = self._destination(trigger_name)
        if dest is None or not self.can_trigger(trigger_name):
            available = self.get_available_triggers()
            raise TransitionError(
                f"Cannot execute '{trigger_name}' from state '{self.current_state.value}'. "
                f"Available triggers: {available}",
                current_state=self.current_state.value,
                attempted_trigger=trigger_name,
                invoice_id=self.invoice_id,
            )

        validation = InvoiceLifecycle.validate_transition(
            self.current_state, dest, self.invoice, payload, actor_role, now=now
        )
        if not validation.valid:
            logger.warning(
                f"Invoice {self.invoice_id}: Transition '{trigger_name}' rejected: "
                f"{validation.errors}"
            )
            raise TransitionError(
                "; ".join(validation.errors),
                current_state=self.current_state.value,
                attempted_trigger=trigger_name,
                invoice_id=self.invoice_id,
                errors=validation.errors,
            )

        previous_state = self.current_state

        try:
            trigger_method = getattr(self, trigger_name)
            trigger_method(actor_role=actor_role)
        except MachineError as e:
            raise TransitionError(
                str(e),
                current_state=previous_state.value,
                attempted_trigger=trigger_name,
                invoice_id=self.invoice_id,
            ) from e

        return {
            "success": True,
            "invoice_id": self.invoice_id,
            "previous_state": previous_state.value,
            "current_state": self.current_state.value,
            "trigger": trigger_name,
        }

    def transition_to(
        self,
        status: StatusLike,
        payload: Optional[Mapping[str, Any]] = None,
        actor_role: str = SYSTEM_ROLE,
        now: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """Execute the transition whose destination is the given status."""
        rule = InvoiceLifecycle.get_rule(self.current_state, status)
        if rule is None:
            raise TransitionError(
                f"Transition from {self.current_state.value} to {_label(status)} "
                f"not allowed for role {actor_role}",
                current_state=self.current_state.value,
                attempted_trigger=f"to_{_label(status)}",
                invoice_id=self.invoice_id,
            )
        return self.trigger(rule.trigger, payload=payload, actor_role=actor_role, now=now)

    def to_dict(self) -> dict[str, Any]:
        """Serialize state machine to dictionary."""
        return {
            "invoice_id": self.invoice_id,
            "invoice": self.invoice.model_dump(mode="json"),
            "current_state": self.current_state.value,
            "is_terminal": self.is_terminal,
            "is_editable": self.is_editable,
            "available_triggers": self.get_available_triggers(),
            "available_actions": list(self.available_actions),
            "history": self.history,
        }

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any],
        on_transition: Optional[Callable[[str, str, str], None]] = None,
    ) -> "InvoiceFSM":
        """
        Restore state machine from dictionary.

        Args:
            data: Dictionary containing invoice_id, current_state and
                  optionally the invoice snapshot
            on_transition: Optional transition callback

        Returns:
            Restored InvoiceFSM instance
        """
        invoice = data.get("invoice")
        return cls(
            invoice_id=data["invoice_id"],
            invoice=InvoiceSnapshot.model_validate(invoice) if invoice else None,
            initial_state=data["current_state"],
            on_transition=on_transition,
        )

    def __repr__(self) -> str:
        return f"InvoiceFSM(invoice_id={self.invoice_id!r}, state={self.current_state.value!r})"
