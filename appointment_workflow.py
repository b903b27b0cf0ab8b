"""Appointment booking workflow."""

from __future__ import annotations

from typing import List

from status_lifecycle import WorkflowDefinition


DRAFT = "draft"
BOOKED = "booked"
CHECKED_IN = "checked_in"
IN_PROGRESS = "in_progress"
PAYMENT_PENDING = "payment_pending"
COMPLETED = "completed"
CANCELLED = "cancelled"
NO_SHOW = "no_show"

APPOINTMENT_STATES = (DRAFT, BOOKED, CHECKED_IN, IN_PROGRESS, PAYMENT_PENDING, COMPLETED, CANCELLED, NO_SHOW)

# Forward-only; any state may skip ahead.
APPOINTMENT_TRANSITIONS = {
    DRAFT: frozenset({BOOKED, CHECKED_IN, IN_PROGRESS, PAYMENT_PENDING, COMPLETED, CANCELLED}),
    BOOKED: frozenset({CHECKED_IN, IN_PROGRESS, PAYMENT_PENDING, COMPLETED, CANCELLED, NO_SHOW}),
    CHECKED_IN: frozenset({IN_PROGRESS, PAYMENT_PENDING, COMPLETED, CANCELLED, NO_SHOW}),
    IN_PROGRESS: frozenset({PAYMENT_PENDING, COMPLETED, CANCELLED}),
    PAYMENT_PENDING: frozenset({COMPLETED, CANCELLED}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
    NO_SHOW: frozenset(),
}

APPOINTMENT_WORKFLOW = WorkflowDefinition(
    name="appointment",
    states=APPOINTMENT_STATES,
    transitions=APPOINTMENT_TRANSITIONS,
    escape_states=frozenset({CANCELLED, NO_SHOW}),
    status_field="appointment_status",
    initial_state=DRAFT,
)


def can_transition_to(current: str, next_state: str) -> bool:
    return APPOINTMENT_WORKFLOW.can_transition(current, next_state)


def is_forward_move(current: str, next_state: str) -> bool:
    return APPOINTMENT_WORKFLOW.is_forward_move(current, next_state)


def check_transition(current: str, next_state: str) -> None:
    APPOINTMENT_WORKFLOW.check_transition(current, next_state)


def allowed_next_states(current: str) -> List[str]:
    return APPOINTMENT_WORKFLOW.allowed_next(current)


def is_terminal(status: str) -> bool:
    return APPOINTMENT_WORKFLOW.is_terminal(status)
