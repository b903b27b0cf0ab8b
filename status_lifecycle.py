"""Status lifecycle and workflow transition validation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Tuple

from entity_errors import IllegalTransitionError, SchemaError
from entity_model import STATUS_ACTIVE, STATUS_ARCHIVED, STATUS_DELETED


Issue = Dict[str, Any]

TERMINAL_STATE = "terminal_state"
BACKWARD_MOVE = "backward_move"
UNKNOWN_STATE = "unknown_state"
NOT_ALLOWED = "not_allowed"


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


@dataclass(frozen=True)
class WorkflowDefinition:
    """A directed transition graph over a fixed, ordered set of states.

    ``states`` order defines what counts as forward. ``escape_states`` are
    reachable exits (cancel, no-show) that count as forward from any
    non-terminal state. ``allow_same_state`` makes a move onto the current
    state legal for non-terminal states, so re-applying a status is a no-op.
    """

    name: str
    states: Tuple[str, ...]
    transitions: Mapping[str, FrozenSet[str]]
    escape_states: FrozenSet[str] = frozenset()
    status_field: str = "status"
    initial_state: str | None = None
    allow_same_state: bool = False
    _order: Mapping[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_order", {state: idx for idx, state in enumerate(self.states)})

    @property
    def terminal_states(self) -> FrozenSet[str]:
        return frozenset(s for s in self.states if not self.transitions.get(s))

    def is_known(self, state: Any) -> bool:
        return isinstance(state, str) and state in self._order

    def is_terminal(self, state: Any) -> bool:
        return self.is_known(state) and not self.transitions.get(state)

    def allowed_next(self, current: Any) -> List[str]:
        if not self.is_known(current):
            return []
        targets = self.transitions.get(current, frozenset())
        return [s for s in self.states if s in targets]

    def can_transition(self, current: Any, next_state: Any) -> bool:
        if not self.is_known(current) or not self.is_known(next_state):
            return False
        if current == next_state and self.allow_same_state and not self.is_terminal(current):
            return True
        return next_state in self.transitions.get(current, frozenset())

    def is_forward_move(self, current: Any, next_state: Any) -> bool:
        if not self.is_known(current) or not self.is_known(next_state):
            return False
        if self.is_terminal(current):
            return False
        if next_state in self.escape_states:
            return True
        return self._order[next_state] > self._order[current]

    def classify(self, current: Any, next_state: Any) -> str | None:
        if not self.is_known(current) or not self.is_known(next_state):
            return UNKNOWN_STATE
        if self.can_transition(current, next_state):
            return None
        if self.is_terminal(current):
            return TERMINAL_STATE
        if not self.is_forward_move(current, next_state):
            return BACKWARD_MOVE
        return NOT_ALLOWED

    def check_transition(self, current: Any, next_state: Any) -> None:
        reason = self.classify(current, next_state)
        if reason is None:
            return
        if reason == UNKNOWN_STATE:
            unknown = current if not self.is_known(current) else next_state
            message = f"Unknown {self.name} state {unknown!r}"
        elif reason == TERMINAL_STATE:
            message = f"{current} is a terminal {self.name} state"
        elif reason == BACKWARD_MOVE:
            message = f"Cannot move {self.name} backward from {current} to {next_state}"
        else:
            message = f"{self.name} cannot go from {current} to {next_state}"
        raise IllegalTransitionError(current, next_state, reason, message)

    def restore(self, current: Any, target: Any) -> str:
        """Move to ``target`` without consulting the transition table."""
        for state in (current, target):
            if not self.is_known(state):
                raise IllegalTransitionError(current, target, UNKNOWN_STATE, f"Unknown {self.name} state {state!r}")
        return target


def _validate_workflow(workflow: dict, errors: List[Issue]) -> None:
    if not isinstance(workflow.get("name"), str) or not workflow.get("name"):
        errors.append(_issue("WORKFLOW_INVALID", "name must be non-empty string", "$.name"))

    states = workflow.get("states")
    if not isinstance(states, list) or not states:
        errors.append(_issue("WORKFLOW_INVALID", "states must be a non-empty list", "$.states"))
        return
    for idx, state in enumerate(states):
        if not isinstance(state, str) or not state:
            errors.append(_issue("WORKFLOW_INVALID", "state must be non-empty string", f"$.states[{idx}]"))
    if len(set(map(str, states))) != len(states):
        errors.append(_issue("WORKFLOW_INVALID", "states must be unique", "$.states"))

    transitions = workflow.get("transitions")
    if not isinstance(transitions, dict):
        errors.append(_issue("WORKFLOW_INVALID", "transitions must be a mapping of state to next states", "$.transitions"))
        return
    for source, targets in transitions.items():
        if source not in states:
            errors.append(_issue("WORKFLOW_UNKNOWN_STATE", f"Unknown source state {source!r}", f"$.transitions.{source}"))
        if not isinstance(targets, list):
            errors.append(_issue("WORKFLOW_INVALID", "targets must be list", f"$.transitions.{source}"))
            continue
        for target in targets:
            if target not in states:
                errors.append(_issue("WORKFLOW_UNKNOWN_STATE", f"Unknown target state {target!r}", f"$.transitions.{source}"))

    for escape in workflow.get("escape_states") or []:
        if escape not in states:
            errors.append(_issue("WORKFLOW_UNKNOWN_STATE", f"Unknown escape state {escape!r}", "$.escape_states"))
    initial = workflow.get("initial_state")
    if initial is not None and initial not in states:
        errors.append(_issue("WORKFLOW_UNKNOWN_STATE", f"Unknown initial state {initial!r}", "$.initial_state"))


def workflow_from_dict(workflow: dict) -> WorkflowDefinition:
    errors: List[Issue] = []
    if not isinstance(workflow, dict):
        errors.append(_issue("WORKFLOW_INVALID", "workflow must be an object", "$"))
    else:
        _validate_workflow(workflow, errors)
    if errors:
        raise SchemaError("WORKFLOW_INVALID", errors[0]["message"], errors[0]["path"], {"errors": errors})
    return WorkflowDefinition(
        name=workflow["name"],
        states=tuple(workflow["states"]),
        transitions={src: frozenset(dst) for src, dst in workflow["transitions"].items()},
        escape_states=frozenset(workflow.get("escape_states") or ()),
        status_field=workflow.get("status_field") or "status",
        initial_state=workflow.get("initial_state"),
        allow_same_state=bool(workflow.get("allow_same_state")),
    )


GENERIC_LIFECYCLE = WorkflowDefinition(
    name="lifecycle",
    states=(STATUS_ACTIVE, STATUS_ARCHIVED, STATUS_DELETED),
    transitions={
        STATUS_ACTIVE: frozenset({STATUS_ARCHIVED, STATUS_DELETED}),
        STATUS_ARCHIVED: frozenset({STATUS_ACTIVE, STATUS_DELETED}),
        STATUS_DELETED: frozenset(),
    },
    status_field="status",
    initial_state=STATUS_ACTIVE,
    allow_same_state=True,
)
