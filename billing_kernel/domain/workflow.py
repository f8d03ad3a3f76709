"""
State machine tables for subscriptions and invoices.

A ``Workflow`` is data: the states, the allowed ``(from, action) -> to``
edges and descriptive guards.  Services look an action up with
``find_transition`` and apply the target state themselves; an edge that is
not in the table raises ``InvalidStateError`` naming the states the action
is allowed from.
"""

from __future__ import annotations

from dataclasses import dataclass

from billing_kernel.exceptions import InvalidStateError


@dataclass(frozen=True)
class Guard:
    """Named precondition.  The owning service checks it; the table only documents it."""
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """One edge.  ``writes_history`` edges append a subscription history row."""
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    writes_history: bool = False


@dataclass(frozen=True)
class Workflow:
    """Validated at construction: every referenced state must be declared."""
    name: str
    description: str
    initial_states: tuple[str, ...]
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for state in self.initial_states:
            if state not in self.states:
                raise ValueError(f"Initial state {state} not in {self.name} states")
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"Transition {t.action} {t.from_state}->{t.to_state} "
                    f"references unknown state in {self.name}"
                )

    def sources_for(self, action: str) -> tuple[str, ...]:
        """States from which ``action`` is permitted."""
        return tuple(dict.fromkeys(t.from_state for t in self.transitions if t.action == action))

    def find_transition(
        self,
        current_state: str,
        action: str,
        entity_id: str = "",
    ) -> Transition:
        """Resolve ``action`` from ``current_state`` or raise InvalidStateError."""
        for t in self.transitions:
            if t.from_state == current_state and t.action == action:
                return t
        raise InvalidStateError(
            entity_type=self.name,
            entity_id=entity_id,
            current_status=current_state,
            action=action,
            allowed=self.sources_for(action),
        )
