from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from app.core.errors import InvalidTransitionError


@dataclass(frozen=True)
class StateMachine:
    """Allowed edges for one lifecycle field.

    A state with no outgoing edges is terminal. Moving a field to the value it
    already holds is a no-op unless the state lists itself as a target.
    """

    name: str
    transitions: Mapping[str, frozenset[str]]
    initial: str
    terminal: frozenset[str] = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "terminal",
            frozenset(state for state, targets in self.transitions.items() if not targets),
        )

    @property
    def states(self) -> frozenset[str]:
        return frozenset(self.transitions)

    def is_terminal(self, state: str) -> bool:
        return state in self.terminal

    def can_transition(self, current: str, target: str) -> bool:
        return target in self.transitions.get(current, frozenset())

    def assert_transition(self, current: str, target: str) -> None:
        if current == target and target not in self.transitions.get(current, frozenset()):
            return
        if not self.can_transition(current, target):
            raise InvalidTransitionError(
                f"Invalid {self.name} transition {current} -> {target}",
                details={"from": current, "to": target},
            )


LEAD_STATUS = StateMachine(
    name="lead status",
    initial="new",
    transitions={
        "new": frozenset({"contacted", "lost"}),
        "contacted": frozenset({"qualified", "lost"}),
        "qualified": frozenset({"converted", "lost"}),
        "converted": frozenset(),
        "lost": frozenset(),
    },
)

DEAL_STAGE_ORDER = ("prospecting", "qualification", "proposal", "negotiation")
CLOSED_DEAL_STAGES = frozenset({"closed_won", "closed_lost"})

DEAL_STAGE_PROBABILITIES: dict[str, int] = {
    "prospecting": 10,
    "qualification": 25,
    "proposal": 50,
    "negotiation": 75,
    "closed_won": 100,
    "closed_lost": 0,
}


def _forward_only_stages() -> dict[str, frozenset[str]]:
    transitions: dict[str, frozenset[str]] = {}
    for index, stage in enumerate(DEAL_STAGE_ORDER):
        transitions[stage] = frozenset(DEAL_STAGE_ORDER[index + 1 :]) | CLOSED_DEAL_STAGES
    for stage in CLOSED_DEAL_STAGES:
        transitions[stage] = frozenset()
    return transitions


DEAL_STAGE = StateMachine(name="deal stage", initial="prospecting", transitions=_forward_only_stages())

SUBSCRIPTION_STATUS = StateMachine(
    name="subscription",
    initial="trial",
    transitions={
        "trial": frozenset({"active", "cancelled"}),
        "active": frozenset({"active", "cancelled", "suspended"}),
        "suspended": frozenset({"active", "cancelled"}),
        "cancelled": frozenset(),
    },
)

ACTIVITY_STATUS = StateMachine(
    name="activity status",
    initial="pending",
    transitions={
        "pending": frozenset({"completed", "cancelled"}),
        "completed": frozenset(),
        "cancelled": frozenset(),
    },
)


def can_convert_lead(status: str) -> bool:
    return not LEAD_STATUS.is_terminal(status)
