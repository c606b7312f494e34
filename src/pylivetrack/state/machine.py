"""Per-job tracking session state machine."""

from __future__ import annotations

from enum import StrEnum

from pylivetrack.exceptions import InvalidTransitionError


class SessionState(StrEnum):
    NOT_STARTED = "not_started"
    ACTIVE = "active"
    OFF_ROUTE = "off_route"
    REROUTING = "rerouting"
    ARRIVED = "arrived"
    FINISHED = "finished"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.NOT_STARTED: frozenset({SessionState.ACTIVE}),
    SessionState.ACTIVE: frozenset({SessionState.ACTIVE, SessionState.OFF_ROUTE, SessionState.ARRIVED}),
    SessionState.OFF_ROUTE: frozenset(
        {
            SessionState.OFF_ROUTE,
            SessionState.REROUTING,
            SessionState.ACTIVE,
            SessionState.ARRIVED,
        }
    ),
    SessionState.REROUTING: frozenset({SessionState.ACTIVE, SessionState.OFF_ROUTE}),
    SessionState.ARRIVED: frozenset({SessionState.ARRIVED}),
    SessionState.FINISHED: frozenset(),
}

TERMINAL_STATES: frozenset[SessionState] = frozenset({SessionState.ARRIVED, SessionState.FINISHED})


def can_transition(current: SessionState, target: SessionState) -> bool:
    """Whether *current* may move to *target*.  Any live state may finish."""
    if target is SessionState.FINISHED:
        return current is not SessionState.FINISHED
    return target in _TRANSITIONS[current]


def transition(current: SessionState, target: SessionState) -> SessionState:
    """Validate and return *target*.

    Raises
    ------
    InvalidTransitionError
        If the transition is not part of the table.
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(f"Cannot move tracking session from {current.value} to {target.value}")
    return target
