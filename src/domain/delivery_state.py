"""Explicit state machine for a single logical notification send.

The delivery coordinator drives one ``DeliveryStateMachine`` per invocation.
Every transition is validated and recorded so that tests and logs can observe
exactly which path a send took.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

from src.domain.exceptions import InvalidStateTransitionError


class DeliveryState(StrEnum):
    """Lifecycle states of a logical send."""

    REQUESTED = "requested"
    FINGERPRINTED = "fingerprinted"
    SUPPRESSED = "suppressed"
    ACCEPTED = "accepted"
    SENDING = "sending"
    RETRY_SCHEDULED = "retry_scheduled"
    DELIVERED = "delivered"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Final[dict[DeliveryState, frozenset[DeliveryState]]] = {
    DeliveryState.REQUESTED: frozenset({DeliveryState.FINGERPRINTED}),
    DeliveryState.FINGERPRINTED: frozenset(
        {DeliveryState.SUPPRESSED, DeliveryState.ACCEPTED}
    ),
    DeliveryState.ACCEPTED: frozenset({DeliveryState.SENDING, DeliveryState.FAILED}),
    DeliveryState.SENDING: frozenset(
        {
            DeliveryState.DELIVERED,
            DeliveryState.RETRY_SCHEDULED,
            DeliveryState.FAILED,
        }
    ),
    DeliveryState.RETRY_SCHEDULED: frozenset(
        {DeliveryState.SENDING, DeliveryState.FAILED}
    ),
    DeliveryState.SUPPRESSED: frozenset(),
    DeliveryState.DELIVERED: frozenset(),
    DeliveryState.FAILED: frozenset(),
}

TERMINAL_STATES: Final[frozenset[DeliveryState]] = frozenset(
    {DeliveryState.SUPPRESSED, DeliveryState.DELIVERED, DeliveryState.FAILED}
)


class DeliveryStateMachine:
    """Tracks the current state and transition history of one send."""

    def __init__(self) -> None:
        self._state = DeliveryState.REQUESTED
        self._history: list[DeliveryState] = [DeliveryState.REQUESTED]

    @property
    def state(self) -> DeliveryState:
        return self._state

    @property
    def history(self) -> tuple[DeliveryState, ...]:
        return tuple(self._history)

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def can_transition(self, target: DeliveryState) -> bool:
        return target in ALLOWED_TRANSITIONS[self._state]

    def transition(self, target: DeliveryState) -> DeliveryState:
        """Move to ``target`` or raise ``InvalidStateTransitionError``."""
        if not self.can_transition(target):
            raise InvalidStateTransitionError(self._state.value, target.value)
        self._state = target
        self._history.append(target)
        return target


__all__ = [
    "ALLOWED_TRANSITIONS",
    "DeliveryState",
    "DeliveryStateMachine",
    "TERMINAL_STATES",
]
