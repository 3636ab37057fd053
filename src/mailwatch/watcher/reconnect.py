"""Reconnection state machine for a single mailbox watcher.

The controller performs no I/O. The watcher asks it whether a reconnect may
begin, how long to wait before the next attempt, and reports the outcome of
each attempt back to it.
"""

from __future__ import annotations

import logging
from typing import Dict, FrozenSet, Optional

from .errors import StateTransitionError
from .models import ConnectionState, RetryBudget


logger = logging.getLogger(__name__)


_ALLOWED_TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.RECONNECTING}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.RECONNECTING}),
    ConnectionState.RECONNECTING: frozenset({ConnectionState.CONNECTING}),
}


class ReconnectionController:
    """Track connection state, the reconnect guard and the retry budget."""

    def __init__(self, budget: Optional[RetryBudget] = None, *, label: str = "") -> None:
        self.budget = budget or RetryBudget()
        self.label = label
        self._state = ConnectionState.DISCONNECTED
        self._reconnecting = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def reconnecting(self) -> bool:
        """True while a reconnect sequence owns the watcher."""
        return self._reconnecting

    def _transition(self, target: ConnectionState) -> None:
        if target not in _ALLOWED_TRANSITIONS[self._state]:
            raise StateTransitionError(
                f"Cannot move from {self._state.value} to {target.value}"
            )
        logger.debug(f"{self.label}: {self._state.value} -> {target.value}")
        self._state = target

    def begin_connect(self) -> None:
        """Enter ``connecting`` for an initial start or a reconnect attempt."""
        self._transition(ConnectionState.CONNECTING)

    def connect_succeeded(self) -> None:
        """Record a fully opened session; forgives all previous backoff."""
        self._transition(ConnectionState.CONNECTED)
        self._reconnecting = False
        self.budget.reset()

    def connect_failed(self) -> None:
        self._transition(ConnectionState.RECONNECTING)

    def begin_reconnect(self) -> bool:
        """Claim the reconnect guard.

        Returns False when a reconnect sequence is already running, a connect
        attempt is in flight or the watcher was never started, in which case
        the caller must do nothing.
        """
        if self._reconnecting or self._state in {
            ConnectionState.CONNECTING,
            ConnectionState.DISCONNECTED,
        }:
            return False
        self._reconnecting = True
        if self._state != ConnectionState.RECONNECTING:
            self._transition(ConnectionState.RECONNECTING)
        return True

    def next_delay(self) -> float:
        """Delay to wait before the coming attempt; escalates the budget."""
        return self.budget.escalate()

    def release(self) -> None:
        """Drop the guard without resetting the budget (cancelled sequence)."""
        self._reconnecting = False


__all__ = ["ReconnectionController"]
