"""Value types shared by sessions, watchers and consumers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from mailwatch.parsing.email_parser import ParsedMail


DEFAULT_RECONNECT_INCREMENT = 10.0
DEFAULT_RECONNECT_CEILING = 60.0 * 5


class MailboxRole(str, Enum):
    """Logical mailbox a watcher serves."""

    INBOX = "inbox"
    SENT = "sent"


class ConnectionState(str, Enum):
    """Lifecycle states for a watched mailbox connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class CountSnapshot:
    """Message count reported by the server before and after a change."""

    previous_count: int
    current_count: int

    def __post_init__(self) -> None:
        if self.previous_count < 0 or self.current_count < 0:
            raise ValueError(
                f"Message counts must be non-negative, got "
                f"{self.previous_count} -> {self.current_count}"
            )


@dataclass
class RetryBudget:
    """Linear reconnect backoff owned by a single reconnection controller.

    ``delay`` is the wait before the next attempt. It grows by ``increment``
    after every attempt, never past ``ceiling``, and drops back to zero once a
    connection has been fully re-established.
    """

    delay: float = 0.0
    ceiling: float = DEFAULT_RECONNECT_CEILING
    increment: float = DEFAULT_RECONNECT_INCREMENT

    def __post_init__(self) -> None:
        if self.increment < 0 or self.ceiling < 0 or self.delay < 0:
            raise ValueError("Retry budget values must be non-negative")
        self.delay = min(self.delay, self.ceiling)

    def escalate(self) -> float:
        """Return the current delay and raise it for the following attempt."""
        current = self.delay
        self.delay = min(self.delay + self.increment, self.ceiling)
        return current

    def reset(self) -> None:
        self.delay = 0.0


@dataclass(frozen=True)
class NewMessageEvent:
    """A freshly fetched message, emitted once per new identifier."""

    role: MailboxRole
    identifier: int
    message: "ParsedMail"
    account: str = ""
    folder: str = ""


@dataclass
class WatcherMetrics:
    """Aggregated per-watcher counters for health reporting."""

    total_connections: int = 0
    successful_connections: int = 0
    failed_connections: int = 0
    consecutive_failures: int = 0
    total_retries: int = 0
    messages_emitted: int = 0
    messages_skipped: int = 0
    average_connection_time: float = 0.0

    def record_attempt(self, success: bool, elapsed: float) -> None:
        self.total_connections += 1
        if success:
            self.successful_connections += 1
            self.consecutive_failures = 0
            # incremental average to avoid large arrays
            self.average_connection_time += (
                elapsed - self.average_connection_time
            ) / max(1, self.successful_connections)
        else:
            self.failed_connections += 1
            self.consecutive_failures += 1

    def record_retry(self) -> None:
        self.total_retries += 1

    def record_emitted(self) -> None:
        self.messages_emitted += 1

    def record_skipped(self) -> None:
        self.messages_skipped += 1


__all__ = [
    "ConnectionState",
    "CountSnapshot",
    "MailboxRole",
    "NewMessageEvent",
    "RetryBudget",
    "WatcherMetrics",
]
