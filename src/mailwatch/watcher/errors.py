"""Exceptions raised by mailbox sessions and watchers.

Connection and mailbox-open failures are handed to the reconnection
controller; fetch and parse failures only affect a single message. None of
these escape a running watcher.
"""

from __future__ import annotations


class WatcherError(Exception):
    """Base exception for all mailbox watching errors."""

    pass


class SessionConnectError(WatcherError):
    """Raised when a session cannot establish or authenticate a connection.

    Common causes:
    - DNS or socket failure
    - TLS handshake failure
    - Rejected credentials
    """

    pass


class MailboxOpenError(WatcherError):
    """Raised when the server rejects selecting the watched mailbox."""

    pass


class FetchError(WatcherError):
    """Raised when a single message cannot be downloaded."""

    def __init__(self, identifier: int, message: str) -> None:
        super().__init__(f"Fetching message {identifier} failed: {message}")
        self.identifier = identifier


class ParseError(WatcherError):
    """Raised when raw message content cannot be decoded."""

    pass


class StateTransitionError(WatcherError):
    """Raised on a connection state change the state machine does not allow."""

    pass


__all__ = [
    "FetchError",
    "MailboxOpenError",
    "ParseError",
    "SessionConnectError",
    "StateTransitionError",
    "WatcherError",
]
