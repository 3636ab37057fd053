"""Mailbox watching, change resolution and reconnection."""

from .errors import (
    FetchError,
    MailboxOpenError,
    ParseError,
    SessionConnectError,
    StateTransitionError,
    WatcherError,
)
from .models import (
    ConnectionState,
    CountSnapshot,
    MailboxRole,
    NewMessageEvent,
    RetryBudget,
    WatcherMetrics,
)
from .resolver import resolve_new_identifiers
from .reconnect import ReconnectionController
from .session import ImapSession, SessionHandle
from .mailbox_watcher import MailboxWatcher
from .group import WatcherGroup

__all__ = [
    "FetchError",
    "MailboxOpenError",
    "ParseError",
    "SessionConnectError",
    "StateTransitionError",
    "WatcherError",
    "ConnectionState",
    "CountSnapshot",
    "MailboxRole",
    "NewMessageEvent",
    "RetryBudget",
    "WatcherMetrics",
    "resolve_new_identifiers",
    "ReconnectionController",
    "ImapSession",
    "SessionHandle",
    "MailboxWatcher",
    "WatcherGroup",
]
