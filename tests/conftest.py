"""Shared test fixtures: an in-memory session and helpers to drive watchers."""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from typing import Dict, Iterable, List, Optional

import pytest

from mailwatch.parsing.email_parser import MailParser
from mailwatch.watcher.errors import FetchError
from mailwatch.watcher.models import CountSnapshot, NewMessageEvent
from mailwatch.watcher.session import SessionHandle


def make_raw_message(
    identifier: int,
    *,
    subject: Optional[str] = None,
    sender: str = "alice@example.com",
    body: Optional[str] = None,
) -> bytes:
    """Build a small RFC822 message for ``identifier``."""
    msg = EmailMessage()
    msg["From"] = f"Alice Example <{sender}>"
    msg["To"] = "bob@example.com"
    msg["Subject"] = subject or f"Message {identifier}"
    msg["Message-ID"] = f"<msg-{identifier}@example.com>"
    msg["Date"] = "Mon, 19 Oct 2026 10:00:00 +0000"
    msg.set_content(body or f"Body of message {identifier}")
    return msg.as_bytes()


class FakeSession(SessionHandle):
    """Scripted session that never touches the network.

    Tests push count changes, drop the transport or raise errors through the
    same notification path a real session uses.
    """

    def __init__(
        self,
        *,
        count: int = 0,
        connect_error: Optional[Exception] = None,
        open_error: Optional[Exception] = None,
        messages: Optional[Dict[int, bytes]] = None,
        fetch_delays: Optional[Dict[int, float]] = None,
        fetch_errors: Iterable[int] = (),
        drop_after_fetch: Optional[int] = None,
    ) -> None:
        super().__init__(label="fake")
        self.count = count
        self.connect_error = connect_error
        self.open_error = open_error
        self.messages = messages or {}
        self.fetch_delays = fetch_delays or {}
        self.fetch_errors = set(fetch_errors)
        self.drop_after_fetch = drop_after_fetch

        self.connected = False
        self.transport_ok = True
        self.closed = False
        self.close_calls = 0
        self.opened: Optional[tuple] = None
        self.fetch_log: List[int] = []

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def open_mailbox(self, name: str, *, read_only: bool = True) -> int:
        if self.open_error is not None:
            raise self.open_error
        self.opened = (name, read_only)
        return self.count

    async def fetch(self, identifier: int) -> bytes:
        self.fetch_log.append(identifier)
        delay = self.fetch_delays.get(identifier, 0)
        if delay:
            await asyncio.sleep(delay)
        if identifier == self.drop_after_fetch:
            self.transport_ok = False
        if identifier in self.fetch_errors:
            raise FetchError(identifier, "simulated fetch failure")
        return self.messages.get(identifier, make_raw_message(identifier))

    def is_usable(self) -> bool:
        return self.connected and self.transport_ok and not self.closed

    async def close(self) -> None:
        self.close_calls += 1
        if self.closed:
            return
        self.closed = True
        await self._emit_closed()

    # -- test drivers -------------------------------------------------

    async def push_count(self, current: int) -> None:
        snapshot = CountSnapshot(self.count, current)
        self.count = current
        await self._emit_count_changed(snapshot)

    async def push_snapshot(self, previous: int, current: int) -> None:
        await self._emit_count_changed(CountSnapshot(previous, current))

    async def server_closed(self) -> None:
        self.transport_ok = False
        self.closed = True
        await self._emit_closed()

    async def raise_error(self, exc: BaseException, *, transport_ok: bool = False) -> None:
        self.transport_ok = transport_ok
        await self._emit_error(exc)


class SessionScript:
    """Session factory handing out prepared sessions, then healthy ones."""

    def __init__(self, *sessions: FakeSession, fallback_count: int = 0) -> None:
        self.pending = list(sessions)
        self.created: List[FakeSession] = []
        self.fallback_count = fallback_count

    def __call__(self) -> FakeSession:
        session = self.pending.pop(0) if self.pending else FakeSession(count=self.fallback_count)
        self.created.append(session)
        return session


class EventCollector:
    """Async new-message consumer recording every event."""

    def __init__(self) -> None:
        self.events: List[NewMessageEvent] = []

    async def __call__(self, event: NewMessageEvent) -> None:
        self.events.append(event)

    @property
    def identifiers(self) -> List[int]:
        return [event.identifier for event in self.events]


class RecordingSleep:
    """Backoff sleeper that records requested delays without waiting."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await asyncio.sleep(0)


class BlockingSleep:
    """Backoff sleeper that parks the caller until released."""

    def __init__(self) -> None:
        self.calls: List[float] = []
        self.release = asyncio.Event()

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        await self.release.wait()


async def drain_reconnects(watcher) -> None:
    """Wait until no reconnect task is pending for ``watcher``."""
    while watcher._reconnect_task is not None and not watcher._reconnect_task.done():
        await watcher._reconnect_task


@pytest.fixture
def parser() -> MailParser:
    return MailParser()


@pytest.fixture
def collector() -> EventCollector:
    return EventCollector()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
