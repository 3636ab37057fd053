"""Tests for the imapclient-backed session, driven through a stub client."""

from __future__ import annotations

import asyncio
import queue
import ssl
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from mailwatch.configuration.settings import AccountSettings
from mailwatch.watcher import session as session_module
from mailwatch.watcher.errors import FetchError, MailboxOpenError, SessionConnectError
from mailwatch.watcher.models import CountSnapshot
from mailwatch.watcher.session import ImapSession


class StubIMAPClient:
    """Stands in for ``imapclient.IMAPClient``; IDLE responses are queued by tests."""

    def __init__(
        self,
        *,
        exists: int = 0,
        capabilities=(b"IDLE",),
        login_error: Optional[Exception] = None,
        select_error: Optional[Exception] = None,
        fetch_error: Optional[Exception] = None,
        messages: Optional[Dict[int, bytes]] = None,
    ) -> None:
        self.exists = exists
        self.capabilities = set(capabilities)
        self.login_error = login_error
        self.select_error = select_error
        self.fetch_error = fetch_error
        self.messages = messages or {}

        self.kwargs: Dict[str, Any] = {}
        self.calls: List[tuple] = []
        self.idle_queue: "queue.Queue[Any]" = queue.Queue()
        self.noop_queue: "queue.Queue[Any]" = queue.Queue()
        self.logged_out = False
        self.shutdown_called = False
        # imaplib keeps unsolicited responses seen during other commands here
        self._imap = SimpleNamespace(untagged_responses={})
        self.exists_during_fetch: List[bytes] = []

    def __call__(self, **kwargs: Any) -> "StubIMAPClient":
        self.kwargs = kwargs
        return self

    def login(self, user: str, password: str) -> None:
        self.calls.append(("login", user, password))
        if self.login_error is not None:
            raise self.login_error

    def select_folder(self, name: str, readonly: bool = False) -> Dict[bytes, Any]:
        self.calls.append(("select", name, readonly))
        if self.select_error is not None:
            raise self.select_error
        return {b"EXISTS": self.exists, b"FLAGS": (b"\\Seen",)}

    def has_capability(self, name: str) -> bool:
        return name.upper().encode() in self.capabilities

    def idle(self) -> None:
        self.calls.append(("idle",))

    def idle_check(self, timeout: Optional[float] = None) -> List[Any]:
        try:
            item = self.idle_queue.get(timeout=timeout)
        except queue.Empty:
            return []
        if isinstance(item, BaseException):
            raise item
        return item

    def idle_done(self):
        return b"IDLE terminated", []

    def noop(self):
        self.calls.append(("noop",))
        try:
            return b"NOOP completed", self.noop_queue.get_nowait()
        except queue.Empty:
            return b"NOOP completed", []

    def fetch(self, ids, items) -> Dict[int, Dict[bytes, Any]]:
        self.calls.append(("fetch", list(ids), list(items)))
        if self.fetch_error is not None:
            raise self.fetch_error
        for number in self.exists_during_fetch:
            self._imap.untagged_responses.setdefault("EXISTS", []).append(number)
        self.exists_during_fetch = []
        return {i: {b"BODY[]": self.messages[i], b"SEQ": i} for i in ids if i in self.messages}

    def logout(self) -> None:
        self.logged_out = True
        self.idle_queue.put(OSError("socket closed"))

    def shutdown(self) -> None:
        self.shutdown_called = True
        self.idle_queue.put(OSError("socket closed"))


class Recorder:
    """Collects session notifications in arrival order."""

    def __init__(self, session: ImapSession) -> None:
        self.log: List[tuple] = []
        self.closed = asyncio.Event()
        self.changed = asyncio.Event()
        session.on_count_changed(self._count_changed)
        session.on_error(self._error)
        session.on_closed(self._closed)

    async def _count_changed(self, snapshot: CountSnapshot) -> None:
        self.log.append(("count", snapshot.previous_count, snapshot.current_count))
        self.changed.set()

    async def _error(self, exc: BaseException) -> None:
        self.log.append(("error", type(exc).__name__))

    async def _closed(self) -> None:
        self.log.append(("closed",))
        self.closed.set()


@pytest.fixture
def account() -> AccountSettings:
    return AccountSettings(host="imap.example.com", user="me@example.com", password="secret")


@pytest.fixture
def stub(monkeypatch) -> StubIMAPClient:
    client = StubIMAPClient(exists=3, messages={4: b"Subject: hi\r\n\r\nhello"})
    monkeypatch.setattr(session_module, "IMAPClient", client)
    return client


def _session(account: AccountSettings, **kwargs: Any) -> ImapSession:
    kwargs.setdefault("idle_check_interval", 0.05)
    kwargs.setdefault("connection_timeout", 5)
    return ImapSession(account, **kwargs)


# ============================================================================
# Connecting and opening
# ============================================================================


@pytest.mark.asyncio
async def test_connect_logs_in_over_tls_with_sequence_numbers(account, stub):
    session = _session(account)

    await session.connect()

    assert stub.kwargs["host"] == "imap.example.com"
    assert stub.kwargs["port"] == 993
    assert stub.kwargs["ssl"] is True
    assert stub.kwargs["use_uid"] is False
    assert stub.kwargs["timeout"] == 5
    context = stub.kwargs["ssl_context"]
    assert isinstance(context, ssl.SSLContext)
    assert context.minimum_version == ssl.TLSVersion.TLSv1_2
    assert ("login", "me@example.com", "secret") in stub.calls
    assert session.is_usable()

    await session.close()


@pytest.mark.asyncio
async def test_plain_connection_skips_tls_context(stub):
    account = AccountSettings(host="localhost", port=143, secure=False, user="me", password="pw")
    session = _session(account)

    await session.connect()

    assert stub.kwargs["ssl"] is False
    assert stub.kwargs["ssl_context"] is None
    await session.close()


@pytest.mark.asyncio
async def test_login_failure_raises_connect_error(account, stub):
    stub.login_error = Exception("[AUTHENTICATIONFAILED] Invalid credentials")
    session = _session(account)

    with pytest.raises(SessionConnectError, match="imap.example.com:993"):
        await session.connect()

    assert stub.shutdown_called is True
    assert not session.is_usable()


@pytest.mark.asyncio
async def test_unreachable_server_raises_connect_error(account, monkeypatch):
    def refuse(**kwargs):
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(session_module, "IMAPClient", refuse)
    session = _session(account)

    with pytest.raises(SessionConnectError, match="connection refused"):
        await session.connect()


@pytest.mark.asyncio
async def test_open_mailbox_selects_read_only_and_returns_count(account, stub):
    session = _session(account)
    recorder = Recorder(session)
    await session.connect()

    count = await session.open_mailbox("INBOX")

    assert count == 3
    assert ("select", "INBOX", True) in stub.calls
    assert session.supports_idle is True

    await session.close()
    await asyncio.wait_for(recorder.closed.wait(), timeout=2)


@pytest.mark.asyncio
async def test_open_mailbox_failure_raises(account, stub):
    stub.select_error = Exception("NO [NONEXISTENT] Unknown Mailbox")
    session = _session(account)
    await session.connect()

    with pytest.raises(MailboxOpenError, match="Unknown Mailbox"):
        await session.open_mailbox("Archive")

    await session.close()


@pytest.mark.asyncio
async def test_open_mailbox_requires_connection(account, stub):
    session = _session(account)

    with pytest.raises(MailboxOpenError, match="not connected"):
        await session.open_mailbox("INBOX")


# ============================================================================
# Change monitoring
# ============================================================================


@pytest.mark.asyncio
async def test_idle_exists_response_emits_count_change(account, stub):
    session = _session(account)
    recorder = Recorder(session)
    await session.connect()
    await session.open_mailbox("INBOX")

    stub.idle_queue.put([(b"OK", b"Still here"), (5, b"EXISTS")])
    await asyncio.wait_for(recorder.changed.wait(), timeout=2)

    assert recorder.log[0] == ("count", 3, 5)
    assert session.message_count == 5

    await session.close()
    await asyncio.wait_for(recorder.closed.wait(), timeout=2)
    assert recorder.log.count(("closed",)) == 1
    assert ("error", "OSError") not in recorder.log
    assert stub.logged_out is True


@pytest.mark.asyncio
async def test_transport_failure_emits_error_then_closed_once(account, stub):
    session = _session(account)
    recorder = Recorder(session)
    await session.connect()
    await session.open_mailbox("INBOX")

    stub.idle_queue.put(ConnectionResetError("connection reset by peer"))
    await asyncio.wait_for(recorder.closed.wait(), timeout=2)

    assert recorder.log == [("error", "ConnectionResetError"), ("closed",)]
    assert not session.is_usable()

    await session.close()
    assert recorder.log.count(("closed",)) == 1


@pytest.mark.asyncio
async def test_server_bye_ends_session(account, stub):
    session = _session(account)
    recorder = Recorder(session)
    await session.connect()
    await session.open_mailbox("INBOX")

    stub.idle_queue.put([(b"BYE", b"Server shutting down")])
    await asyncio.wait_for(recorder.closed.wait(), timeout=2)

    assert recorder.log == [("closed",)]
    assert not session.is_usable()


@pytest.mark.asyncio
async def test_noop_polling_when_idle_unsupported(account, stub):
    stub.capabilities = set()
    session = _session(account, poll_interval=0.01)
    recorder = Recorder(session)
    await session.connect()
    await session.open_mailbox("INBOX")
    assert session.supports_idle is False

    stub.noop_queue.put([(4, b"EXISTS")])
    await asyncio.wait_for(recorder.changed.wait(), timeout=2)

    assert recorder.log[0] == ("count", 3, 4)
    assert ("idle",) not in stub.calls

    await session.close()
    await asyncio.wait_for(recorder.closed.wait(), timeout=2)


@pytest.mark.asyncio
async def test_exists_pushed_while_fetching_is_reported_before_next_idle(account, stub):
    session = _session(account)
    seen: List[tuple] = []
    caught_up = asyncio.Event()

    async def on_count(snapshot: CountSnapshot) -> None:
        seen.append((snapshot.previous_count, snapshot.current_count))
        if len(seen) == 1:
            # server announces message 5 while message 4 is being fetched
            stub.exists_during_fetch = [b"5"]
            await session.fetch(4)
        if len(seen) == 3:
            caught_up.set()

    session.on_count_changed(on_count)
    await session.connect()
    await session.open_mailbox("INBOX")

    # the NOOP after the batch reports one more arrival
    stub.noop_queue.put([(6, b"EXISTS")])
    stub.idle_queue.put([(4, b"EXISTS")])
    await asyncio.wait_for(caught_up.wait(), timeout=2)

    assert seen == [(3, 4), (4, 5), (5, 6)]
    assert session.message_count == 6
    assert stub._imap.untagged_responses == {}
    assert ("noop",) in stub.calls

    await session.close()


def test_apply_responses_tracks_exists_and_expunge(account):
    session = _session(account)
    session.message_count = 4

    snapshots, server_closed = session._apply_responses(
        [
            (5, b"EXISTS"),
            (2, b"EXPUNGE"),
            (3, b"RECENT"),
            (5, b"EXISTS"),
            (5, b"EXISTS"),
            (b"OK", b"Still here"),
            "garbage",
        ]
    )

    assert [(s.previous_count, s.current_count) for s in snapshots] == [(4, 5), (4, 5)]
    assert session.message_count == 5
    assert server_closed is False


def test_apply_responses_reports_shrinking_count_and_bye(account):
    session = _session(account)
    session.message_count = 10

    snapshots, server_closed = session._apply_responses([(7, b"EXISTS"), (b"BYE", b"Autologout")])

    assert [(s.previous_count, s.current_count) for s in snapshots] == [(10, 7)]
    assert server_closed is True


# ============================================================================
# Fetching and closing
# ============================================================================


@pytest.mark.asyncio
async def test_fetch_returns_raw_body(account, stub):
    session = _session(account)
    await session.connect()

    raw = await session.fetch(4)

    assert raw == b"Subject: hi\r\n\r\nhello"
    assert ("fetch", [4], ["BODY.PEEK[]"]) in stub.calls
    await session.close()


@pytest.mark.asyncio
async def test_fetch_missing_message_raises(account, stub):
    session = _session(account)
    await session.connect()

    with pytest.raises(FetchError) as excinfo:
        await session.fetch(99)

    assert excinfo.value.identifier == 99
    await session.close()


@pytest.mark.asyncio
async def test_fetch_server_error_raises(account, stub):
    stub.fetch_error = Exception("BAD [CLIENTBUG] Invalid sequence set")
    session = _session(account)
    await session.connect()

    with pytest.raises(FetchError, match="Invalid sequence set"):
        await session.fetch(4)
    await session.close()


@pytest.mark.asyncio
async def test_close_without_watch_loop_logs_out_and_emits_closed(account, stub):
    session = _session(account)
    recorder = Recorder(session)
    await session.connect()

    await session.close()
    await session.close()

    assert stub.logged_out is True
    assert recorder.log == [("closed",)]
    assert not session.is_usable()

    with pytest.raises(SessionConnectError):
        await session.connect()
