"""Mailbox sessions: the connection objects a watcher drives.

``SessionHandle`` defines the capability set a watcher relies on and owns the
listener bookkeeping for the three notifications a session delivers:
count-changed, closed and error. ``ImapSession`` implements it on top of
``imapclient``, watching the selected mailbox with IMAP IDLE (or NOOP polling
for servers without IDLE) and translating untagged ``EXISTS``/``EXPUNGE``
responses into count snapshots.

Each session is single-use. Once closed it never reconnects; the watcher
builds a fresh one instead.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional, Sequence, Tuple

try:
    from imapclient import IMAPClient  # type: ignore
except Exception as exc:  # pragma: no cover - missing dependency
    raise RuntimeError("imapclient must be installed to watch IMAP mailboxes") from exc

import certifi

from .errors import FetchError, MailboxOpenError, SessionConnectError
from .models import CountSnapshot

if TYPE_CHECKING:  # pragma: no cover
    from mailwatch.configuration.settings import AccountSettings


logger = logging.getLogger(__name__)


CountChangedListener = Callable[[CountSnapshot], Awaitable[None]]
ClosedListener = Callable[[], Awaitable[None]]
ErrorListener = Callable[[BaseException], Awaitable[None]]

FETCH_BODY = "BODY.PEEK[]"
FETCH_BODY_KEY = b"BODY[]"


class SessionHandle(ABC):
    """One authenticated link to the server for one mailbox."""

    def __init__(self, *, label: str = "") -> None:
        self.label = label
        self._count_listeners: List[CountChangedListener] = []
        self._closed_listeners: List[ClosedListener] = []
        self._error_listeners: List[ErrorListener] = []
        self._closed_emitted = False

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_count_changed(self, listener: CountChangedListener) -> None:
        self._count_listeners.append(listener)

    def on_closed(self, listener: ClosedListener) -> None:
        self._closed_listeners.append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    async def _emit_count_changed(self, snapshot: CountSnapshot) -> None:
        await self._dispatch(self._count_listeners, snapshot)

    async def _emit_error(self, exc: BaseException) -> None:
        await self._dispatch(self._error_listeners, exc)

    async def _emit_closed(self) -> None:
        # closed is delivered at most once per session
        if self._closed_emitted:
            return
        self._closed_emitted = True
        await self._dispatch(self._closed_listeners)

    async def _dispatch(self, listeners: Sequence[Callable[..., Awaitable[None]]], *args: Any) -> None:
        for listener in list(listeners):
            try:
                await listener(*args)
            except Exception as exc:  # noqa: BLE001
                logger.error(f"{self.label}: session listener failed: {exc}", exc_info=exc)

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        """Open and authenticate the connection.

        Raises:
            SessionConnectError: If the server cannot be reached or rejects
                the credentials
        """

    @abstractmethod
    async def open_mailbox(self, name: str, *, read_only: bool = True) -> int:
        """Select ``name`` and start listening for changes.

        Returns:
            The number of messages currently in the mailbox

        Raises:
            MailboxOpenError: If the mailbox cannot be selected
        """

    @abstractmethod
    async def fetch(self, identifier: int) -> bytes:
        """Download the raw RFC822 content of message ``identifier``.

        Raises:
            FetchError: If the message cannot be downloaded
        """

    @abstractmethod
    def is_usable(self) -> bool:
        """True while the transport is believed to be healthy."""

    @abstractmethod
    async def close(self) -> None:
        """Close the session; a closed notification follows."""


class ImapSession(SessionHandle):
    """IMAP session that reports mailbox count changes as they are pushed."""

    def __init__(
        self,
        account: "AccountSettings",
        *,
        idle_check_interval: float = 300,
        poll_interval: float = 60,
        connection_timeout: float = 30,
        label: str = "",
    ) -> None:
        """Initialize an IMAP session.

        Args:
            account: Server address and credentials
            idle_check_interval: Seconds to wait in one IDLE cycle before
                renewing it
            poll_interval: NOOP polling interval for servers without IDLE
            connection_timeout: Socket timeout in seconds
            label: Prefix for log messages
        """
        super().__init__(label=label or account.user)
        self.account = account
        self.idle_check_interval = idle_check_interval
        self.poll_interval = poll_interval
        self.connection_timeout = connection_timeout

        self.client: Optional[IMAPClient] = None
        self.message_count = 0
        self.supports_idle = True
        self._usable = False
        self._closing = False
        self._close_requested = asyncio.Event()
        self._watch_task: Optional[asyncio.Task[None]] = None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        if self._closing:
            raise SessionConnectError("Session already closed")
        try:
            self.client = await asyncio.to_thread(self._establish_connection)
        except Exception as exc:  # noqa: BLE001
            raise SessionConnectError(
                f"Could not connect to {self.account.host}:{self.account.port}: {exc}"
            ) from exc
        self._usable = True
        logger.debug(f"{self.label}: connected to {self.account.host}")

    def _establish_connection(self) -> IMAPClient:
        if not self.account.secure:
            logger.warning(f"{self.label}: connecting without TLS to {self.account.host}")
        client = IMAPClient(
            host=self.account.host,
            port=self.account.port,
            ssl=self.account.secure,
            ssl_context=self._create_ssl_context() if self.account.secure else None,
            timeout=self.connection_timeout,
            use_uid=False,
        )
        try:
            client.login(self.account.user, self.account.resolve_password())
        except Exception:
            self._shutdown_quietly(client)
            raise
        return client

    def _create_ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        context.load_verify_locations(certifi.where())
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.check_hostname = True
        context.verify_mode = ssl.CERT_REQUIRED
        return context

    async def open_mailbox(self, name: str, *, read_only: bool = True) -> int:
        client = self.client
        if client is None or not self.is_usable():
            raise MailboxOpenError(f"Cannot open {name}: session is not connected")
        try:
            info = await asyncio.to_thread(client.select_folder, name, readonly=read_only)
            self.supports_idle = await asyncio.to_thread(client.has_capability, "IDLE")
        except Exception as exc:  # noqa: BLE001
            raise MailboxOpenError(f"Cannot open {name}: {exc}") from exc

        self.message_count = int(info.get(b"EXISTS", 0))
        if not self.supports_idle:
            logger.info(f"{self.label}: server lacks IDLE, polling every {self.poll_interval}s")
        loop = asyncio.get_running_loop()
        self._watch_task = loop.create_task(self._watch_loop())
        return self.message_count

    def is_usable(self) -> bool:
        return self.client is not None and self._usable and not self._closing

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        self._usable = False
        self._close_requested.set()

        if self._watch_task is not None and not self._watch_task.done():
            # Unblock a pending IDLE wait; the watch loop tears down and
            # reports closed.
            if self.client is not None:
                await asyncio.to_thread(self._shutdown_quietly, self.client)
            return

        await asyncio.to_thread(self._cleanup_connection)
        await self._emit_closed()

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch(self, identifier: int) -> bytes:
        client = self.client
        if client is None or not self.is_usable():
            raise FetchError(identifier, "session is not connected")
        try:
            response = await asyncio.to_thread(client.fetch, [identifier], [FETCH_BODY])
        except Exception as exc:  # noqa: BLE001
            raise FetchError(identifier, str(exc)) from exc

        data = response.get(identifier)
        if not data or FETCH_BODY_KEY not in data:
            raise FetchError(identifier, "server returned no message body")
        return data[FETCH_BODY_KEY]

    # ------------------------------------------------------------------
    # Change monitoring
    # ------------------------------------------------------------------

    async def _watch_loop(self) -> None:
        try:
            while not self._closing:
                responses = await self._wait_for_responses()
                if await self._dispatch_responses(responses):
                    logger.info(f"{self.label}: server ended the session")
                    break
        except Exception as exc:  # noqa: BLE001
            self._usable = False
            if not self._closing:
                logger.warning(f"{self.label}: session failed: {exc}")
                await self._emit_error(exc)
        finally:
            self._usable = False
            await asyncio.to_thread(self._cleanup_connection)
            await self._emit_closed()

    async def _dispatch_responses(self, responses: List[Any]) -> bool:
        """Emit count changes until no more are pending; True on BYE."""
        while True:
            snapshots, server_closed = self._apply_responses(responses)
            if server_closed:
                return True
            if not snapshots:
                return False
            for snapshot in snapshots:
                await self._emit_count_changed(snapshot)

            client = self.client
            if self._closing or client is None:
                return False
            # Handlers fetch outside IDLE; EXISTS pushed meanwhile must not wait
            # for the next arrival.
            responses = await asyncio.to_thread(self._collect_pending, client)

    def _collect_pending(self, client: IMAPClient) -> List[Any]:
        """Untagged EXPUNGE/EXISTS buffered by other commands, then a NOOP."""
        pending: List[Any] = []
        untagged = getattr(getattr(client, "_imap", None), "untagged_responses", None)
        if isinstance(untagged, dict):
            for kind in ("EXPUNGE", "EXISTS"):
                for number in untagged.pop(kind, None) or []:
                    pending.append((number, kind.encode()))
        _text, responses = client.noop()
        pending.extend(responses)
        return pending

    async def _wait_for_responses(self) -> List[Any]:
        client = self.client
        if client is None:
            raise ConnectionError("IMAP client went away")

        if self.supports_idle:
            return await asyncio.to_thread(self._idle_cycle, client)

        try:
            await asyncio.wait_for(self._close_requested.wait(), timeout=self.poll_interval)
            return []
        except asyncio.TimeoutError:
            pass
        _text, responses = await asyncio.to_thread(client.noop)
        return list(responses)

    def _idle_cycle(self, client: IMAPClient) -> List[Any]:
        client.idle()
        responses = client.idle_check(timeout=self.idle_check_interval)
        _text, done_responses = client.idle_done()
        logger.debug(f"{self.label}: IDLE renewed")
        return list(responses) + list(done_responses)

    def _apply_responses(self, responses: List[Any]) -> Tuple[List[CountSnapshot], bool]:
        """Turn untagged responses into count snapshots.

        IDLE responses look like ``(3, b'EXISTS')`` or ``(2, b'EXPUNGE')``.
        Returns the snapshots in arrival order and whether the server said BYE.
        """
        snapshots: List[CountSnapshot] = []
        server_closed = False

        for response in responses:
            if not isinstance(response, (tuple, list)) or len(response) < 2:
                continue
            number, kind = response[0], response[1]
            if _as_bytes(number).upper() == b"BYE":
                server_closed = True
                continue
            if isinstance(number, bytes) and number.isdigit():
                number = int(number)
            if not isinstance(number, int):
                continue

            kind = _as_bytes(kind).upper()
            if kind == b"EXISTS":
                if number != self.message_count:
                    snapshots.append(CountSnapshot(self.message_count, number))
                self.message_count = number
            elif kind == b"EXPUNGE":
                self.message_count = max(0, self.message_count - 1)

        return snapshots, server_closed

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _cleanup_connection(self) -> None:
        client = self.client
        if client is None:
            return
        self.client = None
        try:
            client.logout()
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"{self.label}: logout failed: {exc}")
            self._shutdown_quietly(client)

    def _shutdown_quietly(self, client: IMAPClient) -> None:
        try:
            client.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"{self.label}: socket shutdown failed: {exc}")


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("ascii", errors="replace")
    return b""


__all__ = [
    "ClosedListener",
    "CountChangedListener",
    "ErrorListener",
    "ImapSession",
    "SessionHandle",
]
