"""Watch one mailbox and emit every message that arrives in it.

The watcher owns a single live session at a time. Count-changed notifications
are resolved into new sequence numbers which are fetched, decoded and handed
to the consumer strictly in ascending order. Closed and error notifications
drive the reconnection controller, which retries forever with linear backoff
capped at a ceiling.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

if TYPE_CHECKING:  # pragma: no cover
    from mailwatch.parsing.email_parser import ParsedMail

from .errors import FetchError, ParseError
from .models import (
    ConnectionState,
    CountSnapshot,
    MailboxRole,
    NewMessageEvent,
    RetryBudget,
    WatcherMetrics,
)
from .reconnect import ReconnectionController
from .resolver import resolve_new_identifiers
from .session import SessionHandle


logger = logging.getLogger(__name__)


SessionFactory = Callable[[], SessionHandle]
ContentDecoder = Callable[[bytes], "ParsedMail"]
NewMessageHandler = Callable[[NewMessageEvent], Awaitable[None]]
Sleeper = Callable[[float], Awaitable[None]]


class MailboxWatcher:
    """Keep a mailbox under watch for the lifetime of the process."""

    def __init__(
        self,
        *,
        role: MailboxRole,
        folder: str,
        session_factory: SessionFactory,
        decoder: ContentDecoder,
        on_new_message: NewMessageHandler,
        account: str = "",
        retry_budget: Optional[RetryBudget] = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        """Initialize a mailbox watcher.

        Args:
            role: Logical mailbox this watcher serves
            folder: Server-side mailbox name to open read-only
            session_factory: Builds a fresh, unconnected session per attempt
            decoder: Turns raw RFC822 bytes into a parsed message
            on_new_message: Async consumer called once per new message
            account: Account label used in events and logs
            retry_budget: Reconnect backoff settings
            sleep: Coroutine used for backoff waits
        """
        self.role = role
        self.folder = folder
        self.account = account
        self.label = f"{account} [{role.value}]" if account else f"[{role.value}]"
        self.metrics = WatcherMetrics()
        self.controller = ReconnectionController(retry_budget, label=self.label)

        self._session_factory = session_factory
        self._decoder = decoder
        self._on_new_message = on_new_message
        self._sleep = sleep

        self._session: Optional[SessionHandle] = None
        self._reconnect_task: Optional[asyncio.Task[None]] = None
        self._started = False
        self._stopping = False

    @property
    def state(self) -> ConnectionState:
        return self.controller.state

    @property
    def session(self) -> Optional[SessionHandle]:
        return self._session

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open the mailbox, or hand the failure to the reconnect loop.

        Returns once the first connection attempt has either succeeded or been
        handed over; connection errors never reach the caller.
        """
        if self._started:
            raise RuntimeError(f"Watcher {self.label} already running")
        self._started = True
        self._stopping = False

        if not await self._open_session():
            self._schedule_reconnect()

    async def stop(self) -> None:
        """Cancel any reconnect in progress and close the current session."""
        self._stopping = True
        task = self._reconnect_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        session, self._session = self._session, None
        if session is not None:
            await self._close_quietly(session)
        logger.info(f"{self.label}: stopped")

    async def _open_session(self) -> bool:
        """Run one connect + mailbox-open attempt on a fresh session."""
        self.controller.begin_connect()
        session: Optional[SessionHandle] = None
        start = time.perf_counter()
        try:
            session = self._session_factory()
            self._attach(session)
            self._session = session
            await session.connect()
            count = await session.open_mailbox(self.folder, read_only=True)
        except Exception as exc:  # noqa: BLE001
            self.metrics.record_attempt(False, time.perf_counter() - start)
            logger.error(
                f"{self.label}: error while connecting "
                f"(failure {self.metrics.consecutive_failures}): {type(exc).__name__}: {exc}"
            )
            self._session = None
            self.controller.connect_failed()
            if session is not None:
                await self._close_quietly(session)
            return False

        self.metrics.record_attempt(True, time.perf_counter() - start)
        self.controller.connect_succeeded()
        logger.info(f"{self.label}: watching {self.folder} ({count} messages)")
        return True

    def _attach(self, session: SessionHandle) -> None:
        session.on_count_changed(lambda snapshot: self._handle_count_changed(session, snapshot))
        session.on_closed(lambda: self._handle_closed(session))
        session.on_error(lambda exc: self._handle_error(session, exc))

    async def _close_quietly(self, session: SessionHandle) -> bool:
        """Close ``session``; returns False if closing it raised."""
        try:
            await session.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"{self.label}: closing session failed: {exc}")
            return False
        return True

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if self._stopping:
            return
        task = self._reconnect_task
        # A session closed from inside the reconnect task itself must still
        # get a follow-up task; that task is about to finish.
        if task is not None and not task.done() and task is not asyncio.current_task():
            return
        loop = asyncio.get_running_loop()
        self._reconnect_task = loop.create_task(self.reconnect())

    async def reconnect(self) -> None:
        """Re-establish the session, waiting longer after each failure."""
        if self._stopping:
            return

        session = self._session
        if session is not None and session.is_usable():
            # The closed notification from this close drives the reconnect.
            logger.info(f"{self.label}: closing session before reconnecting")
            if await self._close_quietly(session):
                return

        if not self.controller.begin_reconnect():
            return

        try:
            self._session = None
            if session is not None:
                await self._close_quietly(session)

            while not self._stopping:
                delay = self.controller.next_delay()
                if delay > 0:
                    logger.warning(f"{self.label}: reconnect delay {delay:.0f}s")
                    await self._sleep(delay)
                if self._stopping:
                    break

                self.metrics.record_retry()
                logger.info(f"{self.label}: reconnecting...")
                if await self._open_session():
                    logger.info(f"{self.label}: reconnected")
                    return
        finally:
            self.controller.release()

    # ------------------------------------------------------------------
    # Notification handlers
    # ------------------------------------------------------------------

    async def _handle_closed(self, session: SessionHandle) -> None:
        if self._stopping or session is not self._session:
            return
        logger.info(f"{self.label}: connection closed")
        self._schedule_reconnect()

    async def _handle_error(self, session: SessionHandle, exc: BaseException) -> None:
        if self._stopping or session is not self._session:
            return
        logger.error(f"{self.label}: session error: {exc}")
        self._schedule_reconnect()

    async def _handle_count_changed(self, session: SessionHandle, snapshot: CountSnapshot) -> None:
        if self._stopping or session is not self._session:
            return

        identifiers = resolve_new_identifiers(snapshot)
        if not identifiers:
            return

        for identifier in identifiers:
            if not session.is_usable():
                logger.warning(
                    f"{self.label}: session lost, abandoning {identifiers[-1] - identifier + 1} "
                    f"pending message(s) from {identifier}"
                )
                return
            await self._process(session, identifier)

    async def _process(self, session: SessionHandle, identifier: int) -> None:
        logger.info(f"{self.label}: processing {identifier}")
        try:
            raw = await session.fetch(identifier)
            message = self._decoder(raw)
        except (FetchError, ParseError) as exc:
            self.metrics.record_skipped()
            logger.warning(f"{self.label}: skipping {identifier}: {exc}")
            return
        except Exception as exc:  # noqa: BLE001
            self.metrics.record_skipped()
            logger.error(
                f"{self.label}: skipping {identifier} after unexpected "
                f"{type(exc).__name__}: {exc}",
                exc_info=exc,
            )
            return

        event = NewMessageEvent(
            role=self.role,
            identifier=identifier,
            message=message,
            account=self.account,
            folder=self.folder,
        )
        try:
            await self._on_new_message(event)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"{self.label}: consumer failed for {identifier}: {exc}", exc_info=exc)
            return
        self.metrics.record_emitted()


__all__ = [
    "ContentDecoder",
    "MailboxWatcher",
    "NewMessageHandler",
    "Sleeper",
    "SessionFactory",
]
