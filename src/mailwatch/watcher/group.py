"""Run a set of mailbox watchers side by side."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

from .mailbox_watcher import ContentDecoder, MailboxWatcher, NewMessageHandler, Sleeper
from .models import MailboxRole
from .session import ImapSession, SessionHandle

if TYPE_CHECKING:  # pragma: no cover
    from mailwatch.configuration.settings import InstanceSettings, Settings


logger = logging.getLogger(__name__)


HandlerFactory = Callable[["InstanceSettings"], NewMessageHandler]


class WatcherGroup:
    """Start watchers concurrently and keep their failures apart.

    Each watcher has its own session, reconnect task and retry budget, so a
    mailbox stuck in a reconnect loop never delays another one.
    """

    def __init__(self, watchers: Iterable[MailboxWatcher]) -> None:
        self.watchers: List[MailboxWatcher] = list(watchers)
        self._stop_event = asyncio.Event()

    async def start(self) -> None:
        """Start every watcher; returns when each has connected or handed off."""
        self._stop_event.clear()
        logger.info(f"Starting {len(self.watchers)} mailbox watcher(s)")
        results = await asyncio.gather(
            *(watcher.start() for watcher in self.watchers),
            return_exceptions=True,
        )
        for watcher, result in zip(self.watchers, results):
            if isinstance(result, BaseException):
                logger.error(f"{watcher.label}: failed to start: {result}", exc_info=result)

    async def stop(self) -> None:
        """Stop every watcher and release run_forever."""
        await asyncio.gather(
            *(watcher.stop() for watcher in self.watchers),
            return_exceptions=True,
        )
        self._stop_event.set()

    async def run_forever(self) -> None:
        """Start the group and block until stop() is called."""
        await self.start()
        await self._stop_event.wait()

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        *,
        decoder: ContentDecoder,
        handler_factory: HandlerFactory,
        session_factory: Optional[Callable[["InstanceSettings", str], SessionHandle]] = None,
        sleep: Optional[Sleeper] = None,
    ) -> "WatcherGroup":
        """Build one watcher per configured account and mailbox role.

        Args:
            settings: Loaded configuration
            decoder: Content decoder shared by all watchers
            handler_factory: Returns the consumer for one account instance
            session_factory: Builds a session for (instance, label); defaults
                to an ImapSession using the configured timeouts
            sleep: Optional backoff sleeper override
        """

        def _imap_session(instance: "InstanceSettings", label: str) -> SessionHandle:
            return ImapSession(
                instance.account,
                idle_check_interval=settings.idle_check_interval_seconds,
                poll_interval=settings.noop_poll_interval_seconds,
                connection_timeout=settings.connection_timeout_seconds,
                label=label,
            )

        build_session = session_factory or _imap_session
        watchers: List[MailboxWatcher] = []

        for instance in settings.instances:
            handler = handler_factory(instance)
            for role, folder in instance.mailboxes.items():
                role = MailboxRole(role)
                label = f"{instance.account.user} [{role.value}]"
                extra = {"sleep": sleep} if sleep is not None else {}
                watchers.append(
                    MailboxWatcher(
                        role=role,
                        folder=folder,
                        session_factory=_bind(build_session, instance, label),
                        decoder=decoder,
                        on_new_message=handler,
                        account=instance.account.user,
                        retry_budget=settings.reconnect.budget(),
                        **extra,
                    )
                )

        return cls(watchers)


def _bind(
    factory: Callable[["InstanceSettings", str], SessionHandle],
    instance: "InstanceSettings",
    label: str,
) -> Callable[[], SessionHandle]:
    return lambda: factory(instance, label)


__all__ = ["HandlerFactory", "WatcherGroup"]
