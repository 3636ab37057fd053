"""Forward new messages to a Discord-compatible webhook.

Each new message becomes one embed: subject as title, sender as author with a
Gravatar icon, the text body as description and the attachment count as a
field. Text is truncated to the limits Discord enforces on embeds.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Any, Dict, Optional

import httpx

from mailwatch.watcher.models import MailboxRole, NewMessageEvent

logger = logging.getLogger(__name__)


EMBED_COLOR = 0xF8E337
TITLE_LIMIT = 256
DESCRIPTION_LIMIT = 4096
AUTHOR_LIMIT = 256
FOOTER_LIMIT = 2048
NO_SUBJECT = "(no subject)"
MAX_RETRY_AFTER = 60.0


class DeliveryError(Exception):
    """Raised when the webhook rejects or cannot receive a message."""

    pass


def gravatar_url(address: str) -> str:
    """Gravatar avatar URL for an address, falling back to the mystery person."""
    digest = hashlib.sha256(address.strip().lower().encode("utf-8")).hexdigest()
    return f"https://gravatar.com/avatar/{digest}?d=mp"


def truncate_text(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: limit - 1].rstrip() + "…"


def build_embed(event: NewMessageEvent) -> Dict[str, Any]:
    """Render a new-message event as a webhook embed."""
    mail = event.message
    footer = event.role.value if not event.account else f"{event.account} · {event.role.value}"
    title = mail.subject or NO_SUBJECT
    if event.role == MailboxRole.SENT:
        title = f"Sent: {title}"

    return {
        "title": truncate_text(title, TITLE_LIMIT),
        "author": {
            "name": truncate_text(mail.from_address.text, AUTHOR_LIMIT),
            "icon_url": gravatar_url(mail.from_address.address),
        },
        "description": truncate_text(mail.text, DESCRIPTION_LIMIT),
        "fields": [
            {"name": "Attachments", "value": str(len(mail.attachments))},
        ],
        "color": EMBED_COLOR,
        "footer": {"text": truncate_text(footer, FOOTER_LIMIT)},
        "timestamp": mail.date.isoformat(),
    }


class DiscordWebhookChannel:
    """Async new-message consumer posting embeds to one webhook.

    Safe to share between the watchers of one account: each delivery is an
    independent request on a shared ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """Initialize the channel.

        Args:
            webhook_url: Full webhook URL including its token
            timeout: Request timeout in seconds
            client: Optional pre-built HTTP client (tests inject a mock transport)
        """
        self.webhook_url = webhook_url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def __call__(self, event: NewMessageEvent) -> None:
        await self.deliver(event)

    async def deliver(self, event: NewMessageEvent) -> None:
        """Post one message.

        A rate-limited request (HTTP 429) is retried once after the delay
        the server asks for.

        Raises:
            DeliveryError: If the webhook cannot be reached or rejects the post
        """
        payload = {"embeds": [build_embed(event)]}
        response = await self._post(payload)

        if response.status_code == 429:
            retry_after = _retry_after(response)
            logger.warning(f"Webhook rate limited, retrying in {retry_after:.1f}s")
            await asyncio.sleep(retry_after)
            response = await self._post(payload)

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DeliveryError(
                f"Webhook rejected message {event.identifier}: HTTP {response.status_code}"
            ) from exc
        logger.debug(f"Forwarded {event.role.value} message {event.identifier}")

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        try:
            return await self._client.post(self.webhook_url, json=payload)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Webhook request failed: {exc}") from exc

    async def aclose(self) -> None:
        await self._client.aclose()


def _retry_after(response: httpx.Response) -> float:
    raw: Any = response.headers.get("Retry-After", 1.0)
    try:
        raw = response.json().get("retry_after", raw)
    except (ValueError, AttributeError):
        pass
    try:
        value = float(raw)
    except (TypeError, ValueError):
        value = 1.0
    return min(max(value, 0.0), MAX_RETRY_AFTER)


__all__ = [
    "DeliveryError",
    "DiscordWebhookChannel",
    "build_embed",
    "gravatar_url",
    "truncate_text",
]
