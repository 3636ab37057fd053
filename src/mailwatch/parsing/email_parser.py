"""Decode raw RFC822/MIME messages into structured mail objects.

The parser extracts the headers and body a forwarding consumer needs:
sender, recipients, subject, date, a readable text body and attachment
metadata. HTML-only messages are converted to text with ``html2text``.
Attachment payloads are measured, never kept.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from email import message_from_bytes
from email.header import decode_header
from email.message import EmailMessage as StdEmailMessage
from email.policy import default as email_policy
from email.utils import getaddresses, parsedate_to_datetime
from typing import List, Optional, Tuple

import html2text
from pydantic import BaseModel, Field, field_validator

from mailwatch.watcher.errors import ParseError

logger = logging.getLogger(__name__)


UNKNOWN_SENDER = "unknown@unknown"


class EmailAddress(BaseModel):
    """Parsed email address with display name."""

    address: str = Field(..., description="Email address (user@domain.com)")
    display_name: Optional[str] = Field(
        default=None, description="Display name (e.g., 'John Doe')"
    )

    @field_validator("address")
    @classmethod
    def _validate_address(cls, value: str) -> str:  # type: ignore[override]
        if "@" not in value or value.count("@") != 1:
            raise ValueError(f"Invalid email address: {value}")
        return value.strip().lower()

    @property
    def text(self) -> str:
        """Header-style rendering, ``Name <address>`` or just the address."""
        if self.display_name:
            return f"{self.display_name} <{self.address}>"
        return self.address

    @classmethod
    def from_header(cls, header_value: str) -> List[EmailAddress]:
        """Parse email addresses from a header value.

        Args:
            header_value: Raw header value (e.g., "John Doe <john@example.com>, jane@example.com")

        Returns:
            List of parsed EmailAddress objects, skipping malformed entries
        """
        if not header_value or not header_value.strip():
            return []

        result = []
        for display_name, addr in getaddresses([header_value]):
            if not addr or addr.count("@") != 1:
                continue
            result.append(
                cls(
                    address=addr,
                    display_name=display_name.strip() if display_name else None,
                )
            )
        return result


class AttachmentMetadata(BaseModel):
    """Metadata for an attachment; the content itself is not retained."""

    filename: str = Field(..., description="Attachment filename")
    content_type: str = Field(..., description="MIME content type")
    size_bytes: int = Field(..., ge=0, description="Attachment size in bytes")
    is_inline: bool = Field(default=False, description="True if inline attachment")


class ParsedMail(BaseModel):
    """Decoded message handed to new-message consumers."""

    message_id: str = Field(..., description="Message-ID header (generated if missing)")
    subject: Optional[str] = Field(default=None, description="Decoded subject")
    from_address: EmailAddress = Field(..., description="Sender address")
    to_addresses: List[EmailAddress] = Field(default_factory=list)
    cc_addresses: List[EmailAddress] = Field(default_factory=list)
    date: datetime = Field(..., description="Date header, or time of parsing")
    text: str = Field(default="", description="Readable body text")
    html: Optional[str] = Field(default=None, description="HTML body, if any")
    attachments: List[AttachmentMetadata] = Field(default_factory=list)
    size_bytes: int = Field(..., ge=0, description="Raw message size")

    @property
    def has_attachments(self) -> bool:
        return len(self.attachments) > 0


class MailParser:
    """Parse RFC822/MIME bytes into ``ParsedMail``.

    Uses the standard library ``email`` package with the modern policy, which
    already decodes transfer encodings and most charsets.
    """

    def __init__(self) -> None:
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = True
        self.html_converter.ignore_emphasis = False
        self.html_converter.body_width = 0  # No line wrapping

    def __call__(self, raw_message: bytes) -> ParsedMail:
        return self.parse(raw_message)

    def parse(self, raw_message: bytes) -> ParsedMail:
        """Parse raw message bytes.

        Raises:
            ParseError: If the content is empty or cannot be decoded
        """
        if not raw_message:
            raise ParseError("Empty message content")

        try:
            msg = message_from_bytes(raw_message, policy=email_policy)
            body_plain, body_html = self._extract_body(msg)
            return ParsedMail(
                message_id=self._extract_message_id(msg),
                subject=self._extract_subject(msg),
                from_address=self._extract_from(msg),
                to_addresses=EmailAddress.from_header(str(msg.get("To", ""))),
                cc_addresses=EmailAddress.from_header(str(msg.get("Cc", ""))),
                date=self._extract_date(msg),
                text=self._normalize_body(body_plain, body_html),
                html=body_html,
                attachments=self._extract_attachments(msg),
                size_bytes=len(raw_message),
            )
        except ParseError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ParseError(f"Email parsing failed: {exc}") from exc

    def _extract_message_id(self, msg: StdEmailMessage) -> str:
        message_id = str(msg.get("Message-ID", "")).strip().strip("<>").strip()
        if not message_id:
            fallback_id = f"generated-{uuid.uuid4()}@mailwatch.local"
            logger.debug(f"Message missing Message-ID, generated fallback: {fallback_id}")
            return fallback_id
        return message_id

    def _extract_subject(self, msg: StdEmailMessage) -> Optional[str]:
        """Extract the subject, decoding RFC 2047 encoded words."""
        subject = msg.get("Subject", "")
        if not subject:
            return None

        result = ""
        for part, charset in decode_header(str(subject)):
            if isinstance(part, bytes):
                try:
                    result += part.decode(charset or "utf-8", errors="replace")
                except (UnicodeDecodeError, LookupError):
                    result += part.decode("utf-8", errors="replace")
            else:
                result += part

        return result.strip() or None

    def _extract_from(self, msg: StdEmailMessage) -> EmailAddress:
        addresses = EmailAddress.from_header(str(msg.get("From", "")))
        if not addresses:
            logger.warning("Message missing From header, using fallback")
            return EmailAddress(address=UNKNOWN_SENDER)
        return addresses[0]

    def _extract_date(self, msg: StdEmailMessage) -> datetime:
        date_header = msg.get("Date")
        if date_header:
            try:
                return parsedate_to_datetime(str(date_header))
            except (TypeError, ValueError) as e:
                logger.warning(f"Failed to parse Date header '{date_header}': {e}, using current time")
        return datetime.now(timezone.utc)

    def _extract_body(self, msg: StdEmailMessage) -> Tuple[Optional[str], Optional[str]]:
        """Extract the first text/plain and text/html parts that are not attachments."""
        body_plain = None
        body_html = None

        parts = msg.walk() if msg.is_multipart() else [msg]
        for part in parts:
            if part.is_multipart() or part.get_content_disposition() == "attachment":
                continue
            content_type = part.get_content_type()
            try:
                if content_type == "text/plain" and body_plain is None:
                    body_plain = part.get_content()
                elif content_type == "text/html" and body_html is None:
                    body_html = part.get_content()
            except Exception as e:  # noqa: BLE001
                logger.warning(f"Failed to extract {content_type} body: {e}")

        return body_plain, body_html

    def _normalize_body(self, plain: Optional[str], html: Optional[str]) -> str:
        """Prefer the plain part; fall back to converting HTML."""
        if plain is not None:
            return plain.strip()
        if html is not None:
            return self.html_converter.handle(html).strip()
        return ""

    def _extract_attachments(self, msg: StdEmailMessage) -> List[AttachmentMetadata]:
        attachments: List[AttachmentMetadata] = []
        if not msg.is_multipart():
            return attachments

        for part in msg.walk():
            disposition = part.get_content_disposition()
            if disposition not in ("attachment", "inline"):
                continue
            filename = part.get_filename()
            if not filename:
                continue
            payload = part.get_payload(decode=True)
            attachments.append(
                AttachmentMetadata(
                    filename=filename,
                    content_type=part.get_content_type(),
                    size_bytes=len(payload) if payload else 0,
                    is_inline=disposition == "inline",
                )
            )

        return attachments


__all__ = [
    "AttachmentMetadata",
    "EmailAddress",
    "MailParser",
    "ParsedMail",
]
