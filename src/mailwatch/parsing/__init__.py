"""Message content decoding."""

from .email_parser import AttachmentMetadata, EmailAddress, MailParser, ParsedMail

__all__ = ["AttachmentMetadata", "EmailAddress", "MailParser", "ParsedMail"]
