"""Watch IMAP mailboxes and forward newly arrived messages."""

__version__ = "0.1.0"
