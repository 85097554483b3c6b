"""Email provider adapters and canonical message types.

Adapters:
- GmailProvider (Gmail API, push via Pub/Sub watch)
- OutlookProvider (Microsoft Graph, polling)
- ImapProvider (IMAP/SMTP, polling)
"""

from mailsync.providers.email.base import (
    EmailFolder,
    EmailAttachment,
    EmailMessage,
)

__all__ = [
    "EmailFolder",
    "EmailAttachment",
    "EmailMessage",
]
