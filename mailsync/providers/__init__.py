"""
Mail Providers Package

Unified adapter interface over the supported mailbox providers:
- Gmail (Gmail API, OAuth 2.0, Pub/Sub push)
- Outlook / Microsoft 365 (Microsoft Graph, OAuth 2.0, polling)
- IMAP/SMTP (password, polling)
"""

from mailsync.providers.base import (
    MailProvider,
    ProviderCapabilities,
    ProviderType,
    AuthType,
    CursorKind,
    OAuthTokens,
    ConnectionCredentials,
    FetchResult,
    IdListResult,
    OutgoingEnvelope,
    SubscriptionInfo,
)

__all__ = [
    "MailProvider",
    "ProviderCapabilities",
    "ProviderType",
    "AuthType",
    "CursorKind",
    "OAuthTokens",
    "ConnectionCredentials",
    "FetchResult",
    "IdListResult",
    "OutgoingEnvelope",
    "SubscriptionInfo",
]
