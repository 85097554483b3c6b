"""
Base Mail Provider Interface and Data Classes

This module defines the capability contract every mailbox provider adapter
implements, along with the credential and paging types that cross it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Any, List, TYPE_CHECKING
import logging

if TYPE_CHECKING:
    from mailsync.core.config import SyncSettings
    from mailsync.providers.email.base import EmailMessage, EmailFolder
    from mailsync.providers.email.mime import MessageCircuitBreaker

logger = logging.getLogger(__name__)


class ProviderType(str, Enum):
    """Supported mailbox providers."""
    GMAIL = "gmail"
    OUTLOOK = "outlook"
    IMAP = "imap"


class AuthType(str, Enum):
    """Authentication method types."""
    OAUTH2 = "oauth2"
    PASSWORD = "password"


class CursorKind(str, Enum):
    """How a provider encodes its pagination cursor."""
    PAGE_TOKEN = "page_token"  # opaque token issued by the provider
    OFFSET = "offset"  # numeric skip value
    PAGE_INDEX = "page_index"  # page number into a search result


@dataclass
class ProviderCapabilities:
    """Describes what a provider adapter can do."""
    provider_type: ProviderType
    display_name: str
    auth_type: AuthType
    cursor_kind: CursorKind
    oauth_scopes: list[str] = field(default_factory=list)

    supports_push: bool = False
    supports_id_listing: bool = False
    supports_send: bool = True
    supports_drafts: bool = True

    rate_limit_requests_per_minute: int = 100


@dataclass
class OAuthTokens:
    """OAuth 2.0 token set."""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    token_type: str = "Bearer"
    scope: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "token_type": self.token_type,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthTokens":
        expires_at = data.get("expires_at")
        if isinstance(expires_at, str):
            expires_at = datetime.fromisoformat(expires_at)
        return cls(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope"),
        )


@dataclass
class ConnectionCredentials:
    """Unified credentials container for OAuth and password accounts."""
    auth_type: AuthType

    # OAuth2
    oauth_tokens: Optional[OAuthTokens] = None

    # Password (IMAP/SMTP)
    username: Optional[str] = None
    password: Optional[str] = None
    host: Optional[str] = None
    port: int = 993
    use_ssl: bool = True
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_use_tls: bool = True
    smtp_password: Optional[str] = None

    # Additional provider-specific fields
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "auth_type": self.auth_type.value,
            "oauth_tokens": self.oauth_tokens.to_dict() if self.oauth_tokens else None,
            "username": self.username,
            "password": self.password,
            "host": self.host,
            "port": self.port,
            "use_ssl": self.use_ssl,
            "smtp_host": self.smtp_host,
            "smtp_port": self.smtp_port,
            "smtp_use_tls": self.smtp_use_tls,
            "smtp_password": self.smtp_password,
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConnectionCredentials":
        tokens = data.get("oauth_tokens")
        return cls(
            auth_type=AuthType(data.get("auth_type", AuthType.OAUTH2.value)),
            oauth_tokens=OAuthTokens.from_dict(tokens) if tokens else None,
            username=data.get("username"),
            password=data.get("password"),
            host=data.get("host"),
            port=data.get("port", 993),
            use_ssl=data.get("use_ssl", True),
            smtp_host=data.get("smtp_host"),
            smtp_port=data.get("smtp_port", 587),
            smtp_use_tls=data.get("smtp_use_tls", True),
            smtp_password=data.get("smtp_password"),
            extra=data.get("extra", {}),
        )


@dataclass
class FetchResult:
    """One page of fully fetched messages."""
    messages: List["EmailMessage"] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False
    # Messages the provider returned but the adapter dropped (no sender, poisoned id)
    dropped: int = 0

    @property
    def returned(self) -> int:
        """Number of entries the provider handed back for this page."""
        return len(self.messages) + self.dropped


@dataclass
class IdListResult:
    """One page of provider message ids."""
    ids: List[str] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


@dataclass
class OutgoingEnvelope:
    """A message to send or save as a draft."""
    to: List[str]
    subject: str
    body_plain: str = ""
    body_html: str = ""
    cc: List[str] = field(default_factory=list)
    bcc: List[str] = field(default_factory=list)
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    thread_id: Optional[str] = None


@dataclass
class SubscriptionInfo:
    """Provider-side push subscription as returned by create/renew."""
    subscription_id: str
    expires_at: datetime
    resource: Optional[str] = None


class MailProvider(ABC):
    """
    Abstract base class for mailbox provider adapters.

    The sync orchestrator only talks to this interface; which concrete
    adapter backs an account is decided by the registry.
    """

    def __init__(
        self,
        credentials: Optional[ConnectionCredentials] = None,
        settings: Optional["SyncSettings"] = None,
        breaker: Optional["MessageCircuitBreaker"] = None,
    ):
        if settings is None:
            from mailsync.core.config import settings as default_settings
            settings = default_settings
        if breaker is None:
            from mailsync.providers.email.mime import get_circuit_breaker
            breaker = get_circuit_breaker()
        self.credentials = credentials
        self.settings = settings
        self.breaker = breaker

    @property
    @abstractmethod
    def provider_type(self) -> ProviderType:
        """Return the provider type identifier."""
        pass

    @property
    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        """Return the provider's capabilities."""
        pass

    # ==================== Authentication ====================

    @abstractmethod
    def is_authenticated(self) -> bool:
        """True when the stored credentials are complete enough to call the provider."""
        pass

    @abstractmethod
    async def refresh_token(self, tokens: Optional[OAuthTokens] = None) -> Optional[OAuthTokens]:
        """
        Obtain a new access token.

        Returns:
            Fresh token set. ``refresh_token`` is None when the provider
            did not issue a new one. Static-credential providers verify
            their login instead and return None.

        Raises:
            AuthError: If the provider rejects the refresh
        """
        pass

    async def get_authorization_url(self, redirect_uri: str, state: str) -> str:
        """Build the consent URL the user is redirected to."""
        raise NotImplementedError("OAuth not supported for this provider")

    async def complete_authorization(self, code: str, redirect_uri: str) -> OAuthTokens:
        """Exchange an authorization code for tokens."""
        raise NotImplementedError("OAuth not supported for this provider")

    # ==================== Fetching ====================

    @abstractmethod
    async def fetch_batch(
        self,
        limit: int,
        cursor: Optional[str] = None,
        include_read: bool = False,
    ) -> FetchResult:
        """
        Fetch up to ``limit`` inbox messages starting at ``cursor``.

        Args:
            limit: Maximum messages for this round-trip
            cursor: Provider cursor returned by the previous call
            include_read: Include already-read messages, otherwise unread only
        """
        pass

    @abstractmethod
    async def fetch_by_id(self, provider_message_id: str) -> Optional["EmailMessage"]:
        """Fetch one message, or None when it is gone, dropped or poisoned."""
        pass

    async def fetch_ids(
        self,
        limit: int,
        cursor: Optional[str] = None,
        include_read: bool = False,
    ) -> IdListResult:
        """List message ids only. Available when ``supports_id_listing`` is set."""
        raise NotImplementedError(f"{self.provider_type.value} does not support id listing")

    # ==================== Sending ====================

    @abstractmethod
    async def send(self, envelope: OutgoingEnvelope) -> bool:
        pass

    @abstractmethod
    async def save_draft(self, envelope: OutgoingEnvelope) -> Optional[str]:
        pass

    # ==================== Mailbox info ====================

    @abstractmethod
    async def account_info(self) -> dict[str, Any]:
        """Return at least ``total_message_count`` and ``email``."""
        pass

    @abstractmethod
    async def list_folders(self) -> List["EmailFolder"]:
        pass

    # ==================== Push subscriptions ====================

    async def create_subscription(
        self,
        account_id: str,
        callback_url: str,
        client_state: str,
        expires_at: datetime,
    ) -> SubscriptionInfo:
        """
        Register a push subscription.

        Raises:
            SubscriptionError: If the provider rejects the request
        """
        raise NotImplementedError(f"{self.provider_type.value} does not support push")

    async def renew_subscription(
        self,
        account_id: str,
        subscription_id: str,
        callback_url: str,
        client_state: str,
        expires_at: datetime,
    ) -> SubscriptionInfo:
        """
        Extend an existing subscription.

        Raises:
            SubscriptionNotFound: If the provider no longer knows the subscription
            SubscriptionError: For any other rejection
        """
        raise NotImplementedError(f"{self.provider_type.value} does not support push")

    async def delete_subscription(self, subscription_id: str) -> bool:
        raise NotImplementedError(f"{self.provider_type.value} does not support push")

    # ==================== Lifecycle ====================

    async def close(self) -> None:
        """Release network resources."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
