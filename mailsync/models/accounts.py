"""
Account aggregate and the state embedded on it.

A MailAccount document carries credentials, the pagination cursor, the
sync state tracker fields and the push subscription in one place so every
mutation is a single-document update.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Any, Dict

from mailsync.providers.base import ProviderType, ConnectionCredentials


def utcnow() -> datetime:
    """Naive UTC now, matching what MongoDB hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize an aware datetime to naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class AccountSyncStatus(str, Enum):
    """Per-account sync state."""
    IDLE = "idle"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    """Push subscription lifecycle."""
    NONE = "none"
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    DELETED = "deleted"


@dataclass
class SyncState:
    """Operator-facing sync progress for one account."""
    status: AccountSyncStatus = AccountSyncStatus.IDLE
    progress: int = 0
    total: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sync_status": self.status.value,
            "sync_progress": self.progress,
            "sync_total": self.total,
            "sync_started_at": self.started_at,
            "sync_completed_at": self.completed_at,
            "sync_error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncState":
        return cls(
            status=AccountSyncStatus(data.get("sync_status") or AccountSyncStatus.IDLE.value),
            progress=data.get("sync_progress", 0) or 0,
            total=data.get("sync_total", 0) or 0,
            started_at=data.get("sync_started_at"),
            completed_at=data.get("sync_completed_at"),
            error=data.get("sync_error"),
        )


@dataclass
class PushSubscription:
    """A provider push subscription bound to one account."""
    subscription_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.NONE
    expires_at: Optional[datetime] = None
    client_state: Optional[str] = None
    callback_url: Optional[str] = None
    resource: Optional[str] = None
    created_at: Optional[datetime] = None
    renewed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "status": self.status.value,
            "expires_at": self.expires_at,
            "client_state": self.client_state,
            "callback_url": self.callback_url,
            "resource": self.resource,
            "created_at": self.created_at,
            "renewed_at": self.renewed_at,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PushSubscription":
        if not data:
            return cls()
        return cls(
            subscription_id=data.get("subscription_id"),
            status=SubscriptionStatus(data.get("status") or SubscriptionStatus.NONE.value),
            expires_at=data.get("expires_at"),
            client_state=data.get("client_state"),
            callback_url=data.get("callback_url"),
            resource=data.get("resource"),
            created_at=data.get("created_at"),
            renewed_at=data.get("renewed_at"),
        )


@dataclass
class MailAccount:
    """A connected mailbox."""
    id: str
    email_address: str
    provider: ProviderType
    credentials: ConnectionCredentials
    display_name: str = ""
    is_active: bool = True
    last_sync_at: Optional[datetime] = None
    sync_cursor: Optional[str] = None
    sync_state: SyncState = field(default_factory=SyncState)
    subscription: PushSubscription = field(default_factory=PushSubscription)
    failed_message_count: int = 0
    last_message_error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_summary(self) -> Dict[str, Any]:
        """Public view without credentials."""
        return {
            "id": self.id,
            "email_address": self.email_address,
            "provider": self.provider.value,
            "display_name": self.display_name,
            "is_active": self.is_active,
            "last_sync_at": self.last_sync_at,
            **self.sync_state.to_dict(),
            "subscription_status": self.subscription.status.value,
            "subscription_expires_at": self.subscription.expires_at,
            "failed_message_count": self.failed_message_count,
            "last_message_error": self.last_message_error,
        }
