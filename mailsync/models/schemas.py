"""Pydantic request/response models for the API."""

from datetime import datetime
from typing import Optional, List, Dict, Any

from pydantic import BaseModel, Field


# ==================== Accounts ====================

class OAuthInitRequest(BaseModel):
    """Request to start an OAuth connection."""
    display_name: Optional[str] = Field(default=None, description="Friendly name for the mailbox")


class OAuthInitResponse(BaseModel):
    authorization_url: str
    state: str


class ImapConnectRequest(BaseModel):
    """Connect a mailbox with static IMAP/SMTP credentials."""
    email_address: str = Field(..., min_length=3)
    host: str = Field(..., min_length=1)
    port: int = Field(default=993, ge=1, le=65535)
    username: Optional[str] = Field(default=None, description="Defaults to the email address")
    password: str = Field(..., min_length=1)
    use_ssl: bool = True
    smtp_host: Optional[str] = None
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_use_tls: bool = True
    smtp_password: Optional[str] = Field(default=None, description="Defaults to the IMAP password")
    display_name: Optional[str] = None


class AccountResponse(BaseModel):
    id: str
    email_address: str
    provider: str
    display_name: str = ""
    is_active: bool
    last_sync_at: Optional[datetime] = None
    sync_status: str
    sync_progress: int = 0
    sync_total: int = 0
    sync_started_at: Optional[datetime] = None
    sync_completed_at: Optional[datetime] = None
    sync_error: Optional[str] = None
    subscription_status: str
    subscription_expires_at: Optional[datetime] = None
    failed_message_count: int = 0
    last_message_error: Optional[str] = None


class AccountListResponse(BaseModel):
    accounts: List[AccountResponse]
    total: int


class SyncStatusResponse(BaseModel):
    account_id: str
    status: str
    progress: int
    total: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    last_sync_at: Optional[datetime] = None
    failed_message_count: int = 0


class SyncTriggerRequest(BaseModel):
    mode: str = Field(default="standard", pattern="^(initial|quick|standard)$")


class SyncAllRequest(BaseModel):
    provider: Optional[str] = Field(default=None, pattern="^(gmail|outlook|imap)$")
    account_id: Optional[str] = None
    mode: str = Field(default="standard", pattern="^(initial|quick|standard)$")


class SyncEnqueuedResponse(BaseModel):
    job_ids: List[str]
    count: int


# ==================== Subscriptions ====================

class SubscriptionResponse(BaseModel):
    account_id: str
    email: str
    provider: str
    subscription_id: Optional[str] = None
    status: str
    expires_at: Optional[datetime] = None


class SubscriptionListResponse(BaseModel):
    subscriptions: List[SubscriptionResponse]
    total: int


class SubscriptionSweepResponse(BaseModel):
    counts: Dict[str, int]


# ==================== Webhooks ====================

class NotificationAck(BaseModel):
    status: str
    detail: Optional[Dict[str, Any]] = None
