"""Mail sync configuration settings."""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import List


class SyncSettings(BaseSettings):
    """Sync engine, worker and API configuration."""

    # API Settings
    api_port: int = Field(default=8000, description="API server port")
    debug: bool = Field(default=False, description="Debug mode")
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Allowed CORS origins"
    )
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Externally reachable base URL used for OAuth and push callbacks"
    )

    # MongoDB Settings
    mongodb_uri: str = Field(
        default="mongodb://localhost:27017/?directConnection=true",
        description="MongoDB connection string"
    )
    mongodb_database: str = Field(default="mailsync", description="Database name")

    # Credential encryption at rest
    credential_vault_key: str = Field(
        default="",
        description="Master key for sealing stored credentials; an ephemeral key is used when empty"
    )
    credential_vault_salt: str = Field(default="mailsync-credential-vault-salt")

    # Batch sizing
    default_batch_size: int = Field(default=5, description="Messages per provider round-trip")
    default_sync_limit: int = Field(default=25, description="Messages pulled per standard sync")
    initial_sync_limit: int = Field(default=200, description="Total cap for the first sync of an account")
    initial_sync_batch_size: int = Field(default=50)
    initial_sync_chunk: int = Field(
        default=200,
        description="Messages pulled by one initial-sync invocation before it hands off to a continuation"
    )
    quick_sync_limit: int = Field(default=10)
    quick_sync_batch_size: int = Field(default=10)
    use_optimized_sync: bool = Field(
        default=True,
        description="Use ID listing + per-message fan-out where the provider supports it"
    )

    # Timing
    sync_cooldown_seconds: int = Field(
        default=30,
        description="Quick syncs are skipped when the account synced within this window"
    )
    continuation_delay_seconds: int = Field(default=10)
    token_refresh_buffer_seconds: int = Field(default=300)
    provider_timeout_seconds: float = Field(default=30.0)

    # Push subscriptions
    subscription_lifetime_seconds: int = Field(default=2 * 24 * 3600)
    subscription_renewal_window_seconds: int = Field(default=24 * 3600)
    webhook_secret: str = Field(
        default="change-me-in-production",
        description="Server-side secret mixed into every subscription client state"
    )
    gmail_pubsub_topic: str = Field(
        default="",
        description="Pub/Sub topic for Gmail watch; may contain an {account_id} placeholder"
    )

    # Job retry policy
    sync_max_attempts: int = Field(default=3)
    sync_backoff_seconds: List[int] = Field(default=[60, 300, 600])
    message_max_attempts: int = Field(default=3)
    message_backoff_seconds: List[int] = Field(default=[30, 60, 120])
    initial_sync_timeout_seconds: int = Field(default=1800)
    sync_timeout_seconds: int = Field(default=1200)
    message_timeout_seconds: int = Field(default=120)
    renewal_timeout_seconds: int = Field(default=300)

    # Dedup guard
    dedup_lock_ttl_seconds: int = Field(default=30)
    dedup_lock_retries: int = Field(default=3)
    dedup_lock_retry_delay: float = Field(default=0.1)

    # Message extraction
    max_mime_depth: int = Field(default=25, description="Deepest MIME nesting walked before giving up")
    poisoned_message_ids: List[str] = Field(
        default=["1985b8d55892dd7f"],
        description="Provider message ids that are never fetched"
    )
    snippet_length: int = Field(default=150)

    # OAuth clients
    google_client_id: str = Field(default="")
    google_client_secret: str = Field(default="")
    microsoft_client_id: str = Field(default="")
    microsoft_client_secret: str = Field(default="")
    microsoft_tenant: str = Field(default="common")

    # Worker / scheduler
    worker_poll_interval: float = Field(default=1.0)
    job_lease_seconds: int = Field(
        default=3600,
        description="RUNNING jobs older than this are considered orphaned and re-queued"
    )
    scheduler_sync_interval_seconds: int = Field(default=300)
    scheduler_renewal_interval_seconds: int = Field(default=3600)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


def get_settings() -> SyncSettings:
    """Load settings from environment and .env."""
    return SyncSettings()


settings = get_settings()
