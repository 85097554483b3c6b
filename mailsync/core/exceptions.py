"""
Mail sync error taxonomy.

Per-message errors never escalate past the batch; provider/network errors
fail the invocation and are retried by the job layer; exhausted retries
deactivate the account.
"""

from typing import Optional


class MailSyncError(Exception):
    """Base exception for the sync engine."""
    pass


class AuthError(MailSyncError):
    """Credentials are invalid or the provider rejected a token refresh."""
    pass


class TransientProviderError(MailSyncError):
    """Network timeout, 5xx or other retryable provider failure."""
    pass


class RateLimitError(TransientProviderError):
    """Provider rate limit hit."""

    def __init__(self, message: str, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class MessageExtractionError(MailSyncError):
    """A single message could not be parsed."""

    def __init__(self, message: str, provider_message_id: Optional[str] = None):
        super().__init__(message)
        self.provider_message_id = provider_message_id


class DuplicateMessageError(MailSyncError):
    """Storage rejected a message whose dedup key already exists."""
    pass


class SubscriptionError(MailSyncError):
    """Provider rejected a push subscription create/renew/delete."""
    pass


class SubscriptionNotFound(SubscriptionError):
    """The provider no longer knows the subscription being renewed."""
    pass
