"""
Credential lifecycle for connected accounts.

Keeps OAuth access tokens fresh, collapses concurrent refreshes for the same
account into one provider call, and audits every refresh attempt.
"""

import asyncio
import logging
import weakref
from datetime import timedelta
from typing import Awaitable, Callable, Optional, TypeVar

from mailsync.core.config import SyncSettings
from mailsync.core.exceptions import AuthError, TransientProviderError
from mailsync.models.accounts import MailAccount, as_naive_utc, utcnow
from mailsync.providers.base import AuthType, ConnectionCredentials, MailProvider, OAuthTokens
from mailsync.providers.registry import create_provider
from mailsync.services.repository import AccountRepository, AuditLogRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CredentialManager:
    """Refreshes and persists provider credentials."""

    def __init__(
        self,
        accounts: AccountRepository,
        audit: AuditLogRepository,
        settings: SyncSettings,
        provider_factory: Callable[..., MailProvider] = create_provider,
    ):
        self.accounts = accounts
        self.audit = audit
        self.settings = settings
        self.provider_factory = provider_factory
        # Entries vanish once no caller holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def needs_refresh(self, credentials: ConnectionCredentials) -> bool:
        """True when the access token expires within the refresh buffer."""
        if credentials.auth_type != AuthType.OAUTH2:
            return False
        tokens = credentials.oauth_tokens
        if tokens is None or not tokens.access_token:
            return True
        expires_at = as_naive_utc(tokens.expires_at)
        if expires_at is None:
            return False
        buffer = timedelta(seconds=self.settings.token_refresh_buffer_seconds)
        return expires_at - utcnow() < buffer

    def is_authenticated(self, account: MailAccount) -> bool:
        creds = account.credentials
        if creds.auth_type == AuthType.PASSWORD:
            return bool(account.is_active and creds.username and creds.password and creds.host)
        tokens = creds.oauth_tokens
        return bool(tokens and tokens.access_token and tokens.refresh_token)

    async def ensure_fresh_token(self, account: MailAccount) -> MailAccount:
        """Refresh the access token if it is about to expire. No-op for password accounts."""
        if not self.needs_refresh(account.credentials):
            return account
        return await self.refresh(account)

    async def refresh(self, account: MailAccount, rejected_token: Optional[str] = None) -> MailAccount:
        """
        Refresh an account's access token and persist the result.

        Args:
            account: Account whose token should be refreshed
            rejected_token: Access token a provider just rejected; if the
                stored token already differs, another caller refreshed it

        Raises:
            AuthError: If the provider rejects the refresh
        """
        if account.credentials.auth_type != AuthType.OAUTH2:
            return account

        async with self._lock_for(account.id):
            current = await self.accounts.get(account.id) or account
            tokens = current.credentials.oauth_tokens
            current_token = tokens.access_token if tokens else None

            if rejected_token is not None:
                if current_token and current_token != rejected_token:
                    return current
            elif not self.needs_refresh(current.credentials):
                return current

            if tokens is None or not tokens.refresh_token:
                await self._audit(current, "failure", "no refresh token stored")
                raise AuthError(f"Account {current.id} has no refresh token")

            provider = self.provider_factory(current.provider, current.credentials, settings=self.settings)
            try:
                fresh: Optional[OAuthTokens] = await provider.refresh_token(tokens)
            except AuthError as e:
                await self._audit(current, "failure", str(e))
                raise
            except TransientProviderError as e:
                await self._audit(current, "error", str(e))
                raise
            finally:
                await provider.close()

            if fresh is None:
                return current
            if not fresh.refresh_token:
                fresh.refresh_token = tokens.refresh_token

            current.credentials.oauth_tokens = fresh
            await self.accounts.save_credentials(current.id, current.credentials)
            await self._audit(current, "success", None, fresh)
            return current

    async def call_with_fresh_token(
        self,
        account: MailAccount,
        fn: Callable[[MailAccount], Awaitable[T]],
    ) -> T:
        """
        Run ``fn`` with a fresh token, refreshing and retrying once if the
        provider rejects the token mid-call.
        """
        account = await self.ensure_fresh_token(account)
        try:
            return await fn(account)
        except AuthError:
            if account.credentials.auth_type != AuthType.OAUTH2:
                raise
            tokens = account.credentials.oauth_tokens
            logger.info(f"Access token rejected for {account.email_address}; refreshing and retrying")
            account = await self.refresh(account, rejected_token=tokens.access_token if tokens else "")
            return await fn(account)

    async def _audit(
        self,
        account: MailAccount,
        outcome: str,
        error: Optional[str],
        tokens: Optional[OAuthTokens] = None,
    ) -> None:
        details = {"provider": account.provider.value, "email": account.email_address}
        if error:
            details["error"] = error
        if tokens and tokens.expires_at:
            details["expires_at"] = tokens.expires_at.isoformat()

        if outcome == "success":
            logger.info(f"Token refreshed for {account.email_address} ({account.provider.value})")
        else:
            logger.warning(f"Token refresh failed for {account.email_address}: {error}")

        try:
            await self.audit.record("token_refresh", account.id, outcome, details)
        except Exception as e:
            logger.warning(f"Failed to write audit entry for {account.id}: {e}")
