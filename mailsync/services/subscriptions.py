"""
Push subscription lifecycle.

Creates, renews and deletes provider push subscriptions, validates incoming
notifications against the per-account client state, and turns a validated
notification into a quick sync unit.
"""

import hashlib
import hmac
import logging
from datetime import datetime, timedelta
from typing import Optional, Any, Awaitable, Callable, Dict, List

from mailsync.core.config import SyncSettings
from mailsync.core.credentials import CredentialManager
from mailsync.core.exceptions import (
    AuthError,
    SubscriptionError,
    SubscriptionNotFound,
    TransientProviderError,
)
from mailsync.models.accounts import (
    MailAccount,
    PushSubscription,
    SubscriptionStatus,
    as_naive_utc,
    utcnow,
)
from mailsync.providers.base import MailProvider, ProviderType, SubscriptionInfo
from mailsync.providers.registry import create_provider
from mailsync.services.job_queue import JobQueue
from mailsync.services.repository import AccountRepository

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Owns the ``subscription`` sub-document of every account."""

    def __init__(
        self,
        accounts: AccountRepository,
        credentials: CredentialManager,
        dispatcher: JobQueue,
        settings: SyncSettings,
        provider_factory: Callable[..., MailProvider] = create_provider,
    ):
        self.accounts = accounts
        self.credentials = credentials
        self.dispatcher = dispatcher
        self.settings = settings
        self.provider_factory = provider_factory

    # ==================== Helpers ====================

    def client_state_for(self, account: MailAccount) -> str:
        """Deterministic per-account secret echoed back by the provider."""
        raw = f"{account.id}{account.email_address}{self.settings.webhook_secret}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def callback_url_for(self, account: MailAccount, client_state: str) -> str:
        base = self.settings.public_base_url.rstrip("/")
        if account.provider == ProviderType.GMAIL:
            # Pub/Sub push config for the account topic must point here
            return f"{base}/api/v1/webhooks/gmail?token={client_state}"
        return f"{base}/api/v1/webhooks/{account.id}"

    def validate_callback(self, account: MailAccount, received_secret: Optional[str]) -> bool:
        if not received_secret:
            return False
        expected = self.client_state_for(account)
        return hmac.compare_digest(expected.encode("utf-8"), received_secret.encode("utf-8"))

    def supports_push(self, account: MailAccount) -> bool:
        provider = self.provider_factory(account.provider, account.credentials, settings=self.settings)
        return provider.capabilities.supports_push

    def status_of(self, subscription: PushSubscription, now: Optional[datetime] = None) -> SubscriptionStatus:
        """Effective status, accounting for time passing since it was stored."""
        if subscription.status not in (SubscriptionStatus.ACTIVE, SubscriptionStatus.EXPIRING_SOON):
            return subscription.status
        expires_at = as_naive_utc(subscription.expires_at)
        if expires_at is None:
            return subscription.status
        now = now or utcnow()
        if expires_at <= now:
            return SubscriptionStatus.EXPIRED
        if expires_at - now < timedelta(seconds=self.settings.subscription_renewal_window_seconds):
            return SubscriptionStatus.EXPIRING_SOON
        return SubscriptionStatus.ACTIVE

    def needs_renewal(self, account: MailAccount, now: Optional[datetime] = None) -> bool:
        if not account.subscription.subscription_id:
            return False
        return self.status_of(account.subscription, now) in (
            SubscriptionStatus.EXPIRING_SOON,
            SubscriptionStatus.EXPIRED,
        )

    async def _call(self, account: MailAccount, op: Callable[[MailProvider], Awaitable[Any]]) -> Any:
        async def run(current: MailAccount):
            async with self.provider_factory(current.provider, current.credentials, settings=self.settings) as provider:
                return await op(provider)

        return await self.credentials.call_with_fresh_token(account, run)

    def _requested_expiry(self, now: datetime) -> datetime:
        return now + timedelta(seconds=self.settings.subscription_lifetime_seconds)

    @staticmethod
    def _effective_expiry(info: SubscriptionInfo, requested: datetime, now: datetime) -> datetime:
        expires_at = as_naive_utc(info.expires_at)
        if expires_at is None or expires_at <= now:
            return requested
        return expires_at

    # ==================== Operations ====================

    async def create(self, account: MailAccount) -> Optional[str]:
        """
        Register a push subscription for the account.

        Returns:
            Provider subscription id, or None when the provider refused
        """
        now = utcnow()
        requested = self._requested_expiry(now)
        client_state = self.client_state_for(account)
        callback_url = self.callback_url_for(account, client_state)

        await self.accounts.set_subscription(account.id, PushSubscription(
            status=SubscriptionStatus.PENDING,
            client_state=client_state,
            callback_url=callback_url,
            created_at=now,
        ))

        try:
            info: SubscriptionInfo = await self._call(
                account,
                lambda p: p.create_subscription(account.id, callback_url, client_state, requested),
            )
        except (SubscriptionError, TransientProviderError) as e:
            logger.error(f"Failed to create subscription for {account.email_address}: {e}")
            await self.accounts.set_subscription(account.id, PushSubscription())
            return None

        subscription = PushSubscription(
            subscription_id=info.subscription_id,
            status=SubscriptionStatus.ACTIVE,
            expires_at=self._effective_expiry(info, requested, now),
            client_state=client_state,
            callback_url=callback_url,
            resource=info.resource,
            created_at=now,
        )
        await self.accounts.set_subscription(account.id, subscription)
        account.subscription = subscription
        logger.info(
            f"Created subscription {info.subscription_id} for {account.email_address} "
            f"(expires {subscription.expires_at})"
        )
        return info.subscription_id

    async def renew(self, account: MailAccount) -> bool:
        """Extend the account's subscription, recreating it if the provider lost it."""
        current = account.subscription
        if not current.subscription_id:
            return await self.create(account) is not None

        now = utcnow()
        requested = self._requested_expiry(now)
        client_state = current.client_state or self.client_state_for(account)
        callback_url = current.callback_url or self.callback_url_for(account, client_state)

        try:
            info: SubscriptionInfo = await self._call(
                account,
                lambda p: p.renew_subscription(
                    account.id, current.subscription_id, callback_url, client_state, requested
                ),
            )
        except SubscriptionNotFound:
            logger.warning(
                f"Subscription {current.subscription_id} for {account.email_address} "
                f"no longer exists; recreating"
            )
            await self.accounts.set_subscription(account.id, PushSubscription())
            return await self.create(account) is not None
        except SubscriptionError as e:
            logger.warning(f"Renewal rejected for {account.email_address} ({e}); recreating")
            return await self.create(account) is not None
        except TransientProviderError as e:
            logger.error(f"Renewal of {current.subscription_id} failed: {e}")
            return False

        current.subscription_id = info.subscription_id or current.subscription_id
        current.status = SubscriptionStatus.ACTIVE
        current.expires_at = self._effective_expiry(info, requested, now)
        current.client_state = client_state
        current.callback_url = callback_url
        current.renewed_at = now
        if info.resource:
            current.resource = info.resource
        await self.accounts.set_subscription(account.id, current)
        logger.info(f"Renewed subscription for {account.email_address} until {current.expires_at}")
        return True

    async def delete(self, account: MailAccount) -> bool:
        """Remove the provider-side subscription and mark local state deleted."""
        current = account.subscription
        deleted = True
        if current.subscription_id:
            try:
                deleted = await self._call(account, lambda p: p.delete_subscription(current.subscription_id))
            except (SubscriptionError, TransientProviderError, AuthError) as e:
                logger.warning(f"Failed to delete subscription {current.subscription_id}: {e}")
                deleted = False

        current.status = SubscriptionStatus.DELETED
        await self.accounts.set_subscription(account.id, current)
        logger.info(f"Subscription for {account.email_address} marked deleted")
        return deleted

    async def list(self) -> List[Dict[str, Any]]:
        now = utcnow()
        rows = []
        for account in await self.accounts.list_accounts():
            sub = account.subscription
            if sub.status == SubscriptionStatus.NONE and not sub.subscription_id:
                continue
            rows.append({
                "account_id": account.id,
                "email": account.email_address,
                "provider": account.provider.value,
                "subscription_id": sub.subscription_id,
                "status": self.status_of(sub, now).value,
                "expires_at": sub.expires_at,
            })
        return rows

    async def renew_expiring(self) -> Dict[str, int]:
        """
        Sweep active push-capable accounts: create missing subscriptions for
        accounts whose first sync finished, renew those inside the window.
        """
        now = utcnow()
        counts = {"created": 0, "renewed": 0, "failed": 0}

        for account in await self.accounts.list_accounts(active_only=True):
            if not self.supports_push(account):
                continue
            sub = account.subscription
            try:
                if not sub.subscription_id or sub.status == SubscriptionStatus.DELETED:
                    if account.sync_state.completed_at is None:
                        continue
                    if await self.create(account):
                        counts["created"] += 1
                    else:
                        counts["failed"] += 1
                elif self.needs_renewal(account, now):
                    if await self.renew(account):
                        counts["renewed"] += 1
                    else:
                        counts["failed"] += 1
            except AuthError as e:
                logger.error(f"Auth failure renewing subscription for {account.email_address}: {e}")
                counts["failed"] += 1

        logger.info(f"Subscription sweep: {counts}")
        return counts

    async def cleanup(self) -> Dict[str, int]:
        """Delete subscriptions of inactive accounts and clear expired local state."""
        now = utcnow()
        counts = {"deleted": 0, "cleared": 0}

        for account in await self.accounts.list_accounts():
            sub = account.subscription
            if not account.is_active:
                if sub.subscription_id and sub.status != SubscriptionStatus.DELETED:
                    await self.delete(account)
                    counts["deleted"] += 1
                continue
            if sub.subscription_id and self.status_of(sub, now) == SubscriptionStatus.EXPIRED:
                await self.accounts.set_subscription(account.id, PushSubscription())
                counts["cleared"] += 1

        logger.info(f"Subscription cleanup: {counts}")
        return counts

    async def handle_notification(
        self,
        account: MailAccount,
        received_secret: Optional[str],
        resource: Optional[str] = None,
    ) -> bool:
        """
        Validate a push notification and enqueue a quick sync.

        Returns:
            False if the secret did not match (nothing is touched)
        """
        if not self.validate_callback(account, received_secret):
            logger.warning(f"Rejected notification for {account.id}: client state mismatch")
            return False

        if resource and _is_newer(resource, account.subscription.resource):
            await self.accounts.update_fields(account.id, {"subscription.resource": resource})

        await self.dispatcher.enqueue_sync(account.id, "quick")
        logger.info(f"Notification accepted for {account.email_address}; quick sync enqueued")
        return True


def _is_newer(candidate: str, current: Optional[str]) -> bool:
    if not current:
        return True
    try:
        return int(candidate) > int(current)
    except ValueError:
        return candidate != current
