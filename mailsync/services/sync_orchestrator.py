"""
Sync Orchestrator

Drives one sync invocation for one account: fetch a bounded batch from the
provider, pass every candidate through the dedup guard, update progress, and
either chain a continuation unit or mark the account complete.

The orchestrator never branches on provider type; behaviour differences come
from the adapter's advertised capabilities.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import timedelta
from enum import Enum
from typing import Optional, Any, Awaitable, Callable, Dict, List, TYPE_CHECKING

from mailsync.core.config import SyncSettings
from mailsync.core.credentials import CredentialManager
from mailsync.core.exceptions import TransientProviderError
from mailsync.models.accounts import AccountSyncStatus, MailAccount, as_naive_utc, utcnow
from mailsync.providers.base import MailProvider, ProviderType
from mailsync.providers.registry import create_provider
from mailsync.services.dedup import ClaimOutcome, DedupGuard
from mailsync.services.job_queue import JobQueue, JobType
from mailsync.services.repository import AccountRepository, AuditLogRepository, MessageRepository
from mailsync.services.state_tracker import SyncStateTracker

if TYPE_CHECKING:
    from mailsync.services.subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)


class SyncMode(str, Enum):
    INITIAL = "initial"
    QUICK = "quick"
    STANDARD = "standard"


@dataclass
class SyncRequest:
    """One unit of sync work, as carried in a job payload."""
    account_id: str
    mode: SyncMode = SyncMode.STANDARD
    cursor: Optional[str] = None
    processed_so_far: int = 0
    limit: Optional[int] = None
    batch_size: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SyncRequest":
        return cls(
            account_id=payload["account_id"],
            mode=SyncMode(payload.get("mode") or SyncMode.STANDARD.value),
            cursor=payload.get("cursor"),
            processed_so_far=payload.get("processed_so_far", 0) or 0,
            limit=payload.get("limit"),
            batch_size=payload.get("batch_size"),
        )


@dataclass
class SyncReport:
    """Outcome of one invocation."""
    account_id: str
    mode: str
    status: str = "completed"  # completed | continued | skipped
    pulled: int = 0
    processed: int = 0
    skipped: int = 0
    contended: int = 0
    dropped: int = 0
    failed: int = 0
    enqueued: int = 0
    next_cursor: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class _ProviderSession:
    """
    Holds one adapter instance for the duration of an invocation and rebuilds
    it whenever the credential manager hands back a refreshed token.
    """

    def __init__(
        self,
        account: MailAccount,
        credentials: CredentialManager,
        factory: Callable[..., MailProvider],
        settings: SyncSettings,
    ):
        self.account = account
        self.credentials = credentials
        self.factory = factory
        self.settings = settings
        self.provider: Optional[MailProvider] = None
        self._token: Optional[str] = None

    @staticmethod
    def _token_of(account: MailAccount) -> Optional[str]:
        tokens = account.credentials.oauth_tokens
        return tokens.access_token if tokens else None

    async def _provider_for(self, account: MailAccount) -> MailProvider:
        token = self._token_of(account)
        if self.provider is None or token != self._token:
            if self.provider is not None:
                await self.provider.close()
            self.provider = self.factory(account.provider, account.credentials, settings=self.settings)
            self._token = token
        self.account = account
        return self.provider

    async def capabilities(self):
        if self.provider is None:
            self.provider = self.factory(self.account.provider, self.account.credentials, settings=self.settings)
            self._token = self._token_of(self.account)
        return self.provider.capabilities

    async def call(self, op: Callable[[MailProvider], Awaitable[Any]]) -> Any:
        async def attempt(account: MailAccount):
            provider = await self._provider_for(account)
            return await op(provider)

        return await self.credentials.call_with_fresh_token(self.account, attempt)

    async def close(self) -> None:
        if self.provider is not None:
            await self.provider.close()
            self.provider = None


class SyncOrchestrator:
    """Runs sync invocations and single-message units."""

    def __init__(
        self,
        accounts: AccountRepository,
        messages: MessageRepository,
        dedup: DedupGuard,
        tracker: SyncStateTracker,
        credentials: CredentialManager,
        dispatcher: JobQueue,
        settings: SyncSettings,
        provider_factory: Callable[..., MailProvider] = create_provider,
        subscriptions: Optional["SubscriptionManager"] = None,
        audit: Optional[AuditLogRepository] = None,
    ):
        self.accounts = accounts
        self.messages = messages
        self.dedup = dedup
        self.tracker = tracker
        self.credentials = credentials
        self.dispatcher = dispatcher
        self.settings = settings
        self.provider_factory = provider_factory
        self.subscriptions = subscriptions
        self.audit = audit

    def _session(self, account: MailAccount) -> _ProviderSession:
        return _ProviderSession(account, self.credentials, self.provider_factory, self.settings)

    def _mode_limits(self, request: SyncRequest) -> tuple[int, int, bool]:
        """Total limit, batch size and include_read for a request."""
        s = self.settings
        if request.mode == SyncMode.INITIAL:
            limit, batch, include_read = s.initial_sync_limit, s.initial_sync_batch_size, True
        elif request.mode == SyncMode.QUICK:
            limit, batch, include_read = s.quick_sync_limit, s.quick_sync_batch_size, False
        else:
            limit, batch, include_read = s.default_sync_limit, s.default_batch_size, False
        return request.limit or limit, request.batch_size or batch, include_read

    def _in_cooldown(self, account: MailAccount) -> bool:
        last = as_naive_utc(account.last_sync_at)
        if last is None:
            return False
        return utcnow() - last < timedelta(seconds=self.settings.sync_cooldown_seconds)

    async def _initial_sync_running(self, account: MailAccount) -> bool:
        """An initial sync owns the sync_* fields until its last chunk completes."""
        if account.sync_state.status != AccountSyncStatus.SYNCING:
            return False
        return await self.dispatcher.has_pending(JobType.INITIAL_SYNC, account.id)

    # ==================== Sync invocation ====================

    async def run(self, request: SyncRequest) -> SyncReport:
        """
        Execute one sync invocation.

        Provider and auth failures propagate so the job layer can retry;
        failures on individual messages are counted and never escalate.
        """
        report = SyncReport(account_id=request.account_id, mode=request.mode.value)

        account = await self.accounts.get(request.account_id)
        if account is None or not account.is_active:
            report.status = "skipped"
            report.reason = "account missing or inactive"
            logger.info(f"Skipping sync for {request.account_id}: {report.reason}")
            return report

        if request.mode != SyncMode.INITIAL and await self._initial_sync_running(account):
            report.status = "skipped"
            report.reason = "initial sync in progress"
            logger.info(f"{request.mode.value.capitalize()} sync for {account.email_address} skipped: {report.reason}")
            return report

        if request.mode == SyncMode.QUICK:
            if self._in_cooldown(account):
                report.status = "skipped"
                report.reason = "cooldown"
                logger.debug(f"Quick sync for {account.email_address} skipped (cooldown)")
                return report
            # Best effort: two notifications racing here may both pass
            await self.accounts.touch_last_sync(account.id)

        limit, batch_size, include_read = self._mode_limits(request)
        session = self._session(account)
        try:
            capabilities = await session.capabilities()
            optimized = (
                request.mode != SyncMode.INITIAL
                and self.settings.use_optimized_sync
                and capabilities.supports_id_listing
            )

            if request.mode == SyncMode.INITIAL:
                await self._begin_initial(session, request, limit)
            else:
                await self.tracker.begin(account.id, limit)

            logger.info(
                f"Starting {request.mode.value} sync for {account.email_address} "
                f"(limit={limit}, batch={batch_size}, optimized={optimized})"
            )

            if optimized:
                await self._fan_out(session, request, report, limit, batch_size, include_read)
            else:
                await self._pull(session, request, report, limit, batch_size, include_read)

            await self._finish(session.account, request, report, limit, capabilities.supports_push)
        finally:
            await session.close()

        logger.info(
            f"Sync {report.status} for {account.email_address}: pulled={report.pulled} "
            f"processed={report.processed} skipped={report.skipped} enqueued={report.enqueued} "
            f"failed={report.failed}"
        )
        return report

    async def _begin_initial(self, session: _ProviderSession, request: SyncRequest, limit: int) -> None:
        if request.processed_so_far > 0:
            await self.tracker.resume(request.account_id, request.processed_so_far)
            return
        estimated = limit
        try:
            info = await session.call(lambda p: p.account_info())
            total = int(info.get("total_message_count") or 0)
            if total:
                estimated = min(total, limit)
        except TransientProviderError as e:
            logger.warning(f"Could not estimate mailbox size for {request.account_id}: {e}")
        await self.tracker.begin(request.account_id, estimated, first_sync=True)

    def _invocation_cap(self, request: SyncRequest, limit: int) -> int:
        remaining = max(limit - request.processed_so_far, 0)
        if request.mode == SyncMode.INITIAL:
            return min(self.settings.initial_sync_chunk, remaining)
        return remaining

    async def _pull(
        self,
        session: _ProviderSession,
        request: SyncRequest,
        report: SyncReport,
        limit: int,
        batch_size: int,
        include_read: bool,
    ) -> None:
        """Standard strategy: fetch full messages and ingest them in provider order."""
        cap = self._invocation_cap(request, limit)
        cursor = request.cursor
        exhausted = False

        while report.pulled < cap:
            want = min(batch_size, cap - report.pulled)
            result = await session.call(
                lambda p, c=cursor, n=want: p.fetch_batch(n, c, include_read=include_read)
            )
            if result.returned == 0:
                exhausted = True
                break

            for message in result.messages:
                try:
                    outcome = await self.dedup.ingest(request.account_id, message)
                except Exception as e:
                    report.failed += 1
                    logger.error(
                        f"Failed to store message {message.provider_message_id} "
                        f"for {request.account_id}: {e}"
                    )
                    continue
                if outcome == ClaimOutcome.CLAIMED:
                    report.processed += 1
                elif outcome == ClaimOutcome.ALREADY_EXISTS:
                    report.skipped += 1
                else:
                    report.contended += 1

            report.dropped += result.dropped
            report.pulled += result.returned
            if request.mode == SyncMode.INITIAL:
                await self.tracker.advance(request.account_id, result.returned)

            cursor = result.next_cursor
            if not result.has_more or not cursor or result.returned < want:
                exhausted = True
                break

        report.next_cursor = None if exhausted else cursor

    async def _fan_out(
        self,
        session: _ProviderSession,
        request: SyncRequest,
        report: SyncReport,
        limit: int,
        batch_size: int,
        include_read: bool,
    ) -> None:
        """Optimized strategy: list ids, enqueue one unit per id not yet stored."""
        cap = self._invocation_cap(request, limit)
        cursor = request.cursor

        while report.pulled < cap:
            want = min(batch_size, cap - report.pulled)
            result = await session.call(
                lambda p, c=cursor, n=want: p.fetch_ids(n, c, include_read=include_read)
            )
            if not result.ids:
                break

            known = await self.messages.known_ids(request.account_id, result.ids)
            for provider_message_id in result.ids:
                if provider_message_id in known:
                    report.skipped += 1
                    continue
                await self.dispatcher.enqueue_message(request.account_id, provider_message_id)
                report.enqueued += 1

            report.pulled += len(result.ids)
            cursor = result.next_cursor
            if not result.has_more or not cursor or len(result.ids) < want:
                break

        report.next_cursor = None

    async def _finish(
        self,
        account: MailAccount,
        request: SyncRequest,
        report: SyncReport,
        limit: int,
        supports_push: bool,
    ) -> None:
        total_so_far = request.processed_so_far + report.pulled

        if request.mode == SyncMode.INITIAL and report.next_cursor and total_so_far < limit:
            await self.accounts.update_fields(account.id, {"sync_cursor": report.next_cursor})
            await self.dispatcher.enqueue_sync(
                account.id,
                SyncMode.INITIAL.value,
                cursor=report.next_cursor,
                processed_so_far=total_so_far,
                delay_seconds=self.settings.continuation_delay_seconds,
            )
            report.status = "continued"
            logger.info(
                f"Initial sync for {account.email_address} continues at {total_so_far}/{limit}"
            )
            return

        await self.tracker.complete(account.id)
        await self.accounts.update_fields(account.id, {"last_sync_at": utcnow(), "sync_cursor": None})
        report.status = "completed"

        if request.mode == SyncMode.INITIAL and supports_push and self.subscriptions is not None:
            refreshed = await self.accounts.get(account.id) or account
            await self.subscriptions.create(refreshed)

    # ==================== Single-message units ====================

    async def process_message(self, account_id: str, provider_message_id: str) -> Optional[ClaimOutcome]:
        """
        Fetch and ingest one message enqueued by the fan-out strategy.

        Returns None when the account is gone or the provider yields nothing
        for the id (deleted, dropped, or poisoned); these are not retried.
        """
        account = await self.accounts.get(account_id)
        if account is None or not account.is_active:
            logger.info(f"Dropping message unit {provider_message_id}: account {account_id} inactive")
            return None

        session = self._session(account)
        try:
            message = await session.call(lambda p: p.fetch_by_id(provider_message_id))
        finally:
            await session.close()

        if message is None:
            logger.info(f"Message {provider_message_id} yielded nothing for {account_id}; skipping")
            return None

        outcome = await self.dedup.ingest(account_id, message)
        if outcome == ClaimOutcome.LOCK_CONTENDED:
            logger.debug(f"Message {provider_message_id} is being stored by another worker")
        return outcome

    # ==================== Failure handling ====================

    async def fail_account(self, account_id: str, error: str) -> None:
        """Terminal failure after retries: deactivate and record the error."""
        await self.accounts.deactivate(account_id, error)
        await self.tracker.fail(account_id, error)

        if self.audit is not None:
            try:
                await self.audit.record("account_deactivated", account_id, "failure", {"error": error})
            except Exception as e:
                logger.warning(f"Failed to write audit entry for {account_id}: {e}")

        if self.subscriptions is not None:
            account = await self.accounts.get(account_id)
            if account is not None and account.subscription.subscription_id:
                await self.subscriptions.delete(account)

    async def record_message_failure(self, account_id: str, provider_message_id: str, error: str) -> None:
        logger.warning(f"Giving up on message {provider_message_id} for {account_id}: {error}")
        await self.accounts.record_message_failure(account_id, f"{provider_message_id}: {error}")

    # ==================== Sync-all ====================

    async def sync_all(
        self,
        provider: Optional[ProviderType] = None,
        account_id: Optional[str] = None,
        mode: SyncMode = SyncMode.STANDARD,
    ) -> List[str]:
        """Enqueue a one-off sync for one account or every active account of a provider."""
        if account_id:
            account = await self.accounts.get(account_id)
            targets = [account] if account and account.is_active else []
        else:
            targets = await self.accounts.list_accounts(provider=provider, active_only=True)

        job_ids = []
        for account in targets:
            job_ids.append(await self.dispatcher.enqueue_sync(account.id, mode.value))
        logger.info(f"Enqueued {mode.value} sync for {len(job_ids)} accounts")
        return job_ids
