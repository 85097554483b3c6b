"""
Periodic scheduler.

Enqueues standard syncs for accounts that have not synced recently, initial
syncs for accounts that never finished one, and the subscription renewal
sweep. Runs inside the worker process when started with ``--with-scheduler``.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict

from mailsync.core.config import SyncSettings
from mailsync.models.accounts import AccountSyncStatus, as_naive_utc, utcnow
from mailsync.services.engine import SyncEngine
from mailsync.services.job_queue import JobType

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Decides what periodic work is due; the worker loop calls ``tick``."""

    def __init__(self, engine: SyncEngine, settings: Optional[SyncSettings] = None):
        self.engine = engine
        self.settings = settings or engine.settings
        self._last_sync_sweep: Optional[datetime] = None
        self._last_renewal: Optional[datetime] = None

    def _due(self, last: Optional[datetime], interval_seconds: int, now: datetime) -> bool:
        return last is None or now - last >= timedelta(seconds=interval_seconds)

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or utcnow()
        counts = {"initial": 0, "standard": 0, "renewal": 0}

        if self._due(self._last_sync_sweep, self.settings.scheduler_sync_interval_seconds, now):
            self._last_sync_sweep = now
            await self._sweep_accounts(now, counts)

        if self._due(self._last_renewal, self.settings.scheduler_renewal_interval_seconds, now):
            self._last_renewal = now
            if not await self.engine.jobs.has_pending(JobType.RENEW_SUBSCRIPTIONS):
                await self.engine.jobs.enqueue_renewal()
                counts["renewal"] = 1

        if any(counts.values()):
            logger.info(f"Scheduler enqueued: {counts}")
        return counts

    async def _sweep_accounts(self, now: datetime, counts: Dict[str, int]) -> None:
        jobs = self.engine.jobs
        stale_after = timedelta(seconds=self.settings.scheduler_sync_interval_seconds)

        for account in await self.engine.accounts.list_accounts(active_only=True):
            if account.sync_state.status == AccountSyncStatus.SYNCING:
                continue
            if await jobs.has_pending(JobType.INITIAL_SYNC, account.id):
                continue

            if account.sync_state.completed_at is None:
                await jobs.enqueue_sync(account.id, "initial")
                counts["initial"] += 1
                continue

            last = as_naive_utc(account.last_sync_at)
            if last is not None and now - last < stale_after:
                continue
            if await jobs.has_pending(JobType.SYNC_ACCOUNT, account.id):
                continue
            await jobs.enqueue_sync(account.id, "standard")
            counts["standard"] += 1
