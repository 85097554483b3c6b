"""Per-account sync state bookkeeping."""

import logging
from typing import Optional

from mailsync.models.accounts import AccountSyncStatus, SyncState, utcnow
from mailsync.services.repository import AccountRepository

logger = logging.getLogger(__name__)


class SyncStateTracker:
    """Writes the sync_* fields of an account. No decisions are made here."""

    def __init__(self, accounts: AccountRepository):
        self.accounts = accounts

    async def begin(self, account_id: str, estimated_total: int, first_sync: bool = False) -> None:
        fields = {
            "sync_status": AccountSyncStatus.SYNCING.value,
            "sync_progress": 0,
            "sync_total": estimated_total,
            "sync_started_at": utcnow(),
            "sync_error": None,
        }
        if first_sync:
            fields["sync_completed_at"] = None
        await self.accounts.update_fields(account_id, fields)

    async def resume(self, account_id: str, processed_so_far: int) -> None:
        """
        Back to syncing for a continuation or a retried continuation.

        Progress is reset to what earlier chunks committed, so a retry that
        re-pulls from the same cursor does not count those messages twice.
        """
        await self.accounts.update_fields(account_id, {
            "sync_status": AccountSyncStatus.SYNCING.value,
            "sync_progress": processed_so_far,
            "sync_error": None,
        })

    async def advance(self, account_id: str, delta: int) -> None:
        if delta:
            await self.accounts.increment(account_id, "sync_progress", delta)

    async def complete(self, account_id: str) -> None:
        await self.accounts.update_fields(account_id, {
            "sync_status": AccountSyncStatus.COMPLETED.value,
            "sync_completed_at": utcnow(),
            "sync_error": None,
        })

    async def fail(self, account_id: str, error_text: str) -> None:
        logger.error(f"Sync failed for account {account_id}: {error_text}")
        await self.accounts.update_fields(account_id, {
            "sync_status": AccountSyncStatus.FAILED.value,
            "sync_error": error_text,
        })

    async def get(self, account_id: str) -> Optional[SyncState]:
        account = await self.accounts.get(account_id)
        return account.sync_state if account else None
