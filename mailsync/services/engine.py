"""Wires the sync services together over one database handle."""

import logging
from typing import Callable, Optional

from mailsync.core.config import SyncSettings, settings as default_settings
from mailsync.core.credential_vault import CredentialVault
from mailsync.core.credentials import CredentialManager
from mailsync.providers.base import MailProvider
from mailsync.providers.registry import create_provider
from mailsync.services.dedup import DedupGuard, MongoLeaseLock
from mailsync.services.job_queue import JobQueue
from mailsync.services.repository import AccountRepository, AuditLogRepository, MessageRepository
from mailsync.services.state_tracker import SyncStateTracker
from mailsync.services.subscriptions import SubscriptionManager
from mailsync.services.sync_orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncEngine:
    """
    Container for every service the API, worker and CLI share.

    Works with either a motor database (API) or a pymongo async database
    (worker); both expose the same coroutine-based collection API.
    """

    def __init__(
        self,
        db,
        settings: Optional[SyncSettings] = None,
        vault: Optional[CredentialVault] = None,
        provider_factory: Callable[..., MailProvider] = create_provider,
    ):
        self.db = db
        self.settings = settings or default_settings
        self.provider_factory = provider_factory

        self.accounts = AccountRepository(db, vault)
        self.messages = MessageRepository(db)
        self.audit = AuditLogRepository(db)
        self.locks = MongoLeaseLock(db)
        self.jobs = JobQueue(db, self.settings)

        self.dedup = DedupGuard(self.messages, self.locks, self.settings)
        self.tracker = SyncStateTracker(self.accounts)
        self.credentials = CredentialManager(self.accounts, self.audit, self.settings, provider_factory)
        self.subscriptions = SubscriptionManager(
            self.accounts, self.credentials, self.jobs, self.settings, provider_factory
        )
        self.orchestrator = SyncOrchestrator(
            accounts=self.accounts,
            messages=self.messages,
            dedup=self.dedup,
            tracker=self.tracker,
            credentials=self.credentials,
            dispatcher=self.jobs,
            settings=self.settings,
            provider_factory=provider_factory,
            subscriptions=self.subscriptions,
            audit=self.audit,
        )

    async def ensure_indexes(self) -> None:
        await self.accounts.ensure_indexes()
        await self.messages.ensure_indexes()
        await self.audit.ensure_indexes()
        await self.locks.ensure_indexes()
        await self.jobs.ensure_indexes()
        logger.info("Sync engine indexes ensured")
