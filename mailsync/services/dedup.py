"""
Duplicate-ingestion guard.

A short-lived lease in MongoDB serializes concurrent workers offering the
same provider message; the unique index on the messages collection is the
final word when something races past the lease.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, PyMongoError

from mailsync.core.config import SyncSettings
from mailsync.core.exceptions import DuplicateMessageError
from mailsync.models.accounts import utcnow
from mailsync.providers.email.base import EmailMessage
from mailsync.services.repository import MessageRepository

logger = logging.getLogger(__name__)

LOCKS_COLLECTION = "sync_locks"


class ClaimOutcome(str, Enum):
    """Result of offering one provider message for ingestion."""
    CLAIMED = "claimed"
    ALREADY_EXISTS = "already_exists"
    LOCK_CONTENDED = "lock_contended"


class MongoLeaseLock:
    """
    Mutual exclusion keyed by string with a TTL.

    A holder that dies mid-work loses the lease when ``expires_at`` passes;
    the next caller takes it over and MongoDB's TTL monitor eventually
    removes the stale document.
    """

    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db[LOCKS_COLLECTION]

    async def ensure_indexes(self) -> None:
        try:
            await self.collection.create_index("expires_at", expireAfterSeconds=0)
        except Exception as e:
            logger.warning(f"Failed to create lock TTL index: {e}")

    async def acquire(self, key: str, owner: str, ttl_seconds: int) -> bool:
        now = utcnow()
        lease = {"owner": owner, "acquired_at": now, "expires_at": now + timedelta(seconds=ttl_seconds)}
        try:
            await self.collection.insert_one({"_id": key, **lease})
            return True
        except DuplicateKeyError:
            taken = await self.collection.find_one_and_update(
                {"_id": key, "expires_at": {"$lte": now}},
                {"$set": lease},
            )
            if taken is not None:
                logger.info(f"Took over expired lock {key} from {taken.get('owner')}")
            return taken is not None

    async def release(self, key: str, owner: str) -> None:
        await self.collection.delete_one({"_id": key, "owner": owner})


class DedupGuard:
    """Offers each candidate message exactly once per (account, provider id)."""

    def __init__(self, messages: MessageRepository, lock: MongoLeaseLock, settings: SyncSettings):
        self.messages = messages
        self.lock = lock
        self.settings = settings

    @staticmethod
    def lock_key(account_id: str, provider_message_id: str) -> str:
        return f"msg:{account_id}:{provider_message_id}"

    async def _acquire(self, key: str, owner: str) -> bool:
        attempts = max(self.settings.dedup_lock_retries, 1)
        for attempt in range(attempts):
            if await self.lock.acquire(key, owner, self.settings.dedup_lock_ttl_seconds):
                return True
            if attempt < attempts - 1:
                await asyncio.sleep(self.settings.dedup_lock_retry_delay)
        return False

    async def try_claim(
        self,
        account_id: str,
        provider_message_id: str,
        persist: Callable[[], Awaitable[Any]],
    ) -> ClaimOutcome:
        """
        Run ``persist`` unless the message is already stored or being stored.

        ``persist`` raising DuplicateMessageError (the unique index firing)
        is reported as ALREADY_EXISTS. The lease is released on every path.
        """
        key = self.lock_key(account_id, provider_message_id)
        owner = uuid.uuid4().hex

        if not await self._acquire(key, owner):
            logger.debug(f"Lock contended for {key}; message will be re-offered next pass")
            return ClaimOutcome.LOCK_CONTENDED

        try:
            if await self.messages.exists(account_id, provider_message_id):
                return ClaimOutcome.ALREADY_EXISTS
            try:
                await persist()
            except DuplicateMessageError:
                logger.debug(f"Unique index rejected {key}")
                return ClaimOutcome.ALREADY_EXISTS
            return ClaimOutcome.CLAIMED
        finally:
            try:
                await self.lock.release(key, owner)
            except PyMongoError as e:
                # The lease expires on its own
                logger.warning(f"Failed to release lock {key}: {e}")

    async def ingest(self, account_id: str, message: EmailMessage) -> ClaimOutcome:
        """Claim and persist one canonical message."""
        return await self.try_claim(
            account_id,
            message.provider_message_id,
            lambda: self.messages.insert(message, account_id),
        )
