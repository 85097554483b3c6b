"""
MongoDB repositories for accounts, messages and audit entries.

Every account mutation is a single-document ``$set``/``$inc`` so concurrent
workers never overwrite each other's fields.
"""

import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Iterable

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from mailsync.core.credential_vault import CredentialVault, get_vault
from mailsync.core.exceptions import DuplicateMessageError
from mailsync.models.accounts import (
    MailAccount,
    PushSubscription,
    SyncState,
    utcnow,
)
from mailsync.providers.base import ProviderType, ConnectionCredentials
from mailsync.providers.email.base import EmailMessage

logger = logging.getLogger(__name__)

# Collection names
ACCOUNTS_COLLECTION = "mail_accounts"
MESSAGES_COLLECTION = "messages"
AUDIT_LOGS_COLLECTION = "audit_logs"


class AccountRepository:
    """Persistence for the MailAccount aggregate. Credentials are stored sealed."""

    def __init__(self, db: AsyncIOMotorDatabase, vault: Optional[CredentialVault] = None):
        self.db = db
        self.collection = db[ACCOUNTS_COLLECTION]
        self.vault = vault or get_vault()

    async def ensure_indexes(self) -> None:
        """Create indexes for efficient querying."""
        try:
            await self.collection.create_index(
                [("email_address", ASCENDING), ("provider", ASCENDING)], unique=True
            )
            await self.collection.create_index([("provider", ASCENDING), ("is_active", ASCENDING)])
            await self.collection.create_index("subscription.expires_at")
            logger.info("Account indexes created")
        except Exception as e:
            logger.warning(f"Failed to create account indexes: {e}")

    def _to_account(self, doc: Dict[str, Any]) -> MailAccount:
        return MailAccount(
            id=str(doc["_id"]),
            email_address=doc["email_address"],
            provider=ProviderType(doc["provider"]),
            credentials=self.vault.open(doc["credentials"]),
            display_name=doc.get("display_name", ""),
            is_active=doc.get("is_active", True),
            last_sync_at=doc.get("last_sync_at"),
            sync_cursor=doc.get("sync_cursor"),
            sync_state=SyncState.from_dict(doc),
            subscription=PushSubscription.from_dict(doc.get("subscription")),
            failed_message_count=doc.get("failed_message_count", 0),
            last_message_error=doc.get("last_message_error"),
            created_at=doc.get("created_at") or utcnow(),
            updated_at=doc.get("updated_at") or utcnow(),
        )

    def _to_document(self, account: MailAccount) -> Dict[str, Any]:
        return {
            "_id": account.id,
            "email_address": account.email_address,
            "provider": account.provider.value,
            "credentials": self.vault.seal(account.credentials),
            "display_name": account.display_name,
            "is_active": account.is_active,
            "last_sync_at": account.last_sync_at,
            "sync_cursor": account.sync_cursor,
            **account.sync_state.to_dict(),
            "subscription": account.subscription.to_dict(),
            "failed_message_count": account.failed_message_count,
            "last_message_error": account.last_message_error,
            "created_at": account.created_at,
            "updated_at": account.updated_at,
        }

    @staticmethod
    def new_id() -> str:
        return str(ObjectId())

    async def get(self, account_id: str) -> Optional[MailAccount]:
        doc = await self.collection.find_one({"_id": account_id})
        return self._to_account(doc) if doc else None

    async def find_by_email(
        self,
        email_address: str,
        provider: Optional[ProviderType] = None,
        active_only: bool = True,
    ) -> Optional[MailAccount]:
        query: Dict[str, Any] = {"email_address": email_address.lower()}
        if provider:
            query["provider"] = provider.value
        if active_only:
            query["is_active"] = True
        doc = await self.collection.find_one(query)
        return self._to_account(doc) if doc else None

    async def list_accounts(
        self,
        provider: Optional[ProviderType] = None,
        active_only: bool = False,
    ) -> List[MailAccount]:
        query: Dict[str, Any] = {}
        if provider:
            query["provider"] = provider.value
        if active_only:
            query["is_active"] = True
        docs = await self.collection.find(query).sort("created_at", ASCENDING).to_list(length=None)
        return [self._to_account(d) for d in docs]

    async def upsert(self, account: MailAccount) -> MailAccount:
        """
        Store a newly connected account.

        Reconnecting an address that already exists refreshes its credentials
        and reactivates it under the existing id.
        """
        account.email_address = account.email_address.lower()
        existing = await self.collection.find_one(
            {"email_address": account.email_address, "provider": account.provider.value}
        )
        if existing:
            now = utcnow()
            await self.collection.update_one(
                {"_id": existing["_id"]},
                {"$set": {
                    "credentials": self.vault.seal(account.credentials),
                    "display_name": account.display_name or existing.get("display_name", ""),
                    "is_active": True,
                    "sync_error": None,
                    "updated_at": now,
                }},
            )
            return await self.get(str(existing["_id"]))

        await self.collection.insert_one(self._to_document(account))
        return account

    async def update_fields(self, account_id: str, fields: Dict[str, Any]) -> None:
        fields = {**fields, "updated_at": utcnow()}
        await self.collection.update_one({"_id": account_id}, {"$set": fields})

    async def increment(self, account_id: str, field: str, delta: int) -> None:
        await self.collection.update_one(
            {"_id": account_id},
            {"$inc": {field: delta}, "$set": {"updated_at": utcnow()}},
        )

    async def save_credentials(self, account_id: str, credentials: ConnectionCredentials) -> None:
        await self.update_fields(account_id, {"credentials": self.vault.seal(credentials)})

    async def set_subscription(self, account_id: str, subscription: PushSubscription) -> None:
        await self.update_fields(account_id, {"subscription": subscription.to_dict()})

    async def touch_last_sync(self, account_id: str, when: Optional[datetime] = None) -> None:
        await self.update_fields(account_id, {"last_sync_at": when or utcnow()})

    async def deactivate(self, account_id: str, error: Optional[str] = None) -> None:
        fields: Dict[str, Any] = {"is_active": False, "last_sync_at": utcnow()}
        if error is not None:
            fields["sync_error"] = error
        await self.update_fields(account_id, fields)
        logger.warning(f"Account {account_id} deactivated: {error}")

    async def record_message_failure(self, account_id: str, error: str) -> None:
        await self.collection.update_one(
            {"_id": account_id},
            {
                "$inc": {"failed_message_count": 1},
                "$set": {"last_message_error": error, "updated_at": utcnow()},
            },
        )


class MessageRepository:
    """Canonical message store. The unique index is the authoritative dedup backstop."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db[MESSAGES_COLLECTION]

    async def ensure_indexes(self) -> None:
        try:
            await self.collection.create_index(
                [("account_id", ASCENDING), ("provider_message_id", ASCENDING)],
                unique=True,
                name="account_message_unique",
            )
            await self.collection.create_index([("account_id", ASCENDING), ("received_at", DESCENDING)])
            await self.collection.create_index([("account_id", ASCENDING), ("thread_id", ASCENDING)])
            logger.info("Message indexes created")
        except Exception as e:
            logger.warning(f"Failed to create message indexes: {e}")

    async def exists(self, account_id: str, provider_message_id: str) -> bool:
        doc = await self.collection.find_one(
            {"account_id": account_id, "provider_message_id": provider_message_id},
            {"_id": 1},
        )
        return doc is not None

    async def insert(self, message: EmailMessage, account_id: str) -> str:
        """
        Persist a canonical message.

        Raises:
            DuplicateMessageError: If the (account, provider id) key exists
        """
        doc = message.to_document(account_id)
        doc["created_at"] = utcnow()
        try:
            result = await self.collection.insert_one(doc)
        except DuplicateKeyError:
            raise DuplicateMessageError(
                f"Message {message.provider_message_id} already stored for {account_id}"
            )
        return str(result.inserted_id)

    async def known_ids(self, account_id: str, provider_message_ids: Iterable[str]) -> set[str]:
        """Which of the given ids are already stored, in one query."""
        ids = list(provider_message_ids)
        if not ids:
            return set()
        cursor = self.collection.find(
            {"account_id": account_id, "provider_message_id": {"$in": ids}},
            {"provider_message_id": 1, "_id": 0},
        )
        return {doc["provider_message_id"] async for doc in cursor}

    async def count(self, account_id: str) -> int:
        return await self.collection.count_documents({"account_id": account_id})


class AuditLogRepository:
    """Append-only audit trail (token refreshes, deactivations)."""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db[AUDIT_LOGS_COLLECTION]

    async def ensure_indexes(self) -> None:
        try:
            await self.collection.create_index([("account_id", ASCENDING), ("created_at", DESCENDING)])
        except Exception as e:
            logger.warning(f"Failed to create audit log indexes: {e}")

    async def record(
        self,
        event: str,
        account_id: Optional[str],
        outcome: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.collection.insert_one({
            "event": event,
            "account_id": account_id,
            "outcome": outcome,
            "details": details or {},
            "created_at": utcnow(),
        })

    async def recent(self, account_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        docs = await self.collection.find(
            {"account_id": account_id}, {"_id": 0}
        ).sort("created_at", DESCENDING).to_list(length=limit)
        return docs
