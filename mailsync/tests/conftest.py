"""
Mail Sync Test Configuration.

In-memory stand-ins for MongoDB collections and mailbox providers so the real
repositories, lock, queue and orchestrator run without external services.
"""

import copy
from datetime import datetime, timedelta
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from mailsync.core.config import SyncSettings
from mailsync.core.credential_vault import CredentialVault
from mailsync.core.exceptions import AuthError, SubscriptionError
from mailsync.models.accounts import MailAccount, utcnow
from mailsync.providers.base import (
    AuthType,
    ConnectionCredentials,
    CursorKind,
    FetchResult,
    IdListResult,
    MailProvider,
    OAuthTokens,
    ProviderCapabilities,
    ProviderType,
    SubscriptionInfo,
)
from mailsync.providers.email.base import EmailMessage
from mailsync.providers.email.mime import MessageCircuitBreaker
from mailsync.services.engine import SyncEngine


# ==================== In-memory MongoDB ====================

def _get(doc: Dict[str, Any], path: str) -> Any:
    value: Any = doc
    for key in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _set(doc: Dict[str, Any], path: str, value: Any) -> None:
    keys = path.split(".")
    target = doc
    for key in keys[:-1]:
        if not isinstance(target.get(key), dict):
            target[key] = {}
        target = target[key]
    target[keys[-1]] = value


def _matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for path, condition in (query or {}).items():
        value = _get(doc, path)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if op == "$in":
                    ok = value in operand
                elif op == "$ne":
                    ok = value != operand
                elif value is None:
                    ok = False
                elif op == "$lte":
                    ok = value <= operand
                elif op == "$lt":
                    ok = value < operand
                elif op == "$gte":
                    ok = value >= operand
                elif op == "$gt":
                    ok = value > operand
                else:
                    raise NotImplementedError(op)
                if not ok:
                    return False
        elif value != condition:
            return False
    return True


def _apply(doc: Dict[str, Any], update: Dict[str, Any]) -> None:
    for path, value in update.get("$set", {}).items():
        _set(doc, path, copy.deepcopy(value))
    for path, delta in update.get("$inc", {}).items():
        _set(doc, path, (_get(doc, path) or 0) + delta)


def _project(doc: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        result = {k: doc[k] for k in included if k in doc}
        if projection.get("_id", 1):
            result["_id"] = doc["_id"]
        return result
    return {k: v for k, v in doc.items() if projection.get(k, 1)}


def _sort_key(fields):
    def key(doc):
        return tuple((_get(doc, f) is None, _get(doc, f)) for f, _ in fields)
    return key


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, key, direction=None):
        fields = [(key, direction or 1)] if isinstance(key, str) else list(key)
        for field_name, order in reversed(fields):
            self._docs.sort(key=_sort_key([(field_name, order)]), reverse=order < 0)
        return self

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]

    def __aiter__(self):
        self._iter = iter(self._docs)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """The subset of the async collection API the services use."""

    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.unique: List[tuple] = []

    async def create_index(self, keys, unique=False, **kwargs):
        fields = (keys,) if isinstance(keys, str) else tuple(k for k, _ in keys)
        if unique:
            self.unique.append(fields)
        return "_".join(fields)

    def _check_unique(self, doc: Dict[str, Any], exclude=None) -> None:
        for existing in self.docs:
            if existing is exclude:
                continue
            if existing["_id"] == doc["_id"]:
                raise DuplicateKeyError(f"duplicate _id {doc['_id']}")
            for fields in self.unique:
                if all(_get(existing, f) == _get(doc, f) for f in fields):
                    raise DuplicateKeyError(f"duplicate key {fields}")

    async def insert_one(self, doc: Dict[str, Any]):
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", ObjectId())
        self._check_unique(doc)
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, query=None, projection=None):
        for doc in self.docs:
            if _matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        return FakeCursor([_project(d, projection) for d in self.docs if _matches(d, query)])

    async def update_one(self, query, update):
        for doc in self.docs:
            if _matches(doc, query):
                _apply(doc, update)
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    async def update_many(self, query, update):
        matched = [d for d in self.docs if _matches(d, query)]
        for doc in matched:
            _apply(doc, update)
        return SimpleNamespace(matched_count=len(matched), modified_count=len(matched))

    async def find_one_and_update(self, query, update, sort=None, return_document=False, **kwargs):
        candidates = [d for d in self.docs if _matches(d, query)]
        if sort:
            candidates.sort(key=_sort_key(sort))
        if not candidates:
            return None
        doc = candidates[0]
        before = copy.deepcopy(doc)
        _apply(doc, update)
        return copy.deepcopy(doc) if return_document else before

    async def delete_one(self, query):
        for doc in self.docs:
            if _matches(doc, query):
                self.docs.remove(doc)
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def count_documents(self, query):
        return sum(1 for d in self.docs if _matches(d, query))


class FakeDatabase:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]


# ==================== Scripted provider ====================

class FakeMailbox:
    """Shared state behind every FakeProvider instance a test creates."""

    def __init__(self, messages: Optional[List[EmailMessage]] = None):
        self.messages: List[EmailMessage] = messages or []
        self.supports_push = True
        self.supports_id_listing = False
        self.fetch_calls: List[Dict[str, Any]] = []
        self.refresh_calls = 0
        self.refresh_error: Optional[Exception] = None
        self.refresh_returns_refresh_token: Optional[str] = None
        self.rejected_tokens: set = set()
        self.failing_ids: set = set()
        self.fetch_errors: Dict[Optional[str], Exception] = {}
        self.subscription_counter = 0
        self.renew_error: Optional[Exception] = None
        self.create_error: Optional[Exception] = None
        self.deleted_subscriptions: List[str] = []
        self.total_message_count: Optional[int] = None

    def _visible(self, include_read: bool) -> List[EmailMessage]:
        return [m for m in self.messages if include_read or not m.is_read]


class FakeProvider(MailProvider):

    def __init__(self, mailbox: FakeMailbox, credentials=None, settings=None):
        super().__init__(credentials, settings=settings, breaker=MessageCircuitBreaker())
        self.mailbox = mailbox

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GMAIL

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            provider_type=ProviderType.GMAIL,
            display_name="Fake",
            auth_type=AuthType.OAUTH2,
            cursor_kind=CursorKind.OFFSET,
            supports_push=self.mailbox.supports_push,
            supports_id_listing=self.mailbox.supports_id_listing,
        )

    def _check_token(self) -> None:
        tokens = self.credentials.oauth_tokens if self.credentials else None
        if tokens and tokens.access_token in self.mailbox.rejected_tokens:
            raise AuthError("token rejected")

    def is_authenticated(self) -> bool:
        return True

    async def refresh_token(self, tokens=None):
        self.mailbox.refresh_calls += 1
        if self.mailbox.refresh_error:
            raise self.mailbox.refresh_error
        return OAuthTokens(
            access_token=f"access-{self.mailbox.refresh_calls}",
            refresh_token=self.mailbox.refresh_returns_refresh_token,
            expires_at=utcnow() + timedelta(hours=1),
        )

    def _page(self, limit, cursor, include_read):
        visible = self.mailbox._visible(include_read)
        offset = int(cursor or 0)
        page = visible[offset:offset + limit]
        next_offset = offset + len(page)
        has_more = next_offset < len(visible)
        return page, (str(next_offset) if has_more else None), has_more

    async def fetch_batch(self, limit, cursor=None, include_read=False):
        self._check_token()
        self.mailbox.fetch_calls.append({"limit": limit, "cursor": cursor, "include_read": include_read})
        if cursor in self.mailbox.fetch_errors:
            raise self.mailbox.fetch_errors.pop(cursor)
        page, next_cursor, has_more = self._page(limit, cursor, include_read)
        return FetchResult(messages=list(page), next_cursor=next_cursor, has_more=has_more)

    async def fetch_ids(self, limit, cursor=None, include_read=False):
        self._check_token()
        self.mailbox.fetch_calls.append({"limit": limit, "cursor": cursor, "include_read": include_read})
        page, next_cursor, has_more = self._page(limit, cursor, include_read)
        return IdListResult(ids=[m.provider_message_id for m in page], next_cursor=next_cursor, has_more=has_more)

    async def fetch_by_id(self, provider_message_id):
        self._check_token()
        if provider_message_id in self.mailbox.failing_ids:
            raise ConnectionError(f"fetch of {provider_message_id} failed")
        for message in self.mailbox.messages:
            if message.provider_message_id == provider_message_id:
                return message
        return None

    async def send(self, envelope):
        return True

    async def save_draft(self, envelope):
        return "draft-1"

    async def account_info(self):
        total = self.mailbox.total_message_count
        return {"email": "user@example.com", "total_message_count": len(self.mailbox.messages) if total is None else total}

    async def list_folders(self):
        return []

    async def create_subscription(self, account_id, callback_url, client_state, expires_at):
        if self.mailbox.create_error:
            raise self.mailbox.create_error
        self.mailbox.subscription_counter += 1
        return SubscriptionInfo(
            subscription_id=f"sub-{self.mailbox.subscription_counter}",
            expires_at=expires_at,
            resource="100",
        )

    async def renew_subscription(self, account_id, subscription_id, callback_url, client_state, expires_at):
        if self.mailbox.renew_error:
            raise self.mailbox.renew_error
        return SubscriptionInfo(subscription_id=subscription_id, expires_at=expires_at)

    async def delete_subscription(self, subscription_id):
        self.mailbox.deleted_subscriptions.append(subscription_id)
        return True


def make_messages(count: int, prefix: str = "m", is_read: bool = False) -> List[EmailMessage]:
    base = datetime(2024, 1, 1, 12, 0, 0)
    return [
        EmailMessage(
            provider_message_id=f"{prefix}{i}",
            from_address=f"sender{i}@example.com",
            subject=f"Message {i}",
            thread_id=f"t{i}",
            received_at=base - timedelta(minutes=i),
            body_plain=f"Body {i}",
            snippet=f"Body {i}",
            is_read=is_read,
        )
        for i in range(count)
    ]


# ==================== Fixtures ====================

@pytest.fixture
def settings():
    """Settings with short retry delays for tests."""
    return SyncSettings(
        mongodb_uri="mongodb://localhost:27017/?directConnection=true",
        mongodb_database="test_mailsync",
        webhook_secret="test-webhook-secret",
        public_base_url="https://sync.example.com",
        gmail_pubsub_topic="projects/test/topics/mail-{account_id}",
        dedup_lock_retry_delay=0.05,
        continuation_delay_seconds=10,
    )


@pytest.fixture
def vault():
    return CredentialVault(master_key="test-master-key", salt="test-salt")


@pytest.fixture
def mailbox():
    return FakeMailbox()


@pytest.fixture
def provider_factory(mailbox):
    def factory(provider_type, credentials=None, settings=None):
        return FakeProvider(mailbox, credentials, settings=settings)
    return factory


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def engine(fake_db, settings, vault, provider_factory):
    return SyncEngine(fake_db, settings, vault=vault, provider_factory=provider_factory)


def oauth_account(
    email: str = "user@example.com",
    provider: ProviderType = ProviderType.GMAIL,
    expires_in: timedelta = timedelta(hours=1),
    access_token: str = "access-0",
    refresh_token: Optional[str] = "refresh-0",
    **kwargs,
) -> MailAccount:
    return MailAccount(
        id=str(ObjectId()),
        email_address=email,
        provider=provider,
        credentials=ConnectionCredentials(
            auth_type=AuthType.OAUTH2,
            oauth_tokens=OAuthTokens(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=utcnow() + expires_in,
            ),
        ),
        **kwargs,
    )


def imap_account(email: str = "imap@example.com") -> MailAccount:
    return MailAccount(
        id=str(ObjectId()),
        email_address=email,
        provider=ProviderType.IMAP,
        credentials=ConnectionCredentials(
            auth_type=AuthType.PASSWORD,
            username=email,
            password="secret",
            host="imap.example.com",
        ),
    )


@pytest.fixture
def add_account(engine):
    async def add(account: Optional[MailAccount] = None) -> MailAccount:
        return await engine.accounts.upsert(account or oauth_account())
    return add
