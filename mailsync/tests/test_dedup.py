"""Unit tests for the dedup guard and lease lock."""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import make_messages
from mailsync.models.accounts import utcnow
from mailsync.services.dedup import LOCKS_COLLECTION, ClaimOutcome
from mailsync.services.repository import MESSAGES_COLLECTION


class TestLeaseLock:
    """Tests for MongoLeaseLock."""

    @pytest.mark.asyncio
    async def test_exclusive(self, engine):
        """Test that a held lease cannot be acquired by another owner."""
        lock = engine.locks

        assert await lock.acquire("k", "a", 30) is True
        assert await lock.acquire("k", "b", 30) is False

        await lock.release("k", "a")

        assert await lock.acquire("k", "b", 30) is True

    @pytest.mark.asyncio
    async def test_release_requires_owner(self, engine, fake_db):
        """Test that a non-owner release leaves the lease in place."""
        await engine.locks.acquire("k", "a", 30)

        await engine.locks.release("k", "b")

        assert len(fake_db[LOCKS_COLLECTION].docs) == 1

    @pytest.mark.asyncio
    async def test_expired_lease_taken_over(self, engine, fake_db):
        """Test that an expired lease can be taken over."""
        await engine.locks.acquire("k", "a", 30)
        fake_db[LOCKS_COLLECTION].docs[0]["expires_at"] = utcnow() - timedelta(seconds=1)

        assert await engine.locks.acquire("k", "b", 30) is True
        assert fake_db[LOCKS_COLLECTION].docs[0]["owner"] == "b"


class TestDedupGuard:
    """Tests for DedupGuard.try_claim and ingest."""

    @pytest.mark.asyncio
    async def test_claim_then_exists(self, engine):
        """Test that the second offer of the same message is ALREADY_EXISTS."""
        await engine.messages.ensure_indexes()
        message = make_messages(1)[0]

        assert await engine.dedup.ingest("acc1", message) == ClaimOutcome.CLAIMED
        assert await engine.dedup.ingest("acc1", message) == ClaimOutcome.ALREADY_EXISTS
        assert await engine.messages.count("acc1") == 1

    @pytest.mark.asyncio
    async def test_same_id_other_account(self, engine):
        """Test that the dedup key is scoped to the account."""
        await engine.messages.ensure_indexes()
        message = make_messages(1)[0]

        assert await engine.dedup.ingest("acc1", message) == ClaimOutcome.CLAIMED
        assert await engine.dedup.ingest("acc2", message) == ClaimOutcome.CLAIMED

    @pytest.mark.asyncio
    async def test_concurrent_claims(self, engine):
        """Test that concurrent offers of one message store it exactly once."""
        await engine.messages.ensure_indexes()
        message = make_messages(1)[0]
        persisted = []

        async def persist():
            await asyncio.sleep(0.01)
            persisted.append(1)
            await engine.messages.insert(message, "acc1")

        outcomes = await asyncio.gather(
            engine.dedup.try_claim("acc1", message.provider_message_id, persist),
            engine.dedup.try_claim("acc1", message.provider_message_id, persist),
        )

        assert sorted(o.value for o in outcomes) == ["already_exists", "claimed"]
        assert len(persisted) == 1
        assert await engine.messages.count("acc1") == 1

    @pytest.mark.asyncio
    async def test_lock_contended(self, engine):
        """Test LOCK_CONTENDED when the lease stays held through every retry."""
        await engine.locks.acquire(engine.dedup.lock_key("acc1", "m0"), "someone-else", 30)
        persist = AsyncMock()

        outcome = await engine.dedup.try_claim("acc1", "m0", persist)

        assert outcome == ClaimOutcome.LOCK_CONTENDED
        persist.assert_not_called()

    @pytest.mark.asyncio
    async def test_unique_index_backstop(self, engine, fake_db):
        """Test that a race past the existence check still yields ALREADY_EXISTS."""
        await engine.messages.ensure_indexes()
        message = make_messages(1)[0]
        await engine.messages.insert(message, "acc1")
        engine.dedup.messages.exists = AsyncMock(return_value=False)

        outcome = await engine.dedup.ingest("acc1", message)

        assert outcome == ClaimOutcome.ALREADY_EXISTS
        assert len(fake_db[MESSAGES_COLLECTION].docs) == 1

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self, engine, fake_db):
        """Test that the lease is released when persist raises."""
        async def persist():
            raise RuntimeError("disk full")

        with pytest.raises(RuntimeError):
            await engine.dedup.try_claim("acc1", "m0", persist)

        assert fake_db[LOCKS_COLLECTION].docs == []
