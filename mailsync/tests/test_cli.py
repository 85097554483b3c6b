"""Tests for the admin CLI commands."""

import json

import pytest

from conftest import make_messages, oauth_account
from mailsync.cli import build_parser, run_subscriptions, run_sync
from mailsync.services.job_queue import SYNC_JOBS_COLLECTION


class TestParser:

    def test_sync_requires_target(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["sync"])

    def test_sync_options(self):
        args = build_parser().parse_args(["sync", "--account", "a1", "--mode", "quick", "--now"])

        assert (args.account, args.mode, args.now) == ("a1", "quick", True)


class TestCommands:

    @pytest.mark.asyncio
    async def test_subscriptions_create_all(self, engine, add_account, capsys):
        """Test that create without --account covers every eligible account."""
        await add_account(oauth_account("a@example.com"))
        await add_account(oauth_account("b@example.com"))

        assert await run_subscriptions(engine, "create", None) == 0

        output = json.loads(capsys.readouterr().out)
        assert output == {"a@example.com": "sub-1", "b@example.com": "sub-2"}

    @pytest.mark.asyncio
    async def test_subscriptions_unknown_account(self, engine):
        assert await run_subscriptions(engine, "create", "missing") == 1

    @pytest.mark.asyncio
    async def test_sync_now(self, engine, mailbox, add_account, capsys):
        """Test running a sync in-process."""
        mailbox.messages = make_messages(3)
        account = await add_account()

        assert await run_sync(engine, account.id, None, "standard", True) == 0

        assert json.loads(capsys.readouterr().out)["processed"] == 3

    @pytest.mark.asyncio
    async def test_sync_now_needs_account(self, engine):
        assert await run_sync(engine, None, "gmail", "standard", True) == 2

    @pytest.mark.asyncio
    async def test_sync_enqueues(self, engine, add_account, fake_db, capsys):
        await add_account()

        assert await run_sync(engine, None, "gmail", "standard", False) == 0

        assert json.loads(capsys.readouterr().out)["enqueued"] == 1
        assert len(fake_db[SYNC_JOBS_COLLECTION].docs) == 1
