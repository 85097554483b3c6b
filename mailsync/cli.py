#!/usr/bin/env python
"""
Mail sync admin CLI.

Usage:
    python -m mailsync.cli subscriptions list
    python -m mailsync.cli subscriptions create --account ID
    python -m mailsync.cli subscriptions renew
    python -m mailsync.cli subscriptions cleanup
    python -m mailsync.cli sync --account ID [--mode quick] [--now]
    python -m mailsync.cli sync --provider gmail
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient

from mailsync.core.config import get_settings
from mailsync.providers.base import ProviderType
from mailsync.services.engine import SyncEngine
from mailsync.services.sync_orchestrator import SyncMode, SyncRequest

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mail sync administration")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    subs = commands.add_parser("subscriptions", help="Manage push subscriptions")
    subs.add_argument("action", choices=["create", "renew", "list", "cleanup"])
    subs.add_argument("--account", help="Account id (create only; default: all eligible)")

    sync = commands.add_parser("sync", help="Trigger a sync")
    target = sync.add_mutually_exclusive_group(required=True)
    target.add_argument("--account", help="Account id")
    target.add_argument("--provider", choices=[p.value for p in ProviderType])
    sync.add_argument("--mode", choices=[m.value for m in SyncMode], default=SyncMode.STANDARD.value)
    sync.add_argument(
        "--now",
        action="store_true",
        help="Run in this process instead of enqueueing for the worker (single account only)",
    )
    return parser


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def run_subscriptions(engine: SyncEngine, action: str, account_id: Optional[str]) -> int:
    manager = engine.subscriptions

    if action == "list":
        _print(await manager.list())
        return 0

    if action == "renew":
        _print(await manager.renew_expiring())
        return 0

    if action == "cleanup":
        _print(await manager.cleanup())
        return 0

    # create
    if account_id:
        account = await engine.accounts.get(account_id)
        if account is None:
            print(f"Account not found: {account_id}", file=sys.stderr)
            return 1
        targets = [account]
    else:
        targets = [
            a for a in await engine.accounts.list_accounts(active_only=True)
            if manager.supports_push(a) and not a.subscription.subscription_id
        ]

    results = {}
    for account in targets:
        results[account.email_address] = await manager.create(account)
    _print(results)
    return 0 if all(results.values()) else 1


async def run_sync(
    engine: SyncEngine,
    account_id: Optional[str],
    provider: Optional[str],
    mode: str,
    now: bool,
) -> int:
    if now:
        if not account_id:
            print("--now requires --account", file=sys.stderr)
            return 2
        report = await engine.orchestrator.run(SyncRequest(account_id=account_id, mode=SyncMode(mode)))
        _print(report.to_dict())
        return 0

    job_ids = await engine.orchestrator.sync_all(
        provider=ProviderType(provider) if provider else None,
        account_id=account_id,
        mode=SyncMode(mode),
    )
    _print({"enqueued": len(job_ids), "job_ids": job_ids})
    return 0


async def main(argv: Optional[list] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    settings = get_settings()
    client = AsyncIOMotorClient(settings.mongodb_uri)
    try:
        engine = SyncEngine(client[settings.mongodb_database], settings)
        if args.command == "subscriptions":
            return await run_subscriptions(engine, args.action, args.account)
        return await run_sync(engine, args.account, args.provider, args.mode, args.now)
    finally:
        client.close()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
