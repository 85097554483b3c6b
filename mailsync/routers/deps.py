"""Shared FastAPI dependencies."""

from fastapi import HTTPException, Request

from mailsync.models.accounts import MailAccount
from mailsync.services.engine import SyncEngine


def get_engine(request: Request) -> SyncEngine:
    """The sync engine built during application startup."""
    return request.app.state.engine


async def get_account_or_404(engine: SyncEngine, account_id: str) -> MailAccount:
    account = await engine.accounts.get(account_id)
    if account is None:
        raise HTTPException(status_code=404, detail=f"Account not found: {account_id}")
    return account
