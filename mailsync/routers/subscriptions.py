"""Subscriptions admin router."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from mailsync.models.schemas import (
    SubscriptionListResponse,
    SubscriptionResponse,
    SubscriptionSweepResponse,
)
from mailsync.routers.deps import get_account_or_404, get_engine
from mailsync.services.engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


@router.get("", response_model=SubscriptionListResponse)
async def list_subscriptions(engine: SyncEngine = Depends(get_engine)):
    rows = await engine.subscriptions.list()
    return SubscriptionListResponse(
        subscriptions=[SubscriptionResponse(**row) for row in rows],
        total=len(rows),
    )


@router.post("/renew", response_model=SubscriptionSweepResponse)
async def renew_subscriptions(engine: SyncEngine = Depends(get_engine)):
    """Run the renewal sweep now."""
    return SubscriptionSweepResponse(counts=await engine.subscriptions.renew_expiring())


@router.post("/cleanup", response_model=SubscriptionSweepResponse)
async def cleanup_subscriptions(engine: SyncEngine = Depends(get_engine)):
    return SubscriptionSweepResponse(counts=await engine.subscriptions.cleanup())


@router.post("/{account_id}", response_model=SubscriptionResponse, status_code=201)
async def create_subscription(account_id: str, engine: SyncEngine = Depends(get_engine)):
    account = await get_account_or_404(engine, account_id)
    if not account.is_active:
        raise HTTPException(status_code=409, detail="Account is deactivated")
    if not engine.subscriptions.supports_push(account):
        raise HTTPException(status_code=400, detail=f"{account.provider.value} does not support push")

    subscription_id = await engine.subscriptions.create(account)
    if subscription_id is None:
        raise HTTPException(status_code=502, detail="Provider rejected the subscription")

    account = await engine.accounts.get(account_id)
    return SubscriptionResponse(
        account_id=account.id,
        email=account.email_address,
        provider=account.provider.value,
        subscription_id=account.subscription.subscription_id,
        status=engine.subscriptions.status_of(account.subscription).value,
        expires_at=account.subscription.expires_at,
    )


@router.delete("/{account_id}")
async def delete_subscription(account_id: str, engine: SyncEngine = Depends(get_engine)):
    account = await get_account_or_404(engine, account_id)
    deleted = await engine.subscriptions.delete(account)
    return {"account_id": account.id, "deleted": deleted}
