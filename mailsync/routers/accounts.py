"""
Accounts Router

Connects mailboxes (OAuth or IMAP), lists them, reports sync progress and
triggers manual syncs.
"""

import logging
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from mailsync.core.exceptions import AuthError, TransientProviderError
from mailsync.models.accounts import MailAccount, utcnow
from mailsync.models.schemas import (
    AccountListResponse,
    AccountResponse,
    ImapConnectRequest,
    OAuthInitRequest,
    OAuthInitResponse,
    SyncAllRequest,
    SyncEnqueuedResponse,
    SyncStatusResponse,
    SyncTriggerRequest,
)
from mailsync.providers.base import AuthType, ConnectionCredentials, ProviderType
from mailsync.providers.oauth import get_oauth_config, get_oauth_user_info
from mailsync.routers.deps import get_account_or_404, get_engine
from mailsync.services.engine import SyncEngine
from mailsync.services.sync_orchestrator import SyncMode

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/accounts", tags=["accounts"])

OAUTH_PROVIDERS = (ProviderType.GMAIL, ProviderType.OUTLOOK)
OAUTH_STATE_TTL = timedelta(minutes=10)

# OAuth state storage, single API process
# Maps state token -> {provider, display_name, created_at}
_oauth_states: dict = {}


def _redirect_uri(engine: SyncEngine, provider: ProviderType) -> str:
    base = engine.settings.public_base_url.rstrip("/")
    return f"{base}/api/v1/accounts/oauth/{provider.value}/callback"


def _prune_states() -> None:
    now = utcnow()
    for state in [s for s, data in _oauth_states.items() if now - data["created_at"] > OAUTH_STATE_TTL]:
        _oauth_states.pop(state, None)


def _account_response(account: MailAccount) -> AccountResponse:
    return AccountResponse(**account.to_summary())


async def _connect(engine: SyncEngine, account: MailAccount) -> MailAccount:
    stored = await engine.accounts.upsert(account)
    await engine.jobs.enqueue_sync(stored.id, SyncMode.INITIAL.value)
    logger.info(f"Connected {stored.provider.value} account {stored.email_address}; initial sync enqueued")
    return stored


# ==================== OAuth ====================

@router.post("/oauth/{provider}/authorize", response_model=OAuthInitResponse)
async def initiate_oauth(
    provider: ProviderType,
    init_request: Optional[OAuthInitRequest] = None,
    engine: SyncEngine = Depends(get_engine),
):
    """
    Start the OAuth authorization flow.

    Returns an authorization URL that the client should redirect to.
    """
    if provider not in OAUTH_PROVIDERS:
        raise HTTPException(status_code=400, detail=f"OAuth not supported for provider: {provider.value}")

    config = get_oauth_config(provider, engine.settings)
    if not config["client_id"]:
        raise HTTPException(status_code=503, detail=f"OAuth not configured for {provider.value}")

    _prune_states()
    state = secrets.token_urlsafe(32)
    _oauth_states[state] = {
        "provider": provider.value,
        "display_name": init_request.display_name if init_request else None,
        "created_at": utcnow(),
    }

    adapter = engine.provider_factory(provider, None, settings=engine.settings)
    url = await adapter.get_authorization_url(_redirect_uri(engine, provider), state)
    return OAuthInitResponse(authorization_url=url, state=state)


@router.get("/oauth/{provider}/callback", response_model=AccountResponse)
async def oauth_callback(
    provider: ProviderType,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    engine: SyncEngine = Depends(get_engine),
):
    """
    Handle the provider redirect: exchange the code, store the account and
    enqueue its initial sync.
    """
    if error:
        logger.error(f"OAuth error: {error} - {error_description}")
        raise HTTPException(status_code=400, detail=error_description or error)

    if not code or not state or state not in _oauth_states:
        raise HTTPException(status_code=400, detail="OAuth state invalid or expired")

    state_data = _oauth_states.pop(state)
    if state_data["provider"] != provider.value or utcnow() - state_data["created_at"] > OAUTH_STATE_TTL:
        raise HTTPException(status_code=400, detail="OAuth state invalid or expired")

    adapter = engine.provider_factory(provider, None, settings=engine.settings)
    try:
        tokens = await adapter.complete_authorization(code, _redirect_uri(engine, provider))
    except (AuthError, TransientProviderError) as e:
        logger.error(f"Token exchange failed: {e}")
        raise HTTPException(status_code=502, detail="Token exchange failed")

    user_info = await get_oauth_user_info(provider, get_oauth_config(provider, engine.settings), tokens.access_token)
    email = user_info.get("email")
    if not email:
        raise HTTPException(status_code=502, detail="Provider did not return the mailbox address")

    account = MailAccount(
        id=engine.accounts.new_id(),
        email_address=email,
        provider=provider,
        credentials=ConnectionCredentials(auth_type=AuthType.OAUTH2, oauth_tokens=tokens),
        display_name=state_data.get("display_name") or user_info.get("name") or email,
    )
    stored = await _connect(engine, account)
    return _account_response(stored)


# ==================== IMAP ====================

@router.post("/imap", response_model=AccountResponse, status_code=201)
async def connect_imap(request: ImapConnectRequest, engine: SyncEngine = Depends(get_engine)):
    """Connect an IMAP/SMTP mailbox after verifying the login."""
    credentials = ConnectionCredentials(
        auth_type=AuthType.PASSWORD,
        username=request.username or request.email_address,
        password=request.password,
        host=request.host,
        port=request.port,
        use_ssl=request.use_ssl,
        smtp_host=request.smtp_host or request.host,
        smtp_port=request.smtp_port,
        smtp_use_tls=request.smtp_use_tls,
        smtp_password=request.smtp_password,
    )

    async with engine.provider_factory(ProviderType.IMAP, credentials, settings=engine.settings) as adapter:
        try:
            await adapter.refresh_token()
        except AuthError as e:
            raise HTTPException(status_code=400, detail=f"IMAP login failed: {e}")
        except TransientProviderError as e:
            raise HTTPException(status_code=502, detail=f"IMAP server unreachable: {e}")

    account = MailAccount(
        id=engine.accounts.new_id(),
        email_address=request.email_address,
        provider=ProviderType.IMAP,
        credentials=credentials,
        display_name=request.display_name or request.email_address,
    )
    stored = await _connect(engine, account)
    return _account_response(stored)


# ==================== Listing and sync ====================

@router.get("", response_model=AccountListResponse)
async def list_accounts(
    provider: Optional[ProviderType] = Query(None),
    active_only: bool = Query(False),
    engine: SyncEngine = Depends(get_engine),
):
    accounts = await engine.accounts.list_accounts(provider=provider, active_only=active_only)
    return AccountListResponse(accounts=[_account_response(a) for a in accounts], total=len(accounts))


@router.post("/sync-all", response_model=SyncEnqueuedResponse)
async def sync_all(request: SyncAllRequest, engine: SyncEngine = Depends(get_engine)):
    """Force a one-off sync for one account or every active account of a provider."""
    job_ids = await engine.orchestrator.sync_all(
        provider=ProviderType(request.provider) if request.provider else None,
        account_id=request.account_id,
        mode=SyncMode(request.mode),
    )
    return SyncEnqueuedResponse(job_ids=job_ids, count=len(job_ids))


@router.get("/{account_id}/sync-status", response_model=SyncStatusResponse)
async def sync_status(account_id: str, engine: SyncEngine = Depends(get_engine)):
    account = await get_account_or_404(engine, account_id)
    state = account.sync_state
    return SyncStatusResponse(
        account_id=account.id,
        status=state.status.value,
        progress=state.progress,
        total=state.total,
        started_at=state.started_at,
        completed_at=state.completed_at,
        error=state.error,
        last_sync_at=account.last_sync_at,
        failed_message_count=account.failed_message_count,
    )


@router.post("/{account_id}/sync", response_model=SyncEnqueuedResponse, status_code=202)
async def trigger_sync(
    account_id: str,
    request: Optional[SyncTriggerRequest] = None,
    engine: SyncEngine = Depends(get_engine),
):
    account = await get_account_or_404(engine, account_id)
    if not account.is_active:
        raise HTTPException(status_code=409, detail="Account is deactivated")
    mode = request.mode if request else SyncMode.STANDARD.value
    job_id = await engine.jobs.enqueue_sync(account.id, mode)
    return SyncEnqueuedResponse(job_ids=[job_id], count=1)


@router.delete("/{account_id}", response_model=AccountResponse)
async def deactivate_account(account_id: str, engine: SyncEngine = Depends(get_engine)):
    """Deactivate an account and drop its push subscription."""
    account = await get_account_or_404(engine, account_id)
    await engine.accounts.deactivate(account.id, "Deactivated by operator")
    if account.subscription.subscription_id:
        await engine.subscriptions.delete(account)
    return _account_response(await engine.accounts.get(account.id))
