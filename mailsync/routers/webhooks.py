"""
Webhooks Router

Receives provider push notifications. Handlers only validate and enqueue;
fetching always happens in a worker.
"""

import base64
import json
import logging
from typing import Optional, Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from mailsync.models.schemas import NotificationAck
from mailsync.providers.base import ProviderType
from mailsync.routers.deps import get_engine
from mailsync.services.engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


def _decode_pubsub(body: Any) -> Dict[str, Any]:
    """Decode the ``message.data`` payload of a Pub/Sub push envelope."""
    if not isinstance(body, dict):
        raise ValueError("envelope is not an object")
    data = body["message"]["data"]
    decoded = json.loads(base64.b64decode(data).decode("utf-8"))
    if not isinstance(decoded, dict) or not decoded.get("emailAddress"):
        raise ValueError("payload carries no emailAddress")
    return decoded


def _notifications(body: Any) -> List[Dict[str, Any]]:
    """Accept a single ``{resource, client_state}`` or a Graph-style ``{value: [...]}`` batch."""
    if not isinstance(body, dict):
        raise ValueError("notification is not an object")
    items = body.get("value") if isinstance(body.get("value"), list) else [body]
    return [
        {
            "client_state": item.get("client_state") or item.get("clientState"),
            "resource": item.get("resource"),
        }
        for item in items
        if isinstance(item, dict)
    ]


@router.post("/gmail", response_model=NotificationAck)
async def gmail_notification(
    request: Request,
    token: Optional[str] = Query(None),
    engine: SyncEngine = Depends(get_engine),
):
    """Gmail Pub/Sub push endpoint."""
    try:
        payload = _decode_pubsub(await request.json())
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"Malformed Pub/Sub envelope: {e}")
        raise HTTPException(status_code=400, detail="Malformed Pub/Sub envelope")

    account = await engine.accounts.find_by_email(payload["emailAddress"], ProviderType.GMAIL)
    if account is None:
        logger.info(f"Notification for unknown Gmail account {payload['emailAddress']} ignored")
        return NotificationAck(status="ignored")

    history_id = payload.get("historyId")
    accepted = await engine.subscriptions.handle_notification(
        account, token, str(history_id) if history_id else None
    )
    if not accepted:
        raise HTTPException(status_code=401, detail="Invalid notification token")
    return NotificationAck(status="accepted")


@router.post("/{account_id}")
async def account_notification(
    account_id: str,
    request: Request,
    validationToken: Optional[str] = Query(None),
    engine: SyncEngine = Depends(get_engine),
):
    """Generic per-account notification endpoint with subscription handshake."""
    if validationToken is not None:
        return PlainTextResponse(validationToken)

    try:
        notifications = _notifications(await request.json())
    except (ValueError, TypeError) as e:
        logger.warning(f"Malformed notification for {account_id}: {e}")
        raise HTTPException(status_code=400, detail="Malformed notification")

    account = await engine.accounts.get(account_id)
    if account is None or not account.is_active:
        return NotificationAck(status="ignored")

    accepted = 0
    for notification in notifications:
        if not engine.subscriptions.validate_callback(account, notification["client_state"]):
            raise HTTPException(status_code=401, detail="Invalid client state")
        accepted += 1

    if accepted:
        resource = notifications[-1]["resource"]
        await engine.subscriptions.handle_notification(account, notifications[-1]["client_state"], resource)
    return NotificationAck(status="accepted", detail={"notifications": accepted})
