"""
Outlook / Microsoft 365 Provider

Microsoft Graph adapter. Pages the inbox with OData ``$top``/``$skip`` so
the cursor is a plain integer offset. Graph change notifications are not
used; these accounts are kept current by the scheduler.
"""

import logging
from datetime import datetime
from typing import Optional, List, Dict, Any

import httpx

from mailsync.core.exceptions import AuthError, RateLimitError, TransientProviderError
from mailsync.models.accounts import as_naive_utc
from mailsync.providers.base import (
    MailProvider,
    ProviderType,
    ProviderCapabilities,
    AuthType,
    CursorKind,
    OAuthTokens,
    FetchResult,
    OutgoingEnvelope,
)
from mailsync.providers.email.base import EmailFolder, EmailMessage, DEFAULT_SUBJECT
from mailsync.providers.email.mime import finalize_bodies
from mailsync.providers.oauth import (
    OUTLOOK_SCOPES,
    get_oauth_config,
    build_authorization_url,
    exchange_code_for_tokens,
    refresh_access_token,
)
from mailsync.providers.registry import register_provider

logger = logging.getLogger(__name__)


GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

SELECT_FIELDS = (
    "id,subject,body,bodyPreview,from,sender,toRecipients,ccRecipients,bccRecipients,"
    "receivedDateTime,hasAttachments,isRead,flag,importance,categories,"
    "conversationId,internetMessageId,parentFolderId"
)


def _parse_cursor(cursor: Optional[str]) -> int:
    if not cursor:
        return 0
    try:
        return max(int(cursor), 0)
    except ValueError:
        logger.warning(f"Ignoring malformed Outlook cursor: {cursor!r}")
        return 0


def _recipients(items: List[Dict[str, Any]]) -> List[str]:
    return [
        r.get("emailAddress", {}).get("address", "")
        for r in items or []
        if r.get("emailAddress", {}).get("address")
    ]


def _recipients_payload(addresses: List[str]) -> List[Dict[str, Any]]:
    return [{"emailAddress": {"address": a}} for a in addresses]


@register_provider(ProviderType.OUTLOOK)
class OutlookProvider(MailProvider):
    """
    Microsoft Graph adapter.

    Cursor: number of inbox messages already paged past.
    """

    def __init__(self, credentials=None, settings=None, breaker=None):
        super().__init__(credentials, settings=settings, breaker=breaker)
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.OUTLOOK

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            provider_type=ProviderType.OUTLOOK,
            display_name="Outlook / Microsoft 365",
            auth_type=AuthType.OAUTH2,
            cursor_kind=CursorKind.OFFSET,
            oauth_scopes=OUTLOOK_SCOPES,
            supports_push=False,
            supports_id_listing=False,
        )

    # ==================== Authentication ====================

    def _tokens(self) -> Optional[OAuthTokens]:
        return self.credentials.oauth_tokens if self.credentials else None

    def is_authenticated(self) -> bool:
        tokens = self._tokens()
        return bool(tokens and tokens.access_token and tokens.refresh_token)

    async def refresh_token(self, tokens: Optional[OAuthTokens] = None) -> OAuthTokens:
        tokens = tokens or self._tokens()
        if not tokens or not tokens.refresh_token:
            raise AuthError("Outlook account has no refresh token")
        config = get_oauth_config(ProviderType.OUTLOOK, self.settings)
        return await refresh_access_token(
            config, tokens.refresh_token, timeout=self.settings.provider_timeout_seconds
        )

    async def get_authorization_url(self, redirect_uri: str, state: str) -> str:
        config = get_oauth_config(ProviderType.OUTLOOK, self.settings)
        return build_authorization_url(config, redirect_uri, state)

    async def complete_authorization(self, code: str, redirect_uri: str) -> OAuthTokens:
        config = get_oauth_config(ProviderType.OUTLOOK, self.settings)
        return await exchange_code_for_tokens(
            config, code, redirect_uri, timeout=self.settings.provider_timeout_seconds
        )

    # ==================== HTTP plumbing ====================

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            tokens = self._tokens()
            if not tokens or not tokens.access_token:
                raise AuthError("Outlook requires an OAuth access token")
            self._client = httpx.AsyncClient(
                base_url=GRAPH_BASE_URL,
                headers={
                    "Authorization": f"Bearer {tokens.access_token}",
                    "Content-Type": "application/json",
                },
                timeout=self.settings.provider_timeout_seconds,
            )
        return self._client

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Issue a Graph request and map transport and status errors."""
        try:
            response = await self._get_client().request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransientProviderError(f"Graph API unreachable: {e}")

        if response.status_code == 401:
            raise AuthError("Graph rejected the access token")
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "Graph rate limit exceeded",
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if response.status_code >= 500:
            raise TransientProviderError(f"Graph API error {response.status_code}")
        return response

    # ==================== Fetching ====================

    async def fetch_batch(
        self,
        limit: int,
        cursor: Optional[str] = None,
        include_read: bool = False,
    ) -> FetchResult:
        skip = _parse_cursor(cursor)
        params = {
            "$select": SELECT_FIELDS,
            "$orderby": "receivedDateTime desc",
            "$top": limit,
        }
        if skip:
            params["$skip"] = skip
        if not include_read:
            params["$filter"] = "isRead eq false"

        response = await self._request("GET", "/me/mailFolders/inbox/messages", params=params)
        if response.status_code != 200:
            raise TransientProviderError(
                f"Error fetching Outlook messages: {response.status_code} - {response.text}"
            )

        data = response.json()
        items = data.get("value", [])
        has_more = bool(data.get("@odata.nextLink"))
        result = FetchResult(
            next_cursor=str(skip + len(items)) if has_more else None,
            has_more=has_more,
        )

        for item in items:
            message = self._parse_or_drop(item)
            if message is None:
                result.dropped += 1
            else:
                result.messages.append(message)
        return result

    async def fetch_by_id(self, provider_message_id: str) -> Optional[EmailMessage]:
        if self.breaker.is_tripped(provider_message_id):
            logger.warning(f"Skipping poisoned Outlook message {provider_message_id}")
            return None

        response = await self._request(
            "GET", f"/me/messages/{provider_message_id}", params={"$select": SELECT_FIELDS}
        )
        if response.status_code == 404:
            logger.info(f"Outlook message {provider_message_id} no longer exists")
            return None
        if response.status_code != 200:
            raise TransientProviderError(
                f"Error fetching Outlook message {provider_message_id}: {response.status_code}"
            )
        return self._parse_or_drop(response.json())

    def _parse_or_drop(self, msg: Any) -> Optional[EmailMessage]:
        try:
            return self._parse_outlook_message(msg)
        except (ValueError, LookupError, TypeError, AttributeError) as e:
            msg_id = msg.get("id", "") if isinstance(msg, dict) else ""
            logger.warning(f"Error parsing Outlook message {msg_id}: {e}")
            return None

    def _parse_outlook_message(self, msg: Dict[str, Any]) -> Optional[EmailMessage]:
        """Map a Graph message resource to the canonical record."""
        msg_id = msg.get("id", "")
        if self.breaker.is_tripped(msg_id):
            return None

        from_data = (msg.get("from") or msg.get("sender") or {}).get("emailAddress") or {}
        from_addr = from_data.get("address") or ""
        if not from_addr or "@" not in from_addr:
            logger.info(f"Skipping Outlook message {msg_id}: no sender address")
            return None

        body_data = msg.get("body", {}) or {}
        content = body_data.get("content", "") or ""
        if (body_data.get("contentType") or "text").lower() == "html":
            body_plain, body_html = "", content
        else:
            body_plain, body_html = content, ""
        body_plain, body_html, snippet = finalize_bodies(
            body_plain, body_html, self.settings.snippet_length
        )

        received_at = None
        received_str = msg.get("receivedDateTime")
        if received_str:
            try:
                received_at = as_naive_utc(datetime.fromisoformat(received_str.replace("Z", "+00:00")))
            except ValueError:
                logger.debug(f"Unparseable receivedDateTime on {msg_id}: {received_str}")

        flagged = (msg.get("flag") or {}).get("flagStatus", "") == "flagged"

        return EmailMessage(
            provider_message_id=msg_id,
            thread_id=msg.get("conversationId"),
            folder="INBOX",
            subject=msg.get("subject") or DEFAULT_SUBJECT,
            from_address=from_addr,
            from_name=from_data.get("name", ""),
            to_addresses=_recipients(msg.get("toRecipients", [])),
            cc_addresses=_recipients(msg.get("ccRecipients", [])),
            bcc_addresses=_recipients(msg.get("bccRecipients", [])),
            received_at=received_at,
            body_plain=body_plain,
            body_html=body_html,
            snippet=snippet,
            is_read=bool(msg.get("isRead", False)),
            is_important=msg.get("importance") == "high" or flagged,
            labels=list(msg.get("categories", []) or []),
            metadata={
                "internet_message_id": msg.get("internetMessageId"),
                "has_attachments": bool(msg.get("hasAttachments", False)),
                "parent_folder_id": msg.get("parentFolderId"),
            },
        )

    # ==================== Sending ====================

    def _message_payload(self, envelope: OutgoingEnvelope) -> Dict[str, Any]:
        if envelope.body_html:
            body = {"contentType": "HTML", "content": envelope.body_html}
        else:
            body = {"contentType": "Text", "content": envelope.body_plain}
        payload: Dict[str, Any] = {
            "subject": envelope.subject,
            "body": body,
            "toRecipients": _recipients_payload(envelope.to),
        }
        if envelope.cc:
            payload["ccRecipients"] = _recipients_payload(envelope.cc)
        if envelope.bcc:
            payload["bccRecipients"] = _recipients_payload(envelope.bcc)
        if envelope.thread_id:
            payload["conversationId"] = envelope.thread_id
        return payload

    async def send(self, envelope: OutgoingEnvelope) -> bool:
        response = await self._request(
            "POST",
            "/me/sendMail",
            json={"message": self._message_payload(envelope), "saveToSentItems": True},
        )
        if response.status_code not in (200, 202):
            logger.error(f"Outlook send failed: {response.status_code} - {response.text}")
            return False
        return True

    async def save_draft(self, envelope: OutgoingEnvelope) -> Optional[str]:
        response = await self._request("POST", "/me/messages", json=self._message_payload(envelope))
        if response.status_code not in (200, 201):
            logger.error(f"Outlook draft creation failed: {response.status_code} - {response.text}")
            return None
        return response.json().get("id")

    # ==================== Mailbox info ====================

    async def account_info(self) -> Dict[str, Any]:
        me = await self._request("GET", "/me")
        if me.status_code != 200:
            raise TransientProviderError(f"Graph /me returned {me.status_code}")
        user = me.json()

        inbox = await self._request("GET", "/me/mailFolders/inbox")
        folder = inbox.json() if inbox.status_code == 200 else {}
        return {
            "email": user.get("mail") or user.get("userPrincipalName"),
            "name": user.get("displayName"),
            "id": user.get("id"),
            "total_message_count": folder.get("totalItemCount", 0),
            "unread_count": folder.get("unreadItemCount", 0),
        }

    async def list_folders(self) -> List[EmailFolder]:
        folders: List[EmailFolder] = []
        url: Optional[str] = "/me/mailFolders"
        params: Optional[Dict[str, Any]] = {"$top": 100}
        while url:
            response = await self._request("GET", url, params=params)
            if response.status_code != 200:
                logger.error(f"Error listing Outlook folders: {response.status_code}")
                break
            data = response.json()
            for item in data.get("value", []):
                folders.append(EmailFolder(
                    id=item["id"],
                    name=item.get("displayName", ""),
                    path=item.get("displayName", ""),
                    message_count=item.get("totalItemCount", 0),
                    unread_count=item.get("unreadItemCount", 0),
                ))
            # nextLink is absolute and already carries the query string
            url = data.get("@odata.nextLink")
            params = None
        return folders

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
        self._client = None
