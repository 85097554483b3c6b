"""
Gmail Provider

Gmail API adapter. Lists inbox message ids cheaply with ``messages.list``,
fetches full messages with ``messages.get`` and keeps a push watch alive
through ``users.watch`` on a Pub/Sub topic.

The discovery client is synchronous, so every ``execute()`` runs in a
worker thread.
"""

import asyncio
import base64
import logging
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from mailsync.core.exceptions import (
    AuthError,
    MessageExtractionError,
    RateLimitError,
    SubscriptionError,
    SubscriptionNotFound,
    TransientProviderError,
)
from mailsync.providers.base import (
    MailProvider,
    ProviderType,
    ProviderCapabilities,
    AuthType,
    CursorKind,
    OAuthTokens,
    FetchResult,
    IdListResult,
    OutgoingEnvelope,
    SubscriptionInfo,
)
from mailsync.providers.email.base import (
    EmailFolder,
    EmailMessage,
    EmailAttachment,
    DEFAULT_SUBJECT,
)
from mailsync.providers.email.mime import (
    walk_parts,
    finalize_bodies,
    parse_sender,
    parse_address_list,
    build_mime_message,
)
from mailsync.providers.oauth import (
    GMAIL_SCOPES,
    get_oauth_config,
    build_authorization_url,
    exchange_code_for_tokens,
)
from mailsync.providers.registry import register_provider

logger = logging.getLogger(__name__)

GMAIL_TOKEN_URI = "https://oauth2.googleapis.com/token"
MAX_LIST_RESULTS = 100


def _decode_base64(data: str) -> str:
    """Decode URL-safe base64."""
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (ValueError, TypeError):
        return ""


def _http_status(error: HttpError) -> int:
    return int(getattr(error.resp, "status", 0) or 0)


@register_provider(ProviderType.GMAIL)
class GmailProvider(MailProvider):
    """
    Gmail API adapter.

    Cursor: the opaque ``nextPageToken`` from ``messages.list``.
    """

    def __init__(self, credentials=None, settings=None, breaker=None):
        super().__init__(credentials, settings=settings, breaker=breaker)
        self._service = None

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.GMAIL

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            provider_type=ProviderType.GMAIL,
            display_name="Gmail",
            auth_type=AuthType.OAUTH2,
            cursor_kind=CursorKind.PAGE_TOKEN,
            oauth_scopes=GMAIL_SCOPES,
            supports_push=True,
            supports_id_listing=True,
            rate_limit_requests_per_minute=250,
        )

    # ==================== Authentication ====================

    def _tokens(self) -> Optional[OAuthTokens]:
        return self.credentials.oauth_tokens if self.credentials else None

    def is_authenticated(self) -> bool:
        tokens = self._tokens()
        return bool(tokens and tokens.access_token and tokens.refresh_token)

    def _google_credentials(self, tokens: OAuthTokens) -> Credentials:
        return Credentials(
            token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_uri=GMAIL_TOKEN_URI,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
            scopes=GMAIL_SCOPES,
            expiry=tokens.expires_at,
        )

    async def refresh_token(self, tokens: Optional[OAuthTokens] = None) -> OAuthTokens:
        tokens = tokens or self._tokens()
        if not tokens or not tokens.refresh_token:
            raise AuthError("Gmail account has no refresh token")

        creds = self._google_credentials(tokens)
        try:
            await asyncio.to_thread(creds.refresh, Request())
        except RefreshError as e:
            raise AuthError(f"Gmail token refresh rejected: {e}")
        except TransportError as e:
            raise TransientProviderError(f"Gmail token endpoint unreachable: {e}")

        new_refresh = creds.refresh_token if creds.refresh_token != tokens.refresh_token else None
        return OAuthTokens(
            access_token=creds.token,
            refresh_token=new_refresh,
            expires_at=creds.expiry,
            scope=" ".join(creds.scopes or []) or None,
        )

    async def get_authorization_url(self, redirect_uri: str, state: str) -> str:
        config = get_oauth_config(ProviderType.GMAIL, self.settings)
        return build_authorization_url(config, redirect_uri, state)

    async def complete_authorization(self, code: str, redirect_uri: str) -> OAuthTokens:
        config = get_oauth_config(ProviderType.GMAIL, self.settings)
        return await exchange_code_for_tokens(
            config, code, redirect_uri, timeout=self.settings.provider_timeout_seconds
        )

    # ==================== API plumbing ====================

    def _get_service(self):
        if self._service is None:
            tokens = self._tokens()
            if not tokens or not tokens.access_token:
                raise AuthError("Gmail requires an OAuth access token")
            self._service = build(
                "gmail", "v1",
                credentials=self._google_credentials(tokens),
                cache_discovery=False,
            )
        return self._service

    async def _execute(self, request) -> Dict[str, Any]:
        """Run a discovery request off the event loop and map its errors."""
        try:
            return await asyncio.to_thread(request.execute)
        except HttpError as e:
            status = _http_status(e)
            if status == 401:
                raise AuthError(f"Gmail rejected the access token: {e}")
            if status == 429:
                retry_after = e.resp.get("retry-after") if hasattr(e.resp, "get") else None
                raise RateLimitError(
                    "Gmail rate limit exceeded",
                    retry_after=int(retry_after) if retry_after else None,
                )
            if status >= 500:
                raise TransientProviderError(f"Gmail API error {status}: {e}")
            raise
        except RefreshError as e:
            raise AuthError(f"Gmail token refresh rejected: {e}")
        except (TransportError, OSError) as e:
            raise TransientProviderError(f"Gmail API unreachable: {e}")

    # ==================== Fetching ====================

    @staticmethod
    def _query(include_read: bool) -> str:
        query = "in:inbox"
        if not include_read:
            query += " is:unread"
        return query

    async def fetch_ids(
        self,
        limit: int,
        cursor: Optional[str] = None,
        include_read: bool = False,
    ) -> IdListResult:
        params = {
            "userId": "me",
            "q": self._query(include_read),
            "maxResults": min(limit, MAX_LIST_RESULTS),
            "includeSpamTrash": False,
        }
        if cursor:
            params["pageToken"] = cursor

        result = await self._execute(self._get_service().users().messages().list(**params))
        ids = [ref["id"] for ref in result.get("messages", [])]
        next_cursor = result.get("nextPageToken")
        return IdListResult(ids=ids, next_cursor=next_cursor, has_more=bool(next_cursor))

    async def fetch_batch(
        self,
        limit: int,
        cursor: Optional[str] = None,
        include_read: bool = False,
    ) -> FetchResult:
        listing = await self.fetch_ids(limit, cursor, include_read)
        result = FetchResult(next_cursor=listing.next_cursor, has_more=listing.has_more)

        for message_id in listing.ids:
            try:
                message = await self.fetch_by_id(message_id)
            except (AuthError, TransientProviderError):
                raise
            except HttpError as e:
                logger.warning(f"Gmail message {message_id} could not be fetched: {e}")
                message = None
            if message is None:
                result.dropped += 1
            else:
                result.messages.append(message)

        return result

    async def fetch_by_id(self, provider_message_id: str) -> Optional[EmailMessage]:
        if self.breaker.is_tripped(provider_message_id):
            logger.warning(f"Skipping poisoned Gmail message {provider_message_id}")
            return None

        request = self._get_service().users().messages().get(
            userId="me", id=provider_message_id, format="full"
        )
        try:
            raw = await self._execute(request)
        except HttpError as e:
            if _http_status(e) == 404:
                logger.info(f"Gmail message {provider_message_id} no longer exists")
                return None
            raise

        try:
            return self._parse_gmail_message(raw)
        except MessageExtractionError as e:
            self.breaker.trip(provider_message_id, e)
            return None
        except (ValueError, LookupError, TypeError, AttributeError, UnicodeError) as e:
            logger.warning(f"Error parsing Gmail message {provider_message_id}: {e}")
            return None

    def _parse_gmail_message(self, msg: Dict[str, Any]) -> Optional[EmailMessage]:
        """Map a Gmail API message to the canonical record."""
        msg_id = msg.get("id", "")
        labels = msg.get("labelIds", []) or []
        payload = msg.get("payload", {}) or {}

        headers = {}
        for header in payload.get("headers", []):
            headers[header.get("name", "").lower()] = header.get("value", "")

        from_name, from_addr = parse_sender(headers.get("from"))
        if not from_addr:
            logger.info(f"Skipping Gmail message {msg_id}: no sender address")
            return None

        body_plain, body_html, attachments = self._extract_parts(payload, msg_id)
        body_plain, body_html, snippet = finalize_bodies(
            body_plain, body_html, self.settings.snippet_length
        )

        received_at = None
        internal_date = msg.get("internalDate")
        if internal_date:
            received_at = datetime.fromtimestamp(
                int(internal_date) / 1000, tz=timezone.utc
            ).replace(tzinfo=None)

        return EmailMessage(
            provider_message_id=msg_id,
            thread_id=msg.get("threadId"),
            folder="INBOX",
            subject=headers.get("subject") or DEFAULT_SUBJECT,
            from_address=from_addr,
            from_name=from_name,
            to_addresses=parse_address_list(headers.get("to")),
            cc_addresses=parse_address_list(headers.get("cc")),
            bcc_addresses=parse_address_list(headers.get("bcc")),
            received_at=received_at,
            body_plain=body_plain,
            body_html=body_html,
            snippet=snippet,
            is_read="UNREAD" not in labels,
            is_important="IMPORTANT" in labels or "STARRED" in labels,
            labels=labels,
            attachments=attachments,
            in_reply_to=headers.get("in-reply-to") or None,
            references=headers.get("references", "").split(),
            size_bytes=int(msg.get("sizeEstimate", 0) or 0),
            metadata={"history_id": msg.get("historyId")},
        )

    def _extract_parts(self, payload: Dict[str, Any], message_id: str):
        """Collect the first plain and HTML bodies plus attachment descriptors."""
        body_plain = ""
        body_html = ""
        attachments: List[EmailAttachment] = []

        for part, _depth in walk_parts(
            payload,
            lambda p: p.get("parts", []),
            self.settings.max_mime_depth,
            message_id,
        ):
            mime_type = part.get("mimeType", "")
            body = part.get("body", {}) or {}
            filename = part.get("filename", "")

            if filename:
                attachments.append(EmailAttachment(
                    id=body.get("attachmentId") or f"att_{message_id}_{part.get('partId', '')}",
                    filename=filename,
                    content_type=mime_type or "application/octet-stream",
                    size_bytes=int(body.get("size", 0) or 0),
                ))
                continue

            if not body.get("data"):
                continue
            if mime_type == "text/plain" and not body_plain:
                body_plain = _decode_base64(body["data"])
            elif mime_type == "text/html" and not body_html:
                body_html = _decode_base64(body["data"])

        return body_plain, body_html, attachments

    # ==================== Sending ====================

    def _raw_message(self, envelope: OutgoingEnvelope) -> Dict[str, Any]:
        mime = build_mime_message(envelope)
        body: Dict[str, Any] = {"raw": base64.urlsafe_b64encode(mime.as_bytes()).decode()}
        if envelope.thread_id:
            body["threadId"] = envelope.thread_id
        return body

    async def send(self, envelope: OutgoingEnvelope) -> bool:
        request = self._get_service().users().messages().send(
            userId="me", body=self._raw_message(envelope)
        )
        try:
            await self._execute(request)
            return True
        except HttpError as e:
            logger.error(f"Gmail send failed: {e}")
            return False

    async def save_draft(self, envelope: OutgoingEnvelope) -> Optional[str]:
        request = self._get_service().users().drafts().create(
            userId="me", body={"message": self._raw_message(envelope)}
        )
        try:
            draft = await self._execute(request)
            return draft.get("id")
        except HttpError as e:
            logger.error(f"Gmail draft creation failed: {e}")
            return None

    # ==================== Mailbox info ====================

    async def account_info(self) -> Dict[str, Any]:
        profile = await self._execute(self._get_service().users().getProfile(userId="me"))
        return {
            "email": profile.get("emailAddress"),
            "total_message_count": profile.get("messagesTotal", 0),
            "threads_total": profile.get("threadsTotal", 0),
            "history_id": profile.get("historyId"),
        }

    async def list_folders(self) -> List[EmailFolder]:
        service = self._get_service()
        result = await self._execute(service.users().labels().list(userId="me"))

        folders: List[EmailFolder] = []
        for label in result.get("labels", []):
            try:
                detail = await self._execute(
                    service.users().labels().get(userId="me", id=label["id"])
                )
            except HttpError as e:
                logger.warning(f"Could not read label {label.get('name')}: {e}")
                detail = label
            folders.append(EmailFolder(
                id=label["id"],
                name=label.get("name", label["id"]).split("/")[-1],
                path=label.get("name", label["id"]),
                message_count=detail.get("messagesTotal", 0),
                unread_count=detail.get("messagesUnread", 0),
                flags=[label.get("type", "user")],
            ))
        return folders

    # ==================== Push subscriptions ====================

    def _topic(self, account_id: str) -> str:
        template = self.settings.gmail_pubsub_topic
        if not template:
            raise SubscriptionError("gmail_pubsub_topic is not configured")
        return template.format(account_id=account_id)

    async def _watch(self, account_id: str) -> SubscriptionInfo:
        topic = self._topic(account_id)
        request = self._get_service().users().watch(
            userId="me",
            body={
                "topicName": topic,
                "labelIds": ["INBOX"],
                "labelFilterAction": "include",
            },
        )
        try:
            response = await self._execute(request)
        except HttpError as e:
            if _http_status(e) == 404:
                raise SubscriptionNotFound(f"Gmail watch target not found: {e}")
            raise SubscriptionError(f"Gmail watch rejected: {e}")

        expiration_ms = int(response.get("expiration", 0) or 0)
        expires_at = datetime.fromtimestamp(expiration_ms / 1000, tz=timezone.utc).replace(tzinfo=None)
        return SubscriptionInfo(
            subscription_id=topic,
            expires_at=expires_at,
            resource=str(response.get("historyId")) if response.get("historyId") else None,
        )

    async def create_subscription(self, account_id, callback_url, client_state, expires_at):
        # Gmail decides the watch lifetime itself; the push endpoint carrying
        # client_state is configured on the Pub/Sub subscription for the topic.
        return await self._watch(account_id)

    async def renew_subscription(self, account_id, subscription_id, callback_url, client_state, expires_at):
        return await self._watch(account_id)

    async def delete_subscription(self, subscription_id: str) -> bool:
        try:
            await self._execute(self._get_service().users().stop(userId="me"))
            return True
        except HttpError as e:
            if _http_status(e) == 404:
                return True
            logger.error(f"Gmail stop failed: {e}")
            return False

    async def close(self) -> None:
        self._service = None
