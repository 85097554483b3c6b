"""
IMAP/SMTP Provider

Password-authenticated adapter for any IMAP server. Reads INBOX read-only
with ``BODY.PEEK[]`` so nothing gets marked as seen, sends through SMTP and
files copies in Sent/Drafts with APPEND. IMAP has no push channel here, so
these accounts are only ever polled.
"""

import asyncio
import email
import email.utils
import logging
import re
import smtplib
import ssl
from contextlib import asynccontextmanager
from email.message import Message as EmailMessageObj
from typing import Optional, List, Dict, Any, Tuple

import aioimaplib

from mailsync.core.exceptions import AuthError, MessageExtractionError, TransientProviderError
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
from mailsync.providers.email.base import (
    EmailFolder,
    EmailMessage,
    EmailAttachment,
    DEFAULT_SUBJECT,
)
from mailsync.providers.email.mime import (
    walk_parts,
    finalize_bodies,
    decode_header,
    parse_sender,
    parse_address_list,
    build_mime_message,
)
from mailsync.providers.registry import register_provider

logger = logging.getLogger(__name__)

FOLDER_ALIASES = {
    "inbox": "INBOX",
    "sent": "Sent",
    "drafts": "Drafts",
    "trash": "Trash",
    "junk": "Junk",
    "spam": "Spam",
    "archive": "Archive",
    "starred": "Starred",
    "important": "Important",
    "all": "All Mail",
}

FETCH_ITEMS = "(UID FLAGS RFC822.SIZE BODY.PEEK[])"
UID_ID_PREFIX = "uid:"

_LIST_RE = re.compile(r'\((?P<flags>[^)]*)\)\s+(?P<delim>"[^"]*"|NIL)\s+(?P<name>.+)')


def map_folder(name: str) -> str:
    """Translate a well-known folder alias to its usual IMAP mailbox name."""
    return FOLDER_ALIASES.get(name.lower(), name)


def _quote(mailbox: str) -> str:
    if mailbox.startswith('"'):
        return mailbox
    return f'"{mailbox}"' if " " in mailbox else mailbox


def parse_cursor(cursor: Optional[str], limit: int) -> int:
    """
    Turn a ``page/size`` cursor into an offset.

    The page size travels with the index so a follow-up call with a
    different ``limit`` still resumes at the right message.
    """
    if not cursor:
        return 0
    try:
        if "/" in cursor:
            page, size = cursor.split("/", 1)
            return max(int(page) * int(size), 0)
        return max(int(cursor) * limit, 0)
    except ValueError:
        logger.warning(f"Ignoring malformed IMAP cursor: {cursor!r}")
        return 0


def make_cursor(offset: int, limit: int) -> str:
    if limit and offset % limit == 0:
        return f"{offset // limit}/{limit}"
    # Offset does not fall on a page boundary of this size
    return f"{offset}/1"


def _text(line: Any) -> str:
    return line.decode("utf-8", errors="replace") if isinstance(line, (bytes, bytearray)) else str(line)


@register_provider(ProviderType.IMAP)
class ImapProvider(MailProvider):
    """
    IMAP adapter.

    Cursor: page index into the UNSEEN (or ALL) search result, newest first.
    """

    @property
    def provider_type(self) -> ProviderType:
        return ProviderType.IMAP

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities(
            provider_type=ProviderType.IMAP,
            display_name="IMAP / SMTP",
            auth_type=AuthType.PASSWORD,
            cursor_kind=CursorKind.PAGE_INDEX,
            supports_push=False,
            supports_id_listing=False,
            rate_limit_requests_per_minute=60,
        )

    # ==================== Authentication ====================

    def is_authenticated(self) -> bool:
        creds = self.credentials
        return bool(creds and creds.host and creds.username and creds.password)

    async def refresh_token(self, tokens: Optional[OAuthTokens] = None) -> Optional[OAuthTokens]:
        """Nothing to refresh; re-verify the login instead."""
        async with self._session():
            pass
        return None

    # ==================== Connection ====================

    @asynccontextmanager
    async def _session(self):
        """Connected, logged-in IMAP client that is logged out on exit."""
        creds = self.credentials
        if not self.is_authenticated():
            raise AuthError("IMAP account is missing host, username or password")

        timeout = self.settings.provider_timeout_seconds
        try:
            if creds.use_ssl:
                client = aioimaplib.IMAP4_SSL(
                    host=creds.host,
                    port=creds.port,
                    ssl_context=ssl.create_default_context(),
                    timeout=timeout,
                )
            else:
                client = aioimaplib.IMAP4(host=creds.host, port=creds.port, timeout=timeout)
            await client.wait_hello_from_server()
            response = await client.login(creds.username, creds.password)
        except (OSError, asyncio.TimeoutError) as e:
            raise TransientProviderError(f"IMAP server {creds.host} unreachable: {e}")

        if response.result != "OK":
            raise AuthError(f"IMAP login failed for {creds.username}@{creds.host}")

        try:
            yield client
        finally:
            try:
                await client.logout()
            except (OSError, asyncio.TimeoutError, aioimaplib.Abort, aioimaplib.CommandTimeout) as e:
                logger.warning(f"Error during IMAP logout: {e}")

    async def _command(self, coro, what: str):
        try:
            response = await coro
        except (OSError, asyncio.TimeoutError, aioimaplib.Abort, aioimaplib.CommandTimeout) as e:
            raise TransientProviderError(f"IMAP {what} failed: {e}")
        return response

    # ==================== Fetching ====================

    async def _search(self, client, criterion: str) -> List[str]:
        response = await self._command(client.uid_search(criterion), "search")
        if response.result != "OK" or not response.lines:
            return []
        uids = _text(response.lines[0]).split()
        return sorted((u for u in uids if u.isdigit()), key=int, reverse=True)

    async def fetch_batch(
        self,
        limit: int,
        cursor: Optional[str] = None,
        include_read: bool = False,
    ) -> FetchResult:
        offset = parse_cursor(cursor, limit)

        async with self._session() as client:
            response = await self._command(client.examine("INBOX"), "examine")
            if response.result != "OK":
                raise TransientProviderError("Could not open INBOX")

            uids = await self._search(client, "ALL" if include_read else "UNSEEN")
            page = uids[offset:offset + limit]
            has_more = offset + len(page) < len(uids)
            result = FetchResult(
                next_cursor=make_cursor(offset + len(page), limit) if has_more else None,
                has_more=has_more,
            )
            if not page:
                return result

            fetched = await self._fetch_uids(client, page)

        for uid in page:
            raw = fetched.get(uid)
            message = None
            if raw is not None:
                message = self._parse_or_trip(uid, raw)
            if message is None:
                result.dropped += 1
            else:
                result.messages.append(message)
        return result

    async def _fetch_uids(self, client, uids: List[str]) -> Dict[str, Dict[str, Any]]:
        """UID FETCH a set of messages; returns uid -> {flags, size, body}."""
        response = await self._command(client.uid("fetch", ",".join(uids), FETCH_ITEMS), "fetch")
        if response.result != "OK":
            raise TransientProviderError(f"IMAP fetch failed: {response.result}")

        fetched: Dict[str, Dict[str, Any]] = {}
        current: Dict[str, Any] = {}
        for line in response.lines:
            if isinstance(line, bytearray):
                if current.get("uid"):
                    current["body"] = bytes(line)
                    fetched[current["uid"]] = current
                current = {}
                continue
            text = _text(line)
            if "FETCH" in text:
                current = self._parse_fetch_line(text)
        return fetched

    @staticmethod
    def _parse_fetch_line(line: str) -> Dict[str, Any]:
        data: Dict[str, Any] = {"flags": [], "size": 0}
        uid_match = re.search(r"UID\s+(\d+)", line)
        if uid_match:
            data["uid"] = uid_match.group(1)
        flags_match = re.search(r"FLAGS\s+\(([^)]*)\)", line)
        if flags_match:
            data["flags"] = flags_match.group(1).split()
        size_match = re.search(r"RFC822\.SIZE\s+(\d+)", line)
        if size_match:
            data["size"] = int(size_match.group(1))
        return data

    def _parse_or_trip(self, uid: str, raw: Dict[str, Any]) -> Optional[EmailMessage]:
        try:
            return self._parse_message(uid, raw)
        except MessageExtractionError as e:
            self.breaker.trip(e.provider_message_id or f"{UID_ID_PREFIX}{uid}", e)
            return None
        except (ValueError, LookupError, UnicodeError) as e:
            logger.warning(f"Error parsing IMAP message uid {uid}: {e}")
            return None

    async def fetch_by_id(self, provider_message_id: str) -> Optional[EmailMessage]:
        if self.breaker.is_tripped(provider_message_id):
            logger.warning(f"Skipping poisoned IMAP message {provider_message_id}")
            return None

        async with self._session() as client:
            response = await self._command(client.examine("INBOX"), "examine")
            if response.result != "OK":
                raise TransientProviderError("Could not open INBOX")

            if provider_message_id.startswith(UID_ID_PREFIX):
                uids = [provider_message_id[len(UID_ID_PREFIX):]]
            else:
                uids = await self._search(
                    client, f'HEADER Message-ID "<{provider_message_id}>"'
                )
            if not uids:
                return None
            fetched = await self._fetch_uids(client, uids[:1])

        raw = fetched.get(uids[0])
        if raw is None:
            return None
        return self._parse_or_trip(uids[0], raw)

    def _parse_message(self, uid: str, data: Dict[str, Any]) -> Optional[EmailMessage]:
        """Map a raw RFC 822 message to the canonical record."""
        msg = email.message_from_bytes(data["body"])
        message_id = (msg.get("Message-ID") or "").strip().strip("<>")
        provider_id = message_id or f"{UID_ID_PREFIX}{uid}"

        if self.breaker.is_tripped(provider_id):
            return None

        from_name, from_addr = parse_sender(msg.get("From"))
        if not from_addr:
            logger.info(f"Skipping IMAP message {provider_id}: no sender address")
            return None

        body_plain, body_html, attachments = self._extract_parts(msg, provider_id)
        body_plain, body_html, snippet = finalize_bodies(
            body_plain, body_html, self.settings.snippet_length
        )

        received_at = None
        date_header = msg.get("Date")
        if date_header:
            try:
                received_at = as_naive_utc(email.utils.parsedate_to_datetime(date_header))
            except (TypeError, ValueError):
                logger.debug(f"Unparseable Date header on {provider_id}: {date_header}")

        references = (msg.get("References") or "").split()
        flags = data.get("flags", [])

        return EmailMessage(
            provider_message_id=provider_id,
            thread_id=(references[0].strip("<>") if references else provider_id),
            folder="INBOX",
            subject=decode_header(msg.get("Subject")) or DEFAULT_SUBJECT,
            from_address=from_addr,
            from_name=from_name,
            to_addresses=parse_address_list(msg.get("To")),
            cc_addresses=parse_address_list(msg.get("Cc")),
            received_at=received_at,
            body_plain=body_plain,
            body_html=body_html,
            snippet=snippet,
            is_read="\\Seen" in flags,
            is_important="\\Flagged" in flags,
            labels=flags,
            attachments=attachments,
            in_reply_to=(msg.get("In-Reply-To") or "").strip() or None,
            references=references,
            size_bytes=data.get("size") or len(data["body"]),
            metadata={"uid": uid},
        )

    def _extract_parts(
        self, msg: EmailMessageObj, message_id: str
    ) -> Tuple[str, str, List[EmailAttachment]]:
        body_plain = ""
        body_html = ""
        attachments: List[EmailAttachment] = []

        def children(part: EmailMessageObj):
            return part.get_payload() if part.is_multipart() else []

        for part, _depth in walk_parts(msg, children, self.settings.max_mime_depth, message_id):
            if part.is_multipart():
                continue
            disposition = str(part.get("Content-Disposition", ""))
            filename = part.get_filename()

            if "attachment" in disposition or filename:
                payload = part.get_payload(decode=True) or b""
                attachments.append(EmailAttachment(
                    id=f"att_{message_id}_{len(attachments)}",
                    filename=decode_header(filename) if filename else "attachment",
                    content_type=part.get_content_type(),
                    size_bytes=len(payload),
                    content_id=part.get("Content-ID"),
                ))
                continue

            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue
            payload = part.get_payload(decode=True)
            if not payload:
                continue
            charset = part.get_content_charset() or "utf-8"
            try:
                text = payload.decode(charset, errors="replace")
            except LookupError:
                text = payload.decode("utf-8", errors="replace")

            if content_type == "text/plain" and not body_plain:
                body_plain = text
            elif content_type == "text/html" and not body_html:
                body_html = text

        return body_plain, body_html, attachments

    # ==================== Sending ====================

    def _smtp_send(self, message) -> None:
        creds = self.credentials
        host = creds.smtp_host or creds.host
        password = creds.smtp_password or creds.password
        timeout = self.settings.provider_timeout_seconds

        if creds.smtp_port == 465:
            server = smtplib.SMTP_SSL(host, creds.smtp_port, timeout=timeout,
                                      context=ssl.create_default_context())
        else:
            server = smtplib.SMTP(host, creds.smtp_port, timeout=timeout)
        try:
            if creds.smtp_use_tls and creds.smtp_port != 465:
                server.starttls(context=ssl.create_default_context())
            server.login(creds.username, password)
            server.send_message(message)
        finally:
            server.quit()

    async def send(self, envelope: OutgoingEnvelope) -> bool:
        message = build_mime_message(envelope, from_address=self.credentials.username)
        try:
            await asyncio.to_thread(self._smtp_send, message)
        except smtplib.SMTPAuthenticationError as e:
            raise AuthError(f"SMTP login failed: {e}")
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP send failed: {e}")
            return False

        # Keep a copy in Sent; the message is already delivered either way
        try:
            await self._append(message.as_bytes(), map_folder("sent"), "(\\Seen)")
        except (TransientProviderError, AuthError) as e:
            logger.warning(f"Sent message not copied to Sent folder: {e}")
        return True

    async def save_draft(self, envelope: OutgoingEnvelope) -> Optional[str]:
        message = build_mime_message(envelope, from_address=self.credentials.username)
        ok = await self._append(message.as_bytes(), map_folder("drafts"), "(\\Draft)")
        if not ok:
            return None
        return message["Message-ID"].strip("<>")

    async def _append(self, message_bytes: bytes, mailbox: str, flags: str) -> bool:
        async with self._session() as client:
            response = await self._command(
                client.append(message_bytes, mailbox=_quote(mailbox), flags=flags), "append"
            )
        if response.result != "OK":
            logger.error(f"IMAP APPEND to {mailbox} failed: {response.lines}")
            return False
        return True

    # ==================== Mailbox info ====================

    async def account_info(self) -> Dict[str, Any]:
        folders = await self.list_folders()
        inbox = next((f for f in folders if f.path.upper() == "INBOX"), None)
        return {
            "email": self.credentials.username,
            "host": self.credentials.host,
            "total_message_count": inbox.message_count if inbox else 0,
            "unread_count": inbox.unread_count if inbox else 0,
            "folders": [f.to_dict() for f in folders],
        }

    async def list_folders(self) -> List[EmailFolder]:
        folders: List[EmailFolder] = []
        async with self._session() as client:
            response = await self._command(client.list('""', "*"), "list")
            if response.result != "OK":
                return folders

            for line in response.lines:
                match = _LIST_RE.match(_text(line))
                if not match:
                    continue
                flags = match.group("flags").split()
                if "\\Noselect" in flags:
                    continue
                name = match.group("name").strip().strip('"')
                delim = match.group("delim").strip('"')

                message_count, unread_count = 0, 0
                status = await self._command(
                    client.status(_quote(name), "(MESSAGES UNSEEN)"), "status"
                )
                if status.result == "OK" and status.lines:
                    text = _text(status.lines[0])
                    m = re.search(r"MESSAGES\s+(\d+)", text)
                    u = re.search(r"UNSEEN\s+(\d+)", text)
                    message_count = int(m.group(1)) if m else 0
                    unread_count = int(u.group(1)) if u else 0

                folders.append(EmailFolder(
                    id=name,
                    name=name.split(delim)[-1] if delim and delim != "NIL" else name,
                    path=name,
                    message_count=message_count,
                    unread_count=unread_count,
                    flags=flags,
                ))
        return folders
