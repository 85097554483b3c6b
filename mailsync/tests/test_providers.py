"""
Unit tests for the provider adapters.

Parsing is exercised directly; the Gmail discovery client is replaced by a
MagicMock so no network calls are made.
"""

import base64
from email.message import EmailMessage as EmailMessageObj
from unittest.mock import MagicMock

import httpx
import pytest

from mailsync.core.exceptions import MessageExtractionError
from mailsync.providers.base import AuthType, ConnectionCredentials, OAuthTokens, ProviderType
from mailsync.providers.email.gmail_sync import GmailProvider
from mailsync.providers.email.imap_sync import ImapProvider, make_cursor, map_folder, parse_cursor
from mailsync.providers.email.mime import (
    MessageCircuitBreaker,
    finalize_bodies,
    html_to_text,
    parse_sender,
    walk_parts,
)
from mailsync.providers.email.outlook_sync import GRAPH_BASE_URL, OutlookProvider
from mailsync.providers.registry import create_provider


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


def _gmail_creds() -> ConnectionCredentials:
    return ConnectionCredentials(
        auth_type=AuthType.OAUTH2,
        oauth_tokens=OAuthTokens(access_token="a", refresh_token="r"),
    )


def _nested_payload(depth: int) -> dict:
    part = {"mimeType": "text/plain", "body": {"data": _b64("deep")}}
    for _ in range(depth):
        part = {"mimeType": "multipart/mixed", "parts": [part]}
    return part


class TestMimeHelpers:
    """Tests for shared MIME helpers."""

    def test_walk_parts_document_order(self):
        """Test that parts are yielded root first, then children in order."""
        tree = {"n": "root", "parts": [{"n": "a", "parts": [{"n": "a1"}]}, {"n": "b"}]}

        names = [p["n"] for p, _ in walk_parts(tree, lambda p: p.get("parts", []), 25)]

        assert names == ["root", "a", "a1", "b"]

    def test_walk_parts_depth_bound(self):
        """Test that nesting beyond the bound raises instead of recursing."""
        tree = _nested_payload(30)

        with pytest.raises(MessageExtractionError) as exc_info:
            list(walk_parts(tree, lambda p: p.get("parts", []), 25, "msg-1"))

        assert exc_info.value.provider_message_id == "msg-1"

    def test_html_only_body_generates_plain(self):
        """Test that a missing plain body is derived from HTML."""
        plain, html, snippet = finalize_bodies("", "<html><body><p>Hello <b>there</b></p><script>x()</script></body></html>")

        assert "Hello" in plain and "there" in plain
        assert "x()" not in plain
        assert html.startswith("<html>")
        assert snippet.startswith("Hello")

    def test_empty_body_default(self):
        """Test the default plain body when nothing is present."""
        plain, _, snippet = finalize_bodies("", "")

        assert plain == "No content"
        assert snippet == "No content"

    def test_snippet_length(self):
        """Test that the snippet is cut to the configured length."""
        _, _, snippet = finalize_bodies("word " * 100, "", snippet_length=150)

        assert len(snippet) == 150

    def test_html_to_text_strips_style(self):
        """Test that style blocks are dropped."""
        assert html_to_text("<style>p{color:red}</style><p>Visible</p>") == "Visible"

    def test_parse_sender(self):
        """Test sender parsing with and without an address."""
        assert parse_sender('"Jane Doe" <jane@example.com>') == ("Jane Doe", "jane@example.com")
        assert parse_sender("undisclosed-recipients")[1] == ""
        assert parse_sender(None)[1] == ""

    def test_circuit_breaker(self):
        """Test seeding and tripping the breaker."""
        breaker = MessageCircuitBreaker(["1985b8d55892dd7f"])

        assert breaker.is_tripped("1985b8d55892dd7f")
        assert not breaker.is_tripped("other")

        breaker.trip("other", "too deep")

        assert breaker.is_tripped("other")
        assert breaker.tripped_ids() == ["1985b8d55892dd7f", "other"]


class TestRegistry:
    """Tests for the provider registry."""

    def test_all_providers_registered(self, settings):
        """Test that every provider type resolves to its adapter."""
        assert isinstance(create_provider(ProviderType.GMAIL, None, settings=settings), GmailProvider)
        assert isinstance(create_provider(ProviderType.OUTLOOK, None, settings=settings), OutlookProvider)
        assert isinstance(create_provider(ProviderType.IMAP, None, settings=settings), ImapProvider)

    def test_capabilities(self, settings):
        """Test the advertised capability differences."""
        gmail = create_provider(ProviderType.GMAIL, None, settings=settings).capabilities
        outlook = create_provider(ProviderType.OUTLOOK, None, settings=settings).capabilities
        imap = create_provider(ProviderType.IMAP, None, settings=settings).capabilities

        assert gmail.supports_push and gmail.supports_id_listing
        assert not outlook.supports_push and not outlook.supports_id_listing
        assert not imap.supports_push
        assert imap.auth_type == AuthType.PASSWORD


class TestGmailProvider:
    """Tests for Gmail message mapping."""

    def _provider(self, settings, breaker=None):
        provider = GmailProvider(_gmail_creds(), settings=settings, breaker=breaker or MessageCircuitBreaker())
        provider._service = MagicMock()
        return provider

    def _message(self, **overrides):
        msg = {
            "id": "g1",
            "threadId": "th1",
            "labelIds": ["INBOX", "UNREAD", "STARRED"],
            "internalDate": "1704110400000",
            "historyId": "555",
            "payload": {
                "mimeType": "multipart/alternative",
                "headers": [
                    {"name": "From", "value": "Jane <jane@example.com>"},
                    {"name": "To", "value": "me@example.com"},
                    {"name": "Subject", "value": "Hello"},
                ],
                "parts": [
                    {"mimeType": "text/html", "body": {"data": _b64("<p>Hi <i>you</i></p>")}},
                    {
                        "mimeType": "application/pdf",
                        "filename": "a.pdf",
                        "body": {"attachmentId": "att1", "size": 10},
                    },
                ],
            },
        }
        msg.update(overrides)
        return msg

    def test_parse_message(self, settings):
        """Test labels, flags, bodies and attachments."""
        message = self._provider(settings)._parse_gmail_message(self._message())

        assert message.provider_message_id == "g1"
        assert message.thread_id == "th1"
        assert message.from_address == "jane@example.com"
        assert message.is_read is False
        assert message.is_important is True
        assert "STARRED" in message.labels
        assert "Hi" in message.body_plain
        assert message.attachments[0].filename == "a.pdf"
        assert message.received_at.year == 2024
        assert message.metadata["history_id"] == "555"

    def test_message_without_sender_dropped(self, settings):
        """Test that a message with no resolvable sender yields None."""
        raw = self._message()
        raw["payload"]["headers"] = [{"name": "Subject", "value": "No from"}]

        assert self._provider(settings)._parse_gmail_message(raw) is None

    def test_query(self):
        """Test the inbox query for unread-only and all."""
        assert GmailProvider._query(False) == "in:inbox is:unread"
        assert GmailProvider._query(True) == "in:inbox"

    @pytest.mark.asyncio
    async def test_poisoned_id_short_circuits(self, settings):
        """Test that a seeded poisoned id is never fetched."""
        provider = self._provider(settings, MessageCircuitBreaker(["1985b8d55892dd7f"]))

        result = await provider.fetch_by_id("1985b8d55892dd7f")

        assert result is None
        provider._service.users.assert_not_called()

    @pytest.mark.asyncio
    async def test_deep_nesting_trips_breaker(self, settings):
        """Test that a too-deep message is dropped and never fetched again."""
        breaker = MessageCircuitBreaker()
        provider = self._provider(settings, breaker)
        raw = self._message(id="deep1", payload={
            "headers": [{"name": "From", "value": "a@example.com"}],
            **_nested_payload(40),
        })
        provider._service.users.return_value.messages.return_value.get.return_value.execute.return_value = raw

        assert await provider.fetch_by_id("deep1") is None
        assert breaker.is_tripped("deep1")

    @pytest.mark.asyncio
    async def test_fetch_ids_caps_page_size(self, settings):
        """Test that maxResults never exceeds 100 and the cursor is forwarded."""
        provider = self._provider(settings)
        messages = provider._service.users.return_value.messages.return_value
        messages.list.return_value.execute.return_value = {
            "messages": [{"id": "x1"}, {"id": "x2"}],
            "nextPageToken": "tok2",
        }

        result = await provider.fetch_ids(500, cursor="tok1")

        kwargs = messages.list.call_args.kwargs
        assert kwargs["maxResults"] == 100
        assert kwargs["pageToken"] == "tok1"
        assert result.ids == ["x1", "x2"]
        assert result.next_cursor == "tok2"
        assert result.has_more is True

    @pytest.mark.asyncio
    async def test_malformed_message_dropped_from_batch(self, settings):
        """Test that one unparseable message is dropped and the rest of the batch survives."""
        provider = self._provider(settings)
        messages = provider._service.users.return_value.messages.return_value
        messages.list.return_value.execute.return_value = {"messages": [{"id": "a"}, {"id": "b"}]}
        raws = {
            "a": self._message(id="a", internalDate="garbage"),
            "b": self._message(id="b"),
        }
        messages.get.side_effect = lambda userId, id, format: MagicMock(
            execute=MagicMock(return_value=raws[id])
        )

        result = await provider.fetch_batch(10)

        assert [m.provider_message_id for m in result.messages] == ["b"]
        assert result.dropped == 1


class TestOutlookProvider:
    """Tests for Graph message mapping."""

    def test_parse_message(self, settings):
        """Test importance, categories and html-only body."""
        provider = OutlookProvider(_gmail_creds(), settings=settings, breaker=MessageCircuitBreaker())
        message = provider._parse_outlook_message({
            "id": "o1",
            "conversationId": "c1",
            "subject": "Report",
            "from": {"emailAddress": {"address": "boss@example.com", "name": "Boss"}},
            "toRecipients": [{"emailAddress": {"address": "me@example.com"}}],
            "receivedDateTime": "2024-01-01T10:00:00Z",
            "body": {"contentType": "html", "content": "<div>Quarterly numbers</div>"},
            "isRead": True,
            "importance": "high",
            "categories": ["Work"],
            "flag": {"flagStatus": "notFlagged"},
        })

        assert message.thread_id == "c1"
        assert message.from_name == "Boss"
        assert message.is_read is True
        assert message.is_important is True
        assert message.labels == ["Work"]
        assert message.body_plain == "Quarterly numbers"
        assert message.to_addresses == ["me@example.com"]
        assert message.received_at.hour == 10

    def test_missing_sender_dropped(self, settings):
        """Test that a message without from/sender yields None."""
        provider = OutlookProvider(_gmail_creds(), settings=settings, breaker=MessageCircuitBreaker())

        assert provider._parse_outlook_message({"id": "o2", "body": {"content": "x"}}) is None

    def _graph_provider(self, settings, pages, seen):
        """Provider whose Graph client answers from ``pages`` keyed by $skip."""
        def handler(request: httpx.Request) -> httpx.Response:
            params = dict(request.url.params)
            seen.append(params)
            return httpx.Response(200, json=pages[int(params.get("$skip", 0))])

        provider = OutlookProvider(_gmail_creds(), settings=settings, breaker=MessageCircuitBreaker())
        provider._client = httpx.AsyncClient(
            base_url=GRAPH_BASE_URL, transport=httpx.MockTransport(handler)
        )
        return provider

    @staticmethod
    def _graph_message(msg_id: str) -> dict:
        return {
            "id": msg_id,
            "subject": f"Subject {msg_id}",
            "from": {"emailAddress": {"address": "sender@example.com"}},
            "receivedDateTime": "2024-01-01T10:00:00Z",
            "body": {"contentType": "text", "content": "hello"},
        }

    @pytest.mark.asyncio
    async def test_fetch_batch_skip_cursor(self, settings):
        """Test that the cursor is the numeric $skip of the next page."""
        seen = []
        pages = {
            0: {
                "value": [self._graph_message("o1"), self._graph_message("o2")],
                "@odata.nextLink": f"{GRAPH_BASE_URL}/me/mailFolders/inbox/messages?$skip=2",
            },
            2: {"value": [self._graph_message("o3")]},
        }
        provider = self._graph_provider(settings, pages, seen)

        first = await provider.fetch_batch(2)
        second = await provider.fetch_batch(2, cursor=first.next_cursor)
        await provider.close()

        assert (first.next_cursor, first.has_more) == ("2", True)
        assert [m.provider_message_id for m in second.messages] == ["o3"]
        assert second.next_cursor is None
        assert second.has_more is False
        assert seen[0]["$top"] == "2"
        assert "$skip" not in seen[0]
        assert seen[1]["$skip"] == "2"
        assert seen[0]["$filter"] == "isRead eq false"

    @pytest.mark.asyncio
    async def test_fetch_batch_include_read(self, settings):
        """Test that no read filter is sent when read mail is wanted."""
        seen = []
        provider = self._graph_provider(settings, {0: {"value": []}}, seen)

        result = await provider.fetch_batch(10, include_read=True)
        await provider.close()

        assert "$filter" not in seen[0]
        assert result.messages == []
        assert result.next_cursor is None

    @pytest.mark.asyncio
    async def test_malformed_message_dropped_from_batch(self, settings):
        """Test that one unparseable Graph message is dropped and the rest survive."""
        seen = []
        pages = {0: {"value": [{"id": "bad", "from": "not-an-object"}, self._graph_message("o1")]}}
        provider = self._graph_provider(settings, pages, seen)

        result = await provider.fetch_batch(10)
        await provider.close()

        assert [m.provider_message_id for m in result.messages] == ["o1"]
        assert result.dropped == 1


class TestImapProvider:
    """Tests for IMAP cursor and message mapping."""

    def test_cursor_round_trip(self):
        """Test page/size cursors resume at the same offset."""
        assert parse_cursor(None, 10) == 0
        assert parse_cursor(make_cursor(20, 10), 10) == 20
        assert parse_cursor(make_cursor(20, 10), 50) == 20
        assert parse_cursor(make_cursor(15, 10), 10) == 15
        assert parse_cursor("garbage", 10) == 0

    def test_folder_aliases(self):
        """Test well-known folder aliases."""
        assert map_folder("inbox") == "INBOX"
        assert map_folder("Sent") == "Sent"
        assert map_folder("all") == "All Mail"
        assert map_folder("Projects/2024") == "Projects/2024"

    def _raw(self, **headers) -> bytes:
        msg = EmailMessageObj()
        for name, value in headers.items():
            msg[name.replace("_", "-")] = value
        msg.set_content("Plain body")
        msg.add_alternative("<p>Html body</p>", subtype="html")
        return msg.as_bytes()

    def test_parse_message(self, settings):
        """Test Message-ID, threading and flags."""
        provider = ImapProvider(None, settings=settings, breaker=MessageCircuitBreaker())
        raw = self._raw(
            From="Ann <ann@example.com>",
            To="me@example.com",
            Subject="Re: plans",
            Message_ID="<abc@example.com>",
            References="<root@example.com> <mid@example.com>",
            Date="Mon, 01 Jan 2024 10:00:00 +0000",
        )

        message = provider._parse_message("42", {"body": raw, "flags": ["\\Seen", "\\Flagged"], "size": 0})

        assert message.provider_message_id == "abc@example.com"
        assert message.thread_id == "root@example.com"
        assert message.is_read is True
        assert message.is_important is True
        assert message.body_plain.strip() == "Plain body"
        assert "Html body" in message.body_html
        assert message.metadata["uid"] == "42"

    def test_uid_fallback_id(self, settings):
        """Test that a message without Message-ID falls back to its UID."""
        provider = ImapProvider(None, settings=settings, breaker=MessageCircuitBreaker())
        raw = self._raw(From="ann@example.com", Subject="x")

        message = provider._parse_message("7", {"body": raw, "flags": []})

        assert message.provider_message_id == "uid:7"
        assert message.is_read is False

    def test_fetch_line_parsing(self):
        """Test UID, FLAGS and size extraction from a FETCH response line."""
        data = ImapProvider._parse_fetch_line("12 FETCH (UID 99 FLAGS (\\Seen) RFC822.SIZE 2048 BODY[] {2048}")

        assert data["uid"] == "99"
        assert data["flags"] == ["\\Seen"]
        assert data["size"] == 2048
