"""
MIME helpers shared by the adapters.

Part trees are walked iteratively with an explicit depth bound so that a
malformed or hostile nesting cannot recurse without limit. Message ids that
blow the bound are remembered by the circuit breaker and never fetched again.
"""

import email.errors
import email.header
import email.utils
import logging
import threading
from email.message import EmailMessage as EmailMessageObj
from typing import Any, Callable, Iterable, Iterator, List, Optional, Tuple, TypeVar

from bs4 import BeautifulSoup

from mailsync.core.exceptions import MessageExtractionError
from mailsync.providers.email.base import DEFAULT_BODY

logger = logging.getLogger(__name__)

PartT = TypeVar("PartT")


def walk_parts(
    root: PartT,
    children: Callable[[PartT], Iterable[PartT]],
    max_depth: int,
    message_id: Optional[str] = None,
) -> Iterator[Tuple[PartT, int]]:
    """
    Depth-first traversal of a MIME part tree.

    Yields ``(part, depth)`` in document order, root first at depth 0.

    Raises:
        MessageExtractionError: When nesting exceeds ``max_depth``
    """
    stack: List[Tuple[PartT, int]] = [(root, 0)]
    while stack:
        part, depth = stack.pop()
        if depth > max_depth:
            raise MessageExtractionError(
                f"MIME nesting deeper than {max_depth} levels",
                provider_message_id=message_id,
            )
        yield part, depth
        kids = list(children(part) or [])
        for child in reversed(kids):
            stack.append((child, depth + 1))


def html_to_text(html: str) -> str:
    """Strip tags from an HTML body."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for element in soup(["script", "style", "head"]):
        element.decompose()
    return soup.get_text(separator="\n", strip=True)


def finalize_bodies(body_plain: str, body_html: str, snippet_length: int = 150) -> Tuple[str, str, str]:
    """
    Apply the canonical body rules.

    A missing plain body is generated from the HTML body. The HTML field is
    left as the provider gave it. Returns ``(plain, html, snippet)``.
    """
    if not body_plain.strip() and body_html:
        body_plain = html_to_text(body_html)
    if not body_plain.strip():
        body_plain = DEFAULT_BODY
    snippet = " ".join(body_plain.split())[:snippet_length]
    return body_plain, body_html, snippet


def decode_header(header: Optional[str]) -> str:
    """Decode an RFC 2047 encoded header."""
    if not header:
        return ""
    try:
        parts = []
        for content, charset in email.header.decode_header(str(header)):
            if isinstance(content, bytes):
                try:
                    parts.append(content.decode(charset or "utf-8", errors="replace"))
                except LookupError:
                    parts.append(content.decode("utf-8", errors="replace"))
            else:
                parts.append(content)
        return "".join(parts).strip()
    except (ValueError, email.errors.HeaderParseError):
        return str(header)


def parse_sender(from_header: Optional[str]) -> Tuple[str, str]:
    """
    Split a From header into ``(name, address)``.

    The address is empty when none can be resolved; callers drop such
    messages.
    """
    name, address = email.utils.parseaddr(decode_header(from_header))
    if "@" not in address:
        return name, ""
    return name.strip().strip('"'), address.strip()


def parse_address_list(header: Optional[str]) -> List[str]:
    """Extract bare addresses from a To/Cc header."""
    if not header:
        return []
    return [addr for _, addr in email.utils.getaddresses([decode_header(header)]) if addr]


class MessageCircuitBreaker:
    """
    Permanent per-message-id breaker.

    Ids that once failed extraction in a way that would repeat forever are
    short-circuited before any fetch.
    """

    def __init__(self, seed_ids: Optional[Iterable[str]] = None):
        self._lock = threading.Lock()
        self._tripped: set[str] = set(seed_ids or [])

    def is_tripped(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._tripped

    def trip(self, message_id: str, reason: Any = None) -> None:
        with self._lock:
            if message_id in self._tripped:
                return
            self._tripped.add(message_id)
        logger.warning(f"Circuit breaker tripped for message {message_id}: {reason}")

    def tripped_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._tripped)


_breaker: Optional[MessageCircuitBreaker] = None


def get_circuit_breaker() -> MessageCircuitBreaker:
    """Process-wide breaker seeded from settings."""
    global _breaker
    if _breaker is None:
        from mailsync.core.config import settings
        _breaker = MessageCircuitBreaker(settings.poisoned_message_ids)
    return _breaker


def build_mime_message(envelope, from_address: Optional[str] = None) -> EmailMessageObj:
    """Compose an RFC 822 message from an outgoing envelope."""
    msg = EmailMessageObj()
    if from_address:
        msg["From"] = from_address
    msg["To"] = ", ".join(envelope.to)
    if envelope.cc:
        msg["Cc"] = ", ".join(envelope.cc)
    if envelope.bcc:
        msg["Bcc"] = ", ".join(envelope.bcc)
    msg["Subject"] = envelope.subject
    msg["Date"] = email.utils.formatdate(localtime=False)
    msg["Message-ID"] = email.utils.make_msgid()
    if envelope.in_reply_to:
        msg["In-Reply-To"] = envelope.in_reply_to
        msg["References"] = envelope.references or envelope.in_reply_to

    plain = envelope.body_plain or html_to_text(envelope.body_html)
    msg.set_content(plain, cte="quoted-printable")
    if envelope.body_html:
        msg.add_alternative(envelope.body_html, subtype="html", cte="quoted-printable")
    return msg
