"""
Canonical message types shared by all provider adapters.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any

logger = logging.getLogger(__name__)

DEFAULT_BODY = "No content"
DEFAULT_SUBJECT = "No Subject"


@dataclass
class EmailFolder:
    """Represents an email folder/mailbox or a Gmail label."""
    id: str
    name: str
    path: str
    message_count: int = 0
    unread_count: int = 0
    flags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "message_count": self.message_count,
            "unread_count": self.unread_count,
            "flags": self.flags,
        }


@dataclass
class EmailAttachment:
    """Attachment descriptor. Content is never downloaded here."""
    id: str
    filename: str
    content_type: str
    size_bytes: int
    content_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "content_id": self.content_id,
        }


@dataclass
class EmailMessage:
    """
    Canonical message record.

    ``provider_message_id`` together with the owning account id is the
    dedup key.
    """
    provider_message_id: str
    from_address: str
    subject: str = DEFAULT_SUBJECT
    from_name: str = ""
    thread_id: Optional[str] = None
    folder: str = "INBOX"
    to_addresses: List[str] = field(default_factory=list)
    cc_addresses: List[str] = field(default_factory=list)
    bcc_addresses: List[str] = field(default_factory=list)
    received_at: Optional[datetime] = None
    body_plain: str = ""
    body_html: str = ""
    snippet: str = ""
    is_read: bool = False
    is_important: bool = False
    labels: List[str] = field(default_factory=list)
    attachments: List[EmailAttachment] = field(default_factory=list)
    in_reply_to: Optional[str] = None
    references: List[str] = field(default_factory=list)
    size_bytes: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_attachments(self) -> bool:
        return len(self.attachments) > 0

    def to_document(self, account_id: str) -> Dict[str, Any]:
        """Storage document for the messages collection."""
        return {
            "account_id": account_id,
            "provider_message_id": self.provider_message_id,
            "thread_id": self.thread_id,
            "folder": self.folder,
            "subject": self.subject,
            "from_address": self.from_address,
            "from_name": self.from_name,
            "to_addresses": self.to_addresses,
            "cc_addresses": self.cc_addresses,
            "bcc_addresses": self.bcc_addresses,
            "received_at": self.received_at,
            "body_plain": self.body_plain,
            "body_html": self.body_html,
            "snippet": self.snippet,
            "is_read": self.is_read,
            "is_important": self.is_important,
            "labels": self.labels,
            "has_attachments": self.has_attachments,
            "attachments": [a.to_dict() for a in self.attachments],
            "in_reply_to": self.in_reply_to,
            "references": self.references,
            "size_bytes": self.size_bytes,
            "metadata": self.metadata,
        }
