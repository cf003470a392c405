"""
Mail gateway models.

Request-scoped values produced from protocol replies and serialized to the
HTTP layer. None of these are persisted; each query builds a fresh snapshot.
"""
import re
from datetime import datetime
from email.utils import getaddresses
from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class MessageFlag(str, Enum):
    """System flags the gateway exposes (other IMAP keywords are dropped)"""
    SEEN = "seen"
    ANSWERED = "answered"
    FLAGGED = "flagged"
    DELETED = "deleted"


class ContentType(str, Enum):
    PLAIN = "plain"
    HTML = "html"


class Mailbox(BaseModel):
    """Folder snapshot with message counts"""
    name: str = Field(..., description="Full folder name, unique within the account")
    message_count: int = Field(0, ge=0)
    unseen_count: int = Field(0, ge=0)
    delimiter: Optional[str] = Field(None, description="Hierarchy delimiter reported by the server")
    selectable: bool = Field(True, description="False for container-only (\\Noselect) folders")

    @model_validator(mode="after")
    def _unseen_within_total(self) -> "Mailbox":
        if self.unseen_count > self.message_count:
            raise ValueError("unseen_count cannot exceed message_count")
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"name": "INBOX", "message_count": 3, "unseen_count": 1,
                        "delimiter": "/", "selectable": True}
        }
    )


class EmailAddress(BaseModel):
    """Email address with optional display name"""
    name: Optional[str] = Field(None, description="Display name")
    address: str = Field("", description="Email address")

    def __str__(self) -> str:
        if self.name:
            return f"{self.name} <{self.address}>"
        return self.address


class MessageEnvelope(BaseModel):
    """Header-level message summary (never includes the body)"""
    model_config = ConfigDict(populate_by_name=True)

    id: int = Field(..., description="IMAP UID, only meaningful together with mailbox")
    mailbox: str
    subject: str = ""
    from_: Optional[EmailAddress] = Field(None, alias="from")
    date: Optional[datetime] = None
    flags: List[MessageFlag] = Field(default_factory=list)
    message_id: Optional[str] = Field(None, description="RFC 5322 Message-ID header")


class MessageBody(BaseModel):
    """Decoded message body, HTML already sanitized"""
    id: int
    mailbox: str
    content_type: ContentType
    text: str
    charset: Optional[str] = None
    partial_decode: bool = Field(
        False, description="Set when the body was decoded on a best-effort basis"
    )
    decode_warnings: List[str] = Field(default_factory=list)


_HTML_TAG = re.compile(r"<[a-zA-Z][^>]*>")


class OutboundMessage(BaseModel):
    """Message composed by the client, consumed once by send"""
    recipient: List[str] = Field(..., description="One or more recipient addresses")
    subject: str = ""
    body: str = ""
    is_html: Optional[bool] = Field(None, description="Detected from the body when omitted")
    in_reply_to: Optional[str] = Field(None, description="Message-ID being replied to")

    @field_validator("recipient", mode="before")
    @classmethod
    def _split_recipients(cls, value: Union[str, List[str]]) -> List[str]:
        if isinstance(value, str):
            value = [value]
        addresses = [addr for _, addr in getaddresses(list(value)) if addr]
        if not addresses:
            raise ValueError("at least one recipient is required")
        for addr in addresses:
            if "@" not in addr:
                raise ValueError(f"invalid recipient address: {addr!r}")
        return addresses

    @property
    def html(self) -> bool:
        if self.is_html is not None:
            return self.is_html
        return bool(_HTML_TAG.search(self.body[:200]))

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"recipient": "a@example.com", "subject": "Hi", "body": "Hello"}
        }
    )
