"""
Message fetcher: body retrieval, decoding and sanitization.
"""
import email
import logging
from email import policy
from email.message import EmailMessage
from typing import List, Optional, Tuple

from .catalog import is_selectable, require_folder
from .errors import NotFoundError
from .models import ContentType, MessageBody
from .sanitizer import sanitize_html
from .session import ImapSession

logger = logging.getLogger(__name__)

BODY_ITEM = "BODY.PEEK[]"
BODY_KEY = b"BODY[]"

KNOWN_TRANSFER_ENCODINGS = {"7bit", "8bit", "binary", "base64", "quoted-printable",
                            "x-uuencode", "uuencode", "x-uue", "uue"}

# Non-standard charset labels seen in the wild
ENCODING_MAP = {
    "x-unknown": "utf-8",
    "unknown-8bit": "latin-1",
    "ansi_x3.110-1983": "latin-1",
    "x-euc-jp": "euc-jp",
    "x-sjis": "shift-jis",
    "x-gb2312": "gb2312",
    "x-big5": "big5",
    "windows-874": "cp874",
}

FALLBACK_CHARSETS = ["utf-8", "cp1252", "latin-1"]


def decode_payload(payload: bytes, charset: Optional[str]) -> Tuple[str, List[str]]:
    """
    Decode bytes with the declared charset.

    Returns:
        (text, warnings) - warnings is empty when the text decoded cleanly
    """
    warnings: List[str] = []
    # utf-8 is a superset of the us-ascii default
    declared = (charset or "utf-8").strip().lower()
    resolved = ENCODING_MAP.get(declared, declared)
    if resolved != declared:
        logger.debug(f"Mapping non-standard charset '{declared}' to '{resolved}'")

    try:
        return payload.decode(resolved), warnings
    except LookupError:
        warnings.append(f"unknown charset '{declared}'")
    except UnicodeDecodeError:
        warnings.append(f"invalid bytes for charset '{declared}'")
        return payload.decode(resolved, errors="replace"), warnings

    for fallback in FALLBACK_CHARSETS[:-1]:
        try:
            return payload.decode(fallback), warnings
        except UnicodeDecodeError:
            continue
    # latin-1 maps every byte
    return payload.decode(FALLBACK_CHARSETS[-1]), warnings


def _transfer_decode(part: EmailMessage) -> Tuple[bytes, List[str]]:
    warnings: List[str] = []
    cte = str(part.get("Content-Transfer-Encoding", "7bit")).strip().lower()
    if cte not in KNOWN_TRANSFER_ENCODINGS:
        warnings.append(f"unknown transfer encoding '{cte}'")

    defects_before = len(part.defects)
    payload = part.get_payload(decode=True)
    if payload is None:
        payload = b""
    for defect in part.defects[defects_before:]:
        warnings.append(f"{cte} payload damaged: {type(defect).__name__}")
    return payload, warnings


def select_part(message: EmailMessage, prefer_html: bool = True) -> Optional[EmailMessage]:
    """Pick the displayable body part (HTML or plain text, by preference)."""
    preference = ("html", "plain") if prefer_html else ("plain", "html")
    part = message.get_body(preferencelist=preference)
    if part is None and message.get_content_maintype() == "text" and not message.is_multipart():
        part = message
    return part


def parse_body(raw: bytes, uid: int, mailbox: str, prefer_html: bool = True) -> MessageBody:
    """Turn a raw RFC 5322 message into a sanitized MessageBody."""
    message = email.message_from_bytes(raw, policy=policy.default)
    part = select_part(message, prefer_html)
    if part is None:
        logger.debug(f"Message {mailbox}/{uid} has no text part")
        return MessageBody(id=uid, mailbox=mailbox, content_type=ContentType.PLAIN, text="")

    payload, warnings = _transfer_decode(part)
    charset = part.get_content_charset()
    text, charset_warnings = decode_payload(payload, charset)
    warnings.extend(charset_warnings)

    if part.get_content_subtype() == "html":
        content_type = ContentType.HTML
        text = sanitize_html(text)
    else:
        content_type = ContentType.PLAIN

    if warnings:
        logger.warning(f"Partial decode of message {mailbox}/{uid}: {'; '.join(warnings)}")

    return MessageBody(
        id=uid,
        mailbox=mailbox,
        content_type=content_type,
        text=text,
        charset=charset,
        partial_decode=bool(warnings),
        decode_warnings=warnings,
    )


def fetch_raw(session: ImapSession, mailbox: str, uid: int) -> bytes:
    """
    Fetch the full message without setting \\Seen.

    Raises:
        NotFoundError: mailbox or message does not exist
    """
    flags, _, name = require_folder(session, mailbox)
    if not is_selectable(flags):
        raise NotFoundError(f"Message {uid} not found in {mailbox!r}")
    session.execute("select_folder", name, readonly=True)
    response = session.execute("fetch", [uid], [BODY_ITEM])
    data = response.get(uid)
    if not data or BODY_KEY not in data:
        raise NotFoundError(f"Message {uid} not found in {mailbox!r}")
    return data[BODY_KEY]


def get_body(session: ImapSession, mailbox: str, uid: int, prefer_html: bool = True) -> MessageBody:
    """
    Fetch and decode one message body.

    Raises:
        NotFoundError: mailbox or message does not exist
    """
    raw = fetch_raw(session, mailbox, uid)
    return parse_body(raw, uid, mailbox, prefer_html=prefer_html)
