"""
Message index: envelope listing for one folder.
"""
import logging
from datetime import datetime
from email.header import decode_header, make_header
from email.errors import HeaderParseError
from typing import Iterable, List, Optional

from .catalog import is_selectable, require_folder
from .models import EmailAddress, MessageEnvelope, MessageFlag
from .session import ImapSession

logger = logging.getLogger(__name__)

# UIDs per FETCH command
FETCH_BATCH_SIZE = 500

ENVELOPE_ITEMS = ["ENVELOPE", "FLAGS", "INTERNALDATE"]

FLAG_MAP = {
    b"\\Seen": MessageFlag.SEEN,
    b"\\Answered": MessageFlag.ANSWERED,
    b"\\Flagged": MessageFlag.FLAGGED,
    b"\\Deleted": MessageFlag.DELETED,
}


def decode_header_value(raw) -> str:
    """Decode an RFC 2047 header value, falling back to the raw text."""
    if raw is None:
        return ""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        return str(make_header(decode_header(raw)))
    except (HeaderParseError, LookupError, UnicodeDecodeError) as e:
        logger.debug(f"Could not decode header {raw[:40]!r}: {e}")
        return raw


def _address(envelope) -> Optional[EmailAddress]:
    senders = envelope.from_ or envelope.sender
    if not senders:
        return None
    first = senders[0]
    mailbox = decode_header_value(first.mailbox)
    host = decode_header_value(first.host)
    address = f"{mailbox}@{host}" if host else mailbox
    name = decode_header_value(first.name) or None
    return EmailAddress(name=name, address=address)


def _flags(raw_flags: Iterable) -> List[MessageFlag]:
    flags = []
    for raw in raw_flags or ():
        if isinstance(raw, str):
            raw = raw.encode()
        flag = FLAG_MAP.get(raw)
        if flag is not None and flag not in flags:
            flags.append(flag)
    return flags


def _batches(uids: List[int]):
    size = FETCH_BATCH_SIZE
    for i in range(0, len(uids), size):
        yield uids[i:i + size]


def to_envelope(uid: int, mailbox: str, data: dict) -> MessageEnvelope:
    """Normalize one FETCH response item into a MessageEnvelope."""
    envelope = data.get(b"ENVELOPE")
    date: Optional[datetime] = None
    subject = ""
    sender = None
    message_id = None
    if envelope is not None:
        date = envelope.date
        subject = decode_header_value(envelope.subject)
        sender = _address(envelope)
        if envelope.message_id:
            message_id = decode_header_value(envelope.message_id)
    if date is None:
        date = data.get(b"INTERNALDATE")
    return MessageEnvelope(
        id=uid,
        mailbox=mailbox,
        subject=subject,
        from_=sender,
        date=date,
        flags=_flags(data.get(b"FLAGS")),
        message_id=message_id,
    )


def list_messages(session: ImapSession, mailbox: str) -> List[MessageEnvelope]:
    """
    List message envelopes in `mailbox`, in the server's SEARCH order.

    Raises:
        NotFoundError: mailbox does not exist
    """
    flags, _, name = require_folder(session, mailbox)
    if not is_selectable(flags):
        return []

    info = session.execute("select_folder", name, readonly=True)
    if int(info.get(b"EXISTS", 0)) == 0:
        return []

    uids = session.execute("search", ["ALL"])
    logger.debug(f"{name}: {len(uids)} messages")

    envelopes = []
    for batch in _batches(list(uids)):
        response = session.execute("fetch", batch, ENVELOPE_ITEMS)
        for uid in batch:
            data = response.get(uid)
            if data is None:
                # Expunged between SEARCH and FETCH
                continue
            envelopes.append(to_envelope(uid, mailbox, data))
    return envelopes
