"""
Message mutator: delete/purge on the read side, submission on the send side.
"""
import logging
from email import policy
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid
from typing import Callable, Optional, Tuple

from .catalog import is_selectable, require_folder
from .errors import (
    DeliveryUnknown,
    GatewayConnectionError,
    GatewayError,
    GatewayTimeoutError,
    NotFoundError,
    PartialFailure,
    SubmissionError,
)
from .models import OutboundMessage
from .sanitizer import html_to_text
from .session import ImapSession, SmtpSession

logger = logging.getLogger(__name__)

DELETED = b"\\Deleted"
SEEN = b"\\Seen"


def _select_writable(session: ImapSession, mailbox: str) -> str:
    flags, _, name = require_folder(session, mailbox)
    if not is_selectable(flags):
        raise NotFoundError(f"Mailbox {mailbox!r} cannot hold messages")
    session.execute("select_folder", name, readonly=False)
    return name


def _current_flags(session: ImapSession, mailbox: str, uid: int) -> tuple:
    response = session.execute("fetch", [uid], ["FLAGS"])
    data = response.get(uid)
    if data is None:
        raise NotFoundError(f"Message {uid} not found in {mailbox!r}")
    return tuple(data.get(b"FLAGS", ()))


def _expunge(session: ImapSession, mailbox: str, uid: int) -> None:
    try:
        if session.has_capability("UIDPLUS"):
            session.execute("uid_expunge", [uid])
        else:
            # Also removes any other message already marked \Deleted
            session.execute("expunge")
    except GatewayError as e:
        raise PartialFailure(
            f"Message {uid} in {mailbox!r} marked deleted but not expunged",
            mailbox=mailbox,
            message_id=uid,
            detail=str(e),
        ) from e


def delete_message(session: ImapSession, mailbox: str, uid: int) -> None:
    """
    Mark a message \\Deleted and expunge it.

    Raises:
        NotFoundError: mailbox or message does not exist (including a
            concurrent delete that won the race)
        PartialFailure: marked deleted, expunge failed
    """
    name = _select_writable(session, mailbox)
    _current_flags(session, mailbox, uid)

    stored = session.execute("add_flags", [uid], [DELETED])
    if uid not in stored:
        # Expunged by someone else between FETCH and STORE
        raise NotFoundError(f"Message {uid} not found in {mailbox!r}")

    _expunge(session, mailbox, uid)
    logger.info(f"Deleted message {uid} from {name}")


def purge_message(session: ImapSession, mailbox: str, uid: int) -> None:
    """
    Retry only the expunge step of a delete.

    The \\Deleted flag is re-applied if it is missing, so the call is safe
    after any kind of partial failure.

    Raises:
        NotFoundError: mailbox or message does not exist
        PartialFailure: expunge failed again
    """
    name = _select_writable(session, mailbox)
    flags = _current_flags(session, mailbox, uid)
    if DELETED not in flags:
        stored = session.execute("add_flags", [uid], [DELETED])
        if uid not in stored:
            raise NotFoundError(f"Message {uid} not found in {mailbox!r}")
    _expunge(session, mailbox, uid)
    logger.info(f"Purged message {uid} from {name}")


def build_message(outbound: OutboundMessage, from_name: str, from_email: str) -> EmailMessage:
    """
    Build the RFC 5322 message for an outbound request.

    HTML bodies are sent as multipart/alternative with a plain-text rendering.
    """
    msg = EmailMessage()
    msg["From"] = formataddr((from_name, from_email))
    msg["To"] = ", ".join(outbound.recipient)
    msg["Subject"] = outbound.subject
    msg["Date"] = formatdate(localtime=True)

    domain = from_email.rpartition("@")[2] or None
    msg["Message-ID"] = make_msgid(domain=domain)

    if outbound.in_reply_to:
        msg["In-Reply-To"] = outbound.in_reply_to
        msg["References"] = outbound.in_reply_to

    if outbound.html:
        msg.set_content(html_to_text(outbound.body))
        msg.add_alternative(outbound.body, subtype="html")
    else:
        msg.set_content(outbound.body)
    return msg


def _reset(session: SmtpSession, step: str) -> None:
    try:
        code, _ = session.execute("rset")
    except GatewayError as e:
        logger.debug(f"RSET after rejected {step} failed: {e}")
        return
    if code != 250:
        # Transaction may still be open; keep this session out of the pool
        logger.warning(f"RSET after rejected {step} answered {code}, closing session")
        session.close()


def _reject(session: SmtpSession, step: str, code: int, reply) -> SubmissionError:
    if isinstance(reply, bytes):
        reply = reply.decode("utf-8", errors="replace")
    _reset(session, step)
    return SubmissionError(f"{step} rejected with {code}", detail=str(reply), code=code)


def send_message(
    session: SmtpSession,
    outbound: OutboundMessage,
    from_name: str,
    from_email: str,
    before_data: Optional[Callable[[], None]] = None,
) -> Tuple[str, bytes]:
    """
    Submit one message: MAIL FROM, RCPT TO per recipient, then DATA.

    Args:
        before_data: Called right before the message data is handed over;
            from then on a lost reply means the outcome is unknown

    Returns:
        (Message-ID, raw message bytes)

    Raises:
        SubmissionError: sender, a recipient, or the data was rejected
        GatewayConnectionError / GatewayTimeoutError: failed before DATA
        DeliveryUnknown: connection failed during or after DATA
    """
    msg = build_message(outbound, from_name, from_email)
    message_id = msg["Message-ID"]
    data = msg.as_bytes(policy=policy.SMTP)

    code, reply = session.execute("mail", from_email)
    if code != 250:
        raise _reject(session, "MAIL FROM", code, reply)

    for recipient in outbound.recipient:
        code, reply = session.execute("rcpt", recipient)
        if code not in (250, 251):
            raise _reject(session, f"RCPT TO <{recipient}>", code, reply)

    if before_data is not None:
        before_data()
    try:
        code, reply = session.execute("data", data)
    except (GatewayConnectionError, GatewayTimeoutError) as e:
        raise DeliveryUnknown(
            f"Connection lost during DATA for {message_id}", detail=str(e)
        ) from e
    except SubmissionError:
        # DATA refused before any message data was sent; close the transaction
        _reset(session, "DATA")
        raise
    if code != 250:
        raise _reject(session, "DATA", code, reply)

    logger.info(f"Message {message_id} submitted for {len(outbound.recipient)} recipient(s)")
    return message_id, data


def append_to_folder(session: ImapSession, folder: str, data: bytes) -> Optional[int]:
    """
    Store a copy of a sent message in `folder`, marked \\Seen.

    Returns:
        UID of the stored copy when the server reports it (UIDPLUS), else None
    """
    reply = session.execute("append", folder, data, flags=[SEEN])
    logger.debug(f"Appended sent message to {folder}: {reply!r}")
    if isinstance(reply, bytes) and b"APPENDUID" in reply:
        try:
            return int(reply.split(b"APPENDUID", 1)[1].split()[1].rstrip(b"]"))
        except (IndexError, ValueError):
            return None
    return None
