"""
Mailbox catalog: folder listing with per-folder counts.
"""
import logging
from typing import Dict, List, Optional, Tuple

from .errors import NotFoundError, ProtocolError
from .models import Mailbox
from .session import ImapSession

logger = logging.getLogger(__name__)

# Folders that exist only as hierarchy containers
NOSELECT_FLAGS = {b"\\Noselect", b"\\NonExistent"}

STATUS_ITEMS = [b"MESSAGES", b"UNSEEN"]


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _same_folder(a: str, b: str) -> bool:
    # INBOX is case-insensitive (RFC 3501 5.1)
    if a.upper() == "INBOX" and b.upper() == "INBOX":
        return True
    return a == b


def is_selectable(flags) -> bool:
    return not any(flag in NOSELECT_FLAGS for flag in flags or ())


def lookup_folder(session: ImapSession, name: str) -> Optional[Tuple[tuple, Optional[str], str]]:
    """
    Find one folder by exact name.

    Returns:
        (flags, delimiter, name) as reported by the server, or None
    """
    for flags, delimiter, folder in session.execute("list_folders", "", name):
        if _same_folder(_decode(folder), name):
            return flags, _decode(delimiter), _decode(folder)
    return None


def require_folder(session: ImapSession, name: str) -> Tuple[tuple, Optional[str], str]:
    """Like lookup_folder, but a missing folder raises NotFoundError."""
    if not name:
        raise NotFoundError("Mailbox name is empty")
    found = lookup_folder(session, name)
    if found is None:
        raise NotFoundError(f"Mailbox {name!r} does not exist")
    return found


def list_mailboxes(session: ImapSession) -> List[Mailbox]:
    """
    List all folders in the server's reported order.

    A name reported twice keeps the later entry, at the later position.
    Container-only folders are listed as not selectable with zero counts.
    A folder that disappears between LIST and STATUS is left out.
    """
    listing = session.execute("list_folders")
    logger.debug(f"LIST returned {len(listing)} folders")

    entries: Dict[str, Tuple[tuple, Optional[str]]] = {}
    for flags, delimiter, folder in listing:
        name = _decode(folder)
        if name in entries:
            logger.warning(f"Server listed folder {name!r} more than once, keeping the last entry")
            del entries[name]
        entries[name] = (flags, _decode(delimiter))

    mailboxes = []
    for name, (flags, delimiter) in entries.items():
        if not is_selectable(flags):
            mailboxes.append(Mailbox(name=name, delimiter=delimiter, selectable=False))
            continue
        try:
            status = session.execute("folder_status", name, STATUS_ITEMS)
        except ProtocolError as e:
            if not session.is_open:
                raise
            logger.warning(f"STATUS failed for folder {name!r}, skipping: {e}")
            continue
        total = int(status.get(b"MESSAGES", 0))
        unseen = min(int(status.get(b"UNSEEN", 0)), total)
        mailboxes.append(Mailbox(
            name=name,
            message_count=total,
            unseen_count=unseen,
            delimiter=delimiter,
        ))

    return mailboxes
