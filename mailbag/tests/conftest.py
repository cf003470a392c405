"""
Shared fixtures: an in-memory mail server standing in for IMAPClient/smtplib,
raw message builders, and settings pointing at the fake server.
"""
import email
import smtplib
import socket
import threading
import time
from collections import OrderedDict
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime
from unittest.mock import MagicMock, Mock, patch

import pytest
from imapclient import exceptions as imap_exceptions
from imapclient.response_types import Address, Envelope

from mailbag.core.config import Settings, ServerConfig


# ============================================================
# Raw messages
# ============================================================

def build_raw(subject="Hello", body="Hi there", sender="Alice <alice@example.com>",
              to="me@example.com", content_type="text/plain", charset="utf-8",
              cte="8bit", date="Mon, 06 Jan 2025 10:00:00 +0000",
              message_id="<m1@example.com>", extra_headers=None, raw_body=None) -> bytes:
    """Build a single-part RFC 5322 message as bytes."""
    headers = [
        f"From: {sender}",
        f"To: {to}",
        f"Subject: {subject}",
        f"Date: {date}",
        f"Message-ID: {message_id}",
        "MIME-Version: 1.0",
        f"Content-Type: {content_type}; charset=\"{charset}\"",
        f"Content-Transfer-Encoding: {cte}",
    ]
    headers.extend(extra_headers or [])
    if raw_body is None:
        raw_body = body.encode(charset)
    return "\r\n".join(headers).encode("ascii") + b"\r\n\r\n" + raw_body


def build_alternative(text="Plain part", html="<p>HTML part</p>", subject="Both") -> bytes:
    boundary = "BOUNDARY42"
    return (
        "From: Bob <bob@example.com>\r\n"
        "To: me@example.com\r\n"
        f"Subject: {subject}\r\n"
        "Date: Tue, 07 Jan 2025 09:30:00 +0000\r\n"
        "Message-ID: <alt@example.com>\r\n"
        "MIME-Version: 1.0\r\n"
        f"Content-Type: multipart/alternative; boundary=\"{boundary}\"\r\n"
        "\r\n"
        f"--{boundary}\r\n"
        "Content-Type: text/plain; charset=\"utf-8\"\r\n"
        "Content-Transfer-Encoding: 7bit\r\n"
        "\r\n"
        f"{text}\r\n"
        f"--{boundary}\r\n"
        "Content-Type: text/html; charset=\"utf-8\"\r\n"
        "Content-Transfer-Encoding: 7bit\r\n"
        "\r\n"
        f"{html}\r\n"
        f"--{boundary}--\r\n"
    ).encode("utf-8")


@pytest.fixture
def make_raw():
    return build_raw


@pytest.fixture
def make_alternative():
    return build_alternative


# ============================================================
# Fake IMAP server
# ============================================================

def _envelope(raw: bytes) -> Envelope:
    msg = email.message_from_bytes(raw)
    date = None
    if msg["Date"]:
        date = parsedate_to_datetime(msg["Date"])
    sender = None
    if msg["From"]:
        name, addr = getaddresses([msg["From"]])[0]
        local, _, host = addr.partition("@")
        sender = (Address(name.encode() or None, None, local.encode(), host.encode()),)
    subject = msg["Subject"].encode() if msg["Subject"] is not None else None
    message_id = msg["Message-ID"].encode() if msg["Message-ID"] else None
    return Envelope(date, subject, sender, sender, sender, None, None, None, None, message_id)


class FakeMailbox:
    def __init__(self, name, flags=(), delimiter=b"/"):
        self.name = name
        self.flags = tuple(flags)
        self.delimiter = delimiter
        self.messages = OrderedDict()  # uid -> {"raw", "flags", "internaldate"}
        self.next_uid = 1


class FakeMailServer:
    """
    Shared state behind every FakeImapClient/FakeSmtpClient.

    Tests configure failures through attributes:
      fail_commands: {"search": exc} raised once by the next matching command
      slow_commands: {"search": seconds} sleep before answering
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.folders = OrderedDict()
        self.extra_listing = []
        self.capabilities = {"IMAP4REV1", "UIDPLUS"}
        self.fail_commands = {}
        self.slow_commands = {}
        self.fail_expunge = False
        self.reject_login = False
        self.imap_connections = []
        self.smtp_connections = []
        # SMTP side
        self.outbox = []
        self.rejected_senders = set()
        self.rejected_recipients = set()
        self.data_reply = (250, b"2.0.0 queued")
        self.drop_during_data = False
        # Seconds to wait after queueing the message, before the DATA reply
        self.data_delay = 0
        self.drop_before_mail = False

    def add_folder(self, name, flags=()):
        with self.lock:
            self.folders[name] = FakeMailbox(name, flags)
            return self.folders[name]

    def add_message(self, folder, raw, flags=()):
        with self.lock:
            box = self.folders[folder]
            uid = box.next_uid
            box.next_uid += 1
            box.messages[uid] = {
                "raw": raw,
                "flags": set(flags),
                "internaldate": datetime(2025, 1, 1, tzinfo=timezone.utc),
            }
            return uid

    def take_failure(self, command):
        with self.lock:
            return self.fail_commands.pop(command, None)

    # IMAPClient(...) replacement
    def imap_client(self, host, port=None, ssl=True, timeout=None, **kwargs):
        client = FakeImapClient(self, host=host, port=port, ssl=ssl, timeout=timeout)
        self.imap_connections.append(client)
        return client

    # smtplib.SMTP(...) / SMTP_SSL(...) replacement
    def smtp_client(self, host="", port=0, timeout=None, **kwargs):
        client = FakeSmtpClient(self, host=host, port=port, timeout=timeout)
        self.smtp_connections.append(client)
        return client


class FakeImapClient:
    """Subset of the IMAPClient API used by the gateway"""

    def __init__(self, server: FakeMailServer, **connect_args):
        self.server = server
        self.connect_args = connect_args
        self.selected = None
        self.readonly = False
        self.logged_in = False
        self.logged_out = False
        self.commands = []

    def _enter(self, command):
        self.commands.append(command)
        delay = self.server.slow_commands.get(command)
        if delay:
            time.sleep(delay)
        failure = self.server.take_failure(command)
        if failure is not None:
            raise failure
        if self.logged_out:
            raise imap_exceptions.IMAPClientAbortError("connection closed")

    def _box(self):
        if self.selected is None:
            raise imap_exceptions.IMAPClientError("no folder selected")
        return self.server.folders[self.selected]

    def login(self, username, password):
        self._enter("login")
        if self.server.reject_login:
            raise imap_exceptions.LoginError("[AUTHENTICATIONFAILED] Invalid credentials")
        self.logged_in = True
        return b"LOGIN completed"

    def logout(self):
        self.logged_out = True
        return b"BYE"

    def noop(self):
        self._enter("noop")
        return b"NOOP completed", []

    def has_capability(self, capability):
        self._enter("has_capability")
        return capability.upper() in self.server.capabilities

    def list_folders(self, directory="", pattern="*"):
        self._enter("list_folders")
        with self.server.lock:
            listing = [(box.flags, box.delimiter, box.name) for box in self.server.folders.values()]
            listing.extend(self.server.extra_listing)
        if pattern == "*":
            return listing
        return [entry for entry in listing if entry[2].upper() == pattern.upper()]

    def folder_status(self, folder, what=None):
        self._enter("folder_status")
        with self.server.lock:
            box = self.server.folders.get(folder)
            if box is None:
                raise imap_exceptions.IMAPClientError("STATUS failed: NO mailbox does not exist")
            unseen = sum(1 for m in box.messages.values() if b"\\Seen" not in m["flags"])
            return {b"MESSAGES": len(box.messages), b"UNSEEN": unseen}

    def select_folder(self, folder, readonly=False):
        self._enter("select_folder")
        with self.server.lock:
            box = self.server.folders.get(folder)
            if box is None or b"\\Noselect" in box.flags:
                raise imap_exceptions.IMAPClientError("select failed: NO")
            self.selected = folder
            self.readonly = readonly
            return {b"EXISTS": len(box.messages), b"UIDNEXT": box.next_uid}

    def search(self, criteria="ALL"):
        self._enter("search")
        with self.server.lock:
            return list(self._box().messages.keys())

    def fetch(self, messages, data):
        self._enter("fetch")
        response = {}
        with self.server.lock:
            box = self._box()
            for seq, uid in enumerate(messages, start=1):
                message = box.messages.get(uid)
                if message is None:
                    continue
                item = {b"SEQ": seq}
                for name in data:
                    name = name.upper()
                    if name == "ENVELOPE":
                        item[b"ENVELOPE"] = _envelope(message["raw"])
                    elif name == "FLAGS":
                        item[b"FLAGS"] = tuple(sorted(message["flags"]))
                    elif name == "INTERNALDATE":
                        item[b"INTERNALDATE"] = message["internaldate"]
                    elif name in ("BODY.PEEK[]", "BODY[]", "RFC822"):
                        item[b"BODY[]"] = message["raw"]
                        if name != "BODY.PEEK[]":
                            message["flags"].add(b"\\Seen")
                response[uid] = item
        return response

    def add_flags(self, messages, flags, silent=False):
        self._enter("add_flags")
        if self.readonly:
            raise imap_exceptions.IMAPClientReadOnlyError("folder is read-only")
        result = {}
        with self.server.lock:
            box = self._box()
            for uid in messages:
                if uid in box.messages:
                    box.messages[uid]["flags"].update(flags)
                    result[uid] = tuple(sorted(box.messages[uid]["flags"]))
        return result

    def _expunge(self, uids=None):
        if self.server.fail_expunge:
            raise imap_exceptions.IMAPClientError("EXPUNGE failed: NO server busy")
        with self.server.lock:
            box = self._box()
            for uid in list(box.messages):
                if uids is not None and uid not in uids:
                    continue
                if b"\\Deleted" in box.messages[uid]["flags"]:
                    del box.messages[uid]

    def expunge(self, messages=None):
        self._enter("expunge")
        self._expunge(messages)
        return b"EXPUNGE completed", []

    def uid_expunge(self, messages):
        self._enter("uid_expunge")
        if "UIDPLUS" not in self.server.capabilities:
            raise imap_exceptions.CapabilityError("Server does not support UIDPLUS capability")
        self._expunge(messages)
        return b"UID EXPUNGE completed"

    def append(self, folder, msg, flags=(), msg_time=None):
        self._enter("append")
        with self.server.lock:
            if folder not in self.server.folders:
                raise imap_exceptions.IMAPClientError("APPEND failed: NO [TRYCREATE]")
            uid = self.server.add_message(folder, msg, flags)
        return f"[APPENDUID 1 {uid}] APPEND completed".encode()


class FakeSmtpClient:
    """Subset of smtplib.SMTP used by the gateway"""

    def __init__(self, server: FakeMailServer, host="", port=0, timeout=None):
        self.server = server
        self.host = host
        self.port = port
        self.timeout = timeout
        self.sock = MagicMock()
        self.started_tls = False
        self.logged_in = False
        self.closed = False
        self.commands = []
        self._envelope = None

    def _enter(self, command):
        self.commands.append(command)
        delay = self.server.slow_commands.get(f"smtp.{command}")
        if delay:
            time.sleep(delay)
        failure = self.server.take_failure(f"smtp.{command}")
        if failure is not None:
            raise failure
        if self.closed:
            raise smtplib.SMTPServerDisconnected("please run connect() first")

    def ehlo(self, name=""):
        self._enter("ehlo")
        return 250, b"fake.example.com"

    def starttls(self, **kwargs):
        self._enter("starttls")
        self.started_tls = True
        return 220, b"Ready to start TLS"

    def login(self, user, password, **kwargs):
        self._enter("login")
        if self.server.reject_login:
            raise smtplib.SMTPAuthenticationError(535, b"5.7.8 Authentication failed")
        self.logged_in = True
        return 235, b"Authentication successful"

    def noop(self):
        self._enter("noop")
        return 250, b"OK"

    def mail(self, sender, options=()):
        self._enter("mail")
        if self.server.drop_before_mail:
            self.closed = True
            raise smtplib.SMTPServerDisconnected("Connection unexpectedly closed")
        if self._envelope is not None:
            return 503, b"5.5.1 Nested MAIL command"
        if sender in self.server.rejected_senders:
            return 553, b"5.7.1 Sender rejected"
        self._envelope = {"from": sender, "to": []}
        return 250, b"OK"

    def rcpt(self, recip, options=()):
        self._enter("rcpt")
        if recip in self.server.rejected_recipients:
            return 550, b"5.1.1 No such user"
        self._envelope["to"].append(recip)
        return 250, b"OK"

    def data(self, msg):
        self._enter("data")
        if self.server.drop_during_data:
            self.closed = True
            raise smtplib.SMTPServerDisconnected("Connection unexpectedly closed: timed out")
        code, reply = self.server.data_reply
        if code == 250:
            self.server.outbox.append({**self._envelope, "data": msg})
            if self.server.data_delay:
                time.sleep(self.server.data_delay)
        self._envelope = None
        return code, reply

    def rset(self):
        self._enter("rset")
        self._envelope = None
        return 250, b"Flushed"

    def quit(self):
        self.closed = True
        return 221, b"Bye"


@pytest.fixture
def fake_server():
    server = FakeMailServer()
    server.add_folder("INBOX")
    return server


@pytest.fixture
def patched_clients(fake_server):
    """Route IMAPClient and smtplib connections to the fake server."""
    with patch("mailbag.core.email.session.IMAPClient", side_effect=fake_server.imap_client), \
            patch("mailbag.core.email.session.smtplib.SMTP", side_effect=fake_server.smtp_client), \
            patch("mailbag.core.email.session.smtplib.SMTP_SSL", side_effect=fake_server.smtp_client):
        yield fake_server


@pytest.fixture
def imap_config():
    return ServerConfig(host="imap.test.com", port=993, username="me@example.com",
                        password="secret", connect_timeout=5, command_timeout=5)


@pytest.fixture
def smtp_config():
    return ServerConfig(host="smtp.test.com", port=587, username="me@example.com",
                        password="secret", use_ssl=False, use_starttls=True)


@pytest.fixture
def imap_session(patched_clients, imap_config):
    from mailbag.core.email.session import ImapSession
    session = ImapSession(imap_config)
    session.open()
    yield session
    session.close()


@pytest.fixture
def smtp_session(patched_clients, smtp_config):
    from mailbag.core.email.session import SmtpSession
    session = SmtpSession(smtp_config)
    session.open()
    yield session
    session.close()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        imap_host="imap.test.com",
        imap_username="me@example.com",
        imap_password="secret",
        smtp_host="smtp.test.com",
        from_name="Me",
        from_email="me@example.com",
        imap_pool_size=2,
        smtp_pool_size=1,
        operation_timeout=5,
        api_key=None,
    )


@pytest.fixture
def mock_imap_client():
    """MagicMock standing in for a connected IMAPClient"""
    mock = MagicMock()
    mock.login = Mock(return_value=b"LOGIN completed")
    mock.noop = Mock(return_value=(b"NOOP completed", []))
    mock.list_folders = Mock(return_value=[
        ((b"\\HasNoChildren",), b"/", "INBOX"),
        ((b"\\HasNoChildren",), b"/", "Sent"),
    ])
    mock.folder_status = Mock(return_value={b"MESSAGES": 3, b"UNSEEN": 1})
    mock.select_folder = Mock(return_value={b"EXISTS": 3})
    mock.search = Mock(return_value=[1, 2, 3])
    mock.logout = Mock()
    return mock
