"""
Protocol sessions.

One session owns one authenticated connection to a mail server. Sessions are
thread-confined: the pool hands a session to exactly one worker thread at a
time, and every command on it runs in issue order.
"""
import logging
import smtplib
import socket
import threading
from enum import Enum
from typing import Any, Optional

from imapclient import IMAPClient
from imapclient import exceptions as imap_exceptions
from imapclient.imapclient import SocketTimeout

from mailbag.core.config import ServerConfig
from .errors import (
    AuthError,
    CommandSequenceError,
    GatewayConnectionError,
    GatewayError,
    GatewayTimeoutError,
    ProtocolError,
    SubmissionError,
)

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


class ProtocolSession:
    """
    Base class for a single protocol connection.

    Subclasses implement `_connect`, `_disconnect`, `_probe` and `_translate`.
    `execute(command, *args)` dispatches to the method of the same name on
    the underlying client and returns its raw reply.
    """

    protocol = "generic"

    def __init__(self, config: ServerConfig):
        self.config = config
        self.state = SessionState.DISCONNECTED
        self._client: Any = None
        self._in_flight = threading.Lock()

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def use_tls(self) -> bool:
        return self.config.use_ssl or self.config.use_starttls

    @property
    def is_open(self) -> bool:
        return self.state == SessionState.AUTHENTICATED

    def _set_state(self, state: SessionState) -> None:
        if state != self.state:
            logger.debug(f"{self.protocol} session {self.host}: {self.state.value} -> {state.value}")
            self.state = state

    def open(self) -> None:
        """
        Open the transport and authenticate.

        Raises:
            GatewayConnectionError: transport/TLS could not be established
            AuthError: credentials rejected
        """
        if self.is_open:
            return
        self._set_state(SessionState.CONNECTING)
        logger.info(f"Connecting to {self.protocol} server {self.host}:{self.port}")
        try:
            self._connect()
        except GatewayError:
            self._abort()
            raise
        except Exception as e:
            self._abort()
            error = self._translate(e, "connect")
            if isinstance(error, GatewayTimeoutError):
                error = GatewayConnectionError(
                    f"Timed out connecting to {self.host}:{self.port}", error.detail
                )
            raise error from e
        self._set_state(SessionState.AUTHENTICATED)
        logger.info(f"Logged in to {self.protocol} server {self.host} as {self.config.username}")

    def execute(self, command: str, *args, **kwargs) -> Any:
        """
        Issue one command and return the raw reply.

        Raises:
            CommandSequenceError: another command is still in flight
            GatewayConnectionError: session not open, or transport failure
            GatewayTimeoutError: no reply within the command timeout
            ProtocolError: malformed or error reply
        """
        if not self._in_flight.acquire(blocking=False):
            raise CommandSequenceError(
                f"{self.protocol} command {command!r} issued while another command is in flight"
            )
        try:
            if not self.is_open:
                raise GatewayConnectionError(f"{self.protocol} session is not open")
            logger.debug(f"{self.protocol} > {command.upper()}")
            try:
                return getattr(self._client, command)(*args, **kwargs)
            except Exception as e:
                raise self._translate(e, command) from e
        finally:
            self._in_flight.release()

    def ensure_open(self) -> None:
        """Probe a reused session and reconnect it if it is dead."""
        if self.is_open:
            try:
                self._probe()
                return
            except GatewayError as e:
                logger.warning(f"{self.protocol} session to {self.host} is dead ({e}), reconnecting")
        self.close()
        self.open()

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._client is not None:
            try:
                self._disconnect()
            except Exception as e:
                logger.debug(f"Ignoring error while closing {self.protocol} session: {e}")
            logger.info(f"Disconnected from {self.protocol} server {self.host}")
        self._client = None
        self._set_state(SessionState.DISCONNECTED)

    def _abort(self) -> None:
        self.close()
        self._set_state(SessionState.FAILED)

    def _fail(self) -> None:
        self._set_state(SessionState.FAILED)

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.host}:{self.port} {self.state.value}>"

    # Subclass hooks

    def _connect(self) -> None:
        raise NotImplementedError

    def _disconnect(self) -> None:
        raise NotImplementedError

    def _probe(self) -> None:
        self.execute("noop")

    def _translate(self, exc: Exception, command: str) -> GatewayError:
        raise NotImplementedError


class ImapSession(ProtocolSession):
    """Read-side session backed by IMAPClient (UIDs are used throughout)"""

    protocol = "imap"

    def _connect(self) -> None:
        client = IMAPClient(
            host=self.config.host,
            port=self.config.port,
            ssl=self.config.use_ssl,
            timeout=SocketTimeout(
                connect=self.config.connect_timeout,
                read=self.config.command_timeout,
            ),
        )
        self._client = client
        client.login(self.config.username, self.config.password)

    def _disconnect(self) -> None:
        self._client.logout()

    def has_capability(self, capability: str) -> bool:
        """
        Check a server capability.

        The first lookup after login can issue CAPABILITY, so it goes through
        execute() like any other command.
        """
        return bool(self.execute("has_capability", capability))

    def _translate(self, exc: Exception, command: str) -> GatewayError:
        detail = str(exc)
        if isinstance(exc, (socket.timeout, TimeoutError)):
            self._fail()
            return GatewayTimeoutError(f"IMAP {command} timed out", detail)
        if isinstance(exc, imap_exceptions.LoginError):
            self._fail()
            return AuthError("IMAP login rejected", detail)
        if isinstance(exc, imap_exceptions.IMAPClientAbortError):
            self._fail()
            return GatewayConnectionError(f"IMAP connection lost during {command}", detail)
        if isinstance(exc, imap_exceptions.ProtocolError):
            self._fail()
            return ProtocolError(f"Malformed IMAP reply to {command}", detail)
        if isinstance(exc, imap_exceptions.IMAPClientError):
            # Tagged NO/BAD: the connection itself is still usable
            return ProtocolError(f"IMAP {command} failed", detail)
        if isinstance(exc, OSError):
            self._fail()
            return GatewayConnectionError(f"IMAP transport error during {command}", detail)
        self._fail()
        return ProtocolError(f"Unexpected IMAP reply to {command}", detail)


class SmtpSession(ProtocolSession):
    """
    Submission session backed by smtplib.

    Envelope commands (mail/rcpt/data) are issued individually so the caller
    can tell a rejection apart from a transport failure after DATA.
    """

    protocol = "smtp"

    def _connect(self) -> None:
        if self.config.use_ssl:
            client = smtplib.SMTP_SSL(
                self.config.host, self.config.port, timeout=self.config.connect_timeout
            )
        else:
            client = smtplib.SMTP(
                self.config.host, self.config.port, timeout=self.config.connect_timeout
            )
        self._client = client
        client.ehlo()
        if self.config.use_starttls:
            client.starttls()
            client.ehlo()
        if client.sock is not None:
            client.sock.settimeout(self.config.command_timeout)
        if self.config.username:
            client.login(self.config.username, self.config.password)

    def _disconnect(self) -> None:
        self._client.quit()

    def _probe(self) -> None:
        code, _ = self.execute("noop")
        if code != 250:
            self._fail()
            raise GatewayConnectionError("SMTP NOOP probe failed", f"{code}")

    def _translate(self, exc: Exception, command: str) -> GatewayError:
        detail = str(exc)
        if isinstance(exc, (socket.timeout, TimeoutError)):
            self._fail()
            return GatewayTimeoutError(f"SMTP {command} timed out", detail)
        if isinstance(exc, smtplib.SMTPAuthenticationError):
            self._fail()
            return AuthError("SMTP login rejected", detail)
        if isinstance(exc, smtplib.SMTPServerDisconnected):
            self._fail()
            return GatewayConnectionError(f"SMTP connection lost during {command}", detail)
        if isinstance(exc, smtplib.SMTPNotSupportedError):
            self._fail()
            return ProtocolError(f"SMTP server does not support {command}", detail)
        if isinstance(exc, smtplib.SMTPResponseException):
            if command in ("connect", "ehlo", "starttls", "login"):
                self._fail()
                return GatewayConnectionError(f"SMTP {command} refused", detail)
            return SubmissionError(f"SMTP {command} rejected", detail, code=exc.smtp_code)
        if isinstance(exc, smtplib.SMTPException):
            self._fail()
            return ProtocolError(f"SMTP {command} failed", detail)
        if isinstance(exc, OSError):
            self._fail()
            return GatewayConnectionError(f"SMTP transport error during {command}", detail)
        self._fail()
        return ProtocolError(f"Unexpected SMTP reply to {command}", detail)


def create_session(protocol: str, config: ServerConfig) -> ProtocolSession:
    """Build an unopened session for `protocol` ("imap" or "smtp")."""
    if protocol == ImapSession.protocol:
        return ImapSession(config)
    if protocol == SmtpSession.protocol:
        return SmtpSession(config)
    raise ValueError(f"Unknown protocol: {protocol}")
