"""
Gateway error taxonomy.

Every failure the mail gateway reports is one of a small set of kinds so the
HTTP layer can map it to a status code without looking at protocol details.
The original server text is kept on the exception for logging only.
"""
import re
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable identifiers for gateway failures (also used as JSON outcome codes)"""
    CONNECTION = "connection"
    AUTH = "auth"
    PROTOCOL = "protocol"
    TIMEOUT = "timeout"
    NOT_FOUND = "not_found"
    SUBMISSION = "submission"
    PARTIAL_FAILURE = "partial_failure"
    UNKNOWN = "unknown"


class GatewayError(Exception):
    """Base class for all mail gateway failures"""
    kind: ErrorKind = ErrorKind.PROTOCOL
    public_message = "Mail server request failed"

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        # Raw server/transport text, for internal logs only
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


class GatewayConnectionError(GatewayError):
    """Transport or TLS failure, or a session that is not open"""
    kind = ErrorKind.CONNECTION
    public_message = "Could not reach the mail server"


class AuthError(GatewayError):
    """Credentials were rejected by the remote server"""
    kind = ErrorKind.AUTH
    public_message = "Mail server rejected the configured credentials"


class ProtocolError(GatewayError):
    """Malformed, unexpected or error reply from the server"""
    kind = ErrorKind.PROTOCOL


class GatewayTimeoutError(GatewayError):
    """No reply arrived within the configured bound"""
    kind = ErrorKind.TIMEOUT
    public_message = "Mail server did not answer in time"


class NotFoundError(GatewayError):
    """Referenced mailbox or message does not exist"""
    kind = ErrorKind.NOT_FOUND
    public_message = "Mailbox or message not found"


class SubmissionError(GatewayError):
    """Outbound message rejected by the submission server"""
    kind = ErrorKind.SUBMISSION
    public_message = "Message was rejected by the mail server"

    def __init__(self, message: str, detail: Optional[str] = None, code: Optional[int] = None):
        super().__init__(message, detail)
        self.code = code


class PartialFailure(GatewayError):
    """
    A multi-step operation only partly succeeded.

    For deletes this means the message is marked \\Deleted but was not
    expunged; the caller may retry the purge step alone.
    """
    kind = ErrorKind.PARTIAL_FAILURE
    public_message = "Message was marked deleted but could not be purged"

    def __init__(self, message: str, mailbox: str, message_id: int,
                 step: str = "expunge", detail: Optional[str] = None):
        super().__init__(message, detail)
        self.mailbox = mailbox
        self.message_id = message_id
        self.step = step


class DeliveryUnknown(GatewayError):
    """
    Send outcome is ambiguous: the connection failed after the message data
    was handed over, so the server may or may not have accepted it.
    """
    kind = ErrorKind.UNKNOWN
    public_message = "Delivery status unknown; check the Sent folder before resending"


class CommandSequenceError(RuntimeError):
    """A command was issued on a session while another was still in flight"""


def sanitize_error_message(message: str) -> str:
    """
    Scrub potential secrets from exception messages before logging.

    Covers connection URLs with inline passwords, IMAP/SMTP passwords, API
    keys and anything in `key=value` form that looks like a credential.
    """
    sanitized = re.sub(
        r'(postgresql|postgres|mysql|sqlite|imaps?|smtps?)://[^:/\s]+:[^@\s]+@',
        r'\1://[USER]:[REDACTED]@',
        message,
        flags=re.IGNORECASE
    )

    sensitive_patterns = [
        (r'(IMAP_PASSWORD|SMTP_PASSWORD|API_KEY)[=:\s]+[^\s,;]+', r'\1=[REDACTED]'),
        (r'(password|passwd|secret|token|key)["\']?\s*[=:]\s*["\']?[^"\'\s,;]+', r'\1=[REDACTED]'),
        # AUTHENTICATE/LOGIN arguments echoed back by some servers
        (r'(LOGIN\s+\S+\s+)\S+', r'\1[REDACTED]'),
        (r'(AUTH\s+(?:PLAIN|LOGIN)\s+)\S+', r'\1[REDACTED]'),
    ]
    for pattern, replacement in sensitive_patterns:
        sanitized = re.sub(pattern, replacement, sanitized, flags=re.IGNORECASE)

    return sanitized
