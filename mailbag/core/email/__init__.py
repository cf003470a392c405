"""Mail protocol gateway"""
from .models import (
    Mailbox,
    EmailAddress,
    MessageEnvelope,
    MessageBody,
    MessageFlag,
    ContentType,
    OutboundMessage,
)
from .errors import (
    ErrorKind,
    GatewayError,
    GatewayConnectionError,
    AuthError,
    ProtocolError,
    GatewayTimeoutError,
    NotFoundError,
    SubmissionError,
    PartialFailure,
    DeliveryUnknown,
    CommandSequenceError,
)
from .session import ImapSession, SmtpSession, SessionState
from .pool import SessionPool, Lease, RequestState
from .gateway import MailGateway, GatewayResult, Outcome

__all__ = [
    "Mailbox",
    "EmailAddress",
    "MessageEnvelope",
    "MessageBody",
    "MessageFlag",
    "ContentType",
    "OutboundMessage",
    "ErrorKind",
    "GatewayError",
    "GatewayConnectionError",
    "AuthError",
    "ProtocolError",
    "GatewayTimeoutError",
    "NotFoundError",
    "SubmissionError",
    "PartialFailure",
    "DeliveryUnknown",
    "CommandSequenceError",
    "ImapSession",
    "SmtpSession",
    "SessionState",
    "SessionPool",
    "Lease",
    "RequestState",
    "MailGateway",
    "GatewayResult",
    "Outcome",
]
