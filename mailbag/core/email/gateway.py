"""
Mail gateway facade.

The single entry point used by the HTTP layer. Each operation checks a session
out of the matching pool, runs the catalog/index/fetch/mutate step in a worker
thread, and returns a GatewayResult instead of raising for expected failures.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from mailbag.core.config import Settings
from . import catalog, fetcher, index, mutator
from .errors import (
    DeliveryUnknown,
    ErrorKind,
    GatewayError,
    GatewayTimeoutError,
    NotFoundError,
    PartialFailure,
    sanitize_error_message,
)
from .models import Mailbox, MessageBody, MessageEnvelope, OutboundMessage
from .pool import Lease, RequestState, SessionPool
from .session import ProtocolSession, create_session

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Outcome(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    PARTIAL_FAILURE = "partial_failure"
    UNKNOWN = "unknown"
    FAILED = "failed"


def outcome_for(error: GatewayError) -> Outcome:
    if isinstance(error, NotFoundError):
        return Outcome.NOT_FOUND
    if isinstance(error, PartialFailure):
        return Outcome.PARTIAL_FAILURE
    if isinstance(error, DeliveryUnknown):
        return Outcome.UNKNOWN
    return Outcome.FAILED


@dataclass
class GatewayResult(Generic[T]):
    """Outcome of one gateway operation"""
    outcome: Outcome
    value: Optional[T] = None
    error: Optional[GatewayError] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    def unwrap(self) -> T:
        """Return the value, or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def success(cls, value: Optional[T] = None, warnings: Optional[List[str]] = None) -> "GatewayResult[T]":
        return cls(outcome=Outcome.SUCCESS, value=value, warnings=warnings or [])

    @classmethod
    def failure(cls, error: GatewayError) -> "GatewayResult[T]":
        return cls(outcome=outcome_for(error), error=error)


class MailGateway:
    """
    Facade over the IMAP and SMTP session pools.

    Create once per process (FastAPI lifespan), call `start()` before use and
    `close()` on shutdown.
    """

    def __init__(
        self,
        settings: Settings,
        imap_factory: Optional[Callable[[], ProtocolSession]] = None,
        smtp_factory: Optional[Callable[[], ProtocolSession]] = None,
    ):
        """
        Args:
            settings: Application settings (servers, pool sizes, timeouts)
            imap_factory: Override for building read-side sessions (tests)
            smtp_factory: Override for building submission sessions (tests)
        """
        self.settings = settings
        self.operation_timeout = settings.operation_timeout
        self.prefer_html = settings.prefer_html
        self.sent_folder = settings.sent_folder
        self.from_name = settings.from_name
        self.from_email = settings.from_email_address

        imap_config = settings.imap_server()
        smtp_config = settings.smtp_server()
        self._imap_factory = imap_factory or (lambda: create_session("imap", imap_config))
        self._smtp_factory = smtp_factory or (lambda: create_session("smtp", smtp_config))
        self.imap_pool: Optional[SessionPool] = None
        self.smtp_pool: Optional[SessionPool] = None

    @property
    def started(self) -> bool:
        return self.imap_pool is not None and not self.imap_pool.closed

    async def start(self) -> None:
        if self.started:
            return
        self.imap_pool = SessionPool("imap", self._imap_factory, self.settings.imap_pool_size)
        self.smtp_pool = SessionPool("smtp", self._smtp_factory, self.settings.smtp_pool_size)
        logger.info(
            f"Mail gateway started (imap={self.settings.imap_host} x{self.settings.imap_pool_size}, "
            f"smtp={self.settings.smtp_host} x{self.settings.smtp_pool_size})"
        )

    async def close(self) -> None:
        for pool in (self.imap_pool, self.smtp_pool):
            if pool is not None:
                await asyncio.to_thread(pool.close)
        logger.info("Mail gateway closed")

    async def _run(self, pool: Optional[SessionPool], operation: str,
                   step: Callable[..., Any], *args, lease: Optional[Lease] = None) -> GatewayResult:
        """
        Run one step on a pooled session and wrap the outcome.

        An operation timeout on a lease the step has already committed is
        reported as DeliveryUnknown rather than a plain timeout.
        """
        if pool is None:
            raise RuntimeError("MailGateway.start() has not been called")

        lease = lease or Lease(operation)

        def work(session):
            lease.advance(RequestState.COMMAND_ISSUED)
            value = step(session, *args)
            lease.advance(RequestState.RESPONSE_NORMALIZED)
            return value

        try:
            value = await asyncio.wait_for(
                pool.submit(work, lease=lease), timeout=self.operation_timeout
            )
            return GatewayResult.success(value)
        except asyncio.TimeoutError:
            lease.abandon()
            message = f"{operation} did not finish within {self.operation_timeout}s"
            if lease.committed:
                error = DeliveryUnknown(message, detail="no reply after the data was handed over")
            else:
                error = GatewayTimeoutError(message)
            self._log_failure(operation, error)
            return GatewayResult.failure(error)
        except GatewayError as e:
            self._log_failure(operation, e)
            return GatewayResult.failure(e)
        finally:
            lease.release()

    def _log_failure(self, operation: str, error: GatewayError) -> None:
        if isinstance(error, NotFoundError):
            logger.info(f"{operation}: {error.message}")
            return
        logger.error(
            f"{operation} failed [{error.kind.value}]: {sanitize_error_message(str(error))}"
        )

    async def list_mailboxes(self) -> GatewayResult[List[Mailbox]]:
        return await self._run(self.imap_pool, "list_mailboxes", catalog.list_mailboxes)

    async def list_messages(self, mailbox: str) -> GatewayResult[List[MessageEnvelope]]:
        return await self._run(self.imap_pool, f"list_messages({mailbox})", index.list_messages, mailbox)

    async def get_message_body(self, mailbox: str, message_id: int) -> GatewayResult[MessageBody]:
        result = await self._run(
            self.imap_pool, f"get_message_body({mailbox}/{message_id})",
            fetcher.get_body, mailbox, message_id, self.prefer_html,
        )
        if result.ok and result.value.partial_decode:
            result.warnings.extend(result.value.decode_warnings)
        return result

    async def delete_message(self, mailbox: str, message_id: int) -> GatewayResult[None]:
        return await self._run(
            self.imap_pool, f"delete_message({mailbox}/{message_id})",
            mutator.delete_message, mailbox, message_id,
        )

    async def purge_message(self, mailbox: str, message_id: int) -> GatewayResult[None]:
        return await self._run(
            self.imap_pool, f"purge_message({mailbox}/{message_id})",
            mutator.purge_message, mailbox, message_id,
        )

    async def send_message(self, outbound: OutboundMessage) -> GatewayResult[str]:
        """
        Submit a message. The value is the generated Message-ID.

        When a sent folder is configured the message is also appended there;
        a failure of that copy is reported as a warning only. An ambiguous
        outcome (Outcome.UNKNOWN) is never copied.
        """
        lease = Lease("send_message")
        result = await self._run(
            self.smtp_pool, "send_message", mutator.send_message,
            outbound, self.from_name, self.from_email, lease.mark_committed,
            lease=lease,
        )
        if not result.ok:
            return result

        message_id, data = result.value
        sent = GatewayResult.success(message_id)
        if self.sent_folder:
            copy = await self._run(
                self.imap_pool, f"append({self.sent_folder})",
                mutator.append_to_folder, self.sent_folder, data,
            )
            if not copy.ok:
                sent.warnings.append(
                    f"Message sent but not copied to {self.sent_folder} ({copy.error_kind.value})"
                )
        return sent

    def health(self) -> Dict[str, Any]:
        """Pool statistics for the health endpoint."""
        pools = {}
        for pool in (self.imap_pool, self.smtp_pool):
            if pool is not None:
                pools[pool.name] = pool.stats()
        return {
            "status": "ok" if self.started else "stopped",
            "pools": pools,
        }
