"""
Bounded session pools.

Each protocol gets one SessionPool. Blocking protocol I/O runs on the pool's
own ThreadPoolExecutor, whose worker count equals the pool size, so the number
of sessions in use can never exceed it. Idle sessions are kept in a list
guarded by a lock and reused after a NOOP probe.
"""
import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Dict, Iterator, List, Optional, TypeVar

from .errors import GatewayConnectionError, GatewayTimeoutError
from .session import ProtocolSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestState(str, Enum):
    """Lifecycle of one gateway operation"""
    IDLE = "idle"
    SESSION_ACQUIRED = "session_acquired"
    COMMAND_ISSUED = "command_issued"
    RESPONSE_NORMALIZED = "response_normalized"
    RELEASED = "released"


_ORDER = list(RequestState)


class Lease:
    """
    Tracks one unit of work handed to a pool.

    States only move forward and `RELEASED` is terminal. A lease abandoned by
    its caller (timeout or cancellation) causes the session to be discarded
    instead of checked back in.
    """

    def __init__(self, operation: str):
        self.operation = operation
        self.state = RequestState.IDLE
        self.history: List[RequestState] = [RequestState.IDLE]
        self.abandoned = False
        # Set once the operation has passed the point where it may take effect
        # on the server, e.g. message data handed to SMTP DATA
        self.committed = False
        self._lock = threading.Lock()

    def advance(self, state: RequestState) -> None:
        with self._lock:
            if self.state == RequestState.RELEASED:
                return
            if _ORDER.index(state) <= _ORDER.index(self.state):
                raise RuntimeError(
                    f"{self.operation}: cannot move from {self.state.value} to {state.value}"
                )
            self.state = state
            self.history.append(state)
        logger.debug(f"{self.operation}: {state.value}")

    def release(self) -> None:
        self.advance(RequestState.RELEASED)

    def abandon(self) -> None:
        with self._lock:
            self.abandoned = True

    def mark_committed(self) -> None:
        """
        Record that the work is about to take effect on the server.

        Raises:
            GatewayTimeoutError: the caller already gave up; do not proceed
        """
        with self._lock:
            if self.abandoned:
                raise GatewayTimeoutError(f"{self.operation} abandoned before commit")
            self.committed = True
        logger.debug(f"{self.operation}: committed")


class SessionPool:
    """Bounded checkout/checkin of protocol sessions"""

    def __init__(self, name: str, factory: Callable[[], ProtocolSession], size: int):
        """
        Args:
            name: Pool name used in logs and stats ("imap", "smtp")
            factory: Builds a new, unopened session
            size: Maximum number of sessions in use at once
        """
        if size < 1:
            raise ValueError("pool size must be at least 1")
        self.name = name
        self.size = size
        self._factory = factory
        self._idle: List[ProtocolSession] = []
        self._lock = threading.Lock()
        self._in_use = 0
        self._created = 0
        self._discarded = 0
        self._closed = False
        self._executor = ThreadPoolExecutor(
            max_workers=size, thread_name_prefix=f"{name}-session"
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def checkout(self) -> ProtocolSession:
        """
        Take an idle session (or create one) and make sure it is open.

        Raises:
            GatewayConnectionError: pool closed or session could not connect
            AuthError: credentials rejected while opening
        """
        with self._lock:
            if self._closed:
                raise GatewayConnectionError(f"{self.name} pool is closed")
            session = self._idle.pop() if self._idle else None
            if session is None:
                self._created += 1
            self._in_use += 1

        try:
            if session is None:
                session = self._factory()
            session.ensure_open()
        except BaseException:
            if session is None:
                with self._lock:
                    self._in_use -= 1
                    self._discarded += 1
            else:
                self.release(session, discard=True)
            raise
        return session

    def release(self, session: ProtocolSession, discard: bool = False) -> None:
        """Check a session back in, or close it when it is unusable."""
        with self._lock:
            self._in_use -= 1
            keep = not discard and session.is_open and not self._closed
            if keep:
                self._idle.append(session)
            else:
                self._discarded += 1
        if not keep:
            logger.debug(f"{self.name} pool: discarding {session!r}")
            session.close()

    @contextmanager
    def session(self, lease: Optional[Lease] = None) -> Iterator[ProtocolSession]:
        """Scoped checkout; the session is always released on exit."""
        session = self.checkout()
        if lease is not None:
            lease.advance(RequestState.SESSION_ACQUIRED)
        try:
            yield session
        finally:
            # Failed sessions are never open, so release() closes them too
            self.release(session, discard=lease is not None and lease.abandoned)
            if lease is not None:
                lease.release()

    def _run(self, lease: Lease, fn: Callable[..., T], args: tuple) -> Optional[T]:
        if lease.abandoned:
            logger.debug(f"{lease.operation}: abandoned before start, skipping")
            lease.release()
            return None
        with self.session(lease) as session:
            return fn(session, *args)

    async def submit(self, fn: Callable[..., T], *args, lease: Optional[Lease] = None) -> T:
        """
        Run `fn(session, *args)` on a pooled session in a worker thread.

        Cancelling the awaiting task abandons the lease: work that has not
        started is dropped, work already running finishes in the background
        and its session is discarded.
        """
        if self._closed:
            raise GatewayConnectionError(f"{self.name} pool is closed")
        lease = lease or Lease(getattr(fn, "__name__", "operation"))
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, self._run, lease, fn, args)
        try:
            return await future
        except asyncio.CancelledError:
            lease.abandon()
            raise

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": self.size,
                "in_use": self._in_use,
                "idle": len(self._idle),
                "created": self._created,
                "discarded": self._discarded,
            }

    def close(self) -> None:
        """Stop accepting work and close idle sessions. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            idle, self._idle = self._idle, []
        self._executor.shutdown(wait=False, cancel_futures=True)
        for session in idle:
            session.close()
        logger.info(f"{self.name} pool closed ({len(idle)} idle sessions)")
