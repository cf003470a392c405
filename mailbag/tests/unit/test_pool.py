"""
Test the bounded session pool and request lease tracking.
"""
import asyncio
import threading
import time

import pytest

from mailbag.core.email.errors import AuthError, GatewayConnectionError, GatewayTimeoutError
from mailbag.core.email.pool import Lease, RequestState, SessionPool
from mailbag.core.email.session import ImapSession, SessionState


@pytest.fixture
def imap_pool(patched_clients, imap_config):
    pool = SessionPool("imap", lambda: ImapSession(imap_config), size=2)
    yield pool
    pool.close()


class TestLease:
    """Test the per-request state machine"""

    def test_forward_transitions(self):
        lease = Lease("list_mailboxes")
        lease.advance(RequestState.SESSION_ACQUIRED)
        lease.advance(RequestState.COMMAND_ISSUED)
        lease.advance(RequestState.RESPONSE_NORMALIZED)
        lease.release()

        assert lease.history == list(RequestState)

    def test_backward_transition_rejected(self):
        lease = Lease("op")
        lease.advance(RequestState.COMMAND_ISSUED)

        with pytest.raises(RuntimeError):
            lease.advance(RequestState.SESSION_ACQUIRED)

    def test_released_is_terminal(self):
        lease = Lease("op")
        lease.release()
        lease.advance(RequestState.COMMAND_ISSUED)

        assert lease.state == RequestState.RELEASED
        assert lease.history == [RequestState.IDLE, RequestState.RELEASED]

    def test_mark_committed(self):
        lease = Lease("send_message")
        assert lease.committed is False

        lease.mark_committed()

        assert lease.committed is True
        assert lease.state == RequestState.IDLE

    def test_commit_after_abandon_is_refused(self):
        lease = Lease("send_message")
        lease.abandon()

        with pytest.raises(GatewayTimeoutError):
            lease.mark_committed()

        assert lease.committed is False


class TestSessionPool:
    """Test checkout/checkin behaviour"""

    def test_size_must_be_positive(self, imap_config):
        with pytest.raises(ValueError):
            SessionPool("imap", lambda: ImapSession(imap_config), size=0)

    def test_session_is_reused(self, imap_pool, fake_server):
        with imap_pool.session() as first:
            pass
        with imap_pool.session() as second:
            pass

        assert first is second
        assert len(fake_server.imap_connections) == 1
        assert imap_pool.stats()["idle"] == 1

    def test_failed_session_is_discarded(self, imap_pool, fake_server):
        fake_server.fail_commands["list_folders"] = TimeoutError("timed out")

        with pytest.raises(GatewayTimeoutError):
            with imap_pool.session() as session:
                session.execute("list_folders")

        assert session.state == SessionState.DISCONNECTED
        stats = imap_pool.stats()
        assert stats["idle"] == 0
        assert stats["in_use"] == 0
        assert stats["discarded"] == 1

        # Slot is usable again with a fresh connection
        with imap_pool.session() as replacement:
            assert replacement is not session
            assert replacement.is_open

    def test_lease_tracks_acquire_and_release(self, imap_pool):
        lease = Lease("op")
        with imap_pool.session(lease):
            assert lease.state == RequestState.SESSION_ACQUIRED

        assert lease.state == RequestState.RELEASED

    def test_abandoned_lease_discards_session(self, imap_pool):
        lease = Lease("op")
        with imap_pool.session(lease) as session:
            lease.abandon()

        assert not session.is_open
        assert imap_pool.stats()["idle"] == 0

    def test_checkout_failure_releases_slot(self, imap_pool, fake_server):
        fake_server.reject_login = True

        with pytest.raises(AuthError):
            imap_pool.checkout()

        assert imap_pool.stats()["in_use"] == 0

    def test_factory_failure_releases_slot(self):
        def broken_factory():
            raise ValueError("bad server config")

        pool = SessionPool("imap", broken_factory, size=1)
        try:
            with pytest.raises(ValueError):
                pool.checkout()
            with pytest.raises(ValueError):
                pool.checkout()

            assert pool.stats()["in_use"] == 0
        finally:
            pool.close()

    def test_closed_pool_rejects_checkout(self, imap_pool):
        imap_pool.close()

        with pytest.raises(GatewayConnectionError):
            imap_pool.checkout()

    def test_close_closes_idle_sessions(self, imap_pool):
        with imap_pool.session() as session:
            pass
        imap_pool.close()
        imap_pool.close()

        assert not session.is_open

    def test_release_after_close_discards(self, imap_pool):
        session = imap_pool.checkout()
        imap_pool.close()
        imap_pool.release(session)

        assert not session.is_open


class TestSubmit:
    """Test async submission to the worker threads"""

    @pytest.mark.asyncio
    async def test_submit_runs_on_session(self, imap_pool):
        listing = await imap_pool.submit(lambda session: session.execute("list_folders"))
        assert listing[0][2] == "INBOX"

    @pytest.mark.asyncio
    async def test_concurrency_bounded_by_pool_size(self, imap_pool):
        active = 0
        peak = 0
        lock = threading.Lock()

        def work(session):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with lock:
                active -= 1
            return session

        sessions = await asyncio.gather(*[imap_pool.submit(work) for _ in range(6)])

        assert peak <= imap_pool.size
        assert len({id(s) for s in sessions}) <= imap_pool.size
        assert imap_pool.stats()["in_use"] == 0

    @pytest.mark.asyncio
    async def test_cancelled_wait_abandons_lease(self, imap_pool):
        lease = Lease("slow")
        finished = threading.Event()

        def slow(session):
            time.sleep(0.2)
            finished.set()
            return session

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(imap_pool.submit(slow, lease=lease), timeout=0.05)

        assert lease.abandoned
        # The worker still finishes and gives its slot back
        await asyncio.to_thread(finished.wait, 2)
        await asyncio.sleep(0.05)
        stats = imap_pool.stats()
        assert stats["in_use"] == 0
        assert stats["discarded"] == 1

    @pytest.mark.asyncio
    async def test_submit_on_closed_pool(self, imap_pool):
        imap_pool.close()
        with pytest.raises(GatewayConnectionError):
            await imap_pool.submit(lambda session: None)
