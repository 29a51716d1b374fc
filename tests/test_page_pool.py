"""
Tests for the render context pool.

Tests cover:
- Bounding live contexts and blocking extra callers
- FIFO hand-off to waiting callers
- Destroying contexts that fail to reset
- Acquire timeouts
- Shutdown with destroy_all
"""

import threading
import time

import pytest

from papyrus_backend.errors import PoolClosedError, PoolTimeoutError
from papyrus_backend.page_pool import RenderPool, ResourceState


class Resource:
    def __init__(self, name):
        self.name = name
        self.fail_reset = False
        self.reset_gate = None
        self.resets = 0
        self.closed = False

    def reset(self):
        self.resets += 1
        if self.reset_gate is not None:
            self.reset_gate.wait(2)
        if self.fail_reset:
            raise RuntimeError("reset failed")

    def close(self):
        self.closed = True


@pytest.fixture
def factory():
    created = []

    def _factory():
        resource = Resource(f"r{len(created)}")
        created.append(resource)
        return resource

    _factory.created = created
    return _factory


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.005)


def acquire_in_thread(pool, results, label, timeout=None):
    def _run():
        try:
            results.append((label, pool.acquire(timeout)))
        except Exception as exc:  # noqa: BLE001
            results.append((label, exc))

    thread = threading.Thread(target=_run)
    thread.start()
    return thread


class TestAcquireRelease:
    """Tests for bounded acquisition."""

    def test_third_acquire_blocks_until_release(self, factory):
        """With a pool of 2, a third caller waits for a release and gets that context."""
        pool = RenderPool(factory, max_resources=2)
        first = pool.acquire()
        pool.acquire()
        results = []

        thread = acquire_in_thread(pool, results, "third")
        wait_for(lambda: pool.stats()["waiting"] == 1)
        assert results == []
        assert len(factory.created) == 2

        pool.release(first)
        thread.join(1)
        assert results == [("third", first)]
        assert pool.stats()["in_use"] == 2

    def test_idle_contexts_are_reused(self, factory):
        """A released context is handed out again instead of creating one."""
        pool = RenderPool(factory, max_resources=2)
        resource = pool.acquire()
        pool.release(resource)

        assert pool.acquire() is resource
        assert len(factory.created) == 1

    def test_waiters_are_served_in_order(self, factory):
        """The longest-waiting caller gets the next released context."""
        pool = RenderPool(factory, max_resources=1)
        held = pool.acquire()
        results = []

        first = acquire_in_thread(pool, results, "first")
        wait_for(lambda: pool.stats()["waiting"] == 1)
        second = acquire_in_thread(pool, results, "second")
        wait_for(lambda: pool.stats()["waiting"] == 2)

        pool.release(held)
        first.join(1)
        assert results == [("first", held)]

        pool.release(held)
        second.join(1)
        assert results[1] == ("second", held)

    def test_lease_releases_on_error(self, factory):
        """The context manager returns the context even when the body raises."""
        pool = RenderPool(factory, max_resources=1)
        with pytest.raises(ValueError):
            with pool.lease() as resource:
                raise ValueError("boom")

        assert pool.state_of(resource) is ResourceState.IDLE
        assert pool.stats()["in_use"] == 0

    def test_on_change_reports_in_use(self, factory):
        """The callback sees the number of checked-out contexts."""
        seen = []
        pool = RenderPool(factory, max_resources=2, on_change=seen.append)
        first = pool.acquire()
        second = pool.acquire()
        pool.release(first)
        pool.release(second)
        assert seen == [1, 2, 1, 0]

    def test_double_release_is_ignored(self, factory):
        """Releasing an idle context again neither resets it nor changes the counts."""
        pool = RenderPool(factory, max_resources=1)
        resource = pool.acquire()
        pool.release(resource)
        pool.release(resource)

        assert resource.resets == 1
        assert pool.stats()["idle"] == 1
        assert pool.stats()["in_use"] == 0

    def test_release_during_reset_is_ignored(self, factory):
        """A second release while the first is still resetting does not reset again."""
        pool = RenderPool(factory, max_resources=1)
        resource = pool.acquire()
        resource.reset_gate = threading.Event()

        first = threading.Thread(target=pool.release, args=(resource,))
        first.start()
        wait_for(lambda: pool.state_of(resource) is ResourceState.RESETTING)
        pool.release(resource)
        resource.reset_gate.set()
        first.join(1)

        assert resource.resets == 1
        assert pool.state_of(resource) is ResourceState.IDLE
        assert pool.stats()["in_use"] == 0
        assert pool.stats()["idle"] == 1


class TestResetFailures:
    """Tests for contexts that cannot be reset."""

    def test_failed_reset_destroys_context(self, factory):
        """A context whose reset fails is closed and never handed out again."""
        pool = RenderPool(factory, max_resources=1)
        broken = pool.acquire()
        broken.fail_reset = True
        pool.release(broken)

        assert broken.closed
        assert pool.state_of(broken) is None
        assert pool.stats()["total"] == 0
        assert pool.acquire() is not broken

    def test_destroyed_context_frees_slot_for_waiter(self, factory):
        """A waiter blocked on a full pool gets a fresh context when one is destroyed."""
        pool = RenderPool(factory, max_resources=1)
        broken = pool.acquire()
        results = []

        thread = acquire_in_thread(pool, results, "waiter")
        wait_for(lambda: pool.stats()["waiting"] == 1)
        broken.fail_reset = True
        pool.release(broken)
        thread.join(1)

        label, resource = results[0]
        assert resource is factory.created[1]
        assert pool.stats() == {"max": 1, "total": 1, "idle": 0, "in_use": 1, "waiting": 0}

    def test_destroyed_contexts_are_forgotten(self, factory):
        """Replacing broken contexts does not grow the pool's bookkeeping."""
        pool = RenderPool(factory, max_resources=1)
        for _ in range(20):
            resource = pool.acquire()
            resource.fail_reset = True
            pool.release(resource)

        assert len(factory.created) == 20
        assert pool._states == {}


class TestTimeouts:
    """Tests for bounded waiting."""

    def test_acquire_times_out(self, factory):
        """Waiting longer than the timeout raises PoolTimeoutError."""
        pool = RenderPool(factory, max_resources=1)
        pool.acquire()

        with pytest.raises(PoolTimeoutError):
            pool.acquire(timeout=0.05)
        assert pool.stats()["waiting"] == 0


class TestDestroyAll:
    """Tests for pool shutdown."""

    def test_idle_contexts_closed_and_busy_ones_abandoned(self, factory):
        """Idle contexts are closed at once; busy ones are closed on their late release."""
        pool = RenderPool(factory, max_resources=2)
        held = pool.acquire()
        idle = pool.acquire()
        pool.release(idle)

        abandoned = pool.destroy_all(grace=0.05)

        assert abandoned == 1
        assert idle.closed
        assert not held.closed
        with pytest.raises(PoolClosedError):
            pool.acquire()

        pool.release(held)
        assert held.closed
        assert pool.state_of(held) is None
        assert pool.state_of(idle) is None
        assert pool.stats()["total"] == 0

    def test_waiters_fail_with_pool_closed(self, factory):
        """Callers blocked in acquire are released with PoolClosedError."""
        pool = RenderPool(factory, max_resources=1)
        pool.acquire()
        results = []

        thread = acquire_in_thread(pool, results, "waiter")
        wait_for(lambda: pool.stats()["waiting"] == 1)
        pool.destroy_all()
        thread.join(1)

        assert isinstance(results[0][1], PoolClosedError)

    def test_waits_for_in_use_contexts_within_grace(self, factory):
        """Contexts released during the grace period are not abandoned."""
        pool = RenderPool(factory, max_resources=1)
        resource = pool.acquire()

        timer = threading.Timer(0.05, pool.release, args=(resource,))
        timer.start()
        assert pool.destroy_all(grace=2.0) == 0
        timer.join()
        assert resource.closed
