"""
Bounded pool of render contexts.

Render contexts are slow to create and unsafe to share, so each generate
worker process owns one pool sized for its host. ``acquire`` hands out an idle
context, creates one while the pool is below ``max_resources``, or blocks the
caller in a FIFO line until a context is released.

Prefer ``lease()``: it releases the context on every exit path.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Deque, Dict, Generic, Iterator, List, Optional, Protocol, TypeVar

from .errors import PoolClosedError, PoolTimeoutError

logger = logging.getLogger(__name__)


class ResourceState(str, Enum):
    IDLE = "idle"
    IN_USE = "in_use"
    RESETTING = "resetting"


class Resettable(Protocol):
    def reset(self) -> None:
        ...

    def close(self) -> None:
        ...


R = TypeVar("R", bound=Resettable)


class _Waiter:
    __slots__ = ("event", "resource", "may_create", "closed")

    def __init__(self) -> None:
        self.event = threading.Event()
        self.resource = None
        self.may_create = False
        self.closed = False


class RenderPool(Generic[R]):
    """
    Args:
        factory: Creates a new context; called without the pool lock held
        max_resources: Upper bound on live contexts (idle + in use)
        acquire_timeout: Default seconds to wait in ``acquire``; None waits forever
        on_change: Called with the number of contexts in use after each change
    """

    def __init__(
        self,
        factory: Callable[[], R],
        max_resources: int = 5,
        acquire_timeout: Optional[float] = None,
        on_change: Optional[Callable[[int], None]] = None,
    ) -> None:
        if max_resources < 1:
            raise ValueError("max_resources must be >= 1")
        self.factory = factory
        self.max_resources = max_resources
        self.acquire_timeout = acquire_timeout
        self._on_change = on_change
        self._lock = threading.Lock()
        self._drained = threading.Condition(self._lock)
        self._idle: List[R] = []
        self._waiters: Deque[_Waiter] = deque()
        self._states: Dict[int, ResourceState] = {}
        self._in_use = 0
        self._total = 0
        self._closed = False

    def acquire(self, timeout: Optional[float] = None) -> R:
        """
        Get a context for exclusive use.

        Raises:
            PoolTimeoutError: No context became available within ``timeout``
            PoolClosedError: The pool is shutting down
        """
        timeout = self.acquire_timeout if timeout is None else timeout
        resource = None
        with self._lock:
            if self._closed:
                raise PoolClosedError()
            if self._idle:
                resource = self._idle.pop()
                self._checkout(resource)
                in_use = self._in_use
            elif self._total < self.max_resources:
                self._total += 1
                waiter = None
            else:
                waiter = _Waiter()
                self._waiters.append(waiter)

        if resource is not None:
            self._notify(in_use)
            return resource
        if waiter is None:
            return self._create()

        granted = waiter.event.wait(timeout)
        with self._lock:
            if not granted and not waiter.event.is_set():
                self._waiters.remove(waiter)
                raise PoolTimeoutError(timeout if timeout is not None else 0.0)
            if waiter.closed:
                raise PoolClosedError()
            if waiter.resource is not None:
                return waiter.resource
        # A destroyed context freed a slot and it was reserved for this waiter
        return self._create()

    def release(self, resource: R) -> None:
        """
        Return a context to the pool.

        The context is reset first. A context that fails to reset is
        destroyed and its slot reused for a fresh one on demand. With callers
        waiting, the context goes straight to the longest-waiting one.
        Releasing a context that is not checked out is ignored.
        """
        with self._lock:
            if self._states.get(id(resource)) is not ResourceState.IN_USE:
                logger.warning("Ignoring release of a render context that is not checked out")
                return
            self._states[id(resource)] = ResourceState.RESETTING

        healthy = True
        try:
            resource.reset()
        except Exception as exc:
            healthy = False
            logger.warning(f"Failed to reset render context, destroying it: {exc}")

        with self._lock:
            self._in_use -= 1
            destroy = not healthy or self._closed
            if destroy:
                del self._states[id(resource)]
                self._total -= 1
                if not self._closed:
                    self._grant_slot_locked()
            elif self._waiters:
                waiter = self._waiters.popleft()
                self._checkout(resource)
                waiter.resource = resource
                waiter.event.set()
            else:
                self._states[id(resource)] = ResourceState.IDLE
                self._idle.append(resource)
            self._drained.notify_all()
            in_use = self._in_use

        if destroy:
            self._close(resource)
        self._notify(in_use)

    @contextmanager
    def lease(self, timeout: Optional[float] = None) -> Iterator[R]:
        resource = self.acquire(timeout)
        try:
            yield resource
        finally:
            self.release(resource)

    def destroy_all(self, grace: float = 0.0) -> int:
        """
        Shut the pool down.

        Idle contexts are closed immediately and waiting callers get
        PoolClosedError. Contexts still checked out are closed when their
        holder releases them; this call waits up to ``grace`` seconds for
        that and then abandons them.

        Returns:
            Number of checked-out contexts abandoned after the grace period
        """
        with self._lock:
            self._closed = True
            idle, self._idle = self._idle, []
            for resource in idle:
                self._states.pop(id(resource), None)
            self._total -= len(idle)
            while self._waiters:
                waiter = self._waiters.popleft()
                waiter.closed = True
                waiter.event.set()

        for resource in idle:
            self._close(resource)

        deadline = time.monotonic() + grace
        with self._lock:
            while self._in_use and (remaining := deadline - time.monotonic()) > 0:
                self._drained.wait(remaining)
            abandoned = self._in_use

        if abandoned:
            logger.warning(f"Abandoning {abandoned} render contexts still in use after {grace:.1f}s")
        logger.info(f"Render pool destroyed ({len(idle)} idle contexts closed)")
        return abandoned

    def state_of(self, resource: R) -> Optional[ResourceState]:
        """State of a context owned by the pool; None once it is destroyed."""
        with self._lock:
            return self._states.get(id(resource))

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "max": self.max_resources,
                "total": self._total,
                "idle": len(self._idle),
                "in_use": self._in_use,
                "waiting": len(self._waiters),
            }

    def _checkout(self, resource: R) -> None:
        self._states[id(resource)] = ResourceState.IN_USE
        self._in_use += 1

    def _create(self) -> R:
        """Create a context for a slot already counted in ``_total``."""
        try:
            resource = self.factory()
        except Exception:
            with self._lock:
                self._total -= 1
                self._grant_slot_locked()
            raise
        with self._lock:
            self._checkout(resource)
            in_use = self._in_use
        self._notify(in_use)
        return resource

    def _grant_slot_locked(self) -> None:
        if self._waiters and self._total < self.max_resources:
            waiter = self._waiters.popleft()
            self._total += 1
            waiter.may_create = True
            waiter.event.set()

    def _close(self, resource: R) -> None:
        try:
            resource.close()
        except Exception as exc:
            logger.warning(f"Error closing render context: {exc}")

    def _notify(self, in_use: int) -> None:
        if self._on_change is not None:
            self._on_change(in_use)
