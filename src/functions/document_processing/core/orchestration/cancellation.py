"""Stop signal and teardown registry shared by both schedulers."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set, TypeVar

from ..contracts.errors import RunCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionHandle:
    """Bookkeeping for one in-flight item run.

    Owns the run's tasks and timers; ``close()`` tears all of them down. The
    ``done`` future is settled by whichever terminal signal arrives first.
    """

    def __init__(self, item_id: str, controller: "CancellationController") -> None:
        self.item_id = item_id
        self._controller = controller
        self._loop = asyncio.get_running_loop()
        self.done: asyncio.Future = self._loop.create_future()
        self.tasks: Set[asyncio.Task] = set()
        self.timers: Set[asyncio.TimerHandle] = set()
        self.last_status: Optional[str] = None
        self.publish_probe_scheduled = False
        self.marked_processing = False
        self.closed = False
        self.stopped = False

    def spawn(self, coro: Awaitable[T]) -> "asyncio.Task[T]":
        task = asyncio.ensure_future(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        timer = self._controller.call_later(delay, callback)
        self.timers.add(timer)
        return timer

    def settle(self, value: object) -> bool:
        """Resolve the run with *value* unless it is already settled."""

        if self.done.done():
            return False
        self.done.set_result(value)
        return True

    def fail(self, exc: BaseException) -> bool:
        if self.done.done():
            return False
        self.done.set_exception(exc)
        return True

    def close(self, *, stopped: bool = False) -> None:
        if self.closed:
            return
        self.closed = True
        self.stopped = stopped
        for timer in self.timers:
            timer.cancel()
            self._controller.forget_timer(timer)
        self.timers.clear()
        current = asyncio.current_task() if self._loop.is_running() else None
        for task in list(self.tasks):
            if task is not current:
                task.cancel()
        if not self.done.done():
            self.done.set_exception(RunCancelled(self.item_id))
            # Nobody may be awaiting the future any more
            self.done.exception()


class CancellationController:
    """Process-wide stop switch owned by the orchestrator.

    Holds the connection table (the authoritative "is this item running"
    guard), outstanding one-shot request tasks, scheduled timers and the
    schedulers' stop hooks. The stop flag clears itself ``reset_delay_seconds``
    after ``stop()`` so a later sweep can start cleanly.
    """

    def __init__(self, reset_delay_seconds: float = 1.0) -> None:
        self.reset_delay_seconds = reset_delay_seconds
        self.connections: Dict[str, ConnectionHandle] = {}
        self._requests: Set[asyncio.Task] = set()
        self._aborted: Set[asyncio.Task] = set()
        self._timers: Set[asyncio.TimerHandle] = set()
        self._stop_hooks: List[Callable[[], None]] = []
        self._stopped_at: Optional[float] = None
        self.stop_count = 0

    @property
    def cancelled(self) -> bool:
        if self._stopped_at is None:
            return False
        if time.monotonic() - self._stopped_at >= self.reset_delay_seconds:
            self._stopped_at = None
            logger.debug("Cancellation flag reset")
            return False
        return True

    def open_connection(self, item_id: str) -> Optional[ConnectionHandle]:
        """Register a run for *item_id*, or return None if one is already live."""

        if item_id in self.connections:
            return None
        handle = ConnectionHandle(item_id, self)
        self.connections[item_id] = handle
        return handle

    def release(self, handle: ConnectionHandle) -> None:
        if self.connections.get(handle.item_id) is handle:
            del self.connections[handle.item_id]

    def is_running(self, item_id: str) -> bool:
        return item_id in self.connections

    async def track(self, awaitable: Awaitable[T]) -> T:
        """Await a one-shot request so that ``stop()`` can abort it.

        Raises RunCancelled when the request was aborted by a stop.
        """

        task = asyncio.ensure_future(awaitable)
        self._requests.add(task)
        try:
            return await task
        except asyncio.CancelledError:
            if task in self._aborted:
                raise RunCancelled(message="Request aborted by stop") from None
            raise
        finally:
            self._requests.discard(task)
            self._aborted.discard(task)

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        timer: Optional[asyncio.TimerHandle] = None

        def _fire() -> None:
            self._timers.discard(timer)
            callback()

        timer = loop.call_later(delay, _fire)
        self._timers.add(timer)
        return timer

    def forget_timer(self, timer: asyncio.TimerHandle) -> None:
        self._timers.discard(timer)

    def add_stop_hook(self, hook: Callable[[], None]) -> None:
        """Register a callback run on every ``stop()``, e.g. to zero an active count."""

        self._stop_hooks.append(hook)

    @property
    def outstanding_requests(self) -> int:
        return len(self._requests)

    @property
    def scheduled_timers(self) -> int:
        return len(self._timers)

    def stop(self) -> None:
        """Tear down every live run; safe to call when nothing is active.

        In-flight remote work is not told to stop; only the local observation
        of it ends.
        """

        self._stopped_at = time.monotonic()
        self.stop_count += 1
        connections = list(self.connections.values())
        self.connections.clear()
        for handle in connections:
            handle.close(stopped=True)
        for task in list(self._requests):
            if not task.done():
                self._aborted.add(task)
                task.cancel()
        for timer in list(self._timers):
            timer.cancel()
        self._timers.clear()
        for hook in list(self._stop_hooks):
            try:
                hook()
            except Exception:
                logger.exception("Stop hook %r failed", hook)
        logger.info(
            "Stop requested: closed %d connection(s), aborted %d request(s)",
            len(connections),
            len(self._aborted),
        )
