"""
Task Queue - Bounded-concurrency scheduler for external adapter calls.

Every external call made on behalf of a node goes through one TaskQueue
instance, which:
- Starts at most `limit` items at a time
- Admits waiting items in submission order (priority, then FIFO)
- Cancels queued items without ever running them
- Frees the slot of a cancelled running item immediately; whatever the
  abandoned call eventually returns is discarded

The queue is an owned object passed to the engine, not module state.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable
from uuid import uuid4

from canvas_studio.core.errors import Cancelled

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5


class TaskStatus(Enum):
    """Status of a queue item."""
    QUEUED = auto()
    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()
    CANCELLED = auto()

    @property
    def is_settled(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class AbortSignal:
    """
    Cooperative abort flag handed to every running item.

    Adapters poll `aborted` (or call raise_if_aborted) between steps and
    may await `wait()` alongside their own I/O.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise Cancelled("Aborted")


TaskFunction = Callable[[AbortSignal], Awaitable[Any]]


@dataclass
class TaskHandle:
    """
    Handle for one submitted item.

    Await `wait()` for the result; it raises Cancelled if the item was
    cancelled and re-raises the item's own exception if it failed.
    """
    id: str
    label: str
    owner: str | None
    priority: int
    status: TaskStatus = TaskStatus.QUEUED
    result: Any = None
    error: BaseException | None = None
    signal: AbortSignal = field(default_factory=AbortSignal)

    _run: TaskFunction | None = field(default=None, repr=False)
    _task: asyncio.Task | None = field(default=None, repr=False)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    async def wait(self) -> Any:
        await self._done.wait()
        if self.status == TaskStatus.CANCELLED:
            raise Cancelled(f"Task {self.label or self.id} cancelled")
        if self.error is not None:
            raise self.error
        return self.result

    def _settle(
        self,
        status: TaskStatus,
        result: Any = None,
        error: BaseException | None = None,
    ) -> bool:
        if self.status.is_settled:
            return False
        self.status = status
        self.result = result
        self.error = error
        self._run = None
        self._done.set()
        return True


class TaskQueue:
    """
    Concurrency-limited FIFO task queue.

    Must be used from a single event loop; submit() schedules work on the
    running loop.
    """

    def __init__(self, limit: int = DEFAULT_CONCURRENCY):
        if limit < 1:
            raise ValueError(f"Concurrency limit must be >= 1, got {limit}")
        self._limit = limit
        self._waiting: list[tuple[int, int, TaskHandle]] = []
        self._running: dict[str, TaskHandle] = {}
        self._handles: dict[str, TaskHandle] = {}
        self._seq = itertools.count()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def limit(self) -> int:
        return self._limit

    @limit.setter
    def limit(self, value: int) -> None:
        if value < 1:
            raise ValueError(f"Concurrency limit must be >= 1, got {value}")
        self._limit = value
        self._pump()

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def queued_count(self) -> int:
        return len(self._waiting)

    def submit(
        self,
        run: TaskFunction,
        label: str = "",
        owner: str | None = None,
        priority: int = 0,
    ) -> TaskHandle:
        """
        Submit an item.

        Args:
            run: Coroutine function called with the item's AbortSignal
            label: Human-readable label for logs and status
            owner: Id of the node the item belongs to (for cancel_owner)
            priority: Higher runs first; equal priorities keep FIFO order

        Returns:
            Handle for tracking, awaiting and cancelling the item
        """
        handle = TaskHandle(id=uuid4().hex, label=label, owner=owner, priority=priority)
        handle._run = run
        self._handles[handle.id] = handle
        heapq.heappush(self._waiting, (-priority, next(self._seq), handle))
        self._idle.clear()
        logger.debug("Queued task %s (%s)", handle.id[:8], label)
        self._pump()
        return handle

    def get(self, task_id: str) -> TaskHandle | None:
        return self._handles.get(task_id)

    def cancel(self, task_id: str) -> bool:
        """
        Cancel an item.

        A queued item is removed and never runs. A running item is signalled
        to abort, marked cancelled and its slot is released at once.

        Returns:
            True if the item was cancelled, False if unknown or already settled
        """
        handle = self._handles.get(task_id)
        if handle is None or handle.status.is_settled:
            return False

        if handle.status == TaskStatus.QUEUED:
            self._waiting = [entry for entry in self._waiting if entry[2] is not handle]
            heapq.heapify(self._waiting)
            handle._settle(TaskStatus.CANCELLED)
            logger.debug("Cancelled queued task %s", handle.id[:8])
        else:
            handle.signal.abort()
            handle._settle(TaskStatus.CANCELLED)
            self._running.pop(handle.id, None)
            if handle._task is not None:
                handle._task.cancel()
            logger.debug("Cancelled running task %s", handle.id[:8])

        self._forget(handle)
        self._pump()
        return True

    def cancel_owner(self, owner: str) -> int:
        """Cancel every unsettled item belonging to an owner."""
        ids = [h.id for h in self._handles.values() if h.owner == owner]
        return sum(1 for task_id in ids if self.cancel(task_id))

    def cancel_all(self) -> int:
        """Cancel every queued and running item."""
        return sum(1 for task_id in list(self._handles) if self.cancel(task_id))

    def queue_position(self, task_id: str) -> int | None:
        """0-based admission position of a queued item, None if not queued."""
        for position, (_, _, handle) in enumerate(sorted(self._waiting)):
            if handle.id == task_id:
                return position
        return None

    def get_queue_status(self) -> list[dict]:
        """Status of all running and queued items, running first."""
        running = [
            {"id": h.id, "label": h.label, "owner": h.owner, "status": h.status.name}
            for h in self._running.values()
        ]
        queued = [
            {"id": h.id, "label": h.label, "owner": h.owner, "status": h.status.name}
            for _, _, h in sorted(self._waiting)
        ]
        return running + queued

    async def join(self) -> None:
        """Wait until nothing is queued or running."""
        await self._idle.wait()

    def _pump(self) -> None:
        while self._waiting and len(self._running) < self._limit:
            _, _, handle = heapq.heappop(self._waiting)
            handle.status = TaskStatus.RUNNING
            self._running[handle.id] = handle
            handle._task = asyncio.create_task(
                self._execute(handle), name=f"task-{handle.id[:8]}"
            )
            logger.debug(
                "Started task %s (%s), %d running",
                handle.id[:8], handle.label, len(self._running),
            )
        if not self._waiting and not self._running:
            self._idle.set()

    async def _execute(self, handle: TaskHandle) -> None:
        run = handle._run
        try:
            result = await run(handle.signal)
        except asyncio.CancelledError:
            # Only cancel() cancels item tasks; it has already settled the handle.
            handle._settle(TaskStatus.CANCELLED)
        except Cancelled:
            handle._settle(TaskStatus.CANCELLED)
        except Exception as e:
            if handle._settle(TaskStatus.FAILED, error=e):
                logger.debug("Task %s failed: %s", handle.id[:8], e)
        else:
            if not handle._settle(TaskStatus.COMPLETED, result=result):
                logger.debug("Discarding late result of task %s", handle.id[:8])
        finally:
            if self._running.pop(handle.id, None) is not None:
                self._forget(handle)
                self._pump()

    def _forget(self, handle: TaskHandle) -> None:
        self._handles.pop(handle.id, None)
