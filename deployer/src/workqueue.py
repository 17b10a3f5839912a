from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from deployer.src.metrics import METRICS
from deployer.src.resources import WorkItem


class WorkQueue:
    """Thread-safe FIFO of work items waiting for the execution slot.

    An item that is already waiting is not queued a second time; it keeps
    its original position.  The engine re-reads everything on each pass,
    so one pending pass per identity is enough.

    ``add_after`` parks an item in a due-time heap; ``get`` promotes due
    items into the FIFO before handing one out.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._items: deque[WorkItem] = deque()
        self._queued: set[WorkItem] = set()
        self._delayed: list[tuple[float, int, WorkItem]] = []
        self._sequence = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _push(self, item: WorkItem) -> bool:
        if item in self._queued:
            return False
        self._items.append(item)
        self._queued.add(item)
        METRICS.queue_depth.set(len(self._items))
        self._cond.notify()
        return True

    def add(self, item: WorkItem) -> bool:
        """Enqueue *item*; returns False if it was already waiting or the queue is shut down."""
        with self._cond:
            if self._shutting_down:
                return False
            return self._push(item)

    def add_after(self, item: WorkItem, delay_seconds: float) -> None:
        if delay_seconds <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay_seconds
            heapq.heappush(self._delayed, (due_at, next(self._sequence), item))
            self._cond.notify()

    def _promote_due(self) -> float | None:
        """Move due delayed items into the FIFO; return seconds until the next one."""
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, item = heapq.heappop(self._delayed)
            self._push(item)
        if not self._delayed:
            return None
        return max(0.0, self._delayed[0][0] - now)

    def get(self, timeout: float | None = None) -> WorkItem | None:
        """Block until an item is available; ``None`` on timeout or shutdown."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                next_due = self._promote_due()
                if self._items:
                    item = self._items.popleft()
                    self._queued.discard(item)
                    METRICS.queue_depth.set(len(self._items))
                    return item

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def shut_down(self) -> int:
        """Stop accepting work and drop everything still waiting.  Returns the drop count."""
        with self._cond:
            dropped = len(self._items) + len(self._delayed)
            self._shutting_down = True
            self._items.clear()
            self._queued.clear()
            self._delayed.clear()
            METRICS.queue_depth.set(0)
            self._cond.notify_all()
        if dropped:
            METRICS.dropped_work_items_total.inc(dropped)
        return dropped


class ReconcileWorker:
    """Runs reconciliation passes one at a time for the whole process.

    ``_slot`` is a semaphore of capacity one: every caller of
    ``process_next`` (the background thread, or a test driving passes by
    hand) must hold it while the handler runs, so two passes never overlap.

    A handler exception is logged and the item is re-enqueued after a
    bounded exponential backoff (1 s doubling to ``max_backoff_seconds``).
    A successful pass resets the item's attempt counter.
    """

    def __init__(
        self,
        queue: WorkQueue,
        handler: Callable[[WorkItem], Any],
        *,
        max_backoff_seconds: float = 30.0,
        poll_interval_seconds: float = 1.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.handler = handler
        self.max_backoff_seconds = max_backoff_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._slot = threading.BoundedSemaphore(1)
        self._attempts: dict[WorkItem, int] = {}
        self._in_flight: WorkItem | None = None

    @property
    def in_flight(self) -> WorkItem | None:
        return self._in_flight

    def _backoff_seconds(self, attempt: int) -> float:
        return min(self.max_backoff_seconds, float(2 ** (attempt - 1)))

    def _schedule_retry(self, item: WorkItem) -> None:
        attempt = self._attempts.get(item, 0) + 1
        self._attempts[item] = attempt
        delay_seconds = self._backoff_seconds(attempt)
        METRICS.retry_total.inc()
        self.logger.warning(
            "Reconcile of %s failed; scheduling retry attempt %d in %.1fs",
            item,
            attempt,
            delay_seconds,
        )
        self.queue.add_after(item, delay_seconds)

    def run_one(self, item: WorkItem) -> Any:
        """Run *item* inside the execution slot and apply the retry policy."""
        with self._slot:
            self._in_flight = item
            try:
                result = self.handler(item)
            except Exception:
                METRICS.reconcile_errors_total.inc()
                METRICS.reconcile_total.labels(outcome="error").inc()
                self.logger.exception("Reconcile of %s failed", item)
                self._schedule_retry(item)
                return None
            finally:
                self._in_flight = None

        self._attempts.pop(item, None)
        outcome = getattr(result, "outcome", None)
        if outcome is not None:
            METRICS.reconcile_total.labels(outcome=str(getattr(outcome, "value", outcome))).inc()
        return result

    def process_next(self, timeout: float | None = None) -> bool:
        """Take one item off the queue and run it.  Returns False if none arrived."""
        item = self.queue.get(timeout=timeout)
        if item is None:
            return False
        self.run_one(item)
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Consume work until *stop_event* is set.

        The in-flight pass always completes; whatever is still queued is
        dropped once the loop exits.
        """
        self.logger.info("Reconcile worker started")
        while not stop_event.is_set():
            self.process_next(timeout=self.poll_interval_seconds)
        dropped = self.queue.shut_down()
        if dropped:
            self.logger.warning("Dropped %d queued work item(s) on shutdown", dropped)
        self.logger.info("Reconcile worker stopped")
