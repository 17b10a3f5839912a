from __future__ import annotations

import threading
import time
from types import SimpleNamespace
from typing import Any

from deployer.src.resources import WorkItem
from deployer.src.workqueue import ReconcileWorker, WorkQueue

A = WorkItem("managedocs", "primary")
B = WorkItem("managedocs", "secondary")


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# WorkQueue
# ---------------------------------------------------------------------------


def test_queue_is_fifo() -> None:
    queue = WorkQueue()
    queue.add(A)
    queue.add(B)

    assert queue.get(timeout=0) == A
    assert queue.get(timeout=0) == B
    assert queue.get(timeout=0) is None


def test_queue_does_not_duplicate_waiting_items() -> None:
    queue = WorkQueue()

    assert queue.add(A) is True
    assert queue.add(B) is True
    assert queue.add(A) is False

    assert len(queue) == 2
    assert queue.get(timeout=0) == A
    assert queue.get(timeout=0) == B


def test_item_can_be_requeued_once_taken() -> None:
    queue = WorkQueue()
    queue.add(A)
    queue.get(timeout=0)

    assert queue.add(A) is True


def test_add_after_waits_until_due() -> None:
    clock = FakeClock()
    queue = WorkQueue(clock=clock)

    queue.add_after(A, 5)
    assert queue.get(timeout=0) is None

    clock.now += 5
    assert queue.get(timeout=0) == A


def test_shut_down_drops_waiting_and_delayed_items() -> None:
    queue = WorkQueue()
    queue.add(A)
    queue.add_after(B, 60)

    dropped = queue.shut_down()

    assert dropped == 2
    assert queue.shutting_down
    assert queue.get(timeout=0) is None
    assert queue.add(A) is False


def test_shut_down_wakes_blocked_getter() -> None:
    queue = WorkQueue()
    results: list[Any] = []
    getter = threading.Thread(target=lambda: results.append(queue.get()))
    getter.start()

    time.sleep(0.05)
    queue.shut_down()
    getter.join(timeout=2)

    assert not getter.is_alive()
    assert results == [None]


# ---------------------------------------------------------------------------
# ReconcileWorker
# ---------------------------------------------------------------------------


def test_worker_runs_handler_and_returns_result() -> None:
    queue = WorkQueue()
    seen: list[WorkItem] = []

    def handler(item: WorkItem) -> SimpleNamespace:
        seen.append(item)
        return SimpleNamespace(outcome="unchanged")

    worker = ReconcileWorker(queue, handler)
    queue.add(A)

    assert worker.process_next(timeout=0) is True
    assert seen == [A]
    assert worker.process_next(timeout=0) is False


def test_worker_requeues_failed_item_with_backoff() -> None:
    clock = FakeClock()
    queue = WorkQueue(clock=clock)
    calls: list[WorkItem] = []

    def handler(item: WorkItem) -> None:
        calls.append(item)
        raise RuntimeError("boom")

    worker = ReconcileWorker(queue, handler)
    queue.add(A)

    worker.process_next(timeout=0)
    assert queue.get(timeout=0) is None

    clock.now += 1
    worker.process_next(timeout=0)
    assert calls == [A, A]

    clock.now += 1
    assert queue.get(timeout=0) is None
    clock.now += 1
    assert queue.get(timeout=0) == A


def test_worker_backoff_is_capped() -> None:
    worker = ReconcileWorker(WorkQueue(), lambda item: None, max_backoff_seconds=30)

    assert worker._backoff_seconds(1) == 1
    assert worker._backoff_seconds(3) == 4
    assert worker._backoff_seconds(10) == 30


def test_worker_success_resets_attempts() -> None:
    clock = FakeClock()
    queue = WorkQueue(clock=clock)
    failures = {"remaining": 1}

    def handler(item: WorkItem) -> None:
        if failures["remaining"]:
            failures["remaining"] -= 1
            raise RuntimeError("boom")

    worker = ReconcileWorker(queue, handler)
    queue.add(A)
    worker.process_next(timeout=0)
    assert worker._attempts == {A: 1}

    clock.now += 1
    worker.process_next(timeout=0)
    assert worker._attempts == {}


def test_concurrent_callers_never_overlap_passes() -> None:
    queue = WorkQueue()
    active = 0
    max_active = 0
    lock = threading.Lock()

    def handler(item: WorkItem) -> None:
        nonlocal active, max_active
        with lock:
            active += 1
            max_active = max(max_active, active)
        time.sleep(0.01)
        with lock:
            active -= 1

    worker = ReconcileWorker(queue, handler)
    items = [WorkItem(f"m{i}", "primary") for i in range(8)]
    for item in items:
        queue.add(item)

    threads = [
        threading.Thread(target=worker.process_next, kwargs={"timeout": 1}) for _ in items
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert max_active == 1


def test_run_finishes_in_flight_pass_then_drops_queue() -> None:
    queue = WorkQueue()
    stop = threading.Event()
    started = threading.Event()
    release = threading.Event()
    finished: list[WorkItem] = []

    def handler(item: WorkItem) -> None:
        started.set()
        release.wait(timeout=5)
        finished.append(item)

    worker = ReconcileWorker(queue, handler, poll_interval_seconds=0.05)
    queue.add(A)
    queue.add(B)
    thread = threading.Thread(target=worker.run, args=(stop,))
    thread.start()

    assert started.wait(timeout=2)
    stop.set()
    release.set()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert finished == [A]
    assert queue.get(timeout=0) is None


def test_worker_reports_in_flight_item_only_during_a_pass() -> None:
    queue = WorkQueue()
    observed: list[WorkItem | None] = []
    worker: ReconcileWorker

    def handler(item: WorkItem) -> None:
        observed.append(worker.in_flight)

    worker = ReconcileWorker(queue, handler)
    queue.add(A)
    worker.process_next(timeout=0)

    assert observed == [A]
    assert worker.in_flight is None
