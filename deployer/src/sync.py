from __future__ import annotations

import logging
import threading
from typing import Any

from deployer.src.resources import WorkItem


class LockStepReconciler:
    """Turns the event-driven worker into something a caller can step.

    ``reconcile`` is installed as the worker's handler.  When the worker
    hands it an item, it parks until ``signal_and_wait`` issues a ticket,
    runs the wrapped reconciler once, records the outcome against that
    ticket and wakes the caller.  The wrapper has no queue of its own: it
    only holds back the single execution slot, so organic triggers and
    manual steps stay in one FIFO order.

    Handshake state, guarded by ``_cond``:
        ``_requested``
            Tickets issued by ``signal_and_wait``.
        ``_accepted``
            Tickets taken by a pass that has started.
        ``_completed``
            Maps finished tickets to the pass error (or ``None``) until the
            owning caller collects it.
    """

    def __init__(self, reconciler: Any, logger: logging.Logger | None = None) -> None:
        self.reconciler = reconciler
        self.logger = logger or logging.getLogger(__name__)
        self._cond = threading.Condition()
        self._caller_lock = threading.Lock()
        self._requested = 0
        self._accepted = 0
        self._completed: dict[int, BaseException | None] = {}
        self._stopped = False

    def stop(self) -> None:
        """Release a handler parked on the rendezvous so the worker can exit."""
        with self._cond:
            self._stopped = True
            self._cond.notify_all()

    def resume(self) -> None:
        """Accept signals again after ``stop``; withdrawn requests stay withdrawn."""
        with self._cond:
            self._stopped = False
            self._requested = self._accepted

    def reconcile(self, item: WorkItem) -> Any:
        with self._cond:
            self.logger.debug("Pass for %s waiting for a run-now signal", item)
            self._cond.wait_for(lambda: self._stopped or self._requested > self._accepted)
            if self._requested <= self._accepted:
                self.logger.info("Lock-step wrapper stopped; skipping pass for %s", item)
                return None
            self._accepted += 1
            ticket = self._accepted
            self._cond.notify_all()

        error: BaseException | None = None
        try:
            self.logger.debug("Running signalled pass %d for %s", ticket, item)
            return self.reconciler.reconcile(item)
        except Exception as exc:
            error = exc
            raise
        finally:
            with self._cond:
                self._completed[ticket] = error
                self._cond.notify_all()

    def signal_and_wait(self, timeout: float | None = None) -> BaseException | None:
        """Request one pass and block until it has run to completion.

        Returns the error raised by that pass, or ``None`` on success.
        *timeout* bounds only the wait for a pass to accept the signal; once
        accepted, the call waits for the pass to finish.  On timeout the
        request is withdrawn and ``TimeoutError`` is raised.
        """
        with self._caller_lock:
            with self._cond:
                if self._stopped:
                    raise RuntimeError("lock-step reconciler is stopped")
                self._requested += 1
                ticket = self._requested
                self._cond.notify_all()

                accepted = self._cond.wait_for(
                    lambda: self._accepted >= ticket or self._stopped, timeout=timeout
                )
                if self._accepted < ticket:
                    self._requested -= 1
                    if not accepted:
                        raise TimeoutError(
                            f"no reconcile pass accepted the signal within {timeout}s"
                        )
                    raise RuntimeError("lock-step reconciler stopped before the pass started")

                self._cond.wait_for(lambda: ticket in self._completed)
                return self._completed.pop(ticket)
