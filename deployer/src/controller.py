from __future__ import annotations

import logging
import os
import random
import threading
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from deployer.src.metrics import METRICS
from deployer.src.reconciler import ManagedOCSReconciler
from deployer.src.resources import (
    MANAGED_OCS,
    SECRET,
    STORAGE_CLUSTER,
    DeployerConfig,
    Notification,
    ResourceKind,
    WorkItem,
)
from deployer.src.sync import LockStepReconciler
from deployer.src.triggers import ADDED, DELETED, admit, map_to_work_item
from deployer.src.workqueue import ReconcileWorker, WorkQueue

WATCHED_KINDS: tuple[ResourceKind, ...] = (MANAGED_OCS, SECRET, STORAGE_CLUSTER)


class StorageDeployerController:
    """Watches ManagedOCS, Secrets and StorageClusters and feeds one reconcile worker.

    Each watched kind gets its own list-then-watch thread.  Watch threads
    only run the admission filter and trigger mapper and enqueue; the
    single worker thread owns every reconciliation pass.

    Key internal state:
        ``_last_generation``
            Maps ``(namespace, name)`` of each ManagedOCS to the last
            ``metadata.generation`` seen, so MODIFIED events can be compared
            against it.  This is the only in-process memory and it is only
            used to drop notifications, never to decide cluster state.
        ``_initial_sync``
            Kinds whose initial listing has completed; ``ready`` is set once
            every watched kind is listed.

    With ``lock_step=True`` the engine is wrapped in a
    :class:`LockStepReconciler` and ``signal_and_wait`` steps it.
    """

    def __init__(
        self,
        store: Any,
        config: DeployerConfig,
        *,
        reconciler: Any = None,
        lock_step: bool = False,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.reconciler = reconciler or ManagedOCSReconciler(store=store, config=config)
        self.lock_step = LockStepReconciler(self.reconciler) if lock_step else None
        handler = self.lock_step.reconcile if self.lock_step else self.reconciler.reconcile

        self.queue = WorkQueue()
        self.worker = ReconcileWorker(self.queue, handler)
        self.ready = threading.Event()

        self._last_generation: dict[tuple[str, str], int] = {}
        self._generation_lock = threading.Lock()
        self._initial_sync: set[str] = set()
        self._sync_lock = threading.Lock()
        self._external_stop = threading.Event()
        self._active_watchers: dict[str, watch.Watch] = {}
        self._watcher_lock = threading.Lock()
        self._worker_thread: threading.Thread | None = None

    def worker_alive(self) -> bool:
        return self._worker_thread is not None and self._worker_thread.is_alive()

    def signal_and_wait(self, timeout: float | None = None) -> BaseException | None:
        if self.lock_step is None:
            raise RuntimeError("controller was not built with lock_step=True")
        return self.lock_step.signal_and_wait(timeout=timeout)

    def _previous_generation(
        self, kind: ResourceKind, event_type: str, obj: dict[str, Any]
    ) -> int | None:
        """Swap in the new generation for a ManagedOCS and return the old one."""
        if kind != MANAGED_OCS:
            return None
        metadata = obj.get("metadata") or {}
        key = (metadata.get("namespace") or "", metadata.get("name") or "")
        with self._generation_lock:
            previous = self._last_generation.get(key)
            generation = metadata.get("generation")
            if event_type == DELETED:
                self._last_generation.pop(key, None)
            elif isinstance(generation, int):
                self._last_generation[key] = generation
        return previous

    def handle_event(
        self, kind: ResourceKind, event_type: str, obj: dict[str, Any]
    ) -> WorkItem | None:
        """Run one watch event through admission and mapping; enqueue the result.

        Returns the work item that was produced, or ``None`` when the event
        was filtered out.
        """
        previous = self._previous_generation(kind, event_type, obj)
        notification = Notification.from_object(kind, event_type, obj, previous)
        if not notification.name:
            return None

        if not admit(notification, self.config):
            METRICS.notifications_suppressed_total.labels(kind=kind.kind).inc()
            self.logger.debug(
                "Suppressed %s %s %s/%s",
                event_type,
                kind.kind,
                notification.namespace,
                notification.name,
            )
            return None

        item = map_to_work_item(notification, self.config)
        if item is None:
            METRICS.notifications_suppressed_total.labels(kind=kind.kind).inc()
            return None

        METRICS.notifications_admitted_total.labels(kind=kind.kind).inc()
        if self.queue.add(item):
            self.logger.info(
                "Queued %s after %s %s %s/%s",
                item,
                event_type,
                kind.kind,
                notification.namespace,
                notification.name,
            )
        return item

    def _mark_synced(self, kind: ResourceKind) -> None:
        with self._sync_lock:
            self._initial_sync.add(kind.kind)
            if len(self._initial_sync) == len(WATCHED_KINDS):
                self.ready.set()
                self.logger.info("Initial listing complete for all watched kinds")

    def _list_and_enqueue(self, kind: ResourceKind) -> str | None:
        items, resource_version = self.store.list(kind, self.config.namespace)
        for obj in items:
            self.handle_event(kind, ADDED, obj)
        return resource_version

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt every open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            watchers = list(self._active_watchers.values())
        for active in watchers:
            active.stop()
        if self.lock_step is not None:
            self.lock_step.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _access_denied(self, kind: ResourceKind, stage: str, exc: ApiException) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            stage,
            kind.plural,
            exc.status,
        )
        self.ready.clear()

    def watch_kind(self, kind: ResourceKind, stop_event: threading.Event) -> None:
        """List-then-watch loop for one kind until *stop_event* is set.

        1. Retries the initial list with jittered exponential backoff.
        2. Enqueues work for every listed object, then watches from the
           list's ``resourceVersion``.
        3. On ``410 Gone`` re-lists (enqueueing again, which is harmless)
           and resumes.
        4. ``401`` / ``403`` end the loop and clear readiness.
        """
        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop_event):
            try:
                resource_version = self._list_and_enqueue(kind)
                self._mark_synced(kind)
                self.logger.info(
                    "Starting %s watch from resourceVersion %s", kind.plural, resource_version
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self._access_denied(kind, "initial list", exc)
                    return
                self.logger.exception("Initial %s list failed", kind.plural)
                METRICS.watch_errors_total.labels(kind=kind.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", kind.plural)
                METRICS.watch_errors_total.labels(kind=kind.kind).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop_event.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        backoff_seconds = 1
        watch_stream_count = 0
        while not self._should_stop(stop_event):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers[kind.kind] = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=kind.kind).inc()
                watch_stream_count += 1
                events = self.store.watch(
                    kind,
                    self.config.namespace,
                    resource_version,
                    self.watch_timeout_seconds,
                    watcher,
                )
                for event_type, obj in events:
                    if self._should_stop(stop_event):
                        break
                    new_version = (obj.get("metadata") or {}).get("resourceVersion")
                    if new_version:
                        resource_version = new_version
                    self.handle_event(kind, event_type, obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing", kind.plural
                    )
                    try:
                        resource_version = self._list_and_enqueue(kind)
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self._access_denied(kind, "410 re-list", relist_exc)
                            return
                        self.logger.exception("Failed to re-list %s after 410", kind.plural)
                        METRICS.watch_errors_total.labels(kind=kind.kind).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    METRICS.watch_errors_total.labels(kind=kind.kind).inc()
                    self._access_denied(kind, "watch", exc)
                    return

                self.logger.exception("Kubernetes API %s watch error", kind.plural)
                METRICS.watch_errors_total.labels(kind=kind.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s watch error", kind.plural)
                METRICS.watch_errors_total.labels(kind=kind.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop_event.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watchers.get(kind.kind) is watcher:
                        self._active_watchers.pop(kind.kind, None)

    def run_forever(
        self,
        shutdown_event: threading.Event | None = None,
        shutdown_timeout_seconds: float = 45,
    ) -> None:
        """Start the worker and one watch thread per kind, then block until shutdown.

        On shutdown the watch streams are interrupted, the worker finishes
        its in-flight pass and queued work is dropped.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        if self.queue.shutting_down:
            self.queue = WorkQueue()
            self.worker.queue = self.queue
        if self.lock_step is not None:
            self.lock_step.resume()
        with self._sync_lock:
            self._initial_sync.clear()
        worker_stop = threading.Event()

        self._worker_thread = threading.Thread(
            target=self.worker.run, args=(worker_stop,), name="reconcile-worker", daemon=True
        )
        self._worker_thread.start()

        watch_threads = [
            threading.Thread(
                target=self.watch_kind,
                args=(kind, stop),
                name=f"watch-{kind.plural}",
                daemon=True,
            )
            for kind in WATCHED_KINDS
        ]
        for thread in watch_threads:
            thread.start()

        while not self._should_stop(stop):
            stop.wait(timeout=1.0)

        self.request_stop()
        worker_stop.set()
        for thread in watch_threads:
            thread.join(timeout=shutdown_timeout_seconds)
        self._worker_thread.join(timeout=shutdown_timeout_seconds)
        if self._worker_thread.is_alive():
            self.logger.error(
                "Reconcile worker did not finish its in-flight pass for %s within %ss",
                self.worker.in_flight,
                shutdown_timeout_seconds,
            )
        self.ready.clear()


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _env_name(name: str, default: str) -> str:
    value = os.getenv(name, default)
    if not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def build_config_from_env() -> DeployerConfig:
    """Construct a :class:`DeployerConfig` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``: namespace holding all three objects (``openshift-storage``).
        ``MANAGED_RESOURCE_NAME``: the ManagedOCS that is reconciled (``managedocs``).
        ``ADDON_PARAMS_SECRET_NAME``: Secret carrying the size
          (``addon-ocs-converged-parameters``).
        ``STORAGE_CLUSTER_NAME``: dependent StorageCluster (``ocs-storagecluster``).
        ``SIZE_KEY``: Secret key holding the size (``size``).
        ``STORAGE_CLASS_NAME``: storage class for device sets (``gp2``).
        ``DEVICE_SET_CAPACITY``: per-device storage request (``1Ti``).
    """
    return DeployerConfig(
        namespace=_env_name("WATCH_NAMESPACE", "openshift-storage"),
        managed_resource_name=_env_name("MANAGED_RESOURCE_NAME", "managedocs"),
        secret_name=_env_name("ADDON_PARAMS_SECRET_NAME", "addon-ocs-converged-parameters"),
        storage_cluster_name=_env_name("STORAGE_CLUSTER_NAME", "ocs-storagecluster"),
        size_key=_env_name("SIZE_KEY", "size"),
        storage_class_name=_env_name("STORAGE_CLASS_NAME", "gp2"),
        device_set_capacity=_env_name("DEVICE_SET_CAPACITY", "1Ti"),
    )


def build_controller_from_env(store: Any) -> StorageDeployerController:
    return StorageDeployerController(
        store=store,
        config=build_config_from_env(),
        watch_timeout_seconds=env_int("WATCH_TIMEOUT_SECONDS", 30, minimum=1),
    )
