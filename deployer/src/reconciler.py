from __future__ import annotations

import copy
import enum
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from deployer.src.kube import is_conflict
from deployer.src.metrics import METRICS
from deployer.src.resources import (
    CONFIGURATION_READY,
    MANAGED_OCS,
    REASON_AWAITING_CONFIGURATION,
    REASON_CONFIGURED,
    SECRET,
    STORAGE_CLUSTER,
    ComponentState,
    DeployerConfig,
    ReconcileStrategy,
    WorkItem,
    component_state_for_phase,
    controller_owner,
    desired_storage_cluster_spec,
    parse_owner_references,
    parse_size,
    resolve_strategy,
    secret_value,
    set_condition,
    set_owner,
    utc_now_rfc3339,
)

STATUS_CONFLICT_ATTEMPTS = 5


class InvariantViolation(RuntimeError):
    """The cluster is in a shape the engine must not paper over."""


class Outcome(str, enum.Enum):
    NOT_FOUND = "not_found"
    AWAITING_CONFIGURATION = "awaiting_configuration"
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of one reconciliation pass."""

    work_item: WorkItem
    outcome: Outcome
    status_updated: bool = False


class ManagedOCSReconciler:
    """Converges the StorageCluster owned by a ManagedOCS.

    A pass reads the ManagedOCS, the add-on parameters Secret and the
    StorageCluster fresh from the store, decides the desired StorageCluster
    spec, applies the smallest write needed, then mirrors what it observed
    into ``ManagedOCS.status``.

    Strategy handling:
        ``strict``
            A StorageCluster whose spec drifted from the desired spec is
            overwritten.  The resulting update re-enters the loop through the
            owned-resource watch and settles as ``unchanged``.
        ``none``
            An existing StorageCluster is never written; only creation of a
            missing one happens.

    An absent or unparsable ``size`` is a steady state, reported through
    the ``ConfigurationReady`` condition and never raised.  Store errors
    propagate to the caller.
    """

    def __init__(
        self,
        store: Any,
        config: DeployerConfig,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.store = store
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def reconcile(self, item: WorkItem) -> ReconcileResult:
        started = time.monotonic()
        try:
            return self._reconcile(item)
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

    def _reconcile(self, item: WorkItem) -> ReconcileResult:
        managed = self.store.get(MANAGED_OCS, item.name, item.namespace)
        if managed is None:
            self.logger.info("ManagedOCS %s not found; nothing to reconcile", item)
            return ReconcileResult(work_item=item, outcome=Outcome.NOT_FOUND)

        size = self._load_size(item.namespace)
        if size is None:
            self.logger.info(
                "Secret %s/%s missing or has no valid %r; awaiting configuration",
                item.namespace,
                self.config.secret_name,
                self.config.size_key,
            )
            status_updated = self._write_status(item, managed, configured=False)
            return ReconcileResult(
                work_item=item,
                outcome=Outcome.AWAITING_CONFIGURATION,
                status_updated=status_updated,
            )

        outcome = self._converge_storage_cluster(item, managed, size)
        status_updated = self._write_status(item, managed, configured=True)
        return ReconcileResult(work_item=item, outcome=outcome, status_updated=status_updated)

    def _load_size(self, namespace: str) -> int | None:
        secret = self.store.get(SECRET, self.config.secret_name, namespace)
        return parse_size(secret_value(secret, self.config.size_key))

    def _check_ownership(self, storage_cluster: dict[str, Any], managed: dict[str, Any]) -> None:
        metadata = storage_cluster.get("metadata") or {}
        owner = controller_owner(parse_owner_references(metadata))
        if owner is None:
            return
        managed_uid = (managed.get("metadata") or {}).get("uid")
        if owner.kind != MANAGED_OCS.kind or owner.uid != managed_uid:
            raise InvariantViolation(
                f"StorageCluster {metadata.get('namespace')}/{metadata.get('name')} is "
                f"controlled by {owner.kind} {owner.name} (uid={owner.uid}), "
                f"not by ManagedOCS uid={managed_uid}"
            )

    def _converge_storage_cluster(
        self, item: WorkItem, managed: dict[str, Any], size: int
    ) -> Outcome:
        desired_spec = desired_storage_cluster_spec(size, self.config)
        name = self.config.storage_cluster_name
        current = self.store.get(STORAGE_CLUSTER, name, item.namespace)

        if current is None:
            body: dict[str, Any] = {
                "apiVersion": STORAGE_CLUSTER.api_version,
                "kind": STORAGE_CLUSTER.kind,
                "metadata": {"name": name, "namespace": item.namespace},
                "spec": desired_spec,
            }
            set_owner(body, managed, MANAGED_OCS)
            self.store.create(STORAGE_CLUSTER, body)
            self.logger.info(
                "Created StorageCluster %s/%s with %d device set(s)", item.namespace, name, size
            )
            return Outcome.CREATED

        self._check_ownership(current, managed)

        strategy = resolve_strategy(managed)
        if strategy is ReconcileStrategy.NONE:
            return Outcome.UNCHANGED

        if current.get("spec") == desired_spec:
            return Outcome.UNCHANGED

        updated = copy.deepcopy(current)
        updated["spec"] = desired_spec
        self.store.update(STORAGE_CLUSTER, updated)
        self.logger.warning(
            "StorageCluster %s/%s drifted from the managed spec; reverted (strategy=strict)",
            item.namespace,
            name,
        )
        return Outcome.UPDATED

    def _desired_status(
        self, item: WorkItem, managed: dict[str, Any], configured: bool
    ) -> dict[str, Any]:
        status = copy.deepcopy(managed.get("status") or {})
        status["reconcileStrategy"] = resolve_strategy(managed).value

        if configured:
            condition = ("True", REASON_CONFIGURED, "Add-on parameters are valid")
            storage_cluster = self.store.get(
                STORAGE_CLUSTER, self.config.storage_cluster_name, item.namespace
            )
            phase = ((storage_cluster or {}).get("status") or {}).get("phase")
            state = component_state_for_phase(phase)
            components = status.setdefault("components", {})
            components["storageCluster"] = {"state": state.value}
        else:
            condition = (
                "False",
                REASON_AWAITING_CONFIGURATION,
                f"Waiting for secret {self.config.secret_name} with a positive "
                f"integer {self.config.size_key!r}",
            )
            components = status.setdefault("components", {})
            components.setdefault("storageCluster", {"state": ComponentState.PENDING.value})

        status["conditions"] = set_condition(
            status.get("conditions"),
            CONFIGURATION_READY,
            *condition,
            now=self.now_fn(),
        )
        return status

    def _write_status(self, item: WorkItem, managed: dict[str, Any], configured: bool) -> bool:
        """Persist a freshly derived status if it differs from the stored one.

        On ``409 Conflict`` the ManagedOCS is re-read and the status derived
        again, since it is a pure function of current cluster state.
        """
        attempt = 0
        while True:
            attempt += 1
            desired = self._desired_status(item, managed, configured)
            if desired == (managed.get("status") or {}):
                return False

            body = copy.deepcopy(managed)
            body["status"] = desired
            try:
                self.store.update_status(MANAGED_OCS, body)
                return True
            except ApiException as exc:
                if not is_conflict(exc) or attempt >= STATUS_CONFLICT_ATTEMPTS:
                    raise
                self.logger.info(
                    "Status update conflict for ManagedOCS %s (attempt %d/%d); re-reading",
                    item,
                    attempt,
                    STATUS_CONFLICT_ATTEMPTS,
                )
                refreshed = self.store.get(MANAGED_OCS, item.name, item.namespace)
                if refreshed is None:
                    return False
                managed = refreshed
