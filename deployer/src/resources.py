from __future__ import annotations

import base64
import binascii
import copy
import enum
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

_STRICT_INT_RE = re.compile(r"[0-9]+")
# Largest value a signed 64-bit count field can carry.
_MAX_SIZE = 2**63 - 1


@dataclass(frozen=True)
class ResourceKind:
    """Group/version/kind triple plus the plural used in REST paths."""

    kind: str
    group: str
    version: str
    plural: str

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"


MANAGED_OCS = ResourceKind("ManagedOCS", "ocs.openshift.io", "v1alpha1", "managedocs")
STORAGE_CLUSTER = ResourceKind("StorageCluster", "ocs.openshift.io", "v1", "storageclusters")
SECRET = ResourceKind("Secret", "", "v1", "secrets")


class ReconcileStrategy(str, enum.Enum):
    STRICT = "strict"
    NONE = "none"


class ComponentState(str, enum.Enum):
    PENDING = "Pending"
    READY = "Ready"
    ERROR = "Error"


CONFIGURATION_READY = "ConfigurationReady"
REASON_AWAITING_CONFIGURATION = "AwaitingConfiguration"
REASON_CONFIGURED = "Configured"


@dataclass(frozen=True)
class DeployerConfig:
    """Well-known object names and storage template parameters.

    Passed explicitly to the mapper and the engine so neither depends on
    module-level state.
    """

    namespace: str = "openshift-storage"
    managed_resource_name: str = "managedocs"
    secret_name: str = "addon-ocs-converged-parameters"
    storage_cluster_name: str = "ocs-storagecluster"
    size_key: str = "size"
    storage_class_name: str = "gp2"
    device_set_capacity: str = "1Ti"


@dataclass(frozen=True)
class WorkItem:
    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class OwnerReference:
    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False


@dataclass(frozen=True)
class Notification:
    """A single watch event reduced to what admission and mapping need.

    ``kind`` is the tag; ``previous_generation`` is the last generation this
    process saw for the same object, or ``None`` when it has none.
    """

    kind: ResourceKind
    change_type: str
    name: str
    namespace: str
    generation: int | None = None
    previous_generation: int | None = None
    owner_references: tuple[OwnerReference, ...] = field(default_factory=tuple)

    @classmethod
    def from_object(
        cls,
        kind: ResourceKind,
        change_type: str,
        obj: dict[str, Any],
        previous_generation: int | None = None,
    ) -> Notification:
        metadata = obj.get("metadata") or {}
        return cls(
            kind=kind,
            change_type=change_type,
            name=metadata.get("name") or "",
            namespace=metadata.get("namespace") or "",
            generation=metadata.get("generation"),
            previous_generation=previous_generation,
            owner_references=parse_owner_references(metadata),
        )


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_owner_references(metadata: dict[str, Any]) -> tuple[OwnerReference, ...]:
    refs = []
    for raw in metadata.get("ownerReferences") or []:
        if not isinstance(raw, dict):
            continue
        refs.append(
            OwnerReference(
                api_version=raw.get("apiVersion", ""),
                kind=raw.get("kind", ""),
                name=raw.get("name", ""),
                uid=raw.get("uid", ""),
                controller=bool(raw.get("controller")),
            )
        )
    return tuple(refs)


def controller_owner(owner_references: tuple[OwnerReference, ...]) -> OwnerReference | None:
    """Return the owner reference flagged ``controller: true``, if any."""
    for ref in owner_references:
        if ref.controller:
            return ref
    return None


def set_owner(dependent: dict[str, Any], owner: dict[str, Any], owner_kind: ResourceKind) -> None:
    """Attach a controller owner reference so garbage collection cascades from *owner*.

    Any existing controller reference is replaced; non-controller references
    are kept.
    """
    owner_meta = owner.get("metadata") or {}
    metadata = dependent.setdefault("metadata", {})
    kept = [
        ref
        for ref in metadata.get("ownerReferences") or []
        if not (isinstance(ref, dict) and ref.get("controller"))
    ]
    kept.append(
        {
            "apiVersion": owner_kind.api_version,
            "kind": owner_kind.kind,
            "name": owner_meta.get("name"),
            "uid": owner_meta.get("uid"),
            "controller": True,
            "blockOwnerDeletion": True,
        }
    )
    metadata["ownerReferences"] = kept


def resolve_strategy(managed: dict[str, Any]) -> ReconcileStrategy:
    """Resolve ``spec.reconcileStrategy``; empty or unknown values mean strict."""
    raw = (managed.get("spec") or {}).get("reconcileStrategy")
    if isinstance(raw, str) and raw.strip().lower() == ReconcileStrategy.NONE.value:
        return ReconcileStrategy.NONE
    return ReconcileStrategy.STRICT


def parse_size(raw: str | None) -> int | None:
    """Parse a capacity value with strict base-10 rules.

    Returns ``None`` for missing, empty, signed or non-digit input, and for
    values outside ``1.._MAX_SIZE``.  ``int()`` alone would accept ``" 3"``,
    ``"+3"`` and ``"1_0"``.
    """
    if raw is None:
        return None
    if not _STRICT_INT_RE.fullmatch(raw):
        return None
    value = int(raw, 10)
    if value <= 0 or value > _MAX_SIZE:
        return None
    return value


def secret_value(secret: dict[str, Any] | None, key: str) -> str | None:
    """Decode one ``data`` entry of a Secret, falling back to ``stringData``."""
    if secret is None:
        return None
    data = secret.get("data") or {}
    encoded = data.get(key)
    if encoded is not None:
        try:
            return base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
    string_data = secret.get("stringData") or {}
    value = string_data.get(key)
    return value if isinstance(value, str) else None


def desired_storage_cluster_spec(size: int, config: DeployerConfig) -> dict[str, Any]:
    """Build the StorageCluster spec for a validated *size*.

    Each unit of size is one device set replica group of
    ``config.device_set_capacity`` on ``config.storage_class_name``.
    """
    return {
        "manageNodes": False,
        "storageDeviceSets": [
            {
                "name": "default",
                "count": size,
                "replica": 3,
                "portable": True,
                "dataPVCTemplate": {
                    "spec": {
                        "accessModes": ["ReadWriteOnce"],
                        "resources": {"requests": {"storage": config.device_set_capacity}},
                        "storageClassName": config.storage_class_name,
                        "volumeMode": "Block",
                    }
                },
            }
        ],
    }


def component_state_for_phase(phase: Any) -> ComponentState:
    if phase == "Ready":
        return ComponentState.READY
    if phase in {"Error", "Failed"}:
        return ComponentState.ERROR
    return ComponentState.PENDING


def set_condition(
    conditions: list[dict[str, Any]] | None,
    condition_type: str,
    status: str,
    reason: str,
    message: str,
    now: str,
) -> list[dict[str, Any]]:
    """Return a new condition list with *condition_type* set.

    ``lastTransitionTime`` only moves when ``status`` flips, so refreshing an
    unchanged condition yields an equal list and no status write.
    """
    result = [copy.deepcopy(c) for c in conditions or [] if c.get("type") != condition_type]
    previous = next((c for c in conditions or [] if c.get("type") == condition_type), None)
    transition = now
    if previous is not None and previous.get("status") == status:
        transition = previous.get("lastTransitionTime") or now
    result.append(
        {
            "type": condition_type,
            "status": status,
            "reason": reason,
            "message": message,
            "lastTransitionTime": transition,
        }
    )
    return result
