from __future__ import annotations

from deployer.src.resources import (
    MANAGED_OCS,
    SECRET,
    STORAGE_CLUSTER,
    DeployerConfig,
    Notification,
    OwnerReference,
    WorkItem,
    controller_owner,
)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


def generation_changed(notification: Notification) -> bool:
    """Pass creates, deletes, and updates whose ``metadata.generation`` moved.

    The API server bumps generation on spec writes only, so a status
    subresource write by the engine is rejected here and cannot re-trigger
    the loop.
    """
    if notification.change_type != MODIFIED:
        return True
    if notification.previous_generation is None or notification.generation is None:
        return True
    return notification.generation != notification.previous_generation


def managed_owner(notification: Notification) -> OwnerReference | None:
    owner = controller_owner(notification.owner_references)
    if owner is None or owner.kind != MANAGED_OCS.kind:
        return None
    return owner


def admit(notification: Notification, config: DeployerConfig) -> bool:
    """Return True iff *notification* could change the reconciliation outcome."""
    if notification.kind == MANAGED_OCS:
        return generation_changed(notification)
    if notification.kind == SECRET:
        return notification.name == config.secret_name
    if notification.kind == STORAGE_CLUSTER:
        return managed_owner(notification) is not None
    return False


def map_to_work_item(notification: Notification, config: DeployerConfig) -> WorkItem | None:
    """Translate an admitted notification into the ManagedOCS it affects.

    Liveness is not checked: the engine treats a vanished object as a no-op.
    """
    if notification.kind == MANAGED_OCS:
        return WorkItem(name=notification.name, namespace=notification.namespace)

    if notification.kind == SECRET:
        if notification.name != config.secret_name:
            return None
        return WorkItem(name=config.managed_resource_name, namespace=notification.namespace)

    if notification.kind == STORAGE_CLUSTER:
        owner = managed_owner(notification)
        if owner is None or not owner.name:
            return None
        return WorkItem(name=owner.name, namespace=notification.namespace)

    return None
