"""Utility functions for the OpenStack machine operator."""

import datetime
import re
from collections.abc import Iterable

from constants import (
    BASTION_SUFFIX,
    CLUSTER_RESOURCE_PREFIX,
    MANAGED_BY_TAG,
    ROOT_VOLUME_SUFFIX,
    SECURITY_GROUP_PREFIX,
)


def sanitize_name(name: str) -> str:
    """Convert an object name to a safe OpenStack resource name.

    Replaces dots and underscores with hyphens, converts to lowercase,
    and removes any characters that aren't alphanumeric or hyphens.

    Example: 'My_Cluster.Example' -> 'my-cluster-example'
    """
    sanitized = name.replace(".", "-").replace("_", "-").lower()
    sanitized = re.sub(r"[^a-z0-9-]", "", sanitized)
    sanitized = re.sub(r"-+", "-", sanitized)  # collapse multiple hyphens
    return sanitized.strip("-")


def port_name(instance_name: str, index: int, name_suffix: str | None = None) -> str:
    """Deterministic name of a machine's port.

    Example: ('m1', 0) -> 'm1-0', ('m1', 1, 'storage') -> 'm1-storage'
    """
    if name_suffix:
        return f"{instance_name}-{name_suffix}"
    return f"{instance_name}-{index}"


def root_volume_name(instance_name: str) -> str:
    """Deterministic name of a machine's boot volume."""
    return f"{instance_name}-{ROOT_VOLUME_SUFFIX}"


def block_device_volume_name(instance_name: str, device_name: str) -> str:
    """Name of the volume backing an additional block device, e.g. 'm1-data'."""
    return f"{instance_name}-{device_name}"


def bastion_name(cluster_name: str) -> str:
    return f"{cluster_name}-{BASTION_SUFFIX}"


def cluster_resource_name(cluster_name: str) -> str:
    """Base name for cluster-scoped network resources."""
    return f"{CLUSTER_RESOURCE_PREFIX}-{cluster_name}"


def load_balancer_name(cluster_name: str) -> str:
    """Name of the API server load balancer of a cluster."""
    return f"{cluster_resource_name(cluster_name)}-kubeapi"


def listener_name(lb_name: str, port: int) -> str:
    """Name shared by the listener, pool and monitor serving one port."""
    return f"{lb_name}-{port}"


def member_name(lb_name: str, port: int, machine_name: str) -> str:
    return f"{listener_name(lb_name, port)}-{machine_name}"


def security_group_name(cluster_name: str, role: str) -> str:
    """Name of a cluster-managed security group.

    Example: ('c1', 'controlplane') -> 'k8s-cluster-c1-secgroup-controlplane'
    """
    return f"{SECURITY_GROUP_PREFIX}-{cluster_name}-secgroup-{role}"


def dedup(items: Iterable[str]) -> list[str]:
    """Remove duplicates while keeping first-seen order."""
    seen: set[str] = set()
    result: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def ownership_tags(cluster_name: str, *extra: Iterable[str]) -> list[str]:
    """Tags marking a resource as owned by a cluster managed by the operator."""
    tags = [MANAGED_BY_TAG, f"cluster:{cluster_name}"]
    for group in extra:
        tags.extend(group)
    return dedup(tags)


def now_iso() -> str:
    """Return current UTC time in ISO format."""
    return datetime.datetime.now(datetime.UTC).isoformat()
