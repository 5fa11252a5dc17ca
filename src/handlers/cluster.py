"""Kopf handlers for OpenstackCluster CRD."""

import logging
from typing import Any

import kopf

from constants import API_GROUP, API_VERSION, CLUSTER_PLURAL
from handlers.common import RESYNC_SECONDS, forget_lock, run_reconcile, write_status
from identity import resolve_client
from models import ClusterStatus, Phase
from resources.cluster import reconcile_cluster, reconcile_cluster_delete

logger = logging.getLogger(__name__)

RESOURCE = "OpenstackCluster"


def _reconcile(
    spec: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    namespace: str,
    name: str,
    body: kopf.Body,
) -> None:
    cluster_status = ClusterStatus.from_dict(dict(status or {}))

    def step():
        client = resolve_client(spec.get("identityRef"), namespace)
        return reconcile_cluster(client, name, spec, cluster_status)

    try:
        run_reconcile(RESOURCE, "reconcile", f"{namespace}/{name}", body, cluster_status, step)
    finally:
        write_status(patch, status, cluster_status)


@kopf.on.resume(API_GROUP, API_VERSION, CLUSTER_PLURAL)
@kopf.on.create(API_GROUP, API_VERSION, CLUSTER_PLURAL)
@kopf.on.update(API_GROUP, API_VERSION, CLUSTER_PLURAL)
def reconcile_cluster_handler(
    spec: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    namespace: str,
    name: str,
    body: kopf.Body,
    **_: Any,
) -> None:
    """Handle OpenstackCluster creation, updates and operator restarts."""
    logger.info(f"Reconciling OpenstackCluster: {namespace}/{name}")
    _reconcile(spec, status, patch, namespace, name, body)


@kopf.timer(API_GROUP, API_VERSION, CLUSTER_PLURAL, interval=RESYNC_SECONDS, idle=RESYNC_SECONDS)
def resync_cluster(
    spec: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    namespace: str,
    name: str,
    meta: dict[str, Any],
    body: kopf.Body,
    **_: Any,
) -> None:
    """Periodic reconciliation to repair drift, security group rules included."""
    if meta.get("deletionTimestamp") or status.get("phase") != Phase.READY.value:
        return
    logger.debug(f"Resyncing OpenstackCluster: {namespace}/{name}")
    _reconcile(spec, status, patch, namespace, name, body)


@kopf.on.delete(API_GROUP, API_VERSION, CLUSTER_PLURAL)
def delete_cluster_handler(
    spec: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    namespace: str,
    name: str,
    body: kopf.Body,
    **_: Any,
) -> None:
    """Handle OpenstackCluster deletion."""
    logger.info(f"Deleting OpenstackCluster: {namespace}/{name}")
    key = f"{namespace}/{name}"
    cluster_status = ClusterStatus.from_dict(dict(status or {}))

    def step():
        client = resolve_client(spec.get("identityRef"), namespace)
        return reconcile_cluster_delete(client, name, spec, cluster_status)

    try:
        run_reconcile(RESOURCE, "delete", key, body, cluster_status, step)
    finally:
        write_status(patch, status, cluster_status)
    forget_lock(key)
