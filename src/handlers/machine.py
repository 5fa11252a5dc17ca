"""Kopf handlers for OpenstackMachine CRD."""

import logging
import threading
from typing import Any

import kopf
from kubernetes import client as k8s_client

from constants import (
    API_GROUP,
    API_VERSION,
    CLUSTER_NAME_LABEL,
    CLUSTER_PLURAL,
    CONTROL_PLANE_LABEL,
    MACHINE_PLURAL,
)
from handlers.common import RESYNC_SECONDS, forget_lock, run_reconcile, write_status
from identity import resolve_client
from metrics import MACHINE_STATES
from models import (
    ClusterContext,
    ConfigurationError,
    DependencyNotReadyError,
    InstanceState,
    MachineStatus,
    Phase,
)
from resources.machine import reconcile_machine, reconcile_machine_delete
from state import get_k8s_custom_api

logger = logging.getLogger(__name__)

RESOURCE = "OpenstackMachine"

_states: dict[str, InstanceState] = {}
_states_lock = threading.Lock()


def _record_state(key: str, state: InstanceState | None) -> None:
    """Track instance states of all machines for the states gauge."""
    with _states_lock:
        if state is None:
            _states.pop(key, None)
        else:
            _states[key] = state
        counts = {s: 0 for s in InstanceState}
        for s in _states.values():
            counts[s] += 1
    for s, count in counts.items():
        MACHINE_STATES.labels(state=s.value).set(count)


def cluster_name_of(spec: dict[str, Any], labels: dict[str, str]) -> str | None:
    return spec.get("clusterName") or labels.get(CLUSTER_NAME_LABEL)


def load_cluster_context(
    namespace: str, cluster_name: str | None, required: bool = True
) -> ClusterContext:
    """Read the owning OpenstackCluster and build the machine's view of it.

    While deleting (``required=False``) a missing cluster yields an empty
    context so the machine can still be cleaned up.
    """
    if not cluster_name:
        if required:
            raise ConfigurationError("clusterName is required")
        return ClusterContext(cluster_name="")

    try:
        cluster = get_k8s_custom_api().get_namespaced_custom_object(
            API_GROUP, API_VERSION, namespace, CLUSTER_PLURAL, cluster_name
        )
    except k8s_client.ApiException as e:
        if e.status != 404:
            raise
        if required:
            raise DependencyNotReadyError(
                f"OpenstackCluster {namespace}/{cluster_name} does not exist yet"
            ) from e
        return ClusterContext(cluster_name=cluster_name)

    return ClusterContext.from_cluster(
        cluster_name, cluster.get("spec") or {}, cluster.get("status")
    )


def _reconcile(
    spec: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    namespace: str,
    name: str,
    labels: dict[str, str],
    body: kopf.Body,
) -> None:
    key = f"{namespace}/{name}"
    machine_status = MachineStatus.from_dict(dict(status or {}))

    def step():
        client = resolve_client(spec.get("identityRef"), namespace)
        cluster = load_cluster_context(namespace, cluster_name_of(spec, labels))
        return reconcile_machine(
            client,
            name,
            spec,
            machine_status,
            cluster,
            is_control_plane=CONTROL_PLANE_LABEL in labels,
        )

    try:
        run_reconcile(RESOURCE, "reconcile", key, body, machine_status, step)
    finally:
        write_status(patch, status, machine_status)
        _record_state(key, machine_status.instance_state)


@kopf.on.resume(API_GROUP, API_VERSION, MACHINE_PLURAL)
@kopf.on.create(API_GROUP, API_VERSION, MACHINE_PLURAL)
@kopf.on.update(API_GROUP, API_VERSION, MACHINE_PLURAL)
def reconcile_machine_handler(
    spec: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    namespace: str,
    name: str,
    labels: dict[str, str],
    body: kopf.Body,
    **_: Any,
) -> None:
    """Handle OpenstackMachine creation, updates and operator restarts."""
    logger.info(f"Reconciling OpenstackMachine: {namespace}/{name}")
    _reconcile(spec, status, patch, namespace, name, labels, body)


@kopf.timer(API_GROUP, API_VERSION, MACHINE_PLURAL, interval=RESYNC_SECONDS, idle=RESYNC_SECONDS)
def resync_machine(
    spec: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    namespace: str,
    name: str,
    labels: dict[str, str],
    meta: dict[str, Any],
    body: kopf.Body,
    **_: Any,
) -> None:
    """Periodic reconciliation to detect drift of ready machines."""
    if meta.get("deletionTimestamp") or status.get("phase") != Phase.READY.value:
        return
    logger.debug(f"Resyncing OpenstackMachine: {namespace}/{name}")
    _reconcile(spec, status, patch, namespace, name, labels, body)


@kopf.on.delete(API_GROUP, API_VERSION, MACHINE_PLURAL)
def delete_machine_handler(
    spec: dict[str, Any],
    status: dict[str, Any],
    patch: kopf.Patch,
    namespace: str,
    name: str,
    labels: dict[str, str],
    body: kopf.Body,
    **_: Any,
) -> None:
    """Handle OpenstackMachine deletion; the finalizer stays until this succeeds."""
    logger.info(f"Deleting OpenstackMachine: {namespace}/{name}")
    key = f"{namespace}/{name}"
    machine_status = MachineStatus.from_dict(dict(status or {}))

    def step():
        client = resolve_client(spec.get("identityRef"), namespace)
        cluster = load_cluster_context(namespace, cluster_name_of(spec, labels), required=False)
        return reconcile_machine_delete(client, name, spec, machine_status, cluster)

    try:
        run_reconcile(RESOURCE, "delete", key, body, machine_status, step)
    finally:
        write_status(patch, status, machine_status)

    _record_state(key, None)
    forget_lock(key)
