"""Machine reconciliation: the create and delete sequences of one machine.

Every step records its result in the status before the next one starts,
so a pass interrupted anywhere resumes where it stopped. Steps that wait
on the cloud return a requeue result instead of blocking.
"""

import logging

from models import (
    ClusterContext,
    ConditionStatus,
    InstanceState,
    MachineStatus,
    OpenstackMachineSpec,
    Phase,
    ReconcileResult,
    ResourceFailedError,
)
from openstack_client import OpenStackClient
from resources.block_device import delete_block_devices, ensure_block_devices
from resources.floating_ip import associate_floating_ip, ensure_floating_ip, release_floating_ip
from resources.instance import delete_server, ensure_server, find_server, server_addresses
from resources.loadbalancer import reconcile_members, remove_members
from resources.port import delete_ports, ensure_ports
from resources.references import instance_tags, resolve_machine_spec
from resources.root_volume import delete_root_volume, ensure_root_volume
from utils import now_iso

logger = logging.getLogger(__name__)


def _wants_floating_ip(cluster: ClusterContext, is_control_plane: bool) -> bool:
    return (
        is_control_plane
        and not cluster.load_balancer_enabled
        and not cluster.disable_api_server_floating_ip
    )


def ensure_machine_floating_ip(
    client: OpenStackClient,
    spec: OpenstackMachineSpec,
    status: MachineStatus,
    cluster: ClusterContext,
) -> None:
    address = status.floating_ip or spec.get("floatingIP") or cluster.api_server_floating_ip
    if not address and not cluster.external_network_id:
        logger.debug(f"Cluster {cluster.cluster_name} has no external network, no floating IP")
        return
    fip = ensure_floating_ip(client, cluster.external_network_id, address)
    status.floating_ip = fip.floating_ip_address
    associate_floating_ip(client, fip, status.resources.ports[0].id)


def reconcile_machine(
    client: OpenStackClient,
    name: str,
    spec: OpenstackMachineSpec,
    status: MachineStatus,
    cluster: ClusterContext,
    is_control_plane: bool = False,
) -> ReconcileResult:
    """Move a machine one pass closer to a running server.

    Args:
        client: OpenStack client
        name: Machine name, also used as the server name
        spec: Machine spec
        status: Machine status, updated in place
        cluster: The owning cluster as seen by machines
        is_control_plane: Whether the machine is a control plane member

    Returns:
        Whether the machine is fully reconciled
    """
    if status.failure_reason:
        logger.info(f"Machine {name} has failed ({status.failure_reason}), not reconciling")
        return ReconcileResult.finished()

    if not status.ready:
        status.phase = Phase.PROVISIONING

    if status.resolved is None:
        status.resolved = resolve_machine_spec(client, name, spec, cluster, is_control_plane)
    resolved = status.resolved

    ensure_ports(client, resolved, status)

    if not status.instance_id:
        # A server left by a pass whose status was lost owns its volumes already
        existing = find_server(client, name)
        if existing:
            logger.info(f"Adopting server {name} with ID {existing.id}")
            status.instance_id = existing.id

    if not ensure_root_volume(client, name, spec, resolved, status):
        status.set_condition(
            "InstanceReady", ConditionStatus.FALSE, "WaitingForVolume", "root volume is not available"
        )
        return ReconcileResult.requeue("root volume is not available")
    if not ensure_block_devices(client, name, spec, status):
        status.set_condition(
            "InstanceReady",
            ConditionStatus.FALSE,
            "WaitingForVolume",
            "block device volumes are not available",
        )
        return ReconcileResult.requeue("block device volumes are not available")

    tags = instance_tags(spec, cluster)
    server = ensure_server(client, name, spec, resolved, status, tags)
    if status.instance_state == InstanceState.BUILDING:
        status.set_condition(
            "InstanceReady", ConditionStatus.FALSE, "Building", f"server {server.id} is building"
        )
        return ReconcileResult.requeue(f"server {server.id} is building")
    if status.instance_state == InstanceState.ERROR:
        message = f"server {server.id} has status {server.status}"
        if not status.ready:
            raise ResourceFailedError(f"Server {name} ({server.id}) has status {server.status}")
        # A machine that once ran may be repaired out of band
        logger.warning(f"Machine {name}: {message}")
        status.set_condition("InstanceReady", ConditionStatus.FALSE, "InstanceStateError", message)
        status.set_condition("Ready", ConditionStatus.FALSE, "InstanceStateError", message)
        return ReconcileResult.requeue(message)
    if status.instance_state != InstanceState.ACTIVE:
        message = f"server {server.id} has status {server.status}"
        logger.info(f"Machine {name}: {message}, waiting")
        status.set_condition("InstanceReady", ConditionStatus.UNKNOWN, "InstanceNotReady", message)
        status.set_condition("Ready", ConditionStatus.UNKNOWN, "InstanceNotReady", message)
        return ReconcileResult.requeue(message)

    status.addresses = server_addresses(server)
    status.set_condition("InstanceReady", ConditionStatus.TRUE, "Active")

    if _wants_floating_ip(cluster, is_control_plane):
        ensure_machine_floating_ip(client, spec, status, cluster)

    if cluster.load_balancer_enabled and is_control_plane:
        result = reconcile_members(client, cluster, name, status)
        if not result.done:
            return result

    status.ready = True
    status.phase = Phase.READY
    status.last_sync_time = now_iso()
    status.set_condition("Ready", ConditionStatus.TRUE, "InstanceActive")
    return ReconcileResult.finished()


def reconcile_machine_delete(
    client: OpenStackClient,
    name: str,
    spec: OpenstackMachineSpec,
    status: MachineStatus,
    cluster: ClusterContext,
) -> ReconcileResult:
    """Tear a machine down in reverse creation order.

    Pool memberships go first, then the server. Ports and unattached
    volumes are only deleted once the server is confirmed gone.
    """
    status.phase = Phase.DELETING
    status.ready = False

    result = remove_members(client, cluster, name, status)
    if not result.done:
        return result

    if status.floating_ip:
        explicit = spec.get("floatingIP") or cluster.api_server_floating_ip
        release_floating_ip(client, status.floating_ip, delete=not explicit)
        status.floating_ip = None

    if not delete_server(client, name, status):
        return ReconcileResult.requeue(f"server {name} is being deleted")

    delete_ports(client, status.resolved, status)
    delete_root_volume(client, name, spec, status)
    delete_block_devices(client, name, spec, status)
    logger.info(f"Machine {name} deleted")
    return ReconcileResult.finished()
