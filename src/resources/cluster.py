"""Cluster reconciliation: network, security groups, API server load balancer and bastion.

The cluster is the only writer of these shared resources; machines read
them through ``ClusterContext`` built from the status written here.
"""

import logging

from constants import BASTION_SUFFIX
from models import (
    ClusterContext,
    ClusterStatus,
    ConditionStatus,
    ConfigurationError,
    LoadBalancerStatus,
    MachineStatus,
    OpenstackClusterSpec,
    OpenstackMachineSpec,
    Phase,
    ReconcileResult,
)
from openstack_client import OpenStackClient
from resources.floating_ip import associate_floating_ip, ensure_floating_ip, release_floating_ip
from resources.loadbalancer import delete_load_balancer, ensure_load_balancer
from resources.machine import (
    ensure_machine_floating_ip,
    reconcile_machine,
    reconcile_machine_delete,
)
from resources.network import (
    delete_managed_network,
    ensure_managed_network,
    resolve_external_network_id,
    resolve_network,
)
from resources.security_group import (
    delete_managed_security_groups,
    delete_role_security_group,
    ensure_managed_security_groups,
)
from utils import bastion_name, load_balancer_name, now_iso, ownership_tags

logger = logging.getLogger(__name__)


def _ensure_api_server_floating_ip(
    client: OpenStackClient,
    spec: OpenstackClusterSpec,
    status: ClusterStatus,
    vip_port_id: str,
) -> None:
    address = spec.get("apiServerFloatingIP") or status.api_server_floating_ip
    if not address and not status.external_network_id:
        logger.debug("No external network, not allocating an API server floating IP")
        return
    fip = ensure_floating_ip(client, status.external_network_id, address)
    associate_floating_ip(client, fip, vip_port_id)
    status.api_server_floating_ip = fip.floating_ip_address


def _bastion_context(
    name: str, spec: OpenstackClusterSpec, status: ClusterStatus
) -> ClusterContext:
    """The bastion is a plain machine on the cluster network without pool membership."""
    return ClusterContext(
        cluster_name=name,
        network_id=status.network.id if status.network else None,
        subnet_ids=status.network.subnet_ids if status.network else (),
        external_network_id=status.external_network_id,
        tags=tuple(spec.get("tags", [])),
    )


def _bastion_machine_spec(
    spec: OpenstackClusterSpec, status: ClusterStatus
) -> OpenstackMachineSpec:
    bastion = spec.get("bastion") or {}
    machine_spec: OpenstackMachineSpec = dict(bastion.get("spec") or {})
    if bastion.get("floatingIP"):
        machine_spec["floatingIP"] = bastion["floatingIP"]
    if BASTION_SUFFIX in status.security_groups:
        machine_spec["securityGroups"] = [
            *machine_spec.get("securityGroups", []),
            {"id": status.security_groups[BASTION_SUFFIX].id},
        ]
    return machine_spec


def reconcile_bastion(
    client: OpenStackClient,
    name: str,
    spec: OpenstackClusterSpec,
    status: ClusterStatus,
) -> ReconcileResult:
    """Bring the bastion to a running server with a floating IP, or remove it once disabled."""
    if not (spec.get("bastion") or {}).get("enabled"):
        if status.bastion is None:
            return ReconcileResult.finished()
        logger.info(f"Bastion of cluster {name} disabled, deleting it")
        result = delete_bastion(client, name, spec, status)
        if result.done and spec.get("managedSecurityGroups"):
            delete_role_security_group(client, name, BASTION_SUFFIX)
        return result

    if status.bastion is None:
        status.bastion = MachineStatus()
    context = _bastion_context(name, spec, status)
    machine_spec = _bastion_machine_spec(spec, status)
    result = reconcile_machine(client, bastion_name(name), machine_spec, status.bastion, context)
    if not result.done:
        status.set_condition("BastionReady", ConditionStatus.FALSE, "Provisioning", result.reason)
        return result

    ensure_machine_floating_ip(client, machine_spec, status.bastion, context)
    status.set_condition("BastionReady", ConditionStatus.TRUE, "Active")
    return ReconcileResult.finished()


def delete_bastion(
    client: OpenStackClient,
    name: str,
    spec: OpenstackClusterSpec,
    status: ClusterStatus,
) -> ReconcileResult:
    if status.bastion is None:
        status.bastion = MachineStatus()
    result = reconcile_machine_delete(
        client,
        bastion_name(name),
        _bastion_machine_spec(spec, status),
        status.bastion,
        _bastion_context(name, spec, status),
    )
    if not result.done:
        return result
    status.bastion = None
    status.conditions = [c for c in status.conditions if c.type != "BastionReady"]
    return result


def reconcile_cluster(
    client: OpenStackClient,
    name: str,
    spec: OpenstackClusterSpec,
    status: ClusterStatus,
) -> ReconcileResult:
    """Create or adopt the cluster's shared resources.

    Args:
        client: OpenStack client
        name: Cluster name
        spec: Cluster spec
        status: Cluster status, updated in place

    Returns:
        Whether every shared resource is in place
    """
    if status.failure_reason:
        logger.info(f"Cluster {name} has failed ({status.failure_reason}), not reconciling")
        return ReconcileResult.finished()
    if not status.ready:
        status.phase = Phase.PROVISIONING

    tags = ownership_tags(name, spec.get("tags", []))

    # 1. Networking
    status.external_network_id = resolve_external_network_id(
        client, spec.get("externalNetwork")
    )
    if spec.get("network"):
        status.network = resolve_network(client, spec["network"])
    elif spec.get("managedSubnets"):
        status.network = ensure_managed_network(
            client, name, spec["managedSubnets"], status.external_network_id, tags
        )
    else:
        raise ConfigurationError("either network or managedSubnets must be set")
    status.set_condition("NetworkReady", ConditionStatus.TRUE, "Available")

    # 2. Security groups
    if spec.get("managedSecurityGroups"):
        status.security_groups = ensure_managed_security_groups(client, name, spec, tags)
        status.set_condition("SecurityGroupsReady", ConditionStatus.TRUE, "Reconciled")

    # 3. API server load balancer
    context = ClusterContext.from_cluster(name, spec, status.to_dict())
    if context.load_balancer_enabled:
        if not status.network.subnet_ids:
            raise ConfigurationError(f"network {status.network.id} has no subnet for the VIP")
        provider = (spec.get("apiServerLoadBalancer") or {}).get("provider")
        lb, result = ensure_load_balancer(
            client,
            load_balancer_name(name),
            status.network.subnet_ids[0],
            context.load_balancer_ports,
            provider,
        )
        status.load_balancer = LoadBalancerStatus(
            id=lb.id,
            name=lb.name,
            vip_address=lb.vip_address or "",
            vip_port_id=lb.vip_port_id or "",
            provider=lb.provider,
            floating_ip=status.load_balancer.floating_ip if status.load_balancer else None,
        )
        if not result.done:
            status.set_condition(
                "LoadBalancerReady", ConditionStatus.FALSE, "Provisioning", result.reason
            )
            return result

        if not context.disable_api_server_floating_ip:
            _ensure_api_server_floating_ip(client, spec, status, lb.vip_port_id)
            status.load_balancer = LoadBalancerStatus(
                id=lb.id,
                name=lb.name,
                vip_address=lb.vip_address or "",
                vip_port_id=lb.vip_port_id or "",
                provider=lb.provider,
                floating_ip=status.api_server_floating_ip,
            )
        status.set_condition("LoadBalancerReady", ConditionStatus.TRUE, "Active")

    # 4. Bastion
    result = reconcile_bastion(client, name, spec, status)
    if not result.done:
        return result

    status.ready = True
    status.phase = Phase.READY
    status.last_sync_time = now_iso()
    status.set_condition("Ready", ConditionStatus.TRUE, "Reconciled")
    return ReconcileResult.finished()


def reconcile_cluster_delete(
    client: OpenStackClient,
    name: str,
    spec: OpenstackClusterSpec,
    status: ClusterStatus,
) -> ReconcileResult:
    """Delete the cluster's shared resources.

    The bastion goes first, then the load balancer (with cascade), the security groups
    and finally a managed network. Groups still used by machine ports make
    the delete fail with a conflict until the machines are gone.
    """
    status.phase = Phase.DELETING
    status.ready = False

    if (spec.get("bastion") or {}).get("enabled") or status.bastion:
        result = delete_bastion(client, name, spec, status)
        if not result.done:
            return result

    lb_enabled = bool((spec.get("apiServerLoadBalancer") or {}).get("enabled"))
    if status.api_server_floating_ip and (lb_enabled or status.load_balancer):
        release_floating_ip(
            client,
            status.api_server_floating_ip,
            delete=not spec.get("apiServerFloatingIP"),
        )
        status.api_server_floating_ip = None

    if lb_enabled or status.load_balancer:
        result = delete_load_balancer(client, load_balancer_name(name), cascade=True)
        if not result.done:
            return result
        status.load_balancer = None

    if spec.get("managedSecurityGroups") or status.security_groups:
        delete_managed_security_groups(client, name, status.security_groups)
        status.security_groups = {}

    managed = status.network.managed if status.network else bool(spec.get("managedSubnets"))
    if managed:
        delete_managed_network(client, name)
    status.network = None

    logger.info(f"Cluster {name} deleted")
    return ReconcileResult.finished()
