"""Octavia load balancer and pool membership management.

Octavia refuses any change while a load balancer is not ``ACTIVE``, and
every change moves it back to ``PENDING_UPDATE``. Each function therefore
issues at most one mutating call per pass and asks to be called again.
"""

import logging
from collections.abc import Sequence
from typing import Any

from constants import (
    LB_ACTIVE,
    LB_ALGORITHM_ROUND_ROBIN,
    LB_ALGORITHM_SOURCE_IP_PORT,
    LB_ERROR,
    LB_PENDING_DELETE,
    LB_PROVIDER_OVN,
    MANAGED_BY_DESCRIPTION,
    MONITOR_DELAY,
    MONITOR_MAX_RETRIES,
    MONITOR_MAX_RETRIES_DOWN,
    MONITOR_TIMEOUT,
)
from models import (
    AmbiguousResourceError,
    ClusterContext,
    DependencyNotReadyError,
    ListenerCreateOpts,
    LoadBalancerCreateOpts,
    LoadBalancerMemberStatus,
    MachineStatus,
    MemberCreateOpts,
    MonitorCreateOpts,
    PoolCreateOpts,
    ReconcileResult,
    ResourceFailedError,
    ResourceInUseError,
    ResourceNotFoundError,
)
from openstack_client import OpenStackClient
from utils import listener_name, member_name

logger = logging.getLogger(__name__)


def _one(resources: Sequence[Any], kind: str, name: str) -> Any | None:
    if len(resources) > 1:
        raise AmbiguousResourceError(f"{len(resources)} {kind}s are named {name}")
    return resources[0] if resources else None


def find_load_balancer(client: OpenStackClient, name: str) -> Any | None:
    return _one(client.list_load_balancers(name=name), "load balancer", name)


def pool_algorithm(provider: str | None) -> str:
    """The ovn provider only supports SOURCE_IP_PORT."""
    if provider == LB_PROVIDER_OVN:
        return LB_ALGORITHM_SOURCE_IP_PORT
    return LB_ALGORITHM_ROUND_ROBIN


def _wait_active(lb: Any) -> ReconcileResult | None:
    """None when the load balancer accepts changes, else why to requeue."""
    if lb.provisioning_status == LB_ACTIVE:
        return None
    if lb.provisioning_status == LB_ERROR:
        raise ResourceFailedError(f"Load balancer {lb.name} ({lb.id}) is in error state")
    return ReconcileResult.requeue(
        f"load balancer {lb.name} is {lb.provisioning_status}"
    )


def _monitor_drift(monitor: Any) -> dict[str, int]:
    wanted = {
        "delay": MONITOR_DELAY,
        "timeout": MONITOR_TIMEOUT,
        "max_retries": MONITOR_MAX_RETRIES,
        "max_retries_down": MONITOR_MAX_RETRIES_DOWN,
    }
    return {k: v for k, v in wanted.items() if getattr(monitor, k, None) != v}


def ensure_load_balancer(
    client: OpenStackClient,
    name: str,
    vip_subnet_id: str,
    ports: Sequence[int],
    provider: str | None = None,
) -> tuple[Any, ReconcileResult]:
    """Drive the load balancer and its listeners, pools and monitors to ACTIVE.

    Args:
        client: OpenStack client
        name: Load balancer name
        vip_subnet_id: Subnet the VIP is allocated on
        ports: Ports to balance, one listener/pool/monitor each
        provider: Octavia provider, default when None

    Returns:
        The load balancer and whether everything is in place
    """
    lb = find_load_balancer(client, name)
    if lb is None:
        lb = client.create_load_balancer(
            LoadBalancerCreateOpts(
                name=name,
                vip_subnet_id=vip_subnet_id,
                provider=provider,
                description=MANAGED_BY_DESCRIPTION,
            )
        )
        logger.info(f"Created load balancer {name} with ID {lb.id}")
        return lb, ReconcileResult.requeue(f"load balancer {name} is being created")

    pending = _wait_active(lb)
    if pending:
        return lb, pending

    algorithm = pool_algorithm(provider or lb.provider)
    for port in ports:
        resource_name = listener_name(name, port)

        listener = _one(
            client.list_listeners(name=resource_name, load_balancer_id=lb.id),
            "listener",
            resource_name,
        )
        if listener is None:
            listener = client.create_listener(
                ListenerCreateOpts(name=resource_name, load_balancer_id=lb.id, protocol_port=port)
            )
            logger.info(f"Created listener {resource_name} with ID {listener.id}")
            return lb, ReconcileResult.requeue(f"listener {resource_name} is being created")

        pool = _one(
            client.list_pools(name=resource_name, loadbalancer_id=lb.id),
            "pool",
            resource_name,
        )
        if pool is None:
            pool = client.create_pool(
                PoolCreateOpts(
                    name=resource_name, listener_id=listener.id, lb_algorithm=algorithm
                )
            )
            logger.info(f"Created pool {resource_name} with ID {pool.id}")
            return lb, ReconcileResult.requeue(f"pool {resource_name} is being created")

        monitor = _one(
            client.list_health_monitors(name=resource_name, pool_id=pool.id),
            "health monitor",
            resource_name,
        )
        if monitor is None:
            monitor = client.create_health_monitor(
                MonitorCreateOpts(
                    name=resource_name,
                    pool_id=pool.id,
                    delay=MONITOR_DELAY,
                    timeout=MONITOR_TIMEOUT,
                    max_retries=MONITOR_MAX_RETRIES,
                    max_retries_down=MONITOR_MAX_RETRIES_DOWN,
                )
            )
            logger.info(f"Created health monitor {resource_name} with ID {monitor.id}")
            return lb, ReconcileResult.requeue(f"monitor {resource_name} is being created")

        drift = _monitor_drift(monitor)
        if drift:
            client.update_health_monitor(monitor.id, **drift)
            logger.info(f"Updated health monitor {resource_name}: {drift}")
            return lb, ReconcileResult.requeue(f"monitor {resource_name} is being updated")

    return lb, ReconcileResult.finished()


def delete_load_balancer(
    client: OpenStackClient, name: str, cascade: bool = False
) -> ReconcileResult:
    """Delete a load balancer by name.

    Without ``cascade`` a load balancer that still has listeners or pools is
    refused with ``ResourceInUseError`` instead of being sent to Octavia.
    """
    lb = find_load_balancer(client, name)
    if lb is None:
        return ReconcileResult.finished()
    if lb.provisioning_status == LB_PENDING_DELETE:
        return ReconcileResult.requeue(f"load balancer {name} is being deleted")

    if not cascade and (lb.listeners or lb.pools):
        raise ResourceInUseError(f"load balancer {name} has associated resources")
    if lb.provisioning_status not in (LB_ACTIVE, LB_ERROR):
        return ReconcileResult.requeue(f"load balancer {name} is {lb.provisioning_status}")

    try:
        client.delete_load_balancer(lb.id, cascade=cascade)
    except ResourceNotFoundError:
        logger.debug(f"Load balancer {name} already deleted")
        return ReconcileResult.finished()
    logger.info(f"Deleting load balancer {name} ({lb.id}), cascade={cascade}")
    return ReconcileResult.requeue(f"load balancer {name} is being deleted")


def _machine_address(status: MachineStatus) -> str | None:
    for address in status.addresses:
        if address.type == "InternalIP":
            return address.address
    return None


def reconcile_members(
    client: OpenStackClient,
    cluster: ClusterContext,
    machine_name: str,
    status: MachineStatus,
) -> ReconcileResult:
    """Make the machine's fixed IP a member of every API server pool."""
    if not cluster.load_balancer_name:
        return ReconcileResult.finished()
    address = _machine_address(status)
    if address is None:
        raise DependencyNotReadyError(f"machine {machine_name} has no fixed IP yet")

    lb = find_load_balancer(client, cluster.load_balancer_name)
    if lb is None:
        raise DependencyNotReadyError(
            f"load balancer {cluster.load_balancer_name} does not exist yet"
        )
    pending = _wait_active(lb)
    if pending:
        return pending

    members: list[LoadBalancerMemberStatus] = []
    for port in cluster.load_balancer_ports:
        pool_name = listener_name(lb.name, port)
        pool = _one(client.list_pools(name=pool_name, loadbalancer_id=lb.id), "pool", pool_name)
        if pool is None:
            raise DependencyNotReadyError(f"pool {pool_name} does not exist yet")

        name = member_name(lb.name, port, machine_name)
        member = _one(client.list_members(pool.id, name=name), "member", name)
        if member is not None and member.address != address:
            logger.info(
                f"Member {name} has address {member.address}, expected {address}; "
                "replacing it"
            )
            client.delete_member(pool.id, member.id)
            return ReconcileResult.requeue(f"member {name} is being replaced")
        if member is None:
            member = client.create_member(
                pool.id,
                MemberCreateOpts(
                    name=name,
                    address=address,
                    protocol_port=port,
                    subnet_id=cluster.subnet_ids[0] if cluster.subnet_ids else None,
                ),
            )
            logger.info(f"Added {address}:{port} to pool {pool_name} as {member.id}")
            status.load_balancer_members = [
                *[m for m in status.load_balancer_members if m.pool_id != pool.id],
                LoadBalancerMemberStatus(
                    pool_id=pool.id, member_id=member.id, address=address, port=port
                ),
            ]
            return ReconcileResult.requeue(f"member {name} is being created")

        members.append(
            LoadBalancerMemberStatus(
                pool_id=pool.id, member_id=member.id, address=address, port=port
            )
        )

    status.load_balancer_members = members
    return ReconcileResult.finished()


def remove_members(
    client: OpenStackClient,
    cluster: ClusterContext,
    machine_name: str,
    status: MachineStatus,
) -> ReconcileResult:
    """Remove the machine from every API server pool; gone members are fine."""
    if not cluster.load_balancer_name:
        status.load_balancer_members = []
        return ReconcileResult.finished()

    lb = find_load_balancer(client, cluster.load_balancer_name)
    if lb is None or lb.provisioning_status == LB_PENDING_DELETE:
        status.load_balancer_members = []
        return ReconcileResult.finished()

    for port in cluster.load_balancer_ports:
        pool_name = listener_name(lb.name, port)
        pool = _one(client.list_pools(name=pool_name, loadbalancer_id=lb.id), "pool", pool_name)
        if pool is None:
            continue
        name = member_name(lb.name, port, machine_name)
        for member in client.list_members(pool.id, name=name):
            pending = _wait_active(lb)
            if pending:
                return pending
            try:
                client.delete_member(pool.id, member.id)
            except ResourceNotFoundError:
                logger.debug(f"Member {name} already removed")
                continue
            logger.info(f"Removed {member.address} from pool {pool_name}")
            status.load_balancer_members = [
                m for m in status.load_balancer_members if m.member_id != member.id
            ]
            return ReconcileResult.requeue(f"member {name} is being removed")

    status.load_balancer_members = []
    return ReconcileResult.finished()
