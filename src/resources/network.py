"""Cluster network, subnet, and router management."""

import logging
from collections.abc import Sequence
from typing import Any

from constants import MANAGED_BY_DESCRIPTION
from models import (
    AmbiguousResourceError,
    ConfigurationError,
    ManagedSubnetSpec,
    NetworkStatus,
    ResourceNotFoundError,
    ResourceRef,
)
from openstack_client import OpenStackClient
from resources.references import resolve_network_id
from utils import cluster_resource_name

logger = logging.getLogger(__name__)


def _one(resources: Sequence[Any], kind: str, name: str) -> Any | None:
    if len(resources) > 1:
        raise AmbiguousResourceError(f"{len(resources)} {kind}s are named {name}")
    return resources[0] if resources else None


def _apply_tags(client: OpenStackClient, resource: Any, tags: Sequence[str]) -> None:
    if tags and set(tags) != set(resource.tags or []):
        client.set_tags(resource, list(tags))


def resolve_external_network_id(
    client: OpenStackClient, ref: ResourceRef | None
) -> str | None:
    """Resolve the external network.

    Without a reference the only external network of the cloud is used;
    a cloud with none leaves the cluster without external connectivity.
    """
    if ref:
        return resolve_network_id(client, ref)

    networks = client.list_networks(is_router_external=True)
    if len(networks) > 1:
        raise AmbiguousResourceError(
            f"{len(networks)} external networks found, set externalNetwork: "
            f"{', '.join(sorted(n.id for n in networks))}"
        )
    if not networks:
        logger.warning("No external network found")
        return None
    return networks[0].id


def resolve_network(client: OpenStackClient, ref: ResourceRef) -> NetworkStatus:
    """Look up a pre-existing network and its subnets."""
    network_id = resolve_network_id(client, ref)
    try:
        network = client.get_network(network_id)
    except ResourceNotFoundError as e:
        raise ConfigurationError(f"Network {network_id} not found") from e
    subnets = client.list_subnets(network_id=network_id)
    return NetworkStatus(
        id=network_id,
        name=network.name,
        subnet_ids=tuple(s.id for s in subnets),
        managed=False,
    )


def ensure_managed_network(
    client: OpenStackClient,
    cluster_name: str,
    subnet_specs: Sequence[ManagedSubnetSpec],
    external_network_id: str | None,
    tags: Sequence[str] = (),
) -> NetworkStatus:
    """Ensure the cluster network, one subnet per CIDR, and a router.

    Args:
        client: OpenStack client
        cluster_name: Name of the owning cluster
        subnet_specs: Subnets to create, in order
        external_network_id: Gateway network of the router; no router without it
        tags: Tags applied to every created resource

    Returns:
        Network status
    """
    if not subnet_specs:
        raise ConfigurationError("managedSubnets needs at least one CIDR")
    name = cluster_resource_name(cluster_name)

    network = _one(client.list_networks(name=name), "network", name)
    if network:
        logger.debug(f"Network {name} already exists with ID {network.id}")
    else:
        network = client.create_network(name, MANAGED_BY_DESCRIPTION)
        logger.info(f"Created network {name} with ID {network.id}")
    _apply_tags(client, network, tags)

    subnet_ids: list[str] = []
    for i, subnet_spec in enumerate(subnet_specs):
        subnet_name = f"{name}-{i}"
        subnet = _one(
            client.list_subnets(name=subnet_name, network_id=network.id), "subnet", subnet_name
        )
        if subnet:
            logger.debug(f"Subnet {subnet_name} already exists with ID {subnet.id}")
        else:
            subnet = client.create_subnet(
                subnet_name,
                network.id,
                subnet_spec["cidr"],
                dns_nameservers=subnet_spec.get("dnsNameservers", []),
                description=MANAGED_BY_DESCRIPTION,
            )
            logger.info(f"Created subnet {subnet_name} with ID {subnet.id}")
        _apply_tags(client, subnet, tags)
        subnet_ids.append(subnet.id)

    router_id = None
    if external_network_id:
        router = _one(client.list_routers(name=name), "router", name)
        if router:
            logger.debug(f"Router {name} already exists with ID {router.id}")
        else:
            router = client.create_router(
                name,
                external_network_id=external_network_id,
                description=MANAGED_BY_DESCRIPTION,
            )
            logger.info(f"Created router {name} with ID {router.id}")
        _apply_tags(client, router, tags)
        router_id = router.id

        attached = {
            ip["subnet_id"]
            for port in client.list_ports(device_id=router.id)
            for ip in port.fixed_ips or []
        }
        for subnet_id in subnet_ids:
            if subnet_id not in attached:
                client.add_router_interface(router.id, subnet_id)
                logger.info(f"Attached subnet {subnet_id} to router {name}")

    return NetworkStatus(
        id=network.id,
        name=name,
        subnet_ids=tuple(subnet_ids),
        router_id=router_id,
        managed=True,
    )


def delete_managed_network(client: OpenStackClient, cluster_name: str) -> None:
    """Delete the managed network of a cluster in reverse order.

    Router interfaces go first, then the router, the subnets and finally
    the network. Anything already gone is skipped.
    """
    name = cluster_resource_name(cluster_name)
    network = _one(client.list_networks(name=name), "network", name)
    subnets = client.list_subnets(network_id=network.id) if network else []

    router = _one(client.list_routers(name=name), "router", name)
    if router:
        for subnet in subnets:
            try:
                client.remove_router_interface(router.id, subnet.id)
            except ResourceNotFoundError:
                logger.debug(f"Router {name} has no interface on {subnet.id}")
        try:
            client.delete_router(router.id)
            logger.info(f"Deleted router {name}")
        except ResourceNotFoundError:
            logger.debug(f"Router {name} already deleted")

    for subnet in subnets:
        try:
            client.delete_subnet(subnet.id)
            logger.info(f"Deleted subnet {subnet.name}")
        except ResourceNotFoundError:
            logger.debug(f"Subnet {subnet.id} already deleted")

    if network:
        try:
            client.delete_network(network.id)
            logger.info(f"Deleted network {name}")
        except ResourceNotFoundError:
            logger.debug(f"Network {name} already deleted")
