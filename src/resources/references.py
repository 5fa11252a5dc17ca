"""Resolution of a machine spec's references into concrete IDs.

The result is computed once per machine and persisted in its status; the
spec it comes from can't change after creation.
"""

import logging
from collections.abc import Sequence
from typing import Any

from constants import CONTROL_PLANE_SUFFIX, GLOBAL_SUFFIX, MANAGED_BY_DESCRIPTION
from models import (
    AddressPair,
    AmbiguousResourceError,
    ClusterContext,
    ConfigurationError,
    DependencyNotReadyError,
    FixedIP,
    ImageRef,
    OpenstackMachineSpec,
    PortCreateOpts,
    PortSpec,
    ResolvedMachineSpec,
    ResourceRef,
)
from openstack_client import OpenStackClient
from resources.block_device import validate_block_devices
from resources.server_group import resolve_server_group_id
from utils import dedup, ownership_tags, port_name

logger = logging.getLogger(__name__)

TRUNK_EXTENSION = "trunk"


def _exactly_one(matches: Sequence[Any], kind: str, description: str) -> Any:
    if not matches:
        raise ConfigurationError(f"No {kind} matches {description}")
    if len(matches) > 1:
        raise AmbiguousResourceError(
            f"{len(matches)} {kind}s match {description}: "
            f"{', '.join(sorted(m.id for m in matches))}"
        )
    return matches[0]


def resolve_image_id(client: OpenStackClient, image: ImageRef) -> str:
    """Resolve an image reference by ID, or by name and tags."""
    if image.get("id"):
        return image["id"]
    name = image.get("name")
    if not name:
        raise ConfigurationError("image reference needs an id or a name")

    filters: dict[str, Any] = {"name": name}
    if image.get("tags"):
        filters["tags"] = list(image["tags"])
    found = _exactly_one(client.list_images(**filters), "image", f"name {name}")
    return found.id


def resolve_flavor_id(client: OpenStackClient, spec: OpenstackMachineSpec) -> str:
    """Resolve the flavor by ``flavorID`` or ``flavor`` name."""
    if spec.get("flavorID"):
        return spec["flavorID"]
    name = spec.get("flavor")
    if not name:
        raise ConfigurationError("either flavor or flavorID must be set")
    flavors = [f for f in client.list_flavors() if f.name == name]
    return _exactly_one(flavors, "flavor", f"name {name}").id


def resolve_network_id(client: OpenStackClient, ref: ResourceRef) -> str:
    if ref.get("id"):
        return ref["id"]
    name = ref.get("name")
    if not name:
        raise ConfigurationError("network reference needs an id or a name")
    return _exactly_one(client.list_networks(name=name), "network", f"name {name}").id


def resolve_subnet_id(client: OpenStackClient, ref: ResourceRef, network_id: str) -> str:
    if ref.get("id"):
        return ref["id"]
    name = ref.get("name")
    if not name:
        raise ConfigurationError("subnet reference needs an id or a name")
    subnets = client.list_subnets(name=name, network_id=network_id)
    return _exactly_one(subnets, "subnet", f"name {name} on network {network_id}").id


def resolve_security_group_ids(
    client: OpenStackClient, refs: Sequence[ResourceRef]
) -> tuple[str, ...]:
    ids: list[str] = []
    for ref in refs:
        if ref.get("id"):
            ids.append(ref["id"])
            continue
        name = ref.get("name")
        if not name:
            raise ConfigurationError("security group reference needs an id or a name")
        groups = client.list_security_groups(name=name)
        ids.append(_exactly_one(groups, "security group", f"name {name}").id)
    return tuple(dedup(ids))


def check_trunk_support(client: OpenStackClient) -> None:
    """Raise unless Neutron has the trunk extension."""
    aliases = {ext.alias for ext in client.list_extensions()}
    if TRUNK_EXTENSION not in aliases:
        raise ConfigurationError("trunk ports requested but the trunk extension is not available")


def instance_tags(spec: OpenstackMachineSpec, cluster: ClusterContext) -> list[str]:
    """Machine tags followed by cluster tags, without duplicates."""
    return dedup([*spec.get("tags", []), *cluster.tags])


def _managed_security_group_ids(
    cluster: ClusterContext, is_control_plane: bool
) -> list[str]:
    roles = [GLOBAL_SUFFIX]
    if is_control_plane:
        roles.insert(0, CONTROL_PLANE_SUFFIX)
    missing = [role for role in roles if role not in cluster.security_group_ids]
    if missing:
        raise DependencyNotReadyError(
            f"cluster {cluster.cluster_name} security groups not ready: {', '.join(missing)}"
        )
    return [cluster.security_group_ids[role] for role in roles]


def _resolve_fixed_ips(
    client: OpenStackClient,
    port: PortSpec,
    network_id: str,
    default_subnet_ids: Sequence[str],
) -> tuple[FixedIP, ...]:
    requested = port.get("fixedIPs", [])
    if requested:
        return tuple(
            FixedIP(
                subnet_id=(
                    resolve_subnet_id(client, ip["subnet"], network_id)
                    if ip.get("subnet")
                    else None
                ),
                ip_address=ip.get("ipAddress"),
            )
            for ip in requested
        )

    # Implicit fixed IP on the network's first subnet
    if default_subnet_ids:
        return (FixedIP(subnet_id=default_subnet_ids[0]),)
    subnets = client.list_subnets(network_id=network_id)
    if subnets:
        return (FixedIP(subnet_id=subnets[0].id),)
    return ()


def resolve_port(
    client: OpenStackClient,
    instance_name: str,
    index: int,
    port: PortSpec,
    spec: OpenstackMachineSpec,
    cluster: ClusterContext,
    default_security_group_ids: tuple[str, ...] | None,
) -> PortCreateOpts:
    """Resolve one desired port into its create request."""
    if port.get("network"):
        network_id = resolve_network_id(client, port["network"])
        default_subnets: Sequence[str] = ()
    else:
        if not cluster.network_id:
            raise DependencyNotReadyError(
                f"cluster {cluster.cluster_name} network is not available yet"
            )
        network_id = cluster.network_id
        default_subnets = cluster.subnet_ids

    port_security_enabled: bool | None = None
    security_group_ids: tuple[str, ...] | None
    if port.get("disablePortSecurity"):
        port_security_enabled = False
        security_group_ids = None
    elif "securityGroups" in port:
        security_group_ids = resolve_security_group_ids(client, port["securityGroups"])
    else:
        security_group_ids = default_security_group_ids

    return PortCreateOpts(
        name=port_name(instance_name, index, port.get("nameSuffix")),
        network_id=network_id,
        description=port.get("description") or MANAGED_BY_DESCRIPTION,
        fixed_ips=_resolve_fixed_ips(client, port, network_id, default_subnets),
        security_group_ids=security_group_ids,
        port_security_enabled=port_security_enabled,
        allowed_address_pairs=tuple(
            AddressPair(ip_address=p["ipAddress"], mac_address=p.get("macAddress"))
            for p in port.get("allowedAddressPairs", [])
        ),
        vnic_type=port.get("vnicType"),
        admin_state_up=port.get("adminStateUp"),
        tags=tuple(
            ownership_tags(
                cluster.cluster_name,
                instance_tags(spec, cluster),
                port.get("tags", []),
            )
        ),
        trunk=port.get("trunk", spec.get("trunk", False)),
    )


def resolve_machine_spec(
    client: OpenStackClient,
    instance_name: str,
    spec: OpenstackMachineSpec,
    cluster: ClusterContext,
    is_control_plane: bool = False,
) -> ResolvedMachineSpec:
    """Resolve image, flavor, server group and ports of a machine."""
    if "image" not in spec:
        raise ConfigurationError("image is required")
    validate_block_devices(spec)
    image_id = resolve_image_id(client, spec["image"])
    flavor_id = resolve_flavor_id(client, spec)
    server_group_id = (
        resolve_server_group_id(client, spec["serverGroup"])
        if spec.get("serverGroup")
        else None
    )

    default_sgs: list[str] = []
    if spec.get("securityGroups"):
        default_sgs.extend(resolve_security_group_ids(client, spec["securityGroups"]))
    if cluster.managed_security_groups:
        default_sgs.extend(_managed_security_group_ids(cluster, is_control_plane))
    default_security_group_ids = (
        tuple(dedup(default_sgs))
        if default_sgs or "securityGroups" in spec
        else None
    )

    desired_ports: list[PortSpec] = spec.get("ports") or [{}]
    ports = tuple(
        resolve_port(
            client, instance_name, i, port, spec, cluster, default_security_group_ids
        )
        for i, port in enumerate(desired_ports)
    )
    if any(p.trunk for p in ports):
        check_trunk_support(client)

    logger.info(
        f"Resolved machine {instance_name}: image={image_id} flavor={flavor_id} "
        f"server_group={server_group_id} ports={[p.name for p in ports]}"
    )
    return ResolvedMachineSpec(
        image_id=image_id,
        flavor_id=flavor_id,
        server_group_id=server_group_id,
        ports=ports,
    )
