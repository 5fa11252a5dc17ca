"""Server lookup, creation, state mapping and deletion."""

import logging
import re
from typing import Any

from constants import SERVER_ACTIVE, SERVER_BUILD, SERVER_ERROR, SERVER_SHUTOFF
from models import (
    Address,
    AmbiguousResourceError,
    BlockDevice,
    InstanceState,
    MachineStatus,
    OpenstackMachineSpec,
    ResolvedMachineSpec,
    ResourceFailedError,
    ResourceNotFoundError,
    ServerCreateOpts,
)
from openstack_client import OpenStackClient
from resources.block_device import block_device_mappings
from resources.root_volume import root_volume_size

logger = logging.getLogger(__name__)

_SERVER_STATES = {
    SERVER_ACTIVE: InstanceState.ACTIVE,
    SERVER_BUILD: InstanceState.BUILDING,
    SERVER_SHUTOFF: InstanceState.SHUTOFF,
    SERVER_ERROR: InstanceState.ERROR,
}


def find_server(client: OpenStackClient, name: str) -> Any | None:
    """Find a server by exact name.

    Nova treats the name filter as a regular expression, so the result is
    narrowed to exact matches afterwards.
    """
    servers = [
        s for s in client.list_servers(name=f"^{re.escape(name)}$") if s.name == name
    ]
    if len(servers) > 1:
        raise AmbiguousResourceError(
            f"{len(servers)} servers are named {name}: "
            f"{', '.join(sorted(s.id for s in servers))}"
        )
    return servers[0] if servers else None


def server_state(server: Any) -> InstanceState:
    """Map a Nova server status onto the local lifecycle state."""
    return _SERVER_STATES.get(server.status, InstanceState.UNKNOWN)


def server_addresses(server: Any) -> list[Address]:
    """Addresses of a server, fixed ones as internal and floating ones as external."""
    addresses: list[Address] = []
    for network_addresses in (server.addresses or {}).values():
        for entry in network_addresses:
            kind = "ExternalIP" if entry.get("OS-EXT-IPS:type") == "floating" else "InternalIP"
            address = Address(type=kind, address=entry["addr"])
            if address not in addresses:
                addresses.append(address)
    return addresses


def build_server_opts(
    instance_name: str,
    spec: OpenstackMachineSpec,
    resolved: ResolvedMachineSpec,
    status: MachineStatus,
    tags: list[str],
) -> ServerCreateOpts:
    block_devices: list[BlockDevice] = []
    image_id: str | None = resolved.image_id
    if root_volume_size(spec) > 0 and status.resources.root_volume:
        block_devices.append(BlockDevice(uuid=status.resources.root_volume.id))
        image_id = None

    additional = block_device_mappings(spec, status)
    if additional and not block_devices:
        # Nova needs the image as an explicit boot device once a mapping is given
        block_devices.append(
            BlockDevice(uuid=resolved.image_id, source_type="image", destination_type="local")
        )
    block_devices.extend(additional)

    return ServerCreateOpts(
        name=instance_name,
        flavor_id=resolved.flavor_id,
        port_ids=tuple(p.id for p in status.resources.ports),
        image_id=image_id,
        block_devices=tuple(block_devices),

        key_name=spec.get("sshKeyName"),
        availability_zone=spec.get("availabilityZone"),
        user_data=spec.get("userData"),
        config_drive=spec.get("configDrive", False),
        metadata=dict(spec.get("serverMetadata", {})),
        tags=tuple(tags),
        server_group_id=resolved.server_group_id,
    )


def ensure_server(
    client: OpenStackClient,
    instance_name: str,
    spec: OpenstackMachineSpec,
    resolved: ResolvedMachineSpec,
    status: MachineStatus,
    tags: list[str],
) -> Any:
    """Adopt or create the machine's server and refresh its state in the status.

    Args:
        client: OpenStack client
        instance_name: Server name, identical to the machine name
        spec: Machine spec
        resolved: Resolved references of the machine
        status: Machine status, updated in place
        tags: Server tags

    Returns:
        The server as last reported by Nova
    """
    if status.instance_id:
        try:
            server = client.get_server(status.instance_id)
        except ResourceNotFoundError as e:
            raise ResourceFailedError(
                f"Server {status.instance_id} disappeared", reason="UpdateError"
            ) from e
    else:
        server = find_server(client, instance_name)
        if server:
            logger.info(f"Adopting server {instance_name} with ID {server.id}")
        else:
            opts = build_server_opts(instance_name, spec, resolved, status, tags)
            server = client.create_server(opts)
            logger.info(f"Created server {instance_name} with ID {server.id}")
        status.instance_id = server.id

    status.instance_state = server_state(server)
    return server


def delete_server(client: OpenStackClient, instance_name: str, status: MachineStatus) -> bool:
    """Delete the machine's server, returning True once it is gone.

    A server found by name is recorded in the status first: its root volume
    then belongs to Nova and is never deleted directly.
    """
    server = None
    if status.instance_id:
        try:
            server = client.get_server(status.instance_id)
        except ResourceNotFoundError:
            logger.debug(f"Server {status.instance_id} already deleted")
    else:
        server = find_server(client, instance_name)
        if server:
            status.instance_id = server.id

    if server is None:
        status.instance_state = InstanceState.DELETED
        return True

    if status.instance_state != InstanceState.DELETING:
        try:
            client.delete_server(server.id)
        except ResourceNotFoundError:
            logger.debug(f"Server {server.id} already deleted")
            status.instance_state = InstanceState.DELETED
            return True
        logger.info(f"Deleting server {instance_name} ({server.id})")
        status.instance_state = InstanceState.DELETING
    else:
        logger.debug(f"Waiting for server {instance_name} ({server.id}) to go away")
    return False
