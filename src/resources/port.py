"""Port and trunk management for machines.

Ports are resolved strictly in desired order, one per step: the port at
index ``len(status.resources.ports)`` is found by its deterministic name or
created, and only then appended to the status.
"""

import logging

from models import (
    AmbiguousResourceError,
    MachineStatus,
    PortCreateOpts,
    PortStatus,
    ResolvedMachineSpec,
    ResourceNotFoundError,
    TrunkCreateOpts,
)
from openstack_client import OpenStackClient

logger = logging.getLogger(__name__)


def ports_ready(resolved: ResolvedMachineSpec, status: MachineStatus) -> bool:
    """True once every desired port has an entry in the status."""
    return len(status.resources.ports) >= len(resolved.ports)


def _apply_tags(client: OpenStackClient, resource: object, tags: tuple[str, ...]) -> None:
    current = set(getattr(resource, "tags", None) or [])
    if set(tags) != current:
        client.set_tags(resource, list(tags))


def _find_or_create_port(client: OpenStackClient, opts: PortCreateOpts) -> object:
    ports = client.list_ports(name=opts.name, network_id=opts.network_id)
    if len(ports) > 1:
        raise AmbiguousResourceError(
            f"{len(ports)} ports are named {opts.name} on network {opts.network_id}"
        )
    if ports:
        port = ports[0]
        logger.info(f"Adopting port {opts.name} with ID {port.id}")
    else:
        port = client.create_port(opts)
        logger.info(f"Created port {opts.name} with ID {port.id}")
    _apply_tags(client, port, opts.tags)
    return port


def _find_or_create_trunk(client: OpenStackClient, opts: PortCreateOpts, port_id: str) -> None:
    trunks = client.list_trunks(name=opts.name, port_id=port_id)
    if len(trunks) > 1:
        raise AmbiguousResourceError(f"{len(trunks)} trunks are named {opts.name}")
    if trunks:
        trunk = trunks[0]
        logger.info(f"Trunk {opts.name} already exists with ID {trunk.id}")
    else:
        trunk = client.create_trunk(
            TrunkCreateOpts(name=opts.name, port_id=port_id, description=opts.description)
        )
        logger.info(f"Created trunk {opts.name} with ID {trunk.id}")
    _apply_tags(client, trunk, opts.tags)


def reconcile_next_port(
    client: OpenStackClient, resolved: ResolvedMachineSpec, status: MachineStatus
) -> None:
    """Find or create the first port missing from the status and record it."""
    if ports_ready(resolved, status):
        return
    opts = resolved.ports[len(status.resources.ports)]

    port = _find_or_create_port(client, opts)
    if opts.trunk:
        _find_or_create_trunk(client, opts, port.id)
    status.resources.ports.append(PortStatus(id=port.id, network_id=opts.network_id))


def ensure_ports(
    client: OpenStackClient, resolved: ResolvedMachineSpec, status: MachineStatus
) -> None:
    """Drive the machine's ports to ready, one port at a time."""
    while not ports_ready(resolved, status):
        reconcile_next_port(client, resolved, status)


def delete_trunks_of_port(client: OpenStackClient, port_id: str) -> None:
    """Delete every trunk parented on a port, detaching and deleting subports first."""
    for trunk in client.list_trunks(port_id=port_id):
        subports = client.list_trunk_subports(trunk.id)
        if subports:
            subport_ids = [s["port_id"] for s in subports]
            client.remove_trunk_subports(trunk.id, subport_ids)
            for subport_id in subport_ids:
                try:
                    client.delete_port(subport_id)
                except ResourceNotFoundError:
                    logger.debug(f"Subport {subport_id} already deleted")
        try:
            client.delete_trunk(trunk.id)
        except ResourceNotFoundError:
            logger.debug(f"Trunk {trunk.id} already deleted")


def delete_port(client: OpenStackClient, port_id: str) -> None:
    """Delete a port and its trunk; a missing port counts as deleted."""
    delete_trunks_of_port(client, port_id)
    try:
        client.delete_port(port_id)
    except ResourceNotFoundError:
        logger.debug(f"Port {port_id} already deleted")


def delete_ports(
    client: OpenStackClient,
    resolved: ResolvedMachineSpec | None,
    status: MachineStatus,
) -> None:
    """Delete all ports of a machine.

    Ports created by an interrupted reconcile aren't in the status yet; they
    are found by their deterministic names. Recorded ports are deleted from
    the last one backwards and dropped from the status as they go.
    """
    if resolved is not None:
        for opts in resolved.ports[len(status.resources.ports):]:
            for port in client.list_ports(name=opts.name, network_id=opts.network_id):
                logger.info(f"Deleting unrecorded port {opts.name} ({port.id})")
                delete_port(client, port.id)

    while status.resources.ports:
        port_status = status.resources.ports[-1]
        delete_port(client, port_status.id)
        status.resources.ports.pop()
