"""Floating IP allocation and association."""

import logging
from typing import Any

from constants import MANAGED_BY_DESCRIPTION
from models import AmbiguousResourceError, DependencyNotReadyError, ResourceNotFoundError
from openstack_client import OpenStackClient

logger = logging.getLogger(__name__)


def find_floating_ip(client: OpenStackClient, address: str) -> Any | None:
    ips = client.list_floating_ips(floating_ip_address=address)
    if len(ips) > 1:
        raise AmbiguousResourceError(f"{len(ips)} floating IPs have address {address}")
    return ips[0] if ips else None


def ensure_floating_ip(
    client: OpenStackClient,
    external_network_id: str | None,
    address: str | None = None,
) -> Any:
    """Get the floating IP with the given address, or allocate one.

    Without an address a new floating IP is allocated; callers persist the
    returned address and pass it on later passes.
    """
    if address:
        fip = find_floating_ip(client, address)
        if fip:
            return fip
    if not external_network_id:
        raise DependencyNotReadyError("no external network to allocate a floating IP from")

    fip = client.create_floating_ip(
        external_network_id, address=address, description=MANAGED_BY_DESCRIPTION
    )
    logger.info(f"Allocated floating IP {fip.floating_ip_address} ({fip.id})")
    return fip


def associate_floating_ip(client: OpenStackClient, fip: Any, port_id: str) -> None:
    if fip.port_id == port_id:
        return
    client.associate_floating_ip(fip.id, port_id)
    logger.info(f"Associated floating IP {fip.floating_ip_address} with port {port_id}")


def release_floating_ip(client: OpenStackClient, address: str | None, delete: bool) -> None:
    """Disassociate a floating IP and optionally give it back to the pool."""
    if not address:
        return
    fip = find_floating_ip(client, address)
    if fip is None:
        logger.debug(f"Floating IP {address} already released")
        return

    try:
        if delete:
            client.delete_floating_ip(fip.id)
            logger.info(f"Deleted floating IP {address}")
        elif fip.port_id:
            client.associate_floating_ip(fip.id, None)
            logger.info(f"Disassociated floating IP {address}")
    except ResourceNotFoundError:
        logger.debug(f"Floating IP {address} already released")
