"""Root volume management, plus the volume helpers shared with block devices."""

import logging
from typing import Any

from constants import MANAGED_BY_DESCRIPTION, VOLUME_AVAILABLE, VOLUME_ERROR
from models import (
    AmbiguousResourceError,
    MachineStatus,
    OpenstackMachineSpec,
    ResolvedMachineSpec,
    ResourceFailedError,
    ResourceNotFoundError,
    RootVolumeStatus,
    VolumeCreateOpts,
)
from openstack_client import OpenStackClient
from utils import root_volume_name

logger = logging.getLogger(__name__)


def root_volume_size(spec: OpenstackMachineSpec) -> int:
    return int((spec.get("rootVolume") or {}).get("sizeGiB", 0) or 0)


def find_unattached_volume(client: OpenStackClient, name: str, size: int) -> Any | None:
    """Look for an unattached volume of the right size left by an earlier attempt."""
    candidates = []
    for volume in client.list_volumes(name=name):
        if volume.size != size:
            logger.warning(
                f"Ignoring volume {name} ({volume.id}): size {volume.size} GiB, "
                f"expected {size} GiB"
            )
            continue
        if volume.attachments:
            logger.warning(f"Ignoring volume {name} ({volume.id}): already attached")
            continue
        candidates.append(volume)

    if not candidates:
        return None
    if len(candidates) > 1:
        raise AmbiguousResourceError(
            f"{len(candidates)} unattached volumes named {name} could be adopted: "
            f"{', '.join(sorted(v.id for v in candidates))}"
        )

    volume = candidates[0]
    logger.info(f"Adopting volume {name} with ID {volume.id} (status {volume.status})")
    return volume


def volume_available(client: OpenStackClient, name: str, volume_id: str) -> bool:
    """Poll a volume; an error state or a vanished volume is terminal."""
    try:
        volume = client.get_volume(volume_id)
    except ResourceNotFoundError as e:
        raise ResourceFailedError(f"Volume {name} ({volume_id}) disappeared") from e

    if volume.status == VOLUME_AVAILABLE:
        logger.info(f"Volume {name} ({volume_id}) is available")
        return True
    if volume.status == VOLUME_ERROR:
        raise ResourceFailedError(f"Volume {name} ({volume_id}) is in error state")

    logger.debug(f"Waiting for volume {name} ({volume_id}): status {volume.status}")
    return False


def delete_volumes(client: OpenStackClient, volume_ids: list[str]) -> None:
    for volume_id in volume_ids:
        try:
            client.delete_volume(volume_id)
        except ResourceNotFoundError:
            logger.debug(f"Volume {volume_id} already deleted")


def ensure_root_volume(
    client: OpenStackClient,
    instance_name: str,
    spec: OpenstackMachineSpec,
    resolved: ResolvedMachineSpec,
    status: MachineStatus,
) -> bool:
    """Create or adopt the boot volume and report whether it is available.

    The volume ID is written to the status as soon as it is known, before
    the volume is usable, so an interrupted reconcile never orphans it.
    """
    size = root_volume_size(spec)
    if size <= 0:
        return True

    resources = status.resources
    if resources.root_volume and resources.root_volume.ready:
        return True

    if status.instance_id:
        # An existing server proves its boot volume exists and is attached
        return True

    name = root_volume_name(instance_name)
    if resources.root_volume is None:
        volume = find_unattached_volume(client, name, size)
        if volume:
            resources.root_volume = RootVolumeStatus(
                id=volume.id, ready=volume.status == VOLUME_AVAILABLE
            )

    if resources.root_volume is None:
        root_spec = spec.get("rootVolume") or {}
        volume = client.create_volume(
            VolumeCreateOpts(
                name=name,
                size=size,
                image_id=resolved.image_id,
                volume_type=root_spec.get("type"),
                availability_zone=(
                    root_spec.get("availabilityZone") or spec.get("availabilityZone")
                ),
                description=MANAGED_BY_DESCRIPTION,
            )
        )
        logger.info(f"Created volume {name} with ID {volume.id}")
        resources.root_volume = RootVolumeStatus(id=volume.id, ready=False)
        return False

    if resources.root_volume.ready:
        return True

    volume_id = resources.root_volume.id
    if volume_available(client, name, volume_id):
        resources.root_volume = RootVolumeStatus(id=volume_id, ready=True)
        return True
    return False


def delete_root_volume(
    client: OpenStackClient,
    instance_name: str,
    spec: OpenstackMachineSpec,
    status: MachineStatus,
) -> None:
    """Delete a root volume that never got attached to a server.

    Once a server existed the volume is removed by Nova through
    delete_on_termination and must not be touched here.
    """
    resources = status.resources
    if status.instance_id:
        resources.root_volume = None
        return
    if root_volume_size(spec) <= 0:
        return

    volume_ids = []
    if resources.root_volume and resources.root_volume.id:
        volume_ids.append(resources.root_volume.id)
    else:
        volume = find_unattached_volume(
            client, root_volume_name(instance_name), root_volume_size(spec)
        )
        if volume:
            volume_ids.append(volume.id)

    delete_volumes(client, volume_ids)
    resources.root_volume = None
