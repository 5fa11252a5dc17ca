"""Additional block devices of a machine.

A ``Volume`` device is a Cinder volume named ``<machine>-<device>``, created
or adopted before the server and attached at boot. A ``Local`` device is an
ephemeral disk Nova allocates on the hypervisor and needs no volume.
"""

import logging

from constants import (
    BLOCK_DEVICE_LOCAL,
    BLOCK_DEVICE_VOLUME,
    MANAGED_BY_DESCRIPTION,
    ROOT_VOLUME_SUFFIX,
    VOLUME_AVAILABLE,
)
from models import (
    AdditionalBlockDeviceSpec,
    BlockDevice,
    BlockDeviceStatus,
    ConfigurationError,
    MachineResources,
    MachineStatus,
    OpenstackMachineSpec,
    VolumeCreateOpts,
)
from openstack_client import OpenStackClient
from resources.root_volume import delete_volumes, find_unattached_volume, volume_available
from utils import block_device_volume_name

logger = logging.getLogger(__name__)


def validate_block_devices(spec: OpenstackMachineSpec) -> None:
    """Reject device lists Nova would refuse or that would clash on names."""
    seen: set[str] = set()
    for device in spec.get("additionalBlockDevices", []):
        name = device.get("name")
        if not name:
            raise ConfigurationError("additional block devices need a name")
        if name == ROOT_VOLUME_SUFFIX:
            raise ConfigurationError(f"block device name {name} is reserved for the root volume")
        if name in seen:
            raise ConfigurationError(f"duplicate block device name {name}")
        seen.add(name)
        if int(device.get("sizeGiB", 0) or 0) <= 0:
            raise ConfigurationError(f"block device {name} needs a positive sizeGiB")
        storage_type = (device.get("storage") or {}).get("type")
        if storage_type not in (BLOCK_DEVICE_VOLUME, BLOCK_DEVICE_LOCAL):
            raise ConfigurationError(
                f"block device {name} has unknown storage type {storage_type!r}"
            )


def _volume_devices(spec: OpenstackMachineSpec) -> list[AdditionalBlockDeviceSpec]:
    return [
        d
        for d in spec.get("additionalBlockDevices", [])
        if d["storage"]["type"] == BLOCK_DEVICE_VOLUME
    ]


def _record(resources: MachineResources, device: BlockDeviceStatus) -> None:
    for i, existing in enumerate(resources.block_devices):
        if existing.name == device.name:
            resources.block_devices[i] = device
            return
    resources.block_devices.append(device)


def ensure_block_devices(
    client: OpenStackClient,
    instance_name: str,
    spec: OpenstackMachineSpec,
    status: MachineStatus,
) -> bool:
    """Create or adopt the volumes of ``Volume`` devices; True once all are available."""
    devices = _volume_devices(spec)
    if not devices or status.instance_id:
        return True

    resources = status.resources
    recorded = {b.name: b for b in resources.block_devices}
    all_ready = True
    for device in devices:
        current = recorded.get(device["name"])
        if current and current.ready:
            continue

        volume_name = block_device_volume_name(instance_name, device["name"])
        if current is None:
            volume = find_unattached_volume(client, volume_name, device["sizeGiB"])
            if volume is None:
                volume_spec = device["storage"].get("volume") or {}
                volume = client.create_volume(
                    VolumeCreateOpts(
                        name=volume_name,
                        size=device["sizeGiB"],
                        volume_type=volume_spec.get("type"),
                        availability_zone=(
                            volume_spec.get("availabilityZone") or spec.get("availabilityZone")
                        ),
                        description=MANAGED_BY_DESCRIPTION,
                    )
                )
                logger.info(f"Created volume {volume_name} with ID {volume.id}")
                _record(resources, BlockDeviceStatus(name=device["name"], id=volume.id))
                all_ready = False
                continue
            current = BlockDeviceStatus(
                name=device["name"], id=volume.id, ready=volume.status == VOLUME_AVAILABLE
            )
            _record(resources, current)
            if current.ready:
                continue

        if volume_available(client, volume_name, current.id):
            _record(resources, BlockDeviceStatus(name=current.name, id=current.id, ready=True))
        else:
            all_ready = False
    return all_ready


def block_device_mappings(spec: OpenstackMachineSpec, status: MachineStatus) -> list[BlockDevice]:
    """Mapping entries of the additional devices, in spec order."""
    volume_ids = {b.name: b.id for b in status.resources.block_devices}
    mappings = []
    for device in spec.get("additionalBlockDevices", []):
        if device["storage"]["type"] == BLOCK_DEVICE_VOLUME:
            mappings.append(
                BlockDevice(uuid=volume_ids[device["name"]], boot_index=-1, tag=device["name"])
            )
        else:
            mappings.append(
                BlockDevice(
                    source_type="blank",
                    destination_type="local",
                    boot_index=-1,
                    volume_size=device["sizeGiB"],
                    tag=device["name"],
                )
            )
    return mappings


def delete_block_devices(
    client: OpenStackClient,
    instance_name: str,
    spec: OpenstackMachineSpec,
    status: MachineStatus,
) -> None:
    """Delete device volumes that never got attached to a server.

    Attached volumes carry delete_on_termination and go with the server.
    """
    resources = status.resources
    if status.instance_id:
        resources.block_devices = []
        return

    recorded = {b.name: b.id for b in resources.block_devices}
    volume_ids = []
    for device in _volume_devices(spec):
        if device["name"] in recorded:
            volume_ids.append(recorded[device["name"]])
            continue
        volume = find_unattached_volume(
            client, block_device_volume_name(instance_name, device["name"]), device["sizeGiB"]
        )
        if volume:
            volume_ids.append(volume.id)

    delete_volumes(client, volume_ids)
    resources.block_devices = []
