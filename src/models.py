"""Domain models for the OpenStack machine operator.

This module defines typed data structures for the custom resources, the
status blocks persisted between reconciles, the typed create requests handed
to the cloud client, and the operator exception hierarchy.
"""

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, NotRequired, TypedDict

from constants import DEFAULT_API_SERVER_PORT
from utils import load_balancer_name


# =============================================================================
# Enums for constrained values
# =============================================================================


class Phase(Enum):
    """Custom resource lifecycle phase."""

    PENDING = "Pending"
    PROVISIONING = "Provisioning"
    READY = "Ready"
    ERROR = "Error"
    DELETING = "Deleting"


class InstanceState(Enum):
    """Local view of a server's lifecycle."""

    ABSENT = "Absent"
    BUILDING = "Building"
    ACTIVE = "Active"
    SHUTOFF = "Shutoff"
    ERROR = "Error"
    UNKNOWN = "Unknown"
    DELETING = "Deleting"
    DELETED = "Deleted"


class Direction(Enum):
    """Security group rule direction."""

    INGRESS = "ingress"
    EGRESS = "egress"


class ConditionStatus(Enum):
    """Kubernetes condition status."""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


# =============================================================================
# TypedDicts for CRD spec (external data from Kubernetes)
# =============================================================================


class ResourceRef(TypedDict, total=False):
    """Reference to an OpenStack resource by ID or by name."""

    id: str
    name: str


class ImageRef(TypedDict, total=False):
    """Image reference: an ID, or a name optionally narrowed by tags."""

    id: str
    name: str
    tags: list[str]


class FixedIPSpec(TypedDict, total=False):
    """Requested fixed IP on a port."""

    subnet: ResourceRef
    ipAddress: str


class AddressPairSpec(TypedDict):
    """Allowed address pair on a port."""

    ipAddress: str
    macAddress: NotRequired[str]


class PortSpec(TypedDict, total=False):
    """Desired port of a machine."""

    network: ResourceRef
    fixedIPs: list[FixedIPSpec]
    nameSuffix: str
    description: str
    securityGroups: list[ResourceRef]
    disablePortSecurity: bool
    trunk: bool
    tags: list[str]
    allowedAddressPairs: list[AddressPairSpec]
    vnicType: str
    adminStateUp: bool


class RootVolumeSpec(TypedDict):
    """Boot volume of a machine."""

    sizeGiB: int
    type: NotRequired[str]
    availabilityZone: NotRequired[str]


class BlockDeviceVolumeSpec(TypedDict, total=False):
    """Cinder settings of a volume-backed block device."""

    type: str
    availabilityZone: str


class BlockDeviceStorageSpec(TypedDict):
    type: Literal["Volume", "Local"]
    volume: NotRequired[BlockDeviceVolumeSpec]


class AdditionalBlockDeviceSpec(TypedDict):
    """Extra disk attached to a machine at boot."""

    name: str
    sizeGiB: int
    storage: BlockDeviceStorageSpec


class IdentityRefSpec(TypedDict):
    """Reference to a Secret holding a clouds.yaml."""

    name: str
    cloudName: NotRequired[str]


class OpenstackMachineSpec(TypedDict, total=False):
    """Full OpenstackMachine CRD spec."""

    clusterName: str
    image: ImageRef
    flavor: str
    flavorID: str
    sshKeyName: str
    serverGroup: ResourceRef
    securityGroups: list[ResourceRef]
    ports: list[PortSpec]
    trunk: bool
    rootVolume: RootVolumeSpec
    additionalBlockDevices: list[AdditionalBlockDeviceSpec]
    tags: list[str]
    serverMetadata: dict[str, str]
    userData: str
    configDrive: bool
    availabilityZone: str
    floatingIP: str
    identityRef: IdentityRefSpec


class SecurityGroupRuleSpec(TypedDict):
    """Security group rule specification from CRD."""

    direction: Literal["ingress", "egress"]
    etherType: NotRequired[Literal["IPv4", "IPv6"]]
    protocol: NotRequired[str]
    portRangeMin: NotRequired[int]
    portRangeMax: NotRequired[int]
    remoteIPPrefix: NotRequired[str]
    remoteGroup: NotRequired[str]
    description: NotRequired[str]


class ManagedSubnetSpec(TypedDict):
    """Subnet of a managed cluster network."""

    cidr: str
    dnsNameservers: NotRequired[list[str]]


class APIServerLoadBalancerSpec(TypedDict, total=False):
    """API server load balancer settings."""

    enabled: bool
    provider: str
    additionalPorts: list[int]


class BastionSpec(TypedDict, total=False):
    """SSH jump host of a cluster."""

    enabled: bool
    spec: OpenstackMachineSpec
    floatingIP: str


class OpenstackClusterSpec(TypedDict, total=False):
    """Full OpenstackCluster CRD spec."""

    network: ResourceRef
    managedSubnets: list[ManagedSubnetSpec]
    externalNetwork: ResourceRef
    managedSecurityGroups: bool
    additionalSecurityGroupRules: list[SecurityGroupRuleSpec]
    apiServerLoadBalancer: APIServerLoadBalancerSpec
    apiServerPort: int
    apiServerFloatingIP: str
    disableAPIServerFloatingIP: bool
    tags: list[str]
    bastion: BastionSpec
    identityRef: IdentityRefSpec


class OpenstackServerGroupSpec(TypedDict, total=False):
    """Full OpenstackServerGroup CRD spec."""

    policy: str
    identityRef: IdentityRefSpec


# =============================================================================
# Typed create requests
# =============================================================================


@dataclass(frozen=True)
class FixedIP:
    """Fixed IP request on a port."""

    subnet_id: str | None = None
    ip_address: str | None = None

    def to_dict(self) -> dict[str, str]:
        result: dict[str, str] = {}
        if self.subnet_id:
            result["subnetID"] = self.subnet_id
        if self.ip_address:
            result["ipAddress"] = self.ip_address
        return result

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "FixedIP":
        return cls(subnet_id=data.get("subnetID"), ip_address=data.get("ipAddress"))


@dataclass(frozen=True)
class AddressPair:
    """Allowed address pair."""

    ip_address: str
    mac_address: str | None = None

    def to_dict(self) -> dict[str, str]:
        result = {"ipAddress": self.ip_address}
        if self.mac_address:
            result["macAddress"] = self.mac_address
        return result

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "AddressPair":
        return cls(ip_address=data["ipAddress"], mac_address=data.get("macAddress"))


@dataclass(frozen=True)
class PortCreateOpts:
    """Resolved create request for one port of a machine.

    ``security_group_ids`` of ``None`` leaves the port's groups unmanaged,
    while an empty tuple explicitly requests no security groups. ``tags``
    are applied after creation and ``trunk`` asks for a trunk parented on
    the port; neither is part of the port create call itself.
    """

    name: str
    network_id: str
    description: str = ""
    fixed_ips: tuple[FixedIP, ...] = ()
    security_group_ids: tuple[str, ...] | None = None
    port_security_enabled: bool | None = None
    allowed_address_pairs: tuple[AddressPair, ...] = ()
    vnic_type: str | None = None
    admin_state_up: bool | None = None
    tags: tuple[str, ...] = ()
    trunk: bool = False

    def to_kwargs(self) -> dict[str, Any]:
        """Build openstacksdk keyword arguments for ``create_port``."""
        kwargs: dict[str, Any] = {
            "name": self.name,
            "network_id": self.network_id,
            "description": self.description,
        }
        if self.fixed_ips:
            kwargs["fixed_ips"] = [
                {
                    k: v
                    for k, v in (
                        ("subnet_id", ip.subnet_id),
                        ("ip_address", ip.ip_address),
                    )
                    if v
                }
                for ip in self.fixed_ips
            ]
        if self.security_group_ids is not None:
            kwargs["security_group_ids"] = list(self.security_group_ids)
        if self.port_security_enabled is not None:
            kwargs["is_port_security_enabled"] = self.port_security_enabled
        if self.allowed_address_pairs:
            kwargs["allowed_address_pairs"] = [
                {"ip_address": p.ip_address, "mac_address": p.mac_address}
                if p.mac_address
                else {"ip_address": p.ip_address}
                for p in self.allowed_address_pairs
            ]
        if self.vnic_type:
            kwargs["binding_vnic_type"] = self.vnic_type
        if self.admin_state_up is not None:
            kwargs["is_admin_state_up"] = self.admin_state_up
        return kwargs

    def to_dict(self) -> dict[str, object]:
        """Convert to dict for Kubernetes status."""
        result: dict[str, object] = {
            "name": self.name,
            "networkID": self.network_id,
        }
        if self.description:
            result["description"] = self.description
        if self.fixed_ips:
            result["fixedIPs"] = [ip.to_dict() for ip in self.fixed_ips]
        if self.security_group_ids is not None:
            result["securityGroupIDs"] = list(self.security_group_ids)
        if self.port_security_enabled is not None:
            result["portSecurityEnabled"] = self.port_security_enabled
        if self.allowed_address_pairs:
            result["allowedAddressPairs"] = [
                p.to_dict() for p in self.allowed_address_pairs
            ]
        if self.vnic_type:
            result["vnicType"] = self.vnic_type
        if self.admin_state_up is not None:
            result["adminStateUp"] = self.admin_state_up
        if self.tags:
            result["tags"] = list(self.tags)
        if self.trunk:
            result["trunk"] = True
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PortCreateOpts":
        """Create from Kubernetes status dict."""
        sg_ids = data.get("securityGroupIDs")
        return cls(
            name=data["name"],
            network_id=data["networkID"],
            description=data.get("description", ""),
            fixed_ips=tuple(FixedIP.from_dict(ip) for ip in data.get("fixedIPs", [])),
            security_group_ids=tuple(sg_ids) if sg_ids is not None else None,
            port_security_enabled=data.get("portSecurityEnabled"),
            allowed_address_pairs=tuple(
                AddressPair.from_dict(p) for p in data.get("allowedAddressPairs", [])
            ),
            vnic_type=data.get("vnicType"),
            admin_state_up=data.get("adminStateUp"),
            tags=tuple(data.get("tags", [])),
            trunk=data.get("trunk", False),
        )


@dataclass(frozen=True)
class TrunkCreateOpts:
    """Create request for a trunk parented on a port."""

    name: str
    port_id: str
    description: str = ""

    def to_kwargs(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "port_id": self.port_id,
            "description": self.description,
        }


@dataclass(frozen=True)
class VolumeCreateOpts:
    """Create request for a Cinder volume; bootable when it has an image."""

    name: str
    size: int
    image_id: str | None = None
    volume_type: str | None = None
    availability_zone: str | None = None
    description: str = ""

    def to_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "name": self.name,
            "size": self.size,
            "description": self.description,
        }
        if self.image_id:
            kwargs["image_id"] = self.image_id
        if self.volume_type:
            kwargs["volume_type"] = self.volume_type
        if self.availability_zone:
            kwargs["availability_zone"] = self.availability_zone
        return kwargs


@dataclass(frozen=True)
class BlockDevice:
    """Block device mapping entry of a server.

    ``uuid`` names the image or volume the device is built from; blank
    local disks carry only a ``volume_size``.
    """

    uuid: str | None = None
    source_type: str = "volume"
    destination_type: str = "volume"
    boot_index: int = 0
    delete_on_termination: bool = True
    volume_size: int | None = None
    tag: str | None = None

    def to_mapping(self) -> dict[str, Any]:
        mapping: dict[str, Any] = {
            "source_type": self.source_type,
            "destination_type": self.destination_type,
            "boot_index": self.boot_index,
            "delete_on_termination": self.delete_on_termination,
        }
        if self.uuid:
            mapping["uuid"] = self.uuid
        if self.volume_size:
            mapping["volume_size"] = self.volume_size
        if self.tag:
            mapping["tag"] = self.tag
        return mapping


@dataclass(frozen=True)
class ServerCreateOpts:
    """Create request for a server."""

    name: str
    flavor_id: str
    port_ids: tuple[str, ...]
    image_id: str | None = None
    block_devices: tuple[BlockDevice, ...] = ()
    key_name: str | None = None
    availability_zone: str | None = None
    user_data: str | None = None
    config_drive: bool = False
    metadata: dict[str, str] = field(default_factory=dict)
    tags: tuple[str, ...] = ()
    server_group_id: str | None = None

    @property
    def boots_from_volume(self) -> bool:
        return any(
            b.boot_index == 0 and b.source_type == "volume" for b in self.block_devices
        )

    def to_kwargs(self) -> dict[str, Any]:
        """Build openstacksdk keyword arguments for ``create_server``."""
        kwargs: dict[str, Any] = {
            "name": self.name,
            "flavor_id": self.flavor_id,
            "networks": [{"port": port_id} for port_id in self.port_ids],
        }
        if self.block_devices:
            kwargs["block_device_mapping"] = [b.to_mapping() for b in self.block_devices]
        if self.image_id and not self.boots_from_volume:
            kwargs["image_id"] = self.image_id
        if self.key_name:
            kwargs["key_name"] = self.key_name
        if self.availability_zone:
            kwargs["availability_zone"] = self.availability_zone
        if self.user_data:
            kwargs["user_data"] = base64.b64encode(self.user_data.encode()).decode()
        if self.config_drive:
            kwargs["config_drive"] = True
        if self.metadata:
            kwargs["metadata"] = dict(self.metadata)
        if self.tags:
            kwargs["tags"] = list(self.tags)
        if self.server_group_id:
            kwargs["scheduler_hints"] = {"group": self.server_group_id}
        return kwargs


@dataclass(frozen=True)
class LoadBalancerCreateOpts:
    """Create request for an Octavia load balancer."""

    name: str
    vip_subnet_id: str
    provider: str | None = None
    description: str = ""

    def to_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "name": self.name,
            "vip_subnet_id": self.vip_subnet_id,
            "description": self.description,
        }
        if self.provider:
            kwargs["provider"] = self.provider
        return kwargs


@dataclass(frozen=True)
class ListenerCreateOpts:
    """Create request for a load balancer listener."""

    name: str
    load_balancer_id: str
    protocol_port: int
    protocol: str = "TCP"

    def to_kwargs(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "load_balancer_id": self.load_balancer_id,
            "protocol": self.protocol,
            "protocol_port": self.protocol_port,
        }


@dataclass(frozen=True)
class PoolCreateOpts:
    """Create request for a load balancer pool."""

    name: str
    listener_id: str
    lb_algorithm: str
    protocol: str = "TCP"

    def to_kwargs(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "listener_id": self.listener_id,
            "lb_algorithm": self.lb_algorithm,
            "protocol": self.protocol,
        }


@dataclass(frozen=True)
class MonitorCreateOpts:
    """Create request for a pool health monitor."""

    name: str
    pool_id: str
    delay: int
    timeout: int
    max_retries: int
    max_retries_down: int
    type: str = "TCP"

    def to_kwargs(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "pool_id": self.pool_id,
            "type": self.type,
            "delay": self.delay,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
            "max_retries_down": self.max_retries_down,
        }


@dataclass(frozen=True)
class MemberCreateOpts:
    """Create request for a pool member."""

    name: str
    address: str
    protocol_port: int
    subnet_id: str | None = None

    def to_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "name": self.name,
            "address": self.address,
            "protocol_port": self.protocol_port,
        }
        if self.subnet_id:
            kwargs["subnet_id"] = self.subnet_id
        return kwargs


@dataclass(frozen=True)
class SecurityGroupRule:
    """A security group rule as identified by its content.

    Two rules are equal when direction, ether type, protocol, port range and
    remote are equal; IDs and descriptions never take part in the comparison.
    Port numbers and protocols of ``0``/``""``/``"any"`` are normalized to
    ``None`` so declared rules compare equal to what Neutron reports.
    """

    direction: str
    ether_type: str = "IPv4"
    protocol: str | None = None
    port_range_min: int | None = None
    port_range_max: int | None = None
    remote_group_id: str | None = None
    remote_ip_prefix: str | None = None
    description: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        if self.protocol in ("", "any"):
            object.__setattr__(self, "protocol", None)
        if not self.port_range_min:
            object.__setattr__(self, "port_range_min", None)
        if not self.port_range_max:
            object.__setattr__(self, "port_range_max", None)
        if not self.remote_group_id:
            object.__setattr__(self, "remote_group_id", None)
        if not self.remote_ip_prefix:
            object.__setattr__(self, "remote_ip_prefix", None)

    def to_kwargs(self, security_group_id: str) -> dict[str, Any]:
        """Build openstacksdk keyword arguments for ``create_security_group_rule``."""
        return {
            "security_group_id": security_group_id,
            "direction": self.direction,
            "ether_type": self.ether_type,
            "protocol": self.protocol,
            "port_range_min": self.port_range_min,
            "port_range_max": self.port_range_max,
            "remote_group_id": self.remote_group_id,
            "remote_ip_prefix": self.remote_ip_prefix,
            "description": self.description,
        }

    def to_dict(self) -> dict[str, object]:
        """Convert to dict for Kubernetes status."""
        result: dict[str, object] = {
            "direction": self.direction,
            "etherType": self.ether_type,
        }
        if self.protocol:
            result["protocol"] = self.protocol
        if self.port_range_min is not None:
            result["portRangeMin"] = self.port_range_min
        if self.port_range_max is not None:
            result["portRangeMax"] = self.port_range_max
        if self.remote_group_id:
            result["remoteGroupID"] = self.remote_group_id
        if self.remote_ip_prefix:
            result["remoteIPPrefix"] = self.remote_ip_prefix
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecurityGroupRule":
        """Create from Kubernetes status dict."""
        return cls(
            direction=data["direction"],
            ether_type=data.get("etherType", "IPv4"),
            protocol=data.get("protocol"),
            port_range_min=data.get("portRangeMin"),
            port_range_max=data.get("portRangeMax"),
            remote_group_id=data.get("remoteGroupID"),
            remote_ip_prefix=data.get("remoteIPPrefix"),
            description=data.get("description", ""),
        )

    @classmethod
    def from_sdk(cls, rule: Any) -> "SecurityGroupRule":
        """Create from an openstacksdk SecurityGroupRule."""
        return cls(
            direction=rule.direction,
            ether_type=rule.ether_type or "IPv4",
            protocol=rule.protocol,
            port_range_min=rule.port_range_min,
            port_range_max=rule.port_range_max,
            remote_group_id=rule.remote_group_id,
            remote_ip_prefix=rule.remote_ip_prefix,
            description=rule.description or "",
        )


# =============================================================================
# Dataclasses for internal state and status
# =============================================================================


@dataclass(frozen=True)
class PortStatus:
    """A port created or adopted for a machine."""

    id: str
    network_id: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "networkID": self.network_id}

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "PortStatus":
        return cls(id=data["id"], network_id=data.get("networkID", ""))


@dataclass(frozen=True)
class RootVolumeStatus:
    """Boot volume of a machine.

    Once ``ready`` is true it is never reset by the operator.
    """

    id: str
    ready: bool = False

    def to_dict(self) -> dict[str, object]:
        return {"id": self.id, "ready": self.ready}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RootVolumeStatus":
        return cls(id=data["id"], ready=bool(data.get("ready", False)))


@dataclass(frozen=True)
class BlockDeviceStatus:
    """Cinder volume backing one additional block device."""

    name: str
    id: str
    ready: bool = False

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "id": self.id, "ready": self.ready}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BlockDeviceStatus":
        return cls(name=data["name"], id=data["id"], ready=bool(data.get("ready", False)))


@dataclass(frozen=True)
class LoadBalancerMemberStatus:
    """Membership of a machine's fixed IP in one pool."""

    pool_id: str
    member_id: str
    address: str
    port: int

    def to_dict(self) -> dict[str, object]:
        return {
            "poolID": self.pool_id,
            "memberID": self.member_id,
            "address": self.address,
            "port": self.port,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LoadBalancerMemberStatus":
        return cls(
            pool_id=data["poolID"],
            member_id=data["memberID"],
            address=data["address"],
            port=int(data["port"]),
        )


@dataclass(frozen=True)
class Address:
    """Machine address as reported in status."""

    type: Literal["InternalIP", "ExternalIP"]
    address: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "address": self.address}

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "Address":
        return cls(type=data["type"], address=data["address"])  # type: ignore[arg-type]


@dataclass(frozen=True)
class ResolvedMachineSpec:
    """Concrete IDs resolved once from the machine spec.

    The machine spec is immutable after creation, so once this block is
    persisted it is reused verbatim by every later reconcile.
    """

    image_id: str
    flavor_id: str
    server_group_id: str | None = None
    ports: tuple[PortCreateOpts, ...] = ()

    def to_dict(self) -> dict[str, object]:
        result: dict[str, object] = {
            "imageID": self.image_id,
            "flavorID": self.flavor_id,
            "ports": [p.to_dict() for p in self.ports],
        }
        if self.server_group_id:
            result["serverGroupID"] = self.server_group_id
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResolvedMachineSpec":
        return cls(
            image_id=data["imageID"],
            flavor_id=data["flavorID"],
            server_group_id=data.get("serverGroupID"),
            ports=tuple(PortCreateOpts.from_dict(p) for p in data.get("ports", [])),
        )


@dataclass
class MachineResources:
    """Cloud resources owned by one machine.

    ``ports[i]`` always corresponds to ``ResolvedMachineSpec.ports[i]``: an
    entry at index *i* implies ports ``0..i`` exist in OpenStack, so the
    first missing index is the next port to create.
    """

    ports: list[PortStatus] = field(default_factory=list)
    root_volume: RootVolumeStatus | None = None
    block_devices: list[BlockDeviceStatus] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        result: dict[str, object] = {"ports": [p.to_dict() for p in self.ports]}
        if self.root_volume:
            result["rootVolume"] = self.root_volume.to_dict()
        if self.block_devices:
            result["blockDevices"] = [b.to_dict() for b in self.block_devices]
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MachineResources":
        root_volume = data.get("rootVolume")
        return cls(
            ports=[PortStatus.from_dict(p) for p in data.get("ports", []) or []],
            root_volume=RootVolumeStatus.from_dict(root_volume) if root_volume else None,
            block_devices=[
                BlockDeviceStatus.from_dict(b) for b in data.get("blockDevices", []) or []
            ],
        )


@dataclass(frozen=True)
class Condition:
    """Kubernetes-style condition."""

    type: str
    status: ConditionStatus
    reason: str = ""
    message: str = ""
    last_transition_time: str = ""

    def to_dict(self) -> dict[str, str]:
        """Convert to dict for Kubernetes status."""
        return {
            "type": self.type,
            "status": self.status.value,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, str]) -> "Condition":
        try:
            status = ConditionStatus(data.get("status", "Unknown"))
        except ValueError:
            status = ConditionStatus.UNKNOWN
        return cls(
            type=data["type"],
            status=status,
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            last_transition_time=data.get("lastTransitionTime", ""),
        )


def _set_condition(
    conditions: list[Condition],
    condition_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
) -> None:
    from utils import now_iso

    for i, cond in enumerate(conditions):
        if cond.type == condition_type:
            conditions[i] = Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_transition_time=(
                    now_iso() if cond.status != status else cond.last_transition_time
                ),
            )
            return

    conditions.append(
        Condition(
            type=condition_type,
            status=status,
            reason=reason,
            message=message,
            last_transition_time=now_iso(),
        )
    )


@dataclass
class MachineStatus:
    """Status of an OpenstackMachine resource."""

    phase: Phase = Phase.PENDING
    ready: bool = False
    instance_id: str | None = None
    instance_state: InstanceState = InstanceState.ABSENT
    addresses: list[Address] = field(default_factory=list)
    floating_ip: str | None = None
    resolved: ResolvedMachineSpec | None = None
    resources: MachineResources = field(default_factory=MachineResources)
    load_balancer_members: list[LoadBalancerMemberStatus] = field(default_factory=list)
    failure_reason: str | None = None
    failure_message: str | None = None
    conditions: list[Condition] = field(default_factory=list)
    last_sync_time: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to dict for Kubernetes status."""
        result: dict[str, object] = {
            "phase": self.phase.value,
            "ready": self.ready,
            "instanceState": self.instance_state.value,
            "resources": self.resources.to_dict(),
        }
        if self.instance_id:
            result["instanceID"] = self.instance_id
        if self.addresses:
            result["addresses"] = [a.to_dict() for a in self.addresses]
        if self.floating_ip:
            result["floatingIP"] = self.floating_ip
        if self.resolved:
            result["resolved"] = self.resolved.to_dict()
        if self.load_balancer_members:
            result["loadBalancerMembers"] = [
                m.to_dict() for m in self.load_balancer_members
            ]
        if self.failure_reason:
            result["failureReason"] = self.failure_reason
        if self.failure_message:
            result["failureMessage"] = self.failure_message
        if self.conditions:
            result["conditions"] = [c.to_dict() for c in self.conditions]
        if self.last_sync_time:
            result["lastSyncTime"] = self.last_sync_time
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MachineStatus":
        """Create from Kubernetes status dict."""
        try:
            phase = Phase(data.get("phase", "Pending"))
        except ValueError:
            phase = Phase.PENDING
        try:
            instance_state = InstanceState(data.get("instanceState", "Absent"))
        except ValueError:
            instance_state = InstanceState.ABSENT

        resolved = data.get("resolved")
        return cls(
            phase=phase,
            ready=bool(data.get("ready", False)),
            instance_id=data.get("instanceID"),
            instance_state=instance_state,
            addresses=[Address.from_dict(a) for a in data.get("addresses", []) or []],
            floating_ip=data.get("floatingIP"),
            resolved=ResolvedMachineSpec.from_dict(resolved) if resolved else None,
            resources=MachineResources.from_dict(data.get("resources") or {}),
            load_balancer_members=[
                LoadBalancerMemberStatus.from_dict(m)
                for m in data.get("loadBalancerMembers", []) or []
            ],
            failure_reason=data.get("failureReason"),
            failure_message=data.get("failureMessage"),
            conditions=[Condition.from_dict(c) for c in data.get("conditions", []) or []],
            last_sync_time=data.get("lastSyncTime"),
        )

    def set_condition(
        self,
        condition_type: str,
        status: ConditionStatus,
        reason: str = "",
        message: str = "",
    ) -> None:
        """Set or update a condition."""
        _set_condition(self.conditions, condition_type, status, reason, message)

    def set_failure(self, reason: str, message: str) -> None:
        """Record a terminal failure; reconciliation stops advancing."""
        self.failure_reason = reason
        self.failure_message = message
        self.phase = Phase.ERROR
        self.ready = False


@dataclass(frozen=True)
class SecurityGroupStatus:
    """Status of a managed security group."""

    name: str
    id: str
    rules: tuple[SecurityGroupRule, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Convert to dict for Kubernetes status."""
        return {
            "name": self.name,
            "id": self.id,
            "rules": [r.to_dict() for r in self.rules],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecurityGroupStatus":
        """Create from Kubernetes status dict."""
        return cls(
            name=data.get("name", ""),
            id=data.get("id", ""),
            rules=tuple(SecurityGroupRule.from_dict(r) for r in data.get("rules", [])),
        )


@dataclass(frozen=True)
class NetworkStatus:
    """Status of the cluster network."""

    id: str
    name: str
    subnet_ids: tuple[str, ...] = ()
    router_id: str | None = None
    managed: bool = False

    def to_dict(self) -> dict[str, object]:
        """Convert to dict for Kubernetes status."""
        result: dict[str, object] = {
            "id": self.id,
            "name": self.name,
            "subnetIDs": list(self.subnet_ids),
            "managed": self.managed,
        }
        if self.router_id:
            result["routerID"] = self.router_id
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NetworkStatus":
        """Create from Kubernetes status dict."""
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            subnet_ids=tuple(data.get("subnetIDs", [])),
            router_id=data.get("routerID"),
            managed=bool(data.get("managed", False)),
        )


@dataclass(frozen=True)
class LoadBalancerStatus:
    """Status of the API server load balancer."""

    id: str
    name: str
    vip_address: str = ""
    vip_port_id: str = ""
    provider: str | None = None
    floating_ip: str | None = None

    def to_dict(self) -> dict[str, object]:
        result: dict[str, object] = {
            "id": self.id,
            "name": self.name,
            "vipAddress": self.vip_address,
            "vipPortID": self.vip_port_id,
        }
        if self.provider:
            result["provider"] = self.provider
        if self.floating_ip:
            result["floatingIP"] = self.floating_ip
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LoadBalancerStatus":
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            vip_address=data.get("vipAddress", ""),
            vip_port_id=data.get("vipPortID", ""),
            provider=data.get("provider"),
            floating_ip=data.get("floatingIP"),
        )


@dataclass
class ClusterStatus:
    """Status of an OpenstackCluster resource."""

    phase: Phase = Phase.PENDING
    ready: bool = False
    network: NetworkStatus | None = None
    external_network_id: str | None = None
    security_groups: dict[str, SecurityGroupStatus] = field(default_factory=dict)
    load_balancer: LoadBalancerStatus | None = None
    api_server_floating_ip: str | None = None
    bastion: MachineStatus | None = None
    failure_reason: str | None = None
    failure_message: str | None = None
    conditions: list[Condition] = field(default_factory=list)
    last_sync_time: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to dict for Kubernetes status."""
        result: dict[str, object] = {"phase": self.phase.value, "ready": self.ready}
        if self.network:
            result["network"] = self.network.to_dict()
        if self.external_network_id:
            result["externalNetworkID"] = self.external_network_id
        if self.security_groups:
            result["securityGroups"] = {
                role: sg.to_dict() for role, sg in self.security_groups.items()
            }
        if self.load_balancer:
            result["loadBalancer"] = self.load_balancer.to_dict()
        if self.api_server_floating_ip:
            result["apiServerFloatingIP"] = self.api_server_floating_ip
        if self.bastion:
            result["bastion"] = self.bastion.to_dict()
        if self.failure_reason:
            result["failureReason"] = self.failure_reason
        if self.failure_message:
            result["failureMessage"] = self.failure_message
        if self.conditions:
            result["conditions"] = [c.to_dict() for c in self.conditions]
        if self.last_sync_time:
            result["lastSyncTime"] = self.last_sync_time
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ClusterStatus":
        """Create from Kubernetes status dict."""
        try:
            phase = Phase(data.get("phase", "Pending"))
        except ValueError:
            phase = Phase.PENDING
        network = data.get("network")
        load_balancer = data.get("loadBalancer")
        bastion = data.get("bastion")
        return cls(
            phase=phase,
            ready=bool(data.get("ready", False)),
            network=NetworkStatus.from_dict(network) if network else None,
            external_network_id=data.get("externalNetworkID"),
            security_groups={
                role: SecurityGroupStatus.from_dict(sg)
                for role, sg in (data.get("securityGroups") or {}).items()
            },
            load_balancer=(
                LoadBalancerStatus.from_dict(load_balancer) if load_balancer else None
            ),
            api_server_floating_ip=data.get("apiServerFloatingIP"),
            bastion=MachineStatus.from_dict(bastion) if bastion else None,
            failure_reason=data.get("failureReason"),
            failure_message=data.get("failureMessage"),
            conditions=[Condition.from_dict(c) for c in data.get("conditions", []) or []],
            last_sync_time=data.get("lastSyncTime"),
        )

    def set_condition(
        self,
        condition_type: str,
        status: ConditionStatus,
        reason: str = "",
        message: str = "",
    ) -> None:
        """Set or update a condition."""
        _set_condition(self.conditions, condition_type, status, reason, message)

    def set_failure(self, reason: str, message: str) -> None:
        """Record a terminal failure."""
        self.failure_reason = reason
        self.failure_message = message
        self.phase = Phase.ERROR
        self.ready = False


@dataclass
class ServerGroupStatus:
    """Status of an OpenstackServerGroup resource."""

    phase: Phase = Phase.PENDING
    ready: bool = False
    id: str | None = None
    name: str | None = None
    failure_reason: str | None = None
    failure_message: str | None = None

    def to_dict(self) -> dict[str, object]:
        result: dict[str, object] = {"phase": self.phase.value, "ready": self.ready}
        if self.id:
            result["id"] = self.id
        if self.name:
            result["name"] = self.name
        if self.failure_reason:
            result["failureReason"] = self.failure_reason
        if self.failure_message:
            result["failureMessage"] = self.failure_message
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServerGroupStatus":
        try:
            phase = Phase(data.get("phase", "Pending"))
        except ValueError:
            phase = Phase.PENDING
        return cls(
            phase=phase,
            ready=bool(data.get("ready", False)),
            id=data.get("id"),
            name=data.get("name"),
            failure_reason=data.get("failureReason"),
            failure_message=data.get("failureMessage"),
        )

    def set_failure(self, reason: str, message: str) -> None:
        self.failure_reason = reason
        self.failure_message = message
        self.phase = Phase.ERROR
        self.ready = False


@dataclass(frozen=True)
class ClusterContext:
    """Read-only view of cluster state consumed by machine reconciles.

    Every field may still be missing while the cluster reconciles; readers
    raise ``DependencyNotReadyError`` instead of failing.
    """

    cluster_name: str
    network_id: str | None = None
    subnet_ids: tuple[str, ...] = ()
    external_network_id: str | None = None
    security_group_ids: dict[str, str] = field(default_factory=dict)
    managed_security_groups: bool = False
    load_balancer_enabled: bool = False
    load_balancer_name: str | None = None
    load_balancer_ports: tuple[int, ...] = ()
    api_server_floating_ip: str | None = None
    disable_api_server_floating_ip: bool = False
    tags: tuple[str, ...] = ()

    @classmethod
    def from_cluster(
        cls,
        name: str,
        spec: OpenstackClusterSpec | dict[str, Any],
        status: dict[str, Any] | None,
    ) -> "ClusterContext":
        """Build from an OpenstackCluster object's spec and status."""
        cluster_status = ClusterStatus.from_dict(status or {})
        lb_spec = spec.get("apiServerLoadBalancer") or {}
        lb_enabled = bool(lb_spec.get("enabled", False))
        api_port = spec.get("apiServerPort", DEFAULT_API_SERVER_PORT)
        ports = [api_port] + [
            p for p in lb_spec.get("additionalPorts", []) if p != api_port
        ]
        return cls(
            cluster_name=name,
            network_id=cluster_status.network.id if cluster_status.network else None,
            subnet_ids=(
                cluster_status.network.subnet_ids if cluster_status.network else ()
            ),
            external_network_id=cluster_status.external_network_id,
            security_group_ids={
                role: sg.id for role, sg in cluster_status.security_groups.items()
            },
            managed_security_groups=bool(spec.get("managedSecurityGroups", False)),
            load_balancer_enabled=lb_enabled,
            load_balancer_name=load_balancer_name(name) if lb_enabled else None,
            load_balancer_ports=tuple(ports) if lb_enabled else (),
            api_server_floating_ip=(
                spec.get("apiServerFloatingIP") or cluster_status.api_server_floating_ip
            ),
            disable_api_server_floating_ip=bool(
                spec.get("disableAPIServerFloatingIP", False)
            ),
            tags=tuple(spec.get("tags", [])),
        )


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of one reconcile pass.

    ``done`` is false when the pass stopped at a poll step; the caller
    should invoke the reconcile again later.
    """

    done: bool
    reason: str = ""

    @classmethod
    def finished(cls) -> "ReconcileResult":
        return cls(done=True)

    @classmethod
    def requeue(cls, reason: str) -> "ReconcileResult":
        return cls(done=False, reason=reason)


# =============================================================================
# Exceptions
# =============================================================================


class OperatorError(Exception):
    """Base exception for operator errors."""

    pass


class ResourceNotFoundError(OperatorError):
    """A required OpenStack resource was not found."""

    pass


class ConflictError(OperatorError):
    """OpenStack reported a conflict (HTTP 409)."""

    pass


class OpenStackAPIError(OperatorError):
    """Error communicating with OpenStack API."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DependencyNotReadyError(OperatorError):
    """Cluster-provided state needed by a machine is not available yet."""

    pass


class ResourceInUseError(OperatorError):
    """A resource can't be deleted because others still reference it."""

    pass


class TerminalError(OperatorError):
    """Failure that recurs identically on retry; needs a spec change."""

    reason = "Error"


class AmbiguousResourceError(TerminalError):
    """Several resources match a name that must be unique."""

    reason = "AmbiguousAdoption"


class ConfigurationError(TerminalError):
    """Invalid or missing configuration."""

    reason = "InvalidConfiguration"


class ResourceFailedError(TerminalError):
    """A cloud resource entered an unrecoverable state."""

    def __init__(self, message: str, reason: str = "CreateError") -> None:
        super().__init__(message)
        self.reason = reason


class InvariantViolationError(OperatorError):
    """The in-memory cloud was asked to do something OpenStack would refuse."""

    pass


TRANSIENT_ERRORS: tuple[type[OperatorError], ...] = (
    ConflictError,
    OpenStackAPIError,
    DependencyNotReadyError,
    ResourceInUseError,
)
