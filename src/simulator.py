"""In-memory OpenStack cloud implementing the ``OpenStackClient`` verbs.

Resources get deterministic IDs (``port-1``, ``vol-2``, ...) and every
asynchronous state change (volumes becoming available, servers building or
being deleted, load balancers leaving ``PENDING_*``) only happens when the
test calls :meth:`FakeOpenStackClient.advance`. Every call is journalled so
tests can assert on ordering and on the absence of mutating calls.

The fake enforces the rules of the real services that reconciliation relies
on (Octavia rejecting changes while a load balancer is pending, Neutron
refusing to delete a trunk parent, Cinder refusing to delete an attached
volume) by raising the same errors the real client would.
"""

import itertools
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, NamedTuple

from openstack.block_storage.v3.volume import Volume
from openstack.compute.v2.flavor import Flavor
from openstack.compute.v2.server import Server
from openstack.compute.v2.server_group import ServerGroup
from openstack.image.v2.image import Image
from openstack.load_balancer.v2.health_monitor import HealthMonitor
from openstack.load_balancer.v2.listener import Listener
from openstack.load_balancer.v2.load_balancer import LoadBalancer
from openstack.load_balancer.v2.member import Member
from openstack.load_balancer.v2.pool import Pool
from openstack.network.v2.extension import Extension
from openstack.network.v2.floating_ip import FloatingIP
from openstack.network.v2.network import Network
from openstack.network.v2.port import Port
from openstack.network.v2.router import Router
from openstack.network.v2.security_group import SecurityGroup
from openstack.network.v2.security_group_rule import SecurityGroupRule as SDKSecurityGroupRule
from openstack.network.v2.subnet import Subnet
from openstack.network.v2.trunk import Trunk

from constants import LB_ACTIVE, LB_PENDING_DELETE
from models import (
    ConflictError,
    FixedIP,
    InvariantViolationError,
    ListenerCreateOpts,
    LoadBalancerCreateOpts,
    MemberCreateOpts,
    MonitorCreateOpts,
    OpenStackAPIError,
    PoolCreateOpts,
    PortCreateOpts,
    ResourceNotFoundError,
    SecurityGroupRule,
    ServerCreateOpts,
    TrunkCreateOpts,
    VolumeCreateOpts,
)

logger = logging.getLogger(__name__)

MUTATING_PREFIXES = (
    "create_",
    "delete_",
    "update_",
    "set_",
    "associate_",
    "add_",
    "remove_",
)

_RULE_FIELDS = (
    "direction",
    "ether_type",
    "protocol",
    "port_range_min",
    "port_range_max",
    "remote_group_id",
    "remote_ip_prefix",
)

_SDK_TYPES: dict[str, type] = {
    "server": Server,
    "flavor": Flavor,
    "server_group": ServerGroup,
    "image": Image,
    "volume": Volume,
    "network": Network,
    "subnet": Subnet,
    "router": Router,
    "port": Port,
    "trunk": Trunk,
    "security_group": SecurityGroup,
    "security_group_rule": SDKSecurityGroupRule,
    "floating_ip": FloatingIP,
    "extension": Extension,
    "load_balancer": LoadBalancer,
    "listener": Listener,
    "pool": Pool,
    "health_monitor": HealthMonitor,
    "member": Member,
}

_ID_PREFIXES = {
    "server": "server",
    "server_group": "sg",
    "volume": "vol",
    "network": "net",
    "subnet": "subnet",
    "router": "router",
    "port": "port",
    "trunk": "trunk",
    "security_group": "secgroup",
    "security_group_rule": "rule",
    "floating_ip": "fip",
    "load_balancer": "lb",
    "listener": "listener",
    "pool": "pool",
    "health_monitor": "monitor",
    "member": "member",
    "image": "image",
    "flavor": "flavor",
    "extension": "ext",
}


class Call(NamedTuple):
    """One journalled client call."""

    method: str
    target: str

    @property
    def mutating(self) -> bool:
        return self.method.startswith(MUTATING_PREFIXES)


@dataclass
class _Transition:
    remaining: int
    apply: Callable[[], None]
    description: str


class FakeOpenStackClient:
    """Deterministic stand-in for :class:`openstack_client.OpenStackClient`."""

    def __init__(
        self,
        volume_ready_ticks: int = 1,
        server_active_ticks: int = 1,
        server_delete_ticks: int = 1,
        lb_ready_ticks: int = 1,
    ) -> None:
        self.volume_ready_ticks = volume_ready_ticks
        self.server_active_ticks = server_active_ticks
        self.server_delete_ticks = server_delete_ticks
        self.lb_ready_ticks = lb_ready_ticks

        self.calls: list[Call] = []
        # Final status a server/volume reaches once built, keyed by name
        self.server_outcomes: dict[str, str] = {}
        self.volume_outcomes: dict[str, str] = {}

        self._db: dict[str, dict[str, dict[str, Any]]] = {kind: {} for kind in _SDK_TYPES}
        self._counters: dict[str, Any] = {}
        self._pending: list[_Transition] = []
        self._failures: dict[str, list[Exception]] = {}
        self._ip_counter = itertools.count(10)
        self._fip_counter = itertools.count(10)
        self.now = 0

    # -------------------------------------------------------------------------
    # Test harness helpers
    # -------------------------------------------------------------------------

    def advance(self, ticks: int = 1) -> None:
        """Move the virtual clock forward, applying due state transitions."""
        if ticks < 1:
            raise InvariantViolationError(f"advance() needs a positive tick count, got {ticks}")
        for _ in range(ticks):
            self.now += 1
            due: list[_Transition] = []
            for transition in self._pending:
                transition.remaining -= 1
                if transition.remaining <= 0:
                    due.append(transition)
            self._pending = [t for t in self._pending if t.remaining > 0]
            for transition in due:
                logger.debug("t=%d: %s", self.now, transition.description)
                transition.apply()

    def settle(self, max_ticks: int = 100) -> None:
        """Advance until no transition is pending."""
        for _ in range(max_ticks):
            if not self._pending:
                return
            self.advance()
        raise InvariantViolationError(f"transitions still pending after {max_ticks} ticks")

    def fail_next(self, method: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``method`` raise ``error``."""
        self._failures.setdefault(method, []).extend([error] * times)

    def mutating_calls(self) -> list[Call]:
        return [c for c in self.calls if c.mutating]

    def call_names(self) -> list[str]:
        return [c.method for c in self.calls]

    def reset_calls(self) -> None:
        self.calls.clear()

    def seed(self, kind: str, **attrs: Any) -> str:
        """Insert a pre-existing resource and return its ID."""
        if kind not in self._db:
            raise InvariantViolationError(f"unknown resource kind {kind!r}")
        resource_id = attrs.pop("id", None) or self._new_id(kind)
        if resource_id in self._db[kind]:
            raise InvariantViolationError(f"{kind} {resource_id} already exists")
        record = {"id": resource_id, **attrs}
        self._db[kind][resource_id] = record
        return resource_id

    def add_image(self, name: str, image_id: str | None = None, tags: list[str] | None = None) -> str:
        return self.seed("image", id=image_id, name=name, tags=list(tags or []), status="active")

    def add_flavor(self, name: str, flavor_id: str | None = None) -> str:
        return self.seed("flavor", id=flavor_id, name=name)

    def add_network(
        self,
        name: str,
        network_id: str | None = None,
        cidrs: list[str] | None = None,
        external: bool = False,
    ) -> str:
        network_id = self.seed(
            "network",
            id=network_id,
            name=name,
            subnet_ids=[],
            is_router_external=external,
            tags=[],
        )
        for i, cidr in enumerate(cidrs or []):
            subnet_id = self.seed(
                "subnet", name=f"{name}-{i}", network_id=network_id, cidr=cidr, tags=[]
            )
            self._db["network"][network_id]["subnet_ids"].append(subnet_id)
        return network_id

    def add_extension(self, alias: str) -> str:
        return self.seed("extension", id=alias, alias=alias, name=alias)

    def record(self, kind: str, resource_id: str) -> dict[str, Any]:
        """Raw state of a resource, for assertions."""
        return self._db[kind][resource_id]

    def all(self, kind: str) -> list[dict[str, Any]]:
        return list(self._db[kind].values())

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _new_id(self, kind: str) -> str:
        counter = self._counters.setdefault(kind, itertools.count(1))
        while True:
            # Skip IDs taken by resources seeded with an explicit ID
            candidate = f"{_ID_PREFIXES[kind]}-{next(counter)}"
            if candidate not in self._db[kind]:
                return candidate

    def _enter(self, method: str, target: str = "") -> None:
        self.calls.append(Call(method, target))
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    def _schedule(self, ticks: int, apply: Callable[[], None], description: str) -> None:
        if ticks <= 0:
            apply()
        else:
            self._pending.append(_Transition(ticks, apply, description))

    def _sdk(self, kind: str, record: dict[str, Any]) -> Any:
        return _SDK_TYPES[kind](**record)

    def _get(self, kind: str, resource_id: str) -> dict[str, Any]:
        record = self._db[kind].get(resource_id)
        if record is None:
            raise ResourceNotFoundError(f"{kind} {resource_id} could not be found")
        return record

    def _list(self, kind: str, filters: dict[str, Any]) -> list[Any]:
        return [
            self._sdk(kind, record)
            for record in self._db[kind].values()
            if self._matches(kind, record, filters)
        ]

    @staticmethod
    def _matches(kind: str, record: dict[str, Any], filters: dict[str, Any]) -> bool:
        for key, wanted in filters.items():
            if wanted is None:
                continue
            actual = record.get(key)
            if kind == "server" and key == "name":
                if actual is None or not re.search(wanted, actual):
                    return False
            elif key == "tags":
                if not set(wanted).issubset(record.get("tags") or []):
                    return False
            elif actual != wanted:
                return False
        return True

    def _allocate_ip(self) -> str:
        return f"10.0.0.{next(self._ip_counter)}"

    # -------------------------------------------------------------------------
    # Compute operations
    # -------------------------------------------------------------------------

    def list_servers(self, **filters: Any) -> list[Server]:
        self._enter("list_servers", str(filters.get("name", "")))
        return self._list("server", filters)

    def get_server(self, server_id: str) -> Server:
        self._enter("get_server", server_id)
        return self._sdk("server", self._get("server", server_id))

    def create_server(self, opts: ServerCreateOpts) -> Server:
        self._enter("create_server", opts.name)
        if opts.flavor_id not in self._db["flavor"]:
            raise OpenStackAPIError(f"Flavor {opts.flavor_id} could not be found", 400)
        ports = []
        for port_id in opts.port_ids:
            port = self._db["port"].get(port_id)
            if port is None:
                raise OpenStackAPIError(f"Port {port_id} not found", 400)
            if port.get("device_id"):
                raise ConflictError(f"Port {port_id} is still in use")
            ports.append(port)
        volumes = []
        for device in opts.block_devices:
            if device.source_type != "volume":
                continue
            volume = self._db["volume"].get(device.uuid)
            if volume is None or volume["status"] != "available":
                raise OpenStackAPIError(f"Volume {device.uuid} is not available", 400)
            volumes.append((volume, device.delete_on_termination))

        server_id = self._new_id("server")
        addresses: dict[str, list[dict[str, Any]]] = {}
        for port in ports:
            port["device_id"] = server_id
            port["device_owner"] = "compute:nova"
            network = self._db["network"].get(port["network_id"], {})
            for ip in port.get("fixed_ips", []):
                addresses.setdefault(network.get("name", port["network_id"]), []).append(
                    {"addr": ip["ip_address"], "version": 4, "OS-EXT-IPS:type": "fixed"}
                )
        for volume, delete_on_termination in volumes:
            volume["status"] = "in-use"
            volume["attachments"] = [
                {"server_id": server_id, "delete_on_termination": delete_on_termination}
            ]

        record = {
            "id": server_id,
            "name": opts.name,
            "status": "BUILD",
            "flavor_id": opts.flavor_id,
            "image_id": opts.image_id,
            "addresses": addresses,
            "key_name": opts.key_name,
            "availability_zone": opts.availability_zone,
            "metadata": dict(opts.metadata),
            "tags": list(opts.tags),
            "scheduler_hints": (
                {"group": opts.server_group_id} if opts.server_group_id else {}
            ),
            "block_device_mapping": [b.to_mapping() for b in opts.block_devices],
            "config_drive": opts.config_drive,
            "user_data": opts.user_data,
        }
        self._db["server"][server_id] = record

        final_status = self.server_outcomes.get(opts.name, "ACTIVE")

        def finish_build() -> None:
            if server_id in self._db["server"] and not record.get("_deleting"):
                record["status"] = final_status

        self._schedule(self.server_active_ticks, finish_build, f"server {server_id} -> {final_status}")
        return self._sdk("server", record)

    def delete_server(self, server_id: str) -> None:
        self._enter("delete_server", server_id)
        record = self._get("server", server_id)
        if record.get("_deleting"):
            return
        record["_deleting"] = True

        def finish_delete() -> None:
            self._db["server"].pop(server_id, None)
            for port in self._db["port"].values():
                if port.get("device_id") == server_id:
                    port["device_id"] = ""
                    port["device_owner"] = ""
            for volume_id, volume in list(self._db["volume"].items()):
                for attachment in volume.get("attachments", []):
                    if attachment["server_id"] != server_id:
                        continue
                    if attachment.get("delete_on_termination"):
                        self._db["volume"].pop(volume_id)
                    else:
                        volume["status"] = "available"
                        volume["attachments"] = []

        self._schedule(self.server_delete_ticks, finish_delete, f"server {server_id} deleted")

    def list_flavors(self, **filters: Any) -> list[Flavor]:
        self._enter("list_flavors")
        return self._list("flavor", filters)

    def list_server_groups(self, **filters: Any) -> list[ServerGroup]:
        self._enter("list_server_groups")
        return self._list("server_group", filters)

    def create_server_group(self, name: str, policy: str) -> ServerGroup:
        self._enter("create_server_group", name)
        group_id = self.seed("server_group", name=name, policy=policy, policies=[policy])
        return self._sdk("server_group", self._db["server_group"][group_id])

    def delete_server_group(self, server_group_id: str) -> None:
        self._enter("delete_server_group", server_group_id)
        self._get("server_group", server_group_id)
        del self._db["server_group"][server_group_id]

    # -------------------------------------------------------------------------
    # Image operations
    # -------------------------------------------------------------------------

    def list_images(self, **filters: Any) -> list[Image]:
        self._enter("list_images", str(filters.get("name", "")))
        return self._list("image", filters)

    # -------------------------------------------------------------------------
    # Block storage operations
    # -------------------------------------------------------------------------

    def list_volumes(self, **filters: Any) -> list[Volume]:
        self._enter("list_volumes", str(filters.get("name", "")))
        return self._list("volume", filters)

    def get_volume(self, volume_id: str) -> Volume:
        self._enter("get_volume", volume_id)
        return self._sdk("volume", self._get("volume", volume_id))

    def create_volume(self, opts: VolumeCreateOpts) -> Volume:
        self._enter("create_volume", opts.name)
        volume_id = self._new_id("volume")
        record = {
            "id": volume_id,
            "name": opts.name,
            "size": opts.size,
            "status": "creating",
            "attachments": [],
            "image_id": opts.image_id,
            "volume_type": opts.volume_type,
            "availability_zone": opts.availability_zone,
            "description": opts.description,
        }
        self._db["volume"][volume_id] = record
        final_status = self.volume_outcomes.get(opts.name, "available")

        def finish_create() -> None:
            if record["status"] == "creating":
                record["status"] = final_status

        self._schedule(self.volume_ready_ticks, finish_create, f"volume {volume_id} -> {final_status}")
        return self._sdk("volume", record)

    def delete_volume(self, volume_id: str) -> None:
        self._enter("delete_volume", volume_id)
        record = self._get("volume", volume_id)
        if record.get("attachments"):
            raise OpenStackAPIError(
                f"Volume {volume_id} status must be available or error, but is in-use", 400
            )
        del self._db["volume"][volume_id]

    # -------------------------------------------------------------------------
    # Network operations
    # -------------------------------------------------------------------------

    def list_extensions(self) -> list[Extension]:
        self._enter("list_extensions")
        return self._list("extension", {})

    def set_tags(self, resource: Any, tags: list[str]) -> None:
        self._enter("set_tags", resource.id)
        for kind in ("port", "trunk", "network", "subnet", "router", "security_group"):
            if resource.id in self._db[kind]:
                self._db[kind][resource.id]["tags"] = list(tags)
                return
        raise ResourceNotFoundError(f"resource {resource.id} could not be found")

    def list_networks(self, **filters: Any) -> list[Network]:
        self._enter("list_networks", str(filters.get("name", "")))
        return self._list("network", filters)

    def get_network(self, network_id: str) -> Network:
        self._enter("get_network", network_id)
        return self._sdk("network", self._get("network", network_id))

    def create_network(self, name: str, description: str = "") -> Network:
        self._enter("create_network", name)
        network_id = self.seed(
            "network", name=name, description=description, subnet_ids=[], tags=[],
            is_router_external=False,
        )
        return self._sdk("network", self._db["network"][network_id])

    def delete_network(self, network_id: str) -> None:
        self._enter("delete_network", network_id)
        record = self._get("network", network_id)
        if any(p["network_id"] == network_id for p in self._db["port"].values()):
            raise ConflictError(f"Network {network_id} has ports in use")
        for subnet_id in record.get("subnet_ids", []):
            self._db["subnet"].pop(subnet_id, None)
        del self._db["network"][network_id]

    def list_subnets(self, **filters: Any) -> list[Subnet]:
        self._enter("list_subnets", str(filters.get("network_id", "")))
        return self._list("subnet", filters)

    def create_subnet(
        self,
        name: str,
        network_id: str,
        cidr: str,
        dns_nameservers: list[str] | None = None,
        description: str = "",
    ) -> Subnet:
        self._enter("create_subnet", name)
        network = self._get("network", network_id)
        subnet_id = self.seed(
            "subnet",
            name=name,
            network_id=network_id,
            cidr=cidr,
            dns_nameservers=list(dns_nameservers or []),
            description=description,
            tags=[],
        )
        network["subnet_ids"].append(subnet_id)
        return self._sdk("subnet", self._db["subnet"][subnet_id])

    def delete_subnet(self, subnet_id: str) -> None:
        self._enter("delete_subnet", subnet_id)
        record = self._get("subnet", subnet_id)
        for router in self._db["router"].values():
            if subnet_id in router.get("interfaces", []):
                raise ConflictError(f"Subnet {subnet_id} is attached to router {router['id']}")
        network = self._db["network"].get(record["network_id"])
        if network:
            network["subnet_ids"].remove(subnet_id)
        del self._db["subnet"][subnet_id]

    def list_routers(self, **filters: Any) -> list[Router]:
        self._enter("list_routers", str(filters.get("name", "")))
        return self._list("router", filters)

    def create_router(
        self,
        name: str,
        external_network_id: str | None = None,
        description: str = "",
    ) -> Router:
        self._enter("create_router", name)
        router_id = self.seed(
            "router",
            name=name,
            description=description,
            external_gateway_info=(
                {"network_id": external_network_id} if external_network_id else None
            ),
            interfaces=[],
            tags=[],
        )
        return self._sdk("router", self._db["router"][router_id])

    def add_router_interface(self, router_id: str, subnet_id: str) -> None:
        self._enter("add_router_interface", router_id)
        router = self._get("router", router_id)
        subnet = self._get("subnet", subnet_id)
        if subnet_id in router["interfaces"]:
            raise OpenStackAPIError(f"Router already has a port on subnet {subnet_id}", 400)
        router["interfaces"].append(subnet_id)
        self.seed(
            "port",
            name="",
            network_id=subnet["network_id"],
            fixed_ips=[{"subnet_id": subnet_id, "ip_address": self._allocate_ip()}],
            device_id=router_id,
            device_owner="network:router_interface",
            security_group_ids=[],
            tags=[],
        )

    def remove_router_interface(self, router_id: str, subnet_id: str) -> None:
        self._enter("remove_router_interface", router_id)
        router = self._get("router", router_id)
        if subnet_id not in router["interfaces"]:
            raise ResourceNotFoundError(f"Router {router_id} has no interface on {subnet_id}")
        router["interfaces"].remove(subnet_id)
        self._db["port"] = {
            port_id: port
            for port_id, port in self._db["port"].items()
            if not (
                port.get("device_id") == router_id
                and any(ip["subnet_id"] == subnet_id for ip in port["fixed_ips"])
            )
        }

    def delete_router(self, router_id: str) -> None:
        self._enter("delete_router", router_id)
        router = self._get("router", router_id)
        if router["interfaces"]:
            raise ConflictError(f"Router {router_id} still has interfaces")
        del self._db["router"][router_id]

    # -------------------------------------------------------------------------
    # Port and trunk operations
    # -------------------------------------------------------------------------

    def list_ports(self, **filters: Any) -> list[Port]:
        self._enter("list_ports", str(filters.get("name", "")))
        return self._list("port", filters)

    def create_port(self, opts: PortCreateOpts) -> Port:
        self._enter("create_port", opts.name)
        network = self._get("network", opts.network_id)
        fixed_ips = []
        for ip in opts.fixed_ips or (FixedIP(),):
            subnet_id = ip.subnet_id or next(iter(network.get("subnet_ids", [])), None)
            if subnet_id is None:
                continue
            fixed_ips.append(
                {"subnet_id": subnet_id, "ip_address": ip.ip_address or self._allocate_ip()}
            )
        kwargs = opts.to_kwargs()
        port_id = self.seed(
            "port",
            name=opts.name,
            network_id=opts.network_id,
            description=opts.description,
            fixed_ips=fixed_ips,
            security_group_ids=list(kwargs.get("security_group_ids", [])),
            is_port_security_enabled=kwargs.get("is_port_security_enabled", True),
            allowed_address_pairs=kwargs.get("allowed_address_pairs", []),
            binding_vnic_type=kwargs.get("binding_vnic_type", "normal"),
            device_id="",
            device_owner="",
            tags=[],
        )
        return self._sdk("port", self._db["port"][port_id])

    def delete_port(self, port_id: str) -> None:
        self._enter("delete_port", port_id)
        self._get("port", port_id)
        for trunk in self._db["trunk"].values():
            if trunk["port_id"] == port_id:
                raise ConflictError(f"Port {port_id} is the parent of trunk {trunk['id']}")
        del self._db["port"][port_id]
        for trunk in self._db["trunk"].values():
            trunk["sub_ports"] = [s for s in trunk["sub_ports"] if s["port_id"] != port_id]

    def list_trunks(self, **filters: Any) -> list[Trunk]:
        self._enter("list_trunks", str(filters.get("port_id", "")))
        return self._list("trunk", filters)

    def create_trunk(self, opts: TrunkCreateOpts) -> Trunk:
        self._enter("create_trunk", opts.name)
        self._get("port", opts.port_id)
        if any(t["port_id"] == opts.port_id for t in self._db["trunk"].values()):
            raise ConflictError(f"Port {opts.port_id} is already a trunk parent")
        trunk_id = self.seed(
            "trunk",
            name=opts.name,
            port_id=opts.port_id,
            description=opts.description,
            sub_ports=[],
            tags=[],
        )
        return self._sdk("trunk", self._db["trunk"][trunk_id])

    def delete_trunk(self, trunk_id: str) -> None:
        self._enter("delete_trunk", trunk_id)
        trunk = self._get("trunk", trunk_id)
        parent = self._db["port"].get(trunk["port_id"])
        if parent and parent.get("device_id"):
            raise ConflictError(f"Trunk {trunk_id} is in use by {parent['device_id']}")
        del self._db["trunk"][trunk_id]

    def list_trunk_subports(self, trunk_id: str) -> list[dict[str, Any]]:
        self._enter("list_trunk_subports", trunk_id)
        return [dict(s) for s in self._get("trunk", trunk_id)["sub_ports"]]

    def remove_trunk_subports(self, trunk_id: str, port_ids: list[str]) -> None:
        self._enter("remove_trunk_subports", trunk_id)
        trunk = self._get("trunk", trunk_id)
        trunk["sub_ports"] = [s for s in trunk["sub_ports"] if s["port_id"] not in port_ids]

    def add_trunk_subport(self, trunk_id: str, port_id: str, segmentation_id: int) -> None:
        """Attach a VLAN subport; only used to set up test scenarios."""
        trunk = self._db["trunk"][trunk_id]
        trunk["sub_ports"].append(
            {"port_id": port_id, "segmentation_type": "vlan", "segmentation_id": segmentation_id}
        )

    # -------------------------------------------------------------------------
    # Security group operations
    # -------------------------------------------------------------------------

    def list_security_groups(self, **filters: Any) -> list[SecurityGroup]:
        self._enter("list_security_groups", str(filters.get("name", "")))
        return self._list("security_group", filters)

    def create_security_group(self, name: str, description: str = "") -> SecurityGroup:
        self._enter("create_security_group", name)
        group_id = self.seed("security_group", name=name, description=description, tags=[])
        # Neutron adds default egress rules to every new group
        for ether_type in ("IPv4", "IPv6"):
            self.seed(
                "security_group_rule",
                security_group_id=group_id,
                direction="egress",
                ether_type=ether_type,
                protocol=None,
                port_range_min=None,
                port_range_max=None,
                remote_group_id=None,
                remote_ip_prefix=None,
                description="",
            )
        return self._sdk("security_group", self._db["security_group"][group_id])

    def delete_security_group(self, security_group_id: str) -> None:
        self._enter("delete_security_group", security_group_id)
        self._get("security_group", security_group_id)
        for port in self._db["port"].values():
            if security_group_id in port.get("security_group_ids", []):
                raise ConflictError(f"Security group {security_group_id} in use by {port['id']}")
        del self._db["security_group"][security_group_id]
        self._db["security_group_rule"] = {
            rule_id: rule
            for rule_id, rule in self._db["security_group_rule"].items()
            if rule["security_group_id"] != security_group_id
        }

    def list_security_group_rules(self, **filters: Any) -> list[SDKSecurityGroupRule]:
        self._enter("list_security_group_rules", str(filters.get("security_group_id", "")))
        return self._list("security_group_rule", filters)

    def create_security_group_rule(
        self, security_group_id: str, rule: SecurityGroupRule
    ) -> SDKSecurityGroupRule:
        self._enter("create_security_group_rule", security_group_id)
        self._get("security_group", security_group_id)
        for existing in self._db["security_group_rule"].values():
            if (
                existing["security_group_id"] == security_group_id
                and SecurityGroupRule(
                    **{k: existing[k] for k in _RULE_FIELDS}
                ) == rule
            ):
                raise ConflictError("Security group rule already exists")
        rule_id = self.seed("security_group_rule", **rule.to_kwargs(security_group_id))
        return self._sdk("security_group_rule", self._db["security_group_rule"][rule_id])

    def delete_security_group_rule(self, rule_id: str) -> None:
        self._enter("delete_security_group_rule", rule_id)
        self._get("security_group_rule", rule_id)
        del self._db["security_group_rule"][rule_id]

    # -------------------------------------------------------------------------
    # Floating IP operations
    # -------------------------------------------------------------------------

    def list_floating_ips(self, **filters: Any) -> list[FloatingIP]:
        self._enter("list_floating_ips", str(filters.get("floating_ip_address", "")))
        return self._list("floating_ip", filters)

    def create_floating_ip(
        self,
        network_id: str,
        address: str | None = None,
        description: str = "",
    ) -> FloatingIP:
        self._enter("create_floating_ip", address or network_id)
        self._get("network", network_id)
        if address and any(
            f["floating_ip_address"] == address for f in self._db["floating_ip"].values()
        ):
            raise ConflictError(f"Floating IP {address} is already allocated")
        fip_id = self.seed(
            "floating_ip",
            floating_network_id=network_id,
            floating_ip_address=address or f"172.24.4.{next(self._fip_counter)}",
            port_id=None,
            fixed_ip_address=None,
            description=description,
        )
        return self._sdk("floating_ip", self._db["floating_ip"][fip_id])

    def associate_floating_ip(self, floating_ip_id: str, port_id: str | None) -> FloatingIP:
        self._enter("associate_floating_ip", floating_ip_id)
        record = self._get("floating_ip", floating_ip_id)
        fixed_ip = None
        if port_id is not None:
            port = self._get("port", port_id)
            fixed_ip = port["fixed_ips"][0]["ip_address"] if port["fixed_ips"] else None
        record["port_id"] = port_id
        record["fixed_ip_address"] = fixed_ip
        return self._sdk("floating_ip", record)

    def delete_floating_ip(self, floating_ip_id: str) -> None:
        self._enter("delete_floating_ip", floating_ip_id)
        self._get("floating_ip", floating_ip_id)
        del self._db["floating_ip"][floating_ip_id]

    # -------------------------------------------------------------------------
    # Load balancer operations
    # -------------------------------------------------------------------------

    def _lb_of(self, kind: str, record: dict[str, Any]) -> dict[str, Any]:
        if kind == "listener":
            lb_id = record["load_balancer_id"]
        elif kind == "pool":
            lb_id = record["loadbalancer_id"]
        elif kind in ("health_monitor", "member"):
            return self._lb_of("pool", self._db["pool"][record["pool_id"]])
        else:
            lb_id = record["id"]
        lb = self._db["load_balancer"].get(lb_id)
        if lb is None:
            raise InvariantViolationError(f"{kind} {record['id']} outlived its load balancer")
        return lb

    def _mutate_lb(self, lb: dict[str, Any], change: Callable[[], None]) -> None:
        """Apply a child change, moving the load balancer through PENDING_UPDATE."""
        if lb["provisioning_status"] != LB_ACTIVE:
            raise ConflictError(
                f"Load Balancer {lb['id']} is immutable and cannot be updated "
                f"(status {lb['provisioning_status']})"
            )
        change()
        lb["provisioning_status"] = "PENDING_UPDATE"

        def finish_update() -> None:
            if lb["provisioning_status"] == "PENDING_UPDATE":
                lb["provisioning_status"] = LB_ACTIVE

        self._schedule(self.lb_ready_ticks, finish_update, f"load balancer {lb['id']} -> ACTIVE")

    def list_load_balancers(self, **filters: Any) -> list[LoadBalancer]:
        self._enter("list_load_balancers", str(filters.get("name", "")))
        return self._list("load_balancer", filters)

    def get_load_balancer(self, load_balancer_id: str) -> LoadBalancer:
        self._enter("get_load_balancer", load_balancer_id)
        return self._sdk("load_balancer", self._get("load_balancer", load_balancer_id))

    def create_load_balancer(self, opts: LoadBalancerCreateOpts) -> LoadBalancer:
        self._enter("create_load_balancer", opts.name)
        subnet = self._get("subnet", opts.vip_subnet_id)
        vip_address = self._allocate_ip()
        lb_id = self._new_id("load_balancer")
        vip_port_id = self.seed(
            "port",
            name=f"octavia-lb-{lb_id}",
            network_id=subnet["network_id"],
            fixed_ips=[{"subnet_id": subnet["id"], "ip_address": vip_address}],
            device_id=lb_id,
            device_owner="Octavia",
            security_group_ids=[],
            tags=[],
        )
        record = {
            "id": lb_id,
            "name": opts.name,
            "description": opts.description,
            "provider": opts.provider or "amphora",
            "provisioning_status": "PENDING_CREATE",
            "operating_status": "OFFLINE",
            "vip_subnet_id": subnet["id"],
            "vip_network_id": subnet["network_id"],
            "vip_address": vip_address,
            "vip_port_id": vip_port_id,
            "listeners": [],
            "pools": [],
        }
        self._db["load_balancer"][lb_id] = record

        def finish_create() -> None:
            if record["provisioning_status"] == "PENDING_CREATE":
                record["provisioning_status"] = LB_ACTIVE
                record["operating_status"] = "ONLINE"

        self._schedule(self.lb_ready_ticks, finish_create, f"load balancer {lb_id} -> ACTIVE")
        return self._sdk("load_balancer", record)

    def delete_load_balancer(self, load_balancer_id: str, cascade: bool = False) -> None:
        self._enter("delete_load_balancer", load_balancer_id)
        lb = self._get("load_balancer", load_balancer_id)
        if lb["provisioning_status"] != LB_ACTIVE and lb["provisioning_status"] != "ERROR":
            raise ConflictError(f"Load Balancer {load_balancer_id} is immutable")
        if not cascade and (lb["listeners"] or lb["pools"]):
            raise OpenStackAPIError(
                f"Cannot delete Load Balancer {load_balancer_id} - it has children", 400
            )
        lb["provisioning_status"] = LB_PENDING_DELETE

        def finish_delete() -> None:
            pool_ids = {p["id"] for p in lb["pools"]}
            self._db["member"] = {
                k: v for k, v in self._db["member"].items() if v["pool_id"] not in pool_ids
            }
            self._db["health_monitor"] = {
                k: v
                for k, v in self._db["health_monitor"].items()
                if v["pool_id"] not in pool_ids
            }
            for pool_id in pool_ids:
                self._db["pool"].pop(pool_id, None)
            for listener in lb["listeners"]:
                self._db["listener"].pop(listener["id"], None)
            self._db["port"].pop(lb["vip_port_id"], None)
            self._db["load_balancer"].pop(load_balancer_id, None)

        self._schedule(self.lb_ready_ticks, finish_delete, f"load balancer {load_balancer_id} deleted")

    def list_listeners(self, **filters: Any) -> list[Listener]:
        self._enter("list_listeners", str(filters.get("name", "")))
        return self._list("listener", filters)

    def create_listener(self, opts: ListenerCreateOpts) -> Listener:
        self._enter("create_listener", opts.name)
        lb = self._get("load_balancer", opts.load_balancer_id)
        listener_id = self._new_id("listener")
        record = {
            "id": listener_id,
            "name": opts.name,
            "load_balancer_id": lb["id"],
            "protocol": opts.protocol,
            "protocol_port": opts.protocol_port,
        }

        def add() -> None:
            self._db["listener"][listener_id] = record
            lb["listeners"].append({"id": listener_id})

        self._mutate_lb(lb, add)
        return self._sdk("listener", record)

    def delete_listener(self, listener_id: str) -> None:
        self._enter("delete_listener", listener_id)
        record = self._get("listener", listener_id)
        lb = self._lb_of("listener", record)

        def remove() -> None:
            del self._db["listener"][listener_id]
            lb["listeners"] = [x for x in lb["listeners"] if x["id"] != listener_id]

        self._mutate_lb(lb, remove)

    def list_pools(self, **filters: Any) -> list[Pool]:
        self._enter("list_pools", str(filters.get("name", "")))
        return self._list("pool", filters)

    def create_pool(self, opts: PoolCreateOpts) -> Pool:
        self._enter("create_pool", opts.name)
        listener = self._get("listener", opts.listener_id)
        lb = self._lb_of("listener", listener)
        pool_id = self._new_id("pool")
        record = {
            "id": pool_id,
            "name": opts.name,
            "listener_id": listener["id"],
            "loadbalancer_id": lb["id"],
            "lb_algorithm": opts.lb_algorithm,
            "protocol": opts.protocol,
        }

        def add() -> None:
            self._db["pool"][pool_id] = record
            lb["pools"].append({"id": pool_id})

        self._mutate_lb(lb, add)
        return self._sdk("pool", record)

    def delete_pool(self, pool_id: str) -> None:
        self._enter("delete_pool", pool_id)
        record = self._get("pool", pool_id)
        lb = self._lb_of("pool", record)

        def remove() -> None:
            del self._db["pool"][pool_id]
            lb["pools"] = [x for x in lb["pools"] if x["id"] != pool_id]

        self._mutate_lb(lb, remove)

    def list_health_monitors(self, **filters: Any) -> list[HealthMonitor]:
        self._enter("list_health_monitors", str(filters.get("name", "")))
        return self._list("health_monitor", filters)

    def create_health_monitor(self, opts: MonitorCreateOpts) -> HealthMonitor:
        self._enter("create_health_monitor", opts.name)
        pool = self._get("pool", opts.pool_id)
        lb = self._lb_of("pool", pool)
        monitor_id = self._new_id("health_monitor")
        record = {"id": monitor_id, **opts.to_kwargs()}
        self._mutate_lb(lb, lambda: self._db["health_monitor"].__setitem__(monitor_id, record))
        return self._sdk("health_monitor", record)

    def update_health_monitor(self, monitor_id: str, **attrs: Any) -> HealthMonitor:
        self._enter("update_health_monitor", monitor_id)
        record = self._get("health_monitor", monitor_id)
        lb = self._lb_of("health_monitor", record)
        self._mutate_lb(lb, lambda: record.update(attrs))
        return self._sdk("health_monitor", record)

    def list_members(self, pool_id: str, **filters: Any) -> list[Member]:
        self._enter("list_members", pool_id)
        self._get("pool", pool_id)
        return self._list("member", {"pool_id": pool_id, **filters})

    def create_member(self, pool_id: str, opts: MemberCreateOpts) -> Member:
        self._enter("create_member", opts.name)
        pool = self._get("pool", pool_id)
        lb = self._lb_of("pool", pool)
        for member in self._db["member"].values():
            if (
                member["pool_id"] == pool_id
                and member["address"] == opts.address
                and member["protocol_port"] == opts.protocol_port
            ):
                raise ConflictError(f"Duplicate member {opts.address}:{opts.protocol_port}")
        member_id = self._new_id("member")
        record = {"id": member_id, "pool_id": pool_id, **opts.to_kwargs()}
        self._mutate_lb(lb, lambda: self._db["member"].__setitem__(member_id, record))
        return self._sdk("member", record)

    def delete_member(self, pool_id: str, member_id: str) -> None:
        self._enter("delete_member", member_id)
        self._get("pool", pool_id)
        record = self._get("member", member_id)
        lb = self._lb_of("member", record)
        self._mutate_lb(lb, lambda: self._db["member"].pop(member_id))

    def close(self) -> None:
        pass
