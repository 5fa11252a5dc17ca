"""OpenStack SDK wrapper with error classification and connection management.

Every verb either returns SDK resources or raises one of
``ResourceNotFoundError``, ``ConflictError`` or ``OpenStackAPIError``.
Nothing is retried here: callers requeue on transient errors.
"""

import logging
import os
import time
from collections.abc import Callable
from functools import wraps
from typing import Any, ParamSpec, TypeVar

import openstack
from keystoneauth1 import exceptions as ks_exceptions
from openstack import exceptions as os_exceptions
from openstack.block_storage.v3.volume import Volume
from openstack.compute.v2.flavor import Flavor
from openstack.compute.v2.server import Server
from openstack.compute.v2.server_group import ServerGroup
from openstack.connection import Connection
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

from metrics import OPENSTACK_API_CALLS, OPENSTACK_API_DURATION
from models import (
    ConflictError,
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
from ratelimit import get_rate_limiter

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def api_call(service: str) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """Decorator classifying SDK failures and recording call metrics."""

    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        operation = func.__name__

        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            start = time.monotonic()
            outcome = "success"
            try:
                with get_rate_limiter().acquire():
                    return func(*args, **kwargs)
            except os_exceptions.NotFoundException as e:
                outcome = "not_found"
                raise ResourceNotFoundError(f"{operation}: {e}") from e
            except os_exceptions.ConflictException as e:
                outcome = "conflict"
                raise ConflictError(f"{operation}: {e}") from e
            except os_exceptions.HttpException as e:
                outcome = "error"
                raise OpenStackAPIError(
                    f"{operation} failed: {e}", status_code=e.status_code
                ) from e
            except (os_exceptions.SDKException, ks_exceptions.ClientException) as e:
                outcome = "error"
                raise OpenStackAPIError(f"{operation} failed: {e}") from e
            finally:
                OPENSTACK_API_CALLS.labels(
                    service=service, operation=operation, status=outcome
                ).inc()
                OPENSTACK_API_DURATION.labels(
                    service=service, operation=operation
                ).observe(time.monotonic() - start)

        return wrapper

    return decorator


class OpenStackClient:
    """Typed facade over one authenticated OpenStack connection."""

    def __init__(
        self,
        cloud: str | None = None,
        cloud_config: dict[str, Any] | None = None,
        connection: Connection | None = None,
    ) -> None:
        """Initialize OpenStack connection settings.

        Args:
            cloud: Cloud name from clouds.yaml (default: from OS_CLOUD env)
            cloud_config: A clouds.yaml cloud entry used instead of the file
            connection: An already established connection
        """
        self.cloud_name = cloud or os.environ.get("OS_CLOUD", "openstack")
        self._cloud_config = cloud_config
        self._conn: Connection | None = connection

    @property
    def conn(self) -> Connection:
        """Get or create OpenStack connection."""
        if self._conn is None:
            logger.info("Connecting to OpenStack cloud: %s", self.cloud_name)
            if self._cloud_config is not None:
                self._conn = openstack.connect(
                    load_yaml_config=False,
                    load_envvars=False,
                    **self._cloud_config,
                )
            else:
                self._conn = openstack.connect(cloud=self.cloud_name)
        return self._conn

    def close(self) -> None:
        """Close the OpenStack connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # -------------------------------------------------------------------------
    # Compute operations
    # -------------------------------------------------------------------------

    @api_call("compute")
    def list_servers(self, **filters: Any) -> list[Server]:
        """List servers; ``name`` is a regular expression."""
        return list(self.conn.compute.servers(**filters))

    @api_call("compute")
    def get_server(self, server_id: str) -> Server:
        return self.conn.compute.get_server(server_id)

    @api_call("compute")
    def create_server(self, opts: ServerCreateOpts) -> Server:
        logger.info("Creating server: %s", opts.name)
        return self.conn.compute.create_server(**opts.to_kwargs())

    @api_call("compute")
    def delete_server(self, server_id: str) -> None:
        logger.info("Deleting server: %s", server_id)
        self.conn.compute.delete_server(server_id, ignore_missing=False)

    @api_call("compute")
    def list_flavors(self, **filters: Any) -> list[Flavor]:
        return list(self.conn.compute.flavors(**filters))

    @api_call("compute")
    def list_server_groups(self, **filters: Any) -> list[ServerGroup]:
        return list(self.conn.compute.server_groups(**filters))

    @api_call("compute")
    def create_server_group(self, name: str, policy: str) -> ServerGroup:
        logger.info("Creating server group: %s (policy %s)", name, policy)
        return self.conn.compute.create_server_group(name=name, policy=policy)

    @api_call("compute")
    def delete_server_group(self, server_group_id: str) -> None:
        logger.info("Deleting server group: %s", server_group_id)
        self.conn.compute.delete_server_group(server_group_id, ignore_missing=False)

    # -------------------------------------------------------------------------
    # Image operations
    # -------------------------------------------------------------------------

    @api_call("image")
    def list_images(self, **filters: Any) -> list[Image]:
        return list(self.conn.image.images(**filters))

    # -------------------------------------------------------------------------
    # Block storage operations
    # -------------------------------------------------------------------------

    @api_call("block_storage")
    def list_volumes(self, **filters: Any) -> list[Volume]:
        return list(self.conn.block_storage.volumes(details=True, **filters))

    @api_call("block_storage")
    def get_volume(self, volume_id: str) -> Volume:
        return self.conn.block_storage.get_volume(volume_id)

    @api_call("block_storage")
    def create_volume(self, opts: VolumeCreateOpts) -> Volume:
        logger.info("Creating volume: %s (%d GiB)", opts.name, opts.size)
        return self.conn.block_storage.create_volume(**opts.to_kwargs())

    @api_call("block_storage")
    def delete_volume(self, volume_id: str) -> None:
        logger.info("Deleting volume: %s", volume_id)
        self.conn.block_storage.delete_volume(volume_id, ignore_missing=False)

    # -------------------------------------------------------------------------
    # Network operations
    # -------------------------------------------------------------------------

    @api_call("network")
    def list_extensions(self) -> list[Extension]:
        return list(self.conn.network.extensions())

    @api_call("network")
    def set_tags(self, resource: Any, tags: list[str]) -> None:
        """Replace all tags of a network resource."""
        self.conn.network.set_tags(resource, tags)

    @api_call("network")
    def list_networks(self, **filters: Any) -> list[Network]:
        return list(self.conn.network.networks(**filters))

    @api_call("network")
    def get_network(self, network_id: str) -> Network:
        return self.conn.network.get_network(network_id)

    @api_call("network")
    def create_network(self, name: str, description: str = "") -> Network:
        logger.info("Creating network: %s", name)
        return self.conn.network.create_network(name=name, description=description)

    @api_call("network")
    def delete_network(self, network_id: str) -> None:
        logger.info("Deleting network: %s", network_id)
        self.conn.network.delete_network(network_id, ignore_missing=False)

    @api_call("network")
    def list_subnets(self, **filters: Any) -> list[Subnet]:
        return list(self.conn.network.subnets(**filters))

    @api_call("network")
    def create_subnet(
        self,
        name: str,
        network_id: str,
        cidr: str,
        dns_nameservers: list[str] | None = None,
        description: str = "",
    ) -> Subnet:
        logger.info("Creating subnet: %s with CIDR %s", name, cidr)
        return self.conn.network.create_subnet(
            name=name,
            network_id=network_id,
            cidr=cidr,
            ip_version=4,
            is_dhcp_enabled=True,
            dns_nameservers=dns_nameservers or [],
            description=description,
        )

    @api_call("network")
    def delete_subnet(self, subnet_id: str) -> None:
        logger.info("Deleting subnet: %s", subnet_id)
        self.conn.network.delete_subnet(subnet_id, ignore_missing=False)

    @api_call("network")
    def list_routers(self, **filters: Any) -> list[Router]:
        return list(self.conn.network.routers(**filters))

    @api_call("network")
    def create_router(
        self,
        name: str,
        external_network_id: str | None = None,
        description: str = "",
    ) -> Router:
        logger.info("Creating router: %s", name)
        external_gateway_info = None
        if external_network_id:
            external_gateway_info = {"network_id": external_network_id}
        return self.conn.network.create_router(
            name=name,
            description=description,
            external_gateway_info=external_gateway_info,
        )

    @api_call("network")
    def add_router_interface(self, router_id: str, subnet_id: str) -> None:
        logger.info("Adding interface for subnet %s to router %s", subnet_id, router_id)
        self.conn.network.add_interface_to_router(router_id, subnet_id=subnet_id)

    @api_call("network")
    def remove_router_interface(self, router_id: str, subnet_id: str) -> None:
        logger.info(
            "Removing interface for subnet %s from router %s", subnet_id, router_id
        )
        self.conn.network.remove_interface_from_router(router_id, subnet_id=subnet_id)

    @api_call("network")
    def delete_router(self, router_id: str) -> None:
        logger.info("Deleting router: %s", router_id)
        self.conn.network.delete_router(router_id, ignore_missing=False)

    # -------------------------------------------------------------------------
    # Port and trunk operations
    # -------------------------------------------------------------------------

    @api_call("network")
    def list_ports(self, **filters: Any) -> list[Port]:
        return list(self.conn.network.ports(**filters))

    @api_call("network")
    def create_port(self, opts: PortCreateOpts) -> Port:
        logger.info("Creating port: %s on network %s", opts.name, opts.network_id)
        return self.conn.network.create_port(**opts.to_kwargs())

    @api_call("network")
    def delete_port(self, port_id: str) -> None:
        logger.info("Deleting port: %s", port_id)
        self.conn.network.delete_port(port_id, ignore_missing=False)

    @api_call("network")
    def list_trunks(self, **filters: Any) -> list[Trunk]:
        return list(self.conn.network.trunks(**filters))

    @api_call("network")
    def create_trunk(self, opts: TrunkCreateOpts) -> Trunk:
        logger.info("Creating trunk: %s on port %s", opts.name, opts.port_id)
        return self.conn.network.create_trunk(**opts.to_kwargs())

    @api_call("network")
    def delete_trunk(self, trunk_id: str) -> None:
        logger.info("Deleting trunk: %s", trunk_id)
        self.conn.network.delete_trunk(trunk_id, ignore_missing=False)

    @api_call("network")
    def list_trunk_subports(self, trunk_id: str) -> list[dict[str, Any]]:
        """Return the subports of a trunk as ``port_id``/``segmentation_*`` dicts."""
        result = self.conn.network.get_trunk_subports(trunk_id)
        return list(result.get("sub_ports", []))

    @api_call("network")
    def remove_trunk_subports(self, trunk_id: str, port_ids: list[str]) -> None:
        logger.info("Removing %d subports from trunk %s", len(port_ids), trunk_id)
        self.conn.network.delete_trunk_subports(
            trunk_id, [{"port_id": port_id} for port_id in port_ids]
        )

    # -------------------------------------------------------------------------
    # Security group operations
    # -------------------------------------------------------------------------

    @api_call("network")
    def list_security_groups(self, **filters: Any) -> list[SecurityGroup]:
        return list(self.conn.network.security_groups(**filters))

    @api_call("network")
    def create_security_group(self, name: str, description: str = "") -> SecurityGroup:
        logger.info("Creating security group: %s", name)
        return self.conn.network.create_security_group(
            name=name, description=description
        )

    @api_call("network")
    def delete_security_group(self, security_group_id: str) -> None:
        logger.info("Deleting security group: %s", security_group_id)
        self.conn.network.delete_security_group(
            security_group_id, ignore_missing=False
        )

    @api_call("network")
    def list_security_group_rules(self, **filters: Any) -> list[SDKSecurityGroupRule]:
        return list(self.conn.network.security_group_rules(**filters))

    @api_call("network")
    def create_security_group_rule(
        self, security_group_id: str, rule: SecurityGroupRule
    ) -> SDKSecurityGroupRule:
        logger.info(
            "Creating security group rule: %s %s %s %s-%s in %s",
            rule.direction,
            rule.ether_type,
            rule.protocol,
            rule.port_range_min,
            rule.port_range_max,
            security_group_id,
        )
        return self.conn.network.create_security_group_rule(
            **rule.to_kwargs(security_group_id)
        )

    @api_call("network")
    def delete_security_group_rule(self, rule_id: str) -> None:
        logger.info("Deleting security group rule: %s", rule_id)
        self.conn.network.delete_security_group_rule(rule_id, ignore_missing=False)

    # -------------------------------------------------------------------------
    # Floating IP operations
    # -------------------------------------------------------------------------

    @api_call("network")
    def list_floating_ips(self, **filters: Any) -> list[FloatingIP]:
        return list(self.conn.network.ips(**filters))

    @api_call("network")
    def create_floating_ip(
        self,
        network_id: str,
        address: str | None = None,
        description: str = "",
    ) -> FloatingIP:
        logger.info("Creating floating IP on network %s", network_id)
        attrs: dict[str, Any] = {
            "floating_network_id": network_id,
            "description": description,
        }
        if address:
            attrs["floating_ip_address"] = address
        return self.conn.network.create_ip(**attrs)

    @api_call("network")
    def associate_floating_ip(self, floating_ip_id: str, port_id: str | None) -> FloatingIP:
        """Point a floating IP at a port; ``None`` disassociates it."""
        logger.info("Associating floating IP %s with port %s", floating_ip_id, port_id)
        return self.conn.network.update_ip(floating_ip_id, port_id=port_id)

    @api_call("network")
    def delete_floating_ip(self, floating_ip_id: str) -> None:
        logger.info("Deleting floating IP: %s", floating_ip_id)
        self.conn.network.delete_ip(floating_ip_id, ignore_missing=False)

    # -------------------------------------------------------------------------
    # Load balancer operations
    # -------------------------------------------------------------------------

    @api_call("load_balancer")
    def list_load_balancers(self, **filters: Any) -> list[LoadBalancer]:
        return list(self.conn.load_balancer.load_balancers(**filters))

    @api_call("load_balancer")
    def get_load_balancer(self, load_balancer_id: str) -> LoadBalancer:
        return self.conn.load_balancer.get_load_balancer(load_balancer_id)

    @api_call("load_balancer")
    def create_load_balancer(self, opts: LoadBalancerCreateOpts) -> LoadBalancer:
        logger.info("Creating load balancer: %s", opts.name)
        return self.conn.load_balancer.create_load_balancer(**opts.to_kwargs())

    @api_call("load_balancer")
    def delete_load_balancer(self, load_balancer_id: str, cascade: bool = False) -> None:
        logger.info("Deleting load balancer: %s (cascade=%s)", load_balancer_id, cascade)
        self.conn.load_balancer.delete_load_balancer(
            load_balancer_id, ignore_missing=False, cascade=cascade
        )

    @api_call("load_balancer")
    def list_listeners(self, **filters: Any) -> list[Listener]:
        return list(self.conn.load_balancer.listeners(**filters))

    @api_call("load_balancer")
    def create_listener(self, opts: ListenerCreateOpts) -> Listener:
        logger.info("Creating listener: %s", opts.name)
        return self.conn.load_balancer.create_listener(**opts.to_kwargs())

    @api_call("load_balancer")
    def delete_listener(self, listener_id: str) -> None:
        logger.info("Deleting listener: %s", listener_id)
        self.conn.load_balancer.delete_listener(listener_id, ignore_missing=False)

    @api_call("load_balancer")
    def list_pools(self, **filters: Any) -> list[Pool]:
        return list(self.conn.load_balancer.pools(**filters))

    @api_call("load_balancer")
    def create_pool(self, opts: PoolCreateOpts) -> Pool:
        logger.info("Creating pool: %s", opts.name)
        return self.conn.load_balancer.create_pool(**opts.to_kwargs())

    @api_call("load_balancer")
    def delete_pool(self, pool_id: str) -> None:
        logger.info("Deleting pool: %s", pool_id)
        self.conn.load_balancer.delete_pool(pool_id, ignore_missing=False)

    @api_call("load_balancer")
    def list_health_monitors(self, **filters: Any) -> list[HealthMonitor]:
        return list(self.conn.load_balancer.health_monitors(**filters))

    @api_call("load_balancer")
    def create_health_monitor(self, opts: MonitorCreateOpts) -> HealthMonitor:
        logger.info("Creating health monitor: %s", opts.name)
        return self.conn.load_balancer.create_health_monitor(**opts.to_kwargs())

    @api_call("load_balancer")
    def update_health_monitor(self, monitor_id: str, **attrs: Any) -> HealthMonitor:
        logger.info("Updating health monitor %s: %s", monitor_id, attrs)
        return self.conn.load_balancer.update_health_monitor(monitor_id, **attrs)

    @api_call("load_balancer")
    def list_members(self, pool_id: str, **filters: Any) -> list[Member]:
        return list(self.conn.load_balancer.members(pool_id, **filters))

    @api_call("load_balancer")
    def create_member(self, pool_id: str, opts: MemberCreateOpts) -> Member:
        logger.info("Creating member %s (%s) in pool %s", opts.name, opts.address, pool_id)
        return self.conn.load_balancer.create_member(pool_id, **opts.to_kwargs())

    @api_call("load_balancer")
    def delete_member(self, pool_id: str, member_id: str) -> None:
        logger.info("Deleting member %s from pool %s", member_id, pool_id)
        self.conn.load_balancer.delete_member(member_id, pool_id, ignore_missing=False)
