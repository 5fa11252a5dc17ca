"""Tests for cluster network management."""

import pytest

from models import AmbiguousResourceError, ConfigurationError, NetworkStatus
from resources.network import (
    delete_managed_network,
    ensure_managed_network,
    resolve_external_network_id,
    resolve_network,
)
from simulator import FakeOpenStackClient

NETWORK_NAME = "k8s-clusterapi-cluster-c1"
SUBNETS = [{"cidr": "10.6.0.0/24", "dnsNameservers": ["1.1.1.1"]}]


class TestResolveExternalNetwork:
    """Tests for resolve_external_network_id function."""

    def test_single_external_network(self, cloud):
        assert resolve_external_network_id(cloud, None) == "ext-net"

    def test_by_reference(self, cloud):
        assert resolve_external_network_id(cloud, {"name": "public"}) == "ext-net"

    def test_ambiguous(self, cloud):
        cloud.add_network("public-2", external=True)

        with pytest.raises(AmbiguousResourceError):
            resolve_external_network_id(cloud, None)

    def test_none_available(self):
        assert resolve_external_network_id(FakeOpenStackClient(), None) is None


class TestResolveNetwork:
    """Tests for resolve_network function."""

    def test_existing_network(self, cloud):
        assert resolve_network(cloud, {"name": "net-1"}) == NetworkStatus(
            id="net-1", name="net-1", subnet_ids=("subnet-1",), managed=False
        )

    def test_missing_network(self, cloud):
        with pytest.raises(ConfigurationError):
            resolve_network(cloud, {"id": "net-404"})


class TestEnsureManagedNetwork:
    """Tests for ensure_managed_network function."""

    def test_creates_network_subnet_and_router(self, cloud):
        status = ensure_managed_network(cloud, "c1", SUBNETS, "ext-net", ["managed"])

        assert status.name == NETWORK_NAME
        assert status.managed is True
        network = cloud.record("network", status.id)
        assert network["name"] == NETWORK_NAME
        assert network["tags"] == ["managed"]
        (subnet_id,) = status.subnet_ids
        subnet = cloud.record("subnet", subnet_id)
        assert subnet["cidr"] == "10.6.0.0/24"
        assert subnet["dns_nameservers"] == ["1.1.1.1"]
        router = cloud.record("router", status.router_id)
        assert router["external_gateway_info"] == {"network_id": "ext-net"}
        assert router["interfaces"] == [subnet_id]

    def test_second_run_makes_no_changes(self, cloud):
        first = ensure_managed_network(cloud, "c1", SUBNETS, "ext-net", ["managed"])
        cloud.reset_calls()

        second = ensure_managed_network(cloud, "c1", SUBNETS, "ext-net", ["managed"])

        assert second == first
        assert cloud.mutating_calls() == []

    def test_no_router_without_external_network(self, cloud):
        status = ensure_managed_network(cloud, "c1", SUBNETS, None)

        assert status.router_id is None
        assert cloud.all("router") == []

    def test_needs_a_subnet(self, cloud):
        with pytest.raises(ConfigurationError):
            ensure_managed_network(cloud, "c1", [], "ext-net")


class TestDeleteManagedNetwork:
    """Tests for delete_managed_network function."""

    def test_deletes_in_reverse_order(self, cloud):
        status = ensure_managed_network(cloud, "c1", SUBNETS, "ext-net")
        cloud.reset_calls()

        delete_managed_network(cloud, "c1")

        assert [c.method for c in cloud.mutating_calls()] == [
            "remove_router_interface",
            "delete_router",
            "delete_subnet",
            "delete_network",
        ]
        assert cloud.all("router") == []
        with pytest.raises(KeyError):
            cloud.record("network", status.id)

    def test_nothing_to_delete(self, cloud):
        delete_managed_network(cloud, "c1")

        assert cloud.mutating_calls() == []
