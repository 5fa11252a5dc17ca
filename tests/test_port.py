"""Tests for port and trunk management."""

import pytest

from models import (
    AmbiguousResourceError,
    MachineStatus,
    PortCreateOpts,
    PortStatus,
    ResolvedMachineSpec,
)
from resources.port import delete_port, delete_ports, ensure_ports, ports_ready, reconcile_next_port


def _resolved(*ports):
    return ResolvedMachineSpec(image_id="image-a", flavor_id="flavor-small", ports=ports)


@pytest.fixture
def two_ports(cloud):
    cloud.add_network("net-2", network_id="net-2", cidrs=["10.1.0.0/24"])
    return _resolved(
        PortCreateOpts(name="m1-0", network_id="net-1", tags=("managed",)),
        PortCreateOpts(name="m1-storage", network_id="net-2", tags=("managed",)),
    )


class TestEnsurePorts:
    """Tests for ensure_ports function."""

    def test_creates_ports_in_order(self, cloud, two_ports):
        status = MachineStatus()

        ensure_ports(cloud, two_ports, status)

        assert status.resources.ports == [
            PortStatus(id="port-1", network_id="net-1"),
            PortStatus(id="port-2", network_id="net-2"),
        ]
        assert cloud.record("port", "port-1")["name"] == "m1-0"
        assert cloud.record("port", "port-2")["network_id"] == "net-2"
        assert cloud.record("port", "port-2")["tags"] == ["managed"]

    def test_one_port_per_step(self, cloud, two_ports):
        status = MachineStatus()

        reconcile_next_port(cloud, two_ports, status)

        assert len(status.resources.ports) == 1
        assert not ports_ready(two_ports, status)

    def test_adopts_port_left_by_crash(self, cloud, two_ports):
        # A create that succeeded but whose status write was lost
        cloud.create_port(PortCreateOpts(name="m1-0", network_id="net-1"))
        cloud.reset_calls()
        status = MachineStatus()

        ensure_ports(cloud, two_ports, status)

        assert cloud.call_names().count("create_port") == 1
        assert status.resources.ports[0].id == "port-1"
        assert cloud.record("port", "port-1")["tags"] == ["managed"]

    def test_recorded_ports_are_not_looked_up(self, cloud, two_ports):
        status = MachineStatus()
        ensure_ports(cloud, two_ports, status)
        cloud.reset_calls()

        ensure_ports(cloud, two_ports, status)

        assert cloud.calls == []

    def test_ambiguous_port(self, cloud, two_ports):
        cloud.create_port(PortCreateOpts(name="m1-0", network_id="net-1"))
        cloud.create_port(PortCreateOpts(name="m1-0", network_id="net-1"))

        with pytest.raises(AmbiguousResourceError):
            ensure_ports(cloud, two_ports, MachineStatus())

    def test_trunk_created_on_parent(self, cloud):
        resolved = _resolved(PortCreateOpts(name="m1-0", network_id="net-1", trunk=True))
        status = MachineStatus()

        ensure_ports(cloud, resolved, status)

        trunks = cloud.all("trunk")
        assert len(trunks) == 1
        assert trunks[0]["port_id"] == status.resources.ports[0].id
        assert trunks[0]["name"] == "m1-0"


class TestDeletePort:
    """Tests for delete_port and delete_ports functions."""

    def test_trunk_is_torn_down_first(self, cloud):
        resolved = _resolved(PortCreateOpts(name="m1-0", network_id="net-1", trunk=True))
        status = MachineStatus()
        ensure_ports(cloud, resolved, status)
        parent_id = status.resources.ports[0].id
        subport = cloud.create_port(PortCreateOpts(name="m1-0-vlan100", network_id="net-1"))
        cloud.add_trunk_subport("trunk-1", subport.id, 100)
        cloud.reset_calls()

        delete_port(cloud, parent_id)

        assert [(c.method, c.target) for c in cloud.mutating_calls()] == [
            ("remove_trunk_subports", "trunk-1"),
            ("delete_port", subport.id),
            ("delete_trunk", "trunk-1"),
            ("delete_port", parent_id),
        ]
        assert cloud.all("port") == []
        assert cloud.all("trunk") == []

    def test_missing_port_counts_as_deleted(self, cloud):
        delete_port(cloud, "port-404")

        assert cloud.call_names() == ["list_trunks", "delete_port"]

    def test_deletes_recorded_and_unrecorded_ports(self, cloud, two_ports):
        status = MachineStatus()
        reconcile_next_port(cloud, two_ports, status)
        # Second port created but never recorded
        cloud.create_port(two_ports.ports[1])

        delete_ports(cloud, two_ports, status)

        assert cloud.all("port") == []
        assert status.resources.ports == []

    def test_recorded_ports_deleted_last_first(self, cloud, two_ports):
        status = MachineStatus()
        ensure_ports(cloud, two_ports, status)
        cloud.reset_calls()

        delete_ports(cloud, None, status)

        deleted = [c.target for c in cloud.mutating_calls()]
        assert deleted == ["port-2", "port-1"]
