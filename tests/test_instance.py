"""Tests for server management."""

from types import SimpleNamespace

import pytest

from models import (
    Address,
    AmbiguousResourceError,
    BlockDevice,
    BlockDeviceStatus,
    InstanceState,
    PortCreateOpts,
    PortStatus,
    ResolvedMachineSpec,
    ResourceFailedError,
    RootVolumeStatus,
)
from resources.instance import (
    build_server_opts,
    delete_server,
    ensure_server,
    find_server,
    server_addresses,
    server_state,
)

RESOLVED = ResolvedMachineSpec(
    image_id="image-a", flavor_id="flavor-small", server_group_id="sg-7"
)


@pytest.fixture
def ported_status(cloud, status):
    port = cloud.create_port(PortCreateOpts(name="m1-0", network_id="net-1"))
    status.resources.ports.append(PortStatus(id=port.id, network_id="net-1"))
    return status


class TestFindServer:
    """Tests for find_server function."""

    def test_exact_name_only(self, cloud):
        cloud.seed("server", name="m10", status="ACTIVE")
        server_id = cloud.seed("server", name="m1", status="ACTIVE")

        assert find_server(cloud, "m1").id == server_id

    def test_regex_characters_are_escaped(self, cloud):
        cloud.seed("server", name="m1x0", status="ACTIVE")

        assert find_server(cloud, "m1.0") is None

    def test_none(self, cloud):
        assert find_server(cloud, "m1") is None

    def test_ambiguous(self, cloud):
        cloud.seed("server", name="m1", status="ACTIVE")
        cloud.seed("server", name="m1", status="ACTIVE")

        with pytest.raises(AmbiguousResourceError):
            find_server(cloud, "m1")


class TestServerState:
    """Tests for server_state function."""

    @pytest.mark.parametrize(
        "nova_status,expected",
        [
            ("ACTIVE", InstanceState.ACTIVE),
            ("BUILD", InstanceState.BUILDING),
            ("ERROR", InstanceState.ERROR),
            ("SHUTOFF", InstanceState.SHUTOFF),
            ("REBOOT", InstanceState.UNKNOWN),
            ("MIGRATING", InstanceState.UNKNOWN),
        ],
    )
    def test_mapping(self, nova_status, expected):
        assert server_state(SimpleNamespace(status=nova_status)) == expected


class TestServerAddresses:
    """Tests for server_addresses function."""

    def test_fixed_and_floating(self):
        server = SimpleNamespace(
            addresses={
                "net-1": [
                    {"addr": "10.0.0.10", "OS-EXT-IPS:type": "fixed"},
                    {"addr": "172.24.4.10", "OS-EXT-IPS:type": "floating"},
                ],
                "net-2": [{"addr": "10.0.0.10", "OS-EXT-IPS:type": "fixed"}],
            }
        )

        assert server_addresses(server) == [
            Address(type="InternalIP", address="10.0.0.10"),
            Address(type="ExternalIP", address="172.24.4.10"),
        ]

    def test_no_addresses(self):
        assert server_addresses(SimpleNamespace(addresses=None)) == []


class TestBuildServerOpts:
    """Tests for build_server_opts function."""

    def test_boot_from_image(self, machine_spec, ported_status):
        spec = {**machine_spec, "sshKeyName": "ops", "serverMetadata": {"role": "worker"}}

        opts = build_server_opts("m1", spec, RESOLVED, ported_status, ["t1"])

        assert opts.image_id == "image-a"
        assert opts.block_devices == ()
        assert opts.port_ids == ("port-1",)
        assert opts.key_name == "ops"
        assert opts.metadata == {"role": "worker"}
        assert opts.server_group_id == "sg-7"
        assert opts.tags == ("t1",)

    def test_boot_from_volume(self, machine_spec, ported_status):
        spec = {**machine_spec, "rootVolume": {"sizeGiB": 20}}
        ported_status.resources.root_volume = RootVolumeStatus(id="vol-3", ready=True)

        opts = build_server_opts("m1", spec, RESOLVED, ported_status, [])

        assert opts.image_id is None
        assert opts.block_devices == (BlockDevice(uuid="vol-3"),)

    def test_additional_devices_after_image(self, machine_spec, ported_status):
        spec = {
            **machine_spec,
            "additionalBlockDevices": [
                {"name": "data", "sizeGiB": 50, "storage": {"type": "Volume"}},
                {"name": "scratch", "sizeGiB": 10, "storage": {"type": "Local"}},
            ],
        }
        ported_status.resources.block_devices.append(
            BlockDeviceStatus(name="data", id="vol-5", ready=True)
        )

        opts = build_server_opts("m1", spec, RESOLVED, ported_status, [])

        assert opts.image_id == "image-a"
        assert opts.block_devices == (
            BlockDevice(uuid="image-a", source_type="image", destination_type="local"),
            BlockDevice(uuid="vol-5", boot_index=-1, tag="data"),
            BlockDevice(
                source_type="blank",
                destination_type="local",
                boot_index=-1,
                volume_size=10,
                tag="scratch",
            ),
        )

    def test_additional_devices_after_root_volume(self, machine_spec, ported_status):
        spec = {
            **machine_spec,
            "rootVolume": {"sizeGiB": 20},
            "additionalBlockDevices": [
                {"name": "data", "sizeGiB": 50, "storage": {"type": "Volume"}},
            ],
        }
        ported_status.resources.root_volume = RootVolumeStatus(id="vol-3", ready=True)
        ported_status.resources.block_devices.append(
            BlockDeviceStatus(name="data", id="vol-5", ready=True)
        )

        opts = build_server_opts("m1", spec, RESOLVED, ported_status, [])

        assert [d.uuid for d in opts.block_devices] == ["vol-3", "vol-5"]
        assert "image_id" not in opts.to_kwargs()



class TestEnsureServer:
    """Tests for ensure_server function."""

    def test_creates_and_tracks_build(self, cloud, machine_spec, ported_status):
        ensure_server(cloud, "m1", machine_spec, RESOLVED, ported_status, [])

        assert ported_status.instance_id == "server-1"
        assert ported_status.instance_state == InstanceState.BUILDING

        cloud.advance()
        server = ensure_server(cloud, "m1", machine_spec, RESOLVED, ported_status, [])

        assert ported_status.instance_state == InstanceState.ACTIVE
        assert server_addresses(server) == [Address(type="InternalIP", address="10.0.0.10")]
        assert cloud.call_names().count("create_server") == 1

    def test_adopts_existing_server(self, cloud, machine_spec, ported_status):
        server_id = cloud.seed("server", name="m1", status="ACTIVE", addresses={})

        ensure_server(cloud, "m1", machine_spec, RESOLVED, ported_status, [])

        assert ported_status.instance_id == server_id
        assert "create_server" not in cloud.call_names()

    def test_vanished_server_is_terminal(self, cloud, machine_spec, ported_status):
        ported_status.instance_id = "server-404"

        with pytest.raises(ResourceFailedError) as exc:
            ensure_server(cloud, "m1", machine_spec, RESOLVED, ported_status, [])
        assert exc.value.reason == "UpdateError"

    def test_error_outcome(self, cloud, machine_spec, ported_status):
        cloud.server_outcomes["m1"] = "ERROR"
        ensure_server(cloud, "m1", machine_spec, RESOLVED, ported_status, [])
        cloud.advance()

        ensure_server(cloud, "m1", machine_spec, RESOLVED, ported_status, [])

        assert ported_status.instance_state == InstanceState.ERROR


class TestDeleteServer:
    """Tests for delete_server function."""

    def test_nothing_to_delete(self, cloud, status):
        assert delete_server(cloud, "m1", status) is True
        assert status.instance_state == InstanceState.DELETED
        assert cloud.mutating_calls() == []

    def test_waits_for_server_to_go(self, cloud, machine_spec, ported_status):
        ensure_server(cloud, "m1", machine_spec, RESOLVED, ported_status, [])
        cloud.advance()

        assert delete_server(cloud, "m1", ported_status) is False
        assert ported_status.instance_state == InstanceState.DELETING
        assert delete_server(cloud, "m1", ported_status) is False
        assert cloud.call_names().count("delete_server") == 1

        cloud.advance()
        assert delete_server(cloud, "m1", ported_status) is True
        assert ported_status.instance_state == InstanceState.DELETED

    def test_server_found_by_name_is_recorded(self, cloud, status):
        server_id = cloud.seed("server", name="m1", status="ACTIVE")

        delete_server(cloud, "m1", status)

        assert status.instance_id == server_id
        assert cloud.record("server", server_id)["_deleting"] is True
