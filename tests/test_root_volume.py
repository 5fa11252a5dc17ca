"""Tests for root volume management."""

import pytest

from models import (
    AmbiguousResourceError,
    ResolvedMachineSpec,
    ResourceFailedError,
    RootVolumeStatus,
    VolumeCreateOpts,
)
from resources.root_volume import delete_root_volume, ensure_root_volume, root_volume_size

RESOLVED = ResolvedMachineSpec(image_id="image-a", flavor_id="flavor-small")


@pytest.fixture
def spec(machine_spec):
    return {**machine_spec, "rootVolume": {"sizeGiB": 20, "type": "ssd"}}


class TestRootVolumeSize:
    """Tests for root_volume_size function."""

    def test_unset(self, machine_spec):
        assert root_volume_size(machine_spec) == 0

    def test_set(self, spec):
        assert root_volume_size(spec) == 20


class TestEnsureRootVolume:
    """Tests for ensure_root_volume function."""

    def test_no_root_volume_requested(self, cloud, machine_spec, status):
        assert ensure_root_volume(cloud, "m1", machine_spec, RESOLVED, status) is True
        assert cloud.calls == []

    def test_creates_then_waits(self, cloud, spec, status):
        assert ensure_root_volume(cloud, "m1", spec, RESOLVED, status) is False
        assert status.resources.root_volume == RootVolumeStatus(id="vol-1", ready=False)
        volume = cloud.record("volume", "vol-1")
        assert volume["name"] == "m1-root"
        assert volume["image_id"] == "image-a"
        assert volume["volume_type"] == "ssd"

        assert ensure_root_volume(cloud, "m1", spec, RESOLVED, status) is False

        cloud.advance()
        assert ensure_root_volume(cloud, "m1", spec, RESOLVED, status) is True
        assert status.resources.root_volume.ready is True
        assert cloud.call_names().count("create_volume") == 1

    def test_ready_volume_is_not_polled(self, cloud, spec, status):
        status.resources.root_volume = RootVolumeStatus(id="vol-9", ready=True)

        assert ensure_root_volume(cloud, "m1", spec, RESOLVED, status) is True
        assert cloud.calls == []

    def test_adopts_available_volume(self, cloud, spec, status):
        cloud.create_volume(VolumeCreateOpts(name="m1-root", size=20))
        cloud.advance()
        cloud.reset_calls()

        assert ensure_root_volume(cloud, "m1", spec, RESOLVED, status) is True
        assert status.resources.root_volume == RootVolumeStatus(id="vol-1", ready=True)
        assert "create_volume" not in cloud.call_names()

    def test_ignores_wrong_size(self, cloud, spec, status):
        cloud.seed("volume", name="m1-root", size=10, status="available", attachments=[])

        ensure_root_volume(cloud, "m1", spec, RESOLVED, status)

        assert cloud.call_names().count("create_volume") == 1

    def test_ignores_attached_volume(self, cloud, spec, status):
        cloud.seed(
            "volume",
            name="m1-root",
            size=20,
            status="in-use",
            attachments=[{"server_id": "server-other"}],
        )

        ensure_root_volume(cloud, "m1", spec, RESOLVED, status)

        assert cloud.call_names().count("create_volume") == 1

    def test_ambiguous_adoption(self, cloud, spec, status):
        for _ in range(2):
            cloud.seed("volume", name="m1-root", size=20, status="available", attachments=[])

        with pytest.raises(AmbiguousResourceError):
            ensure_root_volume(cloud, "m1", spec, RESOLVED, status)
        assert "create_volume" not in cloud.call_names()

    def test_error_state_is_terminal(self, cloud, spec, status):
        cloud.volume_outcomes["m1-root"] = "error"
        ensure_root_volume(cloud, "m1", spec, RESOLVED, status)
        cloud.advance()

        with pytest.raises(ResourceFailedError):
            ensure_root_volume(cloud, "m1", spec, RESOLVED, status)

    def test_vanished_volume_is_terminal(self, cloud, spec, status):
        status.resources.root_volume = RootVolumeStatus(id="vol-404", ready=False)

        with pytest.raises(ResourceFailedError):
            ensure_root_volume(cloud, "m1", spec, RESOLVED, status)

    def test_existing_instance_skips_volume(self, cloud, spec, status):
        status.instance_id = "server-1"

        assert ensure_root_volume(cloud, "m1", spec, RESOLVED, status) is True
        assert cloud.calls == []


class TestDeleteRootVolume:
    """Tests for delete_root_volume function."""

    def test_deletes_unattached_volume(self, cloud, spec, status):
        ensure_root_volume(cloud, "m1", spec, RESOLVED, status)
        cloud.advance()

        delete_root_volume(cloud, "m1", spec, status)

        assert cloud.all("volume") == []
        assert status.resources.root_volume is None

    def test_deletes_unrecorded_volume(self, cloud, spec, status):
        cloud.create_volume(VolumeCreateOpts(name="m1-root", size=20))
        cloud.advance()

        delete_root_volume(cloud, "m1", spec, status)

        assert cloud.all("volume") == []

    def test_leaves_volume_to_nova_once_instance_existed(self, cloud, spec, status):
        status.instance_id = "server-1"
        status.resources.root_volume = RootVolumeStatus(id="vol-1", ready=True)

        delete_root_volume(cloud, "m1", spec, status)

        assert "delete_volume" not in cloud.call_names()
        assert status.resources.root_volume is None

    def test_already_deleted(self, cloud, spec, status):
        status.resources.root_volume = RootVolumeStatus(id="vol-404", ready=True)

        delete_root_volume(cloud, "m1", spec, status)

        assert status.resources.root_volume is None
