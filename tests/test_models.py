"""Tests for data models."""

import base64

import pytest

from models import (
    AmbiguousResourceError,
    BlockDevice,
    ClusterContext,
    ClusterStatus,
    Condition,
    ConditionStatus,
    ConfigurationError,
    ConflictError,
    FixedIP,
    InstanceState,
    MachineStatus,
    NetworkStatus,
    Phase,
    PortCreateOpts,
    PortStatus,
    ReconcileResult,
    ResolvedMachineSpec,
    ResourceFailedError,
    RootVolumeStatus,
    SecurityGroupRule,
    SecurityGroupStatus,
    ServerCreateOpts,
    ServerGroupStatus,
    TerminalError,
    TRANSIENT_ERRORS,
)


class TestPortCreateOpts:
    """Tests for PortCreateOpts dataclass."""

    def test_to_kwargs_minimal(self):
        opts = PortCreateOpts(name="m1-0", network_id="net-1")

        assert opts.to_kwargs() == {"name": "m1-0", "network_id": "net-1", "description": ""}

    def test_unmanaged_security_groups_are_omitted(self):
        opts = PortCreateOpts(name="m1-0", network_id="net-1", security_group_ids=None)

        assert "security_group_ids" not in opts.to_kwargs()

    def test_empty_security_groups_are_sent(self):
        opts = PortCreateOpts(name="m1-0", network_id="net-1", security_group_ids=())

        assert opts.to_kwargs()["security_group_ids"] == []

    def test_fixed_ips_skip_unset_fields(self):
        opts = PortCreateOpts(
            name="m1-0",
            network_id="net-1",
            fixed_ips=(FixedIP(subnet_id="subnet-1"), FixedIP(ip_address="10.0.0.5")),
        )

        assert opts.to_kwargs()["fixed_ips"] == [
            {"subnet_id": "subnet-1"},
            {"ip_address": "10.0.0.5"},
        ]

    def test_tags_and_trunk_are_not_create_arguments(self):
        opts = PortCreateOpts(name="m1-0", network_id="net-1", tags=("a",), trunk=True)
        kwargs = opts.to_kwargs()

        assert "tags" not in kwargs
        assert "trunk" not in kwargs

    def test_status_dict_keeps_explicit_empty_security_groups(self):
        opts = PortCreateOpts(name="m1-0", network_id="net-1", security_group_ids=())

        restored = PortCreateOpts.from_dict(opts.to_dict())

        assert restored.security_group_ids == ()


class TestServerCreateOpts:
    """Tests for ServerCreateOpts dataclass."""

    def test_boot_from_image(self):
        opts = ServerCreateOpts(
            name="m1", flavor_id="f1", port_ids=("p1", "p2"), image_id="img"
        )

        assert opts.to_kwargs() == {
            "name": "m1",
            "flavor_id": "f1",
            "networks": [{"port": "p1"}, {"port": "p2"}],
            "image_id": "img",
        }

    def test_boot_from_volume_drops_image(self):
        opts = ServerCreateOpts(
            name="m1",
            flavor_id="f1",
            port_ids=("p1",),
            image_id="img",
            block_devices=(BlockDevice(uuid="vol-1"),),
        )
        kwargs = opts.to_kwargs()

        assert "image_id" not in kwargs
        assert kwargs["block_device_mapping"] == [
            {
                "uuid": "vol-1",
                "source_type": "volume",
                "destination_type": "volume",
                "boot_index": 0,
                "delete_on_termination": True,
            }
        ]

    def test_local_disk_keeps_image(self):
        opts = ServerCreateOpts(
            name="m1",
            flavor_id="f1",
            port_ids=("p1",),
            image_id="img",
            block_devices=(
                BlockDevice(
                    source_type="blank",
                    destination_type="local",
                    boot_index=-1,
                    volume_size=10,
                    tag="scratch",
                ),
            ),
        )
        kwargs = opts.to_kwargs()

        assert kwargs["image_id"] == "img"
        assert kwargs["block_device_mapping"] == [
            {
                "source_type": "blank",
                "destination_type": "local",
                "boot_index": -1,
                "delete_on_termination": True,
                "volume_size": 10,
                "tag": "scratch",
            }
        ]


    def test_optional_fields(self):
        opts = ServerCreateOpts(
            name="m1",
            flavor_id="f1",
            port_ids=("p1",),
            user_data="#cloud-config",
            config_drive=True,
            tags=("t1",),
            server_group_id="sg-1",
        )
        kwargs = opts.to_kwargs()

        assert base64.b64decode(kwargs["user_data"]) == b"#cloud-config"
        assert kwargs["config_drive"] is True
        assert kwargs["tags"] == ["t1"]
        assert kwargs["scheduler_hints"] == {"group": "sg-1"}


class TestSecurityGroupRule:
    """Tests for SecurityGroupRule dataclass."""

    def test_equality_ignores_description(self):
        a = SecurityGroupRule(direction="ingress", protocol="tcp", description="one")
        b = SecurityGroupRule(direction="ingress", protocol="tcp", description="two")

        assert a == b
        assert hash(a) == hash(b)

    def test_normalizes_any_protocol_and_zero_ports(self):
        declared = SecurityGroupRule(
            direction="ingress", protocol="any", port_range_min=0, port_range_max=0
        )

        assert declared == SecurityGroupRule(direction="ingress")

    def test_different_remote_is_different_rule(self):
        a = SecurityGroupRule(direction="ingress", remote_ip_prefix="0.0.0.0/0")
        b = SecurityGroupRule(direction="ingress", remote_ip_prefix="10.0.0.0/8")

        assert a != b

    def test_to_dict(self):
        rule = SecurityGroupRule(
            direction="ingress",
            protocol="tcp",
            port_range_min=22,
            port_range_max=22,
            remote_ip_prefix="0.0.0.0/0",
        )

        assert rule.to_dict() == {
            "direction": "ingress",
            "etherType": "IPv4",
            "protocol": "tcp",
            "portRangeMin": 22,
            "portRangeMax": 22,
            "remoteIPPrefix": "0.0.0.0/0",
        }


class TestCondition:
    """Tests for Condition dataclass."""

    def test_to_dict(self):
        condition = Condition(
            type="Ready",
            status=ConditionStatus.TRUE,
            reason="InstanceActive",
            message="",
            last_transition_time="2024-01-01T00:00:00Z",
        )

        assert condition.to_dict() == {
            "type": "Ready",
            "status": "True",
            "reason": "InstanceActive",
            "message": "",
            "lastTransitionTime": "2024-01-01T00:00:00Z",
        }

    def test_from_dict_unknown_status(self):
        condition = Condition.from_dict({"type": "Ready", "status": "Maybe"})

        assert condition.status == ConditionStatus.UNKNOWN


class TestMachineStatus:
    """Tests for MachineStatus dataclass."""

    def test_defaults(self):
        status = MachineStatus()

        assert status.phase == Phase.PENDING
        assert status.instance_state == InstanceState.ABSENT
        assert status.to_dict() == {
            "phase": "Pending",
            "ready": False,
            "instanceState": "Absent",
            "resources": {"ports": []},
        }

    def test_round_trip(self):
        status = MachineStatus(
            phase=Phase.PROVISIONING,
            instance_id="server-1",
            instance_state=InstanceState.BUILDING,
            resolved=ResolvedMachineSpec(
                image_id="image-a",
                flavor_id="flavor-small",
                ports=(PortCreateOpts(name="m1-0", network_id="net-1"),),
            ),
        )
        status.resources.ports.append(PortStatus(id="port-1", network_id="net-1"))
        status.resources.root_volume = RootVolumeStatus(id="vol-1", ready=True)

        restored = MachineStatus.from_dict(status.to_dict())

        assert restored == status

    def test_from_dict_tolerates_unknown_phase(self):
        status = MachineStatus.from_dict({"phase": "Weird", "instanceState": "Gone"})

        assert status.phase == Phase.PENDING
        assert status.instance_state == InstanceState.ABSENT

    def test_set_condition_keeps_transition_time_when_unchanged(self):
        status = MachineStatus()
        status.set_condition("Ready", ConditionStatus.FALSE, "Building")
        first = status.conditions[0].last_transition_time

        status.set_condition("Ready", ConditionStatus.FALSE, "StillBuilding")

        assert len(status.conditions) == 1
        assert status.conditions[0].reason == "StillBuilding"
        assert status.conditions[0].last_transition_time == first

    def test_set_failure(self):
        status = MachineStatus(ready=True, phase=Phase.READY)

        status.set_failure("CreateError", "server went to ERROR")

        assert status.phase == Phase.ERROR
        assert status.ready is False
        assert status.to_dict()["failureReason"] == "CreateError"


class TestClusterStatus:
    """Tests for ClusterStatus dataclass."""

    def test_security_groups_keyed_by_role(self):
        status = ClusterStatus(
            security_groups={"all": SecurityGroupStatus(name="sg-all", id="secgroup-1")}
        )

        restored = ClusterStatus.from_dict(status.to_dict())

        assert restored.security_groups["all"].id == "secgroup-1"

    def test_bastion_status_is_nested(self):
        status = ClusterStatus(
            bastion=MachineStatus(instance_id="server-4", floating_ip="172.24.4.11")
        )

        data = status.to_dict()

        assert data["bastion"]["instanceID"] == "server-4"
        assert ClusterStatus.from_dict(data).bastion.floating_ip == "172.24.4.11"



class TestServerGroupStatus:
    """Tests for ServerGroupStatus dataclass."""

    def test_to_dict(self):
        status = ServerGroupStatus(phase=Phase.READY, ready=True, id="sg-1", name="workers")

        assert status.to_dict() == {
            "phase": "Ready",
            "ready": True,
            "id": "sg-1",
            "name": "workers",
        }


class TestClusterContext:
    """Tests for ClusterContext.from_cluster."""

    def test_reads_status(self):
        status = ClusterStatus(
            network=NetworkStatus(id="net-1", name="n", subnet_ids=("subnet-1",)),
            external_network_id="ext-net",
            security_groups={"all": SecurityGroupStatus(name="x", id="secgroup-2")},
        )

        context = ClusterContext.from_cluster(
            "c1", {"managedSecurityGroups": True, "tags": ["t"]}, status.to_dict()
        )

        assert context.network_id == "net-1"
        assert context.subnet_ids == ("subnet-1",)
        assert context.external_network_id == "ext-net"
        assert context.security_group_ids == {"all": "secgroup-2"}
        assert context.managed_security_groups is True
        assert context.tags == ("t",)
        assert context.load_balancer_enabled is False
        assert context.load_balancer_ports == ()

    def test_load_balancer_ports(self):
        spec = {
            "apiServerPort": 6443,
            "apiServerLoadBalancer": {"enabled": True, "additionalPorts": [22, 6443]},
        }

        context = ClusterContext.from_cluster("c1", spec, None)

        assert context.load_balancer_name == "k8s-clusterapi-cluster-c1-kubeapi"
        assert context.load_balancer_ports == (6443, 22)

    def test_missing_status(self):
        context = ClusterContext.from_cluster("c1", {}, None)

        assert context.network_id is None
        assert context.security_group_ids == {}


class TestReconcileResult:
    """Tests for ReconcileResult."""

    def test_finished(self):
        assert ReconcileResult.finished().done is True

    def test_requeue_carries_reason(self):
        result = ReconcileResult.requeue("volume creating")

        assert result.done is False
        assert result.reason == "volume creating"


class TestExceptions:
    """Tests for the error taxonomy."""

    def test_terminal_reasons(self):
        assert AmbiguousResourceError("x").reason == "AmbiguousAdoption"
        assert ConfigurationError("x").reason == "InvalidConfiguration"
        assert ResourceFailedError("x").reason == "CreateError"
        assert ResourceFailedError("x", reason="UpdateError").reason == "UpdateError"

    def test_terminal_errors_are_not_transient(self):
        assert not issubclass(TerminalError, TRANSIENT_ERRORS)
        assert issubclass(ConflictError, TRANSIENT_ERRORS)

    def test_raise_and_catch_as_terminal(self):
        with pytest.raises(TerminalError):
            raise AmbiguousResourceError("two volumes")
