"""Tests for load balancer and pool membership management."""

import pytest

from models import (
    Address,
    ClusterContext,
    DependencyNotReadyError,
    LoadBalancerMemberStatus,
    MachineStatus,
    ResourceFailedError,
    ResourceInUseError,
)
from resources.loadbalancer import (
    delete_load_balancer,
    ensure_load_balancer,
    pool_algorithm,
    reconcile_members,
    remove_members,
)

LB_NAME = "k8s-clusterapi-cluster-c1-kubeapi"


def _ensure(cloud, ports=(6443,), provider=None):
    return lambda: ensure_load_balancer(cloud, LB_NAME, "subnet-1", list(ports), provider)[1]


@pytest.fixture
def lb_cluster():
    return ClusterContext(
        cluster_name="c1",
        network_id="net-1",
        subnet_ids=("subnet-1",),
        load_balancer_enabled=True,
        load_balancer_name=LB_NAME,
        load_balancer_ports=(6443,),
    )


@pytest.fixture
def machine():
    return MachineStatus(addresses=[Address(type="InternalIP", address="10.0.0.50")])


class TestPoolAlgorithm:
    """Tests for pool_algorithm function."""

    def test_ovn(self):
        assert pool_algorithm("ovn") == "SOURCE_IP_PORT"

    def test_default(self):
        assert pool_algorithm(None) == "ROUND_ROBIN"
        assert pool_algorithm("amphora") == "ROUND_ROBIN"


class TestEnsureLoadBalancer:
    """Tests for ensure_load_balancer function."""

    def test_one_child_per_pass(self, cloud, drive):
        passes = drive(_ensure(cloud))

        # load balancer, listener, pool, monitor, then done
        assert passes == 5
        assert [c.method for c in cloud.mutating_calls()] == [
            "create_load_balancer",
            "create_listener",
            "create_pool",
            "create_health_monitor",
        ]
        assert cloud.all("listener")[0]["name"] == f"{LB_NAME}-6443"

    def test_two_ports(self, cloud, drive):
        assert drive(_ensure(cloud, ports=(6443, 22))) == 8
        assert sorted(x["protocol_port"] for x in cloud.all("listener")) == [22, 6443]

    def test_waits_while_pending(self, cloud):
        _ensure(cloud)()
        cloud.reset_calls()

        result = _ensure(cloud)()

        assert result.done is False
        assert cloud.mutating_calls() == []

    def test_rerun_is_noop(self, cloud, drive):
        drive(_ensure(cloud))
        cloud.reset_calls()

        assert _ensure(cloud)().done is True
        assert cloud.mutating_calls() == []

    def test_ovn_pool_algorithm(self, cloud, drive):
        drive(_ensure(cloud, provider="ovn"))

        assert cloud.all("pool")[0]["lb_algorithm"] == "SOURCE_IP_PORT"

    def test_monitor_drift_is_repaired(self, cloud, drive):
        drive(_ensure(cloud))
        cloud.all("health_monitor")[0]["delay"] = 30
        cloud.reset_calls()

        assert drive(_ensure(cloud)) == 2
        assert [c.method for c in cloud.mutating_calls()] == ["update_health_monitor"]
        assert cloud.all("health_monitor")[0]["delay"] == 10

    def test_error_state_is_terminal(self, cloud):
        cloud.seed("load_balancer", name=LB_NAME, provisioning_status="ERROR")

        with pytest.raises(ResourceFailedError):
            _ensure(cloud)()


class TestDeleteLoadBalancer:
    """Tests for delete_load_balancer function."""

    def test_absent(self, cloud):
        assert delete_load_balancer(cloud, LB_NAME).done is True

    def test_refuses_with_children(self, cloud, drive):
        drive(_ensure(cloud))

        with pytest.raises(ResourceInUseError):
            delete_load_balancer(cloud, LB_NAME)
        assert "delete_load_balancer" not in cloud.call_names()

    def test_cascade(self, cloud, drive):
        drive(_ensure(cloud))
        cloud.reset_calls()

        assert drive(lambda: delete_load_balancer(cloud, LB_NAME, cascade=True)) == 2
        assert cloud.call_names().count("delete_load_balancer") == 1
        assert cloud.all("load_balancer") == []
        assert cloud.all("listener") == []
        assert cloud.all("health_monitor") == []

    def test_waits_for_pending_update(self, cloud):
        _ensure(cloud)()

        assert delete_load_balancer(cloud, LB_NAME).done is False
        assert "delete_load_balancer" not in cloud.call_names()


class TestMembers:
    """Tests for reconcile_members and remove_members functions."""

    def test_adds_member(self, cloud, drive, lb_cluster, machine):
        drive(_ensure(cloud))

        assert drive(lambda: reconcile_members(cloud, lb_cluster, "m1", machine)) == 2

        (member,) = cloud.all("member")
        assert member["address"] == "10.0.0.50"
        assert member["protocol_port"] == 6443
        assert member["subnet_id"] == "subnet-1"
        assert machine.load_balancer_members == [
            LoadBalancerMemberStatus(
                pool_id="pool-1", member_id=member["id"], address="10.0.0.50", port=6443
            )
        ]

    def test_replaces_member_with_stale_address(self, cloud, drive, lb_cluster, machine):
        drive(_ensure(cloud))
        drive(lambda: reconcile_members(cloud, lb_cluster, "m1", machine))
        machine.addresses = [Address(type="InternalIP", address="10.0.0.51")]
        cloud.reset_calls()

        drive(lambda: reconcile_members(cloud, lb_cluster, "m1", machine))

        assert [c.method for c in cloud.mutating_calls()] == ["delete_member", "create_member"]
        assert cloud.all("member")[0]["address"] == "10.0.0.51"

    def test_no_address_yet(self, cloud, drive, lb_cluster):
        drive(_ensure(cloud))

        with pytest.raises(DependencyNotReadyError):
            reconcile_members(cloud, lb_cluster, "m1", MachineStatus())

    def test_load_balancer_missing(self, cloud, lb_cluster, machine):
        with pytest.raises(DependencyNotReadyError):
            reconcile_members(cloud, lb_cluster, "m1", machine)

    def test_no_load_balancer_configured(self, cloud, cluster, machine):
        assert reconcile_members(cloud, cluster, "m1", machine).done is True
        assert cloud.calls == []

    def test_remove_members(self, cloud, drive, lb_cluster, machine):
        drive(_ensure(cloud))
        drive(lambda: reconcile_members(cloud, lb_cluster, "m1", machine))
        cloud.reset_calls()

        assert drive(lambda: remove_members(cloud, lb_cluster, "m1", machine)) == 2
        assert cloud.all("member") == []
        assert machine.load_balancer_members == []
        assert cloud.call_names().count("delete_member") == 1

    def test_remove_without_load_balancer(self, cloud, lb_cluster, machine):
        machine.load_balancer_members = [
            LoadBalancerMemberStatus(pool_id="pool-1", member_id="member-1", address="x", port=1)
        ]

        assert remove_members(cloud, lb_cluster, "m1", machine).done is True
        assert machine.load_balancer_members == []
