"""Tests for security group reconciliation."""

import pytest

from models import (
    AmbiguousResourceError,
    ConfigurationError,
    ConflictError,
    SecurityGroupRule,
)
from resources.security_group import (
    delete_managed_security_groups,
    delete_role_security_group,
    ensure_managed_security_groups,
    ensure_security_group,
    managed_rule_sets,
    reconcile_rules,
    resolve_remote_groups,
    rule_from_spec,
)
from utils import security_group_name

TAGS = ["managed", "cluster:c1"]


def _rules_of(cloud, group_id):
    return {
        SecurityGroupRule(**{k: r[k] for k in (
            "direction",
            "ether_type",
            "protocol",
            "port_range_min",
            "port_range_max",
            "remote_group_id",
            "remote_ip_prefix",
        )})
        for r in cloud.all("security_group_rule")
        if r["security_group_id"] == group_id
    }


class TestManagedRuleSets:
    """Tests for the declared rule sets."""

    def test_control_plane_rules(self):
        rules = managed_rule_sets({})["controlplane"]
        ports = sorted(r.port_range_min for r in rules if r.protocol == "tcp")

        assert ports == [22, 443, 6443]

    def test_api_port_443_not_duplicated(self):
        rules = managed_rule_sets({"apiServerPort": 443})["controlplane"]

        assert len([r for r in rules if r.port_range_min == 443]) == 1

    def test_additional_rules_go_to_all(self):
        spec = {
            "additionalSecurityGroupRules": [
                {"direction": "ingress", "protocol": "tcp", "portRangeMin": 30000,
                 "portRangeMax": 32767, "remoteIPPrefix": "10.0.0.0/8"},
            ]
        }

        rules = managed_rule_sets(spec)["all"]

        assert any(r.port_range_min == 30000 for r in rules)

    def test_no_bastion_group_by_default(self):
        assert set(managed_rule_sets({})) == {"controlplane", "all"}

    def test_bastion_group_and_ssh_from_it(self):
        rule_sets = managed_rule_sets({"bastion": {"enabled": True}})

        bastion_ingress = [r for r in rule_sets["bastion"] if r.direction == "ingress"]
        assert [(r.port_range_min, r.remote_ip_prefix) for r in bastion_ingress] == [
            (22, "0.0.0.0/0")
        ]
        assert any(
            r.port_range_min == 22 and r.remote_group_id == "bastion" for r in rule_sets["all"]
        )



class TestResolveRemoteGroups:
    """Tests for remote group placeholders."""

    def test_self_and_roles(self):
        rules = [
            SecurityGroupRule(direction="ingress", remote_group_id="self"),
            SecurityGroupRule(direction="ingress", protocol="tcp", remote_group_id="controlplane"),
            SecurityGroupRule(direction="ingress", protocol="udp", remote_group_id="external-id"),
        ]

        resolved = resolve_remote_groups(rules, "own", {"controlplane": "cp-id"})

        assert [r.remote_group_id for r in resolved] == ["own", "cp-id", "external-id"]

    def test_unknown_role(self):
        rules = [SecurityGroupRule(direction="ingress", remote_group_id="all")]

        with pytest.raises(ConfigurationError):
            resolve_remote_groups(rules, "own", {})

    def test_rule_from_spec_keeps_placeholder(self):
        rule = rule_from_spec({"direction": "ingress", "remoteGroup": "self"})

        assert rule.remote_group_id == "self"


class TestEnsureManagedSecurityGroups:
    """Tests for ensure_managed_security_groups function."""

    def test_creates_groups_and_rules(self, cloud):
        result = ensure_managed_security_groups(cloud, "c1", {}, TAGS)

        assert set(result) == {"controlplane", "all"}
        all_id = result["all"].id
        assert cloud.record("security_group", all_id)["name"] == security_group_name("c1", "all")
        assert cloud.record("security_group", all_id)["tags"] == TAGS
        assert _rules_of(cloud, all_id) == set(result["all"].rules)
        self_rules = [r for r in result["all"].rules if r.remote_group_id]
        assert {r.remote_group_id for r in self_rules} == {all_id}

    def test_second_run_makes_no_changes(self, cloud):
        ensure_managed_security_groups(cloud, "c1", {}, TAGS)
        cloud.reset_calls()

        ensure_managed_security_groups(cloud, "c1", {}, TAGS)

        assert cloud.mutating_calls() == []

    def test_repairs_deleted_rule(self, cloud):
        result = ensure_managed_security_groups(cloud, "c1", {}, TAGS)
        group_id = result["controlplane"].id
        ssh = next(
            r for r in cloud.all("security_group_rule")
            if r["security_group_id"] == group_id and r["port_range_min"] == 22
        )
        cloud.delete_security_group_rule(ssh["id"])
        cloud.reset_calls()

        ensure_managed_security_groups(cloud, "c1", {}, TAGS)

        assert [c.method for c in cloud.mutating_calls()] == ["create_security_group_rule"]
        assert _rules_of(cloud, group_id) == set(result["controlplane"].rules)

    def test_removes_foreign_rule(self, cloud):
        result = ensure_managed_security_groups(cloud, "c1", {}, TAGS)
        group_id = result["controlplane"].id
        cloud.create_security_group_rule(
            group_id,
            SecurityGroupRule(
                direction="ingress", protocol="tcp", port_range_min=8080,
                port_range_max=8080, remote_ip_prefix="0.0.0.0/0",
            ),
        )
        cloud.reset_calls()

        ensure_managed_security_groups(cloud, "c1", {}, TAGS)

        assert [c.method for c in cloud.mutating_calls()] == ["delete_security_group_rule"]
        assert all(r.port_range_min != 8080 for r in _rules_of(cloud, group_id))

    def test_ambiguous_group(self, cloud):
        name = security_group_name("c1", "all")
        cloud.create_security_group(name)
        cloud.create_security_group(name)

        with pytest.raises(AmbiguousResourceError):
            ensure_managed_security_groups(cloud, "c1", {}, TAGS)


class TestReconcileRules:
    """Tests for reconcile_rules function."""

    def test_tolerates_concurrent_create(self, cloud):
        group = cloud.create_security_group("sg")
        rule = SecurityGroupRule(direction="ingress", protocol="icmp")
        cloud.fail_next("create_security_group_rule", ConflictError("exists"))

        applied = reconcile_rules(cloud, group.id, [*_rules_of(cloud, group.id), rule])

        assert rule in applied

    def test_duplicates_collapse(self, cloud):
        group = cloud.create_security_group("sg")
        rule = SecurityGroupRule(direction="ingress", protocol="icmp")
        wanted = [*_rules_of(cloud, group.id), rule, rule]

        applied = reconcile_rules(cloud, group.id, wanted)

        assert len(applied) == 3
        assert cloud.call_names().count("create_security_group_rule") == 1

    def test_single_group_with_self_reference(self, cloud):
        rules = [SecurityGroupRule(direction="ingress", protocol="tcp", remote_group_id="self")]

        status = ensure_security_group(cloud, "bastion", rules)

        assert _rules_of(cloud, status.id) == {
            SecurityGroupRule(direction="ingress", protocol="tcp", remote_group_id=status.id)
        }


class TestDeleteManagedSecurityGroups:
    """Tests for delete_managed_security_groups function."""

    def test_deletes_known_and_unrecorded(self, cloud):
        result = ensure_managed_security_groups(cloud, "c1", {}, TAGS)
        known = {"all": result["all"]}

        delete_managed_security_groups(cloud, "c1", known)

        assert cloud.all("security_group") == []
        assert cloud.all("security_group_rule") == []

    def test_already_deleted(self, cloud):
        result = ensure_managed_security_groups(cloud, "c1", {}, TAGS)
        cloud.delete_security_group(result["all"].id)

        delete_managed_security_groups(cloud, "c1", result)

        assert cloud.all("security_group") == []

    def test_in_use_group_raises_conflict(self, cloud):
        result = ensure_managed_security_groups(cloud, "c1", {}, TAGS)
        cloud.seed(
            "port", name="p", network_id="net-1", fixed_ips=[], device_id="",
            security_group_ids=[result["all"].id], tags=[],
        )

        with pytest.raises(ConflictError):
            delete_managed_security_groups(cloud, "c1", result)

    def test_role_group_deleted_alone(self, cloud):
        ensure_managed_security_groups(cloud, "c1", {"bastion": {"enabled": True}}, TAGS)

        delete_role_security_group(cloud, "c1", "bastion")

        assert sorted(g["name"] for g in cloud.all("security_group")) == [
            security_group_name("c1", "all"),
            security_group_name("c1", "controlplane"),
        ]
