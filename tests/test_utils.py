"""Tests for utility functions."""

import datetime

from constants import MANAGED_BY_TAG
from utils import (
    bastion_name,
    block_device_volume_name,
    dedup,
    listener_name,
    load_balancer_name,
    member_name,
    now_iso,
    ownership_tags,
    port_name,
    root_volume_name,
    sanitize_name,
    security_group_name,
)


class TestSanitizeName:
    """Tests for sanitize_name function."""

    def test_lowercase(self):
        assert sanitize_name("MyGroup") == "mygroup"

    def test_dots_and_underscores_to_hyphens(self):
        assert sanitize_name("my.group_name") == "my-group-name"

    def test_removes_special_chars(self):
        assert sanitize_name("my@group!name") == "mygroupname"

    def test_collapses_multiple_hyphens(self):
        assert sanitize_name("my--group") == "my-group"
        assert sanitize_name("my...group") == "my-group"

    def test_strips_leading_trailing_hyphens(self):
        assert sanitize_name("-group-") == "group"


class TestResourceNames:
    """Tests for the deterministic cloud resource names."""

    def test_port_name_by_index(self):
        assert port_name("m1", 0) == "m1-0"
        assert port_name("m1", 3) == "m1-3"

    def test_port_name_with_suffix(self):
        assert port_name("m1", 1, "storage") == "m1-storage"

    def test_root_volume_name(self):
        assert root_volume_name("m1") == "m1-root"

    def test_block_device_volume_name(self):
        assert block_device_volume_name("m1", "data") == "m1-data"

    def test_bastion_name(self):
        assert bastion_name("c1") == "c1-bastion"

    def test_load_balancer_name(self):
        assert load_balancer_name("c1") == "k8s-clusterapi-cluster-c1-kubeapi"

    def test_listener_and_member_names(self):
        lb = load_balancer_name("c1")
        assert listener_name(lb, 6443) == f"{lb}-6443"
        assert member_name(lb, 6443, "m1") == f"{lb}-6443-m1"

    def test_security_group_name(self):
        assert security_group_name("c1", "all") == "k8s-cluster-c1-secgroup-all"


class TestDedup:
    """Tests for dedup function."""

    def test_keeps_first_occurrence_order(self):
        assert dedup(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]

    def test_empty(self):
        assert dedup([]) == []


class TestOwnershipTags:
    """Tests for ownership_tags function."""

    def test_base_tags(self):
        assert ownership_tags("c1") == [MANAGED_BY_TAG, "cluster:c1"]

    def test_extra_tags_appended_without_duplicates(self):
        tags = ownership_tags("c1", ["x", "cluster:c1"], ["y", "x"])
        assert tags == [MANAGED_BY_TAG, "cluster:c1", "x", "y"]


class TestNowIso:
    """Tests for now_iso function."""

    def test_returns_utc_iso_format(self):
        parsed = datetime.datetime.fromisoformat(now_iso())
        assert parsed.tzinfo is not None
        assert parsed.utcoffset() == datetime.timedelta(0)
