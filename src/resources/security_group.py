"""Security group management.

Rules are reconciled declaratively: the current rules of a group are
compared with the wanted ones by content, missing rules are created and
extra ones deleted. Remote groups may be given as placeholders (``self`` or
a managed group role) that resolve once every group of the set exists.
"""

import dataclasses
import logging
from collections.abc import Sequence
from typing import Any

from constants import (
    BASTION_SUFFIX,
    CONTROL_PLANE_SUFFIX,
    DEFAULT_API_SERVER_PORT,
    GLOBAL_SUFFIX,
    MANAGED_BY_DESCRIPTION,
    REMOTE_GROUP_SELF,
)
from models import (
    AmbiguousResourceError,
    ConfigurationError,
    ConflictError,
    Direction,
    OpenstackClusterSpec,
    ResourceNotFoundError,
    SecurityGroupRule,
    SecurityGroupRuleSpec,
    SecurityGroupStatus,
)
from openstack_client import OpenStackClient
from utils import security_group_name

logger = logging.getLogger(__name__)

MANAGED_ROLES = (CONTROL_PLANE_SUFFIX, GLOBAL_SUFFIX, BASTION_SUFFIX)


def default_egress_rules() -> list[SecurityGroupRule]:
    """The egress rules Neutron adds to every new group."""
    return [
        SecurityGroupRule(direction=Direction.EGRESS.value, ether_type="IPv4"),
        SecurityGroupRule(direction=Direction.EGRESS.value, ether_type="IPv6"),
    ]


def rule_from_spec(spec: SecurityGroupRuleSpec) -> SecurityGroupRule:
    """Convert a rule from a CR; ``remoteGroup`` stays a placeholder."""
    return SecurityGroupRule(
        direction=spec["direction"],
        ether_type=spec.get("etherType", "IPv4"),
        protocol=spec.get("protocol"),
        port_range_min=spec.get("portRangeMin"),
        port_range_max=spec.get("portRangeMax"),
        remote_group_id=spec.get("remoteGroup"),
        remote_ip_prefix=spec.get("remoteIPPrefix"),
        description=spec.get("description", ""),
    )


def _tcp_from_anywhere(port: int, description: str) -> SecurityGroupRule:
    return SecurityGroupRule(
        direction=Direction.INGRESS.value,
        protocol="tcp",
        port_range_min=port,
        port_range_max=port,
        remote_ip_prefix="0.0.0.0/0",
        description=description,
    )


def managed_rule_sets(spec: OpenstackClusterSpec) -> dict[str, list[SecurityGroupRule]]:
    """Wanted rules of the cluster-managed groups, keyed by role."""
    control_plane = [
        *default_egress_rules(),
        _tcp_from_anywhere(443, "Kubernetes API"),
        _tcp_from_anywhere(22, "SSH"),
    ]
    api_port = spec.get("apiServerPort", DEFAULT_API_SERVER_PORT)
    if api_port != 443:
        control_plane.append(_tcp_from_anywhere(api_port, "Kubernetes API"))

    everything = [
        *default_egress_rules(),
        SecurityGroupRule(
            direction=Direction.INGRESS.value,
            protocol="tcp",
            port_range_min=1,
            port_range_max=65535,
            remote_group_id=REMOTE_GROUP_SELF,
            description="In-cluster TCP",
        ),
        SecurityGroupRule(
            direction=Direction.INGRESS.value,
            protocol="udp",
            port_range_min=1,
            port_range_max=65535,
            remote_group_id=REMOTE_GROUP_SELF,
            description="In-cluster UDP",
        ),
        SecurityGroupRule(
            direction=Direction.INGRESS.value,
            protocol="icmp",
            remote_group_id=REMOTE_GROUP_SELF,
            description="In-cluster ICMP",
        ),
    ]
    everything.extend(
        rule_from_spec(r) for r in spec.get("additionalSecurityGroupRules", [])
    )
    rule_sets = {CONTROL_PLANE_SUFFIX: control_plane, GLOBAL_SUFFIX: everything}
    if (spec.get("bastion") or {}).get("enabled"):
        everything.append(
            SecurityGroupRule(
                direction=Direction.INGRESS.value,
                protocol="tcp",
                port_range_min=22,
                port_range_max=22,
                remote_group_id=BASTION_SUFFIX,
                description="SSH from bastion",
            )
        )
        rule_sets[BASTION_SUFFIX] = [*default_egress_rules(), _tcp_from_anywhere(22, "SSH")]
    return rule_sets


def resolve_remote_groups(
    rules: Sequence[SecurityGroupRule],
    own_id: str,
    ids_by_role: dict[str, str],
) -> list[SecurityGroupRule]:
    """Replace remote group placeholders with real group IDs."""
    resolved = []
    for rule in rules:
        remote = rule.remote_group_id
        if remote == REMOTE_GROUP_SELF:
            rule = dataclasses.replace(rule, remote_group_id=own_id)
        elif remote in MANAGED_ROLES:
            if remote not in ids_by_role:
                raise ConfigurationError(f"remote group {remote} is not a managed group")
            rule = dataclasses.replace(rule, remote_group_id=ids_by_role[remote])
        resolved.append(rule)
    return resolved


def find_or_create_security_group(
    client: OpenStackClient, name: str, tags: Sequence[str] = ()
) -> Any:
    groups = client.list_security_groups(name=name)
    if len(groups) > 1:
        raise AmbiguousResourceError(
            f"{len(groups)} security groups are named {name}: "
            f"{', '.join(sorted(g.id for g in groups))}"
        )
    if groups:
        group = groups[0]
        logger.debug(f"Security group {name} already exists with ID {group.id}")
    else:
        group = client.create_security_group(name, MANAGED_BY_DESCRIPTION)
        logger.info(f"Created security group {name} with ID {group.id}")

    if tags and set(tags) != set(group.tags or []):
        client.set_tags(group, list(tags))
    return group


def reconcile_rules(
    client: OpenStackClient,
    security_group_id: str,
    wanted: Sequence[SecurityGroupRule],
) -> tuple[SecurityGroupRule, ...]:
    """Make a group's rules equal to ``wanted``.

    Args:
        client: OpenStack client
        security_group_id: Group to reconcile
        wanted: Rules with remote groups already resolved

    Returns:
        The applied rule set
    """
    current: dict[SecurityGroupRule, list[str]] = {}
    for sdk_rule in client.list_security_group_rules(security_group_id=security_group_id):
        current.setdefault(SecurityGroupRule.from_sdk(sdk_rule), []).append(sdk_rule.id)

    wanted_set = set(wanted)
    for rule, rule_ids in current.items():
        if rule in wanted_set:
            continue
        for rule_id in rule_ids:
            try:
                client.delete_security_group_rule(rule_id)
                logger.info(f"Deleted extra rule {rule_id} from {security_group_id}")
            except ResourceNotFoundError:
                logger.debug(f"Rule {rule_id} already deleted")

    for rule in dict.fromkeys(wanted):
        if rule in current:
            continue
        try:
            client.create_security_group_rule(security_group_id, rule)
        except ConflictError:
            logger.debug(f"Rule {rule} already exists in {security_group_id}")

    return tuple(dict.fromkeys(wanted))


def ensure_security_group(
    client: OpenStackClient,
    name: str,
    rules: Sequence[SecurityGroupRule],
    tags: Sequence[str] = (),
) -> SecurityGroupStatus:
    """Ensure a single security group exists with exactly the given rules."""
    group = find_or_create_security_group(client, name, tags)
    applied = reconcile_rules(client, group.id, resolve_remote_groups(rules, group.id, {}))
    return SecurityGroupStatus(name=name, id=group.id, rules=applied)


def ensure_managed_security_groups(
    client: OpenStackClient,
    cluster_name: str,
    spec: OpenstackClusterSpec,
    tags: Sequence[str] = (),
) -> dict[str, SecurityGroupStatus]:
    """Ensure the cluster-managed groups and their rules.

    Creates groups in two passes:
    1. First pass: find or create every group without touching rules
    2. Second pass: reconcile rules (allows cross-group references)

    Returns:
        Security group status keyed by role
    """
    rule_sets = managed_rule_sets(spec)

    # First pass: groups
    ids_by_role: dict[str, str] = {}
    for role in rule_sets:
        group = find_or_create_security_group(
            client, security_group_name(cluster_name, role), tags
        )
        ids_by_role[role] = group.id

    # Second pass: rules
    results: dict[str, SecurityGroupStatus] = {}
    for role, rules in rule_sets.items():
        group_id = ids_by_role[role]
        applied = reconcile_rules(
            client, group_id, resolve_remote_groups(rules, group_id, ids_by_role)
        )
        results[role] = SecurityGroupStatus(
            name=security_group_name(cluster_name, role), id=group_id, rules=applied
        )
    return results


def delete_security_group(client: OpenStackClient, security_group_id: str) -> None:
    """Delete a security group; a missing group counts as deleted."""
    try:
        client.delete_security_group(security_group_id)
        logger.info(f"Deleted security group {security_group_id}")
    except ResourceNotFoundError:
        logger.debug(f"Security group {security_group_id} already deleted")


def delete_managed_security_groups(
    client: OpenStackClient,
    cluster_name: str,
    known: dict[str, SecurityGroupStatus],
) -> None:
    """Delete the cluster-managed groups, including ones missing from status."""
    group_ids = [sg.id for sg in known.values() if sg.id]
    for role in MANAGED_ROLES:
        for group in client.list_security_groups(name=security_group_name(cluster_name, role)):
            if group.id not in group_ids:
                group_ids.append(group.id)

    for group_id in group_ids:
        delete_security_group(client, group_id)


def delete_role_security_group(client: OpenStackClient, cluster_name: str, role: str) -> None:
    """Delete the managed group of one role, found by name."""
    for group in client.list_security_groups(name=security_group_name(cluster_name, role)):
        delete_security_group(client, group.id)
