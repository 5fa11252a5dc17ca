"""Server group management."""

import logging

from constants import DEFAULT_SERVER_GROUP_POLICY
from models import AmbiguousResourceError, ConfigurationError, ResourceNotFoundError, ResourceRef
from openstack_client import OpenStackClient

logger = logging.getLogger(__name__)


def resolve_server_group_id(client: OpenStackClient, ref: ResourceRef) -> str:
    """Resolve a server group reference to an ID.

    An ID is used as-is; a name must match exactly one group.
    """
    if ref.get("id"):
        return ref["id"]

    name = ref.get("name")
    if not name:
        raise ConfigurationError("serverGroup reference needs an id or a name")

    groups = [g for g in client.list_server_groups() if g.name == name]
    if not groups:
        raise ConfigurationError(f"Server group {name} not found")
    if len(groups) > 1:
        raise AmbiguousResourceError(
            f"{len(groups)} server groups are named {name}: "
            f"{', '.join(sorted(g.id for g in groups))}"
        )
    return groups[0].id


def ensure_server_group(
    client: OpenStackClient,
    name: str,
    policy: str | None = None,
) -> str:
    """Find or create a server group by name, returning its ID."""
    policy = policy or DEFAULT_SERVER_GROUP_POLICY
    groups = [g for g in client.list_server_groups() if g.name == name]
    if len(groups) > 1:
        raise AmbiguousResourceError(f"{len(groups)} server groups are named {name}")
    if groups:
        group = groups[0]
        logger.info(f"Server group {name} already exists with ID {group.id}")
        current = group.policy or (group.policies or [None])[0]
        if current != policy:
            logger.warning(
                f"Server group {name} has policy {current}, wanted {policy}; "
                "policies can't be changed in place"
            )
        return group.id

    group = client.create_server_group(name, policy)
    logger.info(f"Created server group {name} with ID {group.id}")
    return group.id


def delete_server_group(client: OpenStackClient, server_group_id: str | None) -> None:
    """Delete a server group; a missing group counts as deleted."""
    if not server_group_id:
        return
    try:
        client.delete_server_group(server_group_id)
    except ResourceNotFoundError:
        logger.debug(f"Server group {server_group_id} already deleted")
