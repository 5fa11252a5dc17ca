"""Kopf handlers for OpenstackServerGroup CRD."""

import logging
from typing import Any

import kopf

from constants import API_GROUP, API_VERSION, SERVER_GROUP_PLURAL
from handlers.common import forget_lock, run_reconcile, write_status
from identity import resolve_client
from models import OpenstackServerGroupSpec, Phase, ReconcileResult, ServerGroupStatus
from resources.server_group import delete_server_group, ensure_server_group
from utils import sanitize_name

logger = logging.getLogger(__name__)

RESOURCE = "OpenstackServerGroup"


@kopf.on.resume(API_GROUP, API_VERSION, SERVER_GROUP_PLURAL)
@kopf.on.create(API_GROUP, API_VERSION, SERVER_GROUP_PLURAL)
@kopf.on.update(API_GROUP, API_VERSION, SERVER_GROUP_PLURAL)
def reconcile_server_group_handler(
    spec: OpenstackServerGroupSpec,
    status: dict[str, Any],
    patch: kopf.Patch,
    namespace: str,
    name: str,
    body: kopf.Body,
    **_: Any,
) -> None:
    """Find or create the server group named after the object."""
    logger.info(f"Reconciling OpenstackServerGroup: {namespace}/{name}")
    group_status = ServerGroupStatus.from_dict(dict(status or {}))

    def step() -> ReconcileResult:
        if group_status.failure_reason:
            return ReconcileResult.finished()
        client = resolve_client(spec.get("identityRef"), namespace)
        group_name = sanitize_name(name)
        group_status.id = ensure_server_group(client, group_name, spec.get("policy"))
        group_status.name = group_name
        group_status.ready = True
        group_status.phase = Phase.READY
        return ReconcileResult.finished()

    try:
        run_reconcile(RESOURCE, "reconcile", f"{namespace}/{name}", body, group_status, step)
    finally:
        write_status(patch, status, group_status)


@kopf.on.delete(API_GROUP, API_VERSION, SERVER_GROUP_PLURAL)
def delete_server_group_handler(
    spec: OpenstackServerGroupSpec,
    status: dict[str, Any],
    patch: kopf.Patch,
    namespace: str,
    name: str,
    body: kopf.Body,
    **_: Any,
) -> None:
    """Delete the server group recorded in the status."""
    logger.info(f"Deleting OpenstackServerGroup: {namespace}/{name}")
    key = f"{namespace}/{name}"
    group_status = ServerGroupStatus.from_dict(dict(status or {}))

    def step() -> ReconcileResult:
        group_status.phase = Phase.DELETING
        group_status.ready = False
        client = resolve_client(spec.get("identityRef"), namespace)
        delete_server_group(client, group_status.id)
        group_status.id = None
        return ReconcileResult.finished()

    try:
        run_reconcile(RESOURCE, "delete", key, body, group_status, step)
    finally:
        write_status(patch, status, group_status)
    forget_lock(key)
