"""Shared plumbing for the kopf handlers.

Engine results and errors are mapped onto kopf's retry model here:
unfinished passes and transient errors raise ``kopf.TemporaryError``,
terminal errors are written to the status and raise ``kopf.PermanentError``.
"""

import logging
import os
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import Any, Protocol

import kopf

from metrics import (
    RECONCILE_DURATION,
    RECONCILE_IN_PROGRESS,
    RECONCILE_REQUEUES,
    RECONCILE_TOTAL,
    TERMINAL_FAILURES,
)
from models import TRANSIENT_ERRORS, ReconcileResult, ResourceNotFoundError, TerminalError

logger = logging.getLogger(__name__)

REQUEUE_SECONDS = int(os.environ.get("RECONCILE_REQUEUE_SECONDS", "10"))
ERROR_BACKOFF_SECONDS = int(os.environ.get("RECONCILE_ERROR_BACKOFF_SECONDS", "60"))
RESYNC_SECONDS = int(os.environ.get("RECONCILE_RESYNC_SECONDS", "300"))

# Keys kopf keeps in the status for its own bookkeeping
_RESERVED_STATUS_KEYS = {"kopf"}


class ReconciledStatus(Protocol):
    def to_dict(self) -> dict[str, object]: ...

    def set_failure(self, reason: str, message: str) -> None: ...


def merge_patch(old: dict[str, Any], new: dict[str, Any]) -> dict[str, Any]:
    """JSON merge patch turning ``old`` into ``new``; removed keys become None."""
    patch: dict[str, Any] = {}
    for key, value in new.items():
        previous = old.get(key)
        if isinstance(value, dict) and isinstance(previous, dict):
            nested = merge_patch(previous, value)
            if nested:
                patch[key] = nested
        elif value != previous:
            patch[key] = value
    for key in old:
        if key not in new and key not in _RESERVED_STATUS_KEYS:
            patch[key] = None
    return patch


def write_status(patch: kopf.Patch, old: dict[str, Any], status: ReconciledStatus) -> None:
    """Stage the status of a pass in the kopf patch."""
    for key, value in merge_patch(dict(old or {}), status.to_dict()).items():
        patch.status[key] = value


_locks: dict[str, threading.Lock] = {}
_locks_guard = threading.Lock()


@contextmanager
def object_lock(key: str) -> Iterator[None]:
    """Serialize change handlers and timers of one object."""
    with _locks_guard:
        lock = _locks.setdefault(key, threading.Lock())
    with lock:
        yield


def forget_lock(key: str) -> None:
    with _locks_guard:
        _locks.pop(key, None)


def run_reconcile(
    resource: str,
    operation: str,
    key: str,
    body: kopf.Body,
    status: ReconciledStatus,
    step: Callable[[], ReconcileResult],
) -> None:
    """Run one reconcile pass and translate its outcome for kopf.

    Args:
        resource: Resource kind, used as metric label
        operation: "reconcile" or "delete"
        key: namespace/name of the object, for logs and locking
        body: Object body, used to post events
        status: Status object the pass updates in place
        step: The pass itself

    Raises:
        kopf.TemporaryError: The pass has to be repeated later
        kopf.PermanentError: The pass failed terminally
    """
    start_time = time.monotonic()
    RECONCILE_IN_PROGRESS.labels(resource=resource).inc()
    try:
        with object_lock(key):
            result = step()
    except TerminalError as e:
        logger.error(f"{resource} {key}: {operation} failed terminally: {e}")
        status.set_failure(e.reason, str(e))
        TERMINAL_FAILURES.labels(resource=resource, reason=e.reason).inc()
        RECONCILE_TOTAL.labels(resource=resource, operation=operation, status="error").inc()
        kopf.warn(body, reason=e.reason, message=str(e)[:200])
        if operation == "delete":
            # Keep the finalizer: giving up would orphan cloud resources
            raise kopf.TemporaryError(str(e), delay=ERROR_BACKOFF_SECONDS) from e
        raise kopf.PermanentError(str(e)) from e
    except (*TRANSIENT_ERRORS, ResourceNotFoundError) as e:
        logger.warning(f"{resource} {key}: {operation} will be retried: {e}")
        RECONCILE_TOTAL.labels(resource=resource, operation=operation, status="error").inc()
        raise kopf.TemporaryError(str(e), delay=ERROR_BACKOFF_SECONDS) from e
    finally:
        RECONCILE_IN_PROGRESS.labels(resource=resource).dec()
        RECONCILE_DURATION.labels(resource=resource, operation=operation).observe(
            time.monotonic() - start_time
        )

    if not result.done:
        logger.info(f"{resource} {key}: requeued, {result.reason}")
        RECONCILE_REQUEUES.labels(resource=resource, reason=operation).inc()
        RECONCILE_TOTAL.labels(resource=resource, operation=operation, status="requeue").inc()
        raise kopf.TemporaryError(result.reason, delay=REQUEUE_SECONDS)

    RECONCILE_TOTAL.labels(resource=resource, operation=operation, status="success").inc()
    logger.info(f"{resource} {key}: {operation} complete")
