"""Kopf handlers for the operator's custom resources.

This package contains handlers for:
- OpenstackMachine
- OpenstackCluster
- OpenstackServerGroup

All handlers follow the same patterns:
- Create/update/resume and a resync timer run one reconcile pass
- Delete runs the delete pass; the finalizer stays until it completes
- Status tracking via patch.status
"""

# Import handlers to register them with Kopf
from handlers.cluster import *  # noqa: F401, F403
from handlers.machine import *  # noqa: F401, F403
from handlers.server_group import *  # noqa: F401, F403
