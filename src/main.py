"""Operator entry point: kopf settings, lifecycle hooks and handler registration.

Run with ``kopf run src/main.py``.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any

# Add src directory to path for imports when run as script by Kopf
_src_dir = Path(__file__).parent
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

import kopf
from prometheus_client import start_http_server

from constants import FINALIZER
from metrics import init_metrics, set_operator_info
from state import state

# Import resource handlers (registers with Kopf)
import handlers  # noqa: F401

logger = logging.getLogger(__name__)

# Operator version
OPERATOR_VERSION = "0.1.0"


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure operator settings on startup."""
    # Reduce logging noise
    settings.posting.level = logging.WARNING
    settings.persistence.finalizer = FINALIZER
    # Set watching namespace - explicit cluster-wide or specific namespace
    watch_namespace = os.environ.get("WATCH_NAMESPACE", "")
    if watch_namespace:
        settings.watching.namespaces = [watch_namespace]
    else:
        settings.watching.clusterwide = True

    metrics_port = int(os.environ.get("METRICS_PORT", "9090"))
    try:
        start_http_server(metrics_port)
        logger.info("Prometheus metrics server started on port %d", metrics_port)
    except OSError as e:
        logger.warning("Failed to start metrics server on port %d: %s", metrics_port, e)

    cloud_name = os.environ.get("OS_CLOUD", "openstack")
    init_metrics()
    set_operator_info(OPERATOR_VERSION, cloud_name)

    logger.info("OpenStack machine operator started (version %s)", OPERATOR_VERSION)


@kopf.on.cleanup()
def cleanup(**_: Any) -> None:
    """Clean up resources on operator shutdown."""
    logger.info("OpenStack machine operator shutting down")
    state.close()


def main() -> None:
    """Entry point for running the operator."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Use 'kopf run src/main.py' to run the operator")
    sys.exit(0)


if __name__ == "__main__":
    main()
