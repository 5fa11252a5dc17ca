"""Prometheus metrics for the OpenStack machine operator."""

from prometheus_client import Counter, Gauge, Histogram, Info

# Reconciliation metrics
RECONCILE_TOTAL = Counter(
    "openstack_machine_operator_reconcile_total",
    "Total number of reconciliations",
    ["resource", "operation", "status"],
)

RECONCILE_DURATION = Histogram(
    "openstack_machine_operator_reconcile_duration_seconds",
    "Time spent in reconciliation",
    ["resource", "operation"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

RECONCILE_IN_PROGRESS = Gauge(
    "openstack_machine_operator_reconcile_in_progress",
    "Number of reconciliations currently in progress",
    ["resource"],
)

RECONCILE_REQUEUES = Counter(
    "openstack_machine_operator_reconcile_requeues_total",
    "Reconciliations that stopped at a poll step and were requeued",
    ["resource", "reason"],
)

# OpenStack API metrics
OPENSTACK_API_CALLS = Counter(
    "openstack_machine_operator_openstack_api_calls_total",
    "Total number of OpenStack API calls",
    ["service", "operation", "status"],
)

OPENSTACK_API_DURATION = Histogram(
    "openstack_machine_operator_openstack_api_duration_seconds",
    "Time spent in OpenStack API calls",
    ["service", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

RATE_LIMIT_WAIT_SECONDS = Histogram(
    "openstack_machine_operator_rate_limit_wait_seconds",
    "Time spent waiting for rate limit slot",
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

# Machine state metrics
MACHINE_STATES = Gauge(
    "openstack_machine_operator_machines",
    "Number of machines by instance state",
    ["state"],
)

TERMINAL_FAILURES = Counter(
    "openstack_machine_operator_terminal_failures_total",
    "Reconciliations stopped by a terminal error",
    ["resource", "reason"],
)

# Operator info
OPERATOR_INFO = Info(
    "openstack_machine_operator",
    "Information about the OpenStack machine operator",
)

RESOURCES = ["OpenstackMachine", "OpenstackCluster", "OpenstackServerGroup"]


def set_operator_info(version: str, cloud: str) -> None:
    """Set operator info labels."""
    OPERATOR_INFO.info({"version": version, "cloud": cloud})


def init_metrics() -> None:
    """Initialize labelled metrics with zero values.

    Prometheus metrics with labels don't appear until used, so every known
    label combination is touched at startup.
    """
    for resource in RESOURCES:
        RECONCILE_IN_PROGRESS.labels(resource=resource).set(0)
        for operation in ("reconcile", "delete"):
            RECONCILE_DURATION.labels(resource=resource, operation=operation)
            for status in ("success", "requeue", "error"):
                RECONCILE_TOTAL.labels(
                    resource=resource, operation=operation, status=status
                )
