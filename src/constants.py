"""Constants used across the operator."""

# Kubernetes API coordinates of the custom resources
API_GROUP = "sunet.se"
API_VERSION = "v1alpha1"
MACHINE_PLURAL = "openstackmachines"
CLUSTER_PLURAL = "openstackclusters"
SERVER_GROUP_PLURAL = "openstackservergroups"

FINALIZER = "sunet.se/openstack-machine-operator"

# Label carrying the owning cluster name on machines
CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"
# Label marking control plane machines (value is ignored)
CONTROL_PLANE_LABEL = "cluster.x-k8s.io/control-plane"

# Tag used to identify operator-managed resources
MANAGED_BY_TAG = "managed-by-openstack-machine-operator"

# Description for cloud resources that don't support tags
MANAGED_BY_DESCRIPTION = "Created by openstack-machine-operator"

# Deterministic naming
CLUSTER_RESOURCE_PREFIX = "k8s-clusterapi-cluster"
SECURITY_GROUP_PREFIX = "k8s-cluster"
CONTROL_PLANE_SUFFIX = "controlplane"
GLOBAL_SUFFIX = "all"
ROOT_VOLUME_SUFFIX = "root"
BASTION_SUFFIX = "bastion"

# Placeholder remote group meaning "the group the rule belongs to"
REMOTE_GROUP_SELF = "self"

# Load balancer defaults
DEFAULT_API_SERVER_PORT = 6443
LB_PROVIDER_OVN = "ovn"
LB_ALGORITHM_ROUND_ROBIN = "ROUND_ROBIN"
LB_ALGORITHM_SOURCE_IP_PORT = "SOURCE_IP_PORT"
MONITOR_DELAY = 10
MONITOR_TIMEOUT = 5
MONITOR_MAX_RETRIES = 5
MONITOR_MAX_RETRIES_DOWN = 3

# Octavia provisioning statuses
LB_ACTIVE = "ACTIVE"
LB_PENDING_DELETE = "PENDING_DELETE"
LB_ERROR = "ERROR"

# Nova server statuses
SERVER_ACTIVE = "ACTIVE"
SERVER_BUILD = "BUILD"
SERVER_SHUTOFF = "SHUTOFF"
SERVER_ERROR = "ERROR"

# Cinder volume statuses
VOLUME_AVAILABLE = "available"
VOLUME_ERROR = "error"

# Storage types of additional block devices
BLOCK_DEVICE_VOLUME = "Volume"
BLOCK_DEVICE_LOCAL = "Local"

DEFAULT_SERVER_GROUP_POLICY = "soft-anti-affinity"
