"""Resolution of identity references into authenticated OpenStack clients.

An identity reference names a Secret in the object's namespace whose
``clouds.yaml`` key holds a standard clouds.yaml document. Without a
reference the operator's own cloud (``OS_CLOUD``) is used.
"""

import base64
import logging
from typing import Any

import yaml
from kubernetes import client as k8s_client

from models import ConfigurationError, IdentityRefSpec, ResourceNotFoundError
from openstack_client import OpenStackClient
from state import state

logger = logging.getLogger(__name__)

CLOUDS_YAML_KEY = "clouds.yaml"
DEFAULT_CLOUD_NAME = "openstack"


def load_cloud_config(secret_data: dict[str, str], cloud_name: str) -> dict[str, Any]:
    """Extract one cloud entry from base64-encoded Secret data."""
    raw = secret_data.get(CLOUDS_YAML_KEY)
    if raw is None:
        raise ConfigurationError(f"secret has no {CLOUDS_YAML_KEY} key")
    try:
        document = yaml.safe_load(base64.b64decode(raw))
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigurationError(f"invalid {CLOUDS_YAML_KEY}: {e}") from e

    clouds = (document or {}).get("clouds") or {}
    if cloud_name not in clouds:
        raise ResourceNotFoundError(f"cloud {cloud_name} not found in {CLOUDS_YAML_KEY}")
    return dict(clouds[cloud_name])


def read_identity_secret(
    core_api: k8s_client.CoreV1Api,
    identity_ref: IdentityRefSpec,
    namespace: str,
) -> Any:
    """Read the Secret an identity reference points at.

    Raises:
        ResourceNotFoundError: The Secret doesn't exist
        ConfigurationError: The Secret can't be read
    """
    secret_name = identity_ref["name"]
    try:
        return core_api.read_namespaced_secret(secret_name, namespace)
    except k8s_client.ApiException as e:
        if e.status == 404:
            raise ResourceNotFoundError(
                f"identity secret {namespace}/{secret_name} not found"
            ) from e
        if e.status == 403:
            raise ConfigurationError(
                f"access to identity secret {namespace}/{secret_name} denied"
            ) from e
        raise


def resolve_client(
    identity_ref: IdentityRefSpec | None,
    namespace: str,
) -> OpenStackClient:
    """Return an authenticated client for an identity reference.

    The Secret is read on every call so a rotated credential takes effect
    on the next reconcile; clients are cached per Secret resourceVersion
    and cloud name.
    """
    if not identity_ref:
        return state.get_openstack_client()

    secret_name = identity_ref["name"]
    cloud_name = identity_ref.get("cloudName", DEFAULT_CLOUD_NAME)
    secret = read_identity_secret(state.get_k8s_core_api(), identity_ref, namespace)
    version = getattr(secret.metadata, "resource_version", None) or ""
    key = (namespace, secret_name, cloud_name, version)
    cached = state.get_cached_client(key)
    if cached is not None:
        return cached

    cloud_config = load_cloud_config(secret.data or {}, cloud_name)
    logger.info(
        f"Connecting to cloud {cloud_name} from secret {namespace}/{secret_name} "
        f"(version {version})"
    )
    return state.cache_client(key, OpenStackClient(cloud=cloud_name, cloud_config=cloud_config))
