"""Process-wide client registry shared by all handlers.

OpenStack clients are keyed by the identity they authenticate with: the
default client comes from ``OS_CLOUD``, every version of an identity
Secret gets its own. Kubernetes API objects are created lazily once the
kube config is loaded.
"""

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config

from openstack_client import OpenStackClient

# (namespace, secret name, cloud name, secret resourceVersion)
ClientKey = tuple[str, str, str, str]

_Api = TypeVar("_Api")


@dataclass
class OperatorState:
    """Thread-safe container for the operator's API clients."""

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _default_client: OpenStackClient | None = field(default=None, repr=False)
    _identity_clients: dict[ClientKey, OpenStackClient] = field(
        default_factory=dict, repr=False
    )
    _k8s_apis: dict[type, object] = field(default_factory=dict, repr=False)
    _k8s_configured: bool = field(default=False, repr=False)

    def get_openstack_client(self) -> OpenStackClient:
        """Client for objects without an identityRef."""
        with self._lock:
            if self._default_client is None:
                self._default_client = OpenStackClient()
            return self._default_client

    def get_cached_client(self, key: ClientKey) -> OpenStackClient | None:
        with self._lock:
            return self._identity_clients.get(key)

    def cache_client(self, key: ClientKey, client: OpenStackClient) -> OpenStackClient:
        """Store a client for an identity; the first one stored wins.

        Clients built from older versions of the same Secret are closed.
        """
        with self._lock:
            stale = [k for k in self._identity_clients if k[:3] == key[:3] and k != key]
            for old_key in stale:
                self._identity_clients.pop(old_key).close()
            return self._identity_clients.setdefault(key, client)

    def _k8s_api(self, factory: Callable[[], _Api]) -> _Api:
        with self._lock:
            if not self._k8s_configured:
                try:
                    k8s_config.load_incluster_config()
                except k8s_config.ConfigException:
                    k8s_config.load_kube_config()
                self._k8s_configured = True
            return self._k8s_apis.setdefault(factory, factory())

    def get_k8s_core_api(self) -> k8s_client.CoreV1Api:
        return self._k8s_api(k8s_client.CoreV1Api)

    def get_k8s_custom_api(self) -> k8s_client.CustomObjectsApi:
        return self._k8s_api(k8s_client.CustomObjectsApi)

    def close(self) -> None:
        """Close every OpenStack session; used on operator shutdown."""
        with self._lock:
            clients = list(self._identity_clients.values())
            if self._default_client is not None:
                clients.append(self._default_client)
            for client in clients:
                client.close()
            self._identity_clients.clear()
            self._default_client = None


state = OperatorState()


def get_k8s_custom_api() -> k8s_client.CustomObjectsApi:
    return state.get_k8s_custom_api()
