"""Node readiness through the Kubernetes API."""
import logging
from typing import Any, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from rollctl.utils.kube import load_kubeconfig

logger = logging.getLogger("rollctl.kube")


class KubeNodes:
    """Looks up Kubernetes nodes by address."""

    def __init__(self, api: Any):
        self.api = api

    @classmethod
    def from_kubeconfig(cls, path: Optional[str] = None) -> Optional['KubeNodes']:
        """Build a helper from a kubeconfig, or return None when none is usable.

        The Kubernetes API is optional; without it readiness checks are skipped.
        """
        try:
            used = load_kubeconfig(path)
        except (ValueError, FileNotFoundError, ConfigException) as e:
            logger.debug("Kubernetes API unavailable: %s", e)
            return None
        logger.debug("Loaded kubeconfig from %s", used)
        return cls(client.CoreV1Api())

    def _find(self, address: str):
        for node in self.api.list_node().items:
            for addr in (node.status.addresses or []):
                if addr.address == address:
                    return node
        return None

    def is_ready(self, address: str) -> bool:
        try:
            node = self._find(address)
        except ApiException as e:
            logger.debug("Failed to list nodes: %s", e.reason)
            return False
        if node is None:
            return False
        for cond in (node.status.conditions or []):
            if cond.type == 'Ready' and cond.status == 'True':
                return True
        return False
