"""Kubernetes API client bootstrap."""
from typing import Optional

from kubernetes import client, config
from loguru import logger


class KubeClients:
    """The typed API groups used by routers and deployers."""

    def __init__(self, in_cluster: bool = True, context: Optional[str] = None):
        """
        Load credentials and build the API clients.

        Args:
            in_cluster: Use the pod's service account (default: True)
            context: kubeconfig context name when running outside the cluster
        """
        try:
            if in_cluster:
                config.load_incluster_config()
            elif context:
                config.load_kube_config(context=context)
            else:
                config.load_kube_config()
        except Exception as e:
            logger.error(f"❌ Failed to load Kubernetes configuration: {e}")
            raise

        api_client = client.ApiClient()
        self.api_client = api_client
        self.core = client.CoreV1Api(api_client)
        self.apps = client.AppsV1Api(api_client)
        self.networking = client.NetworkingV1Api(api_client)
        logger.info("✅ Kubernetes clients initialized")

    def to_dict(self, obj) -> dict:
        """Plain JSON-shaped dict of a kubernetes model object."""
        return self.api_client.sanitize_for_serialization(obj)
