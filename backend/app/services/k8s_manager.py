"""Kubernetes cluster access for deployments and resource trees"""

import base64
import logging
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from app.core.errors import ExternalServiceError

logger = logging.getLogger(__name__)

ARGOCD_SECRET_TYPE_LABEL = "argocd.argoproj.io/secret-type"


class K8sClusterManager:
    """Read pods and cluster info, manage the secrets deployments rely on"""

    def __init__(self):
        """Initialize Kubernetes client"""
        self._init_kubernetes()

    def _init_kubernetes(self):
        """Initialize Kubernetes client"""
        try:
            # Try in-cluster config first (when running in pod)
            config.load_incluster_config()
        except config.ConfigException:
            try:
                # Fall back to kubeconfig file
                config.load_kube_config()
            except config.ConfigException as e:
                logger.error(f"Failed to initialize Kubernetes client: {e}")
                raise

        self.core_v1 = client.CoreV1Api()
        self.version_api = client.VersionApi()

    def get_pods_by_labels(self, namespace: str, labels: Dict[str, Any]) -> List[Dict[str, Any]]:
        """List pods matching all labels

        Args:
            namespace: Kubernetes namespace
            labels: Label key/values, e.g. {"appId": "web", "envId": "prod"}

        Returns:
            List of pod info dicts
        """
        label_selector = ",".join([f"{k}={v}" for k, v in labels.items()])
        try:
            pods = self.core_v1.list_namespaced_pod(
                namespace=namespace, label_selector=label_selector
            )
        except ApiException as e:
            logger.error(f"Failed to get pods by selector {label_selector}: {e.reason}")
            raise ExternalServiceError(
                "failed to list pods", status_code=e.status, detail=e.reason
            ) from e
        return self._process_pod_list(pods.items)

    def _process_pod_list(self, pods) -> List[Dict[str, Any]]:
        """Process a list of pod objects into pod info dicts"""
        pods_info = []

        for pod in pods:
            container_statuses = pod.status.container_statuses or []
            pod_info = {
                "name": pod.metadata.name,
                "status": pod.status.phase,
                "ready": all(c.ready for c in container_statuses),
                "restart_count": sum(c.restart_count for c in container_statuses),
                "node": pod.spec.node_name,
                "containers": [c.name for c in pod.spec.containers],
                "ephemeral_containers": [],
            }

            ephemeral_statuses = {
                s.name: s for s in (pod.status.ephemeral_container_statuses or [])
            }
            for container in pod.spec.ephemeral_containers or []:
                status = ephemeral_statuses.get(container.name)
                # only containers that are still alive are of interest
                if status and status.state and status.state.terminated:
                    continue
                pod_info["ephemeral_containers"].append(
                    {
                        "name": container.name,
                        "image": container.image,
                        "target_container": container.target_container_name,
                    }
                )

            pods_info.append(pod_info)

        return pods_info

    def get_server_version(self) -> str:
        try:
            info = self.version_api.get_code()
        except ApiException as e:
            raise ExternalServiceError(
                "failed to fetch server version", status_code=e.status, detail=e.reason
            ) from e
        return info.git_version

    def ensure_repository_secret(
        self,
        namespace: str,
        name: str,
        repo_url: str,
        username: str = "",
        password: str = "",
    ) -> bool:
        """Create the ArgoCD repository secret for repo_url if it doesn't exist

        Returns:
            True when the secret was created, False when it already existed
        """
        try:
            self.core_v1.read_namespaced_secret(name=name, namespace=namespace)
            logger.debug(f"Repository secret {name} already exists in {namespace}")
            return False
        except ApiException as e:
            if e.status != 404:
                raise ExternalServiceError(
                    "failed to read repository secret", status_code=e.status, detail=e.reason
                ) from e

        data = {"type": "git", "url": repo_url}
        if username:
            data["username"] = username
        if password:
            data["password"] = password

        secret = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels={ARGOCD_SECRET_TYPE_LABEL: "repository"},
            ),
            type="Opaque",
            data={k: base64.b64encode(v.encode()).decode() for k, v in data.items()},
        )
        try:
            self.core_v1.create_namespaced_secret(namespace=namespace, body=secret)
        except ApiException as e:
            if e.status == 409:
                return False
            raise ExternalServiceError(
                "failed to create repository secret", status_code=e.status, detail=e.reason
            ) from e
        logger.info(f"Created repository secret {name} in {namespace} for {repo_url}")
        return True


_manager: Optional[K8sClusterManager] = None


def get_k8s_manager() -> K8sClusterManager:
    """Shared manager, created on first use"""
    global _manager
    if _manager is None:
        _manager = K8sClusterManager()
    return _manager
