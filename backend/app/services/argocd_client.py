"""ArgoCD API client: application upsert, sync and resource trees"""

import logging
from typing import Any, Dict, Optional

import httpx
from httpx import HTTPStatusError, RequestError

from app.core.errors import ExternalServiceError
from app.models.app_store import InstalledAppVersion
from app.services.gitops_client import ChartGitAttribute

logger = logging.getLogger(__name__)


class ArgoCDClient:
    """Client for the ArgoCD REST API"""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        namespace: str = "argocd",
        verify_ssl: bool = True,
        manual_sync: bool = False,
        http_client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_url = f"{self.base_url}/api/v1"
        self.token = token
        self.namespace = namespace
        self.manual_sync = manual_sync

        self.client = http_client or httpx.Client(
            timeout=httpx.Timeout(30.0), verify=verify_ssl, follow_redirects=True
        )

    def _request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        url = f"{self.api_url}{endpoint}"
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = self.client.request(method=method, url=url, headers=headers, **kwargs)
            response.raise_for_status()
            return response
        except HTTPStatusError as e:
            logger.error(f"ArgoCD API error: {e.response.status_code} - {e.response.text}")
            raise ExternalServiceError(
                f"argocd request {method} {endpoint} failed",
                status_code=e.response.status_code,
                detail=self._error_message(e.response),
            ) from e
        except RequestError as e:
            logger.error(f"ArgoCD connection error: {e}")
            raise ExternalServiceError("argocd unreachable", detail=str(e)) from e

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        return body.get("message") or body.get("error") or response.text

    def build_application(
        self, version: InstalledAppVersion, git_attrs: ChartGitAttribute
    ) -> Dict[str, Any]:
        spec: Dict[str, Any] = {
            "project": "default",
            "source": {
                "repoURL": git_attrs.repo_url,
                "targetRevision": git_attrs.target_revision,
                "path": git_attrs.chart_location,
                "helm": {"valueFiles": ["values.yaml"]},
            },
            "destination": {
                "server": "https://kubernetes.default.svc",
                "namespace": version.namespace,
            },
            "syncPolicy": {"syncOptions": ["CreateNamespace=true"]},
        }
        if not self.manual_sync:
            spec["syncPolicy"]["automated"] = {"prune": True, "selfHeal": True}
        return {
            "metadata": {
                "name": version.deployment_app_name,
                "namespace": self.namespace,
                "labels": {
                    "appId": version.app_name,
                    "envId": version.environment_name,
                },
            },
            "spec": spec,
        }

    def get_application(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return self._request("GET", f"/applications/{name}").json()
        except ExternalServiceError as e:
            if e.status_code == 404:
                return None
            raise

    def install_or_sync(self, version: InstalledAppVersion, git_attrs: ChartGitAttribute):
        """Create or update the ArgoCD application and sync it when sync is manual"""
        name = version.deployment_app_name
        application = self.build_application(version, git_attrs)
        if self.get_application(name) is None:
            self._request("POST", "/applications", json=application)
            logger.info(f"Created ArgoCD application {name}")
        else:
            self._request(
                "PUT", f"/applications/{name}", params={"validate": "false"}, json=application
            )
            logger.info(f"Updated ArgoCD application {name}")

        if self.manual_sync:
            self._request(
                "POST",
                f"/applications/{name}/sync",
                json={"revision": git_attrs.target_revision, "prune": True},
            )
            logger.info(f"Triggered sync of ArgoCD application {name}")

    def resource_tree(self, name: str) -> Dict[str, Any]:
        """Resource tree of an application with its health status and pod metadata"""
        tree = self._request("GET", f"/applications/{name}/resource-tree").json()
        application = self._request("GET", f"/applications/{name}").json()
        health = application.get("status", {}).get("health", {}).get("status", "Unknown")
        nodes = tree.get("nodes") or []
        return {
            "nodes": nodes,
            "status": health,
            "podMetadata": [
                {"name": node.get("name"), "uid": node.get("uid")}
                for node in nodes
                if node.get("kind") == "Pod"
            ],
        }
