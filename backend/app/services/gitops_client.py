"""GitOps repository client: renders the deployment manifest and commits it to Gitea"""

import base64
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import yaml
from httpx import HTTPStatusError, RequestError

from app.core.errors import ExternalServiceError
from app.models.app_store import InstalledAppVersion
from app.services.k8s_manager import K8sClusterManager

logger = logging.getLogger(__name__)


@dataclass
class ChartGitAttribute:
    """Where the committed chart of an installed app lives"""

    repo_url: str
    target_revision: str
    chart_location: str


class GitOpsClient:
    """Client for the Gitea API v1 holding one GitOps repository per app"""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        org: str = "gitops",
        target_revision: str = "main",
        argocd_namespace: str = "argocd",
        k8s_manager_factory: Optional[Callable[[], K8sClusterManager]] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        """Initialize GitOps client

        Args:
            base_url: Gitea base URL (e.g., https://gitea.example.com)
            token: Gitea access token with repo write scope
            org: Organization owning the GitOps repositories
            target_revision: Branch ArgoCD tracks
            argocd_namespace: Namespace ArgoCD reads repository secrets from
            k8s_manager_factory: Returns the cluster manager used for repo secrets
        """
        self.base_url = base_url.rstrip("/")
        self.api_url = f"{self.base_url}/api/v1"
        self.token = token
        self.org = org
        self.target_revision = target_revision
        self.argocd_namespace = argocd_namespace
        self._k8s_manager_factory = k8s_manager_factory

        # HTTP client with timeout settings
        self.client = http_client or httpx.Client(
            timeout=httpx.Timeout(30.0), follow_redirects=True
        )

    def _request(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        """Make HTTP request to the Gitea API

        Raises:
            ExternalServiceError: For HTTP and network errors
        """
        url = f"{self.api_url}{endpoint}"
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"token {self.token}"

        try:
            response = self.client.request(method=method, url=url, headers=headers, **kwargs)
            response.raise_for_status()
            return response
        except HTTPStatusError as e:
            logger.error(f"Gitea API error: {e.response.status_code} - {e.response.text}")
            raise ExternalServiceError(
                f"gitea request {method} {endpoint} failed",
                status_code=e.response.status_code,
                detail=e.response.text,
            ) from e
        except RequestError as e:
            logger.error(f"Gitea connection error: {e}")
            raise ExternalServiceError("gitea unreachable", detail=str(e)) from e

    # Repository attributes

    @staticmethod
    def repo_name(version: InstalledAppVersion) -> str:
        return version.app_name

    def repo_url(self, version: InstalledAppVersion) -> str:
        return f"{self.base_url}/{self.org}/{self.repo_name(version)}.git"

    @staticmethod
    def chart_location(version: InstalledAppVersion) -> str:
        return f"{version.app_name}-{version.environment_name}"

    def git_attributes_for(self, version: InstalledAppVersion) -> ChartGitAttribute:
        """Attributes of an already committed version, rebuilt from its record"""
        return ChartGitAttribute(
            repo_url=version.gitops_repo_url or self.repo_url(version),
            target_revision=version.target_revision or self.target_revision,
            chart_location=version.chart_location or self.chart_location(version),
        )

    # Repository secret

    def ensure_repo_secret(self, version: InstalledAppVersion) -> bool:
        """Make sure ArgoCD can pull the app's GitOps repository"""
        if self._k8s_manager_factory is None:
            logger.debug("No cluster access configured, skipping repository secret")
            return False
        manager = self._k8s_manager_factory()
        return manager.ensure_repository_secret(
            namespace=self.argocd_namespace,
            name=f"repo-{self.org}-{self.repo_name(version)}",
            repo_url=self.repo_url(version),
            username="gitops",
            password=self.token,
        )

    # Manifests

    def render_manifest(self, version: InstalledAppVersion) -> Dict[str, str]:
        """Umbrella chart pinning the installed chart version, keyed by file path"""
        location = self.chart_location(version)
        chart = {
            "apiVersion": "v2",
            "name": location,
            "version": "1.0.0",
            "dependencies": [
                {
                    "name": version.chart_name,
                    "version": version.chart_version,
                    "repository": version.chart_repo_url or "",
                }
            ],
        }
        values = yaml.safe_load(version.values_yaml or "") or {}
        return {
            f"{location}/Chart.yaml": yaml.safe_dump(chart, sort_keys=False),
            f"{location}/values.yaml": yaml.safe_dump(
                {version.chart_name: values}, sort_keys=False
            ),
        }

    def ensure_repository(self, repo: str):
        try:
            self._request("POST", f"/orgs/{self.org}/repos", json={
                "name": repo,
                "auto_init": True,
                "default_branch": self.target_revision,
                "private": True,
            })
            logger.info(f"Created GitOps repository {self.org}/{repo}")
        except ExternalServiceError as e:
            if e.status_code != 409:
                raise

    def _file_sha(self, repo: str, path: str) -> Optional[str]:
        try:
            response = self._request(
                "GET",
                f"/repos/{self.org}/{repo}/contents/{path}",
                params={"ref": self.target_revision},
            )
        except ExternalServiceError as e:
            if e.status_code == 404:
                return None
            raise
        return response.json().get("sha")

    def commit_files(self, repo: str, files: Dict[str, str], message: str) -> str:
        """Commit all files in one commit and return its sha"""
        changes: List[Dict[str, Any]] = []
        for path, content in files.items():
            sha = self._file_sha(repo, path)
            change = {
                "operation": "update" if sha else "create",
                "path": path,
                "content": base64.b64encode(content.encode()).decode(),
            }
            if sha:
                change["sha"] = sha
            changes.append(change)

        response = self._request(
            "POST",
            f"/repos/{self.org}/{repo}/contents",
            json={"branch": self.target_revision, "message": message, "files": changes},
        )
        return response.json()["commit"]["sha"]

    def generate_manifest_and_commit(
        self, version: InstalledAppVersion
    ) -> Tuple[str, ChartGitAttribute]:
        """Render the version's manifest and commit it

        Returns:
            Tuple of (commit sha, git attributes of the committed chart)
        """
        repo = self.repo_name(version)
        self.ensure_repository(repo)
        files = self.render_manifest(version)
        git_hash = self.commit_files(
            repo,
            files,
            f"Deploy {version.chart_name} {version.chart_version} to {version.environment_name}",
        )
        logger.info(f"Committed {len(files)} files to {self.org}/{repo} at {git_hash}")
        return git_hash, ChartGitAttribute(
            repo_url=self.repo_url(version),
            target_revision=self.target_revision,
            chart_location=self.chart_location(version),
        )
