"""Direct Helm installs driven through the helm CLI"""

import json
import logging
import subprocess
import tempfile
from typing import Any, Dict, List, Optional

import yaml

from app.core.errors import ExternalServiceError
from app.models.app_store import InstalledAppVersion
from app.models.status import WorkflowStatus

logger = logging.getLogger(__name__)

# helm release status -> application health
RELEASE_HEALTH = {
    "deployed": WorkflowStatus.HEALTHY.value,
    "failed": WorkflowStatus.DEGRADED.value,
    "pending-install": WorkflowStatus.PROGRESSING.value,
    "pending-upgrade": WorkflowStatus.PROGRESSING.value,
    "pending-rollback": WorkflowStatus.PROGRESSING.value,
}


class HelmClient:
    def __init__(self, binary: str = "helm", timeout_seconds: int = 300, runner=subprocess.run):
        self.binary = binary
        self.timeout_seconds = timeout_seconds
        self._run = runner

    def _helm(self, args: List[str], timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        cmd = [self.binary] + args
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            result = self._run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout_seconds + 30,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise ExternalServiceError(f"helm {args[0]} failed", detail=str(e)) from e
        if result.returncode != 0:
            raise ExternalServiceError(
                f"helm {args[0]} failed", detail=(result.stderr or result.stdout).strip()
            )
        return result

    def install_app(self, version: InstalledAppVersion) -> str:
        """helm upgrade --install the version's chart; returns the release name"""
        release = version.deployment_app_name
        with tempfile.NamedTemporaryFile("w", suffix=".yaml") as values_file:
            values_file.write(version.values_yaml or "")
            values_file.flush()
            args = [
                "upgrade",
                "--install",
                release,
                version.chart_name,
                "--version",
                version.chart_version,
                "--namespace",
                version.namespace,
                "--create-namespace",
                "--values",
                values_file.name,
                "--timeout",
                f"{self.timeout_seconds}s",
            ]
            if version.chart_repo_url:
                args += ["--repo", version.chart_repo_url]
            self._helm(args)
        logger.info(f"Installed helm release {release} in {version.namespace}")
        return release

    def get_app_detail(self, release: str, namespace: str) -> Optional[Dict[str, Any]]:
        """Release status and resources, None when the release does not exist"""
        try:
            result = self._helm(["status", release, "--namespace", namespace, "--output", "json"], timeout=60)
        except ExternalServiceError as e:
            if "not found" in (e.detail or ""):
                return None
            raise
        status = json.loads(result.stdout)
        info = status.get("info", {})
        release_status = info.get("status", "unknown")

        nodes = []
        for doc in yaml.safe_load_all(status.get("manifest") or ""):
            if not doc:
                continue
            nodes.append(
                {
                    "kind": doc.get("kind"),
                    "name": doc.get("metadata", {}).get("name"),
                    "namespace": doc.get("metadata", {}).get("namespace", namespace),
                }
            )

        return {
            "release_exist": True,
            "release_status": {
                "status": release_status,
                "description": info.get("description", ""),
            },
            "application_status": RELEASE_HEALTH.get(release_status, WorkflowStatus.UNKNOWN.value),
            "resource_tree": {"nodes": nodes},
        }
