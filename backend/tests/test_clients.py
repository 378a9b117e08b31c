# tests/test_clients.py
"""Tests for the Gitea, ArgoCD, Helm and Kubernetes clients."""

import base64
import json
import subprocess
from types import SimpleNamespace

import httpx
import pytest
import yaml

from app.core.errors import ExternalServiceError
from app.models.app_store import InstalledAppVersion
from app.services.argocd_client import ArgoCDClient
from app.services.gitops_client import ChartGitAttribute, GitOpsClient
from app.services.helm_client import HelmClient
from app.services.k8s_manager import K8sClusterManager


def make_version(**overrides):
    values = dict(
        id=1,
        app_name="web",
        environment_name="dev",
        namespace="web-dev",
        chart_name="nginx",
        chart_version="15.1.0",
        chart_repo_url="https://charts.example.com",
        values_yaml="replicaCount: 2\n",
    )
    values.update(overrides)
    return InstalledAppVersion(**values)


def mock_client(handler):
    return httpx.Client(transport=httpx.MockTransport(handler))


class TestGitOpsClient:
    def test_commit_creates_and_updates_files(self):
        requests = []

        def handler(request: httpx.Request):
            requests.append(request)
            path = request.url.path
            if path == "/api/v1/orgs/gitops/repos":
                return httpx.Response(409, text="repository already exists")
            if path.endswith("/contents/web-dev/Chart.yaml"):
                return httpx.Response(404, text="not found")
            if path.endswith("/contents/web-dev/values.yaml"):
                return httpx.Response(200, json={"sha": "old-sha"})
            if path == "/api/v1/repos/gitops/web/contents" and request.method == "POST":
                return httpx.Response(201, json={"commit": {"sha": "abc123"}})
            return httpx.Response(500)

        client = GitOpsClient(
            "https://gitea.test", token="t0ken", http_client=mock_client(handler)
        )

        git_hash, attrs = client.generate_manifest_and_commit(make_version())

        assert git_hash == "abc123"
        assert attrs == ChartGitAttribute(
            repo_url="https://gitea.test/gitops/web.git",
            target_revision="main",
            chart_location="web-dev",
        )
        assert requests[0].headers["Authorization"] == "token t0ken"
        body = json.loads(requests[-1].content)
        assert body["branch"] == "main"
        changes = {c["path"]: c for c in body["files"]}
        assert changes["web-dev/Chart.yaml"]["operation"] == "create"
        assert changes["web-dev/values.yaml"]["operation"] == "update"
        assert changes["web-dev/values.yaml"]["sha"] == "old-sha"
        chart = yaml.safe_load(base64.b64decode(changes["web-dev/Chart.yaml"]["content"]))
        assert chart["dependencies"][0] == {
            "name": "nginx",
            "version": "15.1.0",
            "repository": "https://charts.example.com",
        }

    def test_render_manifest_nests_values_under_chart(self):
        client = GitOpsClient("https://gitea.test", http_client=mock_client(lambda r: httpx.Response(200)))

        files = client.render_manifest(make_version())

        assert yaml.safe_load(files["web-dev/values.yaml"]) == {"nginx": {"replicaCount": 2}}

    def test_http_errors_become_external_service_errors(self):
        client = GitOpsClient(
            "https://gitea.test",
            http_client=mock_client(lambda r: httpx.Response(403, text="forbidden")),
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            client.generate_manifest_and_commit(make_version())
        assert exc_info.value.status_code == 403
        assert exc_info.value.detail == "forbidden"

    def test_stored_attributes_are_reused(self):
        client = GitOpsClient("https://gitea.test", http_client=mock_client(lambda r: httpx.Response(200)))
        version = make_version(
            gitops_repo_url="https://git.other/web.git", target_revision="release"
        )

        attrs = client.git_attributes_for(version)

        assert attrs.repo_url == "https://git.other/web.git"
        assert attrs.target_revision == "release"
        assert attrs.chart_location == "web-dev"

    def test_repo_secret_uses_cluster_manager(self):
        calls = []
        manager = SimpleNamespace(ensure_repository_secret=lambda **kw: calls.append(kw) or True)
        client = GitOpsClient(
            "https://gitea.test",
            token="t0ken",
            k8s_manager_factory=lambda: manager,
            http_client=mock_client(lambda r: httpx.Response(200)),
        )

        assert client.ensure_repo_secret(make_version()) is True
        assert calls[0]["name"] == "repo-gitops-web"
        assert calls[0]["namespace"] == "argocd"
        assert calls[0]["password"] == "t0ken"


class TestArgoCDClient:
    def test_install_creates_application_and_syncs_when_manual(self):
        requests = []

        def handler(request: httpx.Request):
            requests.append((request.method, request.url.path))
            if request.method == "GET":
                return httpx.Response(404, json={"message": "application not found"})
            return httpx.Response(200, json={})

        client = ArgoCDClient(
            "https://argocd.test", token="jwt", manual_sync=True, http_client=mock_client(handler)
        )
        attrs = ChartGitAttribute("https://gitea.test/gitops/web.git", "main", "web-dev")

        client.install_or_sync(make_version(), attrs)

        assert requests == [
            ("GET", "/api/v1/applications/web-dev"),
            ("POST", "/api/v1/applications"),
            ("POST", "/api/v1/applications/web-dev/sync"),
        ]

    def test_auto_sync_application_spec(self):
        client = ArgoCDClient("https://argocd.test", http_client=mock_client(lambda r: httpx.Response(200)))
        attrs = ChartGitAttribute("https://gitea.test/gitops/web.git", "main", "web-dev")

        application = client.build_application(make_version(), attrs)

        assert application["metadata"]["labels"] == {"appId": "web", "envId": "dev"}
        assert application["spec"]["source"]["path"] == "web-dev"
        assert application["spec"]["syncPolicy"]["automated"] == {"prune": True, "selfHeal": True}

    def test_resource_tree(self):
        def handler(request: httpx.Request):
            if request.url.path.endswith("/resource-tree"):
                return httpx.Response(
                    200,
                    json={
                        "nodes": [
                            {"kind": "Deployment", "name": "web"},
                            {"kind": "Pod", "name": "web-abc", "uid": "u1"},
                        ]
                    },
                )
            return httpx.Response(200, json={"status": {"health": {"status": "Progressing"}}})

        client = ArgoCDClient("https://argocd.test", http_client=mock_client(handler))

        tree = client.resource_tree("web-dev")

        assert tree["status"] == "Progressing"
        assert tree["podMetadata"] == [{"name": "web-abc", "uid": "u1"}]
        assert len(tree["nodes"]) == 2

    def test_error_message_is_extracted(self):
        client = ArgoCDClient(
            "https://argocd.test",
            http_client=mock_client(
                lambda r: httpx.Response(400, json={"message": "spec.source.repoURL is invalid"})
            ),
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            client.resource_tree("web-dev")
        assert exc_info.value.detail == "spec.source.repoURL is invalid"


class TestHelmClient:
    def test_install_runs_upgrade_install(self):
        commands = []

        def runner(cmd, **kwargs):
            commands.append(cmd)
            return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")

        release = HelmClient(runner=runner).install_app(make_version())

        assert release == "web-dev"
        cmd = commands[0]
        assert cmd[:4] == ["helm", "upgrade", "--install", "web-dev"]
        assert cmd[cmd.index("--repo") + 1] == "https://charts.example.com"
        assert cmd[cmd.index("--namespace") + 1] == "web-dev"

    def test_failed_command_raises(self):
        def runner(cmd, **kwargs):
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Error: timed out")

        with pytest.raises(ExternalServiceError) as exc_info:
            HelmClient(runner=runner).install_app(make_version())
        assert exc_info.value.detail == "Error: timed out"

    def test_app_detail(self):
        status = {
            "info": {"status": "deployed", "description": "Install complete"},
            "manifest": "---\nkind: Service\nmetadata:\n  name: web\n---\nkind: Deployment\nmetadata:\n  name: web\n",
        }

        def runner(cmd, **kwargs):
            return subprocess.CompletedProcess(cmd, 0, stdout=json.dumps(status), stderr="")

        detail = HelmClient(runner=runner).get_app_detail("web-dev", "web-dev")

        assert detail["application_status"] == "Healthy"
        assert detail["release_status"]["status"] == "deployed"
        assert [n["kind"] for n in detail["resource_tree"]["nodes"]] == ["Service", "Deployment"]

    def test_missing_release(self):
        def runner(cmd, **kwargs):
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Error: release: not found")

        assert HelmClient(runner=runner).get_app_detail("web-dev", "web-dev") is None


def test_pod_list_keeps_running_ephemeral_containers():
    running = SimpleNamespace(name="debugger", state=SimpleNamespace(terminated=None))
    finished = SimpleNamespace(name="old", state=SimpleNamespace(terminated=object()))
    pod = SimpleNamespace(
        metadata=SimpleNamespace(name="web-1"),
        status=SimpleNamespace(
            phase="Running",
            container_statuses=[SimpleNamespace(ready=True, restart_count=1)],
            ephemeral_container_statuses=[running, finished],
        ),
        spec=SimpleNamespace(
            node_name="node-a",
            containers=[SimpleNamespace(name="web")],
            ephemeral_containers=[
                SimpleNamespace(name="debugger", image="busybox", target_container_name="web"),
                SimpleNamespace(name="old", image="busybox", target_container_name="web"),
            ],
        ),
    )
    manager = K8sClusterManager.__new__(K8sClusterManager)

    pods = manager._process_pod_list([pod])

    assert pods[0]["ready"] is True
    assert pods[0]["restart_count"] == 1
    assert pods[0]["ephemeral_containers"] == [
        {"name": "debugger", "image": "busybox", "target_container": "web"}
    ]
