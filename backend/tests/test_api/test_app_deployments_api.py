# tests/test_api/test_app_deployments_api.py
"""Tests for the deploy stage endpoints."""

import pytest
from fastapi.testclient import TestClient

from app.api.app_deployments import get_deploy_stage_service
from app.core.errors import ExternalServiceError
from app.services.deploy_stage import AppStoreDeployStageService


@pytest.fixture
def deploy_client(client: TestClient, test_db, fake_gitops, fake_argocd, fake_helm):
    service = AppStoreDeployStageService(test_db, fake_gitops, fake_argocd, fake_helm)
    client.app.dependency_overrides[get_deploy_stage_service] = lambda: service
    return client


def test_deploy_version(deploy_client: TestClient, make_version):
    version, history = make_version()

    response = deploy_client.post(
        f"/api/v1/app-store/versions/{version.id}/deploy",
        json={"history_id": history.id, "user_id": 1},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "DEPLOY_SUCCESS"
    assert data["last_completed_step"] == "DEPLOYED"
    assert data["git_hash"] == "sha-1"

    timeline = deploy_client.get(f"/api/v1/app-store/histories/{history.id}/timeline").json()
    assert [t["status"] for t in timeline] == ["DEPLOYMENT_INITIATED", "GIT_COMMIT"]


def test_deploy_version_git_failure(deploy_client: TestClient, make_version, fake_gitops):
    version, history = make_version()
    fake_gitops.fail_with = ExternalServiceError("gitea unreachable", detail="connection refused")

    response = deploy_client.post(
        f"/api/v1/app-store/versions/{version.id}/deploy",
        json={"history_id": history.id, "user_id": 1},
    )

    assert response.status_code == 502
    assert response.json()["detail"]["status"] == "GIT_ERROR"

    stored = deploy_client.get(f"/api/v1/app-store/versions/{version.id}").json()
    assert stored["status"] == "GIT_ERROR"
    assert stored["last_error_kind"] == "GIT"


def test_deploy_unknown_version(deploy_client: TestClient):
    response = deploy_client.post(
        "/api/v1/app-store/versions/404/deploy", json={"history_id": 1, "user_id": 1}
    )
    assert response.status_code == 404
    assert deploy_client.get("/api/v1/app-store/versions/404").status_code == 404


def test_deploy_unsupported_type(deploy_client: TestClient, make_version):
    version, history = make_version(deployment_app_type="kustomize")

    response = deploy_client.post(
        f"/api/v1/app-store/versions/{version.id}/deploy",
        json={"history_id": history.id, "user_id": 1},
    )

    assert response.status_code == 400
    assert deploy_client.get(f"/api/v1/app-store/versions/{version.id}").json()["status"] == (
        "DEPLOY_INIT"
    )


def test_bulk_deploy(deploy_client: TestClient, make_version):
    first, first_history = make_version()
    second, second_history = make_version(app_name="api")

    response = deploy_client.post(
        "/api/v1/app-store/bulk-deploy",
        json={
            "items": [
                {"version_id": first.id, "history_id": first_history.id},
                {"version_id": second.id, "history_id": second_history.id},
            ],
            "user_id": 1,
        },
    )

    assert response.status_code == 200
    assert response.json()["results"] == {
        str(first.id): "DEPLOY_SUCCESS",
        str(second.id): "DEPLOY_SUCCESS",
    }
