# tests/conftest.py
"""Pytest configuration and fixtures for the CD control plane backend tests."""

import copy
import os

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RESOURCE_TREE_SYNC_INTERVAL", "0")

from datetime import datetime
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from app import create_app
from app.db.base import Base
from app.db.session import get_db
from app.models.app_store import InstalledAppVersion, InstalledAppVersionHistory
from app.models.cicd import CdPipeline, DeploymentRun
from app.models.status import (
    AppStoreDeploymentStatus,
    DeploymentAppType,
    WorkflowStatus,
    WorkflowType,
)
from app.services.gitops_client import ChartGitAttribute


@pytest.fixture(scope="function")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def test_db(engine) -> Generator[Session, None, None]:
    """In-memory database session shared by the test and the app under test."""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()
    yield db
    db.rollback()
    db.close()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def make_pipeline(test_db):
    def _make(**overrides) -> CdPipeline:
        values = {
            "app_name": "web",
            "environment_name": "dev",
            "namespace": "web-dev",
            "deployment_app_type": DeploymentAppType.ARGO_CD.value,
            "deployment_app_created": True,
        }
        values.update(overrides)
        pipeline = CdPipeline(**values)
        test_db.add(pipeline)
        test_db.commit()
        return pipeline

    return _make


@pytest.fixture
def make_runner(test_db):
    def _make(pipeline: CdPipeline, status: str = WorkflowStatus.RUNNING.value, **overrides):
        values = {
            "pipeline_id": pipeline.id,
            "workflow_type": WorkflowType.DEPLOY.value,
            "name": f"{pipeline.app_name}-deploy",
            "status": status,
            "started_on": datetime.utcnow(),
        }
        values.update(overrides)
        runner = DeploymentRun(**values)
        test_db.add(runner)
        test_db.commit()
        return runner

    return _make


@pytest.fixture
def make_version(test_db):
    """Installed app version with one history row; returns (version, history)."""

    def _make(status=AppStoreDeploymentStatus.DEPLOY_INIT, **overrides):
        values = {
            "app_name": "web",
            "environment_name": "dev",
            "namespace": "web-dev",
            "deployment_app_type": DeploymentAppType.ARGO_CD.value,
            "chart_name": "nginx",
            "chart_version": "15.1.0",
            "chart_repo_url": "https://charts.example.com",
            "values_yaml": "replicaCount: 2\n",
            "status": AppStoreDeploymentStatus(status).value,
        }
        values.update(overrides)
        version = InstalledAppVersion(**values)
        test_db.add(version)
        test_db.flush()
        history = InstalledAppVersionHistory(installed_app_version_id=version.id)
        test_db.add(history)
        test_db.commit()
        return version, history

    return _make


class FakeGitOpsClient:
    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.commits = []
        self.secrets = []

    def ensure_repo_secret(self, version):
        self.secrets.append(version.id)
        return True

    def generate_manifest_and_commit(self, version):
        if self.fail_with:
            raise self.fail_with
        self.commits.append(version.id)
        return f"sha-{len(self.commits)}", self.git_attributes_for(version)

    def git_attributes_for(self, version):
        return ChartGitAttribute(
            repo_url=version.gitops_repo_url or f"https://gitea.test/gitops/{version.app_name}.git",
            target_revision=version.target_revision or "main",
            chart_location=version.chart_location or f"{version.app_name}-{version.environment_name}",
        )


class FakeArgoCDClient:
    def __init__(self, fail_with=None, tree=None):
        self.fail_with = fail_with
        self.syncs = []
        self.tree = tree

    def install_or_sync(self, version, git_attrs):
        if self.fail_with:
            raise self.fail_with
        self.syncs.append((version.id, git_attrs))

    def resource_tree(self, name):
        if self.fail_with:
            raise self.fail_with
        return copy.deepcopy(self.tree)


class FakeHelmClient:
    def __init__(self, fail_with=None, detail=None):
        self.fail_with = fail_with
        self.installs = []
        self.detail = detail

    def install_app(self, version):
        if self.fail_with:
            raise self.fail_with
        self.installs.append(version.id)
        return version.deployment_app_name

    def get_app_detail(self, release, namespace):
        if self.fail_with:
            raise self.fail_with
        return self.detail


class FakeK8sManager:
    def __init__(self, pods=None, version="v1.29.4"):
        self.pods = pods or []
        self.version = version
        self.pod_queries = []

    def get_pods_by_labels(self, namespace, labels):
        self.pod_queries.append((namespace, labels))
        return self.pods

    def get_server_version(self):
        return self.version


@pytest.fixture
def fake_gitops():
    return FakeGitOpsClient()


@pytest.fixture
def fake_argocd():
    return FakeArgoCDClient()


@pytest.fixture
def fake_helm():
    return FakeHelmClient()


@pytest.fixture(scope="function")
def app():
    """Create a fresh FastAPI app instance for each test."""
    return create_app()


@pytest.fixture(scope="function")
def client(app, test_db: Session) -> Generator[TestClient, None, None]:
    """Test client with the database dependency bound to the test session."""

    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def fake_k8s():
    return FakeK8sManager()
