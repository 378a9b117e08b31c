# app/models/app_store.py
"""Database models for installed chart versions driven through deploy stages."""

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.db.session import Base
from app.models.status import (
    AppStoreDeploymentStatus,
    DeployErrorKind,
    DeployStep,
    DeploymentAppType,
)


class InstalledAppVersion(Base):
    """A chart version installed (or being installed) into an environment."""

    __tablename__ = "installed_app_versions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_name = Column(String(255), nullable=False, index=True)
    environment_name = Column(String(255), nullable=False)
    namespace = Column(String(255), nullable=False)
    cluster_id = Column(Integer, nullable=False, default=1)
    deployment_app_type = Column(
        String(50), nullable=False, default=DeploymentAppType.ARGO_CD.value
    )

    # Chart
    chart_name = Column(String(255), nullable=False)
    chart_version = Column(String(100), nullable=False)
    chart_repo_url = Column(Text)
    values_yaml = Column(Text)

    # Deploy stage state
    status = Column(
        String(50), nullable=False, default=AppStoreDeploymentStatus.DEPLOY_INIT.value
    )
    last_completed_step = Column(String(50), nullable=False, default=DeployStep.NONE.value)
    last_error_kind = Column(
        String(50), nullable=False, default=DeployErrorKind.NONE.value
    )

    # GitOps attributes, set once the manifest is committed
    git_hash = Column(String(64))
    gitops_repo_url = Column(Text)
    target_revision = Column(String(255))
    chart_location = Column(String(255))

    updated_by = Column(Integer)
    updated_on = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    histories = relationship(
        "InstalledAppVersionHistory",
        back_populates="installed_app_version",
        cascade="all, delete-orphan",
    )

    @property
    def deployment_app_name(self) -> str:
        return f"{self.app_name}-{self.environment_name}"

    def to_dict(self):
        """Convert to dictionary for API responses"""
        return {
            "id": self.id,
            "app_name": self.app_name,
            "environment_name": self.environment_name,
            "namespace": self.namespace,
            "deployment_app_type": self.deployment_app_type,
            "chart_name": self.chart_name,
            "chart_version": self.chart_version,
            "status": self.status,
            "last_completed_step": self.last_completed_step,
            "last_error_kind": self.last_error_kind,
            "git_hash": self.git_hash,
            "gitops_repo_url": self.gitops_repo_url,
            "updated_on": self.updated_on.isoformat() if self.updated_on else None,
        }


class InstalledAppVersionHistory(Base):
    """One deploy attempt of an installed app version."""

    __tablename__ = "installed_app_version_histories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    installed_app_version_id = Column(
        Integer, ForeignKey("installed_app_versions.id"), nullable=False, index=True
    )
    status = Column(String(50))
    git_hash = Column(String(64))
    started_on = Column(DateTime, nullable=False, default=datetime.utcnow)
    finished_on = Column(DateTime)
    created_by = Column(Integer)

    installed_app_version = relationship(
        "InstalledAppVersion", back_populates="histories"
    )

    def to_dict(self):
        return {
            "id": self.id,
            "installed_app_version_id": self.installed_app_version_id,
            "status": self.status,
            "git_hash": self.git_hash,
            "started_on": self.started_on.isoformat() if self.started_on else None,
            "finished_on": self.finished_on.isoformat() if self.finished_on else None,
        }
