# app/models/cicd.py
"""Database models for CD pipelines, deployment runs and their status tracking."""

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from app.db.session import Base
from app.models.status import DeploymentAppType, WorkflowType


class CdPipeline(Base):
    """Deployment pipeline of one app into one environment."""

    __tablename__ = "cd_pipelines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_name = Column(String(255), nullable=False, index=True)
    environment_name = Column(String(255), nullable=False)
    namespace = Column(String(255), nullable=False)
    cluster_id = Column(Integer, nullable=False, default=1)
    deployment_app_type = Column(
        String(50), nullable=False, default=DeploymentAppType.ARGO_CD.value
    )  # argo_cd, helm
    deployment_app_name = Column(String(255))
    deployment_app_created = Column(Boolean, nullable=False, default=False)
    app_status = Column(String(50))  # last status seen in the cluster
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    runs = relationship("DeploymentRun", back_populates="pipeline")

    def get_deployment_app_name(self) -> str:
        return self.deployment_app_name or f"{self.app_name}-{self.environment_name}"

    def to_dict(self):
        return {
            "id": self.id,
            "app_name": self.app_name,
            "environment_name": self.environment_name,
            "namespace": self.namespace,
            "cluster_id": self.cluster_id,
            "deployment_app_type": self.deployment_app_type,
            "deployment_app_name": self.get_deployment_app_name(),
            "deployment_app_created": self.deployment_app_created,
            "app_status": self.app_status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class DeploymentRun(Base):
    """One attempt to execute a pipeline's pre, deploy or post workflow."""

    __tablename__ = "deployment_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pipeline_id = Column(
        Integer, ForeignKey("cd_pipelines.id"), nullable=False, index=True
    )
    workflow_type = Column(
        String(20), nullable=False, default=WorkflowType.DEPLOY.value
    )  # PRE, DEPLOY, POST
    name = Column(String(255))
    status = Column(String(50), nullable=False, index=True)
    pod_status = Column(String(50))
    pod_name = Column(String(255))
    message = Column(Text)
    started_on = Column(DateTime, nullable=False, default=datetime.utcnow)
    finished_on = Column(DateTime)
    reference_id = Column(String(255), index=True)  # idempotency key of the trigger
    stop_requested = Column(Boolean, nullable=False, default=False)  # hibernate release
    triggered_by = Column(Integer)
    updated_by = Column(Integer)
    updated_on = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    pipeline = relationship("CdPipeline", back_populates="runs")

    def to_dict(self):
        """Convert to dictionary for API responses"""
        return {
            "id": self.id,
            "pipeline_id": self.pipeline_id,
            "workflow_type": self.workflow_type,
            "name": self.name,
            "status": self.status,
            "pod_status": self.pod_status,
            "pod_name": self.pod_name,
            "message": self.message,
            "started_on": self.started_on.isoformat() if self.started_on else None,
            "finished_on": self.finished_on.isoformat() if self.finished_on else None,
            "reference_id": self.reference_id,
            "triggered_by": self.triggered_by,
        }


class WorkflowExecutionStage(Base):
    """Preparation, execution or pod stage of a single workflow run."""

    __tablename__ = "workflow_execution_stages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    workflow_id = Column(Integer, nullable=False, index=True)
    workflow_type = Column(String(20), nullable=False)
    stage_name = Column(String(50), nullable=False)  # Preparation, Execution, Pod
    step_name = Column(String(100))
    status_for = Column(String(20), nullable=False)  # workflow, pod
    status = Column(String(20), nullable=False)
    message = Column(Text)
    start_time = Column(DateTime)
    end_time = Column(DateTime)
    # "metadata" is reserved on declarative classes
    stage_metadata = Column("metadata", JSON)
    created_on = Column(DateTime, default=datetime.utcnow)
    updated_on = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "stage_name": self.stage_name,
            "step_name": self.step_name,
            "status_for": self.status_for,
            "status": self.status,
            "message": self.message,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "metadata": self.stage_metadata or {},
        }


class PipelineStatusTimeline(Base):
    """Append-only status milestone of a deployment run or helm app history."""

    __tablename__ = "pipeline_status_timelines"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cd_workflow_runner_id = Column(Integer, nullable=True, index=True)
    installed_app_version_history_id = Column(Integer, nullable=True, index=True)
    status = Column(String(50), nullable=False)
    status_detail = Column(Text)
    status_time = Column(DateTime, nullable=False, default=datetime.utcnow)
    created_by = Column(Integer)
    created_on = Column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "cd_workflow_runner_id": self.cd_workflow_runner_id,
            "installed_app_version_history_id": self.installed_app_version_history_id,
            "status": self.status,
            "status_detail": self.status_detail,
            "status_time": self.status_time.isoformat() if self.status_time else None,
        }


class DeploymentMetric(Base):
    """Duration and outcome of a finished deployment run."""

    __tablename__ = "deployment_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    runner_id = Column(Integer, nullable=False, index=True)
    pipeline_id = Column(Integer, nullable=False)
    app_name = Column(String(255))
    environment_name = Column(String(255))
    deployment_app_type = Column(String(50))
    status = Column(String(50))
    duration_seconds = Column(Float)
    recorded_at = Column(DateTime, nullable=False, default=datetime.utcnow)
