# app/services/runner_repository.py
"""Persistence gateway for deployment runs, workflow stages and installed app versions."""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import and_
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError
from app.models.app_store import InstalledAppVersion, InstalledAppVersionHistory
from app.models.cicd import CdPipeline, DeploymentRun, WorkflowExecutionStage
from app.models.status import (
    DEPLOY_STATUS_CURSOR,
    AppStoreDeploymentStatus,
    WorkflowStatus,
    WorkflowType,
)

logger = logging.getLogger(__name__)


class DeploymentRunRepository:
    """Transactional reads and writes over the control plane's rows.

    Methods that take part in a caller's transaction only flush. The caller
    decides when to commit or roll back.
    """

    def __init__(self, db: Session):
        self.db = db

    # Transactions

    def commit(self):
        self.db.commit()

    def rollback(self):
        self.db.rollback()

    # Pipelines

    def get_pipeline(self, pipeline_id: int) -> CdPipeline:
        pipeline = self.db.query(CdPipeline).filter(CdPipeline.id == pipeline_id).first()
        if not pipeline:
            raise NotFoundError(f"pipeline {pipeline_id} not found")
        return pipeline

    def list_pipelines(self) -> List[CdPipeline]:
        return self.db.query(CdPipeline).order_by(CdPipeline.id).all()

    def update_pipeline_app_status(self, pipeline: CdPipeline, app_status: str):
        pipeline.app_status = app_status
        self.db.commit()

    # Deployment runs

    def find_runner_by_id(self, runner_id: int) -> DeploymentRun:
        runner = (
            self.db.query(DeploymentRun).filter(DeploymentRun.id == runner_id).first()
        )
        if not runner:
            raise NotFoundError(f"deployment run {runner_id} not found")
        return runner

    def save_runner(self, runner: DeploymentRun) -> DeploymentRun:
        self.db.add(runner)
        self.db.flush()
        return runner

    def update_runner(self, runner: DeploymentRun) -> DeploymentRun:
        runner.updated_on = datetime.utcnow()
        self.db.add(runner)
        self.db.commit()
        return runner

    def update_runners(self, runners: Iterable[DeploymentRun]):
        """Stage a batch of runner updates in the current transaction."""
        now = datetime.utcnow()
        for runner in runners:
            runner.updated_on = now
            self.db.add(runner)
        self.db.flush()

    def find_previous_runners_by_status(
        self, pipeline_id: int, exclude_id: int, terminal_statuses: Iterable[str]
    ) -> List[DeploymentRun]:
        """Deploy runs of a pipeline, other than exclude_id, not in a terminal status."""
        return (
            self.db.query(DeploymentRun)
            .filter(
                and_(
                    DeploymentRun.pipeline_id == pipeline_id,
                    DeploymentRun.id != exclude_id,
                    DeploymentRun.workflow_type == WorkflowType.DEPLOY.value,
                    DeploymentRun.status.notin_(list(terminal_statuses)),
                )
            )
            .order_by(DeploymentRun.id)
            .all()
        )

    def find_queued_runners(self, pipeline_id: int, exclude_id: int) -> List[DeploymentRun]:
        return (
            self.db.query(DeploymentRun)
            .filter(
                DeploymentRun.pipeline_id == pipeline_id,
                DeploymentRun.id != exclude_id,
                DeploymentRun.status == WorkflowStatus.QUEUED.value,
            )
            .order_by(DeploymentRun.id)
            .all()
        )

    def update_runner_status_to_failed_for_ids(
        self, message: str, user_id: int, runner_ids: List[int]
    ) -> int:
        if not runner_ids:
            return 0
        now = datetime.utcnow()
        updated = (
            self.db.query(DeploymentRun)
            .filter(DeploymentRun.id.in_(runner_ids))
            .update(
                {
                    DeploymentRun.status: WorkflowStatus.FAILED.value,
                    DeploymentRun.message: message,
                    DeploymentRun.finished_on: now,
                    DeploymentRun.updated_by: user_id,
                    DeploymentRun.updated_on: now,
                },
                synchronize_session="fetch",
            )
        )
        self.db.commit()
        return updated

    def check_runner_exists_by_reference_id(self, reference_id: str) -> bool:
        return (
            self.db.query(DeploymentRun.id)
            .filter(DeploymentRun.reference_id == reference_id)
            .first()
            is not None
        )

    def find_latest_runner_by_pipeline(
        self, pipeline_id: int, workflow_type: str = WorkflowType.DEPLOY.value
    ) -> Optional[DeploymentRun]:
        return (
            self.db.query(DeploymentRun)
            .filter(
                DeploymentRun.pipeline_id == pipeline_id,
                DeploymentRun.workflow_type == workflow_type,
            )
            .order_by(DeploymentRun.id.desc())
            .first()
        )

    def count_runners_by_pipeline(
        self, pipeline_id: int, workflow_type: str = WorkflowType.DEPLOY.value
    ) -> int:
        return (
            self.db.query(DeploymentRun)
            .filter(
                DeploymentRun.pipeline_id == pipeline_id,
                DeploymentRun.workflow_type == workflow_type,
            )
            .count()
        )

    # Workflow execution stages

    def get_workflow_stages(
        self, workflow_id: int, workflow_type: str
    ) -> List[WorkflowExecutionStage]:
        return (
            self.db.query(WorkflowExecutionStage)
            .filter(
                WorkflowExecutionStage.workflow_id == workflow_id,
                WorkflowExecutionStage.workflow_type == workflow_type,
            )
            .order_by(WorkflowExecutionStage.id)
            .all()
        )

    def get_workflow_stages_by_ids(
        self, workflow_ids: List[int], workflow_types: List[str]
    ) -> List[WorkflowExecutionStage]:
        if not workflow_ids:
            return []
        return (
            self.db.query(WorkflowExecutionStage)
            .filter(
                WorkflowExecutionStage.workflow_id.in_(workflow_ids),
                WorkflowExecutionStage.workflow_type.in_(workflow_types),
            )
            .order_by(WorkflowExecutionStage.id)
            .all()
        )

    def save_workflow_stages(self, stages: List[WorkflowExecutionStage]):
        self.db.add_all(stages)
        self.db.flush()

    def update_workflow_stages(self, stages: List[WorkflowExecutionStage]):
        now = datetime.utcnow()
        for stage in stages:
            stage.updated_on = now
            self.db.add(stage)
        self.db.flush()

    # Installed app versions

    def get_installed_app_version(self, version_id: int) -> InstalledAppVersion:
        version = (
            self.db.query(InstalledAppVersion)
            .filter(InstalledAppVersion.id == version_id)
            .first()
        )
        if not version:
            raise NotFoundError(f"installed app version {version_id} not found")
        return version

    def get_installed_app_version_history(
        self, history_id: int
    ) -> Optional[InstalledAppVersionHistory]:
        return (
            self.db.query(InstalledAppVersionHistory)
            .filter(InstalledAppVersionHistory.id == history_id)
            .first()
        )

    def update_installed_app_version_status(
        self,
        version: InstalledAppVersion,
        status: AppStoreDeploymentStatus,
        user_id: Optional[int] = None,
    ) -> InstalledAppVersion:
        """Persist a deploy status transition immediately, with its step cursor."""
        status = AppStoreDeploymentStatus(status)
        step, error_kind = DEPLOY_STATUS_CURSOR[status]
        version.status = status.value
        if step is not None:
            version.last_completed_step = step.value
        version.last_error_kind = error_kind.value
        if user_id is not None:
            version.updated_by = user_id
        version.updated_on = datetime.utcnow()
        self.db.add(version)
        self.db.commit()
        logger.info(f"Installed app version {version.id} moved to {status.value}")
        return version

    def update_history_git_hash(self, history_id: int, git_hash: str):
        history = self.get_installed_app_version_history(history_id)
        if not history:
            logger.warning(f"No installed app version history {history_id} to update")
            return
        history.git_hash = git_hash
        self.db.commit()

    def finish_history(self, history_id: int, status: str):
        history = self.get_installed_app_version_history(history_id)
        if not history:
            return
        history.status = status
        history.finished_on = datetime.utcnow()
        self.db.commit()

