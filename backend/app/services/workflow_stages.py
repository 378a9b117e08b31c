# app/services/workflow_stages.py
"""Per-run workflow stage tracking fed by pod and workflow engine signals."""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.cicd import DeploymentRun, WorkflowExecutionStage
from app.models.status import (
    PodPhase,
    StageName,
    StageStatus,
    StatusFor,
    WorkflowStatus,
    WorkflowType,
    compute_workflow_status,
    convert_status_to_stage_status,
    is_run_terminal,
)
from app.services.runner_repository import DeploymentRunRepository

logger = logging.getLogger(__name__)


def get_default_stages(wf_id: int, wf_type: str) -> List[WorkflowExecutionStage]:
    """Stage rows a freshly triggered workflow starts with."""
    now = datetime.utcnow()
    return [
        WorkflowExecutionStage(
            workflow_id=wf_id,
            workflow_type=wf_type,
            stage_name=StageName.PREPARATION.value,
            step_name=StageName.PREPARATION.value,
            status_for=StatusFor.WORKFLOW.value,
            status=StageStatus.RUNNING.value,
            message="",
            start_time=now,
        ),
        WorkflowExecutionStage(
            workflow_id=wf_id,
            workflow_type=wf_type,
            stage_name=StageName.EXECUTION.value,
            step_name=StageName.EXECUTION.value,
            status_for=StatusFor.WORKFLOW.value,
            status=StageStatus.NOT_STARTED.value,
            message="",
        ),
        WorkflowExecutionStage(
            workflow_id=wf_id,
            workflow_type=wf_type,
            stage_name=StageName.POD.value,
            step_name=StageName.POD.value,
            status_for=StatusFor.POD.value,
            status=StageStatus.NOT_STARTED.value,
            message="",
        ),
    ]


def _status(stage: WorkflowExecutionStage) -> StageStatus:
    return StageStatus(stage.status)


def _set(stage, status: StageStatus, start=False, end=False, message=None):
    now = datetime.utcnow()
    stage.status = status.value
    if start:
        stage.start_time = now
    if end:
        stage.end_time = now
    if message is not None:
        stage.message = message


class WorkflowStageStatusService:
    """Maintains the preparation, execution and pod stages of workflow runs.

    Stage writes only move forward: a stage in a terminal status is never
    rewritten, whatever order the signals arrive in.
    """

    def __init__(self, db: Session, enable_workflow_execution_stage: bool = True):
        self.db = db
        self.repository = DeploymentRunRepository(db)
        self.enabled = enable_workflow_execution_stage

    def save_workflow_stages(self, wf_id: int, wf_type: str, wf_name: str):
        if not self.enabled:
            logger.debug(f"Workflow execution stage is disabled, skipping {wf_name}")
            return []
        stages = get_default_stages(wf_id, wf_type)
        self.repository.save_workflow_stages(stages)
        return stages

    def get_workflow_stages(self, wf_id: int, wf_type: str) -> List[WorkflowExecutionStage]:
        return self.repository.get_workflow_stages(wf_id, wf_type)

    def update_workflow_stages(
        self,
        wf_id: int,
        wf_type: str,
        wf_name: str,
        wf_status: str,
        pod_status: str,
        message: str = "",
        pod_name: str = "",
    ) -> Tuple[str, str]:
        """Fold a status signal into the stages of a run.

        Returns the recomputed (workflow status, pod status). Stages are
        flushed in the caller's transaction; persisting the statuses is left
        to the caller.
        """
        if not self.enabled:
            logger.debug(f"Workflow execution stage is disabled, skipping {wf_name}")
            return wf_status, pod_status

        stages, updated_wf_status, updated_pod_status = self.get_updated_stages_for_workflow(
            wf_id, wf_type, wf_status, pod_status, message, pod_name
        )
        if stages:
            self.repository.update_workflow_stages(stages)
        return updated_wf_status, updated_pod_status

    def get_updated_stages_for_workflow(
        self,
        wf_id: int,
        wf_type: str,
        wf_status: str,
        pod_status: str,
        message: str = "",
        pod_name: str = "",
    ) -> Tuple[List[WorkflowExecutionStage], str, str]:
        stages = self.repository.get_workflow_stages(wf_id, wf_type)
        if not stages:
            # runs created before stage tracking have no rows
            return [], wf_status, pod_status

        runner = self.repository.find_runner_by_id(wf_id)
        current_wf_status = runner.status
        current_pod_status = runner.pod_status

        logger.info(
            f"Updating stages of workflow {wf_id} ({wf_type}): status {wf_status} "
            f"(stored {current_wf_status}), pod {pod_status} (stored {current_pod_status})"
        )
        stages, updated_pod_status = self.update_pod_stages(
            stages, pod_status, current_pod_status, message, pod_name
        )
        stages, updated_wf_status = self.update_workflow_stages_to_status(
            stages, wf_status, current_wf_status, message, pod_status
        )
        return stages, updated_wf_status, updated_pod_status

    def update_pod_stages(
        self,
        stages: List[WorkflowExecutionStage],
        pod_status: str,
        current_pod_status: Optional[str],
        message: str = "",
        pod_name: str = "",
    ) -> Tuple[List[WorkflowExecutionStage], str]:
        """Move the pod stage forward from the raw pod phase."""
        updated_pod_status = current_pod_status
        if not is_run_terminal(current_pod_status):
            updated_pod_status = pod_status

        phase = PodPhase.parse(pod_status)
        for stage in stages:
            if stage.status_for != StatusFor.POD.value:
                continue
            if pod_name:
                stage.stage_metadata = {"podName": pod_name}

            current = _status(stage)
            if current.is_terminal():
                continue

            if phase == PodPhase.PENDING:
                _set(stage, StageStatus.NOT_STARTED, message=message)
            elif phase == PodPhase.RUNNING:
                if current in (StageStatus.NOT_STARTED, StageStatus.UNKNOWN):
                    _set(stage, StageStatus.RUNNING, start=True, message=message)
            elif phase == PodPhase.SUCCEEDED:
                _set(
                    stage,
                    StageStatus.SUCCEEDED,
                    start=stage.start_time is None,
                    end=True,
                    message=message,
                )
            elif phase in (PodPhase.FAILED, PodPhase.ERROR):
                _set(
                    stage,
                    StageStatus.FAILED,
                    start=current == StageStatus.NOT_STARTED,
                    end=True,
                    message=message,
                )
            else:
                logger.error(f"Unknown pod status {pod_status!r}: {message}")
                _set(stage, StageStatus.UNKNOWN, end=True, message=message)
        return stages, updated_pod_status

    def update_workflow_stages_to_status(
        self,
        stages: List[WorkflowExecutionStage],
        wf_status: str,
        current_wf_status: Optional[str],
        message: str,
        pod_status: str,
    ) -> Tuple[List[WorkflowExecutionStage], str]:
        """Move the preparation and execution stages and recompute the run status."""
        updated_wf_status = current_wf_status
        extracted = convert_status_to_stage_status(wf_status, message)
        phase = PodPhase.parse(pod_status)

        if phase == PodPhase.PENDING:
            updated_wf_status = compute_workflow_status(
                current_wf_status, wf_status, WorkflowStatus.WAITING_TO_START.value
            )
            for stage in stages:
                current = _status(stage)
                if current.is_terminal():
                    continue
                if stage.stage_name == StageName.PREPARATION.value:
                    if extracted != StageStatus.NOT_STARTED:
                        _set(stage, extracted)
                # the pod may vanish before it reports a final phase
                if stage.stage_name == StageName.POD.value and is_run_terminal(wf_status):
                    _set(stage, extracted, end=True)

        elif phase == PodPhase.RUNNING:
            updated_wf_status = compute_workflow_status(
                current_wf_status, wf_status, WorkflowStatus.RUNNING.value
            )
            for stage in self._workflow_stages(stages):
                current = _status(stage)
                if stage.stage_name == StageName.PREPARATION.value:
                    if current == StageStatus.RUNNING:
                        _set(stage, StageStatus.SUCCEEDED, end=True)
                elif stage.stage_name == StageName.EXECUTION.value:
                    if current == StageStatus.NOT_STARTED:
                        _set(stage, StageStatus.RUNNING, start=True)
                    elif current == StageStatus.RUNNING and extracted.is_terminal():
                        _set(stage, extracted, end=True)

        elif phase == PodPhase.SUCCEEDED:
            updated_wf_status = compute_workflow_status(
                current_wf_status, wf_status, WorkflowStatus.SUCCEEDED.value
            )
            for stage in self._workflow_stages(stages):
                if (
                    stage.stage_name == StageName.EXECUTION.value
                    and _status(stage) == StageStatus.RUNNING
                ):
                    _set(stage, StageStatus.SUCCEEDED, end=True)

        elif phase in (PodPhase.FAILED, PodPhase.ERROR):
            updated_wf_status = compute_workflow_status(
                current_wf_status, wf_status, WorkflowStatus.FAILED.value
            )
            for stage in self._workflow_stages(stages):
                current = _status(stage)
                closes = False
                if stage.stage_name == StageName.EXECUTION.value:
                    closes = current == StageStatus.RUNNING
                elif stage.stage_name == StageName.PREPARATION.value:
                    closes = not current.is_terminal()
                if not closes or not extracted.is_terminal():
                    continue
                _set(stage, extracted, end=True)
                if extracted == StageStatus.TIMEOUT:
                    updated_wf_status = WorkflowStatus.TIMED_OUT.value
                elif extracted == StageStatus.ABORTED:
                    updated_wf_status = WorkflowStatus.CANCELLED.value

        else:
            logger.error(f"Unknown pod status {pod_status!r} for workflow status update")
            for stage in self._workflow_stages(stages):
                if (
                    stage.stage_name == StageName.EXECUTION.value
                    and _status(stage) == StageStatus.RUNNING
                ):
                    _set(stage, StageStatus.UNKNOWN)
                    updated_wf_status = WorkflowStatus.UNKNOWN.value

        return stages, updated_wf_status

    @staticmethod
    def _workflow_stages(stages):
        return [s for s in stages if s.status_for == StatusFor.WORKFLOW.value]

    def apply_workflow_status_update(
        self,
        runner_id: int,
        wf_status: str,
        pod_status: str,
        message: str = "",
        pod_name: str = "",
    ) -> DeploymentRun:
        """Update the stages of a run and write the recomputed statuses back to it."""
        runner = self.repository.find_runner_by_id(runner_id)
        try:
            updated_wf_status, updated_pod_status = self.update_workflow_stages(
                runner.id,
                runner.workflow_type,
                runner.name or str(runner.id),
                wf_status,
                pod_status,
                message,
                pod_name,
            )
            if is_run_terminal(runner.status):
                logger.info(
                    f"Run {runner.id} already {runner.status}, keeping its status"
                )
            else:
                runner.status = updated_wf_status
                runner.pod_status = updated_pod_status
                runner.message = message
                if pod_name:
                    runner.pod_name = pod_name
                if is_run_terminal(updated_wf_status):
                    runner.finished_on = datetime.utcnow()
                self.repository.update_runners([runner])
            self.repository.commit()
        except Exception:
            self.repository.rollback()
            raise
        return runner

    def convert_db_stages_to_map(
        self, stages: List[WorkflowExecutionStage], wf_id: int
    ) -> Dict[str, List[dict]]:
        """Group a run's stages by what they report on (workflow or pod)."""
        if not self.enabled:
            return {}
        result: Dict[str, List[dict]] = {}
        for stage in stages:
            if stage.workflow_id == wf_id:
                result.setdefault(stage.status_for, []).append(stage.to_dict())
        return result

    def get_pre_post_stages_by_runner_ids(
        self, runner_types: Dict[int, str]
    ) -> Dict[int, Dict[str, List[dict]]]:
        """Stage maps for PRE and POST runs, keyed by runner id."""
        response: Dict[int, Dict[str, List[dict]]] = {}
        if not runner_types:
            return response

        stages_by_type = {}
        for wf_type in (WorkflowType.PRE.value, WorkflowType.POST.value):
            ids = [rid for rid, t in runner_types.items() if t == wf_type]
            stages_by_type[wf_type] = self.repository.get_workflow_stages_by_ids(
                ids, [wf_type]
            )

        for runner_id, wf_type in runner_types.items():
            if wf_type in stages_by_type:
                response[runner_id] = self.convert_db_stages_to_map(
                    stages_by_type[wf_type], runner_id
                )
        return response


def build_workflow_stage_service(db: Session) -> WorkflowStageStatusService:
    return WorkflowStageStatusService(db, settings.ENABLE_WORKFLOW_EXECUTION_STAGE)
