# app/services/cd_workflow.py
"""Keeps one deployment run per pipeline authoritative.

Newer triggers fence out older in-flight and queued runs, failures are
recorded without ever regressing a terminal run, and redelivered trigger
messages are filtered before they can create duplicate runs.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    ERROR_DEPLOYMENT_SUPERSEDED,
    FOUND_VULNERABILITY,
    DeploymentSupersededError,
    DuplicateTriggerError,
    UnsupportedOperationError,
    get_client_error_detail,
    truncate_message,
)
from app.models.cicd import DeploymentRun
from app.models.status import (
    SUPERSESSION_FENCE_STATUSES,
    TIMELINE_DESCRIPTION_DEPLOYMENT_INITIATED,
    TIMELINE_DESCRIPTION_DEPLOYMENT_SUPERSEDED,
    TIMELINE_DESCRIPTION_VULNERABLE_IMAGE,
    TimelineStatus,
    WorkflowStatus,
    WorkflowType,
    is_run_terminal,
)
from app.services.config_history import DeployedConfigurationHistoryService
from app.services.events import PubSubMsg, ValidateMsg
from app.services.metrics import DeploymentMetricsSink
from app.services.runner_repository import DeploymentRunRepository
from app.services.timeline import PipelineStatusTimelineService
from app.services.workflow_stages import (
    WorkflowStageStatusService,
    build_workflow_stage_service,
)

logger = logging.getLogger(__name__)


def extract_timeline_failed_status_details(err: BaseException) -> str:
    detail = get_client_error_detail(err)
    if detail == FOUND_VULNERABILITY:
        return TIMELINE_DESCRIPTION_VULNERABLE_IMAGE
    return truncate_message(f"Deployment failed: {detail}")


class CdWorkflowCommonService:
    """Supersession, failure marking and trigger de-duplication for deployment runs."""

    def __init__(
        self,
        db: Session,
        stage_service: Optional[WorkflowStageStatusService] = None,
        metrics_sink: Optional[DeploymentMetricsSink] = None,
        config_history_service: Optional[DeployedConfigurationHistoryService] = None,
    ):
        self.db = db
        self.repository = DeploymentRunRepository(db)
        self.timeline_service = PipelineStatusTimelineService(db)
        self.stage_service = stage_service or WorkflowStageStatusService(db)
        self.metrics_sink = metrics_sink or DeploymentMetricsSink(db)
        self.config_history_service = (
            config_history_service or DeployedConfigurationHistoryService(db)
        )

    def supersede_previous_deployments(
        self,
        runner_id: int,
        pipeline_id: int,
        triggered_at: datetime,
        triggered_by: int,
    ) -> List[DeploymentRun]:
        """Fail every other non-terminal deploy run of the pipeline in one transaction."""
        previous_runners = self.repository.find_previous_runners_by_status(
            pipeline_id, runner_id, SUPERSESSION_FENCE_STATUSES
        )
        if not previous_runners:
            logger.info(
                f"No previous in-flight runs to supersede for pipeline {pipeline_id} "
                f"(current run {runner_id})"
            )
            return []

        try:
            superseded = []
            timelines = []
            for runner in previous_runners:
                if runner.status in SUPERSESSION_FENCE_STATUSES:
                    continue
                logger.info(
                    f"Superseding run {runner.id} of pipeline {pipeline_id} "
                    f"(status {runner.status}) by run {runner_id}"
                )
                runner.finished_on = triggered_at
                runner.message = ERROR_DEPLOYMENT_SUPERSEDED.message
                runner.status = WorkflowStatus.FAILED.value
                runner.updated_by = triggered_by
                superseded.append(runner)
                timelines.append(
                    PipelineStatusTimelineService.new_runner_timeline(
                        runner.id,
                        TimelineStatus.DEPLOYMENT_SUPERSEDED,
                        TIMELINE_DESCRIPTION_DEPLOYMENT_SUPERSEDED,
                        triggered_by,
                    )
                )

            self.repository.update_runners(superseded)
            for timeline in timelines:
                self.timeline_service.save_timeline(timeline, tx_commit=False)
            self.repository.commit()
        except Exception:
            logger.error(
                f"Superseding previous runs of pipeline {pipeline_id} failed, rolling back"
            )
            self.repository.rollback()
            raise
        return superseded

    def mark_deployment_failed_for_runner_id(
        self, runner_id: int, release_err: BaseException, triggered_by: int
    ) -> DeploymentRun:
        runner = self.repository.find_runner_by_id(runner_id)
        self.mark_current_deployment_failed(runner, release_err, triggered_by)
        return runner

    def mark_current_deployment_failed(
        self, runner: DeploymentRun, release_err: BaseException, triggered_by: int
    ) -> bool:
        """Fail a run unless it already finished. Returns True when the run changed."""
        if is_run_terminal(runner.status):
            logger.info(
                f"Run {runner.id} is already {runner.status}, not marking failed: {release_err}"
            )
            return False

        logger.error(f"Deployment run {runner.id} failed: {release_err}")
        runner.status = WorkflowStatus.FAILED.value
        runner.message = get_client_error_detail(release_err)
        runner.finished_on = datetime.utcnow()
        runner.updated_by = triggered_by
        self.repository.update_runner(runner)

        if runner.workflow_type != WorkflowType.DEPLOY.value:
            return True

        if isinstance(release_err, DeploymentSupersededError):
            self.timeline_service.mark_pipeline_status_timeline_superseded(
                runner.id, triggered_by
            )
        else:
            self.timeline_service.mark_pipeline_status_timeline_failed(
                runner.id, extract_timeline_failed_status_details(release_err), triggered_by
            )
        self.metrics_sink.emit_deployment_metric(runner)
        return True

    def update_non_terminal_status_in_runner(
        self, runner_id: int, user_id: int, status: str
    ) -> DeploymentRun:
        if is_run_terminal(status):
            raise UnsupportedOperationError(f"unsupported status {status} for update operation")

        runner = self.repository.find_runner_by_id(runner_id)
        # Failed -> Progressing is not allowed
        if is_run_terminal(runner.status):
            logger.warning(
                f"Run {runner.id} has already terminated with {runner.status}, ignoring {status}"
            )
            return runner

        runner.status = status
        runner.updated_by = user_id
        return self.repository.update_runner(runner)

    def update_previous_queued_runner_status(
        self, runner_id: int, pipeline_id: int, triggered_by: int
    ) -> List[int]:
        queued_runners = self.repository.find_queued_runners(pipeline_id, runner_id)
        queued_ids = []
        for queued in queued_runners:
            self.timeline_service.mark_pipeline_status_timeline_superseded(
                queued.id, triggered_by
            )
            pipeline = queued.pipeline or self.repository.get_pipeline(pipeline_id)
            self.metrics_sink.emit_deployment_metric(queued, pipeline)
            queued_ids.append(queued.id)

        self.repository.update_runner_status_to_failed_for_ids(
            ERROR_DEPLOYMENT_SUPERSEDED.message, triggered_by, queued_ids
        )
        if queued_ids:
            logger.info(f"Superseded queued runs {queued_ids} of pipeline {pipeline_id}")
        return queued_ids

    def get_trigger_validate_funcs(self) -> List[ValidateMsg]:
        def duplicate_trigger_validate(msg: PubSubMsg) -> bool:
            if msg.msg_deliver_count == 1:
                # first delivery is always processed
                return True
            try:
                return self._can_initiate_trigger(msg.msg_id)
            except DuplicateTriggerError as e:
                logger.warning(f"Duplicate trigger message {msg.msg_id}: {e}")
                return False
            except SQLAlchemyError as e:
                logger.error(f"Could not check trigger message {msg.msg_id}: {e}")
                return False

        return [duplicate_trigger_validate]

    def _can_initiate_trigger(self, msg_id: str) -> bool:
        if not msg_id:
            return True
        if self.repository.check_runner_exists_by_reference_id(msg_id):
            raise DuplicateTriggerError(
                "duplicate trigger request, this request was already processed"
            )
        return True

    def handle_trigger_message(self, msg: PubSubMsg) -> DeploymentRun:
        """Create the run a validated trigger message asks for and fence older runs."""
        data = msg.data
        pipeline = self.repository.get_pipeline(int(data["pipeline_id"]))
        workflow_type = WorkflowType(data.get("workflow_type", WorkflowType.DEPLOY.value))
        triggered_by = data.get("triggered_by")
        now = datetime.utcnow()

        runner = DeploymentRun(
            pipeline_id=pipeline.id,
            workflow_type=workflow_type.value,
            name=data.get("name") or f"{pipeline.get_deployment_app_name()}-{workflow_type.value.lower()}",
            status=WorkflowStatus.STARTING.value,
            started_on=now,
            reference_id=msg.msg_id or None,
            triggered_by=triggered_by,
            updated_by=triggered_by,
        )
        try:
            self.repository.save_runner(runner)
            self.stage_service.save_workflow_stages(runner.id, runner.workflow_type, runner.name)
            self.repository.commit()
        except Exception:
            self.repository.rollback()
            raise
        logger.info(
            f"Created {workflow_type.value} run {runner.id} for pipeline {pipeline.id} "
            f"from message {msg.msg_id}"
        )

        if workflow_type == WorkflowType.DEPLOY:
            self.config_history_service.create_histories_for_deployment_trigger(
                pipeline, now, triggered_by
            )
            self.supersede_previous_deployments(runner.id, pipeline.id, now, triggered_by)
            self.timeline_service.record_advisory(
                PipelineStatusTimelineService.new_runner_timeline(
                    runner.id,
                    TimelineStatus.DEPLOYMENT_INITIATED,
                    TIMELINE_DESCRIPTION_DEPLOYMENT_INITIATED,
                    triggered_by,
                )
            )
        self.update_previous_queued_runner_status(runner.id, pipeline.id, triggered_by)
        return runner


def build_cd_workflow_service(db: Session) -> CdWorkflowCommonService:
    return CdWorkflowCommonService(
        db,
        stage_service=build_workflow_stage_service(db),
        metrics_sink=DeploymentMetricsSink(db, settings.EXPOSE_CD_METRICS),
    )
