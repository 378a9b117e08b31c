# app/api/deployment_runs.py
"""Deployment run endpoints: triggers, supersession, failures and stage status."""

import logging
from datetime import datetime
from typing import Dict, List, Any

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.errors import (
    ControlPlaneError,
    DeploymentSupersededError,
    MessageRouteNotFoundError,
    NotFoundError,
    UnsupportedOperationError,
)
from app.db.session import get_db
from app.models.deployment_schemas import (
    MarkFailedRequest,
    RunnerResponse,
    RunnerStatusUpdateRequest,
    SupersedeRequest,
    TriggerRequest,
    WorkflowStatusUpdateRequest,
)
from app.services.cd_workflow import CdWorkflowCommonService, build_cd_workflow_service
from app.services.events import CD_TRIGGER_TOPIC, PubSubMsg, TriggerMessageRouter
from app.services.timeline import PipelineStatusTimelineService
from app.services.workflow_stages import (
    WorkflowStageStatusService,
    build_workflow_stage_service,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_cd_workflow_service(db: Session = Depends(get_db)) -> CdWorkflowCommonService:
    return build_cd_workflow_service(db)


def get_workflow_stage_service(db: Session = Depends(get_db)) -> WorkflowStageStatusService:
    return build_workflow_stage_service(db)


def build_trigger_router(service: CdWorkflowCommonService) -> TriggerMessageRouter:
    message_router = TriggerMessageRouter()
    message_router.register_route(
        CD_TRIGGER_TOPIC,
        service.handle_trigger_message,
        service.get_trigger_validate_funcs(),
    )
    return message_router


@router.post("/trigger", status_code=202, operation_id="trigger_deployment")
def trigger_deployment(
    request: TriggerRequest,
    topic: str = CD_TRIGGER_TOPIC,
    service: CdWorkflowCommonService = Depends(get_cd_workflow_service),
):
    """Accept a trigger message; redeliveries of processed messages are dropped."""
    msg = PubSubMsg(
        msg_id=request.msg_id,
        msg_deliver_count=request.msg_deliver_count,
        data=request.model_dump(exclude={"msg_id", "msg_deliver_count"}),
    )
    try:
        result = build_trigger_router(service).dispatch(topic, msg)
    except MessageRouteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if result is False:
        return {"accepted": False, "runner": None}
    return {"accepted": True, "runner": result.to_dict()}


@router.post("/pipelines/{pipeline_id}/supersede", operation_id="supersede_previous_runs")
def supersede_previous_runs(
    pipeline_id: int,
    request: SupersedeRequest,
    service: CdWorkflowCommonService = Depends(get_cd_workflow_service),
):
    superseded = service.supersede_previous_deployments(
        request.runner_id, pipeline_id, datetime.utcnow(), request.triggered_by
    )
    return {"superseded_runner_ids": [runner.id for runner in superseded]}


@router.post(
    "/runners/{runner_id}/fail",
    response_model=RunnerResponse,
    operation_id="mark_run_failed",
)
def mark_run_failed(
    runner_id: int,
    request: MarkFailedRequest,
    service: CdWorkflowCommonService = Depends(get_cd_workflow_service),
):
    if request.superseded:
        release_err = DeploymentSupersededError()
    else:
        release_err = ControlPlaneError(request.message)
    try:
        runner = service.mark_deployment_failed_for_runner_id(
            runner_id, release_err, request.triggered_by
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return runner.to_dict()


@router.put(
    "/runners/{runner_id}/status",
    response_model=RunnerResponse,
    operation_id="update_run_status",
)
def update_run_status(
    runner_id: int,
    request: RunnerStatusUpdateRequest,
    service: CdWorkflowCommonService = Depends(get_cd_workflow_service),
):
    try:
        runner = service.update_non_terminal_status_in_runner(
            runner_id, request.user_id, request.status
        )
    except UnsupportedOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return runner.to_dict()


@router.post(
    "/runners/{runner_id}/workflow-status",
    response_model=RunnerResponse,
    operation_id="report_workflow_status",
)
def report_workflow_status(
    runner_id: int,
    request: WorkflowStatusUpdateRequest,
    service: WorkflowStageStatusService = Depends(get_workflow_stage_service),
):
    """Fold a workflow engine status signal into the run and its stages."""
    try:
        runner = service.apply_workflow_status_update(
            runner_id,
            request.workflow_status,
            request.pod_status,
            request.message,
            request.pod_name,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return runner.to_dict()


@router.get("/runners/{runner_id}/stages", operation_id="get_run_stages")
def get_run_stages(
    runner_id: int,
    service: WorkflowStageStatusService = Depends(get_workflow_stage_service),
) -> Dict[str, List[Dict[str, Any]]]:
    try:
        runner = service.repository.find_runner_by_id(runner_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    stages = service.get_workflow_stages(runner.id, runner.workflow_type)
    return service.convert_db_stages_to_map(stages, runner.id)


@router.get("/runners/{runner_id}/timeline", operation_id="get_run_timeline")
def get_run_timeline(runner_id: int, db: Session = Depends(get_db)):
    timelines = PipelineStatusTimelineService(db).fetch_timelines(runner_id=runner_id)
    return [timeline.to_dict() for timeline in timelines]
