# app/api/app_deployments.py
"""Deploy stage endpoints for installed app versions."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, StageError, UnsupportedOperationError
from app.db.session import get_db
from app.models.deployment_schemas import (
    BulkDeployRequest,
    BulkDeployResponse,
    DeployStageRequest,
    InstalledAppVersionResponse,
)
from app.services.deploy_stage import AppStoreDeployStageService, build_deploy_stage_service
from app.services.runner_repository import DeploymentRunRepository
from app.services.timeline import PipelineStatusTimelineService

logger = logging.getLogger(__name__)

router = APIRouter()


def get_deploy_stage_service(db: Session = Depends(get_db)) -> AppStoreDeployStageService:
    return build_deploy_stage_service(db)


@router.get(
    "/versions/{version_id}",
    response_model=InstalledAppVersionResponse,
    operation_id="get_installed_app_version",
)
def get_installed_app_version(version_id: int, db: Session = Depends(get_db)):
    try:
        version = DeploymentRunRepository(db).get_installed_app_version(version_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return version.to_dict()


@router.post(
    "/versions/{version_id}/deploy",
    response_model=InstalledAppVersionResponse,
    operation_id="deploy_installed_app_version",
)
def deploy_installed_app_version(
    version_id: int,
    request: DeployStageRequest,
    service: AppStoreDeployStageService = Depends(get_deploy_stage_service),
):
    """Run the deploy stages still pending for a version.

    A failed stage answers 502 with the persisted error status, calling again
    resumes from that stage.
    """
    try:
        version = service.perform_deploy_stage(version_id, request.history_id, request.user_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UnsupportedOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StageError as e:
        raise HTTPException(
            status_code=502, detail={"status": e.status, "message": str(e)}
        )
    return version.to_dict()


@router.post("/bulk-deploy", response_model=BulkDeployResponse, operation_id="bulk_deploy")
def bulk_deploy(
    request: BulkDeployRequest,
    service: AppStoreDeployStageService = Depends(get_deploy_stage_service),
):
    results = service.deploy_now(
        [(item.version_id, item.history_id) for item in request.items], request.user_id
    )
    return {"results": results}


@router.get("/histories/{history_id}/timeline", operation_id="get_history_timeline")
def get_history_timeline(history_id: int, db: Session = Depends(get_db)):
    timelines = PipelineStatusTimelineService(db).fetch_timelines(history_id=history_id)
    return [timeline.to_dict() for timeline in timelines]
