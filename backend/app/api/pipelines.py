# app/api/pipelines.py
"""Pipeline endpoints: live resource trees and deployed configuration history."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, ResourceTreeFetchError, UnsupportedOperationError
from app.db.session import get_db
from app.models.deployment_schemas import ConfigHistoryDetailResponse
from app.services.config_history import DeployedConfigurationHistoryService
from app.services.resource_tree import ResourceTreeService, build_resource_tree_service
from app.services.runner_repository import DeploymentRunRepository

logger = logging.getLogger(__name__)

router = APIRouter()


def get_resource_tree_service(db: Session = Depends(get_db)) -> ResourceTreeService:
    return build_resource_tree_service(db)


def get_config_history_service(
    db: Session = Depends(get_db),
) -> DeployedConfigurationHistoryService:
    return DeployedConfigurationHistoryService(db)


@router.get("/", operation_id="list_pipelines")
def list_pipelines(db: Session = Depends(get_db)):
    return [pipeline.to_dict() for pipeline in DeploymentRunRepository(db).list_pipelines()]


@router.get("/{pipeline_id}/resource-tree", operation_id="get_resource_tree")
def get_resource_tree(
    pipeline_id: int,
    service: ResourceTreeService = Depends(get_resource_tree_service),
):
    """Live resource tree of the pipeline's app, {} when nothing is deployed yet."""
    try:
        pipeline = service.repository.get_pipeline(pipeline_id)
        return service.fetch_resource_tree(pipeline)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ResourceTreeFetchError as e:
        logger.error(f"Resource tree of pipeline {pipeline_id} unavailable: {e}")
        raise HTTPException(status_code=502, detail=e.user_message)


@router.get(
    "/{pipeline_id}/deployment-configuration/runners/{runner_id}",
    operation_id="get_deployed_configuration_by_runner",
)
def get_deployed_configuration_by_runner(
    pipeline_id: int,
    runner_id: int,
    service: DeployedConfigurationHistoryService = Depends(get_config_history_service),
):
    try:
        return service.get_deployed_configuration_by_runner(pipeline_id, runner_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get(
    "/{pipeline_id}/deployment-configuration/{component}",
    operation_id="list_deployed_configuration_history",
)
def list_deployed_configuration_history(
    pipeline_id: int,
    component: str,
    service: DeployedConfigurationHistoryService = Depends(get_config_history_service),
):
    try:
        return service.get_deployed_history_list(pipeline_id, component)
    except UnsupportedOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get(
    "/{pipeline_id}/deployment-configuration/{component}/{history_id}",
    response_model=ConfigHistoryDetailResponse,
    operation_id="get_deployed_configuration_detail",
)
def get_deployed_configuration_detail(
    pipeline_id: int,
    component: str,
    history_id: int,
    admin: bool = Query(False, description="Caller may read secret values"),
    service: DeployedConfigurationHistoryService = Depends(get_config_history_service),
):
    try:
        return service.get_history_detail(pipeline_id, history_id, component, admin)
    except UnsupportedOperationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
