"""Service layer for business logic"""

from app.services.cd_workflow import CdWorkflowCommonService
from app.services.deploy_stage import AppStoreDeployStageService
from app.services.resource_tree import ResourceTreeService, StatusReconciler
from app.services.workflow_stages import WorkflowStageStatusService

__all__ = [
    "CdWorkflowCommonService",
    "AppStoreDeployStageService",
    "ResourceTreeService",
    "StatusReconciler",
    "WorkflowStageStatusService",
]
