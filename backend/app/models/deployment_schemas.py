"""
Pydantic schemas for deployment runs, deploy stages and config history
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List


class TriggerRequest(BaseModel):
    """Trigger message as delivered by the message bus"""

    msg_id: str = ""
    msg_deliver_count: int = 1
    pipeline_id: int
    workflow_type: str = "DEPLOY"
    name: Optional[str] = None
    triggered_by: Optional[int] = None

    class Config:
        json_schema_extra = {
            "example": {
                "msg_id": "cd-trigger-0b6f1c",
                "msg_deliver_count": 1,
                "pipeline_id": 7,
                "workflow_type": "DEPLOY",
                "triggered_by": 2,
            }
        }


class SupersedeRequest(BaseModel):
    runner_id: int
    triggered_by: int


class MarkFailedRequest(BaseModel):
    """Failure reported for a run by an outer layer"""

    message: str = Field(..., description="Error detail of the failed release")
    superseded: bool = Field(False, description="Failure is a supersession")
    triggered_by: int


class RunnerStatusUpdateRequest(BaseModel):
    status: str = Field(..., description="Non-terminal run status, e.g. Progressing")
    user_id: int


class WorkflowStatusUpdateRequest(BaseModel):
    """Status signal from the workflow engine for one run"""

    workflow_status: str
    pod_status: str
    message: str = ""
    pod_name: str = ""

    class Config:
        json_schema_extra = {
            "example": {
                "workflow_status": "Running",
                "pod_status": "Running",
                "message": "",
                "pod_name": "cd-my-app-dev-deploy-5x2kq",
            }
        }


class RunnerResponse(BaseModel):
    id: int
    pipeline_id: int
    workflow_type: str
    name: Optional[str] = None
    status: str
    pod_status: Optional[str] = None
    pod_name: Optional[str] = None
    message: Optional[str] = None
    started_on: Optional[str] = None
    finished_on: Optional[str] = None
    reference_id: Optional[str] = None
    triggered_by: Optional[int] = None


class DeployStageRequest(BaseModel):
    history_id: int
    user_id: int


class DeployRequestItem(BaseModel):
    version_id: int
    history_id: int


class BulkDeployRequest(BaseModel):
    """Versions to run the deploy stage for, one after the other"""

    items: List[DeployRequestItem]
    user_id: int

    class Config:
        json_schema_extra = {
            "example": {
                "items": [
                    {"version_id": 11, "history_id": 31},
                    {"version_id": 12, "history_id": 32},
                ],
                "user_id": 2,
            }
        }


class BulkDeployResponse(BaseModel):
    """Resulting deployment status per version id"""

    results: Dict[int, str]


class InstalledAppVersionResponse(BaseModel):
    id: int
    app_name: str
    environment_name: str
    namespace: str
    deployment_app_type: str
    chart_name: str
    chart_version: str
    status: str
    last_completed_step: str
    last_error_kind: str
    git_hash: Optional[str] = None
    gitops_repo_url: Optional[str] = None
    updated_on: Optional[str] = None


class ConfigHistoryDetailResponse(BaseModel):
    id: int
    pipeline_id: int
    kind: str
    deployed: bool
    deployed_on: Optional[str] = None
    deployed_by: Optional[int] = None
    items: List[Dict[str, Any]]
