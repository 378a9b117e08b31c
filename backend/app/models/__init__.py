"""Database models for the CD control plane"""

from app.models.cicd import (
    CdPipeline,
    DeploymentRun,
    WorkflowExecutionStage,
    PipelineStatusTimeline,
    DeploymentMetric,
)
from app.models.app_store import InstalledAppVersion, InstalledAppVersionHistory
from app.models.config_maps import ConfigMapEntry, ConfigMapHistory

__all__ = [
    "CdPipeline",
    "DeploymentRun",
    "WorkflowExecutionStage",
    "PipelineStatusTimeline",
    "DeploymentMetric",
    "InstalledAppVersion",
    "InstalledAppVersionHistory",
    "ConfigMapEntry",
    "ConfigMapHistory",
]
