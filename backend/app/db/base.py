# app/db/base.py
"""Import all models to register them with SQLAlchemy."""

# Import Base first
from app.db.session import Base

# Import all models to register them
from app.models import (
    CdPipeline,
    DeploymentRun,
    WorkflowExecutionStage,
    PipelineStatusTimeline,
    DeploymentMetric,
    InstalledAppVersion,
    InstalledAppVersionHistory,
    ConfigMapEntry,
    ConfigMapHistory,
)

__all__ = ["Base"]
