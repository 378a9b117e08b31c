# app/api/router.py
from fastapi import APIRouter
from app.api import (
    app_deployments,
    deployment_runs,
    pipelines,
)

api_router = APIRouter()

# Include the routes from the different modules
api_router.include_router(deployment_runs.router, prefix="/cd", tags=["deployment-runs"])
api_router.include_router(app_deployments.router, prefix="/app-store", tags=["app-deployments"])
api_router.include_router(pipelines.router, prefix="/pipelines", tags=["pipelines"])
