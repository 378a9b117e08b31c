# app/core/config.py
from typing import List, Optional
from pydantic import validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # API settings
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "CD Control Plane"

    # CORS settings
    BACKEND_CORS_ORIGINS: List[str] = []

    LOG_LEVEL: str = "INFO"

    # PostgreSQL settings
    POSTGRES_HOST: str = "postgresql-official.postgres.svc.cluster.local"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "cd_control"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "cd_control"

    # Allow DATABASE_URL to be overridden by environment
    DATABASE_URL: Optional[str] = None

    @validator("DATABASE_URL", pre=True, always=True)
    def construct_database_url(cls, v, values):
        """Use DATABASE_URL from environment or construct from parts."""
        if v:
            return v
        user = values.get("POSTGRES_USER")
        password = values.get("POSTGRES_PASSWORD")
        host = values.get("POSTGRES_HOST")
        port = values.get("POSTGRES_PORT")
        db = values.get("POSTGRES_DB")
        return f"postgresql://{user}:{password}@{host}:{port}/{db}"

    # Workflow execution stage tracking (preparation / execution / pod)
    ENABLE_WORKFLOW_EXECUTION_STAGE: bool = True

    # Deployment metrics are only recorded when exposed
    EXPOSE_CD_METRICS: bool = False

    # ArgoCD
    ARGOCD_URL: str = "https://argocd.argocd.svc.cluster.local"
    ARGOCD_TOKEN: str = ""
    ARGOCD_NAMESPACE: str = "argocd"
    ARGOCD_VERIFY_SSL: bool = True
    ARGOCD_MANUAL_SYNC: bool = False

    # GitOps repository host (Gitea)
    GITEA_URL: str = "https://gitea.gitea.svc.cluster.local"
    GITEA_TOKEN: str = ""
    GITOPS_ORG: str = "gitops"
    GITOPS_TARGET_REVISION: str = "main"

    # Direct Helm installs
    HELM_BINARY: str = "helm"
    HELM_TIMEOUT_SECONDS: int = 300

    # Periodic resource tree reconciliation, 0 disables the loop
    RESOURCE_TREE_SYNC_INTERVAL: int = 300

    # Secret encryption
    ENCRYPTION_KEY: Optional[str] = None
    ENCRYPTION_PASSWORD: str = "cd-control-secret-key"
    ENCRYPTION_SALT: str = "cd-control-salt"

    class Config:
        case_sensitive = True
        env_file = ".env"


settings = Settings()
