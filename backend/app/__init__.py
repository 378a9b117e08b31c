# app/__init__.py
from contextlib import asynccontextmanager
import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi_mcp import FastApiMCP
from app.core.config import settings
from app.api.router import api_router
from app.db.base import Base
from app.db.session import get_engine
from app.services.resource_tree import StatusReconciler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    logging.basicConfig(level=settings.LOG_LEVEL)

    # Startup: Create database tables
    Base.metadata.create_all(bind=get_engine())

    # Start status reconcile background task
    reconciler = None
    reconcile_task = None
    if settings.RESOURCE_TREE_SYNC_INTERVAL > 0:
        reconciler = StatusReconciler(interval=settings.RESOURCE_TREE_SYNC_INTERVAL)
        reconcile_task = asyncio.create_task(reconciler.start())
        logger.info(
            f"Started status reconcile task ({settings.RESOURCE_TREE_SYNC_INTERVAL}s interval)"
        )

    yield

    # Shutdown: Clean up resources
    if reconciler is not None:
        reconciler.stop()
        reconcile_task.cancel()
        try:
            await reconcile_task
        except asyncio.CancelledError:
            pass


def create_app() -> FastAPI:
    """Factory function to create FastAPI app with MCP server."""
    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        docs_url=f"{settings.API_V1_STR}/docs",
        redoc_url=f"{settings.API_V1_STR}/redoc",
        lifespan=app_lifespan,
    )

    # Set up CORS
    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Include the API router
    app.include_router(api_router, prefix=settings.API_V1_STR)

    # Root endpoint
    @app.get("/")
    async def root():
        return {
            "message": "Welcome to the CD Control Plane API",
            "docs_url": f"{settings.API_V1_STR}/docs",
            "redoc_url": f"{settings.API_V1_STR}/redoc",
            "openapi_url": f"{settings.API_V1_STR}/openapi.json",
            "version": "1.0.0",
        }

    # Health check endpoint
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # Expose deployment operations as MCP tools
    try:
        mcp = FastApiMCP(
            app,
            include_operations=[
                "list_pipelines",
                "get_resource_tree",
                "get_run_stages",
                "get_run_timeline",
                "get_installed_app_version",
                "get_history_timeline",
                "list_deployed_configuration_history",
            ],
        )
        mcp.mount_http()
        logger.info("MCP server mounted at /mcp")
    except Exception as e:
        logger.error(f"Failed to set up MCP server: {e}")

    return app


# Create the app instance for production use
app = create_app()

# Export the app and factory for uvicorn and tests
__all__ = ["app", "create_app"]
