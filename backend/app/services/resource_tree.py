"""Live resource trees of deployed apps and reconciliation of their status"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from kubernetes.config import ConfigException
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import ExternalServiceError, ResourceTreeFetchError
from app.db.session import SessionLocal
from app.models.cicd import CdPipeline
from app.models.status import (
    TIMELINE_DESCRIPTION_APP_HEALTHY,
    TIMELINE_DESCRIPTION_ARGOCD_SYNC_COMPLETED,
    DeploymentAppType,
    TimelineStatus,
    WorkflowStatus,
    is_run_terminal,
)
from app.services.argocd_client import ArgoCDClient
from app.services.helm_client import HelmClient
from app.services.k8s_manager import K8sClusterManager, get_k8s_manager
from app.services.runner_repository import DeploymentRunRepository
from app.services.timeline import PipelineStatusTimelineService

logger = logging.getLogger(__name__)

NOT_DEPLOYED = "Not Deployed"


class ResourceTreeService:
    """Answers what a deployed app looks like right now and feeds it back"""

    def __init__(
        self,
        db: Session,
        argocd_client: ArgoCDClient,
        helm_client: HelmClient,
        k8s_manager_factory: Callable[[], K8sClusterManager] = get_k8s_manager,
    ):
        self.db = db
        self.repository = DeploymentRunRepository(db)
        self.timeline_service = PipelineStatusTimelineService(db)
        self.argocd_client = argocd_client
        self.helm_client = helm_client
        self._k8s_manager_factory = k8s_manager_factory

    def fetch_resource_tree(self, pipeline: CdPipeline) -> Dict[str, Any]:
        """Resource tree of the pipeline's deployed app, {} when nothing is deployed

        Raises:
            ResourceTreeFetchError: ArgoCD or the cluster couldn't return the tree
        """
        if not pipeline.deployment_app_created:
            logger.info(f"Deployment app of pipeline {pipeline.id} does not exist yet")
            return {}

        app_name = pipeline.get_deployment_app_name()
        resource_tree: Dict[str, Any] = {}

        if pipeline.deployment_app_type == DeploymentAppType.ARGO_CD.value:
            resource_tree = self._fetch_argocd_tree(pipeline, app_name)
        elif pipeline.deployment_app_type == DeploymentAppType.HELM.value:
            resource_tree = self._fetch_helm_tree(pipeline, app_name)
        else:
            logger.warning(
                f"Unknown deployment type {pipeline.deployment_app_type} for {app_name}, "
                f"skipping resource tree"
            )

        if resource_tree:
            try:
                resource_tree["serverVersion"] = self._k8s_manager_factory().get_server_version()
            except (ExternalServiceError, ConfigException) as e:
                logger.error(f"Error fetching cluster version for {app_name}: {e}")
        return resource_tree

    def _is_last_release_stop(self, pipeline: CdPipeline) -> bool:
        latest = self.repository.find_latest_runner_by_pipeline(pipeline.id)
        return bool(latest and latest.stop_requested)

    def _fetch_argocd_tree(self, pipeline: CdPipeline, app_name: str) -> Dict[str, Any]:
        try:
            tree = self.argocd_client.resource_tree(app_name)
        except ExternalServiceError as e:
            logger.error(f"Unable to fetch resource tree of {app_name}: {e}")
            raise ResourceTreeFetchError(
                f"unable to fetch resource tree for {app_name}: {e}", cause=e
            ) from e

        try:
            pods = self._k8s_manager_factory().get_pods_by_labels(
                pipeline.namespace,
                {"appId": pipeline.app_name, "envId": pipeline.environment_name},
            )
        except (ExternalServiceError, ConfigException) as e:
            logger.error(f"Unable to list pods of {app_name}: {e}")
            raise ResourceTreeFetchError(
                f"unable to list pods for {app_name}: {e}", cause=e
            ) from e
        ephemeral = {pod["name"]: pod["ephemeral_containers"] for pod in pods}
        for metadata in tree.get("podMetadata", []):
            metadata["ephemeralContainers"] = ephemeral.get(metadata["name"], [])

        if tree["status"] == WorkflowStatus.HEALTHY.value and self._is_last_release_stop(pipeline):
            tree["status"] = WorkflowStatus.HIBERNATING.value
        if (
            tree["status"] == WorkflowStatus.DEGRADED.value
            and self.repository.count_runners_by_pipeline(pipeline.id) == 0
        ):
            tree["status"] = NOT_DEPLOYED

        self.reconcile_status(pipeline, tree["status"])
        return tree

    def _fetch_helm_tree(self, pipeline: CdPipeline, app_name: str) -> Dict[str, Any]:
        try:
            detail = self.helm_client.get_app_detail(app_name, pipeline.namespace)
        except ExternalServiceError as e:
            logger.error(f"Error fetching helm app detail of {app_name}: {e}")
            return {}
        if not detail or not detail.get("release_exist"):
            return {}

        tree = dict(detail["resource_tree"])
        tree["releaseStatus"] = detail["release_status"]
        tree["status"] = detail["application_status"]
        if tree["status"] == WorkflowStatus.HEALTHY.value and self._is_last_release_stop(pipeline):
            tree["status"] = WorkflowStatus.HIBERNATING.value
        return tree

    def reconcile_status(self, pipeline: CdPipeline, app_status: str):
        """Write the live status back; failures are logged only"""
        try:
            if app_status == WorkflowStatus.HEALTHY.value:
                self.sync_pipeline_status(pipeline)
            self.repository.update_pipeline_app_status(pipeline, app_status)
        except Exception as e:
            self.repository.rollback()
            logger.warning(f"Error updating status of pipeline {pipeline.id}: {e}")

    def sync_pipeline_status(self, pipeline: CdPipeline):
        """Mark the latest in-flight deploy run Healthy once the app is healthy"""
        runner = self.repository.find_latest_runner_by_pipeline(pipeline.id)
        if runner is None or is_run_terminal(runner.status):
            return None

        now = datetime.utcnow()
        runner.status = WorkflowStatus.HEALTHY.value
        runner.finished_on = now
        self.repository.update_runners([runner])
        self.timeline_service.save_timelines_if_not_present(
            [
                PipelineStatusTimelineService.new_runner_timeline(
                    runner.id,
                    TimelineStatus.ARGOCD_SYNC_COMPLETED,
                    TIMELINE_DESCRIPTION_ARGOCD_SYNC_COMPLETED,
                ),
                PipelineStatusTimelineService.new_runner_timeline(
                    runner.id,
                    TimelineStatus.APP_HEALTHY,
                    TIMELINE_DESCRIPTION_APP_HEALTHY,
                ),
            ]
        )
        self.repository.commit()
        logger.info(f"Run {runner.id} of pipeline {pipeline.id} is Healthy")
        return runner


def build_resource_tree_service(db: Session) -> ResourceTreeService:
    return ResourceTreeService(
        db,
        ArgoCDClient(
            settings.ARGOCD_URL,
            token=settings.ARGOCD_TOKEN,
            namespace=settings.ARGOCD_NAMESPACE,
            verify_ssl=settings.ARGOCD_VERIFY_SSL,
            manual_sync=settings.ARGOCD_MANUAL_SYNC,
        ),
        HelmClient(settings.HELM_BINARY, settings.HELM_TIMEOUT_SECONDS),
    )


class StatusReconciler:
    """Background service reconciling pipelines with an in-flight deploy run"""

    def __init__(
        self,
        interval: int = 300,
        session_factory: Optional[Callable[[], Session]] = None,
        service_builder: Callable[[Session], ResourceTreeService] = build_resource_tree_service,
    ):
        """Initialize reconciler

        Args:
            interval: Seconds between reconcile rounds
            session_factory: Returns a new DB session, defaults to the app's
            service_builder: Builds the resource tree service for a session
        """
        self.interval = interval
        self._session_factory = session_factory
        self._service_builder = service_builder
        self.is_running = False

    async def start(self):
        """Start the reconcile loop"""
        if self.is_running:
            logger.warning("Status reconciler is already running")
            return

        self.is_running = True
        logger.info(f"Starting status reconciler with {self.interval}s interval")

        while self.is_running:
            try:
                await asyncio.to_thread(self.reconcile_once)
            except Exception as e:
                logger.error(f"Status reconcile round failed: {e}")
            await asyncio.sleep(self.interval)

    def stop(self):
        """Stop the reconcile loop"""
        self.is_running = False
        logger.info("Stopping status reconciler")

    def reconcile_once(self) -> List[int]:
        """Fetch the tree of every pipeline whose latest deploy run is in flight"""
        session_factory = self._session_factory or SessionLocal()
        db: Session = session_factory()
        reconciled = []
        try:
            repository = DeploymentRunRepository(db)
            service = self._service_builder(db)
            for pipeline in repository.list_pipelines():
                if not pipeline.deployment_app_created:
                    continue
                latest = repository.find_latest_runner_by_pipeline(pipeline.id)
                if latest is None or is_run_terminal(latest.status):
                    continue
                try:
                    service.fetch_resource_tree(pipeline)
                    reconciled.append(pipeline.id)
                except Exception as e:
                    db.rollback()
                    logger.error(f"Reconciling pipeline {pipeline.id} failed: {e}")
        finally:
            db.close()
        return reconciled
