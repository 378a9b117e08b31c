# app/services/deploy_stage.py
"""Deploy stage orchestration for installed app versions.

A deployment moves through DB persist, Git commit, GitOps sync (or a direct
Helm install) and finally DEPLOY_SUCCESS. Each transition is committed as soon
as it happens, so a later call resumes after the last stage that succeeded.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import (
    GitStageError,
    HelmStageError,
    StageError,
    SyncStageError,
    UnsupportedOperationError,
)
from app.models.app_store import InstalledAppVersion
from app.models.status import (
    ENQUEUE_REWRITABLE,
    TIMELINE_DESCRIPTION_ARGOCD_GIT_COMMIT,
    TIMELINE_DESCRIPTION_ARGOCD_SYNC_INITIATED,
    TIMELINE_DESCRIPTION_DEPLOYMENT_INITIATED,
    AppStoreDeploymentStatus,
    DeploymentAppType,
    TimelineStatus,
    needs_git_stage,
    needs_sync_stage,
)
from app.services.argocd_client import ArgoCDClient
from app.services.gitops_client import ChartGitAttribute, GitOpsClient
from app.services.helm_client import HelmClient
from app.services.k8s_manager import get_k8s_manager
from app.services.runner_repository import DeploymentRunRepository
from app.services.timeline import PipelineStatusTimelineService

logger = logging.getLogger(__name__)

# version id -> publish error (None when published)
PublishFn = Callable[[List[InstalledAppVersion]], Dict[int, Optional[Exception]]]


class AppStoreDeployStageService:
    """Drives installed app versions through their deploy stages."""

    def __init__(
        self,
        db: Session,
        gitops_client: GitOpsClient,
        argocd_client: ArgoCDClient,
        helm_client: HelmClient,
        manual_sync: bool = False,
    ):
        self.db = db
        self.repository = DeploymentRunRepository(db)
        self.timeline_service = PipelineStatusTimelineService(db)
        self.gitops_client = gitops_client
        self.argocd_client = argocd_client
        self.helm_client = helm_client
        self.manual_sync = manual_sync

    def _update_status(self, version, status, user_id=None):
        return self.repository.update_installed_app_version_status(version, status, user_id)

    def perform_deploy_stage(
        self, version_id: int, history_id: int, user_id: int
    ) -> InstalledAppVersion:
        """Run the remaining deploy stages of one installed app version.

        Raises:
            NotFoundError: the version does not exist
            StageError: a stage failed; its status is persisted before raising
            UnsupportedOperationError: the version has no known deployment type
        """
        version = self.repository.get_installed_app_version(version_id)

        if version.deployment_app_type == DeploymentAppType.ARGO_CD.value:
            self.timeline_service.record_advisory(
                PipelineStatusTimelineService.new_helm_app_timeline(
                    history_id,
                    TimelineStatus.DEPLOYMENT_INITIATED,
                    TIMELINE_DESCRIPTION_DEPLOYMENT_INITIATED,
                    user_id,
                )
            )
            self._perform_deploy_stage_on_acd(version, history_id, user_id)
        elif version.deployment_app_type == DeploymentAppType.HELM.value:
            try:
                self.helm_client.install_app(version)
            except Exception as e:
                logger.error(f"Helm install of version {version.id} failed: {e}")
                self._update_status(version, AppStoreDeploymentStatus.HELM_ERROR, user_id)
                raise HelmStageError(f"helm install failed: {e}", cause=e) from e
        else:
            raise UnsupportedOperationError(
                f"deployment type {version.deployment_app_type} of version {version.id} is not supported"
            )

        self._update_status(version, AppStoreDeploymentStatus.DEPLOY_SUCCESS, user_id)
        self.repository.finish_history(history_id, AppStoreDeploymentStatus.DEPLOY_SUCCESS.value)
        logger.info(f"Deploy stage of version {version.id} finished")
        return version

    def _perform_deploy_stage_on_acd(
        self, version: InstalledAppVersion, history_id: int, user_id: int
    ) -> ChartGitAttribute:
        if needs_git_stage(version.status):
            git_attrs = self._perform_git_stage(version, history_id, user_id)
        else:
            logger.info(
                f"Git stage of version {version.id} already done ({version.status}), "
                f"reusing stored attributes"
            )
            git_attrs = self.gitops_client.git_attributes_for(version)

        if needs_sync_stage(version.status):
            try:
                self.argocd_client.install_or_sync(version, git_attrs)
            except Exception as e:
                logger.error(f"GitOps sync of version {version.id} failed: {e}")
                self._update_status(version, AppStoreDeploymentStatus.ACD_ERROR, user_id)
                raise SyncStageError(f"gitops sync failed: {e}", cause=e) from e
            self._update_status(version, AppStoreDeploymentStatus.ACD_SUCCESS, user_id)
        return git_attrs

    def _perform_git_stage(
        self, version: InstalledAppVersion, history_id: int, user_id: int
    ) -> ChartGitAttribute:
        try:
            self.gitops_client.ensure_repo_secret(version)
            git_hash, git_attrs = self.gitops_client.generate_manifest_and_commit(version)
        except Exception as e:
            logger.error(f"Git stage of version {version.id} failed: {e}")
            self._update_status(version, AppStoreDeploymentStatus.GIT_ERROR, user_id)
            self.timeline_service.record_advisory(
                PipelineStatusTimelineService.new_helm_app_timeline(
                    history_id,
                    TimelineStatus.GIT_COMMIT_FAILED,
                    f"Git commit failed - {e}",
                    user_id,
                )
            )
            raise GitStageError(f"git commit failed: {e}", cause=e) from e

        version.git_hash = git_hash
        version.gitops_repo_url = git_attrs.repo_url
        version.target_revision = git_attrs.target_revision
        version.chart_location = git_attrs.chart_location
        self._update_status(version, AppStoreDeploymentStatus.GIT_SUCCESS, user_id)

        timelines = [
            PipelineStatusTimelineService.new_helm_app_timeline(
                history_id,
                TimelineStatus.GIT_COMMIT,
                TIMELINE_DESCRIPTION_ARGOCD_GIT_COMMIT,
                user_id,
            )
        ]
        if self.manual_sync:
            timelines.append(
                PipelineStatusTimelineService.new_helm_app_timeline(
                    history_id,
                    TimelineStatus.ARGOCD_SYNC_INITIATED,
                    TIMELINE_DESCRIPTION_ARGOCD_SYNC_INITIATED,
                    user_id,
                )
            )
        try:
            self.timeline_service.save_timelines_if_not_present(timelines)
            self.repository.commit()
        except SQLAlchemyError as e:
            self.repository.rollback()
            logger.error(f"Could not save git commit timelines of history {history_id}: {e}")

        self.repository.update_history_git_hash(history_id, git_hash)
        return git_attrs

    def trigger_deployment_events(
        self, versions: List[InstalledAppVersion], publish: PublishFn
    ) -> Dict[int, str]:
        """Publish one deploy event per version and record ENQUEUED or QUE_ERROR."""
        publish_errors = publish(versions)
        result = {}
        for version in versions:
            if version.id not in publish_errors or publish_errors[version.id] is not None:
                status = AppStoreDeploymentStatus.QUE_ERROR
            else:
                status = AppStoreDeploymentStatus.ENQUEUED
            result[version.id] = status.value

            if AppStoreDeploymentStatus(version.status) not in ENQUEUE_REWRITABLE:
                logger.info(
                    f"Version {version.id} already past enqueue ({version.status}), "
                    f"not recording {status.value}"
                )
                continue
            try:
                self._update_status(version, status)
            except SQLAlchemyError as e:
                self.repository.rollback()
                logger.error(f"Failed to record {status.value} for version {version.id}: {e}")
        return result

    def deploy_now(
        self, requests: Iterable[Tuple[int, int]], user_id: int
    ) -> Dict[int, str]:
        """Run the deploy stage of each (version id, history id) in turn.

        A failure never stops the batch. Failures that didn't persist a
        specific error status are recorded as QUE_ERROR, unless the version
        already got past enqueue and its stored status says where to resume.
        """
        result = {}
        for version_id, history_id in requests:
            try:
                version = self.perform_deploy_stage(version_id, history_id, user_id)
                result[version_id] = version.status
            except StageError as e:
                logger.error(f"Deploy stage of version {version_id} failed: {e}")
                result[version_id] = e.status
            except Exception as e:
                logger.error(f"Deploy stage of version {version_id} failed: {e}")
                result[version_id] = self._mark_queue_error(version_id)
        return result

    def _mark_queue_error(self, version_id: int) -> str:
        self.repository.rollback()
        version = self.db.get(InstalledAppVersion, version_id)
        if version is None:
            return "NOT_FOUND"
        if AppStoreDeploymentStatus(version.status) not in ENQUEUE_REWRITABLE:
            logger.info(
                f"Version {version_id} already reached {version.status}, not recording QUE_ERROR"
            )
            return version.status
        try:
            self._update_status(version, AppStoreDeploymentStatus.QUE_ERROR)
        except SQLAlchemyError as e:
            self.repository.rollback()
            logger.error(f"Failed to record QUE_ERROR for version {version_id}: {e}")
        return version.status


def build_deploy_stage_service(db: Session) -> AppStoreDeployStageService:
    return AppStoreDeployStageService(
        db,
        GitOpsClient(
            settings.GITEA_URL,
            token=settings.GITEA_TOKEN,
            org=settings.GITOPS_ORG,
            target_revision=settings.GITOPS_TARGET_REVISION,
            argocd_namespace=settings.ARGOCD_NAMESPACE,
            k8s_manager_factory=get_k8s_manager,
        ),
        ArgoCDClient(
            settings.ARGOCD_URL,
            token=settings.ARGOCD_TOKEN,
            namespace=settings.ARGOCD_NAMESPACE,
            verify_ssl=settings.ARGOCD_VERIFY_SSL,
            manual_sync=settings.ARGOCD_MANUAL_SYNC,
        ),
        HelmClient(settings.HELM_BINARY, settings.HELM_TIMEOUT_SECONDS),
        manual_sync=settings.ARGOCD_MANUAL_SYNC,
    )
