# app/models/status.py
"""Status domains shared by deployment runs, workflow stages and deploy stages."""

import enum
from typing import Optional


class WorkflowStatus(str, enum.Enum):
    """Status of a deployment run (workflow runner)."""

    STARTING = "Starting"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ABORTED = "Aborted"
    CANCELLED = "CANCELLED"
    TIMED_OUT = "TimedOut"
    WAITING_TO_START = "WaitingToStart"
    QUEUED = "Queued"
    INITIATING = "Initiating"
    PROGRESSING = "Progressing"
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    HIBERNATING = "HIBERNATING"
    UNKNOWN = "Unknown"
    UNABLE_TO_FETCH = "UnableToFetch"


RUN_TERMINAL_STATUSES = frozenset(
    {
        WorkflowStatus.ABORTED.value,
        WorkflowStatus.FAILED.value,
        WorkflowStatus.SUCCEEDED.value,
        WorkflowStatus.HEALTHY.value,
        WorkflowStatus.DEGRADED.value,
        WorkflowStatus.HIBERNATING.value,
        WorkflowStatus.TIMED_OUT.value,
        WorkflowStatus.CANCELLED.value,
    }
)

# Runs in these statuses are left alone when a newer deployment supersedes them
SUPERSESSION_FENCE_STATUSES = frozenset(
    {
        WorkflowStatus.HEALTHY.value,
        WorkflowStatus.ABORTED.value,
        WorkflowStatus.FAILED.value,
        WorkflowStatus.SUCCEEDED.value,
    }
)


def is_run_terminal(status: Optional[str]) -> bool:
    """Return True if a run status string is terminal."""
    return status in RUN_TERMINAL_STATUSES


class StageStatus(str, enum.Enum):
    """Status of a single workflow execution stage."""

    NOT_STARTED = "NOT_STARTED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    ABORTED = "ABORTED"
    UNKNOWN = "UNKNOWN"

    def is_terminal(self) -> bool:
        return self in STAGE_TERMINAL_STATUSES


STAGE_TERMINAL_STATUSES = frozenset(
    {
        StageStatus.SUCCEEDED,
        StageStatus.FAILED,
        StageStatus.TIMEOUT,
        StageStatus.ABORTED,
    }
)


class PodPhase(str, enum.Enum):
    """Pod / workflow node phase reported by the workflow engine."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ERROR = "Error"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["PodPhase"]:
        """Case-insensitive lookup, None for unrecognised phases."""
        if not value:
            return None
        for phase in cls:
            if phase.value.lower() == value.lower():
                return phase
        return None


class StageName(str, enum.Enum):
    PREPARATION = "Preparation"
    EXECUTION = "Execution"
    POD = "Pod"


class StatusFor(str, enum.Enum):
    WORKFLOW = "workflow"
    POD = "pod"


class WorkflowType(str, enum.Enum):
    PRE = "PRE"
    DEPLOY = "DEPLOY"
    POST = "POST"


class DeploymentAppType(str, enum.Enum):
    ARGO_CD = "argo_cd"
    HELM = "helm"


class AppStoreDeploymentStatus(str, enum.Enum):
    """Persisted status of an installed app version moving through deploy stages."""

    DEPLOY_INIT = "DEPLOY_INIT"
    ENQUEUED = "ENQUEUED"
    QUE_ERROR = "QUE_ERROR"
    GIT_ERROR = "GIT_ERROR"
    GIT_SUCCESS = "GIT_SUCCESS"
    ACD_ERROR = "ACD_ERROR"
    ACD_SUCCESS = "ACD_SUCCESS"
    DEPLOY_SUCCESS = "DEPLOY_SUCCESS"
    HELM_ERROR = "HELM_ERROR"


# Statuses from which the git commit stage is (re-)executed
GIT_STAGE_REENTRY = frozenset(
    {
        AppStoreDeploymentStatus.DEPLOY_INIT,
        AppStoreDeploymentStatus.ENQUEUED,
        AppStoreDeploymentStatus.QUE_ERROR,
        AppStoreDeploymentStatus.GIT_ERROR,
    }
)

# Statuses from which the GitOps sync stage is (re-)executed
SYNC_STAGE_REENTRY = GIT_STAGE_REENTRY | frozenset(
    {
        AppStoreDeploymentStatus.GIT_SUCCESS,
        AppStoreDeploymentStatus.ACD_ERROR,
    }
)

# Statuses a bulk enqueue is allowed to overwrite
ENQUEUE_REWRITABLE = frozenset(
    {
        AppStoreDeploymentStatus.DEPLOY_INIT,
        AppStoreDeploymentStatus.QUE_ERROR,
        AppStoreDeploymentStatus.ENQUEUED,
    }
)


def needs_git_stage(status: AppStoreDeploymentStatus) -> bool:
    return AppStoreDeploymentStatus(status) in GIT_STAGE_REENTRY


def needs_sync_stage(status: AppStoreDeploymentStatus) -> bool:
    return AppStoreDeploymentStatus(status) in SYNC_STAGE_REENTRY


class DeployStep(str, enum.Enum):
    """Last deploy step that completed for an installed app version."""

    NONE = "NONE"
    GIT_COMMITTED = "GIT_COMMITTED"
    SYNCED = "SYNCED"
    DEPLOYED = "DEPLOYED"


class DeployErrorKind(str, enum.Enum):
    """Kind of the last deploy failure, NONE once a step succeeds."""

    NONE = "NONE"
    QUEUE = "QUEUE"
    GIT = "GIT"
    SYNC = "SYNC"
    HELM = "HELM"


# status -> (last completed step, last error kind); None keeps the stored step
DEPLOY_STATUS_CURSOR = {
    AppStoreDeploymentStatus.DEPLOY_INIT: (DeployStep.NONE, DeployErrorKind.NONE),
    AppStoreDeploymentStatus.ENQUEUED: (DeployStep.NONE, DeployErrorKind.NONE),
    AppStoreDeploymentStatus.QUE_ERROR: (None, DeployErrorKind.QUEUE),
    AppStoreDeploymentStatus.GIT_ERROR: (None, DeployErrorKind.GIT),
    AppStoreDeploymentStatus.GIT_SUCCESS: (DeployStep.GIT_COMMITTED, DeployErrorKind.NONE),
    AppStoreDeploymentStatus.ACD_ERROR: (None, DeployErrorKind.SYNC),
    AppStoreDeploymentStatus.ACD_SUCCESS: (DeployStep.SYNCED, DeployErrorKind.NONE),
    AppStoreDeploymentStatus.HELM_ERROR: (None, DeployErrorKind.HELM),
    AppStoreDeploymentStatus.DEPLOY_SUCCESS: (DeployStep.DEPLOYED, DeployErrorKind.NONE),
}


class TimelineStatus(str, enum.Enum):
    DEPLOYMENT_INITIATED = "DEPLOYMENT_INITIATED"
    GIT_COMMIT = "GIT_COMMIT"
    GIT_COMMIT_FAILED = "GIT_COMMIT_FAILED"
    ARGOCD_SYNC_INITIATED = "ARGOCD_SYNC_INITIATED"
    ARGOCD_SYNC_COMPLETED = "ARGOCD_SYNC_COMPLETED"
    APP_HEALTHY = "HEALTHY"
    DEPLOYMENT_FAILED = "FAILED"
    DEPLOYMENT_SUPERSEDED = "DEPLOYMENT_SUPERSEDED"


TIMELINE_DESCRIPTION_DEPLOYMENT_INITIATED = "Deployment initiated successfully."
TIMELINE_DESCRIPTION_ARGOCD_GIT_COMMIT = "Git commit done successfully."
TIMELINE_DESCRIPTION_ARGOCD_SYNC_INITIATED = "Argocd sync initiated."
TIMELINE_DESCRIPTION_ARGOCD_SYNC_COMPLETED = "Argocd sync completed."
TIMELINE_DESCRIPTION_APP_HEALTHY = "App status is Healthy."
TIMELINE_DESCRIPTION_DEPLOYMENT_SUPERSEDED = "This deployment is superseded."
TIMELINE_DESCRIPTION_VULNERABLE_IMAGE = (
    "Deployment failed: Vulnerability policy violated."
)

POD_TIMEOUT_MESSAGE = "Pod was active on the node longer than the specified deadline"


def convert_status_to_stage_status(wf_status: Optional[str], message: Optional[str] = "") -> StageStatus:
    """Map a raw workflow status reported by the workflow engine onto a stage status."""
    status = (wf_status or "").lower()
    if status in ("pending", "waitingtostart", "queued"):
        return StageStatus.NOT_STARTED
    if status in ("running", "starting", "progressing", "initiating"):
        return StageStatus.RUNNING
    if status in ("succeeded", "healthy"):
        return StageStatus.SUCCEEDED
    if status in ("failed", "error", "errored"):
        if (message or "").lower() == POD_TIMEOUT_MESSAGE.lower():
            return StageStatus.TIMEOUT
        return StageStatus.FAILED
    if status == "timedout":
        return StageStatus.TIMEOUT
    if status in ("aborted", "cancelled"):
        return StageStatus.ABORTED
    return StageStatus.UNKNOWN


def compute_workflow_status(current: Optional[str], incoming: Optional[str], candidate: str) -> str:
    """Merge the stored run status with an incoming signal.

    A terminal stored status always wins, then a terminal incoming status,
    otherwise the candidate derived from the pod phase.
    """
    if is_run_terminal(current):
        return current
    if is_run_terminal(incoming):
        return incoming
    return candidate
