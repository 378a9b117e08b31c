# app/core/errors.py
"""Error taxonomy for the deployment control plane.

Stage errors must fail the stage that raised them and are propagated to the
caller after the matching error status has been persisted. Advisory errors
come from best-effort side effects and are logged and ignored by convention.
"""

from typing import Optional

FOUND_VULNERABILITY = "found vulnerability for image digest"
TIMELINE_DETAIL_MAX_LENGTH = 255


class ControlPlaneError(Exception):
    """Base exception for control plane errors."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self):
        return self.message


class NotFoundError(ControlPlaneError):
    """Raised when a version, run or pipeline record does not exist."""


class UnsupportedOperationError(ControlPlaneError):
    """Raised when a status transition is not allowed through the called path."""


class DeploymentSupersededError(ControlPlaneError):
    """Raised when a newer deployment for the same pipeline has been triggered."""

    def __init__(self, message: str = "deployment superseded"):
        super().__init__(message)


ERROR_DEPLOYMENT_SUPERSEDED = DeploymentSupersededError()


class DuplicateTriggerError(ControlPlaneError):
    """Raised by the trigger guard when a message was already processed."""


class MessageRouteNotFoundError(ControlPlaneError):
    """Raised when a message is dispatched to a topic nobody registered."""


class ResourceTreeFetchError(ControlPlaneError):
    """Raised when the live resource tree of an application can't be fetched."""

    user_message = (
        "Error fetching detail, if you have recently created this deployment "
        "pipeline please try after sometime."
    )


class AdvisoryError(ControlPlaneError):
    """Failure of a best-effort operation. Never fails a stage."""


class StageError(ControlPlaneError):
    """Failure that must fail the current deploy stage.

    ``status`` is the deployment status the failure is classified as; it is
    persisted before the error is raised.
    """

    status = None

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, cause)


class GitStageError(StageError):
    status = "GIT_ERROR"


class SyncStageError(StageError):
    status = "ACD_ERROR"


class HelmStageError(StageError):
    status = "HELM_ERROR"


class ExternalServiceError(ControlPlaneError):
    """Error returned by ArgoCD, Gitea, Helm or the Kubernetes API."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail

    def __str__(self):
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


def get_client_error_detail(err: BaseException) -> str:
    """Return the human readable part of an error, unwrapping stage errors."""
    if isinstance(err, StageError) and err.cause is not None:
        return get_client_error_detail(err.cause)
    if isinstance(err, ExternalServiceError) and err.detail:
        return err.detail
    if isinstance(err, ControlPlaneError):
        return err.message
    return str(err)


def truncate_message(message: str, max_length: int = TIMELINE_DETAIL_MAX_LENGTH) -> str:
    if len(message) <= max_length:
        return message
    return message[: max_length - 3] + "..."
