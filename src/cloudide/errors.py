"""Orchestrator error taxonomy.

Every failure the orchestrator surfaces to callers is an ``OrchestratorError``
subclass carrying the HTTP status it maps to and a stable error code. Runtime,
exec and git failures keep the raw command/runtime message in ``detail``.
"""

from __future__ import annotations

from http import HTTPStatus


class OrchestratorError(Exception):
    """Base class for orchestrator failures."""

    http_status: int = HTTPStatus.INTERNAL_SERVER_ERROR
    code: str = "orchestrator_error"
    retryable: bool = False

    def __init__(self, message: str, detail: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


# --- Not found ---


class NotFoundError(OrchestratorError):
    http_status = HTTPStatus.NOT_FOUND
    code = "not_found"


class WorkspaceNotFound(NotFoundError):
    code = "workspace_not_found"


class WorkspaceExists(OrchestratorError):
    http_status = HTTPStatus.CONFLICT
    code = "workspace_exists"


class ContainerNotFound(NotFoundError):
    code = "container_not_found"
    retryable = True


class FileNotFound(NotFoundError):
    code = "file_not_found"


class NoActiveServer(NotFoundError):
    """No dev server port could be detected yet. Callers are expected to poll."""

    code = "no_active_server"
    retryable = True


# --- Exec channel ---


class ExecFailed(OrchestratorError):
    code = "exec_failed"


class ExecTimeout(OrchestratorError):
    http_status = HTTPStatus.GATEWAY_TIMEOUT
    code = "exec_timeout"
    retryable = True


# --- Provisioning ---


class ProvisioningError(OrchestratorError):
    http_status = HTTPStatus.SERVICE_UNAVAILABLE
    code = "provisioning_failed"
    retryable = True


class ImagePullFailed(ProvisioningError):
    code = "image_pull_failed"


class CreateFailed(ProvisioningError):
    code = "create_failed"


class PortNotPublished(OrchestratorError):
    """A dev server port was detected but the container does not publish it."""

    http_status = HTTPStatus.CONFLICT
    code = "port_not_published"


# --- Persistence ---


class PersistenceError(OrchestratorError):
    http_status = HTTPStatus.BAD_GATEWAY
    code = "persistence_failed"
    retryable = True


class PushRejected(PersistenceError):
    code = "push_rejected"


class CloneFailed(PersistenceError):
    code = "clone_failed"


class RemoteAuthFailed(PersistenceError):
    """Remote rejected or lacked credentials; retrying without reconfiguring won't help."""

    http_status = HTTPStatus.FAILED_DEPENDENCY
    code = "remote_auth_failed"
    retryable = False


# --- Access ---


class Forbidden(OrchestratorError):
    http_status = HTTPStatus.FORBIDDEN
    code = "forbidden"


# --- Collaborators ---


class RegistryUnavailable(OrchestratorError):
    """The workspace registry could not be reached or answered with an error."""

    http_status = HTTPStatus.SERVICE_UNAVAILABLE
    code = "registry_unavailable"
    retryable = True
