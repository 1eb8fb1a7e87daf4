"""Dependency injection for the orchestrator service."""

import secrets
from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, status

from cloudide.config import settings
from cloudide.managers.coordinator import WorkspaceCoordinator
from cloudide.models.workspace import WorkspaceRecord

logger = structlog.get_logger()


def validate_internal_auth(
    x_internal_service_token: str | None = None,
    authorization: str | None = None,
) -> None:
    """Validate internal service-to-service authentication.

    Accepts the token in X-Internal-Service-Token or as an Authorization bearer.
    Fails closed when no token is configured.
    """
    if not settings.internal_service_token:
        logger.error("Internal service token not configured, rejecting request")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Service authentication not configured",
        )

    token = None
    if x_internal_service_token:
        token = x_internal_service_token
    elif authorization and authorization.startswith("Bearer "):
        token = authorization[7:]

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing service token",
        )

    if not secrets.compare_digest(token, settings.internal_service_token):
        logger.warning("Invalid internal service token received")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid service token",
        )


def verify_internal_auth(
    x_internal_service_token: Annotated[
        str | None, Header(alias="X-Internal-Service-Token")
    ] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    validate_internal_auth(x_internal_service_token, authorization)


def get_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
) -> str:
    """Extract the caller's user ID, passed through by the platform API."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing user ID header",
        )
    return x_user_id


AuthenticatedUser = Annotated[str, Depends(get_user_id)]

InternalAuth = Annotated[None, Depends(verify_internal_auth)]


class CoordinatorSingleton:
    """Holder for the coordinator built during application startup."""

    _coordinator: WorkspaceCoordinator | None = None

    @classmethod
    def set_coordinator(cls, coordinator: WorkspaceCoordinator) -> None:
        cls._coordinator = coordinator

    @classmethod
    def get_coordinator(cls) -> WorkspaceCoordinator:
        if cls._coordinator is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Orchestrator not initialized",
            )
        return cls._coordinator

    @classmethod
    def clear_instance(cls) -> None:
        cls._coordinator = None


def get_coordinator() -> WorkspaceCoordinator:
    """Get the workspace coordinator instance."""
    return CoordinatorSingleton.get_coordinator()


Coordinator = Annotated[WorkspaceCoordinator, Depends(get_coordinator)]


async def verify_workspace_ownership(
    workspace_id: str,
    user_id: AuthenticatedUser,
    coordinator: Coordinator,
) -> WorkspaceRecord:
    """Resolve the workspace for the caller.

    Invalid ids, unknown workspaces and foreign workspaces surface as 400, 404
    and 403 through the error handlers.
    """
    return await coordinator.get_record(workspace_id, owner_id=user_id)


OwnedWorkspace = Annotated[WorkspaceRecord, Depends(verify_workspace_ownership)]
