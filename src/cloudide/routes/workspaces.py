"""Workspace lifecycle routes."""

import structlog
from fastapi import APIRouter, Depends, status

from cloudide.deps import (
    AuthenticatedUser,
    Coordinator,
    OwnedWorkspace,
    verify_internal_auth,
)
from cloudide.models.workspace import (
    ExecRequest,
    ExecResponse,
    GitStatus,
    ResumeResult,
    SaveRequest,
    WorkspaceCreateRequest,
    WorkspaceMetadata,
    WorkspaceRecord,
    WorkspaceResponse,
)

logger = structlog.get_logger()

router = APIRouter(
    prefix="/workspaces",
    tags=["workspaces"],
    dependencies=[Depends(verify_internal_auth)],
)


@router.post("", response_model=WorkspaceRecord, status_code=status.HTTP_201_CREATED)
async def create_workspace(
    request: WorkspaceCreateRequest,
    user_id: AuthenticatedUser,
    coordinator: Coordinator,
) -> WorkspaceRecord:
    """Create a workspace from a template."""
    return await coordinator.create_new(
        owner_id=user_id,
        name=request.name,
        template=request.template,
        description=request.description,
        github_repo=request.github_repo,
        workspace_id=request.workspace_id,
        init_git=request.init_git,
    )


@router.get("", response_model=list[WorkspaceRecord])
async def list_workspaces(
    user_id: AuthenticatedUser,
    coordinator: Coordinator,
) -> list[WorkspaceRecord]:
    """List the caller's workspaces."""
    return await coordinator.list_workspaces(user_id)


@router.get("/{workspace_id}", response_model=WorkspaceResponse)
async def get_workspace(workspace: OwnedWorkspace, coordinator: Coordinator) -> WorkspaceResponse:
    """Workspace record with its live container state and published ports."""
    return await coordinator.describe(workspace.id)


@router.delete("/{workspace_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_workspace(workspace: OwnedWorkspace, coordinator: Coordinator) -> None:
    await coordinator.delete(workspace.id)


@router.post("/{workspace_id}/open", response_model=ResumeResult)
async def open_workspace(workspace: OwnedWorkspace, coordinator: Coordinator) -> ResumeResult:
    """Resume the workspace if needed and start its dev server."""
    return await coordinator.open_workspace(workspace.id)


@router.post("/{workspace_id}/resume", response_model=ResumeResult)
async def resume_workspace(workspace: OwnedWorkspace, coordinator: Coordinator) -> ResumeResult:
    return await coordinator.resume(workspace.id)


@router.post("/{workspace_id}/pause", response_model=WorkspaceRecord)
async def pause_workspace(workspace: OwnedWorkspace, coordinator: Coordinator) -> WorkspaceRecord:
    """Save to the remote and release the container."""
    return await coordinator.pause(workspace.id)


@router.post("/{workspace_id}/cleanup", status_code=status.HTTP_204_NO_CONTENT)
async def cleanup_workspace(workspace: OwnedWorkspace, coordinator: Coordinator) -> None:
    await coordinator.cleanup(workspace.id)


@router.post("/{workspace_id}/recreate", response_model=WorkspaceRecord)
async def recreate_workspace(
    workspace: OwnedWorkspace, coordinator: Coordinator
) -> WorkspaceRecord:
    """Rebuild the container with port bindings, carrying project files across."""
    return await coordinator.recreate_with_ports(workspace.id)


@router.post("/{workspace_id}/save")
async def save_workspace(
    workspace: OwnedWorkspace,
    coordinator: Coordinator,
    request: SaveRequest | None = None,
) -> dict[str, bool]:
    """Commit and push immediately."""
    message = request.message if request else SaveRequest().message
    committed = await coordinator.save(workspace.id, message)
    return {"committed": committed}


@router.get(
    "/{workspace_id}/metadata",
    response_model=WorkspaceMetadata,
    response_model_by_alias=True,
)
async def get_metadata(workspace: OwnedWorkspace, coordinator: Coordinator) -> WorkspaceMetadata:
    return await coordinator.metadata(workspace.id)


@router.get("/{workspace_id}/git/status", response_model=GitStatus)
async def get_git_status(workspace: OwnedWorkspace, coordinator: Coordinator) -> GitStatus:
    return await coordinator.git_status(workspace.id)


@router.post("/{workspace_id}/exec", response_model=ExecResponse)
async def exec_command(
    workspace: OwnedWorkspace,
    request: ExecRequest,
    coordinator: Coordinator,
) -> ExecResponse:
    """Run a terminal command.

    Long-running commands are not waited for: whatever output arrived within
    the terminal budget is returned with ``completed`` false.
    """
    result = await coordinator.run_command(workspace.id, request.command, cwd=request.cwd)
    logger.debug(
        "Terminal command executed",
        workspace_id=workspace.id,
        exit_code=result.exit_code,
    )
    return ExecResponse(
        output=result.output,
        exit_code=result.exit_code,
        completed=result.exit_code is not None,
    )


@router.post("/{workspace_id}/heartbeat", status_code=status.HTTP_204_NO_CONTENT)
async def heartbeat(workspace: OwnedWorkspace, coordinator: Coordinator) -> None:
    """Record activity without touching the container."""
    await coordinator.touch(workspace.id)
