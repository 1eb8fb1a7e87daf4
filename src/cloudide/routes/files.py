"""Project file routes.

All paths are project-relative; anything resolving outside the workspace
directory is rejected with 400.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from cloudide.deps import Coordinator, OwnedWorkspace, verify_internal_auth
from cloudide.models.workspace import (
    FileContentResponse,
    FileMoveRequest,
    FileNode,
    FileStat,
    FileWriteRequest,
    PathRequest,
)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/files",
    tags=["files"],
    dependencies=[Depends(verify_internal_auth)],
)


@router.get("", response_model=FileContentResponse)
async def read_file(
    workspace: OwnedWorkspace,
    coordinator: Coordinator,
    path: Annotated[str, Query(min_length=1)],
) -> FileContentResponse:
    files = await coordinator.files(workspace.id)
    return FileContentResponse(path=path, content=await files.read(path))


@router.put("", status_code=status.HTTP_204_NO_CONTENT)
async def write_file(
    workspace: OwnedWorkspace,
    request: FileWriteRequest,
    coordinator: Coordinator,
) -> None:
    """Create or overwrite a file, creating parent directories as needed."""
    files = await coordinator.files(workspace.id)
    await files.write(request.path, request.content)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def delete_file(
    workspace: OwnedWorkspace,
    coordinator: Coordinator,
    path: Annotated[str, Query(min_length=1)],
) -> None:
    files = await coordinator.files(workspace.id)
    await files.delete(path)


@router.get("/tree", response_model=FileNode)
async def file_tree(
    workspace: OwnedWorkspace,
    coordinator: Coordinator,
    path: str = ".",
    max_depth: Annotated[int | None, Query(ge=1)] = None,
) -> FileNode:
    """Project tree without ``node_modules`` and dot-prefixed entries."""
    files = await coordinator.files(workspace.id)
    return await files.list_file_tree(path, max_depth=max_depth)


@router.get("/stat", response_model=FileStat)
async def stat_file(
    workspace: OwnedWorkspace,
    coordinator: Coordinator,
    path: Annotated[str, Query(min_length=1)],
) -> FileStat:
    files = await coordinator.files(workspace.id)
    return await files.stat(path)


@router.post("/rename", status_code=status.HTTP_204_NO_CONTENT)
async def rename_file(
    workspace: OwnedWorkspace,
    request: FileMoveRequest,
    coordinator: Coordinator,
) -> None:
    files = await coordinator.files(workspace.id)
    await files.rename(request.source, request.destination)


@router.post("/copy", status_code=status.HTTP_204_NO_CONTENT)
async def copy_file(
    workspace: OwnedWorkspace,
    request: FileMoveRequest,
    coordinator: Coordinator,
) -> None:
    files = await coordinator.files(workspace.id)
    await files.copy(request.source, request.destination)


@router.post("/mkdir", status_code=status.HTTP_204_NO_CONTENT)
async def make_directory(
    workspace: OwnedWorkspace,
    request: PathRequest,
    coordinator: Coordinator,
) -> None:
    files = await coordinator.files(workspace.id)
    await files.mkdir(request.path)
