"""Dev server routes: start, stop, port discovery and logs."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from cloudide.deps import Coordinator, OwnedWorkspace, verify_internal_auth
from cloudide.models.workspace import (
    DevServerStartRequest,
    DevServerStopRequest,
    LogsResponse,
    PortResolution,
)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/server",
    tags=["server"],
    dependencies=[Depends(verify_internal_auth)],
)


@router.post("/start")
async def start_server(
    workspace: OwnedWorkspace,
    coordinator: Coordinator,
    request: DevServerStartRequest | None = None,
) -> dict[str, str]:
    """Launch the dev server in the background.

    Returns immediately; poll ``/port`` until the server announces itself.
    """
    await coordinator.touch(workspace.id)
    command = await coordinator.ports.start_dev_server(
        workspace.id, request.command if request else None
    )
    return {"status": "started", "command": command}


@router.post("/stop")
async def stop_server(
    workspace: OwnedWorkspace,
    coordinator: Coordinator,
    request: DevServerStopRequest | None = None,
) -> dict[str, str]:
    await coordinator.touch(workspace.id)
    pattern = (request or DevServerStopRequest()).process_name
    await coordinator.ports.stop_dev_server(workspace.id, pattern)
    return {"status": "stopped"}


@router.get("/port", response_model=PortResolution)
async def server_port(
    workspace: OwnedWorkspace,
    coordinator: Coordinator,
    wait: bool = False,
) -> PortResolution:
    """Host port and preview URL of the running dev server.

    404 ``no_active_server`` until the server is up; 409 ``port_not_published``
    when it listens on a port the container does not publish (recreate fixes it).
    """
    await coordinator.touch(workspace.id)
    if wait:
        return await coordinator.ports.wait_for_server(workspace.id)
    return await coordinator.ports.resolve(workspace.id)


@router.get("/logs", response_model=LogsResponse)
async def server_logs(
    workspace: OwnedWorkspace,
    coordinator: Coordinator,
    lines: Annotated[int, Query(ge=1, le=5000)] = 200,
) -> LogsResponse:
    await coordinator.touch(workspace.id)
    return LogsResponse(logs=await coordinator.ports.tail_logs(workspace.id, lines))
