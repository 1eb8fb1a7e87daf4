"""Workspace lifecycle coordination.

Sequences the container manager, git bridge, templates and port resolver for
the high-level operations: create, open, pause, resume, cleanup, recreate,
save and delete. Every transition holds the workspace's lock. Teardown steps
are best-effort; creation failures roll back the partial container before the
error surfaces.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog

from cloudide.config import settings
from cloudide.errors import Forbidden, RemoteAuthFailed, WorkspaceExists, WorkspaceNotFound
from cloudide.managers.activity import ActivityTracker
from cloudide.managers.git_bridge import GitBridge, validate_remote_url
from cloudide.managers.templates import get_template, scaffold
from cloudide.models.workspace import (
    ContainerState,
    ExecResult,
    GitStatus,
    ResumeResult,
    WorkspaceMetadata,
    WorkspaceRecord,
    WorkspaceResponse,
)
from cloudide.utils import WorkspaceLocks, best_effort
from cloudide.validation import validate_workspace_id

if TYPE_CHECKING:
    from cloudide.managers.container_manager import ContainerManager
    from cloudide.managers.port_resolver import PortResolver
    from cloudide.runtime.files import ContainerFiles
    from cloudide.storage.registry import WorkspaceRegistry

logger = structlog.get_logger()


class WorkspaceCoordinator:
    """Orchestrates workspace lifecycle operations.

    Responsibilities:
    - Creating workspaces from templates, with optional git init and initial push
    - Pausing and cleaning up (save, then remove) without blocking on remotes
    - Resuming from the remote repository into a fresh container
    - Salvaging containers that were created without port bindings
    - Handing out activity-tracked file and terminal access
    """

    def __init__(
        self,
        containers: ContainerManager,
        ports: PortResolver,
        registry: WorkspaceRegistry,
        activity: ActivityTracker | None = None,
        locks: WorkspaceLocks | None = None,
        git_token: str | None = None,
    ) -> None:
        self.containers = containers
        self.ports = ports
        self.registry = registry
        self.activity = activity or ActivityTracker()
        self.locks = locks or WorkspaceLocks()
        self.git_token = git_token if git_token is not None else settings.github_token

    def _bridge(self, container_id: str) -> GitBridge:
        return GitBridge(self.containers.files_for(container_id))

    # --- Records ---

    async def get_record(self, workspace_id: str, owner_id: str | None = None) -> WorkspaceRecord:
        """Load a workspace record, checking ownership when ``owner_id`` is given.

        Raises:
            ValidationError: malformed workspace id
            WorkspaceNotFound: no such workspace
            Forbidden: the workspace belongs to someone else
        """
        validate_workspace_id(workspace_id)
        record = await self.registry.get(workspace_id)
        if record is None:
            raise WorkspaceNotFound(f"Workspace {workspace_id} not found")
        if owner_id is not None and record.owner_id != owner_id:
            logger.warning(
                "Workspace ownership check failed",
                workspace_id=workspace_id,
                owner_id=record.owner_id,
                requester=owner_id,
            )
            raise Forbidden("Access denied to this workspace")
        return record

    async def list_workspaces(self, owner_id: str) -> list[WorkspaceRecord]:
        return await self.registry.list_by_owner(owner_id)

    async def describe(self, workspace_id: str) -> WorkspaceResponse:
        record = await self.get_record(workspace_id)
        state = await self.containers.get_state(workspace_id)
        ports = []
        if state != ContainerState.ABSENT:
            ports = await self.containers.get_port_mappings(workspace_id)
        return WorkspaceResponse(workspace=record, state=state, ports=ports)

    async def metadata(self, workspace_id: str) -> WorkspaceMetadata:
        """In-container metadata, regenerated from the record if the file is gone."""
        record = await self.get_record(workspace_id)
        container = await self.containers.ensure_running(workspace_id)
        metadata = await self.containers.read_metadata(container.id)
        if metadata is None:
            metadata = record.to_metadata(get_template(record.template).server_config)
        return metadata

    # --- Lifecycle ---

    async def create_new(
        self,
        owner_id: str,
        name: str,
        template: str = "react-vite",
        description: str | None = None,
        github_repo: str | None = None,
        workspace_id: str | None = None,
        init_git: bool = True,
    ) -> WorkspaceRecord:
        """Create container, scaffold the template, init git and register the workspace.

        Git init and the initial push are optional steps; their failure is
        logged. Any other failure removes the container before re-raising.
        """
        workspace_id = validate_workspace_id(workspace_id or uuid.uuid4().hex)
        if github_repo:
            validate_remote_url(github_repo)
        project = get_template(template)
        metadata = WorkspaceMetadata(
            id=workspace_id,
            name=name,
            template=project.name,
            server_config=project.server_config,
            github_repo=github_repo,
        )

        async with self.locks.get(workspace_id):
            if await self.registry.get(workspace_id) is not None:
                raise WorkspaceExists(f"Workspace {workspace_id} already exists")
            container = await self.containers.create(workspace_id, metadata)
            try:
                files = self.containers.files_for(container.id)
                await scaffold(files, project, name)

                if init_git:
                    bridge = GitBridge(files)
                    initialized = await best_effort(
                        "git_init", bridge.init(), workspace_id=workspace_id
                    )
                    if initialized and github_repo:
                        await best_effort(
                            "initial_push",
                            bridge.push(github_repo, token=self.git_token),
                            workspace_id=workspace_id,
                        )

                record = await self.registry.save(
                    WorkspaceRecord(
                        id=workspace_id,
                        name=name,
                        description=description,
                        template=project.name,
                        github_repo=github_repo,
                        container_id=container.id,
                        owner_id=owner_id,
                    )
                )
            except Exception:
                logger.exception(
                    "Workspace creation failed, cleaning up", workspace_id=workspace_id
                )
                await best_effort(
                    "rollback_remove",
                    self.containers.remove(workspace_id, grace_seconds=0),
                    workspace_id=workspace_id,
                )
                raise

        self.activity.touch(workspace_id)
        logger.info(
            "Workspace created",
            workspace_id=workspace_id,
            template=project.name,
            container_id=(container.id or "")[:12],
        )
        return record

    async def resume(self, workspace_id: str) -> ResumeResult:
        """Make the workspace's container available again.

        A running container short-circuits. A stopped one is restarted with its
        files intact. Otherwise a fresh container is created and the remote
        repository is cloned into it.

        Raises:
            RemoteAuthFailed: the workspace has a remote but no token is configured,
                or the remote rejected it
            CloneFailed: the remote could not be restored; the new container is removed
        """
        record = await self.get_record(workspace_id)

        async with self.locks.get(workspace_id):
            state = await self.containers.get_state(workspace_id)
            if state in (ContainerState.RUNNING, ContainerState.CREATED, ContainerState.STOPPED):
                container = await self.containers.ensure_running(workspace_id)
                if record.container_id != container.id:
                    record = await self.registry.set_container(workspace_id, container.id) or record
                self.activity.touch(workspace_id)
                return ResumeResult(
                    workspace=record,
                    resumed=state != ContainerState.RUNNING,
                )

            if record.github_repo and not self.git_token:
                raise RemoteAuthFailed("No git token configured to restore this workspace")

            project = get_template(record.template)
            metadata = record.to_metadata(project.server_config)
            container = await self.containers.create(workspace_id, metadata)
            dependencies_installed: bool | None = None
            try:
                files = self.containers.files_for(container.id)
                if record.github_repo:
                    cloned = await GitBridge(files).clone(
                        record.github_repo, token=self.git_token
                    )
                    dependencies_installed = cloned.dependencies_installed
                else:
                    logger.warning(
                        "Workspace has no remote, starting from template",
                        workspace_id=workspace_id,
                    )
                    await scaffold(files, project, record.name)
                    dependencies_installed = project.needs_install

                # Clone replaces the directory contents, so the metadata goes back last
                await self.containers.write_metadata(container.id, metadata)
                record = await self.registry.set_container(workspace_id, container.id) or record
            except Exception:
                logger.exception("Workspace resume failed, cleaning up", workspace_id=workspace_id)
                await best_effort(
                    "rollback_remove",
                    self.containers.remove(workspace_id, grace_seconds=0),
                    workspace_id=workspace_id,
                )
                raise

        self.ports.invalidate(workspace_id)
        self.activity.touch(workspace_id)
        logger.info("Workspace resumed", workspace_id=workspace_id)
        return ResumeResult(
            workspace=record,
            resumed=True,
            dependencies_installed=dependencies_installed,
        )

    async def open_workspace(self, workspace_id: str, start_server: bool = True) -> ResumeResult:
        """Resume if needed, then kick off the dev server."""
        result = await self.resume(workspace_id)
        if start_server:
            await best_effort(
                "start_dev_server",
                self.ports.start_dev_server(workspace_id),
                workspace_id=workspace_id,
            )
        return result

    async def _save_running(self, container_id: str, record: WorkspaceRecord, message: str) -> bool:
        bridge = self._bridge(container_id)
        if not await bridge.is_repository():
            await bridge.init()
        return await bridge.save(record.github_repo, message, token=self.git_token)

    async def _teardown(
        self, workspace_id: str, record: WorkspaceRecord | None, reason: str
    ) -> None:
        """Save, remove the container and clear the record's container reference.

        Every step is best-effort and runs regardless of earlier failures.
        """
        container = await self.containers.get_container(workspace_id)
        if container is not None and record is not None:
            # A stopped container still holds unsaved files; exec needs it running
            started = container.status == "running" or await best_effort(
                "start_for_save",
                self.containers.ensure_running(workspace_id),
                workspace_id=workspace_id,
            )
            if started:
                await best_effort(
                    "save",
                    self._save_running(container.id, record, f"Auto-save on {reason}"),
                    workspace_id=workspace_id,
                )
        if container is not None:
            await best_effort(
                "remove_container",
                self.containers.remove(workspace_id),
                workspace_id=workspace_id,
            )
        if record is not None and record.container_id is not None:
            await best_effort(
                "clear_container_ref",
                self.registry.set_container(workspace_id, None),
                workspace_id=workspace_id,
            )

        self.ports.invalidate(workspace_id)
        self.activity.forget(workspace_id)
        logger.info("Workspace torn down", workspace_id=workspace_id, reason=reason)

    async def pause(self, workspace_id: str) -> WorkspaceRecord:
        """Save to the remote (best-effort) and remove the container."""
        record = await self.get_record(workspace_id)
        async with self.locks.get(workspace_id):
            await self._teardown(workspace_id, record, "pause")
        return record.model_copy(update={"container_id": None})

    async def cleanup(self, workspace_id: str) -> None:
        """Like pause, but also tolerates a workspace with no registry record."""
        validate_workspace_id(workspace_id)
        record = await self.registry.get(workspace_id)
        async with self.locks.get(workspace_id):
            await self._teardown(workspace_id, record, "cleanup")

    async def reclaim(self, workspace_id: str) -> None:
        """Idle sweep hook. Skips workspaces mid-transition."""
        if self.locks.is_busy(workspace_id):
            logger.debug("Workspace busy, skipping reclaim", workspace_id=workspace_id)
            return
        await self.cleanup(workspace_id)

    async def recreate_with_ports(self, workspace_id: str) -> WorkspaceRecord:
        record = await self.get_record(workspace_id)
        async with self.locks.get(workspace_id):
            container = await self.containers.recreate_with_ports_preserved(workspace_id)
            self.ports.invalidate(workspace_id)
            record = await self.registry.set_container(workspace_id, container.id) or record
        self.activity.touch(workspace_id)
        return record

    async def save(self, workspace_id: str, message: str) -> bool:
        """Commit and push now. Unlike pause, failures are raised.

        Returns whether a new commit was made.
        """
        record = await self.get_record(workspace_id)
        async with self.locks.get(workspace_id):
            container = await self.containers.ensure_running(workspace_id)
            committed = await self._save_running(container.id, record, message)
        self.activity.touch(workspace_id)
        return committed

    async def git_status(self, workspace_id: str) -> GitStatus:
        await self.get_record(workspace_id)
        files = await self.files(workspace_id)
        return await GitBridge(files).status()

    async def delete(self, workspace_id: str) -> None:
        """Remove the container, then the registry record."""
        await self.get_record(workspace_id)
        async with self.locks.get(workspace_id):
            await self.containers.remove(workspace_id)
            await self.registry.delete(workspace_id)
        self.ports.invalidate(workspace_id)
        self.activity.forget(workspace_id)
        self.locks.discard(workspace_id)
        logger.info("Workspace deleted", workspace_id=workspace_id)

    # --- Interactive access ---

    async def touch(self, workspace_id: str) -> None:
        """Wait out any transition in progress, then record activity."""
        validate_workspace_id(workspace_id)
        await self.locks.wait_idle(workspace_id)
        self.activity.touch(workspace_id)

    async def files(self, workspace_id: str) -> ContainerFiles:
        """File access for a running workspace. Mutations count as activity."""
        await self.touch(workspace_id)
        container = await self.containers.ensure_running(workspace_id)
        return self.containers.files_for(
            container.id,
            on_activity=lambda: self.activity.touch(workspace_id),
        )

    async def run_command(
        self, workspace_id: str, command: str, cwd: str | None = None
    ) -> ExecResult:
        """Run a terminal command, returning whatever output arrives within the budget."""
        files = await self.files(workspace_id)
        return await files.channel.exec_result(
            files.container_id,
            ["bash", "-c", command],
            working_dir=files.resolve(cwd or "."),
            timeout=settings.terminal_timeout,
            partial_ok=True,
        )

    async def discover(self) -> int:
        """Start idle tracking for containers that outlived a restart."""
        workspace_ids = await self.containers.list_managed()
        for workspace_id in workspace_ids:
            self.activity.touch(workspace_id)
        if workspace_ids:
            logger.info("Discovered running workspace containers", count=len(workspace_ids))
        return len(workspace_ids)

    async def close(self) -> None:
        await self.containers.wait_for_late_removals()
        await self.registry.close()
