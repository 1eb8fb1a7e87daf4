"""Docker-backed lifecycle management for workspace containers.

One container per workspace, named after the workspace id. Containers have no
host bind mounts: project files live inside the container and survive only
through the git bridge.
"""

from __future__ import annotations

import asyncio
import json
import socket
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog
from docker.errors import APIError, ImageNotFound, NotFound

from cloudide.config import settings
from cloudide.errors import (
    ContainerNotFound,
    CreateFailed,
    ExecFailed,
    FileNotFound,
    ImagePullFailed,
    OrchestratorError,
)
from cloudide.models.workspace import ContainerState, PortMapping, WorkspaceMetadata
from cloudide.runtime.files import ContainerFiles

if TYPE_CHECKING:
    from docker import DockerClient
    from docker.models.containers import Container

    from cloudide.runtime.exec_channel import ExecChannel

logger = structlog.get_logger()

PortPicker = Callable[[int, set[int]], int]

# Docker status -> lifecycle state
_STATUS_MAP = {
    "created": ContainerState.CREATED,
    "running": ContainerState.RUNNING,
    "restarting": ContainerState.RUNNING,
    "paused": ContainerState.STOPPED,
    "exited": ContainerState.STOPPED,
    "dead": ContainerState.STOPPED,
    "removing": ContainerState.REMOVED,
}

HTTP_NOT_MODIFIED = 304
HTTP_CONFLICT = 409


def _port_available(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind(("0.0.0.0", port))  # noqa: S104
        except OSError:
            return False
    return True


def find_free_port(preferred: int, taken: set[int]) -> int:
    """Pick a free host port, preferring ``preferred`` itself."""
    if preferred not in taken and _port_available(preferred):
        return preferred
    while True:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("0.0.0.0", 0))  # noqa: S104
            port = int(sock.getsockname()[1])
        if port not in taken:
            return port


def parse_port_mappings(attrs: dict[str, Any]) -> list[PortMapping]:
    """Extract published ports from container inspect data."""
    ports = (attrs.get("NetworkSettings") or {}).get("Ports") or {}
    mappings = []
    for key, bindings in ports.items():
        if not bindings:
            continue
        port, _, protocol = key.partition("/")
        host_port = bindings[0].get("HostPort")
        if not host_port:
            continue
        mappings.append(
            PortMapping(
                internal_port=int(port),
                host_port=int(host_port),
                protocol=protocol or "tcp",
            )
        )
    return sorted(mappings, key=lambda m: m.internal_port)


def _is_benign_stop_error(error: APIError) -> bool:
    message = str(error).lower()
    return error.status_code == HTTP_NOT_MODIFIED or "not running" in message


def _is_benign_remove_error(error: APIError) -> bool:
    message = str(error).lower()
    return error.status_code == HTTP_CONFLICT and (
        "in progress" in message or "already" in message
    )


class ContainerManager:
    """Creates, inspects, removes and recreates workspace containers."""

    def __init__(
        self,
        client: DockerClient,
        channel: ExecChannel,
        port_picker: PortPicker | None = None,
    ) -> None:
        self.client = client
        self.channel = channel
        self._pick_port = port_picker or find_free_port
        self._prefix = settings.label_prefix
        self._late_removals: set[asyncio.Task[None]] = set()
        logger.info(
            "ContainerManager initialized",
            docker_host=settings.docker_host,
            workspace_image=settings.workspace_image,
        )

    def files_for(
        self, container_id: str, on_activity: Callable[[], None] | None = None
    ) -> ContainerFiles:
        return ContainerFiles(
            self.channel,
            container_id,
            base_dir=settings.workspace_base_dir,
            on_activity=on_activity,
        )

    def labels_for(self, workspace_id: str, metadata: WorkspaceMetadata) -> dict[str, str]:
        return {
            f"{self._prefix}.workspace_id": workspace_id,
            f"{self._prefix}.workspace_name": metadata.name or workspace_id,
            f"{self._prefix}.template": metadata.template or "blank",
        }

    # --- Inspection ---

    async def get_container(self, workspace_id: str) -> Container | None:
        try:
            return await asyncio.to_thread(self.client.containers.get, workspace_id)
        except NotFound:
            return None

    async def get_state(self, workspace_id: str) -> ContainerState:
        container = await self.get_container(workspace_id)
        if container is None:
            return ContainerState.ABSENT
        return _STATUS_MAP.get(container.status, ContainerState.STOPPED)

    async def ensure_running(self, workspace_id: str) -> Container:
        """Return the workspace's container, starting it if it exists but is stopped.

        Raises:
            ContainerNotFound: if no container exists for the workspace
        """
        container = await self.get_container(workspace_id)
        if container is None:
            raise ContainerNotFound(f"No container for workspace {workspace_id}")

        if container.status != "running":
            logger.info(
                "Container not running, starting",
                workspace_id=workspace_id,
                container_status=container.status,
            )
            try:
                await asyncio.to_thread(container.start)
                await asyncio.to_thread(container.reload)
            except NotFound as e:
                raise ContainerNotFound(f"No container for workspace {workspace_id}") from e
        return container

    async def list_managed(self) -> list[str]:
        """Workspace ids of every running container carrying our labels."""
        containers = await asyncio.to_thread(
            self.client.containers.list,
            filters={"label": f"{self._prefix}.workspace_id"},
        )
        return [
            c.labels[f"{self._prefix}.workspace_id"]
            for c in containers
            if c.labels.get(f"{self._prefix}.workspace_id")
        ]

    async def get_port_mappings(self, workspace_id: str) -> list[PortMapping]:
        container = await self.get_container(workspace_id)
        if container is None:
            return []
        await asyncio.to_thread(container.reload)
        return parse_port_mappings(container.attrs)

    async def has_published_ports(self, workspace_id: str) -> bool:
        return bool(await self.get_port_mappings(workspace_id))

    # --- Metadata file ---

    async def read_metadata(self, container_id: str) -> WorkspaceMetadata | None:
        """Read the in-container metadata file, or None when missing or unreadable."""
        files = self.files_for(container_id)
        try:
            raw = await files.read(settings.metadata_path, scrub=False)
            return WorkspaceMetadata.model_validate(json.loads(raw))
        except FileNotFound:
            return None
        except (ExecFailed, ValueError) as e:
            logger.warning(
                "Unreadable workspace metadata",
                container_id=container_id[:12],
                error=str(e),
            )
            return None

    async def write_metadata(self, container_id: str, metadata: WorkspaceMetadata) -> None:
        await self.files_for(container_id).write(settings.metadata_path, metadata.to_json())

    # --- Lifecycle ---

    async def _ensure_image(self) -> None:
        image = settings.workspace_image
        try:
            await asyncio.to_thread(self.client.images.get, image)
            return
        except ImageNotFound:
            pass

        logger.info("Pulling workspace image", image=image)
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self.client.images.pull, image),
                timeout=settings.create_timeout,
            )
        except TimeoutError as e:
            raise ImagePullFailed(f"Timed out pulling image {image}") from e
        except APIError as e:
            raise ImagePullFailed(f"Failed to pull image {image}", detail=str(e)) from e

    def _allocate_ports(self, base_port: int) -> dict[str, int]:
        taken: set[int] = set()
        bindings: dict[str, int] = {}
        for internal_port in range(base_port, base_port + settings.port_block_size):
            host_port = self._pick_port(internal_port, taken)
            taken.add(host_port)
            bindings[f"{internal_port}/tcp"] = host_port
        return bindings

    async def create(self, workspace_id: str, metadata: WorkspaceMetadata) -> Container:
        """Create and start a fresh container, replacing any with the same name.

        Raises:
            ImagePullFailed: if the base image is missing and can't be pulled
            CreateFailed: if the container can't be run or initialised; the
                partial container is removed first
        """
        await self._ensure_image()
        try:
            await self.remove(workspace_id)
        except APIError as e:
            raise CreateFailed(
                f"Could not replace the existing container for workspace {workspace_id}",
                detail=str(e),
            ) from e

        ports = self._allocate_ports(metadata.server_config.default_port)
        logger.info(
            "Creating workspace container",
            workspace_id=workspace_id,
            image=settings.workspace_image,
            ports=ports,
        )

        run = asyncio.ensure_future(
            asyncio.to_thread(
                self.client.containers.run,  # type: ignore[arg-type]
                settings.workspace_image,
                detach=True,
                name=workspace_id,
                labels=self.labels_for(workspace_id, metadata),
                environment={"NODE_ENV": "development"},
                ports=ports,
                mem_limit=f"{settings.container_memory_mb}m",
                nano_cpus=settings.container_nano_cpus,
                # Keep the default shell alive without a command
                stdin_open=True,
                tty=True,
                working_dir=settings.workspace_base_dir,
            )
        )
        try:
            # The worker thread can't be cancelled, so a timeout only stops the wait
            container = await asyncio.wait_for(
                asyncio.shield(run), timeout=settings.create_timeout
            )
            await asyncio.to_thread(container.reload)
            await self.write_metadata(container.id, metadata)
        except (TimeoutError, APIError, OrchestratorError) as e:
            logger.exception("Container creation failed, cleaning up", workspace_id=workspace_id)
            if not run.done():
                self._remove_when_created(run, workspace_id)
            try:
                await self.remove(workspace_id, grace_seconds=0)
            except APIError as cleanup_error:
                logger.warning(
                    "Failed to clean up container after creation failure",
                    workspace_id=workspace_id,
                    cleanup_error=str(cleanup_error),
                )
            if isinstance(e, CreateFailed):
                raise
            raise CreateFailed(
                f"Failed to create container for workspace {workspace_id}",
                detail=str(e),
            ) from e

        logger.info(
            "Workspace container started",
            workspace_id=workspace_id,
            container_id=(container.id or "")[:12],
        )
        return container

    def _remove_when_created(self, run: asyncio.Future[Container], workspace_id: str) -> None:
        task = asyncio.create_task(self._discard_late_container(run, workspace_id))
        self._late_removals.add(task)
        task.add_done_callback(self._late_removals.discard)

    async def _discard_late_container(
        self, run: asyncio.Future[Container], workspace_id: str
    ) -> None:
        """Remove the container from a run call that finished after create gave up.

        The container object is removed directly, not by name, so a newer
        container created under the same name is left alone.
        """
        try:
            container = await run
        except Exception as e:
            logger.info(
                "Abandoned container run failed, nothing to remove",
                workspace_id=workspace_id,
                error=str(e)[:200],
            )
            return
        try:
            await asyncio.to_thread(container.remove, force=True)
        except APIError as e:
            logger.warning(
                "Failed to remove container created after timeout",
                workspace_id=workspace_id,
                container_id=(container.id or "")[:12],
                error=str(e),
            )
            return
        logger.info(
            "Removed container created after timeout",
            workspace_id=workspace_id,
            container_id=(container.id or "")[:12],
        )

    async def wait_for_late_removals(self) -> None:
        """Let removals of containers from timed-out creates finish."""
        if self._late_removals:
            await asyncio.gather(*self._late_removals, return_exceptions=True)

    async def remove(self, workspace_id: str, grace_seconds: int | None = None) -> bool:
        """Stop then force-remove the workspace's container.

        Returns False when there was nothing to remove. "Not running", "not
        found" and "removal in progress" responses count as success.
        """
        container = await self.get_container(workspace_id)
        if container is None:
            return False

        grace = settings.stop_grace_seconds if grace_seconds is None else grace_seconds
        try:
            await asyncio.to_thread(container.stop, timeout=grace)
        except NotFound:
            return True
        except APIError as e:
            if not _is_benign_stop_error(e):
                raise
            logger.debug("Container already stopped", workspace_id=workspace_id)

        try:
            await asyncio.to_thread(container.remove, force=True)
        except NotFound:
            pass
        except APIError as e:
            if not _is_benign_remove_error(e):
                raise
            logger.debug("Container removal already in progress", workspace_id=workspace_id)

        logger.info("Workspace container removed", workspace_id=workspace_id)
        return True

    async def recreate_with_ports_preserved(self, workspace_id: str) -> Container:
        """Rebuild a container that lacks port bindings, carrying its files across.

        Only regular files outside ``node_modules`` and ``.git`` are salvaged, up
        to ``salvage_file_limit``. Files that can't be read are skipped.
        """
        container = await self.ensure_running(workspace_id)
        metadata = await self.read_metadata(container.id)
        if metadata is None:
            logger.warning("No metadata found, using default dev server config")
            metadata = WorkspaceMetadata(id=workspace_id, name=workspace_id)

        files = self.files_for(container.id)
        paths = [
            path
            for path in await files.list_files(limit=settings.salvage_file_limit + 1)
            if path != settings.metadata_filename
        ][: settings.salvage_file_limit]

        salvaged: dict[str, str] = {}
        for path in paths:
            try:
                salvaged[path] = await files.read(path, scrub=False)
            except OrchestratorError as e:
                logger.warning("Skipping unreadable file", path=path, error=str(e))

        logger.info(
            "Recreating container with port bindings",
            workspace_id=workspace_id,
            salvaged_files=len(salvaged),
        )

        await self.remove(workspace_id, grace_seconds=5)
        new_container = await self.create(workspace_id, metadata)

        new_files = self.files_for(new_container.id)
        for path, content in salvaged.items():
            await new_files.write(path, content)

        return new_container
