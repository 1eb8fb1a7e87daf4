"""Shared test fixtures for orchestrator tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from fakes import FakeDockerClient

from cloudide.config import settings
from cloudide.managers.activity import ActivityTracker
from cloudide.managers.container_manager import ContainerManager
from cloudide.managers.coordinator import WorkspaceCoordinator
from cloudide.managers.port_resolver import PortResolver
from cloudide.models.workspace import ServerConfig, WorkspaceMetadata
from cloudide.runtime.exec_channel import ExecChannel
from cloudide.runtime.files import ContainerFiles
from cloudide.storage.registry import InMemoryWorkspaceRegistry
from cloudide.utils.locks import WorkspaceLocks

if TYPE_CHECKING:
    from fakes import FakeContainer, FakeGitRemote

REPO_URL = "https://github.com/acme/storefront.git"
REMOTE_TOKEN = "remote-token"
HOST_PORT_OFFSET = 20000


def offset_port_picker(preferred: int, taken: set[int]) -> int:
    """Deterministic host ports: internal port + 20000."""
    return preferred + HOST_PORT_OFFSET


# ============================================
# Settings
# ============================================


@pytest.fixture(autouse=True)
def fast_timeouts(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep exec budgets short so timeout paths run quickly."""
    monkeypatch.setattr(settings, "terminal_timeout", 0.3)
    monkeypatch.setattr(settings, "probe_timeout", 1.0)
    monkeypatch.setattr(settings, "command_timeout", 5.0)
    monkeypatch.setattr(settings, "project_init_timeout", 5.0)
    monkeypatch.setattr(settings, "create_timeout", 5.0)
    monkeypatch.setattr(settings, "port_poll_interval", 0.0)
    monkeypatch.setattr(settings, "github_token", None)


# ============================================
# Runtime fakes
# ============================================


@pytest.fixture
def docker_client() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def remote(docker_client: FakeDockerClient) -> FakeGitRemote:
    """A hosted repository that exists but has no branches yet."""
    docker_client.remote.create_repo(REPO_URL)
    return docker_client.remote


@pytest.fixture
def channel(docker_client: FakeDockerClient) -> ExecChannel:
    return ExecChannel(docker_client)  # type: ignore[arg-type]


@pytest.fixture
def container(docker_client: FakeDockerClient) -> FakeContainer:
    """A bare running container with no published ports."""
    return docker_client.add_container("ws-bare")


@pytest.fixture
def files(channel: ExecChannel, container: FakeContainer) -> ContainerFiles:
    return ContainerFiles(channel, container.id, base_dir="/app")


# ============================================
# Managers
# ============================================


@pytest.fixture
def container_manager(docker_client: FakeDockerClient, channel: ExecChannel) -> ContainerManager:
    return ContainerManager(
        docker_client,  # type: ignore[arg-type]
        channel,
        port_picker=offset_port_picker,
    )


@pytest.fixture
def port_resolver(container_manager: ContainerManager, channel: ExecChannel) -> PortResolver:
    return PortResolver(container_manager, channel)


@pytest.fixture
def registry() -> InMemoryWorkspaceRegistry:
    return InMemoryWorkspaceRegistry()


@pytest.fixture
def coordinator(
    container_manager: ContainerManager,
    port_resolver: PortResolver,
    registry: InMemoryWorkspaceRegistry,
) -> WorkspaceCoordinator:
    return WorkspaceCoordinator(
        containers=container_manager,
        ports=port_resolver,
        registry=registry,
        activity=ActivityTracker(),
        locks=WorkspaceLocks(),
        git_token=REMOTE_TOKEN,
    )


@pytest.fixture
def vite_metadata() -> WorkspaceMetadata:
    return WorkspaceMetadata(
        id="ws-vite",
        name="Storefront",
        template="react-vite",
        server_config=ServerConfig(type="vite", default_port=5173),
    )
