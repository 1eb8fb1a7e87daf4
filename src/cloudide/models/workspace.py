"""Workspace models used across the orchestrator."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ServerType = Literal["vite", "nextjs", "express", "static", "none"]


def utc_now() -> datetime:
    return datetime.now(UTC)


class ContainerState(str, Enum):
    """Container lifecycle states as seen through the runtime."""

    ABSENT = "absent"
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


class ServerConfig(BaseModel):
    """How the project's dev server is started and where it listens by default."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: ServerType = "vite"
    default_port: int = 5173
    dev_command: str | None = "npm run dev -- --host 0.0.0.0"


class WorkspaceMetadata(BaseModel):
    """Contents of the in-container metadata file (camelCase on disk)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str | None = None
    name: str | None = None
    template: str | None = None
    server_config: ServerConfig = Field(default_factory=ServerConfig)
    github_repo: str | None = None

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


class WorkspaceRecord(BaseModel):
    """Durable registry record for a workspace."""

    id: str
    name: str
    description: str | None = None
    template: str = "blank"
    github_repo: str | None = None
    container_id: str | None = None
    owner_id: str
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    model_config = {"from_attributes": True}

    def to_metadata(self, server_config: ServerConfig | None = None) -> WorkspaceMetadata:
        """Regenerate the in-container metadata from the durable record."""
        return WorkspaceMetadata(
            id=self.id,
            name=self.name,
            template=self.template,
            server_config=server_config or ServerConfig(),
            github_repo=self.github_repo,
        )


class PortMapping(BaseModel):
    """One published container port."""

    internal_port: int
    host_port: int
    protocol: str = "tcp"


class PortResolution(BaseModel):
    """Where a running dev server can be reached from the host."""

    internal_port: int
    host_port: int
    preview_url: str


class ExecResult(BaseModel):
    """Output and exit code of a completed exec session."""

    output: str
    exit_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class FileNode(BaseModel):
    """A node of the project file tree."""

    name: str
    type: Literal["file", "directory"]
    path: str
    children: list[FileNode] | None = None


class FileStat(BaseModel):
    size: int
    is_directory: bool
    modified: datetime


class GitStatus(BaseModel):
    is_repository: bool
    has_changes: bool = False
    branch: str | None = None
    last_commit: str | None = None


class CloneResult(BaseModel):
    dependencies_installed: bool = False


# --- Request / response bodies ---


class WorkspaceCreateRequest(BaseModel):
    """Request to create a new workspace."""

    name: str = Field(min_length=1, max_length=200)
    description: str | None = None
    template: str = "react-vite"
    github_repo: str | None = Field(default=None, description="HTTPS URL of an existing repo")
    workspace_id: str | None = Field(
        default=None,
        description="Optional workspace ID. Generated when not provided.",
    )
    init_git: bool = True


class WorkspaceResponse(BaseModel):
    """A workspace record plus its live container state."""

    workspace: WorkspaceRecord
    state: ContainerState
    ports: list[PortMapping] = Field(default_factory=list)


class ResumeResult(BaseModel):
    """Outcome of resuming or opening a workspace."""

    workspace: WorkspaceRecord
    resumed: bool
    dependencies_installed: bool | None = None


class ExecRequest(BaseModel):
    command: str = Field(min_length=1)
    cwd: str | None = None


class ExecResponse(BaseModel):
    output: str
    exit_code: int | None = None
    completed: bool


class SaveRequest(BaseModel):
    message: str = "Save workspace"


class FileWriteRequest(BaseModel):
    path: str
    content: str


class FileMoveRequest(BaseModel):
    source: str
    destination: str


class PathRequest(BaseModel):
    path: str


class FileContentResponse(BaseModel):
    path: str
    content: str


class DevServerStartRequest(BaseModel):
    command: str | None = None


class DevServerStopRequest(BaseModel):
    process_name: str = Field(default="vite", min_length=1)


class LogsResponse(BaseModel):
    logs: str
