"""Orchestrator models."""

from cloudide.models.workspace import (
    ContainerState,
    ExecResult,
    FileNode,
    FileStat,
    GitStatus,
    PortMapping,
    PortResolution,
    ServerConfig,
    WorkspaceMetadata,
    WorkspaceRecord,
)

__all__ = [
    "ContainerState",
    "ExecResult",
    "FileNode",
    "FileStat",
    "GitStatus",
    "PortMapping",
    "PortResolution",
    "ServerConfig",
    "WorkspaceMetadata",
    "WorkspaceRecord",
]
