"""Workspace registry backends."""

from cloudide.storage.registry import (
    APIWorkspaceRegistry,
    InMemoryWorkspaceRegistry,
    WorkspaceRegistry,
    create_registry,
)

__all__ = [
    "APIWorkspaceRegistry",
    "InMemoryWorkspaceRegistry",
    "WorkspaceRegistry",
    "create_registry",
]
