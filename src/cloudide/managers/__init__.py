"""Workspace managers."""

from cloudide.managers.activity import ActivityTracker, IdleReaper
from cloudide.managers.container_manager import ContainerManager
from cloudide.managers.coordinator import WorkspaceCoordinator
from cloudide.managers.git_bridge import GitBridge
from cloudide.managers.port_resolver import PortResolver

__all__ = [
    "ActivityTracker",
    "ContainerManager",
    "GitBridge",
    "IdleReaper",
    "PortResolver",
    "WorkspaceCoordinator",
]
