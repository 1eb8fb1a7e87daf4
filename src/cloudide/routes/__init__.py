"""Orchestrator routes."""

from cloudide.routes.files import router as files_router
from cloudide.routes.health import router as health_router
from cloudide.routes.server import router as server_router
from cloudide.routes.workspaces import router as workspaces_router

__all__ = [
    "files_router",
    "health_router",
    "server_router",
    "workspaces_router",
]
