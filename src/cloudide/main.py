"""CloudIDE Orchestrator Service - workspace containers, files, dev servers and git persistence."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import docker
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from cloudide import __version__
from cloudide.config import settings
from cloudide.deps import CoordinatorSingleton, InternalAuth
from cloudide.errors import OrchestratorError
from cloudide.managers.activity import ActivityTracker, IdleReaper
from cloudide.managers.container_manager import ContainerManager
from cloudide.managers.coordinator import WorkspaceCoordinator
from cloudide.managers.port_resolver import PortResolver
from cloudide.observability import configure_logging, init_sentry
from cloudide.routes import files_router, health_router, server_router, workspaces_router
from cloudide.runtime.exec_channel import ExecChannel
from cloudide.storage.registry import create_registry
from cloudide.utils.locks import WorkspaceLocks
from cloudide.validation import ValidationError

init_sentry(
    "cloudide-orchestrator",
    dsn=settings.sentry_dsn,
    environment=settings.environment,
    traces_sample_rate=settings.sentry_traces_sample_rate,
)

logger = configure_logging("cloudide-orchestrator")


def create_docker_client() -> docker.DockerClient:
    if settings.docker_host:
        return docker.DockerClient(base_url=settings.docker_host)
    return docker.from_env()


def build_coordinator(client: docker.DockerClient) -> WorkspaceCoordinator:
    """Wire the orchestrator components around one Docker client."""
    channel = ExecChannel(client)
    containers = ContainerManager(client, channel)
    return WorkspaceCoordinator(
        containers=containers,
        ports=PortResolver(containers, channel),
        registry=create_registry(),
        activity=ActivityTracker(),
        locks=WorkspaceLocks(),
    )


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan - startup and shutdown."""
    logger.info("Starting CloudIDE Orchestrator", environment=settings.environment)

    client = await asyncio.to_thread(create_docker_client)
    coordinator = build_coordinator(client)
    CoordinatorSingleton.set_coordinator(coordinator)

    # Containers that survived a restart get a fresh idle window
    await coordinator.discover()

    reaper = IdleReaper(coordinator.activity, coordinator.reclaim)
    await reaper.start()

    yield

    logger.info("Shutting down CloudIDE Orchestrator")

    async def graceful_shutdown() -> None:
        await reaper.stop()
        await coordinator.close()
        await asyncio.to_thread(client.close)

    try:
        await asyncio.wait_for(graceful_shutdown(), timeout=settings.shutdown_timeout)
        logger.info("Graceful shutdown completed")
    except TimeoutError:
        logger.warning("Shutdown timed out, forcing exit", timeout=settings.shutdown_timeout)
    finally:
        CoordinatorSingleton.clear_instance()


def orchestrator_error_response(exc: OrchestratorError) -> JSONResponse:
    return JSONResponse(
        status_code=int(exc.http_status),
        content={"error": exc.code, "detail": str(exc), "retryable": exc.retryable},
    )


async def handle_orchestrator_error(request: Request, exc: OrchestratorError) -> JSONResponse:
    log = logger.error if exc.http_status >= 500 else logger.warning
    log(
        "Request failed",
        path=request.url.path,
        method=request.method,
        error=exc.code,
        detail=str(exc)[:500],
    )
    return orchestrator_error_response(exc)


async def handle_validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    logger.info("Rejected invalid input", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=400,
        content={"error": "invalid_request", "detail": str(exc), "retryable": False},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="CloudIDE Orchestrator",
        description="Container-backed workspaces for the browser IDE",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    Instrumentator().instrument(app).expose(app)

    app.add_exception_handler(OrchestratorError, handle_orchestrator_error)
    app.add_exception_handler(ValidationError, handle_validation_error)

    app.include_router(health_router)
    app.include_router(workspaces_router)
    app.include_router(files_router)
    app.include_router(server_router)

    @app.get("/")
    async def root(_auth: InternalAuth) -> dict[str, str]:
        return {"service": "cloudide-orchestrator", "version": __version__}

    return app


app = create_app()
