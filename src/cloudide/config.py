"""Orchestrator service configuration."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service
    environment: Literal["development", "test", "staging", "production"] = "development"
    debug: bool = False

    # Internal service authentication
    # Shared between the web frontend (caller) and this service
    internal_service_token: str | None = None

    # CORS - allowed origins for API access
    cors_origins: list[str] = ["http://localhost:3000"]

    # Docker daemon (None = docker.from_env())
    docker_host: str | None = None

    # Workspace containers
    workspace_image: str = "node:20"
    workspace_base_dir: str = "/app"
    metadata_filename: str = ".workspace-metadata.json"
    container_memory_mb: int = 1024
    container_nano_cpus: int = 1_000_000_000
    label_prefix: str = "cloudide"

    # Internal ports published per container, starting at the template's base port
    port_block_size: int = 8

    # Exec timeouts (seconds)
    command_timeout: float = 120.0
    project_init_timeout: float = 300.0
    create_timeout: float = 300.0
    probe_timeout: float = 1.0
    terminal_timeout: float = 3.0
    stop_grace_seconds: int = 10

    # Dev server
    dev_server_log: str = "/tmp/dev-server.log"  # noqa: S108
    log_probe_lines: int = 200
    port_poll_attempts: int = 30
    port_poll_interval: float = 1.0
    preview_host: str = "localhost"

    # Recreate-with-ports salvage cap
    salvage_file_limit: int = 100

    # Idle reclamation
    idle_timeout_minutes: int = 30
    idle_sweep_interval: int = 60
    shutdown_timeout: int = 30

    # Git persistence
    github_token: str | None = Field(default=None, validation_alias="GITHUB_TOKEN")
    git_branch: str = "main"
    git_user_name: str = "CloudIDE User"
    git_user_email: str = "user@cloudide.dev"

    # Registry collaborator
    registry_backend: Literal["memory", "api"] = "memory"
    registry_api_url: str = "http://localhost:3000"
    registry_timeout: float = 10.0

    # Sentry (reads from SENTRY_ env vars, not CLOUDIDE_)
    sentry_dsn: str | None = Field(default=None, validation_alias="SENTRY_DSN")
    sentry_traces_sample_rate: float = Field(
        default=0.2, validation_alias="SENTRY_TRACES_SAMPLE_RATE"
    )

    model_config = {"env_prefix": "CLOUDIDE_", "case_sensitive": False, "populate_by_name": True}

    @property
    def metadata_path(self) -> str:
        """Absolute path of the in-container metadata file."""
        return f"{self.workspace_base_dir.rstrip('/')}/{self.metadata_filename}"


settings = Settings()
