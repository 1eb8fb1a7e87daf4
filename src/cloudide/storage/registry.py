"""Workspace registry adapters.

The registry is the durable record of workspaces (owner, template, remote
repository, current container). It is owned by the platform API; the
in-memory backend exists for local development and tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from http import HTTPStatus
from typing import Any

import httpx
import structlog

from cloudide.config import settings
from cloudide.errors import RegistryUnavailable
from cloudide.models.workspace import WorkspaceRecord

logger = structlog.get_logger()


class WorkspaceRegistry(ABC):
    """Durable store of workspace records."""

    @abstractmethod
    async def get(self, workspace_id: str) -> WorkspaceRecord | None:
        """Get a workspace record, or None if it doesn't exist."""

    @abstractmethod
    async def save(self, record: WorkspaceRecord) -> WorkspaceRecord:
        """Create or replace a record. ``updated_at`` is refreshed."""

    @abstractmethod
    async def set_container(
        self, workspace_id: str, container_id: str | None
    ) -> WorkspaceRecord | None:
        """Attach or clear the record's container reference."""

    @abstractmethod
    async def delete(self, workspace_id: str) -> bool:
        """Delete a record. Returns False if it didn't exist."""

    @abstractmethod
    async def list_by_owner(self, owner_id: str) -> list[WorkspaceRecord]:
        """All records owned by ``owner_id``, newest first."""

    async def close(self) -> None:  # noqa: B027
        """Release any held resources."""


class InMemoryWorkspaceRegistry(WorkspaceRegistry):
    """Process-local registry. Records are lost on restart."""

    def __init__(self) -> None:
        self._records: dict[str, WorkspaceRecord] = {}

    async def get(self, workspace_id: str) -> WorkspaceRecord | None:
        record = self._records.get(workspace_id)
        return record.model_copy() if record else None

    async def save(self, record: WorkspaceRecord) -> WorkspaceRecord:
        stored = record.model_copy(update={"updated_at": datetime.now(UTC)})
        self._records[record.id] = stored
        return stored.model_copy()

    async def set_container(
        self, workspace_id: str, container_id: str | None
    ) -> WorkspaceRecord | None:
        record = self._records.get(workspace_id)
        if record is None:
            return None
        return await self.save(record.model_copy(update={"container_id": container_id}))

    async def delete(self, workspace_id: str) -> bool:
        return self._records.pop(workspace_id, None) is not None

    async def list_by_owner(self, owner_id: str) -> list[WorkspaceRecord]:
        records = [r.model_copy() for r in self._records.values() if r.owner_id == owner_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)


class APIWorkspaceRegistry(WorkspaceRegistry):
    """Registry backed by the platform API's internal workspace endpoints."""

    def __init__(
        self,
        base_url: str | None = None,
        service_token: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        headers = {}
        token = service_token or settings.internal_service_token
        if token:
            headers["X-Internal-Service-Token"] = token
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.registry_api_url,
            timeout=httpx.Timeout(timeout or settings.registry_timeout, connect=5.0),
            headers=headers,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("Timeout calling workspace registry", method=method, path=path)
            raise RegistryUnavailable("Workspace registry timed out") from e
        except httpx.HTTPError as e:
            logger.warning(
                "Could not reach workspace registry",
                method=method,
                path=path,
                error=str(e),
            )
            raise RegistryUnavailable("Workspace registry unreachable", detail=str(e)) from e

        if response.status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
            raise RegistryUnavailable(
                f"Workspace registry returned {response.status_code}",
                detail=response.text[:200] if response.text else None,
            )
        return response

    def _check(self, response: httpx.Response) -> None:
        if response.status_code >= HTTPStatus.BAD_REQUEST:
            raise RegistryUnavailable(
                f"Workspace registry rejected request with {response.status_code}",
                detail=response.text[:200] if response.text else None,
            )

    async def get(self, workspace_id: str) -> WorkspaceRecord | None:
        response = await self._request("GET", f"/api/internal/workspaces/{workspace_id}")
        if response.status_code == HTTPStatus.NOT_FOUND:
            return None
        self._check(response)
        return WorkspaceRecord.model_validate(response.json())

    async def save(self, record: WorkspaceRecord) -> WorkspaceRecord:
        payload = record.model_copy(update={"updated_at": datetime.now(UTC)})
        response = await self._request(
            "PUT",
            f"/api/internal/workspaces/{record.id}",
            json=payload.model_dump(mode="json"),
        )
        self._check(response)
        return WorkspaceRecord.model_validate(response.json())

    async def set_container(
        self, workspace_id: str, container_id: str | None
    ) -> WorkspaceRecord | None:
        response = await self._request(
            "PATCH",
            f"/api/internal/workspaces/{workspace_id}",
            json={"container_id": container_id},
        )
        if response.status_code == HTTPStatus.NOT_FOUND:
            return None
        self._check(response)
        return WorkspaceRecord.model_validate(response.json())

    async def delete(self, workspace_id: str) -> bool:
        response = await self._request("DELETE", f"/api/internal/workspaces/{workspace_id}")
        if response.status_code == HTTPStatus.NOT_FOUND:
            return False
        self._check(response)
        return True

    async def list_by_owner(self, owner_id: str) -> list[WorkspaceRecord]:
        response = await self._request(
            "GET", "/api/internal/workspaces", params={"owner_id": owner_id}
        )
        self._check(response)
        return [WorkspaceRecord.model_validate(item) for item in response.json()["workspaces"]]

    async def close(self) -> None:
        await self._client.aclose()


def create_registry() -> WorkspaceRegistry:
    """Build the registry backend selected by settings."""
    if settings.registry_backend == "api":
        logger.info("Using API workspace registry", url=settings.registry_api_url)
        return APIWorkspaceRegistry()
    logger.info("Using in-memory workspace registry")
    return InMemoryWorkspaceRegistry()
