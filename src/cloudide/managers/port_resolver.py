"""Dev server startup and port discovery.

The dev server is launched detached with its output in a log file. Its port is
found by grepping that log for framework readiness lines and mapping the
internal port through the container's published port table.
"""

from __future__ import annotations

import asyncio
import re
from typing import TYPE_CHECKING

import structlog

from cloudide.config import settings
from cloudide.errors import NoActiveServer, PortNotPublished
from cloudide.models.workspace import PortMapping, PortResolution
from cloudide.validation import ValidationError

if TYPE_CHECKING:
    from cloudide.managers.container_manager import ContainerManager
    from cloudide.runtime.exec_channel import ExecChannel

logger = structlog.get_logger()

DEV_START_SCRIPT = 'nohup sh -c "$1" > "$2" 2>&1 &'
LOG_PROBE_SCRIPT = 'tail -n "$1" "$2" 2>/dev/null | grep -E -i "$3" | tail -n "$4"'
LOG_TAIL_SCRIPT = 'tail -n "$1" "$2" 2>/dev/null || true'
KILL_SCRIPT = 'pkill -f "$1" || true'
CONFIRM_PORT_SCRIPT = 'tail -n "$1" "$2" 2>/dev/null | grep -c -E "$3" || true'

# grep -E pattern selecting candidate readiness lines
READY_LINE_PATTERN = (
    r"localhost:[0-9]+|127\.0\.0\.1:[0-9]+|0\.0\.0\.0:[0-9]+"
    r"|listening on|server (running |started )?on|port [0-9]+"
)

# How many matching lines to bring back for parsing
PROBE_MATCH_LINES = 5

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")

# Port extractors, most specific first
_PORT_PATTERNS = (
    re.compile(r"(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::\]):(\d{2,5})"),
    re.compile(r"listening on\D*?(\d{2,5})\b", re.IGNORECASE),
    re.compile(r"server (?:running |started )?on\D*?(\d{2,5})\b", re.IGNORECASE),
    re.compile(r"\bport\s+(\d{2,5})\b", re.IGNORECASE),
)


def extract_port(line: str) -> int | None:
    """Pull a port number out of one dev server log line."""
    clean = _ANSI_ESCAPE.sub("", line)
    for pattern in _PORT_PATTERNS:
        match = pattern.search(clean)
        if match:
            return int(match.group(1))
    return None


def detect_port(log_lines: list[str]) -> int | None:
    """Port announced by the most recent readiness line, if any."""
    for line in reversed(log_lines):
        port = extract_port(line)
        if port is not None:
            return port
    return None


class PortResolver:
    """Starts dev servers and works out where they can be reached."""

    def __init__(self, containers: ContainerManager, channel: ExecChannel) -> None:
        self.containers = containers
        self.channel = channel
        # workspace_id -> (container_id, resolution)
        self._cache: dict[str, tuple[str, PortResolution]] = {}

    def invalidate(self, workspace_id: str) -> None:
        self._cache.pop(workspace_id, None)

    def cached(self, workspace_id: str, container_id: str) -> PortResolution | None:
        entry = self._cache.get(workspace_id)
        if entry is None or entry[0] != container_id:
            return None
        return entry[1]

    def _preview(self, mapping: PortMapping) -> PortResolution:
        return PortResolution(
            internal_port=mapping.internal_port,
            host_port=mapping.host_port,
            preview_url=f"http://{settings.preview_host}:{mapping.host_port}",
        )

    async def start_dev_server(self, workspace_id: str, command: str | None = None) -> str:
        """Launch the dev server detached and return the command used.

        Without an explicit command the one recorded in the workspace metadata
        is used. The log file is truncated by the redirect on every start.
        """
        container = await self.containers.ensure_running(workspace_id)
        if command is None:
            metadata = await self.containers.read_metadata(container.id)
            command = metadata.server_config.dev_command if metadata else None
        if not command:
            raise ValidationError("No dev server command configured for this workspace")

        self.invalidate(workspace_id)
        await self.channel.execute(
            container.id,
            ["sh", "-c", DEV_START_SCRIPT, "sh", command, settings.dev_server_log],
            working_dir=settings.workspace_base_dir,
            timeout=settings.terminal_timeout,
            check=True,
        )
        logger.info(
            "Dev server started",
            workspace_id=workspace_id,
            command=command[:100],
            log_file=settings.dev_server_log,
        )
        return command

    async def stop_dev_server(self, workspace_id: str, process_pattern: str) -> None:
        container = await self.containers.ensure_running(workspace_id)
        self.invalidate(workspace_id)
        await self.channel.execute(
            container.id,
            ["sh", "-c", KILL_SCRIPT, "sh", process_pattern],
            timeout=settings.terminal_timeout,
        )
        logger.info("Dev server stopped", workspace_id=workspace_id, pattern=process_pattern)

    async def tail_logs(self, workspace_id: str, lines: int | None = None) -> str:
        container = await self.containers.ensure_running(workspace_id)
        return await self.channel.execute(
            container.id,
            [
                "sh",
                "-c",
                LOG_TAIL_SCRIPT,
                "sh",
                str(lines or settings.log_probe_lines),
                settings.dev_server_log,
            ],
            timeout=2.0,
            partial_ok=True,
        )

    async def _probe_log(self, container_id: str) -> list[str]:
        output = await self.channel.execute(
            container_id,
            [
                "sh",
                "-c",
                LOG_PROBE_SCRIPT,
                "sh",
                str(settings.log_probe_lines),
                settings.dev_server_log,
                READY_LINE_PATTERN,
                str(PROBE_MATCH_LINES),
            ],
            timeout=settings.probe_timeout,
            partial_ok=True,
        )
        return [line for line in output.splitlines() if line.strip()]

    async def _log_mentions(self, container_id: str, port: int) -> bool:
        """Whether a served URL on ``port`` appears in the recent log.

        Only ``host:port`` forms count, so "Port 5173 is in use" lines don't.
        """
        output = await self.channel.execute(
            container_id,
            [
                "sh",
                "-c",
                CONFIRM_PORT_SCRIPT,
                "sh",
                str(settings.log_probe_lines),
                settings.dev_server_log,
                f":{port}([^0-9]|$)",
            ],
            timeout=settings.probe_timeout,
            partial_ok=True,
        )
        count = output.strip().splitlines()[-1] if output.strip() else "0"
        return count.isdigit() and int(count) > 0

    async def resolve(self, workspace_id: str, use_cache: bool = True) -> PortResolution:
        """Find the host port of the workspace's running dev server.

        Raises:
            NoActiveServer: nothing in the log announces a port yet
            PortNotPublished: a port was announced but the container doesn't publish it
        """
        container = await self.containers.ensure_running(workspace_id)
        if use_cache:
            hit = self.cached(workspace_id, container.id)
            if hit is not None:
                return hit

        published = await self.containers.get_port_mappings(workspace_id)
        mappings = {m.internal_port: m for m in published}

        # Fast path: the configured default port is published and shows up in the log
        metadata = await self.containers.read_metadata(container.id)
        if metadata is not None:
            default_port = metadata.server_config.default_port
            if default_port in mappings and await self._log_mentions(container.id, default_port):
                return self._remember(workspace_id, container.id, mappings[default_port])

        log_lines = await self._probe_log(container.id)
        if not log_lines:
            raise NoActiveServer("No active dev server found")

        port = detect_port(log_lines)
        if port is None:
            raise NoActiveServer("No active dev server found")
        if port not in mappings:
            raise PortNotPublished(
                f"Dev server is listening on port {port} but the container does not publish it",
                detail=f"published: {sorted(mappings)}",
            )
        return self._remember(workspace_id, container.id, mappings[port])

    def _remember(
        self, workspace_id: str, container_id: str, mapping: PortMapping
    ) -> PortResolution:
        resolution = self._preview(mapping)
        self._cache[workspace_id] = (container_id, resolution)
        logger.debug(
            "Dev server port resolved",
            workspace_id=workspace_id,
            internal_port=resolution.internal_port,
            host_port=resolution.host_port,
        )
        return resolution

    async def wait_for_server(
        self,
        workspace_id: str,
        attempts: int | None = None,
        interval: float | None = None,
    ) -> PortResolution:
        """Poll ``resolve`` until the dev server announces a port."""
        attempts = attempts or settings.port_poll_attempts
        interval = settings.port_poll_interval if interval is None else interval
        for attempt in range(attempts):
            try:
                return await self.resolve(workspace_id, use_cache=False)
            except NoActiveServer:
                if attempt == attempts - 1:
                    raise
                await asyncio.sleep(interval)
        raise NoActiveServer("No active dev server found")
