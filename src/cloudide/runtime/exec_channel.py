"""Run commands inside workspace containers and collect their output."""

from __future__ import annotations

import asyncio
import contextlib
import threading
from typing import TYPE_CHECKING, Any

import structlog
from docker.errors import APIError, NotFound

from cloudide.config import settings
from cloudide.errors import ExecFailed, ExecTimeout
from cloudide.models.workspace import ExecResult
from cloudide.runtime.frames import STDIN, FrameDecoder

if TYPE_CHECKING:
    from collections.abc import Sequence

    from docker import DockerClient

logger = structlog.get_logger()

RECV_SIZE = 4096


class ExecChannel:
    """Executes argv-style commands in a container over a raw exec socket.

    Each call creates its own exec session (no TTY, stdout and stderr attached),
    so the working directory of one call never leaks into the next.
    """

    def __init__(self, client: DockerClient, default_timeout: float | None = None) -> None:
        self.client = client
        self.default_timeout = default_timeout or settings.command_timeout

    async def execute(
        self,
        container_id: str,
        argv: Sequence[str],
        working_dir: str | None = None,
        timeout: float | None = None,
        check: bool = False,
        partial_ok: bool = False,
    ) -> str:
        """Run ``argv`` and return its combined stdout/stderr as text.

        Raises:
            ExecFailed: the runtime refused the session, or ``check`` is set and
                the command exited non-zero
            ExecTimeout: no completion within ``timeout`` and ``partial_ok`` is unset
        """
        result = await self.exec_result(
            container_id,
            argv,
            working_dir=working_dir,
            timeout=timeout,
            partial_ok=partial_ok,
        )
        if check and result.exit_code not in (0, None):
            raise ExecFailed(
                f"Command exited with status {result.exit_code}",
                detail=result.output.strip() or None,
            )
        return result.output

    async def exec_result(
        self,
        container_id: str,
        argv: Sequence[str],
        working_dir: str | None = None,
        timeout: float | None = None,
        partial_ok: bool = False,
    ) -> ExecResult:
        """Run ``argv`` and return output plus exit code.

        ``exit_code`` is None when the command was still running at the deadline
        and ``partial_ok`` allowed returning early.
        """
        budget = timeout if timeout is not None else self.default_timeout
        cmd = list(argv)

        try:
            exec_instance = await asyncio.to_thread(
                self.client.api.exec_create,
                container_id,
                cmd=cmd,
                stdin=False,
                stdout=True,
                stderr=True,
                tty=False,
                workdir=working_dir,
            )
            exec_id = exec_instance["Id"]
            raw_socket = await asyncio.to_thread(
                self.client.api.exec_start,
                exec_id,
                socket=True,
            )
        except NotFound as e:
            raise ExecFailed("Container not found", detail=str(e)) from e
        except APIError as e:
            raise ExecFailed("Exec session refused by container runtime", detail=str(e)) from e

        sock = getattr(raw_socket, "_sock", raw_socket)
        payloads: list[bytes] = []
        closed = threading.Event()

        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._drain, sock, payloads, closed),
                timeout=budget,
            )
        except TimeoutError as e:
            closed.set()
            with contextlib.suppress(OSError):
                sock.close()
            output = _decode(payloads)
            logger.warning(
                "Exec timed out",
                container_id=container_id[:12],
                command=cmd[0] if cmd else "",
                timeout=budget,
                partial=partial_ok,
            )
            if partial_ok:
                return ExecResult(output=output, exit_code=None)
            raise ExecTimeout(
                f"Command did not complete within {budget:g}s",
                detail=output.strip() or None,
            ) from e
        finally:
            if not closed.is_set():
                closed.set()
                with contextlib.suppress(OSError):
                    sock.close()

        exit_code = await self._exit_code(exec_id)
        return ExecResult(output=_decode(payloads), exit_code=exit_code)

    @staticmethod
    def _drain(sock: Any, payloads: list[bytes], closed: threading.Event) -> None:
        """Read the socket to EOF, appending decoded frame payloads as they arrive."""
        decoder = FrameDecoder()
        while True:
            try:
                data = sock.recv(RECV_SIZE)
            except OSError:
                if closed.is_set():
                    return
                raise
            if not data:
                break
            payloads.extend(frame.payload for frame in decoder.feed(data) if frame.stream != STDIN)

        if decoder.pending:
            logger.debug("Discarding incomplete trailing frame", pending_bytes=decoder.pending)

    async def _exit_code(self, exec_id: str) -> int | None:
        try:
            info = await asyncio.to_thread(self.client.api.exec_inspect, exec_id)
        except APIError as e:
            logger.debug("Failed to inspect exec session", exec_id=exec_id[:12], error=str(e))
            return None
        exit_code = info.get("ExitCode")
        return int(exit_code) if exit_code is not None else None


def _decode(payloads: list[bytes]) -> str:
    return b"".join(payloads).decode("utf-8", errors="replace")
