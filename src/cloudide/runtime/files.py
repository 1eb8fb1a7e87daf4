"""File access inside a workspace container.

There is no host bind mount: every operation here is a short command run
through the exec channel. Content is moved as base64 passed in positional
arguments so file bodies never go through shell quoting.
"""

from __future__ import annotations

import base64
import posixpath
import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from cloudide.config import settings
from cloudide.errors import ExecFailed, FileNotFound
from cloudide.models.workspace import FileNode, FileStat
from cloudide.validation import resolve_workspace_path

if TYPE_CHECKING:
    from cloudide.models.workspace import ExecResult
    from cloudide.runtime.exec_channel import ExecChannel

logger = structlog.get_logger()

# Largest base64 argument handed to one exec call (kernel caps a single argv string)
WRITE_CHUNK_SIZE = 64 * 1024

WRITE_SCRIPT = 'printf %s "$1" | base64 -d > "$2"'
APPEND_SCRIPT = 'printf %s "$1" | base64 -d >> "$2"'

PRUNED_NAMES = ("node_modules",)
SALVAGE_EXCLUDED = ("node_modules", ".git")

# Only a leading run is trimmed; the same characters later in the file are content
_LEADING_ARTIFACTS = re.compile(r"^[\ufeff\ufffe\ufffd\x00-\x08\x0b\x0c\x0e-\x1f\x7f]+")


def scrub_text(content: str) -> str:
    """Trim byte-order marks and stray control characters from the start of a file."""
    return _LEADING_ARTIFACTS.sub("", content)


def _is_missing(result: ExecResult) -> bool:
    return result.exit_code != 0 and "No such file" in result.output


class ContainerFiles:
    """File operations on one container, rooted at the workspace base directory.

    Paths are project-relative (``src/App.tsx``) or absolute under the base
    directory; anything resolving outside it is rejected.
    """

    def __init__(
        self,
        channel: ExecChannel,
        container_id: str,
        base_dir: str | None = None,
        on_activity: Callable[[], None] | None = None,
    ) -> None:
        self.channel = channel
        self.container_id = container_id
        self.base_dir = posixpath.normpath(base_dir or settings.workspace_base_dir)
        self._on_activity = on_activity

    def resolve(self, path: str) -> str:
        return resolve_workspace_path(self.base_dir, path)

    def relative(self, absolute: str) -> str:
        if absolute == self.base_dir:
            return "."
        return posixpath.relpath(absolute, self.base_dir)

    def _touch(self) -> None:
        if self._on_activity is not None:
            self._on_activity()

    async def _run(self, argv: list[str], target: str) -> ExecResult:
        result = await self.channel.exec_result(self.container_id, argv)
        if _is_missing(result):
            raise FileNotFound(f"No such file or directory: {self.relative(target)}")
        if result.exit_code not in (0, None):
            raise ExecFailed(
                f"{argv[0]} failed for {self.relative(target)}",
                detail=result.output.strip() or None,
            )
        return result

    async def read(self, path: str, scrub: bool = True) -> str:
        target = self.resolve(path)
        result = await self._run(["cat", "--", target], target)
        return scrub_text(result.output) if scrub else result.output

    async def write(self, path: str, content: str) -> None:
        target = self.resolve(path)
        if target == self.base_dir:
            raise ExecFailed("Cannot write to the workspace root")
        self._touch()
        await self.mkdir(posixpath.dirname(target))

        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        chunks = [
            encoded[i : i + WRITE_CHUNK_SIZE] for i in range(0, len(encoded), WRITE_CHUNK_SIZE)
        ] or [""]
        for index, chunk in enumerate(chunks):
            script = WRITE_SCRIPT if index == 0 else APPEND_SCRIPT
            await self._run(["sh", "-c", script, "sh", chunk, target], target)

        logger.debug(
            "File written",
            container_id=self.container_id[:12],
            path=self.relative(target),
            size=len(content),
        )

    async def exists(self, path: str) -> bool:
        target = self.resolve(path)
        result = await self.channel.exec_result(self.container_id, ["test", "-e", target])
        return result.exit_code == 0

    async def delete(self, path: str) -> None:
        target = self.resolve(path)
        if target == self.base_dir:
            raise ExecFailed("Refusing to delete the workspace root")
        if not await self.exists(path):
            raise FileNotFound(f"No such file or directory: {self.relative(target)}")
        self._touch()
        await self._run(["rm", "-rf", "--", target], target)

    async def rename(self, source: str, destination: str) -> None:
        src = self.resolve(source)
        dst = self.resolve(destination)
        self._touch()
        await self.mkdir(posixpath.dirname(dst))
        await self._run(["mv", "--", src, dst], src)

    move = rename

    async def copy(self, source: str, destination: str) -> None:
        src = self.resolve(source)
        dst = self.resolve(destination)
        self._touch()
        await self.mkdir(posixpath.dirname(dst))
        await self._run(["cp", "-r", "--", src, dst], src)

    async def mkdir(self, path: str) -> None:
        target = self.resolve(path)
        await self._run(["mkdir", "-p", "--", target], target)

    async def stat(self, path: str) -> FileStat:
        target = self.resolve(path)
        result = await self._run(["stat", "-c", "%s|%F|%Y", "--", target], target)
        try:
            size, kind, modified = result.output.strip().splitlines()[-1].split("|")
            return FileStat(
                size=int(size),
                is_directory=kind == "directory",
                modified=datetime.fromtimestamp(int(modified), tz=UTC),
            )
        except (IndexError, ValueError) as e:
            raise ExecFailed("Unexpected stat output", detail=result.output.strip()) from e

    async def list_dir(self, path: str = ".") -> list[FileNode]:
        """List the immediate children of a directory."""
        target = self.resolve(path)
        result = await self._run(
            ["find", target, "-mindepth", "1", "-maxdepth", "1", "-printf", "%y %p\\n"],
            target,
        )
        nodes = [
            FileNode(
                name=posixpath.basename(entry),
                type="directory" if kind == "d" else "file",
                path=self.relative(entry),
            )
            for kind, entry in _parse_find_lines(result.output)
        ]
        return sorted(nodes, key=_node_sort_key)

    async def list_file_tree(self, root: str = ".", max_depth: int | None = None) -> FileNode:
        """Build the project tree, skipping ``node_modules`` and dot-prefixed entries."""
        target = self.resolve(root)
        argv = ["find", target, "-mindepth", "1"]
        if max_depth is not None:
            argv += ["-maxdepth", str(max_depth)]
        argv += ["(", "-name", "node_modules", "-o", "-name", ".*", ")", "-prune"]
        argv += ["-o", "-printf", "%y %p\\n"]
        result = await self._run(argv, target)

        root_node = FileNode(
            name=posixpath.basename(target) or target,
            type="directory",
            path=self.relative(target),
            children=[],
        )
        index: dict[str, FileNode] = {target: root_node}

        # find prints parents before their children
        for kind, entry in _parse_find_lines(result.output):
            rel_parts = posixpath.relpath(entry, target).split("/")
            if any(part in PRUNED_NAMES or part.startswith(".") for part in rel_parts):
                continue
            parent = index.get(posixpath.dirname(entry))
            if parent is None:
                continue
            is_dir = kind == "d"
            node = FileNode(
                name=rel_parts[-1],
                type="directory" if is_dir else "file",
                path=self.relative(entry),
                children=[] if is_dir else None,
            )
            if parent.children is None:
                parent.children = []
            parent.children.append(node)
            if is_dir:
                index[entry] = node

        for node in index.values():
            if node.children:
                node.children.sort(key=_node_sort_key)
        return root_node

    async def list_files(
        self,
        limit: int | None = None,
        exclude: tuple[str, ...] = SALVAGE_EXCLUDED,
    ) -> list[str]:
        """Relative paths of regular files, pruning the excluded directory names."""
        argv = ["find", self.base_dir]
        if exclude:
            argv.append("(")
            for i, name in enumerate(exclude):
                if i:
                    argv.append("-o")
                argv += ["-name", name]
            argv += [")", "-prune", "-o"]
        argv += ["-type", "f", "-print"]
        result = await self._run(argv, self.base_dir)

        paths = [
            self.relative(line.strip()) for line in result.output.splitlines() if line.strip()
        ]
        if limit is not None and len(paths) > limit:
            logger.warning(
                "File listing truncated",
                container_id=self.container_id[:12],
                total=len(paths),
                limit=limit,
            )
            paths = paths[:limit]
        return paths


def _parse_find_lines(output: str) -> list[tuple[str, str]]:
    entries = []
    for line in output.splitlines():
        kind, _, entry = line.partition(" ")
        if entry and kind in ("d", "f", "l"):
            entries.append((kind, entry))
    return entries


def _node_sort_key(node: FileNode) -> tuple[int, str]:
    return (0 if node.type == "directory" else 1, node.name.lower())
