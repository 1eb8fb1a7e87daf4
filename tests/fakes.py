"""In-process stand-in for the Docker daemon.

Exec sessions are interpreted against an in-memory filesystem per container,
with enough of git, npm, find and the dev server scripts to drive the
orchestrator end to end. Output comes back over a socket-like object in the
daemon's multiplexed frame format.
"""

from __future__ import annotations

import base64
import fnmatch
import posixpath
import re
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import unquote, urlsplit

from docker.errors import APIError, ImageNotFound, NotFound

from cloudide.managers.git_bridge import (
    CLEAR_DIR_SCRIPT,
    ENSURE_GIT_SCRIPT,
    FETCH_RESET_SCRIPT,
    PUSH_SCRIPT,
)
from cloudide.managers.port_resolver import (
    CONFIRM_PORT_SCRIPT,
    DEV_START_SCRIPT,
    KILL_SCRIPT,
    LOG_PROBE_SCRIPT,
    LOG_TAIL_SCRIPT,
)
from cloudide.runtime.files import APPEND_SCRIPT, WRITE_SCRIPT
from cloudide.runtime.frames import STDERR, STDOUT, encode_frame

BASE_DIR = "/app"
METADATA_PATH = "/app/.workspace-metadata.json"
MTIME = 1_700_000_000

VITE_READY_LOG = (
    "\n  VITE v5.4.0  ready in 312 ms\n\n"
    "  ➜  Local:   http://localhost:5173/\n"
    "  ➜  Network: http://172.17.0.2:5173/\n"
)


@dataclass
class Outcome:
    output: str | bytes = ""
    exit_code: int = 0
    hang: bool = False

    def data(self) -> bytes:
        if isinstance(self.output, bytes):
            return self.output
        return self.output.encode("utf-8")


CommandHook = Callable[["FakeContainer", list[str], "str | None"], "Outcome | None"]


class FakeSocket:
    """Hands out pre-framed bytes in uneven chunks, then EOF."""

    def __init__(self, data: bytes, chunk: int = 1000) -> None:
        self._data = data
        self._pos = 0
        self._chunk = chunk
        self.closed = False

    def recv(self, size: int) -> bytes:
        n = min(size, self._chunk)
        piece = self._data[self._pos : self._pos + n]
        self._pos += len(piece)
        return piece

    def close(self) -> None:
        self.closed = True


class HangingSocket(FakeSocket):
    """Sends its data, then blocks until closed like a command that never exits."""

    def __init__(self, data: bytes) -> None:
        super().__init__(data)
        self._released = threading.Event()

    def recv(self, size: int) -> bytes:
        piece = super().recv(size)
        if piece:
            return piece
        self._released.wait(timeout=10)
        raise OSError("socket closed")

    def close(self) -> None:
        super().close()
        self._released.set()


@dataclass
class FakeRepo:
    branch: str = "master"
    head: dict[str, bytes] | None = None
    commits: list[str] = field(default_factory=list)
    origin: str | None = None
    config: dict[str, str] = field(default_factory=dict)


class FakeGitRemote:
    """Hosted repositories keyed by plain https URL, guarded by one access token."""

    def __init__(self, token: str | None = "remote-token") -> None:
        self.token = token
        self.repos: dict[str, dict[str, dict[str, bytes]]] = {}
        self.pushes = 0

    def create_repo(self, url: str, branches: dict[str, dict[str, bytes]] | None = None) -> None:
        self.repos[url] = branches or {}

    def files(self, url: str, branch: str = "main") -> dict[str, str]:
        return {path: body.decode() for path, body in self.repos[url][branch].items()}

    def authorize(self, auth_url: str) -> tuple[str, Outcome | None]:
        parts = urlsplit(auth_url)
        host = parts.hostname or ""
        if parts.port:
            host = f"{host}:{parts.port}"
        plain = f"{parts.scheme}://{host}{parts.path}"
        token = unquote(parts.password or "")
        if self.token and token != self.token:
            return plain, Outcome(
                f"remote: Invalid username or password.\n"
                f"fatal: unable to access '{auth_url}/': "
                "The requested URL returned error: 403\n",
                128,
            )
        if plain not in self.repos:
            return plain, Outcome(
                f"remote: Repository not found.\nfatal: repository '{plain}/' not found\n", 128
            )
        return plain, None


def _port_table(ports: dict[str, int] | None) -> dict[str, Any]:
    if not ports:
        return {}
    return {
        key: [{"HostIp": "0.0.0.0", "HostPort": str(host_port)}]  # noqa: S104
        for key, host_port in ports.items()
    }


def _tail_lines(text: str, count: int) -> list[str]:
    lines = text.splitlines()
    return lines[-count:] if count else []


class FakeContainer:
    def __init__(
        self,
        client: FakeDockerClient,
        name: str,
        image: str,
        labels: dict[str, str] | None = None,
        ports: dict[str, int] | None = None,
        status: str = "running",
    ) -> None:
        self.client = client
        self.id = uuid.uuid4().hex + uuid.uuid4().hex
        self.name = name
        self.image = image
        self.labels = labels or {}
        self.status = status
        self.run_kwargs: dict[str, Any] = {}
        self.files: dict[str, bytes] = {}
        self.dirs: set[str] = {"/", BASE_DIR, "/tmp"}  # noqa: S108
        self.repo: FakeRepo | None = None
        self.processes: list[str] = []
        self.removed = False
        self.attrs: dict[str, Any] = {"NetworkSettings": {"Ports": _port_table(ports)}}

    # --- docker-py surface ---

    def reload(self) -> None:
        if self.removed:
            raise NotFound(f"No such container: {self.name}")

    def start(self) -> None:
        self.reload()
        self.status = "running"

    def stop(self, timeout: int = 10) -> None:
        self.reload()
        self.status = "exited"
        self.processes.clear()

    def remove(self, force: bool = False) -> None:
        self.reload()
        self.removed = True
        self.status = "removing"
        self.client.forget(self)

    # --- Filesystem helpers for tests ---

    def mkdirs(self, path: str) -> None:
        while path not in self.dirs:
            self.dirs.add(path)
            path = posixpath.dirname(path)

    def put(self, path: str, content: str | bytes) -> None:
        if not path.startswith("/"):
            path = f"{BASE_DIR}/{path}"
        self.mkdirs(posixpath.dirname(path))
        self.files[path] = content.encode() if isinstance(content, str) else content

    def text(self, path: str) -> str:
        if not path.startswith("/"):
            path = f"{BASE_DIR}/{path}"
        return self.files[path].decode()

    def exists(self, path: str) -> bool:
        return path in self.files or path in self.dirs

    def _entries_under(self, path: str) -> list[str]:
        prefix = path.rstrip("/") + "/"
        return [p for p in set(self.files) | self.dirs if p.startswith(prefix)]

    def remove_tree(self, path: str) -> None:
        for entry in [*self._entries_under(path), path]:
            self.files.pop(entry, None)
            self.dirs.discard(entry)
        if f"{BASE_DIR}/.git" not in self.dirs:
            self.repo = None

    def copy_tree(self, src: str, dst: str) -> None:
        if src in self.files:
            self.files[dst] = self.files[src]
            return
        self.mkdirs(dst)
        for entry in self._entries_under(src):
            target = dst + entry[len(src) :]
            if entry in self.dirs:
                self.mkdirs(target)
            else:
                self.files[target] = self.files[entry]

    def snapshot(self) -> dict[str, bytes]:
        """Tracked project files, as git would see them."""
        snap = {}
        for path, body in self.files.items():
            if not path.startswith(BASE_DIR + "/") or path == METADATA_PATH:
                continue
            rel = path[len(BASE_DIR) + 1 :]
            if rel.startswith((".git/", "node_modules/")):
                continue
            snap[rel] = body
        return snap

    def materialize(self, snapshot: dict[str, bytes]) -> None:
        for rel, body in snapshot.items():
            self.put(f"{BASE_DIR}/{rel}", body)

    # --- Command interpreter ---

    def execute(self, argv: list[str], workdir: str | None) -> Outcome:
        cmd = argv[0]
        if cmd == "sh" and len(argv) >= 3 and argv[1] == "-c":
            return self._script(argv[2], argv[4:])
        handler = getattr(self, f"_cmd_{cmd}", None)
        if handler is None:
            return Outcome(f"sh: 1: {cmd}: not found\n", 127)
        return handler(argv[1:], workdir)

    def _cmd_cat(self, args: list[str], workdir: str | None) -> Outcome:
        path = args[-1]
        if path in self.dirs:
            return Outcome(f"cat: {path}: Is a directory\n", 1)
        if path not in self.files:
            return Outcome(f"cat: {path}: No such file or directory\n", 1)
        return Outcome(self.files[path])

    def _cmd_test(self, args: list[str], workdir: str | None) -> Outcome:
        return Outcome(exit_code=0 if self.exists(args[-1]) else 1)

    def _cmd_rm(self, args: list[str], workdir: str | None) -> Outcome:
        self.remove_tree(args[-1])
        return Outcome()

    def _cmd_mv(self, args: list[str], workdir: str | None) -> Outcome:
        src, dst = args[-2], args[-1]
        if not self.exists(src):
            return Outcome(f"mv: cannot stat '{src}': No such file or directory\n", 1)
        self.copy_tree(src, dst)
        self.remove_tree(src)
        return Outcome()

    def _cmd_cp(self, args: list[str], workdir: str | None) -> Outcome:
        src, dst = args[-2], args[-1]
        if not self.exists(src):
            return Outcome(f"cp: cannot stat '{src}': No such file or directory\n", 1)
        self.copy_tree(src, dst)
        return Outcome()

    def _cmd_mkdir(self, args: list[str], workdir: str | None) -> Outcome:
        path = args[-1]
        if path in self.files:
            return Outcome(f"mkdir: cannot create directory '{path}': File exists\n", 1)
        self.mkdirs(path)
        return Outcome()

    def _cmd_stat(self, args: list[str], workdir: str | None) -> Outcome:
        path = args[-1]
        if path in self.dirs:
            return Outcome(f"4096|directory|{MTIME}\n")
        if path in self.files:
            return Outcome(f"{len(self.files[path])}|regular file|{MTIME}\n")
        return Outcome(f"stat: cannot statx '{path}': No such file or directory\n", 1)

    def _cmd_find(self, args: list[str], workdir: str | None) -> Outcome:
        target = args[0]
        if not self.exists(target):
            return Outcome(f"find: '{target}': No such file or directory\n", 1)
        rest = args[1:]
        mindepth = int(rest[rest.index("-mindepth") + 1]) if "-mindepth" in rest else 0
        maxdepth = int(rest[rest.index("-maxdepth") + 1]) if "-maxdepth" in rest else None
        pruned = [rest[i + 1] for i, arg in enumerate(rest) if arg == "-name"]
        files_only = "-type" in rest
        printf = "-printf" in rest

        lines = []
        prefix = target.rstrip("/") + "/"
        for path in sorted(set(self.files) | self.dirs):
            if path == target:
                parts: list[str] = []
            elif path.startswith(prefix):
                parts = path[len(prefix) :].split("/")
            else:
                continue
            if any(fnmatch.fnmatch(part, pattern) for part in parts for pattern in pruned):
                continue
            depth = len(parts)
            if depth < mindepth or (maxdepth is not None and depth > maxdepth):
                continue
            is_dir = path in self.dirs
            if files_only and is_dir:
                continue
            lines.append(f"{'d' if is_dir else 'f'} {path}" if printf else path)
        return Outcome("".join(f"{line}\n" for line in lines))

    def _cmd_npm(self, args: list[str], workdir: str | None) -> Outcome:
        cwd = workdir or BASE_DIR
        if f"{cwd}/package.json" not in self.files:
            return Outcome("npm ERR! enoent Could not read package.json\n", 254)
        self.put(f"{cwd}/node_modules/.package-lock.json", "{}")
        return Outcome("added 42 packages in 3s\n")

    def _cmd_bash(self, args: list[str], workdir: str | None) -> Outcome:
        command = args[1]
        if command.startswith("echo "):
            return Outcome(command[5:] + "\n")
        if command == "pwd":
            return Outcome(f"{workdir}\n")
        if command.startswith("sleep"):
            return Outcome("started\n", hang=True)
        return Outcome(f"bash: line 1: {command.split()[0]}: command not found\n", 127)

    # --- git ---

    def _repo(self) -> FakeRepo | None:
        return self.repo if f"{BASE_DIR}/.git" in self.dirs else None

    def _changes(self, repo: FakeRepo) -> list[str]:
        snap = self.snapshot()
        head = repo.head or {}
        return sorted(p for p in set(snap) | set(head) if snap.get(p) != head.get(p))

    def _cmd_git(self, args: list[str], workdir: str | None) -> Outcome:
        sub = args[0]
        if sub == "clone":
            return self._git_clone(args[1:])
        if sub == "init":
            self.mkdirs(f"{BASE_DIR}/.git")
            if self.repo is None:
                self.repo = FakeRepo()
            return Outcome("Initialized empty Git repository in /app/.git/\n")

        repo = self._repo()
        if repo is None:
            return Outcome(
                "fatal: not a git repository (or any of the parent directories): .git\n", 128
            )
        if sub == "config":
            repo.config[args[1]] = args[2]
            return Outcome()
        if sub == "add":
            return Outcome()
        if sub == "status":
            return Outcome("".join(f" M {path}\n" for path in self._changes(repo)))
        if sub == "commit":
            if not self._changes(repo):
                return Outcome("nothing to commit, working tree clean\n", 1)
            if "user.name" not in repo.config or "user.email" not in repo.config:
                return Outcome(
                    "Author identity unknown\n\n*** Please tell me who you are.\n\n"
                    "fatal: unable to auto-detect email address (got 'root@container.(none)')\n",
                    128,
                )
            repo.head = self.snapshot()
            repo.commits.append(args[2])
            return Outcome(f"[{repo.branch} abc1234] {args[2]}\n")
        if sub == "rev-parse":
            return Outcome(f"{repo.branch}\n")
        if sub == "log":
            if not repo.commits:
                return Outcome(
                    f"fatal: your current branch '{repo.branch}' does not have any commits yet\n",
                    128,
                )
            return Outcome(f"abc1234 {repo.commits[-1]}\n")
        if sub == "remote" and args[1] == "set-url":
            repo.origin = args[3]
            return Outcome()
        return Outcome(f"git: '{sub}' is not a git command.\n", 1)

    def _git_clone(self, args: list[str]) -> Outcome:
        branch, auth_url, dest = args[1], args[2], args[3]
        plain, failure = self.client.remote.authorize(auth_url)
        if failure:
            return failure
        branches = self.client.remote.repos[plain]
        if branch not in branches:
            return Outcome(f"fatal: Remote branch {branch} not found in upstream origin\n", 128)
        if self._entries_under(dest):
            return Outcome(
                f"fatal: destination path '{dest}' already exists and is not an empty directory.\n",
                128,
            )
        self.materialize(branches[branch])
        self.mkdirs(f"{dest}/.git")
        self.repo = FakeRepo(
            branch=branch, head=dict(branches[branch]), commits=["Cloned"], origin=auth_url
        )
        return Outcome(f"Cloning into '{dest}'...\n")

    def _push(self, auth_url: str, branch: str, plain_url: str) -> Outcome:
        repo = self._repo()
        if repo is None:
            return Outcome("fatal: not a git repository\n", 128)
        _, failure = self.client.remote.authorize(auth_url)
        repo.origin = plain_url
        if failure:
            return failure
        if repo.head is None:
            return Outcome(f"error: src refspec {branch} does not match any\n", 1)
        repo.branch = branch
        self.client.remote.repos[plain_url][branch] = dict(repo.head)
        self.client.remote.pushes += 1
        return Outcome(
            f"To {plain_url}\n + abc1234...def5678 {branch} -> {branch} (forced update)\n"
        )

    def _fetch_reset(self, auth_url: str, branch: str, plain_url: str) -> Outcome:
        repo = self._repo()
        if repo is None:
            return Outcome("fatal: not a git repository\n", 128)
        _, failure = self.client.remote.authorize(auth_url)
        repo.origin = plain_url
        if failure:
            return failure
        branches = self.client.remote.repos[plain_url]
        if branch not in branches:
            return Outcome(f"fatal: couldn't find remote ref {branch}\n", 128)
        self.materialize(branches[branch])
        repo.head = dict(branches[branch])
        repo.branch = branch
        return Outcome("HEAD is now at abc1234 Remote tip\n")

    # --- sh -c scripts ---

    def _script(self, script: str, args: list[str]) -> Outcome:  # noqa: PLR0911
        if script in (WRITE_SCRIPT, APPEND_SCRIPT):
            payload, target = args
            if posixpath.dirname(target) not in self.dirs:
                return Outcome(f"sh: 1: cannot create {target}: Directory nonexistent\n", 2)
            data = base64.b64decode(payload)
            if script == APPEND_SCRIPT:
                data = self.files.get(target, b"") + data
            self.files[target] = data
            return Outcome()
        if script == ENSURE_GIT_SCRIPT:
            return Outcome()
        if script == CLEAR_DIR_SCRIPT:
            for entry in self._entries_under(args[0]):
                self.files.pop(entry, None)
                self.dirs.discard(entry)
            self.repo = None
            return Outcome()
        if script == PUSH_SCRIPT:
            return self._push(*args)
        if script == FETCH_RESET_SCRIPT:
            return self._fetch_reset(*args)
        if script == DEV_START_SCRIPT:
            command, log_file = args
            self.processes.append(command)
            self.files[log_file] = self.client.dev_server_log.encode()
            return Outcome()
        if script == LOG_TAIL_SCRIPT:
            lines, log_file = args
            text = self.files.get(log_file, b"").decode()
            return Outcome("".join(f"{line}\n" for line in _tail_lines(text, int(lines))))
        if script == LOG_PROBE_SCRIPT:
            lines, log_file, pattern, count = args
            text = self.files.get(log_file, b"").decode()
            matches = [
                line
                for line in _tail_lines(text, int(lines))
                if re.search(pattern, line, re.IGNORECASE)
            ]
            return Outcome("".join(f"{line}\n" for line in matches[-int(count) :]))
        if script == CONFIRM_PORT_SCRIPT:
            lines, log_file, pattern = args
            text = self.files.get(log_file, b"").decode()
            count = sum(1 for line in _tail_lines(text, int(lines)) if re.search(pattern, line))
            return Outcome(f"{count}\n")
        if script == KILL_SCRIPT:
            self.processes = [p for p in self.processes if args[0] not in p]
            return Outcome()
        return Outcome(f"sh: unsupported script {script!r}\n", 2)


class FakeImages:
    def __init__(self, client: FakeDockerClient) -> None:
        self.client = client

    def get(self, name: str) -> str:
        if name not in self.client.available_images:
            raise ImageNotFound(f"No such image: {name}")
        return name

    def pull(self, name: str, *args: Any, **kwargs: Any) -> str:
        if self.client.pull_error:
            raise APIError(self.client.pull_error)
        self.client.available_images.add(name)
        self.client.pulls.append(name)
        return name


class FakeContainers:
    def __init__(self, client: FakeDockerClient) -> None:
        self.client = client

    def get(self, key: str) -> FakeContainer:
        container = self.client.find(key)
        if container is None:
            raise NotFound(f"No such container: {key}")
        return container

    def run(
        self,
        image: str,
        detach: bool = False,
        name: str | None = None,
        labels: dict[str, str] | None = None,
        ports: dict[str, int] | None = None,
        **kwargs: Any,
    ) -> FakeContainer:
        if self.client.run_delay:
            time.sleep(self.client.run_delay)
        if self.client.run_error:
            raise APIError(self.client.run_error)
        name = name or uuid.uuid4().hex[:12]
        if self.client.find(name) is not None:
            raise APIError(f'Conflict. The container name "/{name}" is already in use')
        container = FakeContainer(self.client, name, image, labels=labels, ports=ports)
        container.run_kwargs = kwargs
        self.client.containers_by_name[name] = container
        return container

    def list(
        self,
        filters: dict[str, str] | None = None,
        all: bool = False,  # noqa: A002
    ) -> list[FakeContainer]:
        label = (filters or {}).get("label")
        return [
            c
            for c in self.client.containers_by_name.values()
            if (all or c.status == "running") and (label is None or label in c.labels)
        ]


class FakeAPI:
    def __init__(self, client: FakeDockerClient) -> None:
        self.client = client
        self._execs: dict[str, tuple[FakeContainer, list[str], str | None]] = {}
        self._exit_codes: dict[str, int | None] = {}

    def exec_create(self, container: str, cmd: list[str], **kwargs: Any) -> dict[str, str]:
        target = self.client.find(container)
        if target is None:
            raise NotFound(f"No such container: {container}")
        if target.status != "running":
            raise APIError(f"Container {container} is not running")
        exec_id = uuid.uuid4().hex
        self._execs[exec_id] = (target, list(cmd), kwargs.get("workdir"))
        return {"Id": exec_id}

    def exec_start(self, exec_id: str, socket: bool = False, **kwargs: Any) -> FakeSocket:
        container, argv, workdir = self._execs[exec_id]
        self.client.commands.append(argv)
        outcome = None
        for hook in self.client.hooks:
            outcome = hook(container, argv, workdir)
            if outcome is not None:
                break
        if outcome is None:
            outcome = container.execute(argv, workdir)

        data = outcome.data()
        stream = STDOUT if outcome.exit_code == 0 else STDERR
        framed = encode_frame(stream, data) if data else b""
        if outcome.hang:
            self._exit_codes[exec_id] = None
            return HangingSocket(framed)
        self._exit_codes[exec_id] = outcome.exit_code
        return FakeSocket(framed)

    def exec_inspect(self, exec_id: str) -> dict[str, Any]:
        exit_code = self._exit_codes.get(exec_id)
        return {"ExitCode": exit_code, "Running": exit_code is None}


class FakeDockerClient:
    """Just enough of ``docker.DockerClient`` for the orchestrator."""

    def __init__(self) -> None:
        self.images = FakeImages(self)
        self.containers = FakeContainers(self)
        self.api = FakeAPI(self)
        self.remote = FakeGitRemote()
        self.containers_by_name: dict[str, FakeContainer] = {}
        self.available_images: set[str] = {"node:20"}
        self.pulls: list[str] = []
        self.pull_error: str | None = None
        self.run_error: str | None = None
        self.run_delay = 0.0
        self.dev_server_log = VITE_READY_LOG
        self.hooks: list[CommandHook] = []
        self.commands: list[list[str]] = []
        self.closed = False

    def find(self, key: str) -> FakeContainer | None:
        if key in self.containers_by_name:
            return self.containers_by_name[key]
        for container in self.containers_by_name.values():
            if container.id == key:
                return container
        return None

    def forget(self, container: FakeContainer) -> None:
        if self.containers_by_name.get(container.name) is container:
            del self.containers_by_name[container.name]

    def add_container(
        self,
        name: str,
        ports: dict[str, int] | None = None,
        labels: dict[str, str] | None = None,
        status: str = "running",
    ) -> FakeContainer:
        container = FakeContainer(self, name, "node:20", labels=labels, ports=ports, status=status)
        self.containers_by_name[name] = container
        return container

    def fail_when(self, predicate: Callable[[list[str]], bool], outcome: Outcome) -> None:
        """Answer every command matching ``predicate`` with ``outcome``."""
        self.hooks.append(lambda _c, argv, _w: outcome if predicate(argv) else None)

    def ran(self, predicate: Callable[[list[str]], bool]) -> list[list[str]]:
        return [argv for argv in self.commands if predicate(argv)]

    def close(self) -> None:
        self.closed = True
