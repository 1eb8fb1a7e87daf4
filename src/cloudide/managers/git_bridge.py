"""Git-based persistence for workspace files.

The remote repository is a backing store, not a collaboration target: pushes
are forced and resumes hard-reset to the remote tip. Only one writer (the
workspace container) may push to a given remote at a time.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING
from urllib.parse import quote, urlsplit, urlunsplit

import structlog

from cloudide.config import settings
from cloudide.errors import (
    CloneFailed,
    ExecFailed,
    OrchestratorError,
    PushRejected,
    RemoteAuthFailed,
)
from cloudide.models.workspace import CloneResult, GitStatus
from cloudide.validation import ValidationError

if TYPE_CHECKING:
    from cloudide.models.workspace import ExecResult
    from cloudide.runtime.files import ContainerFiles

logger = structlog.get_logger()

# Validate git URL format to prevent injection
GIT_URL_PATTERN = re.compile(
    r"^https?://[a-zA-Z0-9][-a-zA-Z0-9]*(\.[a-zA-Z0-9][-a-zA-Z0-9]*)+(:\d+)?/[\w./-]+$",
)

ENSURE_GIT_SCRIPT = (
    "command -v git >/dev/null 2>&1 || (apt-get update && apt-get install -y git)"
)

# $1 authenticated url, $2 branch, $3 plain url
PUSH_SCRIPT = (
    "git remote remove origin 2>/dev/null || true; "
    'git remote add origin "$1" && git branch -M "$2" && git push -u origin "$2" --force; '
    'status=$?; git remote set-url origin "$3"; exit $status'
)
FETCH_RESET_SCRIPT = (
    "git remote remove origin 2>/dev/null || true; "
    'git remote add origin "$1" && git fetch origin "$2" && git reset --hard "origin/$2"; '
    'status=$?; git remote set-url origin "$3"; exit $status'
)
CLEAR_DIR_SCRIPT = 'find "$1" -mindepth 1 -maxdepth 1 -exec rm -rf {} +'

GITIGNORE = "\n".join(
    [
        "# Dependencies",
        "node_modules/",
        "",
        "# Build output",
        ".next/",
        "dist/",
        "build/",
        "",
        "# Environment",
        ".env",
        ".env.local",
        "",
        "# Logs",
        "*.log",
        "",
        "# OS / editors",
        ".DS_Store",
        ".vscode/",
        ".idea/",
        "",
        "coverage/",
        settings.metadata_filename,
        "",
    ]
)

AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "could not read username",
    "invalid username or password",
    "permission denied",
    "the requested url returned error: 403",
    "the requested url returned error: 401",
)


def validate_remote_url(remote_url: str) -> str:
    if not GIT_URL_PATTERN.match(remote_url):
        raise ValidationError("Invalid git remote URL, expected an http(s) repository URL")
    return remote_url


def authenticated_url(remote_url: str, token: str | None) -> str:
    """Embed ``token`` into an https remote URL."""
    if not token:
        return remote_url
    parts = urlsplit(remote_url)
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"x-access-token:{quote(token, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def redact(text: str, token: str | None) -> str:
    if token:
        text = text.replace(token, "***").replace(quote(token, safe=""), "***")
    return text


def _is_auth_failure(output: str) -> bool:
    lowered = output.lower()
    return any(marker in lowered for marker in AUTH_FAILURE_MARKERS)


class GitBridge:
    """Git operations against one workspace container's project directory."""

    def __init__(self, files: ContainerFiles) -> None:
        self.files = files
        self.channel = files.channel
        self.container_id = files.container_id
        self.base_dir = files.base_dir
        self._git_ready = False

    async def _git(self, *args: str, check: bool = True) -> ExecResult:
        result = await self.channel.exec_result(
            self.container_id,
            ["git", *args],
            working_dir=self.base_dir,
        )
        if check and result.exit_code not in (0, None):
            raise ExecFailed(f"git {args[0]} failed", detail=result.output.strip() or None)
        return result

    async def ensure_git(self) -> None:
        """Install git in the container if it's missing."""
        if self._git_ready:
            return
        await self.channel.execute(
            self.container_id,
            ["sh", "-c", ENSURE_GIT_SCRIPT],
            timeout=settings.project_init_timeout,
            check=True,
        )
        self._git_ready = True

    async def is_repository(self) -> bool:
        return await self.files.exists(".git")

    async def init(self, user_name: str | None = None, user_email: str | None = None) -> None:
        """Create the repository with identity, ignore file and an initial commit."""
        await self.ensure_git()
        await self._git("init")
        await self.configure_identity(user_name, user_email)
        await self.files.write(".gitignore", GITIGNORE)
        await self.commit("Initial commit")
        logger.info("Git repository initialized", container_id=self.container_id[:12])

    async def configure_identity(
        self, user_name: str | None = None, user_email: str | None = None
    ) -> None:
        """Set the repo-local committer identity. Containers have no global git config."""
        await self._git("config", "user.name", user_name or settings.git_user_name)
        await self._git("config", "user.email", user_email or settings.git_user_email)

    async def commit(self, message: str) -> bool:
        """Stage everything and commit. Returns False when there was nothing to commit."""
        await self.ensure_git()
        await self._git("add", "-A")
        status = await self._git("status", "--porcelain")
        if not status.output.strip():
            logger.debug("No changes to commit", container_id=self.container_id[:12])
            return False
        await self._git("commit", "-m", message)
        logger.info("Changes committed", container_id=self.container_id[:12], message=message)
        return True

    async def push(
        self, remote_url: str, branch: str | None = None, token: str | None = None
    ) -> None:
        """Force-push the working branch to ``remote_url``.

        Raises:
            RemoteAuthFailed: the remote rejected the credentials
            PushRejected: any other push failure
        """
        validate_remote_url(remote_url)
        branch = branch or settings.git_branch
        await self.ensure_git()
        result = await self.channel.exec_result(
            self.container_id,
            [
                "sh",
                "-c",
                PUSH_SCRIPT,
                "sh",
                authenticated_url(remote_url, token),
                branch,
                remote_url,
            ],
            working_dir=self.base_dir,
            timeout=settings.command_timeout,
        )
        if result.exit_code != 0:
            output = redact(result.output.strip(), token)
            if _is_auth_failure(output):
                raise RemoteAuthFailed("Remote rejected credentials", detail=output)
            raise PushRejected(f"Push to {remote_url} failed", detail=output)
        logger.info("Pushed to remote", container_id=self.container_id[:12], branch=branch)

    async def clone(
        self,
        remote_url: str,
        branch: str | None = None,
        token: str | None = None,
    ) -> CloneResult:
        """Bring the project directory to the remote branch tip, then install dependencies.

        An existing repository is fetched and hard-reset, discarding local
        divergence. Otherwise the directory is cleared and cloned fresh.
        Dependency install failures are logged and reported, not raised.
        """
        validate_remote_url(remote_url)
        branch = branch or settings.git_branch
        await self.ensure_git()
        auth_url = authenticated_url(remote_url, token)

        if await self.is_repository():
            logger.info("Fetching remote into existing repository", branch=branch)
            result = await self.channel.exec_result(
                self.container_id,
                ["sh", "-c", FETCH_RESET_SCRIPT, "sh", auth_url, branch, remote_url],
                working_dir=self.base_dir,
                timeout=settings.command_timeout,
            )
        else:
            logger.info("Cloning remote into empty workspace", branch=branch)
            await self.channel.execute(
                self.container_id,
                ["sh", "-c", CLEAR_DIR_SCRIPT, "sh", self.base_dir],
                check=True,
            )
            result = await self.channel.exec_result(
                self.container_id,
                ["git", "clone", "-b", branch, auth_url, self.base_dir],
                timeout=settings.command_timeout,
            )
            if result.exit_code == 0:
                await self._git("remote", "set-url", "origin", remote_url)

        if result.exit_code != 0:
            output = redact(result.output.strip(), token)
            if _is_auth_failure(output):
                raise RemoteAuthFailed("Remote rejected credentials", detail=output)
            raise CloneFailed(f"Failed to restore {remote_url}", detail=output)

        await self.configure_identity()
        return CloneResult(dependencies_installed=await self.install_dependencies())

    async def install_dependencies(self) -> bool:
        if not await self.files.exists("package.json"):
            return False
        try:
            await self.channel.execute(
                self.container_id,
                ["npm", "install", "--no-audit", "--no-fund"],
                working_dir=self.base_dir,
                timeout=settings.project_init_timeout,
                check=True,
            )
        except OrchestratorError as e:
            logger.warning(
                "Dependency install failed, workspace is usable but degraded",
                container_id=self.container_id[:12],
                error=str(e)[:500],
            )
            return False
        return True

    async def status(self) -> GitStatus:
        if not await self.is_repository():
            return GitStatus(is_repository=False)
        await self.ensure_git()
        porcelain = await self._git("status", "--porcelain")
        branch = await self._git("rev-parse", "--abbrev-ref", "HEAD", check=False)
        last = await self._git("log", "-1", "--format=%h %s", check=False)
        return GitStatus(
            is_repository=True,
            has_changes=bool(porcelain.output.strip()),
            branch=branch.output.strip() if branch.exit_code == 0 else None,
            last_commit=last.output.strip() if last.exit_code == 0 else None,
        )

    async def save(
        self,
        remote_url: str | None,
        message: str,
        branch: str | None = None,
        token: str | None = None,
    ) -> bool:
        """Commit, then push when a remote is configured. Returns whether a commit was made."""
        committed = await self.commit(message)
        if remote_url:
            await self.push(remote_url, branch=branch, token=token)
        return committed
