"""Input validation utilities for the orchestrator service."""

from __future__ import annotations

import posixpath
import re

# Pattern for valid IDs: alphanumeric, underscores, hyphens only
# This prevents path traversal (../) and command injection
SAFE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")

MAX_ID_LENGTH = 128


class ValidationError(ValueError):
    """Raised when input validation fails."""


def validate_id(value: str, id_type: str = "ID") -> str:
    """Validate that an ID contains only safe characters.

    Args:
        value: The ID value to validate
        id_type: Description of the ID type for error messages

    Returns:
        The validated ID (unchanged if valid)

    Raises:
        ValidationError: If the ID is empty, too long or contains unsafe characters
    """
    if not value:
        raise ValidationError(f"Invalid {id_type}: cannot be empty")

    if len(value) > MAX_ID_LENGTH:
        raise ValidationError(f"Invalid {id_type}: longer than {MAX_ID_LENGTH} characters")

    if not SAFE_ID_PATTERN.match(value):
        raise ValidationError(f"Invalid {id_type}: contains unsafe characters")

    return value


def validate_workspace_id(workspace_id: str) -> str:
    """Validate a workspace ID (also used as the container name)."""
    return validate_id(workspace_id, "workspace_id")


def resolve_workspace_path(base_dir: str, path: str) -> str:
    """Translate a project-relative path into an absolute in-container path.

    Absolute paths are accepted only when they stay under ``base_dir``.

    Raises:
        ValidationError: If the path is empty, contains NUL or escapes ``base_dir``
    """
    if not path or "\x00" in path:
        raise ValidationError("Invalid path")

    base = posixpath.normpath(base_dir)
    candidate = path if path.startswith("/") else posixpath.join(base, path)
    resolved = posixpath.normpath(candidate)

    if resolved != base and not resolved.startswith(base + "/"):
        raise ValidationError(f"Path escapes workspace directory: {path}")

    return resolved
