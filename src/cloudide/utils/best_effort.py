"""Helper for teardown steps whose failure must not block the caller."""

from __future__ import annotations

from collections.abc import Awaitable
from typing import Any

import structlog

logger = structlog.get_logger()


async def best_effort(step: str, awaitable: Awaitable[Any], **context: Any) -> bool:
    """Await ``awaitable``, logging any failure instead of raising it.

    Returns True if the step succeeded. Cancellation still propagates.
    """
    try:
        await awaitable
    except Exception as e:
        logger.warning(
            "Best-effort step failed",
            step=step,
            error=str(e)[:500],
            error_type=type(e).__name__,
            **context,
        )
        return False
    return True
