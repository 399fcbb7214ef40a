"""Side effects whose outcome is deliberately ignored.

Joining a channel, inviting members, deleting an old message: none of these
may stop a publish or a retraction. Wrapping the call site in
``ignore_outcome`` keeps that policy visible where the call is made.
"""

from __future__ import annotations

from collections.abc import Awaitable
from typing import Any, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


async def ignore_outcome(effect: str, awaitable: Awaitable[T], **context: Any) -> T | None:
    """Await ``awaitable``; on failure log and return None."""
    try:
        return await awaitable
    except Exception as e:
        logger.warning("best_effort_failed", effect=effect, error=str(e), **context)
        return None
