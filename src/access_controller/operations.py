"""Shared outcome types and the blocking-call helper for SDK operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GrantOutcome(str, Enum):
    """What happened to a single grant during reconciliation."""

    CREATED = "created"
    EXISTS = "exists"
    PLANNED = "planned"  # Dry run: would have been created
    SKIPPED = "skipped"  # Target missing, see warning


@dataclass(frozen=True)
class GrantResult:
    """Outcome of one role assignment or API permission grant.

    Attributes:
        kind: "role_assignment" or "api_permission"
        target: ARM scope or API name
        grant: Role name or permission value
        outcome: What happened
        warning: Why the grant was skipped, if it was
    """

    kind: str
    target: str
    grant: str
    outcome: GrantOutcome
    warning: str | None = None


async def run_blocking(
    operation: Callable[[], T],
    timeout_seconds: float,
    operation_name: str,
) -> T:
    """Run a synchronous SDK call in the default executor with a timeout.

    SECURITY: Enforces timeout to prevent indefinite hangs on API calls.

    Raises:
        TimeoutError: If the call exceeds the timeout.
    """
    loop = asyncio.get_running_loop()
    try:
        return await asyncio.wait_for(
            loop.run_in_executor(None, operation),
            timeout=timeout_seconds,
        )
    except TimeoutError:
        logger.error(
            f"{operation_name} timed out",
            extra={"timeout_seconds": timeout_seconds},
        )
        raise
