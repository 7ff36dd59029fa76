"""Best-effort cleanup chains.

Teardown has to make as much forward progress as it can even when some of
the state it removes is already gone, so each step runs inside its own
failure boundary and a failing step never skips the ones after it.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)


@dataclass
class CleanupAction:
    """One independent cleanup step."""

    description: str
    func: Callable[[], Awaitable[Any] | Any]


@dataclass
class CleanupReport:
    """Outcome of a cleanup chain."""

    completed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


async def run_cleanup(actions: list[CleanupAction]) -> CleanupReport:
    """Run every action in order, logging and collecting failures."""
    report = CleanupReport()
    for action in actions:
        try:
            result = action.func()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.debug(f"Cleanup step failed ({action.description}): {e}; continuing")
            report.errors.append(f"{action.description}: {e}")
        else:
            report.completed.append(action.description)
    return report
