"""Best-effort side effects that must never decide the outcome of the operation that triggered them.

Each dispatch runs as its own asyncio task: the caller does not wait for it, and any
exception it raises is logged and dropped. Delivery guarantees stronger than
"attempted once" come from whoever owns the side effect (e.g. the worker's
verification email retry), not from here.
"""

import asyncio
from typing import Any, Awaitable, Callable

from app.core.logging import get_logger

log = get_logger(__name__)

SideEffect = Callable[..., Awaitable[Any]]


class BestEffortDispatcher:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def dispatch(self, name: str, fn: SideEffect, *args: Any, **kwargs: Any) -> asyncio.Task:
        task = asyncio.create_task(self._run(name, fn, *args, **kwargs), name=f"side_effect:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, fn: SideEffect, *args: Any, **kwargs: Any) -> None:
        try:
            await fn(*args, **kwargs)
        except asyncio.CancelledError:
            log.warning("side_effect_cancelled", side_effect=name)
            raise
        except Exception:
            log.exception("side_effect_failed", side_effect=name)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight side effects (shutdown, tests)."""
        if not self._tasks:
            return
        done, not_done = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            log.warning("side_effects_abandoned", count=len(not_done))
