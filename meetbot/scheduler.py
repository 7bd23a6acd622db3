"""
Named task registry for one session.

Every periodic activity (monitors, capture loop, reply tasks) is a
named asyncio task registered here, so the stop routine can enumerate and
cancel all of them in one place.
"""

import asyncio
import logging
from typing import Coroutine, Optional

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Owns the background tasks of a session."""

    def __init__(self, name: str = "session"):
        self._name = name
        self._tasks: dict[str, asyncio.Task] = {}
        self._closed = False

    def spawn(self, name: str, coro: Coroutine) -> Optional[asyncio.Task]:
        """Start ``coro`` as a named task. Replaces (and cancels) a task with the same name."""
        if self._closed:
            logger.debug(f"[{self._name}] Registry closed, not starting task {name}")
            coro.close()
            return None

        existing = self._tasks.get(name)
        if existing is not None and not existing.done():
            existing.cancel()

        task = asyncio.create_task(coro, name=f"{self._name}:{name}")
        self._tasks[name] = task
        task.add_done_callback(lambda t, n=name: self._on_done(n, t))
        return task

    def _on_done(self, name: str, task: asyncio.Task) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[{self._name}] Task {name} failed: {error}", exc_info=error)

    def names(self) -> list[str]:
        return sorted(self._tasks)

    def get(self, name: str) -> Optional[asyncio.Task]:
        return self._tasks.get(name)

    async def cancel(self, name: str, timeout: float = 2.0) -> None:
        task = self._tasks.get(name)
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await asyncio.wait_for(task, timeout=timeout)
        except (asyncio.CancelledError, asyncio.TimeoutError):
            pass
        except Exception as e:
            logger.debug(f"Suppressed error cancelling {name}: {e}")

    async def cancel_all(self, timeout: float = 2.0) -> list[str]:
        """Cancel every registered task except the caller's own.

        After this call the registry refuses new tasks.

        Returns:
            Names of the tasks that were cancelled
        """
        self._closed = True
        current = asyncio.current_task()
        victims = [(n, t) for n, t in list(self._tasks.items()) if t is not current and not t.done()]

        for _, task in victims:
            task.cancel()

        for name, task in victims:
            try:
                await asyncio.wait_for(task, timeout=timeout)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            except Exception as e:
                logger.debug(f"Suppressed error cancelling {name}: {e}")

        cancelled = [n for n, _ in victims]
        if cancelled:
            logger.info(f"[{self._name}] Cancelled tasks: {', '.join(cancelled)}")
        return cancelled

    @property
    def closed(self) -> bool:
        return self._closed
