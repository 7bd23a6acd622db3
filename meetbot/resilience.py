"""
Retry policy for UI automation steps.

Every interaction with the meeting page goes through ``retry`` (mandatory
steps) or ``attempt`` (optional steps). An action fails when it raises or
when it returns a falsy value, so automation primitives can report
"not found" by returning False instead of raising.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from meetbot.errors import ActionFailedError

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[Any]]
FailureHook = Callable[[int, Optional[BaseException]], Awaitable[Any]]


class ResiliencePolicy:
    """Bounded retry with a fixed wait and an optional between-attempt hook.

    Args:
        sleep: Awaitable sleep function (injectable for tests)
    """

    def __init__(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self._sleep = sleep

    async def retry(
        self,
        action: Action,
        max_attempts: int,
        wait_seconds: float,
        on_failure: Optional[FailureHook] = None,
        step: str = "",
    ) -> Any:
        """
        Run ``action`` until it succeeds or attempts are exhausted.

        ``on_failure(attempt, error)`` runs after each failed attempt that
        will be retried, never after the last one. Errors raised by the hook
        are logged and ignored.

        Args:
            action: Zero-argument coroutine function
            max_attempts: Total number of attempts (at least 1)
            wait_seconds: Sleep between attempts
            on_failure: Optional hook (e.g. take a diagnostic screenshot)
            step: Name used in logs and in ActionFailedError

        Returns:
            The first truthy result of ``action``

        Raises:
            The last exception raised by ``action``, or ActionFailedError if
            the final attempt returned a falsy value.
        """
        max_attempts = max(1, max_attempts)
        label = step or getattr(action, "__name__", "action")

        for attempt in range(1, max_attempts + 1):
            error: Optional[BaseException] = None
            try:
                result = await action()
                if result:
                    if attempt > 1:
                        logger.info(f"[RETRY] {label} succeeded on attempt {attempt}/{max_attempts}")
                    return result
                logger.debug(f"[RETRY] {label} returned {result!r} on attempt {attempt}/{max_attempts}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e
                logger.warning(f"[RETRY] {label} raised on attempt {attempt}/{max_attempts}: {e}")

            if attempt == max_attempts:
                if error is not None:
                    raise error
                raise ActionFailedError(label, max_attempts)

            if on_failure is not None:
                try:
                    await on_failure(attempt, error)
                except Exception as hook_error:
                    logger.debug(f"Suppressed error in retry hook for {label}: {hook_error}")

            await self._sleep(wait_seconds)

    async def attempt(self, action: Action, step: str = "") -> Any:
        """Run ``action`` once; return its result, or None if it raised.

        For optional steps whose failure must not escalate.
        """
        try:
            return await action()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Suppressed error in {step or 'optional step'}: {e}")
            return None
