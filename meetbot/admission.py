"""
Lobby admission detection.

After the join request the bot sits in Meet's lobby until a host admits
it, denies it, or the request times out. Admission is only declared when
two independent signals agree: in-call controls are visible (People or
Leave call) AND the People control reports a participant count. The
Leave call button alone also shows up while waiting in the lobby.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from meetbot import selectors
from meetbot.config import JoinConfig, get_config
from meetbot.models import AdmissionOutcome
from meetbot.page import PageAutomation
from meetbot.resilience import ResiliencePolicy

logger = logging.getLogger(__name__)

PARTICIPANT_COUNT_CONFIRMED_JS = """
(pattern) => {
    const re = new RegExp(pattern);
    const buttons = Array.from(document.querySelectorAll('button[aria-label]'));
    const preferred = buttons.filter((b) => (b.getAttribute('aria-label') || '').startsWith('People'));
    for (const btn of preferred.concat(buttons)) {
        const match = (btn.getAttribute('aria-label') || '').match(re);
        if (match && parseInt(match[1], 10) >= 1) {
            return true;
        }
    }
    return false;
}
"""


class AdmissionGate:
    """Polls the lobby until admitted, denied or timed out.

    Args:
        page: The meeting page
        config: Join settings (poll interval, probe timeouts)
        policy: Retry policy used for soft probes
        sleep: Awaitable sleep (injectable for tests)
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        page: PageAutomation,
        config: Optional[JoinConfig] = None,
        policy: Optional[ResiliencePolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.page = page
        self.config = config or get_config().join
        self.policy = policy or ResiliencePolicy(sleep=sleep)
        self._sleep = sleep
        self._clock = clock
        self.polls = 0

    async def await_admission(self, timeout_seconds: float) -> AdmissionOutcome:
        """
        Wait in the lobby for at most ``timeout_seconds``.

        The first poll runs immediately, then every
        ``admission_poll_seconds``.

        Returns:
            ADMITTED, DENIED, or TIMED_OUT (explicit timeout cue or deadline)
        """
        deadline = self._clock() + timeout_seconds
        interval = self.config.admission_poll_seconds
        logger.info(f"[JOIN] Waiting up to {timeout_seconds:.0f}s for admission (poll every {interval:.0f}s)")

        while True:
            outcome = await self._poll()
            if outcome is not None:
                logger.info(f"[JOIN] Admission outcome after {self.polls} poll(s): {outcome.value}")
                return outcome

            remaining = deadline - self._clock()
            if remaining <= 0:
                logger.warning(f"[JOIN] Admission timed out after {self.polls} poll(s)")
                return AdmissionOutcome.TIMED_OUT
            await self._sleep(min(interval, remaining))

    async def _probe(self, action, step: str) -> bool:
        return bool(await self.policy.attempt(action, step=step))

    async def _has_baseline(self) -> bool:
        timeout = self.config.baseline_probe_timeout_seconds
        for selector in selectors.BASELINE_IN_CALL_SELECTORS:
            if await self._probe(lambda s=selector: self.page.wait_for(s, timeout), f"baseline {selector}"):
                return True
        return False

    async def _text(self, text: str) -> bool:
        return await self._probe(lambda: self.page.text_visible(text), f"cue '{text}'")

    async def _participant_count_confirmed(self) -> bool:
        return await self._probe(
            lambda: self.page.evaluate(PARTICIPANT_COUNT_CONFIRMED_JS, selectors.PEOPLE_LABEL_COUNT_PATTERN),
            "participant count",
        )

    async def _poll(self) -> Optional[AdmissionOutcome]:
        self.polls += 1
        baseline = await self._has_baseline()

        if await self._text(selectors.REQUEST_DENIED_TEXT):
            logger.warning("[JOIN] Join request was denied")
            return AdmissionOutcome.DENIED

        if not baseline:
            logger.debug(f"[JOIN] Poll {self.polls}: no in-call controls yet")
            return None

        if await self._text(selectors.LOBBY_WAITING_TEXT):
            logger.info(f"[JOIN] Poll {self.polls}: waiting for host to admit")
            return None

        if await self._text(selectors.REQUEST_TIMEOUT_TEXT):
            logger.warning("[JOIN] Join request timed out in lobby")
            return AdmissionOutcome.TIMED_OUT

        if await self._participant_count_confirmed():
            return AdmissionOutcome.ADMITTED

        logger.debug(f"[JOIN] Poll {self.polls}: controls visible but no participant count yet")
        return None
