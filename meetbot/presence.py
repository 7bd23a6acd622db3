"""
Participant presence monitor.

Ends the session when the bot is the only one left. The participant
count is read from the People control using an ordered chain of selector
strategies. Reads that find nothing are "unknown", not zero; after too
many unknown reads in a row the monitor switches itself off rather than
guessing.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from meetbot import selectors
from meetbot.config import MonitorConfig, get_config
from meetbot.models import ParticipantSnapshot
from meetbot.page import PageAutomation

logger = logging.getLogger(__name__)

PARTICIPANT_COUNT_JS = """
(chain) => {
    const numeric = /^[0-9]+$/;

    const findPeopleButton = () => {
        const buttons = Array.from(document.querySelectorAll('button[aria-label]'));
        for (const strategy of chain) {
            let btn = null;
            if (strategy.kind === 'css') {
                btn = document.querySelector(strategy.value);
            } else if (strategy.kind === 'aria_regex') {
                const re = new RegExp(strategy.value);
                btn = buttons.find((b) => re.test(b.getAttribute('aria-label') || ''));
            } else if (strategy.kind === 'icon_text') {
                btn = buttons.find((b) => Array.from(b.querySelectorAll('i')).some(
                    (i) => i.textContent && i.textContent.trim() === strategy.value));
            }
            if (btn) {
                return btn;
            }
        }
        return null;
    };

    const btn = findPeopleButton();
    if (!btn || !btn.parentNode || !btn.parentNode.parentNode) {
        return null;
    }
    for (const node of btn.parentNode.parentNode.querySelectorAll('div')) {
        const text = typeof node.innerText === 'string' ? node.innerText.trim() : '';
        if (numeric.test(text)) {
            return Number(text);
        }
    }
    return null;
}
"""


def page_participant_reader(page: PageAutomation) -> Callable[[], Awaitable[ParticipantSnapshot]]:
    """Build a count reader that evaluates the People selector chain in the page."""
    chain = [{"kind": s.kind, "value": s.value} for s in selectors.PEOPLE_BUTTON_CHAIN]

    async def read_count() -> ParticipantSnapshot:
        value = await page.evaluate(PARTICIPANT_COUNT_JS, chain)
        return int(value) if value is not None else None

    return read_count


class PresenceMonitor:
    """Requests termination when fewer than ``min_participants`` remain.

    Args:
        read_count: Async callable returning the participant count or None
        request_stop: Async callable taking a reason string
        config: Monitor timing
        sleep: Awaitable sleep (injectable for tests)
    """

    def __init__(
        self,
        read_count: Callable[[], Awaitable[ParticipantSnapshot]],
        request_stop: Callable[[str], Awaitable[Any]],
        config: Optional[MonitorConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._read_count = read_count
        self._request_stop = request_stop
        self.config = config or get_config().monitor
        self._sleep = sleep
        self.active = True
        self.consecutive_failures = 0
        self.last_count: ParticipantSnapshot = None

    async def _read(self) -> ParticipantSnapshot:
        try:
            return await self._read_count()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"[PRESENCE] Participant count read failed: {e}")
            return None

    async def check_once(self) -> bool:
        """Run one poll. Returns False once the monitor has finished."""
        count = await self._read()

        if count is None:
            self.consecutive_failures += 1
            logger.warning(f"[PRESENCE] Participant detection failed ({self.consecutive_failures} in a row)")
            if self.consecutive_failures >= self.config.presence_max_failures:
                logger.warning("[PRESENCE] Persistent detection failures, presence monitor disabled")
                self.active = False
            return self.active

        self.consecutive_failures = 0
        self.last_count = count
        if count < self.config.min_participants:
            logger.info(f"[PRESENCE] Bot is alone ({count} participant(s)), ending meeting")
            self.active = False
            await self._request_stop("alone in meeting")
            return False
        return True

    async def run(self, grace_seconds: Optional[float] = None) -> None:
        """Wait out the grace delay, then poll until stopped or disabled."""
        if grace_seconds is None:
            grace_seconds = self.config.activate_after_minutes * 60
        await self._sleep(grace_seconds)
        logger.info(f"[PRESENCE] Monitoring participants every {self.config.presence_poll_seconds:.0f}s")

        while self.active:
            if not await self.check_once():
                return
            await self._sleep(self.config.presence_poll_seconds)
