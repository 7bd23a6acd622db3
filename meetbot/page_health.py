"""
In-call page upkeep.

- PageHealthMonitor: ends the session when the page is no longer a live
  Meet call (navigated away, removed by the host, lobby request expired,
  in-call controls gone).
- DialogDismisser: keeps clicking "Got it" popups that Meet shows during
  a call, so they never cover the recording.
- dismiss_welcome_dialogs: one-shot sweep of the popups shown right
  after joining.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from meetbot import selectors
from meetbot.config import JoinConfig, MonitorConfig, get_config
from meetbot.page import PageAutomation

logger = logging.getLogger(__name__)

PAGE_STATE_JS = """
(cues) => {
    if (!window.location.href.includes(cues.host)) {
        return 'navigated away to ' + window.location.href;
    }
    const body = document.body ? document.body.innerText : '';
    if (body.includes(cues.removed)) {
        return 'removed from the meeting';
    }
    if (body.includes(cues.noResponse)) {
        return 'join request was never answered';
    }
    const inCall = cues.baseline.some((selector) => document.querySelector(selector) !== null);
    if (!inCall) {
        return 'in-call controls no longer present';
    }
    return null;
}
"""

CLICK_GOT_IT_JS = """
(text) => {
    const buttons = Array.from(document.querySelectorAll('button')).filter(
        (b) => b.offsetParent !== null && (b.innerText || '').includes(text));
    if (buttons.length === 0) {
        return false;
    }
    buttons[0].click();
    return true;
}
"""


class PageHealthMonitor:
    """Periodically verifies the page is still an active Meet call."""

    def __init__(
        self,
        page: PageAutomation,
        request_stop: Callable[[str], Awaitable[Any]],
        config: Optional[MonitorConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.page = page
        self._request_stop = request_stop
        self.config = config or get_config().monitor
        self._sleep = sleep

    async def check(self) -> Optional[str]:
        """Return why the page is no longer valid, or None if it is fine."""
        cues = {
            "host": selectors.MEET_HOST,
            "removed": selectors.REMOVED_FROM_MEETING_TEXT,
            "noResponse": selectors.REQUEST_TIMEOUT_TEXT,
            "baseline": list(selectors.BASELINE_IN_CALL_SELECTORS),
        }
        try:
            return await self.page.evaluate(PAGE_STATE_JS, cues)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return f"page check failed: {e}"

    async def run(self) -> None:
        while True:
            await self._sleep(self.config.page_check_seconds)
            problem = await self.check()
            if problem:
                logger.warning(f"[HEALTH] Meet page state changed ({problem}), ending recording")
                await self._request_stop(problem)
                return


class DialogDismisser:
    """Clicks visible "Got it" buttons every couple of seconds."""

    def __init__(
        self,
        page: PageAutomation,
        config: Optional[MonitorConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.page = page
        self.config = config or get_config().monitor
        self._sleep = sleep
        self.errors = 0
        self.dismissed = 0

    async def run(self) -> None:
        while True:
            await self._sleep(self.config.dialog_dismiss_seconds)
            try:
                if await self.page.evaluate(CLICK_GOT_IT_JS, selectors.GOT_IT_TEXT):
                    self.dismissed += 1
                    logger.info('[HEALTH] Dismissed a "Got it" dialog')
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors += 1
                logger.debug(f"[HEALTH] Dialog dismissal failed ({self.errors}): {e}")
                if self.errors > self.config.dialog_dismiss_max_errors:
                    logger.error(
                        f'[HEALTH] Failed to dismiss "Got it" dialogs {self.errors} times, will stop trying'
                    )
                    return


async def dismiss_welcome_dialogs(
    page: PageAutomation,
    config: Optional[JoinConfig] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> int:
    """
    Click every visible "Got it" button until none remain.

    Stops early when the visible count has not changed for
    ``dialog_unchanged_rounds`` rounds (the buttons are not going away).

    Returns:
        Number of buttons clicked
    """
    config = config or get_config().join
    if not await page.wait_for(selectors.GOT_IT_BUTTON, 15):
        logger.info('[JOIN] No "Got it" dialogs shown')
        return 0

    clicked = 0
    previous = -1
    unchanged = 0
    while True:
        visible = await page.count_visible(selectors.GOT_IT_BUTTON)
        if visible == 0:
            break
        if visible == previous:
            unchanged += 1
            if unchanged >= config.dialog_unchanged_rounds:
                logger.warning(f'[JOIN] "Got it" count stuck at {visible} for {unchanged} rounds, stopping')
                break
        else:
            unchanged = 0
        previous = visible

        clicked += await page.click_all_visible(selectors.GOT_IT_BUTTON)
        await sleep(2)

    logger.info(f'[JOIN] Dismissed {clicked} "Got it" dialog(s)')
    return clicked
