"""
Page automation capability.

The session controller and monitors only talk to the page through the
PageAutomation protocol. Lookups and clicks return booleans instead of
raising so that the retry policy can treat "not found" as a failed
attempt. PlaywrightPage is the production implementation.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from meetbot.models import MediaTransports

logger = logging.getLogger(__name__)

# Reads the peer connection registry installed by browser.INIT_SCRIPT
_LIST_TRANSPORTS_JS = """
() => {
    const registry = window.__meetbot;
    if (!registry || !registry.describeTransports) {
        return { connections: 0, outbound_audio: 0, inbound_audio: [] };
    }
    return registry.describeTransports();
}
"""


@runtime_checkable
class PageAutomation(Protocol):
    """What the bot needs from a browser page."""

    @property
    def url(self) -> str: ...

    async def goto(self, url: str, wait_until: str = "networkidle", timeout_ms: int = 60000) -> None: ...

    async def wait_for(self, selector: str, timeout_seconds: float) -> bool: ...

    async def is_visible(self, selector: str) -> bool: ...

    async def text_visible(self, text: str, timeout_seconds: float = 0) -> bool: ...

    async def click(self, selector: str, timeout_seconds: float = 5.0) -> bool: ...

    async def click_button(self, name: str, timeout_seconds: float = 5.0) -> bool: ...

    async def click_first(self, selectors: tuple[str, ...], timeout_seconds: float = 2.0) -> bool: ...

    async def click_all_visible(self, selector: str) -> int: ...

    async def count_visible(self, selector: str) -> int: ...

    async def fill(self, selector: str, value: str) -> bool: ...

    async def evaluate(self, script: str, arg: Any = None) -> Any: ...

    async def add_init_script(self, script: str) -> None: ...

    async def expose_function(self, name: str, fn: Callable) -> None: ...

    def on_console(self, callback: Callable[[str, str], None]) -> None: ...

    def on_close(self, callback: Callable[[], None]) -> None: ...

    async def body_text(self) -> str: ...

    async def screenshot(self, path: Path) -> bool: ...

    async def list_media_transports(self) -> MediaTransports: ...

    async def close(self) -> None: ...


class PlaywrightPage:
    """PageAutomation backed by a Playwright page.

    Args:
        page: playwright.async_api.Page
        owner: Object whose ``close()`` tears down the browser (browser or
            context). Defaults to the page itself.
        playwright: The running Playwright instance to stop on close
    """

    def __init__(self, page, owner=None, playwright=None):
        self._page = page
        self._owner = owner
        self._playwright = playwright
        self._closed = False

    @property
    def raw(self):
        return self._page

    @property
    def url(self) -> str:
        return self._page.url

    async def goto(self, url: str, wait_until: str = "networkidle", timeout_ms: int = 60000) -> None:
        await self._page.goto(url, wait_until=wait_until, timeout=timeout_ms)

    async def wait_for(self, selector: str, timeout_seconds: float) -> bool:
        try:
            await self._page.wait_for_selector(selector, timeout=timeout_seconds * 1000, state="visible")
            return True
        except Exception as e:
            logger.debug(f"wait_for {selector!r} gave up: {e}")
            return False

    async def is_visible(self, selector: str) -> bool:
        try:
            return await self._page.locator(selector).first.is_visible()
        except Exception as e:
            logger.debug(f"is_visible {selector!r} failed: {e}")
            return False

    async def text_visible(self, text: str, timeout_seconds: float = 0) -> bool:
        locator = self._page.get_by_text(text).first
        try:
            if timeout_seconds <= 0:
                return await locator.is_visible()
            await locator.wait_for(state="visible", timeout=timeout_seconds * 1000)
            return True
        except Exception as e:
            logger.debug(f"text_visible {text!r} gave up: {e}")
            return False

    async def click(self, selector: str, timeout_seconds: float = 5.0) -> bool:
        try:
            await self._page.locator(selector).first.click(timeout=timeout_seconds * 1000)
            return True
        except Exception as e:
            logger.debug(f"click {selector!r} failed: {e}")
            return False

    async def click_button(self, name: str, timeout_seconds: float = 5.0) -> bool:
        button = self._page.get_by_role("button", name=name).first
        try:
            await button.wait_for(state="visible", timeout=timeout_seconds * 1000)
            await button.click()
            return True
        except Exception as e:
            logger.debug(f"click_button {name!r} failed: {e}")
            return False

    async def click_first(self, selectors: tuple[str, ...], timeout_seconds: float = 2.0) -> bool:
        for selector in selectors:
            if await self.is_visible(selector) and await self.click(selector, timeout_seconds):
                return True
        return False

    async def click_all_visible(self, selector: str) -> int:
        clicked = 0
        try:
            buttons = await self._page.locator(selector).all()
        except Exception as e:
            logger.debug(f"click_all_visible {selector!r} failed: {e}")
            return 0
        for button in buttons:
            try:
                if await button.is_visible():
                    await button.click(timeout=2000)
                    clicked += 1
            except Exception as e:
                logger.debug(f"Suppressed error clicking {selector!r}: {e}")
        return clicked

    async def count_visible(self, selector: str) -> int:
        count = 0
        try:
            for element in await self._page.locator(selector).all():
                if await element.is_visible():
                    count += 1
        except Exception as e:
            logger.debug(f"count_visible {selector!r} failed: {e}")
        return count

    async def fill(self, selector: str, value: str) -> bool:
        try:
            await self._page.fill(selector, value)
            return True
        except Exception as e:
            logger.debug(f"fill {selector!r} failed: {e}")
            return False

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return await self._page.evaluate(script)
        return await self._page.evaluate(script, arg)

    async def add_init_script(self, script: str) -> None:
        await self._page.add_init_script(script)

    async def expose_function(self, name: str, fn: Callable) -> None:
        await self._page.expose_function(name, fn)

    def on_console(self, callback: Callable[[str, str], None]) -> None:
        self._page.on("console", lambda msg: callback(msg.type, msg.text))

    def on_close(self, callback: Callable[[], None]) -> None:
        self._page.on("close", lambda _page: callback())

    async def body_text(self) -> str:
        try:
            return await self._page.evaluate("() => document.body ? document.body.innerText : ''") or ""
        except Exception as e:
            logger.debug(f"body_text failed: {e}")
            return ""

    async def screenshot(self, path: Path) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            await self._page.screenshot(path=str(path), full_page=True)
            logger.info(f"Screenshot saved: {path}")
            return True
        except Exception as e:
            logger.warning(f"Screenshot failed: {e}")
            return False

    async def list_media_transports(self) -> MediaTransports:
        data = await self._page.evaluate(_LIST_TRANSPORTS_JS) or {}
        return MediaTransports(
            connections=int(data.get("connections", 0)),
            outbound_audio=int(data.get("outbound_audio", 0)),
            inbound_audio=list(data.get("inbound_audio", [])),
        )

    @property
    def closed(self) -> bool:
        return self._closed or self._page.is_closed()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for closer in (self._page, self._owner):
            if closer is None:
                continue
            try:
                await closer.close()
            except Exception as e:
                logger.debug(f"Suppressed error closing browser: {e}")
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as e:
                logger.debug(f"Suppressed error stopping playwright: {e}")
