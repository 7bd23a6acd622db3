"""Pytest configuration and shared fixtures."""

import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

# Add project paths
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from meetbot.config import ENV_OVERRIDES, MeetBotConfig, reset_config  # noqa: E402
from meetbot.models import MediaTransports  # noqa: E402

MEET_URL = "https://meet.google.com/abc-defg-hij"


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Let other tasks run
        await asyncio.sleep(0)


class FakePage:
    """In-memory PageAutomation.

    - ``visible``: selectors that wait_for/is_visible/click find
    - ``texts``: text cues reported by text_visible
    - ``buttons``: accessible button names click_button finds
    - ``evaluate_results``: script -> value, or callable(arg) -> value
    - ``evaluate_errors``: script -> exception to raise
    - ``visible_counts``: selector -> successive count_visible results
    """

    def __init__(self, url: str = MEET_URL):
        self.url = url
        self.visible: set[str] = set()
        self.texts: set[str] = set()
        self.buttons: set[str] = set()
        self.evaluate_results: dict[str, Any] = {}
        self.evaluate_errors: dict[str, Exception] = {}
        self.visible_counts: dict[str, list[int]] = {}
        self.fill_ok = True
        self.body = ""

        self.goto_calls: list[str] = []
        self.evaluations: list[tuple[str, Any]] = []
        self.clicks: list[str] = []
        self.filled: dict[str, str] = {}
        self.init_scripts: list[str] = []
        self.exposed: dict[str, Any] = {}
        self.console_callbacks: list = []
        self.close_callbacks: list = []
        self.screenshots: list[Path] = []
        self.closed = False
        self._last_count = 0

    async def goto(self, url: str, wait_until: str = "networkidle", timeout_ms: int = 60000) -> None:
        self.goto_calls.append(url)

    async def wait_for(self, selector: str, timeout_seconds: float) -> bool:
        return selector in self.visible

    async def is_visible(self, selector: str) -> bool:
        return selector in self.visible

    async def text_visible(self, text: str, timeout_seconds: float = 0) -> bool:
        return text in self.texts

    async def click(self, selector: str, timeout_seconds: float = 5.0) -> bool:
        if selector in self.visible:
            self.clicks.append(selector)
            return True
        return False

    async def click_button(self, name: str, timeout_seconds: float = 5.0) -> bool:
        if name in self.buttons:
            self.clicks.append(name)
            return True
        return False

    async def click_first(self, selectors: tuple, timeout_seconds: float = 2.0) -> bool:
        for selector in selectors:
            if selector in self.visible:
                self.clicks.append(selector)
                return True
        return False

    async def click_all_visible(self, selector: str) -> int:
        self.clicks.extend([selector] * self._last_count)
        return self._last_count

    async def count_visible(self, selector: str) -> int:
        counts = self.visible_counts.get(selector)
        if counts:
            self._last_count = counts.pop(0) if len(counts) > 1 else counts[0]
        else:
            self._last_count = 1 if selector in self.visible else 0
        return self._last_count

    async def fill(self, selector: str, value: str) -> bool:
        if not self.fill_ok or selector not in self.visible:
            return False
        self.filled[selector] = value
        return True

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self.evaluations.append((script, arg))
        if script in self.evaluate_errors:
            raise self.evaluate_errors[script]
        result = self.evaluate_results.get(script)
        if callable(result):
            return result(arg)
        return result

    def evaluated(self, script: str) -> list:
        """Arguments of every evaluation of ``script``."""
        return [arg for s, arg in self.evaluations if s == script]

    async def add_init_script(self, script: str) -> None:
        self.init_scripts.append(script)

    async def expose_function(self, name: str, fn) -> None:
        self.exposed[name] = fn

    def on_console(self, callback) -> None:
        self.console_callbacks.append(callback)

    def on_close(self, callback) -> None:
        self.close_callbacks.append(callback)

    async def body_text(self) -> str:
        return self.body

    async def screenshot(self, path: Path) -> bool:
        self.screenshots.append(path)
        return True

    async def list_media_transports(self) -> MediaTransports:
        return MediaTransports()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Isolate tests from the global config and the caller's environment."""
    for env_name in list(ENV_OVERRIDES) + ["MEETBOT_CONFIG"]:
        monkeypatch.delenv(env_name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock():
    """A FakeClock; pass ``clock.sleep`` and ``clock`` to components."""
    return FakeClock()


@pytest.fixture
def page():
    """A FakePage on a Google Meet URL."""
    return FakePage()


@pytest.fixture
def config(tmp_path):
    """A default MeetBotConfig writing into a temporary directory."""
    cfg = MeetBotConfig()
    cfg.recording.output_dir = tmp_path / "recordings"
    cfg.recording.screenshots_dir = tmp_path / "screenshots"
    return cfg
