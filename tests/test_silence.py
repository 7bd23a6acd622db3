"""Tests for meetbot/silence.py - silence monitor."""

from unittest.mock import AsyncMock

import pytest

from meetbot.config import MonitorConfig
from meetbot.silence import SilenceMonitor


class _Energy:
    """Energy source replaying a script, then a constant."""

    def __init__(self, script, then=0.0):
        self.script = list(script)
        self.then = then
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.script.pop(0) if self.script else self.then


def _monitor(energy, clock, has_audio=True, **overrides):
    stop = AsyncMock()
    monitor = SilenceMonitor(
        energy,
        stop,
        AsyncMock(return_value=has_audio),
        MonitorConfig(**overrides),
        sleep=clock.sleep,
    )
    return monitor, stop


class TestObserve:
    def test_quiet_samples_accumulate(self, clock):
        monitor, _ = _monitor(_Energy([]), clock)
        for _ in range(5):
            monitor.observe(3)
        assert monitor.silence_duration == pytest.approx(0.5)

    def test_sample_at_threshold_resets(self, clock):
        monitor, _ = _monitor(_Energy([]), clock, silence_threshold=10)
        monitor.observe(0)
        monitor.observe(0)
        monitor.observe(10)
        assert monitor.silence_duration == 0

    def test_limit(self, clock):
        """Five minutes of 100 ms quiet samples reach the limit exactly."""
        monitor, _ = _monitor(_Energy([]), clock, inactivity_limit_minutes=5, silence_sample_ms=100)
        results = [monitor.observe(0) for _ in range(3000)]
        assert results[-1] is True
        assert not any(results[:-1])


class TestSilenceMonitorRun:
    @pytest.mark.asyncio
    async def test_stops_after_continuous_silence(self, clock):
        energy = _Energy([])
        monitor, stop = _monitor(energy, clock, inactivity_limit_minutes=0.5)

        await monitor.run(grace_seconds=0)

        stop.assert_awaited_once_with("silence")
        assert energy.calls == 300

    @pytest.mark.asyncio
    async def test_sound_resets_the_counter(self, clock):
        energy = _Energy([0] * 200 + [50])
        monitor, stop = _monitor(energy, clock, inactivity_limit_minutes=0.5)

        await monitor.run(grace_seconds=0)

        stop.assert_awaited_once_with("silence")
        assert energy.calls == 201 + 300

    @pytest.mark.asyncio
    async def test_disabled_without_audio_track(self, clock):
        energy = _Energy([])
        monitor, stop = _monitor(energy, clock, has_audio=False)

        await monitor.run(grace_seconds=0)

        assert monitor.active is False
        assert energy.calls == 0
        stop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_when_analysis_fails(self, clock):
        energy = AsyncMock(side_effect=RuntimeError("no audio analyser"))
        monitor, stop = _monitor(energy, clock)

        await monitor.run(grace_seconds=0)

        assert monitor.active is False
        stop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disabled_when_audio_check_fails(self, clock):
        stop = AsyncMock()
        monitor = SilenceMonitor(
            _Energy([]), stop, AsyncMock(side_effect=RuntimeError("page gone")), MonitorConfig(), sleep=clock.sleep
        )

        await monitor.run(grace_seconds=0)

        assert monitor.active is False
        stop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_grace_delay(self, clock):
        monitor, _ = _monitor(_Energy([]), clock, has_audio=False, activate_after_minutes=1)
        await monitor.run()
        assert clock.sleeps == [60]
