"""Tests for meetbot/presence.py - participant presence monitor."""

from unittest.mock import AsyncMock

import pytest

from meetbot.config import MonitorConfig
from meetbot.presence import PARTICIPANT_COUNT_JS, PresenceMonitor, page_participant_reader


def _monitor(counts, clock, **overrides):
    read = AsyncMock(side_effect=list(counts))
    stop = AsyncMock()
    monitor = PresenceMonitor(read, stop, MonitorConfig(**overrides), sleep=clock.sleep)
    return monitor, read, stop


class TestPresenceMonitor:
    """Alone detection and failure budget."""

    @pytest.mark.asyncio
    async def test_alone_requests_stop(self, clock):
        monitor, _, stop = _monitor([1], clock)

        assert await monitor.check_once() is False
        stop.assert_awaited_once_with("alone in meeting")
        assert monitor.last_count == 1

    @pytest.mark.asyncio
    async def test_company_keeps_monitoring(self, clock):
        monitor, _, stop = _monitor([2], clock)

        assert await monitor.check_once() is True
        stop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disables_after_consecutive_failures(self, clock):
        """Ten unknown reads in a row switch the monitor off; the later count of 1 is never read."""
        monitor, read, stop = _monitor([None] * 10 + [1], clock, presence_max_failures=10)

        await monitor.run(grace_seconds=0)

        assert monitor.active is False
        assert read.await_count == 10
        stop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_success_resets_failure_counter(self, clock):
        monitor, _, stop = _monitor([None] * 9 + [4] + [None] * 9, clock, presence_max_failures=10)

        for _ in range(19):
            assert await monitor.check_once() is True

        assert monitor.active is True
        assert monitor.consecutive_failures == 9
        stop.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_read_errors_count_as_failures(self, clock):
        monitor, _, _ = _monitor([RuntimeError("detached")], clock)

        assert await monitor.check_once() is True
        assert monitor.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_run_waits_for_grace_then_polls(self, clock):
        monitor, _, stop = _monitor([2, 2, 1], clock, activate_after_minutes=1, presence_poll_seconds=5)

        await monitor.run()

        assert clock.sleeps == [60, 5, 5]
        stop.assert_awaited_once_with("alone in meeting")


class TestParticipantReader:
    @pytest.mark.asyncio
    async def test_reads_count_through_selector_chain(self, page):
        page.evaluate_results[PARTICIPANT_COUNT_JS] = 3

        assert await page_participant_reader(page)() == 3
        chain = page.evaluated(PARTICIPANT_COUNT_JS)[0]
        assert [s["kind"] for s in chain] == ["css", "css", "aria_regex", "icon_text"]

    @pytest.mark.asyncio
    async def test_unknown_count(self, page):
        assert await page_participant_reader(page)() is None
