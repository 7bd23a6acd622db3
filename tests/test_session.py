"""Tests for meetbot/session.py - the end-to-end session lifecycle.

The browser is replaced by FakePage and time by FakeClock, so a whole
session (join, admission, recording, auto-termination, teardown) runs in
milliseconds.
"""

import asyncio
import logging
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest
from conftest import MEET_URL

from meetbot import selectors
from meetbot.admission import PARTICIPANT_COUNT_CONFIRMED_JS
from meetbot.browser import INIT_SCRIPT
from meetbot.capture import DETACH_JS, AudioCapture
from meetbot.errors import (
    SIGN_IN_REQUIRED,
    UNSUPPORTED_PAGE,
    ActionFailedError,
    AdmissionFailure,
    BrowserClosedError,
    MeetBotError,
    UnsupportedMeetingError,
)
from meetbot.models import JoinParams, PageType
from meetbot.page_health import PAGE_STATE_JS
from meetbot.presence import PARTICIPANT_COUNT_JS, PresenceMonitor
from meetbot.recording import START_RECORDING_JS, STOP_RECORDING_JS, RecordingPipeline
from meetbot.session import SessionController
from meetbot.silence import SilenceMonitor


@pytest.fixture
def meeting_page(page):
    """A meeting that admits the bot, where everyone else has already left."""
    page.visible.update({selectors.NAME_INPUT, selectors.PEOPLE_BUTTON})
    page.buttons.add("Ask to join")
    page.evaluate_results[PARTICIPANT_COUNT_CONFIRMED_JS] = True
    page.evaluate_results[START_RECORDING_JS] = {"success": True, "hasAudio": False, "mimeType": "video/webm"}
    page.evaluate_results[STOP_RECORDING_JS] = {"stopped": True}
    page.evaluate_results[PARTICIPANT_COUNT_JS] = 1
    return page


@pytest.fixture
def uploader():
    uploader = AsyncMock()
    uploader.finalize_upload.return_value = True
    return uploader


@pytest.fixture
def params(uploader):
    return JoinParams(
        url=MEET_URL,
        name="Notetaker",
        bearer_token="tok",
        bot_id="bot-1",
        event_id="evt-1",
        uploader=uploader,
    )


def _controller(page, clock, config, **kwargs):
    async def factory(url, correlation_id, app_tag):
        return page

    reporter = AsyncMock()
    handlers = AsyncMock()
    controller = SessionController(
        page_factory=factory,
        status_reporter=reporter,
        error_handlers=handlers,
        config=config,
        correlation_id="sess-1",
        sleep=clock.sleep,
        clock=clock,
        **kwargs,
    )
    return controller, reporter, handlers


def _reported(reporter):
    return reporter.report.await_args.args[4]


class TestHappyPath:
    """Join, record, end when alone."""

    @pytest.mark.asyncio
    async def test_full_session(self, meeting_page, clock, config, params, uploader):
        controller, reporter, handlers = _controller(meeting_page, clock, config)

        await controller.join(params)

        reporter.report.assert_awaited_once_with(
            "bot-1", "evt-1", "google", "tok", ["processing", "joined", "finished"]
        )
        assert meeting_page.init_scripts == [INIT_SCRIPT]
        assert meeting_page.goto_calls == [MEET_URL]
        assert meeting_page.filled[selectors.NAME_INPUT] == "Notetaker"
        assert "Ask to join" in meeting_page.clicks
        assert controller.context.stop_reason == "alone in meeting"
        assert controller.stop_count == 1
        assert len(meeting_page.evaluated(STOP_RECORDING_JS)) == 1
        assert meeting_page.closed
        uploader.finalize_upload.assert_awaited_once()
        handlers.admission_failure.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_default_bot_name(self, meeting_page, clock, config, params):
        params.name = ""
        controller, _, _ = _controller(meeting_page, clock, config)

        await controller.join(params)

        assert meeting_page.filled[selectors.NAME_INPUT] == "ScreenApp Notetaker"

    @pytest.mark.asyncio
    async def test_upload_failure_marks_failed(self, meeting_page, clock, config, params, uploader):
        uploader.finalize_upload.return_value = False
        controller, reporter, _ = _controller(meeting_page, clock, config)

        await controller.join(params)

        assert _reported(reporter) == ["processing", "joined", "failed"]

    @pytest.mark.asyncio
    async def test_upload_exception_marks_failed(self, meeting_page, clock, config, params, uploader):
        uploader.finalize_upload.side_effect = OSError("disk full")
        controller, reporter, _ = _controller(meeting_page, clock, config)

        await controller.join(params)

        assert _reported(reporter) == ["processing", "joined", "failed"]

    @pytest.mark.asyncio
    async def test_duration_cap(self, meeting_page, clock, config, params):
        meeting_page.evaluate_results[PARTICIPANT_COUNT_JS] = 3
        config.recording.max_duration_minutes = 0.0005
        controller, reporter, _ = _controller(meeting_page, clock, config)

        await controller.join(params)

        assert controller.context.stop_reason == "maximum duration reached"
        assert _reported(reporter) == ["processing", "joined", "finished"]

    @pytest.mark.asyncio
    async def test_page_closed_during_call(self, meeting_page, clock, config, params):
        meeting_page.evaluate_results[PARTICIPANT_COUNT_JS] = 3

        def close_browser(_cues):
            for callback in meeting_page.close_callbacks:
                callback()
            return None

        meeting_page.evaluate_results[PAGE_STATE_JS] = close_browser
        controller, reporter, _ = _controller(meeting_page, clock, config)

        await controller.join(params)

        assert controller.context.stop_reason == "page closed"
        assert _reported(reporter) == ["processing", "joined", "finished"]

    @pytest.mark.asyncio
    async def test_report_errors_do_not_fail_session(self, meeting_page, clock, config, params):
        controller, reporter, _ = _controller(meeting_page, clock, config)
        reporter.report.side_effect = RuntimeError("status API down")

        await controller.join(params)

        assert controller.history.as_list() == ["processing", "joined", "finished"]

    @pytest.mark.asyncio
    async def test_browser_console_is_logged(self, meeting_page, clock, config, params, caplog):
        controller, _, _ = _controller(meeting_page, clock, config)
        await controller.join(params)

        with caplog.at_level(logging.ERROR, logger="meetbot.browser"):
            meeting_page.console_callbacks[0]("error", "Uncaught TypeError")

        assert "[sess-1] Uncaught TypeError" in caplog.text


class TestVoiceSession:
    @pytest.mark.asyncio
    async def test_live_stream_opened_and_closed(self, meeting_page, clock, config, params):
        tts = AsyncMock()
        tts.synthesize.return_value = b""
        stt = AsyncMock()
        responder = AsyncMock()
        controller, reporter, _ = _controller(meeting_page, clock, config, tts=tts, stt=stt, responder=responder)

        await controller.join(params)

        assert controller.voice_enabled
        assert stt.open_stream.await_args.args[0] == "voice-sess-1"
        stt.close_stream.assert_awaited_once_with("voice-sess-1")
        tts.synthesize.assert_awaited_once_with(config.join.greeting)
        assert _reported(reporter) == ["processing", "joined", "finished"]

    @pytest.mark.asyncio
    async def test_voice_disabled_by_config(self, meeting_page, clock, config, params):
        config.voice.enabled = False
        stt = AsyncMock()
        controller, _, _ = _controller(meeting_page, clock, config, tts=AsyncMock(), stt=stt, responder=AsyncMock())

        await controller.join(params)

        assert not controller.voice_enabled
        stt.open_stream.assert_not_awaited()


class TestUnsupportedMeetings:
    @pytest.mark.asyncio
    async def test_sign_in_page(self, meeting_page, clock, config, params):
        meeting_page.url = "https://accounts.google.com/v3/signin/identifier?continue=meet"
        controller, reporter, handlers = _controller(meeting_page, clock, config)

        with pytest.raises(UnsupportedMeetingError) as exc_info:
            await controller.join(params)

        assert exc_info.value.reason == SIGN_IN_REQUIRED
        assert _reported(reporter) == ["processing", "failed"]
        ctx, error = handlers.unsupported_meeting.await_args.args
        assert ctx == {"token": "tok", "bot_id": "bot-1", "event_id": "evt-1", "provider": "google"}
        assert error is exc_info.value
        assert selectors.NAME_INPUT not in meeting_page.filled
        assert meeting_page.closed

    @pytest.mark.asyncio
    async def test_not_a_meet_page(self, meeting_page, clock, config, params):
        meeting_page.url = "https://example.com/landing"
        controller, _, handlers = _controller(meeting_page, clock, config)

        with pytest.raises(UnsupportedMeetingError) as exc_info:
            await controller.join(params)

        assert exc_info.value.reason == UNSUPPORTED_PAGE
        handlers.unsupported_meeting.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_handler_errors_do_not_mask_failure(self, meeting_page, clock, config, params):
        meeting_page.url = "https://example.com/landing"
        controller, _, handlers = _controller(meeting_page, clock, config)
        handlers.unsupported_meeting.side_effect = RuntimeError("handler down")

        with pytest.raises(UnsupportedMeetingError):
            await controller.join(params)


class TestAdmissionFailures:
    @pytest.mark.asyncio
    async def test_denied(self, meeting_page, clock, config, params):
        meeting_page.visible.discard(selectors.PEOPLE_BUTTON)
        meeting_page.texts.add(selectors.REQUEST_DENIED_TEXT)
        meeting_page.body = "Someone in the call denied your request to join"
        controller, reporter, handlers = _controller(meeting_page, clock, config, attempt=2)

        with pytest.raises(AdmissionFailure) as exc_info:
            await controller.join(params)

        error = exc_info.value
        assert error.retryable is False
        assert error.attempt == 2
        assert error.body_text == meeting_page.body
        handlers.admission_failure.assert_awaited_once()
        assert _reported(reporter) == ["processing", "failed"]

    @pytest.mark.asyncio
    async def test_timed_out(self, meeting_page, clock, config, params):
        meeting_page.evaluate_results[PARTICIPANT_COUNT_CONFIRMED_JS] = False
        config.join.join_wait_minutes = 1
        controller, reporter, _ = _controller(meeting_page, clock, config)

        with pytest.raises(AdmissionFailure) as exc_info:
            await controller.join(params)

        assert exc_info.value.retryable is True
        assert exc_info.value.attempt == 1
        assert _reported(reporter) == ["processing", "failed"]

    @pytest.mark.asyncio
    async def test_page_closed_in_lobby(self, meeting_page, clock, config, params):
        def close_browser(_pattern):
            for callback in meeting_page.close_callbacks:
                callback()
            return False

        meeting_page.evaluate_results[PARTICIPANT_COUNT_CONFIRMED_JS] = close_browser
        config.join.join_wait_minutes = 1
        controller, reporter, _ = _controller(meeting_page, clock, config)

        with pytest.raises(BrowserClosedError):
            await controller.join(params)
        assert _reported(reporter) == ["processing", "failed"]


class TestJoinSteps:
    @pytest.mark.asyncio
    async def test_name_input_missing(self, meeting_page, clock, config, params):
        meeting_page.visible.discard(selectors.NAME_INPUT)
        controller, reporter, handlers = _controller(meeting_page, clock, config)

        with pytest.raises(ActionFailedError):
            await controller.join(params)

        # Screenshot between attempts, not after the last one
        assert len(meeting_page.screenshots) == config.join.name_entry_attempts - 1
        assert all(p.parent == config.recording.screenshots_dir for p in meeting_page.screenshots)
        assert _reported(reporter) == ["processing", "failed"]
        handlers.admission_failure.assert_not_awaited()
        handlers.unsupported_meeting.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_name_fill_fails(self, meeting_page, clock, config, params):
        meeting_page.fill_ok = False
        controller, _, _ = _controller(meeting_page, clock, config)

        with pytest.raises(MeetBotError, match="bot name"):
            await controller.join(params)

    @pytest.mark.asyncio
    async def test_join_button_missing(self, meeting_page, clock, config, params):
        meeting_page.buttons.clear()
        controller, _, _ = _controller(meeting_page, clock, config)

        with pytest.raises(ActionFailedError) as exc_info:
            await controller.join(params)
        assert exc_info.value.step == "ask to join"

    @pytest.mark.asyncio
    async def test_alternative_join_button(self, meeting_page, clock, config, params):
        meeting_page.buttons = {"Join now"}
        controller, reporter, _ = _controller(meeting_page, clock, config)

        await controller.join(params)
        assert "Join now" in meeting_page.clicks
        assert _reported(reporter)[-1] == "finished"

    @pytest.mark.asyncio
    async def test_recording_fails_to_start(self, meeting_page, clock, config, params):
        meeting_page.evaluate_results[START_RECORDING_JS] = {"success": False, "error": "denied"}
        controller, reporter, _ = _controller(meeting_page, clock, config)

        with pytest.raises(MeetBotError, match="Recording"):
            await controller.join(params)
        assert _reported(reporter) == ["processing", "joined", "failed"]


class TestRequestStop:
    """The stop routine runs exactly once."""

    @pytest.mark.asyncio
    async def test_second_call_is_noop(self, page, clock, config):
        controller, _, _ = _controller(page, clock, config)

        assert await controller.request_stop("silence") is True
        assert await controller.request_stop("alone in meeting") is False

        assert controller.stop_count == 1
        assert controller.context.stop_reason == "silence"

    @pytest.mark.asyncio
    async def test_concurrent_requests(self, page, clock, config):
        controller, _, _ = _controller(page, clock, config)

        results = await asyncio.gather(*(controller.request_stop(f"reason-{i}") for i in range(5)))

        assert results.count(True) == 1
        assert controller.stop_count == 1

    @pytest.mark.asyncio
    async def test_stop_scheduled_from_sync_code_is_held(self, page, clock, config):
        controller, _, _ = _controller(page, clock, config)

        task = controller.request_stop_soon("SIGTERM")

        assert task in controller._background
        assert await task is True
        await asyncio.sleep(0)
        assert task not in controller._background
        assert controller.context.stop_reason == "SIGTERM"
        assert controller.request_stop_soon("SIGINT") is None

    @pytest.mark.asyncio
    async def test_monitors_firing_together_clean_up_once(self, page, clock, config):
        """Presence and silence both end the session in the same tick."""
        page.evaluate_results[START_RECORDING_JS] = {"success": True, "hasAudio": True, "mimeType": "video/webm"}
        page.evaluate_results[STOP_RECORDING_JS] = {"stopped": True}
        controller, _, _ = _controller(page, clock, config)

        controller.recorder = RecordingPipeline(
            page, AsyncMock(), "sess-1", config=config.recording, monitor_config=config.monitor
        )
        assert await controller.recorder.start()
        controller.capture = AudioCapture(
            page, AsyncMock(), controller.context, AsyncMock(), config.voice, sleep=clock.sleep, clock=clock
        )

        monitor_cfg = replace(config.monitor, inactivity_limit_minutes=0.001)
        presence = PresenceMonitor(AsyncMock(return_value=1), controller.request_stop, monitor_cfg, clock.sleep)
        silence = SilenceMonitor(
            AsyncMock(return_value=0.0), controller.request_stop, AsyncMock(return_value=True), monitor_cfg, clock.sleep
        )

        async def capture_loop():
            while True:
                await clock.sleep(2.0)

        tasks = [
            controller.registry.spawn("presence", presence.run(grace_seconds=0)),
            controller.registry.spawn("silence", silence.run(grace_seconds=0)),
            controller.registry.spawn("capture", capture_loop()),
        ]
        await asyncio.gather(*tasks, return_exceptions=True)

        assert controller.stop_count == 1
        assert controller.context.stop_reason in ("alone in meeting", "silence")
        assert len(page.evaluated(STOP_RECORDING_JS)) == 1
        assert len(page.evaluated(DETACH_JS)) == 1
        assert controller.recorder.completed
        assert all(task.done() for task in tasks)
        assert tasks[2].cancelled()
        assert controller.registry.closed
        assert controller.registry.names() == []
        assert not presence.active


class TestClassifyPage:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "url,visible,expected",
        [
            (MEET_URL, set(), PageType.MEETING_PAGE),
            ("https://accounts.google.com/signin", set(), PageType.SIGN_IN_PAGE),
            ("https://workspace.google.com/", {'h1:has-text("Sign in")'}, PageType.SIGN_IN_PAGE),
            ("https://example.com/", set(), PageType.UNSUPPORTED_PAGE),
        ],
    )
    async def test_classification(self, page, clock, config, url, visible, expected):
        page.url = url
        page.visible = visible
        controller, _, _ = _controller(page, clock, config)
        controller.page = page

        assert await controller.classify_page() is expected

    @pytest.mark.asyncio
    async def test_indeterminate_on_error(self, clock, config):
        controller, _, _ = _controller(None, clock, config)
        controller.page = None

        assert await controller.classify_page() is PageType.INDETERMINATE
