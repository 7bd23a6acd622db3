"""
Session controller for one Google Meet bot run.

Drives the whole lifecycle:
- launch a page, install media interception, navigate
- classify the page (meeting, sign-in wall, something else)
- enter the bot name, mute devices, ask to join
- wait in the lobby until admitted (AdmissionGate)
- record, listen and talk until a monitor or the duration cap ends it
- finalize the upload and report the status history

The controller owns the status history and the single stop routine.
Monitors and the recorder only *request* a stop.
"""

import asyncio
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Optional

from meetbot import selectors
from meetbot.admission import AdmissionGate
from meetbot.browser import INIT_SCRIPT, launch_page
from meetbot.capture import AudioCapture
from meetbot.config import MeetBotConfig, get_config
from meetbot.conversation import ConversationEngine
from meetbot.errors import (
    SIGN_IN_REQUIRED,
    UNSUPPORTED_PAGE,
    AdmissionFailure,
    BrowserClosedError,
    MeetBotError,
    UnsupportedMeetingError,
)
from meetbot.models import (
    FAILED,
    FINISHED,
    JOINED,
    AdmissionOutcome,
    JoinParams,
    PageType,
    SessionContext,
    StatusHistory,
)
from meetbot.page import PageAutomation
from meetbot.page_health import DialogDismisser, PageHealthMonitor, dismiss_welcome_dialogs
from meetbot.presence import PresenceMonitor, page_participant_reader
from meetbot.providers.base import (
    ErrorHandlers,
    PageFactory,
    ResponseProvider,
    SpeechToText,
    StatusReporter,
    TextToSpeech,
    Uploader,
)
from meetbot.providers.reporting import HttpErrorHandlers, HttpStatusReporter
from meetbot.providers.storage import LocalFileUploader
from meetbot.recording import RecordingPipeline
from meetbot.resilience import ResiliencePolicy
from meetbot.scheduler import TaskRegistry
from meetbot.silence import SilenceMonitor
from meetbot.synthesis import Synthesizer

logger = logging.getLogger(__name__)
browser_logger = logging.getLogger("meetbot.browser")

PROVIDER = "google"

CONSOLE_LEVELS = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "log": logging.INFO,
    "debug": logging.DEBUG,
}


class SessionController:
    """Runs one meeting session end to end.

    Voice participation is enabled only when tts, stt and responder are all
    given and ``config.voice.enabled`` is set.

    Args:
        page_factory: Async (url, correlation_id, app_tag) -> PageAutomation
        tts: Text-to-speech provider
        stt: Speech-to-text provider
        responder: Conversational response provider
        status_reporter: Receives the final status history
        error_handlers: Notified of classified failures
        config: Bot configuration (defaults to the global config)
        correlation_id: Session id used in logs and stream ids
        attempt: Which join attempt this session is (reported on admission failure)
        sleep: Awaitable sleep (injectable for tests)
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        page_factory: Optional[PageFactory] = None,
        tts: Optional[TextToSpeech] = None,
        stt: Optional[SpeechToText] = None,
        responder: Optional[ResponseProvider] = None,
        status_reporter: Optional[StatusReporter] = None,
        error_handlers: Optional[ErrorHandlers] = None,
        config: Optional[MeetBotConfig] = None,
        correlation_id: Optional[str] = None,
        attempt: int = 1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or get_config()
        self.page_factory = page_factory or launch_page
        self.tts = tts
        self.stt = stt
        self.responder = responder
        self.status_reporter = status_reporter or HttpStatusReporter(self.config.providers)
        self.error_handlers = error_handlers or HttpErrorHandlers(self.config.providers)
        self.correlation_id = correlation_id or uuid.uuid4().hex[:12]
        self.attempt = attempt
        self._sleep = sleep
        self._clock = clock

        self.policy = ResiliencePolicy(sleep=sleep)
        self.context = SessionContext(correlation_id=self.correlation_id)
        self.registry = TaskRegistry(self.correlation_id)
        self.history = StatusHistory()

        self.page: Optional[PageAutomation] = None
        self.recorder: Optional[RecordingPipeline] = None
        self.capture: Optional[AudioCapture] = None
        self.synthesizer: Optional[Synthesizer] = None
        self.conversation: Optional[ConversationEngine] = None
        self.stop_count = 0
        self._responses = 0
        self._background: set[asyncio.Task] = set()

    @property
    def _tag(self) -> str:
        return f"[{self.correlation_id}]"

    @property
    def voice_enabled(self) -> bool:
        return bool(self.config.voice.enabled and self.tts and self.stt and self.responder)

    # ==================== Public API ====================

    async def join(self, params: JoinParams) -> None:
        """
        Run the session to completion.

        Raises:
            UnsupportedMeetingError: The page is a sign-in wall or not a meeting
            AdmissionFailure: The bot was denied or never admitted
            Any other error from mandatory join steps, after status reporting
        """
        uploader: Uploader = params.uploader or LocalFileUploader(self.correlation_id)
        try:
            await self._join_meeting(params, uploader)

            upload_ok = await self._finalize_upload(uploader)
            if FINISHED in self.history and not upload_ok:
                self.history.mark_upload_failed()
                logger.warning(f"{self._tag} Upload failed, session marked as failed")

            await self._report(params)
        except Exception as error:
            await self._close_live_stream()

            if self.history.terminal is None:
                self.history.append(FAILED)
            await self._report(params)
            await self._handle_error(params, error)
            raise
        finally:
            await self._shutdown()

    async def request_stop(self, reason: str) -> bool:
        """
        End the session. Safe to call any number of times from any task.

        The first call stops capture, stops the recorder's media, cancels
        every registered task (except the caller's) and signals completion.
        Later calls do nothing.

        Returns:
            True for the call that actually stopped the session
        """
        if self.context.stopping:
            logger.debug(f"{self._tag} Stop already in progress, ignoring '{reason}'")
            return False
        self.context.stopping = True
        self.context.stop_reason = reason
        self.stop_count += 1
        logger.info(f"{self._tag} Stopping session: {reason}")

        if self.capture is not None:
            await self.capture.stop()
        if self.recorder is not None:
            await self.recorder.stop_media()
        await self.registry.cancel_all()
        if self.recorder is not None:
            self.recorder.mark_complete()
        return True

    def request_stop_soon(self, reason: str) -> Optional[asyncio.Task]:
        """Schedule ``request_stop`` from synchronous code (signal or page callbacks).

        The task is held until it finishes.
        """
        if self.context.stopping:
            return None
        task = asyncio.create_task(self.request_stop(reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def classify_page(self) -> PageType:
        """Classify the page reached after navigation."""
        try:
            url = self.page.url
            if selectors.MEET_HOST in url:
                return PageType.MEETING_PAGE
            if url.startswith(selectors.SIGN_IN_URL_PREFIX):
                logger.info(f"{self._tag} Bot is on the sign in page")
                return PageType.SIGN_IN_PAGE
            if await self.page.is_visible(f'h1:has-text("{selectors.SIGN_IN_HEADING}")'):
                logger.info(f"{self._tag} Bot is on a page with a 'Sign in' heading")
                return PageType.SIGN_IN_PAGE
            return PageType.UNSUPPORTED_PAGE
        except Exception as e:
            logger.error(f"{self._tag} Could not classify page: {e}")
            return PageType.INDETERMINATE

    # ==================== Join flow ====================

    async def _join_meeting(self, params: JoinParams, uploader: Uploader) -> None:
        join_cfg = self.config.join
        logger.info(f"{self._tag} [JOIN] Launching browser for {params.url}")
        self.page = await self.page_factory(params.url, self.correlation_id, PROVIDER)
        self.page.on_console(self._log_console)
        self.page.on_close(self._on_page_closed)
        await self.page.add_init_script(INIT_SCRIPT)

        logger.info(f"{self._tag} [JOIN] Navigating to meeting URL")
        await self.page.goto(params.url, wait_until="networkidle", timeout_ms=self.config.browser.navigation_timeout_ms)
        await self._sleep(self.config.browser.settle_seconds)

        await self._dismiss_device_prompt()

        page_type = await self.classify_page()
        if page_type is PageType.SIGN_IN_PAGE:
            raise UnsupportedMeetingError(SIGN_IN_REQUIRED, "Meeting requires sign in")
        if page_type is PageType.INDETERMINATE:
            logger.warning(f"{self._tag} [JOIN] Page type indeterminate, treating as unsupported")
        if page_type is not PageType.MEETING_PAGE:
            raise UnsupportedMeetingError(UNSUPPORTED_PAGE, f"Not a Google Meet page: {self.page.url}")

        await self._enter_name(params.name or join_cfg.default_bot_name)
        await self._mute_devices()
        await self._request_join()

        gate = AdmissionGate(self.page, join_cfg, self.policy, sleep=self._sleep, clock=self._clock)
        outcome = await gate.await_admission(join_cfg.join_wait_minutes * 60)
        if self.context.stopping:
            raise BrowserClosedError(f"Session stopped while waiting for admission: {self.context.stop_reason}")
        if outcome is not AdmissionOutcome.ADMITTED:
            body_text = await self.page.body_text()
            denied = outcome is AdmissionOutcome.DENIED or selectors.REQUEST_DENIED_TEXT in body_text
            raise AdmissionFailure(
                f"Bot was not admitted to the meeting ({outcome.value})",
                body_text=body_text,
                retryable=not denied,
                attempt=self.attempt,
            )

        self.history.append(JOINED)
        logger.info(f"{self._tag} [JOIN] Joined the meeting")
        await self.policy.attempt(lambda: dismiss_welcome_dialogs(self.page, join_cfg, self._sleep), "welcome dialogs")

        await self._run_session(uploader)
        self.history.append(FINISHED)

    async def _dismiss_device_prompt(self) -> None:
        cfg = self.config.join
        try:
            await self.policy.retry(
                lambda: self.page.click_button(
                    selectors.CONTINUE_WITHOUT_DEVICES_BUTTON, cfg.device_prompt_timeout_seconds
                ),
                max_attempts=cfg.device_prompt_attempts,
                wait_seconds=cfg.device_prompt_retry_seconds,
                step="continue without microphone and camera",
            )
            logger.info(f"{self._tag} [JOIN] Dismissed device permission prompt")
        except Exception:
            logger.info(f"{self._tag} [JOIN] 'Continue without microphone and camera' prompt not shown")

    def _screenshot_hook(self, step: str):
        async def hook(attempt: int, error: Optional[BaseException]) -> None:
            path = self.config.recording.screenshots_dir / f"{self.correlation_id}-{step}-{attempt}.png"
            await self.page.screenshot(path)

        return hook

    async def _enter_name(self, name: str) -> None:
        cfg = self.config.join
        logger.info(f"{self._tag} [JOIN] Waiting for the name input")
        await self.policy.retry(
            lambda: self.page.wait_for(selectors.NAME_INPUT, 10),
            max_attempts=cfg.name_entry_attempts,
            wait_seconds=cfg.step_retry_seconds,
            on_failure=self._screenshot_hook("name-input"),
            step="name input",
        )
        await self._sleep(cfg.step_settle_seconds)
        if not await self.page.fill(selectors.NAME_INPUT, name):
            raise MeetBotError("Could not fill in the bot name")
        logger.info(f"{self._tag} [JOIN] Entered name '{name}'")
        await self._sleep(cfg.step_settle_seconds)

    async def _mute_devices(self) -> None:
        for selector in (selectors.MIC_OFF_BUTTON, selectors.CAMERA_OFF_BUTTON):
            clicked = await self.policy.attempt(lambda s=selector: self.page.click(s, 2), "mute devices")
            if clicked:
                logger.info(f"{self._tag} [JOIN] Clicked {selector}")

    async def _click_join_button(self) -> bool:
        for text in selectors.JOIN_BUTTON_TEXTS:
            if await self.page.click_button(text, 5):
                logger.info(f"{self._tag} [JOIN] Clicked '{text}'")
                return True
        return False

    async def _request_join(self) -> None:
        cfg = self.config.join
        await self.policy.retry(
            self._click_join_button,
            max_attempts=cfg.join_request_attempts,
            wait_seconds=cfg.step_retry_seconds,
            on_failure=self._screenshot_hook("ask-to-join"),
            step="ask to join",
        )

    # ==================== In-call ====================

    def _dispatch_response(self, coro) -> Optional[asyncio.Task]:
        self._responses += 1
        return self.registry.spawn(f"respond-{self._responses}", coro)

    async def _on_live_transcript(self, text: str) -> None:
        if self.capture is not None:
            await self.capture.emit_transcript(text)

    async def _start_voice(self) -> None:
        voice = self.config.voice
        self.synthesizer = Synthesizer(
            self.page, self.tts, self.context, self.config.providers.tts_sample_rate, sleep=self._sleep
        )
        self.conversation = ConversationEngine(
            self.responder, self.synthesizer.speak, self.context, voice, sleep=self._sleep
        )
        self.capture = AudioCapture(
            self.page,
            self.stt,
            self.context,
            self.conversation.handle_event,
            voice,
            dispatch=self._dispatch_response,
            sleep=self._sleep,
            clock=self._clock,
        )

        if voice.live_transcription:
            stream_id = f"voice-{self.correlation_id}"
            try:
                await self.stt.open_stream(stream_id, self._on_live_transcript)
                self.context.live_stream_id = stream_id
            except Exception as e:
                logger.warning(f"{self._tag} [VOICE] Live transcription unavailable: {e}")

        if voice.speak_greeting and self.config.join.greeting:
            await self.synthesizer.speak(self.config.join.greeting)

        self.registry.spawn("capture", self.capture.run())

    async def _run_session(self, uploader: Uploader) -> None:
        monitor_cfg = self.config.monitor
        rec_cfg = self.config.recording

        if self.voice_enabled:
            await self._start_voice()

        self.recorder = RecordingPipeline(
            self.page, uploader, self.correlation_id, on_end=self.request_stop, config=rec_cfg, monitor_config=monitor_cfg
        )
        if not await self.recorder.start():
            raise MeetBotError("Recording failed to start")

        presence = PresenceMonitor(page_participant_reader(self.page), self.request_stop, monitor_cfg, self._sleep)
        silence = SilenceMonitor(
            self.recorder.sample_energy, self.request_stop, self.recorder.recording_has_audio, monitor_cfg, self._sleep
        )
        self.registry.spawn("presence", presence.run())
        self.registry.spawn("silence", silence.run())
        self.registry.spawn("page-health", PageHealthMonitor(self.page, self.request_stop, monitor_cfg, self._sleep).run())
        self.registry.spawn("dialogs", DialogDismisser(self.page, monitor_cfg, self._sleep).run())

        if self.context.stopping:
            self.recorder.mark_complete()

        completed = await self.recorder.record(rec_cfg.max_duration_minutes * 60)
        if not completed:
            await self.request_stop("maximum duration reached")

        await self._close_live_stream()
        logger.info(f"{self._tag} Session finished ({self.context.stop_reason})")

    # ==================== Teardown ====================

    async def _finalize_upload(self, uploader: Uploader) -> bool:
        logger.info(f"{self._tag} Finalizing recording upload")
        try:
            result = bool(await uploader.finalize_upload())
        except Exception as e:
            logger.error(f"{self._tag} Upload failed: {e}")
            return False
        logger.info(f"{self._tag} Upload result: {result}")
        return result

    async def _report(self, params: JoinParams) -> None:
        try:
            await self.status_reporter.report(
                params.bot_id, params.event_id, PROVIDER, params.bearer_token, self.history.as_list()
            )
        except Exception as e:
            logger.error(f"{self._tag} Status report failed: {e}")

    async def _handle_error(self, params: JoinParams, error: Exception) -> None:
        ctx = {
            "token": params.bearer_token,
            "bot_id": params.bot_id,
            "event_id": params.event_id,
            "provider": PROVIDER,
        }
        try:
            if isinstance(error, AdmissionFailure):
                await self.error_handlers.admission_failure(ctx, error)
            elif isinstance(error, UnsupportedMeetingError):
                await self.error_handlers.unsupported_meeting(ctx, error)
            else:
                logger.error(f"{self._tag} Session failed: {error}")
        except Exception as e:
            logger.error(f"{self._tag} Error handler failed: {e}")

    async def _close_live_stream(self) -> None:
        stream_id = self.context.live_stream_id
        if not stream_id or self.stt is None:
            return
        self.context.live_stream_id = None
        try:
            await self.stt.close_stream(stream_id)
            logger.info(f"{self._tag} Closed live transcription stream {stream_id}")
        except Exception as e:
            logger.warning(f"{self._tag} Error closing live transcription stream: {e}")

    async def _shutdown(self) -> None:
        if not self.context.stopping:
            self.context.stopping = True
            await self.registry.cancel_all()
        if self.page is not None:
            try:
                await self.page.close()
            except Exception as e:
                logger.debug(f"Suppressed error in _shutdown (page close): {e}")
        logger.info(f"{self._tag} Session closed, status: {self.history.as_list()}")

    def _log_console(self, level: str, text: str) -> None:
        browser_logger.log(CONSOLE_LEVELS.get(level, logging.DEBUG), f"{self._tag} {text}")

    def _on_page_closed(self) -> None:
        if self.context.stopping:
            return
        logger.warning(f"{self._tag} Browser page closed unexpectedly")
        self.request_stop_soon("page closed")
