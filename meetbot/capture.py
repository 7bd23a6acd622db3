"""
Inbound audio capture and transcription.

Remote participants' audio is read straight off the call's inbound audio
receivers (found through the in-page transport registry) and pushed
through a ScriptProcessor that emits 16 kHz mono int16 frames. The host
drains those frames every couple of seconds and decides, per batch,
whether to transcribe it, keep accumulating, or throw it away.

If no inbound audio can be attached after several retries, the page's own
continuous speech recognition is used instead.
"""

import asyncio
import base64
import io
import logging
import time
import wave
from typing import Any, Awaitable, Callable, Coroutine, Optional

import numpy as np

from meetbot.config import VoiceConfig, get_config
from meetbot.models import BatchDecision, PendingAudioBatch, SessionContext, TranscriptEvent
from meetbot.page import PageAutomation
from meetbot.providers.base import SpeechToText
from meetbot.resilience import ResiliencePolicy

logger = logging.getLogger(__name__)

MODE_PCM = "pcm"
MODE_SPEECH_RECOGNITION = "speech-recognition"
MODE_NONE = "none"

ATTACH_JS = """
({ sampleRate, bufferSize }) => {
    const registry = window.__meetbot;
    if (!registry) {
        return { attached: false, reason: 'transport registry missing' };
    }
    if (window.__meetbotCapture) {
        return { attached: true, tracks: window.__meetbotCapture.tracks, muted: false };
    }
    const tracks = registry.inboundAudioTracks();
    if (tracks.length === 0) {
        return { attached: false, reason: 'no inbound audio tracks' };
    }
    const muted = tracks.every((t) => t.muted);
    const context = new AudioContext({ sampleRate });
    const source = context.createMediaStreamSource(new MediaStream(tracks));
    const processor = context.createScriptProcessor(bufferSize, 1, 1);
    const capture = { frames: [], tracks: tracks.length, context, processor };

    processor.onaudioprocess = (event) => {
        const input = event.inputBuffer.getChannelData(0);
        const pcm = new Int16Array(input.length);
        for (let i = 0; i < input.length; i++) {
            const s = Math.max(-1, Math.min(1, input[i]));
            pcm[i] = s < 0 ? s * 0x8000 : s * 0x7fff;
        }
        const bytes = new Uint8Array(pcm.buffer);
        let binary = '';
        for (let i = 0; i < bytes.length; i += 8192) {
            binary += String.fromCharCode.apply(null, bytes.subarray(i, i + 8192));
        }
        capture.frames.push({ t: Date.now(), data: btoa(binary) });
    };

    source.connect(processor);
    processor.connect(context.destination);
    tracks.forEach((track) => {
        track.onmute = () => console.warn('[meetbot] inbound audio track muted: ' + track.id);
        track.onunmute = () => console.log('[meetbot] inbound audio track unmuted: ' + track.id);
    });
    window.__meetbotCapture = capture;
    return { attached: true, tracks: tracks.length, muted };
}
"""

DRAIN_JS = """
() => {
    const capture = window.__meetbotCapture;
    if (!capture) {
        return { now: Date.now(), frames: [] };
    }
    const frames = capture.frames;
    capture.frames = [];
    return { now: Date.now(), frames };
}
"""

DETACH_JS = """
() => {
    const capture = window.__meetbotCapture;
    if (capture) {
        capture.processor.onaudioprocess = null;
        capture.processor.disconnect();
        capture.context.close();
        window.__meetbotCapture = null;
    }
    if (window.__meetbotRecognition) {
        window.__meetbotRecognition.stopped = true;
        window.__meetbotRecognition.instance.stop();
        window.__meetbotRecognition = null;
    }
}
"""

SPEECH_RECOGNITION_JS = """
(lang) => {
    const SpeechRecognition = window.SpeechRecognition || window.webkitSpeechRecognition;
    if (!SpeechRecognition) {
        return false;
    }
    const recognition = new SpeechRecognition();
    recognition.continuous = true;
    recognition.interimResults = false;
    recognition.lang = lang;
    const state = { instance: recognition, stopped: false };

    recognition.onresult = (event) => {
        const result = event.results[event.resultIndex];
        if (result && result.isFinal) {
            window.__meetbotTranscript(result[0].transcript);
        }
    };
    recognition.onerror = (event) => {
        if (event.error !== 'no-speech') {
            console.error('[meetbot] speech recognition error: ' + event.error);
        }
    };
    recognition.onend = () => {
        if (state.stopped) {
            return;
        }
        setTimeout(() => {
            try {
                recognition.start();
            } catch (e) {
                if (!String(e && e.message).includes('already started')) {
                    console.error('[meetbot] failed to restart speech recognition: ' + e);
                }
            }
        }, 1000);
    };
    recognition.start();
    window.__meetbotRecognition = state;
    return true;
}
"""


def decode_frame(data: str) -> np.ndarray:
    """Decode a base64 int16 frame to float32 samples in [-1, 1]."""
    pcm = np.frombuffer(base64.b64decode(data), dtype="<i2")
    return pcm.astype(np.float32) / 32768.0


def frame_is_active(samples: np.ndarray, mean_threshold: float = 0.001, peak_threshold: float = 0.01) -> bool:
    """A frame counts as activity when its mean or peak magnitude crosses the thresholds."""
    if samples.size == 0:
        return False
    magnitude = np.abs(samples)
    return bool(magnitude.mean() > mean_threshold or magnitude.max() > peak_threshold)


def to_pcm16(samples: np.ndarray) -> bytes:
    clipped = np.clip(samples, -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 0x8000, clipped * 0x7FFF)
    return scaled.astype("<i2").tobytes()


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode float32 mono samples as 16-bit PCM WAV."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(to_pcm16(samples))
    return buffer.getvalue()


class AudioCapture:
    """Turns remote participants' audio into TranscriptEvents.

    Args:
        page: The meeting page (with the init script installed)
        stt: Speech-to-text provider
        context: Session state; frames are dropped while ``responding``
        on_transcript: Async handler receiving each final TranscriptEvent
        config: Capture timing and thresholds
        dispatch: Runs the transcript handler without blocking the capture
            loop (defaults to asyncio.create_task)
        sleep: Awaitable sleep (injectable for tests)
        clock: Monotonic clock (injectable for tests)
    """

    def __init__(
        self,
        page: PageAutomation,
        stt: SpeechToText,
        context: SessionContext,
        on_transcript: Callable[[TranscriptEvent], Awaitable[Any]],
        config: Optional[VoiceConfig] = None,
        dispatch: Optional[Callable[[Coroutine], Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.page = page
        self.stt = stt
        self.context = context
        self._on_transcript = on_transcript
        self.config = config or get_config().voice
        self._dispatch = dispatch or self._create_task
        self._sleep = sleep
        self._clock = clock
        self.policy = ResiliencePolicy(sleep=sleep)
        self.batch = PendingAudioBatch(sample_rate=self.config.sample_rate)
        self.mode = MODE_NONE
        self.submissions = 0
        self._pending: set[asyncio.Task] = set()
        self._stream_failed = False

    def _create_task(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def _tag(self) -> str:
        return f"[{self.context.correlation_id}] [VOICE]"

    async def _attach_once(self) -> bool:
        result = await self.page.evaluate(
            ATTACH_JS,
            {"sampleRate": self.config.sample_rate, "bufferSize": self.config.processor_buffer_size},
        )
        if not result or not result.get("attached"):
            logger.info(f"{self._tag} Remote audio not available yet: {(result or {}).get('reason')}")
            return False
        if result.get("muted"):
            logger.warning(f"{self._tag} Only muted remote audio tracks found, capture may be silent")
        logger.info(f"{self._tag} Capturing {result.get('tracks')} remote audio track(s)")
        return True

    async def _start_speech_recognition(self) -> bool:
        try:
            await self.page.expose_function("__meetbotTranscript", self._on_recognized)
            started = await self.page.evaluate(SPEECH_RECOGNITION_JS, "en-US")
        except Exception as e:
            logger.error(f"{self._tag} Speech recognition fallback failed: {e}")
            return False
        if not started:
            logger.warning(f"{self._tag} SpeechRecognition API not available")
        return bool(started)

    async def start(self) -> str:
        """
        Attach to remote audio, retrying, then fall back to speech recognition.

        Returns:
            The capture mode that ended up active
        """
        await self._sleep(self.config.initial_delay_seconds)
        try:
            await self.policy.retry(
                self._attach_once,
                max_attempts=self.config.attach_attempts,
                wait_seconds=self.config.attach_retry_seconds,
                step="attach remote audio",
            )
            self.mode = MODE_PCM
        except Exception as e:
            logger.warning(f"{self._tag} Could not capture remote audio ({e}), falling back to speech recognition")
            self.mode = MODE_SPEECH_RECOGNITION if await self._start_speech_recognition() else MODE_NONE

        self.context.voice_listening = self.mode != MODE_NONE
        logger.info(f"{self._tag} Listening mode: {self.mode}")
        return self.mode

    async def run(self) -> None:
        """Start capture, then process batches until cancelled."""
        if await self.start() != MODE_PCM:
            return
        try:
            while True:
                await self._sleep(self.config.check_interval_seconds)
                await self.process_once()
        finally:
            self.context.voice_listening = False

    async def _drain(self) -> None:
        result = await self.page.evaluate(DRAIN_JS) or {}
        frames = result.get("frames") or []
        if not frames:
            return
        if self.context.responding:
            # Do not transcribe the bot's own reply
            return

        now = self._clock()
        page_now = result.get("now", 0)
        for frame in frames:
            samples = decode_frame(frame["data"])
            timestamp = now - max(0.0, (page_now - frame.get("t", page_now)) / 1000)
            active = frame_is_active(
                samples, self.config.activity_mean_threshold, self.config.activity_peak_threshold
            )
            self.batch.add(samples, timestamp, active)
            await self._stream(samples)

    async def _stream(self, samples: np.ndarray) -> None:
        stream_id = self.context.live_stream_id
        if not stream_id or self._stream_failed:
            return
        try:
            await self.stt.send_chunk(stream_id, to_pcm16(samples))
        except Exception as e:
            self._stream_failed = True
            logger.warning(f"{self._tag} Live transcription stream failed, continuing with batches: {e}")

    @property
    def streaming(self) -> bool:
        return bool(self.context.live_stream_id) and not self._stream_failed

    async def process_once(self) -> BatchDecision:
        """Drain new frames and act on the pending batch.

        While the live transcription stream is healthy it receives every frame
        and produces the transcripts, so batches are not submitted.
        """
        await self._drain()
        if self.streaming:
            self.batch.clear()
            return BatchDecision.WAIT
        now = self._clock()
        decision = self.batch.decide(
            now,
            min_seconds=self.config.min_batch_seconds,
            min_interval=self.config.min_submit_interval_seconds,
            activity_window=self.config.activity_window_seconds,
        )

        if decision is BatchDecision.DISCARD:
            logger.debug(f"{self._tag} No recent audio activity, discarding {self.batch.duration:.1f}s of audio")
            self.batch.clear()
        elif decision is BatchDecision.SUBMIT:
            samples = self.batch.take(now)
            await self._submit(samples)
        return decision

    async def _submit(self, samples: np.ndarray) -> None:
        self.submissions += 1
        seconds = len(samples) / self.config.sample_rate
        logger.info(f"{self._tag} Transcribing {seconds:.2f}s of audio")
        try:
            text = await self.stt.transcribe_batch(encode_wav(samples, self.config.sample_rate))
        except Exception as e:
            logger.warning(f"{self._tag} Transcription failed: {e}")
            text = ""
        await self.emit_transcript(text)

    async def _on_recognized(self, text: str) -> None:
        await self.emit_transcript(text)

    async def emit_transcript(self, text: str) -> None:
        text = (text or "").strip()
        if not text:
            return
        if self.context.stopping:
            logger.debug(f"{self._tag} Dropping late transcript after stop: {text}")
            return
        logger.info(f"{self._tag} Transcript: {text}")
        self._dispatch(self._on_transcript(TranscriptEvent(text=text, is_final=True)))

    async def stop(self) -> None:
        try:
            await self.page.evaluate(DETACH_JS)
        except Exception as e:
            logger.debug(f"Suppressed error detaching capture: {e}")
        self.context.voice_listening = False
