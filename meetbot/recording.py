"""
Session recording.

The page records its own tab with getDisplayMedia + MediaRecorder and
hands every non-empty chunk (base64) to an exposed host function, which
forwards the bytes to the uploader. A per-session secret guards the
exposed functions so page scripts cannot inject data.

The same display stream feeds an AnalyserNode used by the silence
monitor.
"""

import asyncio
import base64
import logging
import secrets
from typing import Any, Awaitable, Callable, Optional

from meetbot.config import MonitorConfig, RecordingConfig, get_config
from meetbot.models import AudioEnergySample
from meetbot.page import PageAutomation
from meetbot.providers.base import Uploader

logger = logging.getLogger(__name__)

START_RECORDING_JS = """
async ({ secret, primaryMimeType, fallbackMimeType, chunkMs, fftSize }) => {
    if (!navigator.mediaDevices || !navigator.mediaDevices.getDisplayMedia) {
        return { success: false, error: 'getDisplayMedia not supported' };
    }
    const stream = await navigator.mediaDevices.getDisplayMedia({
        video: true,
        audio: {
            autoGainControl: false,
            channels: 2,
            channelCount: 2,
            echoCancellation: false,
            noiseSuppression: false,
        },
        preferCurrentTab: true,
    });

    const hasAudio = stream.getAudioTracks().length > 0;
    if (!hasAudio) {
        console.warn('[meetbot] Recording has no audio track, relying on presence detection');
    }

    let mimeType = primaryMimeType;
    if (!MediaRecorder.isTypeSupported(primaryMimeType)) {
        console.warn('[meetbot] ' + primaryMimeType + ' not supported, using ' + fallbackMimeType);
        mimeType = fallbackMimeType;
    }

    const recorder = new MediaRecorder(stream, { mimeType });
    const state = { recorder, stream, hasAudio, mimeType, pending: new Set(), analyser: null, bins: null };

    const toBase64 = (buffer) => {
        const bytes = new Uint8Array(buffer);
        let binary = '';
        for (let i = 0; i < bytes.length; i += 8192) {
            binary += String.fromCharCode.apply(null, bytes.subarray(i, i + 8192));
        }
        return btoa(binary);
    };

    recorder.ondataavailable = (event) => {
        if (!event.data || !event.data.size) {
            console.warn('[meetbot] Received empty recording chunk');
            return;
        }
        const send = event.data.arrayBuffer()
            .then((buffer) => window.__meetbotSendChunk(secret, toBase64(buffer)))
            .catch((e) => console.error('[meetbot] Error sending chunk: ' + e));
        state.pending.add(send);
        send.finally(() => state.pending.delete(send));
    };

    const video = stream.getVideoTracks()[0];
    if (video) {
        video.onended = () => window.__meetbotMeetEnd(secret);
    }

    if (hasAudio) {
        try {
            const context = new AudioContext();
            const source = context.createMediaStreamSource(stream);
            const analyser = context.createAnalyser();
            analyser.fftSize = fftSize;
            source.connect(analyser);
            state.analyser = analyser;
            state.analyserContext = context;
            state.bins = new Uint8Array(analyser.frequencyBinCount);
        } catch (e) {
            console.error('[meetbot] Failed to initialize audio analyser: ' + e);
        }
    }

    recorder.start(chunkMs);
    window.__meetbotRecorder = state;
    return { success: true, hasAudio: hasAudio && state.analyser !== null, mimeType };
}
"""

STOP_RECORDING_JS = """
async () => {
    const state = window.__meetbotRecorder;
    if (!state) {
        return { stopped: false };
    }
    window.__meetbotRecorder = null;
    if (state.recorder.state !== 'inactive') {
        await new Promise((resolve) => {
            state.recorder.onstop = resolve;
            state.recorder.stop();
        });
    }
    state.stream.getTracks().forEach((track) => track.stop());
    await Promise.allSettled(Array.from(state.pending));
    if (state.analyserContext) {
        state.analyserContext.close();
    }
    return { stopped: true };
}
"""

ENERGY_JS = """
() => {
    const state = window.__meetbotRecorder;
    if (!state || !state.analyser) {
        throw new Error('no audio analyser');
    }
    state.analyser.getByteFrequencyData(state.bins);
    let sum = 0;
    for (let i = 0; i < state.bins.length; i++) {
        sum += state.bins[i];
    }
    return sum / state.bins.length;
}
"""


class RecordingPipeline:
    """Records the meeting tab and streams chunks to the uploader.

    Args:
        page: The meeting page
        uploader: Receives each recorded chunk
        correlation_id: Session id for log lines
        on_end: Async callable invoked (with a reason) when the page signals
            the recording ended on its own, e.g. the captured tab went away
        config: Chunking, codecs and duration cap
        monitor_config: Analyser FFT size for the silence monitor
    """

    def __init__(
        self,
        page: PageAutomation,
        uploader: Uploader,
        correlation_id: str,
        on_end: Optional[Callable[[str], Awaitable[Any]]] = None,
        config: Optional[RecordingConfig] = None,
        monitor_config: Optional[MonitorConfig] = None,
    ):
        self.page = page
        self.uploader = uploader
        self.correlation_id = correlation_id
        self._on_end = on_end
        self.config = config or get_config().recording
        self.monitor_config = monitor_config or get_config().monitor
        self._secret = secrets.token_hex(16)
        self._completed = asyncio.Event()
        self._media_stopped = False
        self.started = False
        self.has_audio = False
        self.mime_type: Optional[str] = None
        self.chunks = 0
        self.bytes = 0

    @property
    def _tag(self) -> str:
        return f"[{self.correlation_id}] [REC]"

    async def _receive_chunk(self, secret: str, data: str) -> None:
        if secret != self._secret:
            logger.warning(f"{self._tag} Rejected recording chunk with bad secret")
            return
        chunk = base64.b64decode(data)
        if not chunk:
            return
        try:
            await self.uploader.save_chunk(chunk)
        except Exception as e:
            logger.error(f"{self._tag} Uploader failed to save chunk: {e}")
            return
        self.chunks += 1
        self.bytes += len(chunk)
        if self.chunks % 30 == 0:
            logger.info(f"{self._tag} {self.chunks} chunks ({self.bytes / 1_000_000:.1f} MB) recorded")

    async def _receive_end(self, secret: str) -> None:
        if secret != self._secret:
            return
        logger.info(f"{self._tag} Page signalled end of recording")
        if self._on_end is not None:
            await self._on_end("recording stream ended")

    async def start(self) -> bool:
        """Start the in-page recorder. Returns False if recording could not start."""
        await self.page.expose_function("__meetbotSendChunk", self._receive_chunk)
        await self.page.expose_function("__meetbotMeetEnd", self._receive_end)

        result = await self.page.evaluate(
            START_RECORDING_JS,
            {
                "secret": self._secret,
                "primaryMimeType": self.config.primary_mime_type,
                "fallbackMimeType": self.config.fallback_mime_type,
                "chunkMs": self.config.chunk_ms,
                "fftSize": self.monitor_config.silence_fft_size,
            },
        )
        if not result or not result.get("success"):
            logger.error(f"{self._tag} Recording failed to start: {(result or {}).get('error')}")
            return False

        self.started = True
        self.has_audio = bool(result.get("hasAudio"))
        self.mime_type = result.get("mimeType")
        logger.info(f"{self._tag} Recording started ({self.mime_type}, audio={self.has_audio})")
        return True

    async def record(self, duration_cap_seconds: float) -> bool:
        """
        Wait until the recording completes or the duration cap elapses.

        Returns:
            True if completion was signalled, False if the cap was hit
        """
        logger.info(f"{self._tag} Recording for at most {duration_cap_seconds / 60:.1f} minutes")
        try:
            await asyncio.wait_for(self._completed.wait(), timeout=duration_cap_seconds)
            return True
        except asyncio.TimeoutError:
            logger.info(f"{self._tag} Maximum recording duration reached")
            return False

    async def sample_energy(self) -> AudioEnergySample:
        return float(await self.page.evaluate(ENERGY_JS))

    async def recording_has_audio(self) -> bool:
        return self.has_audio

    async def stop_media(self) -> None:
        """Stop the recorder and all captured tracks, flushing in-flight chunks."""
        if self._media_stopped or not self.started:
            return
        self._media_stopped = True
        grace = self.config.processing_grace_minutes * 60
        try:
            await asyncio.wait_for(self.page.evaluate(STOP_RECORDING_JS), timeout=grace)
            logger.info(f"{self._tag} Recording stopped after {self.chunks} chunks")
        except asyncio.TimeoutError:
            logger.warning(f"{self._tag} Recording did not flush within {grace:.0f}s")
        except Exception as e:
            logger.warning(f"{self._tag} Error stopping recording media: {e}")

    def mark_complete(self) -> None:
        self._completed.set()

    @property
    def completed(self) -> bool:
        return self._completed.is_set()
