"""
Speech synthesis into the meeting's outbound audio.

The bot has no real microphone. To talk, synthesized audio is decoded in
the page into a MediaStream track and:
1. registered as the result of the next getUserMedia({audio}) call, and
2. hot-swapped onto every outbound audio sender already in the call.

If no sender could be swapped, the Meet microphone is toggled off and on
so Meet re-acquires the microphone and picks up the synthesized stream.
Speaking is best effort: any failure is logged and the call returns
without raising.
"""

import asyncio
import base64
import logging
from typing import Any, Awaitable, Callable, Optional

from meetbot import selectors
from meetbot.models import SessionContext
from meetbot.page import PageAutomation
from meetbot.providers.base import TextToSpeech

logger = logging.getLogger(__name__)

PREPARE_JS = """
async ({ audio, sampleRate }) => {
    const registry = window.__meetbot;
    if (!registry) {
        return { success: false, error: 'transport registry missing' };
    }
    // A context kept alive for a swapped track is released on the next utterance
    if (registry.ttsContext) {
        registry.ttsContext.close().catch(() => {});
        registry.ttsContext = null;
    }
    try {
        const binary = atob(audio);
        const bytes = new Uint8Array(binary.length);
        for (let i = 0; i < binary.length; i++) {
            bytes[i] = binary.charCodeAt(i);
        }
        const context = new AudioContext({ sampleRate });
        const buffer = await context.decodeAudioData(bytes.buffer);
        const source = context.createBufferSource();
        source.buffer = buffer;
        const destination = context.createMediaStreamDestination();
        source.connect(destination);
        const track = destination.stream.getAudioTracks()[0];
        if (!track) {
            return { success: false, error: 'no audio track produced' };
        }
        registry.ttsStream = new MediaStream([track]);
        registry.ttsSource = source;
        registry.ttsContext = context;
        return { success: true, trackId: track.id, duration: buffer.duration };
    } catch (e) {
        return { success: false, error: String(e && e.message || e) };
    }
}
"""

SWAP_JS = """
async () => {
    const registry = window.__meetbot;
    if (!registry || !registry.ttsStream) {
        return 0;
    }
    return await registry.replaceOutboundAudio(registry.ttsStream.getAudioTracks()[0]);
}
"""

PLAY_JS = """
async () => {
    const registry = window.__meetbot;
    if (!registry || !registry.ttsSource) {
        return { success: false, error: 'no prepared speech' };
    }
    const source = registry.ttsSource;
    if (registry.ttsContext.state === 'suspended') {
        await registry.ttsContext.resume();
    }
    const started = performance.now();
    await new Promise((resolve) => {
        source.onended = resolve;
        source.start();
    });
    return { success: true, elapsed: (performance.now() - started) / 1000 };
}
"""

CLEANUP_JS = """
(keepTrack) => {
    const registry = window.__meetbot;
    if (!registry) {
        return;
    }
    if (!keepTrack && registry.ttsStream) {
        registry.ttsStream.getTracks().forEach((t) => t.stop());
        if (registry.ttsContext) {
            registry.ttsContext.close();
        }
    }
    registry.ttsStream = null;
    registry.ttsSource = null;
    if (!keepTrack) {
        registry.ttsContext = null;
    }
}
"""


class Synthesizer:
    """Speaks text into the call.

    Args:
        page: The meeting page (with the init script installed)
        tts: Text-to-speech provider
        context: Session state (voice_listening decides whether the mic stays on)
        sample_rate: Decode rate for the synthesized audio
        sleep: Awaitable sleep (injectable for tests)
    """

    def __init__(
        self,
        page: PageAutomation,
        tts: TextToSpeech,
        context: SessionContext,
        sample_rate: int = 24000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.page = page
        self.tts = tts
        self.context = context
        self.sample_rate = sample_rate
        self._sleep = sleep

    async def _toggle_microphone(self) -> bool:
        """Turn the Meet microphone off (if on) then on, forcing re-acquisition."""
        if await self.page.click_first(selectors.MIC_OFF_SELECTORS):
            await self._sleep(0.5)
        enabled = await self.page.click_first(selectors.MIC_ON_SELECTORS)
        if enabled:
            # Meet re-runs getUserMedia after unmuting
            await self._sleep(2)
        return enabled

    async def _ensure_microphone_on(self) -> None:
        if await self.page.click_first(selectors.MIC_ON_SELECTORS):
            logger.info("[VOICE] Microphone enabled for speech")
            await self._sleep(1)

    async def speak(self, text: str) -> bool:
        """
        Synthesize ``text`` and play it into the meeting.

        Returns:
            True if playback ran to completion, False if any step failed
        """
        tag = f"[{self.context.correlation_id}]"
        swapped = 0
        prepared = False
        try:
            audio = await self.tts.synthesize(text)
            if not audio:
                logger.warning(f"{tag} [VOICE] TTS returned no audio, skipping speech")
                return False

            result = await self.page.evaluate(
                PREPARE_JS,
                {"audio": base64.b64encode(audio).decode("ascii"), "sampleRate": self.sample_rate},
            )
            if not result or not result.get("success"):
                logger.error(f"{tag} [VOICE] Could not prepare speech stream: {(result or {}).get('error')}")
                return False
            prepared = True
            logger.info(f"{tag} [VOICE] Speech stream ready ({result.get('duration', 0):.1f}s)")

            swapped = int(await self.page.evaluate(SWAP_JS) or 0)
            if swapped:
                logger.info(f"{tag} [VOICE] Swapped speech onto {swapped} outbound sender(s)")
                await self._ensure_microphone_on()
            else:
                logger.info(f"{tag} [VOICE] No outbound sender swapped, toggling microphone")
                if not await self._toggle_microphone():
                    logger.warning(f"{tag} [VOICE] Could not enable microphone, speech may not be heard")

            playback = await self.page.evaluate(PLAY_JS)
            if not playback or not playback.get("success"):
                logger.error(f"{tag} [VOICE] Playback failed: {(playback or {}).get('error')}")
                return False
            logger.info(f"{tag} [VOICE] Spoke {len(text)} chars in {playback.get('elapsed', 0):.1f}s")
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"{tag} [VOICE] Speech failed: {e}")
            return False
        finally:
            if prepared:
                await self._cleanup(keep_track=bool(swapped))

    async def _cleanup(self, keep_track: bool) -> None:
        try:
            await self.page.evaluate(CLEANUP_JS, keep_track)
            if not self.context.voice_listening:
                await self.page.click_first(selectors.MIC_OFF_SELECTORS)
        except Exception as e:
            logger.debug(f"Suppressed error in speech cleanup: {e}")
