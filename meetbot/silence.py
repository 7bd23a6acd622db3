"""
Silence monitor.

Samples the recording's audio energy every 100 ms. Time spent below the
threshold accumulates; any sample at or above it resets the counter.
When the accumulated silence reaches the inactivity limit the session is
ended.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from meetbot.config import MonitorConfig, get_config
from meetbot.models import AudioEnergySample

logger = logging.getLogger(__name__)


class SilenceMonitor:
    """Requests termination after prolonged silence.

    Args:
        sample_energy: Async callable returning the current AudioEnergySample
        request_stop: Async callable taking a reason string
        has_audio: Async callable telling whether the recording has an audio track
        config: Monitor timing and threshold
        sleep: Awaitable sleep (injectable for tests)
    """

    def __init__(
        self,
        sample_energy: Callable[[], Awaitable[AudioEnergySample]],
        request_stop: Callable[[str], Awaitable[Any]],
        has_audio: Callable[[], Awaitable[bool]],
        config: Optional[MonitorConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._sample_energy = sample_energy
        self._request_stop = request_stop
        self._has_audio = has_audio
        self.config = config or get_config().monitor
        self._sleep = sleep
        self.active = True
        self.silent_ms = 0

    @property
    def limit_seconds(self) -> float:
        return self.config.inactivity_limit_minutes * 60

    @property
    def silence_duration(self) -> float:
        return self.silent_ms / 1000

    def observe(self, energy: AudioEnergySample) -> bool:
        """Fold one sample into the silence counter. Returns True when the limit is reached."""
        if energy < self.config.silence_threshold:
            self.silent_ms += self.config.silence_sample_ms
        else:
            self.silent_ms = 0
        return self.silent_ms >= self.limit_seconds * 1000

    async def run(self, grace_seconds: Optional[float] = None) -> None:
        """Wait out the grace delay, then sample until stopped or disabled."""
        if grace_seconds is None:
            grace_seconds = self.config.activate_after_minutes * 60
        await self._sleep(grace_seconds)

        try:
            has_audio = await self._has_audio()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[SILENCE] Could not inspect recording audio: {e}")
            has_audio = False
        if not has_audio:
            logger.warning("[SILENCE] Recording has no audio track, silence monitor disabled")
            self.active = False
            return

        logger.info(f"[SILENCE] Monitoring audio, limit {self.limit_seconds:.0f}s below {self.config.silence_threshold}")
        interval = self.config.silence_sample_ms / 1000

        while self.active:
            try:
                energy = await self._sample_energy()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"[SILENCE] Audio analysis failed, silence monitor disabled: {e}")
                self.active = False
                return

            if self.observe(energy):
                logger.info(f"[SILENCE] No audio for {self.silence_duration:.0f}s, ending meeting")
                self.active = False
                await self._request_stop("silence")
                return
            await self._sleep(interval)
