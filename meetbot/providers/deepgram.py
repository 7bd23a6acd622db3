"""
Deepgram speech providers.

- DeepgramTTS: text -> WAV (linear16, 24 kHz) via the /speak REST endpoint
- DeepgramSTT: prerecorded transcription via /listen, plus live streaming
  transcription over the /listen websocket
"""

import asyncio
import json
import logging
from typing import Optional
from urllib.parse import urlencode

import aiohttp
import websockets

from meetbot.config import ProviderConfig, get_config
from meetbot.providers.base import TranscriptCallback

logger = logging.getLogger(__name__)

# Content types tried in order for prerecorded audio. None lets Deepgram sniff the format.
BATCH_CONTENT_TYPES = ("audio/webm;codecs=opus", "audio/webm", None)


def _extract_transcript(payload: dict) -> str:
    try:
        channel = payload["results"]["channels"][0] if "results" in payload else payload["channel"]
        return (channel["alternatives"][0].get("transcript") or "").strip()
    except (KeyError, IndexError, TypeError):
        return ""


class DeepgramTTS:
    """Text-to-speech backed by Deepgram Aura."""

    def __init__(self, config: Optional[ProviderConfig] = None):
        self.config = config or get_config().providers

    async def synthesize(self, text: str) -> bytes:
        if not self.config.deepgram_api_key:
            raise RuntimeError("DEEPGRAM_API_KEY is not configured")

        query = urlencode(
            {
                "model": self.config.tts_model,
                "encoding": "linear16",
                "container": "wav",
                "sample_rate": self.config.tts_sample_rate,
            }
        )
        headers = {
            "Authorization": f"Token {self.config.deepgram_api_key}",
            "Content-Type": "application/json",
        }
        logger.info(f"[TTS] Synthesizing {len(text)} chars with {self.config.tts_model}")

        async with aiohttp.ClientSession() as session:
            async with session.post(
                f"{self.config.deepgram_url}/speak?{query}",
                json={"text": text},
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise RuntimeError(f"Deepgram TTS failed: {resp.status} {body[:200]}")
                audio = await resp.read()

        logger.debug(f"[TTS] Received {len(audio)} bytes of audio")
        return audio


class DeepgramSTT:
    """Speech-to-text backed by Deepgram Nova.

    Live streams are keyed by a caller-chosen id so one provider instance
    can serve several sessions.
    """

    def __init__(self, config: Optional[ProviderConfig] = None, sample_rate: int = 16000):
        self.config = config or get_config().providers
        self.sample_rate = sample_rate
        self._streams: dict[str, object] = {}
        self._receivers: dict[str, asyncio.Task] = {}

    def _headers(self) -> dict:
        return {"Authorization": f"Token {self.config.deepgram_api_key}"}

    def _batch_query(self) -> str:
        return urlencode(
            {
                "model": self.config.stt_model,
                "language": self.config.stt_language,
                "smart_format": "true",
            }
        )

    async def _post_audio(self, session: aiohttp.ClientSession, audio: bytes, content_type: Optional[str]) -> str:
        headers = self._headers()
        if content_type:
            headers["Content-Type"] = content_type
        async with session.post(
            f"{self.config.deepgram_url}/listen?{self._batch_query()}",
            data=audio,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.config.request_timeout_seconds),
        ) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise RuntimeError(f"{resp.status} {body[:200]}")
            return _extract_transcript(await resp.json())

    async def transcribe_batch(self, audio: bytes) -> str:
        """
        Transcribe a complete audio buffer.

        WAV input (RIFF header) is sent as audio/wav. Anything else is tried
        as webm/opus, then plain webm, then with no content type.

        Returns:
            The transcript, or "" if every attempt failed
        """
        if not audio:
            return ""
        if not self.config.deepgram_api_key:
            logger.warning("[STT] DEEPGRAM_API_KEY is not configured, skipping transcription")
            return ""

        content_types = ("audio/wav",) if audio[:4] == b"RIFF" else BATCH_CONTENT_TYPES

        async with aiohttp.ClientSession() as session:
            for content_type in content_types:
                try:
                    transcript = await self._post_audio(session, audio, content_type)
                    logger.debug(f"[STT] Transcribed {len(audio)} bytes as {content_type or 'auto'}")
                    return transcript
                except Exception as e:
                    logger.warning(f"[STT] Transcription as {content_type or 'auto'} failed: {e}")

        return ""

    async def open_stream(self, stream_id: str, on_transcript: TranscriptCallback) -> None:
        """Open a live transcription websocket for raw 16-bit PCM."""
        if stream_id in self._streams:
            logger.debug(f"[STT] Stream {stream_id} already open")
            return
        if not self.config.deepgram_api_key:
            raise RuntimeError("DEEPGRAM_API_KEY is not configured")

        query = urlencode(
            {
                "model": self.config.stt_model,
                "language": self.config.stt_language,
                "smart_format": "true",
                "interim_results": "false",
                "endpointing": self.config.live_endpointing_ms,
                "encoding": "linear16",
                "sample_rate": self.sample_rate,
                "channels": 1,
            }
        )
        ws = await websockets.connect(f"{self.config.deepgram_ws_url}?{query}", additional_headers=self._headers())
        self._streams[stream_id] = ws
        self._receivers[stream_id] = asyncio.create_task(self._receive(stream_id, ws, on_transcript))
        logger.info(f"[STT] Live stream {stream_id} opened")

    async def _receive(self, stream_id: str, ws, on_transcript: TranscriptCallback) -> None:
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except (TypeError, json.JSONDecodeError):
                    continue
                if message.get("type") != "Results" or not message.get("is_final"):
                    continue
                transcript = _extract_transcript(message)
                if transcript:
                    try:
                        await on_transcript(transcript)
                    except Exception as e:
                        logger.warning(f"[STT] Transcript handler failed for {stream_id}: {e}")
        except websockets.ConnectionClosed as e:
            logger.info(f"[STT] Live stream {stream_id} closed: {e}")

    async def send_chunk(self, stream_id: str, data: bytes) -> None:
        ws = self._streams.get(stream_id)
        if ws is None:
            return
        await ws.send(data)

    async def close_stream(self, stream_id: str) -> None:
        ws = self._streams.pop(stream_id, None)
        receiver = self._receivers.pop(stream_id, None)
        if ws is None:
            return
        try:
            await ws.send(json.dumps({"type": "CloseStream"}))
        finally:
            await ws.close()
            if receiver is not None:
                receiver.cancel()
                try:
                    await asyncio.wait_for(receiver, timeout=2.0)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    pass
            logger.info(f"[STT] Live stream {stream_id} closed")
