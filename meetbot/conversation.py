"""
Conversation engine.

Turns final transcripts into spoken replies. Only one reply is in flight
at a time: while the session's ``responding`` flag is set, new
transcripts are ignored, and the flag stays set for a cool-down after
speaking so the bot does not answer its own echo.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from meetbot.config import VoiceConfig, get_config
from meetbot.models import SessionContext, TranscriptEvent
from meetbot.providers.base import ResponseProvider

logger = logging.getLogger(__name__)


class ConversationEngine:
    """Responds to what participants say.

    Args:
        responder: ResponseProvider producing the reply text
        speak: Async callable that speaks text into the call
        context: Session state holding the ``responding`` flag
        config: Cool-down, minimum transcript length and fallback text
        sleep: Awaitable sleep (injectable for tests)
    """

    def __init__(
        self,
        responder: ResponseProvider,
        speak: Callable[[str], Awaitable[Any]],
        context: SessionContext,
        config: Optional[VoiceConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.responder = responder
        self._speak = speak
        self.context = context
        self.config = config or get_config().voice
        self._sleep = sleep
        self.replies = 0

    def set_system_prompt(self, prompt: str) -> None:
        """Change the responder's persona, if it supports it."""
        setter = getattr(self.responder, "set_system_prompt", None)
        if setter is None:
            logger.warning(f"{type(self.responder).__name__} does not support system prompts")
            return
        setter(prompt)

    async def handle_event(self, event: TranscriptEvent) -> bool:
        if not event.is_final:
            return False
        return await self.on_transcript(event.text)

    async def on_transcript(self, text: str) -> bool:
        """
        Reply to a transcript unless a reply is already in progress.

        Returns:
            True if a reply was attempted
        """
        text = (text or "").strip()
        tag = f"[{self.context.correlation_id}] [VOICE]"
        if len(text) <= self.config.min_transcript_chars:
            return False
        if self.context.responding:
            logger.debug(f"{tag} Ignoring transcript while responding: {text}")
            return False
        if self.context.stopping:
            return False

        self.context.responding = True
        try:
            reply = await self._generate(text)
            logger.info(f"{tag} Replying: {reply}")
            await self._speak(reply)
            self.replies += 1
            await self._sleep(self.config.cooldown_seconds)
        finally:
            self.context.responding = False
            logger.debug(f"{tag} Ready to listen again")
        return True

    async def _generate(self, text: str) -> str:
        try:
            reply = await self.responder.respond(text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Response provider failed, using fallback: {e}")
            return self.config.fallback_response
        reply = (reply or "").strip()
        return reply or self.config.fallback_response
