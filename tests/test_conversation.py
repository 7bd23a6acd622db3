"""Tests for meetbot/conversation.py - replying to transcripts."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from meetbot.config import VoiceConfig
from meetbot.conversation import ConversationEngine
from meetbot.models import SessionContext, TranscriptEvent


def _engine(clock, reply="Welcome aboard!", speak=None, **voice):
    responder = MagicMock()
    if isinstance(reply, Exception):
        responder.respond = AsyncMock(side_effect=reply)
    else:
        responder.respond = AsyncMock(return_value=reply)
    speak = speak or AsyncMock(return_value=True)
    context = SessionContext(correlation_id="test")
    engine = ConversationEngine(responder, speak, context, VoiceConfig(**voice), sleep=clock.sleep)
    return engine, responder, speak, context


class TestConversationEngine:
    @pytest.mark.asyncio
    async def test_replies_then_cools_down(self, clock):
        engine, responder, speak, context = _engine(clock, cooldown_seconds=10)

        assert await engine.on_transcript("Hi, where do I find the handbook?") is True

        responder.respond.assert_awaited_once_with("Hi, where do I find the handbook?")
        speak.assert_awaited_once_with("Welcome aboard!")
        assert clock.sleeps == [10]
        assert context.responding is False
        assert engine.replies == 1

    @pytest.mark.asyncio
    async def test_one_reply_at_a_time(self, clock):
        """Transcripts arriving while a reply is in flight are ignored."""
        nested = []

        async def speak(text):
            nested.append(await engine.on_transcript("are you still there?"))

        engine, responder, _, context = _engine(clock, speak=speak)

        assert await engine.on_transcript("hello bot") is True
        assert nested == [False]
        assert responder.respond.await_count == 1

    @pytest.mark.asyncio
    async def test_ignored_while_responding(self, clock):
        engine, responder, _, context = _engine(clock)
        context.responding = True

        assert await engine.on_transcript("hello bot") is False
        responder.respond.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ignored_after_stop(self, clock):
        engine, responder, _, context = _engine(clock)
        context.stopping = True

        assert await engine.on_transcript("hello bot") is False
        responder.respond.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_short_transcripts_ignored(self, clock):
        engine, responder, _, _ = _engine(clock)

        assert await engine.on_transcript(" ok ") is False
        responder.respond.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fallback_on_provider_error(self, clock):
        engine, _, speak, _ = _engine(clock, reply=RuntimeError("rate limited"), fallback_response="One moment.")

        assert await engine.on_transcript("what time is lunch") is True
        speak.assert_awaited_once_with("One moment.")

    @pytest.mark.asyncio
    async def test_fallback_on_empty_reply(self, clock):
        engine, _, speak, _ = _engine(clock, reply="   ", fallback_response="One moment.")

        await engine.on_transcript("what time is lunch")
        speak.assert_awaited_once_with("One moment.")

    @pytest.mark.asyncio
    async def test_flag_cleared_when_speaking_fails(self, clock):
        engine, _, _, context = _engine(clock, speak=AsyncMock(side_effect=RuntimeError("page closed")))

        with pytest.raises(RuntimeError):
            await engine.on_transcript("hello bot")
        assert context.responding is False

    @pytest.mark.asyncio
    async def test_handle_event_skips_interim(self, clock):
        engine, responder, _, _ = _engine(clock)

        assert await engine.handle_event(TranscriptEvent("hello there", is_final=False)) is False
        assert await engine.handle_event(TranscriptEvent("hello there")) is True
        assert responder.respond.await_count == 1


class TestSystemPrompt:
    def test_delegates_to_responder(self, clock):
        engine, responder, _, _ = _engine(clock)

        engine.set_system_prompt("You are an interviewer.")
        responder.set_system_prompt.assert_called_once_with("You are an interviewer.")

    def test_unsupported_responder(self, clock):
        class Plain:
            async def respond(self, prompt):
                return "hi"

        engine = ConversationEngine(Plain(), AsyncMock(), SessionContext("test"), VoiceConfig(), sleep=clock.sleep)
        engine.set_system_prompt("ignored")
