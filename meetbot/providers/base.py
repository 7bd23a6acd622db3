"""Protocol definitions for the bot's external collaborators.

The session controller never knows which speech, language model, storage
or status backend it talks to. Anything that structurally matches these
protocols can be passed in.
"""

from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

from meetbot.page import PageAutomation

TranscriptCallback = Callable[[str], Awaitable[Any]]


@runtime_checkable
class TextToSpeech(Protocol):
    """Turns text into WAV bytes (16-bit linear PCM)."""

    async def synthesize(self, text: str) -> bytes: ...


@runtime_checkable
class SpeechToText(Protocol):
    """Batch and streaming transcription.

    ``transcribe_batch`` returns "" on failure rather than raising.
    """

    async def transcribe_batch(self, audio: bytes) -> str: ...

    async def open_stream(self, stream_id: str, on_transcript: TranscriptCallback) -> None: ...

    async def send_chunk(self, stream_id: str, data: bytes) -> None: ...

    async def close_stream(self, stream_id: str) -> None: ...


@runtime_checkable
class ResponseProvider(Protocol):
    """Produces a short conversational reply to a transcript."""

    async def respond(self, prompt: str) -> str: ...


@runtime_checkable
class Uploader(Protocol):
    """Receives recorded media chunks and finalizes the upload."""

    async def save_chunk(self, data: bytes) -> None: ...

    async def finalize_upload(self) -> bool: ...


@runtime_checkable
class StatusReporter(Protocol):
    """Reports the session's status history to the outside world."""

    async def report(
        self,
        bot_id: Optional[str],
        event_id: Optional[str],
        provider: str,
        token: str,
        status: list[str],
    ) -> None: ...


@runtime_checkable
class ErrorHandlers(Protocol):
    """Called once when a session ends with a classified failure.

    ``ctx`` carries token, bot_id, event_id and provider.
    """

    async def unsupported_meeting(self, ctx: dict, error: Exception) -> None: ...

    async def admission_failure(self, ctx: dict, error: Exception) -> None: ...


class PageFactory(Protocol):
    """Creates a browser page for a session."""

    async def __call__(self, url: str, correlation_id: str, app_tag: str) -> PageAutomation: ...
