"""Provider contracts and the default implementations."""

from meetbot.providers.base import (
    ErrorHandlers,
    PageFactory,
    ResponseProvider,
    SpeechToText,
    StatusReporter,
    TextToSpeech,
    Uploader,
)

__all__ = [
    "ErrorHandlers",
    "PageFactory",
    "ResponseProvider",
    "SpeechToText",
    "StatusReporter",
    "TextToSpeech",
    "Uploader",
]
