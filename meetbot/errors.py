"""
Error types raised by the meeting bot.

Only two classes of error end a session early: the page is not a meeting
the bot can join (UnsupportedMeetingError), or admission never happened
(AdmissionFailure). Everything else degrades locally.
"""

from typing import Optional

SIGN_IN_REQUIRED = "sign-in-required"
UNSUPPORTED_PAGE = "unsupported-page"


class MeetBotError(Exception):
    """Base class for all meeting bot errors."""


class UnsupportedMeetingError(MeetBotError):
    """The target page is not a meeting the bot can join."""

    def __init__(self, reason: str, message: Optional[str] = None):
        if reason not in (SIGN_IN_REQUIRED, UNSUPPORTED_PAGE):
            raise ValueError(f"Unknown unsupported-meeting reason: {reason}")
        self.reason = reason
        super().__init__(message or f"Unsupported meeting: {reason}")


class AdmissionFailure(MeetBotError):
    """The bot was not admitted to the meeting.

    Args:
        message: Human readable description
        body_text: Page text captured at the moment of failure
        retryable: False when the host explicitly denied the request
        attempt: Which join attempt this was
    """

    def __init__(self, message: str, body_text: str = "", retryable: bool = True, attempt: int = 1):
        super().__init__(message)
        self.body_text = body_text
        self.retryable = retryable
        self.attempt = attempt


class ActionFailedError(MeetBotError):
    """A UI automation step reported failure on every attempt."""

    def __init__(self, step: str, attempts: int):
        self.step = step
        self.attempts = attempts
        super().__init__(f"Step '{step or 'action'}' failed after {attempts} attempt(s)")


class BrowserClosedError(MeetBotError):
    """Raised when the browser has been closed unexpectedly."""
