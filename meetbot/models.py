"""
Data model shared by the session controller, monitors and audio pipeline.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import numpy as np

# Status milestones, in the order a healthy session reaches them
PROCESSING = "processing"
JOINED = "joined"
FINISHED = "finished"
FAILED = "failed"

STATUS_VALUES = (PROCESSING, JOINED, FINISHED, FAILED)


class StatusHistory:
    """Append-only list of session milestones.

    Starts as ``["processing"]``. The only permitted mutation besides
    ``append`` is :meth:`mark_upload_failed`, which rewrites a trailing
    ``finished`` to ``failed`` once the final upload reports failure.
    """

    def __init__(self):
        self._entries: list[str] = [PROCESSING]

    def append(self, status: str) -> None:
        if status not in STATUS_VALUES:
            raise ValueError(f"Unknown status: {status}")
        if self.terminal is not None:
            raise ValueError(f"Status history already terminated with '{self.terminal}'")
        self._entries.append(status)

    def mark_upload_failed(self) -> bool:
        """Rewrite ``finished`` to ``failed``. Returns True if a rewrite happened."""
        if FINISHED not in self._entries:
            return False
        self._entries[self._entries.index(FINISHED)] = FAILED
        return True

    @property
    def terminal(self) -> Optional[str]:
        for status in (FINISHED, FAILED):
            if status in self._entries:
                return status
        return None

    def __contains__(self, status: str) -> bool:
        return status in self._entries

    def as_list(self) -> list[str]:
        return list(self._entries)

    def __repr__(self) -> str:
        return f"StatusHistory({self._entries!r})"


class AdmissionOutcome(Enum):
    """Result of waiting in the lobby."""

    ADMITTED = "admitted"
    DENIED = "denied"
    TIMED_OUT = "timed_out"


class PageType(Enum):
    """Classification of the page reached after navigation."""

    SIGN_IN_PAGE = "sign_in"
    MEETING_PAGE = "meeting"
    UNSUPPORTED_PAGE = "unsupported"
    INDETERMINATE = "indeterminate"


@dataclass
class TranscriptEvent:
    """A transcript produced by the capture path."""

    text: str
    is_final: bool = True
    timestamp: float = field(default_factory=time.time)

    @property
    def actionable(self) -> bool:
        return self.is_final and len(self.text.strip()) > 2


# A participant count, or None when it could not be read
ParticipantSnapshot = Optional[int]

# Mean byte-frequency magnitude over one analysis window
AudioEnergySample = float


class BatchDecision(Enum):
    """What the capture loop should do with the pending batch."""

    WAIT = "wait"
    SUBMIT = "submit"
    DISCARD = "discard"


@dataclass
class PendingAudioBatch:
    """Accumulated inbound PCM awaiting transcription.

    Frames are float32 mono arrays in [-1, 1]. ``last_activity`` is the
    monotonic time of the most recent frame that crossed the activity
    thresholds; ``active_samples`` counts only the samples of such frames.
    """

    sample_rate: int = 16000
    frames: list[np.ndarray] = field(default_factory=list)
    active_samples: int = 0
    last_activity: Optional[float] = None
    last_submission: Optional[float] = None

    @property
    def sample_count(self) -> int:
        return sum(len(f) for f in self.frames)

    @property
    def duration(self) -> float:
        return self.sample_count / self.sample_rate

    @property
    def active_duration(self) -> float:
        return self.active_samples / self.sample_rate

    def add(self, frame: np.ndarray, timestamp: float, active: bool) -> None:
        self.frames.append(frame)
        if not active:
            return
        self.active_samples += len(frame)
        if self.last_activity is None or timestamp > self.last_activity:
            self.last_activity = timestamp

    def decide(
        self,
        now: float,
        min_seconds: float,
        min_interval: float,
        activity_window: float,
    ) -> BatchDecision:
        """Decide whether to submit, discard or keep accumulating.

        Inactivity is checked first, so a batch whose last activity is older
        than ``activity_window`` is never submitted. Only active audio counts
        toward ``min_seconds``: a short utterance followed by silence keeps
        waiting until it goes stale and is discarded.
        """
        if not self.frames:
            return BatchDecision.WAIT
        if self.last_activity is None or now - self.last_activity > activity_window:
            return BatchDecision.DISCARD
        if self.active_duration < min_seconds:
            return BatchDecision.WAIT
        if self.last_submission is not None and now - self.last_submission < min_interval:
            return BatchDecision.WAIT
        return BatchDecision.SUBMIT

    def take(self, now: float) -> np.ndarray:
        """Return the concatenated samples and clear the batch."""
        samples = np.concatenate(self.frames) if self.frames else np.zeros(0, dtype=np.float32)
        self.clear()
        self.last_submission = now
        return samples

    def clear(self) -> None:
        self.frames = []
        self.active_samples = 0


@dataclass
class MediaTransports:
    """Snapshot of the in-page peer connection registry."""

    connections: int = 0
    outbound_audio: int = 0
    inbound_audio: list[dict] = field(default_factory=list)

    @property
    def unmuted_inbound(self) -> list[dict]:
        return [t for t in self.inbound_audio if not t.get("muted")]


@dataclass
class JoinParams:
    """Inputs to SessionController.join()."""

    url: str
    name: str = ""
    bearer_token: str = ""
    team_id: str = ""
    timezone: str = "UTC"
    user_id: str = ""
    event_id: Optional[str] = None
    bot_id: Optional[str] = None
    uploader: Any = None


@dataclass
class SessionContext:
    """Mutable state scoped to one session.

    Owned by the SessionController and passed by reference to every task
    so that no flag outlives the session.
    """

    correlation_id: str
    responding: bool = False
    voice_listening: bool = False
    stopping: bool = False
    stop_reason: Optional[str] = None
    live_stream_id: Optional[str] = None
    started_at: float = field(default_factory=time.time)
