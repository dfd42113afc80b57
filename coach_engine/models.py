"""
Data model shared by every stage of the coaching pipeline.

Hot-path values (audio frames, transcript events) are frozen dataclasses.
Anything that ends up in the session report is a pydantic model with camelCase
aliases, so ``model_dump(by_alias=True, mode="json")`` yields the report shape
consumed by the external reporting tools.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

log = logging.getLogger("coach_engine.models")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Audio
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AudioFrame:
    """One fixed-length block of PCM16 mono audio at the service sample rate."""
    seq: int
    pcm: bytes       # little-endian int16 samples
    rms: float       # root-mean-square of the float signal, 0.0–1.0

    @property
    def sample_count(self) -> int:
        return len(self.pcm) // 2


# ---------------------------------------------------------------------------
# Transcript events
# ---------------------------------------------------------------------------

class EventKind(Enum):
    SESSION_BEGINS = "SessionBegins"
    PARTIAL = "PartialTranscript"
    FINAL = "FinalTranscript"
    SESSION_TERMINATED = "SessionTerminated"
    ERROR = "Error"


@dataclass(frozen=True)
class Word:
    text: str
    start_ms: int
    end_ms: int
    confidence: float = 0.0


@dataclass(frozen=True)
class TranscriptEvent:
    """Immutable parsed service message.

    ``words`` are ordered, each with ``start_ms <= end_ms`` and non-decreasing
    ``start_ms`` across the tuple.
    """
    kind: EventKind
    text: str = ""
    words: tuple[Word, ...] = ()
    confidence: float = 0.0
    received_at: datetime = field(default_factory=utc_now)
    audio_start_ms: Optional[int] = None
    audio_end_ms: Optional[int] = None
    error: Optional[str] = None
    session_id: Optional[str] = None

    def __post_init__(self) -> None:
        prev_start = None
        for w in self.words:
            if w.start_ms > w.end_ms:
                raise ValueError(f"word {w.text!r} starts after it ends ({w.start_ms} > {w.end_ms})")
            if prev_start is not None and w.start_ms < prev_start:
                raise ValueError(f"word {w.text!r} starts before the previous word")
            prev_start = w.start_ms

    @property
    def is_transcript(self) -> bool:
        return self.kind in (EventKind.PARTIAL, EventKind.FINAL)

    @property
    def is_final(self) -> bool:
        return self.kind is EventKind.FINAL

    @property
    def has_text(self) -> bool:
        return bool(self.text and self.text.strip())


# ---------------------------------------------------------------------------
# Live metrics
# ---------------------------------------------------------------------------

@dataclass
class MetricState:
    """Smoothed live signals.  Mutated only by the MetricEstimator."""
    volume_rms: float = 0.0
    recognizer_confidence: float = 0.0   # last raw confidence reported by the service
    confidence: float = 0.0              # derived "coming across well" score, 0.0–1.0
    clarity: float = 0.5                 # 0.0–1.0
    talking_speed_wpm: float = 150.0     # >= 0

    def snapshot(self) -> dict:
        return {
            "volumeRms": round(self.volume_rms, 4),
            "recognizerConfidence": round(self.recognizer_confidence, 4),
            "confidence": round(self.confidence, 4),
            "clarity": round(self.clarity, 4),
            "talkingSpeedWpm": round(self.talking_speed_wpm, 1),
        }


# ---------------------------------------------------------------------------
# Report-facing models
# ---------------------------------------------------------------------------

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FeedbackType(str, Enum):
    SENTIMENT = "sentiment"
    QUESTION = "question"
    PACE = "pace"
    CONFIDENCE = "confidence"
    ENGAGEMENT = "engagement"


class FeedbackLevel(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    WARNING = "warning"
    CRITICAL = "critical"


class FeedbackItem(CamelModel):
    type: FeedbackType
    level: FeedbackLevel
    message: str
    suggestion: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


class SessionAnalytics(CamelModel):
    total_words: int = 0
    avg_confidence: float = 0.0
    sentiment_score: float = 0.0       # % positive segments in the latest window
    question_ratio: float = 0.0        # % question sentences in the latest window
    speaking_pace_wpm: float = 0.0     # total_words / session minutes


class WordTiming(CamelModel):
    text: str
    start: int
    end: int


class TranscriptRecord(CamelModel):
    text: str
    confidence: float
    is_final: bool
    timestamp: datetime
    words: list[WordTiming] = Field(default_factory=list)

    @property
    def word_count(self) -> int:
        return len(self.text.split())

    @classmethod
    def from_event(cls, event: TranscriptEvent) -> "TranscriptRecord":
        return cls(
            text=event.text,
            confidence=event.confidence,
            is_final=event.is_final,
            timestamp=event.received_at,
            words=[WordTiming(text=w.text, start=w.start_ms, end=w.end_ms) for w in event.words],
        )


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class SessionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    STOPPING = "stopping"
    CLOSED = "closed"


SESSION_TYPES: tuple[str, ...] = ("interview", "presentation", "sales", "general")


@dataclass
class Session:
    id: str
    session_type: str
    start_time: datetime = field(default_factory=utc_now)
    end_time: Optional[datetime] = None
    state: SessionState = SessionState.IDLE
    analytics: SessionAnalytics = field(default_factory=SessionAnalytics)
    feedbacks: list[FeedbackItem] = field(default_factory=list)
    error: Optional[str] = None

    def elapsed_sec(self, now: Optional[datetime] = None) -> float:
        end = self.end_time or now or utc_now()
        return max(0.0, (end - self.start_time).total_seconds())


class TranscriptLog:
    """Append-only record of every non-empty Partial/Final transcript.

    Readers always get list copies, never the live list, so the feedback loop
    can analyse a snapshot while new events keep arriving.
    """

    STATS_EVERY = 10

    def __init__(self) -> None:
        self._records: list[TranscriptRecord] = []
        self.total_count = 0
        self.final_count = 0
        self._confidence_sum = 0.0

    def add(self, event: TranscriptEvent) -> Optional[TranscriptRecord]:
        if not event.is_transcript or not event.has_text:
            return None
        record = TranscriptRecord.from_event(event)
        self._records.append(record)
        self.total_count += 1
        if record.is_final:
            self.final_count += 1
        self._confidence_sum += record.confidence
        if self.total_count % self.STATS_EVERY == 0:
            log.info(
                "event=transcript_stats total=%d final=%d partial=%d avg_confidence=%.3f",
                self.total_count, self.final_count, self.partial_count, self.avg_confidence,
            )
        return record

    @property
    def partial_count(self) -> int:
        return self.total_count - self.final_count

    @property
    def avg_confidence(self) -> float:
        return self._confidence_sum / self.total_count if self.total_count else 0.0

    def all(self) -> list[TranscriptRecord]:
        return list(self._records)

    def finals(self) -> list[TranscriptRecord]:
        return [r for r in self._records if r.is_final]

    def finals_since(self, cutoff: datetime) -> list[TranscriptRecord]:
        return [r for r in self._records if r.is_final and r.timestamp > cutoff]
