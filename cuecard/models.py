"""Data models for CueCard."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import ClassVar, List, Literal, Optional, Tuple, Union

import numpy as np

Source = Literal["mic", "system"]
SOURCES: Tuple[str, ...] = ("mic", "system")

SuggestionKind = Literal["statement", "question", "action"]


@dataclass(frozen=True)
class AudioFormat:
    """Format of raw samples handed to the capture path."""
    sample_rate: int
    channels: int = 1
    encoding: str = "float32"  # "float32" or "int16"


@dataclass(frozen=True, eq=False)
class AudioChunk:
    """A normalized mono PCM16 frame ready for transcription."""
    source: str
    samples: np.ndarray
    sample_rate: int
    capture_ts: float
    receive_ts: float

    def __post_init__(self):
        # Immutable once produced
        self.samples.setflags(write=False)

    @property
    def duration_ms(self) -> float:
        if not self.sample_rate:
            return 0.0
        return len(self.samples) * 1000.0 / self.sample_rate

    def to_bytes(self) -> bytes:
        return self.samples.astype("<i2").tobytes()

    def to_dict(self):
        return {
            "source": self.source,
            "sample_rate": self.sample_rate,
            "sample_count": int(len(self.samples)),
            "duration_ms": self.duration_ms,
            "capture_ts": self.capture_ts,
            "receive_ts": self.receive_ts,
        }


@dataclass(frozen=True)
class TranscriptFragment:
    """A piece of text from one transcription stream."""
    source: str
    text: str
    confidence: float
    is_final: bool
    relative_offset_ms: int  # offset from the stream's start
    stream_start_time: Optional[float] = None  # Unix timestamp
    duration_ms: int = 0

    @property
    def absolute_timestamp(self) -> float:
        return (self.stream_start_time or 0.0) + self.relative_offset_ms / 1000.0

    def to_dict(self):
        return {
            "source": self.source,
            "text": self.text,
            "confidence": self.confidence,
            "is_final": self.is_final,
            "relative_offset_ms": self.relative_offset_ms,
            "absolute_timestamp": self.absolute_timestamp,
            "duration_ms": self.duration_ms,
        }


def _segment_id() -> str:
    return f"seg_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class ConversationSegment:
    """A finalized unit of transcribed speech."""
    id: str
    text: str
    confidence: float
    timestamp: float  # Unix timestamp of the segment start
    duration_ms: int = 0
    source: Optional[str] = None

    @property
    def end_timestamp(self) -> float:
        return self.timestamp + self.duration_ms / 1000.0

    @classmethod
    def from_fragment(cls, fragment: TranscriptFragment) -> "ConversationSegment":
        return cls(
            id=_segment_id(),
            text=fragment.text.strip(),
            confidence=fragment.confidence,
            timestamp=fragment.absolute_timestamp,
            duration_ms=fragment.duration_ms,
            source=fragment.source,
        )

    @classmethod
    def create(cls, text: str, timestamp: float, confidence: float = 1.0,
               duration_ms: int = 0, source: Optional[str] = None) -> "ConversationSegment":
        return cls(id=_segment_id(), text=text, confidence=confidence,
                   timestamp=timestamp, duration_ms=duration_ms, source=source)

    def to_dict(self):
        return {
            "id": self.id,
            "text": self.text,
            "confidence": self.confidence,
            "timestamp": self.timestamp,
            "duration_ms": self.duration_ms,
            "source": self.source,
        }


@dataclass(frozen=True)
class SummaryEntry:
    """Compressed record of segments that left the verbatim window."""
    summary: str
    timestamp: float
    segment_count: int
    duration_ms: int


@dataclass(frozen=True)
class ContextView:
    """Joined strings ready for prompt construction."""
    recent_verbatim_text: str
    summarized_history_text: str
    combined_text: str
    recent_count: int = 0
    segment_ids: Tuple[str, ...] = ()
    current_topic: Optional[str] = None

    @property
    def has_recent_text(self) -> bool:
        return bool(self.recent_verbatim_text.strip())


@dataclass(frozen=True)
class Suggestion:
    id: str
    kind: SuggestionKind
    label: str

    def to_dict(self):
        return {"id": self.id, "kind": self.kind, "label": self.label}


@dataclass(frozen=True)
class LevelReading:
    rms: float = 0.0
    peak: float = 0.0
    db: float = -60.0
    peak_db: float = -60.0


# Display events. Each variant carries a fixed `kind` tag.

@dataclass
class LevelUpdate:
    kind: ClassVar[str] = "level_update"
    source: str
    rms: float
    peak: float
    db: float
    peak_db: float
    ts: float = field(default_factory=time.time)

    def to_dict(self):
        return {
            "kind": self.kind,
            "source": self.source,
            "rms": self.rms,
            "peak": self.peak,
            "db": self.db,
            "peak_db": self.peak_db,
            "ts": self.ts,
        }


@dataclass
class TranscriptUpdate:
    kind: ClassVar[str] = "transcript_update"
    source: str
    text: str
    confidence: float
    is_final: bool
    timestamp: float

    def to_dict(self):
        return {
            "kind": self.kind,
            "source": self.source,
            "text": self.text,
            "confidence": self.confidence,
            "is_final": self.is_final,
            "timestamp": self.timestamp,
        }


@dataclass
class TopicChanged:
    kind: ClassVar[str] = "topic_changed"
    topic: Optional[str]
    confidence: float
    signals: List[str]
    segment_id: str
    ts: float = field(default_factory=time.time)

    def to_dict(self):
        return {
            "kind": self.kind,
            "topic": self.topic,
            "confidence": self.confidence,
            "signals": list(self.signals),
            "segment_id": self.segment_id,
            "ts": self.ts,
        }


@dataclass
class SuggestionPartial:
    kind: ClassVar[str] = "suggestion_partial"
    generation_id: int
    action_type: str
    suggestions: List[Suggestion]
    ts: float = field(default_factory=time.time)

    def to_dict(self):
        return {
            "kind": self.kind,
            "generation_id": self.generation_id,
            "action_type": self.action_type,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "ts": self.ts,
        }


@dataclass
class SuggestionFinal:
    kind: ClassVar[str] = "suggestion_final"
    generation_id: int
    action_type: str
    suggestions: List[Suggestion]
    insights: List[str] = field(default_factory=list)
    ts: float = field(default_factory=time.time)

    def to_dict(self):
        return {
            "kind": self.kind,
            "generation_id": self.generation_id,
            "action_type": self.action_type,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "insights": list(self.insights),
            "ts": self.ts,
        }


@dataclass
class StatusUpdate:
    kind: ClassVar[str] = "status_update"
    component: str  # "capture", "transcription", "suggestions", "session"
    status: str
    detail: str = ""
    ts: float = field(default_factory=time.time)

    def to_dict(self):
        return {
            "kind": self.kind,
            "component": self.component,
            "status": self.status,
            "detail": self.detail,
            "ts": self.ts,
        }


@dataclass
class ErrorNotice:
    kind: ClassVar[str] = "error_notice"
    component: str
    message: str
    fatal: bool = False
    ts: float = field(default_factory=time.time)

    def to_dict(self):
        return {
            "kind": self.kind,
            "component": self.component,
            "message": self.message,
            "fatal": self.fatal,
            "ts": self.ts,
        }


DisplayEvent = Union[
    LevelUpdate,
    TranscriptUpdate,
    TopicChanged,
    SuggestionPartial,
    SuggestionFinal,
    StatusUpdate,
    ErrorNotice,
]
