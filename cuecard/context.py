"""
Bounded conversation context.

Recent segments are kept verbatim up to `max_recent`; anything older is
compressed into a bounded history of summaries. Summarization is a cheap
local extractive step (first two sentences), not a semantic summarizer.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from typing import Callable, Deque, Iterable, List, Optional, Set

from cuecard.events import DisplaySink, NullSink
from cuecard.models import ContextView, ConversationSegment, SummaryEntry, TopicChanged
from cuecard.topic import TopicDecision, TopicDetector

logger = logging.getLogger(__name__)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def summarize_texts(texts: Iterable[str], threshold: int = 200) -> str:
    joined = " ".join(t.strip() for t in texts if t and t.strip())
    if len(joined) <= threshold:
        return joined
    sentences = [s for s in _SENTENCE_SPLIT.split(joined) if s]
    return " ".join(sentences[:2])


class ContextWindow:
    def __init__(
        self,
        sink: Optional[DisplaySink] = None,
        detector: Optional[TopicDetector] = None,
        *,
        max_recent: int = 3,
        max_history: int = 10,
        summary_char_threshold: int = 200,
        on_snapshot: Optional[Callable[[ContextView], None]] = None,
        on_topic_change: Optional[Callable[[ContextView, TopicChanged], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        if max_recent < 1:
            raise ValueError("max_recent must be at least 1")
        self.sink = sink or NullSink()
        self.detector = detector or TopicDetector()
        self.max_recent = max_recent
        self.max_history = max_history
        self.summary_char_threshold = summary_char_threshold
        self.on_snapshot = on_snapshot
        self.on_topic_change = on_topic_change
        self._clock = clock

        self._recent: List[ConversationSegment] = []
        # last few segments as heard; processing and overflow do not touch it
        self._topic_window: Deque[ConversationSegment] = deque(maxlen=max_recent)
        self._pending: List[ConversationSegment] = []
        self._history: Deque[SummaryEntry] = deque(maxlen=max_history)
        self._tasks: Set[asyncio.Task] = set()
        self.current_topic: Optional[str] = None
        self.segment_count = 0
        self.started_at: Optional[float] = None
        self._total_words = 0
        self._confidence_sum = 0.0

    @property
    def recent(self) -> List[ConversationSegment]:
        return list(self._recent)

    @property
    def history(self) -> List[SummaryEntry]:
        return list(self._history)

    def add_segment(self, segment: ConversationSegment) -> TopicDecision:
        if not segment.text.strip():
            logger.debug("[Context] Ignoring empty segment %s", segment.id)
            return TopicDecision(False, 0.0)

        decision = self.detector.evaluate(segment, list(self._topic_window))
        self._topic_window.append(segment)
        self._recent.append(segment)
        self.segment_count += 1
        self._total_words += len(segment.text.split())
        self._confidence_sum += segment.confidence
        if self.started_at is None:
            self.started_at = self._clock()

        if len(self._recent) > self.max_recent:
            overflow = len(self._recent) - self.max_recent
            self._pending.extend(self._recent[:overflow])
            del self._recent[:overflow]
            self._schedule_summary()

        if decision.changed:
            if decision.label:
                self.current_topic = decision.label
            event = TopicChanged(
                topic=decision.label,
                confidence=decision.confidence,
                signals=list(decision.signals),
                segment_id=segment.id,
                ts=self._clock(),
            )
            logger.info(
                "[Context] Topic change on %s (confidence=%.1f, signals=%s, topic=%r)",
                segment.id, decision.confidence, ",".join(decision.signals), decision.label,
            )
            self.sink.publish(event)
            if self.on_topic_change is not None:
                self.on_topic_change(self.get_context_for_generation(), event)
        elif self.on_snapshot is not None:
            self.on_snapshot(self.get_context_for_generation())
        return decision

    def mark_recent_processed(self, segment_ids: Optional[Iterable[str]] = None) -> int:
        """Move processed recent segments into the summarization path.

        With `segment_ids`, only those segments move; anything that arrived
        after the generation took its snapshot stays verbatim.
        """
        if segment_ids is None:
            moved = self._recent
            self._recent = []
        else:
            ids = set(segment_ids)
            moved = [s for s in self._recent if s.id in ids]
            self._recent = [s for s in self._recent if s.id not in ids]
        if not moved:
            return 0
        self._pending.extend(moved)
        self._schedule_summary()
        logger.debug("[Context] Marked %d segments processed", len(moved))
        return len(moved)

    def _schedule_summary(self) -> None:
        if not self._pending:
            return
        batch, self._pending = self._pending, []
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._store_summary(batch)
            return
        task = loop.create_task(self._summarize(batch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _summarize(self, batch: List[ConversationSegment]) -> None:
        self._store_summary(batch)

    def _store_summary(self, batch: List[ConversationSegment]) -> None:
        summary = summarize_texts((s.text for s in batch), self.summary_char_threshold)
        if not summary:
            return
        start = batch[0].timestamp
        end = max(s.end_timestamp for s in batch)
        self._history.append(SummaryEntry(
            summary=summary,
            timestamp=start,
            segment_count=len(batch),
            duration_ms=int(round((end - start) * 1000)),
        ))

    async def drain(self) -> None:
        """Wait for outstanding summarization tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_context_for_generation(self) -> ContextView:
        recent_text = "\n".join(s.text for s in self._recent)
        history_text = "\n".join(h.summary for h in self._history)
        parts = []
        if history_text:
            parts.append(f"Earlier in the conversation:\n{history_text}")
        if recent_text:
            parts.append(f"Most recent:\n{recent_text}")
        return ContextView(
            recent_verbatim_text=recent_text,
            summarized_history_text=history_text,
            combined_text="\n\n".join(parts),
            recent_count=len(self._recent),
            segment_ids=tuple(s.id for s in self._recent),
            current_topic=self.current_topic,
        )

    def begin(self) -> None:
        """Mark the session start used by `session_summary`."""
        self.started_at = self._clock()

    def session_summary(self) -> dict:
        duration = self._clock() - self.started_at if self.started_at is not None else 0.0
        return {
            "session_start": self.started_at,
            "duration_ms": max(0, int(round(duration * 1000))),
            "segment_count": self.segment_count,
            "total_words": self._total_words,
            "average_confidence": self._confidence_sum / self.segment_count if self.segment_count else 0.0,
        }

    def clear(self) -> dict:
        """Drop the conversation so far and return the summary of what was dropped.

        The session start survives; `end_session` forgets it too.
        """
        summary = self.session_summary()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._recent = []
        self._topic_window.clear()
        self._pending = []
        self._history.clear()
        self.detector.reset()
        self.current_topic = None
        self.segment_count = 0
        self._total_words = 0
        self._confidence_sum = 0.0
        logger.info("[Context] Cleared (%d segments, %d words)", summary["segment_count"], summary["total_words"])
        return summary

    def end_session(self) -> dict:
        summary = self.clear()
        self.started_at = None
        return summary

    def state(self) -> dict:
        return {
            "recent_count": len(self._recent),
            "pending_count": len(self._pending),
            "history_count": len(self._history),
            "segment_count": self.segment_count,
            "current_topic": self.current_topic,
            "summarizing": len(self._tasks),
        }
