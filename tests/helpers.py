"""Shared fakes for the test suite."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

from cuecard.models import ConversationSegment, TranscriptFragment
from cuecard.providers.base import GenerationProvider
from cuecard.transcriber import Transcriber

GOOD_RESPONSE = """INSIGHTS:
- Budget for the project is fifty thousand dollars
- Timeline has not been agreed yet
- Both sides want a phased rollout

TALKING POINTS:
1. What does the timeline look like?
2. Confirm the budget covers maintenance
3. How flexible is the launch date?

FOLLOW-UP ACTIONS:
1. Send a written summary of the budget
2. Draft a phased timeline proposal
3. Schedule a check-in next week
"""


class ManualClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_segment(text: str, ts: float, duration_ms: int = 0, source: str = "mic") -> ConversationSegment:
    return ConversationSegment.create(text, ts, duration_ms=duration_ms, source=source)


def make_fragment(text: str, offset_ms: int, source: str = "mic", start: Optional[float] = 100.0,
                  is_final: bool = True) -> TranscriptFragment:
    return TranscriptFragment(
        source=source,
        text=text,
        confidence=0.9,
        is_final=is_final,
        relative_offset_ms=offset_ms,
        stream_start_time=start,
    )


def split_pieces(text: str, size: int = 20) -> List[str]:
    return [text[i:i + size] for i in range(0, len(text), size)]


class FakeProvider(GenerationProvider):
    """Yields canned pieces. An optional gate holds the stream open."""

    name = "fake"

    def __init__(self, response: str = GOOD_RESPONSE, ready: bool = True, error: Optional[Exception] = None,
                 gate: Optional[asyncio.Event] = None, piece_size: int = 20):
        super().__init__()
        self.pieces = split_pieces(response, piece_size)
        self.ready = ready
        self.error = error
        self.gate = gate
        self.calls = 0
        self.prompts: List[str] = []

    def is_ready(self) -> bool:
        return self.ready

    async def stream(self, prompt, token):
        self.calls += 1
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        for piece in self.pieces:
            if self.gate is not None:
                await self.gate.wait()
            await asyncio.sleep(0)
            if token.cancelled:
                return
            yield piece


class FakeTranscriber(Transcriber):
    def __init__(self, ready: bool = True, start: float = 100.0):
        self.ready = ready
        self.start = start
        self.callbacks: Dict[str, tuple] = {}
        self.sent: Dict[str, List[bytes]] = {}
        self.shutdowns = 0

    def is_ready(self) -> bool:
        return self.ready

    def stream_start(self, source):
        return self.start if source in self.callbacks else None

    async def start_stream(self, source, on_fragment, on_status):
        self.callbacks[source] = (on_fragment, on_status)
        on_status(source, "streaming", "")

    def send_audio(self, source, pcm):
        self.sent.setdefault(source, []).append(pcm)

    async def stop_stream(self, source):
        self.callbacks.pop(source, None)

    async def shutdown(self):
        self.shutdowns += 1
        self.callbacks.clear()

    def emit(self, fragment: TranscriptFragment) -> None:
        on_fragment, _ = self.callbacks[fragment.source]
        on_fragment(fragment)
