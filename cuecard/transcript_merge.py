"""
Re-sequences final transcript fragments from the mic and system streams.

The two transcription streams deliver independently, so a fragment spoken
earlier on one source can arrive after a later fragment from the other.
Fragments are held for `buffer_window_ms` and released in timestamp order.
"""
from __future__ import annotations

import asyncio
import bisect
import dataclasses
import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from cuecard.models import TranscriptFragment

logger = logging.getLogger(__name__)


class TranscriptOrderer:
    def __init__(
        self,
        on_fragment: Optional[Callable[[TranscriptFragment], None]] = None,
        *,
        buffer_window_ms: int = 2000,
        flush_interval_ms: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.on_fragment = on_fragment
        self.buffer_window_ms = buffer_window_ms
        self.flush_interval_ms = flush_interval_ms
        self._clock = clock

        self._keys: List[Tuple[float, int]] = []
        self._pending: List[TranscriptFragment] = []
        self._seq = 0
        self._anchors: Dict[str, float] = {}
        self._last_emitted_ts: Optional[float] = None
        self._last_emitted: Optional[TranscriptFragment] = None
        self._timer: Optional[asyncio.Task] = None
        self.dropped = 0

    def set_stream_start(self, source: str, ts: float) -> None:
        self._anchors[source] = ts
        logger.info("[Merge] Stream start for %s set to %.3f", source, ts)

    def stream_start(self, source: str) -> Optional[float]:
        return self._anchors.get(source)

    def add(self, fragment: TranscriptFragment) -> List[TranscriptFragment]:
        """Insert a final fragment and run a release pass."""
        if fragment.stream_start_time is None:
            anchor = self._anchors.get(fragment.source)
            if anchor is None:
                anchor = self._clock()
                self._anchors[fragment.source] = anchor
                logger.warning("[Merge] No stream start for %s, using current time", fragment.source)
            fragment = dataclasses.replace(fragment, stream_start_time=anchor)

        key = (fragment.absolute_timestamp, self._seq)
        self._seq += 1
        idx = bisect.bisect_right(self._keys, key)
        self._keys.insert(idx, key)
        self._pending.insert(idx, fragment)
        return self.release()

    def release(self, now: Optional[float] = None) -> List[TranscriptFragment]:
        now = self._clock() if now is None else now
        window = self.buffer_window_ms / 1000.0
        released: List[TranscriptFragment] = []

        while self._pending:
            head = self._pending[0]
            ts = head.absolute_timestamp
            late = self._last_emitted_ts is not None and ts <= self._last_emitted_ts
            if now - ts < window and not late:
                break

            self._pending.pop(0)
            self._keys.pop(0)

            if self._is_stale(head):
                self.dropped += 1
                logger.debug("[Merge] Dropped stale fragment from %s at %.3f", head.source, ts)
                continue

            self._last_emitted_ts = ts
            self._last_emitted = head
            released.append(head)
            if self.on_fragment is not None:
                self.on_fragment(head)
        return released

    def _is_stale(self, fragment: TranscriptFragment) -> bool:
        if self._last_emitted_ts is None:
            return False
        ts = fragment.absolute_timestamp
        if ts < self._last_emitted_ts:
            return True
        last = self._last_emitted
        return (
            ts == self._last_emitted_ts
            and last is not None
            and last.source == fragment.source
            and last.text == fragment.text
        )

    async def _flush_loop(self):
        interval = self.flush_interval_ms / 1000.0
        while True:
            await asyncio.sleep(interval)
            try:
                self.release()
            except Exception:
                logger.exception("[Merge] Flush pass failed")

    def start_flush_timer(self) -> None:
        self.stop_flush_timer()
        self._timer = asyncio.get_running_loop().create_task(self._flush_loop())
        logger.info(
            "[Merge] Started flush timer (interval=%sms, window=%sms)",
            self.flush_interval_ms, self.buffer_window_ms,
        )

    def stop_flush_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def clear(self) -> None:
        self.stop_flush_timer()
        self._keys = []
        self._pending = []
        self._anchors = {}
        self._last_emitted_ts = None
        self._last_emitted = None
        self.dropped = 0
        logger.info("[Merge] Cleared state")

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def state(self) -> dict:
        return {
            "pending_count": len(self._pending),
            "last_emitted_ts": self._last_emitted_ts,
            "stream_starts": dict(self._anchors),
            "buffer_window_ms": self.buffer_window_ms,
            "flush_interval_ms": self.flush_interval_ms,
            "has_flush_timer": self._timer is not None,
            "dropped": self.dropped,
        }
