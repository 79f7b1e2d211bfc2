"""Capture lifecycle for the mic and system-audio sources."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

import numpy as np

from cuecard import audio_converter
from cuecard.events import DisplaySink, NullSink
from cuecard.models import (
    SOURCES,
    AudioChunk,
    AudioFormat,
    ErrorNotice,
    LevelReading,
    LevelUpdate,
    StatusUpdate,
)

logger = logging.getLogger(__name__)


class CaptureState(str, Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    PAUSED = "paused"


@dataclass
class _SourceBuffer:
    state: CaptureState = CaptureState.IDLE
    frames: List[np.ndarray] = field(default_factory=list)
    sample_count: int = 0
    input_rate: Optional[int] = None
    first_capture_ts: Optional[float] = None
    last_chunk_ts: Optional[float] = None
    level: LevelReading = field(default_factory=LevelReading)
    dropped_ms: float = 0.0
    chunks_emitted: int = 0

    def reset(self):
        self.frames = []
        self.sample_count = 0
        self.input_rate = None
        self.first_capture_ts = None
        self.last_chunk_ts = None
        self.level = LevelReading()


class CaptureCoordinator:
    """Owns start/stop/pause state for both sources and batches normalized audio.

    Normalized PCM16 is accumulated per source and handed on in frames of
    exactly `target_buffer_ms`, so the transcription stream sees consistent
    frame sizes. Level telemetry is published on its own tick.
    """

    def __init__(
        self,
        on_chunk: Optional[Callable[[AudioChunk], None]] = None,
        sink: Optional[DisplaySink] = None,
        *,
        target_buffer_ms: int = 100,
        level_tick_ms: int = 100,
        idle_timeout_ms: int = 500,
        max_buffer_ms: int = 2000,
        target_rate: int = audio_converter.TARGET_SAMPLE_RATE,
        clock: Callable[[], float] = time.time,
    ):
        self.on_chunk = on_chunk
        self.sink = sink or NullSink()
        self.target_buffer_ms = target_buffer_ms
        self.level_tick_ms = level_tick_ms
        self.idle_timeout_ms = idle_timeout_ms
        self.max_buffer_ms = max(max_buffer_ms, target_buffer_ms)
        self.target_rate = target_rate
        self._clock = clock
        self._paused = False
        self._buffers: Dict[str, _SourceBuffer] = {s: _SourceBuffer() for s in SOURCES}
        self._ticker: Optional[asyncio.Task] = None

    # -------------------- lifecycle --------------------

    @property
    def is_paused(self) -> bool:
        return self._paused

    def is_capturing(self) -> bool:
        return any(b.state != CaptureState.IDLE for b in self._buffers.values())

    def state_of(self, source: str) -> CaptureState:
        return self._buffers[source].state

    def start(self, sources: Iterable[str] = SOURCES) -> Dict[str, Dict[str, bool]]:
        results: Dict[str, Dict[str, bool]] = {}
        for source in sources:
            buf = self._buffers.get(source)
            if buf is None:
                raise ValueError(f"Unknown capture source: {source!r}")
            if buf.state != CaptureState.IDLE:
                results[source] = {"success": True, "already_running": True}
                continue

            buf.reset()
            buf.state = CaptureState.PAUSED if self._paused else CaptureState.CAPTURING
            results[source] = {"success": True, "already_running": False}
            logger.info("[Capture] Started %s (state=%s)", source, buf.state.value)
            self.sink.publish(StatusUpdate("capture", "started", source))
        return results

    def stop(self, sources: Optional[Iterable[str]] = None) -> Dict[str, Dict[str, bool]]:
        results: Dict[str, Dict[str, bool]] = {}
        for source in (sources or SOURCES):
            buf = self._buffers[source]
            if buf.state == CaptureState.IDLE:
                results[source] = {"success": True, "already_stopped": True}
                continue
            buf.reset()
            buf.state = CaptureState.IDLE
            results[source] = {"success": True, "already_stopped": False}
            logger.info("[Capture] Stopped %s", source)
            self.sink.publish(StatusUpdate("capture", "stopped", source))
        if not self.is_capturing():
            self._paused = False
        return results

    def pause(self) -> None:
        if self._paused:
            return
        self._paused = True
        for source, buf in self._buffers.items():
            if buf.state == CaptureState.CAPTURING:
                buf.state = CaptureState.PAUSED
        logger.info("[Capture] Paused")
        self.sink.publish(StatusUpdate("capture", "paused"))

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        for buf in self._buffers.values():
            if buf.state == CaptureState.PAUSED:
                buf.state = CaptureState.CAPTURING
        logger.info("[Capture] Resumed")
        self.sink.publish(StatusUpdate("capture", "resumed"))

    # -------------------- admission --------------------

    def submit_chunk(
        self,
        samples: audio_converter.SampleInput,
        source: str,
        fmt: AudioFormat,
        capture_ts: Optional[float] = None,
    ) -> List[AudioChunk]:
        """Admit one block of raw samples. Returns the frames emitted, if any."""
        buf = self._buffers.get(source)
        if buf is None:
            logger.warning("[Capture] Chunk for unknown source %r dropped", source)
            return []
        if buf.state == CaptureState.IDLE:
            return []
        if buf.state == CaptureState.PAUSED:
            # Accepted but not kept
            return []

        problems = audio_converter.validate_format(fmt)
        if problems:
            msg = f"Invalid audio format from {source}: {'; '.join(problems)}"
            logger.warning("[Capture] %s", msg)
            self.sink.publish(ErrorNotice("capture", msg))
            return []

        now = self._clock()
        mono = audio_converter.to_mono(audio_converter.to_float(samples, fmt.encoding), fmt.channels)
        buf.level = audio_converter.measure_levels(mono)
        pcm = audio_converter.quantize(audio_converter.resample(mono, int(fmt.sample_rate), self.target_rate))

        if buf.input_rate != fmt.sample_rate:
            if buf.input_rate is not None:
                logger.info("[Capture] %s input rate changed %s -> %s", source, buf.input_rate, fmt.sample_rate)
            buf.input_rate = int(fmt.sample_rate)

        if buf.first_capture_ts is None:
            buf.first_capture_ts = capture_ts if capture_ts is not None else now
        buf.last_chunk_ts = now
        if len(pcm):
            buf.frames.append(pcm)
            buf.sample_count += len(pcm)

        self._enforce_cap(source, buf)
        return self._flush_ready(source, buf, now)

    def _samples_for_ms(self, ms: float) -> int:
        return int(round(ms * self.target_rate / 1000.0))

    def _buffered_ms(self, buf: _SourceBuffer) -> float:
        return buf.sample_count * 1000.0 / self.target_rate

    def _enforce_cap(self, source: str, buf: _SourceBuffer) -> None:
        cap = self._samples_for_ms(self.max_buffer_ms)
        excess = buf.sample_count - cap
        if excess <= 0:
            return
        # Lossy degradation: discard the oldest unflushed audio.
        joined = np.concatenate(buf.frames)
        buf.frames = [joined[excess:]]
        buf.sample_count = len(buf.frames[0])
        dropped = excess * 1000.0 / self.target_rate
        buf.dropped_ms += dropped
        logger.warning("[Capture] %s buffer at cap, dropped %.0fms of oldest audio", source, dropped)

    def _flush_ready(self, source: str, buf: _SourceBuffer, now: float) -> List[AudioChunk]:
        frame_len = self._samples_for_ms(self.target_buffer_ms)
        if frame_len <= 0 or buf.sample_count < frame_len:
            return []

        joined = np.concatenate(buf.frames)
        emitted: List[AudioChunk] = []
        offset = 0
        capture_ts = buf.first_capture_ts if buf.first_capture_ts is not None else now
        while len(joined) - offset >= frame_len:
            frame = joined[offset:offset + frame_len].copy()
            emitted.append(self._emit(source, buf, frame, capture_ts, now))
            offset += frame_len
            capture_ts += self.target_buffer_ms / 1000.0

        rest = joined[offset:]
        buf.frames = [rest] if len(rest) else []
        buf.sample_count = len(rest)
        buf.first_capture_ts = capture_ts if len(rest) else None
        return emitted

    def _emit(self, source: str, buf: _SourceBuffer, frame: np.ndarray, capture_ts: float, now: float) -> AudioChunk:
        chunk = AudioChunk(
            source=source,
            samples=frame,
            sample_rate=self.target_rate,
            capture_ts=capture_ts,
            receive_ts=now,
        )
        buf.chunks_emitted += 1
        if self.on_chunk is not None:
            try:
                self.on_chunk(chunk)
            except Exception:
                # Consumer errors stay out of the capture path
                logger.exception("[Capture] Chunk consumer failed for %s", source)
        return chunk

    # -------------------- level telemetry --------------------

    def tick(self, now: Optional[float] = None) -> List[LevelUpdate]:
        """Publish current levels for every active source and time out idle buffers."""
        now = self._clock() if now is None else now
        updates: List[LevelUpdate] = []
        for source, buf in self._buffers.items():
            if buf.state == CaptureState.IDLE:
                continue

            idle = buf.last_chunk_ts is None or (now - buf.last_chunk_ts) * 1000.0 >= self.idle_timeout_ms
            if idle:
                buf.level = LevelReading()
                if buf.sample_count and buf.state == CaptureState.CAPTURING:
                    # Flush the short tail
                    tail = np.concatenate(buf.frames)
                    capture_ts = buf.first_capture_ts if buf.first_capture_ts is not None else now
                    buf.frames = []
                    buf.sample_count = 0
                    buf.first_capture_ts = None
                    self._emit(source, buf, tail, capture_ts, now)

            lvl = buf.level
            update = LevelUpdate(source, lvl.rms, lvl.peak, lvl.db, lvl.peak_db, ts=now)
            updates.append(update)
            self.sink.publish(update)
        return updates

    async def _tick_loop(self):
        interval = self.level_tick_ms / 1000.0
        while True:
            try:
                self.tick()
            except Exception:
                logger.exception("[Capture] Level tick failed")
            await asyncio.sleep(interval)

    def start_level_ticker(self) -> None:
        self.stop_level_ticker()
        self._ticker = asyncio.get_running_loop().create_task(self._tick_loop())

    def stop_level_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    # -------------------- inspection --------------------

    def status(self) -> Dict[str, Dict[str, object]]:
        out: Dict[str, Dict[str, object]] = {}
        for source, buf in self._buffers.items():
            out[source] = {
                "state": buf.state.value,
                "rms": buf.level.rms,
                "db": buf.level.db,
                "buffered_ms": self._buffered_ms(buf),
                "dropped_ms": buf.dropped_ms,
                "chunks_emitted": buf.chunks_emitted,
                "input_rate": buf.input_rate,
            }
        out["paused"] = {"paused": self._paused}
        return out

    def buffered_ms(self, source: str) -> float:
        return self._buffered_ms(self._buffers[source])

    def reset(self) -> None:
        self.stop_level_ticker()
        self.stop()
        self._paused = False
        for buf in self._buffers.values():
            buf.dropped_ms = 0.0
            buf.chunks_emitted = 0
