"""Transcriber abstraction and the Deepgram streaming implementation."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from cuecard.errors import TranscriptionError
from cuecard.models import TranscriptFragment

logger = logging.getLogger(__name__)

FragmentCallback = Callable[[TranscriptFragment], None]
StatusCallback = Callable[[str, str, str], None]  # (source, status, detail)

DEEPGRAM_URL = "wss://api.deepgram.com/v1/listen"


class Transcriber(ABC):
    """Abstract interface for streaming transcription providers."""

    @abstractmethod
    async def start_stream(self, source: str, on_fragment: FragmentCallback, on_status: StatusCallback) -> None:
        """Open a stream for `source`. Returns without waiting for the connection."""
        pass

    @abstractmethod
    def send_audio(self, source: str, pcm: bytes) -> None:
        """Queue PCM16 mono audio. Must never block."""
        pass

    @abstractmethod
    async def stop_stream(self, source: str) -> None:
        pass

    @abstractmethod
    async def shutdown(self) -> None:
        """Stop all streams and release connections."""
        pass

    def is_ready(self) -> bool:
        return True

    def stream_start(self, source: str) -> Optional[float]:
        return None

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {}


@dataclass(frozen=True)
class ReconnectPolicy:
    """Bounded exponential backoff: 1, 2, 4, 8, 16 seconds by default."""
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 16.0

    def delay(self, attempt: int) -> float:
        """Delay before reconnect `attempt` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** max(0, attempt - 1)))

    def delays(self) -> List[float]:
        return [self.delay(i) for i in range(1, self.max_attempts + 1)]


def build_deepgram_url(model: str = "nova-2", sample_rate: int = 16000) -> str:
    params = {
        "model": model,
        "punctuate": "true",
        "smart_format": "true",
        "encoding": "linear16",
        "channels": 1,
        "sample_rate": int(sample_rate),
        "interim_results": "true",
        "utterance_end_ms": 1000,
        "endpointing": 200,
        "vad_events": "true",
    }
    return f"{DEEPGRAM_URL}?{urlencode(params)}"


def _first_alternative(data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    # channel.alternatives, then top-level alternatives, then a bare transcript
    chan = data.get("channel")
    for alts in (chan.get("alternatives") if isinstance(chan, dict) else None, data.get("alternatives")):
        if isinstance(alts, list) and alts and isinstance(alts[0], dict):
            return alts[0]
    if isinstance(data.get("transcript"), str):
        return data
    return None


def parse_deepgram_message(raw: Any, source: str, stream_start: Optional[float]) -> Optional[TranscriptFragment]:
    """Turn one Deepgram results message into a fragment, or None if there is nothing usable."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
    except json.JSONDecodeError:
        logger.debug("[Deepgram] Dropping malformed message for %s", source)
        return None
    if not isinstance(data, dict):
        return None

    alt = _first_alternative(data)
    if alt is None:
        return None
    text = (alt.get("transcript") or "").strip()
    if not text:
        return None

    try:
        start_s = float(data.get("start") or 0.0)
        duration_s = float(data.get("duration") or 0.0)
        confidence = float(alt.get("confidence") or 0.0)
    except (TypeError, ValueError):
        logger.debug("[Deepgram] Dropping message with bad numeric fields for %s", source)
        return None

    return TranscriptFragment(
        source=source,
        text=text,
        confidence=confidence,
        is_final=bool(data.get("is_final")) or bool(data.get("speech_final")),
        relative_offset_ms=int(round(start_s * 1000)),
        stream_start_time=stream_start,
        duration_ms=int(round(duration_s * 1000)),
    )


@dataclass
class _Stream:
    source: str
    on_fragment: FragmentCallback
    on_status: StatusCallback
    queue: asyncio.Queue
    active: bool = True
    task: Optional[asyncio.Task] = None
    stream_start: Optional[float] = None
    dropped: int = 0
    bytes_sent: int = 0
    stats: Dict[str, Any] = field(default_factory=dict)


class DeepgramTranscriber(Transcriber):
    """One websocket worker task per source, with bounded reconnect."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        sample_rate: int = 16000,
        queue_size: int = 200,
        reconnect: ReconnectPolicy = ReconnectPolicy(),
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        if api_key is None or model is None:
            from cuecard.config import Config
            api_key = Config.DEEPGRAM_API_KEY if api_key is None else api_key
            model = model or Config.DEEPGRAM_MODEL
        self.api_key = (api_key or "").strip()
        self.model = model
        self.sample_rate = sample_rate
        self.queue_size = queue_size
        self.reconnect = reconnect
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._clock = clock
        self._streams: Dict[str, _Stream] = {}

    def is_ready(self) -> bool:
        return bool(self.api_key)

    def stream_start(self, source: str) -> Optional[float]:
        stream = self._streams.get(source)
        return stream.stream_start if stream else None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or getattr(self._session, "closed", False):
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
            self._owns_session = True
        return self._session

    async def start_stream(self, source: str, on_fragment: FragmentCallback, on_status: StatusCallback) -> None:
        existing = self._streams.get(source)
        if existing is not None and existing.active:
            return
        stream = _Stream(
            source=source,
            on_fragment=on_fragment,
            on_status=on_status,
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        self._streams[source] = stream
        stream.task = asyncio.get_running_loop().create_task(self._run(stream))

    def send_audio(self, source: str, pcm: bytes) -> None:
        stream = self._streams.get(source)
        if stream is None or not stream.active:
            return
        if stream.queue.full():
            # Slow link: drop oldest audio rather than block capture
            try:
                stream.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            stream.dropped += 1
        stream.queue.put_nowait(pcm)

    async def stop_stream(self, source: str) -> None:
        stream = self._streams.pop(source, None)
        if stream is None:
            return
        stream.active = False
        if stream.task is not None:
            stream.task.cancel()
            await asyncio.gather(stream.task, return_exceptions=True)
        self._status(stream, "closed")
        logger.info("[Deepgram] Stopped %s (sent=%d bytes, dropped=%d chunks)", source, stream.bytes_sent, stream.dropped)

    async def shutdown(self) -> None:
        for source in list(self._streams):
            await self.stop_stream(source)
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def status(self) -> Dict[str, Dict[str, Any]]:
        return {
            source: {
                "active": s.active,
                "stream_start": s.stream_start,
                "queued": s.queue.qsize(),
                "dropped": s.dropped,
                "bytes_sent": s.bytes_sent,
            }
            for source, s in self._streams.items()
        }

    def _status(self, stream: _Stream, status: str, detail: str = "") -> None:
        try:
            stream.on_status(stream.source, status, detail)
        except Exception:
            logger.exception("[Deepgram] Status callback failed for %s", stream.source)

    async def _run(self, stream: _Stream) -> None:
        attempt = 0
        while stream.active:
            self._status(stream, "connecting")
            try:
                await self._connect_and_pump(stream)
                raise TranscriptionError("connection closed by server")
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError, TranscriptionError) as e:
                if not stream.active:
                    break
                if stream.stats.get("opened"):
                    attempt = 0
                    stream.stats["opened"] = False
                attempt += 1
                if attempt > self.reconnect.max_attempts:
                    logger.warning("[Deepgram] %s giving up after %d attempts: %s", stream.source, attempt - 1, e)
                    self._status(stream, "failed", str(e))
                    stream.active = False
                    break
                delay = self.reconnect.delay(attempt)
                logger.warning("[Deepgram] %s disconnected (%s), retry %d in %.0fs", stream.source, e, attempt, delay)
                self._status(stream, "reconnecting", f"attempt {attempt} in {delay:.0f}s")
                await self._sleep(delay)

    async def _connect_and_pump(self, stream: _Stream) -> None:
        url = build_deepgram_url(self.model, self.sample_rate)
        headers = {"Authorization": f"Token {self.api_key}"}

        async with self._get_session().ws_connect(url, headers=headers, heartbeat=20) as ws:
            stream.stream_start = self._clock()
            stream.stats["opened"] = True
            logger.info("[Deepgram] %s streaming", stream.source)
            self._status(stream, "streaming")

            async def sender():
                while True:
                    chunk = await stream.queue.get()
                    await ws.send_bytes(chunk)
                    stream.bytes_sent += len(chunk)

            async def receiver():
                while True:
                    msg = await ws.receive()
                    if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                        return
                    if msg.type == aiohttp.WSMsgType.ERROR:
                        raise TranscriptionError(f"websocket error: {ws.exception()}")
                    if msg.type != aiohttp.WSMsgType.TEXT:
                        continue
                    fragment = parse_deepgram_message(msg.data, stream.source, stream.stream_start)
                    if fragment is None:
                        continue
                    try:
                        stream.on_fragment(fragment)
                    except Exception:
                        logger.exception("[Deepgram] Fragment callback failed for %s", stream.source)

            tasks = [asyncio.ensure_future(sender()), asyncio.ensure_future(receiver())]
            try:
                done, pending = await asyncio.wait(set(tasks), return_when=asyncio.FIRST_COMPLETED)
            finally:
                for t in tasks:
                    t.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
            for t in done:
                exc = t.exception()
                if exc:
                    raise exc
