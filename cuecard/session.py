"""
A live session: one instance of each pipeline component, wired together
at start and thrown away at stop.

    device/HTTP audio -> CaptureCoordinator -> Transcriber
    Transcriber -> (interim) display | (final) TranscriptOrderer
    TranscriptOrderer -> ContextWindow -> SuggestionOrchestrator -> display
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from cuecard.audio_capture import CaptureCoordinator
from cuecard.audio_converter import SampleInput
from cuecard.audio_devices import DeviceCapture
from cuecard.config import Config
from cuecard.context import ContextWindow
from cuecard.events import DisplaySink
from cuecard.models import (
    SOURCES,
    AudioChunk,
    AudioFormat,
    ConversationSegment,
    ErrorNotice,
    StatusUpdate,
    TranscriptFragment,
    TranscriptUpdate,
)
from cuecard.orchestrator import InFlightPolicy, SuggestionOrchestrator
from cuecard.providers import GenerationProvider, create_provider
from cuecard.transcriber import DeepgramTranscriber, Transcriber
from cuecard.transcript_merge import TranscriptOrderer

logger = logging.getLogger(__name__)

DeviceSpec = Optional[Union[int, str]]


class LiveSession:
    def __init__(
        self,
        sink: DisplaySink,
        transcriber: Optional[Transcriber] = None,
        provider: Optional[GenerationProvider] = None,
        *,
        policy: Union[InFlightPolicy, str] = InFlightPolicy.CANCEL_AND_RESTART,
        stream_factory: Optional[Callable[..., Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.sink = sink
        self.transcriber = transcriber
        self.provider = provider
        self._clock = clock
        self._stream_factory = stream_factory
        self.devices: Dict[str, DeviceCapture] = {}
        self.sources: List[str] = []
        self.active = False

        self.capture = CaptureCoordinator(
            on_chunk=self._on_chunk,
            sink=sink,
            target_buffer_ms=Config.TARGET_BUFFER_MS,
            level_tick_ms=Config.LEVEL_TICK_MS,
            idle_timeout_ms=Config.IDLE_TIMEOUT_MS,
            max_buffer_ms=Config.MAX_CAPTURE_BUFFER_MS,
            clock=clock,
        )
        self.orderer = TranscriptOrderer(
            on_fragment=self._on_ordered,
            buffer_window_ms=Config.TRANSCRIPT_BUFFER_WINDOW_MS,
            flush_interval_ms=Config.TRANSCRIPT_FLUSH_INTERVAL_MS,
            clock=clock,
        )
        self.context = ContextWindow(
            sink,
            max_recent=Config.CONTEXT_MAX_RECENT,
            max_history=Config.CONTEXT_MAX_HISTORY,
            summary_char_threshold=Config.SUMMARY_CHAR_THRESHOLD,
            clock=clock,
        )
        self.orchestrator = SuggestionOrchestrator(
            self.context,
            provider,
            sink,
            policy=InFlightPolicy(policy),
            short_debounce_ms=Config.SUGGEST_SHORT_DEBOUNCE_MS,
            long_debounce_ms=Config.SUGGEST_LONG_DEBOUNCE_MS,
            partial_min_chars=Config.SUGGEST_PARTIAL_MIN_CHARS,
            max_label_words=Config.SUGGEST_MAX_LABEL_WORDS,
            clock=clock,
        )
        self.context.on_snapshot = self.orchestrator.on_snapshot
        self.context.on_topic_change = self.orchestrator.on_topic_change

    @classmethod
    def from_config(cls, sink: DisplaySink) -> "LiveSession":
        """Build a session with the configured Deepgram and suggestion providers."""
        try:
            provider = create_provider(Config.SUGGEST_PROVIDER)
        except ValueError as e:
            logger.error("[Session] %s", e)
            provider = None
        policy = Config.SUGGEST_INFLIGHT_POLICY
        if policy not in (p.value for p in InFlightPolicy):
            logger.warning("[Session] Unknown in-flight policy %r, using cancel", policy)
            policy = InFlightPolicy.CANCEL_AND_RESTART
        return cls(sink, DeepgramTranscriber(), provider, policy=policy)

    # -------------------- lifecycle --------------------

    def transcription_ready(self) -> bool:
        return self.transcriber is not None and self.transcriber.is_ready()

    def generation_ready(self) -> bool:
        return self.provider is not None and self.provider.is_ready()

    async def start(
        self,
        sources: Iterable[str] = SOURCES,
        devices: Optional[Dict[str, DeviceSpec]] = None,
    ) -> Dict[str, Any]:
        sources = list(sources)
        if self.active:
            return {"status": "already_running", "sources": self.sources}

        if not self.transcription_ready():
            missing = ["DEEPGRAM_API_KEY"]
            logger.warning("[Session] Refusing to start, transcription not ready")
            self.sink.publish(StatusUpdate("session", "not_ready", ", ".join(missing), ts=self._clock()))
            return {"status": "not_ready", "missing": missing}

        suggestions_ready = self.generation_ready()
        if not suggestions_ready:
            name = getattr(self.provider, "name", None) or Config.SUGGEST_PROVIDER
            logger.warning("[Session] Suggestion provider %s not ready, suggestions disabled", name)
            self.sink.publish(StatusUpdate("suggestions", "not_ready", name, ts=self._clock()))

        capture = self.capture.start(sources)
        self.capture.start_level_ticker()
        self.context.begin()
        self.orderer.start_flush_timer()
        for source in sources:
            await self.transcriber.start_stream(source, self._on_fragment, self._on_transcription_status)

        self.sources = sources
        self.active = True
        self._open_devices(devices or {})

        logger.info("[Session] Started (sources=%s, suggestions_ready=%s)", sources, suggestions_ready)
        self.sink.publish(StatusUpdate("session", "started", ",".join(sources), ts=self._clock()))
        return {"status": "started", "capture": capture, "suggestions_ready": suggestions_ready}

    def _open_devices(self, devices: Dict[str, DeviceSpec]) -> None:
        loop = asyncio.get_running_loop()
        for source, device in devices.items():
            if device is None or source not in self.sources:
                continue
            dc = DeviceCapture(source, device, self.submit_audio, loop, stream_factory=self._stream_factory)
            try:
                dc.start()
            except Exception as e:
                logger.warning("[Session] Could not open %s device %r: %r", source, device, e)
                self.sink.publish(ErrorNotice("capture", f"Could not open {source} device: {e}", ts=self._clock()))
                continue
            self.devices[source] = dc

    async def stop(self) -> Dict[str, Any]:
        for dc in self.devices.values():
            dc.stop()
        self.devices = {}

        if self.transcriber is not None:
            await self.transcriber.shutdown()

        self.orchestrator.reset()
        await self.orchestrator.wait_idle()
        self.capture.reset()
        self.orderer.clear()
        summary = self.context.end_session()

        was_active, self.active = self.active, False
        self.sources = []
        logger.info("[Session] Stopped")
        self.sink.publish(StatusUpdate("session", "stopped", ts=self._clock()))
        return {"status": "stopped" if was_active else "not_running", "summary": summary}

    def pause(self) -> Dict[str, Any]:
        self.capture.pause()
        return {"status": "paused"}

    def resume(self) -> Dict[str, Any]:
        self.capture.resume()
        return {"status": "resumed"}

    def clear(self) -> Dict[str, Any]:
        """Forget the conversation so far; capture and transcription keep running."""
        anchors = {s: self.orderer.stream_start(s) for s in self.sources}
        self.orchestrator.reset()
        self.orderer.clear()
        for source, ts in anchors.items():
            if ts is not None:
                self.orderer.set_stream_start(source, ts)
        if self.active:
            self.orderer.start_flush_timer()
        summary = self.context.clear()
        logger.info("[Session] Cleared conversation state")
        self.sink.publish(StatusUpdate("session", "cleared", ts=self._clock()))
        return {"status": "cleared", "summary": summary}

    async def generate_now(self, action_type: str = "suggestion") -> Optional[Dict[str, Any]]:
        final = await self.orchestrator.generate_now(action_type)
        return final.to_dict() if final is not None else None

    # -------------------- audio in --------------------

    def submit_audio(
        self,
        samples: SampleInput,
        source: str,
        fmt: AudioFormat,
        capture_ts: Optional[float] = None,
    ) -> List[AudioChunk]:
        if not self.active:
            return []
        return self.capture.submit_chunk(samples, source, fmt, capture_ts)

    def _on_chunk(self, chunk: AudioChunk) -> None:
        if self.transcriber is not None:
            self.transcriber.send_audio(chunk.source, chunk.to_bytes())

    # -------------------- transcripts --------------------

    def _on_fragment(self, fragment: TranscriptFragment) -> None:
        if not self.active:
            return
        if not fragment.is_final:
            ts = fragment.absolute_timestamp if fragment.stream_start_time is not None else self._clock()
            self.sink.publish(TranscriptUpdate(
                fragment.source, fragment.text, fragment.confidence, False, ts))
            return
        self.orderer.add(fragment)

    def _on_ordered(self, fragment: TranscriptFragment) -> None:
        segment = ConversationSegment.from_fragment(fragment)
        self.sink.publish(TranscriptUpdate(
            segment.source, segment.text, segment.confidence, True, segment.timestamp))
        self.context.add_segment(segment)

    def _on_transcription_status(self, source: str, status: str, detail: str = "") -> None:
        if status == "streaming" and self.transcriber is not None:
            ts = self.transcriber.stream_start(source)
            if ts is not None:
                self.orderer.set_stream_start(source, ts)
        self.sink.publish(StatusUpdate(
            "transcription", status, f"{source}: {detail}" if detail else source, ts=self._clock()))
        if status == "failed":
            self.sink.publish(ErrorNotice(
                "transcription", f"Transcription for {source} disconnected: {detail}", fatal=False, ts=self._clock()))

    def status(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "paused": self.capture.is_paused,
            "sources": list(self.sources),
            "transcription_ready": self.transcription_ready(),
            "suggestions_ready": self.generation_ready(),
            "capture": self.capture.status(),
            "ordering": self.orderer.state(),
            "context": self.context.state(),
            "suggestions": self.orchestrator.status(),
            "transcription": self.transcriber.status() if self.transcriber is not None else {},
            "devices": {s: {"device": d.device, "blocks": d.blocks} for s, d in self.devices.items()},
        }
