import asyncio

import numpy as np
import pytest

from cuecard.audio_capture import CaptureState
from cuecard.config import Config
from cuecard.events import RecordingSink
from cuecard.models import AudioFormat
from cuecard.orchestrator import OrchestratorState
from cuecard.session import LiveSession

from helpers import FakeProvider, FakeTranscriber, make_fragment

MONO_16K = AudioFormat(16000, 1, "float32")


@pytest.fixture(autouse=True)
def fast_pipeline(monkeypatch):
    monkeypatch.setattr(Config, "TRANSCRIPT_BUFFER_WINDOW_MS", 0)
    monkeypatch.setattr(Config, "SUGGEST_SHORT_DEBOUNCE_MS", 10)
    monkeypatch.setattr(Config, "SUGGEST_LONG_DEBOUNCE_MS", 10)
    monkeypatch.setattr(Config, "SUGGEST_PARTIAL_MIN_CHARS", 10)


class FakeStream:
    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.callback = kwargs["callback"]
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    def close(self):
        self.closed = True


def make_session(transcriber=None, provider="default", **kwargs):
    sink = RecordingSink()
    transcriber = transcriber or FakeTranscriber()
    provider = FakeProvider() if provider == "default" else provider
    return LiveSession(sink, transcriber, provider, **kwargs), sink, transcriber


def test_start_is_refused_without_transcription():
    async def scenario():
        session, sink, _ = make_session(FakeTranscriber(ready=False))
        return await session.start(["mic"]), session, sink

    result, session, sink = asyncio.run(scenario())
    assert result == {"status": "not_ready", "missing": ["DEEPGRAM_API_KEY"]}
    assert not session.active
    assert sink.events[-1].status == "not_ready"


def test_missing_provider_still_starts_without_suggestions():
    async def scenario():
        session, sink, _ = make_session(provider=None)
        result = await session.start(["mic"])
        await session.stop()
        return result, sink

    result, sink = asyncio.run(scenario())
    assert result["status"] == "started"
    assert result["suggestions_ready"] is False
    statuses = [(e.component, e.status) for e in sink.of_kind("status_update")]
    assert ("suggestions", "not_ready") in statuses
    assert ("session", "started") in statuses


def test_start_twice_reports_already_running():
    async def scenario():
        session, _, _ = make_session()
        await session.start(["mic"])
        second = await session.start(["mic", "system"])
        await session.stop()
        return second

    assert asyncio.run(scenario()) == {"status": "already_running", "sources": ["mic"]}


def test_submitted_audio_reaches_the_transcriber_as_pcm16():
    async def scenario():
        session, _, transcriber = make_session()
        await session.start(["mic"])
        chunks = session.submit_audio(np.zeros(1600, dtype=np.float32), "mic", MONO_16K)
        await session.stop()
        return chunks, transcriber

    chunks, transcriber = asyncio.run(scenario())
    assert len(chunks) == 1
    assert [len(b) for b in transcriber.sent["mic"]] == [3200]


def test_audio_is_ignored_when_not_started():
    session, _, transcriber = make_session()
    assert session.submit_audio(np.zeros(1600, dtype=np.float32), "mic", MONO_16K) == []
    assert transcriber.sent == {}


def test_device_blocks_are_handed_to_capture_on_the_loop():
    streams = []

    def factory(**kwargs):
        stream = FakeStream(**kwargs)
        streams.append(stream)
        return stream

    async def scenario():
        session, _, transcriber = make_session(stream_factory=factory)
        await session.start(["mic"], devices={"mic": 3, "system": 4})
        block = np.zeros((960, 2), dtype=np.float32)
        for _ in range(5):
            streams[0].callback(block, 960, None, None)
        await asyncio.sleep(0)
        status = session.status()
        await session.stop()
        return status, transcriber

    status, transcriber = asyncio.run(scenario())
    assert len(streams) == 1
    assert streams[0].kwargs["device"] == 3
    assert streams[0].closed
    assert status["devices"] == {"mic": {"device": 3, "blocks": 5}}
    assert [len(b) for b in transcriber.sent["mic"]] == [3200]


def test_interim_fragments_go_straight_to_display():
    async def scenario():
        session, sink, transcriber = make_session()
        await session.start(["mic"])
        transcriber.emit(make_fragment("partial words", 0, is_final=False))
        count = session.context.segment_count
        await session.stop()
        return count, sink

    count, sink = asyncio.run(scenario())
    updates = sink.of_kind("transcript_update")
    assert [(u.text, u.is_final, u.timestamp) for u in updates] == [("partial words", False, 100.0)]
    assert count == 0


def test_final_fragment_flows_through_to_suggestions():
    async def scenario():
        session, sink, transcriber = make_session()
        await session.start(["mic"])
        transcriber.emit(make_fragment("What is the budget for this quarter?", 500))
        await session.orchestrator.wait_idle()
        await session.stop()
        return sink

    sink = asyncio.run(scenario())
    kinds = [e.kind for e in sink.events]
    finals = sink.of_kind("suggestion_final")
    assert len(finals) == 1
    assert len(finals[0].suggestions) == 6
    assert "topic_changed" in kinds
    update = [u for u in sink.of_kind("transcript_update") if u.is_final][0]
    assert update.timestamp == 100.5
    assert kinds.index("transcript_update") < kinds.index("suggestion_final")


def test_transcription_failure_is_surfaced():
    async def scenario():
        session, sink, transcriber = make_session()
        await session.start(["mic"])
        _, on_status = transcriber.callbacks["mic"]
        on_status("mic", "failed", "refused")
        await session.stop()
        return sink

    sink = asyncio.run(scenario())
    notices = sink.of_kind("error_notice")
    assert len(notices) == 1
    assert notices[0].component == "transcription"
    assert not notices[0].fatal


def test_stop_resets_every_component():
    async def scenario():
        session, _, transcriber = make_session()
        await session.start(["mic"])
        session.submit_audio(np.zeros(800, dtype=np.float32), "mic", MONO_16K)
        transcriber.emit(make_fragment("We should talk about pricing.", 0))
        first = await session.stop()
        second = await session.stop()
        return session, transcriber, first, second

    session, transcriber, first, second = asyncio.run(scenario())
    assert first["status"] == "stopped"
    assert first["summary"]["segment_count"] == 1
    assert first["summary"]["total_words"] == 5
    assert first["summary"]["average_confidence"] == pytest.approx(0.9)
    assert first["summary"]["session_start"] is not None
    assert second["status"] == "not_running"
    assert second["summary"]["segment_count"] == 0
    assert second["summary"]["session_start"] is None
    assert transcriber.shutdowns == 2
    assert session.capture.state_of("mic") == CaptureState.IDLE
    assert session.capture.buffered_ms("mic") == 0
    assert session.orderer.state()["pending_count"] == 0
    assert session.context.segment_count == 0
    assert session.orchestrator.state == OrchestratorState.IDLE
    assert not session.active


def test_clear_keeps_capture_and_stream_anchors():
    async def scenario():
        session, sink, transcriber = make_session()
        await session.start(["mic"])
        transcriber.emit(make_fragment("We should talk about pricing.", 0))
        await session.orchestrator.wait_idle()
        result = session.clear()
        state = (
            session.capture.state_of("mic"),
            session.context.segment_count,
            session.orderer.stream_start("mic"),
            session.orderer.state()["has_flush_timer"],
        )
        await session.stop()
        return result, state

    result, state = asyncio.run(scenario())
    assert result["status"] == "cleared"
    assert result["summary"]["segment_count"] == 1
    assert result["summary"]["total_words"] == 5
    assert state == (CaptureState.CAPTURING, 0, 100.0, True)


def test_pause_and_resume():
    async def scenario():
        session, _, transcriber = make_session()
        await session.start(["mic"])
        session.pause()
        session.submit_audio(np.zeros(1600, dtype=np.float32), "mic", MONO_16K)
        paused = session.status()["paused"]
        session.resume()
        session.submit_audio(np.zeros(1600, dtype=np.float32), "mic", MONO_16K)
        await session.stop()
        return paused, transcriber

    paused, transcriber = asyncio.run(scenario())
    assert paused is True
    assert len(transcriber.sent["mic"]) == 1
