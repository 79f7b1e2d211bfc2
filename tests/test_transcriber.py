import asyncio
import json
from urllib.parse import parse_qs, urlparse

import aiohttp

from cuecard.transcriber import DeepgramTranscriber, ReconnectPolicy, build_deepgram_url, parse_deepgram_message


def results(text, start=1.5, duration=0.8, is_final=True, confidence=0.93, **extra):
    msg = {
        "type": "Results",
        "start": start,
        "duration": duration,
        "is_final": is_final,
        "channel": {"alternatives": [{"transcript": text, "confidence": confidence}]},
    }
    msg.update(extra)
    return json.dumps(msg)


class FakeWebSocket:
    def __init__(self, messages):
        self.messages = list(messages)
        self.sent = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send_bytes(self, data):
        self.sent.append(data)

    async def receive(self):
        await asyncio.sleep(0)
        if self.messages:
            return aiohttp.WSMessage(aiohttp.WSMsgType.TEXT, self.messages.pop(0), None)
        return aiohttp.WSMessage(aiohttp.WSMsgType.CLOSE, None, None)

    def exception(self):
        return None


class FakeSession:
    """Hands out the queued websockets, then refuses connections."""

    closed = False

    def __init__(self, sockets=()):
        self.sockets = list(sockets)
        self.connects = []

    def ws_connect(self, url, headers=None, heartbeat=None):
        self.connects.append((url, headers))
        if self.sockets:
            return self.sockets.pop(0)
        raise aiohttp.ClientConnectionError("refused")


def recording_sleep(delays):
    async def sleep(delay):
        delays.append(delay)
    return sleep


def test_parse_results_message():
    frag = parse_deepgram_message(results("  hello there "), "system", 200.0)
    assert frag.text == "hello there"
    assert frag.source == "system"
    assert frag.is_final
    assert frag.relative_offset_ms == 1500
    assert frag.duration_ms == 800
    assert frag.confidence == 0.93
    assert frag.absolute_timestamp == 201.5


def test_parse_speech_final_and_bytes():
    raw = results("ok", is_final=False, speech_final=True).encode()
    assert parse_deepgram_message(raw, "mic", None).is_final
    assert not parse_deepgram_message(results("ok", is_final=False), "mic", None).is_final


def test_parse_ignores_unusable_messages():
    assert parse_deepgram_message(results("   "), "mic", 0.0) is None
    assert parse_deepgram_message("{broken", "mic", 0.0) is None
    assert parse_deepgram_message(json.dumps({"type": "Metadata"}), "mic", 0.0) is None
    assert parse_deepgram_message(json.dumps({"channel": {"alternatives": []}}), "mic", 0.0) is None
    assert parse_deepgram_message(json.dumps([1, 2]), "mic", 0.0) is None
    assert parse_deepgram_message(json.dumps({"transcript": 5}), "mic", 0.0) is None


def test_parse_accepts_top_level_alternatives():
    raw = json.dumps({
        "start": 2.0,
        "duration": 0.5,
        "is_final": True,
        "alternatives": [{"transcript": "top level", "confidence": 0.7}],
    })
    frag = parse_deepgram_message(raw, "mic", 10.0)
    assert frag.text == "top level"
    assert frag.confidence == 0.7
    assert frag.relative_offset_ms == 2000
    assert frag.duration_ms == 500
    assert frag.is_final


def test_parse_falls_back_to_top_level_alternatives_when_channel_is_empty():
    raw = json.dumps({"channel": {"alternatives": []}, "alternatives": [{"transcript": "second shape"}]})
    frag = parse_deepgram_message(raw, "mic", 0.0)
    assert frag.text == "second shape"
    assert frag.confidence == 0.0
    assert not frag.is_final


def test_parse_accepts_bare_transcript():
    raw = json.dumps({"transcript": " plain text ", "confidence": 0.8, "speech_final": True, "start": 0.25})
    frag = parse_deepgram_message(raw, "system", 5.0)
    assert frag.text == "plain text"
    assert frag.confidence == 0.8
    assert frag.relative_offset_ms == 250
    assert frag.source == "system"
    assert frag.is_final


def test_reconnect_delays_double_up_to_cap():
    assert ReconnectPolicy().delays() == [1, 2, 4, 8, 16]
    assert ReconnectPolicy(max_attempts=7).delays()[-2:] == [16, 16]


def test_url_carries_stream_parameters():
    query = parse_qs(urlparse(build_deepgram_url("nova-2", 16000)).query)
    assert query["encoding"] == ["linear16"]
    assert query["sample_rate"] == ["16000"]
    assert query["channels"] == ["1"]
    assert query["model"] == ["nova-2"]
    assert query["interim_results"] == ["true"]


def test_readiness_follows_api_key():
    assert not DeepgramTranscriber(api_key="", model="nova-2").is_ready()
    assert DeepgramTranscriber(api_key="k", model="nova-2").is_ready()


def test_reconnect_is_bounded_and_reports_failure():
    delays = []
    statuses = []
    session = FakeSession()

    async def scenario():
        t = DeepgramTranscriber(api_key="k", model="nova-2", session=session, sleep=recording_sleep(delays))
        await t.start_stream("mic", lambda f: None, lambda s, status, d: statuses.append(status))
        await t._streams["mic"].task

    asyncio.run(scenario())
    assert delays == [1, 2, 4, 8, 16]
    assert [s for s in statuses if s != "connecting"] == ["reconnecting"] * 5 + ["failed"]
    assert len(session.connects) == 6


def test_stream_delivers_fragments_and_audio():
    delays = []
    statuses = []
    fragments = []
    ws = FakeWebSocket([results("first words"), "not json", results("", is_final=False)])
    session = FakeSession([ws])

    async def scenario():
        t = DeepgramTranscriber(api_key="k", model="nova-2", session=session,
                                sleep=recording_sleep(delays), clock=lambda: 500.0)
        t.send_audio("mic", b"ignored before start")
        await t.start_stream("mic", fragments.append, lambda s, status, d: statuses.append(status))
        t.send_audio("mic", b"\x00\x01")
        await t._streams["mic"].task

    asyncio.run(scenario())
    assert [f.text for f in fragments] == ["first words"]
    assert fragments[0].stream_start_time == 500.0
    assert ws.sent == [b"\x00\x01"]
    assert statuses[:2] == ["connecting", "streaming"]
    # a successful open resets the attempt count
    assert delays == [1, 2, 4, 8, 16]
    assert statuses[-1] == "failed"
    assert session.connects[0][1] == {"Authorization": "Token k"}


def test_send_audio_drops_oldest_when_queue_is_full():
    async def blocked(delay):
        await asyncio.Event().wait()

    async def scenario():
        t = DeepgramTranscriber(api_key="k", model="nova-2", queue_size=2, session=FakeSession(), sleep=blocked)
        statuses = []
        await t.start_stream("mic", lambda f: None, lambda s, status, d: statuses.append(status))
        await asyncio.sleep(0)
        for chunk in (b"1", b"2", b"3"):
            t.send_audio("mic", chunk)
        status = t.status()["mic"]
        queued = list(t._streams["mic"].queue._queue)
        await t.shutdown()
        return status, queued, statuses, t

    status, queued, statuses, t = asyncio.run(scenario())
    assert status["dropped"] == 1
    assert status["queued"] == 2
    assert queued == [b"2", b"3"]
    assert statuses[-1] == "closed"
    assert t.status() == {}
