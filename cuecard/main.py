"""FastAPI backend for CueCard."""

import asyncio
import json
import logging
from typing import List, Optional, Union

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from cuecard.audio_converter import validate_format
from cuecard.audio_devices import list_audio_devices
from cuecard.config import Config
from cuecard.events import DisplayChannel, DisplaySink
from cuecard.models import SOURCES, AudioFormat, DisplayEvent
from cuecard.session import LiveSession

logger = logging.getLogger(__name__)

HEARTBEAT_SECONDS = 15.0

app = FastAPI(title="CueCard")

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

channel = DisplayChannel()
session: Optional[LiveSession] = None


def create_session(sink: DisplaySink) -> LiveSession:
    return LiveSession.from_config(sink)


# Replaced in tests
session_factory = create_session


# Request models
class StartRequest(BaseModel):
    sources: List[str] = list(SOURCES)
    mic_device: Optional[Union[int, str]] = None
    system_device: Optional[Union[int, str]] = None


class GenerateRequest(BaseModel):
    action_type: str = "suggestion"


def _require_session() -> LiveSession:
    if session is None or not session.active:
        raise HTTPException(status_code=409, detail="No active session")
    return session


def format_sse(event: DisplayEvent) -> str:
    return f"event: {event.kind}\ndata: {json.dumps(event.to_dict())}\n\n"


@app.post("/session/start")
async def session_start(req: Optional[StartRequest] = None):
    """Create a session and start capture, transcription and suggestions."""
    global session
    req = req or StartRequest()

    unknown = [s for s in req.sources if s not in SOURCES]
    if unknown or not req.sources:
        raise HTTPException(status_code=400, detail=f"Unknown or empty sources: {unknown}")

    if session is not None and session.active:
        return {"status": "already_running", "sources": session.sources}

    new_session = session_factory(channel)
    result = await new_session.start(
        req.sources,
        devices={"mic": req.mic_device, "system": req.system_device},
    )
    if result.get("status") == "started":
        session = new_session
    return result


@app.post("/session/stop")
async def session_stop():
    global session
    if session is None:
        return {"status": "not_running"}
    current, session = session, None
    return await current.stop()


@app.post("/session/pause")
async def session_pause():
    return _require_session().pause()


@app.post("/session/resume")
async def session_resume():
    return _require_session().resume()


@app.post("/session/clear")
async def session_clear():
    return _require_session().clear()


@app.post("/suggestions/generate")
async def suggestions_generate(req: Optional[GenerateRequest] = None):
    """Manual "generate now" from the display."""
    req = req or GenerateRequest()
    result = await _require_session().generate_now(req.action_type)
    return {"status": "ok" if result is not None else "skipped", "result": result}


@app.post("/audio/{source}")
async def audio_push(source: str, request: Request, sample_rate: int = 16000, channels: int = 1, encoding: str = "int16"):
    """Push a block of raw little-endian samples for one source."""
    if source not in SOURCES:
        raise HTTPException(status_code=404, detail=f"Unknown source: {source}")
    fmt = AudioFormat(sample_rate=sample_rate, channels=channels, encoding=encoding)
    problems = validate_format(fmt)
    if problems:
        raise HTTPException(status_code=400, detail="; ".join(problems))

    current = _require_session()
    body = await request.body()
    chunks = current.submit_audio(body, source, fmt)
    return {"accepted": True, "chunks": len(chunks), "buffered_ms": current.capture.buffered_ms(source)}


@app.get("/session/status")
async def session_status():
    out = {"active": False, "config_missing": Config.validate(), "subscribers": channel.subscriber_count}
    if session is not None:
        out.update(session.status())
    return out


@app.get("/audio/devices")
async def audio_devices():
    return list_audio_devices()


@app.get("/events/stream")
async def events_stream():
    """Stream display events via Server-Sent Events."""
    q = channel.subscribe()

    async def event_generator():
        try:
            while True:
                try:
                    event = await asyncio.wait_for(q.get(), timeout=HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    # Keep the connection alive through proxies
                    yield ": heartbeat\n\n"
                    continue
                yield format_sse(event)
        finally:
            channel.unsubscribe(q)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable buffering for nginx
        },
    )
