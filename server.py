"""
server.py — Dialog Drill · FastAPI Control Plane
=================================================
Hosts practice sessions for rendering clients.  A client posts a dialogue
script, then drives the session through the control endpoints while a
websocket streams state snapshots and feedback cues back to it.

Endpoints
---------
  POST   /sessions                      Parse a script, create a session
  GET    /sessions                      List active sessions
  GET    /sessions/{id}                 State snapshot
  DELETE /sessions/{id}                 Tear a session down
  POST   /sessions/{id}/listen/start    Start listening on the current line
  POST   /sessions/{id}/listen/stop     Stop listening (finalizes)
  POST   /sessions/{id}/next            Skip to the next line
  POST   /sessions/{id}/seek            Jump to a line index
  POST   /sessions/{id}/results         Recognizer result batch (push backend)
  POST   /sessions/{id}/signal          Recognizer end / error (push backend)
  GET    /health                        Service liveness
  GET    /config, PUT /config           Runtime configuration
  WS     /ws/sessions/{id}              State + cue stream; binary audio in

Recognition backends
--------------------
  deepgram — the client sends raw audio frames over the websocket
  push     — the client recognizes speech itself (e.g. Web Speech API) and
             posts result batches to /results
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Literal, Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

from config import PracticeConfig
from dialog import parse_dialog_script
from feedback import CallbackFeedback
from session import DialogSession, SessionSnapshot
from speech import (
    DeepgramSpeechStream,
    Ended,
    Errored,
    PushSpeechStream,
    create_speech_stream,
    results_to_events,
)

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("DIALOG_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("dialog_drill.server")

# ---------------------------------------------------------------------------
# Config (from environment)
# ---------------------------------------------------------------------------
DEEPGRAM_API_KEY    = os.getenv("DEEPGRAM_API_KEY")
CONFIG_PATH         = os.getenv("DIALOG_CONFIG_PATH", "dialog_config.json")
MAX_ACTIVE_SESSIONS = int(os.getenv("MAX_ACTIVE_SESSIONS", "200"))

practice_config = PracticeConfig.load(CONFIG_PATH)


# ---------------------------------------------------------------------------
# WebSocket fan-out
# ---------------------------------------------------------------------------

class SessionBroadcaster:
    """Fan-out hub for session events to every websocket watching a session."""

    def __init__(self) -> None:
        self._clients: dict[str, Set[WebSocket]] = {}
        self._pending: Set[asyncio.Task] = set()

    async def connect(self, session_id: str, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.setdefault(session_id, set()).add(ws)

    def disconnect(self, session_id: str, ws: WebSocket) -> None:
        clients = self._clients.get(session_id)
        if clients is None:
            return
        clients.discard(ws)
        if not clients:
            self._clients.pop(session_id, None)

    async def close_all(self, session_id: str) -> None:
        for ws in list(self._clients.pop(session_id, set())):
            try:
                await ws.close()
            except Exception as exc:
                log.debug("event=ws_close_failed session=%s error=%s", session_id, exc)

    async def broadcast(self, session_id: str, event: dict) -> None:
        clients = self._clients.get(session_id)
        if not clients:
            return
        dead: Set[WebSocket] = set()
        for ws in list(clients):
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                dead.add(ws)
        clients -= dead

    def publish(self, session_id: str, event: dict) -> None:
        """Schedule a broadcast from synchronous code running on the loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no event loop (e.g. during teardown)
        task = loop.create_task(self.broadcast(session_id, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


broadcaster = SessionBroadcaster()


# ---------------------------------------------------------------------------
# Active session registry
# ---------------------------------------------------------------------------

@dataclass
class SessionRecord:
    session_id: str
    session:    DialogSession = field(repr=False)
    created_at: float = field(default_factory=time.monotonic)


# session_id → SessionRecord
active_sessions: dict[str, SessionRecord] = {}


def _state_event(reason: str, session: DialogSession) -> dict:
    return {
        "type":   "state",
        "reason": reason,
        "state":  session.snapshot().model_dump(mode="json"),
    }


def _build_session(session_id: str, script: str, initial_line_index: int) -> DialogSession:
    lines = parse_dialog_script(script)
    if not lines:
        raise HTTPException(status_code=400, detail="Script contains no dialogue lines.")

    stream = create_speech_stream(practice_config.recognition, DEEPGRAM_API_KEY)
    feedback = CallbackFeedback(
        lambda cue: broadcaster.publish(session_id, {"type": "cue", "cue": cue.value}),
    )
    return DialogSession(
        lines,
        stream=stream,
        config=practice_config.model_copy(deep=True),
        feedback=feedback,
        initial_line_index=initial_line_index,
        on_change=lambda reason, s: broadcaster.publish(session_id, _state_event(reason, s)),
    )


def _get_record(session_id: str) -> SessionRecord:
    record = active_sessions.get(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No active session '{session_id}'.")
    return record


def _push_stream(record: SessionRecord) -> PushSpeechStream:
    stream = record.session.stream
    if not isinstance(stream, PushSpeechStream):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Session does not accept pushed recognition results.",
        )
    return stream


async def _close_record(record: SessionRecord) -> None:
    await record.session.close()
    await broadcaster.close_all(record.session_id)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class CreateSessionRequest(BaseModel):
    script:             str
    initial_line_index: int = 0
    session_id:         Optional[str] = None   # explicit id (resume / testing)

    def resolved_session_id(self) -> str:
        """Keep only alphanum + dash + underscore, max 64 chars."""
        raw = self.session_id or uuid.uuid4().hex
        safe = "".join(c if c.isalnum() or c in "-_" else "-" for c in raw)
        return safe[:64].strip("-") or uuid.uuid4().hex


class SeekRequest(BaseModel):
    index: int


class RecognitionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transcript: str = ""
    is_final:   bool = Field(default=False, alias="isFinal")


class ResultBatch(BaseModel):
    """Web Speech `onresult` payload."""
    model_config = ConfigDict(populate_by_name=True)

    result_index: int = Field(default=0, ge=0, alias="resultIndex")
    results:      list[RecognitionResult] = Field(default_factory=list)


class RecognitionSignal(BaseModel):
    type:  Literal["end", "error"]
    error: str = ""


class SessionCreated(BaseModel):
    session_id: str
    state:      SessionSnapshot


class SessionInfo(BaseModel):
    session_id:   str
    uptime_sec:   float
    current_line: int
    total_lines:  int
    is_game_over: bool


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    log.info("event=server_start max_sessions=%d speech_key=%s",
             MAX_ACTIVE_SESSIONS, "set" if DEEPGRAM_API_KEY else "missing")
    yield
    log.info("event=server_shutdown closing %d active sessions", len(active_sessions))
    records = list(active_sessions.values())
    active_sessions.clear()
    if records:
        await asyncio.gather(*(_close_record(r) for r in records), return_exceptions=True)
    log.info("event=server_stopped")


app = FastAPI(
    title="Dialog Drill",
    version="1.0.0",
    description="Real-time spoken dialogue practice",
    lifespan=_lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.post("/sessions", status_code=status.HTTP_201_CREATED, response_model=SessionCreated)
async def create_session(body: CreateSessionRequest) -> SessionCreated:
    if len(active_sessions) >= MAX_ACTIVE_SESSIONS:
        log.warning("event=session_limit_reached current=%d max=%d", len(active_sessions), MAX_ACTIVE_SESSIONS)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Session limit reached ({MAX_ACTIVE_SESSIONS} active sessions).",
        )

    session_id = body.resolved_session_id()
    if session_id in active_sessions:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Session '{session_id}' already exists.")

    session = _build_session(session_id, body.script, body.initial_line_index)
    active_sessions[session_id] = SessionRecord(session_id=session_id, session=session)
    log.info("event=session_registered session=%s lines=%d", session_id, len(session.lines))
    return SessionCreated(session_id=session_id, state=session.snapshot())


@app.get("/sessions", response_model=list[SessionInfo])
async def list_sessions() -> list[SessionInfo]:
    now = time.monotonic()
    return [
        SessionInfo(
            session_id=r.session_id,
            uptime_sec=round(now - r.created_at, 1),
            current_line=r.session.current_line_index,
            total_lines=len(r.session.lines),
            is_game_over=r.session.is_game_over,
        )
        for r in active_sessions.values()
    ]


@app.get("/sessions/{session_id}", response_model=SessionSnapshot)
async def get_session(session_id: str) -> SessionSnapshot:
    return _get_record(session_id).session.snapshot()


@app.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(session_id: str) -> None:
    record = active_sessions.pop(session_id, None)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No active session '{session_id}'.")
    await _close_record(record)
    log.info("event=session_deleted session=%s", session_id)


@app.post("/sessions/{session_id}/listen/start", response_model=SessionSnapshot)
async def start_listening(session_id: str) -> SessionSnapshot:
    session = _get_record(session_id).session
    await session.start_listening()
    return session.snapshot()


@app.post("/sessions/{session_id}/listen/stop", response_model=SessionSnapshot)
async def stop_listening(session_id: str) -> SessionSnapshot:
    session = _get_record(session_id).session
    await session.stop_listening()
    return session.snapshot()


@app.post("/sessions/{session_id}/next", response_model=SessionSnapshot)
async def next_line(session_id: str) -> SessionSnapshot:
    session = _get_record(session_id).session
    await session.move_to_next_line()
    return session.snapshot()


@app.post("/sessions/{session_id}/seek", response_model=SessionSnapshot)
async def seek_line(session_id: str, body: SeekRequest) -> SessionSnapshot:
    session = _get_record(session_id).session
    if not 0 <= body.index < len(session.lines):
        raise HTTPException(status_code=400, detail=f"Line index {body.index} out of range.")
    await session.set_current_line_index(body.index)
    return session.snapshot()


@app.post("/sessions/{session_id}/results")
async def push_results(session_id: str, batch: ResultBatch) -> dict:
    stream = _push_stream(_get_record(session_id))
    events = results_to_events(batch.result_index, [r.model_dump(by_alias=True) for r in batch.results])
    accepted = 0
    for event in events:
        if await stream.push(event):
            accepted += 1
    return {"accepted": accepted, "received": len(events)}


@app.post("/sessions/{session_id}/signal")
async def push_signal(session_id: str, body: RecognitionSignal) -> dict:
    stream = _push_stream(_get_record(session_id))
    event = Ended() if body.type == "end" else Errored(body.error or "client recognition error")
    return {"accepted": await stream.push(event)}


@app.get("/health")
async def health() -> dict:
    """Liveness probe."""
    return {
        "status":          "ok",
        "active_sessions": len(active_sessions),
        "max_sessions":    MAX_ACTIVE_SESSIONS,
        "speech_backend":  practice_config.recognition.backend,
    }


@app.get("/config", response_model=PracticeConfig)
async def get_config() -> PracticeConfig:
    return practice_config


@app.put("/config", response_model=PracticeConfig)
async def update_config(patch: dict) -> PracticeConfig:
    """Merge a partial config; applies to sessions created afterwards."""
    global practice_config
    try:
        updated = practice_config.merge_patch(patch)
    except Exception as exc:
        raise HTTPException(status_code=400, detail=f"Invalid config: {exc}") from exc
    practice_config = updated
    try:
        practice_config.save(CONFIG_PATH)
    except OSError as exc:
        log.warning("event=config_save_failed path=%s error=%s", CONFIG_PATH, exc)
    log.info("event=config_updated keys=%s", sorted(patch))
    return practice_config


@app.websocket("/ws/sessions/{session_id}")
async def ws_session(ws: WebSocket, session_id: str) -> None:
    """
    Live channel for one session.  Sends JSON events:
      {"type": "state", "reason": "<why>", "state": {...snapshot...}}
      {"type": "cue",   "cue": "great" | "wrong"}
    Binary frames received are raw audio for Deepgram-backed sessions.
    """
    record = active_sessions.get(session_id)
    if record is None:
        await ws.close(code=4404)
        return

    await broadcaster.connect(session_id, ws)
    log.info("event=ws_client_connected session=%s remote=%s", session_id, ws.client)
    try:
        await ws.send_text(json.dumps(_state_event("connected", record.session)))
        while True:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                break
            audio = message.get("bytes")
            stream = record.session.stream
            if audio and isinstance(stream, DeepgramSpeechStream):
                await stream.send_audio(audio)
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(session_id, ws)
        log.info("event=ws_client_disconnected session=%s remote=%s", session_id, ws.client)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
