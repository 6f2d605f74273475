"""
server.py — Takeoff Voice Agent · FastAPI Control Plane
=======================================================
Hosts one in-process VoiceAgent per project.  Typed utterances, listening
control and calibration are exposed over HTTP; every log record is fanned out
to WebSocket clients for live debugging.

Endpoints
---------
  GET    /health                              Service liveness
  GET    /config                              Current AgentConfig
  PUT    /config                              Merge-patch + persist config
  POST   /sessions/{project_id}               Create (or return) a session
  DELETE /sessions/{project_id}               Stop and drop a session
  GET    /sessions/{project_id}               State, draft, pending, preview
  POST   /sessions/{project_id}/utterances    Typed utterance → new messages
  GET    /sessions/{project_id}/conversation  Full conversation log
  DELETE /sessions/{project_id}/conversation  Clear the log
  POST   /sessions/{project_id}/listen        Arm voice activity detection
  POST   /sessions/{project_id}/listen/stop   Stop listening (ordered teardown)
  POST   /sessions/{project_id}/training      Enter calibration mode
  DELETE /sessions/{project_id}/training      Leave calibration mode
  WS     /ws/logs                             Real-time log stream

Concurrency model
-----------------
All sessions share the server's event loop.  Each session's state machine
serializes its own turns; sessions never share mutable state apart from the
per-project record stores held here.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import AgentConfig
from takeoff.audio import AudioDeviceError, DeviceBusy
from takeoff.records import InMemoryRecordStore, RecordStore
from takeoff.session import VoiceAgent

load_dotenv()

# ---------------------------------------------------------------------------
# WebSocket log broadcaster (defined early, referenced by the logging handler)
# ---------------------------------------------------------------------------

LOG_HISTORY = 500


class LogBroadcaster:
    """Fan-out hub for real-time log events to all connected WebSocket clients."""
    def __init__(self, history: int = LOG_HISTORY) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []
        self._limit = history

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in self._history[-self._limit:]:
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                break

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, event: dict) -> None:
        self._history.append(event)
        if len(self._history) > self._limit:
            self._history = self._history[-self._limit:]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                dead.add(ws)
        self._clients -= dead


broadcaster = LogBroadcaster()


class _WsBroadcastHandler(logging.Handler):
    """Logging handler that forwards every log record to all WS clients."""
    def emit(self, record: logging.LogRecord) -> None:
        event = {
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # no event loop yet during startup
        loop.call_soon(lambda: loop.create_task(broadcaster.broadcast(event)))


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
_LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"

logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format=_LOG_FORMAT,
    datefmt="%H:%M:%S",
)
log = logging.getLogger("takeoff.server")

_ws_handler = _WsBroadcastHandler()
_ws_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%H:%M:%S"))
logging.root.addHandler(_ws_handler)

# ---------------------------------------------------------------------------
# Config and registries
# ---------------------------------------------------------------------------
CONFIG_PATH = os.getenv("TAKEOFF_CONFIG", "config.json")

config = AgentConfig.load(CONFIG_PATH)

# project_id → running agent / record store (stores outlive sessions)
sessions: dict[str, VoiceAgent] = {}
stores: dict[str, RecordStore] = {}
_started_at: dict[str, float] = {}


def _default_agent_factory(project_id: str, cfg: AgentConfig, store: RecordStore) -> VoiceAgent:
    return VoiceAgent(project_id, cfg, store)


agent_factory: Callable[[str, AgentConfig, RecordStore], VoiceAgent] = _default_agent_factory


def _session(project_id: str) -> VoiceAgent:
    agent = sessions.get(project_id)
    if agent is None:
        raise HTTPException(status_code=404, detail=f"No session for project '{project_id}'.")
    return agent


def _messages(items) -> list[dict]:
    return [m.model_dump() for m in items]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class UtteranceRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000, description="Typed or externally transcribed utterance")


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    log.info("event=server_start config=%s", CONFIG_PATH)
    yield
    log.info("event=server_shutdown stopping %d sessions", len(sessions))
    closing = [agent.close() for agent in sessions.values()]
    if closing:
        await asyncio.gather(*closing, return_exceptions=True)
    sessions.clear()
    log.info("event=server_stopped")


app = FastAPI(
    title="Takeoff Voice Agent",
    version="0.1.0",
    description="Voice-driven data entry for estimating lines",
    lifespan=_lifespan,
)

# Allow file:// and any local origin to reach the API (dev only)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health() -> JSONResponse:
    """Liveness probe."""
    return JSONResponse({
        "status":   "ok",
        "sessions": len(sessions),
        "listening": sum(1 for a in sessions.values() if a.turns.listening),
    })


@app.get("/config")
async def get_config() -> dict:
    return config.model_dump()


@app.put("/config")
async def put_config(patch: dict[str, Any]) -> dict:
    """Merge a partial config; applies to sessions created afterwards."""
    global config
    try:
        updated = config.merge_patch(patch)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    config = updated
    try:
        config.save(CONFIG_PATH)
    except OSError as exc:
        log.warning("event=config_save_failed path=%s error=%s", CONFIG_PATH, exc)
    log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
    return config.model_dump()


@app.post("/sessions/{project_id}", status_code=status.HTTP_201_CREATED)
async def create_session(project_id: str) -> JSONResponse:
    if project_id in sessions:
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"status": "already_active", **sessions[project_id].snapshot()},
        )
    store = stores.setdefault(project_id, InMemoryRecordStore())
    agent = agent_factory(project_id, config, store)
    await agent.load()
    sessions[project_id] = agent
    _started_at[project_id] = time.monotonic()
    log.info("event=session_created project=%s", project_id)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content={"status": "created", **agent.snapshot()},
    )


@app.delete("/sessions/{project_id}")
async def delete_session(project_id: str) -> dict:
    agent = _session(project_id)
    await agent.close()
    sessions.pop(project_id, None)
    started = _started_at.pop(project_id, time.monotonic())
    log.info("event=session_closed project=%s duration_sec=%.1f", project_id, time.monotonic() - started)
    return {"status": "stopped", "project_id": project_id}


@app.get("/sessions/{project_id}")
async def get_session(project_id: str) -> dict:
    return _session(project_id).snapshot()


@app.post("/sessions/{project_id}/utterances")
async def post_utterance(project_id: str, body: UtteranceRequest) -> dict:
    agent = _session(project_id)
    added = await agent.submit_text(body.text)
    return {"messages": _messages(added), **agent.snapshot()}


@app.get("/sessions/{project_id}/conversation")
async def get_conversation(project_id: str) -> dict:
    agent = _session(project_id)
    return {"project_id": project_id, "messages": _messages(agent.conversation.messages)}


@app.delete("/sessions/{project_id}/conversation")
async def clear_conversation(project_id: str) -> dict:
    agent = _session(project_id)
    agent.clear_conversation()
    return {"project_id": project_id, "messages": []}


@app.post("/sessions/{project_id}/listen")
async def listen(project_id: str) -> dict:
    agent = _session(project_id)
    try:
        armed = agent.arm()
    except DeviceBusy as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except AudioDeviceError as exc:
        raise HTTPException(status_code=409, detail=f"Audio device unavailable: {exc}") from exc
    return {"accepted": armed, **agent.snapshot()}


@app.post("/sessions/{project_id}/listen/stop")
async def stop_listening(project_id: str) -> dict:
    agent = _session(project_id)
    agent.stop()
    return agent.snapshot()


@app.post("/sessions/{project_id}/training")
async def start_training(project_id: str) -> dict:
    agent = _session(project_id)
    added = await agent.start_training()
    return {"messages": _messages(added), **agent.snapshot()}


@app.delete("/sessions/{project_id}/training")
async def exit_training(project_id: str) -> dict:
    agent = _session(project_id)
    added = await agent.exit_training()
    return {"messages": _messages(added), **agent.snapshot()}


@app.websocket("/ws/logs")
async def ws_logs(ws: WebSocket) -> None:
    """
    Real-time log stream.  Sends every log event as a JSON object:
    {
      "level":  "INFO" | "WARNING" | "ERROR" | ...,
      "logger": "<logger name>",
      "msg":    "<formatted line>",
      "ts":     <unix float>
    }
    """
    await broadcaster.connect(ws)
    log.info("event=ws_log_client_connected remote=%s", ws.client)
    try:
        while True:
            # Keep the connection alive; we only send, never receive
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(ws)
        log.info("event=ws_log_client_disconnected remote=%s", ws.client)


def run(host: Optional[str] = None, port: Optional[int] = None) -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=host or os.getenv("HOST", "127.0.0.1"),
        port=port or int(os.getenv("PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":
    run()
