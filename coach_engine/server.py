"""
server.py — Live Coaching Engine · FastAPI Control Plane
========================================================
Drives a single SessionManager over HTTP and streams everything the session
produces (transcripts, feedback, warnings, metrics, log lines) to WebSocket
clients.

Endpoints
---------
  GET  /health           Service liveness + whether a session is running
  GET  /session          Session status snapshot
  POST /session/start    Start a coaching session
  POST /session/stop     Stop it and write the report
  GET  /config           Current runtime config
  PUT  /config           Merge-patch the config (applies to the next session)
  WS   /ws/events        Live event + log stream

Run
---
    uvicorn coach_engine.server:app --port 8000
    python -m coach_engine --serve
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import Literal, Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from . import __version__
from .config import CoachEngineConfig
from .errors import AuthError, CoachEngineError, DeviceError, LinkError, SessionStateError
from .models import FeedbackItem, utc_now
from .session import SESSION_TIPS, SessionCallbacks, SessionManager
from .token_provider import RealtimeTokenProvider

load_dotenv()

HISTORY_LIMIT = 500


# ---------------------------------------------------------------------------
# WebSocket event broadcaster (defined early, the logging handler references it)
# ---------------------------------------------------------------------------

class EventBroadcaster:
    """Fan-out hub for session events and log records to all connected WebSocket clients."""
    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []  # replayed to late-joiners
        self.history_limit = history_limit

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in list(self._history):
            try:
                await ws.send_text(json.dumps(event))
            except (WebSocketDisconnect, RuntimeError):
                self._clients.discard(ws)
                break

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    def record(self, event: dict) -> None:
        self._history.append(event)
        if len(self._history) > self.history_limit:
            self._history = self._history[-self.history_limit:]

    async def broadcast(self, event: dict) -> None:
        self.record(event)
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event))
            except (WebSocketDisconnect, RuntimeError):
                dead.add(ws)
        self._clients -= dead

    def publish(self, event: dict) -> None:
        """Schedule a broadcast from synchronous code running on the event loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.record(event)
            return
        loop.create_task(self.broadcast(event))


broadcaster = EventBroadcaster()


class _WsBroadcastHandler(logging.Handler):
    """Logging handler that forwards every engine log record to all WS clients."""
    def emit(self, record: logging.LogRecord) -> None:
        event = {
            "type":   "log",
            "level":  record.levelname,
            "logger": record.name,
            "msg":    self.format(record),
            "ts":     record.created,
        }
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return  # record emitted off the event loop (audio thread, startup)
        loop.call_soon(lambda: loop.create_task(broadcaster.broadcast(event)))


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_FORMAT = "%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s"
LOG_DATEFMT = "%H:%M:%S"

logging.basicConfig(
    level=logging.DEBUG if os.getenv("COACH_DEBUG") else logging.INFO,
    format=LOG_FORMAT,
    datefmt=LOG_DATEFMT,
)
log = logging.getLogger("coach_engine.server")

# Attach WS broadcast handler AFTER basicConfig has run
_ws_handler = _WsBroadcastHandler(level=logging.INFO)
_ws_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
if not any(isinstance(h, _WsBroadcastHandler) for h in logging.root.handlers):
    logging.root.addHandler(_ws_handler)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class StartRequest(BaseModel):
    session_type: Literal["interview", "presentation", "sales", "general"] = "general"


# ---------------------------------------------------------------------------
# Session → WebSocket bridge
# ---------------------------------------------------------------------------

def _event(kind: str, **payload) -> dict:
    return {"type": kind, "ts": utc_now().timestamp(), **payload}


def broadcast_callbacks(hub: EventBroadcaster) -> SessionCallbacks:
    """Host callbacks that publish every session event on ``hub``."""
    def on_feedback(items: list[FeedbackItem]) -> None:
        hub.publish(_event("feedback", items=[i.model_dump(by_alias=True, mode="json") for i in items]))

    def on_error(error: CoachEngineError) -> None:
        hub.publish(_event("error", error=type(error).__name__, message=str(error)))

    return SessionCallbacks(
        on_transcript=lambda text, is_final: hub.publish(_event("transcript", text=text, isFinal=is_final)),
        on_feedback=on_feedback,
        on_warning=lambda message, metric: hub.publish(_event("warning", metric=metric, message=message)),
        on_connection_change=lambda connected: hub.publish(_event("connection", connected=connected)),
        on_metrics=lambda snapshot: hub.publish(_event("metrics", metrics=snapshot)),
        on_notice=lambda message: hub.publish(_event("notice", message=message)),
        on_error=on_error,
    )


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

def create_app(
    manager: Optional[SessionManager] = None,
    config_path: Optional[str] = None,
    config: Optional[CoachEngineConfig] = None,
    hub: EventBroadcaster = broadcaster,
) -> FastAPI:
    """Build the control plane around ``manager`` (a real one is created when omitted)."""
    config_path = config_path or os.getenv("COACH_CONFIG")
    if manager is None:
        if config is None:
            config = CoachEngineConfig.load(config_path) if config_path else CoachEngineConfig()
        manager = SessionManager(
            config,
            RealtimeTokenProvider(os.getenv("ASSEMBLYAI_API_KEY"), config.service),
            callbacks=broadcast_callbacks(hub),
        )

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        log.info("event=server_start config_path=%s", config_path)
        yield
        if manager.active:
            log.info("event=server_shutdown stopping active session")
            await manager.stop()
        log.info("event=server_stopped")

    app = FastAPI(
        title="Live Coaching Engine",
        version=__version__,
        description="Real-time transcription and live speaking coach",
        lifespan=_lifespan,
    )
    app.state.manager = manager

    # Allow file:// and any local origin to reach the API (dev only)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> JSONResponse:
        """Liveness probe."""
        return JSONResponse({
            "status":    "ok",
            "active":    manager.active,
            "ws_clients": hub.client_count,
        })

    @app.get("/session")
    async def session_status() -> JSONResponse:
        return JSONResponse(manager.status())

    @app.post("/session/start", status_code=status.HTTP_202_ACCEPTED)
    async def start_session(body: Optional[StartRequest] = None) -> JSONResponse:
        body = body or StartRequest()
        log.info("event=start_requested type=%s", body.session_type)
        try:
            session = await manager.start(body.session_type)
        except SessionStateError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        except DeviceError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        except (AuthError, LinkError) as exc:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={
                "status":      "started",
                "sessionId":   session.id,
                "sessionType": session.session_type,
                "tips":        list(SESSION_TIPS[session.session_type]),
            },
        )

    @app.post("/session/stop")
    async def stop_session() -> JSONResponse:
        result = await manager.stop()
        return JSONResponse({
            "stopped":     result.stopped,
            "message":     result.message,
            "report_path": str(result.report_path) if result.report_path else None,
            "session_id":  result.session_id,
        })

    @app.get("/config")
    async def get_config() -> JSONResponse:
        return JSONResponse(manager.config.model_dump())

    @app.put("/config")
    async def put_config(patch: dict) -> JSONResponse:
        """Merge-patch the config.  A running session keeps the config it started with."""
        try:
            updated = manager.config.merge_patch(patch)
        except ValidationError as exc:
            raise HTTPException(
                status_code=422,
                detail=json.loads(exc.json()),
            ) from exc
        manager.config = updated
        if config_path:
            updated.save(config_path)
        log.info("event=config_updated keys=%s", ",".join(sorted(patch)))
        return JSONResponse(updated.model_dump())

    @app.websocket("/ws/events")
    async def ws_events(ws: WebSocket) -> None:
        """
        Live stream for dashboards.  Every message is a JSON object with a
        ``type`` of transcript | feedback | warning | connection | metrics |
        notice | error | log.  The last 500 events are replayed on connect.
        """
        await hub.connect(ws)
        log.info("event=ws_client_connected remote=%s", ws.client)
        try:
            while True:
                # Keep the connection alive; we only send, never receive
                await ws.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            hub.disconnect(ws)
            log.info("event=ws_client_disconnected remote=%s", ws.client)

    return app


app = create_app()
