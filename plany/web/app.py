"""
plany/web/app.py — FastAPI presentation bridge for Plany.

Exposes the wired application over REST and streams store changes and
pipeline transitions to browsers over a WebSocket at /ws. The bridge holds
a reference to the application's one Event Store and never copies it.

REST endpoints
--------------
GET    /health                          JSON health check
GET    /entries?kind=&since=            Entries, newest first
GET    /entries/{id}                    One entry
GET    /summary?day=YYYY-MM-DD          Per-day counts and calories
POST   /submit                          {"text": "...", "wait": true}
GET    /submissions/{id}                Submission state and result
POST   /submissions/{id}/acknowledge    Dismiss an ERROR
DELETE /submissions/{id}                Cancel a running submission
GET    /jobs                            Recent terminal job records
GET    /jobs/{entry_id}                 Active enrichment job
DELETE /jobs/{entry_id}?mark_cancelled= Cancel an enrichment job

WebSocket
---------
ws://<host>:<port>/ws

Messages pushed by server (JSON):
  {"type": "snapshot", "entries": [...]}          ← on connect
  {"type": "entry",    "entry": {...}}            ← every store insert/update
  {"type": "pipeline", "submission_id": "...", "from": "IDLE", "to": "RECOGNIZING", "detail": "..."}
  {"type": "pong"}                                ← reply to {"action": "ping"}
"""

from __future__ import annotations

import asyncio
import json
import threading
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from plany.bootstrap import Application
from plany.core.constants import EntryKind
from plany.core.logger import get_logger
from plany.pipeline.controller import ON_STATE_CHANGED
from plany.store.models import LogEntry

_log = get_logger()


class SubmitRequest(BaseModel):
    """Body of ``POST /submit``."""

    text: str = Field(max_length=2000)
    wait: bool = True


class _Broadcaster:
    """Thread-safe fan-out of JSON messages to connected WebSocket clients."""

    def __init__(self) -> None:
        self.clients: Set[WebSocket] = set()
        self.lock = threading.Lock()
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    def push(self, msg: Dict[str, Any]) -> None:
        """Schedule *msg* for every client; callable from any thread."""
        if self.loop is None or self.loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self._broadcast(msg), self.loop)

    async def _broadcast(self, msg: Dict[str, Any]) -> None:
        text = json.dumps(msg, default=str)
        with self.lock:
            clients = list(self.clients)
        dead: List[WebSocket] = []
        for ws in clients:
            try:
                await ws.send_text(text)
            except Exception:  # noqa: BLE001
                dead.append(ws)
        with self.lock:
            for ws in dead:
                self.clients.discard(ws)


def create_app(application: Application) -> FastAPI:
    """
    Build the FastAPI app over an already wired :class:`Application`.

    Store observers and the pipeline subscription are registered when the
    app starts and removed when it stops.
    """
    store = application.store
    controller = application.controller
    orchestrator = application.orchestrator
    hub = _Broadcaster()

    def _on_entry(entry_id: str, entry: LogEntry) -> None:
        hub.push({"type": "entry", "entry": entry.to_dict()})

    def _on_pipeline(data: Dict[str, Any]) -> None:
        hub.push({"type": "pipeline", **data})

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        hub.loop = asyncio.get_running_loop()
        unsubscribe = store.subscribe(_on_entry)
        controller.subscribe(ON_STATE_CHANGED, _on_pipeline)
        _log.info("web_app", "startup", {"store": f"{id(store):#x}"})
        try:
            yield
        finally:
            unsubscribe()
            controller.unsubscribe(ON_STATE_CHANGED, _on_pipeline)
            hub.loop = None
            _log.info("web_app", "shutdown", {})

    app = FastAPI(title="Plany", version="1.0", lifespan=lifespan)

    # ── Routes ────────────────────────────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "entries": len(store),
            "pending_jobs": orchestrator.pending_count,
            "abandoned_calls": orchestrator.abandoned_calls,
            "clients": len(hub.clients),
        })

    @app.get("/entries")
    async def list_entries(
        kind: Optional[EntryKind] = None,
        since: Optional[datetime] = None,
    ) -> JSONResponse:
        entries = store.list(kind=kind, since=since)
        return JSONResponse([e.to_dict() for e in entries])

    @app.get("/entries/{entry_id}")
    async def get_entry(entry_id: str) -> JSONResponse:
        entry = store.get(entry_id)
        if entry is None:
            raise HTTPException(status_code=404, detail=f"No entry {entry_id}")
        return JSONResponse(entry.to_dict())

    @app.get("/summary")
    async def summary(day: Optional[date] = None) -> JSONResponse:
        return JSONResponse(store.summary(day or date.today()))

    # Plain ``def``: FastAPI runs it in its threadpool, so ``wait`` may block.
    @app.post("/submit", status_code=202)
    def submit(body: SubmitRequest) -> JSONResponse:
        if body.wait:
            sub = controller.submit(body.text)
            return JSONResponse(sub.to_dict(), status_code=200)
        sub = controller.submit_async(body.text)
        return JSONResponse(sub.to_dict(), status_code=202)

    @app.get("/submissions/{submission_id}")
    async def get_submission(submission_id: str) -> JSONResponse:
        sub = controller.get_submission(submission_id)
        if sub is None:
            raise HTTPException(status_code=404, detail=f"No submission {submission_id}")
        return JSONResponse(sub.to_dict())

    @app.post("/submissions/{submission_id}/acknowledge")
    async def acknowledge(submission_id: str) -> JSONResponse:
        sub = controller.get_submission(submission_id)
        if sub is None:
            raise HTTPException(status_code=404, detail=f"No submission {submission_id}")
        return JSONResponse({"ok": sub.acknowledge(), "state": sub.state.value})

    @app.delete("/submissions/{submission_id}")
    async def cancel_submission(submission_id: str, cancel_jobs: bool = True) -> JSONResponse:
        return JSONResponse({"cancelled": controller.cancel(submission_id, cancel_jobs)})

    @app.get("/jobs")
    async def job_history() -> JSONResponse:
        return JSONResponse({
            "pending": orchestrator.pending_count,
            "history": orchestrator.history(),
        })

    @app.get("/jobs/{entry_id}")
    async def get_job(entry_id: str) -> JSONResponse:
        job = orchestrator.get_job(entry_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"No active job for {entry_id}")
        return JSONResponse(job)

    @app.delete("/jobs/{entry_id}")
    async def cancel_job(entry_id: str, mark_cancelled: bool = False) -> JSONResponse:
        if not orchestrator.cancel(entry_id, mark_cancelled=mark_cancelled):
            raise HTTPException(status_code=404, detail=f"No active job for {entry_id}")
        return JSONResponse({"cancelled": True, "entry_id": entry_id})

    # ── WebSocket ─────────────────────────────────────────────────────────────

    @app.websocket("/ws")
    async def websocket_endpoint(ws: WebSocket) -> None:
        await ws.accept()
        with hub.lock:
            hub.clients.add(ws)

        await ws.send_text(json.dumps({
            "type": "snapshot",
            "entries": [e.to_dict() for e in store.list()],
        }, default=str))
        _log.info("web_app", "ws_connected", {"total": len(hub.clients)})

        try:
            while True:
                msg = await ws.receive_text()
                try:
                    data = json.loads(msg)
                except ValueError:
                    continue
                if isinstance(data, dict) and data.get("action") == "ping":
                    await ws.send_text(json.dumps({"type": "pong"}))
        except WebSocketDisconnect:
            pass
        finally:
            with hub.lock:
                hub.clients.discard(ws)
            _log.info("web_app", "ws_disconnected", {"total": len(hub.clients)})

    return app


# ── Public launcher ───────────────────────────────────────────────────────────

def start_web_server(
    application: Application,
    host: str = "127.0.0.1",
    port: int = 7860,
) -> None:
    """
    Serve :func:`create_app` with uvicorn in the current thread (blocking).

    Args:
        application: The wired application; its orchestrator should be started.
        host:        Bind address.
        port:        TCP port.
    """
    import uvicorn

    config = uvicorn.Config(
        create_app(application),
        host=host,
        port=port,
        log_level="warning",
        access_log=False,
    )
    server = uvicorn.Server(config)
    _log.info("web_app", "server_start", {"host": host, "port": port})
    server.run()
