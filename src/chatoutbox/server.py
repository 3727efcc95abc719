"""
Outbox HTTP server: the worker-facing surface of an OutboxStore.

Endpoints (identity in x-admin-id, lease owner in x-bot-worker-id):
- GET  /outbox/pull?limit=N   -> {"items": [...]} leased to the caller
- POST /outbox/report         {"results": [...]} -> {"ok": true}
- POST /outbox/enqueue        producer entry point for other processes
- GET  /health

The app holds the single store instance, so every read-modify-write of the
record goes through that store's lock no matter how many workers poll.
"""

import asyncio
import logging
from typing import Any, List, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel

from chatoutbox.outbox_backend import OutboxStore
from chatoutbox.types import Control, DeliveryMode, ReportResult

logger = logging.getLogger(__name__)

ADMIN_HEADER = "x-admin-id"
WORKER_HEADER = "x-bot-worker-id"
DEFAULT_LIMIT = 10
MAX_LIMIT = 50


class ReportResultBody(BaseModel):
    id: str
    ok: bool
    telegram_message_id: Optional[int] = None
    error: Optional[str] = None
    retry_after: Optional[float] = None


class ReportBody(BaseModel):
    results: List[ReportResultBody] = []


class ControlBody(BaseModel):
    kind: str
    action: str


class EnqueueBody(BaseModel):
    destination: str
    text: str = ""
    mode: DeliveryMode = DeliveryMode.SEND
    progress_key: Optional[str] = None
    control: Optional[ControlBody] = None
    reply_markup: Optional[dict[str, Any]] = None
    silent: bool = False
    parse_mode: Optional[str] = None


def _require(value: Optional[str], header: str) -> str:
    if not value or not value.strip():
        raise HTTPException(status_code=400, detail=f"{header} header is required")
    return value.strip()


router = APIRouter()


def _store(request: Request) -> OutboxStore:
    return request.app.state.store


@router.get("/health")
async def health():
    return {"status": "ok", "service": "chatoutbox"}


@router.get("/outbox/pull")
async def pull(
    request: Request,
    limit: int = Query(DEFAULT_LIMIT),
    x_admin_id: Optional[str] = Header(None),
    x_bot_worker_id: Optional[str] = Header(None),
):
    """Lease due items of the calling principal to the calling worker."""
    principal_id = _require(x_admin_id, ADMIN_HEADER)
    worker_id = _require(x_bot_worker_id, WORKER_HEADER)
    limit = max(1, min(MAX_LIMIT, limit))
    items = await _store(request).pull(principal_id, limit, worker_id)
    return {"items": [item.pull_view() for item in items]}


@router.post("/outbox/report")
async def report(
    request: Request,
    body: ReportBody,
    x_admin_id: Optional[str] = Header(None),
    x_bot_worker_id: Optional[str] = Header(None),
):
    """Record delivery outcomes, then prune old delivered items."""
    principal_id = _require(x_admin_id, ADMIN_HEADER)
    worker_id = _require(x_bot_worker_id, WORKER_HEADER)
    if not body.results:
        raise HTTPException(status_code=400, detail="results are required")
    store = _store(request)
    await store.report(
        principal_id,
        worker_id,
        [ReportResult.model_validate(r.model_dump()) for r in body.results],
    )
    await store.prune_delivered(request.app.state.keep_delivered)
    return {"ok": True}


@router.post("/outbox/enqueue")
async def enqueue(
    request: Request,
    body: EnqueueBody,
    x_admin_id: Optional[str] = Header(None),
):
    principal_id = _require(x_admin_id, ADMIN_HEADER)
    try:
        item = await _store(request).enqueue(
            principal_id,
            body.destination,
            body.text,
            mode=body.mode,
            progress_key=body.progress_key,
            control=Control(**body.control.model_dump()) if body.control else None,
            reply_markup=body.reply_markup,
            silent=body.silent,
            parse_mode=body.parse_mode,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return item.model_dump()


def create_app(store: OutboxStore, *, keep_delivered: int = 1000) -> FastAPI:
    """Build the FastAPI app serving store."""
    app = FastAPI(title="chatoutbox")
    app.state.store = store
    app.state.keep_delivered = keep_delivered
    app.include_router(router)
    return app


class Server:
    """
    Runs create_app(store) under uvicorn.

    - start() binds and returns once the server is listening.
    - run_forever() waits until the server exits; stop() shuts it down.
    """

    def __init__(
        self,
        store: OutboxStore,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        keep_delivered: int = 1000,
    ) -> None:
        self.host = host
        self.port = port
        self.app = create_app(store, keep_delivered=keep_delivered)
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> "Server":
        """Start serving in the background."""
        config = uvicorn.Config(
            self.app, host=self.host, port=self.port, log_level="warning"
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        while not self._server.started:
            if self._task.done():
                # Surface bind errors instead of waiting forever.
                await self._task
                raise RuntimeError("outbox server exited during startup")
            await asyncio.sleep(0.05)
        # Resolve actual port if port=0
        if self.port == 0 and self._server.servers:
            self.port = self._server.servers[0].sockets[0].getsockname()[1]
        logger.info("outbox server listening on %s:%s", self.host, self.port)
        return self

    async def run_forever(self) -> None:
        """Run the server until it is closed. Call after start()."""
        if self._task is None:
            raise RuntimeError("Server not started; call start() first")
        await self._task

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            await self._task
            self._task = None
        self._server = None
        logger.info("outbox server stopped")
