"""
FastAPI server for the Job Execution Engine.

Thin HTTP/WebSocket boundary over :class:`core.engine.ExecutionEngine`. Job
CRUD, users and authentication live in the external API layer; this server
only exposes the engine's command surface and the live event stream.

Endpoints:
    POST   /jobs/{job_id}/run        queue a one-off run
    POST   /jobs/{job_id}/schedule   register a cron trigger
    DELETE /jobs/{job_id}/schedule   remove a cron trigger
    POST   /jobs/{job_id}/cancel     cancel a queued or running job
    GET    /queue/status             queue / worker snapshot
    GET    /queue/jobs               queued entries in dispatch order
    GET    /proxies                  proxy pool statistics
    GET    /health                   liveness + gateway connectivity
    WS     /ws/{user_id}             job events for one user
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from api.websocket_hub import WebSocketHub
from config.settings import server_config
from core import __version__
from core.engine import ExecutionEngine
from core.errors import DuplicateJobError, EngineError, InvalidScheduleError, NotFoundError
from core.gateway import InMemoryGateway, PersistenceGateway
from core.models import QueueEntry, utcnow

logger = logging.getLogger(__name__)

__all__ = ["app", "create_app", "main"]


# ---------------------------------------------------------------------------
# Pydantic Models
# ---------------------------------------------------------------------------


class RunRequest(BaseModel):
    """Request payload for queuing a one-off run.

    Attributes:
        priority: Higher runs first; equal priorities run in submission order.
    """

    priority: int = Field(default=0, description="Dispatch priority (higher first)")


class ScheduleRequest(BaseModel):
    """Request payload for registering a recurring run.

    Attributes:
        cron: Standard 5-field crontab expression, evaluated in UTC.
    """

    cron: str = Field(..., description="5-field crontab expression (UTC)")

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("cron must not be empty")
        return v


class QueueEntryResponse(BaseModel):
    id: str
    job_id: str
    user_id: str
    priority: int
    not_before: datetime
    retries: int
    max_retries: int
    enqueued_at: datetime

    @classmethod
    def from_entry(cls, entry: QueueEntry) -> "QueueEntryResponse":
        return cls(
            id=entry.id,
            job_id=entry.job_id,
            user_id=entry.user_id,
            priority=entry.priority,
            not_before=entry.not_before,
            retries=entry.retries,
            max_retries=entry.max_retries,
            enqueued_at=entry.enqueued_at,
        )


class ScheduleResponse(BaseModel):
    job_id: str
    cron: str
    next_run_at: datetime


class QueueStatusResponse(BaseModel):
    queue_length: int
    active_count: int
    max_concurrency: int
    dispatching: bool
    active_jobs: List[str] = Field(default_factory=list)
    recurring_jobs: int = 0


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    engine_running: bool
    db_connected: bool
    connected_users: int


# ---------------------------------------------------------------------------
# App Factory
# ---------------------------------------------------------------------------


def _default_gateway() -> PersistenceGateway:
    if server_config.database_url:
        from tools.postgres_tools import PostgresGateway

        return PostgresGateway(server_config.database_url)
    logger.warning("DATABASE_URL not set, using in-memory gateway")
    return InMemoryGateway()


def create_app(
    engine: Optional[ExecutionEngine] = None,
    hub: Optional[WebSocketHub] = None,
    gateway: Optional[PersistenceGateway] = None,
    bootstrap: Optional[Callable[[ExecutionEngine], Awaitable[None]]] = None,
) -> FastAPI:
    """Build the FastAPI application around an engine and a socket hub.

    Args:
        engine: Pre-built engine. When omitted one is created with ``hub`` as
            its notification channel.
        hub: WebSocket hub; created when omitted.
        gateway: Persistence gateway for a newly created engine; defaults to
            Postgres when ``DATABASE_URL`` is set, in-memory otherwise.
        bootstrap: Coroutine run once the engine has started, e.g. to
            register recurring jobs loaded from a file.
    """
    hub = hub or WebSocketHub()
    if engine is None:
        engine = ExecutionEngine(gateway or _default_gateway(), notifier=hub)

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # type: ignore[type-arg]
        logger.info("Engine API starting | port=%s", server_config.port)
        await engine.start()
        if bootstrap is not None:
            await bootstrap(engine)
        yield
        await engine.shutdown()
        logger.info("Engine API shutting down")

    app = FastAPI(
        title="Job Execution Engine API",
        description="Command surface and live event stream of the extraction engine",
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Error mapping
    # -----------------------------------------------------------------------

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(DuplicateJobError)
    async def duplicate_handler(request: Request, exc: DuplicateJobError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"error": str(exc)})

    @app.exception_handler(InvalidScheduleError)
    async def schedule_handler(request: Request, exc: InvalidScheduleError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
        logger.error("Engine error: %s | path=%s", exc, request.url.path)
        return JSONResponse(status_code=500, content={"error": str(exc), "path": str(request.url.path)})

    # -----------------------------------------------------------------------
    # Commands
    # -----------------------------------------------------------------------

    @app.post("/jobs/{job_id}/run", response_model=QueueEntryResponse, status_code=202, tags=["jobs"])
    async def run_job(job_id: str, body: Optional[RunRequest] = None) -> QueueEntryResponse:
        job = await engine.gateway.get_job(job_id)
        entry = await engine.submit(job, priority=(body or RunRequest()).priority)
        return QueueEntryResponse.from_entry(entry)

    @app.post("/jobs/{job_id}/schedule", response_model=ScheduleResponse, tags=["jobs"])
    async def schedule_job(job_id: str, body: ScheduleRequest) -> ScheduleResponse:
        job = await engine.gateway.get_job(job_id)
        next_run = await engine.submit_recurring(job, body.cron)
        return ScheduleResponse(job_id=job_id, cron=body.cron, next_run_at=next_run)

    @app.delete("/jobs/{job_id}/schedule", tags=["jobs"])
    async def unschedule_job(job_id: str) -> Dict[str, Any]:
        return {"job_id": job_id, "unscheduled": await engine.unschedule(job_id)}

    @app.post("/jobs/{job_id}/cancel", tags=["jobs"])
    async def cancel_job(job_id: str) -> Dict[str, Any]:
        return {"job_id": job_id, "cancelled": await engine.cancel(job_id)}

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    @app.get("/queue/status", response_model=QueueStatusResponse, tags=["queue"])
    async def queue_status() -> QueueStatusResponse:
        return QueueStatusResponse(**engine.queue_status())

    @app.get("/queue/jobs", response_model=List[QueueEntryResponse], tags=["queue"])
    async def queued_jobs() -> List[QueueEntryResponse]:
        return [QueueEntryResponse.from_entry(e) for e in engine.list_queued()]

    @app.get("/proxies", tags=["proxies"])
    async def proxies() -> List[Dict[str, Any]]:
        return engine.proxy_manager.all_pools()

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health() -> HealthResponse:
        ping = getattr(engine.gateway, "ping", None)
        db_connected = bool(await ping()) if ping is not None else True
        return HealthResponse(
            status="healthy" if db_connected and engine.running else "degraded",
            timestamp=utcnow().isoformat(),
            version=__version__,
            engine_running=engine.running,
            db_connected=db_connected,
            connected_users=hub.connected_users,
        )

    # -----------------------------------------------------------------------
    # Events
    # -----------------------------------------------------------------------

    @app.websocket("/ws/{user_id}")
    async def events(websocket: WebSocket, user_id: str) -> None:
        await hub.connect(user_id, websocket)
        try:
            while True:
                message = await websocket.receive_text()
                if message.strip().lower() == "ping":
                    await websocket.send_text('{"type": "pong"}')
        except WebSocketDisconnect:
            logger.debug("Client for user %s went away", user_id)
        finally:
            await hub.disconnect(user_id, websocket)

    return app


app = create_app()


# ---------------------------------------------------------------------------
# Main Runner
# ---------------------------------------------------------------------------


def main() -> None:
    """Start uvicorn on ``ENGINE_HOST``/``ENGINE_PORT``. Single worker: the queue is in-process."""
    uvicorn.run(
        "api.api_server:app",
        host=server_config.host,
        port=server_config.port,
        log_level=server_config.log_level.lower(),
        reload=False,
        workers=1,
    )


if __name__ == "__main__":
    main()
