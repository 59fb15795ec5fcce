"""FastAPI application exposing the scheduler over HTTP and websockets."""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from ..engine.executor import Executor
from ..engine.hooks import HookBackend
from ..engine.scheduler import Scheduler, create_scheduler
from ..events.ws import hub
from ..storage.bootstrap import seed_default_columns
from .router import create_router


def create_app(
    project_dir: Optional[Path] = None,
    *,
    enable_cors: bool = True,
    executor: Optional[Executor] = None,
    backend: Optional[HookBackend] = None,
    scheduler: Optional[Scheduler] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        project_dir: Project whose `.kanban/` state is served (default: cwd).
        enable_cors: Whether to enable CORS.
        executor: Executor collaborator (default: a request-queueing executor).
        backend: Hook backend (default: subprocess scripts).
        scheduler: Pre-built scheduler; overrides the three arguments above.

    Returns:
        Configured FastAPI app.
    """
    if scheduler is None:
        scheduler = create_scheduler(project_dir or Path.cwd(), executor=executor, backend=backend, ws_hub=hub)
    seed_default_columns(scheduler.container.columns)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        summary = scheduler.recover()
        logger.info("Serving board for {} ({})", scheduler.container.project_dir, summary)
        yield
        scheduler.shutdown()

    app = FastAPI(
        title="Kanban Orchestrator",
        description="Task orchestration and column hook scheduling",
        version="0.1.0",
        lifespan=lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.scheduler = scheduler
    app.include_router(create_router(scheduler))

    @app.get("/")
    async def root() -> dict[str, str]:
        return {"name": "Kanban Orchestrator", "status": "running", "project_id": scheduler.container.project_id}

    @app.websocket("/ws")
    async def events_socket(websocket: WebSocket) -> None:
        await hub.handle_connection(websocket)

    return app
