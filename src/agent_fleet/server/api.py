"""FastAPI status surface for a running agent fleet."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..runtime.orchestrator import AgentOrchestrator, create_orchestrator
from .schemas import (
    AgentsResponse,
    ControlRequest,
    OrchestratorStatusResponse,
    RunningAgentModel,
    SessionModel,
    SessionsResponse,
)

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[Path], AgentOrchestrator]


def create_app(
    project_dir: Optional[Path] = None,
    *,
    orchestrator_factory: Optional[OrchestratorFactory] = None,
    autostart: bool = True,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        project_dir (Optional[Path]): Project whose tasks are reconciled;
            defaults to the current working directory.
        orchestrator_factory (Optional[OrchestratorFactory]): Builds the
            orchestrator for the project; ``create_orchestrator`` by default.
        autostart (bool): Whether the lifespan starts the reconciliation loop.
        enable_cors (bool): Whether to install permissive CORS middleware for browser
            clients.

    Returns:
        FastAPI: Application whose lifespan owns the orchestrator. The
        orchestrator is stopped and its session backend closed on shutdown.
    """
    resolved_dir = Path(project_dir or Path.cwd()).resolve()
    factory = orchestrator_factory or create_orchestrator

    @asynccontextmanager
    async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
        orchestrator = factory(resolved_dir)
        app.state.orchestrator = orchestrator
        if autostart:
            await orchestrator.start()
        try:
            yield
        finally:
            try:
                await orchestrator.stop()
            except Exception:
                logger.exception("Failed to stop orchestrator for %s", resolved_dir)
            try:
                await orchestrator.session_provider.aclose()
            except Exception:
                logger.exception("Failed to close session backend for %s", resolved_dir)
            app.state.orchestrator = None

    app = FastAPI(
        title="Agent Fleet",
        description="One coding agent per open task",
        version=__version__,
        lifespan=_lifespan,
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.project_dir = resolved_dir
    app.state.orchestrator = None

    def _orchestrator(request: Request) -> AgentOrchestrator:
        orchestrator = request.app.state.orchestrator
        if orchestrator is None:
            raise HTTPException(status_code=503, detail="Orchestrator not initialized")
        return orchestrator

    def _status(orchestrator: AgentOrchestrator) -> OrchestratorStatusResponse:
        return OrchestratorStatusResponse(project=str(resolved_dir), **orchestrator.status())

    @app.get("/healthz")
    async def healthz() -> dict[str, object]:
        """Expose liveness status for process-level health checks."""
        return {"status": "ok", "version": __version__}

    @app.get("/api/orchestrator/status", response_model=OrchestratorStatusResponse)
    async def orchestrator_status(request: Request) -> OrchestratorStatusResponse:
        return _status(_orchestrator(request))

    @app.post("/api/orchestrator/control", response_model=OrchestratorStatusResponse)
    async def orchestrator_control(body: ControlRequest, request: Request) -> OrchestratorStatusResponse:
        """Start or stop the reconciliation loop.

        Stopping tears down every running agent before responding.
        """
        orchestrator = _orchestrator(request)
        if body.action == "start":
            await orchestrator.start()
        else:
            await orchestrator.stop()
        return _status(orchestrator)

    @app.get("/api/agents", response_model=AgentsResponse)
    async def list_agents(request: Request) -> AgentsResponse:
        agents = _orchestrator(request).get_running_agents()
        return AgentsResponse(agents=[RunningAgentModel(**agent.to_dict()) for agent in agents])

    @app.get("/api/sessions", response_model=SessionsResponse)
    async def list_sessions(request: Request) -> SessionsResponse:
        sessions = await _orchestrator(request).session_provider.get_all_sessions()
        return SessionsResponse(sessions=[SessionModel(**session.to_dict()) for session in sessions])

    return app
