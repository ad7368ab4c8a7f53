"""
Product Agent — FastAPI application entrypoint.

Start the server:
    uvicorn main:app --reload --port 8000

API Overview:
    GET    /api/health                                    — Health check
    GET    /api/subagents                                 — Registered subagents
    POST   /api/runs                                      — Start a run
    GET    /api/runs/{run_id}                             — Run snapshot
    GET    /api/runs/{run_id}/stream                      — SSE progress stream
    POST   /api/runs/{run_id}/approve                     — Plan checkpoint decision
    POST   /api/runs/{run_id}/subagent/{step_id}/approve  — Sub-step checkpoint decision
    POST   /api/runs/{run_id}/clarification               — Clarification answer
    *      /agent/runs...                                 — Agent backend surface for remote deployments
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config
from agents.registry import SubagentRegistry, build_default_registry
from api.agent_routes import agent_router
from api.routes import router
from api.run_store import RunStore
from api.stream import stream_router
from services.agent_backend import AgentBackend
from services.stream_relay import StreamRelay
from services.upstream import HttpUpstream, LocalUpstream, Upstream


logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=level or config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown logic."""
    logger.info(
        "Product Agent API starting up (upstream: %s)",
        "http" if isinstance(app.state.upstream, HttpUpstream) else "local",
    )
    yield
    await app.state.upstream.aclose()
    logger.info("Product Agent API shutting down...")


def create_app(
    run_store: Optional[RunStore] = None,
    upstream: Optional[Upstream] = None,
    registry: Optional[SubagentRegistry] = None,
    stream_timeout: Optional[float] = None,
) -> FastAPI:
    """
    Build the application with its run store, agent backend and upstream.

    Every argument defaults to the configured production wiring; tests pass
    their own to pin clocks, ids, generation and timeouts.
    """
    registry = registry or build_default_registry()
    backend = AgentBackend(registry, capacity=config.MAX_RUN_RECORDS)
    if upstream is None:
        upstream = HttpUpstream(config.UPSTREAM_AGENT_URL) if config.UPSTREAM_AGENT_URL else LocalUpstream(backend)
    store = run_store or RunStore(capacity=config.MAX_RUN_RECORDS)

    app = FastAPI(
        title="Product Agent API",
        description=(
            "Orchestrates planner-driven subagent runs that produce product "
            "artifacts (PRDs, personas, story maps, research) and streams their "
            "progress over Server-Sent Events."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.agent_backend = backend
    app.state.upstream = upstream
    app.state.run_store = store
    app.state.relay = StreamRelay(
        store,
        idle_timeout=stream_timeout if stream_timeout is not None else config.STREAM_TIMEOUT_SECONDS,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Client-facing routes under /api
    app.include_router(router, prefix="/api")
    app.include_router(stream_router, prefix="/api")

    # Agent backend surface, the counterpart of HttpUpstream
    app.include_router(agent_router, prefix="/agent")

    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
