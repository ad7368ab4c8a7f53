"""
FastAPI dependencies and error mapping shared by the routers.

Everything a route needs lives on app.state, wired up by main.create_app().
"""

from fastapi import HTTPException, Request

from agents.registry import SubagentRegistry
from api.run_store import RunStore
from errors import ApprovalConflict, ProductAgentError, RunNotFound, UpstreamUnavailable
from services.agent_backend import AgentBackend
from services.approval_gate import ApprovalGate
from services.stream_relay import StreamRelay
from services.upstream import Upstream


def get_run_store(request: Request) -> RunStore:
    return request.app.state.run_store


def get_upstream(request: Request) -> Upstream:
    return request.app.state.upstream


def get_relay(request: Request) -> StreamRelay:
    return request.app.state.relay


def get_registry(request: Request) -> SubagentRegistry:
    return request.app.state.registry


def get_agent_backend(request: Request) -> AgentBackend:
    return request.app.state.agent_backend


def get_approval_gate(request: Request) -> ApprovalGate:
    return ApprovalGate(request.app.state.run_store, request.app.state.upstream)


def http_error(exc: ProductAgentError) -> HTTPException:
    """Translate a core error into the HTTP response the client sees."""
    if isinstance(exc, RunNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ApprovalConflict):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, UpstreamUnavailable):
        return HTTPException(status_code=exc.status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))
