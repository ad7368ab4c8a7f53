"""
Agent backend routes — the in-process AgentBackend over HTTP.

This is the surface HttpUpstream talks to, so one deployment can run the
agents while another serves clients (UPSTREAM_AGENT_URL=http://host/agent).

Endpoints:
    POST /agent/runs                                      — Plan a run
    GET  /agent/runs/{run_id}                             — Execution snapshot
    GET  /agent/runs/{run_id}/stream                      — SSE stream of the current segment
    POST /agent/runs/{run_id}/approve                     — Plan checkpoint decision
    POST /agent/runs/{run_id}/subagent/{step_id}/approve  — Sub-step checkpoint decision
    POST /agent/runs/{run_id}/clarification               — Clarification answer
"""

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from api.dependencies import get_agent_backend, http_error
from api.stream import SSE_HEADERS
from errors import ProductAgentError
from models.run_request import ApprovalDecision, ClarificationAnswer, StartRunRequest
from services.agent_backend import AgentBackend, LocalEventStream


logger = logging.getLogger(__name__)

agent_router = APIRouter()


class AgentRunRequest(StartRunRequest):
    run_id: str


async def _drain(stream: LocalEventStream) -> AsyncIterator[bytes]:
    try:
        async for chunk in stream:
            yield chunk
    finally:
        await stream.aclose()


@agent_router.post("/runs", status_code=201)
async def plan_run(body: AgentRunRequest, backend: AgentBackend = Depends(get_agent_backend)):
    request = body.to_dict()
    run_id = request.pop("runId")
    try:
        return backend.start_run(run_id, body.artifact_kind, request)
    except ValueError as exc:
        logger.warning("Run %s could not be planned: %s", run_id, exc)
        raise HTTPException(status_code=422, detail=str(exc))


@agent_router.get("/runs/{run_id}")
async def run_snapshot(run_id: str, backend: AgentBackend = Depends(get_agent_backend)):
    try:
        return backend.snapshot(run_id)
    except ProductAgentError as exc:
        raise http_error(exc)


@agent_router.get("/runs/{run_id}/stream")
async def run_stream(run_id: str, backend: AgentBackend = Depends(get_agent_backend)):
    try:
        stream = backend.open_stream(run_id)
    except ProductAgentError as exc:
        raise http_error(exc)
    return StreamingResponse(_drain(stream), media_type="text/event-stream", headers=SSE_HEADERS)


def _apply_decision(backend: AgentBackend, run_id: str, decision: ApprovalDecision, step_id: Optional[str]) -> dict:
    try:
        if decision.approved:
            backend.resume(run_id, step_id=step_id, feedback=decision.feedback)
            return {"runId": run_id, "status": "running"}
        backend.reject(run_id, step_id=step_id, feedback=decision.feedback)
        return {"runId": run_id, "status": "failed"}
    except ProductAgentError as exc:
        raise http_error(exc)


@agent_router.post("/runs/{run_id}/approve")
async def approve_plan(run_id: str, decision: ApprovalDecision, backend: AgentBackend = Depends(get_agent_backend)):
    return _apply_decision(backend, run_id, decision, None)


@agent_router.post("/runs/{run_id}/subagent/{step_id}/approve")
async def approve_step(
    run_id: str,
    step_id: str,
    decision: ApprovalDecision,
    backend: AgentBackend = Depends(get_agent_backend),
):
    return _apply_decision(backend, run_id, decision, step_id)


@agent_router.post("/runs/{run_id}/clarification")
async def clarification(run_id: str, body: ClarificationAnswer, backend: AgentBackend = Depends(get_agent_backend)):
    try:
        return backend.answer_clarification(run_id, body.answer)
    except ProductAgentError as exc:
        raise http_error(exc)
