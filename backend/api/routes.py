"""
REST API routes for the Product Agent.

Endpoints:
    GET  /api/health                                  — Health check, planner and subagent metadata
    GET  /api/subagents                               — Registered subagent manifests
    POST /api/runs                                    — Start a run
    GET  /api/runs/{run_id}                           — Run snapshot
    POST /api/runs/{run_id}/approve                   — Plan checkpoint decision
    POST /api/runs/{run_id}/subagent/{step_id}/approve — Sub-step checkpoint decision
    POST /api/runs/{run_id}/clarification             — Answer a clarification request

The SSE stream lives in api/stream.py.
"""

import copy
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

import config
from agents.registry import SubagentRegistry
from api.dependencies import (
    get_approval_gate,
    get_registry,
    get_relay,
    get_run_store,
    get_upstream,
    http_error,
)
from api.run_store import RunStore
from errors import ProductAgentError, UpstreamUnavailable
from models.artifact import SubagentManifest
from models.plan import PLAN_VERSION
from models.run_request import (
    ApprovalDecision,
    ApprovalResponse,
    ClarificationAnswer,
    StartRunRequest,
    StartRunResponse,
)
from services.approval_gate import ApprovalGate
from services.stream_relay import StreamRelay
from services.upstream import HttpUpstream, Upstream
from state import (
    ARTIFACT_KINDS,
    STATUS_AWAITING_INPUT,
    STATUS_FAILED,
    STATUS_RUNNING,
    TERMINAL_STATUSES,
)


logger = logging.getLogger(__name__)

router = APIRouter()


def stream_url_for(run_id: str) -> str:
    return f"/api/runs/{run_id}/stream"


def _redacted(request: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a run request that is safe to hand back in snapshots."""
    redacted = copy.deepcopy(request)
    settings = redacted.get("settings") or {}
    if settings.get("apiKey"):
        settings["apiKey"] = "***"
    return redacted


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

@router.get("/health")
async def health_check(
    registry: SubagentRegistry = Depends(get_registry),
    upstream: Upstream = Depends(get_upstream),
):
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "Product Agent API",
        "upstream": "http" if isinstance(upstream, HttpUpstream) else "local",
        "planner": {"version": PLAN_VERSION, "artifactKinds": list(ARTIFACT_KINDS)},
        "subagents": [m.id for m in registry.list()],
        "defaults": {
            "model": config.DEFAULT_MODEL,
            "temperature": config.DEFAULT_TEMPERATURE,
            "maxTokens": config.DEFAULT_MAX_TOKENS,
        },
    }


@router.get("/subagents", response_model=List[SubagentManifest])
async def list_subagents(
    artifact_kind: Optional[str] = Query(default=None),
    registry: SubagentRegistry = Depends(get_registry),
):
    """List registered subagents, optionally only those that create or consume artifact_kind."""
    if artifact_kind:
        return registry.filter_by_artifact(artifact_kind)
    return registry.list()


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------

@router.post("/runs", response_model=StartRunResponse, status_code=202)
async def start_run(
    body: StartRunRequest,
    store: RunStore = Depends(get_run_store),
    upstream: Upstream = Depends(get_upstream),
):
    """
    Register a run and hand it to the agent backend.

    Execution begins once a client subscribes to the returned streamUrl.
    """
    if not body.settings.streaming:
        raise HTTPException(status_code=400, detail="Batch mode is not supported; set settings.streaming to true.")

    request = body.to_dict()
    record = store.create(body.artifact_kind, _redacted(request))
    try:
        summary = await upstream.start_run(record.id, body.artifact_kind, request)
    except UpstreamUnavailable as exc:
        logger.warning("Run %s: upstream refused the run: %s", record.id, exc)
        store.update(record.id, {"status": STATUS_FAILED, "error": str(exc)})
        raise http_error(exc)

    return StartRunResponse(
        run_id=record.id,
        status=record.status,
        artifact_kind=body.artifact_kind,
        stream_url=stream_url_for(record.id),
        summary=summary,
        message=f"Run started. Subscribe to {stream_url_for(record.id)} for live progress.",
    )


@router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    store: RunStore = Depends(get_run_store),
    upstream: Upstream = Depends(get_upstream),
    relay: StreamRelay = Depends(get_relay),
):
    """
    Snapshot of a run.

    While nobody is streaming a live run, the upstream execution summary is
    attached as "summary".
    """
    record = store.get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found.")

    snapshot = record.to_dict()
    snapshot["summary"] = None
    if record.status not in TERMINAL_STATUSES and not relay.has_live_subscription(run_id):
        try:
            snapshot["summary"] = await upstream.fetch_snapshot(run_id)
        except ProductAgentError as exc:
            logger.warning("Run %s: could not fetch upstream summary: %s", run_id, exc)
    return snapshot


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------

async def _decide(gate: ApprovalGate, run_id: str, decision: ApprovalDecision, step_id: Optional[str]) -> ApprovalResponse:
    try:
        status = await gate.decide(run_id, decision, step_id=step_id)
    except ProductAgentError as exc:
        raise http_error(exc)
    return ApprovalResponse(run_id=run_id, status=status, step_id=step_id)


@router.post("/runs/{run_id}/approve", response_model=ApprovalResponse)
async def approve_plan(
    run_id: str,
    decision: ApprovalDecision,
    gate: ApprovalGate = Depends(get_approval_gate),
):
    """Approve or reject a run paused at the plan checkpoint."""
    return await _decide(gate, run_id, decision, None)


@router.post("/runs/{run_id}/subagent/{step_id}/approve", response_model=ApprovalResponse)
async def approve_step(
    run_id: str,
    step_id: str,
    decision: ApprovalDecision,
    gate: ApprovalGate = Depends(get_approval_gate),
):
    """Approve or reject a run paused before a sub-step."""
    return await _decide(gate, run_id, decision, step_id)


@router.post("/runs/{run_id}/clarification")
async def answer_clarification(
    run_id: str,
    body: ClarificationAnswer,
    store: RunStore = Depends(get_run_store),
    upstream: Upstream = Depends(get_upstream),
):
    """Answer the analyzer's questions; the run restarts on the next subscribe."""
    record = store.get(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found.")
    if record.status != STATUS_AWAITING_INPUT:
        raise HTTPException(status_code=409, detail=f"Run '{run_id}' is not awaiting input (status: {record.status}).")

    try:
        await upstream.answer_clarification(run_id, body.answer)
    except ProductAgentError as exc:
        raise http_error(exc)

    store.update(run_id, {"status": STATUS_RUNNING})
    return {"runId": run_id, "status": STATUS_RUNNING, "streamUrl": stream_url_for(run_id)}
