"""
Normalized stream events.

Upstream payloads come in a handful of shapes. normalize_event() maps them
once, at the stream boundary, onto the fixed variants below; the run store
mutation logic only ever sees these.

SSE frame format:
    event: progress
    data: {"type": "step.started", "stepId": "write-solution", ...}
"""

import json
from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel


class ProgressEvent(BaseModel):
    kind: Literal["progress"] = "progress"
    payload: Any
    usage: Optional[Dict[str, Any]] = None


class ClarificationEvent(BaseModel):
    kind: Literal["clarification"] = "clarification"
    payload: Any


class CompleteEvent(BaseModel):
    kind: Literal["complete"] = "complete"
    result: Any = None
    metadata: Optional[Dict[str, Any]] = None
    usage: Optional[Dict[str, Any]] = None


class PendingApprovalEvent(BaseModel):
    kind: Literal["pending-approval"] = "pending-approval"
    plan: Optional[Dict[str, Any]] = None
    checkpoint: Literal["plan", "subagent"] = "plan"
    step_id: Optional[str] = None


class ErrorEvent(BaseModel):
    kind: Literal["error"] = "error"
    message: str


RunEvent = Union[ProgressEvent, ClarificationEvent, CompleteEvent, PendingApprovalEvent, ErrorEvent]

EVENT_TYPES = ("progress", "clarification", "complete", "pending-approval", "error")


def _as_dict(value: Any) -> Optional[Dict[str, Any]]:
    return value if isinstance(value, dict) else None


def normalize_event(event_type: str, data: Any) -> Optional[RunEvent]:
    """
    Map a decoded upstream payload onto a RunEvent.

    Returns None for event names without a store effect; those frames are
    still forwarded to the client.
    """
    payload = _as_dict(data) or {}

    if event_type == "progress":
        metadata = _as_dict(payload.get("metadata")) or {}
        return ProgressEvent(payload=data, usage=_as_dict(metadata.get("usage")))

    if event_type == "clarification":
        return ClarificationEvent(payload=data)

    if event_type == "complete":
        artifact = payload.get("artifact")
        artifact_metadata = _as_dict(artifact.get("metadata")) if isinstance(artifact, dict) else None
        metadata = _as_dict(payload.get("metadata")) or artifact_metadata
        usage = (
            _as_dict((metadata or {}).get("usage"))
            or _as_dict((_as_dict(payload.get("metadata")) or {}).get("usage"))
            or _as_dict(payload.get("usage"))
        )
        result = artifact if "artifact" in payload else data
        return CompleteEvent(result=result, metadata=metadata, usage=usage)

    if event_type == "pending-approval":
        step_id = payload.get("stepId")
        checkpoint = payload.get("checkpoint")
        if checkpoint not in ("plan", "subagent"):
            checkpoint = "subagent" if step_id else "plan"
        return PendingApprovalEvent(
            plan=_as_dict(payload.get("plan")),
            checkpoint=checkpoint,
            step_id=step_id if checkpoint == "subagent" and isinstance(step_id, str) else None,
        )

    if event_type == "error":
        message = payload.get("error")
        return ErrorEvent(message=message if isinstance(message, str) and message else "Unknown error")

    return None


def encode_sse(event_type: str, data: Any) -> bytes:
    """Encode one SSE frame. Multi-line JSON never occurs since dumps is compact."""
    body = json.dumps(data, default=str)
    return f"event: {event_type}\ndata: {body}\n\n".encode("utf-8")
