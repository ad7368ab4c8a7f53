"""
Subagent contract.

A subagent is one pluggable plan step: it receives the run context, the
outputs of the steps it depends on and an emit callback, and returns an
artifact plus metadata. Subagents never touch the run store; everything they
report goes out through emit() and ends up in the stream.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from models.artifact import Artifact, SubagentManifest
from services.generation_client import GenerationClient


logger = logging.getLogger(__name__)

Emit = Callable[[Dict[str, Any]], None]


class RunContext(BaseModel):
    """Everything a step may know about the run it belongs to."""

    run_id: str
    artifact_kind: str
    messages: List[Dict[str, Any]] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)
    context_payload: Any = None
    target_sections: Optional[List[str]] = None
    existing_artifact: Optional[Dict[str, Any]] = None

    def latest_user_message(self) -> str:
        for message in reversed(self.messages):
            if message.get("role", "user") == "user" and str(message.get("content", "")).strip():
                return str(message["content"]).strip()
        return ""

    def conversation_text(self, limit: int = 6000) -> str:
        lines = [f"{m.get('role', 'user')}: {m.get('content', '')}" for m in self.messages]
        text = "\n".join(lines)
        return text[-limit:]


class SubagentRequest(BaseModel):
    params: Dict[str, Any] = Field(default_factory=dict)
    run: RunContext
    step_id: str
    source_artifact: Optional[Artifact] = None
    step_outputs: Dict[str, Any] = Field(default_factory=dict)
    emit: Emit

    def output_data(self, step_id: str) -> Any:
        """The artifact data produced by an upstream step, or None."""
        output = self.step_outputs.get(step_id) or {}
        artifact = output.get("artifact") or {}
        return artifact.get("data")


class SubagentResult(BaseModel):
    artifact: Optional[Artifact] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    usage: Optional[Dict[str, Any]] = None
    clarification: Optional[Dict[str, Any]] = None


class Subagent(ABC):
    """Base class for every plan step implementation."""

    manifest: SubagentManifest

    def __init__(self, client: GenerationClient) -> None:
        self.client = client

    @abstractmethod
    async def execute(self, request: SubagentRequest) -> SubagentResult:
        """Run the step and return its artifact."""

    def emit_progress(
        self,
        request: SubagentRequest,
        event_type: str,
        message: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        request.emit({
            "type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "runId": request.run.run_id,
            "stepId": request.step_id,
            "subagentId": self.manifest.id,
            "message": message,
            "payload": payload or {},
        })
