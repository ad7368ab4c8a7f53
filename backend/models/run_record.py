"""RunRecord — the execution record of one run, held by the RunStore."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class RunRecord(BaseModel):
    id: str
    artifact_kind: str
    status: str = "pending"
    request: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    progress: List[Any] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
    usage: Optional[Dict[str, Any]] = None
    result: Optional[Any] = None
    error: Optional[str] = None
    clarification: Optional[Any] = None
    plan: Optional[Dict[str, Any]] = None
    approval_url: Optional[str] = None
    approval_mode: Optional[Literal["plan", "subagent"]] = None
    approval_step_id: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialize to the camelCase snapshot returned by the API."""
        return {
            "id": self.id,
            "artifactKind": self.artifact_kind,
            "status": self.status,
            "request": self.request,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "progress": list(self.progress),
            "metadata": self.metadata,
            "usage": self.usage,
            "result": self.result,
            "error": self.error,
            "clarification": self.clarification,
            "plan": self.plan,
            "approvalUrl": self.approval_url,
            "approvalMode": self.approval_mode,
            "approvalStepId": self.approval_step_id,
        }
