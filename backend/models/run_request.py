"""
Validated input for starting a run, answering a clarification, and deciding
an approval checkpoint.

Anything that fails validation here is rejected by FastAPI with a 422 and
never reaches the run store.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from models.base import CamelModel


class Message(CamelModel):
    id: str = Field(..., min_length=1)
    role: Literal["user", "assistant", "system"] = "user"
    content: str
    timestamp: Optional[str] = None


class RunSettings(CamelModel):
    model: Optional[str] = Field(default=None, min_length=1)
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    max_tokens: Optional[int] = Field(default=None, ge=1, le=100_000)
    api_key: Optional[str] = None
    streaming: bool = True
    approval_mode: Literal["auto", "plan"] = "auto"
    include_research: bool = False
    sub_agent_settings: Dict[str, Dict[str, Any]] = Field(default_factory=dict)


class StartRunRequest(CamelModel):
    artifact_kind: Literal["prd", "persona", "story-map", "research"] = "prd"
    messages: List[Message] = Field(..., min_length=1)
    settings: RunSettings = Field(default_factory=RunSettings)
    context_payload: Optional[Any] = None
    target_sections: Optional[List[str]] = None


class StartRunResponse(CamelModel):
    run_id: str
    status: str
    artifact_kind: str
    stream_url: str
    summary: Optional[Dict[str, Any]] = None
    message: str


class ApprovalDecision(CamelModel):
    approved: bool
    feedback: Optional[str] = Field(default=None, max_length=10_000)
    resubmit: bool = False


class ApprovalResponse(CamelModel):
    run_id: str
    status: str
    step_id: Optional[str] = None


class ClarificationAnswer(CamelModel):
    answer: str = Field(..., min_length=1, max_length=10_000)
