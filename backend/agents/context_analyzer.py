"""
Context Analyzer — the entry step of every plan.

Condenses the conversation (and any context payload or existing PRD) into a
short analysis the downstream writers share. When the request is too thin to
plan against it asks the user for clarification instead, which ends the
current execution segment.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import Field

from agents.base import Subagent, SubagentRequest, SubagentResult
from agents.extraction import (
    CONSTRAINT_KEYWORDS,
    FEATURE_KEYWORDS,
    PERSONA_KEYWORDS,
    dedupe,
    extract_by_keyword,
    truncate,
)
from errors import GenerationFailure
from models.artifact import Artifact, SubagentManifest
from models.base import CamelModel


logger = logging.getLogger(__name__)

# Fewer words than this, with nothing else to go on, triggers a clarification
MIN_PROMPT_WORDS = 4


class ContextAnalysis(CamelModel):
    product_name: Optional[str] = None
    summary: str
    themes: List[str] = Field(default_factory=list)
    requirements: List[str] = Field(default_factory=list)
    needs_clarification: bool = False
    questions: List[str] = Field(default_factory=list)


_SYSTEM_PROMPT = """You are a senior product manager preparing to write product documents.
Read the conversation and summarize what the user wants to build.
Only ask clarification questions when the request is too vague to write
anything useful; otherwise make reasonable assumptions."""


def _build_prompt(request: SubagentRequest) -> str:
    run = request.run
    parts = [f"Conversation:\n{run.conversation_text()}"]
    if run.context_payload:
        parts.append(f"Context payload (JSON):\n{truncate(json.dumps(run.context_payload, default=str), 2000)}")
    if run.existing_artifact:
        parts.append(f"Existing document (JSON):\n{truncate(json.dumps(run.existing_artifact, default=str), 2000)}")
    feedback = request.params.get("approvalFeedback")
    if feedback:
        parts.append(f"Reviewer feedback on the plan:\n{feedback}")
    parts.append(f"Target artifact: {run.artifact_kind}")
    return "\n\n".join(parts)


def heuristic_analysis(request: SubagentRequest) -> ContextAnalysis:
    """Keyword-based analysis used when the model is unavailable."""
    run = request.run
    prompt = run.latest_user_message()
    user_text = "\n".join(
        str(m.get("content", "")) for m in run.messages if m.get("role", "user") == "user"
    )
    themes = dedupe(extract_by_keyword(user_text, PERSONA_KEYWORDS))[:3]
    requirements = dedupe(
        extract_by_keyword(user_text, FEATURE_KEYWORDS) + extract_by_keyword(user_text, CONSTRAINT_KEYWORDS)
    )[:6]

    thin = (
        len(user_text.split()) < MIN_PROMPT_WORDS
        and not run.context_payload
        and run.existing_artifact is None
    )
    questions = []
    if thin:
        questions = [
            "What product or feature should this document describe?",
            "Who are the primary users and what problem do they have today?",
        ]
    return ContextAnalysis(
        summary=truncate(prompt, 400),
        themes=themes,
        requirements=requirements,
        needs_clarification=thin,
        questions=questions,
    )


class ContextAnalyzer(Subagent):
    manifest = SubagentManifest(
        id="prd.analyze-context",
        label="Context Analyzer",
        version="1.0.0",
        creates="context-analysis",
        consumes=["prompt", "prd"],
        capabilities=["analyze"],
        description="Summarizes the conversation and decides whether clarification is needed.",
        tags=["analysis", "entry"],
    )

    async def execute(self, request: SubagentRequest) -> SubagentResult:
        self.emit_progress(request, "analyzer.context.start", "Analyzing conversation context")

        usage: Optional[Dict[str, Any]] = None
        try:
            result = await self.client.generate_structured(
                ContextAnalysis, _build_prompt(request), settings=request.run.settings, system=_SYSTEM_PROMPT,
            )
            analysis: ContextAnalysis = result.value
            usage = result.usage
            strategy = "llm"
        except GenerationFailure as exc:
            logger.info("Run %s: context analysis falling back to heuristics (%s)", request.run.run_id, exc)
            analysis = heuristic_analysis(request)
            strategy = "heuristic"

        clarification = None
        if analysis.needs_clarification and analysis.questions:
            clarification = {
                "stepId": request.step_id,
                "reason": "The request needs more detail before a plan can run.",
                "questions": analysis.questions,
            }

        self.emit_progress(
            request,
            "analyzer.context.complete",
            "Context analysis complete",
            {
                "strategy": strategy,
                "themeCount": len(analysis.themes),
                "requirementCount": len(analysis.requirements),
                "needsClarification": clarification is not None,
            },
        )

        artifact = Artifact(
            id=f"analysis-{request.run.run_id}",
            kind="context-analysis",
            label="Context Analysis",
            data=analysis.to_dict(),
            metadata={"strategy": strategy},
        )
        return SubagentResult(
            artifact=artifact,
            metadata={"strategy": strategy},
            usage=usage,
            clarification=clarification,
        )
