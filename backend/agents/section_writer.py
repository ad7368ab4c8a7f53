"""
Section Writer — writes one PRD section per plan step.

Every section has its own pydantic schema. When the model fails, a heuristic
builder produces the same shape from the context analysis and the
conversation so the PRD can still be assembled.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import Field

from agents.base import Subagent, SubagentRequest, SubagentResult
from agents.extraction import (
    CONSTRAINT_KEYWORDS,
    FEATURE_KEYWORDS,
    METRIC_KEYWORDS,
    PERSONA_KEYWORDS,
    dedupe,
    extract_by_keyword,
    truncate,
)
from errors import GenerationFailure
from models.artifact import Artifact, SubagentManifest
from models.base import CamelModel


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section schemas
# ---------------------------------------------------------------------------

class TargetUsersSection(CamelModel):
    target_users: List[str] = Field(..., min_length=1, max_length=6)


class SolutionSection(CamelModel):
    solution_overview: str
    approach: str = ""


class KeyFeaturesSection(CamelModel):
    key_features: List[str] = Field(..., min_length=1, max_length=10)


class SuccessMetric(CamelModel):
    metric: str
    target: str = ""
    timeline: str = ""


class SuccessMetricsSection(CamelModel):
    success_metrics: List[SuccessMetric] = Field(..., min_length=1, max_length=8)


class ConstraintsSection(CamelModel):
    constraints: List[str] = Field(default_factory=list)
    assumptions: List[str] = Field(default_factory=list)


SECTION_SCHEMAS: Dict[str, Type[CamelModel]] = {
    "targetUsers": TargetUsersSection,
    "solution": SolutionSection,
    "keyFeatures": KeyFeaturesSection,
    "successMetrics": SuccessMetricsSection,
    "constraints": ConstraintsSection,
}

_SECTION_GUIDANCE = {
    "targetUsers": "List the distinct user groups, each as one sentence describing who they are and what they need.",
    "solution": "Describe the solution in a short overview and the approach taken to build it.",
    "keyFeatures": "List the key features as short, user-facing capability statements.",
    "successMetrics": "List measurable success metrics with a concrete target and timeline.",
    "constraints": "List technical, business or regulatory constraints and the assumptions made.",
}


# ---------------------------------------------------------------------------
# Heuristic builders
# ---------------------------------------------------------------------------

def _source_text(request: SubagentRequest) -> str:
    return "\n".join(
        str(m.get("content", "")) for m in request.run.messages if m.get("role", "user") == "user"
    )


def _analysis(request: SubagentRequest) -> Dict[str, Any]:
    data = request.output_data("analyze-context")
    return data if isinstance(data, dict) else {}


def _heuristic_target_users(request: SubagentRequest) -> CamelModel:
    users = dedupe(extract_by_keyword(_source_text(request), PERSONA_KEYWORDS))[:4]
    return TargetUsersSection(target_users=users or ["Primary users described in the request."])


def _heuristic_solution(request: SubagentRequest) -> CamelModel:
    summary = _analysis(request).get("summary") or request.run.latest_user_message()
    return SolutionSection(
        solution_overview=truncate(summary, 600) or "Solution to be refined with the team.",
        approach="Deliver the smallest useful slice first and iterate with user feedback.",
    )


def _heuristic_key_features(request: SubagentRequest) -> CamelModel:
    features = dedupe(
        extract_by_keyword(_source_text(request), FEATURE_KEYWORDS) + _analysis(request).get("requirements", [])
    )[:6]
    return KeyFeaturesSection(key_features=features or ["Core workflow described in the request."])


def _heuristic_success_metrics(request: SubagentRequest) -> CamelModel:
    sentences = dedupe(extract_by_keyword(_source_text(request), METRIC_KEYWORDS))[:4]
    metrics = [SuccessMetric(metric=s) for s in sentences]
    if not metrics:
        metrics = [SuccessMetric(metric="Weekly active usage by the target users", target="Baseline +20%", timeline="90 days after launch")]
    return SuccessMetricsSection(success_metrics=metrics)


def _heuristic_constraints(request: SubagentRequest) -> CamelModel:
    constraints = dedupe(extract_by_keyword(_source_text(request), CONSTRAINT_KEYWORDS))[:6]
    return ConstraintsSection(
        constraints=constraints,
        assumptions=["Scope and timeline to be confirmed with stakeholders."],
    )


_HEURISTICS: Dict[str, Callable[[SubagentRequest], CamelModel]] = {
    "targetUsers": _heuristic_target_users,
    "solution": _heuristic_solution,
    "keyFeatures": _heuristic_key_features,
    "successMetrics": _heuristic_success_metrics,
    "constraints": _heuristic_constraints,
}


def _build_prompt(request: SubagentRequest, section: str) -> str:
    parts = [
        f"Write the '{section}' section of a product requirements document.",
        _SECTION_GUIDANCE[section],
        f"Context analysis:\n{json.dumps(_analysis(request), indent=2)}",
        f"Conversation:\n{request.run.conversation_text()}",
    ]
    research = request.output_data("research")
    if isinstance(research, dict) and research.get("summary"):
        parts.append(f"Research summary:\n{research['summary']}")
    existing = (request.run.existing_artifact or {}).get("sections", {}).get(section)
    if existing:
        parts.append(f"Current version of this section (update it, keep what still holds):\n{json.dumps(existing)}")
    return "\n\n".join(parts)


class SectionWriter(Subagent):
    manifest = SubagentManifest(
        id="prd.write-section",
        label="PRD Section Writer",
        version="1.0.0",
        creates="prd-section",
        consumes=["context-analysis", "research", "prd"],
        capabilities=["write"],
        description="Writes a single PRD section from the analyzed context.",
        tags=["prd", "section"],
    )

    async def execute(self, request: SubagentRequest) -> SubagentResult:
        section = request.params.get("section")
        if section not in SECTION_SCHEMAS:
            raise ValueError(f"Unknown PRD section '{section}'.")

        self.emit_progress(request, "section.start", f"Writing {section}", {"section": section})

        usage: Optional[Dict[str, Any]] = None
        try:
            result = await self.client.generate_structured(
                SECTION_SCHEMAS[section], _build_prompt(request, section), settings=request.run.settings,
            )
            content = result.value
            usage = result.usage
            strategy = "llm"
        except GenerationFailure as exc:
            logger.info("Run %s: section %s falling back to heuristics (%s)", request.run.run_id, section, exc)
            content = _HEURISTICS[section](request)
            strategy = "heuristic"

        data = content.to_dict()
        self.emit_progress(
            request,
            "section.complete",
            f"Finished {section}",
            {"section": section, "strategy": strategy},
        )
        return SubagentResult(
            artifact=Artifact(
                id=f"section-{section}-{request.run.run_id}",
                kind="prd-section",
                label=section,
                data=data,
                metadata={"section": section, "strategy": strategy},
            ),
            metadata={"section": section, "strategy": strategy},
            usage=usage,
        )
