"""
PRD Assembler — the terminal step of a PRD plan.

assemble mode: merges the freshly written sections over the existing PRD (if
any) without a model call.
edit mode:     asks the model for targeted changes to an existing PRD and
               keeps the document unchanged when generation fails.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import Field

from agents.base import Subagent, SubagentRequest, SubagentResult
from agents.section_writer import (
    ConstraintsSection,
    KeyFeaturesSection,
    SolutionSection,
    SuccessMetricsSection,
    TargetUsersSection,
)
from errors import GenerationFailure
from models.artifact import Artifact, SubagentManifest
from models.base import CamelModel
from services.plan_builder import PRD_SECTIONS


logger = logging.getLogger(__name__)


class PrdEdit(CamelModel):
    """Only the sections the model decided to change are set."""

    problem_statement: Optional[str] = None
    target_users: Optional[TargetUsersSection] = None
    solution: Optional[SolutionSection] = None
    key_features: Optional[KeyFeaturesSection] = None
    success_metrics: Optional[SuccessMetricsSection] = None
    constraints: Optional[ConstraintsSection] = None
    change_summary: List[str] = Field(default_factory=list)


def _existing(request: SubagentRequest) -> Dict[str, Any]:
    existing = request.run.existing_artifact or {}
    return {
        "problemStatement": existing.get("problemStatement"),
        "sections": dict(existing.get("sections") or {}),
    }


def _research_summary(request: SubagentRequest) -> Optional[Dict[str, Any]]:
    research = request.output_data("research")
    if not isinstance(research, dict):
        return None
    return {"summary": research.get("summary"), "sources": research.get("sources", [])}


class PrdAssembler(Subagent):
    manifest = SubagentManifest(
        id="prd.assemble",
        label="PRD Assembler",
        version="1.0.0",
        creates="prd",
        consumes=["prd-section", "context-analysis", "research", "prd"],
        capabilities=["assemble", "edit"],
        description="Assembles written sections into a PRD or applies edits to an existing one.",
        tags=["prd", "assembly"],
    )

    async def execute(self, request: SubagentRequest) -> SubagentResult:
        mode = request.params.get("mode", "assemble")
        self.emit_progress(request, "assembly.start", f"Assembling PRD ({mode})", {"mode": mode})

        if mode == "edit":
            data, metadata, usage = await self._edit(request)
        else:
            data, metadata, usage = self._assemble(request)

        missing = [s for s in PRD_SECTIONS if s not in data["sections"]]
        metadata["validation"] = {"missingSections": missing, "complete": not missing}

        self.emit_progress(
            request,
            "assembly.complete",
            "PRD ready",
            {"sectionCount": len(data["sections"]), "strategy": metadata["strategy"]},
        )
        artifact = Artifact(
            id=f"prd-{request.run.run_id}",
            kind="prd",
            label="Product Requirements Document",
            data=data,
            metadata=metadata,
        )
        return SubagentResult(artifact=artifact, metadata=metadata, usage=usage)

    def _assemble(self, request: SubagentRequest):
        document = _existing(request)
        written: List[str] = []
        for section in request.params.get("sections", PRD_SECTIONS):
            content = request.output_data(f"write-{section}")
            if content is not None:
                document["sections"][section] = content
                written.append(section)

        if not document["problemStatement"]:
            analysis = request.output_data("analyze-context") or {}
            document["problemStatement"] = analysis.get("summary") or request.run.latest_user_message()

        research = _research_summary(request)
        if research:
            document["research"] = research

        metadata = {"strategy": "deterministic", "sectionsWritten": written, "mode": "assemble"}
        return document, metadata, None

    async def _edit(self, request: SubagentRequest):
        document = _existing(request)
        prompt = (
            "Update the product requirements document below according to the latest request. "
            "Only return the sections that need to change, and summarize each change.\n\n"
            f"Latest request:\n{request.run.latest_user_message()}\n\n"
            f"Current document:\n{json.dumps(document, indent=2, default=str)}"
        )
        feedback = request.params.get("approvalFeedback")
        if feedback:
            prompt += f"\n\nReviewer feedback:\n{feedback}"

        try:
            result = await self.client.generate_structured(PrdEdit, prompt, settings=request.run.settings)
        except GenerationFailure as exc:
            logger.info("Run %s: PRD edit failed, keeping the document unchanged (%s)", request.run.run_id, exc)
            metadata = {
                "strategy": "heuristic",
                "sectionsWritten": [],
                "mode": "edit",
                "notes": ["Edit could not be generated; the existing PRD was kept unchanged."],
            }
            return document, metadata, None

        edit: PrdEdit = result.value
        changed: List[str] = []
        edits = edit.to_dict()
        for section in PRD_SECTIONS:
            if edits.get(section) is not None:
                document["sections"][section] = edits[section]
                changed.append(section)
        if edit.problem_statement:
            document["problemStatement"] = edit.problem_statement

        metadata = {
            "strategy": "llm",
            "sectionsWritten": changed,
            "mode": "edit",
            "changeSummary": edit.change_summary,
        }
        return document, metadata, result.usage
