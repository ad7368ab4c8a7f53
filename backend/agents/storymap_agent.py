"""
Story Map Builder — organizes a PRD, personas and research into epics,
user stories and release slices.

There is no deterministic fallback for a story map; generation failures
propagate and fail the run.
"""

import json
import logging
from typing import List

from pydantic import Field

from agents.base import Subagent, SubagentRequest, SubagentResult
from agents.extraction import truncate
from models.artifact import Artifact, SubagentManifest
from models.base import CamelModel


logger = logging.getLogger(__name__)


class UserStory(CamelModel):
    id: str
    title: str
    as_a: str
    i_want: str
    so_that: str
    acceptance_criteria: List[str] = Field(default_factory=list)
    release: str = "MVP"


class Epic(CamelModel):
    id: str
    title: str
    outcome: str = ""
    stories: List[UserStory] = Field(default_factory=list)


class StoryMap(CamelModel):
    personas: List[str] = Field(default_factory=list)
    epics: List[Epic] = Field(..., min_length=1)
    releases: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)


def _build_prompt(request: SubagentRequest) -> str:
    parts = [
        "Create a user story map. Group user stories into epics ordered along the user journey, "
        "write each story as 'As a / I want / so that' with acceptance criteria, and slice them "
        "into releases starting with an MVP.",
        f"Request:\n{request.run.latest_user_message()}",
    ]
    if request.source_artifact is not None:
        parts.append(
            f"Source {request.source_artifact.kind} (JSON):\n"
            f"{truncate(json.dumps(request.source_artifact.data, default=str), 4000)}"
        )
    analysis = request.output_data("analyze-context")
    if isinstance(analysis, dict):
        parts.append(f"Context summary:\n{analysis.get('summary', '')}")
    research = request.output_data("research")
    if isinstance(research, dict) and research.get("summary"):
        parts.append(f"Research summary:\n{research['summary']}")
    return "\n\n".join(parts)


class StoryMapAgent(Subagent):
    manifest = SubagentManifest(
        id="storymap.builder",
        label="Story Map Builder",
        version="0.1.0",
        creates="story-map",
        consumes=["prd", "persona", "research"],
        capabilities=["plan", "synthesize"],
        description="Builds an epic and story map with release slices from product context.",
        tags=["story-map", "planning"],
    )

    async def execute(self, request: SubagentRequest) -> SubagentResult:
        source_kind = request.source_artifact.kind if request.source_artifact else "prompt"
        self.emit_progress(request, "storymap.context.start", "Collecting story map inputs", {"sourceKind": source_kind})

        self.emit_progress(request, "storymap.generation.start", "Generating story map")
        result = await self.client.generate_structured(StoryMap, _build_prompt(request), settings=request.run.settings)
        story_map: StoryMap = result.value

        story_count = sum(len(epic.stories) for epic in story_map.epics)
        self.emit_progress(
            request,
            "storymap.generation.complete",
            "Story map ready",
            {"epicCount": len(story_map.epics), "storyCount": story_count},
        )
        return SubagentResult(
            artifact=Artifact(
                id=f"story-map-{request.run.run_id}",
                kind="story-map",
                label="Story Map",
                data=story_map.to_dict(),
                metadata={"strategy": "llm", "sourceArtifactKind": source_kind},
            ),
            metadata={"epicCount": len(story_map.epics), "storyCount": story_count},
            usage=result.usage,
        )
