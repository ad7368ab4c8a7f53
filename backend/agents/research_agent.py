"""
Research Agent — web research in two plan steps.

plan mode:    proposes an objective and search queries. This output is what
              the reviewer signs off at the research approval checkpoint.
execute mode: runs the approved queries through Tavily and synthesizes the
              findings. Synthesis has no deterministic fallback; a failure
              fails the run.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import Field

from agents.base import Subagent, SubagentRequest, SubagentResult
from agents.extraction import dedupe, split_into_candidates, truncate
from errors import GenerationFailure
from models.artifact import Artifact, SubagentManifest
from models.base import CamelModel
from tools.web_search import format_results, search_web


logger = logging.getLogger(__name__)

MAX_QUERIES = 4
RESULTS_PER_QUERY = 3


class ResearchPlan(CamelModel):
    objective: str
    queries: List[str] = Field(..., min_length=1, max_length=MAX_QUERIES)


class ResearchFinding(CamelModel):
    title: str
    detail: str
    sources: List[str] = Field(default_factory=list)


class ResearchSynthesis(CamelModel):
    summary: str
    findings: List[ResearchFinding] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


def heuristic_research_plan(request: SubagentRequest) -> ResearchPlan:
    prompt = request.run.latest_user_message()
    sentences = split_into_candidates(prompt)
    topic = truncate(sentences[0] if sentences else prompt, 120)
    queries = dedupe([
        f"{topic} market landscape",
        f"{topic} competitors",
        f"{topic} user pain points",
    ])
    return ResearchPlan(objective=f"Understand the market and users for: {topic}", queries=queries)


class ResearchAgent(Subagent):
    manifest = SubagentManifest(
        id="research.core.agent",
        label="Research Agent",
        version="0.1.0",
        creates="research",
        consumes=["prompt", "context-analysis"],
        capabilities=["plan", "search", "synthesize"],
        description="Plans and runs web research, then synthesizes findings with sources.",
        tags=["research", "web"],
    )

    async def execute(self, request: SubagentRequest) -> SubagentResult:
        if request.params.get("mode") == "plan":
            return await self._plan(request)
        return await self._execute(request)

    async def _plan(self, request: SubagentRequest) -> SubagentResult:
        self.emit_progress(request, "research.plan.start", "Planning research")
        analysis = request.output_data("analyze-context") or {}
        prompt = (
            "Plan focused web research for a product team. Return an objective and up to "
            f"{MAX_QUERIES} search queries.\n\n"
            f"Request:\n{request.run.latest_user_message()}\n\n"
            f"Context summary:\n{analysis.get('summary', '')}"
        )
        usage: Optional[Dict[str, Any]] = None
        try:
            result = await self.client.generate_structured(ResearchPlan, prompt, settings=request.run.settings)
            plan: ResearchPlan = result.value
            usage = result.usage
            strategy = "llm"
        except GenerationFailure as exc:
            logger.info("Run %s: research planning falling back to heuristics (%s)", request.run.run_id, exc)
            plan = heuristic_research_plan(request)
            strategy = "heuristic"

        self.emit_progress(
            request,
            "research.plan.complete",
            "Research plan ready for review",
            {"queries": plan.queries, "strategy": strategy},
        )
        return SubagentResult(
            artifact=Artifact(
                id=f"research-plan-{request.run.run_id}",
                kind="research-plan",
                label="Research Plan",
                data=plan.to_dict(),
                metadata={"strategy": strategy},
            ),
            metadata={"strategy": strategy, "queryCount": len(plan.queries)},
            usage=usage,
        )

    async def _execute(self, request: SubagentRequest) -> SubagentResult:
        plan = request.output_data("plan-research") or heuristic_research_plan(request).to_dict()
        queries = plan.get("queries", [])[:MAX_QUERIES]
        feedback = request.params.get("approvalFeedback")

        self.emit_progress(request, "research.search.start", "Searching the web", {"queryCount": len(queries)})
        loop = asyncio.get_event_loop()
        results: List[Dict[str, str]] = []
        for query in queries:
            hits = await loop.run_in_executor(
                None, lambda q=query: search_web(q, max_results=RESULTS_PER_QUERY),
            )
            results.extend(hits)
            self.emit_progress(request, "research.search.query", f"Searched: {query}", {"query": query, "resultCount": len(hits)})

        prompt = (
            f"Research objective: {plan.get('objective', '')}\n\n"
            f"Web results:\n{format_results(results)}\n\n"
            "Synthesize the findings for a product team. Cite source URLs on each finding "
            "and finish with concrete recommendations."
        )
        if feedback:
            prompt += f"\n\nReviewer guidance:\n{feedback}"

        self.emit_progress(request, "research.synthesis.start", "Synthesizing findings")
        result = await self.client.generate_structured(ResearchSynthesis, prompt, settings=request.run.settings)
        synthesis: ResearchSynthesis = result.value

        sources = dedupe(r["url"] for r in results if r.get("url"))
        data = synthesis.to_dict()
        data["objective"] = plan.get("objective")
        data["sources"] = sources

        self.emit_progress(
            request,
            "research.synthesis.complete",
            "Research complete",
            {"findingCount": len(synthesis.findings), "sourceCount": len(sources)},
        )
        return SubagentResult(
            artifact=Artifact(
                id=f"research-{request.run.run_id}",
                kind="research",
                label="Research Report",
                data=data,
                metadata={"strategy": "llm", "sourceCount": len(sources)},
            ),
            metadata={"findingCount": len(synthesis.findings), "sourceCount": len(sources)},
            usage=result.usage,
        )
