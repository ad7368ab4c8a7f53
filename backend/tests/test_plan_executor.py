"""
Tests for compiling plans into LangGraph graphs and running them.

Subagents run against a FakeGenerationClient, so steps either use canned
structured responses or their deterministic fallbacks.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from unittest.mock import patch

from agents.base import RunContext
from agents.context_analyzer import ContextAnalysis
from agents.registry import build_default_registry
from agents.research_agent import ResearchFinding, ResearchSynthesis
from agents.storymap_agent import Epic, StoryMap, UserStory
from conftest import FakeGenerationClient
from errors import GenerationFailure
from services.plan_builder import PRD_SECTIONS, create_plan
from services.plan_executor import approval_checkpoints, build_plan_graph, progress_event


USAGE = {"promptTokens": 1, "completionTokens": 2, "totalTokens": 3, "model": "test-model"}


def _context(kind="prd", content="Build a habit tracker for remote engineering teams", **extra):
    return RunContext(
        run_id="run-1",
        artifact_kind=kind,
        messages=[{"id": "m1", "role": "user", "content": content}],
        **extra,
    )


def _initial_state():
    return {"run_id": "run-1", "step_outputs": {}, "artifact": None, "clarification": None, "usage": []}


def _config(thread_id="thread-1", feedback=None):
    return {"configurable": {"thread_id": thread_id, "approval_feedback": feedback or {}}}


def _story_map():
    story = UserStory(
        id="s1", title="Sign up", as_a="remote engineer", i_want="to create an account",
        so_that="I can start tracking habits",
    )
    return StoryMap(epics=[Epic(id="e1", title="Onboarding", stories=[story])])


class TestProgressEvent:
    def test_shape(self):
        event = progress_event("run-1", "step.started", "Started", step_id="a", status="running")
        assert event["type"] == "step.started"
        assert event["runId"] == "run-1"
        assert event["stepId"] == "a"
        assert event["payload"] == {}
        assert "metadata" not in event

    def test_metadata_is_included_when_given(self):
        event = progress_event("run-1", "step.completed", "Done", metadata={"usage": USAGE})
        assert event["metadata"] == {"usage": USAGE}


class TestApprovalCheckpoints:
    def test_auto_mode_without_research_has_no_checkpoints(self):
        assert approval_checkpoints(create_plan(_context())) == []

    def test_plan_mode_pauses_before_entry(self):
        assert approval_checkpoints(create_plan(_context()), "plan") == ["analyze-context"]

    def test_research_step_is_a_checkpoint(self):
        plan = create_plan(_context(settings={"includeResearch": True}))
        assert approval_checkpoints(plan, "plan") == ["analyze-context", "research"]


class TestBuildPlanGraph:
    def setup_method(self):
        self.client = FakeGenerationClient()
        self.registry = build_default_registry(self.client)
        self.events = []

    def _build(self, context, **kwargs):
        plan = create_plan(context)
        return build_plan_graph(plan, self.registry, context, self.events.append, **kwargs)

    def test_empty_plan_raises(self):
        context = _context(target_sections=["bogus"])
        with pytest.raises(ValueError):
            self._build(context)

    @pytest.mark.asyncio
    async def test_prd_plan_runs_to_assembled_prd(self):
        graph = self._build(_context())

        await graph.ainvoke(_initial_state(), config=_config())
        state = await graph.aget_state(_config())

        assert state.next == ()
        values = state.values
        assert set(values["step_outputs"]) == {"analyze-context", *(f"write-{s}" for s in PRD_SECTIONS), "assemble-prd"}
        assert values["artifact"]["kind"] == "prd"
        assert values["artifact"]["id"] == "prd-run-1"
        assert set(values["artifact"]["data"]["sections"]) == set(PRD_SECTIONS)
        assert values["clarification"] is None

        started = [e["stepId"] for e in self.events if e["type"] == "step.started"]
        assert started[0] == "analyze-context"
        assert started[-1] == "assemble-prd"
        assert len(started) == len(PRD_SECTIONS) + 2
        assert any(e["type"] == "analyzer.context.start" and e["subagentId"] == "prd.analyze-context" for e in self.events)

    @pytest.mark.asyncio
    async def test_thin_request_stops_after_analyzer_with_clarification(self):
        graph = self._build(_context(content="A PRD"))

        await graph.ainvoke(_initial_state(), config=_config())
        state = await graph.aget_state(_config())

        assert state.next == ()
        assert list(state.values["step_outputs"]) == ["analyze-context"]
        assert state.values["clarification"]["stepId"] == "analyze-context"
        assert len(state.values["clarification"]["questions"]) == 2
        assert state.values["artifact"] is None

    @pytest.mark.asyncio
    async def test_plan_mode_pauses_before_entry_and_resumes(self):
        graph = self._build(_context(), approval_mode="plan")

        await graph.ainvoke(_initial_state(), config=_config())
        paused = await graph.aget_state(_config())
        assert paused.next == ("analyze-context",)
        assert self.events == []

        await graph.ainvoke(None, config=_config())
        finished = await graph.aget_state(_config())
        assert finished.next == ()
        assert finished.values["artifact"]["kind"] == "prd"

    @pytest.mark.asyncio
    @patch("agents.research_agent.search_web", return_value=[
        {"title": "Habit apps 2024", "url": "https://example.com/habits", "content": "Market overview"},
    ])
    async def test_research_checkpoint_forwards_feedback(self, mock_search):
        self.client.responses[ResearchSynthesis] = ResearchSynthesis(
            summary="Crowded market",
            findings=[ResearchFinding(title="Competition", detail="Many apps", sources=["https://example.com/habits"])],
        )
        graph = self._build(_context(kind="research"))

        await graph.ainvoke(_initial_state(), config=_config())
        paused = await graph.aget_state(_config())
        assert paused.next == ("research",)
        assert paused.values["step_outputs"]["plan-research"]["artifact"]["kind"] == "research-plan"

        await graph.ainvoke(None, config=_config(feedback={"research": "Focus on EU competitors"}))
        finished = await graph.aget_state(_config())

        artifact = finished.values["artifact"]
        assert artifact["kind"] == "research"
        assert artifact["data"]["sources"] == ["https://example.com/habits"]
        schema, prompt = self.client.calls[-1]
        assert schema is ResearchSynthesis
        assert "Focus on EU competitors" in prompt
        assert mock_search.called

    @pytest.mark.asyncio
    async def test_failing_step_raises_and_reports(self):
        graph = self._build(_context(kind="story-map"))

        with pytest.raises(GenerationFailure):
            await graph.ainvoke(_initial_state(), config=_config())

        failed = [e for e in self.events if e["type"] == "step.failed"]
        assert [e["stepId"] for e in failed] == ["build-story-map"]

    @pytest.mark.asyncio
    async def test_usage_accumulates_across_steps(self):
        self.client.usage = USAGE
        self.client.responses[ContextAnalysis] = ContextAnalysis(summary="Habit tracker for remote teams")
        self.client.responses[StoryMap] = _story_map()
        graph = self._build(_context(kind="story-map"))

        await graph.ainvoke(_initial_state(), config=_config())
        state = await graph.aget_state(_config())

        assert len(state.values["usage"]) == 2
        assert state.values["artifact"]["kind"] == "story-map"
        completed = [e for e in self.events if e["type"] == "step.completed"]
        assert completed[-1]["metadata"]["usage"]["totalTokens"] == 6
        assert completed[-1]["metadata"]["usage"]["model"] == "test-model"
