"""Tests for applying approval decisions to runs parked at a checkpoint."""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest
from unittest.mock import AsyncMock

from api.run_store import RunStore
from errors import ApprovalConflict, RunNotFound, UpstreamUnavailable
from models.run_request import ApprovalDecision
from services.approval_gate import REJECTED_ERROR, ApprovalGate


class TestApprovalGate:
    def setup_method(self):
        self.store = RunStore()
        self.upstream = AsyncMock()
        self.gate = ApprovalGate(self.store, self.upstream)
        self.run_id = self.store.create("prd", {}).id
        self.store.update(self.run_id, {"status": "running"})

    def _park(self, mode="plan", step_id=None):
        url = (
            f"/api/runs/{self.run_id}/subagent/{step_id}/approve"
            if mode == "subagent" else f"/api/runs/{self.run_id}/approve"
        )
        self.store.update(self.run_id, {
            "status": "pending-approval",
            "approval_mode": mode,
            "approval_step_id": step_id,
            "approval_url": url,
            "plan": {"id": f"plan-{self.run_id}"},
        })

    @pytest.mark.asyncio
    async def test_approve_resumes_and_clears_approval_fields(self):
        self._park()

        status = await self.gate.decide(self.run_id, ApprovalDecision(approved=True, feedback="Go"))

        assert status == "running"
        self.upstream.resume.assert_awaited_once_with(self.run_id, step_id=None, feedback="Go")
        record = self.store.get(self.run_id)
        assert record.status == "running"
        assert record.approval_url is None
        assert record.approval_mode is None
        assert record.approval_step_id is None
        assert record.plan == {"id": f"plan-{self.run_id}"}

    @pytest.mark.asyncio
    async def test_approve_subagent_step(self):
        self._park("subagent", "research")

        status = await self.gate.decide(self.run_id, ApprovalDecision(approved=True), step_id="research")

        assert status == "running"
        self.upstream.resume.assert_awaited_once_with(self.run_id, step_id="research", feedback=None)

    @pytest.mark.asyncio
    async def test_reject_fails_run_with_feedback(self):
        self._park()

        status = await self.gate.decide(self.run_id, ApprovalDecision(approved=False, feedback="Wrong scope"))

        assert status == "failed"
        self.upstream.reject.assert_awaited_once()
        record = self.store.get(self.run_id)
        assert record.status == "failed"
        assert record.error == "Wrong scope"

    @pytest.mark.asyncio
    async def test_reject_without_feedback_uses_default_error(self):
        self._park()
        await self.gate.decide(self.run_id, ApprovalDecision(approved=False))
        assert self.store.get(self.run_id).error == REJECTED_ERROR

    @pytest.mark.asyncio
    async def test_reject_with_resubmit_keeps_run_pending(self):
        self._park()

        status = await self.gate.decide(
            self.run_id, ApprovalDecision(approved=False, feedback="Add EU research", resubmit=True),
        )

        assert status == "pending-approval"
        self.upstream.reject.assert_not_awaited()
        record = self.store.get(self.run_id)
        assert record.status == "pending-approval"
        assert record.metadata == {"approvalFeedback": "Add EU research"}
        assert record.approval_url == f"/api/runs/{self.run_id}/approve"

    @pytest.mark.asyncio
    async def test_unknown_run(self):
        with pytest.raises(RunNotFound):
            await self.gate.decide("ghost", ApprovalDecision(approved=True))

    @pytest.mark.asyncio
    async def test_run_not_pending_conflicts(self):
        with pytest.raises(ApprovalConflict):
            await self.gate.decide(self.run_id, ApprovalDecision(approved=True))
        self.upstream.resume.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_plan_decision_while_step_pending_conflicts(self):
        self._park("subagent", "research")
        with pytest.raises(ApprovalConflict):
            await self.gate.decide(self.run_id, ApprovalDecision(approved=True))

    @pytest.mark.asyncio
    async def test_step_decision_for_other_step_conflicts(self):
        self._park("subagent", "research")
        with pytest.raises(ApprovalConflict):
            await self.gate.decide(self.run_id, ApprovalDecision(approved=True), step_id="write-solution")

    @pytest.mark.asyncio
    async def test_step_decision_while_plan_pending_conflicts(self):
        self._park()
        with pytest.raises(ApprovalConflict):
            await self.gate.decide(self.run_id, ApprovalDecision(approved=True), step_id="research")

    @pytest.mark.asyncio
    async def test_upstream_failure_leaves_run_pending(self):
        self._park()
        self.upstream.resume.side_effect = UpstreamUnavailable("Agent backend unreachable")

        with pytest.raises(UpstreamUnavailable):
            await self.gate.decide(self.run_id, ApprovalDecision(approved=True))

        assert self.store.get(self.run_id).status == "pending-approval"
