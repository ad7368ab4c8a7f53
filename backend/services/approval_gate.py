"""
Approval gate — applies a reviewer's decision to a run parked at a checkpoint.

    approve                resume the upstream; the run goes back to running
                           and the client re-subscribes to the stream
    reject + resubmit      the run stays pending-approval; the feedback is
                           kept in metadata for the next attempt
    reject                 the upstream drops the run; the run fails with
                           the feedback (or "Rejected by user") as its error
"""

import logging
from typing import Optional

from api.run_store import RunStore
from errors import ApprovalConflict, RunNotFound
from models.run_request import ApprovalDecision
from services.upstream import Upstream
from state import STATUS_FAILED, STATUS_PENDING_APPROVAL, STATUS_RUNNING


logger = logging.getLogger(__name__)

REJECTED_ERROR = "Rejected by user"


class ApprovalGate:
    def __init__(self, store: RunStore, upstream: Upstream) -> None:
        self.store = store
        self.upstream = upstream

    def _check_pending(self, run_id: str, step_id: Optional[str]) -> None:
        record = self.store.get(run_id)
        if record is None:
            raise RunNotFound(run_id)
        if record.status != STATUS_PENDING_APPROVAL:
            raise ApprovalConflict(f"Run '{run_id}' is not awaiting approval (status: {record.status}).")

        if step_id is None:
            if record.approval_mode == "subagent":
                raise ApprovalConflict(
                    f"Run '{run_id}' is waiting on step '{record.approval_step_id}'; "
                    "use the sub-step approval endpoint."
                )
        elif record.approval_mode != "subagent" or record.approval_step_id != step_id:
            raise ApprovalConflict(f"Step '{step_id}' of run '{run_id}' is not awaiting approval.")

    async def decide(self, run_id: str, decision: ApprovalDecision, step_id: Optional[str] = None) -> str:
        """
        Apply a decision and return the run's resulting status.

        Raises:
            RunNotFound:         no run with that id.
            ApprovalConflict:    the run is not paused at this checkpoint.
            UpstreamUnavailable: the upstream could not apply the decision.
        """
        self._check_pending(run_id, step_id)

        if decision.approved:
            await self.upstream.resume(run_id, step_id=step_id, feedback=decision.feedback)
            self.store.update(run_id, {
                "status": STATUS_RUNNING,
                "approval_url": None,
                "approval_mode": None,
                "approval_step_id": None,
            })
            logger.info("Run %s approved%s", run_id, f" at {step_id}" if step_id else "")
            return STATUS_RUNNING

        if decision.resubmit:
            record = self.store.get(run_id)
            metadata = dict(record.metadata or {})
            metadata["approvalFeedback"] = decision.feedback
            self.store.update(run_id, {"metadata": metadata})
            logger.info("Run %s sent back for revision", run_id)
            return STATUS_PENDING_APPROVAL

        await self.upstream.reject(run_id, step_id=step_id, feedback=decision.feedback)
        self.store.update(run_id, {"status": STATUS_FAILED, "error": decision.feedback or REJECTED_ERROR})
        logger.info("Run %s rejected", run_id)
        return STATUS_FAILED
