"""
In-process agent backend.

Owns the execution side of every run: builds the plan, compiles it into a
LangGraph and streams what happens as SSE frames.

Execution is segmented. A segment starts when the first subscriber opens the
stream and ends with exactly one of
    pending-approval  (paused at a checkpoint)
    clarification     (the analyzer needs more input)
    complete          (the plan finished)
    error             (a step raised)
after which every subscriber is closed. Frames of the current segment are
buffered (up to MAX_BUFFERED_EVENTS) and replayed to late subscribers.
Approvals and clarification answers prepare the next segment, which starts
on the next subscribe. A segment whose last subscriber leaves is cancelled.

Sessions are bounded like the run store: the oldest are dropped past
capacity, and a finished run keeps only its replay buffer.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from agents.base import RunContext
from agents.registry import SubagentRegistry
from errors import ApprovalConflict, RunNotFound
from models.artifact import Artifact
from models.events import encode_sse
from models.plan import PlanGraph
from services.generation_client import summarize_usage
from services.plan_builder import create_plan, find_existing_artifact, has_prd_sections
from services.plan_executor import approval_checkpoints, build_plan_graph, progress_event
from state import MAX_BUFFERED_EVENTS, MAX_RUN_RECORDS, TERMINAL_STATUSES, RunState


logger = logging.getLogger(__name__)

SEGMENT_CANCELLED_ERROR = "Run cancelled: no subscriber left"


class LocalEventStream:
    """One subscriber's view of a run's frames."""

    def __init__(self, queue: "asyncio.Queue[Optional[bytes]]", on_close: Callable[["LocalEventStream"], None]) -> None:
        self._queue = queue
        self._on_close = on_close
        self.closed = False

    def __aiter__(self) -> "LocalEventStream":
        return self

    async def __anext__(self) -> bytes:
        if self.closed:
            raise StopAsyncIteration
        chunk = await self._queue.get()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    def push(self, chunk: Optional[bytes]) -> None:
        self._queue.put_nowait(chunk)

    async def aclose(self) -> None:
        if not self.closed:
            self.closed = True
            self._on_close(self)


class RunSession:
    """Execution state of one run inside the backend."""

    def __init__(self, run_id: str, context: RunContext, plan: PlanGraph, approval_mode: str) -> None:
        self.run_id = run_id
        self.context = context
        self.plan = plan
        self.approval_mode = approval_mode
        self.graph: Any = None
        self.thread_id = run_id
        self.pending_input: Optional[RunState] = None
        self.approval_feedback: Dict[str, str] = {}
        self.plan_approved = approval_mode != "plan"
        self.paused_at: Optional[str] = None
        self.buffer: Deque[bytes] = deque(maxlen=MAX_BUFFERED_EVENTS)
        self.subscribers: List[LocalEventStream] = []
        self.task: Optional["asyncio.Task[None]"] = None
        self.segment_done = False
        self.announced = False
        self.status = "pending"
        self.attempt = 0
        self.notices: List[Dict[str, Any]] = []

    @property
    def config(self) -> dict:
        return {
            "configurable": {
                "thread_id": self.thread_id,
                "approval_feedback": dict(self.approval_feedback),
            }
        }


def build_run_context(run_id: str, artifact_kind: str, request: Dict[str, Any]) -> RunContext:
    """Turn a camelCase run request into the context every step sees."""
    messages = [m for m in request.get("messages") or [] if isinstance(m, dict)]
    context_payload = request.get("contextPayload")
    return RunContext(
        run_id=run_id,
        artifact_kind=artifact_kind,
        messages=messages,
        settings=dict(request.get("settings") or {}),
        context_payload=context_payload,
        target_sections=request.get("targetSections"),
        existing_artifact=find_existing_artifact(messages, context_payload),
    )


class AgentBackend:
    def __init__(
        self,
        registry: SubagentRegistry,
        clock: Optional[Callable[[], datetime]] = None,
        capacity: int = MAX_RUN_RECORDS,
    ) -> None:
        self.registry = registry
        self.capacity = capacity
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sessions: Dict[str, RunSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    # ---------------------------------------------------------------------
    # Lifecycle
    # ---------------------------------------------------------------------

    def start_run(self, run_id: str, artifact_kind: str, request: Dict[str, Any]) -> Dict[str, Any]:
        """Plan a run and prepare its first segment. Execution waits for a subscriber."""
        context = build_run_context(run_id, artifact_kind, request)
        approval_mode = context.settings.get("approvalMode", "auto")
        session = RunSession(run_id, context, create_plan(context, clock=self._clock), approval_mode)
        self._prepare(session)
        self._sessions[run_id] = session
        self._evict()
        logger.info("Run %s planned: %d steps", run_id, len(session.plan.nodes))
        return self.snapshot(run_id)

    def _prepare(self, session: RunSession) -> None:
        if session.plan.is_empty:
            session.graph = None
            return
        source = None
        existing = session.context.existing_artifact
        # A PRD without sections leaves downstream builders working from the prompt
        if has_prd_sections(existing):
            source = Artifact(
                id=str(existing.get("id") or f"input-{session.run_id}"),
                kind="prd",
                data=existing,
            )
        session.graph = build_plan_graph(
            session.plan,
            self.registry,
            session.context,
            emit=lambda event: self._publish(session, "progress", event),
            source_artifact=source,
            approval_mode=session.approval_mode,
        )
        session.pending_input = RunState(
            run_id=session.run_id, step_outputs={}, artifact=None, clarification=None, usage=[],
        )

    def _evict(self) -> None:
        """Drop the oldest sessions beyond capacity, cancelling any segment still running."""
        while len(self._sessions) > self.capacity:
            run_id = next(iter(self._sessions))
            logger.info("Run %s: evicting backend session", run_id)
            self._drop(run_id)

    def _drop(self, run_id: str) -> None:
        session = self._sessions.pop(run_id, None)
        if session is not None and session.task is not None:
            session.task.cancel()

    def _session(self, run_id: str) -> RunSession:
        session = self._sessions.get(run_id)
        if session is None:
            raise RunNotFound(run_id)
        return session

    def open_stream(self, run_id: str) -> LocalEventStream:
        """Subscribe to a run; replays buffered frames and starts the segment if needed."""
        session = self._session(run_id)
        stream = LocalEventStream(asyncio.Queue(), on_close=lambda s: self._unsubscribe(session, s))
        for frame in session.buffer:
            stream.push(frame)

        if session.segment_done:
            stream.push(None)
            return stream

        session.subscribers.append(stream)
        if session.task is None or session.task.done():
            session.task = asyncio.create_task(self._run_segment(session))
        return stream

    def _unsubscribe(self, session: RunSession, stream: LocalEventStream) -> None:
        if stream in session.subscribers:
            session.subscribers.remove(stream)
        # Nobody is left to receive the segment
        if not session.subscribers and session.task is not None and not session.segment_done:
            logger.info("Run %s: last subscriber left, cancelling segment", session.run_id)
            session.task.cancel()

    def _publish(self, session: RunSession, event_type: str, data: Any) -> None:
        frame = encode_sse(event_type, data)
        session.buffer.append(frame)
        for subscriber in list(session.subscribers):
            subscriber.push(frame)

    def _finish_segment(self, session: RunSession) -> None:
        session.segment_done = True
        session.task = None
        if session.status in TERMINAL_STATUSES:
            # Nothing resumes a finished run; keep only the replay buffer
            session.graph = None
            session.pending_input = None
        for subscriber in session.subscribers:
            subscriber.push(None)
        session.subscribers.clear()

    def _new_segment(self, session: RunSession) -> None:
        session.buffer.clear()
        session.segment_done = False

    # ---------------------------------------------------------------------
    # Execution
    # ---------------------------------------------------------------------

    async def _run_segment(self, session: RunSession) -> None:
        run_id = session.run_id
        try:
            session.status = "running"
            if not session.announced:
                session.announced = True
                self._publish(session, "progress", progress_event(
                    run_id, "plan.created", f"Plan created with {len(session.plan.nodes)} steps",
                    payload={"plan": session.plan.to_dict()},
                ))
            self._publish(session, "progress", progress_event(run_id, "run.status", "Run started", status="running"))
            for notice in session.notices:
                self._publish(session, "progress", notice)
            session.notices.clear()

            if session.graph is None:
                session.status = "completed"
                self._publish(session, "complete", {
                    "runId": run_id,
                    "status": "completed",
                    "artifact": None,
                    "metadata": {"planId": session.plan.id, "reason": "empty-plan"},
                })
                return

            await session.graph.ainvoke(session.pending_input, config=session.config)
            session.pending_input = None
            snapshot = await session.graph.aget_state(session.config)

            if snapshot.next:
                self._pause(session, snapshot.next[0], snapshot.values)
            elif snapshot.values.get("clarification"):
                session.status = "awaiting-input"
                self._publish(session, "clarification", {
                    "runId": run_id,
                    **snapshot.values["clarification"],
                })
            else:
                session.status = "completed"
                usage = summarize_usage(snapshot.values.get("usage") or [])
                metadata = {
                    "planId": session.plan.id,
                    "stepsCompleted": sorted((snapshot.values.get("step_outputs") or {}).keys()),
                }
                if usage:
                    metadata["usage"] = usage
                self._publish(session, "complete", {
                    "runId": run_id,
                    "status": "completed",
                    "artifact": snapshot.values.get("artifact"),
                    "metadata": metadata,
                })
        except asyncio.CancelledError:
            logger.info("Run %s: segment cancelled", run_id)
            session.status = "failed"
            self._publish(session, "error", {"runId": run_id, "error": SEGMENT_CANCELLED_ERROR})
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Run %s failed", run_id)
            session.status = "failed"
            self._publish(session, "error", {"runId": run_id, "error": str(exc) or type(exc).__name__})
        finally:
            self._finish_segment(session)

    def _pause(self, session: RunSession, step_id: str, values: Dict[str, Any]) -> None:
        session.status = "pending-approval"
        session.paused_at = step_id
        is_plan_checkpoint = not session.plan_approved and step_id == session.plan.entry_id
        node = session.plan.nodes[step_id]
        self._publish(session, "pending-approval", {
            "runId": session.run_id,
            "checkpoint": "plan" if is_plan_checkpoint else "subagent",
            "stepId": None if is_plan_checkpoint else step_id,
            "subagentId": node.subagent_id,
            "plan": session.plan.to_dict(),
            "stepPlan": self._step_plan(session, step_id, values),
        })

    def _step_plan(self, session: RunSession, step_id: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """What the reviewer approves at a sub-step checkpoint: the output of its dependencies."""
        if not session.plan.nodes[step_id].depends_on:
            return None
        outputs = values.get("step_outputs") or {}
        return {
            dep: (outputs.get(dep) or {}).get("artifact")
            for dep in session.plan.nodes[step_id].depends_on
        }

    # ---------------------------------------------------------------------
    # Decisions
    # ---------------------------------------------------------------------

    def resume(self, run_id: str, step_id: Optional[str] = None, feedback: Optional[str] = None) -> Dict[str, Any]:
        """Approve the pending checkpoint; the next segment starts on subscribe."""
        session = self._session(run_id)
        self._check_checkpoint(session, step_id)
        paused_at = session.paused_at
        if feedback:
            session.approval_feedback[paused_at] = feedback
        if paused_at == session.plan.entry_id:
            session.plan_approved = True
        session.notices.append(progress_event(
            run_id, "approval.received", f"Approval received for {paused_at}", step_id=paused_at,
            payload={"feedback": feedback},
        ))
        session.paused_at = None
        session.status = "running"
        self._new_segment(session)
        logger.info("Run %s approved at %s", run_id, paused_at)
        return self.snapshot(run_id)

    def reject(self, run_id: str, step_id: Optional[str] = None, feedback: Optional[str] = None) -> None:
        session = self._session(run_id)
        self._check_checkpoint(session, step_id)
        logger.info("Run %s rejected at %s: %s", run_id, session.paused_at, feedback)
        self._drop(run_id)

    def _check_checkpoint(self, session: RunSession, step_id: Optional[str]) -> None:
        if session.paused_at is None:
            raise ApprovalConflict(f"Run '{session.run_id}' is not paused at a checkpoint.")
        is_plan_checkpoint = not session.plan_approved and session.paused_at == session.plan.entry_id
        if step_id is None and not is_plan_checkpoint:
            raise ApprovalConflict(f"Run '{session.run_id}' is waiting on step '{session.paused_at}'.")
        if step_id is not None and (is_plan_checkpoint or step_id != session.paused_at):
            raise ApprovalConflict(f"Step '{step_id}' of run '{session.run_id}' is not awaiting approval.")

    def answer_clarification(self, run_id: str, answer: str) -> Dict[str, Any]:
        """Append the answer to the conversation and re-plan from scratch."""
        session = self._session(run_id)
        if session.status != "awaiting-input":
            raise ApprovalConflict(f"Run '{run_id}' is not awaiting input.")

        messages = list(session.context.messages)
        session.attempt += 1
        messages.append({"id": f"clarification-{session.attempt}", "role": "user", "content": answer})
        request = {
            "messages": messages,
            "settings": session.context.settings,
            "contextPayload": session.context.context_payload,
            "targetSections": session.context.target_sections,
        }
        context = build_run_context(run_id, session.context.artifact_kind, request)
        session.context = context
        session.plan = create_plan(context, clock=self._clock)
        session.thread_id = f"{run_id}:{session.attempt}"
        session.announced = False
        session.plan_approved = True
        session.approval_mode = "auto" if session.approval_mode == "plan" else session.approval_mode
        session.status = "running"
        self._prepare(session)
        self._new_segment(session)
        return self.snapshot(run_id)

    def snapshot(self, run_id: str) -> Dict[str, Any]:
        session = self._session(run_id)
        return {
            "runId": run_id,
            "status": session.status,
            "planId": session.plan.id,
            "stepCount": len(session.plan.nodes),
            "checkpoints": approval_checkpoints(session.plan, session.approval_mode),
            "pausedAt": session.paused_at,
            "bufferedEvents": len(session.buffer),
        }
