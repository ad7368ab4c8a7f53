"""
Plan Executor — compiles a PlanGraph into a LangGraph StateGraph.

Each plan step becomes an async node that resolves its subagent from the
registry, runs it against the checkpointed RunState and reports
step.started / step.completed progress through the emit callback.

Edges:
    - the entry step routes through a conditional edge: END when the
      analyzer asked for clarification, otherwise the fan-out of its dependents
    - single-dependency steps get a plain edge from their dependency
    - multi-dependency steps get a waiting edge from all of their dependencies
    - steps nobody depends on lead to END

Approval checkpoints use interrupt_before on a MemorySaver-backed graph: the
entry step when the run asks for plan approval, plus every step marked
requires_approval. Resuming is graph.ainvoke(None, config).
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from langchain_core.runnables import RunnableConfig
from langgraph.checkpoint.memory import MemorySaver
from langgraph.graph import END, StateGraph

from agents.base import Emit, RunContext, SubagentRequest
from agents.registry import SubagentRegistry
from models.artifact import Artifact
from models.plan import PlanGraph, PlanNode
from services.generation_client import summarize_usage
from state import RunState


logger = logging.getLogger(__name__)


def progress_event(
    run_id: str,
    event_type: str,
    message: str,
    step_id: Optional[str] = None,
    status: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Shape of every progress payload the executor emits."""
    event: Dict[str, Any] = {
        "type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "runId": run_id,
        "stepId": step_id,
        "message": message,
        "status": status,
        "payload": payload or {},
    }
    if metadata:
        event["metadata"] = metadata
    return event


def approval_feedback_for(config: Optional[RunnableConfig], step_id: str) -> Optional[str]:
    configurable = (config or {}).get("configurable", {})
    return (configurable.get("approval_feedback") or {}).get(step_id)


# ---------------------------------------------------------------------------
# Step node factory
# ---------------------------------------------------------------------------

def _make_step_node(
    node: PlanNode,
    plan: PlanGraph,
    registry: SubagentRegistry,
    context: RunContext,
    emit: Emit,
    source_artifact: Optional[Artifact],
) -> Callable[..., Any]:
    """
    Create the LangGraph node function for one plan step.

    Args:
        node:            The plan step.
        plan:            The whole plan; used to tell terminal steps apart.
        registry:        Where the step's subagent is resolved.
        context:         The run context handed to the subagent.
        emit:            Progress sink.
        source_artifact: Artifact the run derives from (an existing PRD), if any.

    Returns:
        An async callable (RunState, config) -> dict for StateGraph.add_node().
    """
    is_terminal = not plan.dependents(node.id)
    run_id = context.run_id

    async def step_node(state: RunState, config: RunnableConfig) -> dict:
        params = dict(node.inputs)
        feedback = approval_feedback_for(config, node.id)
        if feedback:
            params["approvalFeedback"] = feedback

        emit(progress_event(
            run_id, "step.started", f"{node.label} started", step_id=node.id, status="running",
            payload={"subagentId": node.subagent_id, "kind": node.kind, "target": node.target},
        ))

        subagent = registry.create(node.subagent_id)
        request = SubagentRequest(
            params=params,
            run=context,
            step_id=node.id,
            source_artifact=source_artifact,
            step_outputs=state.get("step_outputs") or {},
            emit=emit,
        )
        try:
            result = await subagent.execute(request)
        except Exception as exc:
            emit(progress_event(
                run_id, "step.failed", f"{node.label} failed: {exc}", step_id=node.id, status="failed",
                payload={"subagentId": node.subagent_id},
            ))
            raise

        artifact = result.artifact.to_dict() if result.artifact else None
        usage_entries = [result.usage] if result.usage else []
        total_usage = summarize_usage([*(state.get("usage") or []), *usage_entries])

        emit(progress_event(
            run_id, "step.completed", f"{node.label} completed", step_id=node.id, status="completed",
            payload={"subagentId": node.subagent_id, "metadata": result.metadata},
            metadata={"usage": total_usage} if total_usage else None,
        ))

        update: Dict[str, Any] = {
            "step_outputs": {node.id: {"artifact": artifact, "metadata": result.metadata}},
            "usage": usage_entries,
        }
        if result.clarification:
            update["clarification"] = result.clarification
        if is_terminal:
            update["artifact"] = artifact
        return update

    step_node.__name__ = f"step_{node.id.replace('-', '_')}"
    return step_node


def _make_entry_router(entry_id: str, successors: List[str]) -> Callable[[RunState], Any]:
    def router(state: RunState) -> Any:
        if state.get("clarification"):
            return END
        return successors or END

    router.__name__ = f"route_from_{entry_id.replace('-', '_')}"
    return router


# ---------------------------------------------------------------------------
# Main: build graph from plan
# ---------------------------------------------------------------------------

def approval_checkpoints(plan: PlanGraph, approval_mode: str = "auto") -> List[str]:
    """Step ids execution pauses before."""
    checkpoints = [plan.entry_id] if approval_mode == "plan" and plan.entry_id else []
    checkpoints += [n.id for n in plan.nodes.values() if n.requires_approval and n.id not in checkpoints]
    return checkpoints


def build_plan_graph(
    plan: PlanGraph,
    registry: SubagentRegistry,
    context: RunContext,
    emit: Emit,
    source_artifact: Optional[Artifact] = None,
    approval_mode: str = "auto",
    checkpointer: Optional[Any] = None,
) -> Any:
    """
    Construct the compiled LangGraph for a plan.

    Raises:
        ValueError: if the plan is empty or structurally invalid.
    """
    if plan.is_empty:
        raise ValueError("Cannot build a graph for an empty plan.")
    plan.validate_graph()

    graph = StateGraph(RunState)
    for node in plan.nodes.values():
        graph.add_node(node.id, _make_step_node(node, plan, registry, context, emit, source_artifact))

    entry_id = plan.entry_id
    graph.set_entry_point(entry_id)

    entry_successors = plan.dependents(entry_id)
    graph.add_conditional_edges(
        entry_id,
        _make_entry_router(entry_id, entry_successors),
        [*entry_successors, END],
    )

    for node in plan.nodes.values():
        if node.id == entry_id or node.depends_on == [entry_id]:
            continue
        if len(node.depends_on) == 1:
            graph.add_edge(node.depends_on[0], node.id)
        else:
            graph.add_edge(list(node.depends_on), node.id)

    for terminal_id in plan.terminal_ids():
        if terminal_id != entry_id:
            graph.add_edge(terminal_id, END)

    return graph.compile(
        checkpointer=checkpointer or MemorySaver(),
        interrupt_before=approval_checkpoints(plan, approval_mode),
    )
