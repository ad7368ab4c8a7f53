"""
RunState — the LangGraph state passed between plan steps during execution.

Steps never mutate shared objects; each returns a partial update that the
reducers below fold into the checkpointed state.

Also holds the run status vocabulary and the limits used by the run store
and the agent backend.
"""

from typing import Annotated, Any, Dict, List, Optional
import operator
from typing_extensions import TypedDict


def merge_outputs(left: Dict[str, Any], right: Dict[str, Any]) -> Dict[str, Any]:
    """Reducer for step_outputs: parallel steps each contribute their own key."""
    merged = dict(left or {})
    merged.update(right or {})
    return merged


class RunState(TypedDict):
    """
    Fields:
        run_id:         Identifier of the run this execution belongs to.
        step_outputs:   Output of every finished step keyed by step id.
                        Merged, so fan-out steps can write in the same superstep.
        artifact:       The final artifact, written by the plan's terminal step.
        clarification:  Set by the context analyzer when the request is too
                        thin to plan against. Ends the execution early.
        usage:          Per-step usage entries, accumulated with operator.add.
    """

    run_id: str
    step_outputs: Annotated[Dict[str, Any], merge_outputs]
    artifact: Optional[Dict[str, Any]]
    clarification: Optional[Dict[str, Any]]
    usage: Annotated[List[Dict[str, Any]], operator.add]


# Run status values
STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_AWAITING_INPUT = "awaiting-input"
STATUS_PENDING_APPROVAL = "pending-approval"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

# Allowed status transitions; self-transitions are allowed for non-terminal states
STATUS_TRANSITIONS = {
    STATUS_PENDING: {STATUS_PENDING, STATUS_RUNNING, STATUS_FAILED},
    STATUS_RUNNING: {
        STATUS_RUNNING,
        STATUS_AWAITING_INPUT,
        STATUS_PENDING_APPROVAL,
        STATUS_COMPLETED,
        STATUS_FAILED,
    },
    STATUS_AWAITING_INPUT: {STATUS_AWAITING_INPUT, STATUS_RUNNING, STATUS_FAILED},
    STATUS_PENDING_APPROVAL: {STATUS_PENDING_APPROVAL, STATUS_RUNNING, STATUS_FAILED},
    STATUS_COMPLETED: set(),
    STATUS_FAILED: set(),
}

# Capacity of the in-memory run store
MAX_RUN_RECORDS = 50

# Frames the agent backend keeps for replay to late subscribers
MAX_BUFFERED_EVENTS = 200

ARTIFACT_KINDS = ("prd", "persona", "story-map", "research")
