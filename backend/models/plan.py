"""
Plan graph — the directed acyclic graph of steps computed for a run.

Nodes reference their subagent by manifest id only; executing them is the
plan executor's job.
"""

from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import Field

from models.base import CamelModel


PLAN_VERSION = "2.1.0"


class PlanNode(CamelModel):
    id: str
    label: str
    kind: Literal["analyzer", "section-writer", "assembly", "subagent"]
    subagent_id: str
    depends_on: List[str] = Field(default_factory=list)
    target: Optional[str] = None
    requires_approval: bool = False
    inputs: Dict[str, Any] = Field(default_factory=dict)
    status: Literal["pending", "running", "completed", "failed"] = "pending"


class PlanGraph(CamelModel):
    id: str
    artifact_kind: str
    entry_id: Optional[str] = None
    nodes: Dict[str, PlanNode] = Field(default_factory=dict)
    created_at: datetime
    version: str = PLAN_VERSION
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.nodes

    def dependents(self, node_id: str) -> List[str]:
        """Ids of the nodes that declare node_id as a dependency, in plan order."""
        return [nid for nid, node in self.nodes.items() if node_id in node.depends_on]

    def terminal_ids(self) -> List[str]:
        return [nid for nid in self.nodes if not self.dependents(nid)]

    def validate_graph(self) -> None:
        """
        Check the structural invariants of the plan.

        Raises:
            ValueError: if the entry is missing, a dependency points at an
                unknown node, or the graph contains a cycle.
        """
        if self.is_empty:
            return
        if self.entry_id not in self.nodes:
            raise ValueError(f"Plan entry '{self.entry_id}' is not a node of the plan.")
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep not in self.nodes:
                    raise ValueError(f"Step '{node.id}' depends on unknown step '{dep}'.")
        self.topological_order()

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; raises ValueError when a cycle is found."""
        indegree = {nid: len(node.depends_on) for nid, node in self.nodes.items()}
        queue = deque(nid for nid, degree in indegree.items() if degree == 0)
        order: List[str] = []
        while queue:
            nid = queue.popleft()
            order.append(nid)
            for dependent in self.dependents(nid):
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    queue.append(dependent)
        if len(order) != len(self.nodes):
            raise ValueError("Plan contains a cycle.")
        return order
