"""
Plan Builder — turns a run's request into a PlanGraph.

Pure function of the run context and the clock: the same request always
yields the same plan. Steps reference subagents by manifest id only.

PRD plans:
    analyze-context ─┬─ write-targetUsers ─┐
                     ├─ write-solution ────┤
                     ├─ ...                ├─ assemble-prd
                     └─ write-constraints ─┘

    - target sections given: only those writers, then assemble-prd
    - existing PRD in the conversation and no target sections: a single
      edit step (assemble-prd in edit mode)
    - research enabled: plan-research -> research (approval checkpoint)
      between the analyzer and the writers

Malformed requests (no user content, or only unknown target sections)
produce an empty plan, which the executor completes immediately.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from agents.base import RunContext
from models.plan import PLAN_VERSION, PlanGraph, PlanNode


logger = logging.getLogger(__name__)

PRD_SECTIONS = ("targetUsers", "solution", "keyFeatures", "successMetrics", "constraints")

SECTION_LABELS = {
    "targetUsers": "Target users",
    "solution": "Solution",
    "keyFeatures": "Key features",
    "successMetrics": "Success metrics",
    "constraints": "Constraints",
}

ENTRY_ID = "analyze-context"


def find_existing_artifact(messages: List[Dict[str, Any]], context_payload: Any = None) -> Optional[Dict[str, Any]]:
    """
    Locate a PRD the user is iterating on.

    Looks at contextPayload.existingPRD first, then scans the conversation
    newest-first for a message whose content is a PRD JSON document.
    """
    if isinstance(context_payload, dict) and isinstance(context_payload.get("existingPRD"), dict):
        return context_payload["existingPRD"]

    for message in reversed(messages):
        content = message.get("content")
        if not isinstance(content, str) or not content.lstrip().startswith("{"):
            continue
        try:
            parsed = json.loads(content)
        except ValueError:
            continue
        if not isinstance(parsed, dict):
            continue
        if isinstance(parsed.get("problemStatement"), str) or "sections" in parsed:
            return parsed
    return None


def _has_user_content(context: RunContext) -> bool:
    return any(
        m.get("role", "user") == "user" and str(m.get("content", "")).strip()
        for m in context.messages
    )


def _node(node_id: str, label: str, kind: str, subagent_id: str, depends_on: List[str], **extra: Any) -> PlanNode:
    return PlanNode(
        id=node_id,
        label=label,
        kind=kind,
        subagent_id=subagent_id,
        depends_on=depends_on,
        **extra,
    )


def _entry_node() -> PlanNode:
    return _node(ENTRY_ID, "Analyze context", "analyzer", "prd.analyze-context", [])


def _research_nodes(depends_on: str) -> List[PlanNode]:
    return [
        _node(
            "plan-research", "Plan research", "subagent", "research.core.agent", [depends_on],
            target="research", inputs={"mode": "plan"},
        ),
        _node(
            "research", "Run research", "subagent", "research.core.agent", ["plan-research"],
            target="research", inputs={"mode": "execute"}, requires_approval=True,
        ),
    ]


def _prd_nodes(context: RunContext) -> Optional[List[PlanNode]]:
    nodes = [_entry_node()]
    upstream = ENTRY_ID
    if context.settings.get("includeResearch"):
        nodes.extend(_research_nodes(ENTRY_ID))
        upstream = "research"

    requested = context.target_sections or []
    sections = [s for s in requested if s in SECTION_LABELS]
    if requested and not sections:
        logger.warning("Run %s: no valid target sections in %s", context.run_id, requested)
        return None

    if context.existing_artifact is not None and not requested:
        nodes.append(_node(
            "assemble-prd", "Edit PRD", "assembly", "prd.assemble", [upstream],
            target="prd", inputs={"mode": "edit"},
        ))
        return nodes

    writers = [
        _node(
            f"write-{section}", f"Write {SECTION_LABELS[section].lower()}", "section-writer",
            "prd.write-section", [upstream], target=section, inputs={"section": section},
        )
        for section in (sections or PRD_SECTIONS)
    ]
    nodes.extend(writers)
    nodes.append(_node(
        "assemble-prd", "Assemble PRD", "assembly", "prd.assemble", [w.id for w in writers],
        target="prd", inputs={"mode": "assemble", "sections": [w.target for w in writers]},
    ))
    return nodes


def _single_subagent_nodes(context: RunContext, node_id: str, label: str, subagent_id: str) -> List[PlanNode]:
    nodes = [_entry_node()]
    upstream = ENTRY_ID
    if context.settings.get("includeResearch"):
        nodes.extend(_research_nodes(ENTRY_ID))
        upstream = "research"
    overrides = context.settings.get("subAgentSettings", {}).get(subagent_id, {})
    nodes.append(_node(
        node_id, label, "subagent", subagent_id, [upstream],
        target=context.artifact_kind, inputs=dict(overrides),
    ))
    return nodes


def has_prd_sections(artifact: Optional[Dict[str, Any]]) -> bool:
    """True when a detected PRD carries sections a downstream builder can read."""
    return isinstance(artifact, dict) and isinstance(artifact.get("sections"), dict) and bool(artifact["sections"])


def create_plan(context: RunContext, clock: Optional[Any] = None) -> PlanGraph:
    """
    Build the plan for a run.

    Args:
        context: The run context (request, settings, detected artifact).
        clock:   Callable returning the plan's createdAt. Defaults to the current UTC time.

    Returns:
        A validated PlanGraph, empty when no steps can be derived.
    """
    created_at = clock() if clock else datetime.now(timezone.utc)
    kind = context.artifact_kind

    nodes: Optional[List[PlanNode]] = None
    if _has_user_content(context):
        if kind == "prd":
            nodes = _prd_nodes(context)
        elif kind == "persona":
            nodes = _single_subagent_nodes(context, "build-personas", "Build personas", "persona.builder")
        elif kind == "story-map":
            nodes = _single_subagent_nodes(context, "build-story-map", "Build story map", "storymap.builder")
        elif kind == "research":
            nodes = [_entry_node(), *_research_nodes(ENTRY_ID)]

    if any(n.subagent_id == "prd.assemble" and n.inputs.get("mode") == "edit" for n in nodes or []):
        source = "edit"
    elif kind != "prd" and has_prd_sections(context.existing_artifact):
        source = "prd"
    else:
        source = "prompt"
    plan = PlanGraph(
        id=f"plan-{context.run_id}",
        artifact_kind=kind,
        entry_id=ENTRY_ID if nodes else None,
        nodes={node.id: node for node in nodes or []},
        created_at=created_at,
        version=PLAN_VERSION,
        metadata={"source": source, "targetSections": list(context.target_sections or [])},
    )
    plan.validate_graph()
    return plan
