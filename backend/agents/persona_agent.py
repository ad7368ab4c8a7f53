"""
Persona Builder — turns PRD sections (or, without a PRD, the prompt and
context payload) into 2-4 structured personas.

Inputs are extracted deterministically from the source sections, then the
model synthesizes the personas. If the model fails, or
PERSONA_AGENT_FORCE_HEURISTIC is set, the same inputs feed the deterministic
profile builder instead.

Progress events:
    persona-agent.context.start
    persona-agent.generation.start     (input counts)
    persona-agent.generation.complete  (strategy, personaCount)
    persona-agent.artifact.ready       (personaCount, sourceKind, sourceArtifactId)
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import Field

import config
from agents.base import Subagent, SubagentRequest, SubagentResult
from agents.extraction import (
    CONSTRAINT_KEYWORDS,
    FEATURE_KEYWORDS,
    PERSONA_KEYWORDS,
    dedupe,
    extract_by_keyword,
    find_section,
    nested_strings,
    sanitize_string_array,
    serialize_metric,
    truncate,
)
from errors import GenerationFailure
from models.artifact import Artifact, SubagentManifest
from models.base import CamelModel


logger = logging.getLogger(__name__)

MAX_PERSONAS = 4


class PersonaProfile(CamelModel):
    id: str = ""
    name: str
    summary: str
    goals: List[str] = Field(default_factory=list)
    frustrations: List[str] = Field(default_factory=list)
    opportunities: List[str] = Field(default_factory=list)
    success_indicators: List[str] = Field(default_factory=list)
    quote: str = ""
    tags: List[str] = Field(default_factory=list, max_length=8)


class PersonaResponse(CamelModel):
    personas: List[PersonaProfile] = Field(..., min_length=1, max_length=MAX_PERSONAS)
    notes: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Input extraction
# ---------------------------------------------------------------------------

def extract_target_users(sections: Dict[str, Any], used: Set[str]) -> List[str]:
    candidate = find_section(sections, ["targetUsers", "personas", "audience"])
    values = sanitize_string_array(candidate) or nested_strings(candidate, "targetUsers")
    if values:
        used.add("targetUsers")
    return values[:4]


def extract_key_features(sections: Dict[str, Any], used: Set[str]) -> List[str]:
    candidate = find_section(sections, ["keyFeatures", "features", "capabilities"])
    values = sanitize_string_array(candidate) or nested_strings(candidate, "keyFeatures")
    if values:
        used.add("keyFeatures")
    return values[:6]


def extract_constraints(sections: Dict[str, Any], used: Set[str]) -> List[str]:
    candidate = find_section(sections, ["constraints", "limitations", "assumptions"])
    values = sanitize_string_array(candidate)
    values += nested_strings(candidate, "constraints") + nested_strings(candidate, "assumptions")
    values = list(dict.fromkeys(values))
    if values:
        used.add("constraints")
    return values[:6]


def extract_success_metrics(sections: Dict[str, Any], used: Set[str]) -> List[str]:
    candidate = find_section(sections, ["successMetrics", "metrics", "outcomes"])
    if isinstance(candidate, dict):
        candidate = candidate.get("successMetrics")
    metrics = []
    for entry in candidate if isinstance(candidate, list) else []:
        serialized = serialize_metric(entry)
        if serialized:
            metrics.append(serialized)
    if metrics:
        used.add("successMetrics")
    return metrics[:6]


def extract_solution_summary(sections: Dict[str, Any], used: Set[str]) -> Optional[str]:
    candidate = find_section(sections, ["solution", "overview"])
    if not isinstance(candidate, dict):
        return None
    for key in ("solutionOverview", "approach"):
        value = candidate.get(key)
        if isinstance(value, str) and value.strip():
            used.add("solution")
            return value.strip()
    return None


def _context_items(payload: Any, categories: Set[str], tag_pattern: Optional[str] = None) -> List[str]:
    if not isinstance(payload, dict) or not isinstance(payload.get("categorizedContext"), list):
        return []
    results = []
    for item in payload["categorizedContext"]:
        if not isinstance(item, dict):
            continue
        category = str(item.get("category") or "").lower()
        tags = sanitize_string_array(item.get("tags"))
        tagged = tag_pattern is not None and any(re.search(tag_pattern, t, re.IGNORECASE) for t in tags)
        if category not in categories and not tagged:
            continue
        text = str(item.get("content") or "").strip() or str(item.get("title") or "").strip()
        if text:
            results.append(text)
    return results


def _selected_messages(payload: Any) -> List[str]:
    if not isinstance(payload, dict) or not isinstance(payload.get("selectedMessages"), list):
        return []
    return [
        str(m["content"]).strip()
        for m in payload["selectedMessages"]
        if isinstance(m, dict) and isinstance(m.get("content"), str) and m["content"].strip()
    ]


def sections_from_prompt(params: Dict[str, Any], request: SubagentRequest) -> Tuple[Dict[str, Any], Optional[str]]:
    """Build PRD-like sections from the prompt and context payload when no PRD exists."""
    summary = next(
        (s.strip() for s in (params.get("description"), request.run.latest_user_message()) if isinstance(s, str) and s.strip()),
        None,
    )
    target_users = sanitize_string_array(params.get("targetUsers"))
    features = sanitize_string_array(params.get("keyFeatures"))
    constraints = sanitize_string_array(params.get("constraints"))

    for payload in (params.get("contextPayload"), request.run.context_payload):
        if not payload:
            continue
        target_users += _context_items(payload, {"stakeholder"}, tag_pattern=r"persona|user|audience")
        features += _context_items(payload, {"requirement"})
        constraints += _context_items(payload, {"constraint"})
        for snippet in _selected_messages(payload):
            target_users += extract_by_keyword(snippet, PERSONA_KEYWORDS)
            features += extract_by_keyword(snippet, FEATURE_KEYWORDS)
            constraints += extract_by_keyword(snippet, CONSTRAINT_KEYWORDS)

    if summary:
        target_users += extract_by_keyword(summary, PERSONA_KEYWORDS)
        features += extract_by_keyword(summary, FEATURE_KEYWORDS)
        constraints += extract_by_keyword(summary, CONSTRAINT_KEYWORDS)

    sections: Dict[str, Any] = {}
    if target_users:
        sections["targetUsers"] = dedupe(target_users)[:6]
    if features:
        sections["keyFeatures"] = dedupe(features)[:8]
    if constraints:
        sections["constraints"] = dedupe(constraints)[:6]
    metrics = [
        m if isinstance(m, dict) else {"metric": m}
        for m in params.get("successMetrics") or []
        if isinstance(m, dict) or (isinstance(m, str) and m.strip())
    ]
    if metrics:
        sections["successMetrics"] = metrics
    if summary:
        sections["solution"] = {"solutionOverview": summary}
    return sections, summary


# ---------------------------------------------------------------------------
# Heuristic profiles
# ---------------------------------------------------------------------------

_GOAL_PATTERNS = [
    re.compile(r"(needs to|needs|wants to|aims to|tries to|hopes to|in order to|so they can)\s+([^.;]+)", re.IGNORECASE),
    re.compile(r"(seeks to|focused on|goal is to)\s+([^.;]+)", re.IGNORECASE),
]
_FRUSTRATION_PATTERNS = [
    re.compile(r"(struggles with|frustrated by|blocked by|pain points? include)\s+([^.;]+)", re.IGNORECASE),
    re.compile(r"(but|however)\s+([^.;]+)", re.IGNORECASE),
]


def _sentence_case(text: str) -> str:
    text = text.strip()
    return text[:1].upper() + text[1:]


def infer_persona_name(summary: str, index: int) -> str:
    cleaned = re.sub(r"^[-•–*]+", "", summary).strip()
    if not cleaned:
        return f"Persona {index + 1}"

    colon = cleaned.find(":")
    dash = cleaned.find(" - ")
    period = cleaned.find(".")
    if 0 < colon < 80:
        candidate = cleaned[:colon]
    elif 0 < dash < 80:
        candidate = cleaned[:dash]
    elif 0 < period < 80:
        candidate = cleaned[:period]
    else:
        candidate = re.split(r"[,;]", cleaned)[0]

    candidate = re.sub(r"\(.*?\)", "", candidate).strip()
    if not candidate:
        return f"Persona {index + 1}"
    words = candidate.split()[:5]
    return " ".join(w[:1].upper() + w[1:] for w in words)


def _matches(summary: str, patterns: List["re.Pattern[str]"]) -> List[str]:
    found = []
    for pattern in patterns:
        for match in pattern.finditer(summary):
            phrase = match.group(2).strip()
            if phrase:
                found.append(_sentence_case(phrase))
    return found


def _derive_tags(name: str, summary: str) -> List[str]:
    tokens = [t for t in re.sub(r"[^\w\s]", " ", f"{name} {summary}").split() if 3 <= len(t) <= 20]
    prioritized = [t for t in tokens if t[:1].isupper()]
    return dedupe(t.lower() for t in (prioritized or tokens))[:4]


def build_persona_profiles(
    target_users: List[str],
    key_features: List[str],
    constraints: List[str],
    metrics: List[str],
    solution_summary: Optional[str],
) -> List[PersonaProfile]:
    """Deterministic persona construction from extracted inputs."""
    inputs = target_users or [solution_summary or "Primary target user inferred from PRD context."]
    personas = []
    for index, summary in enumerate(inputs[:MAX_PERSONAS]):
        summary = summary.strip() or "Primary target user persona derived from PRD context."
        name = infer_persona_name(summary, index)
        goals = _matches(summary, _GOAL_PATTERNS) or key_features[:2] or metrics[:1]
        frustrations = _matches(summary, _FRUSTRATION_PATTERNS) or constraints[:2]
        personas.append(PersonaProfile(
            id=f"persona-{index + 1}",
            name=name,
            summary=summary,
            goals=dedupe(goals)[:3],
            frustrations=dedupe(frustrations)[:3],
            opportunities=key_features[:3],
            success_indicators=metrics[:3],
            quote=summary if summary.endswith(".") else f"{summary}.",
            tags=_derive_tags(name, summary),
        ))
    return personas


def _format_block(label: str, values: List[str]) -> str:
    if not values:
        return f"{label}: (none supplied)"
    return f"{label}:\n" + "\n".join(f"- {v}" for v in values)


def build_persona_prompt(
    target_users: List[str],
    key_features: List[str],
    constraints: List[str],
    metrics: List[str],
    solution_summary: Optional[str],
    request: SubagentRequest,
) -> str:
    blocks = []
    latest = request.run.latest_user_message()
    if latest:
        blocks.append(f"Primary request or recent user message:\n{latest}")
    if solution_summary:
        blocks.append(f"Solution or product summary:\n{solution_summary}")
    blocks.append(_format_block("Target users", target_users))
    blocks.append(_format_block("Key features / jobs-to-be-done", key_features))
    blocks.append(_format_block("Constraints / frustrations", constraints))
    blocks.append(_format_block("Success metrics", metrics))
    if request.run.context_payload:
        blocks.append(
            f"Structured context payload (JSON):\n{truncate(json.dumps(request.run.context_payload, default=str), 2000)}"
        )
    research = request.output_data("research")
    if isinstance(research, dict) and research.get("summary"):
        blocks.append(f"Research summary:\n{research['summary']}")

    context = "\n\n".join(blocks)
    return (
        "You are a persona strategy analyst translating PRD inputs into 2-4 realistic personas. "
        "Each persona must capture who the user is, what motivates them, why they struggle today, "
        "and how success is measured.\n\n"
        f"Context:\n{context}\n\n"
        "Instructions:\n"
        "- Prefer real user language pulled from the context.\n"
        "- Reflect constraints and success metrics in motivations.\n"
        "- Provide a short first-person quote tying back to their job.\n"
        "- Only mention assumptions when the context lacks detail."
    )


def _normalize_persona(persona: PersonaProfile, index: int) -> PersonaProfile:
    def clean(values: List[str]) -> List[str]:
        return [v.strip() for v in values if v and v.strip()]

    return PersonaProfile(
        id=persona.id.strip() or f"persona-{index + 1}",
        name=persona.name.strip(),
        summary=persona.summary.strip(),
        goals=clean(persona.goals),
        frustrations=clean(persona.frustrations),
        opportunities=clean(persona.opportunities),
        success_indicators=clean(persona.success_indicators),
        quote=persona.quote.strip(),
        tags=clean(persona.tags),
    )


class PersonaAgent(Subagent):
    manifest = SubagentManifest(
        id="persona.builder",
        label="Persona Builder",
        version="0.2.0",
        creates="persona",
        consumes=["prd", "prompt"],
        capabilities=["analyze", "synthesize"],
        description="Transforms PRD sections or prompt context into structured persona profiles.",
        tags=["persona", "analysis", "synthesis"],
    )

    async def execute(self, request: SubagentRequest) -> SubagentResult:
        self.emit_progress(request, "persona-agent.context.start", "Resolving persona inputs")

        params = request.params
        source = request.source_artifact
        if source is not None:
            if not isinstance(source.data, dict) or "sections" not in source.data:
                raise ValueError("Persona builder expected PRD sections in the source artifact.")
            sections, prompt_summary, derived_from_prompt = dict(source.data["sections"] or {}), None, False
        else:
            sections, prompt_summary = sections_from_prompt(params, request)
            derived_from_prompt = True

        used: Set[str] = {"promptContext"} if derived_from_prompt else set()
        target_users = extract_target_users(sections, used)
        key_features = extract_key_features(sections, used)
        constraints = extract_constraints(sections, used)
        metrics = extract_success_metrics(sections, used)
        solution_summary = extract_solution_summary(sections, used)
        if not solution_summary and prompt_summary:
            solution_summary = prompt_summary
            used.add("promptSummary")

        self.emit_progress(
            request,
            "persona-agent.generation.start",
            "Generating personas",
            {
                "targetUsers": len(target_users),
                "keyFeatures": len(key_features),
                "constraints": len(constraints),
                "successMetrics": len(metrics),
                "derivedFromPrompt": derived_from_prompt,
            },
        )

        personas: List[PersonaProfile] = []
        notes: List[str] = []
        usage: Optional[Dict[str, Any]] = None
        strategy = "heuristic"
        if config.PERSONA_AGENT_FORCE_HEURISTIC:
            notes.append("Model synthesis disabled; personas built with the deterministic heuristic.")
        else:
            prompt = build_persona_prompt(target_users, key_features, constraints, metrics, solution_summary, request)
            try:
                result = await self.client.generate_structured(PersonaResponse, prompt, settings=request.run.settings)
                response: PersonaResponse = result.value
                personas = [_normalize_persona(p, i) for i, p in enumerate(response.personas)]
                notes.extend(response.notes)
                usage = result.usage
                strategy = "llm"
            except GenerationFailure as exc:
                logger.warning("Run %s: persona synthesis failed, using heuristics (%s)", request.run.run_id, exc)
                notes.append("LLM persona synthesis failed. Falling back to deterministic heuristic builder.")

        if not personas:
            personas = build_persona_profiles(target_users, key_features, constraints, metrics, solution_summary)

        self.emit_progress(
            request,
            "persona-agent.generation.complete",
            f"Generated {len(personas)} personas",
            {"strategy": strategy, "personaCount": len(personas)},
        )

        if source is None:
            notes.append("Personas generated directly from prompt/context inputs without a PRD artifact.")
        if not target_users:
            notes.append("Personas inferred from broader PRD context due to missing target users section.")

        source_id = source.id if source else f"input-{request.run.run_id}"
        source_kind = source.kind if source else "prompt"
        artifact = Artifact(
            id=f"persona-{request.run.run_id}",
            kind="persona",
            label="Persona Bundle",
            data={
                "personas": [p.to_dict() for p in personas],
                "source": {
                    "artifactId": source_id,
                    "artifactKind": source_kind,
                    "runId": request.run.run_id,
                    "sectionsUsed": sorted(used),
                },
                "notes": " ".join(notes) or None,
            },
            metadata={
                "strategy": strategy,
                "personaCount": len(personas),
                "sourceArtifactId": source_id,
                "sourceArtifactKind": source_kind,
                "sourceMode": "artifact" if source else "prompt",
                "tags": ["persona", "derived"],
            },
        )

        self.emit_progress(
            request,
            "persona-agent.artifact.ready",
            "Persona bundle ready",
            {"personaCount": len(personas), "sourceKind": source_kind, "sourceArtifactId": source_id},
        )
        return SubagentResult(
            artifact=artifact,
            metadata={"personaCount": len(personas), "sectionsUsed": sorted(used), "strategy": strategy},
            usage=usage,
        )
