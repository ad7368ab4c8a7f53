"""
Deterministic text and section extraction shared by the subagents.

Used both to derive the inputs a step needs from upstream structured output
and to build heuristic artifacts when the model is unavailable.
"""

import re
from typing import Any, Dict, Iterable, List, Optional


PERSONA_KEYWORDS = re.compile(
    r"(persona|user|customer|stakeholder|manager|lead|designer|engineer|analyst|operator|strategist|researcher)",
    re.IGNORECASE,
)
FEATURE_KEYWORDS = re.compile(
    r"(feature|workflow|allows|enable|build|design|support|helps|optimise|optimize|dashboard|automation)",
    re.IGNORECASE,
)
CONSTRAINT_KEYWORDS = re.compile(
    r"(constraint|limitation|must|need to|blocked|cannot|compliance|deadline|restriction|budget|limited)",
    re.IGNORECASE,
)
METRIC_KEYWORDS = re.compile(r"(increase|improve|reduce|grow|target)", re.IGNORECASE)

_BULLET = re.compile(r"^[-•–*]+")


def split_into_candidates(text: str) -> List[str]:
    """Split free text into bullet-stripped sentences."""
    candidates: List[str] = []
    for chunk in re.split(r"\n+", text or ""):
        for sentence in re.split(r"(?<=[.!?])\s+", chunk):
            cleaned = _BULLET.sub("", sentence).strip()
            if cleaned:
                candidates.append(cleaned)
    return candidates


def extract_by_keyword(text: str, matcher: "re.Pattern[str]") -> List[str]:
    return [s for s in split_into_candidates(text) if matcher.search(s)]


def dedupe(values: Iterable[str]) -> List[str]:
    """Case-insensitive de-duplication, keeping first occurrence and order."""
    seen = set()
    result = []
    for value in values:
        key = value.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(value)
    return result


def sanitize_string_array(value: Any) -> List[str]:
    """
    Coerce a list of strings, or an object carrying one under "items" or
    "list", into trimmed, non-empty, unique strings.
    """
    if not value:
        return []
    if isinstance(value, dict):
        value = value.get("items") if isinstance(value.get("items"), list) else value.get("list")
    if not isinstance(value, list):
        return []
    collected: List[str] = []
    for entry in value:
        if isinstance(entry, str) and entry.strip() and entry.strip() not in collected:
            collected.append(entry.strip())
    return collected


def normalize_key(key: str) -> str:
    return re.sub(r"[\s_-]", "", key.lower())


def find_section(sections: Dict[str, Any], candidates: Iterable[str]) -> Any:
    """Look up a section by any of its names, ignoring case, spaces, dashes and underscores."""
    wanted = {normalize_key(c) for c in candidates}
    for key, value in (sections or {}).items():
        if normalize_key(key) in wanted:
            return value
    return None


def nested_strings(section: Any, key: str) -> List[str]:
    if not isinstance(section, dict):
        return []
    return sanitize_string_array(section.get(key))


def serialize_metric(metric: Any) -> Optional[str]:
    """Render {"metric", "target", "timeline"} as one line, or None when unnamed."""
    if not isinstance(metric, dict):
        return None
    name = str(metric.get("metric") or "").strip()
    if not name:
        return None
    parts = [name]
    target = str(metric.get("target") or "").strip()
    timeline = str(metric.get("timeline") or "").strip()
    if target:
        parts.append(f"Target: {target}")
    if timeline:
        parts.append(f"Timeline: {timeline}")
    return " — ".join(parts)


def truncate(text: str, limit: int = 480) -> str:
    text = (text or "").strip()
    return text if len(text) <= limit else text[: limit - 1] + "…"
