"""Artifacts produced by subagents and the manifests that describe them."""

from typing import Any, Dict, List, Optional

from pydantic import Field

from models.base import CamelModel


class Artifact(CamelModel):
    id: str
    kind: str
    version: str = "1.0.0"
    label: Optional[str] = None
    data: Any = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class SubagentManifest(CamelModel):
    """Static description of a subagent, used for discovery and compatibility checks."""

    id: str
    label: str
    version: str
    creates: str
    consumes: List[str] = Field(default_factory=list)
    capabilities: List[str] = Field(default_factory=list)
    description: str = ""
    tags: List[str] = Field(default_factory=list)
