"""
Subagent registry — maps manifest ids to subagent implementations.

Plan nodes reference subagents by id; the executor resolves them here.
Instances are created lazily and cached per registry.
"""

from typing import Dict, List, Optional, Type

from agents.base import Subagent
from agents.context_analyzer import ContextAnalyzer
from agents.persona_agent import PersonaAgent
from agents.prd_assembler import PrdAssembler
from agents.research_agent import ResearchAgent
from agents.section_writer import SectionWriter
from agents.storymap_agent import StoryMapAgent
from models.artifact import SubagentManifest
from services.generation_client import GenerationClient


DEFAULT_SUBAGENTS: List[Type[Subagent]] = [
    ContextAnalyzer,
    SectionWriter,
    PrdAssembler,
    PersonaAgent,
    ResearchAgent,
    StoryMapAgent,
]


class SubagentRegistry:
    def __init__(self, client: GenerationClient) -> None:
        self.client = client
        self._classes: Dict[str, Type[Subagent]] = {}
        self._instances: Dict[str, Subagent] = {}

    def register(self, subagent_cls: Type[Subagent]) -> None:
        subagent_id = subagent_cls.manifest.id
        if subagent_id in self._classes:
            raise ValueError(f"Subagent '{subagent_id}' is already registered.")
        self._classes[subagent_id] = subagent_cls

    def list(self) -> List[SubagentManifest]:
        return [cls.manifest for cls in self._classes.values()]

    def get(self, subagent_id: str) -> Optional[SubagentManifest]:
        cls = self._classes.get(subagent_id)
        return cls.manifest if cls else None

    def filter_by_artifact(self, artifact_kind: str) -> List[SubagentManifest]:
        """Manifests of subagents that create or consume the given artifact kind."""
        return [
            m for m in self.list()
            if m.creates == artifact_kind or artifact_kind in m.consumes
        ]

    def create(self, subagent_id: str) -> Subagent:
        if subagent_id not in self._instances:
            cls = self._classes.get(subagent_id)
            if cls is None:
                raise KeyError(f"No subagent registered under '{subagent_id}'.")
            self._instances[subagent_id] = cls(self.client)
        return self._instances[subagent_id]


def build_default_registry(client: Optional[GenerationClient] = None) -> SubagentRegistry:
    registry = SubagentRegistry(client or GenerationClient())
    for subagent_cls in DEFAULT_SUBAGENTS:
        registry.register(subagent_cls)
    return registry
