"""
Shared fixtures.

No test reaches a model provider: subagents get a FakeGenerationClient that
answers from a schema -> value table and raises GenerationFailure for any
schema it has no answer for, which drives every subagent onto its
deterministic fallback.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from errors import GenerationFailure
from services.generation_client import GenerationResult


class FakeGenerationClient:
    def __init__(self, responses: Optional[Dict[type, Any]] = None, usage: Optional[Dict[str, Any]] = None):
        self.responses = dict(responses or {})
        self.usage = usage
        self.calls: List[Tuple[type, str]] = []

    async def generate_structured(self, schema, prompt, settings=None, system=None):
        self.calls.append((schema, prompt))
        value = self.responses.get(schema)
        if value is None:
            raise GenerationFailure(f"No canned response for {schema.__name__}")
        if isinstance(value, Exception):
            raise value
        return GenerationResult(value=value, usage=self.usage)


class StepClock:
    """Deterministic clock: every call is one second after the previous one."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def fake_client():
    return FakeGenerationClient()


@pytest.fixture
def clock():
    return StepClock()
