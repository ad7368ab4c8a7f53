"""
Generation client — the single gateway from subagents to chat models.

Maps a model id to a LangChain chat model, asks for a
pydantic-typed structured response, and reports token usage. Any failure,
including output that does not fit the schema, surfaces as GenerationFailure
so subagents can decide between a deterministic fallback and failing the run.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Type

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

import config
from errors import GenerationFailure


logger = logging.getLogger(__name__)


class GenerationResult(BaseModel):
    value: Any
    usage: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# LLM factory: maps model ids to LangChain chat models
# ---------------------------------------------------------------------------

def _anthropic(model: str, temperature: float, max_tokens: int, api_key: Optional[str]) -> Any:
    return ChatAnthropic(
        model=model,
        api_key=api_key or config.ANTHROPIC_API_KEY,
        temperature=temperature,
        max_tokens=max_tokens,
    )


def _openai(model: str, temperature: float, max_tokens: int, api_key: Optional[str]) -> Any:
    kwargs: Dict[str, Any] = {
        "model": model,
        "api_key": api_key or config.OPENAI_API_KEY,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    # OpenAI-compatible gateways (OpenRouter, local proxies)
    if config.OPENAI_BASE_URL:
        kwargs["base_url"] = config.OPENAI_BASE_URL
    return ChatOpenAI(**kwargs)


_PROVIDER_MAP = {
    "claude": _anthropic,
    "anthropic/": _anthropic,
}


def _get_llm(settings: Optional[Dict[str, Any]] = None) -> Any:
    """Instantiate a chat model from run settings, falling back to the configured defaults."""
    settings = settings or {}
    model = settings.get("model") or config.DEFAULT_MODEL
    temperature = settings.get("temperature")
    if temperature is None:
        temperature = config.DEFAULT_TEMPERATURE
    max_tokens = settings.get("maxTokens") or config.DEFAULT_MAX_TOKENS
    api_key = settings.get("apiKey")

    for prefix, factory in _PROVIDER_MAP.items():
        if model.startswith(prefix):
            return factory(model.split("/", 1)[-1], temperature, max_tokens, api_key)
    return _openai(model, temperature, max_tokens, api_key)


def _usage_from(raw: Any, model: str) -> Optional[Dict[str, Any]]:
    metadata = getattr(raw, "usage_metadata", None)
    if not metadata:
        return None
    return {
        "promptTokens": metadata.get("input_tokens", 0),
        "completionTokens": metadata.get("output_tokens", 0),
        "totalTokens": metadata.get("total_tokens", 0),
        "model": model,
    }


def summarize_usage(entries: Iterable[Optional[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    """Fold per-step usage entries into one run-level total."""
    total: Optional[Dict[str, Any]] = None
    for entry in entries:
        if not entry:
            continue
        if total is None:
            total = {"promptTokens": 0, "completionTokens": 0, "totalTokens": 0}
        for key in ("promptTokens", "completionTokens", "totalTokens"):
            total[key] += int(entry.get(key) or 0)
        if entry.get("model"):
            total["model"] = entry["model"]
    return total


class GenerationClient:
    """Structured generation over LangChain chat models."""

    def _messages(self, prompt: str, system: Optional[str]) -> list:
        messages = []
        if system:
            messages.append(SystemMessage(content=system))
        messages.append(HumanMessage(content=prompt))
        return messages

    async def generate_structured(
        self,
        schema: Type[BaseModel],
        prompt: str,
        settings: Optional[Dict[str, Any]] = None,
        system: Optional[str] = None,
    ) -> GenerationResult:
        """
        Ask the model for an instance of schema.

        Raises:
            GenerationFailure: on transport errors, refusals, or output that
                does not validate against the schema.
        """
        model = (settings or {}).get("model") or config.DEFAULT_MODEL
        try:
            llm = _get_llm(settings).with_structured_output(schema, include_raw=True)
            response = await llm.ainvoke(self._messages(prompt, system))
        except Exception as exc:  # noqa: BLE001
            logger.warning("Structured generation with %s failed: %s", model, exc)
            raise GenerationFailure(f"Generation failed for {schema.__name__}: {exc}") from exc

        parsed = response.get("parsed")
        if response.get("parsing_error") is not None or parsed is None:
            raise GenerationFailure(
                f"Model output did not match {schema.__name__}: {response.get('parsing_error')}"
            )
        return GenerationResult(value=parsed, usage=_usage_from(response.get("raw"), model))
