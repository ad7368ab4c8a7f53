"""
Web Search Tool — Tavily Search API wrapper for the research agent.

Returns structured results rather than prose so the research agent can cite
sources. Requires the TAVILY_API_KEY environment variable; without it the
search yields no results and the agent synthesizes from the conversation
alone.
"""

import logging
import os
from typing import Dict, List

from tavily import TavilyClient


logger = logging.getLogger(__name__)


def search_web(query: str, max_results: int = 5) -> List[Dict[str, str]]:
    """
    Search the web for current information on a topic.

    Args:
        query: The search query string.
        max_results: Maximum number of results to return (default 5).

    Returns:
        A list of {"title", "url", "content"} dicts, empty when search is
        unavailable or failed.
    """
    api_key = os.environ.get("TAVILY_API_KEY")
    if not api_key:
        logger.warning("TAVILY_API_KEY is not set; skipping web search for %r", query)
        return []

    client = TavilyClient(api_key=api_key)

    try:
        response = client.search(
            query=query,
            max_results=max_results,
            search_depth="basic",
        )
    except Exception as exc:  # noqa: BLE001
        logger.warning("Web search for %r failed: %s", query, exc)
        return []

    return [
        {
            "title": r.get("title", "No title"),
            "url": r.get("url", ""),
            "content": r.get("content", ""),
        }
        for r in response.get("results", [])
    ]


def format_results(results: List[Dict[str, str]]) -> str:
    """Render results as a numbered list for inclusion in a prompt."""
    if not results:
        return "No web results available."
    return "\n\n".join(
        f"{i}. {r['title']}\n   URL: {r['url']}\n   {r['content']}"
        for i, r in enumerate(results, 1)
    )
