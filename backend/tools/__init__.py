"""Agent tools for the Product Agent."""

from .web_search import format_results, search_web

__all__ = ["search_web", "format_results"]
