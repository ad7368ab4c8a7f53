"""Pluggable plan step implementations (subagents) for the Product Agent."""
