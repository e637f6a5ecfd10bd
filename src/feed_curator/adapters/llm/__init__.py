"""LLM adapters."""

from feed_curator.adapters.llm.claude_client import ClaudeClient

__all__ = ["ClaudeClient"]
