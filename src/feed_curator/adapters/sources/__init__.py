"""Source adapters for fetching items."""

from feed_curator.adapters.sources.inoreader_source import InoreaderSource

__all__ = ["InoreaderSource"]
