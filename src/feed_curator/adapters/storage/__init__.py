"""Persistence adapters."""

from feed_curator.adapters.storage.sqlite_store import SQLiteStore

__all__ = ["SQLiteStore"]
