"""Storage layer for the SQLite artifact metadata cache."""

from .cache_store import CacheStore

__all__ = ["CacheStore"]
