"""Durable context store for epics and their coordination records."""

from .context_store import ContextStore, FileContextStore, InMemoryContextStore

__all__ = [
    "ContextStore",
    "FileContextStore",
    "InMemoryContextStore",
]
