"""Storage backends for the AOI bridge."""

from .context_store import (
    ContextEntry,
    ContextEntryType,
    ContextHistory,
    ContextQuery,
    ContextStore,
)

__all__ = [
    "ContextEntry",
    "ContextEntryType",
    "ContextHistory",
    "ContextQuery",
    "ContextStore",
]
