"""Data models for indexed chunks and search results."""

from .chunks import (
    CONTEXT_GROUP_ORDER,
    ChunkLevel,
    KnowledgeChunk,
    SearchResult,
    SourceType,
)

__all__ = [
    "CONTEXT_GROUP_ORDER",
    "ChunkLevel",
    "KnowledgeChunk",
    "SearchResult",
    "SourceType",
]
