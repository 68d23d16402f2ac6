"""Data models for indexed knowledge chunks and search results."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class SourceType(str, Enum):
    """Kinds of narrative knowledge that can be indexed."""

    NARRATIVE_BLOCK = "narrative_block"
    CHARACTER_PROFILE = "character_profile"
    WIKI_ENTRY = "wiki_entry"
    SUMMARY = "summary"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    SourceType.NARRATIVE_BLOCK: "Story Content",
    SourceType.CHARACTER_PROFILE: "Characters",
    SourceType.WIKI_ENTRY: "World Settings",
    SourceType.SUMMARY: "Chapter Summaries",
}

# Order in which groups are rendered into LLM context
CONTEXT_GROUP_ORDER = [
    SourceType.NARRATIVE_BLOCK,
    SourceType.CHARACTER_PROFILE,
    SourceType.WIKI_ENTRY,
    SourceType.SUMMARY,
]


class ChunkLevel(str, Enum):
    """Position of a chunk in the parent/child hierarchy."""

    PARENT = "parent"
    CHILD = "child"


class KnowledgeChunk(BaseModel):
    """A stored unit of knowledge.

    A PARENT holds the full original content of a source and has no embedding.
    A CHILD is a semantically coherent fragment of its parent with an
    embedding and a position in the parent's child sequence.
    """

    id: str
    project_id: str
    source_type: SourceType
    source_id: str
    parent_id: str | None = None
    chunk_level: ChunkLevel
    content: str
    title: str | None = None
    embedding: list[float] | None = None
    order: int | None = None
    start_offset: int | None = None
    end_offset: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="after")
    def _check_level_invariants(self) -> "KnowledgeChunk":
        if self.chunk_level == ChunkLevel.CHILD:
            if self.parent_id is None or self.embedding is None:
                raise ValueError("child chunks require parent_id and embedding")
            if self.order is None or self.order < 0:
                raise ValueError("child chunks require a non-negative order")
        else:
            if self.parent_id is not None or self.embedding is not None:
                raise ValueError("parent chunks must not have parent_id or embedding")
        return self


class SearchResult(BaseModel):
    """A retrieved item, carrying whichever scores the pipeline produced."""

    id: str
    source_type: SourceType
    source_id: str
    content: str
    chunk_level: ChunkLevel = ChunkLevel.PARENT
    parent_id: str | None = None
    title: str | None = None

    vector_score: float | None = None
    full_text_score: float | None = None
    rrf_score: float | None = None
    rerank_score: float | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    # Child fragment that produced the hit, and its span in the parent
    matched_content: str | None = None
    start_offset: int | None = None
    end_offset: int | None = None

    # True when content is a window extracted from a longer parent
    truncated: bool = False

    @property
    def score(self) -> float:
        """Most refined score available."""
        for value in (self.rerank_score, self.rrf_score, self.vector_score, self.full_text_score):
            if value is not None:
                return value
        return 0.0

    @property
    def chapter_order(self) -> int | None:
        return _as_int(self.metadata.get("chapter_order"))

    @property
    def block_order(self) -> int | None:
        return _as_int(self.metadata.get("block_order"))


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
