"""Indexing of sources into parent/child chunks."""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any

from ..errors import IndexingError
from ..logging_config import get_logger
from ..models.chunks import ChunkLevel, KnowledgeChunk, SourceType

logger = get_logger(__name__)


class Indexer:
    """Keeps the chunk store in sync with source content.

    Chunking and embedding happen before anything is written, so a failing
    provider leaves the previously indexed version of a source in place.
    The write itself replaces all of a source's chunks in one transaction.
    """

    def __init__(self, store, chunker, embeddings):
        self.store = store
        self.chunker = chunker
        self.embeddings = embeddings
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _source_lock(self, source_id: str):
        """Serialize concurrent writes to the same source."""
        lock = self._locks.setdefault(source_id, asyncio.Lock())
        self._lock_users[source_id] = self._lock_users.get(source_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[source_id] -= 1
            if self._lock_users[source_id] == 0:
                del self._lock_users[source_id]
                del self._locks[source_id]

    async def index(
        self,
        project_id: str,
        source_id: str,
        source_type: SourceType | str,
        content: str,
        metadata: dict[str, Any] | None = None,
        title: str | None = None,
    ) -> str | None:
        """Index (or re-index) a source.

        Args:
            project_id: Owning project
            source_id: Stable id of the source; re-indexing replaces it
            source_type: Kind of source
            content: Full source text; blank content removes the source
            metadata: Stored on the parent and copied to every child
            title: Display title (default: metadata["title"])

        Returns:
            The new parent chunk id, or None when the content was blank

        Raises:
            IndexingError: Embedding or persistence failed
        """
        source_type = SourceType(source_type)
        metadata = dict(metadata or {})
        title = title or metadata.get("title")

        async with self._source_lock(source_id):
            if not content or not content.strip():
                deleted = await self.store.delete_source(source_id)
                logger.info("Blank content for source %s, removed %d chunks", source_id, deleted)
                return None

            fragments = await self.chunker.chunk(content)
            try:
                vectors = await self.embeddings.embed_batch([f.content for f in fragments], bulk=True)
            except Exception as e:
                logger.error("Embedding failed while indexing source %s: %s", source_id, e)
                raise IndexingError(f"Could not embed source {source_id}: {e}", source_id) from e

            parent_id = uuid.uuid4().hex
            parent = KnowledgeChunk(
                id=parent_id,
                project_id=project_id,
                source_type=source_type,
                source_id=source_id,
                chunk_level=ChunkLevel.PARENT,
                content=content,
                title=title,
                metadata=metadata,
            )
            children = [
                KnowledgeChunk(
                    id=uuid.uuid4().hex,
                    project_id=project_id,
                    source_type=source_type,
                    source_id=source_id,
                    parent_id=parent_id,
                    chunk_level=ChunkLevel.CHILD,
                    content=fragment.content,
                    title=title,
                    embedding=vector.tolist(),
                    order=fragment.order,
                    start_offset=fragment.start,
                    end_offset=fragment.end,
                    metadata=dict(metadata),
                )
                for fragment, vector in zip(fragments, vectors)
            ]

            try:
                await self.store.replace_source(parent, children)
            except Exception as e:
                raise IndexingError(f"Could not store source {source_id}: {e}", source_id) from e

        logger.info(
            "Indexed %s %s (project %s): %d chars -> %d children",
            source_type.value,
            source_id,
            project_id,
            len(content),
            len(children),
        )
        return parent_id

    async def delete(self, source_id: str) -> int:
        """Remove a source's parent and children. Returns chunks deleted."""
        async with self._source_lock(source_id):
            deleted = await self.store.delete_source(source_id)
        logger.info("Deleted source %s (%d chunks)", source_id, deleted)
        return deleted

    async def delete_project(self, project_id: str) -> int:
        deleted = await self.store.delete_project(project_id)
        logger.info("Deleted project %s (%d chunks)", project_id, deleted)
        return deleted
