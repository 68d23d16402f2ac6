"""Hybrid search combining vector and lexical retrieval with reranking.

Pipeline:
1. Vector search and full-text search run concurrently, each bounded by the
   request deadline and each degrading to an empty list on failure
2. Reciprocal Rank Fusion merges both lists by source
3. Optional cross-encoder reranking re-orders the fused candidates
4. Each hit is replaced by its parent; oversized parents are cut down to a
   window around the matched fragment
"""

import asyncio

from ..config import ContextConfig, HybridConfig
from ..errors import ServiceUnavailableError
from ..logging_config import get_logger
from ..models.chunks import CONTEXT_GROUP_ORDER, ChunkLevel, KnowledgeChunk, SearchResult, SourceType
from .fusion import ReciprocalRankFusion

logger = get_logger(__name__)

ELLIPSIS = "..."


def extract_context_window(
    text: str,
    match: str | None,
    start: int | None,
    end: int | None,
    window_size: int = 1000,
    overlap: int = 100,
) -> tuple[str, bool]:
    """Cut ``text`` down to a window around the matched span.

    Returns the (possibly ellipsized) text and whether it was truncated.
    """
    length = len(text)
    if length <= window_size:
        return text, False

    if start is None or end is None or not 0 <= start < end <= length:
        pos = text.find(match) if match else -1
        start, end = (pos, pos + len(match)) if pos >= 0 else (None, None)

    if start is None:
        win_start, win_end = 0, window_size
    else:
        win_start = max(0, start - overlap)
        win_end = min(length, end + overlap)
        if win_end - win_start > window_size:
            center = (start + end) // 2
            win_start = max(0, center - window_size // 2)
            win_end = win_start + window_size
            if win_end > length:
                win_end = length
                win_start = length - window_size

    excerpt = text[win_start:win_end]
    if win_start > 0:
        excerpt = ELLIPSIS + excerpt
    if win_end < length:
        excerpt = excerpt + ELLIPSIS
    return excerpt, True


class HybridSearchOrchestrator:
    """Coordinates sub-searches, fusion, reranking and parent resolution."""

    def __init__(
        self,
        store,
        vector_searcher,
        full_text_searcher,
        reranker=None,
        config: HybridConfig | None = None,
        context: ContextConfig | None = None,
        fuser: ReciprocalRankFusion | None = None,
    ):
        self.store = store
        self.vector_searcher = vector_searcher
        self.full_text_searcher = full_text_searcher
        self.reranker = reranker
        self.config = config or HybridConfig()
        self.context = context or ContextConfig()
        self.fuser = fuser or ReciprocalRankFusion(self.config.rrf_k)

    @property
    def reranking_enabled(self) -> bool:
        """Both the hybrid switch and the reranker itself must be on."""
        if not self.config.enable_reranker or self.reranker is None:
            return False
        return self.reranker.config.enabled

    async def _guarded(self, name: str, coro, timeout: float) -> list[SearchResult]:
        """Run one branch; a timeout or error yields an empty list."""
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("%s search exceeded %.1fs deadline, continuing without it", name, timeout)
        except Exception as e:
            logger.warning("%s search failed, continuing without it: %s", name, e, exc_info=True)
        return []

    async def search(
        self,
        project_id: str,
        query: str,
        source_type: SourceType | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> list[SearchResult]:
        """Hybrid search, best first.

        Args:
            project_id: Project to search
            query: Search query
            source_type: Optional source type filter
            limit: Number of results (default: config.default_top_k)
            timeout: Deadline per sub-search in seconds (default: config.search_timeout)
        """
        if not query or not query.strip():
            return []
        limit = limit or self.config.default_top_k
        recall_limit = limit * self.config.recall_multiplier
        deadline = timeout or self.config.search_timeout

        vector_results, text_results = await asyncio.gather(
            self._guarded(
                "Vector",
                self.vector_searcher.search(project_id, query, source_type, recall_limit),
                deadline,
            ),
            self._guarded(
                "Full-text",
                self.full_text_searcher.search(project_id, query, source_type, recall_limit),
                deadline,
            ),
        )
        logger.debug(
            "Query %r: %d vector hits, %d full-text hits",
            query,
            len(vector_results),
            len(text_results),
        )

        if self.reranking_enabled:
            fused = self.fuser.fuse(vector_results, text_results, recall_limit)
            results = await self._rerank(query, fused, limit)
        else:
            results = self.fuser.fuse(vector_results, text_results, limit)

        return await self._resolve_parents(results)

    async def _rerank(self, query: str, fused: list[SearchResult], limit: int) -> list[SearchResult]:
        if not fused:
            return fused
        candidates = [r.matched_content or r.content for r in fused]
        try:
            ranked = await self.reranker.rerank(query, candidates, top_k=limit)
        except ServiceUnavailableError as e:
            logger.info("Reranking unavailable, keeping fused order: %s", e)
            return fused[:limit]
        except Exception as e:
            logger.warning("Reranking failed, keeping fused order: %s", e, exc_info=True)
            return fused[:limit]

        reranked = []
        for item in ranked:
            result = fused[item.index]
            result.rerank_score = item.score
            reranked.append(result)
        return reranked

    async def _resolve_parents(self, results: list[SearchResult]) -> list[SearchResult]:
        parent_ids = [r.parent_id for r in results if r.parent_id]
        if not parent_ids:
            return results
        try:
            parents = await self.store.get_chunks(parent_ids)
        except Exception as e:
            logger.warning("Parent lookup failed, returning matched fragments: %s", e, exc_info=True)
            return results
        return [self._with_parent(r, parents.get(r.parent_id)) if r.parent_id else r for r in results]

    def _with_parent(self, result: SearchResult, parent: KnowledgeChunk | None) -> SearchResult:
        if parent is None:
            logger.warning("Parent %s of chunk %s is missing", result.parent_id, result.id)
            return result
        content, truncated = extract_context_window(
            parent.content,
            result.matched_content,
            result.start_offset,
            result.end_offset,
            self.context.context_window_size,
            self.context.context_overlap_size,
        )
        return result.model_copy(
            update={
                "id": parent.id,
                "content": content,
                "chunk_level": ChunkLevel.PARENT,
                "parent_id": None,
                "title": parent.title,
                "metadata": dict(parent.metadata),
                "truncated": truncated,
            }
        )

    async def build_context(
        self,
        project_id: str,
        query: str,
        limit: int | None = None,
        source_type: SourceType | None = None,
    ) -> str:
        """Search and render results as grouped LLM context."""
        results = await self.search(project_id, query, source_type=source_type, limit=limit)
        return format_context(results)


def _context_sort_key(indexed: tuple[int, SearchResult]):
    position, result = indexed
    if result.chapter_order is not None:
        return (0, result.chapter_order, result.block_order or 0, position)
    return (1, 0, 0, position)


def format_context(results: list[SearchResult]) -> str:
    """Group results by source type and render them under headers.

    Within a group, entries with a known chapter position come first in
    story order; the rest keep their relevance order.
    """
    if not results:
        return ""

    sections = []
    for source_type in CONTEXT_GROUP_ORDER:
        group = [r for r in results if r.source_type == source_type]
        if not group:
            continue
        ordered = [r for _, r in sorted(enumerate(group), key=_context_sort_key)]

        lines = [f"=== {source_type.display_name} ==="]
        for result in ordered:
            heading = []
            if result.title:
                heading.append(f"【{result.title}】")
            if result.chapter_order is not None:
                heading.append(f"(Chapter {result.chapter_order})")
            if heading:
                lines.append(" ".join(heading))
            body = result.content.strip()
            lines.append(f"[Excerpt] {body}" if result.truncated else body)
            lines.append("")
        sections.append("\n".join(lines).rstrip())

    return "\n\n".join(sections)
