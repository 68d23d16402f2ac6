"""KnowledgeBase: the retrieval engine as one object.

Usage:
    async with create_knowledge_base(RagConfig.from_env()) as kb:
        await kb.index("novel-1", "block-7", SourceType.NARRATIVE_BLOCK, text,
                       metadata={"chapter_order": 3, "block_order": 7})
        results = await kb.search("novel-1", "who stole the jade seal")
        context = await kb.build_context("novel-1", "who stole the jade seal")
"""

from typing import Any

from ..config import RagConfig
from ..logging_config import get_logger
from ..models.chunks import SearchResult, SourceType
from ..storage.database import ChunkStore
from .chunking import SemanticChunker
from .embeddings import EmbeddingGateway
from .hybrid import HybridSearchOrchestrator
from .indexer import Indexer
from .providers import create_embedding_provider, create_rerank_provider
from .reranker import Reranker
from .searchers import FullTextSearcher, VectorSearcher

logger = get_logger(__name__)


class KnowledgeBase:
    """Indexing, hybrid search and operational controls for one store."""

    def __init__(
        self,
        config: RagConfig | None = None,
        embedding_provider=None,
        rerank_provider=None,
        store: ChunkStore | None = None,
    ):
        self.config = config or RagConfig()
        cfg = self.config

        self.store = store or ChunkStore(
            cfg.db_path,
            language=cfg.full_text.language,
            title_weight=cfg.full_text.title_weight,
            content_weight=cfg.full_text.content_weight,
            pool_size=cfg.pool_size,
        )
        self.embeddings = EmbeddingGateway(
            embedding_provider or create_embedding_provider(cfg.embedding),
            cfg.embedding,
        )
        self.reranker = Reranker(rerank_provider or create_rerank_provider(cfg.reranker), cfg.reranker)
        self.chunker = SemanticChunker(cfg.chunking, embeddings=self.embeddings, reranker=self.reranker)
        self.indexer = Indexer(self.store, self.chunker, self.embeddings)
        self.orchestrator = HybridSearchOrchestrator(
            self.store,
            VectorSearcher(self.store, self.embeddings),
            FullTextSearcher(self.store),
            reranker=self.reranker,
            config=cfg.hybrid,
            context=cfg.context,
        )
        self._started = False

    async def start(self) -> None:
        """Connect the store and check providers (idempotent)."""
        if self._started:
            return
        await self.store.connect()
        await self.embeddings.warm_up()
        if self.config.reranker.enabled and self.config.reranker.validate_on_startup:
            await self.reranker.validate()
        self._started = True
        logger.info(
            "Knowledge base ready (db=%s, full-text=%s, reranker=%s)",
            self.config.db_path,
            self.store.effective_language,
            "available" if self.reranker.is_available else "unavailable",
        )

    async def close(self) -> None:
        await self.store.close()
        await self.embeddings.close()
        await self.reranker.close()
        self._started = False

    async def __aenter__(self) -> "KnowledgeBase":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    async def search(
        self,
        project_id: str,
        query: str,
        source_type: SourceType | str | None = None,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> list[SearchResult]:
        return await self.orchestrator.search(
            project_id,
            query,
            source_type=SourceType(source_type) if source_type else None,
            limit=limit,
            timeout=timeout,
        )

    async def build_context(
        self,
        project_id: str,
        query: str,
        limit: int | None = None,
        source_type: SourceType | str | None = None,
    ) -> str:
        return await self.orchestrator.build_context(
            project_id,
            query,
            limit=limit,
            source_type=SourceType(source_type) if source_type else None,
        )

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index(
        self,
        project_id: str,
        source_id: str,
        source_type: SourceType | str,
        content: str,
        metadata: dict[str, Any] | None = None,
        title: str | None = None,
    ) -> str | None:
        return await self.indexer.index(project_id, source_id, source_type, content, metadata, title)

    async def delete(self, source_id: str) -> int:
        return await self.indexer.delete(source_id)

    async def delete_project(self, project_id: str) -> int:
        return await self.indexer.delete_project(project_id)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def stats(self, project_id: str) -> dict:
        return await self.store.stats(project_id)

    def health(self) -> dict:
        """Dependency status: breakers, reranker availability, full-text language."""
        embedding_breaker = self.embeddings.breaker.snapshot()
        return {
            "status": "degraded"
            if embedding_breaker["state"] != "closed" or self.store.degraded_reason
            else "ok",
            "embedding": embedding_breaker,
            "reranker": {
                "enabled": self.config.reranker.enabled,
                "available": self.reranker.is_available,
                "disabled_reason": self.reranker.disabled_reason,
                "circuit_breaker": self.reranker.breaker.snapshot(),
            },
            "full_text": {
                "configured_language": self.store.language,
                "effective_language": self.store.effective_language,
                "degraded_reason": self.store.degraded_reason,
            },
        }

    def cache_stats(self) -> dict:
        return {
            "embedding": self.embeddings.stats(),
            "reranker": self.reranker.stats(),
        }

    async def clear_caches(self) -> None:
        await self.embeddings.clear_cache()
        self.reranker.clear_cache()
        logger.info("Embedding and reranker caches cleared")

    def reset_circuit_breakers(self) -> None:
        self.embeddings.reset_circuit_breaker()
        self.reranker.reset_circuit_breaker()

    async def revalidate_reranker(self) -> bool:
        return await self.reranker.revalidate()


def create_knowledge_base(config: RagConfig | None = None, **kwargs) -> KnowledgeBase:
    """Create a knowledge base; use it as an async context manager."""
    return KnowledgeBase(config, **kwargs)
