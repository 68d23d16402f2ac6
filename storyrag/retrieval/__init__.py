"""Hybrid retrieval over narrative knowledge.

This package provides:
- Semantic chunking of source text into parent/child chunks
- Cached, circuit-breaker-protected embedding and reranking
- Vector search and full-text search run in parallel
- Reciprocal Rank Fusion, reranking and context-window extraction

Usage:
    from storyrag.retrieval.service import create_knowledge_base

    async with create_knowledge_base() as kb:
        await kb.index("novel-1", "chapter-1", "narrative_block", text)
        results = await kb.search("novel-1", "the jade seal")
"""

from ..vectors import cosine_similarity
from .chunking import ChildFragment, SemanticChunker
from .embeddings import EmbeddingGateway
from .fusion import ReciprocalRankFusion
from .hybrid import HybridSearchOrchestrator, extract_context_window, format_context
from .indexer import Indexer
from .reranker import HeuristicScorer, Reranker, RerankResult
from .resilience import CircuitBreaker, CircuitState
from .searchers import FullTextSearcher, QueryKind, VectorSearcher, classify_query

__all__ = [
    "ChildFragment",
    "CircuitBreaker",
    "CircuitState",
    "EmbeddingGateway",
    "FullTextSearcher",
    "HeuristicScorer",
    "HybridSearchOrchestrator",
    "Indexer",
    "QueryKind",
    "Reranker",
    "RerankResult",
    "ReciprocalRankFusion",
    "SemanticChunker",
    "VectorSearcher",
    "classify_query",
    "cosine_similarity",
    "extract_context_window",
    "format_context",
]
