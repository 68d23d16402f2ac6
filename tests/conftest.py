"""Shared fakes and fixtures for storyrag tests."""

import asyncio
import hashlib
import re

import numpy as np
import pytest

from storyrag.config import (
    ChunkingConfig,
    CircuitBreakerConfig,
    EmbeddingConfig,
    FullTextConfig,
    RagConfig,
    RerankerConfig,
)
from storyrag.retrieval.service import KnowledgeBase

_TOKEN_RE = re.compile(r"[a-z0-9]+|[一-鿿]")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class HashingEmbeddingProvider:
    """Deterministic bag-of-words embeddings; records every call."""

    name = "fake-embedding"

    def __init__(self, dimension: int = 64):
        self.dimension = dimension
        self.calls: list[tuple[list[str], bool]] = []
        self.fail = False
        self.delay = 0.0
        self.in_flight = 0
        self.cancelled = 0

    def vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimension, dtype=np.float32)
        tokens = _TOKEN_RE.findall(text.lower())
        for token in tokens:
            vec[int(hashlib.sha256(token.encode()).hexdigest(), 16) % self.dimension] += 1.0
        if not tokens:
            vec[0] = 1.0
        return vec / np.linalg.norm(vec)

    async def embed_batch(self, texts, bulk=False):
        self.calls.append((list(texts), bulk))
        if self.delay:
            self.in_flight += 1
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
            finally:
                self.in_flight -= 1
        if self.fail:
            raise RuntimeError("embedding server down")
        return [self.vector(t) for t in texts]

    @property
    def texts_embedded(self) -> int:
        return sum(len(texts) for texts, _ in self.calls)


class FakeRerankProvider:
    """Scores by query word overlap; can be told to fail."""

    name = "fake-reranker"
    supports_similarity = True

    def __init__(self):
        self.calls = 0
        self.fail = False
        self.healthy = True

    async def rerank(self, query, documents, top_k):
        self.calls += 1
        if self.fail:
            raise RuntimeError("rerank server down")
        words = set(_TOKEN_RE.findall(query.lower()))
        scored = []
        for i, doc in enumerate(documents):
            doc_words = set(_TOKEN_RE.findall(doc.lower()))
            scored.append((i, len(words & doc_words) / (len(words) or 1)))
        scored.sort(key=lambda x: -x[1])
        return scored[:top_k]

    async def similarity(self, text_a, text_b):
        if self.fail:
            raise RuntimeError("rerank server down")
        a = set(_TOKEN_RE.findall(text_a.lower()))
        b = set(_TOKEN_RE.findall(text_b.lower()))
        return len(a & b) / len(a | b) if a | b else 0.0

    async def health(self):
        return self.healthy

    async def close(self):
        return None


def make_config(tmp_path, language: str = "simple", **overrides) -> RagConfig:
    """Small, fast configuration backed by a temp database."""
    config = RagConfig(
        db_path=str(tmp_path / "kb.db"),
        pool_size=2,
        embedding=EmbeddingConfig(
            timeout=1.0,
            breaker=CircuitBreakerConfig(failure_threshold=3, recovery_timeout=30.0),
        ),
        reranker=RerankerConfig(timeout=1.0),
        chunking=ChunkingConfig(max_child_size=120, min_child_size=30, fallback_overlap=20),
        full_text=FullTextConfig(language=language),
    )
    for name, value in overrides.items():
        setattr(config, name, value)
    return config


@pytest.fixture
def embedder():
    return HashingEmbeddingProvider()


@pytest.fixture
def rerank_provider():
    return FakeRerankProvider()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kb_factory(tmp_path, embedder, rerank_provider):
    """Build (unstarted) knowledge bases wired to the fake providers."""

    def factory(**overrides) -> KnowledgeBase:
        return KnowledgeBase(
            make_config(tmp_path, **overrides),
            embedding_provider=embedder,
            rerank_provider=rerank_provider,
        )

    return factory
