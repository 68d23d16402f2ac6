"""Embedding gateway: cached, circuit-breaker-protected access to a provider.

Every text is keyed by the SHA-256 of its content. Lookups go through the
two-tier cache first; only misses reach the provider, in batches of
``batch_size``, each bounded by ``timeout`` seconds. Provider errors and
timeouts are counted by the circuit breaker and surface as
TransientDependencyError (or CircuitOpenError while the circuit is open).
"""

import asyncio

import numpy as np

from ..config import EmbeddingConfig
from ..errors import InvalidQueryError, ProviderResponseError, TransientDependencyError
from ..logging_config import get_logger
from ..vectors import cosine_similarity
from .cache import TwoTierCache, content_hash, create_embedding_cache
from .resilience import CircuitBreaker

logger = get_logger(__name__)


class EmbeddingGateway:
    """Cache-aware, breaker-protected embedding client."""

    def __init__(
        self,
        provider,
        config: EmbeddingConfig | None = None,
        cache: TwoTierCache[np.ndarray] | None = None,
        breaker: CircuitBreaker | None = None,
    ):
        self.config = config or EmbeddingConfig()
        self.provider = provider
        self.cache = cache or create_embedding_cache(self.config.cache)
        self.breaker = breaker or CircuitBreaker("embedding", self.config.breaker)
        self.provider_calls = 0

    async def embed(self, text: str) -> np.ndarray:
        """Embed a single (query) text."""
        if not text or not text.strip():
            raise InvalidQueryError("Cannot embed blank text")

        key = content_hash(text)
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        vector = (await self._call([text], bulk=False))[0]
        await self.cache.set(key, vector)
        return vector

    async def embed_batch(self, texts: list[str], bulk: bool = False) -> list[np.ndarray]:
        """Embed many texts, returning vectors in input order.

        Args:
            texts: Texts to embed; none may be blank
            bulk: Route provider calls through the bulk lane (indexing)
        """
        if not texts:
            return []
        if any(not t or not t.strip() for t in texts):
            raise InvalidQueryError("Cannot embed blank text")

        keys = [content_hash(t) for t in texts]
        results: list[np.ndarray | None] = [None] * len(texts)

        # Unique misses, remembering every position each one fills
        missing: dict[str, list[int]] = {}
        for i, key in enumerate(keys):
            if key in missing:
                missing[key].append(i)
                continue
            cached = await self.cache.get(key)
            if cached is not None:
                results[i] = cached
            else:
                missing[key] = [i]

        pending = list(missing.items())
        for start in range(0, len(pending), self.config.batch_size):
            batch = pending[start : start + self.config.batch_size]
            vectors = await self._call([texts[positions[0]] for _, positions in batch], bulk=bulk)
            for (key, positions), vector in zip(batch, vectors):
                await self.cache.set(key, vector)
                for i in positions:
                    results[i] = vector

        return results  # type: ignore[return-value]

    async def adjacent_similarities(self, sentences: list[str]) -> list[float]:
        """Cosine similarity of each neighbouring sentence pair."""
        if len(sentences) < 2:
            return []
        vectors = await self.embed_batch(sentences, bulk=True)
        return [cosine_similarity(vectors[i], vectors[i + 1]) for i in range(len(vectors) - 1)]

    async def _call(self, texts: list[str], bulk: bool) -> list[np.ndarray]:
        return await self.breaker.call(self._invoke, texts, bulk)

    async def _invoke(self, texts: list[str], bulk: bool) -> list[np.ndarray]:
        self.provider_calls += 1
        try:
            vectors = await asyncio.wait_for(
                self.provider.embed_batch(texts, bulk=bulk), timeout=self.config.timeout
            )
        except asyncio.TimeoutError as e:
            logger.warning("Embedding call timed out after %.1fs (%d texts)", self.config.timeout, len(texts))
            raise TransientDependencyError("Embedding provider timed out", dependency="embedding") from e
        except TransientDependencyError:
            raise
        except Exception as e:
            logger.warning("Embedding provider failed: %s", e, exc_info=True)
            raise TransientDependencyError(
                f"Embedding provider failed: {e}", dependency="embedding"
            ) from e

        if len(vectors) != len(texts):
            raise ProviderResponseError(
                f"Expected {len(texts)} embeddings, got {len(vectors)}", dependency="embedding"
            )
        return [np.asarray(v, dtype=np.float32) for v in vectors]

    async def warm_up(self) -> None:
        warm_up = getattr(self.provider, "warm_up", None)
        if warm_up is not None:
            await warm_up()

    async def clear_cache(self) -> None:
        await self.cache.clear()

    def reset_circuit_breaker(self) -> None:
        self.breaker.reset()

    def stats(self) -> dict:
        """Get cache and breaker statistics."""
        return {
            "provider": getattr(self.provider, "name", type(self.provider).__name__),
            "provider_calls": self.provider_calls,
            "cache": self.cache.stats(),
            "circuit_breaker": self.breaker.snapshot(),
        }

    async def close(self) -> None:
        await self.cache.close()
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()
