"""Cross-encoder reranking with a heuristic fallback.

Reranking is an optional refinement. When the provider is disabled, failed
its start-up check, is behind an open circuit, or errors out, candidates are
scored by ``HeuristicScorer`` instead (unless ``enable_fallback`` is off, in
which case ServiceUnavailableError is raised).
"""

import asyncio
from dataclasses import dataclass

from ..config import RerankerConfig
from ..errors import (
    CircuitOpenError,
    ServiceUnavailableError,
    TransientDependencyError,
)
from ..logging_config import get_logger
from .cache import LocalTTLCache, content_hash
from .resilience import CircuitBreaker, CircuitState
from ..tokenization import query_terms

logger = get_logger(__name__)


@dataclass
class RerankResult:
    """Relevance of one candidate, by its position in the input list."""

    index: int
    score: float


class HeuristicScorer:
    """Keyword containment plus length plausibility.

    score = 0.7 * (fraction of query terms found in the candidate)
          + 0.3 * length plausibility
    where length plausibility rises linearly to 1.0 at 500 characters and
    decays past 1000 characters, never below 0.5.
    """

    KEYWORD_WEIGHT = 0.7
    LENGTH_WEIGHT = 0.3

    def score(self, query: str, candidate: str) -> float:
        terms = query_terms(query)
        if terms:
            lowered = candidate.lower()
            keyword = sum(1 for term in terms if term in lowered) / len(terms)
        else:
            keyword = 0.0
        return self.KEYWORD_WEIGHT * keyword + self.LENGTH_WEIGHT * self.length_score(candidate)

    @staticmethod
    def length_score(candidate: str) -> float:
        length = len(candidate)
        if length > 1000:
            return max(0.5, 1.0 - (length - 1000) / 2000)
        return min(1.0, length / 500)

    def rank(self, query: str, candidates: list[str], top_k: int) -> list[RerankResult]:
        scored = [RerankResult(i, self.score(query, c)) for i, c in enumerate(candidates)]
        # Total order: score desc, then original position
        scored.sort(key=lambda r: (-r.score, r.index))
        return scored[:top_k]

    @staticmethod
    def jaccard(text_a: str, text_b: str) -> float:
        words_a = set(query_terms(text_a)) or set(text_a.lower().split())
        words_b = set(query_terms(text_b)) or set(text_b.lower().split())
        if not words_a or not words_b:
            return 0.0
        return len(words_a & words_b) / len(words_a | words_b)


class Reranker:
    """Breaker-protected, cached reranking and similarity estimation."""

    def __init__(
        self,
        provider,
        config: RerankerConfig | None = None,
        breaker: CircuitBreaker | None = None,
        cache: LocalTTLCache[list[RerankResult]] | None = None,
    ):
        self.config = config or RerankerConfig()
        self.provider = provider
        self.breaker = breaker or CircuitBreaker("reranker", self.config.breaker)
        self.cache = cache or LocalTTLCache(
            max_size=self.config.cache_max_size, ttl=self.config.cache_ttl
        )
        self.heuristic = HeuristicScorer()
        self.fallback_count = 0
        self._disabled_reason: str | None = None if self.config.enabled else "disabled by configuration"
        self._validated = not (self.config.enabled and self.config.validate_on_startup)
        self._validate_lock = asyncio.Lock()

    @property
    def is_available(self) -> bool:
        """Provider usable right now (validated, not disabled, circuit not open)."""
        if self._disabled_reason is not None:
            return False
        return self.breaker.state != CircuitState.OPEN

    @property
    def disabled_reason(self) -> str | None:
        return self._disabled_reason

    async def validate(self) -> bool:
        """Check the provider once; disable it with a reason on failure."""
        if not self.config.enabled:
            return False
        async with self._validate_lock:
            try:
                healthy = await asyncio.wait_for(self.provider.health(), timeout=self.config.timeout)
            except Exception as e:
                healthy = False
                reason = f"health check failed: {type(e).__name__}: {e}"
            else:
                reason = None if healthy else "health check reported unhealthy"
            self._validated = True
            self._disabled_reason = reason
        if healthy:
            logger.info("Reranker provider %s is available", getattr(self.provider, "name", "?"))
        else:
            logger.warning("Reranker disabled: %s", reason)
        return healthy

    async def revalidate(self) -> bool:
        """Re-run the start-up check, e.g. after the rerank server comes back."""
        self._validated = False
        return await self.validate()

    async def _ensure_validated(self) -> None:
        if not self._validated:
            await self.validate()

    async def rerank(self, query: str, candidates: list[str], top_k: int | None = None) -> list[RerankResult]:
        """Score candidates against the query, best first.

        Args:
            query: Search query
            candidates: Candidate texts, referenced by index in the results
            top_k: Maximum number of results (default: all candidates)

        Raises:
            ServiceUnavailableError: Provider unavailable and fallback disabled
        """
        if not query or not query.strip():
            return []
        indexed = [(i, c) for i, c in enumerate(candidates) if c and c.strip()]
        if not indexed:
            return []
        top_k = len(indexed) if top_k is None else max(0, min(top_k, len(indexed)))
        texts = [c for _, c in indexed]

        key = content_hash(query, str(top_k), *texts)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        await self._ensure_validated()
        try:
            if self._disabled_reason is not None:
                raise ServiceUnavailableError(f"Reranker unavailable: {self._disabled_reason}")
            pairs = await self.breaker.call(self._invoke_rerank, query, texts, top_k)
        except (ServiceUnavailableError, CircuitOpenError, TransientDependencyError) as e:
            return self._fallback(query, texts, indexed, top_k, e)

        results = [RerankResult(indexed[i][0], float(score)) for i, score in pairs]
        results.sort(key=lambda r: (-r.score, r.index))
        results = results[:top_k]
        self.cache.set(key, results)
        return results

    def _fallback(self, query, texts, indexed, top_k, error: Exception) -> list[RerankResult]:
        if not self.config.enable_fallback:
            raise ServiceUnavailableError(f"Reranker unavailable and fallback disabled: {error}") from error
        self.fallback_count += 1
        logger.info("Reranker fallback to heuristic scoring: %s", error)
        ranked = self.heuristic.rank(query, texts, top_k)
        return [RerankResult(indexed[r.index][0], r.score) for r in ranked]

    async def _invoke_rerank(self, query: str, texts: list[str], top_k: int) -> list[tuple[int, float]]:
        try:
            return await asyncio.wait_for(
                self.provider.rerank(query, texts, top_k), timeout=self.config.timeout
            )
        except asyncio.TimeoutError as e:
            raise TransientDependencyError("Reranker timed out", dependency="reranker") from e
        except (TransientDependencyError, ServiceUnavailableError):
            raise
        except Exception as e:
            raise TransientDependencyError(f"Reranker failed: {e}", dependency="reranker") from e

    async def similarity(self, text_a: str, text_b: str) -> float:
        """Semantic similarity of two texts; Jaccard overlap when unavailable."""
        if not text_a or not text_b:
            return 0.0
        await self._ensure_validated()
        if self._disabled_reason is None and getattr(self.provider, "supports_similarity", False):
            try:
                return await self.breaker.call(self._invoke_similarity, text_a, text_b)
            except (CircuitOpenError, TransientDependencyError) as e:
                logger.debug("Similarity fallback to Jaccard: %s", e)
        return self.heuristic.jaccard(text_a, text_b)

    async def _invoke_similarity(self, text_a: str, text_b: str) -> float:
        try:
            return float(
                await asyncio.wait_for(self.provider.similarity(text_a, text_b), timeout=self.config.timeout)
            )
        except asyncio.TimeoutError as e:
            raise TransientDependencyError("Similarity call timed out", dependency="reranker") from e
        except TransientDependencyError:
            raise
        except Exception as e:
            raise TransientDependencyError(f"Similarity call failed: {e}", dependency="reranker") from e

    async def supports_similarity(self) -> bool:
        """True when the provider can estimate sentence similarity right now."""
        await self._ensure_validated()
        return self.is_available and getattr(self.provider, "supports_similarity", False)

    async def adjacent_similarities(self, sentences: list[str]) -> list[float]:
        """Similarity of each neighbouring pair, in order."""
        if len(sentences) < 2:
            return []
        return list(
            await asyncio.gather(
                *(self.similarity(sentences[i], sentences[i + 1]) for i in range(len(sentences) - 1))
            )
        )

    def clear_cache(self) -> None:
        self.cache.clear()

    def reset_circuit_breaker(self) -> None:
        self.breaker.reset()

    def stats(self) -> dict:
        return {
            "provider": getattr(self.provider, "name", type(self.provider).__name__),
            "available": self.is_available,
            "disabled_reason": self._disabled_reason,
            "fallback_count": self.fallback_count,
            "cache": self.cache.stats(),
            "circuit_breaker": self.breaker.snapshot(),
        }

    async def close(self) -> None:
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()
