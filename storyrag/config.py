"""Configuration for the retrieval engine.

Every section is a plain dataclass with working defaults, so components can be
built in tests without any environment. ``RagConfig.from_env`` reads a ``.env``
file plus ``STORYRAG_*`` variables for deployed use.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigurationError

# FTS5 bm25() column weights for the classic A-D weight classes
WEIGHT_CLASSES = {"A": 1.0, "B": 0.4, "C": 0.2, "D": 0.1}

FULL_TEXT_LANGUAGES = ("chinese", "porter", "simple")


@dataclass
class CircuitBreakerConfig:
    """Configuration for a circuit breaker guarding one dependency."""

    enabled: bool = True

    # Consecutive failures before the circuit opens
    failure_threshold: int = 5

    # Seconds an open circuit waits before allowing a trial call
    recovery_timeout: float = 30.0

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be >= 1")
        if self.recovery_timeout < 0:
            raise ConfigurationError("recovery_timeout must be >= 0")


@dataclass
class CacheConfig:
    """Two-tier embedding cache configuration."""

    # L1: in-process LRU
    local_max_size: int = 10_000
    local_ttl: float = 3600.0

    # L2: shared Redis cache (None disables the tier)
    redis_url: str | None = None
    redis_ttl: int = 86_400
    key_prefix: str = "embedding:"

    def __post_init__(self):
        if self.local_max_size < 1:
            raise ConfigurationError("local_max_size must be >= 1")
        if self.local_ttl <= 0 or self.redis_ttl <= 0:
            raise ConfigurationError("cache TTLs must be positive")


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding gateway and its provider."""

    # "http" (OpenAI-compatible endpoint) or "local" (sentence-transformers)
    provider: str = "http"

    endpoint: str = "http://localhost:8093"
    api_path: str = "v1/embeddings"
    api_key: str | None = None

    # bge-m3 handles mixed Chinese/English prose; 1024 dimensions
    model_name: str = "bge-m3"
    dimension: int = 1024

    # Texts per provider call when embedding in bulk
    batch_size: int = 32

    # Per-call deadline (seconds), applied on top of client-level retries
    timeout: float = 5.0
    max_retries: int = 3
    retry_backoff: float = 0.1

    # Concurrent bulk calls allowed against the HTTP provider
    bulk_concurrency: int = 2

    # Local model settings
    device: str = "auto"  # "auto", "cuda", "mps", "cpu"
    normalize: bool = True
    query_workers: int = 2
    bulk_workers: int = 1

    breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    def __post_init__(self):
        if self.provider not in ("http", "local"):
            raise ConfigurationError(f"Unknown embedding provider: {self.provider!r}")
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be >= 1")
        if self.timeout <= 0:
            raise ConfigurationError("embedding timeout must be positive")
        if self.max_retries < 1:
            raise ConfigurationError("max_retries counts the first attempt and must be >= 1")
        if self.bulk_concurrency < 1:
            raise ConfigurationError("bulk_concurrency must be >= 1")


@dataclass
class RerankerConfig:
    """Configuration for the reranker and its fallback."""

    enabled: bool = True

    # "http" (rerank server) or "local" (sentence-transformers CrossEncoder)
    provider: str = "http"

    endpoint: str = "http://localhost:8002"
    rerank_path: str = "rerank"
    similarity_path: str = "similarity"
    health_path: str = "health"
    model_name: str = "BAAI/bge-reranker-v2-m3"
    device: str = "auto"
    batch_size: int = 16

    timeout: float = 5.0
    max_retries: int = 3
    retry_backoff: float = 0.1

    # Heuristic scoring when the provider is unavailable
    enable_fallback: bool = True

    # Check the provider once before first use
    validate_on_startup: bool = True

    cache_ttl: float = 600.0
    cache_max_size: int = 1000

    breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)

    def __post_init__(self):
        if self.provider not in ("http", "local"):
            raise ConfigurationError(f"Unknown reranker provider: {self.provider!r}")
        if self.timeout <= 0:
            raise ConfigurationError("reranker timeout must be positive")
        if self.cache_max_size < 1:
            raise ConfigurationError("cache_max_size must be >= 1")


@dataclass
class ChunkingConfig:
    """Semantic chunking parameters (sizes are in characters)."""

    max_child_size: int = 400
    min_child_size: int = 100

    # Fraction of adjacent-sentence similarities treated as topic cliffs
    cliff_percentile: float = 0.2

    # Prefer the reranker's similarity estimator over embedding cosine
    use_reranker_similarity: bool = True

    # Overlap used by the fixed-size fallback
    fallback_overlap: int = 100

    def __post_init__(self):
        if self.max_child_size < 1 or self.min_child_size < 0:
            raise ConfigurationError("chunk sizes must be positive")
        if self.min_child_size > self.max_child_size:
            raise ConfigurationError("min_child_size must not exceed max_child_size")
        if not 0 < self.cliff_percentile <= 1:
            raise ConfigurationError("cliff_percentile must be in (0, 1]")
        if not 0 <= self.fallback_overlap < self.max_child_size:
            raise ConfigurationError("fallback_overlap must be in [0, max_child_size)")


@dataclass
class FullTextConfig:
    """Lexical search configuration."""

    # "chinese" (jieba segmentation), "porter" (English stemming) or "simple"
    language: str = "chinese"

    title_weight: str = "A"
    content_weight: str = "B"

    timeout: float = 5.0

    def __post_init__(self):
        if self.language not in FULL_TEXT_LANGUAGES:
            raise ConfigurationError(
                f"Unknown full-text language {self.language!r}, "
                f"expected one of {FULL_TEXT_LANGUAGES}"
            )
        for weight in (self.title_weight, self.content_weight):
            if weight not in WEIGHT_CLASSES:
                raise ConfigurationError(f"Weight class must be one of A-D, got {weight!r}")


@dataclass
class ContextConfig:
    """Context-window extraction from oversized parents."""

    context_window_size: int = 1000
    context_overlap_size: int = 100

    def __post_init__(self):
        if self.context_window_size < 1:
            raise ConfigurationError("context_window_size must be >= 1")
        if not 0 <= self.context_overlap_size < self.context_window_size:
            raise ConfigurationError("context_overlap_size must be in [0, context_window_size)")


@dataclass
class HybridConfig:
    """Hybrid search orchestration parameters."""

    rrf_k: int = 60  # RRF constant (60 is standard)
    default_top_k: int = 10

    # Each sub-search recalls limit * recall_multiplier candidates
    recall_multiplier: int = 2

    enable_reranker: bool = True

    # Request deadline applied to each sub-search branch (seconds)
    search_timeout: float = 10.0

    def __post_init__(self):
        if self.rrf_k < 1:
            raise ConfigurationError("rrf_k must be >= 1")
        if self.default_top_k < 1:
            raise ConfigurationError("default_top_k must be >= 1")
        if self.recall_multiplier < 1:
            raise ConfigurationError("recall_multiplier must be >= 1")
        if self.search_timeout <= 0:
            raise ConfigurationError("search_timeout must be positive")


@dataclass
class RagConfig:
    """Top-level configuration aggregating every section."""

    db_path: str = "storyrag.db"
    pool_size: int = 5

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    reranker: RerankerConfig = field(default_factory=RerankerConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    full_text: FullTextConfig = field(default_factory=FullTextConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    hybrid: HybridConfig = field(default_factory=HybridConfig)

    def __post_init__(self):
        if self.pool_size < 1:
            raise ConfigurationError("pool_size must be >= 1")

    @classmethod
    def from_env(cls, dotenv_path: str | Path | None = None) -> "RagConfig":
        """Build a config from ``.env`` and ``STORYRAG_*`` environment variables.

        Unset variables keep the dataclass defaults.
        """
        load_dotenv(dotenv_path=dotenv_path)
        env = os.environ.get

        embedding = EmbeddingConfig(
            provider=env("STORYRAG_EMBEDDING_PROVIDER", "http"),
            endpoint=env("STORYRAG_EMBEDDING_ENDPOINT", "http://localhost:8093"),
            api_key=env("STORYRAG_EMBEDDING_API_KEY"),
            model_name=env("STORYRAG_EMBEDDING_MODEL", "bge-m3"),
            dimension=_env_int("STORYRAG_EMBEDDING_DIMENSION", 1024),
            batch_size=_env_int("STORYRAG_EMBEDDING_BATCH_SIZE", 32),
            timeout=_env_float("STORYRAG_EMBEDDING_TIMEOUT", 5.0),
            breaker=CircuitBreakerConfig(
                failure_threshold=_env_int("STORYRAG_EMBEDDING_FAILURE_THRESHOLD", 5),
                recovery_timeout=_env_float("STORYRAG_EMBEDDING_RECOVERY_TIMEOUT", 30.0),
            ),
            cache=CacheConfig(
                local_max_size=_env_int("STORYRAG_CACHE_MAX_SIZE", 10_000),
                local_ttl=_env_float("STORYRAG_CACHE_TTL", 3600.0),
                redis_url=env("STORYRAG_REDIS_URL") or None,
            ),
        )
        reranker = RerankerConfig(
            enabled=_env_bool("STORYRAG_RERANKER_ENABLED", True),
            provider=env("STORYRAG_RERANKER_PROVIDER", "http"),
            endpoint=env("STORYRAG_RERANKER_ENDPOINT", "http://localhost:8002"),
            model_name=env("STORYRAG_RERANKER_MODEL", "BAAI/bge-reranker-v2-m3"),
            timeout=_env_float("STORYRAG_RERANKER_TIMEOUT", 5.0),
            enable_fallback=_env_bool("STORYRAG_RERANKER_FALLBACK", True),
        )
        return cls(
            db_path=env("STORYRAG_DB_PATH", "storyrag.db"),
            embedding=embedding,
            reranker=reranker,
            chunking=ChunkingConfig(
                max_child_size=_env_int("STORYRAG_MAX_CHILD_SIZE", 400),
                min_child_size=_env_int("STORYRAG_MIN_CHILD_SIZE", 100),
            ),
            full_text=FullTextConfig(language=env("STORYRAG_FULL_TEXT_LANGUAGE", "chinese")),
            hybrid=HybridConfig(
                rrf_k=_env_int("STORYRAG_RRF_K", 60),
                default_top_k=_env_int("STORYRAG_TOP_K", 10),
                enable_reranker=_env_bool("STORYRAG_RERANKER_ENABLED", True),
            ),
        )


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")
