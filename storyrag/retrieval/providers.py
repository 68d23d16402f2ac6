"""Model providers behind the embedding gateway and the reranker.

HTTP providers talk to OpenAI-compatible embedding servers and to rerank
servers. Local providers run sentence-transformers models on thread pools so
the event loop stays responsive. All of them are plain async adapters: caching,
circuit breaking and fallbacks live one layer up.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import httpx
import numpy as np
from pydantic import BaseModel, ConfigDict, ValidationError

from ..config import EmbeddingConfig, RerankerConfig
from ..errors import ProviderResponseError, ServiceUnavailableError
from ..logging_config import get_logger
from .http import get_status, join_url, post_json_with_retry

logger = get_logger(__name__)


def _get_device(device: str) -> str:
    """Determine best available device."""
    if device != "auto":
        return device

    try:
        import torch

        if torch.cuda.is_available():
            return "cuda"
        elif torch.backends.mps.is_available():
            return "mps"
    except ImportError:
        pass
    return "cpu"


def _sigmoid(scores) -> np.ndarray:
    return 1 / (1 + np.exp(-np.asarray(scores, dtype=np.float64)))


# ---------------------------------------------------------------------------
# Provider response schemas
# ---------------------------------------------------------------------------


class _EmbeddingItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int | None = None
    embedding: list[float]


class _EmbeddingResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[_EmbeddingItem]


class _RerankItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    index: int
    score: float


class _RerankResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[_RerankItem]


class _SimilarityResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    similarity: float


def _parse(model: type[BaseModel], payload, api_name: str):
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ProviderResponseError(
            f"{api_name} returned an unexpected payload: {e.error_count()} validation error(s)",
            dependency=api_name,
        ) from e


# ---------------------------------------------------------------------------
# Embedding providers
# ---------------------------------------------------------------------------


class HttpEmbeddingProvider:
    """OpenAI-compatible ``/v1/embeddings`` client.

    Bulk requests (indexing) share a small semaphore so they cannot occupy
    every connection while interactive queries wait.
    """

    name = "embedding-http"

    def __init__(self, config: EmbeddingConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout)
        self._bulk_lane = asyncio.Semaphore(config.bulk_concurrency)
        self._url = join_url(config.endpoint, config.api_path)

    def _headers(self) -> dict[str, str] | None:
        if self.config.api_key:
            return {"Authorization": f"Bearer {self.config.api_key}"}
        return None

    async def embed_batch(self, texts: list[str], bulk: bool = False) -> list[np.ndarray]:
        if bulk:
            async with self._bulk_lane:
                return await self._embed(texts)
        return await self._embed(texts)

    async def _embed(self, texts: list[str]) -> list[np.ndarray]:
        payload = await post_json_with_retry(
            self._client,
            self._url,
            {"model": self.config.model_name, "input": texts},
            headers=self._headers(),
            max_retries=self.config.max_retries,
            base_backoff=self.config.retry_backoff,
            api_name=self.name,
        )
        response = _parse(_EmbeddingResponse, payload, self.name)
        items = response.data
        if len(items) != len(texts):
            raise ProviderResponseError(
                f"{self.name} returned {len(items)} vectors for {len(texts)} inputs",
                dependency=self.name,
            )
        if all(item.index is not None for item in items):
            items = sorted(items, key=lambda item: item.index)
        return [np.asarray(item.embedding, dtype=np.float32) for item in items]

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class SentenceTransformerProvider:
    """Local sentence-transformers model.

    Query embeddings and bulk embeddings run on separate executors, so a long
    indexing job never delays an interactive search.
    """

    name = "embedding-local"

    def __init__(self, config: EmbeddingConfig):
        self.config = config
        self._model = None
        self._query_pool = ThreadPoolExecutor(
            max_workers=config.query_workers, thread_name_prefix="storyrag-embed-query"
        )
        self._bulk_pool = ThreadPoolExecutor(
            max_workers=config.bulk_workers, thread_name_prefix="storyrag-embed-bulk"
        )

    def _load_model(self):
        """Lazy load the embedding model."""
        if self._model is not None:
            return

        from sentence_transformers import SentenceTransformer

        self._model = SentenceTransformer(
            self.config.model_name,
            device=_get_device(self.config.device),
        )

    async def warm_up(self) -> None:
        """Load the model ahead of the first (deadline-bounded) call."""
        await asyncio.get_running_loop().run_in_executor(self._bulk_pool, self._load_model)

    def _encode(self, texts: list[str]) -> list[np.ndarray]:
        self._load_model()
        vectors = self._model.encode(
            texts,
            batch_size=self.config.batch_size,
            normalize_embeddings=self.config.normalize,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        return [np.asarray(v, dtype=np.float32) for v in vectors]

    async def embed_batch(self, texts: list[str], bulk: bool = False) -> list[np.ndarray]:
        pool = self._bulk_pool if bulk else self._query_pool
        return await asyncio.get_running_loop().run_in_executor(pool, self._encode, texts)

    async def close(self) -> None:
        self._query_pool.shutdown(wait=False)
        self._bulk_pool.shutdown(wait=False)


def create_embedding_provider(config: EmbeddingConfig):
    if config.provider == "local":
        return SentenceTransformerProvider(config)
    return HttpEmbeddingProvider(config)


# ---------------------------------------------------------------------------
# Rerank providers
# ---------------------------------------------------------------------------


class HttpRerankProvider:
    """Rerank server client.

    ``POST /rerank`` takes ``{query, documents, top_k}`` and answers
    ``{data: [{index, score}]}``; ``POST /similarity`` takes ``{text1, text2}``
    and answers ``{similarity}``.
    """

    name = "reranker-http"
    supports_similarity = True

    def __init__(self, config: RerankerConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout)

    async def rerank(self, query: str, documents: list[str], top_k: int) -> list[tuple[int, float]]:
        payload = await post_json_with_retry(
            self._client,
            join_url(self.config.endpoint, self.config.rerank_path),
            {"query": query, "documents": documents, "top_k": top_k, "model": self.config.model_name},
            max_retries=self.config.max_retries,
            base_backoff=self.config.retry_backoff,
            api_name=self.name,
        )
        response = _parse(_RerankResponse, payload, self.name)
        for item in response.data:
            if not 0 <= item.index < len(documents):
                raise ProviderResponseError(
                    f"{self.name} returned out-of-range index {item.index}",
                    dependency=self.name,
                )
        return [(item.index, item.score) for item in response.data]

    async def similarity(self, text_a: str, text_b: str) -> float:
        payload = await post_json_with_retry(
            self._client,
            join_url(self.config.endpoint, self.config.similarity_path),
            {"text1": text_a, "text2": text_b},
            max_retries=self.config.max_retries,
            base_backoff=self.config.retry_backoff,
            api_name=self.name,
        )
        return _parse(_SimilarityResponse, payload, self.name).similarity

    async def health(self) -> bool:
        """Health endpoint when the server has one, otherwise a tiny rerank."""
        status = await get_status(
            self._client, join_url(self.config.endpoint, self.config.health_path)
        )
        if status == 200:
            return True
        if status != 404:
            return False
        results = await self.rerank("health check", ["health check document"], 1)
        return len(results) == 1

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class CrossEncoderProvider:
    """Local sentence-transformers CrossEncoder with sigmoid-normalized scores."""

    name = "reranker-local"
    supports_similarity = True

    def __init__(self, config: RerankerConfig):
        self.config = config
        self._model = None
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="storyrag-rerank")

    def _load_model(self):
        """Lazy load the reranker model."""
        if self._model is not None:
            return

        from sentence_transformers import CrossEncoder

        self._model = CrossEncoder(self.config.model_name, device=_get_device(self.config.device))

    def _predict(self, pairs: list[list[str]]) -> np.ndarray:
        self._load_model()
        scores = self._model.predict(pairs, batch_size=self.config.batch_size, show_progress_bar=False)
        return _sigmoid(scores)

    async def rerank(self, query: str, documents: list[str], top_k: int) -> list[tuple[int, float]]:
        pairs = [[query, doc] for doc in documents]
        scores = await asyncio.get_running_loop().run_in_executor(self._pool, self._predict, pairs)
        ranked = sorted(enumerate(scores.tolist()), key=lambda x: -x[1])
        return ranked[:top_k]

    async def similarity(self, text_a: str, text_b: str) -> float:
        scores = await asyncio.get_running_loop().run_in_executor(
            self._pool, self._predict, [[text_a, text_b]]
        )
        return float(scores[0])

    async def health(self) -> bool:
        await asyncio.get_running_loop().run_in_executor(self._pool, self._load_model)
        return True

    async def close(self) -> None:
        self._pool.shutdown(wait=False)


class DisabledRerankProvider:
    """Stand-in when reranking is switched off."""

    name = "reranker-disabled"
    supports_similarity = False

    async def rerank(self, query: str, documents: list[str], top_k: int) -> list[tuple[int, float]]:
        raise ServiceUnavailableError("Reranker is disabled")

    async def similarity(self, text_a: str, text_b: str) -> float:
        raise ServiceUnavailableError("Reranker is disabled")

    async def health(self) -> bool:
        return False

    async def close(self) -> None:
        return None


def create_rerank_provider(config: RerankerConfig):
    if not config.enabled:
        return DisabledRerankProvider()
    if config.provider == "local":
        return CrossEncoderProvider(config)
    return HttpRerankProvider(config)
