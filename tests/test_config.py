"""Tests for configuration defaults, validation and environment loading."""

import os

import pytest

from storyrag.config import (
    ChunkingConfig,
    ContextConfig,
    FullTextConfig,
    HybridConfig,
    RagConfig,
)
from storyrag.errors import ConfigurationError


@pytest.fixture
def clean_env(monkeypatch):
    """Isolated os.environ without STORYRAG_* variables."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("STORYRAG_")}
    monkeypatch.setattr(os, "environ", env)
    return env


def test_defaults():
    config = RagConfig()
    assert config.hybrid.rrf_k == 60
    assert config.hybrid.recall_multiplier == 2
    assert config.chunking.max_child_size == 400
    assert config.chunking.min_child_size == 100
    assert config.context.context_window_size == 1000
    assert config.full_text.language == "chinese"
    assert config.embedding.breaker.failure_threshold == 5
    assert config.embedding.breaker.recovery_timeout == 30


@pytest.mark.parametrize(
    "build",
    [
        lambda: ChunkingConfig(max_child_size=50, min_child_size=100),
        lambda: ChunkingConfig(cliff_percentile=0),
        lambda: ContextConfig(context_window_size=100, context_overlap_size=100),
        lambda: HybridConfig(rrf_k=0),
        lambda: FullTextConfig(language="klingon"),
        lambda: RagConfig(pool_size=0),
    ],
)
def test_invalid_values_are_rejected(build):
    with pytest.raises(ConfigurationError):
        build()


def test_from_env_reads_dotenv_and_environment(clean_env, tmp_path):
    dotenv = tmp_path / ".env"
    dotenv.write_text(
        "STORYRAG_DB_PATH=/data/story.db\n"
        "STORYRAG_FULL_TEXT_LANGUAGE=porter\n"
        "STORYRAG_RRF_K=30\n"
    )
    clean_env["STORYRAG_RRF_K"] = "45"
    clean_env["STORYRAG_RERANKER_ENABLED"] = "false"
    clean_env["STORYRAG_REDIS_URL"] = "redis://cache:6379/0"

    config = RagConfig.from_env(dotenv)

    assert config.db_path == "/data/story.db"
    assert config.full_text.language == "porter"
    # Real environment wins over .env
    assert config.hybrid.rrf_k == 45
    assert config.reranker.enabled is False
    assert config.hybrid.enable_reranker is False
    assert config.embedding.cache.redis_url == "redis://cache:6379/0"


def test_from_env_rejects_malformed_numbers(clean_env, tmp_path):
    clean_env["STORYRAG_TOP_K"] = "ten"
    with pytest.raises(ConfigurationError):
        RagConfig.from_env(tmp_path / "missing.env")
