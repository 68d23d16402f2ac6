"""Tests for semantic chunking."""

import asyncio

import pytest

from storyrag.config import ChunkingConfig
from storyrag.retrieval import chunking
from storyrag.retrieval.chunking import (
    SemanticChunker,
    cliff_threshold,
    join_sentences,
    split_sentences,
)
from storyrag.retrieval.embeddings import EmbeddingGateway


class ScriptedSimilarity:
    """Reranker stand-in returning fixed adjacent similarities."""

    def __init__(self, similarities):
        self.similarities = similarities

    async def supports_similarity(self):
        return True

    async def adjacent_similarities(self, sentences):
        return self.similarities[: len(sentences) - 1]


class BrokenSimilarity:
    async def supports_similarity(self):
        return True

    async def adjacent_similarities(self, sentences):
        raise RuntimeError("similarity service down")


def chunk(text, config=None, **kwargs):
    return asyncio.run(SemanticChunker(config or ChunkingConfig(), **kwargs).chunk(text))


def test_split_sentences_on_latin_and_cjk_punctuation():
    assert split_sentences("One. Two! Three? 四。五！六？") == [
        "One.",
        "Two!",
        "Three?",
        "四。",
        "五！",
        "六？",
    ]


def test_decimal_point_does_not_end_a_sentence():
    assert split_sentences("Pi is 3.14 roughly. Next.") == ["Pi is 3.14 roughly.", "Next."]


def test_quoted_passages_are_never_split():
    text = '他说：“我来了。你走吧！”然后离开了。She said "Wait. Stop!" and left. 「一。二。」完。'
    sentences = split_sentences(text)
    assert "他说：“我来了。你走吧！”然后离开了。" in sentences
    assert 'She said "Wait. Stop!" and left.' in sentences
    assert "「一。二。」完。" in sentences


def test_quotes_survive_chunking_intact():
    quote = "“这是第一句。这是第二句。这是第三句。”"
    text = ("前面的叙述很长。" * 10) + f"他说：{quote}" + ("后面的叙述也很长。" * 10)
    config = ChunkingConfig(max_child_size=60, min_child_size=10, fallback_overlap=10)
    fragments = chunk(text, config)
    assert any(quote in f.content for f in fragments)


def test_join_uses_space_only_between_non_cjk():
    assert join_sentences("Hello.", "World.") == "Hello. World."
    assert join_sentences("你好。", "世界。") == "你好。世界。"
    assert join_sentences("Hello.", "世界。") == "Hello.世界。"
    assert join_sentences("", "x") == "x"


def test_cliff_threshold_percentile_index():
    sims = [0.9, 0.1, 0.5, 0.7, 0.3]
    # n=5, p=0.2 -> index max(0, 1 - 1) = 0 -> lowest value
    assert cliff_threshold(sims, 0.2) == 0.1
    assert cliff_threshold(sims, 0.4) == 0.3
    assert cliff_threshold([], 0.2) is None


def test_splits_at_similarity_cliff_once_minimum_reached():
    text = "Aa aa aa aa. Bb bb bb bb. Cc cc cc cc. Dd dd dd dd."
    config = ChunkingConfig(max_child_size=200, min_child_size=20, cliff_percentile=0.34, fallback_overlap=10)
    reranker = ScriptedSimilarity([0.9, 0.1, 0.9])

    fragments = chunk(text, config, reranker=reranker)

    assert [f.content for f in fragments] == [
        "Aa aa aa aa. Bb bb bb bb.",
        "Cc cc cc cc. Dd dd dd dd.",
    ]
    assert [f.order for f in fragments] == [0, 1]


def test_every_chunk_respects_max_size():
    sentences = [f"Sentence number {i} talks about topic {i % 4}." for i in range(60)]
    text = " ".join(sentences)
    config = ChunkingConfig(max_child_size=120, min_child_size=30, fallback_overlap=20)

    fragments = chunk(text, config)

    assert len(fragments) > 1
    assert all(len(f.content) <= 120 for f in fragments)
    assert " ".join(f.content for f in fragments) == text


def test_single_oversized_sentence_is_kept_whole():
    long_sentence = "word " * 60 + "end."
    text = f"Short one. {long_sentence} Short two."
    config = ChunkingConfig(max_child_size=50, min_child_size=5, fallback_overlap=10)

    fragments = chunk(text, config)

    assert long_sentence.strip() in [f.content for f in fragments]
    for f in fragments:
        assert len(f.content) <= 50 or f.content == long_sentence.strip()


def test_offsets_point_into_the_original_text():
    text = "First sentence here. Second sentence here. Third sentence here."
    config = ChunkingConfig(max_child_size=45, min_child_size=5, fallback_overlap=10)

    fragments = chunk(text, config)

    for f in fragments:
        assert text[f.start : f.end] == f.content


def test_uses_embedding_similarity_without_reranker(embedder):
    gateway = EmbeddingGateway(embedder)
    text = "The cat sat. The cat slept. Rockets launch fast. Rockets launch high."
    config = ChunkingConfig(max_child_size=200, min_child_size=10, fallback_overlap=10)

    fragments = chunk(text, config, embeddings=gateway)

    assert embedder.calls
    assert [f.content for f in fragments] == [
        "The cat sat. The cat slept.",
        "Rockets launch fast. Rockets launch high.",
    ]


def test_similarity_failure_still_chunks_by_size():
    text = " ".join(f"Line {i} of the story." for i in range(30))
    config = ChunkingConfig(max_child_size=100, min_child_size=20, fallback_overlap=10)

    fragments = chunk(text, config, reranker=BrokenSimilarity())

    assert len(fragments) > 1
    assert all(len(f.content) <= 100 for f in fragments)


def test_internal_failure_falls_back_to_fixed_size(monkeypatch):
    def explode(text):
        raise ValueError("bad input")

    monkeypatch.setattr(chunking, "split_sentences", explode)
    text = "abc. " * 100
    config = ChunkingConfig(max_child_size=100, min_child_size=20, fallback_overlap=10)

    fragments = chunk(text, config)

    assert fragments
    assert all(len(f.content) <= 100 for f in fragments)


def test_simple_chunk_cuts_at_sentence_end_with_overlap():
    chunker = SemanticChunker(ChunkingConfig(max_child_size=40, min_child_size=5, fallback_overlap=5))
    text = "Alpha beta gamma. Delta epsilon zeta. Eta theta iota kappa."

    fragments = chunker.simple_chunk(text)

    assert fragments[0].content == "Alpha beta gamma. Delta epsilon zeta."
    assert all(len(f.content) <= 40 for f in fragments)
    assert fragments[-1].content.endswith("kappa.")
    for f in fragments:
        assert text[f.start : f.end] == f.content


def test_blank_input_gives_no_chunks():
    assert chunk("   \n ") == []


@pytest.mark.parametrize("text", ["No punctuation at all", "一句没有标点的话"])
def test_text_without_sentence_end_is_one_chunk(text):
    fragments = chunk(text)
    assert [f.content for f in fragments] == [text]
