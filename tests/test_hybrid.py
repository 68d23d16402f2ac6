"""Tests for hybrid search orchestration and context building."""

import asyncio

import pytest

from storyrag.config import ContextConfig, HybridConfig, RerankerConfig
from storyrag.models.chunks import ChunkLevel, SearchResult, SourceType
from storyrag.retrieval.hybrid import extract_context_window, format_context

TEMPLE = (
    "Lin Feng walked into the old temple at dusk. "
    "The jade seal lay on the altar under a layer of dust."
)
HERO = "Lin Feng is a swordsman sworn to guard the jade seal."
WEATHER = "It rained all week in the southern valley."


async def seed(kb):
    await kb.index("novel", "temple", "narrative_block", TEMPLE, metadata={"chapter_order": 1})
    await kb.index("novel", "hero", "character_profile", HERO, title="Lin Feng")
    await kb.index("novel", "weather", "narrative_block", WEATHER, metadata={"chapter_order": 4})


def run(kb, coro_fn):
    async def runner():
        async with kb:
            await seed(kb)
            return await coro_fn(kb)

    return asyncio.run(runner())


def test_search_returns_parents_with_all_scores(kb_factory, rerank_provider):
    kb = kb_factory()

    async def scenario(kb):
        return await kb.search("novel", "jade seal", limit=2)

    results = run(kb, scenario)

    assert len(results) == 2
    assert {r.source_id for r in results} == {"temple", "hero"}
    for result in results:
        assert result.chunk_level == ChunkLevel.PARENT
        assert result.parent_id is None
        assert result.vector_score is not None
        assert result.full_text_score is not None
        assert result.rrf_score is not None
        assert result.rerank_score is not None
        assert result.truncated is False
    by_source = {r.source_id: r for r in results}
    assert by_source["temple"].content == TEMPLE
    assert by_source["hero"].title == "Lin Feng"
    assert rerank_provider.calls == 1


def test_source_type_filter_and_blank_query(kb_factory):
    kb = kb_factory()

    async def scenario(kb):
        return (
            await kb.search("novel", "jade seal", source_type="character_profile"),
            await kb.search("novel", "   "),
        )

    filtered, blank = run(kb, scenario)

    assert [r.source_id for r in filtered] == ["hero"]
    assert blank == []


def test_full_text_failure_degrades_to_vector_only(kb_factory, monkeypatch):
    kb = kb_factory()

    async def broken(*args, **kwargs):
        raise RuntimeError("fts index corrupted")

    async def scenario(kb):
        monkeypatch.setattr(kb.store, "full_text_search", broken)
        return await kb.search("novel", "jade seal", limit=3)

    results = run(kb, scenario)

    assert results
    assert all(r.full_text_score is None for r in results)
    assert all(r.vector_score is not None for r in results)


def test_slow_vector_branch_is_dropped_at_deadline(kb_factory, embedder):
    kb = kb_factory()

    async def scenario(kb):
        embedder.delay = 0.5
        return await kb.search("novel", "jade seal", timeout=0.1)

    results = run(kb, scenario)

    assert {r.source_id for r in results} == {"temple", "hero"}
    assert all(r.vector_score is None for r in results)
    assert all(r.full_text_score is not None for r in results)


def test_cancelling_search_cancels_both_branches(kb_factory, embedder, monkeypatch):
    kb = kb_factory()
    full_text = {"started": False, "cancelled": False}

    async def slow_full_text(*args, **kwargs):
        full_text["started"] = True
        try:
            await asyncio.sleep(5)
        except asyncio.CancelledError:
            full_text["cancelled"] = True
            raise
        return []

    async def scenario(kb):
        monkeypatch.setattr(kb.store, "full_text_search", slow_full_text)
        embedder.delay = 5
        task = asyncio.create_task(kb.search("novel", "jade seal", timeout=10))
        while not (full_text["started"] and embedder.in_flight):
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]

    leftover = run(kb, scenario)

    assert leftover == []
    assert full_text["cancelled"]
    assert embedder.cancelled == 1
    assert embedder.in_flight == 0


def test_unavailable_reranker_keeps_fused_order(kb_factory, rerank_provider):
    rerank_provider.healthy = False
    kb = kb_factory(reranker=RerankerConfig(enable_fallback=False))

    async def scenario(kb):
        return await kb.search("novel", "jade seal", limit=3)

    results = run(kb, scenario)

    assert results
    assert all(r.rerank_score is None for r in results)
    scores = [r.rrf_score for r in results]
    assert scores == sorted(scores, reverse=True)
    assert rerank_provider.calls == 0


def test_disabled_reranker_keeps_fused_order_without_heuristic(kb_factory, rerank_provider):
    kb = kb_factory(reranker=RerankerConfig(enabled=False))

    async def scenario(kb):
        results = await kb.search("novel", "jade seal", limit=3)
        return results, kb.reranker.fallback_count

    results, fallback_count = run(kb, scenario)

    assert results
    assert all(r.rerank_score is None for r in results)
    scores = [r.rrf_score for r in results]
    assert scores == sorted(scores, reverse=True)
    assert fallback_count == 0
    assert rerank_provider.calls == 0


def test_reranking_can_be_switched_off(kb_factory, rerank_provider):
    kb = kb_factory(hybrid=HybridConfig(enable_reranker=False))

    async def scenario(kb):
        return await kb.search("novel", "jade seal", limit=1)

    results = run(kb, scenario)

    assert len(results) == 1
    assert results[0].rerank_score is None
    assert rerank_provider.calls == 0


def test_oversized_parent_is_cut_to_a_window(kb_factory):
    kb = kb_factory(context=ContextConfig(context_window_size=200, context_overlap_size=20))
    text = " ".join(f"The caravan crossed dune number {i}." for i in range(20))
    text += " A phoenix appeared over the oasis."

    async def scenario(kb):
        await kb.index("novel", "desert", "narrative_block", text)
        return await kb.search("novel", "phoenix oasis", source_type="narrative_block", limit=1)

    (result,) = run(kb, scenario)

    assert result.source_id == "desert"
    assert result.truncated is True
    assert result.content.startswith("...")
    assert "phoenix appeared over the oasis" in result.content
    assert len(result.content) < len(text)


def test_build_context_groups_by_source_type(kb_factory):
    kb = kb_factory()

    async def scenario(kb):
        return await kb.build_context("novel", "jade seal", limit=2)

    context = run(kb, scenario)

    assert context.index("=== Story Content ===") < context.index("=== Characters ===")
    assert "【Lin Feng】" in context
    assert "(Chapter 1)" in context


def test_extract_context_window():
    short = "tiny text"
    assert extract_context_window(short, "tiny", 0, 4, window_size=100) == (short, False)

    text = "a" * 1500 + "MATCH" + "b" * 1495
    excerpt, truncated = extract_context_window(text, "MATCH", 1500, 1505, window_size=1000, overlap=100)
    assert truncated
    assert excerpt == "..." + text[1400:1605] + "..."

    # No offsets: locate the match in the text
    excerpt, _ = extract_context_window(text, "MATCH", None, None, window_size=1000, overlap=100)
    assert excerpt == "..." + text[1400:1605] + "..."

    # Span wider than the window: centre a full window on it
    excerpt, _ = extract_context_window(text, None, 0, 2000, window_size=1000, overlap=100)
    assert excerpt == "..." + text[500:1500] + "..."

    # Match not found: leading window
    excerpt, _ = extract_context_window(text, "missing", None, None, window_size=1000, overlap=100)
    assert excerpt == text[:1000] + "..."


def result(source_type, content, title=None, truncated=False, **metadata):
    return SearchResult(
        id=content,
        source_type=source_type,
        source_id=content,
        content=content,
        title=title,
        truncated=truncated,
        metadata=metadata,
    )


def test_format_context_orders_groups_and_chapters():
    results = [
        result(SourceType.NARRATIVE_BLOCK, "C3", title="Temple", chapter_order=3, block_order=1),
        result(SourceType.CHARACTER_PROFILE, "Swordsman", title="Lin Feng", truncated=True),
        result(SourceType.NARRATIVE_BLOCK, "Loose"),
        result(SourceType.NARRATIVE_BLOCK, "C1", chapter_order=1, block_order=2),
        result(SourceType.SUMMARY, "Sum", chapter_order=2),
    ]

    assert format_context(results) == (
        "=== Story Content ===\n"
        "(Chapter 1)\n"
        "C1\n"
        "\n"
        "【Temple】 (Chapter 3)\n"
        "C3\n"
        "\n"
        "Loose"
        "\n\n"
        "=== Characters ===\n"
        "【Lin Feng】\n"
        "[Excerpt] Swordsman"
        "\n\n"
        "=== Chapter Summaries ===\n"
        "(Chapter 2)\n"
        "Sum"
    )


def test_format_context_empty():
    assert format_context([]) == ""
