"""Tests for source indexing: replacement, ordering and failure handling."""

import asyncio

import pytest

from storyrag.errors import IndexingError
from storyrag.models.chunks import ChunkLevel, SourceType

STORY = (
    "Lin Feng walked into the old temple at dusk. "
    "The jade seal lay on the altar under a layer of dust. "
    "He heard footsteps behind the broken screen. "
    "A masked thief leapt down from the rafters. "
    "They fought across the courtyard until the bell rang. "
    "When the smoke cleared the seal was gone."
)


def run(kb, coro_fn):
    async def runner():
        async with kb:
            return await coro_fn(kb)

    return asyncio.run(runner())


def test_index_creates_parent_and_ordered_children(kb_factory):
    kb = kb_factory()

    async def scenario(kb):
        parent_id = await kb.index(
            "novel",
            "block-1",
            SourceType.NARRATIVE_BLOCK,
            STORY,
            metadata={"chapter_order": 2, "block_order": 5},
            title="The Temple",
        )
        return parent_id, await kb.store.get_source_chunks("block-1")

    parent_id, chunks = run(kb, scenario)

    parent, children = chunks[0], chunks[1:]
    assert parent.id == parent_id
    assert parent.chunk_level == ChunkLevel.PARENT
    assert parent.content == STORY
    assert parent.embedding is None
    assert len(children) > 1
    assert [c.order for c in children] == list(range(len(children)))
    for child in children:
        assert child.chunk_level == ChunkLevel.CHILD
        assert child.parent_id == parent_id
        assert child.title == "The Temple"
        assert child.metadata == {"chapter_order": 2, "block_order": 5}
        assert child.embedding is not None and len(child.embedding) == 64
        assert STORY[child.start_offset : child.end_offset] == child.content


def test_reindex_replaces_previous_version(kb_factory):
    kb = kb_factory()

    async def scenario(kb):
        first = await kb.index("novel", "block-1", "narrative_block", STORY)
        before = await kb.stats("novel")
        second = await kb.index("novel", "block-1", "narrative_block", STORY)
        after = await kb.stats("novel")
        stale = await kb.store.get_chunks([first])
        return first, second, before, after, stale

    first, second, before, after, stale = run(kb, scenario)

    assert first != second
    assert stale == {}
    assert after == before
    assert after["parents"] == 1


def test_reindex_with_new_content_leaves_no_orphans(kb_factory):
    kb = kb_factory()

    async def scenario(kb):
        await kb.index("novel", "block-1", "narrative_block", STORY)
        await kb.index("novel", "block-1", "narrative_block", "A single short sentence.")
        return await kb.store.get_source_chunks("block-1")

    chunks = run(kb, scenario)

    assert [c.chunk_level for c in chunks] == [ChunkLevel.PARENT, ChunkLevel.CHILD]
    assert chunks[1].content == "A single short sentence."
    assert chunks[1].parent_id == chunks[0].id


def test_blank_content_removes_the_source(kb_factory):
    kb = kb_factory()

    async def scenario(kb):
        await kb.index("novel", "block-1", "narrative_block", STORY)
        result = await kb.index("novel", "block-1", "narrative_block", "   ")
        return result, await kb.stats("novel")

    result, stats = run(kb, scenario)

    assert result is None
    assert stats["total_chunks"] == 0


def test_embedding_failure_keeps_previous_index(kb_factory, embedder):
    kb = kb_factory()

    async def scenario(kb):
        parent_id = await kb.index("novel", "block-1", "narrative_block", STORY)
        embedder.fail = True
        with pytest.raises(IndexingError) as excinfo:
            await kb.index("novel", "block-1", "narrative_block", "Entirely new text about a river.")
        return parent_id, excinfo.value, await kb.store.get_source_chunks("block-1")

    parent_id, error, chunks = run(kb, scenario)

    assert error.source_id == "block-1"
    assert chunks[0].id == parent_id
    assert chunks[0].content == STORY


def test_children_are_embedded_in_bulk(kb_factory, embedder):
    kb = kb_factory()

    async def scenario(kb):
        await kb.index("novel", "block-1", "narrative_block", STORY)

    run(kb, scenario)

    assert embedder.calls
    assert all(bulk for _, bulk in embedder.calls)


def test_concurrent_reindex_of_one_source_keeps_one_version(kb_factory):
    kb = kb_factory()

    async def scenario(kb):
        await asyncio.gather(
            kb.index("novel", "block-1", "narrative_block", STORY),
            kb.index("novel", "block-1", "narrative_block", "Another version. With two sentences."),
            kb.index("novel", "block-1", "narrative_block", STORY),
        )
        return await kb.stats("novel"), kb.indexer._locks

    stats, locks = run(kb, scenario)

    assert stats["parents"] == 1
    assert locks == {}


def test_delete_and_delete_project(kb_factory):
    kb = kb_factory()

    async def scenario(kb):
        await kb.index("novel", "block-1", "narrative_block", STORY)
        await kb.index("novel", "hero", "character_profile", "Lin Feng is a wandering swordsman.")
        await kb.index("other", "block-9", "narrative_block", "A different story entirely.")

        removed = await kb.delete("block-1")
        novel_after_delete = await kb.stats("novel")
        removed_project = await kb.delete_project("novel")
        return removed, novel_after_delete, removed_project, await kb.stats("novel"), await kb.stats("other")

    removed, novel_after_delete, removed_project, novel, other = run(kb, scenario)

    assert removed >= 3
    assert novel_after_delete["parents"] == 1
    assert novel_after_delete["by_source_type"] == {"character_profile": {"parents": 1, "children": 1}}
    assert removed_project == 2
    assert novel["total_chunks"] == 0
    assert other["parents"] == 1


def test_deleting_unknown_source_is_a_no_op(kb_factory):
    kb = kb_factory()

    async def scenario(kb):
        return await kb.delete("missing")

    assert run(kb, scenario) == 0


def test_in_memory_database_shares_one_connection(kb_factory):
    kb = kb_factory(db_path=":memory:", pool_size=4)
    assert kb.store.pool_size == 1

    async def scenario(kb):
        await asyncio.gather(
            kb.index("novel", "block-1", "narrative_block", STORY),
            kb.index("novel", "hero", "character_profile", "Lin Feng is a wandering swordsman."),
            kb.index("novel", "place", "wiki_entry", "The old temple stands above the river."),
        )
        return await kb.stats("novel"), await kb.search("novel", "jade seal", limit=3)

    stats, results = run(kb, scenario)

    assert stats["parents"] == 3
    assert results
    assert results[0].source_id == "block-1"
