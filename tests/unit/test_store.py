"""Tests for the SQLite chunk store."""
import numpy as np
import pytest

from noterag.errors import StoreUnavailable
from noterag.rag.store import EmbeddingStore, NewChunk
from tests.conftest import DIM, TEST_MODEL, basis


def chunk(text, index=0, **metadata):
    return NewChunk(content=text, embedding=basis(index), metadata=metadata)


async def test_replace_chunks_inserts_new_set(store):
    ids = await store.replace_chunks("note-1", "alice", [chunk("one", 0, chunk_index=0), chunk("two", 1)])

    records = await store.list_by_owner("alice")

    assert [r.id for r in records] == ids
    assert [r.content for r in records] == ["one", "two"]
    assert records[0].document_id == "note-1"
    assert records[0].metadata == {"chunk_index": 0}
    assert records[1].metadata == {}
    assert records[0].embedding_model == TEST_MODEL


async def test_replace_chunks_leaves_no_stale_chunks(store):
    await store.replace_chunks("note-1", "alice", [chunk("old a"), chunk("old b"), chunk("old c")])
    await store.replace_chunks("note-1", "alice", [chunk("new")])

    records = await store.list_by_owner("alice")

    assert [r.content for r in records] == ["new"]


async def test_replace_chunks_only_touches_its_document(store):
    await store.replace_chunks("note-1", "alice", [chunk("first note")])
    await store.replace_chunks("note-2", "alice", [chunk("second note")])
    await store.replace_chunks("note-1", "alice", [chunk("first note v2")])

    contents = sorted(r.content for r in await store.list_by_owner("alice"))

    assert contents == ["first note v2", "second note"]


async def test_wrong_dimension_is_rejected_and_old_set_kept(store):
    await store.replace_chunks("note-1", "alice", [chunk("keep me")])

    with pytest.raises(ValueError):
        await store.replace_chunks(
            "note-1", "alice", [NewChunk(content="bad", embedding=[1.0] * (DIM + 1))]
        )

    assert [r.content for r in await store.list_by_owner("alice")] == ["keep me"]


async def test_empty_chunk_text_is_rejected(store):
    with pytest.raises(ValueError):
        await store.replace_chunks("note-1", "alice", [NewChunk(content="", embedding=basis(0))])


async def test_delete_chunks_is_idempotent(store):
    await store.replace_chunks("note-1", "alice", [chunk("a"), chunk("b")])

    assert await store.delete_chunks("note-1") == 2
    assert await store.delete_chunks("note-1") == 0
    assert await store.delete_chunks("never-existed") == 0
    assert await store.count_chunks() == 0


async def test_load_owner_vectors_is_scoped_and_round_trips(store):
    await store.replace_chunks("note-1", "alice", [chunk("a", 3)])
    await store.replace_chunks("note-2", "bob", [chunk("b", 5)])

    vectors = await store.load_owner_vectors("alice")

    assert len(vectors) == 1
    assert vectors.records[0].owner_id == "alice"
    assert vectors.matrix.shape == (1, DIM)
    assert vectors.matrix.dtype == np.float32
    np.testing.assert_array_equal(vectors.matrix[0], np.asarray(basis(3), dtype=np.float32))


async def test_load_owner_vectors_for_unknown_owner_is_empty(store):
    vectors = await store.load_owner_vectors("nobody")

    assert len(vectors) == 0
    assert vectors.matrix.shape == (0, DIM)


async def test_vectors_of_another_dimension_are_not_loaded(store, db_path):
    other = EmbeddingStore(db_path, dimension=8, embedding_model="old-model")
    await other.replace_chunks("note-old", "alice", [NewChunk(content="old", embedding=[1.0] * 8)])
    await store.replace_chunks("note-new", "alice", [chunk("new")])

    vectors = await store.load_owner_vectors("alice")
    stats = await store.get_stats("alice")

    assert [r.content for r in vectors.records] == ["new"]
    assert stats["chunk_count"] == 2
    assert stats["document_count"] == 2
    assert stats["stale_models"] == ["old-model"]


async def test_counts_and_document_ids(store):
    await store.replace_chunks("note-1", "alice", [chunk("a"), chunk("b")])
    await store.replace_chunks("note-2", "alice", [chunk("c")])
    await store.replace_chunks("note-3", "bob", [chunk("d")])

    assert await store.count_chunks() == 4
    assert await store.count_chunks("alice") == 3
    assert await store.document_ids("alice") == ["note-1", "note-2"]


async def test_database_failure_raises_store_unavailable(tmp_path):
    broken = EmbeddingStore(tmp_path / "missing-dir" / "db.sqlite", dimension=DIM)

    with pytest.raises(StoreUnavailable):
        await broken.list_by_owner("alice")
