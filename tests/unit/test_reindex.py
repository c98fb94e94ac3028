"""Tests for the reindex orchestrator."""
import asyncio

import pytest

from noterag import db
from noterag.errors import ContentTooShort, EmbeddingServiceError, StoreUnavailable
from noterag.rag.chunker import TextChunker
from noterag.rag.reindex import ReindexOrchestrator, ReindexState
from tests.conftest import doc

LONG_NOTE = " ".join(f"This is sentence number {i} of a long note." for i in range(60))


async def contents(store, owner_id="alice"):
    return [r.content for r in await store.list_by_owner(owner_id)]


async def test_reindex_document_stores_chunks_with_metadata(orchestrator, store):
    result = await orchestrator.reindex_document(
        "note-1", "alice", doc("Paris is the capital of France."), title="Travel"
    )

    assert result.state is ReindexState.DONE
    assert result.chunks_created == 1

    [record] = await store.list_by_owner("alice")
    assert record.content == "Paris is the capital of France."
    assert record.document_id == "note-1"
    assert record.metadata == {
        "title": "Travel",
        "chunk_index": 0,
        "total_chunks": 1,
        "source": "note",
    }


async def test_long_note_is_split_into_ordered_chunks(orchestrator, store):
    result = await orchestrator.reindex_document("note-1", "alice", doc(LONG_NOTE))

    records = await store.list_by_owner("alice")

    assert result.chunks_created == len(records) > 1
    assert [r.metadata["chunk_index"] for r in records] == list(range(len(records)))
    assert {r.metadata["total_chunks"] for r in records} == {len(records)}
    assert " ".join(r.content for r in records).split() == LONG_NOTE.split()


async def test_reindexing_twice_leaves_only_second_version(orchestrator, store):
    await orchestrator.reindex_document("note-1", "alice", doc(LONG_NOTE))
    await orchestrator.reindex_document("note-1", "alice", doc("Completely new content here."))

    assert await contents(store) == ["Completely new content here."]


async def test_empty_document_is_skipped_without_touching_store(orchestrator, store, backend):
    await orchestrator.reindex_document("note-1", "alice", doc("Existing indexed content."))
    backend.calls.clear()

    result = await orchestrator.reindex_document("note-1", "alice", {"type": "doc", "content": []})

    assert result.state is ReindexState.SKIPPED
    assert result.chunks_created == 0
    assert backend.calls == []
    assert await contents(store) == ["Existing indexed content."]


async def test_short_content_is_rejected(orchestrator, store, backend):
    with pytest.raises(ContentTooShort) as excinfo:
        await orchestrator.reindex_document("note-1", "alice", doc("Too short"))

    assert excinfo.value.length == 9
    assert excinfo.value.minimum == 10
    assert backend.calls == []
    assert await contents(store) == []


async def test_embedding_failure_keeps_previous_chunks(orchestrator, store, backend):
    await orchestrator.reindex_document("note-1", "alice", doc("The original version of this note."))
    backend.fail_on = ["poison"]

    with pytest.raises(EmbeddingServiceError):
        await orchestrator.reindex_document(
            "note-1", "alice", doc("A new version. It contains poison somewhere.")
        )

    assert await contents(store) == ["The original version of this note."]


async def test_store_failure_propagates(embedding_client, tmp_path):
    from noterag.rag.store import EmbeddingStore
    from tests.conftest import DIM

    broken_store = EmbeddingStore(tmp_path / "missing" / "db.sqlite", dimension=DIM)
    orchestrator = ReindexOrchestrator(broken_store, embedding_client, record_runs=False)

    with pytest.raises(StoreUnavailable):
        await orchestrator.reindex_document("note-1", "alice", doc("Perfectly fine content."))


async def test_concurrent_reindex_of_same_document_is_serialised(orchestrator, store):
    await asyncio.gather(
        orchestrator.reindex_document("note-1", "alice", doc("Version one of the note.")),
        orchestrator.reindex_document("note-1", "alice", doc("Version two of the note.")),
    )

    assert await contents(store) == ["Version two of the note."]


async def test_reindex_all_counts_failures_without_stopping(orchestrator, notes, store, backend, db_path):
    created = []
    for i in range(5):
        text = f"Note number {i} has enough text to index."
        if i == 2:
            text += " It triggers EXPLODE in the embedder."
        created.append(await notes.create_note("alice", f"Note {i}", doc(text)))
    backend.fail_on = ["EXPLODE"]

    result = await orchestrator.reindex_all_for_owner("alice")

    assert (result.success_count, result.error_count, result.total_documents) == (4, 1, 5)
    assert result.failed_documents == {created[2].id: "EmbeddingServiceError"}
    assert len(await store.document_ids("alice")) == 4

    run = await db.get_latest_index_run("alice", db_path)
    assert run["success_count"] == 4
    assert run["error_count"] == 1
    assert run["total_documents"] == 5
    assert run["metadata"] == {"failed_documents": {created[2].id: "EmbeddingServiceError"}}


async def test_reindex_all_tallies_skipped_and_short_notes(orchestrator, notes):
    await notes.create_note("alice", "Empty", {"type": "doc", "content": []})
    await notes.create_note("alice", "Short", doc("tiny"))
    await notes.create_note("alice", "Good", doc("A note with plenty of content."))
    await notes.create_note("bob", "Not mine", doc("Bob's note should not be touched."))

    progress = []
    result = await orchestrator.reindex_all_for_owner(
        "alice", progress_callback=lambda current, total, note: progress.append((current, total, note.title))
    )

    assert result.success_count == 1
    assert result.error_count == 1
    assert result.skipped_count == 1
    assert result.total_documents == 3
    assert progress == [(1, 3, "Empty"), (2, 3, "Short"), (3, 3, "Good")]


async def test_reindex_all_without_document_source_fails(store, embedding_client):
    orchestrator = ReindexOrchestrator(store, embedding_client, chunker=TextChunker(1000))

    with pytest.raises(RuntimeError):
        await orchestrator.reindex_all_for_owner("alice")
