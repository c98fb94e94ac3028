"""Tests for the note repository and index run bookkeeping."""
import pytest

from noterag import db
from noterag.errors import NoteNotFound, StoreUnavailable, Unauthorized
from noterag.notes import NoteRepository, text_document
from tests.conftest import doc


async def test_create_and_get_round_trip(notes):
    note = await notes.create_note("alice", "Groceries", doc("Milk"), tags=["home"])

    loaded = await notes.get_document(note.id, "alice")

    assert loaded.title == "Groceries"
    assert loaded.content == doc("Milk")
    assert loaded.tags == ["home"]
    assert loaded.created_at == note.created_at


async def test_get_document_of_other_owner_is_unauthorized(notes):
    note = await notes.create_note("alice", "Private", doc("secret"))

    with pytest.raises(Unauthorized):
        await notes.get_document(note.id, "bob")


async def test_get_document_missing_note(notes):
    with pytest.raises(NoteNotFound):
        await notes.get_document("nope", "alice")


async def test_list_documents_is_owner_scoped_and_ordered(notes):
    first = await notes.create_note("alice", "First")
    await notes.create_note("bob", "Bob's")
    second = await notes.create_note("alice", "Second")

    listed = await notes.list_documents("alice")

    assert [n.id for n in listed] == [first.id, second.id]
    assert listed[0].content is None


async def test_update_content(notes):
    note = await notes.create_note("alice", "Draft", doc("v1"))

    await notes.update_content(note.id, "alice", doc("v2"), title="Final")
    loaded = await notes.get_note(note.id)

    assert loaded.content == doc("v2")
    assert loaded.title == "Final"


def test_text_document_wraps_text_in_one_paragraph():
    assert text_document("hello") == doc("hello")


async def test_repository_failure_raises_store_unavailable(tmp_path):
    broken = NoteRepository(tmp_path / "missing" / "db.sqlite")

    with pytest.raises(StoreUnavailable):
        await broken.list_documents("alice")


async def test_latest_index_run(db_path):
    assert await db.get_latest_index_run("alice", db_path) is None

    for chunks in (3, 7):
        await db.insert_index_run(
            owner_id="alice",
            embedding_model="fake-embed",
            embedding_dimension=64,
            max_chunk_size=1000,
            chunks_created=chunks,
            success_count=1,
            error_count=0,
            skipped_count=0,
            total_documents=1,
            db_path=db_path,
        )

    run = await db.get_latest_index_run("alice", db_path)

    assert run["chunks_created"] == 7
    assert run["embedding_model"] == "fake-embed"
    assert run["metadata"] == {}
    assert await db.get_latest_index_run("bob", db_path) is None
