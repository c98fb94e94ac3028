"""Pytest configuration and fixtures.

The embedding service is replaced by a deterministic bag-of-words
backend, so tests need no running Ollama.
"""
import hashlib
import re
from typing import List

import pytest

from noterag import db
from noterag.notes import NoteRepository
from noterag.rag.chunker import TextChunker
from noterag.rag.embeddings import EmbeddingClient
from noterag.rag.reindex import ReindexOrchestrator
from noterag.rag.search import SimilaritySearch
from noterag.rag.service import RAGService
from noterag.rag.store import EmbeddingStore

DIM = 64
TEST_MODEL = "fake-embed"

WORD_PATTERN = re.compile(r"[a-z0-9]+")


def bag_of_words(text: str, dimension: int = DIM) -> List[float]:
    """Hash each lowercase word into a bucket and count."""
    vector = [0.0] * dimension
    for word in WORD_PATTERN.findall(text.lower()):
        bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % dimension
        vector[bucket] += 1.0
    return vector


def basis(index: int, dimension: int = DIM, scale: float = 1.0) -> List[float]:
    vector = [0.0] * dimension
    vector[index] = scale
    return vector


class FakeEmbeddingBackend:
    """Stands in for OllamaClient.embeddings."""

    def __init__(self, dimension: int = DIM):
        self.dimension = dimension
        self.calls: List[str] = []
        self.fail_on: List[str] = []

    async def embeddings(self, prompt: str, model: str = None) -> dict:
        self.calls.append(prompt)
        for marker in self.fail_on:
            if marker in prompt:
                raise RuntimeError(f"embedding backend failed on {marker!r}")
        return {"embedding": bag_of_words(prompt, self.dimension)}


def doc(*paragraphs: str) -> dict:
    """Editor document with one paragraph per argument."""
    return {
        "type": "doc",
        "content": [
            {"type": "paragraph", "content": [{"type": "text", "text": text}]}
            for text in paragraphs
        ],
    }


@pytest.fixture
async def db_path(tmp_path):
    path = tmp_path / "noterag-test.sqlite"
    await db.init_database(path)
    return path


@pytest.fixture
def backend():
    return FakeEmbeddingBackend()


@pytest.fixture
def embedding_client(backend):
    return EmbeddingClient(backend, model=TEST_MODEL, dimension=DIM, concurrency=2)


@pytest.fixture
def store(db_path):
    return EmbeddingStore(db_path, dimension=DIM, embedding_model=TEST_MODEL)


@pytest.fixture
def notes(db_path):
    return NoteRepository(db_path)


@pytest.fixture
def search(store, embedding_client):
    return SimilaritySearch(store, embedding_client)


@pytest.fixture
def orchestrator(store, embedding_client, notes):
    return ReindexOrchestrator(
        store,
        embedding_client,
        document_source=notes,
        chunker=TextChunker(1000),
        min_content_length=10,
    )


@pytest.fixture
def service(notes, store, embedding_client, search, orchestrator):
    return RAGService(
        notes=notes,
        store=store,
        embedding_client=embedding_client,
        search=search,
        orchestrator=orchestrator,
        max_context_length=3000,
    )
