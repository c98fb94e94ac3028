"""RAG service: the operations the rest of the application calls.

Wires the note repository, embedding client, chunk store, search engine
and reindex orchestrator together. Everything is injected, so tests can
swap the embedding backend for a fake.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog

from noterag import config, db
from noterag.errors import ContentTooShort, NoteNotFound, StoreUnavailable, Unauthorized
from noterag.llm_client import OllamaClient
from noterag.notes import Note, NoteRepository, text_document
from noterag.rag.context import build_context, included_results
from noterag.rag.embeddings import EmbeddingBackend, EmbeddingClient
from noterag.rag.extractor import extract_text
from noterag.rag.reindex import CorpusReindexResult, ReindexOrchestrator, ReindexResult
from noterag.rag.search import RetrievalResult, SimilaritySearch
from noterag.rag.store import EmbeddingStore
from noterag.rag.uploads import parse_upload

logger = structlog.get_logger()

SELECTED_NOTES_HEADER = "Here is relevant information from your selected notes:\n\n"


@dataclass
class RetrievedContext:
    """Context for the chat model plus the notes it came from."""

    context: str = ""
    used_document_ids: List[str] = field(default_factory=list)
    results: List[RetrievalResult] = field(default_factory=list)

    @property
    def used(self) -> bool:
        return bool(self.context)

    def sources(self) -> List[Dict[str, Any]]:
        """Result summaries for API responses."""
        return [
            {
                "note_id": result.document_id,
                "title": result.title,
                "content_preview": result.content[:200] + "..."
                if len(result.content) > 200
                else result.content,
                "similarity": round(result.similarity, 3),
            }
            for result in self.results
        ]


class RAGService:
    """Facade over indexing and retrieval."""

    def __init__(
        self,
        notes: NoteRepository,
        store: EmbeddingStore,
        embedding_client: EmbeddingClient,
        search: Optional[SimilaritySearch] = None,
        orchestrator: Optional[ReindexOrchestrator] = None,
        max_context_length: Optional[int] = None,
    ):
        self.notes = notes
        self.store = store
        self.embedding_client = embedding_client
        self.search = search or SimilaritySearch(store, embedding_client)
        self.orchestrator = orchestrator or ReindexOrchestrator(
            store, embedding_client, document_source=notes
        )
        self.max_context_length = (
            config.MAX_CONTEXT_LENGTH if max_context_length is None else max_context_length
        )

    @classmethod
    def from_config(
        cls,
        db_path: Optional[Path] = None,
        backend: Optional[EmbeddingBackend] = None,
    ) -> "RAGService":
        """Build a service from config defaults.

        Args:
            db_path: SQLite database path (default from config)
            backend: Embedding backend (default: a new OllamaClient)
        """
        db_path = db_path or config.DB_PATH
        return cls(
            notes=NoteRepository(db_path),
            store=EmbeddingStore(db_path),
            embedding_client=EmbeddingClient(backend or OllamaClient()),
        )

    async def index_document(self, document_id: str, owner_id: str) -> ReindexResult:
        """Fully (re)index one note. Safe to call repeatedly.

        Raises:
            NoteNotFound, Unauthorized: If the owner cannot read the note
            ContentTooShort, EmbeddingServiceError, StoreUnavailable
        """
        note = await self.notes.get_document(document_id, owner_id)
        return await self.orchestrator.reindex_document(
            note.id, note.owner_id, note.content, title=note.title
        )

    async def remove_document_index(self, document_id: str) -> int:
        """Drop every chunk of a deleted note."""
        return await self.store.delete_chunks(document_id)

    async def reindex_all_for_owner(self, owner_id: str, progress_callback=None) -> CorpusReindexResult:
        return await self.orchestrator.reindex_all_for_owner(
            owner_id, progress_callback=progress_callback
        )

    async def retrieve_context(
        self,
        query_text: str,
        owner_id: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
        max_context_length: Optional[int] = None,
    ) -> RetrievedContext:
        """Find the owner's most relevant chunks and format them as context.

        Failures are logged and give an empty context, so the caller can
        answer without notes.
        """
        max_context_length = (
            self.max_context_length if max_context_length is None else max_context_length
        )

        try:
            results = await self.search.search_text(
                query_text, owner_id, limit=limit, threshold=threshold
            )
        except StoreUnavailable as e:
            logger.error("rag_retrieval_failed", owner_id=owner_id, error=str(e))
            return RetrievedContext()

        included = included_results(results, max_context_length)
        context = build_context(included, max_context_length)

        used_document_ids = list(dict.fromkeys(result.document_id for result in included))

        logger.info(
            "rag_retrieval_completed",
            owner_id=owner_id,
            results=len(results),
            included=len(included),
            context_length=len(context),
        )

        return RetrievedContext(
            context=context,
            used_document_ids=used_document_ids,
            results=included,
        )

    async def selected_notes_context(
        self, owner_id: str, note_ids: List[str], preview_chars: Optional[int] = None
    ) -> RetrievedContext:
        """Build context from notes the user picked explicitly.

        Notes that are missing or belong to someone else are left out.
        """
        preview_chars = preview_chars or config.SELECTED_NOTE_PREVIEW_CHARS

        parts = []
        used = []
        for note_id in dict.fromkeys(note_ids):
            try:
                note = await self.notes.get_document(note_id, owner_id)
            except (NoteNotFound, Unauthorized):
                logger.warning("selected_note_unavailable", note_id=note_id, owner_id=owner_id)
                continue

            text = extract_text(note.content)
            parts.append(f"[Note: {note.title}]\n{text[:preview_chars]}\n\n")
            used.append(note.id)

        if not parts:
            return RetrievedContext()

        return RetrievedContext(context=SELECTED_NOTES_HEADER + "".join(parts), used_document_ids=used)

    async def index_upload(
        self, owner_id: str, filename: str, content_type: str, data: bytes
    ) -> Tuple[Note, ReindexResult]:
        """Create a note from an uploaded file and index it.

        Raises:
            UnsupportedUpload: For unsupported or undecodable files
            ContentTooShort: If the file has too little text (no note is created)
            EmbeddingServiceError, StoreUnavailable
        """
        upload = parse_upload(filename, content_type, data)

        if len(upload.text) < self.orchestrator.min_content_length:
            raise ContentTooShort(filename, len(upload.text), self.orchestrator.min_content_length)

        note = await self.notes.create_note(
            owner_id,
            upload.title,
            content=text_document(upload.text),
            tags=upload.tags,
        )

        result = await self.orchestrator.reindex_document(
            note.id, owner_id, note.content, title=note.title, source="upload"
        )

        logger.info(
            "upload_indexed",
            note_id=note.id,
            owner_id=owner_id,
            filename=filename,
            chunks_created=result.chunks_created,
        )

        return note, result

    async def delete_note(self, note_id: str, owner_id: str) -> int:
        """Delete a note and its chunks.

        Returns:
            Number of chunks removed
        """
        await self.notes.delete_note(note_id, owner_id)
        return await self.remove_document_index(note_id)

    async def update_note(
        self, note_id: str, owner_id: str, content: Any, title: Optional[str] = None
    ) -> Tuple[Note, ReindexResult]:
        """Save new note content and reindex it.

        When the new content has no indexable text the note's old chunks are
        dropped, so search never returns text the note no longer contains.

        Raises:
            NoteNotFound, Unauthorized: If the owner cannot write the note
            ContentTooShort: After the note is saved and its chunks dropped
            EmbeddingServiceError, StoreUnavailable
        """
        note = await self.notes.update_content(note_id, owner_id, content, title=title)

        try:
            result = await self.orchestrator.reindex_document(
                note.id, owner_id, note.content, title=note.title
            )
        except ContentTooShort:
            await self.remove_document_index(note.id)
            raise

        if result.skipped:
            await self.remove_document_index(note.id)

        return note, result

    async def index_stats(self, owner_id: str) -> Dict[str, Any]:
        """Chunk counts per embedding model plus the latest corpus reindex.

        ``stale_models`` lists models other than the configured one; their
        chunks are invisible to search until the owner reindexes.
        """
        stats = await self.store.get_stats(owner_id)
        stats["latest_run"] = await db.get_latest_index_run(owner_id, self.store.db_path)

        if stats["stale_models"]:
            logger.warning(
                "stale_embeddings_found",
                owner_id=owner_id,
                stale_models=stats["stale_models"],
            )

        return stats
