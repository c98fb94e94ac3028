"""Reindex orchestration for single notes and whole corpora.

Single note:  extract -> length guard -> chunk -> embed all -> replace chunks.
The store is only touched once every chunk has an embedding, so a failed
reindex leaves the note's previous chunks in place.

Corpus:  every note of an owner in listing order; one note failing never
stops the others.
"""
import asyncio
import weakref
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

import structlog

from noterag import config, db
from noterag.errors import ContentTooShort
from noterag.rag.chunker import TextChunker
from noterag.rag.embeddings import EmbeddingClient
from noterag.rag.extractor import extract_text
from noterag.rag.store import EmbeddingStore, NewChunk

logger = structlog.get_logger()


class ReindexState(str, Enum):
    EXTRACTING = "extracting"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    PERSISTING = "persisting"
    DONE = "done"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ReindexResult:
    document_id: str
    chunks_created: int
    state: ReindexState

    @property
    def skipped(self) -> bool:
        return self.state is ReindexState.SKIPPED


@dataclass
class CorpusReindexResult:
    owner_id: str
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    total_documents: int = 0
    chunks_created: int = 0
    failed_documents: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Document(Protocol):
    id: str
    owner_id: str
    title: str
    content: Any


class DocumentSource(Protocol):
    async def list_documents(self, owner_id: str) -> List[Document]:
        ...


class ReindexOrchestrator:
    """Coordinates extraction, chunking, embedding and storage."""

    def __init__(
        self,
        store: EmbeddingStore,
        embedding_client: EmbeddingClient,
        document_source: Optional[DocumentSource] = None,
        chunker: Optional[TextChunker] = None,
        min_content_length: Optional[int] = None,
        record_runs: bool = True,
    ):
        """Initialize the orchestrator.

        Args:
            store: Chunk store to write to
            embedding_client: Client used to embed chunks
            document_source: Lists an owner's notes for corpus reindexing
            chunker: Text chunker (default: config.MAX_CHUNK_SIZE)
            min_content_length: Shortest extracted text worth indexing (default from config)
            record_runs: Write an index_runs row after each corpus reindex
        """
        self.store = store
        self.embedding_client = embedding_client
        self.document_source = document_source
        self.chunker = chunker or TextChunker()
        self.min_content_length = (
            config.MIN_CONTENT_LENGTH if min_content_length is None else min_content_length
        )
        self.record_runs = record_runs

        # One lock per note id while some coroutine is using it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, document_id: str) -> asyncio.Lock:
        lock = self._locks.get(document_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[document_id] = lock
        return lock

    async def reindex_document(
        self,
        document_id: str,
        owner_id: str,
        raw_content: Any,
        title: Optional[str] = None,
        source: str = "note",
    ) -> ReindexResult:
        """Rebuild the chunks of one note.

        Args:
            document_id: Note id
            owner_id: Note owner
            raw_content: Editor document tree (or JSON/plain text)
            title: Note title, copied into chunk metadata
            source: Provenance tag copied into chunk metadata

        Returns:
            ReindexResult; state SKIPPED when the note has no text

        Raises:
            ContentTooShort: If the text is below the minimum length
            EmbeddingServiceError: If any chunk fails to embed (store untouched)
            StoreUnavailable: If the chunks cannot be written
        """
        lock = self._lock_for(document_id)
        async with lock:
            return await self._reindex_locked(document_id, owner_id, raw_content, title, source)

    async def _reindex_locked(
        self,
        document_id: str,
        owner_id: str,
        raw_content: Any,
        title: Optional[str],
        source: str,
    ) -> ReindexResult:
        log = logger.bind(document_id=document_id, owner_id=owner_id)
        state = ReindexState.EXTRACTING

        try:
            log.debug("reindex_state", state=state.value)
            text = extract_text(raw_content)

            if not text:
                log.info("reindex_skipped_empty_document")
                return ReindexResult(document_id, 0, ReindexState.SKIPPED)

            if len(text) < self.min_content_length:
                raise ContentTooShort(document_id, len(text), self.min_content_length)

            state = ReindexState.CHUNKING
            log.debug("reindex_state", state=state.value, text_length=len(text))
            chunks = self.chunker.chunk(text)

            state = ReindexState.EMBEDDING
            log.debug("reindex_state", state=state.value, chunk_count=len(chunks))
            embeddings = await self.embedding_client.embed_batch(chunks)

            state = ReindexState.PERSISTING
            log.debug("reindex_state", state=state.value)
            new_chunks = [
                NewChunk(
                    content=chunk,
                    embedding=embedding,
                    metadata={
                        "title": title or "",
                        "chunk_index": index,
                        "total_chunks": len(chunks),
                        "source": source,
                    },
                )
                for index, (chunk, embedding) in enumerate(zip(chunks, embeddings))
            ]
            await self.store.replace_chunks(document_id, owner_id, new_chunks)

        except Exception as e:
            log.warning(
                "reindex_failed",
                failed_in=state.value,
                state=ReindexState.FAILED.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        log.info("document_reindexed", state=ReindexState.DONE.value, chunks_created=len(new_chunks))
        return ReindexResult(document_id, len(new_chunks), ReindexState.DONE)

    async def reindex_all_for_owner(
        self,
        owner_id: str,
        progress_callback: Optional[Callable[[int, int, Document], None]] = None,
    ) -> CorpusReindexResult:
        """Reindex every note of an owner.

        Args:
            owner_id: Owner whose notes to reindex
            progress_callback: Optional callback(current, total, document)

        Returns:
            Tally of successes, failures and skipped (empty) notes
        """
        if self.document_source is None:
            raise RuntimeError("reindex_all_for_owner needs a document source")

        documents = await self.document_source.list_documents(owner_id)
        result = CorpusReindexResult(owner_id=owner_id, total_documents=len(documents))

        logger.info("reindex_all_started", owner_id=owner_id, total_documents=len(documents))

        for idx, document in enumerate(documents, 1):
            if progress_callback:
                progress_callback(idx, len(documents), document)

            try:
                outcome = await self.reindex_document(
                    document.id, owner_id, document.content, title=document.title
                )
            except Exception as e:
                # Continue with next note instead of failing entirely
                logger.error(
                    "document_reindex_failed",
                    document_id=document.id,
                    owner_id=owner_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.error_count += 1
                result.failed_documents[document.id] = type(e).__name__
                continue

            if outcome.skipped:
                result.skipped_count += 1
            else:
                result.success_count += 1
                result.chunks_created += outcome.chunks_created

        if self.record_runs:
            await db.insert_index_run(
                owner_id=owner_id,
                embedding_model=self.embedding_client.model,
                embedding_dimension=self.store.dimension,
                max_chunk_size=self.chunker.max_chunk_size,
                chunks_created=result.chunks_created,
                success_count=result.success_count,
                error_count=result.error_count,
                skipped_count=result.skipped_count,
                total_documents=result.total_documents,
                metadata={"failed_documents": result.failed_documents},
                db_path=self.store.db_path,
            )

        logger.info("reindex_all_completed", **result.to_dict())
        return result
