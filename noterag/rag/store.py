"""Persistent chunk store with owner scoping.

Chunks live in the ``note_chunks`` SQLite table with their embedding as a
float32 BLOB. Reindexing a note replaces its chunk set inside a single
transaction, so readers see either the old set or the new one.
"""
import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import structlog

from noterag import config, db
from noterag.errors import StoreUnavailable

logger = structlog.get_logger()


@dataclass
class NewChunk:
    """A chunk ready to be persisted."""

    content: str
    embedding: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ChunkRecord:
    """A persisted chunk."""

    id: str
    document_id: str
    owner_id: str
    content: str
    embedding_model: str
    metadata: Dict[str, Any]
    created_at: str
    embedding: Optional[np.ndarray] = None


@dataclass
class OwnerVectors:
    """Chunks of one owner with their embeddings stacked into a matrix."""

    records: List[ChunkRecord]
    matrix: np.ndarray

    def __len__(self) -> int:
        return len(self.records)


class EmbeddingStore:
    """SQLite-backed store of chunk embeddings."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        dimension: int = None,
        embedding_model: str = None,
    ):
        """Initialize the store.

        Args:
            db_path: SQLite database path (default from config)
            dimension: Embedding dimension every chunk must have (default from config)
            embedding_model: Model name recorded on new chunks (default from config)
        """
        self.db_path = db_path or config.DB_PATH
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL

    async def replace_chunks(
        self, document_id: str, owner_id: str, chunks: List[NewChunk]
    ) -> List[str]:
        """Replace every chunk of a document with a new set.

        Args:
            document_id: Note the chunks belong to
            owner_id: Owner of the note
            chunks: New chunk set (may be empty, which just clears the note)

        Returns:
            IDs of the inserted chunks, in order

        Raises:
            ValueError: If an embedding has the wrong dimension or a chunk is empty
            StoreUnavailable: If the database fails; the old set is kept
        """
        rows = []
        created_at = db.utcnow()
        for chunk in chunks:
            if not chunk.content:
                raise ValueError(f"Refusing to store an empty chunk for note {document_id}")
            vector = np.asarray(chunk.embedding, dtype=np.float32)
            if vector.ndim != 1 or vector.shape[0] != self.dimension:
                raise ValueError(
                    f"Embedding dimension mismatch: expected {self.dimension}, "
                    f"got {vector.shape[-1] if vector.ndim else 0}"
                )
            rows.append(
                (
                    uuid.uuid4().hex,
                    document_id,
                    owner_id,
                    chunk.content,
                    vector.tobytes(),
                    self.dimension,
                    self.embedding_model,
                    json.dumps(chunk.metadata) if chunk.metadata else None,
                    created_at,
                )
            )

        try:
            async with db.get_connection(self.db_path) as conn:
                try:
                    cursor = await conn.execute(
                        "DELETE FROM note_chunks WHERE note_id = ?", (document_id,)
                    )
                    deleted = cursor.rowcount
                    if rows:
                        await conn.executemany(
                            """
                            INSERT INTO note_chunks (
                                id, note_id, owner_id, content, embedding,
                                dimension, embedding_model, metadata_json, created_at
                            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                            """,
                            rows,
                        )
                    await conn.commit()
                except sqlite3.Error:
                    await conn.rollback()
                    raise
        except sqlite3.Error as e:
            logger.error("chunk_replace_failed", document_id=document_id, error=str(e))
            raise StoreUnavailable(f"Failed to replace chunks for note {document_id}: {e}") from e

        logger.info(
            "chunks_replaced",
            document_id=document_id,
            owner_id=owner_id,
            deleted=deleted,
            inserted=len(rows),
        )

        return [row[0] for row in rows]

    async def delete_chunks(self, document_id: str) -> int:
        """Delete all chunks of a document. Deleting nothing is not an error.

        Returns:
            Number of chunks deleted
        """
        try:
            async with db.get_connection(self.db_path) as conn:
                cursor = await conn.execute(
                    "DELETE FROM note_chunks WHERE note_id = ?", (document_id,)
                )
                await conn.commit()
                count = cursor.rowcount
        except sqlite3.Error as e:
            logger.error("chunk_delete_failed", document_id=document_id, error=str(e))
            raise StoreUnavailable(f"Failed to delete chunks for note {document_id}: {e}") from e

        logger.info("chunks_deleted", document_id=document_id, count=count)
        return count

    async def list_by_owner(self, owner_id: str) -> List[ChunkRecord]:
        """All chunks of an owner, without embeddings. Bookkeeping only."""
        rows = await self._fetch(
            """
            SELECT id, note_id, owner_id, content, embedding_model,
                   metadata_json, created_at
            FROM note_chunks
            WHERE owner_id = ?
            ORDER BY rowid
            """,
            (owner_id,),
        )
        return [self._to_record(row) for row in rows]

    async def load_owner_vectors(self, owner_id: str) -> OwnerVectors:
        """Load an owner's chunks and embeddings for similarity search.

        Only rows with the store's dimension are returned, so chunks left
        over from a model with another dimension never reach the index.
        """
        rows = await self._fetch(
            """
            SELECT id, note_id, owner_id, content, embedding, embedding_model,
                   metadata_json, created_at
            FROM note_chunks
            WHERE owner_id = ? AND dimension = ?
            ORDER BY rowid
            """,
            (owner_id, self.dimension),
        )

        if not rows:
            return OwnerVectors(records=[], matrix=np.zeros((0, self.dimension), dtype=np.float32))

        records = [self._to_record(row, with_embedding=True) for row in rows]
        matrix = np.vstack([record.embedding for record in records])

        return OwnerVectors(records=records, matrix=matrix)

    async def count_chunks(self, owner_id: Optional[str] = None) -> int:
        """Count chunks, optionally for a single owner."""
        if owner_id is None:
            rows = await self._fetch("SELECT COUNT(*) AS n FROM note_chunks", ())
        else:
            rows = await self._fetch(
                "SELECT COUNT(*) AS n FROM note_chunks WHERE owner_id = ?", (owner_id,)
            )
        return rows[0]["n"]

    async def document_ids(self, owner_id: str) -> List[str]:
        """IDs of an owner's notes that have at least one chunk."""
        rows = await self._fetch(
            """
            SELECT note_id, MIN(rowid) AS first_row
            FROM note_chunks
            WHERE owner_id = ?
            GROUP BY note_id
            ORDER BY first_row
            """,
            (owner_id,),
        )
        return [row["note_id"] for row in rows]

    async def get_stats(self, owner_id: str) -> Dict[str, Any]:
        """Get statistics about an owner's index."""
        rows = await self._fetch(
            """
            SELECT embedding_model, dimension, COUNT(*) AS chunk_count,
                   COUNT(DISTINCT note_id) AS document_count
            FROM note_chunks
            WHERE owner_id = ?
            GROUP BY embedding_model, dimension
            """,
            (owner_id,),
        )

        models = {
            row["embedding_model"]: {
                "dimension": row["dimension"],
                "chunk_count": row["chunk_count"],
            }
            for row in rows
        }
        stale = [
            name
            for name, info in models.items()
            if name != self.embedding_model or info["dimension"] != self.dimension
        ]

        return {
            "chunk_count": await self.count_chunks(owner_id),
            "document_count": len(await self.document_ids(owner_id)),
            "embedding_model": self.embedding_model,
            "dimension": self.dimension,
            "models": models,
            "stale_models": stale,
        }

    async def _fetch(self, sql: str, params: Tuple) -> List[sqlite3.Row]:
        try:
            async with db.get_connection(self.db_path) as conn:
                cursor = await conn.execute(sql, params)
                return list(await cursor.fetchall())
        except sqlite3.Error as e:
            logger.error("chunk_query_failed", error=str(e))
            raise StoreUnavailable(f"Chunk query failed: {e}") from e

    @staticmethod
    def _to_record(row: sqlite3.Row, with_embedding: bool = False) -> ChunkRecord:
        metadata_json = row["metadata_json"]
        record = ChunkRecord(
            id=row["id"],
            document_id=row["note_id"],
            owner_id=row["owner_id"],
            content=row["content"],
            embedding_model=row["embedding_model"],
            metadata=json.loads(metadata_json) if metadata_json else {},
            created_at=row["created_at"],
        )
        if with_embedding:
            record.embedding = np.frombuffer(row["embedding"], dtype=np.float32)
        return record
