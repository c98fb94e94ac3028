"""Database initialization and helpers for noterag.

SQLite database for storing:
- Notes (the document source for indexing)
- Note chunks with their embeddings
- Metadata about corpus reindex runs
"""
import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

import aiosqlite
import structlog

from noterag import config
from noterag.errors import StoreUnavailable

logger = structlog.get_logger()

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS notes (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        title TEXT NOT NULL,
        content_json TEXT,
        tags_json TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_notes_owner
    ON notes(owner_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS note_chunks (
        id TEXT PRIMARY KEY,
        note_id TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        content TEXT NOT NULL,
        embedding BLOB NOT NULL,
        dimension INTEGER NOT NULL,
        embedding_model TEXT NOT NULL,
        metadata_json TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_note_chunks_note
    ON note_chunks(note_id)
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_note_chunks_owner
    ON note_chunks(owner_id)
    """,
    """
    CREATE TABLE IF NOT EXISTS index_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id TEXT NOT NULL,
        indexed_at TEXT NOT NULL,
        embedding_model TEXT NOT NULL,
        embedding_dimension INTEGER NOT NULL,
        max_chunk_size INTEGER NOT NULL,
        chunks_created INTEGER NOT NULL,
        success_count INTEGER NOT NULL,
        error_count INTEGER NOT NULL,
        skipped_count INTEGER NOT NULL,
        total_documents INTEGER NOT NULL,
        metadata_json TEXT
    )
    """,
]


def utcnow() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def get_connection(db_path: Optional[Path] = None) -> AsyncIterator[aiosqlite.Connection]:
    """Open a connection to the SQLite database.

    Yields:
        aiosqlite.Connection with row_factory set to sqlite3.Row
    """
    conn = await aiosqlite.connect(str(db_path or config.DB_PATH))
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        await conn.close()


async def init_database(db_path: Optional[Path] = None) -> None:
    """Initialize the database schema.

    Creates tables if they don't exist:
    - notes: note id, owner, title and document tree
    - note_chunks: chunk text, float32 embedding and metadata
    - index_runs: one row per corpus reindex
    """
    path = db_path or config.DB_PATH
    path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with get_connection(path) as conn:
            for statement in SCHEMA:
                await conn.execute(statement)
            await conn.commit()
    except sqlite3.Error as e:
        logger.error("database_init_failed", error=str(e), db_path=str(path))
        raise StoreUnavailable(f"Failed to initialize database: {e}") from e

    logger.info("database_initialized", db_path=str(path))


async def insert_index_run(
    owner_id: str,
    embedding_model: str,
    embedding_dimension: int,
    max_chunk_size: int,
    chunks_created: int,
    success_count: int,
    error_count: int,
    skipped_count: int,
    total_documents: int,
    metadata: Optional[Dict[str, Any]] = None,
    db_path: Optional[Path] = None,
) -> int:
    """Record a corpus reindex run.

    Returns:
        ID of the inserted row
    """
    try:
        async with get_connection(db_path) as conn:
            cursor = await conn.execute(
                """
                INSERT INTO index_runs (
                    owner_id, indexed_at, embedding_model, embedding_dimension,
                    max_chunk_size, chunks_created, success_count, error_count,
                    skipped_count, total_documents, metadata_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    owner_id,
                    utcnow(),
                    embedding_model,
                    embedding_dimension,
                    max_chunk_size,
                    chunks_created,
                    success_count,
                    error_count,
                    skipped_count,
                    total_documents,
                    json.dumps(metadata) if metadata else None,
                ),
            )
            await conn.commit()
            row_id = cursor.lastrowid
    except sqlite3.Error as e:
        logger.error("index_run_insert_failed", error=str(e), owner_id=owner_id)
        raise StoreUnavailable(f"Failed to record index run: {e}") from e

    logger.info("index_run_recorded", id=row_id, owner_id=owner_id, chunks_created=chunks_created)
    return row_id


async def get_latest_index_run(
    owner_id: str, db_path: Optional[Path] = None
) -> Optional[Dict[str, Any]]:
    """Get the most recent reindex run for an owner.

    Returns:
        Dictionary with run fields, or None if the owner was never reindexed
    """
    try:
        async with get_connection(db_path) as conn:
            cursor = await conn.execute(
                """
                SELECT * FROM index_runs
                WHERE owner_id = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (owner_id,),
            )
            row = await cursor.fetchone()
    except sqlite3.Error as e:
        logger.error("index_run_retrieval_failed", error=str(e), owner_id=owner_id)
        raise StoreUnavailable(f"Failed to read index runs: {e}") from e

    if row is None:
        return None

    run = dict(row)
    metadata_json = run.pop("metadata_json", None)
    run["metadata"] = json.loads(metadata_json) if metadata_json else {}
    return run
