"""Note repository: the document source for indexing.

Only the fields the RAG pipeline reads are kept: id, owner, title, the
editor document tree and tags.
"""
import json
import sqlite3
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional

import structlog

from noterag import config, db
from noterag.errors import NoteNotFound, StoreUnavailable, Unauthorized

logger = structlog.get_logger()


@dataclass
class Note:
    id: str
    owner_id: str
    title: str
    content: Any
    tags: List[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "content": self.content,
            "tags": self.tags,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def text_document(text: str) -> dict:
    """Wrap plain text in a single-paragraph editor document."""
    return {
        "type": "doc",
        "content": [
            {
                "type": "paragraph",
                "content": [{"type": "text", "text": text}],
            }
        ],
    }


class NoteRepository:
    """SQLite-backed notes table."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or config.DB_PATH

    async def create_note(
        self,
        owner_id: str,
        title: str,
        content: Any = None,
        tags: Optional[List[str]] = None,
    ) -> Note:
        """Insert a new note and return it."""
        now = db.utcnow()
        note = Note(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            title=title,
            content=content,
            tags=list(tags or []),
            created_at=now,
            updated_at=now,
        )

        await self._execute(
            """
            INSERT INTO notes (id, owner_id, title, content_json, tags_json, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                note.id,
                note.owner_id,
                note.title,
                json.dumps(note.content) if note.content is not None else None,
                json.dumps(note.tags),
                note.created_at,
                note.updated_at,
            ),
        )

        logger.info("note_created", note_id=note.id, owner_id=owner_id)
        return note

    async def get_note(self, note_id: str) -> Optional[Note]:
        rows = await self._fetch("SELECT * FROM notes WHERE id = ?", (note_id,))
        return self._to_note(rows[0]) if rows else None

    async def get_document(self, note_id: str, owner_id: str) -> Note:
        """Fetch a note on behalf of its owner.

        Raises:
            NoteNotFound: If no such note exists
            Unauthorized: If the note belongs to someone else
        """
        note = await self.get_note(note_id)
        if note is None:
            raise NoteNotFound(note_id)
        if note.owner_id != owner_id:
            logger.warning("note_access_denied", note_id=note_id, owner_id=owner_id)
            raise Unauthorized(note_id, owner_id)
        return note

    async def list_documents(self, owner_id: str) -> List[Note]:
        """All notes of an owner, oldest first."""
        rows = await self._fetch(
            "SELECT * FROM notes WHERE owner_id = ? ORDER BY created_at, rowid",
            (owner_id,),
        )
        return [self._to_note(row) for row in rows]

    async def update_content(
        self, note_id: str, owner_id: str, content: Any, title: Optional[str] = None
    ) -> Note:
        """Replace a note's document tree (and optionally its title)."""
        note = await self.get_document(note_id, owner_id)
        note.content = content
        note.title = title or note.title
        note.updated_at = db.utcnow()

        await self._execute(
            "UPDATE notes SET content_json = ?, title = ?, updated_at = ? WHERE id = ?",
            (json.dumps(content) if content is not None else None, note.title, note.updated_at, note_id),
        )
        return note

    async def delete_note(self, note_id: str, owner_id: str) -> None:
        """Delete an owner's note.

        Raises:
            NoteNotFound: If no such note exists
            Unauthorized: If the note belongs to someone else
        """
        await self.get_document(note_id, owner_id)
        await self._execute("DELETE FROM notes WHERE id = ?", (note_id,))
        logger.info("note_deleted", note_id=note_id, owner_id=owner_id)

    async def _execute(self, sql: str, params: tuple) -> None:
        try:
            async with db.get_connection(self.db_path) as conn:
                await conn.execute(sql, params)
                await conn.commit()
        except sqlite3.Error as e:
            logger.error("note_write_failed", error=str(e))
            raise StoreUnavailable(f"Note write failed: {e}") from e

    async def _fetch(self, sql: str, params: tuple) -> List[sqlite3.Row]:
        try:
            async with db.get_connection(self.db_path) as conn:
                cursor = await conn.execute(sql, params)
                return list(await cursor.fetchall())
        except sqlite3.Error as e:
            logger.error("note_query_failed", error=str(e))
            raise StoreUnavailable(f"Note query failed: {e}") from e

    @staticmethod
    def _to_note(row: sqlite3.Row) -> Note:
        return Note(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            content=json.loads(row["content_json"]) if row["content_json"] else None,
            tags=json.loads(row["tags_json"]) if row["tags_json"] else [],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
