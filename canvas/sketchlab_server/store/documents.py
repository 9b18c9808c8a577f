"""
Sticky-note document store for SketchLab Server.

Each project scope has one document: the ordered list of sticky notes on
its canvas. Writes are upserts by note id with last-writer-wins
semantics; concurrent edits to one note are never merged.

Table schema:
    notes:
        - note_id TEXT PRIMARY KEY
        - note_text TEXT
        - pos_x REAL, pos_y REAL, pos_z REAL
        - created_at INTEGER (Unix ms, preserved across replacements)
        - updated_at INTEGER (Unix ms)
        - updated_by TEXT (client identity of the last writer)

Invariants:
    - Document order is creation order
    - A replacement keeps the note's position in the document
    - Every read and write is scoped by project

How to change safely:
    - The wire shape (noteId, noteText, notePos) is shared with clients
    - Add columns with defaults; never rename existing ones
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import InvalidIdentifierError, InvalidPayloadError, NotFoundError
from ..validate import validate_identifier, validate_scope
from ._sqlite import ScopedSqliteStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotePosition:
    """Position of a note on the canvas."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {"x": self.x, "y": self.y, "z": self.z}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> NotePosition:
        """Parse a position, defaulting missing axes to zero.

        Raises:
            InvalidPayloadError: If the value is not an object of numbers
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise InvalidPayloadError("notePos", data, "must be an object")
        try:
            return cls(
                x=float(data.get("x", 0.0)),
                y=float(data.get("y", 0.0)),
                z=float(data.get("z", 0.0)),
            )
        except (TypeError, ValueError):
            raise InvalidPayloadError("notePos", data, "coordinates must be numbers")


@dataclass(frozen=True)
class Note:
    """A sticky note.

    Attributes:
        note_id: Client-chosen note identifier
        note_text: Note body
        note_pos: Canvas position
    """

    note_id: str
    note_text: str = ""
    note_pos: NotePosition = field(default_factory=NotePosition)

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation."""
        return {
            "noteId": self.note_id,
            "noteText": self.note_text,
            "notePos": self.note_pos.to_dict(),
        }


@dataclass(frozen=True)
class DocumentMutation:
    """A single note write, alive for one update request.

    Attributes:
        scope: Project the note belongs to
        note: New note content
        author: Client identity that sent the write
    """

    scope: str
    note: Note
    author: Optional[str] = None

    @classmethod
    def from_request(cls, scope: str, body: Dict[str, Any], author: Optional[str] = None) -> DocumentMutation:
        """Build a mutation from an update-data request body.

        Raises:
            InvalidIdentifierError: If the scope or note id is malformed
            InvalidPayloadError: If noteText or notePos has the wrong type
        """
        note_text = body.get("noteText", "")
        if note_text is None:
            note_text = ""
        if not isinstance(note_text, str):
            raise InvalidPayloadError("noteText", note_text, "must be a string")

        note = Note(
            note_id=validate_identifier(body.get("noteId"), "note"),
            note_text=note_text,
            note_pos=NotePosition.from_dict(body.get("notePos")),
        )
        return cls(scope=validate_scope(scope), note=note, author=author)


@dataclass
class MutationResult:
    """Outcome of a confirmed document write.

    Attributes:
        scope: Project that changed
        author: Client that performed the write
        created: True for a new note, False for a replacement or deletion
        note: The note written (or deleted)
        document: Full document after the write
        deleted: True when the mutation removed the note
    """

    scope: str
    author: Optional[str]
    created: bool
    note: Note
    document: List[Note]
    deleted: bool = False

    def document_dicts(self) -> List[Dict[str, Any]]:
        """Document in wire format."""
        return [n.to_dict() for n in self.document]


class DocumentStore(ScopedSqliteStore):
    """Per-project SQLite store of sticky notes.

    Example:
        >>> store = DocumentStore("/var/lib/sketchlab/notes")
        >>> result = await store.apply(mutation)
        >>> notes = await store.load("demo")
    """

    FILE_PREFIX = "notes"

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS notes (
                note_id TEXT PRIMARY KEY,
                note_text TEXT NOT NULL DEFAULT '',
                pos_x REAL NOT NULL DEFAULT 0,
                pos_y REAL NOT NULL DEFAULT 0,
                pos_z REAL NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                updated_by TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_notes_created ON notes(created_at);
        """)

    @staticmethod
    def _row_to_note(row: sqlite3.Row) -> Note:
        return Note(
            note_id=row["note_id"],
            note_text=row["note_text"],
            note_pos=NotePosition(x=row["pos_x"], y=row["pos_y"], z=row["pos_z"]),
        )

    def _load(self, conn: sqlite3.Connection) -> List[Note]:
        cursor = conn.execute("SELECT * FROM notes ORDER BY created_at, rowid")
        return [self._row_to_note(row) for row in cursor.fetchall()]

    async def load(self, scope: str) -> List[Note]:
        """Load the full document for a project.

        A project that was never written has an empty document.
        """
        validate_scope(scope)
        with self._storage_errors("load data", scope):
            with self._get_connection(scope) as conn:
                return self._load(conn)

    async def get_note(self, scope: str, note_id: str) -> Note:
        """Fetch one note.

        Raises:
            NotFoundError: If the note does not exist
        """
        validate_identifier(note_id, "note")
        with self._storage_errors("load note", scope):
            with self._get_connection(scope) as conn:
                row = conn.execute(
                    "SELECT * FROM notes WHERE note_id = ?", (note_id,)
                ).fetchone()
        if row is None:
            raise NotFoundError("note", note_id, scope)
        return self._row_to_note(row)

    async def apply(self, mutation: DocumentMutation) -> MutationResult:
        """Insert or replace a note.

        Args:
            mutation: Note write

        Returns:
            MutationResult with the full document after the write
        """
        note = mutation.note
        now = int(time.time() * 1000)

        async with self._lock:
            with self._storage_errors("update data", mutation.scope):
                with self._get_connection(mutation.scope) as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        existing = conn.execute(
                            "SELECT 1 FROM notes WHERE note_id = ?", (note.note_id,)
                        ).fetchone()
                        conn.execute(
                            """
                            INSERT INTO notes (note_id, note_text, pos_x, pos_y, pos_z,
                                               created_at, updated_at, updated_by)
                            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                            ON CONFLICT(note_id) DO UPDATE SET
                                note_text = excluded.note_text,
                                pos_x = excluded.pos_x,
                                pos_y = excluded.pos_y,
                                pos_z = excluded.pos_z,
                                updated_at = excluded.updated_at,
                                updated_by = excluded.updated_by
                            """,
                            (
                                note.note_id,
                                note.note_text,
                                note.note_pos.x,
                                note.note_pos.y,
                                note.note_pos.z,
                                now,
                                now,
                                mutation.author,
                            ),
                        )
                        document = self._load(conn)
                        conn.execute("COMMIT")
                    except Exception:
                        conn.execute("ROLLBACK")
                        raise

        created = existing is None
        logger.debug(
            "Applied note mutation",
            extra={
                "scope": mutation.scope,
                "note_id": note.note_id,
                "created": created,
                "author": mutation.author,
            },
        )
        return MutationResult(
            scope=mutation.scope,
            author=mutation.author,
            created=created,
            note=note,
            document=document,
        )

    async def delete(self, scope: str, note_id: str, author: Optional[str] = None) -> MutationResult:
        """Delete a note.

        Raises:
            InvalidIdentifierError: If the note id is malformed
            NotFoundError: If the note does not exist
        """
        validate_scope(scope)
        validate_identifier(note_id, "note")

        async with self._lock:
            with self._storage_errors("delete data", scope):
                with self._get_connection(scope) as conn:
                    conn.execute("BEGIN IMMEDIATE")
                    try:
                        row = conn.execute(
                            "SELECT * FROM notes WHERE note_id = ?", (note_id,)
                        ).fetchone()
                        if row is None:
                            conn.execute("ROLLBACK")
                            raise NotFoundError("note", note_id, scope)
                        conn.execute("DELETE FROM notes WHERE note_id = ?", (note_id,))
                        document = self._load(conn)
                        conn.execute("COMMIT")
                    except NotFoundError:
                        raise
                    except Exception:
                        conn.execute("ROLLBACK")
                        raise

        logger.debug("Deleted note", extra={"scope": scope, "note_id": note_id, "author": author})
        return MutationResult(
            scope=scope,
            author=author,
            created=False,
            note=self._row_to_note(row),
            document=document,
            deleted=True,
        )
