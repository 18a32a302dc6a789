"""
Document store collaborator.
Supplies a manuscript's ordered chapters and persists corrected chapters as
a new revision.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from .db import get_db, transaction
from .errors import DocumentNotFoundError
from .schema import Chapter, Document
from ..util.logging import StructuredLogger, get_logger


class DocumentStore(ABC):
    """Read and write access to manuscripts."""

    @abstractmethod
    def get_document(self, document_id: int) -> Document:
        """Load a document with its chapters in order. Raises DocumentNotFoundError."""

    @abstractmethod
    def save_chapters(self, document_id: int, chapters: List[Chapter], note: str = "") -> int:
        """Replace the given chapters' text and snapshot the document; returns the revision id."""


class SQLiteDocumentStore(DocumentStore):
    def __init__(self, db_path: str, logger: StructuredLogger = None):
        self.db_path = db_path
        self.logger = logger or get_logger("autocorrector.documents")

    def add_document(self, title: str, chapters: List[Chapter], genre: str = "", language: str = "en") -> int:
        """Insert a manuscript with its chapters."""
        with get_db(self.db_path) as conn:
            with transaction(conn):
                cursor = conn.execute(
                    "INSERT INTO documents (title, genre, language) VALUES (?, ?, ?)",
                    (title, genre, language)
                )
                document_id = cursor.lastrowid
                conn.executemany(
                    "INSERT INTO chapters (document_id, chapter_number, title, content) VALUES (?, ?, ?, ?)",
                    [(document_id, ch.chapter_number, ch.title, ch.content) for ch in chapters]
                )

        self.logger.log_operation("document.add", "success", {"document_id": document_id, "chapters": len(chapters)})
        return document_id

    def find_document(self, document_id: int) -> Optional[Document]:
        with get_db(self.db_path) as conn:
            row = conn.execute(
                "SELECT id, title, genre, language FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
            if row is None:
                return None

            chapter_rows = conn.execute(
                "SELECT chapter_number, title, content FROM chapters WHERE document_id = ? ORDER BY chapter_number",
                (document_id,)
            ).fetchall()

        return Document(
            id=row["id"],
            title=row["title"],
            genre=row["genre"] or "",
            language=row["language"] or "",
            chapters=[Chapter(r["chapter_number"], r["title"] or "", r["content"]) for r in chapter_rows]
        )

    def get_document(self, document_id: int) -> Document:
        document = self.find_document(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document

    def save_chapters(self, document_id: int, chapters: List[Chapter], note: str = "") -> int:
        now = datetime.now().isoformat()
        with get_db(self.db_path) as conn:
            with transaction(conn):
                if conn.execute("SELECT 1 FROM documents WHERE id = ?", (document_id,)).fetchone() is None:
                    raise DocumentNotFoundError(document_id)

                for ch in chapters:
                    conn.execute(
                        "UPDATE chapters SET content = ?, updated_at = ? WHERE document_id = ? AND chapter_number = ?",
                        (ch.content, now, document_id, ch.chapter_number)
                    )

                rows = conn.execute(
                    "SELECT chapter_number, title, content FROM chapters WHERE document_id = ? ORDER BY chapter_number",
                    (document_id,)
                ).fetchall()
                snapshot = [{"chapterNumber": r["chapter_number"], "title": r["title"], "content": r["content"]} for r in rows]

                cursor = conn.execute(
                    "INSERT INTO document_revisions (document_id, note, chapters, created_at) VALUES (?, ?, ?, ?)",
                    (document_id, note, json.dumps(snapshot), now)
                )
                revision_id = cursor.lastrowid

        self.logger.log_operation("document.revision", "saved", {
            "document_id": document_id,
            "revision_id": revision_id,
            "chapters_changed": [ch.chapter_number for ch in chapters]
        })
        return revision_id

    def get_revision(self, revision_id: int) -> Optional[List[Chapter]]:
        """Chapters of a stored snapshot."""
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT chapters FROM document_revisions WHERE id = ?", (revision_id,)).fetchone()
        if row is None:
            return None
        return [Chapter(c["chapterNumber"], c["title"] or "", c["content"]) for c in json.loads(row["chapters"])]
