"""Catalog titles and their per-title copy counts.

``reserve_copy`` and ``release_copy`` run on the caller's connection so they
commit or roll back together with the loan change that triggered them.
"""
import logging
import sqlite3
from typing import List, Optional

from circulation import database
from circulation.config import CirculationConfig
from circulation.errors import TitleNotFound, Unavailable, ValidationError
from circulation.models import Title, TitleStatus
from circulation.services.audit import AuditSink
from circulation.validators import NumberValidator, TextValidator

logger = logging.getLogger(__name__)


class CatalogTracker:

    def __init__(self, db_file: str, config: CirculationConfig, audit: AuditSink):
        self.db_file = db_file
        self.config = config
        self.audit = audit

    # ------------------------- Availability ------------------------- #
    @staticmethod
    def reserve_copy(conn: sqlite3.Connection, title_id: int) -> None:
        """Take one copy of an ACTIVE title or raise ``Unavailable``/``TitleNotFound``."""
        cursor = conn.execute(
            """
            UPDATE titles SET available_copies = available_copies - 1
            WHERE id = ? AND status = ? AND available_copies > 0
            """,
            (title_id, TitleStatus.ACTIVE.value),
        )
        if cursor.rowcount == 1:
            return
        row = conn.execute("SELECT status FROM titles WHERE id = ?", (title_id,)).fetchone()
        if row is None or row["status"] != TitleStatus.ACTIVE.value:
            raise TitleNotFound(f"Title {title_id} not found")
        raise Unavailable(f"No copies of title {title_id} are available")

    @staticmethod
    def release_copy(conn: sqlite3.Connection, title_id: int) -> None:
        """Put one copy back, never above ``total_copies``."""
        cursor = conn.execute(
            """
            UPDATE titles SET available_copies = available_copies + 1
            WHERE id = ? AND available_copies < total_copies
            """,
            (title_id,),
        )
        if cursor.rowcount == 0:
            logger.warning(f"release_copy on title {title_id} ignored: already at total_copies or missing")

    # ------------------------- Catalog admin ------------------------- #
    def add_title(self, title: str, author: str, total_copies: int, *, isbn: Optional[str] = None,
                  genre: Optional[str] = None, publisher: Optional[str] = None,
                  publication_year: Optional[int] = None, description: Optional[str] = None,
                  performed_by: Optional[int] = None) -> Title:
        title = TextValidator.require_text(title, "title")
        author = TextValidator.require_text(author, "author")
        total_copies = NumberValidator.require_count(total_copies, "total_copies")

        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            cursor = conn.execute(
                """
                INSERT INTO titles (title, author, isbn, genre, publisher, publication_year,
                                    description, total_copies, available_copies, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (title, author, isbn, genre, publisher, publication_year,
                 TextValidator.sanitize_text(description) or None,
                 total_copies, total_copies, TitleStatus.ACTIVE.value),
            )
            title_id = cursor.lastrowid

        self.audit.record("BOOK_CREATED", "BOOK", title_id, performed_by,
                          {"title": title, "total_copies": total_copies})
        return self.get_title(title_id)

    def update_copies(self, title_id: int, total_copies: int, performed_by: Optional[int] = None) -> Title:
        """Change ``total_copies``; copies currently on loan stay on loan."""
        NumberValidator.require_id(title_id, "title_id")
        total_copies = NumberValidator.require_count(total_copies, "total_copies")

        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            row = conn.execute(
                "SELECT total_copies, available_copies FROM titles WHERE id = ?", (title_id,)
            ).fetchone()
            if row is None:
                raise TitleNotFound(f"Title {title_id} not found")
            on_loan = row["total_copies"] - row["available_copies"]
            if total_copies < on_loan:
                raise ValidationError(
                    f"Cannot reduce total_copies to {total_copies}; {on_loan} copies are on loan"
                )
            conn.execute(
                "UPDATE titles SET total_copies = ?, available_copies = ? WHERE id = ?",
                (total_copies, total_copies - on_loan, title_id),
            )

        self.audit.record("BOOK_UPDATED", "BOOK", title_id, performed_by, {"total_copies": total_copies})
        return self.get_title(title_id)

    def archive_title(self, title_id: int, performed_by: Optional[int] = None) -> Title:
        NumberValidator.require_id(title_id, "title_id")
        with database.transaction(self.db_file, self.config.lock_timeout_seconds) as conn:
            cursor = conn.execute(
                "UPDATE titles SET status = ? WHERE id = ?", (TitleStatus.ARCHIVED.value, title_id)
            )
            if cursor.rowcount == 0:
                raise TitleNotFound(f"Title {title_id} not found")

        self.audit.record("BOOK_ARCHIVED", "BOOK", title_id, performed_by)
        return self.get_title(title_id)

    # ------------------------- Reads ------------------------- #
    def get_title(self, title_id: int) -> Title:
        conn = database.get_db_connection(self.db_file)
        try:
            row = conn.execute("SELECT * FROM titles WHERE id = ?", (title_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise TitleNotFound(f"Title {title_id} not found")
        return Title.from_row(row)

    def list_titles(self, include_archived: bool = False) -> List[Title]:
        sql = "SELECT * FROM titles"
        params: tuple = ()
        if not include_archived:
            sql += " WHERE status = ?"
            params = (TitleStatus.ACTIVE.value,)
        sql += " ORDER BY title"
        conn = database.get_db_connection(self.db_file)
        try:
            rows = conn.execute(sql, params).fetchall()
            return [Title.from_row(row) for row in rows]
        finally:
            conn.close()

    def search_titles(self, query: str) -> List[Title]:
        """Search ACTIVE titles by title, author or isbn."""
        like = f"%{query.strip()}%"
        conn = database.get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                """
                SELECT * FROM titles
                WHERE status = ? AND (title LIKE ? OR author LIKE ? OR isbn LIKE ?)
                ORDER BY title
                """,
                (TitleStatus.ACTIVE.value, like, like, like),
            ).fetchall()
            return [Title.from_row(row) for row in rows]
        finally:
            conn.close()
