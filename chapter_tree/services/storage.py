"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..config import AppConfig
from .errors import ChapterTreeError, TransactionFailureError


@dataclass
class BookRecord:
    id: int
    title: str
    description: Optional[str]
    created_at: str


@dataclass
class ChapterRecord:
    id: int
    book_id: int
    parent_id: Optional[int]
    title: str
    description: Optional[str]
    sort_order: int
    level: int
    path: Optional[str]
    created_at: str
    updated_at: str

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    def ancestor_ids(self) -> List[int]:
        """Ids of every ancestor from the root down, read from the materialized path."""

        if not self.path:
            return []
        return [int(part) for part in self.path.split("/")[:-1]]


_CHAPTER_COLUMNS = (
    "id, book_id, parent_id, title, description, sort_order, level, path, created_at, updated_at"
)
_SIBLING_ORDER = "ORDER BY sort_order, created_at, id"

# ``book_id`` is filtered in Python so the planner keeps the path index.
_DESCENDANTS_BY_PATH_SQL = f"""
    SELECT {_CHAPTER_COLUMNS} FROM chapters
    WHERE path > ? AND path < ?
    ORDER BY level, sort_order, created_at, id
"""

_BUSY_TIMEOUT_SECONDS = 30.0

_MISSING = object()


LOGGER = logging.getLogger(__name__)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def descendant_path_bounds(path: str) -> Tuple[str, str]:
    """Exclusive ``(low, high)`` bounds matching every path below *path*.

    Paths hold only digits and ``/``, and ``"0"`` sorts right after ``"/"``, so
    ``"5/"`` < ``"5/12/31"`` < ``"50"`` while ``"50/1"`` stays outside.
    """

    return f"{path}/", f"{path}0"


class ChapterRepository:
    """Tree record store: SQL access to books and chapters.

    Connection-scoped helpers (``fetch_*``, ``insert_chapter``,
    ``update_chapter_fields`` …) take an open connection so the engines can
    compose several of them inside one :meth:`transaction`.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured debug event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            self._event_emitter(
                "DB_QUERY",
                action,
                payload=filtered,
                duration_ms=duration_ms,
            )

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None = None,
        *,
        action: str,
        table: Optional[str] = "chapters",
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...]
        if parameters is None:
            params = ()
        elif isinstance(parameters, tuple):
            params = parameters
        else:
            params = tuple(parameters)
        with self._track_db_event(
            action,
            table=table,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            cursor = connection.execute(statement, params)
            rowcount = cursor.rowcount if cursor.rowcount >= 0 else None
            if rowcount is not None:
                event.setdefault("rowcount", int(rowcount))
            return cursor

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        # Autocommit mode: transactions are opened explicitly by ``transaction``.
        connection = sqlite3.connect(
            self._db_path,
            timeout=_BUSY_TIMEOUT_SECONDS,
            isolation_level=None,
        )
        connection.row_factory = sqlite3.Row
        self._execute(
            connection,
            "PRAGMA foreign_keys = ON",
            action="pragma_foreign_keys",
            table=None,
        )
        return connection

    @contextlib.contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        """Yield a short-lived connection for read-only work."""

        connection = self._connect()
        try:
            yield connection
        finally:
            connection.close()

    @contextlib.contextmanager
    def transaction(self, action: str, **payload: Any) -> Iterator[sqlite3.Connection]:
        """Run the enclosed block as one ``BEGIN IMMEDIATE`` transaction.

        The write lock is taken before the first read so every check made inside
        the block still holds at commit time. Any exception rolls the whole
        block back; raw ``sqlite3`` failures surface as
        :class:`TransactionFailureError`.
        """

        with self._track_db_event(f"transaction.{action}", **payload) as event:
            try:
                connection = self._connect()
            except sqlite3.Error as error:
                raise TransactionFailureError(f"{action}: {error}") from error
            try:
                self._execute(connection, "BEGIN IMMEDIATE", action="begin", table=None)
                try:
                    yield connection
                except BaseException:
                    connection.rollback()
                    LOGGER.debug("Rolled back transaction '%s'", action)
                    event["result"] = "rolled_back"
                    raise
                connection.commit()
                event["result"] = "committed"
            except ChapterTreeError:
                raise
            except sqlite3.Error as error:
                with contextlib.suppress(sqlite3.Error):
                    connection.rollback()
                LOGGER.warning("Transaction '%s' failed: %s", action, error)
                raise TransactionFailureError(f"{action}: {error}") from error
            finally:
                connection.close()

    # ---------------------------------------------------------------------
    # Books
    # ---------------------------------------------------------------------
    def add_book(self, title: str, description: Optional[str] = None) -> int:
        LOGGER.debug("Adding book '%s'", title)
        with self.transaction("add_book", table="books") as connection:
            cursor = self._execute(
                connection,
                "INSERT INTO books(title, description, created_at) VALUES (?, ?, ?)",
                (title, description, utc_timestamp()),
                action="books.insert",
                table="books",
            )
            book_id = int(cursor.lastrowid)
        LOGGER.debug("Book '%s' inserted with id=%s", title, book_id)
        return book_id

    def fetch_book(self, connection: sqlite3.Connection, book_id: int) -> Optional[BookRecord]:
        cursor = self._execute(
            connection,
            "SELECT id, title, description, created_at FROM books WHERE id = ?",
            (book_id,),
            action="books.lookup",
            table="books",
        )
        row = cursor.fetchone()
        return BookRecord(**row) if row else None

    def get_book(self, book_id: int) -> Optional[BookRecord]:
        with self.reader() as connection:
            return self.fetch_book(connection, book_id)

    def list_books(self) -> List[BookRecord]:
        with self.reader() as connection:
            cursor = self._execute(
                connection,
                "SELECT id, title, description, created_at FROM books ORDER BY id",
                action="books.list",
                table="books",
            )
            return [BookRecord(**row) for row in cursor.fetchall()]

    # ---------------------------------------------------------------------
    # Chapter reads
    # ---------------------------------------------------------------------
    def fetch_chapter(
        self, connection: sqlite3.Connection, chapter_id: int
    ) -> Optional[ChapterRecord]:
        cursor = self._execute(
            connection,
            f"SELECT {_CHAPTER_COLUMNS} FROM chapters WHERE id = ?",
            (chapter_id,),
            action="chapters.lookup",
        )
        row = cursor.fetchone()
        return ChapterRecord(**row) if row else None

    def fetch_parent_id(
        self, connection: sqlite3.Connection, chapter_id: int
    ) -> Tuple[bool, Optional[int]]:
        """Return ``(exists, parent_id)`` for *chapter_id*."""

        cursor = self._execute(
            connection,
            "SELECT parent_id FROM chapters WHERE id = ?",
            (chapter_id,),
            action="chapters.lookup_parent",
        )
        row = cursor.fetchone()
        if row is None:
            return False, None
        return True, row["parent_id"]

    def fetch_children(
        self, connection: sqlite3.Connection, chapter_id: int
    ) -> List[ChapterRecord]:
        cursor = self._execute(
            connection,
            f"SELECT {_CHAPTER_COLUMNS} FROM chapters WHERE parent_id = ? {_SIBLING_ORDER}",
            (chapter_id,),
            action="chapters.children",
        )
        return [ChapterRecord(**row) for row in cursor.fetchall()]

    def fetch_sibling_group(
        self,
        connection: sqlite3.Connection,
        book_id: int,
        parent_id: Optional[int],
    ) -> List[ChapterRecord]:
        cursor = self._execute(
            connection,
            f"""
            SELECT {_CHAPTER_COLUMNS} FROM chapters
            WHERE book_id = ? AND parent_id IS ?
            {_SIBLING_ORDER}
            """,
            (book_id, parent_id),
            action="chapters.sibling_group",
        )
        return [ChapterRecord(**row) for row in cursor.fetchall()]

    def fetch_max_sort_order(
        self,
        connection: sqlite3.Connection,
        book_id: int,
        parent_id: Optional[int],
    ) -> Optional[int]:
        cursor = self._execute(
            connection,
            "SELECT MAX(sort_order) FROM chapters WHERE book_id = ? AND parent_id IS ?",
            (book_id, parent_id),
            action="chapters.max_sort_order",
        )
        row = cursor.fetchone()
        if row is None or row[0] is None:
            return None
        return int(row[0])

    def fetch_neighbor(
        self,
        connection: sqlite3.Connection,
        chapter: ChapterRecord,
        *,
        before: bool,
    ) -> Optional[ChapterRecord]:
        """Closest sibling with a strictly lower (``before``) or higher ``sort_order``."""

        comparison, direction = ("<", "DESC") if before else (">", "ASC")
        cursor = self._execute(
            connection,
            f"""
            SELECT {_CHAPTER_COLUMNS} FROM chapters
            WHERE book_id = ? AND parent_id IS ? AND sort_order {comparison} ?
            ORDER BY sort_order {direction}, created_at {direction}, id {direction}
            LIMIT 1
            """,
            (chapter.book_id, chapter.parent_id, chapter.sort_order),
            action="chapters.neighbor",
        )
        row = cursor.fetchone()
        return ChapterRecord(**row) if row else None

    def fetch_book_chapters(
        self, connection: sqlite3.Connection, book_id: int
    ) -> List[ChapterRecord]:
        cursor = self._execute(
            connection,
            f"SELECT {_CHAPTER_COLUMNS} FROM chapters WHERE book_id = ? {_SIBLING_ORDER}",
            (book_id,),
            action="chapters.by_book",
        )
        return [ChapterRecord(**row) for row in cursor.fetchall()]

    def fetch_chapters_by_ids(
        self, connection: sqlite3.Connection, chapter_ids: Sequence[int]
    ) -> List[ChapterRecord]:
        if not chapter_ids:
            return []
        placeholders = ", ".join("?" for _ in chapter_ids)
        cursor = self._execute(
            connection,
            f"SELECT {_CHAPTER_COLUMNS} FROM chapters WHERE id IN ({placeholders})",
            tuple(chapter_ids),
            action="chapters.by_ids",
        )
        return [ChapterRecord(**row) for row in cursor.fetchall()]

    def fetch_subtree_by_path(
        self, connection: sqlite3.Connection, chapter: ChapterRecord
    ) -> List[ChapterRecord]:
        """The chapter and every descendant, using a range scan of ``idx_chapters_path``."""

        if not chapter.path:
            return [chapter]
        cursor = self._execute(
            connection,
            _DESCENDANTS_BY_PATH_SQL,
            descendant_path_bounds(chapter.path),
            action="chapters.subtree",
        )
        descendants = [ChapterRecord(**row) for row in cursor.fetchall()]
        return [chapter, *(record for record in descendants if record.book_id == chapter.book_id)]

    def search_chapters(
        self, connection: sqlite3.Connection, book_id: int, query: str
    ) -> List[ChapterRecord]:
        pattern = f"%{query}%"
        cursor = self._execute(
            connection,
            f"""
            SELECT {_CHAPTER_COLUMNS} FROM chapters
            WHERE book_id = ? AND (title LIKE ? OR COALESCE(description, '') LIKE ?)
            {_SIBLING_ORDER}
            """,
            (book_id, pattern, pattern),
            action="chapters.search",
        )
        return [ChapterRecord(**row) for row in cursor.fetchall()]

    def get_chapter(self, chapter_id: int) -> Optional[ChapterRecord]:
        with self.reader() as connection:
            record = self.fetch_chapter(connection, chapter_id)
        if record is None:
            LOGGER.debug("Chapter id=%s not found", chapter_id)
        return record

    # ---------------------------------------------------------------------
    # Chapter writes (caller owns the transaction)
    # ---------------------------------------------------------------------
    def insert_chapter(
        self,
        connection: sqlite3.Connection,
        *,
        book_id: int,
        parent_id: Optional[int],
        title: str,
        description: Optional[str],
        sort_order: int,
    ) -> int:
        timestamp = utc_timestamp()
        cursor = self._execute(
            connection,
            """
            INSERT INTO chapters(
                book_id, parent_id, title, description, sort_order, level, path,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 0, NULL, ?, ?)
            """,
            (book_id, parent_id, title, description, sort_order, timestamp, timestamp),
            action="chapters.insert",
        )
        chapter_id = int(cursor.lastrowid)
        LOGGER.debug(
            "Chapter '%s' inserted with id=%s (book_id=%s parent_id=%s sort_order=%s)",
            title,
            chapter_id,
            book_id,
            parent_id,
            sort_order,
        )
        return chapter_id

    def update_chapter_fields(
        self,
        connection: sqlite3.Connection,
        chapter_id: int,
        *,
        title: Optional[str] | object = _MISSING,
        description: Optional[str] | object = _MISSING,
        sort_order: Optional[int] | object = _MISSING,
        parent_id: Optional[int] | object = _MISSING,
    ) -> int:
        """Update only the provided columns; ``updated_at`` is always refreshed."""

        assignments: List[str] = []
        params: List[object] = []
        for column, value in (
            ("title", title),
            ("description", description),
            ("sort_order", sort_order),
            ("parent_id", parent_id),
        ):
            if value is not _MISSING:
                assignments.append(f"{column} = ?")
                params.append(value)
        assignments.append("updated_at = ?")
        params.append(utc_timestamp())
        params.append(chapter_id)
        cursor = self._execute(
            connection,
            "UPDATE chapters SET " + ", ".join(assignments) + " WHERE id = ?",
            params,
            action="chapters.update",
        )
        affected = cursor.rowcount if cursor.rowcount and cursor.rowcount > 0 else 0
        LOGGER.debug("Chapter id=%s updated with assignments=%s", chapter_id, assignments)
        return int(affected)

    def write_tree_fields(
        self,
        connection: sqlite3.Connection,
        chapter_id: int,
        *,
        level: int,
        path: str,
    ) -> None:
        self._execute(
            connection,
            "UPDATE chapters SET level = ?, path = ?, updated_at = ? WHERE id = ?",
            (level, path, utc_timestamp(), chapter_id),
            action="chapters.write_tree_fields",
        )

    def write_sort_orders(
        self,
        connection: sqlite3.Connection,
        assignments: Sequence[Tuple[int, int]],
    ) -> None:
        """Apply ``(chapter_id, sort_order)`` pairs."""

        timestamp = utc_timestamp()
        for chapter_id, sort_order in assignments:
            self._execute(
                connection,
                "UPDATE chapters SET sort_order = ?, updated_at = ? WHERE id = ?",
                (sort_order, timestamp, chapter_id),
                action="chapters.write_sort_order",
            )

    def delete_chapters(self, connection: sqlite3.Connection, chapter_ids: Sequence[int]) -> int:
        if not chapter_ids:
            return 0
        placeholders = ", ".join("?" for _ in chapter_ids)
        cursor = self._execute(
            connection,
            f"DELETE FROM chapters WHERE id IN ({placeholders})",
            tuple(chapter_ids),
            action="chapters.delete",
        )
        return int(cursor.rowcount if cursor.rowcount and cursor.rowcount > 0 else 0)


__all__ = [
    "BookRecord",
    "ChapterRecord",
    "ChapterRepository",
    "descendant_path_bounds",
    "utc_timestamp",
]
