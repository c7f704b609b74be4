"""Tree mutation engine: atomic create / move / reorder operations on chapters."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..config import DEFAULT_CYCLE_CHECK_MAX_DEPTH, AppConfig
from .cycles import CycleGuard
from .errors import (
    BookNotFoundError,
    ChapterNotFoundError,
    ChapterTreeError,
    CycleDetectedError,
    ScopeMismatchError,
)
from .events import DEFAULT_EVENT_LOGGER, emit_tree_event
from .ordering import Direction, SiblingOrdering
from .paths import PATH_SEPARATOR, PathRecomputer
from .storage import BookRecord, ChapterRecord, ChapterRepository


LOGGER = logging.getLogger(__name__)

_UNCHANGED = object()


@dataclass
class ChapterTreeNode:
    chapter: ChapterRecord
    children: List["ChapterTreeNode"] = field(default_factory=list)


def _clean_title(title: str) -> str:
    cleaned = (title or "").strip()
    if not cleaned:
        raise ValueError("Chapter title is required")
    return cleaned


class ChapterTreeService:
    """Orchestrates ordering, cycle checks and path recomputation.

    Each mutating method runs in exactly one repository transaction, so a
    failure at any step leaves no partial write behind. Authorization is the
    caller's job.
    """

    def __init__(
        self,
        repository: ChapterRepository,
        *,
        max_cycle_depth: int = DEFAULT_CYCLE_CHECK_MAX_DEPTH,
        event_logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
    ) -> None:
        self._repository = repository
        self._ordering = SiblingOrdering(repository)
        self._paths = PathRecomputer(repository)
        self._cycle_guard = CycleGuard(repository, max_depth=max_cycle_depth)
        self._event_logger = event_logger

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
        event_logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
    ) -> "ChapterTreeService":
        repository = ChapterRepository(config, event_emitter=event_emitter)
        return cls(
            repository,
            max_cycle_depth=config.cycle_check_max_depth,
            event_logger=event_logger,
        )

    @property
    def repository(self) -> ChapterRepository:
        return self._repository

    def configure_event_logger(
        self, event_logger: logging.Logger | logging.LoggerAdapter
    ) -> None:
        """Route ``TREE_MUTATION`` events through *event_logger*."""

        self._event_logger = event_logger

    @contextlib.contextmanager
    def _mutation(
        self, operation: str, **details: Any
    ) -> Iterator[Tuple[sqlite3.Connection, Dict[str, Any]]]:
        start = time.perf_counter()
        try:
            with self._repository.transaction(operation) as connection:
                yield connection, details
        except ChapterTreeError as error:
            emit_tree_event(
                operation,
                payload={**details, "status": "error", "error": str(error)},
                duration_ms=(time.perf_counter() - start) * 1000.0,
                level=logging.WARNING,
                logger=self._event_logger,
            )
            raise
        emit_tree_event(
            operation,
            payload={**details, "status": "ok"},
            duration_ms=(time.perf_counter() - start) * 1000.0,
            logger=self._event_logger,
        )

    def _require_chapter(
        self, connection: sqlite3.Connection, chapter_id: int, *, role: str = "Chapter"
    ) -> ChapterRecord:
        record = self._repository.fetch_chapter(connection, chapter_id)
        if record is None:
            raise ChapterNotFoundError(chapter_id, role=role)
        return record

    def _require_parent_in_book(
        self, connection: sqlite3.Connection, parent_id: int, book_id: int
    ) -> ChapterRecord:
        parent = self._require_chapter(connection, parent_id, role="Parent chapter")
        if parent.book_id != book_id:
            raise ScopeMismatchError(
                parent_id,
                book_id=book_id,
                message=f"Parent chapter {parent_id} belongs to another book",
            )
        return parent

    # ---------------------------------------------------------------------
    # Books
    # ---------------------------------------------------------------------
    def create_book(self, title: str, description: Optional[str] = None) -> BookRecord:
        cleaned = (title or "").strip()
        if not cleaned:
            raise ValueError("Book title is required")
        book_id = self._repository.add_book(cleaned, description)
        LOGGER.info("Created book id=%s", book_id)
        return self.get_book(book_id)

    def get_book(self, book_id: int) -> BookRecord:
        record = self._repository.get_book(book_id)
        if record is None:
            raise BookNotFoundError(book_id)
        return record

    def list_books(self) -> List[BookRecord]:
        return self._repository.list_books()

    # ---------------------------------------------------------------------
    # Creation and metadata
    # ---------------------------------------------------------------------
    def create_chapter(
        self,
        book_id: int,
        title: str,
        *,
        parent_id: Optional[int] = None,
        description: Optional[str] = None,
        sort_order: Optional[int] = None,
    ) -> ChapterRecord:
        """Insert a root or child chapter with derived ``level``/``path``.

        Without an explicit ``sort_order`` the chapter is appended to its
        sibling group.
        """

        cleaned_title = _clean_title(title)
        with self._mutation("create_chapter", book_id=book_id, parent_id=parent_id) as (
            connection,
            details,
        ):
            if self._repository.fetch_book(connection, book_id) is None:
                raise BookNotFoundError(book_id)
            if parent_id is not None:
                self._require_parent_in_book(connection, parent_id, book_id)
            if sort_order is None:
                sort_order = self._ordering.next_sort_order(connection, book_id, parent_id)
            chapter_id = self._repository.insert_chapter(
                connection,
                book_id=book_id,
                parent_id=parent_id,
                title=cleaned_title,
                description=description,
                sort_order=sort_order,
            )
            # ``path`` embeds the id, which only exists after the insert.
            self._paths.recompute(connection, chapter_id, parent_id)
            record = self._require_chapter(connection, chapter_id)
            details.update(chapter_id=chapter_id, sort_order=sort_order, level=record.level)
        LOGGER.info(
            "Created chapter id=%s in book_id=%s (parent_id=%s level=%s sort_order=%s)",
            record.id,
            book_id,
            parent_id,
            record.level,
            record.sort_order,
        )
        return record

    def create_child(
        self,
        parent_id: int,
        title: str,
        *,
        description: Optional[str] = None,
        sort_order: Optional[int] = None,
    ) -> ChapterRecord:
        parent = self.get_chapter(parent_id)
        return self.create_chapter(
            parent.book_id,
            title,
            parent_id=parent.id,
            description=description,
            sort_order=sort_order,
        )

    def get_chapter(self, chapter_id: int) -> ChapterRecord:
        record = self._repository.get_chapter(chapter_id)
        if record is None:
            raise ChapterNotFoundError(chapter_id)
        return record

    def update_chapter(
        self,
        chapter_id: int,
        *,
        title: Optional[str] = None,
        description: Optional[str] | object = _UNCHANGED,
        sort_order: Optional[int] = None,
    ) -> ChapterRecord:
        """Edit fields that do not affect tree shape; no cycle check or path work.

        ``title`` and ``sort_order`` are left alone when ``None``. ``description``
        is left alone when omitted and cleared when passed as ``None``.
        """

        changes: Dict[str, Any] = {}
        if title is not None:
            changes["title"] = _clean_title(title)
        if description is not _UNCHANGED:
            changes["description"] = description
        if sort_order is not None:
            changes["sort_order"] = sort_order

        with self._mutation(
            "update_chapter", chapter_id=chapter_id, fields=sorted(changes)
        ) as (connection, details):
            chapter = self._require_chapter(connection, chapter_id)
            details["book_id"] = chapter.book_id
            if changes:
                self._repository.update_chapter_fields(connection, chapter_id, **changes)
            record = self._require_chapter(connection, chapter_id)
        return record

    def set_sort_order(self, chapter_id: int, sort_order: int) -> ChapterRecord:
        return self.update_chapter(chapter_id, sort_order=sort_order)

    # ---------------------------------------------------------------------
    # Structural mutations
    # ---------------------------------------------------------------------
    def move_chapter(
        self,
        chapter_id: int,
        new_parent_id: Optional[int] = None,
        new_sort_order: Optional[int] = None,
    ) -> ChapterRecord:
        """Re-parent *chapter_id* (``None`` makes it a root) and rewrite its subtree.

        The cycle check happens before the first write. When the parent changes
        and no ``new_sort_order`` is given, the chapter is appended to its new
        sibling group; otherwise its current order is kept.
        """

        with self._mutation(
            "move_chapter",
            chapter_id=chapter_id,
            new_parent_id=new_parent_id,
            new_sort_order=new_sort_order,
        ) as (connection, details):
            chapter = self._require_chapter(connection, chapter_id)
            details["book_id"] = chapter.book_id
            if new_parent_id is not None:
                self._require_parent_in_book(connection, new_parent_id, chapter.book_id)
                if self._cycle_guard.would_create_cycle(connection, chapter_id, new_parent_id):
                    raise CycleDetectedError(chapter_id, new_parent_id)

            sort_order = new_sort_order
            if sort_order is None and new_parent_id != chapter.parent_id:
                sort_order = self._ordering.next_sort_order(
                    connection, chapter.book_id, new_parent_id
                )
            if sort_order is None:
                self._repository.update_chapter_fields(
                    connection, chapter_id, parent_id=new_parent_id
                )
            else:
                self._repository.update_chapter_fields(
                    connection, chapter_id, parent_id=new_parent_id, sort_order=sort_order
                )
            rewritten = self._paths.recompute(connection, chapter_id, new_parent_id)
            record = self._require_chapter(connection, chapter_id)
            details.update(
                old_parent_id=chapter.parent_id,
                level=record.level,
                rows_rewritten=rewritten,
            )
        LOGGER.info(
            "Moved chapter id=%s from parent_id=%s to parent_id=%s (%d rows rewritten)",
            chapter_id,
            chapter.parent_id,
            new_parent_id,
            rewritten,
        )
        return record

    def _swap(self, chapter_id: int, direction: Direction) -> bool:
        with self._mutation(
            f"move_{direction.value}", chapter_id=chapter_id
        ) as (connection, details):
            moved = self._ordering.swap_with_neighbor(connection, chapter_id, direction)
            details["moved"] = moved
        return moved

    def move_up(self, chapter_id: int) -> bool:
        return self._swap(chapter_id, Direction.UP)

    def move_down(self, chapter_id: int) -> bool:
        return self._swap(chapter_id, Direction.DOWN)

    def reorder_all(
        self,
        book_id: int,
        parent_id: Optional[int],
        ordered_ids: Sequence[int],
    ) -> List[ChapterRecord]:
        """Renumber a sibling group ``1..N`` in the given order; returns the group."""

        with self._mutation(
            "reorder_all", book_id=book_id, parent_id=parent_id, count=len(ordered_ids)
        ) as (connection, _details):
            if self._repository.fetch_book(connection, book_id) is None:
                raise BookNotFoundError(book_id)
            self._ordering.reorder_all(connection, book_id, parent_id, ordered_ids)
            group = self._repository.fetch_sibling_group(connection, book_id, parent_id)
        return group

    def delete_chapter(self, chapter_id: int) -> int:
        """Delete the chapter together with its entire subtree; returns rows removed."""

        with self._mutation("delete_chapter", chapter_id=chapter_id) as (connection, details):
            details["book_id"] = self._require_chapter(connection, chapter_id).book_id
            subtree = self._paths.collect_subtree_ids(connection, chapter_id)
            removed = self._repository.delete_chapters(connection, subtree)
            details["removed"] = removed
        LOGGER.info("Deleted chapter id=%s and %d descendants", chapter_id, removed - 1)
        return removed

    def rebuild_paths(self, book_id: int) -> int:
        """Recompute ``level``/``path`` for every chapter of a book from ``parent_id``."""

        with self._mutation("rebuild_paths", book_id=book_id) as (connection, details):
            if self._repository.fetch_book(connection, book_id) is None:
                raise BookNotFoundError(book_id)
            rewritten = 0
            for root in self._repository.fetch_sibling_group(connection, book_id, None):
                rewritten += self._paths.recompute(connection, root.id, None)
            details["rows_rewritten"] = rewritten
        LOGGER.info("Rebuilt paths for book_id=%s (%d rows rewritten)", book_id, rewritten)
        return rewritten

    # ---------------------------------------------------------------------
    # Reads
    # ---------------------------------------------------------------------
    def _book_chapters(self, book_id: int) -> List[ChapterRecord]:
        with self._repository.reader() as connection:
            if self._repository.fetch_book(connection, book_id) is None:
                raise BookNotFoundError(book_id)
            return self._repository.fetch_book_chapters(connection, book_id)

    def list_chapters(self, book_id: int, query: Optional[str] = None) -> List[ChapterRecord]:
        if not query or not query.strip():
            return self._book_chapters(book_id)
        with self._repository.reader() as connection:
            if self._repository.fetch_book(connection, book_id) is None:
                raise BookNotFoundError(book_id)
            return self._repository.search_chapters(connection, book_id, query.strip())

    def find_children(self, chapter_id: int) -> List[ChapterRecord]:
        with self._repository.reader() as connection:
            self._require_chapter(connection, chapter_id)
            return self._repository.fetch_children(connection, chapter_id)

    def get_subtree(self, chapter_id: int) -> List[ChapterRecord]:
        """The chapter and all descendants via one indexed range query on ``path``."""

        with self._repository.reader() as connection:
            chapter = self._require_chapter(connection, chapter_id)
            return self._repository.fetch_subtree_by_path(connection, chapter)

    def search_with_parents(self, book_id: int, query: str) -> List[ChapterRecord]:
        """Chapters matching *query* plus every ancestor needed to place them in the tree."""

        with self._repository.reader() as connection:
            if self._repository.fetch_book(connection, book_id) is None:
                raise BookNotFoundError(book_id)
            matches = self._repository.search_chapters(connection, book_id, query.strip())
            wanted = {record.id for record in matches}
            for record in matches:
                wanted.update(record.ancestor_ids())
            records = self._repository.fetch_chapters_by_ids(connection, sorted(wanted))
        records = [record for record in records if record.book_id == book_id]
        records.sort(key=lambda item: (item.level, item.sort_order, item.created_at, item.id))
        return records

    def get_tree(self, book_id: int) -> List[ChapterTreeNode]:
        """Root nodes of the book, each carrying its children in sibling order."""

        chapters = self._book_chapters(book_id)
        nodes = {record.id: ChapterTreeNode(chapter=record) for record in chapters}
        roots: List[ChapterTreeNode] = []
        for record in chapters:
            node = nodes[record.id]
            parent = nodes.get(record.parent_id) if record.parent_id is not None else None
            if parent is None:
                if record.parent_id is not None:
                    LOGGER.warning(
                        "Chapter id=%s references missing parent id=%s; listing it as a root",
                        record.id,
                        record.parent_id,
                    )
                roots.append(node)
            else:
                parent.children.append(node)
        return roots

    def get_flat_list(self, book_id: int) -> List[ChapterRecord]:
        """Pre-order traversal of the book's tree; each record carries its ``level``."""

        flat: List[ChapterRecord] = []
        stack = list(reversed(self.get_tree(book_id)))
        while stack:
            node = stack.pop()
            flat.append(node.chapter)
            stack.extend(reversed(node.children))
        return flat

    def check_tree(self, book_id: int) -> List[str]:
        """Describe every chapter whose stored tree fields disagree with ``parent_id``."""

        chapters = self._book_chapters(book_id)
        by_id = {record.id: record for record in chapters}
        problems: List[str] = []

        foreign_parent_ids = sorted(
            {
                record.parent_id
                for record in chapters
                if record.parent_id is not None and record.parent_id not in by_id
            }
        )
        if foreign_parent_ids:
            with self._repository.reader() as connection:
                foreign = {
                    record.id: record
                    for record in self._repository.fetch_chapters_by_ids(
                        connection, foreign_parent_ids
                    )
                }
        else:
            foreign = {}

        for record in chapters:
            chain: List[int] = [record.id]
            seen = {record.id}
            current = record
            broken = False
            while current.parent_id is not None:
                if current.parent_id in foreign:
                    problems.append(
                        f"chapter {current.id}: parent {current.parent_id} belongs to book "
                        f"{foreign[current.parent_id].book_id}"
                    )
                    broken = True
                    break
                parent = by_id.get(current.parent_id)
                if parent is None:
                    problems.append(f"chapter {current.id}: parent {current.parent_id} is missing")
                    broken = True
                    break
                if parent.id in seen:
                    problems.append(f"chapter {record.id}: ancestry contains a cycle")
                    broken = True
                    break
                chain.append(parent.id)
                seen.add(parent.id)
                current = parent
            if broken:
                continue

            expected_level = len(chain) - 1
            expected_path = PATH_SEPARATOR.join(str(item) for item in reversed(chain))
            if record.level != expected_level:
                problems.append(
                    f"chapter {record.id}: level {record.level} != expected {expected_level}"
                )
            if record.path != expected_path:
                problems.append(
                    f"chapter {record.id}: path {record.path!r} != expected {expected_path!r}"
                )

        # A cycle is reported once per member; keep the output stable and unique.
        return sorted(set(problems))


__all__ = ["ChapterTreeNode", "ChapterTreeService"]
