"""Sibling ordering: ``sort_order`` maintenance within a ``(book_id, parent_id)`` group."""

from __future__ import annotations

import logging
import sqlite3
from enum import Enum
from typing import List, Optional, Sequence, Tuple

from .errors import ChapterNotFoundError, ScopeMismatchError
from .storage import ChapterRecord, ChapterRepository


LOGGER = logging.getLogger(__name__)


class Direction(str, Enum):
    UP = "up"
    DOWN = "down"


class SiblingOrdering:
    """Assign, swap and normalise ``sort_order`` values among siblings.

    Every method runs on a connection owned by the caller's transaction.
    """

    def __init__(self, repository: ChapterRepository) -> None:
        self._repository = repository

    def next_sort_order(
        self,
        connection: sqlite3.Connection,
        book_id: int,
        parent_id: Optional[int],
    ) -> int:
        current = self._repository.fetch_max_sort_order(connection, book_id, parent_id)
        next_value = 1 if current is None else current + 1
        LOGGER.debug(
            "Computed next sort_order for book_id=%s parent_id=%s -> %s",
            book_id,
            parent_id,
            next_value,
        )
        return next_value

    def swap_with_neighbor(
        self,
        connection: sqlite3.Connection,
        chapter_id: int,
        direction: Direction,
    ) -> bool:
        """Exchange ``sort_order`` with the adjacent sibling.

        Returns ``False`` when the chapter is already first (``UP``) or last
        (``DOWN``) in its group.
        """

        chapter = self._repository.fetch_chapter(connection, chapter_id)
        if chapter is None:
            raise ChapterNotFoundError(chapter_id)

        neighbor = self._repository.fetch_neighbor(
            connection, chapter, before=direction is Direction.UP
        )
        if neighbor is None:
            LOGGER.debug(
                "Chapter id=%s is already %s in its group",
                chapter_id,
                "first" if direction is Direction.UP else "last",
            )
            return False

        self._repository.write_sort_orders(
            connection,
            [(chapter.id, neighbor.sort_order), (neighbor.id, chapter.sort_order)],
        )
        LOGGER.debug(
            "Swapped sort_order of chapter id=%s (%s) with id=%s (%s)",
            chapter.id,
            chapter.sort_order,
            neighbor.id,
            neighbor.sort_order,
        )
        return True

    def reorder_all(
        self,
        connection: sqlite3.Connection,
        book_id: int,
        parent_id: Optional[int],
        ordered_ids: Sequence[int],
    ) -> List[Tuple[int, int]]:
        """Assign ``sort_order = 1..N`` following *ordered_ids*.

        Siblings missing from *ordered_ids* keep their relative order and are
        appended after the listed ones, so the whole group ends up numbered
        ``1..N``. Returns the applied ``(chapter_id, sort_order)`` pairs.
        """

        seen = set()
        for chapter_id in ordered_ids:
            if chapter_id in seen:
                raise ScopeMismatchError(
                    chapter_id,
                    book_id=book_id,
                    parent_id=parent_id,
                    message=f"Chapter {chapter_id} listed more than once",
                )
            seen.add(chapter_id)

        records = {
            record.id: record
            for record in self._repository.fetch_chapters_by_ids(connection, list(ordered_ids))
        }
        for chapter_id in ordered_ids:
            record = records.get(chapter_id)
            if record is None:
                raise ChapterNotFoundError(chapter_id)
            self._ensure_in_scope(record, book_id, parent_id)

        group = self._repository.fetch_sibling_group(connection, book_id, parent_id)
        trailing = [record.id for record in group if record.id not in seen]
        if trailing:
            LOGGER.debug(
                "Appending %d unlisted siblings after the requested order: %s",
                len(trailing),
                trailing,
            )

        assignments = [
            (chapter_id, index)
            for index, chapter_id in enumerate([*ordered_ids, *trailing], start=1)
        ]
        self._repository.write_sort_orders(connection, assignments)
        LOGGER.debug(
            "Reordered %d chapters for book_id=%s parent_id=%s",
            len(assignments),
            book_id,
            parent_id,
        )
        return assignments

    @staticmethod
    def _ensure_in_scope(
        record: ChapterRecord, book_id: int, parent_id: Optional[int]
    ) -> None:
        if record.book_id != book_id:
            raise ScopeMismatchError(
                record.id,
                book_id=book_id,
                parent_id=parent_id,
                message=f"Chapter {record.id} does not belong to book {book_id}",
            )
        if record.parent_id != parent_id:
            raise ScopeMismatchError(
                record.id,
                book_id=book_id,
                parent_id=parent_id,
                message=(
                    f"Chapter {record.id} is not a child of "
                    f"{'the book root' if parent_id is None else f'chapter {parent_id}'}"
                ),
            )


__all__ = ["Direction", "SiblingOrdering"]
