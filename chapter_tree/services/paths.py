"""Level and materialized-path maintenance for chapter subtrees."""

from __future__ import annotations

import logging
import sqlite3
from collections import deque
from typing import Deque, List, Optional, Set, Tuple

from .errors import ChapterNotFoundError, ChapterTreeError, CycleDetectedError
from .storage import ChapterRepository


LOGGER = logging.getLogger(__name__)

PATH_SEPARATOR = "/"


def build_path(parent_path: Optional[str], chapter_id: int) -> str:
    """``"5/12"`` + ``31`` -> ``"5/12/31"``; a root chapter's path is its own id."""

    if parent_path is None:
        return str(chapter_id)
    return f"{parent_path}{PATH_SEPARATOR}{chapter_id}"


class PathRecomputer:
    """Derive ``level``/``path`` for a chapter and rewrite its whole subtree.

    Descendants are discovered by following ``parent_id`` with an explicit
    work-list, so tree depth never turns into Python call-stack depth.
    """

    def __init__(self, repository: ChapterRepository) -> None:
        self._repository = repository

    def tree_fields_for(
        self,
        connection: sqlite3.Connection,
        chapter_id: int,
        parent_id: Optional[int],
    ) -> Tuple[int, str]:
        if parent_id is None:
            return 0, build_path(None, chapter_id)

        parent = self._repository.fetch_chapter(connection, parent_id)
        if parent is None:
            raise ChapterNotFoundError(parent_id, role="Parent chapter")
        if not parent.path:
            raise ChapterTreeError(
                f"Parent chapter {parent_id} has no materialized path; rebuild the book's paths"
            )
        return parent.level + 1, build_path(parent.path, chapter_id)

    def recompute(
        self,
        connection: sqlite3.Connection,
        chapter_id: int,
        new_parent_id: Optional[int],
    ) -> int:
        """Rewrite ``level``/``path`` of *chapter_id* and all descendants.

        Returns the number of rows rewritten. A descendant reached twice means
        the stored parent graph already contains a cycle; that aborts the
        surrounding transaction with :class:`CycleDetectedError`.
        """

        chapter = self._repository.fetch_chapter(connection, chapter_id)
        if chapter is None:
            raise ChapterNotFoundError(chapter_id)

        level, path = self.tree_fields_for(connection, chapter_id, new_parent_id)
        self._repository.write_tree_fields(connection, chapter_id, level=level, path=path)
        rewritten = 1

        worklist: Deque[Tuple[int, int, str]] = deque([(chapter_id, level, path)])
        visited: Set[int] = {chapter_id}
        while worklist:
            current_id, current_level, current_path = worklist.popleft()
            for child in self._repository.fetch_children(connection, current_id):
                if child.id in visited:
                    raise CycleDetectedError(child.id, current_id)
                visited.add(child.id)
                child_level = current_level + 1
                child_path = build_path(current_path, child.id)
                if child.level != child_level or child.path != child_path:
                    self._repository.write_tree_fields(
                        connection, child.id, level=child_level, path=child_path
                    )
                    rewritten += 1
                worklist.append((child.id, child_level, child_path))

        LOGGER.debug(
            "Recomputed chapter id=%s (level=%s path=%s); %d rows rewritten, %d nodes visited",
            chapter_id,
            level,
            path,
            rewritten,
            len(visited),
        )
        return rewritten

    def collect_subtree_ids(
        self, connection: sqlite3.Connection, chapter_id: int
    ) -> List[int]:
        """Ids of *chapter_id* and every descendant, parents before children."""

        collected: List[int] = [chapter_id]
        visited: Set[int] = {chapter_id}
        worklist: Deque[int] = deque([chapter_id])
        while worklist:
            current_id = worklist.popleft()
            for child in self._repository.fetch_children(connection, current_id):
                if child.id in visited:
                    raise CycleDetectedError(child.id, current_id)
                visited.add(child.id)
                collected.append(child.id)
                worklist.append(child.id)
        return collected


__all__ = ["PATH_SEPARATOR", "PathRecomputer", "build_path"]
