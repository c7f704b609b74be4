"""Cycle guard consulted before any re-parenting."""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from ..config import DEFAULT_CYCLE_CHECK_MAX_DEPTH
from .storage import ChapterRepository


LOGGER = logging.getLogger(__name__)


class CycleGuard:
    """Walk up from a candidate parent looking for the chapter being moved."""

    def __init__(
        self,
        repository: ChapterRepository,
        *,
        max_depth: int = DEFAULT_CYCLE_CHECK_MAX_DEPTH,
    ) -> None:
        if max_depth <= 0:
            raise ValueError("max_depth must be positive")
        self._repository = repository
        self._max_depth = max_depth

    @property
    def max_depth(self) -> int:
        return self._max_depth

    def would_create_cycle(
        self,
        connection: sqlite3.Connection,
        chapter_id: int,
        candidate_parent_id: Optional[int],
    ) -> bool:
        """Return ``True`` if *candidate_parent_id* is *chapter_id* or one of its descendants.

        The walk stops at a root or at a missing chapter (``False``). After
        ``max_depth`` hops it gives up and also answers ``False``; a warning is
        logged because a legitimate tree that deep escapes the check.
        """

        if candidate_parent_id is None:
            return False

        current: Optional[int] = candidate_parent_id
        for _ in range(self._max_depth):
            if current is None:
                return False
            if current == chapter_id:
                LOGGER.debug(
                    "Cycle detected: chapter id=%s is an ancestor of candidate parent id=%s",
                    chapter_id,
                    candidate_parent_id,
                )
                return True
            found, parent_id = self._repository.fetch_parent_id(connection, current)
            if not found:
                return False
            current = parent_id

        if current is None:
            return False
        if current == chapter_id:
            return True
        LOGGER.warning(
            "Cycle check for chapter id=%s under id=%s stopped after %d hops; assuming no cycle",
            chapter_id,
            candidate_parent_id,
            self._max_depth,
        )
        return False


__all__ = ["CycleGuard"]
