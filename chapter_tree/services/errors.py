"""Error taxonomy raised by the chapter tree engine."""

from __future__ import annotations

from typing import Optional


class ChapterTreeError(RuntimeError):
    """Base class for every failure surfaced by the tree engine."""


class ChapterNotFoundError(ChapterTreeError):
    """Raised when a referenced chapter (or parent chapter) does not exist."""

    def __init__(self, chapter_id: int, *, role: str = "Chapter") -> None:
        super().__init__(f"{role} {chapter_id} not found")
        self.chapter_id = chapter_id
        self.role = role


class BookNotFoundError(ChapterTreeError):
    """Raised when an operation targets a book that does not exist."""

    def __init__(self, book_id: int) -> None:
        super().__init__(f"Book {book_id} not found")
        self.book_id = book_id


class ScopeMismatchError(ChapterTreeError):
    """Raised when a chapter does not belong to the expected book/parent scope."""

    def __init__(
        self,
        chapter_id: int,
        *,
        book_id: int,
        parent_id: Optional[int] = None,
        message: Optional[str] = None,
    ) -> None:
        super().__init__(
            message
            or f"Chapter {chapter_id} does not belong to book {book_id} under parent {parent_id}"
        )
        self.chapter_id = chapter_id
        self.book_id = book_id
        self.parent_id = parent_id


class CycleDetectedError(ChapterTreeError):
    """Raised when re-parenting would make a chapter its own ancestor."""

    def __init__(self, chapter_id: int, parent_id: int) -> None:
        super().__init__(
            f"Moving chapter {chapter_id} under {parent_id} would create a cycle"
        )
        self.chapter_id = chapter_id
        self.parent_id = parent_id


class TransactionFailureError(ChapterTreeError):
    """Raised when the storage transaction could not be committed."""


__all__ = [
    "BookNotFoundError",
    "ChapterNotFoundError",
    "ChapterTreeError",
    "CycleDetectedError",
    "ScopeMismatchError",
    "TransactionFailureError",
]
