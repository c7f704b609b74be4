"""Plain-text rendering of a book's chapter hierarchy."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable

from ..services.storage import ChapterRecord
from ..services.tree import ChapterTreeService


@dataclass
class ConsoleSection:
    title: str
    entries: Iterable[str]


class ConsoleUI:
    """Minimal console view of one book's chapters."""

    def __init__(
        self,
        service: ChapterTreeService,
        book_id: int,
        *,
        write: Callable[[str], None] = print,
    ) -> None:
        self._service = service
        self._book_id = book_id
        self._write = write

    def run(self) -> None:
        book = self._service.get_book(self._book_id)
        header = f"Book {book.id}: {book.title}"
        self._write(header)
        self._write("=" * len(header))
        section = ConsoleSection(title="Chapters", entries=self._format_chapters())
        self._write(section.title)
        self._write("-" * len(section.title))
        has_entries = False
        for entry in section.entries:
            has_entries = True
            self._write(entry)
        if not has_entries:
            self._write("(empty)")

    def _format_chapters(self) -> Iterable[str]:
        for record in self._service.get_flat_list(self._book_id):
            yield format_chapter_line(record)


def format_chapter_line(record: ChapterRecord) -> str:
    indent = "  " * record.level
    return f"{indent}- [{record.sort_order}] {record.title} (id={record.id}, path={record.path})"


__all__ = ["ConsoleUI", "format_chapter_line"]
