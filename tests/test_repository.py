from __future__ import annotations

import sqlite3

import pytest

from chapter_tree.config import AppConfig
from chapter_tree.services.errors import TransactionFailureError
from chapter_tree.services.storage import ChapterRepository


def test_repository_book_and_chapter_crud(temp_config: AppConfig) -> None:
    repository = ChapterRepository(temp_config)

    book_id = repository.add_book("Physics", "Introductory course")
    with repository.transaction("seed") as connection:
        chapter_id = repository.insert_chapter(
            connection,
            book_id=book_id,
            parent_id=None,
            title="Mechanics",
            description="Newton",
            sort_order=1,
        )
        repository.write_tree_fields(connection, chapter_id, level=0, path=str(chapter_id))

    book = repository.get_book(book_id)
    assert book is not None and book.title == "Physics"
    assert [record.id for record in repository.list_books()] == [book_id]

    chapter = repository.get_chapter(chapter_id)
    assert chapter is not None
    assert (chapter.title, chapter.level, chapter.path) == ("Mechanics", 0, str(chapter_id))
    assert chapter.is_root

    with repository.transaction("remove") as connection:
        assert repository.delete_chapters(connection, [chapter_id]) == 1
    assert repository.get_chapter(chapter_id) is None
    assert repository.get_book(9999) is None


def test_sibling_queries_treat_null_parent_as_root_group(temp_config: AppConfig) -> None:
    repository = ChapterRepository(temp_config)
    book_id = repository.add_book("Book")

    with repository.transaction("seed") as connection:
        first = repository.insert_chapter(
            connection, book_id=book_id, parent_id=None, title="A", description=None, sort_order=1
        )
        second = repository.insert_chapter(
            connection, book_id=book_id, parent_id=None, title="B", description=None, sort_order=2
        )
        child = repository.insert_chapter(
            connection, book_id=book_id, parent_id=first, title="C", description=None, sort_order=9
        )

    with repository.reader() as connection:
        roots = repository.fetch_sibling_group(connection, book_id, None)
        assert [record.id for record in roots] == [first, second]
        assert repository.fetch_max_sort_order(connection, book_id, None) == 2
        assert repository.fetch_max_sort_order(connection, book_id, first) == 9
        assert repository.fetch_max_sort_order(connection, book_id, child) is None
        assert repository.fetch_parent_id(connection, child) == (True, first)
        assert repository.fetch_parent_id(connection, first) == (True, None)
        assert repository.fetch_parent_id(connection, 424242) == (False, None)

        head = repository.fetch_chapter(connection, first)
        assert repository.fetch_neighbor(connection, head, before=True) is None
        assert repository.fetch_neighbor(connection, head, before=False).id == second


def test_transaction_rolls_back_on_error(temp_config: AppConfig) -> None:
    repository = ChapterRepository(temp_config)
    book_id = repository.add_book("Book")

    with pytest.raises(RuntimeError):
        with repository.transaction("failing") as connection:
            repository.insert_chapter(
                connection,
                book_id=book_id,
                parent_id=None,
                title="Lost",
                description=None,
                sort_order=1,
            )
            raise RuntimeError("boom")

    with repository.reader() as connection:
        assert repository.fetch_book_chapters(connection, book_id) == []


def test_sqlite_errors_surface_as_transaction_failures(temp_config: AppConfig) -> None:
    repository = ChapterRepository(temp_config)

    with pytest.raises(TransactionFailureError):
        with repository.transaction("bad_sql") as connection:
            connection.execute("INSERT INTO missing_table VALUES (1)")


def test_foreign_keys_are_enforced(temp_config: AppConfig) -> None:
    repository = ChapterRepository(temp_config)

    with pytest.raises(TransactionFailureError):
        with repository.transaction("orphan") as connection:
            repository.insert_chapter(
                connection,
                book_id=12345,
                parent_id=None,
                title="No book",
                description=None,
                sort_order=1,
            )


def test_repository_emits_db_events(temp_config: AppConfig) -> None:
    events = []

    def _capture(event_type, message, **kwargs):
        events.append((event_type, message, kwargs))

    repository = ChapterRepository(temp_config, event_emitter=_capture)
    repository.add_book("Observed")

    actions = [message for _event_type, message, _kwargs in events]
    assert "books.insert" in actions
    assert "transaction.add_book" in actions
    assert {event_type for event_type, _message, _kwargs in events} == {"DB_QUERY"}

    insert_event = next(kwargs for _type, message, kwargs in events if message == "books.insert")
    assert insert_event["payload"]["table"] == "books"
    assert insert_event["payload"]["rowcount"] == 1
    assert insert_event["payload"]["status"] == "ok"
    assert insert_event["duration_ms"] >= 0

    transaction_event = next(
        kwargs for _type, message, kwargs in events if message == "transaction.add_book"
    )
    assert transaction_event["payload"]["result"] == "committed"


def test_search_and_subtree_queries(temp_config: AppConfig) -> None:
    repository = ChapterRepository(temp_config)
    book_id = repository.add_book("Book")

    with repository.transaction("seed") as connection:
        parent = repository.insert_chapter(
            connection, book_id=book_id, parent_id=None, title="Parent", description=None, sort_order=1
        )
        child = repository.insert_chapter(
            connection,
            book_id=book_id,
            parent_id=parent,
            title="Child",
            description="Contains keyword",
            sort_order=1,
        )
        repository.write_tree_fields(connection, parent, level=0, path=str(parent))
        repository.write_tree_fields(connection, child, level=1, path=f"{parent}/{child}")

    with repository.reader() as connection:
        found = repository.search_chapters(connection, book_id, "keyword")
        assert [record.id for record in found] == [child]
        assert found[0].ancestor_ids() == [parent]

        head = repository.fetch_chapter(connection, parent)
        subtree = repository.fetch_subtree_by_path(connection, head)
        assert [record.id for record in subtree] == [parent, child]


def test_sqlite_row_factory_is_used(temp_config: AppConfig) -> None:
    repository = ChapterRepository(temp_config)
    with repository.reader() as connection:
        assert connection.row_factory is sqlite3.Row
