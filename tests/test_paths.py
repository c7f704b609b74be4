from __future__ import annotations

import pytest

from chapter_tree.services import storage
from chapter_tree.services.errors import ChapterNotFoundError, CycleDetectedError
from chapter_tree.services.paths import PathRecomputer, build_path
from chapter_tree.services.storage import descendant_path_bounds

from conftest import assert_tree_consistent


def test_build_path_appends_segments():
    assert build_path(None, 5) == "5"
    assert build_path("5", 12) == "5/12"
    assert build_path("5/12", 31) == "5/12/31"


def test_child_path_embeds_ancestor_chain(service, book_id):
    root = service.create_chapter(book_id, "A")
    child = service.create_chapter(book_id, "B", parent_id=root.id)
    grandchild = service.create_child(child.id, "C")

    assert (root.level, root.path) == (0, str(root.id))
    assert (child.level, child.path) == (1, f"{root.id}/{child.id}")
    assert (grandchild.level, grandchild.path) == (2, f"{root.id}/{child.id}/{grandchild.id}")
    assert grandchild.ancestor_ids() == [root.id, child.id]


def test_deep_chain_is_recomputed_without_recursion(service, book_id):
    repository = service.repository
    chain = []
    with repository.transaction("seed_chain") as connection:
        parent_id = None
        for index in range(1500):
            parent_id = repository.insert_chapter(
                connection,
                book_id=book_id,
                parent_id=parent_id,
                title=f"Level {index}",
                description=None,
                sort_order=1,
            )
            chain.append(parent_id)

    assert service.rebuild_paths(book_id) == 1500

    new_root = service.create_chapter(book_id, "New root")
    service.move_chapter(chain[0], new_parent_id=new_root.id)

    deepest = service.get_chapter(chain[-1])
    assert deepest.level == 1500
    assert deepest.path.startswith(f"{new_root.id}/{chain[0]}/")
    assert deepest.path.count("/") == 1500
    assert_tree_consistent(service, book_id)


def test_subtree_uses_path_prefix(service, book_id):
    first = service.create_chapter(book_id, "1")
    child = service.create_child(first.id, "1.1")
    grandchild = service.create_child(child.id, "1.1.1")
    sibling = service.create_chapter(book_id, "2")

    subtree_ids = [record.id for record in service.get_subtree(first.id)]

    assert subtree_ids == [first.id, child.id, grandchild.id]
    assert sibling.id not in subtree_ids


def test_recompute_only_counts_changed_rows(service, book_id):
    root = service.create_chapter(book_id, "Root")
    service.create_child(root.id, "Child")
    recomputer = PathRecomputer(service.repository)

    with service.repository.transaction("test_recompute") as connection:
        rewritten = recomputer.recompute(connection, root.id, None)

    # The root row is always rewritten; its unchanged child is left alone.
    assert rewritten == 1


def test_recompute_missing_parent_raises(service, book_id):
    root = service.create_chapter(book_id, "Root")
    recomputer = PathRecomputer(service.repository)

    with pytest.raises(ChapterNotFoundError, match="Parent chapter 999 not found"):
        with service.repository.transaction("test_missing_parent") as connection:
            recomputer.recompute(connection, root.id, 999)


def test_recompute_detects_stored_cycle(service, book_id):
    first = service.create_chapter(book_id, "First")
    second = service.create_child(first.id, "Second")
    repository = service.repository

    # Corrupt the data behind the engine's back: first <-> second.
    with repository.transaction("corrupt") as connection:
        repository.update_chapter_fields(connection, first.id, parent_id=second.id)

    recomputer = PathRecomputer(repository)
    with pytest.raises(CycleDetectedError):
        with repository.transaction("test_cycle") as connection:
            recomputer.recompute(connection, first.id, None)


def test_collect_subtree_ids_lists_parents_first(service, book_id):
    root = service.create_chapter(book_id, "Root")
    left = service.create_child(root.id, "Left")
    right = service.create_child(root.id, "Right")
    leaf = service.create_child(left.id, "Leaf")
    recomputer = PathRecomputer(service.repository)

    with service.repository.reader() as connection:
        collected = recomputer.collect_subtree_ids(connection, root.id)

    assert collected == [root.id, left.id, right.id, leaf.id]


def test_descendant_bounds_stop_at_sibling_prefixes():
    assert descendant_path_bounds("5") == ("5/", "50")
    assert descendant_path_bounds("5/12") == ("5/12/", "5/120")


def test_subtree_excludes_ids_sharing_a_digit_prefix(service, book_id):
    short = service.create_chapter(book_id, "Short")
    longer = service.create_chapter(book_id, "Longer")
    while not str(longer.id).startswith(str(short.id)):
        longer = service.create_chapter(book_id, "Longer")
    nested = service.create_child(longer.id, "Nested")
    own_child = service.create_child(short.id, "Own child")

    subtree_ids = [record.id for record in service.get_subtree(short.id)]

    assert subtree_ids == [short.id, own_child.id]
    assert longer.id not in subtree_ids
    assert nested.id not in subtree_ids


def test_subtree_query_uses_path_index(service, book_id):
    root = service.create_chapter(book_id, "Root")
    service.create_child(root.id, "Child")

    with service.repository.reader() as connection:
        plan = connection.execute(
            "EXPLAIN QUERY PLAN " + storage._DESCENDANTS_BY_PATH_SQL,
            descendant_path_bounds(root.path),
        ).fetchall()

    assert any("idx_chapters_path" in row["detail"] for row in plan)
