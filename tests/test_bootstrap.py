import sqlite3
from pathlib import Path

import pytest

import chapter_tree.config as config_module
from chapter_tree.bootstrap import BootstrapError, Bootstrapper
from chapter_tree.config import AppConfig


def test_bootstrapper_raises_when_storage_directory_unwritable(
    tmp_path: Path, monkeypatch
) -> None:
    storage_root = tmp_path / "storage"
    database_file = storage_root / "chapters.db"

    config = AppConfig(storage_root=storage_root, database_file=database_file)

    original_ensure = config_module._ensure_writable_directory

    def fake_ensure(path: Path) -> bool:
        if path.resolve() == storage_root.resolve():
            return False
        return original_ensure(path)

    monkeypatch.setattr(config_module, "_ensure_writable_directory", fake_ensure)

    bootstrapper = Bootstrapper(config)

    with pytest.raises(BootstrapError) as excinfo:
        bootstrapper.initialize()

    assert "storage" in str(excinfo.value).lower()


def test_bootstrap_creates_schema_and_indexes(temp_config: AppConfig) -> None:
    connection = sqlite3.connect(temp_config.database_file)
    try:
        columns = {row[1] for row in connection.execute("PRAGMA table_info(chapters)")}
        indexes = {row[1] for row in connection.execute("PRAGMA index_list(chapters)")}
    finally:
        connection.close()

    assert {"id", "book_id", "parent_id", "title", "sort_order", "level", "path"} <= columns
    assert {
        "idx_chapters_book_id",
        "idx_chapters_parent_id",
        "idx_chapters_path",
        "idx_chapters_sibling_order",
    } <= indexes


def test_bootstrap_is_idempotent(temp_config: AppConfig) -> None:
    Bootstrapper(temp_config).initialize()
    Bootstrapper(temp_config).initialize()


def test_bootstrap_backfills_legacy_chapters(tmp_path: Path) -> None:
    storage_root = tmp_path / "storage"
    storage_root.mkdir()
    database_file = storage_root / "chapters.db"

    connection = sqlite3.connect(database_file)
    connection.executescript(
        """
        CREATE TABLE books (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            description TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
        CREATE TABLE chapters (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            book_id INTEGER NOT NULL,
            title TEXT NOT NULL,
            description TEXT,
            sort_order INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        );
        INSERT INTO books(title) VALUES ('Legacy');
        INSERT INTO chapters(book_id, title, sort_order) VALUES (1, 'Old one', 1);
        INSERT INTO chapters(book_id, title, sort_order) VALUES (1, 'Old two', 2);
        """
    )
    connection.commit()
    connection.close()

    Bootstrapper(AppConfig(storage_root=storage_root, database_file=database_file)).initialize()

    connection = sqlite3.connect(database_file)
    try:
        rows = connection.execute(
            "SELECT id, parent_id, level, path FROM chapters ORDER BY id"
        ).fetchall()
    finally:
        connection.close()

    assert rows == [(1, None, 0, "1"), (2, None, 0, "2")]
