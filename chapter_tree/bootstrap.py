"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        for label, path in (
            ("storage", self._config.storage_root),
            ("database", self._config.database_file.parent),
        ):
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(f"The {label} directory '{path}' is not writable")
            LOGGER.debug("Ensured directory exists: %s", path)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(
                f"Unable to open database '{self._config.database_file}': {error}"
            ) from error
        try:
            cursor = connection.cursor()
            cursor.executescript(
                """
                PRAGMA foreign_keys = ON;
                CREATE TABLE IF NOT EXISTS books (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    description TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS chapters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    book_id INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY(book_id) REFERENCES books(id) ON DELETE CASCADE
                );
                """
            )
            connection.commit()

            def _column_exists(table: str, column: str) -> bool:
                cursor.execute(f"PRAGMA table_info({table})")
                return any(row[1] == column for row in cursor.fetchall())

            def _ensure_tree_columns() -> None:
                added = False
                for column, definition in (
                    ("parent_id", "INTEGER"),
                    ("level", "INTEGER NOT NULL DEFAULT 0"),
                    ("path", "TEXT"),
                ):
                    if not _column_exists("chapters", column):
                        cursor.execute(f"ALTER TABLE chapters ADD COLUMN {column} {definition}")
                        LOGGER.info("Added chapters.%s column", column)
                        added = True
                if added:
                    connection.commit()

                # Rows created before the tree columns existed are all roots.
                cursor.execute(
                    """
                    UPDATE chapters
                    SET level = 0, path = CAST(id AS TEXT)
                    WHERE path IS NULL AND parent_id IS NULL
                    """
                )
                if cursor.rowcount and cursor.rowcount > 0:
                    LOGGER.info("Backfilled tree fields for %s root chapters", cursor.rowcount)
                connection.commit()

            _ensure_tree_columns()

            cursor.executescript(
                """
                CREATE INDEX IF NOT EXISTS idx_chapters_book_id ON chapters(book_id);
                CREATE INDEX IF NOT EXISTS idx_chapters_parent_id ON chapters(parent_id);
                CREATE INDEX IF NOT EXISTS idx_chapters_path ON chapters(path);
                CREATE INDEX IF NOT EXISTS idx_chapters_sibling_order
                    ON chapters(book_id, parent_id, sort_order);
                """
            )
            connection.commit()
        except sqlite3.Error as error:
            raise BootstrapError(f"Database schema preparation failed: {error}") from error
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "initialize_app"]
