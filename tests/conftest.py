from __future__ import annotations

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from chapter_tree.bootstrap import Bootstrapper
from chapter_tree.config import AppConfig
from chapter_tree.services.storage import ChapterRepository
from chapter_tree.services.tree import ChapterTreeService


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CHAPTER_TREE_CYCLE_MAX_DEPTH", raising=False)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/chapters.db",
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> ChapterRepository:
    return ChapterRepository(temp_config)


@pytest.fixture()
def service(temp_config: AppConfig) -> ChapterTreeService:
    return ChapterTreeService.from_config(temp_config)


@pytest.fixture()
def book_id(service: ChapterTreeService) -> int:
    return service.create_book("Field Recordings", "Audio guide").id


def assert_tree_consistent(service: ChapterTreeService, book_id: int) -> None:
    assert service.check_tree(book_id) == []
