from pathlib import Path

import pytest

import chapter_tree.config as config_module
from chapter_tree.config import DEFAULT_CYCLE_CHECK_MAX_DEPTH, AppConfig, load_config


def test_storage_root_falls_back_when_preferred_is_unusable(
    tmp_path: Path, monkeypatch
) -> None:
    home_dir = tmp_path / "home"
    monkeypatch.setattr(config_module.Path, "home", lambda: home_dir)

    preferred_storage = tmp_path / "storage"
    preferred_storage.write_text("not a directory", encoding="utf-8")

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/chapters.db",
        },
        base_path=tmp_path,
    )

    expected_storage = (home_dir / ".chapter_tree" / "storage").resolve()
    assert config.storage_root == expected_storage
    assert config.database_file == (expected_storage / "chapters.db").resolve()
    assert expected_storage.is_dir()


def test_cycle_depth_defaults_and_mapping_value(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv(config_module.CYCLE_DEPTH_ENV_VAR, raising=False)
    mapping = {"storage_root": "storage", "database_file": "storage/chapters.db"}

    default = AppConfig.from_mapping(mapping, base_path=tmp_path)
    configured = AppConfig.from_mapping(
        {**mapping, "cycle_check_max_depth": 250}, base_path=tmp_path
    )

    assert default.cycle_check_max_depth == DEFAULT_CYCLE_CHECK_MAX_DEPTH == 100
    assert configured.cycle_check_max_depth == 250


def test_cycle_depth_environment_override(tmp_path: Path, monkeypatch) -> None:
    mapping = {"storage_root": "storage", "database_file": "storage/chapters.db"}

    monkeypatch.setenv(config_module.CYCLE_DEPTH_ENV_VAR, "500")
    assert AppConfig.from_mapping(mapping, base_path=tmp_path).cycle_check_max_depth == 500

    monkeypatch.setenv(config_module.CYCLE_DEPTH_ENV_VAR, "not-a-number")
    assert AppConfig.from_mapping(mapping, base_path=tmp_path).cycle_check_max_depth == 100


def test_non_positive_cycle_depth_is_rejected(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv(config_module.CYCLE_DEPTH_ENV_VAR, raising=False)
    with pytest.raises(ValueError):
        AppConfig.from_mapping(
            {
                "storage_root": "storage",
                "database_file": "storage/chapters.db",
                "cycle_check_max_depth": 0,
            },
            base_path=tmp_path,
        )


def test_load_config_reads_json_file(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv(config_module.CYCLE_DEPTH_ENV_VAR, raising=False)
    config_file = tmp_path / "custom.json"
    config_file.write_text(
        '{"storage_root": "%s", "database_file": "%s", "cycle_check_max_depth": 42}'
        % ((tmp_path / "data").as_posix(), (tmp_path / "data" / "tree.db").as_posix()),
        encoding="utf-8",
    )

    config = load_config(config_file)

    assert config.storage_root == (tmp_path / "data").resolve()
    assert config.database_file == (tmp_path / "data" / "tree.db").resolve()
    assert config.cycle_check_max_depth == 42
