"""Configuration loading utilities for the chapter tree service."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".chapter_tree_write_check"

DEFAULT_CYCLE_CHECK_MAX_DEPTH = 100
CYCLE_DEPTH_ENV_VAR = "CHAPTER_TREE_CYCLE_MAX_DEPTH"


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The first writable candidate wins. The returned flag tells whether a
    fallback was used. When nothing can be prepared ``preferred`` is returned
    unchanged and the bootstrap step reports the problem.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def _resolve_cycle_depth(raw_value: Any) -> int:
    override = (os.environ.get(CYCLE_DEPTH_ENV_VAR) or "").strip()
    if override:
        try:
            value = int(override)
        except ValueError:
            LOGGER.warning(
                "Ignoring invalid %s value '%s'", CYCLE_DEPTH_ENV_VAR, override
            )
        else:
            if value > 0:
                return value
            LOGGER.warning("Ignoring non-positive %s value %s", CYCLE_DEPTH_ENV_VAR, value)

    if raw_value is None:
        return DEFAULT_CYCLE_CHECK_MAX_DEPTH
    value = int(raw_value)
    if value <= 0:
        raise ValueError("cycle_check_max_depth must be a positive integer")
    return value


@dataclass(frozen=True)
class AppConfig:
    """Runtime paths and tuning knobs for the chapter tree engine."""

    storage_root: Path
    database_file: Path
    cycle_check_max_depth: int = DEFAULT_CYCLE_CHECK_MAX_DEPTH

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".chapter_tree" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()
        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            cycle_check_max_depth=_resolve_cycle_depth(
                mapping.get("cycle_check_max_depth")
            ),
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "DEFAULT_CYCLE_CHECK_MAX_DEPTH", "load_config"]
