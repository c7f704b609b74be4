"""Tests for the run.py entrypoint helpers."""

from __future__ import annotations

from typer.testing import CliRunner

import run
from chapter_tree.services.tree import ChapterTreeService


runner = CliRunner()


def _use_config(monkeypatch, config):
    monkeypatch.setattr(run, "initialize_app", lambda: config)
    monkeypatch.setattr(run, "_prepare_logging", lambda config, level="INFO": None)


def test_serve_builds_uvicorn_server(monkeypatch, temp_config):
    captured = {}
    _use_config(monkeypatch, temp_config)

    class DummyConfig:
        def __init__(self, app, **kwargs):
            captured["app"] = app
            captured["config_kwargs"] = kwargs

    class DummyServer:
        def __init__(self, config):
            captured["server_instance"] = self

        def run(self):
            captured["server_run"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)

    run.serve(host="0.0.0.0", port=9000, root_path="/tree/", log_level="DEBUG")

    assert captured["server_run"] is True
    assert captured["config_kwargs"]["host"] == "0.0.0.0"
    assert captured["config_kwargs"]["port"] == 9000
    assert captured["config_kwargs"]["root_path"] == "/tree"
    assert captured["app"].state.server is captured["server_instance"]
    assert isinstance(captured["app"].state.service, ChapterTreeService)


def test_tree_command_prints_indented_chapters(monkeypatch, temp_config):
    _use_config(monkeypatch, temp_config)
    service = ChapterTreeService.from_config(temp_config)
    book = service.create_book("Guide")
    root = service.create_chapter(book.id, "Root")
    service.create_child(root.id, "Leaf")

    result = runner.invoke(run.cli, ["tree", str(book.id)])

    assert result.exit_code == 0, result.output
    assert f"Book {book.id}: Guide" in result.output
    assert "- [1] Root" in result.output
    assert "  - [1] Leaf" in result.output


def test_tree_command_reports_empty_and_missing_books(monkeypatch, temp_config):
    _use_config(monkeypatch, temp_config)
    service = ChapterTreeService.from_config(temp_config)
    book = service.create_book("Empty")

    empty = runner.invoke(run.cli, ["tree", str(book.id)])
    assert empty.exit_code == 0
    assert "(empty)" in empty.output

    missing = runner.invoke(run.cli, ["tree", "999"])
    assert missing.exit_code == 1


def test_check_and_rebuild_commands(monkeypatch, temp_config):
    _use_config(monkeypatch, temp_config)
    service = ChapterTreeService.from_config(temp_config)
    book = service.create_book("Guide")
    root = service.create_chapter(book.id, "Root")
    child = service.create_child(root.id, "Child")

    clean = runner.invoke(run.cli, ["check", str(book.id)])
    assert clean.exit_code == 0
    assert "chapter tree is consistent" in clean.output

    repository = service.repository
    with repository.transaction("corrupt") as connection:
        repository.write_tree_fields(connection, child.id, level=5, path="stale")

    broken = runner.invoke(run.cli, ["check", str(book.id)])
    assert broken.exit_code == 1
    assert f"chapter {child.id}: level 5 != expected 1" in broken.output

    rebuilt = runner.invoke(run.cli, ["rebuild", str(book.id)])
    assert rebuilt.exit_code == 0
    assert f"Rebuilt book {book.id}: 2 chapter(s) rewritten." in rebuilt.output

    assert runner.invoke(run.cli, ["check", str(book.id)]).exit_code == 0


def test_only_the_web_package_has_an_init():
    import chapter_tree
    import chapter_tree.services
    import chapter_tree.ui
    import chapter_tree.web

    for namespace in (chapter_tree, chapter_tree.services, chapter_tree.ui):
        assert getattr(namespace, "__file__", None) is None
        assert not hasattr(namespace, "ChapterTreeService")
    assert run.create_app is chapter_tree.web.create_app
