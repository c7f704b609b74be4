"""Entry-point for the chapter tree service."""

from __future__ import annotations

import logging
from typing import Optional

import typer
import uvicorn

from chapter_tree.bootstrap import initialize_app
from chapter_tree.config import AppConfig
from chapter_tree.logging_utils import build_default_handlers, configure_logging
from chapter_tree.services.errors import ChapterTreeError
from chapter_tree.services.tree import ChapterTreeService
from chapter_tree.ui.console import ConsoleUI
from chapter_tree.web import create_app


LOGGER = logging.getLogger("chapter_tree.cli")


cli = typer.Typer(add_completion=False, help="Chapter tree management commands")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(config: AppConfig, level: str = "INFO") -> None:
    configure_logging(level, handlers=build_default_handlers(config.storage_root))


def _build_service(config: AppConfig) -> ChapterTreeService:
    return ChapterTreeService.from_config(config)


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None, log_level="INFO")


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="CHAPTER_TREE_ROOT_PATH",
    ),
    log_level: str = typer.Option("INFO", help="Root log level"),
) -> None:
    """Run the FastAPI HTTP surface."""

    app_config = initialize_app()
    _prepare_logging(app_config, log_level)

    service = _build_service(app_config)
    app = create_app(service, root_path=root_path)

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=(root_path or "").rstrip("/"),
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Serving chapter tree API on http://%s:%s", host, port)
    server.run()


@cli.command()
def tree(book_id: int = typer.Argument(..., help="Book whose chapters are printed")) -> None:
    """Print a book's chapters as an indented tree."""

    config = initialize_app()
    _prepare_logging(config, "WARNING")

    ui = ConsoleUI(_build_service(config), book_id, write=typer.echo)
    try:
        ui.run()
    except ChapterTreeError as error:
        typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(code=1) from error


@cli.command()
def check(book_id: int = typer.Argument(..., help="Book to verify")) -> None:
    """Report chapters whose level/path disagree with their parent links."""

    config = initialize_app()
    _prepare_logging(config, "WARNING")

    service = _build_service(config)
    try:
        problems = service.check_tree(book_id)
    except ChapterTreeError as error:
        typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(code=1) from error

    if not problems:
        typer.echo(f"Book {book_id}: chapter tree is consistent.")
        return
    typer.echo(f"Book {book_id}: {len(problems)} problem(s) found")
    for problem in problems:
        typer.echo(f"  • {problem}")
    raise typer.Exit(code=1)


@cli.command()
def rebuild(book_id: int = typer.Argument(..., help="Book whose paths are recomputed")) -> None:
    """Recompute level and path for every chapter of a book."""

    config = initialize_app()
    _prepare_logging(config)

    service = _build_service(config)
    try:
        rewritten = service.rebuild_paths(book_id)
    except ChapterTreeError as error:
        typer.echo(f"Rebuild failed: {error}", err=True)
        raise typer.Exit(code=1) from error
    typer.echo(f"Rebuilt book {book_id}: {rewritten} chapter(s) rewritten.")


if __name__ == "__main__":
    cli()
