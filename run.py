"""Entry-point for the Study Shelf application."""

from __future__ import annotations

import inspect
import logging
import os
import threading
import time
import webbrowser
from enum import Enum
from pathlib import Path
from typing import List, Optional

import typer
import uvicorn

from studyshelf.bootstrap import initialize_app
from studyshelf.config import AppConfig
from studyshelf.errors import StudyShelfError
from studyshelf.logging_utils import (
    DEFAULT_LOG_FORMAT,
    LOG_LEVEL_ENV,
    configure_logging,
    get_log_file_path,
    resolve_log_level,
)
from studyshelf.services.ingestion import IncomingFile
from studyshelf.services.library import StudyLibrary
from studyshelf.services.notifications import NotificationCenter
from studyshelf.services.previews import ContentHandleRegistry
from studyshelf.services.storage import EntityKind, StudyRepository
from studyshelf.ui.console import ConsoleUI
from studyshelf.ui.modern import ModernUI
from studyshelf.web import create_app
from studyshelf.web.server import get_max_upload_bytes


LOGGER = logging.getLogger("study_shelf.cli")


cli = typer.Typer(add_completion=False, help="Study Shelf management commands")


def _prepare_logging(storage_root: Path) -> None:
    log_file = get_log_file_path(storage_root)
    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    configure_logging(
        resolve_log_level(os.environ.get(LOG_LEVEL_ENV)),
        handlers=[file_handler, stream_handler],
    )


def _open_library(config: AppConfig) -> StudyLibrary:
    library = StudyLibrary(
        StudyRepository(config),
        handles=ContentHandleRegistry(config.previews_root),
        notifications=NotificationCenter(config.notification_ttl_seconds),
    )
    library.open()
    return library


def _fail(error: StudyShelfError) -> typer.Exit:
    typer.echo(f"Error: {error.message}", err=True)
    return typer.Exit(code=1)


class UIStyle(str, Enum):
    MODERN = "modern"
    CONSOLE = "console"


style_option = typer.Option(
    UIStyle.MODERN,
    "--style",
    "-s",
    help="Select the overview presentation style.",
    show_default=True,
)


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None)


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="STUDYSHELF_ROOT_PATH",
    ),
) -> None:
    """Run the FastAPI-powered web API."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    repository = StudyRepository(app_config)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(repository, config=app_config, root_path=normalized_root)

    config_kwargs = {}
    max_upload_bytes = get_max_upload_bytes()
    if max_upload_bytes > 0:
        config_signature = inspect.signature(uvicorn.Config.__init__)
        if "limit_max_request_size" in config_signature.parameters:
            config_kwargs["limit_max_request_size"] = max_upload_bytes
        else:
            LOGGER.warning(
                "Ignoring max upload size limit; uvicorn.Config does not support "
                "'limit_max_request_size'.",
            )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
        **config_kwargs,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server

    browser_host = host
    if not browser_host or browser_host in {"0.0.0.0", "::"}:
        browser_host = "127.0.0.1"
    url = f"http://{browser_host}:{port}{normalized_root}/docs"

    def _open_browser_later() -> None:
        time.sleep(1.0)
        try:
            webbrowser.open(url, new=2, autoraise=True)
        except webbrowser.Error as error:
            LOGGER.debug("Could not open a browser for %s: %s", url, error)

    threading.Thread(target=_open_browser_later, daemon=True).start()

    server.run()


@cli.command()
def overview(style: UIStyle = style_option) -> None:
    """Render an overview of the library using the chosen UI style."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    try:
        library = _open_library(config)
    except StudyShelfError as error:
        raise _fail(error) from error
    if style is UIStyle.MODERN:
        ui = ModernUI(library)
    else:
        ui = ConsoleUI(library)
    ui.run()


@cli.command("add-folder")
def add_folder(
    name: str = typer.Argument(..., help="Folder name"),
    color: Optional[str] = typer.Option(None, help="Folder colour as #rrggbb"),
) -> None:
    """Create a folder."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    try:
        folder = _open_library(config).create_folder(name, color)
    except StudyShelfError as error:
        raise _fail(error) from error
    typer.echo(f"Created folder #{folder.id}: {folder.name} ({folder.color})")


@cli.command("add-topic")
def add_topic(
    folder_id: int = typer.Argument(..., help="Identifier of the parent folder"),
    name: str = typer.Argument(..., help="Topic name"),
) -> None:
    """Create a topic inside a folder."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    try:
        topic = _open_library(config).create_topic(folder_id, name)
    except StudyShelfError as error:
        raise _fail(error) from error
    typer.echo(f"Created topic #{topic.id}: {topic.name}")


@cli.command("add-lesson")
def add_lesson(
    topic_id: int = typer.Argument(..., help="Identifier of the parent topic"),
    title: str = typer.Argument(..., help="Lesson title"),
    date: Optional[str] = typer.Option(None, help="Lesson date (YYYY-MM-DD)"),
    description: Optional[str] = typer.Option(None, help="Lesson description"),
) -> None:
    """Create a lesson inside a topic."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    try:
        lesson = _open_library(config).create_lesson(
            topic_id, title, date=date, description=description
        )
    except StudyShelfError as error:
        raise _fail(error) from error
    typer.echo(f"Created lesson #{lesson.id}: {lesson.title}")


@cli.command()
def upload(
    lesson_id: int = typer.Argument(..., help="Identifier of the lesson"),
    paths: List[Path] = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="PDF or Word documents to attach",
    ),
) -> None:
    """Attach documents to a lesson; unsupported files are skipped."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    try:
        library = _open_library(config)
        items = []
        rejected: List[str] = []
        for path in paths:
            try:
                items.append(IncomingFile.from_path(path))
            except StudyShelfError as error:
                rejected.append(path.name)
                typer.echo(f"Skipped {path.name}: {error.message}", err=True)
        summary = library.upload_files(lesson_id, items)
    except StudyShelfError as error:
        raise _fail(error) from error
    for record in summary.uploaded:
        typer.echo(f"Uploaded #{record.id}: {record.name} ({record.size_bytes} bytes)")
    if rejected or summary.rejected:
        raise typer.Exit(code=1)


@cli.command()
def delete(
    kind: EntityKind = typer.Argument(..., help="What to delete"),
    identifier: int = typer.Argument(..., help="Identifier of the record"),
) -> None:
    """Delete a record together with everything beneath it."""

    config = initialize_app()
    _prepare_logging(config.storage_root)
    try:
        library = _open_library(config)
        handlers = {
            EntityKind.FOLDER: library.delete_folder,
            EntityKind.TOPIC: library.delete_topic,
            EntityKind.LESSON: library.delete_lesson,
            EntityKind.FILE: library.delete_file,
        }
        report = handlers[kind](identifier)
    except StudyShelfError as error:
        raise _fail(error) from error
    if not report.found:
        typer.echo(f"{kind.value.capitalize()} #{identifier} was already removed.")
    summary = ", ".join(
        f"{len(ids)} {child.value}{'s' if len(ids) != 1 else ''}"
        for child, ids in report.deleted.items()
    )
    typer.echo(f"Deleted {summary or 'nothing'}.")


if __name__ == "__main__":
    cli()
