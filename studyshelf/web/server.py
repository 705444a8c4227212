"""FastAPI application exposing the study library over HTTP."""

from __future__ import annotations

import contextlib
import contextvars
import logging
import os
import sys
import threading
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Deque, Dict, List, Literal, Optional

from fastapi import FastAPI, File, Request, UploadFile
from fastapi import status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..errors import (
    InvalidInputError,
    NotFoundError,
    StudyShelfError,
    UnsupportedContentTypeError,
)
from ..logging_utils import DEFAULT_LOG_FORMAT
from ..services.cascade import CascadeReport
from ..services.events import (
    emit_db_event,
    emit_file_event,
    emit_structured_event,
    normalize_context as _normalize_event_context,
)
from ..services.ingestion import read_upload
from ..services.library import StudyLibrary, UploadItem
from ..services.navigation import state_to_dict
from ..services.notifications import NotificationCenter
from ..services.previews import ContentHandleRegistry
from ..services.storage import StudyRepository
from ..services.views import record_to_dict, screen_to_dict


_DEFAULT_MAX_UPLOAD_BYTES = 100 * 1024 * 1024
_MAX_UPLOAD_ENV = "STUDYSHELF_MAX_UPLOAD_BYTES"


def get_max_upload_bytes() -> int:
    """Return the configured maximum upload size in bytes (``0`` disables the limit)."""

    raw = (os.environ.get(_MAX_UPLOAD_ENV) or "").strip()
    try:
        return int(raw) if raw else _DEFAULT_MAX_UPLOAD_BYTES
    except ValueError:
        return _DEFAULT_MAX_UPLOAD_BYTES


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "study_shelf_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "study_shelf_actor",
    default=None,
)


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class LargeUploadRequest(Request):
    """Request subclass that applies the configured multipart upload limit."""

    async def _get_form(
        self,
        *,
        max_files: int | float = 1000,
        max_fields: int | float = 1000,
        max_part_size: int = 1024 * 1024,
    ) -> Any:
        configured_limit = get_max_upload_bytes()
        effective_limit = int(max_part_size)
        if configured_limit > 0:
            effective_limit = max(int(configured_limit), effective_limit)
        else:
            effective_limit = sys.maxsize
        return await super()._get_form(
            max_files=max_files,
            max_fields=max_fields,
            max_part_size=effective_limit,
        )


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = uuid.uuid4().hex
        method = scope.get("method")
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(
            f"request:{method.upper()}" if isinstance(method, str) else "request"
        )
        try:
            await self.app(scope, receive, send)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        for key, value in _collect_correlation_context().items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("study_shelf.web.events"), {})


def _log_event(message: str, **context: Any) -> None:
    emit_structured_event(
        "APP_EVENT",
        message,
        context=context,
        correlation=_collect_correlation_context(),
        logger=EVENT_LOGGER,
    )


def _repository_event_emitter(event_type: str, message: str, **kwargs: Any) -> None:
    correlation = _collect_correlation_context()
    if event_type == "DB_QUERY":
        emit_db_event(message, correlation=correlation, logger=EVENT_LOGGER, **kwargs)
    elif event_type == "FILE_OP":
        emit_file_event(message, correlation=correlation, logger=EVENT_LOGGER, **kwargs)
    else:
        emit_structured_event(
            event_type, message, correlation=correlation, logger=EVENT_LOGGER, **kwargs
        )


class DebugLogHandler(logging.Handler):
    """In-memory ring buffer of recent log records for the debug endpoint."""

    def __init__(self, capacity: int = 500) -> None:
        super().__init__(level=logging.DEBUG)
        self._capacity = max(1, capacity)
        self._entries: Deque[Dict[str, Any]] = deque(maxlen=self._capacity)
        self._lock = threading.Lock()
        self._last_id = 0
        self.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))

    @property
    def last_id(self) -> int:
        with self._lock:
            return self._last_id

    def emit(self, record: logging.LogRecord) -> None:  # noqa: D401 - inherited documentation
        rendered = record.getMessage()
        if record.exc_info:
            formatter = self.formatter or logging.Formatter()
            rendered = f"{rendered}\n{formatter.formatException(record.exc_info)}"
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "event_type": str(getattr(record, "debug_event_type", "") or record.name),
            "message": str(getattr(record, "debug_event", None) or rendered),
        }
        payload = getattr(record, "debug_payload", None)
        if isinstance(payload, dict):
            entry["payload"] = _normalize_event_context(payload)
        duration = getattr(record, "debug_duration_ms", None)
        if duration is not None:
            entry["duration_ms"] = float(duration)
        for key in ("request_id", "actor"):
            value = getattr(record, key, None)
            if value:
                entry[key] = str(value)
        if rendered != entry["message"]:
            entry["rendered"] = rendered
        with self._lock:
            self._last_id += 1
            entry["id"] = self._last_id
            self._entries.append(entry)

    def collect(self, after: Optional[int] = None, limit: int = 200) -> List[Dict[str, Any]]:
        with self._lock:
            if after is None or after <= 0:
                data = list(self._entries)
            else:
                data = [entry for entry in self._entries if entry["id"] > after]
        return data[-limit:]


class FolderCreatePayload(BaseModel):
    name: str = Field(..., min_length=1)
    color: Optional[str] = None


class FolderUpdatePayload(BaseModel):
    name: Optional[str] = None
    color: Optional[str] = None


class FolderReorderPayload(BaseModel):
    folder_ids: List[int] = Field(default_factory=list)


class TopicCreatePayload(BaseModel):
    folder_id: int
    name: str = Field(..., min_length=1)


class TopicUpdatePayload(BaseModel):
    folder_id: Optional[int] = None
    name: Optional[str] = None


class TopicReorderPayload(BaseModel):
    folder_id: int
    topic_ids: List[int] = Field(default_factory=list)


class LessonCreatePayload(BaseModel):
    topic_id: int
    title: str = Field(..., min_length=1)
    date: Optional[str] = None
    description: Optional[str] = None


class LessonUpdatePayload(BaseModel):
    topic_id: Optional[int] = None
    title: Optional[str] = None
    date: Optional[str] = None
    description: Optional[str] = None


class LessonReorderPayload(BaseModel):
    topic_id: int
    lesson_ids: List[int] = Field(default_factory=list)


class LinkCreatePayload(BaseModel):
    url: str = Field(..., min_length=1)
    title: Optional[str] = None


class NavigationPayload(BaseModel):
    target: Literal["dashboard", "folder", "topic", "lesson"]
    id: Optional[int] = None


class StatePatchPayload(BaseModel):
    field: Literal[
        "current_folder_id",
        "current_topic_id",
        "current_lesson_id",
        "search_query",
        "preview_file_id",
    ]
    value: Optional[Any] = None


class PreviewPayload(BaseModel):
    file_id: int


async def _studyshelf_error_handler(request: Request, exc: StudyShelfError) -> JSONResponse:
    LOGGER.warning(
        "%s on %s %s: %s",
        exc.__class__.__name__,
        request.method,
        request.url.path,
        exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@contextlib.asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    try:
        yield
    finally:
        library: Optional[StudyLibrary] = getattr(app.state, "library", None)
        if library is not None:
            library.close()
            library.handles.purge()


def create_app(
    repository: StudyRepository,
    *,
    config: AppConfig,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    normalized_root = (root_path or "").strip().rstrip("/")
    if normalized_root and not normalized_root.startswith("/"):
        normalized_root = f"/{normalized_root}"
    app = FastAPI(
        title="Study Shelf",
        description="Organise folders, topics, lessons and their documents",
        root_path=normalized_root,
        request_class=LargeUploadRequest,
        lifespan=_lifespan,
    )
    app.state.server = None

    configure_emitter = getattr(repository, "configure_event_emitter", None)
    if callable(configure_emitter):
        configure_emitter(_repository_event_emitter)

    root_logger = logging.getLogger()
    debug_handler = next(
        (handler for handler in root_logger.handlers if isinstance(handler, DebugLogHandler)),
        None,
    )
    if debug_handler is None:
        debug_handler = DebugLogHandler()
        root_logger.addHandler(debug_handler)
    app.state.debug_log_handler = debug_handler

    app.add_exception_handler(StudyShelfError, _studyshelf_error_handler)
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    handles = ContentHandleRegistry(config.previews_root)
    handles.purge()
    library = StudyLibrary(
        repository,
        handles=handles,
        notifications=NotificationCenter(config.notification_ttl_seconds),
    )
    library.open()
    app.state.library = library

    def _screen_payload() -> Dict[str, Any]:
        payload = screen_to_dict(library.current_screen())
        payload["notifications"] = [item.to_dict() for item in library.notifications.active()]
        preview = library.handles.handle_for("preview")
        payload["preview_url"] = preview.url if preview is not None else None
        return payload

    def _require_deleted(report: CascadeReport) -> Response:
        if not report.found:
            raise NotFoundError(report.root_kind.value, report.root_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ------------------------------------------------------------------
    # View and navigation
    # ------------------------------------------------------------------
    @app.get("/api/view")
    async def get_view() -> Dict[str, Any]:
        return _screen_payload()

    @app.get("/api/state")
    async def get_state() -> Dict[str, Any]:
        return state_to_dict(library.state)

    @app.patch("/api/state")
    async def patch_state(payload: StatePatchPayload) -> Dict[str, Any]:
        _log_event("Setting navigation field", field=payload.field, value=payload.value)
        library.set_state(payload.field, payload.value)
        return _screen_payload()

    @app.post("/api/navigation")
    async def navigate(payload: NavigationPayload) -> Dict[str, Any]:
        _log_event("Navigating", target=payload.target, id=payload.id)
        if payload.target != "dashboard" and payload.id is None:
            raise InvalidInputError(f"Navigating to a {payload.target} requires an id")
        if payload.target == "folder":
            library.open_folder(payload.id)
        elif payload.target == "topic":
            library.open_topic(payload.id)
        elif payload.target == "lesson":
            library.open_lesson(payload.id)
        else:
            library.go_dashboard()
        return _screen_payload()

    @app.get("/api/search")
    async def search(q: str = "") -> Dict[str, Any]:
        library.search(q)
        return _screen_payload()

    @app.post("/api/preview")
    async def open_preview(payload: PreviewPayload) -> Dict[str, Any]:
        library.preview_file(payload.file_id)
        return _screen_payload()

    @app.delete("/api/preview")
    async def close_preview() -> Dict[str, Any]:
        library.close_preview()
        return _screen_payload()

    @app.get("/api/previews/{token}")
    async def get_preview(token: str) -> FileResponse:
        handle = library.handles.resolve(token)
        if handle is None or not handle.path.exists():
            raise NotFoundError("preview", token)
        return FileResponse(
            handle.path,
            media_type=handle.mime_type,
            headers={
                "Cache-Control": "no-store, max-age=0",
                "Content-Disposition": f'inline; filename="{handle.name}"',
            },
        )

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------
    @app.get("/api/folders")
    async def list_folders() -> Dict[str, Any]:
        snapshot = library.snapshot
        return {
            "folders": [
                {**record_to_dict(folder), "topic_count": snapshot.topic_count(folder.id)}
                for folder in snapshot.folders
            ]
        }

    @app.post("/api/folders", status_code=status.HTTP_201_CREATED)
    async def create_folder(payload: FolderCreatePayload) -> Dict[str, Any]:
        _log_event("Creating folder", name=payload.name)
        record = library.create_folder(payload.name, payload.color)
        return {"folder": record_to_dict(record)}

    @app.put("/api/folders/{folder_id}")
    async def update_folder(folder_id: int, payload: FolderUpdatePayload) -> Dict[str, Any]:
        _log_event("Updating folder", folder_id=folder_id)
        record = library.update_folder(folder_id, name=payload.name, color=payload.color)
        return {"folder": record_to_dict(record)}

    @app.delete(
        "/api/folders/{folder_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_folder(folder_id: int) -> Response:
        _log_event("Deleting folder", folder_id=folder_id)
        return _require_deleted(library.delete_folder(folder_id))

    @app.post("/api/folders/reorder")
    async def reorder_folders(payload: FolderReorderPayload) -> Dict[str, Any]:
        records = library.reorder_folders(payload.folder_ids)
        return {"folders": [record_to_dict(record) for record in records]}

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------
    @app.post("/api/topics", status_code=status.HTTP_201_CREATED)
    async def create_topic(payload: TopicCreatePayload) -> Dict[str, Any]:
        _log_event("Creating topic", folder_id=payload.folder_id, name=payload.name)
        record = library.create_topic(payload.folder_id, payload.name)
        return {"topic": record_to_dict(record)}

    @app.put("/api/topics/{topic_id}")
    async def update_topic(topic_id: int, payload: TopicUpdatePayload) -> Dict[str, Any]:
        _log_event("Updating topic", topic_id=topic_id)
        record = library.update_topic(topic_id, name=payload.name, folder_id=payload.folder_id)
        return {"topic": record_to_dict(record)}

    @app.delete(
        "/api/topics/{topic_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_topic(topic_id: int) -> Response:
        _log_event("Deleting topic", topic_id=topic_id)
        return _require_deleted(library.delete_topic(topic_id))

    @app.post("/api/topics/reorder")
    async def reorder_topics(payload: TopicReorderPayload) -> Dict[str, Any]:
        records = library.reorder_topics(payload.folder_id, payload.topic_ids)
        return {"topics": [record_to_dict(record) for record in records]}

    # ------------------------------------------------------------------
    # Lessons, links and files
    # ------------------------------------------------------------------
    @app.post("/api/lessons", status_code=status.HTTP_201_CREATED)
    async def create_lesson(payload: LessonCreatePayload) -> Dict[str, Any]:
        _log_event("Creating lesson", topic_id=payload.topic_id, title=payload.title)
        record = library.create_lesson(
            payload.topic_id,
            payload.title,
            date=payload.date,
            description=payload.description,
        )
        return {"lesson": record_to_dict(record)}

    @app.put("/api/lessons/{lesson_id}")
    async def update_lesson(lesson_id: int, payload: LessonUpdatePayload) -> Dict[str, Any]:
        _log_event("Updating lesson", lesson_id=lesson_id)
        record = library.update_lesson(
            lesson_id,
            title=payload.title,
            date=payload.date,
            description=payload.description,
            topic_id=payload.topic_id,
        )
        return {"lesson": record_to_dict(record)}

    @app.delete(
        "/api/lessons/{lesson_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_lesson(lesson_id: int) -> Response:
        _log_event("Deleting lesson", lesson_id=lesson_id)
        return _require_deleted(library.delete_lesson(lesson_id))

    @app.post("/api/lessons/reorder")
    async def reorder_lessons(payload: LessonReorderPayload) -> Dict[str, Any]:
        records = library.reorder_lessons(payload.topic_id, payload.lesson_ids)
        return {"lessons": [record_to_dict(record) for record in records]}

    @app.post("/api/lessons/{lesson_id}/links", status_code=status.HTTP_201_CREATED)
    async def add_link(lesson_id: int, payload: LinkCreatePayload) -> Dict[str, Any]:
        link = library.add_link(lesson_id, payload.url, payload.title)
        return {"link": record_to_dict(link)}

    @app.delete(
        "/api/lessons/{lesson_id}/links/{link_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def remove_link(lesson_id: int, link_id: int) -> Response:
        library.remove_link(lesson_id, link_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/lessons/{lesson_id}/files", status_code=status.HTTP_201_CREATED)
    async def upload_files(
        lesson_id: int,
        files: List[UploadFile] = File(...),
    ) -> Dict[str, Any]:
        _log_event("Uploading files", lesson_id=lesson_id, count=len(files))
        items: List[UploadItem] = []
        try:
            for upload in files:
                try:
                    items.append(read_upload(upload.filename, upload.content_type, upload.file))
                except (UnsupportedContentTypeError, InvalidInputError):
                    # Passed on unread so the library reports and skips it.
                    items.append((upload.filename or "", upload.content_type, b""))
        finally:
            for upload in files:
                await upload.close()
        summary = library.upload_files(lesson_id, items)
        return {
            "uploaded": [record_to_dict(record) for record in summary.uploaded],
            "rejected": summary.rejected,
        }

    @app.delete(
        "/api/files/{file_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_file(file_id: int) -> Response:
        _log_event("Deleting file", file_id=file_id)
        return _require_deleted(library.delete_file(file_id))

    @app.get("/api/files/{file_id}/download")
    async def download_file(file_id: int) -> FileResponse:
        handle = library.open_download(file_id)
        _log_event("Serving download", file_id=file_id, token=handle.token)
        return FileResponse(
            handle.path,
            media_type=handle.mime_type,
            filename=handle.name,
            headers={"Cache-Control": "no-store, max-age=0"},
            background=BackgroundTask(library.handles.release_token, handle.token),
        )

    # ------------------------------------------------------------------
    # Notifications and diagnostics
    # ------------------------------------------------------------------
    @app.get("/api/notifications")
    async def get_notifications() -> Dict[str, Any]:
        return {
            "notifications": [item.to_dict() for item in library.notifications.active()],
            "ttl_seconds": library.notifications.ttl_seconds,
        }

    @app.delete(
        "/api/notifications/{notification_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def dismiss_notification(notification_id: int) -> Response:
        if not library.notifications.dismiss(notification_id):
            raise NotFoundError("notification", notification_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/api/debug/logs")
    async def get_debug_logs(after: Optional[int] = None) -> Dict[str, Any]:
        handler: Optional[DebugLogHandler] = getattr(app.state, "debug_log_handler", None)
        if handler is None:
            return {"logs": [], "next": after or 0}
        entries = handler.collect(after)
        next_marker = handler.last_id if entries else (after or handler.last_id)
        return {"logs": entries, "next": next_marker}

    return app


__all__ = [
    "ContextualLoggerAdapter",
    "DebugLogHandler",
    "LargeUploadRequest",
    "RequestContextMiddleware",
    "create_app",
    "get_max_upload_bytes",
]
