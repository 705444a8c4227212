"""High level controller tying the store, cache, navigation and handles together."""

from __future__ import annotations

import contextlib
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

from ..errors import (
    InvalidInputError,
    NotFoundError,
    StudyShelfError,
    UnsupportedContentTypeError,
)
from .cache import AggregateCache, CacheSnapshot
from .cascade import CascadeDeleter, CascadeReport
from .ingestion import IncomingFile, ensure_supported
from .navigation import NavigationState, Navigator, as_identifier
from .notifications import NotificationCenter
from .previews import DOWNLOAD_SCOPE, PREVIEW_SCOPE, ContentHandle, ContentHandleRegistry
from .storage import (
    DEFAULT_FOLDER_COLOR,
    EntityKind,
    FileRecord,
    FolderRecord,
    LessonRecord,
    LinkRecord,
    StudyRepository,
    TopicRecord,
    utc_timestamp,
)
from .views import Screen, build_screen


LOGGER = logging.getLogger(__name__)

_COLOR_PATTERN = re.compile(r"^#[0-9a-fA-F]{6}$")

UploadItem = Union[IncomingFile, Tuple[str, Optional[str], bytes]]


@dataclass
class UploadSummary:
    uploaded: List[FileRecord] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)


def _clean_text(value: Optional[str], label: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise InvalidInputError(f"{label} must not be empty")
    return cleaned


def _clean_color(value: Optional[str]) -> str:
    if value is None or not value.strip():
        return DEFAULT_FOLDER_COLOR
    cleaned = value.strip()
    if not _COLOR_PATTERN.fullmatch(cleaned):
        raise InvalidInputError(f"Invalid colour '{value}'; expected #rrggbb")
    return cleaned.lower()


def _clean_date(value: Optional[str]) -> Optional[str]:
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    try:
        return date.fromisoformat(cleaned).isoformat()
    except ValueError as error:
        raise InvalidInputError(f"Invalid date '{value}'; expected YYYY-MM-DD") from error


def _clean_url(value: Optional[str]) -> str:
    cleaned = _clean_text(value, "Link URL")
    parsed = urlparse(cleaned)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise InvalidInputError(f"Invalid link URL '{cleaned}'")
    return cleaned


class StudyLibrary:
    """Entry point for every mutation and navigation step.

    A mutation writes to the store, reloads the cache, revalidates the
    navigation state, pushes one notification and then notifies subscribers.
    A failed mutation pushes one error notification and leaves the cache and
    the state untouched.
    """

    def __init__(
        self,
        repository: StudyRepository,
        *,
        handles: ContentHandleRegistry,
        notifications: Optional[NotificationCenter] = None,
        cache: Optional[AggregateCache] = None,
    ) -> None:
        self._repository = repository
        self._handles = handles
        self._notifications = notifications or NotificationCenter()
        self._cache = cache or AggregateCache()
        self._cascade = CascadeDeleter(repository)
        self._navigator = Navigator(lambda: self._cache.snapshot)
        self._navigator.subscribe(self._sync_preview_handle)

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    @property
    def repository(self) -> StudyRepository:
        return self._repository

    @property
    def navigator(self) -> Navigator:
        return self._navigator

    @property
    def notifications(self) -> NotificationCenter:
        return self._notifications

    @property
    def handles(self) -> ContentHandleRegistry:
        return self._handles

    @property
    def state(self) -> NavigationState:
        return self._navigator.state

    @property
    def snapshot(self) -> CacheSnapshot:
        return self._cache.snapshot

    def subscribe(self, listener: Callable[[NavigationState], None]) -> Callable[[], None]:
        return self._navigator.subscribe(listener)

    def current_screen(self) -> Screen:
        return build_screen(self._navigator.state, self._cache.snapshot)

    def open(self) -> Screen:
        """Load the cache and revalidate the current state."""

        with self._reporting("open library"):
            self._cache.reload(self._repository)
            self._navigator.resolve()
            self._sync_preview_handle(self._navigator.state)
        return self.current_screen()

    def refresh(self) -> Screen:
        """Reload from the store and notify subscribers."""

        self.open()
        self._navigator.notify()
        return self.current_screen()

    def close(self) -> None:
        released = self._handles.release_all()
        LOGGER.debug("Library closed; released %s handle(s)", released)

    # ------------------------------------------------------------------
    # Folders
    # ------------------------------------------------------------------
    def create_folder(self, name: str, color: Optional[str] = None) -> FolderRecord:
        with self._reporting("create folder"):
            record = FolderRecord(name=_clean_text(name, "Folder name"), color=_clean_color(color))
            folder_id = self._repository.folders.add(record)
            self._commit("Folder created")
            return self._require_folder(folder_id)

    def update_folder(
        self,
        folder_id: int,
        *,
        name: Optional[str] = None,
        color: Optional[str] = None,
    ) -> FolderRecord:
        with self._reporting("update folder"):
            current = self._require_folder(folder_id)
            changes: Dict[str, Any] = {}
            if name is not None:
                changes["name"] = _clean_text(name, "Folder name")
            if color is not None:
                changes["color"] = _clean_color(color)
            self._repository.folders.update(replace(current, **changes))
            self._commit("Folder updated")
            return self._require_folder(folder_id)

    def delete_folder(self, folder_id: int) -> CascadeReport:
        return self._delete(EntityKind.FOLDER, folder_id, "Folder deleted")

    def reorder_folders(self, ordered_ids: Sequence[int]) -> List[FolderRecord]:
        with self._reporting("reorder folders"):
            current = list(self.snapshot.folders)
            self._apply_order(self._repository.folders, current, ordered_ids, "folders")
            self._commit("Folders reordered")
            return list(self.snapshot.folders)

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------
    def create_topic(self, folder_id: int, name: str) -> TopicRecord:
        with self._reporting("create topic"):
            cleaned = _clean_text(name, "Topic name")
            self._require_folder(folder_id)
            topic_id = self._repository.topics.add(TopicRecord(folder_id=int(folder_id), name=cleaned))
            self._commit("Topic created")
            return self._require_topic(topic_id)

    def update_topic(
        self,
        topic_id: int,
        *,
        name: Optional[str] = None,
        folder_id: Optional[int] = None,
    ) -> TopicRecord:
        with self._reporting("update topic"):
            current = self._require_topic(topic_id)
            changes: Dict[str, Any] = {}
            if name is not None:
                changes["name"] = _clean_text(name, "Topic name")
            if folder_id is not None and int(folder_id) != current.folder_id:
                self._require_folder(folder_id)
                changes["folder_id"] = int(folder_id)
                changes["order"] = self._repository.topics.next_order(int(folder_id))
            self._repository.topics.update(replace(current, **changes))
            self._commit("Topic updated")
            return self._require_topic(topic_id)

    def delete_topic(self, topic_id: int) -> CascadeReport:
        return self._delete(EntityKind.TOPIC, topic_id, "Topic deleted")

    def reorder_topics(self, folder_id: int, ordered_ids: Sequence[int]) -> List[TopicRecord]:
        with self._reporting("reorder topics"):
            self._require_folder(folder_id)
            current = list(self.snapshot.topics_in(folder_id))
            self._apply_order(self._repository.topics, current, ordered_ids, "topics")
            self._commit("Topics reordered")
            return list(self.snapshot.topics_in(folder_id))

    # ------------------------------------------------------------------
    # Lessons
    # ------------------------------------------------------------------
    def create_lesson(
        self,
        topic_id: int,
        title: str,
        *,
        date: Optional[str] = None,
        description: Optional[str] = None,
    ) -> LessonRecord:
        with self._reporting("create lesson"):
            record = LessonRecord(
                topic_id=int(topic_id),
                title=_clean_text(title, "Lesson title"),
                date=_clean_date(date),
                description=(description or "").strip() or None,
            )
            self._require_topic(topic_id)
            lesson_id = self._repository.lessons.add(record)
            self._commit("Lesson created")
            return self._require_lesson(lesson_id)

    def update_lesson(
        self,
        lesson_id: int,
        *,
        title: Optional[str] = None,
        date: Optional[str] = None,
        description: Optional[str] = None,
        topic_id: Optional[int] = None,
    ) -> LessonRecord:
        """Change the given fields; an empty string clears ``date`` or ``description``."""

        with self._reporting("update lesson"):
            current = self._require_lesson(lesson_id)
            changes: Dict[str, Any] = {}
            if title is not None:
                changes["title"] = _clean_text(title, "Lesson title")
            if date is not None:
                changes["date"] = _clean_date(date)
            if description is not None:
                changes["description"] = description.strip() or None
            if topic_id is not None and int(topic_id) != current.topic_id:
                self._require_topic(topic_id)
                changes["topic_id"] = int(topic_id)
                changes["order"] = self._repository.lessons.next_order(int(topic_id))
            self._repository.lessons.update(replace(current, **changes))
            self._commit("Lesson updated")
            return self._require_lesson(lesson_id)

    def delete_lesson(self, lesson_id: int) -> CascadeReport:
        return self._delete(EntityKind.LESSON, lesson_id, "Lesson deleted")

    def reorder_lessons(self, topic_id: int, ordered_ids: Sequence[int]) -> List[LessonRecord]:
        with self._reporting("reorder lessons"):
            self._require_topic(topic_id)
            current = list(self.snapshot.lessons_in(topic_id))
            self._apply_order(self._repository.lessons, current, ordered_ids, "lessons")
            self._commit("Lessons reordered")
            return list(self.snapshot.lessons_in(topic_id))

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------
    def add_link(self, lesson_id: int, url: str, title: Optional[str] = None) -> LinkRecord:
        with self._reporting("add link"):
            cleaned_url = _clean_url(url)
            current = self._require_lesson(lesson_id)
            link = LinkRecord(
                id=max((link.id for link in current.links), default=0) + 1,
                title=(title or "").strip() or cleaned_url,
                url=cleaned_url,
                added_at=utc_timestamp(),
            )
            self._repository.lessons.update(replace(current, links=[*current.links, link]))
            self._commit("Link added")
            return link

    def remove_link(self, lesson_id: int, link_id: int) -> bool:
        with self._reporting("remove link"):
            current = self._require_lesson(lesson_id)
            remaining = [link for link in current.links if link.id != int(link_id)]
            if len(remaining) == len(current.links):
                raise NotFoundError("link", link_id)
            self._repository.lessons.update(replace(current, links=remaining))
            self._commit("Link removed")
            return True

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------
    def upload_file(
        self,
        lesson_id: int,
        payload: bytes,
        name: str,
        mime_type: Optional[str],
    ) -> FileRecord:
        with self._reporting("upload file"):
            self._require_lesson(lesson_id)
            file_id = self._store_upload(lesson_id, name, mime_type, payload)
            self._commit("1 file uploaded")
            return self._require_file(file_id)

    def upload_files(self, lesson_id: int, items: Iterable[UploadItem]) -> UploadSummary:
        """Store every supported item; unsupported ones are reported and skipped."""

        summary = UploadSummary()
        stored: List[int] = []
        with self._reporting("upload files"):
            self._require_lesson(lesson_id)
            for item in items:
                if isinstance(item, IncomingFile):
                    name, mime_type, payload = item.name, item.mime_type, item.payload
                else:
                    name, mime_type, payload = item
                try:
                    stored.append(self._store_upload(lesson_id, name, mime_type, payload))
                except (UnsupportedContentTypeError, InvalidInputError) as error:
                    LOGGER.warning("Skipping upload '%s': %s", name, error.message)
                    summary.rejected.append(name)
                    self._notifications.error(error.message)
            if stored:
                count = len(stored)
                self._commit(f"{count} file{'s' if count != 1 else ''} uploaded")
                summary.uploaded = [self._require_file(file_id) for file_id in stored]
        return summary

    def delete_file(self, file_id: int) -> CascadeReport:
        return self._delete(EntityKind.FILE, file_id, "File deleted")

    def read_file(self, file_id: int) -> Tuple[FileRecord, bytes]:
        with self._reporting("read file"):
            record = self._require_file(file_id)
            payload = self._repository.files.read_payload(file_id)
            if payload is None:
                raise NotFoundError("file", file_id)
            return record, payload

    def open_download(self, file_id: int) -> ContentHandle:
        """Expose *file_id* through the download handle, replacing the previous one."""

        record, payload = self.read_file(file_id)
        # A fresh token each time so a late release of the old one is a no-op.
        self._handles.release(DOWNLOAD_SCOPE)
        return self._handles.acquire(DOWNLOAD_SCOPE, record, payload, purpose="download")

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------
    def go_dashboard(self) -> NavigationState:
        with self._reporting("navigate"):
            return self._navigator.go_dashboard()

    def open_folder(self, folder_id: int) -> NavigationState:
        with self._reporting("navigate"):
            return self._navigator.go_folder(folder_id)

    def open_topic(self, topic_id: int) -> NavigationState:
        with self._reporting("navigate"):
            return self._navigator.go_topic(topic_id)

    def open_lesson(self, lesson_id: int) -> NavigationState:
        with self._reporting("navigate"):
            return self._navigator.go_lesson(lesson_id)

    def search(self, query: str) -> NavigationState:
        with self._reporting("search"):
            return self._navigator.search(query)

    def set_state(self, field_name: str, value: Any) -> NavigationState:
        if field_name == "preview_file_id" and value is not None:
            with self._reporting("preview file"):
                file_id = as_identifier(field_name, value)
            return self.preview_file(file_id)
        with self._reporting("navigate"):
            return self._navigator.set(field_name, value)

    def preview_file(self, file_id: int) -> NavigationState:
        """Show a PDF inline; Word documents are only offered as downloads."""

        with self._reporting("preview file"):
            record = self._require_file(file_id)
            if not record.is_pdf:
                raise InvalidInputError(f"'{record.name}' cannot be previewed; download it instead")
            return self._navigator.set_preview(file_id)

    def close_preview(self) -> NavigationState:
        with self._reporting("close preview"):
            return self._navigator.clear_preview()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @contextlib.contextmanager
    def _reporting(self, action: str) -> Iterator[None]:
        try:
            yield
        except StudyShelfError as error:
            LOGGER.warning("Could not %s: %s", action, error.message)
            self._notifications.error(error.message)
            raise

    def _commit(self, message: str) -> None:
        self._cache.reload(self._repository)
        self._navigator.resolve()
        self._notifications.success(message)
        self._navigator.notify()

    def _delete(self, kind: EntityKind, identifier: int, message: str) -> CascadeReport:
        with self._reporting(f"delete {kind.value}"):
            report = self._cascade.delete(kind, int(identifier))
            for file_id in report.deleted_ids(EntityKind.FILE):
                self._handles.release_file(file_id)
            if report.found:
                self._commit(message)
            else:
                self._cache.reload(self._repository)
                self._navigator.resolve()
                self._notifications.info(f"{kind.value.capitalize()} was already removed")
                self._navigator.notify()
            return report

    def _store_upload(
        self,
        lesson_id: int,
        name: str,
        mime_type: Optional[str],
        payload: bytes,
    ) -> int:
        clean_name = _clean_text(name, "File name")
        resolved_type = ensure_supported(clean_name, mime_type)
        file_id = self._repository.files.add(
            FileRecord(
                lesson_id=int(lesson_id),
                name=clean_name,
                mime_type=resolved_type,
                size_bytes=len(payload),
                payload=bytes(payload),
            )
        )
        LOGGER.info("Stored '%s' (%s bytes) on lesson %s", clean_name, len(payload), lesson_id)
        return file_id

    def _apply_order(
        self,
        store: Any,
        current: List[Any],
        ordered_ids: Sequence[int],
        label: str,
    ) -> None:
        requested = [int(identifier) for identifier in ordered_ids]
        if len(set(requested)) != len(requested):
            raise InvalidInputError(f"Duplicate identifiers in {label} order")
        known = {int(record.id): record for record in current}
        if set(requested) != set(known):
            raise InvalidInputError(f"The new {label} order must list exactly the existing {label}")
        for position, identifier in enumerate(requested):
            record = known[identifier]
            if record.order != position:
                store.update(replace(record, order=position))

    def _sync_preview_handle(self, state: NavigationState) -> None:
        file_id = getattr(state, "preview_file_id", None)
        if file_id is None:
            self._handles.release(PREVIEW_SCOPE)
            return
        current = self._handles.handle_for(PREVIEW_SCOPE)
        if current is not None and current.file_id == file_id:
            return
        record = self._cache.snapshot.file(file_id)
        payload = self._repository.files.read_payload(file_id) if record is not None else None
        if record is None or payload is None:
            self._handles.release(PREVIEW_SCOPE)
            return
        self._handles.acquire(PREVIEW_SCOPE, record, payload)

    def _require(self, kind: EntityKind, identifier: int) -> Any:
        # Visible in the snapshot (so not orphaned), then re-read for a fresh copy.
        record = None
        if getattr(self.snapshot, kind.value)(identifier) is not None:
            record = self._repository.store(kind).get(int(identifier))
        if record is None:
            raise NotFoundError(kind.value, identifier)
        return record

    def _require_folder(self, folder_id: int) -> FolderRecord:
        return self._require(EntityKind.FOLDER, folder_id)

    def _require_topic(self, topic_id: int) -> TopicRecord:
        return self._require(EntityKind.TOPIC, topic_id)

    def _require_lesson(self, lesson_id: int) -> LessonRecord:
        return self._require(EntityKind.LESSON, lesson_id)

    def _require_file(self, file_id: int) -> FileRecord:
        record = self.snapshot.file(file_id)
        if record is None:
            raise NotFoundError("file", file_id)
        return record


__all__ = ["StudyLibrary", "UploadItem", "UploadSummary"]
