"""In-memory projection of the store used by every reader."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Tuple, TypeVar

from .storage import (
    FileRecord,
    FolderRecord,
    LessonRecord,
    StudyRepository,
    TopicRecord,
    sort_records,
)


LOGGER = logging.getLogger(__name__)

T = TypeVar("T", FolderRecord, TopicRecord, LessonRecord, FileRecord)


def _group(records: Iterable[T], attribute: str) -> Dict[int, Tuple[T, ...]]:
    grouped: Dict[int, list] = {}
    for record in records:
        grouped.setdefault(int(getattr(record, attribute)), []).append(record)
    return {key: tuple(items) for key, items in grouped.items()}


@dataclass(frozen=True)
class CacheSnapshot:
    """Sorted, orphan-free view of all four collections at one point in time."""

    folders: Tuple[FolderRecord, ...] = ()
    topics: Tuple[TopicRecord, ...] = ()
    lessons: Tuple[LessonRecord, ...] = ()
    files: Tuple[FileRecord, ...] = ()
    topics_per_folder: Mapping[int, int] = field(default_factory=dict)
    lessons_per_topic: Mapping[int, int] = field(default_factory=dict)
    files_per_lesson: Mapping[int, int] = field(default_factory=dict)
    _topics_by_folder: Mapping[int, Tuple[TopicRecord, ...]] = field(default_factory=dict, repr=False)
    _lessons_by_topic: Mapping[int, Tuple[LessonRecord, ...]] = field(default_factory=dict, repr=False)
    _files_by_lesson: Mapping[int, Tuple[FileRecord, ...]] = field(default_factory=dict, repr=False)
    _index: Mapping[Tuple[str, int], object] = field(default_factory=dict, repr=False)

    @classmethod
    def build(
        cls,
        folders: Iterable[FolderRecord],
        topics: Iterable[TopicRecord],
        lessons: Iterable[LessonRecord],
        files: Iterable[FileRecord],
    ) -> "CacheSnapshot":
        live_folders = sort_records(list(folders))
        folder_ids = {folder.id for folder in live_folders}
        live_topics = sort_records([topic for topic in topics if topic.folder_id in folder_ids])
        topic_ids = {topic.id for topic in live_topics}
        live_lessons = sort_records([lesson for lesson in lessons if lesson.topic_id in topic_ids])
        lesson_ids = {lesson.id for lesson in live_lessons}
        live_files = sort_records([item for item in files if item.lesson_id in lesson_ids])

        index: Dict[Tuple[str, int], object] = {}
        for kind, records in (
            ("folder", live_folders),
            ("topic", live_topics),
            ("lesson", live_lessons),
            ("file", live_files),
        ):
            for record in records:
                index[(kind, int(record.id))] = record

        return cls(
            folders=tuple(live_folders),
            topics=tuple(live_topics),
            lessons=tuple(live_lessons),
            files=tuple(live_files),
            topics_per_folder=dict(Counter(topic.folder_id for topic in live_topics)),
            lessons_per_topic=dict(Counter(lesson.topic_id for lesson in live_lessons)),
            files_per_lesson=dict(Counter(item.lesson_id for item in live_files)),
            _topics_by_folder=_group(live_topics, "folder_id"),
            _lessons_by_topic=_group(live_lessons, "topic_id"),
            _files_by_lesson=_group(live_files, "lesson_id"),
            _index=index,
        )

    # Lookups -----------------------------------------------------------
    def folder(self, identifier: Optional[int]) -> Optional[FolderRecord]:
        return self._lookup("folder", identifier)  # type: ignore[return-value]

    def topic(self, identifier: Optional[int]) -> Optional[TopicRecord]:
        return self._lookup("topic", identifier)  # type: ignore[return-value]

    def lesson(self, identifier: Optional[int]) -> Optional[LessonRecord]:
        return self._lookup("lesson", identifier)  # type: ignore[return-value]

    def file(self, identifier: Optional[int]) -> Optional[FileRecord]:
        return self._lookup("file", identifier)  # type: ignore[return-value]

    def _lookup(self, kind: str, identifier: Optional[int]) -> Optional[object]:
        if identifier is None:
            return None
        return self._index.get((kind, int(identifier)))

    def topics_in(self, folder_id: int) -> Tuple[TopicRecord, ...]:
        return self._topics_by_folder.get(int(folder_id), ())

    def lessons_in(self, topic_id: int) -> Tuple[LessonRecord, ...]:
        return self._lessons_by_topic.get(int(topic_id), ())

    def files_in(self, lesson_id: int) -> Tuple[FileRecord, ...]:
        return self._files_by_lesson.get(int(lesson_id), ())

    # Counts (a missing key reads as zero)
    def topic_count(self, folder_id: int) -> int:
        return int(self.topics_per_folder.get(int(folder_id), 0))

    def lesson_count(self, topic_id: int) -> int:
        return int(self.lessons_per_topic.get(int(topic_id), 0))

    def file_count(self, lesson_id: int) -> int:
        return int(self.files_per_lesson.get(int(lesson_id), 0))


class AggregateCache:
    """Holds the current :class:`CacheSnapshot` and rebuilds it on demand."""

    def __init__(self) -> None:
        self._snapshot = CacheSnapshot()

    @property
    def snapshot(self) -> CacheSnapshot:
        return self._snapshot

    def reload(self, repository: StudyRepository) -> CacheSnapshot:
        """Re-read every collection and replace the snapshot.

        The previous snapshot stays in place if any read fails.
        """

        snapshot = CacheSnapshot.build(
            repository.folders.list(),
            repository.topics.list(),
            repository.lessons.list(),
            repository.files.list(),
        )
        self._snapshot = snapshot
        LOGGER.debug(
            "Cache reloaded: %s folder(s), %s topic(s), %s lesson(s), %s file(s)",
            len(snapshot.folders),
            len(snapshot.topics),
            len(snapshot.lessons),
            len(snapshot.files),
        )
        return snapshot


__all__ = ["AggregateCache", "CacheSnapshot"]
