"""Plain-text overview of the library for terminals without Rich styling."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from ..services.cache import CacheSnapshot
from ..services.library import StudyLibrary
from ..services.storage import FolderRecord, LessonRecord, TopicRecord


@dataclass
class ConsoleSection:
    title: str
    entries: Iterable[str]


class ConsoleUI:
    """Minimal console UI that prints the folder/topic/lesson hierarchy."""

    def __init__(self, library: StudyLibrary) -> None:
        self._library = library

    def run(self) -> None:
        """Render the current folder/topic/lesson hierarchy to stdout."""

        snapshot = self._library.snapshot
        print("Study Shelf – Console Overview")
        print("=" * 40)
        if not snapshot.folders:
            print("No folders yet. Use `python run.py add-folder NAME` to create one.")
            return
        for section in self._build_sections(snapshot):
            print(section.title)
            print("-" * len(section.title))
            has_entries = False
            for entry in section.entries:
                has_entries = True
                print(entry)
            if not has_entries:
                print("(empty)")
            print()

    def _build_sections(self, snapshot: CacheSnapshot) -> Iterable[ConsoleSection]:
        for folder in snapshot.folders:
            yield ConsoleSection(
                title=self._format_folder(folder, snapshot.topic_count(folder.id)),
                entries=self._format_topics(snapshot, folder),
            )

    @staticmethod
    def _format_folder(folder: FolderRecord, topic_count: int) -> str:
        return f"Folder #{folder.id}: {folder.name} [{folder.color}] ({topic_count} topics)"

    def _format_topics(self, snapshot: CacheSnapshot, folder: FolderRecord) -> Iterable[str]:
        topics = snapshot.topics_in(folder.id)
        if not topics:
            yield "  No topics yet"
            return
        for topic in topics:
            yield from self._format_topic_details(snapshot, topic)

    def _format_topic_details(self, snapshot: CacheSnapshot, topic: TopicRecord) -> Iterable[str]:
        lessons = snapshot.lessons_in(topic.id)
        header = f"  Topic #{topic.id}: {topic.name}"
        if not lessons:
            yield f"{header} (no lessons)"
            return
        yield header
        for lesson in lessons:
            yield f"    Lesson #{lesson.id}: {lesson.title}" + self._format_lesson_meta(
                lesson, snapshot.file_count(lesson.id)
            )

    @staticmethod
    def _format_lesson_meta(lesson: LessonRecord, file_count: int) -> str:
        parts = []
        if lesson.date:
            parts.append(lesson.date)
        if file_count:
            parts.append(f"{file_count} file{'s' if file_count != 1 else ''}")
        if lesson.links:
            parts.append(f"{len(lesson.links)} link{'s' if len(lesson.links) != 1 else ''}")
        if not parts:
            return ""
        return " (" + ", ".join(parts) + ")"


__all__ = ["ConsoleUI"]
