"""View models derived from the navigation state and the cache snapshot."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Union

from .cache import CacheSnapshot
from .navigation import (
    FolderState,
    LessonState,
    NavigationState,
    SearchState,
    TopicState,
    ViewKind,
    state_to_dict,
)
from .storage import FileRecord, FolderRecord, LessonRecord, LinkRecord, TopicRecord


@dataclass
class FolderCard:
    record: FolderRecord
    topic_count: int


@dataclass
class TopicCard:
    record: TopicRecord
    lesson_count: int


@dataclass
class LessonCard:
    record: LessonRecord
    file_count: int


@dataclass
class SidebarEntry:
    record: FolderRecord
    topic_count: int
    active: bool


@dataclass
class DashboardView:
    folders: List[FolderCard]
    kind: ViewKind = ViewKind.DASHBOARD


@dataclass
class FolderDetailView:
    folder: FolderRecord
    topics: List[TopicCard]
    kind: ViewKind = ViewKind.FOLDER


@dataclass
class TopicDetailView:
    folder: FolderRecord
    topic: TopicRecord
    lessons: List[LessonCard]
    kind: ViewKind = ViewKind.TOPIC


@dataclass
class LessonDetailView:
    folder: FolderRecord
    topic: TopicRecord
    lesson: LessonRecord
    files: List[FileRecord]
    links: List[LinkRecord]
    preview: Optional[FileRecord] = None
    kind: ViewKind = ViewKind.LESSON


@dataclass
class SearchView:
    query: str
    folders: List[FolderCard] = field(default_factory=list)
    topics: List[TopicCard] = field(default_factory=list)
    lessons: List[LessonCard] = field(default_factory=list)
    files: List[FileRecord] = field(default_factory=list)
    kind: ViewKind = ViewKind.SEARCH

    @property
    def total(self) -> int:
        return len(self.folders) + len(self.topics) + len(self.lessons) + len(self.files)


MainView = Union[DashboardView, FolderDetailView, TopicDetailView, LessonDetailView, SearchView]


@dataclass
class Screen:
    state: NavigationState
    sidebar: List[SidebarEntry]
    view: MainView


def _matches(needle: str, *values: Optional[str]) -> bool:
    return any(needle in value.lower() for value in values if value)


def build_search(snapshot: CacheSnapshot, query: str) -> SearchView:
    """Case-insensitive substring search over every visible record."""

    needle = query.strip().lower()
    view = SearchView(query=query)
    if not needle:
        return view
    view.folders = [
        FolderCard(folder, snapshot.topic_count(folder.id))
        for folder in snapshot.folders
        if _matches(needle, folder.name)
    ]
    view.topics = [
        TopicCard(topic, snapshot.lesson_count(topic.id))
        for topic in snapshot.topics
        if _matches(needle, topic.name)
    ]
    view.lessons = [
        LessonCard(lesson, snapshot.file_count(lesson.id))
        for lesson in snapshot.lessons
        if _matches(needle, lesson.title, lesson.description)
    ]
    view.files = [item for item in snapshot.files if _matches(needle, item.name)]
    return view


def derive_view(state: NavigationState, snapshot: CacheSnapshot) -> MainView:
    """Map *state* onto exactly one view model.

    The state is expected to be resolved already; anything that fails to
    resolve here is rendered as the dashboard.
    """

    if isinstance(state, SearchState):
        return build_search(snapshot, state.query)
    if isinstance(state, (FolderState, TopicState, LessonState)):
        folder = snapshot.folder(state.folder_id)
        if folder is not None and isinstance(state, FolderState):
            return FolderDetailView(
                folder=folder,
                topics=[
                    TopicCard(topic, snapshot.lesson_count(topic.id))
                    for topic in snapshot.topics_in(folder.id)
                ],
            )
        topic = snapshot.topic(state.topic_id) if folder is not None else None
        if topic is not None and isinstance(state, TopicState):
            return TopicDetailView(
                folder=folder,
                topic=topic,
                lessons=[
                    LessonCard(lesson, snapshot.file_count(lesson.id))
                    for lesson in snapshot.lessons_in(topic.id)
                ],
            )
        lesson = snapshot.lesson(state.lesson_id) if topic is not None else None
        if lesson is not None and isinstance(state, LessonState):
            files = list(snapshot.files_in(lesson.id))
            preview = next(
                (item for item in files if item.id == state.preview_file_id), None
            )
            return LessonDetailView(
                folder=folder,
                topic=topic,
                lesson=lesson,
                files=files,
                links=list(lesson.links),
                preview=preview,
            )
    return DashboardView(
        folders=[FolderCard(folder, snapshot.topic_count(folder.id)) for folder in snapshot.folders]
    )


def build_sidebar(state: NavigationState, snapshot: CacheSnapshot) -> List[SidebarEntry]:
    active_id = getattr(state, "folder_id", None)
    return [
        SidebarEntry(folder, snapshot.topic_count(folder.id), folder.id == active_id)
        for folder in snapshot.folders
    ]


def build_screen(state: NavigationState, snapshot: CacheSnapshot) -> Screen:
    return Screen(
        state=state,
        sidebar=build_sidebar(state, snapshot),
        view=derive_view(state, snapshot),
    )


def record_to_dict(record: Any) -> Dict[str, Any]:
    data = asdict(record)
    data.pop("payload", None)
    return data


def _card_to_dict(card: Any, count_field: str) -> Dict[str, Any]:
    data = record_to_dict(card.record)
    data[count_field] = getattr(card, count_field)
    return data


def view_to_dict(view: MainView) -> Dict[str, Any]:
    if isinstance(view, DashboardView):
        body: Dict[str, Any] = {
            "folders": [_card_to_dict(card, "topic_count") for card in view.folders]
        }
    elif isinstance(view, FolderDetailView):
        body = {
            "folder": record_to_dict(view.folder),
            "topics": [_card_to_dict(card, "lesson_count") for card in view.topics],
        }
    elif isinstance(view, TopicDetailView):
        body = {
            "folder": record_to_dict(view.folder),
            "topic": record_to_dict(view.topic),
            "lessons": [_card_to_dict(card, "file_count") for card in view.lessons],
        }
    elif isinstance(view, LessonDetailView):
        body = {
            "folder": record_to_dict(view.folder),
            "topic": record_to_dict(view.topic),
            "lesson": record_to_dict(view.lesson),
            "files": [record_to_dict(item) for item in view.files],
            "links": [asdict(link) for link in view.links],
            "preview": record_to_dict(view.preview) if view.preview is not None else None,
        }
    else:
        body = {
            "query": view.query,
            "folders": [_card_to_dict(card, "topic_count") for card in view.folders],
            "topics": [_card_to_dict(card, "lesson_count") for card in view.topics],
            "lessons": [_card_to_dict(card, "file_count") for card in view.lessons],
            "files": [record_to_dict(item) for item in view.files],
        }
    return {"kind": view.kind.value, **body}


def screen_to_dict(screen: Screen) -> Dict[str, Any]:
    return {
        "state": state_to_dict(screen.state),
        "sidebar": [
            {**_card_to_dict(entry, "topic_count"), "active": entry.active}
            for entry in screen.sidebar
        ],
        "view": view_to_dict(screen.view),
    }


__all__ = [
    "DashboardView",
    "FolderCard",
    "FolderDetailView",
    "LessonCard",
    "LessonDetailView",
    "MainView",
    "Screen",
    "SearchView",
    "SidebarEntry",
    "TopicCard",
    "TopicDetailView",
    "build_screen",
    "build_search",
    "build_sidebar",
    "derive_view",
    "record_to_dict",
    "screen_to_dict",
    "view_to_dict",
]
