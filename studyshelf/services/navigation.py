"""Navigation state machine: one immutable state value, one active view."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ..errors import InvalidInputError
from .cache import CacheSnapshot
from .events import emit_navigation_event


LOGGER = logging.getLogger(__name__)


class ViewKind(str, Enum):
    DASHBOARD = "dashboard"
    FOLDER = "folder"
    TOPIC = "topic"
    LESSON = "lesson"
    SEARCH = "search"


@dataclass(frozen=True)
class DashboardState:
    view = ViewKind.DASHBOARD


@dataclass(frozen=True)
class FolderState:
    folder_id: int
    view = ViewKind.FOLDER


@dataclass(frozen=True)
class TopicState:
    folder_id: int
    topic_id: int
    view = ViewKind.TOPIC


@dataclass(frozen=True)
class LessonState:
    folder_id: int
    topic_id: int
    lesson_id: int
    preview_file_id: Optional[int] = None
    view = ViewKind.LESSON


@dataclass(frozen=True)
class SearchState:
    query: str
    view = ViewKind.SEARCH


NavigationState = Union[DashboardState, FolderState, TopicState, LessonState, SearchState]
Listener = Callable[[NavigationState], None]

STATE_FIELDS = (
    "current_folder_id",
    "current_topic_id",
    "current_lesson_id",
    "search_query",
    "preview_file_id",
)


def state_to_dict(state: NavigationState) -> Dict[str, Any]:
    """Flatten *state* into the five well-known fields plus the view name."""

    return {
        "view": state.view.value,
        "current_folder_id": getattr(state, "folder_id", None),
        "current_topic_id": getattr(state, "topic_id", None),
        "current_lesson_id": getattr(state, "lesson_id", None),
        "search_query": getattr(state, "query", ""),
        "preview_file_id": getattr(state, "preview_file_id", None),
    }


def as_identifier(field_name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidInputError(f"'{field_name}' must be a record identifier")
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidInputError(f"'{field_name}' must be a record identifier") from None


class Navigator:
    """Owns the current :data:`NavigationState` and notifies subscribers.

    Every transition swaps in a complete new state and then calls each
    listener once, synchronously, in registration order. Selections are
    checked against the snapshot returned by ``snapshot_provider``; anything
    that does not resolve sends the user back to the dashboard.
    """

    def __init__(self, snapshot_provider: Callable[[], CacheSnapshot]) -> None:
        self._snapshot_provider = snapshot_provider
        self._state: NavigationState = DashboardState()
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    @property
    def state(self) -> NavigationState:
        return self._state

    @property
    def view(self) -> ViewKind:
        return self._state.view

    @property
    def current_folder_id(self) -> Optional[int]:
        return getattr(self._state, "folder_id", None)

    @property
    def current_topic_id(self) -> Optional[int]:
        return getattr(self._state, "topic_id", None)

    @property
    def current_lesson_id(self) -> Optional[int]:
        return getattr(self._state, "lesson_id", None)

    @property
    def search_query(self) -> str:
        return getattr(self._state, "query", "")

    @property
    def preview_file_id(self) -> Optional[int]:
        return getattr(self._state, "preview_file_id", None)

    def get(self, field_name: str) -> Any:
        if field_name not in STATE_FIELDS:
            raise InvalidInputError(f"Unknown navigation field '{field_name}'")
        return getattr(self, field_name)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self) -> None:
        state = self._state
        for listener in list(self._listeners):
            listener(state)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def set(self, field_name: str, value: Any) -> NavigationState:
        """Assign one flat field and re-derive the view from the precedence rules.

        A non-empty search query wins over everything; otherwise the deepest
        selection decides. Clearing a field falls back to its parent view.
        """

        if field_name not in STATE_FIELDS:
            raise InvalidInputError(f"Unknown navigation field '{field_name}'")
        if field_name == "search_query":
            query = str(value or "").strip()
            if not query and not isinstance(self._state, SearchState):
                return self._transition("search", self._state)
            return self.search(query)
        if field_name == "preview_file_id":
            if value is None:
                return self.clear_preview()
            return self.set_preview(as_identifier(field_name, value))
        if field_name == "current_lesson_id":
            if value is not None:
                return self.go_lesson(as_identifier(field_name, value))
            if self.current_topic_id is not None:
                return self.go_topic(self.current_topic_id)
            return self.go_dashboard()
        if field_name == "current_topic_id":
            if value is not None:
                return self.go_topic(as_identifier(field_name, value))
            if self.current_folder_id is not None:
                return self.go_folder(self.current_folder_id)
            return self.go_dashboard()
        if value is not None:
            return self.go_folder(as_identifier(field_name, value))
        return self.go_dashboard()

    def go_dashboard(self) -> NavigationState:
        return self._transition("dashboard", DashboardState())

    def go_folder(self, folder_id: int) -> NavigationState:
        return self._transition("folder", FolderState(folder_id=int(folder_id)))

    def go_topic(self, topic_id: int) -> NavigationState:
        topic = self._snapshot().topic(topic_id)
        folder_id = topic.folder_id if topic is not None else -1
        return self._transition("topic", TopicState(folder_id=folder_id, topic_id=int(topic_id)))

    def go_lesson(self, lesson_id: int, preview_file_id: Optional[int] = None) -> NavigationState:
        snapshot = self._snapshot()
        lesson = snapshot.lesson(lesson_id)
        topic = snapshot.topic(lesson.topic_id) if lesson is not None else None
        state = LessonState(
            folder_id=topic.folder_id if topic is not None else -1,
            topic_id=lesson.topic_id if lesson is not None else -1,
            lesson_id=int(lesson_id),
            preview_file_id=preview_file_id,
        )
        return self._transition("lesson", state)

    def search(self, query: str) -> NavigationState:
        query = (query or "").strip()
        if not query:
            return self.go_dashboard()
        return self._transition("search", SearchState(query=query))

    def set_preview(self, file_id: int) -> NavigationState:
        """Preview *file_id* inside the lesson that owns it."""

        record = self._snapshot().file(file_id)
        if record is None:
            return self.clear_preview()
        return self.go_lesson(record.lesson_id, preview_file_id=int(file_id))

    def clear_preview(self) -> NavigationState:
        state = self._state
        if isinstance(state, LessonState):
            return self._transition(
                "clear_preview",
                LessonState(state.folder_id, state.topic_id, state.lesson_id),
            )
        return self._transition("clear_preview", state)

    def resolve(self) -> bool:
        """Revalidate the current state against the snapshot without notifying.

        Returns ``True`` when the state had to change.
        """

        resolved = self._resolve(self._state)
        if resolved == self._state:
            return False
        LOGGER.debug("Navigation state %s no longer resolves; now %s", self._state, resolved)
        emit_navigation_event(
            "revalidate",
            payload={"from": self._state.view.value, **state_to_dict(resolved)},
        )
        self._state = resolved
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _snapshot(self) -> CacheSnapshot:
        return self._snapshot_provider()

    def _transition(self, name: str, state: NavigationState) -> NavigationState:
        resolved = self._resolve(state)
        self._state = resolved
        emit_navigation_event(name, payload=state_to_dict(resolved))
        self.notify()
        return resolved

    def _resolve(self, state: NavigationState) -> NavigationState:
        snapshot = self._snapshot()
        if isinstance(state, (DashboardState, SearchState)):
            return state
        folder = snapshot.folder(state.folder_id)
        if folder is None:
            return DashboardState()
        if isinstance(state, FolderState):
            return state
        topic = snapshot.topic(state.topic_id)
        if topic is None or topic.folder_id != folder.id:
            return DashboardState()
        if isinstance(state, TopicState):
            return state
        lesson = snapshot.lesson(state.lesson_id)
        if lesson is None or lesson.topic_id != topic.id:
            return DashboardState()
        if state.preview_file_id is not None:
            preview = snapshot.file(state.preview_file_id)
            if preview is None or preview.lesson_id != lesson.id:
                return LessonState(state.folder_id, state.topic_id, state.lesson_id)
        return state


__all__ = [
    "DashboardState",
    "FolderState",
    "LessonState",
    "NavigationState",
    "Navigator",
    "STATE_FIELDS",
    "SearchState",
    "TopicState",
    "ViewKind",
    "as_identifier",
    "state_to_dict",
]
