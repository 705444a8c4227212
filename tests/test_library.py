from __future__ import annotations

from typing import List

import pytest

from studyshelf.errors import (
    InvalidInputError,
    NotFoundError,
    StorageUnavailableError,
    UnsupportedContentTypeError,
)
from studyshelf.services.ingestion import DOCX_MIME_TYPE, IncomingFile
from studyshelf.services.library import StudyLibrary
from studyshelf.services.navigation import (
    DashboardState,
    FolderState,
    LessonState,
    SearchState,
    TopicState,
)
from studyshelf.services.views import (
    DashboardView,
    LessonDetailView,
    SearchView,
    TopicDetailView,
)


PDF_BYTES = b"%PDF-1.4\n1 0 obj<<>>endobj\ntrailer<<>>\n%%EOF\n"


def _levels(library: StudyLibrary) -> List[str]:
    return [item.level for item in library.notifications.active()]


def _lesson(library: StudyLibrary):
    folder = library.create_folder("Spanish")
    topic = library.create_topic(folder.id, "Grammar")
    lesson = library.create_lesson(topic.id, "Ser vs Estar", date="2024-03-01")
    return folder, topic, lesson


def test_full_delete_scenario_leaves_empty_dashboard(library: StudyLibrary) -> None:
    folder = library.create_folder("A")
    assert folder.color == "#e63946"
    topic = library.create_topic(folder.id, "Grammar")
    lesson = library.create_lesson(topic.id, "Ser vs Estar")
    uploaded = library.upload_file(lesson.id, PDF_BYTES, "rules.pdf", "application/pdf")
    library.open_lesson(lesson.id)

    report = library.delete_folder(folder.id)

    assert report.found is True
    repository = library.repository
    assert repository.topics.get(topic.id) is None
    assert repository.lessons.get(lesson.id) is None
    assert repository.files.get(uploaded.id) is None
    assert library.state == DashboardState()
    screen = library.current_screen()
    assert isinstance(screen.view, DashboardView)
    assert screen.view.folders == []
    assert screen.sidebar == []


def test_search_while_lesson_selected_switches_to_search(library: StudyLibrary) -> None:
    _, _, lesson = _lesson(library)
    library.open_lesson(lesson.id)

    library.set_state("search_query", "gram")

    assert library.state == SearchState(query="gram")
    view = library.current_screen().view
    assert isinstance(view, SearchView)
    assert [card.record.name for card in view.topics] == ["Grammar"]
    assert view.total == 1


def test_preview_then_delete_releases_handle(library: StudyLibrary) -> None:
    _, topic, lesson = _lesson(library)
    uploaded = library.upload_file(lesson.id, PDF_BYTES, "rules.pdf", "application/pdf")

    library.preview_file(uploaded.id)

    assert library.navigator.preview_file_id == uploaded.id
    [handle] = library.handles.active_handles()
    assert handle.path.read_bytes() == PDF_BYTES
    view = library.current_screen().view
    assert isinstance(view, LessonDetailView)
    assert view.preview is not None and view.preview.id == uploaded.id

    library.delete_file(uploaded.id)

    assert library.navigator.preview_file_id is None
    assert library.state == LessonState(topic.folder_id, topic.id, lesson.id)
    assert library.handles.active_handles() == []
    assert not handle.path.exists()


def test_navigating_away_releases_preview(library: StudyLibrary) -> None:
    _, topic, lesson = _lesson(library)
    uploaded = library.upload_file(lesson.id, PDF_BYTES, "rules.pdf", "application/pdf")
    library.preview_file(uploaded.id)

    library.open_topic(topic.id)

    assert library.handles.active_handles() == []


def test_word_documents_are_not_previewed(library: StudyLibrary) -> None:
    _, _, lesson = _lesson(library)
    uploaded = library.upload_file(lesson.id, b"PK\x03\x04", "essay.docx", DOCX_MIME_TYPE)

    with pytest.raises(InvalidInputError):
        library.preview_file(uploaded.id)

    assert library.handles.active_handles() == []


def test_sequential_topics_receive_orders_zero_and_one(library: StudyLibrary) -> None:
    folder = library.create_folder("Languages")

    first = library.create_topic(folder.id, "Grammar")
    second = library.create_topic(folder.id, "Vocabulary")

    assert (first.order, second.order) == (0, 1)
    assert [topic.id for topic in library.snapshot.topics_in(folder.id)] == [first.id, second.id]


def test_rejected_upload_reports_one_error_and_stores_nothing(library: StudyLibrary) -> None:
    _, _, lesson = _lesson(library)
    library.notifications.clear()

    with pytest.raises(UnsupportedContentTypeError):
        library.upload_file(lesson.id, b"hello", "notes.txt", "text/plain")

    assert library.snapshot.file_count(lesson.id) == 0
    assert library.repository.files.count() == 0
    assert _levels(library) == ["error"]


def test_batch_upload_skips_unsupported_files(library: StudyLibrary) -> None:
    _, _, lesson = _lesson(library)
    library.notifications.clear()

    summary = library.upload_files(
        lesson.id,
        [
            IncomingFile(name="rules.pdf", mime_type="application/pdf", payload=PDF_BYTES),
            ("notes.txt", "text/plain", b"hello"),
            ("essay.docx", DOCX_MIME_TYPE, b"PK"),
        ],
    )

    assert [record.name for record in summary.uploaded] == ["rules.pdf", "essay.docx"]
    assert summary.rejected == ["notes.txt"]
    assert library.snapshot.file_count(lesson.id) == 2
    active = library.notifications.active()
    assert [item.level for item in active] == ["error", "success"]
    assert active[-1].message == "2 files uploaded"


def test_failed_mutation_keeps_state_and_notifies_once(library: StudyLibrary) -> None:
    folder, topic, _ = _lesson(library)
    library.open_topic(topic.id)
    library.notifications.clear()
    seen: List[object] = []
    library.subscribe(seen.append)

    with pytest.raises(InvalidInputError):
        library.create_lesson(topic.id, "   ")

    assert library.state == TopicState(folder.id, topic.id)
    assert seen == []
    assert _levels(library) == ["error"]


def test_mutations_notify_subscribers_once(library: StudyLibrary) -> None:
    seen: List[object] = []
    library.subscribe(seen.append)

    library.create_folder("History", "#123456")

    assert len(seen) == 1
    assert _levels(library) == ["success"]


def test_create_under_missing_parent_is_not_found(library: StudyLibrary) -> None:
    with pytest.raises(NotFoundError):
        library.create_topic(404, "Orphan")

    assert library.repository.topics.count() == 0


def test_invalid_colour_is_rejected(library: StudyLibrary) -> None:
    with pytest.raises(InvalidInputError):
        library.create_folder("Art", "red")

    assert library.snapshot.folders == ()


def test_update_lesson_clears_optional_fields(library: StudyLibrary) -> None:
    _, _, lesson = _lesson(library)
    library.update_lesson(lesson.id, description="Irregular verbs")

    updated = library.update_lesson(lesson.id, title="Ser y Estar", date="")

    assert updated.id == lesson.id
    assert updated.title == "Ser y Estar"
    assert updated.date is None
    assert updated.description == "Irregular verbs"


def test_moving_topic_appends_to_new_folder(library: StudyLibrary) -> None:
    first = library.create_folder("A")
    second = library.create_folder("B")
    library.create_topic(second.id, "Existing")
    moved = library.create_topic(first.id, "Moved")

    updated = library.update_topic(moved.id, folder_id=second.id)

    assert updated.folder_id == second.id
    assert updated.order == 1
    assert [topic.name for topic in library.snapshot.topics_in(second.id)] == ["Existing", "Moved"]


def test_reorder_folders(library: StudyLibrary) -> None:
    a = library.create_folder("A")
    b = library.create_folder("B")
    c = library.create_folder("C")

    reordered = library.reorder_folders([c.id, a.id, b.id])

    assert [folder.name for folder in reordered] == ["C", "A", "B"]
    assert [folder.order for folder in reordered] == [0, 1, 2]

    with pytest.raises(InvalidInputError):
        library.reorder_folders([a.id, b.id])
    with pytest.raises(InvalidInputError):
        library.reorder_folders([a.id, a.id, b.id])


def test_links_are_added_and_removed(library: StudyLibrary) -> None:
    _, _, lesson = _lesson(library)

    first = library.add_link(lesson.id, "https://www.rae.es", "RAE")
    second = library.add_link(lesson.id, "https://example.org/verbs")

    assert (first.id, second.id) == (1, 2)
    assert second.title == "https://example.org/verbs"
    assert library.remove_link(lesson.id, first.id) is True
    assert [link.id for link in library.snapshot.lesson(lesson.id).links] == [2]

    with pytest.raises(NotFoundError):
        library.remove_link(lesson.id, first.id)
    with pytest.raises(InvalidInputError):
        library.add_link(lesson.id, "javascript:alert(1)")


def test_deleting_absent_record_is_reported_as_already_gone(library: StudyLibrary) -> None:
    folder = library.create_folder("Gone")
    library.delete_folder(folder.id)
    library.notifications.clear()

    report = library.delete_folder(folder.id)

    assert report.found is False
    [notification] = library.notifications.active()
    assert notification.level == "info"
    assert "already removed" in notification.message


def test_deleting_selected_folder_resets_to_dashboard(library: StudyLibrary) -> None:
    folder = library.create_folder("A")
    library.open_folder(folder.id)
    assert library.state == FolderState(folder.id)
    seen: List[object] = []
    library.subscribe(seen.append)

    library.delete_folder(folder.id)

    assert library.state == DashboardState()
    assert seen == [DashboardState()]


def test_topic_detail_view_lists_lessons_with_counts(library: StudyLibrary) -> None:
    _, topic, lesson = _lesson(library)
    library.upload_file(lesson.id, PDF_BYTES, "rules.pdf", "application/pdf")

    library.open_topic(topic.id)

    view = library.current_screen().view
    assert isinstance(view, TopicDetailView)
    assert [(card.record.title, card.file_count) for card in view.lessons] == [("Ser vs Estar", 1)]


def test_open_download_returns_handle(library: StudyLibrary) -> None:
    _, _, lesson = _lesson(library)
    uploaded = library.upload_file(lesson.id, PDF_BYTES, "rules.pdf", "application/pdf")

    handle = library.open_download(uploaded.id)

    assert handle.purpose == "download"
    assert handle.path.read_bytes() == PDF_BYTES
    library.handles.release_token(handle.token)
    assert not handle.path.exists()


def test_downloads_share_one_handle(library: StudyLibrary) -> None:
    _, _, lesson = _lesson(library)
    first = library.upload_file(lesson.id, PDF_BYTES, "rules.pdf", "application/pdf")
    second = library.upload_file(lesson.id, b"PK", "essay.docx", DOCX_MIME_TYPE)

    handles = []
    for _ in range(3):
        handles.append(library.open_download(first.id))
        handles.append(library.open_download(second.id))

    active = library.handles.active_handles()
    assert [handle.token for handle in active] == [handles[-1].token]
    assert all(not handle.path.exists() for handle in handles[:-1])
    assert library.handles.release_token(handles[0].token) is False


def test_download_does_not_disturb_preview(library: StudyLibrary) -> None:
    _, _, lesson = _lesson(library)
    uploaded = library.upload_file(lesson.id, PDF_BYTES, "rules.pdf", "application/pdf")
    library.preview_file(uploaded.id)

    library.open_download(uploaded.id)
    library.open_download(uploaded.id)

    assert sorted(handle.scope for handle in library.handles.active_handles()) == [
        "download",
        "preview",
    ]


@pytest.mark.parametrize("field", ["current_folder_id", "current_topic_id", "current_lesson_id"])
def test_set_state_rejects_non_numeric_ids(library: StudyLibrary, field: str) -> None:
    folder, _, _ = _lesson(library)
    library.open_folder(folder.id)
    library.notifications.clear()

    with pytest.raises(InvalidInputError):
        library.set_state(field, "abc")

    assert _levels(library) == ["error"]
    assert library.state == FolderState(folder_id=folder.id)


def test_set_state_accepts_numeric_strings(library: StudyLibrary) -> None:
    folder, _, _ = _lesson(library)

    assert library.set_state("current_folder_id", str(folder.id)) == FolderState(folder_id=folder.id)


def test_set_state_preview_rejects_word_documents(library: StudyLibrary) -> None:
    _, _, lesson = _lesson(library)
    document = library.upload_file(lesson.id, b"PK", "notes.docx", DOCX_MIME_TYPE)
    library.open_lesson(lesson.id)
    library.notifications.clear()

    with pytest.raises(InvalidInputError):
        library.set_state("preview_file_id", document.id)

    assert library.state.preview_file_id is None
    assert library.handles.active_handles() == []
    assert _levels(library) == ["error"]


def test_set_state_preview_opens_pdf(library: StudyLibrary) -> None:
    _, _, lesson = _lesson(library)
    uploaded = library.upload_file(lesson.id, PDF_BYTES, "rules.pdf", "application/pdf")

    state = library.set_state("preview_file_id", uploaded.id)

    assert isinstance(state, LessonState)
    assert state.preview_file_id == uploaded.id
    assert library.handles.handle_for("preview").file_id == uploaded.id


def test_set_state_preview_rejects_non_numeric_id(library: StudyLibrary) -> None:
    _lesson(library)
    library.notifications.clear()

    with pytest.raises(InvalidInputError):
        library.set_state("preview_file_id", "first")

    assert _levels(library) == ["error"]


def test_navigation_failures_are_reported(library: StudyLibrary) -> None:
    folder, topic, lesson = _lesson(library)
    library.notifications.clear()

    def _broken(state) -> None:
        raise StorageUnavailableError("database is locked")

    unsubscribe = library.subscribe(_broken)
    steps = [
        library.go_dashboard,
        lambda: library.open_folder(folder.id),
        lambda: library.open_topic(topic.id),
        lambda: library.open_lesson(lesson.id),
        lambda: library.search("gram"),
        library.close_preview,
    ]
    for step in steps:
        with pytest.raises(StorageUnavailableError):
            step()
    unsubscribe()

    assert _levels(library) == ["error"] * len(steps)
