from __future__ import annotations

import logging

import pytest

pytest.importorskip("fastapi")

from studyshelf.services.events import emit_db_event
from studyshelf.web.server import DebugLogHandler


@pytest.fixture
def logger():
    handler = DebugLogHandler(capacity=3)
    logger = logging.getLogger("study_shelf.tests.debug")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.addHandler(handler)
    try:
        yield logger, handler
    finally:
        logger.removeHandler(handler)
        logger.propagate = True


def test_structured_events_keep_payload_and_duration(logger) -> None:
    log, handler = logger

    emit_db_event(
        "add_folder",
        payload={"table": "folders", "id": 3, "blob": b"abc"},
        duration_ms=1.5,
        logger=log,
    )

    [entry] = handler.collect()
    assert entry["event_type"] == "DB_QUERY"
    assert entry["message"] == "add_folder"
    assert entry["payload"] == {"table": "folders", "id": 3, "blob": "<3 bytes>"}
    assert entry["duration_ms"] == 1.5
    assert entry["rendered"].startswith("[DB_QUERY] add_folder")


def test_ring_buffer_drops_oldest_and_supports_after(logger) -> None:
    log, handler = logger

    for index in range(5):
        log.info("message %s", index)

    entries = handler.collect()
    assert [entry["message"] for entry in entries] == ["message 2", "message 3", "message 4"]
    assert handler.last_id == 5
    assert [entry["id"] for entry in handler.collect(after=3)] == [4, 5]
    assert [entry["id"] for entry in handler.collect(limit=1)] == [5]


def test_exceptions_are_rendered(logger) -> None:
    log, handler = logger

    try:
        raise ValueError("broken")
    except ValueError:
        log.exception("Failure while reloading")

    [entry] = handler.collect()
    assert entry["level"] == "ERROR"
    assert entry["message"].startswith("Failure while reloading")
    assert "ValueError: broken" in entry["message"]
