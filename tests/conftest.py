from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from studyshelf.bootstrap import Bootstrapper
from studyshelf.config import AppConfig
from studyshelf.services.library import StudyLibrary
from studyshelf.services.notifications import NotificationCenter
from studyshelf.services.previews import ContentHandleRegistry
from studyshelf.services.storage import StudyRepository


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    config_file = config_dir / "default.json"
    config_file.write_text(
        """
        {
            \"storage_root\": \"storage\",\n
            \"database_file\": \"storage/study_shelf.db\",\n
            \"previews_root\": \"storage/_previews\"\n
        }
        """,
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/study_shelf.db",
            "previews_root": "storage/_previews",
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def repository(temp_config: AppConfig) -> StudyRepository:
    return StudyRepository(temp_config)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def library(
    temp_config: AppConfig, repository: StudyRepository, clock: FakeClock
) -> Iterator[StudyLibrary]:
    library = StudyLibrary(
        repository,
        handles=ContentHandleRegistry(temp_config.previews_root),
        notifications=NotificationCenter(temp_config.notification_ttl_seconds, clock=clock),
    )
    library.open()
    yield library
    library.close()
