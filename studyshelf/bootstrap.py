"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import shutil
import sqlite3
from pathlib import Path
from typing import Dict, List, Tuple

from . import config as config_module
from .config import AppConfig, load_config
from .services.storage import SCHEMAS

LOGGER = logging.getLogger(__name__)


# Index names used by earlier layouts of the database; always dropped.
LEGACY_INDEX_NAMES: Tuple[str, ...] = (
    "by-topic",
    "idx_files_topic",
    "idx_files_topic_id",
    "idx_files_by_topic",
)

_COLUMN_TYPES: Dict[str, str] = {
    "position": "INTEGER",
    "size_bytes": "INTEGER NOT NULL DEFAULT 0",
    "payload": "BLOB",
    "folder_id": "INTEGER",
    "topic_id": "INTEGER",
    "lesson_id": "INTEGER",
    "links": "TEXT NOT NULL DEFAULT '[]'",
}


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


def expected_indexes() -> List[Tuple[str, str, str]]:
    """Return ``(index, table, column)`` for every secondary index the store relies on."""

    return [
        (schema.index_name, schema.table, schema.parent_column)
        for schema in SCHEMAS.values()
        if schema.index_name and schema.parent_column
    ]


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        for path in (self._config.storage_root, self._config.previews_root):
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as error:
                raise BootstrapError(f"Cannot prepare directory {path}: {error}") from error
            LOGGER.debug("Ensured directory exists: %s", path)

        if not config_module._ensure_writable_directory(self._config.storage_root):
            raise BootstrapError(
                f"Storage directory '{self._config.storage_root}' is not writable"
            )

        previews_root = self._config.previews_root
        for child in previews_root.iterdir():
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as error:  # pragma: no cover - best effort cleanup
                LOGGER.warning("Could not remove stale preview %s: %s", child, error)
        LOGGER.debug("Cleared previews directory: %s", previews_root)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        try:
            connection = sqlite3.connect(self._config.database_file)
        except sqlite3.Error as error:
            raise BootstrapError(
                f"Cannot open database {self._config.database_file}: {error}"
            ) from error
        try:
            cursor = connection.cursor()
            cursor.executescript(
                """
                CREATE TABLE IF NOT EXISTS folders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    color TEXT,
                    created_at TEXT,
                    position INTEGER
                );

                CREATE TABLE IF NOT EXISTS topics (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    folder_id INTEGER,
                    name TEXT NOT NULL,
                    created_at TEXT,
                    position INTEGER
                );

                CREATE TABLE IF NOT EXISTS lessons (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    topic_id INTEGER,
                    title TEXT NOT NULL,
                    date TEXT,
                    description TEXT,
                    created_at TEXT,
                    position INTEGER,
                    links TEXT NOT NULL DEFAULT '[]'
                );

                CREATE TABLE IF NOT EXISTS files (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    lesson_id INTEGER,
                    name TEXT NOT NULL,
                    mime_type TEXT,
                    size_bytes INTEGER NOT NULL DEFAULT 0,
                    uploaded_at TEXT,
                    payload BLOB
                );
                """
            )
            connection.commit()

            def _column_exists(table: str, column: str) -> bool:
                cursor.execute(f"PRAGMA table_info({table})")
                return any(row[1] == column for row in cursor.fetchall())

            def _ensure_columns() -> None:
                # Rows that predate a column keep NULL; readers fall back to defaults.
                for schema in SCHEMAS.values():
                    for column in schema.columns:
                        if _column_exists(schema.table, column.name):
                            continue
                        column_type = _COLUMN_TYPES.get(column.name, "TEXT")
                        cursor.execute(
                            f"ALTER TABLE {schema.table} ADD COLUMN {column.name} {column_type}"
                        )
                        LOGGER.info("Added missing column %s.%s", schema.table, column.name)
                connection.commit()

            def _index_columns(name: str) -> List[str]:
                cursor.execute(f'PRAGMA index_info("{name}")')
                return [row[2] for row in cursor.fetchall()]

            def _ensure_indexes() -> None:
                for legacy in LEGACY_INDEX_NAMES:
                    cursor.execute(f'DROP INDEX IF EXISTS "{legacy}"')

                for index_name, table, column in expected_indexes():
                    cursor.execute(f"PRAGMA index_list({table})")
                    existing = {row[1] for row in cursor.fetchall()}
                    if index_name in existing:
                        if _index_columns(index_name) == [column]:
                            continue
                        LOGGER.info(
                            "Index %s on %s is keyed on %s; rebuilding on %s",
                            index_name,
                            table,
                            ", ".join(_index_columns(index_name)) or "<nothing>",
                            column,
                        )
                        cursor.execute(f'DROP INDEX "{index_name}"')
                    cursor.execute(f"CREATE INDEX {index_name} ON {table}({column})")
                    LOGGER.debug("Created index %s on %s(%s)", index_name, table, column)
                connection.commit()

            _ensure_columns()
            _ensure_indexes()
        except sqlite3.Error as error:
            raise BootstrapError(f"Schema upgrade failed: {error}") from error
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = [
    "BootstrapError",
    "Bootstrapper",
    "LEGACY_INDEX_NAMES",
    "expected_indexes",
    "initialize_app",
]
