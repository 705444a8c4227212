"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    TypeVar,
    Union,
)

from ..config import AppConfig
from ..errors import StorageUnavailableError


LOGGER = logging.getLogger(__name__)

DEFAULT_FOLDER_COLOR = "#e63946"


class EntityKind(str, Enum):
    """The four levels of the folder → topic → lesson → file hierarchy."""

    FOLDER = "folder"
    TOPIC = "topic"
    LESSON = "lesson"
    FILE = "file"

    @property
    def child(self) -> Optional["EntityKind"]:
        return _CHILD_KINDS.get(self)

    @property
    def parent(self) -> Optional["EntityKind"]:
        for parent, child in _CHILD_KINDS.items():
            if child is self:
                return parent
        return None


_CHILD_KINDS: Dict[EntityKind, EntityKind] = {
    EntityKind.FOLDER: EntityKind.TOPIC,
    EntityKind.TOPIC: EntityKind.LESSON,
    EntityKind.LESSON: EntityKind.FILE,
}


def utc_timestamp() -> str:
    """Return the current UTC time as an ISO-8601 string."""

    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


@dataclass
class FolderRecord:
    name: str
    color: str = DEFAULT_FOLDER_COLOR
    created_at: str = ""
    order: Optional[int] = None
    id: Optional[int] = None


@dataclass
class TopicRecord:
    folder_id: int
    name: str
    created_at: str = ""
    order: Optional[int] = None
    id: Optional[int] = None


@dataclass
class LinkRecord:
    id: int
    title: str
    url: str
    added_at: str


@dataclass
class LessonRecord:
    topic_id: int
    title: str
    date: Optional[str] = None
    description: Optional[str] = None
    created_at: str = ""
    order: Optional[int] = None
    links: List[LinkRecord] = field(default_factory=list)
    id: Optional[int] = None


@dataclass
class FileRecord:
    lesson_id: int
    name: str
    mime_type: str
    size_bytes: int = 0
    uploaded_at: str = ""
    payload: Optional[bytes] = None
    id: Optional[int] = None

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == "application/pdf"


Record = Union[FolderRecord, TopicRecord, LessonRecord, FileRecord]
R = TypeVar("R", FolderRecord, TopicRecord, LessonRecord, FileRecord)


def sort_key(record: Record) -> Tuple[int, int]:
    """Display order: ``order`` ascending, identifier when absent or tied."""

    identifier = int(record.id or 0)
    order = getattr(record, "order", None)
    return (identifier if order is None else int(order), identifier)


def sort_records(records: Sequence[R]) -> List[R]:
    return sorted(records, key=sort_key)


def _encode_links(links: Optional[List[LinkRecord]]) -> str:
    return json.dumps([asdict(link) for link in links or []])


def _decode_links(raw: Optional[str]) -> List[LinkRecord]:
    if not raw:
        return []
    try:
        items = json.loads(raw)
    except (TypeError, ValueError):
        LOGGER.warning("Discarding unreadable links payload: %r", raw[:80])
        return []
    links: List[LinkRecord] = []
    for item in items if isinstance(items, list) else []:
        try:
            links.append(
                LinkRecord(
                    id=int(item["id"]),
                    title=str(item.get("title") or item["url"]),
                    url=str(item["url"]),
                    added_at=str(item.get("added_at") or ""),
                )
            )
        except (KeyError, TypeError, ValueError):
            LOGGER.warning("Skipping malformed link entry: %r", item)
    return links


@dataclass(frozen=True)
class Column:
    """Maps a record attribute onto a table column."""

    attribute: str
    name: str
    encode: Optional[Callable[[Any], Any]] = None
    decode: Optional[Callable[[Any], Any]] = None
    # Deferred columns are left out of listings and only loaded on demand.
    deferred: bool = False


@dataclass(frozen=True)
class CollectionSchema:
    kind: EntityKind
    table: str
    record_type: type
    columns: Tuple[Column, ...]
    timestamp_attribute: str
    parent_attribute: Optional[str] = None
    parent_column: Optional[str] = None
    index_name: Optional[str] = None

    @property
    def ordered(self) -> bool:
        return any(column.attribute == "order" for column in self.columns)

    def selected_columns(self, *, include_deferred: bool) -> List[Column]:
        return [column for column in self.columns if include_deferred or not column.deferred]


FOLDERS = CollectionSchema(
    kind=EntityKind.FOLDER,
    table="folders",
    record_type=FolderRecord,
    columns=(
        Column("name", "name"),
        Column("color", "color"),
        Column("created_at", "created_at"),
        Column("order", "position"),
    ),
    timestamp_attribute="created_at",
)

TOPICS = CollectionSchema(
    kind=EntityKind.TOPIC,
    table="topics",
    record_type=TopicRecord,
    columns=(
        Column("folder_id", "folder_id"),
        Column("name", "name"),
        Column("created_at", "created_at"),
        Column("order", "position"),
    ),
    timestamp_attribute="created_at",
    parent_attribute="folder_id",
    parent_column="folder_id",
    index_name="idx_topics_folder_id",
)

LESSONS = CollectionSchema(
    kind=EntityKind.LESSON,
    table="lessons",
    record_type=LessonRecord,
    columns=(
        Column("topic_id", "topic_id"),
        Column("title", "title"),
        Column("date", "date"),
        Column("description", "description"),
        Column("created_at", "created_at"),
        Column("order", "position"),
        Column("links", "links", encode=_encode_links, decode=_decode_links),
    ),
    timestamp_attribute="created_at",
    parent_attribute="topic_id",
    parent_column="topic_id",
    index_name="idx_lessons_topic_id",
)

FILES = CollectionSchema(
    kind=EntityKind.FILE,
    table="files",
    record_type=FileRecord,
    columns=(
        Column("lesson_id", "lesson_id"),
        Column("name", "name"),
        Column("mime_type", "mime_type"),
        Column("size_bytes", "size_bytes"),
        Column("uploaded_at", "uploaded_at"),
        Column("payload", "payload", deferred=True),
    ),
    timestamp_attribute="uploaded_at",
    parent_attribute="lesson_id",
    parent_column="lesson_id",
    index_name="idx_files_lesson_id",
)

SCHEMAS: Dict[EntityKind, CollectionSchema] = {
    schema.kind: schema for schema in (FOLDERS, TOPICS, LESSONS, FILES)
}


class EntityStore(Generic[R]):
    """Typed CRUD access to a single collection."""

    def __init__(self, repository: "StudyRepository", schema: CollectionSchema) -> None:
        self._repository = repository
        self._schema = schema

    @property
    def kind(self) -> EntityKind:
        return self._schema.kind

    @property
    def schema(self) -> CollectionSchema:
        return self._schema

    def _select(self, *, include_deferred: bool) -> str:
        names = ", ".join(
            ["id"] + [column.name for column in self._schema.selected_columns(include_deferred=include_deferred)]
        )
        return f"SELECT {names} FROM {self._schema.table}"

    def _from_row(self, row: sqlite3.Row, *, include_deferred: bool) -> R:
        values: Dict[str, Any] = {"id": int(row["id"])}
        for column in self._schema.selected_columns(include_deferred=include_deferred):
            value = row[column.name]
            if column.decode is not None:
                value = column.decode(value)
            values[column.attribute] = value
        return self._schema.record_type(**values)

    def _encode(self, record: R, column: Column) -> Any:
        value = getattr(record, column.attribute)
        return column.encode(value) if column.encode is not None else value

    def next_order(
        self,
        parent_id: Optional[int] = None,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        """Return the next free ``order`` value within the parent scope."""

        table = self._schema.table
        query = f"SELECT COALESCE(MAX(position), -1) + 1 FROM {table}"
        params: List[object] = []
        if self._schema.parent_column is not None:
            query += f" WHERE {self._schema.parent_column} = ?"
            params.append(parent_id)
        with contextlib.ExitStack() as stack:
            if connection is None:
                connection = stack.enter_context(self._repository.session())
            cursor = self._repository._execute(
                connection,
                query,
                params,
                action=f"{table}.next_position",
                table=table,
            )
            row = cursor.fetchone()
        next_value = int(row[0] or 0) if row is not None else 0
        LOGGER.debug(
            "Computed next position for %s (parent=%s) -> %s",
            table,
            parent_id if self._schema.parent_column is not None else "<none>",
            next_value,
        )
        return next_value

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------
    def add(self, record: R) -> int:
        """Insert *record* and return the identifier assigned by SQLite."""

        schema = self._schema
        parent_id = (
            getattr(record, schema.parent_attribute) if schema.parent_attribute else None
        )
        with self._repository._track_db_event(
            f"add_{schema.kind.value}",
            table=schema.table,
            parent_id=parent_id,
        ) as event:
            with self._repository.session() as connection:
                changes: Dict[str, Any] = {}
                if not getattr(record, schema.timestamp_attribute):
                    changes[schema.timestamp_attribute] = utc_timestamp()
                if schema.ordered and getattr(record, "order") is None:
                    changes["order"] = self.next_order(parent_id, connection=connection)
                if changes:
                    record = replace(record, **changes)
                columns = list(schema.columns)
                placeholders = ", ".join("?" for _ in columns)
                cursor = self._repository._execute(
                    connection,
                    f"INSERT INTO {schema.table}({', '.join(column.name for column in columns)}) "
                    f"VALUES ({placeholders})",
                    [self._encode(record, column) for column in columns],
                    action=f"{schema.table}.insert",
                    table=schema.table,
                )
                identifier = int(cursor.lastrowid)
                event.update({"id": identifier, "order": getattr(record, "order", None)})
                LOGGER.debug(
                    "%s inserted with id=%s (parent=%s)",
                    schema.kind.value.capitalize(),
                    identifier,
                    parent_id,
                )
                return identifier

    def get(self, identifier: int) -> Optional[R]:
        schema = self._schema
        with self._repository._track_db_event(
            f"get_{schema.kind.value}", table=schema.table, id=identifier
        ) as event:
            with self._repository.session() as connection:
                cursor = self._repository._execute(
                    connection,
                    f"{self._select(include_deferred=True)} WHERE id = ?",
                    (identifier,),
                    action=f"{schema.table}.get",
                    table=schema.table,
                )
                row = cursor.fetchone()
                event.update({"found": row is not None, "rowcount": 1 if row else 0})
                if row is None:
                    LOGGER.debug("%s id=%s not found", schema.kind.value.capitalize(), identifier)
                    return None
                return self._from_row(row, include_deferred=True)

    def list(self) -> List[R]:
        """Return every record; the order is whatever SQLite yields."""

        schema = self._schema
        with self._repository._track_db_event(f"list_{schema.table}", table=schema.table) as event:
            with self._repository.session() as connection:
                cursor = self._repository._execute(
                    connection,
                    self._select(include_deferred=False),
                    action=f"{schema.table}.list",
                    table=schema.table,
                )
                records = [self._from_row(row, include_deferred=False) for row in cursor.fetchall()]
                event["rowcount"] = len(records)
                return records

    def list_by_parent(self, parent_id: int) -> List[R]:
        """Return the records whose parent key equals *parent_id* via the secondary index."""

        schema = self._schema
        if schema.parent_column is None:
            raise ValueError(f"{schema.table} has no parent index")
        with self._repository._track_db_event(
            f"list_{schema.table}_by_parent", table=schema.table, parent_id=parent_id
        ) as event:
            with self._repository.session() as connection:
                cursor = self._repository._execute(
                    connection,
                    f"{self._select(include_deferred=False)} "
                    f"INDEXED BY {schema.index_name} WHERE {schema.parent_column} = ?",
                    (parent_id,),
                    action=f"{schema.table}.list_by_parent",
                    table=schema.table,
                )
                records = [self._from_row(row, include_deferred=False) for row in cursor.fetchall()]
                event["rowcount"] = len(records)
                return records

    def update(self, record: R) -> bool:
        """Replace the stored row matching ``record.id``.

        Nothing happens when the identifier is absent; the return value tells
        whether a row changed. Deferred columns holding ``None`` keep their
        stored value so records obtained from listings can be written back.
        """

        schema = self._schema
        if record.id is None:
            raise ValueError(f"Cannot update a {schema.kind.value} without an identifier")
        columns = [
            column
            for column in schema.columns
            if not (column.deferred and getattr(record, column.attribute) is None)
        ]
        with self._repository._track_db_event(
            f"update_{schema.kind.value}", table=schema.table, id=record.id
        ) as event:
            with self._repository.session() as connection:
                cursor = self._repository._execute(
                    connection,
                    f"UPDATE {schema.table} SET "
                    + ", ".join(f"{column.name} = ?" for column in columns)
                    + " WHERE id = ?",
                    [self._encode(record, column) for column in columns] + [record.id],
                    action=f"{schema.table}.update",
                    table=schema.table,
                )
                affected = cursor.rowcount if cursor.rowcount and cursor.rowcount > 0 else 0
                event.update({"result": "updated" if affected else "missing", "rowcount": affected})
                if not affected:
                    LOGGER.debug(
                        "Skipping update for missing %s id=%s", schema.kind.value, record.id
                    )
                return bool(affected)

    def delete(self, identifier: int) -> bool:
        """Remove a single row. Children are left alone."""

        schema = self._schema
        LOGGER.debug("Removing %s id=%s", schema.kind.value, identifier)
        with self._repository._track_db_event(
            f"remove_{schema.kind.value}", table=schema.table, id=identifier
        ) as event:
            with self._repository.session() as connection:
                cursor = self._repository._execute(
                    connection,
                    f"DELETE FROM {schema.table} WHERE id = ?",
                    (identifier,),
                    action=f"{schema.table}.delete",
                    table=schema.table,
                )
                affected = cursor.rowcount if cursor.rowcount and cursor.rowcount > 0 else 0
                event.update({"result": "deleted" if affected else "missing", "rowcount": affected})
                return bool(affected)

    def count(self) -> int:
        table = self._schema.table
        with self._repository.session() as connection:
            cursor = self._repository._execute(
                connection,
                f"SELECT COUNT(*) FROM {table}",
                action=f"{table}.count",
                table=table,
            )
            row = cursor.fetchone()
            return int(row[0]) if row else 0


class FileStore(EntityStore[FileRecord]):
    """File collection with on-demand access to the binary payload."""

    def read_payload(self, identifier: int) -> Optional[bytes]:
        with self._repository._track_db_event(
            "read_file_payload", table="files", id=identifier
        ) as event:
            with self._repository.session() as connection:
                cursor = self._repository._execute(
                    connection,
                    "SELECT payload FROM files WHERE id = ?",
                    (identifier,),
                    action="files.read_payload",
                    table="files",
                )
                row = cursor.fetchone()
                if row is None:
                    event["found"] = False
                    return None
                payload = bytes(row["payload"] or b"")
                event.update({"found": True, "size_bytes": len(payload)})
                return payload


class StudyRepository:
    """SQLite-backed repository exposing one store per collection."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter
        self.folders: EntityStore[FolderRecord] = EntityStore(self, FOLDERS)
        self.topics: EntityStore[TopicRecord] = EntityStore(self, TOPICS)
        self.lessons: EntityStore[LessonRecord] = EntityStore(self, LESSONS)
        self.files: FileStore = FileStore(self, FILES)
        self._stores: Dict[EntityKind, EntityStore[Any]] = {
            EntityKind.FOLDER: self.folders,
            EntityKind.TOPIC: self.topics,
            EntityKind.LESSON: self.lessons,
            EntityKind.FILE: self.files,
        }

    def store(self, kind: EntityKind) -> EntityStore[Any]:
        return self._stores[EntityKind(kind)]

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured debug event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            self._event_emitter(
                "DB_QUERY",
                action,
                payload=filtered,
                duration_ms=duration_ms,
            )

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | Tuple[Any, ...] | None = None,
        *,
        action: str,
        table: Optional[str] = None,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...]
        if parameters is None:
            params = ()
        elif isinstance(parameters, tuple):
            params = parameters
        else:
            params = tuple(parameters)
        with self._track_db_event(
            action,
            table=table,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            try:
                cursor = connection.execute(statement, params)
            except sqlite3.Error as exc:
                event.setdefault("status", "error")
                event.setdefault("error", f"{exc.__class__.__name__}: {exc}")
                raise StorageUnavailableError(
                    f"Storage request failed ({action}): {exc}",
                    details={"action": action, "table": table},
                ) from exc
            rowcount = cursor.rowcount if cursor.rowcount >= 0 else None
            if rowcount is not None:
                event.setdefault("rowcount", int(rowcount))
            return cursor

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        with self._track_db_event("connect", database=str(self._db_path)) as event:
            try:
                connection = sqlite3.connect(self._db_path)
            except sqlite3.Error as exc:
                raise StorageUnavailableError(
                    f"Unable to open database '{self._db_path}': {exc}"
                ) from exc
            event.setdefault("sqlite_version", sqlite3.sqlite_version)
        connection.row_factory = sqlite3.Row
        return connection

    @contextlib.contextmanager
    def session(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection wrapped in a single transaction, then close it."""

        connection = self._connect()
        try:
            with connection:
                yield connection
        except sqlite3.Error as exc:
            raise StorageUnavailableError(f"Storage transaction failed: {exc}") from exc
        finally:
            connection.close()


__all__ = [
    "DEFAULT_FOLDER_COLOR",
    "SCHEMAS",
    "CollectionSchema",
    "Column",
    "EntityKind",
    "EntityStore",
    "FileRecord",
    "FileStore",
    "FolderRecord",
    "LessonRecord",
    "LinkRecord",
    "Record",
    "StudyRepository",
    "TopicRecord",
    "sort_key",
    "sort_records",
    "utc_timestamp",
]
