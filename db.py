"""SQLite-backed entity store for activity events, assignments and the catalog.

The store offers simple record operations (filter, create, update, delete,
paginated listing) and no multi-record transactions; callers write one record
at a time.
"""

import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel

from db_pool import SQLiteConnectionPool
from errors import StoreUnavailableError
from schemas import ActivityEvent, CatalogItem, RawCapture, StudentAssignment

logger = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH", "data.db")

_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

_M = TypeVar("_M", bound=BaseModel)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    try:
        with _pool.get_connection() as con:
            cur = con.execute(sql, tuple(params))
            con.commit()
            return cur
    except sqlite3.IntegrityError:
        raise
    except sqlite3.DatabaseError as exc:
        logger.error("Entity store write failed: %s", exc, exc_info=True)
        raise StoreUnavailableError(f"entity store unavailable: {exc}") from exc


def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    try:
        with _pool.get_connection() as con:
            return con.execute(sql, tuple(params)).fetchall()
    except sqlite3.DatabaseError as exc:
        logger.error("Entity store read failed: %s", exc, exc_info=True)
        raise StoreUnavailableError(f"entity store unavailable: {exc}") from exc


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def _decode_json_field(value: Optional[str]) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return {}
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Discarding undecodable metadata column: %r", value[:80])
        return {}
    return decoded if isinstance(decoded, dict) else {}


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS activity_events (
              id                   INTEGER PRIMARY KEY AUTOINCREMENT,
              student_email        TEXT NOT NULL,
              student_user_id      TEXT NOT NULL DEFAULT '',
              student_display_name TEXT NOT NULL DEFAULT '',
              course_id            TEXT NOT NULL DEFAULT '',
              course_name          TEXT NOT NULL DEFAULT '',
              event_type           TEXT NOT NULL,
              content_id           TEXT NOT NULL DEFAULT '',
              content_title        TEXT NOT NULL DEFAULT '',
              lesson_name          TEXT NOT NULL DEFAULT '',
              occurred_at          TEXT NOT NULL,
              source               TEXT NOT NULL,
              raw_event_id         TEXT NOT NULL DEFAULT '',
              raw_payload          TEXT,
              dedupe_key           TEXT NOT NULL,
              score_percent        REAL,
              metadata             TEXT,
              created_at           TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_events_dedupe ON activity_events(dedupe_key);
            CREATE INDEX IF NOT EXISTS idx_events_student ON activity_events(student_email, event_type);
            CREATE INDEX IF NOT EXISTS idx_events_source ON activity_events(source, event_type);

            CREATE TABLE IF NOT EXISTS assignment_catalog (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              title        TEXT NOT NULL,
              topic        TEXT NOT NULL DEFAULT '',
              level        TEXT NOT NULL DEFAULT '',
              content_type TEXT NOT NULL DEFAULT 'lesson',
              course_id    TEXT NOT NULL DEFAULT '',
              lesson_id    TEXT NOT NULL DEFAULT '',
              quiz_id      TEXT NOT NULL DEFAULT '',
              source_key   TEXT NOT NULL DEFAULT '',
              is_active    INTEGER NOT NULL DEFAULT 1,
              created_at   TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS student_assignments (
              id                    INTEGER PRIMARY KEY AUTOINCREMENT,
              teacher_email         TEXT NOT NULL,
              student_email         TEXT NOT NULL,
              catalog_id            INTEGER NOT NULL REFERENCES assignment_catalog(id),
              title                 TEXT NOT NULL DEFAULT '',
              topic                 TEXT NOT NULL DEFAULT '',
              level                 TEXT NOT NULL DEFAULT '',
              content_type          TEXT NOT NULL DEFAULT '',
              course_id             TEXT NOT NULL DEFAULT '',
              lesson_id             TEXT NOT NULL DEFAULT '',
              quiz_id               TEXT NOT NULL DEFAULT '',
              status                TEXT NOT NULL DEFAULT 'assigned'
                                    CHECK (status IN ('assigned','completed','archived')),
              assigned_at           TEXT NOT NULL,
              due_at                TEXT,
              completed_at          TEXT,
              completed_by_event_id INTEGER,
              dedupe_key            TEXT NOT NULL UNIQUE,
              metadata              TEXT,
              created_at            TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE INDEX IF NOT EXISTS idx_assignments_match
              ON student_assignments(student_email, status, lesson_id, quiz_id);

            CREATE TABLE IF NOT EXISTS raw_captures (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              source       TEXT NOT NULL,
              topic        TEXT NOT NULL DEFAULT '',
              raw_event_id TEXT NOT NULL DEFAULT '',
              payload      TEXT NOT NULL,
              payload_hash TEXT NOT NULL,
              received_at  TEXT NOT NULL,
              UNIQUE(source, payload_hash)
            );

            CREATE TABLE IF NOT EXISTS lesson_course_map (
              lesson_id    TEXT PRIMARY KEY,
              course_id    TEXT NOT NULL DEFAULT '',
              course_name  TEXT NOT NULL,
              last_seen_at TEXT
            );
            """
        )
        con.commit()


# -------------- generic record helpers --------------
class _Table:
    def __init__(
        self,
        name: str,
        model: Type[BaseModel],
        columns: Sequence[str],
        json_columns: Sequence[str] = (),
        bool_columns: Sequence[str] = (),
    ) -> None:
        self.name = name
        self.model = model
        self.columns = tuple(columns)
        self.json_columns = frozenset(json_columns)
        self.bool_columns = frozenset(bool_columns)

    def encode(self, column: str, value: Any) -> Any:
        if column in self.json_columns:
            return json_dumps(value or {})
        if column in self.bool_columns:
            return 1 if value else 0
        return value

    def decode_row(self, row: sqlite3.Row) -> Any:
        data = dict(row)
        for column in self.json_columns:
            data[column] = _decode_json_field(data.get(column))
        for column in self.bool_columns:
            data[column] = bool(data.get(column))
        data = {key: value for key, value in data.items() if key in self.model.model_fields}
        return self.model.model_validate(data)


EVENTS = _Table(
    "activity_events",
    ActivityEvent,
    (
        "student_email",
        "student_user_id",
        "student_display_name",
        "course_id",
        "course_name",
        "event_type",
        "content_id",
        "content_title",
        "lesson_name",
        "occurred_at",
        "source",
        "raw_event_id",
        "raw_payload",
        "dedupe_key",
        "score_percent",
        "metadata",
    ),
    json_columns=("metadata",),
)

ASSIGNMENTS = _Table(
    "student_assignments",
    StudentAssignment,
    (
        "teacher_email",
        "student_email",
        "catalog_id",
        "title",
        "topic",
        "level",
        "content_type",
        "course_id",
        "lesson_id",
        "quiz_id",
        "status",
        "assigned_at",
        "due_at",
        "completed_at",
        "completed_by_event_id",
        "dedupe_key",
        "metadata",
    ),
    json_columns=("metadata",),
)

CATALOG = _Table(
    "assignment_catalog",
    CatalogItem,
    (
        "title",
        "topic",
        "level",
        "content_type",
        "course_id",
        "lesson_id",
        "quiz_id",
        "source_key",
        "is_active",
    ),
    bool_columns=("is_active",),
)

CAPTURES = _Table(
    "raw_captures",
    RawCapture,
    ("source", "topic", "raw_event_id", "payload", "payload_hash", "received_at"),
)

_ORDERINGS = {
    "id": "id ASC",
    "-id": "id DESC",
    "occurred_at": "occurred_at ASC, id ASC",
    "-occurred_at": "occurred_at DESC, id DESC",
}


def _where(table: _Table, filters: Mapping[str, Any]) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in filters.items():
        if column != "id" and column not in table.columns:
            raise ValueError(f"{table.name} cannot be filtered on {column!r}")
        if value is None:
            clauses.append(f"{column} IS NULL")
        elif isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                clauses.append("0")
                continue
            clauses.append(f"{column} IN ({','.join('?' for _ in values)})")
            params.extend(table.encode(column, item) for item in values)
        else:
            clauses.append(f"{column} = ?")
            params.append(table.encode(column, value))
    return (" WHERE " + " AND ".join(clauses)) if clauses else "", params


def _select(
    table: _Table,
    filters: Mapping[str, Any],
    *,
    order_by: str = "id",
    limit: Optional[int] = None,
    offset: int = 0,
) -> list[Any]:
    where, params = _where(table, filters)
    ordering = _ORDERINGS.get(order_by)
    if ordering is None:
        raise ValueError(f"Unsupported ordering: {order_by}")
    if ordering.startswith("occurred_at") and table is not EVENTS:
        raise ValueError(f"{table.name} has no occurred_at column")
    sql = f"SELECT * FROM {table.name}{where} ORDER BY {ordering}"
    if limit is not None:
        sql += " LIMIT ? OFFSET ?"
        params.extend([int(limit), int(offset)])
    return [table.decode_row(row) for row in _query(sql, params)]


def _insert(table: _Table, record: BaseModel, *, conflict: str = "") -> Optional[int]:
    data = record.model_dump()
    columns = [column for column in table.columns]
    values = [table.encode(column, data.get(column)) for column in columns]
    placeholders = ",".join("?" for _ in columns)
    sql = f"INSERT INTO {table.name} ({','.join(columns)}) VALUES ({placeholders})"
    if conflict:
        sql += f" ON CONFLICT({conflict}) DO NOTHING"
    cur = _exec(sql, values)
    if cur.rowcount == 0:
        return None
    return int(cur.lastrowid)


def _update(table: _Table, record_id: int, patch: Mapping[str, Any]) -> None:
    if not patch:
        return
    unknown = [column for column in patch if column not in table.columns]
    if unknown:
        raise ValueError(f"{table.name} has no column(s): {', '.join(unknown)}")
    assignments = ", ".join(f"{column} = ?" for column in patch)
    params = [table.encode(column, value) for column, value in patch.items()]
    params.append(int(record_id))
    _exec(f"UPDATE {table.name} SET {assignments} WHERE id = ?", params)


def _get(table: _Table, record_id: int) -> Any:
    rows = _select(table, {"id": int(record_id)})
    return rows[0] if rows else None


def _count(table: _Table, filters: Mapping[str, Any]) -> int:
    where, params = _where(table, filters)
    rows = _query(f"SELECT COUNT(*) AS n FROM {table.name}{where}", params)
    return int(rows[0]["n"]) if rows else 0


# -------------- activity events --------------
def find_events(
    *,
    order_by: str = "id",
    limit: Optional[int] = None,
    offset: int = 0,
    **filters: Any,
) -> list[ActivityEvent]:
    """Return events matching every equality filter (sequence values mean IN)."""
    return _select(EVENTS, filters, order_by=order_by, limit=limit, offset=offset)


def iter_events(page_size: int = 500, **filters: Any) -> Iterator[ActivityEvent]:
    """Yield matching events page by page in ``id`` order.

    Pages are keyed on the last seen ``id`` so updates made while iterating do
    not shift later pages.
    """
    where, params = _where(EVENTS, filters)
    last_id = 0
    while True:
        joiner = " AND " if where else " WHERE "
        rows = _query(
            f"SELECT * FROM activity_events{where}{joiner}id > ? ORDER BY id ASC LIMIT ?",
            [*params, last_id, int(page_size)],
        )
        if not rows:
            return
        for row in rows:
            yield EVENTS.decode_row(row)
        last_id = int(rows[-1]["id"])
        if len(rows) < page_size:
            return


def get_event(event_id: int) -> Optional[ActivityEvent]:
    return _get(EVENTS, event_id)


def find_event_by_dedupe_key(dedupe_key: str) -> Optional[ActivityEvent]:
    rows = _select(EVENTS, {"dedupe_key": dedupe_key}, limit=1)
    return rows[0] if rows else None


def insert_event_if_absent(event: ActivityEvent) -> Optional[ActivityEvent]:
    """Insert ``event`` unless its dedupe key exists; ``None`` signals a duplicate."""
    new_id = _insert(EVENTS, event, conflict="dedupe_key")
    if new_id is None:
        return None
    return get_event(new_id)


def update_event(event_id: int, patch: Mapping[str, Any]) -> Optional[ActivityEvent]:
    _update(EVENTS, event_id, patch)
    return get_event(event_id)


def delete_event(event_id: int) -> None:
    _exec("DELETE FROM activity_events WHERE id = ?", (int(event_id),))


def count_events(**filters: Any) -> int:
    return _count(EVENTS, filters)


# -------------- assignments --------------
def insert_assignment(assignment: StudentAssignment) -> Optional[StudentAssignment]:
    new_id = _insert(ASSIGNMENTS, assignment, conflict="dedupe_key")
    if new_id is None:
        return None
    return _get(ASSIGNMENTS, new_id)


def find_assignments(*, limit: Optional[int] = None, offset: int = 0, **filters: Any) -> list[StudentAssignment]:
    return _select(ASSIGNMENTS, filters, limit=limit, offset=offset)


def get_assignment_by_dedupe_key(dedupe_key: str) -> Optional[StudentAssignment]:
    rows = _select(ASSIGNMENTS, {"dedupe_key": dedupe_key}, limit=1)
    return rows[0] if rows else None


def update_assignment(assignment_id: int, patch: Mapping[str, Any]) -> Optional[StudentAssignment]:
    _update(ASSIGNMENTS, assignment_id, patch)
    return _get(ASSIGNMENTS, assignment_id)


# -------------- assignment catalog --------------
def insert_catalog_item(item: CatalogItem) -> CatalogItem:
    new_id = _insert(CATALOG, item)
    return _get(CATALOG, new_id)


def get_catalog_item(catalog_id: int) -> Optional[CatalogItem]:
    return _get(CATALOG, catalog_id)


def list_catalog(*, limit: Optional[int] = None, offset: int = 0, **filters: Any) -> list[CatalogItem]:
    return _select(CATALOG, filters, limit=limit, offset=offset)


def update_catalog_item(catalog_id: int, patch: Mapping[str, Any]) -> Optional[CatalogItem]:
    _update(CATALOG, catalog_id, patch)
    return _get(CATALOG, catalog_id)


# -------------- raw captures --------------
def insert_raw_capture(capture: RawCapture) -> RawCapture:
    """Store ``capture`` once per ``(source, payload_hash)`` and return the stored row."""
    _insert(CAPTURES, capture, conflict="source, payload_hash")
    rows = _select(
        CAPTURES,
        {"source": capture.source, "payload_hash": capture.payload_hash},
        limit=1,
    )
    return rows[0]


def list_raw_captures(*, limit: Optional[int] = None, offset: int = 0, **filters: Any) -> list[RawCapture]:
    return _select(CAPTURES, filters, limit=limit, offset=offset)


# -------------- lesson -> course map --------------
def upsert_lesson_course(lesson_id: str, course_id: str, course_name: str, seen_at: Optional[str] = None) -> None:
    _exec(
        """
        INSERT INTO lesson_course_map (lesson_id, course_id, course_name, last_seen_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(lesson_id) DO UPDATE SET
            course_id = excluded.course_id,
            course_name = excluded.course_name,
            last_seen_at = excluded.last_seen_at
        """,
        (str(lesson_id), str(course_id or ""), course_name, seen_at),
    )


def get_lesson_course(lesson_id: str) -> Optional[Dict[str, Any]]:
    rows = _query(
        "SELECT lesson_id, course_id, course_name, last_seen_at FROM lesson_course_map WHERE lesson_id = ?",
        (str(lesson_id),),
    )
    return dict(rows[0]) if rows else None
