"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..config import AppConfig
from .events import emit_db_event


@dataclass
class StandardRecord:
    id: int
    name: str
    description: str
    position: int


@dataclass
class SubjectRecord:
    id: int
    standard_id: int
    name: str
    description: str
    position: int


@dataclass
class ChapterRecord:
    id: int
    subject_id: int
    name: str
    description: str
    position: int


# Tables that own a position column, mapped to the column naming their parent.
_SIBLING_TABLES: Dict[str, Optional[str]] = {
    "standards": None,
    "subjects": "standard_id",
    "chapters": "subject_id",
}


@dataclass(frozen=True)
class SiblingScope:
    """One namespace of positions: all standards, or the children of one parent."""

    table: str
    parent_column: Optional[str] = None
    parent_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.table not in _SIBLING_TABLES:
            raise ValueError(f"Unknown sibling table: {self.table!r}")
        if _SIBLING_TABLES[self.table] != self.parent_column:
            raise ValueError(
                f"Table {self.table!r} is scoped by {_SIBLING_TABLES[self.table]!r}, "
                f"not {self.parent_column!r}"
            )
        if self.parent_column is not None and self.parent_id is None:
            raise ValueError(f"A {self.parent_column} is required for {self.table}")

    @classmethod
    def standards(cls) -> "SiblingScope":
        return cls("standards")

    @classmethod
    def subjects(cls, standard_id: int) -> "SiblingScope":
        return cls("subjects", "standard_id", int(standard_id))

    @classmethod
    def chapters(cls, subject_id: int) -> "SiblingScope":
        return cls("chapters", "subject_id", int(subject_id))

    def where_clause(self) -> Tuple[str, Tuple[Any, ...]]:
        if self.parent_column is None:
            return "", ()
        return f" AND {self.parent_column} = ?", (self.parent_id,)

    def describe(self) -> str:
        if self.parent_column is None:
            return self.table
        return f"{self.table}[{self.parent_column}={self.parent_id}]"


LOGGER = logging.getLogger(__name__)


def _emit_db_query(event_type: str, action: str, **kwargs: Any) -> None:
    emit_db_event(action, **kwargs)


class CourseRepository:
    """Repository exposing CRUD helpers for standards, subjects and chapters."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path: Path = config.database_file
        self._event_emitter: Callable[..., None] = event_emitter or _emit_db_query

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured debug event capturing execution time for a DB action."""

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
            self._event_emitter("DB_QUERY", action, payload=filtered, duration_ms=duration_ms)

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
        params: Tuple[Any, ...] = tuple(parameters) if parameters is not None else ()
        with self._track_db_event(
            action,
            table=table,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            cursor = connection.execute(statement, params)
            if cursor.rowcount >= 0:
                event.setdefault("rowcount", int(cursor.rowcount))
            return cursor

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        with self._track_db_event("connect", database=str(self._db_path)) as event:
            connection = sqlite3.connect(self._db_path)
            event.setdefault("sqlite_version", sqlite3.sqlite_version)
        connection.row_factory = sqlite3.Row
        self._execute(connection, "PRAGMA foreign_keys = ON", action="pragma_foreign_keys")
        return connection

    @contextlib.contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        with contextlib.closing(self._connect()) as connection:
            with connection:
                yield connection

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection whose statements commit together or not at all.

        The transaction is committed when the block exits normally, rolled back
        when it raises, and the connection is closed in both cases.
        """

        connection = self._connect()
        try:
            with self._track_db_event("transaction") as event:
                self._execute(connection, "BEGIN IMMEDIATE", action="transaction.begin")
                try:
                    yield connection
                except BaseException:
                    connection.rollback()
                    event["result"] = "rolled_back"
                    raise
                connection.commit()
                event["result"] = "committed"
        finally:
            connection.close()

    def _next_position(
        self,
        connection: sqlite3.Connection,
        scope: SiblingScope,
    ) -> int:
        where, params = scope.where_clause()
        cursor = self._execute(
            connection,
            f"SELECT COALESCE(MAX(position), 0) + 1 FROM {scope.table} WHERE 1 = 1{where}",
            params,
            action=f"{scope.table}.next_position",
            table=scope.table,
        )
        row = cursor.fetchone()
        next_value = int(row[0] or 1) if row is not None else 1
        LOGGER.debug("Computed next position for %s -> %s", scope.describe(), next_value)
        return next_value

    def _insert(
        self,
        scope: SiblingScope,
        name: str,
        description: str,
        position: Optional[int],
    ) -> int:
        columns = ["name", "description", "position"]
        if scope.parent_column is not None:
            columns.insert(0, scope.parent_column)
        with self._track_db_event(f"add_{scope.table}", table=scope.table, name=name) as event:
            with self._session() as connection:
                if position is None:
                    position = self._next_position(connection, scope)
                values: List[Any] = [name, description, position]
                if scope.parent_column is not None:
                    values.insert(0, scope.parent_id)
                placeholders = ", ".join("?" for _ in columns)
                cursor = self._execute(
                    connection,
                    f"INSERT INTO {scope.table}({', '.join(columns)}) VALUES ({placeholders})",
                    values,
                    action=f"{scope.table}.insert",
                    table=scope.table,
                )
                row_id = int(cursor.lastrowid)
                event.update({"id": row_id, "position": position})
                LOGGER.debug(
                    "Inserted %s id=%s name='%s' at position=%s",
                    scope.describe(),
                    row_id,
                    name,
                    position,
                )
                return row_id

    # ---------------------------------------------------------------------
    # Creation helpers
    # ---------------------------------------------------------------------
    def add_standard(
        self, name: str, description: str = "", *, position: Optional[int] = None
    ) -> int:
        return self._insert(SiblingScope.standards(), name, description, position)

    def add_subject(
        self,
        standard_id: int,
        name: str,
        description: str = "",
        *,
        position: Optional[int] = None,
    ) -> int:
        return self._insert(SiblingScope.subjects(standard_id), name, description, position)

    def add_chapter(
        self,
        subject_id: int,
        name: str,
        description: str = "",
        *,
        position: Optional[int] = None,
    ) -> int:
        return self._insert(SiblingScope.chapters(subject_id), name, description, position)

    # ---------------------------------------------------------------------
    # Lookups
    # ---------------------------------------------------------------------
    def _fetch_one(self, table: str, columns: str, record_id: int) -> Optional[sqlite3.Row]:
        with self._track_db_event(f"get_{table}", table=table, id=record_id) as event:
            with self._session() as connection:
                cursor = self._execute(
                    connection,
                    f"SELECT {columns} FROM {table} WHERE id = ?",
                    (record_id,),
                    action=f"{table}.get",
                    table=table,
                )
                row = cursor.fetchone()
                event["found"] = row is not None
                return row

    def _fetch_scope(self, scope: SiblingScope, columns: str) -> List[sqlite3.Row]:
        where, params = scope.where_clause()
        with self._track_db_event(f"list_{scope.table}", table=scope.table) as event:
            with self._session() as connection:
                cursor = self._execute(
                    connection,
                    f"SELECT {columns} FROM {scope.table} WHERE 1 = 1{where} ORDER BY position, id",
                    params,
                    action=f"{scope.table}.list",
                    table=scope.table,
                )
                rows = cursor.fetchall()
                event["rowcount"] = len(rows)
                return rows

    def get_standard(self, standard_id: int) -> Optional[StandardRecord]:
        row = self._fetch_one("standards", "id, name, description, position", standard_id)
        return StandardRecord(**row) if row else None

    def get_subject(self, subject_id: int) -> Optional[SubjectRecord]:
        row = self._fetch_one(
            "subjects", "id, standard_id, name, description, position", subject_id
        )
        return SubjectRecord(**row) if row else None

    def get_chapter(self, chapter_id: int) -> Optional[ChapterRecord]:
        row = self._fetch_one(
            "chapters", "id, subject_id, name, description, position", chapter_id
        )
        return ChapterRecord(**row) if row else None

    def list_standards(self) -> List[StandardRecord]:
        rows = self._fetch_scope(SiblingScope.standards(), "id, name, description, position")
        return [StandardRecord(**row) for row in rows]

    def list_subjects(self, standard_id: int) -> List[SubjectRecord]:
        rows = self._fetch_scope(
            SiblingScope.subjects(standard_id), "id, standard_id, name, description, position"
        )
        return [SubjectRecord(**row) for row in rows]

    def list_chapters(self, subject_id: int) -> List[ChapterRecord]:
        rows = self._fetch_scope(
            SiblingScope.chapters(subject_id), "id, subject_id, name, description, position"
        )
        return [ChapterRecord(**row) for row in rows]

    # ---------------------------------------------------------------------
    # Positions
    # ---------------------------------------------------------------------
    def list_positions(
        self,
        scope: SiblingScope,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> List[Tuple[int, int]]:
        """Return ``(id, position)`` pairs of *scope* ordered by position."""

        if connection is None:
            with self._session() as session:
                return self.list_positions(scope, connection=session)

        where, params = scope.where_clause()
        cursor = self._execute(
            connection,
            f"SELECT id, position FROM {scope.table} WHERE 1 = 1{where} ORDER BY position, id",
            params,
            action=f"{scope.table}.positions",
            table=scope.table,
        )
        return [(int(row["id"]), int(row["position"])) for row in cursor.fetchall()]

    def set_position(
        self,
        connection: sqlite3.Connection,
        scope: SiblingScope,
        record_id: int,
        position: int,
    ) -> int:
        """Update one member's position on *connection*; returns the affected row count."""

        where, params = scope.where_clause()
        cursor = self._execute(
            connection,
            f"UPDATE {scope.table} SET position = ? WHERE id = ?{where}",
            (position, record_id, *params),
            action=f"{scope.table}.set_position",
            table=scope.table,
        )
        return int(cursor.rowcount)

    # ---------------------------------------------------------------------
    # Removal
    # ---------------------------------------------------------------------
    def _remove(self, table: str, record_id: int) -> None:
        LOGGER.debug("Removing %s id=%s", table, record_id)
        with self._track_db_event(f"remove_{table}", table=table, id=record_id) as event:
            with self._session() as connection:
                cursor = self._execute(
                    connection,
                    f"DELETE FROM {table} WHERE id = ?",
                    (record_id,),
                    action=f"{table}.delete",
                    table=table,
                )
                event.update({"result": "deleted", "rowcount": max(cursor.rowcount, 0)})

    def remove_standard(self, standard_id: int) -> None:
        self._remove("standards", standard_id)

    def remove_subject(self, subject_id: int) -> None:
        self._remove("subjects", subject_id)

    def remove_chapter(self, chapter_id: int) -> None:
        self._remove("chapters", chapter_id)


__all__ = [
    "ChapterRecord",
    "CourseRepository",
    "SiblingScope",
    "StandardRecord",
    "SubjectRecord",
]
