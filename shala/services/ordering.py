"""Two-phase reordering of sibling rows that share a UNIQUE position column."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import time
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Sequence, Union

from ..errors import OrderConflictError, ValidationError
from .events import emit_task_event
from .storage import CourseRepository, SiblingScope


LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionUpdate:
    id: int
    position: int

    def to_dict(self) -> dict:
        return {"id": self.id, "position": self.position}


UpdateLike = Union[PositionUpdate, Mapping[str, Any]]


def _require_int(value: Any, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{label} must be an integer, got {value!r}")
    return value


def normalize_updates(updates: Iterable[UpdateLike]) -> List[PositionUpdate]:
    """Validate the shape of a reorder request and return typed entries.

    Duplicate target positions are not rejected here; the UNIQUE constraint
    reports them during the settle phase.
    """

    entries: List[PositionUpdate] = []
    seen = set()
    for raw in updates:
        if isinstance(raw, PositionUpdate):
            entry_id, position = raw.id, raw.position
        elif isinstance(raw, Mapping):
            entry_id, position = raw.get("id"), raw.get("position")
        else:
            raise ValidationError(f"Unsupported reorder entry: {raw!r}")
        entry_id = _require_int(entry_id, "id")
        position = _require_int(position, "position")
        if position < 1:
            raise ValidationError(f"Position for id={entry_id} must be at least 1")
        if entry_id in seen:
            raise ValidationError(f"Duplicate id in reorder request: {entry_id}")
        seen.add(entry_id)
        entries.append(PositionUpdate(entry_id, position))

    if not entries:
        raise ValidationError("A reorder request needs at least one entry")
    return entries


class SiblingReorderer:
    """Assign new positions to a complete sibling set inside one transaction.

    Every member is first moved to a distinct negative position ("scatter"),
    which can never collide with a real position, and then to its requested
    position ("settle"). Updating rows one at a time therefore never passes
    through a state where two members share a position.
    """

    def __init__(self, repository: CourseRepository) -> None:
        self._repository = repository

    async def reorder(
        self,
        scope: SiblingScope,
        updates: Sequence[UpdateLike],
    ) -> List[PositionUpdate]:
        entries = normalize_updates(updates)
        return await asyncio.to_thread(self._apply, scope, entries)

    def _apply(self, scope: SiblingScope, entries: List[PositionUpdate]) -> List[PositionUpdate]:
        label = scope.describe()
        start = time.perf_counter()
        emit_task_event(
            "reorder_started",
            f"Reordering {label}",
            payload={"scope": label, "count": len(entries)},
            level=logging.DEBUG,
        )
        try:
            with self._repository.transaction() as connection:
                current = self._repository.list_positions(scope, connection=connection)
                self._require_complete_set(scope, entries, [member for member, _ in current])

                for index, entry in enumerate(entries):
                    self._repository.set_position(connection, scope, entry.id, -(index + 1))

                for entry in entries:
                    self._repository.set_position(connection, scope, entry.id, entry.position)
        except sqlite3.IntegrityError as error:
            emit_task_event(
                "reorder_conflict",
                f"Reorder of {label} rolled back",
                payload={"scope": label, "error": error},
                duration_ms=(time.perf_counter() - start) * 1000,
                level=logging.WARNING,
            )
            raise OrderConflictError(
                f"Requested positions for {label} are not unique"
            ) from error

        committed = [
            PositionUpdate(member, position)
            for member, position in self._repository.list_positions(scope)
        ]
        emit_task_event(
            "reorder_completed",
            f"Reordered {label}",
            payload={"scope": label, "count": len(committed)},
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        return committed

    @staticmethod
    def _require_complete_set(
        scope: SiblingScope,
        entries: Sequence[PositionUpdate],
        members: Sequence[int],
    ) -> None:
        requested = {entry.id for entry in entries}
        existing = set(members)
        unknown = sorted(requested - existing)
        missing = sorted(existing - requested)
        if unknown:
            raise ValidationError(
                f"Ids {unknown} are not members of {scope.describe()}"
            )
        if missing:
            raise ValidationError(
                f"Reorder of {scope.describe()} must include every member; missing {missing}"
            )


__all__ = ["PositionUpdate", "SiblingReorderer", "SiblingScope", "normalize_updates"]
