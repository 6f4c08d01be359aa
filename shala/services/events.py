"""Structured log events for file, database, task and HTTP activity.

Every event is a single line on the ``shala.events`` logger shaped like
``[FILE_OP] store name=pdf-....pdf size_bytes=1024 duration_ms=0.41``. The
same fields are attached to the record as ``event_type``, ``event`` and
``event_fields`` so handlers can index them without parsing the message.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union


EVENT_LOGGER = logging.getLogger("shala.events")

_MAX_VALUE_LENGTH = 200

EventLogger = Union[logging.Logger, logging.LoggerAdapter]


class EventType(str, Enum):
    FILE_OP = "FILE_OP"
    DB_QUERY = "DB_QUERY"
    TASK_STATE = "TASK_STATE"
    HTTP_EVENT = "HTTP_EVENT"


def _render(value: Any) -> Any:
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Enum):
        value = value.value
    elif isinstance(value, BaseException):
        value = f"{value.__class__.__name__}: {value}"
    text = str(value).strip()
    if len(text) > _MAX_VALUE_LENGTH:
        return text[:_MAX_VALUE_LENGTH] + "…"
    return text


def _clean_fields(fields: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in (fields or {}).items():
        if not key or value is None:
            continue
        rendered = _render(value)
        if rendered == "":
            continue
        cleaned[str(key)] = rendered
    return cleaned


def emit_event(
    event_type: Union[EventType, str],
    message: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: EventLogger = EVENT_LOGGER,
) -> None:
    """Log *message* under *event_type* with its payload flattened to ``key=value``."""

    kind = EventType(event_type).value
    fields = _clean_fields(payload)
    if duration_ms is not None:
        fields["duration_ms"] = round(float(duration_ms), 2)

    text = f"[{kind}] {message}"
    if fields:
        text = f"{text} " + " ".join(f"{key}={value}" for key, value in fields.items())
    logger.log(
        level,
        text,
        extra={"event_type": kind, "event": message, "event_fields": fields},
    )


def emit_file_event(operation: str, *, level: int = logging.INFO, **kwargs: Any) -> None:
    emit_event(EventType.FILE_OP, operation, level=level, **kwargs)


def emit_db_event(action: str, *, level: int = logging.DEBUG, **kwargs: Any) -> None:
    emit_event(EventType.DB_QUERY, action, level=level, **kwargs)


def emit_task_event(
    phase: str,
    message: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    **kwargs: Any,
) -> None:
    """Log a step of a longer task; *phase* is recorded as a field."""

    emit_event(
        EventType.TASK_STATE,
        message or phase,
        payload={"phase": phase, **(payload or {})},
        **kwargs,
    )


__all__ = [
    "EVENT_LOGGER",
    "EventType",
    "emit_db_event",
    "emit_event",
    "emit_file_event",
    "emit_task_event",
]
