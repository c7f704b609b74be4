"""Structured log events for repository queries and tree mutations."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("chapter_tree.events")

DB_QUERY = "DB_QUERY"
TREE_MUTATION = "TREE_MUTATION"

_MAX_VALUE_LENGTH = 200

# Copied onto the log record itself so handlers can filter mutations per book/chapter.
_TREE_RECORD_KEYS = ("book_id", "chapter_id", "status")


def sanitize_context_value(value: Any) -> Any:
    """Scalars pass through; sequences are joined and long text is truncated."""

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, (list, tuple, set)):
        value = ", ".join(str(item) for item in value)
    text = str(value).strip()
    if not text:
        return None
    if len(text) > _MAX_VALUE_LENGTH:
        return text[:_MAX_VALUE_LENGTH] + "…"
    return text


def normalize_context(values: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    normalised: Dict[str, Any] = {}
    for key, raw_value in (values or {}).items():
        value = sanitize_context_value(raw_value)
        if key and value is not None:
            normalised[str(key)] = value
    return normalised


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    context: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
    record_fields: Optional[Mapping[str, Any]] = None,
) -> None:
    """Log ``[EVENT_TYPE] message (key=value, ...)`` and attach the parts as record attributes.

    Correlation, context and payload land on the record as ``event_correlation``,
    ``event_context`` and ``event_payload``; *record_fields* are set verbatim.
    """

    sections = {
        "event_correlation": normalize_context(correlation),
        "event_context": normalize_context(context),
        "event_payload": normalize_context(payload),
    }
    details: Dict[str, Any] = {}
    for section in sections.values():
        details.update(section)
    if duration_ms is not None:
        details["duration_ms"] = round(float(duration_ms), 3)

    text = str(message).strip()
    log_message = f"[{event_type}] {text}" if event_type else text
    if details:
        rendered = ", ".join(f"{key}={value}" for key, value in details.items())
        log_message = f"{log_message} ({rendered})"

    extra: Dict[str, Any] = {"event": text, "event_type": event_type or ""}
    extra.update((name, section) for name, section in sections.items() if section)
    if duration_ms is not None:
        extra["event_duration_ms"] = float(duration_ms)
    if record_fields:
        extra.update(record_fields)
    logger.log(level, log_message, extra=extra)


def emit_db_event(
    action: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    correlation: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.DEBUG,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    emit_structured_event(
        DB_QUERY,
        action,
        payload=payload,
        correlation=correlation,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


def emit_tree_event(
    operation: str,
    *,
    payload: Optional[Mapping[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    """Report one committed or rolled-back tree mutation.

    ``book_id``, ``chapter_id`` and ``status`` from *payload* are also set as
    ``book_id``/``chapter_id``/``status`` attributes of the log record
    (``None`` when the operation does not know them).
    """

    details = dict(payload or {})
    emit_structured_event(
        TREE_MUTATION,
        operation,
        payload=details,
        duration_ms=duration_ms,
        level=level,
        logger=logger,
        record_fields={key: details.get(key) for key in _TREE_RECORD_KEYS},
    )


__all__ = [
    "DB_QUERY",
    "DEFAULT_EVENT_LOGGER",
    "TREE_MUTATION",
    "emit_db_event",
    "emit_structured_event",
    "emit_tree_event",
    "normalize_context",
    "sanitize_context_value",
]
