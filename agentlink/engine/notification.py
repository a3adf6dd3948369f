"""Safe field extraction from untyped backend notifications.

Backends speak loosely-typed JSON across two protocol generations:
fields come in snake_case or camelCase, and the interesting object is
sometimes flattened into params and sometimes nested under a wrapper
key (``item``, ``msg``, ``thread``, ``turn``). Everything here is a
pure function that returns a correctly-typed value or None. Nothing
raises and nothing coerces: ``"1"`` is not a number, ``NaN`` is absent.
"""
from __future__ import annotations

import json
import math
from typing import Any

WRAPPER_KEYS: tuple[str, ...] = ("item", "msg", "thread", "turn")


def as_record(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def as_string(value: Any) -> str | None:
    """Non-empty strings only."""
    return value if isinstance(value, str) and value else None


def as_bool(value: Any) -> bool | None:
    return value if isinstance(value, bool) else None


def as_number(value: Any) -> int | float | None:
    """Finite ints and floats. ``bool`` is not a number here."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def first_present(record: dict[str, Any] | None, *names: str) -> Any:
    """Return the first value under *names* that is not None."""
    if not record:
        return None
    for name in names:
        value = record.get(name)
        if value is not None:
            return value
    return None


def unwrap(record: dict[str, Any], *keys: str) -> dict[str, Any]:
    """Return the record nested under the first present key, else *record*."""
    for key in keys or WRAPPER_KEYS:
        nested = as_record(record.get(key))
        if nested is not None:
            return nested
    return record


def _candidates(
    payload: Any, within: tuple[str, ...],
) -> list[dict[str, Any]]:
    record = as_record(payload)
    if record is None:
        return []
    found = [record]
    for key in within:
        nested = as_record(record.get(key))
        if nested is not None:
            found.append(nested)
    return found


def _lookup(payload: Any, names: tuple[str, ...], within: tuple[str, ...], cast) -> Any:
    for record in _candidates(payload, within):
        for name in names:
            value = cast(record.get(name))
            if value is not None:
                return value
    return None


def get_string(
    payload: Any, *names: str, within: tuple[str, ...] = WRAPPER_KEYS,
) -> str | None:
    """First non-empty string under *names*, flattened or nested."""
    return _lookup(payload, names, within, as_string)


def get_bool(
    payload: Any, *names: str, within: tuple[str, ...] = WRAPPER_KEYS,
) -> bool | None:
    return _lookup(payload, names, within, as_bool)


def get_number(
    payload: Any, *names: str, within: tuple[str, ...] = WRAPPER_KEYS,
) -> int | float | None:
    return _lookup(payload, names, within, as_number)


def get_record(
    payload: Any, *names: str, within: tuple[str, ...] = WRAPPER_KEYS,
) -> dict[str, Any] | None:
    return _lookup(payload, names, within, as_record)


def normalize_item_type(value: Any) -> str | None:
    """``command_execution`` / ``commandExecution`` -> ``commandexecution``."""
    raw = as_string(value)
    if raw is None:
        return None
    return raw.lower().replace(" ", "").replace("_", "").replace("-", "")


def extract_command(value: Any) -> str | None:
    """Command as one string; argv lists are joined with single spaces."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, list):
        parts = [part for part in value if isinstance(part, str)]
        return " ".join(parts) if parts else None
    return None


def extract_changes(value: Any) -> dict[str, Any] | None:
    """Fold per-path change records into a mapping keyed by path.

    A mapping passes through unchanged. A list without any extractable
    path yields None.
    """
    record = as_record(value)
    if record is not None:
        return record
    if isinstance(value, list):
        changes: dict[str, Any] = {}
        for entry in value:
            entry_record = as_record(entry)
            if entry_record is None:
                continue
            path = as_string(first_present(
                entry_record, "path", "file", "filePath", "file_path",
            ))
            if path:
                changes[path] = entry_record
        return changes or None
    return None


def unwrap_error_detail(message: str) -> str:
    """Use the ``detail`` of a JSON-encoded error body when there is one."""
    try:
        parsed = json.loads(message)
    except (ValueError, TypeError, RecursionError):
        return message
    if isinstance(parsed, dict) and isinstance(parsed.get("detail"), str):
        return parsed["detail"]
    return message
