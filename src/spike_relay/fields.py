"""Lookup helpers for loosely-shaped API payloads.

Remote responses are not strictly typed: the same value may live under
several keys depending on the endpoint. Each call site passes its own ordered
list of candidate keys and the first usable value wins.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from typing import Any


def pick_value(record: Mapping[str, Any], keys: Sequence[str]) -> str | None:
    """Return the first non-empty string stored under any of ``keys``."""

    for key in keys:
        value = record.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def pick_text(record: Mapping[str, Any], keys: Sequence[str]) -> str | None:
    """Like :func:`pick_value` but an empty string still counts as present.

    Used for streamed text fragments where ``""`` is a legitimate chunk and
    must not fall through to the next candidate key.
    """

    for key in keys:
        value = record.get(key)
        if isinstance(value, str):
            return value
    return None


def pick_number(record: Mapping[str, Any], key: str) -> float | None:
    """Read a numeric field that may be encoded as a string."""

    value = record.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float) and math.isfinite(value):
        return float(value)
    if isinstance(value, str):
        try:
            parsed = float(value)
        except ValueError:
            return None
        if math.isfinite(parsed):
            return parsed
    return None


def extract_id(record: Mapping[str, Any]) -> str | None:
    """Find an entity id in flat or nested (``transcription``/``data``) shapes."""

    direct = pick_value(record, ("id", "transcriptionId"))
    if direct is not None:
        return direct
    for container in ("transcription", "data"):
        nested = record.get(container)
        if isinstance(nested, Mapping):
            nested_id = nested.get("id")
            if isinstance(nested_id, str | int) and not isinstance(nested_id, bool):
                return str(nested_id)
    return None


def extract_status(record: Mapping[str, Any]) -> str | None:
    """Read a status string from ``status`` or ``state``."""

    return pick_value(record, ("status", "state"))
