from __future__ import annotations

import json
from datetime import date
from enum import Enum
from pathlib import PurePath
from typing import Mapping


def stable_compact_text(
    value: object,
    *,
    ensure_ascii: bool = True,
) -> str:
    """Deterministic text encoder for fingerprint surfaces.

    - Mapping keys are sorted lexically.
    - Sequence order is preserved; tuple/list normalize to JSON lists.
    - Sets and frozensets normalize to sorted lists.
    """
    normalized = stable_json_value(value, source="stable_compact_text")
    return json.dumps(
        normalized,
        separators=(",", ":"),
        sort_keys=False,
        ensure_ascii=ensure_ascii,
    )


def stable_compact_bytes(
    value: object,
    *,
    ensure_ascii: bool = True,
) -> bytes:
    return stable_compact_text(value, ensure_ascii=ensure_ascii).encode("utf-8")


def stable_json_value(
    value: object,
    *,
    source: str,
) -> object:
    """Normalize ``value`` into a deterministic JSON-compatible carrier.

    Enums collapse to their value, dates to ISO text and paths to POSIX text.
    Anything else that JSON cannot carry is rejected so object identities
    never leak into a fingerprint.
    """
    return _normalize(value, source=source)


def _normalize(value: object, *, source: str) -> object:
    if isinstance(value, Enum):
        return _normalize(value.value, source=source)
    if isinstance(value, Mapping):
        keys = sorted(str(key) for key in value)
        lookup = {str(key): item for key, item in value.items()}
        return {key: _normalize(lookup[key], source=f"{source}.{key}") for key in keys}
    if isinstance(value, (tuple, list)):
        return [_normalize(item, source=f"{source}[]") for item in value]
    if isinstance(value, (set, frozenset)):
        items = [_normalize(item, source=f"{source}{{}}") for item in value]
        return sorted(items, key=lambda item: (type(item).__name__, json.dumps(item, sort_keys=True)))
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, PurePath):
        return value.as_posix()
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    raise TypeError(
        "stable_json_value does not support value type "
        f"{type(value).__name__} at {source}"
    )
