"""Canonical serialization and content hashing.

Every persisted artifact (classifications, run keys, postmortems) is hashed
over the same canonical JSON form: sorted keys, no insignificant whitespace,
UTF-8.  Two structurally equal values always produce the same bytes.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping, Sequence
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any


def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value) and not isinstance(value, type):
        if hasattr(value, "to_dict"):
            return _normalize(value.to_dict())
        return _normalize(asdict(value))
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (str, bytes)):
        return value.decode() if isinstance(value, bytes) else value
    if isinstance(value, (set, frozenset)):
        return sorted(_normalize(v) for v in value)
    if isinstance(value, Sequence):
        return [_normalize(v) for v in value]
    return value


def stable_stringify(value: Any) -> str:
    """Serialize *value* to canonical JSON."""
    return json.dumps(
        _normalize(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def sha256_hex(data: str | bytes) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def content_hash(value: Any) -> str:
    """SHA-256 hex digest (64 chars) of the canonical form of *value*."""
    return sha256_hex(stable_stringify(value))


def compute_inputs_hash(inputs: Mapping[str, Any] | None) -> str:
    return content_hash(dict(inputs or {}))
