"""Deduplication identity for long-running operations.

Two requests describe the same work when they target the same file with the
same operation type and semantically equal options. The options are encoded
canonically (sorted keys, normalised numbers) before hashing so that field
order or ``100`` vs ``100.0`` never changes the digest.
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import math
import os
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from pathlib import PurePath
from typing import Any, Mapping, Optional


def canonical_path(file_path: Any) -> str:
    absolute = os.path.abspath(os.path.expanduser(os.fspath(file_path)))
    return os.path.normcase(os.path.normpath(absolute)).lower()


def _canonical_number(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, Decimal) and value.is_finite() and value == value.to_integral_value():
        return int(value)
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"Non-finite number in operation options: {value!r}")
    if number.is_integer():
        return int(number)
    return number


def _normalize(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (bool, int, float, Decimal)):
        return _canonical_number(value)
    if isinstance(value, Enum):
        return _normalize(value.value)
    if isinstance(value, timedelta):
        return _canonical_number(value.total_seconds())
    if isinstance(value, PurePath):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _normalize(dataclasses.asdict(value))
    if isinstance(value, Mapping):
        normalized = {}
        for key, item in value.items():
            if item is None:
                continue
            normalized[str(key)] = _normalize(item)
        return normalized
    if isinstance(value, (set, frozenset)):
        items = [_normalize(item) for item in value]
        return sorted(items, key=lambda item: json.dumps(item, sort_keys=True))
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    raise TypeError(f"Unsupported value in operation options: {type(value).__name__}")


def canonical_options(options: Any) -> str:
    return json.dumps(
        _normalize(options),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def compute_digest(file_path: Any, operation_type: str, options: Any = None) -> str:
    payload = {
        "filePath": canonical_path(file_path),
        "operationType": str(operation_type),
        "options": _normalize(options),
    }
    text = canonical_options(payload)
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclasses.dataclass(frozen=True)
class OperationKey:
    file_path: str
    operation_type: str
    options: Optional[Any] = None

    def digest(self) -> str:
        return compute_digest(self.file_path, self.operation_type, self.options)
