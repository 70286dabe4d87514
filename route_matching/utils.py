"""General utility helpers shared across modules."""

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np


def format_distance(metres: float) -> str:
    """Format metres as ``X.Ykm``."""

    return f"{metres / 1000.0:.1f}km"


def normalise_value(value: Any) -> Any:
    """Convert objects to JSON-friendly representations."""

    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return normalise_value(value.value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="ignore")
    if isinstance(value, (set, frozenset)):
        return sorted(normalise_value(item) for item in value)
    if isinstance(value, (list, tuple)):
        return [normalise_value(item) for item in value]
    if isinstance(value, dict):
        return {str(key): normalise_value(val) for key, val in value.items()}
    return value


def json_dumps_sorted(value: Any, indent: Optional[int] = None) -> str:
    """Return canonical JSON for persistence and comparisons."""

    normalised = normalise_value(value)
    if indent is None:
        return json.dumps(normalised, sort_keys=True, separators=(",", ":"))
    return json.dumps(normalised, sort_keys=True, indent=indent)


def contiguous_runs(mask: Sequence[bool]) -> List[Tuple[int, int]]:
    """Inclusive ``(start, end)`` index ranges of consecutive truthy values."""

    runs: List[Tuple[int, int]] = []
    start: Optional[int] = None
    for idx, flag in enumerate(mask):
        if flag and start is None:
            start = idx
        elif not flag and start is not None:
            runs.append((start, idx - 1))
            start = None
    if start is not None:
        runs.append((start, len(mask) - 1))
    return runs


__all__ = ["contiguous_runs", "format_distance", "json_dumps_sorted", "normalise_value"]
