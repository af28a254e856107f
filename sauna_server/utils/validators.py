"""
sauna_server/utils/validators.py - Lenient numeric parsing helpers
Used by configuration and the login throttle so bad input degrades to defaults.
"""
from __future__ import annotations

import math
import re
from typing import Any

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def clamp(value: float, min_val: float, max_val: float) -> float:
    """Clamp a value between min and max."""
    return max(min_val, min(max_val, value))


def parse_bounded_int(value: Any, fallback: int, min_val: int, max_val: int) -> int:
    """
    Parse an integer from an env-style value and clamp it to [min_val, max_val].
    Accepts a leading integer prefix ("15000ms" -> 15000, "1.9" -> 1).
    Anything without a finite integer falls back to `fallback` unclamped.
    Never raises.
    """
    if isinstance(value, bool) or value is None:
        return fallback
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, float):
        if not math.isfinite(value):
            return fallback
        parsed = int(value)
    else:
        match = _LEADING_INT.match(str(value))
        if match is None:
            return fallback
        try:
            parsed = int(match.group(1))
        except ValueError:
            # Past the int conversion digit limit: treat as non-finite
            return fallback
    return int(clamp(parsed, min_val, max_val))


def safe_number(value: Any, default: int = 0) -> int:
    """Coerce a stored numeric field to int; non-finite or junk becomes `default`."""
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return int(number)
