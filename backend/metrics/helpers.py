"""
Shared numeric and timestamp helpers for the metrics package.

Rounding follows dashboard conventions (half-up, like the frontend's
Math.round) rather than Python's banker's rounding, so 62.5% renders as 63%.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Optional


def parse_iso(s: Any) -> Optional[datetime]:
    if not s:
        return None
    try:
        if isinstance(s, datetime):
            return s if s.tzinfo else s.replace(tzinfo=timezone.utc)
        s = str(s).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
        return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


def round_half_up(value: float, digits: int = 0) -> float:
    """Round half away from negative infinity, matching Math.round semantics."""
    if value is None or not math.isfinite(value):
        return 0.0
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def round2(value: float) -> float:
    return round_half_up(value, 2)


def to_number(value: Any) -> float:
    """Coerce a third-party numeric field to float; anything unusable is 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return 0.0
        return parsed if math.isfinite(parsed) else 0.0
    return 0.0


def rate_pct(numerator: float, denominator: float) -> int:
    """Whole-number percentage, 0 when the denominator is empty."""
    if not denominator:
        return 0
    return int(round_half_up(numerator / denominator * 100))
