from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any, Optional

# --- fast, allocation-free time helpers ---

def utc_now_s() -> float:
    """Unix epoch seconds (float)."""
    return time.time()

def align_epoch(ts: float, width_s: int) -> int:
    """Floor timestamp (s) to the start of its `width_s` interval."""
    return (int(ts // width_s)) * width_s

def seconds_since(ts_past: float, now: Optional[float] = None) -> float:
    """Non-negative time since past (clamped at 0)."""
    now = utc_now_s() if now is None else now
    return max(0.0, now - ts_past)

def parse_epoch(ts: Any) -> float:
    """
    Coerce a feed timestamp to epoch seconds.
    Accepts ISO-8601 strings (``Z`` suffix ok) and numbers in s, ms or ns.
    Raises ValueError/TypeError when it can't.
    """
    if isinstance(ts, bool):
        raise TypeError("boolean is not a timestamp")
    if isinstance(ts, str):
        s = ts.strip()
        try:
            return _scale_numeric(float(s))
        except ValueError:
            pass
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    if isinstance(ts, (int, float)):
        return _scale_numeric(float(ts))
    if isinstance(ts, datetime):
        if ts.tzinfo is None:
            raise ValueError("datetime must be timezone-aware")
        return ts.timestamp()
    raise TypeError(f"unsupported timestamp type: {type(ts).__name__}")

def _scale_numeric(v: float) -> float:
    if not math.isfinite(v):
        raise ValueError("timestamp is not finite")
    if v > 1e17:  # ns → s
        return v / 1e9
    if v > 1e14:  # us → s
        return v / 1e6
    if v > 1e11:  # ms → s
        return v / 1e3
    return v
