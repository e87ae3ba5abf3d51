from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import numpy as np

from gridwatch.data.ring_buffer import BucketArrays

# ============================================================
# Calendar profiles over bucket closes (heatmap, seasonality, forward envelope)
# ============================================================

AGGREGATIONS: Dict[str, Callable[[np.ndarray], float]] = {
    "mean": lambda a: float(np.mean(a)),
    "median": lambda a: float(np.median(a)),
    "max": lambda a: float(np.max(a)),
    "min": lambda a: float(np.min(a)),
}


@dataclass(frozen=True, slots=True)
class HeatmapCell:
    day: str        # local date, ISO (YYYY-MM-DD)
    hour: int       # 0..23 local
    value: float
    samples: int


@dataclass(frozen=True, slots=True)
class SeasonalPoint:
    weekday: int    # 0 = Monday
    hour: int
    median: float
    samples: int


@dataclass(frozen=True, slots=True)
class ForwardBand:
    offset: int             # M+offset
    month: str              # YYYY-MM of the delivery month
    low: Optional[float]    # lower percentile (p10 by default)
    high: Optional[float]   # upper percentile (p90 by default)
    mean: Optional[float]   # historical average for that calendar month
    samples: int


def _local(epochs: np.ndarray, tz_name: str) -> List[datetime]:
    tz = ZoneInfo(tz_name)
    return [datetime.fromtimestamp(int(e), tz) for e in epochs]


def compute_heatmap(b: BucketArrays, *, tz_name: str = "UTC", agg: str = "mean") -> Optional[Tuple[HeatmapCell, ...]]:
    """One cell per (local day, hour) that has observations, aggregated over bucket closes."""
    if agg not in AGGREGATIONS:
        raise ValueError(f"Unsupported heatmap aggregation: {agg}")
    obs = b.observed()
    if len(obs) == 0:
        return None
    groups: Dict[Tuple[str, int], List[float]] = defaultdict(list)
    for dt, c in zip(_local(obs.epoch, tz_name), obs.c):
        groups[(dt.date().isoformat(), dt.hour)].append(float(c))
    fn = AGGREGATIONS[agg]
    return tuple(
        HeatmapCell(day=d, hour=h, value=fn(np.asarray(vals)), samples=len(vals))
        for (d, h), vals in sorted(groups.items())
    )


def compute_seasonality(b: BucketArrays, *, tz_name: str = "UTC") -> Optional[Tuple[SeasonalPoint, ...]]:
    """
    Median close per (weekday, hour-of-day). np.median averages the two middle
    values on even counts.
    """
    obs = b.observed()
    if len(obs) == 0:
        return None
    groups: Dict[Tuple[int, int], List[float]] = defaultdict(list)
    for dt, c in zip(_local(obs.epoch, tz_name), obs.c):
        groups[(dt.weekday(), dt.hour)].append(float(c))
    return tuple(
        SeasonalPoint(weekday=wd, hour=h, median=float(np.median(vals)), samples=len(vals))
        for (wd, h), vals in sorted(groups.items())
    )


def _add_months(year: int, month: int, offset: int) -> Tuple[int, int]:
    idx = year * 12 + (month - 1) + offset
    return idx // 12, idx % 12 + 1


def compute_forward_envelope(
    b: BucketArrays,
    *,
    as_of: int,
    horizon_months: int = 36,
    percentiles: Tuple[float, float] = (10.0, 90.0),
    tz_name: str = "UTC",
) -> Optional[Tuple[ForwardBand, ...]]:
    """
    Historical envelope for forward months M+0..M+horizon-1 (M = month of `as_of`).
    Each forward month draws on every historical close from the same calendar
    month; bands are percentiles with linear interpolation on the sorted values.
    """
    obs = b.observed()
    if len(obs) == 0:
        return None
    by_month: Dict[int, List[float]] = defaultdict(list)
    for dt, c in zip(_local(obs.epoch, tz_name), obs.c):
        by_month[dt.month].append(float(c))

    anchor = datetime.fromtimestamp(int(as_of), ZoneInfo(tz_name))
    lo_p, hi_p = percentiles
    bands: List[ForwardBand] = []
    for off in range(horizon_months):
        y, m = _add_months(anchor.year, anchor.month, off)
        vals = by_month.get(m)
        if not vals:
            bands.append(ForwardBand(off, f"{y:04d}-{m:02d}", None, None, None, 0))
            continue
        arr = np.asarray(vals, dtype=np.float64)
        lo, hi = np.percentile(arr, [lo_p, hi_p], method="linear")
        bands.append(ForwardBand(off, f"{y:04d}-{m:02d}", float(lo), float(hi), float(np.mean(arr)), int(arr.size)))
    return tuple(bands)
