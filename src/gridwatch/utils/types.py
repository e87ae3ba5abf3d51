from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Literal, Mapping, Optional

# ---- series identity ----

RESOLUTIONS: dict[str, int] = {
    "5s": 5,
    "1m": 60,
    "15m": 900,
    "1h": 3600,
    "1d": 86_400,
}


def resolution_seconds(resolution: str) -> int:
    try:
        return RESOLUTIONS[resolution]
    except KeyError:
        raise ValueError(f"Unsupported resolution: {resolution}") from None


@dataclass(frozen=True, slots=True)
class MetricKey:
    """Identity of one series, rendered as ``market/zone/metric`` (e.g. PL/CEN/spot-price)."""
    market: str
    zone: str
    metric: str

    def __str__(self) -> str:
        return f"{self.market}/{self.zone}/{self.metric}"

    @classmethod
    def parse(cls, text: str) -> "MetricKey":
        parts = text.strip().split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"MetricKey must look like market/zone/metric, got {text!r}")
        return cls(*parts)

    def matches(self, pattern: str) -> bool:
        """Glob match per component: ``PL/*/spot-price`` matches every PL zone."""
        parts = pattern.split("/")
        if len(parts) != 3:
            return False
        return (
            fnmatchcase(self.market, parts[0])
            and fnmatchcase(self.zone, parts[1])
            and fnmatchcase(self.metric, parts[2])
        )


# ---- ingest-level primitives ----

@dataclass(frozen=True, slots=True)
class Tick:
    key: MetricKey
    ts: float                  # epoch seconds
    value: float
    volume: Optional[float] = None
    source: Optional[str] = None


@dataclass(frozen=True, slots=True)
class Bucket:
    """
    Aggregate of ticks for one key over [start, end).
    `closed` buckets are frozen; an open bucket is a copy of the live accumulator.
    """
    key: MetricKey
    resolution: str
    start: int
    end: int
    open: float
    high: float
    low: float
    close: float
    volume_sum: float
    value_weighted_sum: float
    count: int
    closed: bool


# ---- derived metrics ----

@dataclass(frozen=True, slots=True)
class Window:
    """
    Lookback over one resolution, anchored at the end of the newest bucket.
    lookback_s=None covers everything retained.
    """
    resolution: str = "1h"
    lookback_s: Optional[int] = None
    include_open: bool = True


@dataclass(frozen=True, slots=True)
class DerivedMetric:
    key: MetricKey
    kind: str
    window: Window
    as_of: int          # end of the newest bucket that fed the computation
    value: Any


@dataclass(frozen=True, slots=True)
class NoData:
    """First-class 'nothing to report' result; callers must check for it."""
    key: MetricKey
    kind: str
    reason: str


# ---- alerting domain ----

Operator = Literal[">", "<", "="]


class AlertState(str, Enum):
    ARMED = "armed"
    TRIGGERED = "triggered"
    COOLDOWN = "cooldown"


@dataclass(frozen=True, slots=True)
class AlertEvent:
    rule_id: str
    key: MetricKey
    observed_value: float
    triggered_at: float
    rule_name: str = ""
    operator: str = ">"
    threshold: float = 0.0
    metric: str = "last"


# ---- feed health & snapshots ----

FeedState = Literal["ok", "stale", "down"]


@dataclass(frozen=True, slots=True)
class FeedStatus:
    feed_id: str
    state: FeedState
    last_seen: Optional[float]
    age_s: Optional[float]


@dataclass(frozen=True, slots=True)
class Snapshot:
    seq: int
    as_of: float
    latest: Mapping[MetricKey, Mapping[str, Bucket]]
    derived: Mapping[MetricKey, Mapping[str, DerivedMetric | NoData]]
    feed_health: Mapping[str, FeedStatus]
    stale_keys: frozenset[MetricKey]
    fenced_keys: frozenset[MetricKey]
    stale: bool


@dataclass(frozen=True, slots=True)
class SnapshotDelta:
    """
    Changes between two snapshots as seen through a subscriber's filter.
    `initial` deltas carry the full filtered view; `seq` gaps mean dropped deltas.
    """
    seq: int
    prev_seq: Optional[int]
    as_of: float
    buckets: Mapping[MetricKey, Mapping[str, Bucket]]
    derived: Mapping[MetricKey, Mapping[str, DerivedMetric | NoData]]
    feed_health: Mapping[str, FeedStatus]
    stale_keys: frozenset[MetricKey]
    stale: bool
    initial: bool = False
