from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple, Union

import structlog

from gridwatch.config import DerivedConfig
from gridwatch.data.store import TimeSeriesStore
from gridwatch.indicators.merit_order import GenerationUnit, validate_units
from gridwatch.indicators.registry import CalcContext, get_calculator
from gridwatch.utils.types import DerivedMetric, MetricKey, NoData, Window, resolution_seconds

log = structlog.get_logger("derived")

Result = Union[DerivedMetric, NoData]
_CacheKey = Tuple[MetricKey, str, Window]
_Stamp = Tuple[int, int]   # (store version, generation-unit version)


@dataclass(slots=True)
class DerivedStats:
    hits: int = 0
    misses: int = 0
    evicted: int = 0


class DerivedEngine:
    """
    Lazily computed, cached derived metrics.

    Entries are keyed by (key, kind, window) and stamped with the store version
    of the window's resolution (the closed-only version when the window excludes
    the open bucket). A read whose stamp no longer matches recomputes; refresh()
    evicts stale entries after bucket closes so memory tracks live keys.
    """

    def __init__(self, store: TimeSeriesStore, cfg: Optional[DerivedConfig] = None):
        self.store = store
        self.cfg = cfg or DerivedConfig()
        self._cache: Dict[_CacheKey, Tuple[_Stamp, Result]] = {}
        self._units: Dict[Tuple[str, str], tuple[GenerationUnit, ...]] = {}
        self._units_version = 0
        self.stats = DerivedStats()

    # ---- generation stack (merit order input) ----

    def set_generation_units(self, market: str, zone: str, units: Iterable[GenerationUnit]) -> None:
        self._units[(market, zone)] = validate_units(units)
        self._units_version += 1

    def generation_units(self, market: str, zone: str) -> tuple[GenerationUnit, ...]:
        return self._units.get((market, zone), ())

    # ---- reads ----

    def get(self, key: MetricKey, kind: str, window: Optional[Window] = None) -> Result:
        calc = get_calculator(kind)
        window = window or calc.default_window(self.cfg)
        resolution_seconds(window.resolution)

        ck = (key, kind, window)
        stamp = self._stamp(key, kind, window)
        hit = self._cache.get(ck)
        if hit is not None and hit[0] == stamp:
            self.stats.hits += 1
            return hit[1]

        self.stats.misses += 1
        result = self._compute(key, kind, window)
        self._cache[ck] = (stamp, result)
        return result

    def refresh(self, keys: Optional[Iterable[MetricKey]] = None) -> int:
        """Drop cache entries whose bucket set has changed. Returns the number evicted."""
        wanted = None if keys is None else set(keys)
        stale = [
            ck for ck, (stamp, _) in self._cache.items()
            if (wanted is None or ck[0] in wanted) and stamp != self._stamp(*ck)
        ]
        for ck in stale:
            del self._cache[ck]
        self.stats.evicted += len(stale)
        return len(stale)

    # ---- internals ----

    def _stamp(self, key: MetricKey, kind: str, window: Window) -> _Stamp:
        v = self.store.version(key, window.resolution, closed_only=not window.include_open)
        return v, (self._units_version if kind == "merit_order" else 0)

    def _compute(self, key: MetricKey, kind: str, window: Window) -> Result:
        newest = self.store.latest(key, window.resolution, closed_only=not window.include_open)
        if newest is None:
            return NoData(key, kind, "no_data")

        # window anchored at the end of the newest bucket
        as_of = newest.end
        start = None if window.lookback_s is None else as_of - window.lookback_s
        series = self.store.arrays(key, window.resolution, start, as_of, include_open=window.include_open)
        if len(series) == 0:
            return NoData(key, kind, "no_data")

        ctx = CalcContext(
            key=key,
            kind=kind,
            window=window,
            as_of=as_of,
            cfg=self.cfg,
            units=self.generation_units(key.market, key.zone) if kind == "merit_order" else (),
        )
        value = get_calculator(kind).compute(series, ctx)
        if isinstance(value, NoData):
            return value
        return DerivedMetric(key=key, kind=kind, window=window, as_of=as_of, value=value)
