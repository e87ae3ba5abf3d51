from __future__ import annotations

import math
from typing import Any, Callable, Mapping, Optional

from gridwatch.config import NormalizerConfig
from gridwatch.errors import MalformedTick
from gridwatch.utils.time import parse_epoch, utc_now_s
from gridwatch.utils.types import MetricKey, Tick

# ----------------------------
# Static lookup tables (config tables extend/override these)
# ----------------------------
MARKET_ALIASES: dict[str, str] = {
    "POLAND": "PL", "TGE": "PL",
    "GERMANY": "DE", "DE-LU": "DE", "DE_LU": "DE", "EPEX-DE": "DE",
    "FRANCE": "FR", "EPEX-FR": "FR",
    "CZECHIA": "CZ", "OTE": "CZ",
}
ZONE_ALIASES: dict[str, str] = {
    "CENTRAL": "CEN", "NORTH": "N", "SOUTH": "S", "EAST": "E", "WEST": "W",
    "ALL": "SYS", "SYSTEM": "SYS",
}
METRIC_ALIASES: dict[str, str] = {
    "spot": "spot-price", "price": "spot-price",
    "da": "day-ahead-price", "dayahead": "day-ahead-price",
    "id": "intraday-price", "intraday": "intraday-price",
    "demand": "load",
    "res": "reserve-margin", "reserve": "reserve-margin",
    "xb-flow": "cross-border-flow", "flow": "cross-border-flow",
}

# energy unit -> size in MWh
ENERGY_UNITS: dict[str, float] = {"WH": 1e-6, "KWH": 1e-3, "MWH": 1.0, "GWH": 1e3}
# power unit -> size in MW
POWER_UNITS: dict[str, float] = {"W": 1e-6, "KW": 1e-3, "MW": 1.0, "GW": 1e3}
# units carried through as-is (weather, frequency, ratios)
PASSTHROUGH_UNITS = frozenset({"", "%", "C", "°C", "K", "M/S", "W/M2", "HZ", "RATIO"})

_KEY_FIELDS = ("key", "series_key")
_MARKET_FIELDS = ("market", "mkt", "exchange")
_ZONE_FIELDS = ("zone", "area", "bidding_zone")
_METRIC_FIELDS = ("metric", "series", "name")
_TS_FIELDS = ("ts", "timestamp", "t", "time")
_VALUE_FIELDS = ("value", "price", "p")
_VOLUME_FIELDS = ("volume", "qty", "size", "s")


def _first(m: Mapping[str, Any], fields: tuple[str, ...]) -> Any:
    for f in fields:
        v = m.get(f)
        if v is not None:
            return v
    return None


def _finite(x: Any, what: str, raw: Any) -> float:
    if isinstance(x, bool):
        raise MalformedTick(f"{what} is not numeric", raw)
    try:
        v = float(x)
    except (TypeError, ValueError):
        raise MalformedTick(f"{what} is not numeric: {x!r}", raw) from None
    if not math.isfinite(v):
        raise MalformedTick(f"{what} is not finite", raw)
    return v


class Normalizer:
    """
    Raw feed message (dict) -> canonical Tick.

    Accepted shapes (any mix of the aliases below):
      {"key": "PL/CEN/spot-price", "ts": "2026-10-19T12:00:00Z", "value": 412.5, "unit": "PLN/MWh"}
      {"market": "tge", "zone": "central", "metric": "spot", "t": 1760875200000, "p": 95.1, "s": 12}

    Only static tables are consulted, so one instance can be shared by every feed worker.
    """

    def __init__(self, cfg: Optional[NormalizerConfig] = None, clock: Callable[[], float] = utc_now_s):
        self.cfg = cfg or NormalizerConfig()
        self._clock = clock
        self._markets = {**MARKET_ALIASES, **{k.upper(): v for k, v in self.cfg.market_aliases.items()}}
        self._zones = {**ZONE_ALIASES, **{k.upper(): v for k, v in self.cfg.zone_aliases.items()}}
        self._metrics = {**METRIC_ALIASES, **{k.lower(): v for k, v in self.cfg.metric_aliases.items()}}
        self._fx_rates = {k.upper(): float(v) for k, v in self.cfg.fx_rates.items()}

    def normalize(self, raw: Any, source: Optional[str] = None) -> Tick:
        if not isinstance(raw, Mapping):
            raise MalformedTick("message is not an object", raw)

        key = self._canonical_key(raw)

        value_raw = _first(raw, _VALUE_FIELDS)
        if value_raw is None:
            raise MalformedTick("missing value", raw)
        value = self._normalize_value(_finite(value_raw, "value", raw), raw.get("unit"), raw)

        volume: Optional[float] = None
        vol_raw = _first(raw, _VOLUME_FIELDS)
        if vol_raw is not None:
            volume = _finite(vol_raw, "volume", raw)
            if volume < 0.0:
                raise MalformedTick("negative volume", raw)
            volume = self._normalize_volume(volume, raw.get("volume_unit"), raw)

        now = self._clock()
        ts_raw = _first(raw, _TS_FIELDS)
        if ts_raw is None:
            ts = now  # no source time: stamp on receipt
        else:
            try:
                ts = parse_epoch(ts_raw)
            except (TypeError, ValueError) as e:
                raise MalformedTick(f"bad timestamp: {e}", raw) from None
        if ts - now > self.cfg.max_future_skew_s:
            raise MalformedTick(f"timestamp {ts - now:.3f}s ahead of local clock", raw)

        return Tick(key=key, ts=float(ts), value=value, volume=volume, source=source)

    # ---------- key canonicalization ----------

    def _canonical_key(self, raw: Mapping[str, Any]) -> MetricKey:
        key_raw = _first(raw, _KEY_FIELDS)
        if key_raw is not None:
            parts = str(key_raw).split("/")
            if len(parts) != 3:
                raise MalformedTick(f"key must be market/zone/metric: {key_raw!r}", raw)
            market, zone, metric = parts
        else:
            market = _first(raw, _MARKET_FIELDS)
            zone = _first(raw, _ZONE_FIELDS)
            metric = _first(raw, _METRIC_FIELDS)
            if market is None or zone is None or metric is None:
                raise MalformedTick("missing market/zone/metric", raw)

        m = str(market).strip().upper()
        z = str(zone).strip().upper()
        n = str(metric).strip().lower().replace("_", "-").replace(" ", "-")
        if not m or not z or not n:
            raise MalformedTick("empty key component", raw)
        return MetricKey(
            market=self._markets.get(m, m),
            zone=self._zones.get(z, z),
            metric=self._metrics.get(n, n),
        )

    # ---------- unit normalization ----------

    def _normalize_value(self, value: float, unit: Any, raw: Any) -> float:
        if unit is None:
            return value
        u = str(unit).strip().upper()
        if u in PASSTHROUGH_UNITS:
            return value
        if u in POWER_UNITS:
            return value * POWER_UNITS[u]
        if u in ENERGY_UNITS:
            return value * ENERGY_UNITS[u]
        cur, sep, energy = u.partition("/")
        if sep and energy in ENERGY_UNITS:
            rate = self._fx(cur)
            if rate is None:
                raise MalformedTick(f"no fx rate for {cur}", raw)
            # price per <energy> -> price per MWh in base currency
            return value * rate / ENERGY_UNITS[energy]
        raise MalformedTick(f"unknown unit {unit!r}", raw)

    def _normalize_volume(self, volume: float, unit: Any, raw: Any) -> float:
        if unit is None:
            return volume
        u = str(unit).strip().upper()
        if u in ENERGY_UNITS:
            return volume * ENERGY_UNITS[u]
        if u in POWER_UNITS:
            return volume * POWER_UNITS[u]
        raise MalformedTick(f"unknown volume unit {unit!r}", raw)

    def _fx(self, currency: str) -> Optional[float]:
        if currency == self.cfg.base_currency.upper():
            return 1.0
        return self._fx_rates.get(currency)
