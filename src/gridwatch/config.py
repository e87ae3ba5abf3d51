from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Literal, Mapping, Optional

from gridwatch.utils.types import RESOLUTIONS, Window, resolution_seconds

DAY_S = 86_400

OverflowPolicy = Literal["drop_oldest", "disconnect"]


def _frozen(d: dict) -> Mapping:
    return MappingProxyType(dict(d))


DEFAULT_RETENTION_S: Mapping[str, int] = _frozen({
    "5s": DAY_S,
    "1m": DAY_S,
    "15m": 30 * DAY_S,
    "1h": 30 * DAY_S,
    "1d": 1826 * DAY_S,   # 5y incl. leap day
})


@dataclass(frozen=True, slots=True)
class NormalizerConfig:
    """
    Static lookup tables for the feed normalizer.
    base_currency: prices are converted into <base_currency>/MWh
    fx_rates:      units of base currency per 1 unit of the listed currency
    """
    max_future_skew_s: float = 5.0
    base_currency: str = "EUR"
    fx_rates: Mapping[str, float] = field(default_factory=lambda: _frozen({"EUR": 1.0}))
    market_aliases: Mapping[str, str] = field(default_factory=lambda: _frozen({}))
    zone_aliases: Mapping[str, str] = field(default_factory=lambda: _frozen({}))
    metric_aliases: Mapping[str, str] = field(default_factory=lambda: _frozen({}))


@dataclass(frozen=True, slots=True)
class StoreConfig:
    lateness_s: float = 60.0
    retention_s: Mapping[str, int] = field(default_factory=lambda: DEFAULT_RETENTION_S)
    close_queue_maxsize: int = 10_000

    def capacity(self, resolution: str) -> int:
        """Ring capacity is measured in *buckets*, not seconds."""
        return max(1, int(self.retention_s[resolution] // RESOLUTIONS[resolution]))


@dataclass(frozen=True, slots=True)
class DerivedConfig:
    tz_name: str = "UTC"
    vwap_basis: str = "close"
    heatmap_agg: str = "mean"
    heatmap_days: int = 7
    seasonality_weeks: int = 12
    envelope_years: int = 5
    envelope_percentiles: tuple[float, float] = (10.0, 90.0)
    forward_horizon_months: int = 36


@dataclass(frozen=True, slots=True)
class AlertConfig:
    event_history: int = 50_000
    notify_queue_maxsize: int = 2_000
    eq_tolerance: float = 1e-9


@dataclass(frozen=True, slots=True)
class SnapshotConfig:
    interval_s: float = 1.0
    resolutions: tuple[str, ...] = tuple(RESOLUTIONS)
    derived: tuple[tuple[str, Window], ...] = (
        ("last", Window("1m", None, include_open=True)),
        ("vwap", Window("1h", DAY_S)),
        ("spread", Window("1h", DAY_S)),
    )
    subscriber_queue_maxsize: int = 256
    overflow_policy: OverflowPolicy = "drop_oldest"
    default_staleness_s: float = 30.0
    down_after_factor: float = 5.0


@dataclass(frozen=True, slots=True)
class FeedConfig:
    feed_id: str
    url: str
    staleness_s: float = 30.0
    subscribe_msg: Optional[Mapping] = None
    open_timeout_s: float = 5.0
    ping_interval_s: float = 20.0
    initial_backoff_s: float = 0.25
    max_backoff_s: float = 30.0


@dataclass(frozen=True, slots=True)
class RedisConfig:
    url: Optional[str] = None
    mirror_queue_maxsize: int = 5_000

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True, slots=True)
class TelegramConfig:
    bot_token: str
    chat_id: str                # personal chat id or group id
    parse_mode: Optional[str] = None  # "HTML" or "MarkdownV2" or None
    timeout_s: float = 8.0
    per_chat_rate_per_sec: float = 1.0
    per_chat_burst: int = 3
    max_retries: int = 5
    initial_backoff_s: float = 0.5
    max_backoff_s: float = 8.0


@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Process-wide settings, passed explicitly to every component."""
    normalizer: NormalizerConfig = field(default_factory=NormalizerConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    derived: DerivedConfig = field(default_factory=DerivedConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    feeds: tuple[FeedConfig, ...] = ()
    redis: RedisConfig = field(default_factory=RedisConfig)
    telegram: Optional[TelegramConfig] = None
    tick_latency_budget_ms: float = 5.0
    alert_tz_name: str = "UTC"


# ---------------------------
# Environment loading
# ---------------------------

def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_json(name: str) -> Optional[dict]:
    raw = os.getenv(name)
    if not raw:
        return None
    val = json.loads(raw)
    if not isinstance(val, dict):
        raise ValueError(f"{name} must be a JSON object")
    return val


def feeds_from_env() -> tuple[FeedConfig, ...]:
    """
    FEEDS="spot=wss://host/spot,load=wss://host/load"
    FEED_<ID>_STALENESS_S / FEED_<ID>_SUBSCRIBE (JSON) tune each feed.
    """
    out: list[FeedConfig] = []
    for part in os.getenv("FEEDS", "").split(","):
        part = part.strip()
        if not part:
            continue
        feed_id, sep, url = part.partition("=")
        if not sep or not feed_id or not url:
            raise ValueError(f"FEEDS entry must be id=url, got {part!r}")
        env_id = feed_id.upper().replace("-", "_")
        out.append(
            FeedConfig(
                feed_id=feed_id,
                url=url,
                staleness_s=_env_float(f"FEED_{env_id}_STALENESS_S", 30.0),
                subscribe_msg=_env_json(f"FEED_{env_id}_SUBSCRIBE"),
            )
        )
    return tuple(out)


def retention_from_env() -> Mapping[str, int]:
    """RETENTION_S='{"1h": 7776000}' overrides retention (seconds) per resolution."""
    out = dict(DEFAULT_RETENTION_S)
    for res, secs in (_env_json("RETENTION_S") or {}).items():
        width = resolution_seconds(res)
        secs = int(secs)
        if secs < width:
            raise ValueError(f"RETENTION_S[{res}] must hold at least one bucket, got {secs}")
        out[res] = secs
    return _frozen(out)


def snapshot_derived_from_env() -> tuple[tuple[str, Window], ...]:
    """
    SNAPSHOT_DERIVED="last@1m,vwap@1h/86400,spread@1h/86400"
    Each entry is kind@resolution with an optional /lookback_s.
    Kinds are checked against the calculator registry by SnapshotService.
    """
    raw = os.getenv("SNAPSHOT_DERIVED", "").strip()
    if not raw:
        return SnapshotConfig().derived
    out: list[tuple[str, Window]] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        kind, sep, rest = part.partition("@")
        if not sep or not kind or not rest:
            raise ValueError(f"SNAPSHOT_DERIVED entry must be kind@resolution[/lookback_s], got {part!r}")
        res, _, lookback = rest.partition("/")
        resolution_seconds(res)
        lookback_s = int(lookback) if lookback else None
        if lookback_s is not None and lookback_s <= 0:
            raise ValueError(f"SNAPSHOT_DERIVED lookback must be positive, got {part!r}")
        out.append((kind, Window(res, lookback_s)))
    return tuple(out)


def telegram_from_env() -> Optional[TelegramConfig]:
    token = os.getenv("TELEGRAM_BOT_TOKEN")
    chat_id = os.getenv("TELEGRAM_CHAT_ID")
    if not token or not chat_id:
        return None
    return TelegramConfig(
        bot_token=token,
        chat_id=chat_id,
        parse_mode=os.getenv("TELEGRAM_PARSE_MODE") or None,
    )


def config_from_env() -> EngineConfig:
    fx = _env_json("FX_RATES") or {"EUR": 1.0}
    base = os.getenv("BASE_CURRENCY", "EUR").upper()
    fx.setdefault(base, 1.0)
    return EngineConfig(
        normalizer=NormalizerConfig(
            max_future_skew_s=_env_float("MAX_FUTURE_SKEW_S", 5.0),
            base_currency=base,
            fx_rates=_frozen({k.upper(): float(v) for k, v in fx.items()}),
            market_aliases=_frozen(_env_json("MARKET_ALIASES") or {}),
            zone_aliases=_frozen(_env_json("ZONE_ALIASES") or {}),
            metric_aliases=_frozen(_env_json("METRIC_ALIASES") or {}),
        ),
        store=StoreConfig(lateness_s=_env_float("LATENESS_S", 60.0), retention_s=retention_from_env()),
        derived=DerivedConfig(
            tz_name=os.getenv("MARKET_TZ", "UTC"),
            vwap_basis=os.getenv("VWAP_BASIS", "close"),
            heatmap_agg=os.getenv("HEATMAP_AGG", "mean"),
        ),
        snapshot=SnapshotConfig(
            interval_s=_env_float("SNAPSHOT_INTERVAL_S", 1.0),
            derived=snapshot_derived_from_env(),
            subscriber_queue_maxsize=int(_env_float("SUBSCRIBER_QUEUE_MAXSIZE", 256)),
            overflow_policy=os.getenv("SUBSCRIBER_OVERFLOW", "drop_oldest"),  # type: ignore[arg-type]
        ),
        feeds=feeds_from_env(),
        redis=RedisConfig(url=os.getenv("REDIS_URL") or None),
        telegram=telegram_from_env(),
        tick_latency_budget_ms=_env_float("TICK_LATENCY_BUDGET_MS", 5.0),
        alert_tz_name=os.getenv("ALERT_TZ", "UTC"),
    )
