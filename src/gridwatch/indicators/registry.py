from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Protocol, Union

from gridwatch.config import DAY_S, DerivedConfig
from gridwatch.data.ring_buffer import BucketArrays
from gridwatch.indicators.merit_order import GenerationUnit, MeritOrderCurve, compute_merit_order
from gridwatch.indicators.price import (
    OhlcSummary,
    compute_last,
    compute_ohlc,
    compute_spread,
    compute_spread_series,
    compute_vwap,
)
from gridwatch.indicators.profiles import compute_forward_envelope, compute_heatmap, compute_seasonality
from gridwatch.utils.types import MetricKey, NoData, Window

WEEK_S = 7 * DAY_S
YEAR_S = 365 * DAY_S


@dataclass(frozen=True, slots=True)
class CalcContext:
    key: MetricKey
    kind: str
    window: Window
    as_of: int
    cfg: DerivedConfig
    units: tuple[GenerationUnit, ...] = ()

    def no_data(self, reason: str) -> NoData:
        return NoData(self.key, self.kind, reason)


class ProducesDerived(Protocol):
    """One implementation per metric kind."""
    kind: str

    def default_window(self, cfg: DerivedConfig) -> Window: ...

    def compute(self, series: BucketArrays, ctx: CalcContext) -> Any: ...


WindowSpec = Union[Window, Callable[[DerivedConfig], Window]]


class _FnCalculator:
    __slots__ = ("kind", "_window", "_fn")

    def __init__(self, kind: str, window: WindowSpec, fn: Callable[[BucketArrays, CalcContext], Any]):
        self.kind = kind
        self._window = window
        self._fn = fn

    def default_window(self, cfg: DerivedConfig) -> Window:
        return self._window(cfg) if callable(self._window) else self._window

    def compute(self, series: BucketArrays, ctx: CalcContext) -> Any:
        return self._fn(series, ctx)


_CALCULATORS: Dict[str, ProducesDerived] = {}


def register(kind: str, window: WindowSpec):
    """
    register a derived-metric kind
    the function returns the metric value, or ctx.no_data(reason)
    """

    def decorator(func: Callable[[BucketArrays, CalcContext], Any]):
        _CALCULATORS[kind] = _FnCalculator(kind, window, func)
        return func

    return decorator


def get_calculator(kind: str) -> ProducesDerived:
    try:
        return _CALCULATORS[kind]
    except KeyError:
        raise ValueError(f"Unknown derived metric kind: {kind}") from None


def list_kinds() -> list[str]:
    return list(_CALCULATORS.keys())


def scalar_of(value: Any) -> float:
    """Single number an alert can compare against."""
    if isinstance(value, bool):
        raise TypeError("boolean is not a metric value")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, OhlcSummary):
        return value.close
    if isinstance(value, MeritOrderCurve) and value.clearing_price is not None:
        return value.clearing_price
    raise TypeError(f"{type(value).__name__} has no scalar reading")


# ---- calculators ----

@register("last", Window("1m", None))
def _last(b: BucketArrays, ctx: CalcContext):
    v = compute_last(b)
    return ctx.no_data("no_observations") if v is None else v


@register("ohlc", Window("1h", DAY_S))
def _ohlc(b: BucketArrays, ctx: CalcContext):
    v = compute_ohlc(b, ctx.cfg.vwap_basis)  # type: ignore[arg-type]
    return ctx.no_data("no_observations") if v is None else v


@register("vwap", Window("1h", DAY_S))
def _vwap(b: BucketArrays, ctx: CalcContext):
    v = compute_vwap(b, ctx.cfg.vwap_basis)  # type: ignore[arg-type]
    return ctx.no_data("zero_volume") if v is None else v


@register("spread", Window("1h", DAY_S))
def _spread(b: BucketArrays, ctx: CalcContext):
    v = compute_spread(b)
    return ctx.no_data("no_observations") if v is None else v


@register("spread_series", Window("1h", DAY_S))
def _spread_series(b: BucketArrays, ctx: CalcContext):
    v = compute_spread_series(b)
    return v if v else ctx.no_data("no_observations")


@register("merit_order", Window("1m", None))
def _merit_order(b: BucketArrays, ctx: CalcContext):
    # demand = latest value of the queried key (e.g. PL/CEN/load)
    if not ctx.units:
        return ctx.no_data("no_generation_units")
    demand = compute_last(b)
    if demand is None:
        return ctx.no_data("no_demand")
    return compute_merit_order(ctx.units, demand)


@register("heatmap", lambda cfg: Window("1h", cfg.heatmap_days * DAY_S))
def _heatmap(b: BucketArrays, ctx: CalcContext):
    v = compute_heatmap(b, tz_name=ctx.cfg.tz_name, agg=ctx.cfg.heatmap_agg)
    return ctx.no_data("no_observations") if v is None else v


@register("seasonality", lambda cfg: Window("1h", cfg.seasonality_weeks * WEEK_S, include_open=False))
def _seasonality(b: BucketArrays, ctx: CalcContext):
    v = compute_seasonality(b, tz_name=ctx.cfg.tz_name)
    return ctx.no_data("no_observations") if v is None else v


@register("forward_envelope", lambda cfg: Window("1d", cfg.envelope_years * YEAR_S + 2 * DAY_S, include_open=False))
def _forward_envelope(b: BucketArrays, ctx: CalcContext):
    v = compute_forward_envelope(
        b,
        as_of=ctx.as_of,
        horizon_months=ctx.cfg.forward_horizon_months,
        percentiles=ctx.cfg.envelope_percentiles,
        tz_name=ctx.cfg.tz_name,
    )
    return ctx.no_data("no_observations") if v is None else v
