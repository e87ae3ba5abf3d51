from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional

import numpy as np

from gridwatch.data.ring_buffer import BucketArrays

PriceBasis = Literal["close", "hlc3", "ohlc4", "tick"]


def _price_basis(o: np.ndarray, h: np.ndarray, l: np.ndarray, c: np.ndarray, basis: PriceBasis) -> np.ndarray:
    if basis == "close":
        return c
    if basis == "hlc3":
        return (h + l + c) / 3.0
    if basis == "ohlc4":
        return (o + h + l + c) / 4.0
    raise ValueError(f"Unsupported price basis: {basis}")


def compute_vwap(b: BucketArrays, basis: PriceBasis = "close") -> Optional[float]:
    """
    VWAP over all buckets in `b`:  Σ(price_i * volume_i) / Σ(volume_i)

    basis:
      'close'  per-bucket close as the price (dashboard formula)
      'hlc3' / 'ohlc4' per-bucket typical price
      'tick'   exact tick-level VWAP from each bucket's valueWeightedSum

    Returns None when Σvolume == 0 (undefined).
    """
    if len(b) == 0:
        return None
    total_v = float(np.sum(b.vol))
    if total_v <= 0.0:
        return None
    if basis == "tick":
        return float(np.sum(b.vws)) / total_v
    px = _price_basis(b.o, b.h, b.l, b.c, basis)
    return float(np.sum(px * b.vol)) / total_v


def compute_spread(b: BucketArrays) -> Optional[float]:
    """max(price) - min(price) across observed buckets; never negative. None without observations."""
    obs = b.observed()
    if len(obs) == 0:
        return None
    return max(0.0, float(np.max(obs.h) - np.min(obs.l)))


def compute_spread_series(b: BucketArrays) -> tuple[tuple[int, float], ...]:
    """Per-bucket (start, high - low) for observed buckets (the hourly 'spread radar')."""
    obs = b.observed()
    spreads = np.maximum(obs.h - obs.l, 0.0)
    return tuple((int(e), float(s)) for e, s in zip(obs.epoch, spreads))


@dataclass(frozen=True, slots=True)
class OhlcSummary:
    start: int
    end: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    count: int
    vwap: Optional[float]


def compute_ohlc(b: BucketArrays, basis: PriceBasis = "close") -> Optional[OhlcSummary]:
    """Roll the window's observed buckets up into a single OHLC bar."""
    obs = b.observed()
    if len(obs) == 0:
        return None
    return OhlcSummary(
        start=int(obs.epoch[0]),
        end=int(obs.epoch[-1]) + b.width_s,
        open=float(obs.o[0]),
        high=float(np.max(obs.h)),
        low=float(np.min(obs.l)),
        close=float(obs.c[-1]),
        volume=float(np.sum(obs.vol)),
        count=int(np.sum(obs.n)),
        vwap=compute_vwap(obs, basis),
    )


def compute_last(b: BucketArrays) -> Optional[float]:
    """Close of the newest bucket that saw a tick."""
    obs = b.observed()
    if len(obs) == 0:
        return None
    return float(obs.c[-1])
