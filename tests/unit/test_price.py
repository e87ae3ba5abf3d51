import numpy as np
import pytest

from gridwatch.data.ring_buffer import BucketArrays
from gridwatch.indicators.price import (
    compute_last,
    compute_ohlc,
    compute_spread,
    compute_spread_series,
    compute_vwap,
)


def arrays(rows, width_s=3600):
    """rows: (epoch, o, h, l, c, vol, n); vws = c * vol."""
    cols = list(zip(*rows)) if rows else [[]] * 7
    ep, o, h, l, c, vol, n = (np.asarray(x) for x in cols)
    return BucketArrays(
        width_s,
        ep.astype(np.int64), o.astype(float), h.astype(float), l.astype(float), c.astype(float),
        vol.astype(float), c.astype(float) * vol.astype(float), n.astype(np.int64),
    )


def test_vwap_single_tick_equals_price():
    b = arrays([(0, 412.5, 412.5, 412.5, 412.5, 3.0, 1)])
    assert compute_vwap(b) == pytest.approx(412.5)
    assert compute_vwap(b, "tick") == pytest.approx(412.5)


def test_vwap_zero_volume_is_undefined():
    b = arrays([(0, 10, 10, 10, 10, 0.0, 1), (3600, 12, 12, 12, 12, 0.0, 1)])
    assert compute_vwap(b) is None
    assert compute_vwap(arrays([])) is None


def test_vwap_weights_by_volume_on_close():
    b = arrays([(0, 9, 11, 8, 10, 1.0, 2), (3600, 10, 21, 10, 20, 3.0, 2)])
    assert compute_vwap(b) == pytest.approx((10 * 1 + 20 * 3) / 4)
    assert compute_vwap(b, "hlc3") == pytest.approx(((29 / 3) * 1 + (51 / 3) * 3) / 4)


def test_spread_non_negative_and_zero_for_constant():
    flat = arrays([(i * 3600, 50, 50, 50, 50, 1.0, 1) for i in range(5)])
    assert compute_spread(flat) == 0.0
    b = arrays([(0, 10, 15, 9, 12, 1.0, 3), (3600, 12, 13, 5, 6, 1.0, 3)])
    assert compute_spread(b) == 10.0
    assert compute_spread(arrays([])) is None


def test_spread_ignores_gap_fills():
    b = arrays([(0, 10, 12, 10, 11, 1.0, 1), (3600, 99, 99, 99, 99, 0.0, 0)])
    assert compute_spread(b) == 2.0


def test_spread_series_per_bucket():
    b = arrays([(0, 10, 15, 9, 12, 1.0, 3), (3600, 12, 12, 12, 12, 0.0, 0), (7200, 12, 13, 5, 6, 1.0, 3)])
    assert compute_spread_series(b) == ((0, 6.0), (7200, 8.0))


def test_ohlc_rollup_and_last():
    b = arrays([(0, 10, 15, 9, 12, 2.0, 3), (3600, 12, 13, 5, 6, 1.0, 2), (7200, 6, 6, 6, 6, 0.0, 0)])
    s = compute_ohlc(b)
    assert (s.open, s.high, s.low, s.close) == (10, 15, 5, 6)
    assert s.start == 0 and s.end == 7200
    assert s.volume == 3.0 and s.count == 5
    assert s.vwap == pytest.approx((12 * 2 + 6 * 1) / 3)
    assert compute_last(b) == 6.0
    assert compute_ohlc(arrays([])) is None
