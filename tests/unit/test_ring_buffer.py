import numpy as np
import pytest

from gridwatch.data.ring_buffer import BucketRing, BucketRow
from gridwatch.errors import StoreInvariantViolation


def row(epoch, px=1.0, vol=1.0, n=1):
    return BucketRow(epoch, px, px, px, px, vol, px * vol, n)


def test_append_and_last_epoch():
    rb = BucketRing(capacity=5, width_s=60)
    assert rb.last_epoch() is None

    rb.append(row(60))
    rb.append(row(120))
    assert rb.last_epoch() == 120
    assert rb.last_row().epoch == 120
    assert rb.size == 2


def test_view_last_contiguous():
    rb = BucketRing(capacity=5, width_s=5)
    for i in range(1, 4):
        rb.append(row(i * 5, px=float(i)))

    v = rb.view_last(2)
    assert v.length == 2
    assert len(v.slices) == 1
    ep, o, h, l, c, vol, vws, n = v.slices[0]
    assert list(ep) == [10, 15]
    assert np.allclose(c, [2.0, 3.0])


def test_capacity_plus_one_evicts_exactly_the_oldest():
    rb = BucketRing(capacity=4, width_s=5)
    for i in range(4):
        assert rb.append(row(i * 5)) is None

    evicted = rb.append(row(20))
    assert evicted == 0
    assert rb.size == 4

    arr = rb.arrays()
    assert arr.epoch.tolist() == [5, 10, 15, 20]
    assert np.all(np.diff(arr.epoch) == 5)


def test_view_last_wraparound_two_segments():
    rb = BucketRing(capacity=4, width_s=1)
    for i in range(1, 6):
        rb.append(row(i))

    v = rb.view_last(3)
    assert v.length == 3
    assert len(v.slices) in (1, 2)
    epochs = []
    for sl in v.slices:
        epochs.extend(sl[0].tolist())
    assert epochs == [3, 4, 5]


def test_non_contiguous_append_is_an_invariant_violation():
    rb = BucketRing(capacity=4, width_s=60)
    rb.append(row(60))
    with pytest.raises(StoreInvariantViolation):
        rb.append(row(180))
    with pytest.raises(StoreInvariantViolation):
        rb.append(row(60))
    assert rb.size == 1


def test_ohlc_order_checked_only_for_observed_buckets():
    rb = BucketRing(capacity=4, width_s=60)
    with pytest.raises(StoreInvariantViolation):
        rb.append(BucketRow(0, 10.0, 9.0, 8.0, 9.5, 1.0, 10.0, 1))
    # n == 0 rows are flat gap fills; nothing to check
    rb.append(BucketRow(0, 10.0, 10.0, 10.0, 10.0, 0.0, 0.0, 0))
    assert rb.size == 1


def test_arrays_range_selection_after_wrap():
    rb = BucketRing(capacity=3, width_s=10)
    for i in range(5):
        rb.append(row(i * 10, px=float(i)))
    # ring holds 20, 30, 40
    sel = rb.arrays(25, 41)
    assert sel.epoch.tolist() == [20, 30, 40]
    sel = rb.arrays(30, 40)
    assert sel.epoch.tolist() == [30]
    assert len(rb.arrays(100, 200)) == 0


def test_observed_drops_gap_fills():
    rb = BucketRing(capacity=4, width_s=5)
    rb.append(row(0, px=2.0))
    rb.append(BucketRow(5, 2.0, 2.0, 2.0, 2.0, 0.0, 0.0, 0))
    rb.append(row(10, px=3.0))
    obs = rb.arrays().observed()
    assert obs.epoch.tolist() == [0, 10]
