import pytest

from gridwatch.indicators.merit_order import GenerationUnit, compute_merit_order, validate_units

UNITS = [
    GenerationUnit("gas-1", 400, 95.0),
    GenerationUnit("coal-1", 800, 60.0),
    GenerationUnit("wind", 1200, 0.0),
    GenerationUnit("peaker", 150, 240.0),
    GenerationUnit("coal-2", 500, 60.0),
]


def test_steps_sorted_by_cost_with_id_tiebreak():
    curve = compute_merit_order(UNITS, demand=1500)
    assert [s.unit_id for s in curve.steps] == ["wind", "coal-1", "coal-2", "gas-1", "peaker"]
    assert [s.cumulative_capacity for s in curve.steps] == [1200, 2000, 2500, 2900, 3050]


def test_active_set_is_minimal_covering_prefix():
    curve = compute_merit_order(UNITS, demand=1500)
    assert [s.unit_id for s in curve.active] == ["wind", "coal-1"]
    assert curve.clearing_price == 60.0
    assert curve.shortfall == 0.0

    exact = compute_merit_order(UNITS, demand=2000)
    assert exact.active_count == 2


def test_demand_above_capacity_activates_all_and_reports_shortfall():
    curve = compute_merit_order(UNITS, demand=3500)
    assert curve.active_count == 5
    assert curve.clearing_price == 240.0
    assert curve.shortfall == pytest.approx(450.0)


def test_zero_demand_has_no_active_units():
    curve = compute_merit_order(UNITS, demand=0)
    assert curve.active_count == 0
    assert curve.clearing_price is None


@pytest.mark.parametrize(
    "units",
    [
        [GenerationUnit("a", 10, 1.0), GenerationUnit("a", 5, 2.0)],
        [GenerationUnit("a", 0, 1.0)],
        [GenerationUnit("a", 10, float("nan"))],
    ],
)
def test_validate_units_rejects(units):
    with pytest.raises(ValueError):
        validate_units(units)
