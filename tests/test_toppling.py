import logging

import numpy as np
import pytest

from sandpile_sim import toppling as toppling_module
from sandpile_sim.cell import Direction
from sandpile_sim.errors import ConfigurationError, InvariantViolation, ResourceMissing
from sandpile_sim.grid import BoundaryType, Grid
from sandpile_sim.toppling import Toppling, TopplingIterator, TopplingMethod


def make_grid(L, boundary_type=BoundaryType.PERIODIC, seed=0):
    return Grid(
        L,
        L,
        boundary_type,
        direction_rng=np.random.default_rng(seed),
        neighbour_rng=np.random.default_rng(seed + 1),
    )


def make_toppling(grid, method, iterator=TopplingIterator.FOLLOW_ACTIVITY, observe=True):
    tp = Toppling(grid, sweep_rng=np.random.default_rng(10), toppling_rng=np.random.default_rng(11))
    tp.set_toppling_method(method)
    tp.set_toppling_iterator(iterator)
    if observe:
        for cell in grid.cells:
            cell.set_observer(tp)
    return tp


def test_default_thresholds():
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.MANNA_LIN2010)
    assert tp.threshold == 2.0
    tp.set_toppling_method(TopplingMethod.BTW1987)
    assert tp.threshold == 4.0
    tp.set_toppling_method(TopplingMethod.ROSSUM2011_DISS)
    assert tp.threshold == 0.0


def test_undefined_method_rejected():
    grid = make_grid(4)
    tp = Toppling(grid, sweep_rng=np.random.default_rng(0), toppling_rng=np.random.default_rng(1))
    with pytest.raises(ConfigurationError):
        tp.topple()
    with pytest.raises(ConfigurationError):
        tp.set_toppling_method(TopplingMethod.UNDEFINED)


def test_threshold_override_and_reset(caplog):
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.BTW1987)
    with caplog.at_level(logging.WARNING):
        tp.set_toppling_threshold(8)
    assert tp.threshold == 8.0
    assert "Non-standard toppling threshold" in caplog.text

    tp.set_toppling_threshold(-1)
    assert tp.threshold == 4.0


def test_threshold_change_rebuilds_active_set():
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.BTW1987)
    grid.get_cell(5).increase(5)
    assert tp.active_indices() == [5]
    tp.set_toppling_threshold(6)
    assert tp.active_indices() == []


def test_capacity_warning(caplog):
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.BTW1987)
    with caplog.at_level(logging.WARNING):
        tp.set_cell_capacity(5)
    assert "capacity" in caplog.text
    assert all(cell.max_capacity == 5.0 for cell in grid.cells)


def test_active_set_follows_heights():
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.BTW1987)
    cell = grid.get_cell(2, 1)
    cell.increase(3)
    assert tp.active_indices() == []
    cell.increase(1)
    assert tp.active_indices() == [6]
    cell.decrease(2)
    assert tp.active_indices() == []


def test_btw_equal_split_single_toppling():
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.BTW1987)
    tp.set_equal_split(True)
    grid.get_cell(1, 1).increase(4)

    assert tp.topple() == 1
    assert grid.get_cell(1, 1).height == 0.0
    for n in grid.get_neighbours(1, 1):
        assert grid.get_cell(n).height == 1.0
    assert grid.count_grains() == 4.0
    assert tp.active_indices() == []


def test_random_split_conserves_grains():
    grid = make_grid(8)
    tp = make_toppling(grid, TopplingMethod.BTW1987)
    for n in (0, 9, 18, 27):
        grid.get_cell(n).increase(4)

    size = tp.topple()
    assert size >= 4
    assert grid.count_grains() == pytest.approx(16.0)
    assert all(cell.height < 4.0 for cell in grid.cells)


def test_below_threshold_does_not_topple():
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.BTW1987)
    cell = grid.get_cell(0)
    cell.increase(3.9)
    assert not tp.topple_cell(cell, grid.get_neighbours(0, 0))
    assert cell.height == pytest.approx(3.9)


def test_manna_moves_decrease_to_neighbours():
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.MANNA_LIN2010)
    cell = grid.get_cell(1, 1)
    cell.increase(2)
    neighbours = grid.get_neighbours(1, 1)

    assert tp.topple_cell(cell, neighbours)
    # decrease is the dissipation amount (4), not the threshold
    assert cell.height == pytest.approx(-2.0)
    assert sum(grid.get_cell(n).height for n in neighbours) == pytest.approx(4.0)
    assert grid.count_grains() == pytest.approx(2.0)


@pytest.mark.parametrize("rate, expected", [(1.0, 0.0), (0.0, 4.0)])
def test_lin2006_bulk_dissipation(rate, expected):
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.LIN2006)
    tp.set_dissipative_mode(True)
    tp.set_dissipation_rate(rate)
    cell = grid.get_cell(0)
    cell.increase(4)

    assert tp.topple_cell(cell, grid.get_neighbours(0, 0))
    assert grid.count_grains() == pytest.approx(expected)


def test_lin2006_warns_without_dissipation(caplog):
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.LIN2006)
    with caplog.at_level(logging.WARNING):
        tp.set_dissipative_mode(False)
    assert "bulk-dissipation" in caplog.text


def test_rossum2011_needs_diss_grid_and_threshold():
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.ROSSUM2011)
    cell = grid.get_cell(0)
    cell.increase(4)
    with pytest.raises(ConfigurationError):
        tp.topple_cell(cell, grid.get_neighbours(0, 0))

    tp.set_dissipation_threshold(3)
    with pytest.raises(ResourceMissing):
        tp.topple_cell(cell, grid.get_neighbours(0, 0))


@pytest.mark.parametrize("diss_height, expected", [(5.0, 0.0), (1.0, 4.0)])
def test_rossum2011_absorbs_above_threshold(diss_height, expected):
    grid = make_grid(4)
    diss = make_grid(4, seed=5)
    tp = make_toppling(grid, TopplingMethod.ROSSUM2011)
    tp.set_dissipation_threshold(3)
    tp.set_diss_grid(diss)
    diss.get_cell(5).increase(diss_height)
    cell = grid.get_cell(5)
    cell.increase(4)

    assert tp.topple_cell(cell, grid.get_neighbours(1, 1))
    assert cell.height == 0.0
    assert grid.count_grains() == pytest.approx(expected)


def test_flocking_moves_one_grain_along_direction(monkeypatch):
    monkeypatch.setattr(toppling_module, "DIRECTION_NOISE", 0.0)
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.ROSSUM2011_DISS, TopplingIterator.RANDOM_ALL, observe=False)
    cell = grid.get_cell(1, 1)
    cell.direction = Direction.EAST
    cell.increase(3)
    neighbours = grid.get_neighbours(1, 1)

    assert not tp.topple_cell(cell, neighbours)
    target = grid.get_cell(2, 1)
    assert cell.height == 2.0
    assert target.height == 1.0
    assert target.direction == Direction.EAST


def test_flocking_needs_four_neighbours():
    grid = make_grid(4, BoundaryType.WALL_DISSIPATING)
    tp = make_toppling(grid, TopplingMethod.ROSSUM2011_DISS, TopplingIterator.RANDOM_ALL, observe=False)
    cell = grid.get_cell(0, 0)
    cell.increase(1)
    with pytest.raises(InvariantViolation):
        tp.topple_cell(cell, grid.get_neighbours(0, 0))


def test_flocking_field_conserves_grains():
    grid = make_grid(8)
    tp = make_toppling(grid, TopplingMethod.ROSSUM2011_DISS, TopplingIterator.RANDOM_ALL, observe=False)
    for n in range(0, 64, 3):
        grid.get_cell(n).increase(5)
    before = grid.count_grains()
    for _ in range(10):
        assert tp.topple() == 0
    assert grid.count_grains() == pytest.approx(before)
    assert all(0.0 <= cell.height <= cell.max_capacity for cell in grid.cells)


def test_random_all_topples_until_stable():
    grid = make_grid(4, BoundaryType.DISSIPATING)
    tp = make_toppling(grid, TopplingMethod.BTW1987, TopplingIterator.RANDOM_ALL, observe=False)
    tp.set_equal_split(True)
    for cell in grid.cells:
        cell.increase(4)

    assert tp.topple() >= 16
    assert all(cell.height < 4 for cell in grid.cells)


def test_random_fraction_visits_subset():
    grid = make_grid(4, BoundaryType.DISSIPATING)
    tp = make_toppling(grid, TopplingMethod.BTW1987, TopplingIterator.RANDOM_FRACTION, observe=False)
    for cell in grid.cells:
        cell.increase(4)

    size = tp.topple()
    # every pass looks at width (4) cells and the last pass topples nothing
    assert size >= 1
    assert grid.count_grains() <= 64.0


def test_count_critical_cells():
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.BTW1987)
    grid.get_cell(0).increase(3)
    grid.get_cell(7).increase(3)
    grid.get_cell(9).increase(2)
    assert tp.count_critical_cells() == 2


def test_grains_during_avalanches_counter():
    grid = make_grid(4)
    tp = make_toppling(grid, TopplingMethod.BTW1987)
    tp.set_equal_split(True)
    tp.set_counter_during_avalanches(True)
    grid.get_cell(5).increase(4)

    tp.topple()
    events = tp.grains_during_avalanches.get_events()
    # before the first pass and after it
    assert events == {4: 2}
