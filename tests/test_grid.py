import numpy as np
import pytest

from sandpile_sim.errors import ConfigurationError, InvariantViolation
from sandpile_sim.grid import BoundaryType, Grid


def make_grid(width, height, boundary_type, seed=0):
    return Grid(
        width,
        height,
        boundary_type,
        direction_rng=np.random.default_rng(seed),
        neighbour_rng=np.random.default_rng(seed + 1),
    )


def test_index_and_coordinates():
    grid = make_grid(4, 3, BoundaryType.PERIODIC)
    assert grid.size == 12
    assert grid.index(2, 1) == 6
    assert grid.coordinates(6) == (2, 1)
    assert grid.get_cell(2, 1) is grid.get_cell(6)
    assert grid.get_cell(6).identity == 6


@pytest.mark.parametrize("i, j", [(-1, 0), (4, 0), (0, 3), (0, -1)])
def test_out_of_range_coordinates(i, j):
    grid = make_grid(4, 3, BoundaryType.PERIODIC)
    with pytest.raises(InvariantViolation):
        grid.get_cell(i, j)


def test_out_of_range_index():
    grid = make_grid(4, 4, BoundaryType.PERIODIC)
    with pytest.raises(InvariantViolation):
        grid.get_cell(16)
    with pytest.raises(InvariantViolation):
        grid.coordinates(-1)


def test_reservoir_lookup_and_count():
    grid = make_grid(4, 4, BoundaryType.DISSIPATING)
    assert grid.reservoir_id == -5
    assert grid.get_cell(grid.reservoir_id) is grid.reservoir

    grid.get_cell(0, 0).increase(2)
    grid.get_cell(3, 3).increase(1.5)
    grid.reservoir.increase(100)
    assert grid.count_grains() == pytest.approx(3.5)


def test_periodic_neighbours_wrap():
    grid = make_grid(4, 4, BoundaryType.PERIODIC)
    # north, west, south, east
    assert grid.get_neighbours(0, 0) == [12, 3, 4, 1]
    assert grid.get_neighbours(3, 3) == [11, 14, 3, 12]


def test_dissipating_neighbours_hit_reservoir():
    grid = make_grid(4, 4, BoundaryType.DISSIPATING)
    res = grid.reservoir_id
    assert grid.get_neighbours(0, 0) == [res, res, 4, 1]
    assert grid.get_neighbours(1, 1) == [1, 4, 9, 6]


def test_wall_dissipating_neighbours():
    grid = make_grid(4, 4, BoundaryType.WALL_DISSIPATING)
    res = grid.reservoir_id
    assert grid.get_neighbours(0, 0) == [4, 1]
    assert grid.get_neighbours(1, 0) == [0, 5, 2]
    assert grid.get_neighbours(3, 3) == [11, 14, res, res]


def test_within_circle_8x8():
    grid = make_grid(8, 8, BoundaryType.CIRCULAR)
    assert grid.within_circle(4, 4)
    assert not grid.within_circle(0, 0)
    assert not grid.within_circle(-1, 4)


def test_within_circle_needs_even_square_grid():
    with pytest.raises(InvariantViolation):
        make_grid(7, 7, BoundaryType.CIRCULAR).within_circle(3, 3)
    with pytest.raises(InvariantViolation):
        make_grid(8, 6, BoundaryType.CIRCULAR).within_circle(3, 3)


def test_circular_neighbours_outside_circle_are_reservoir():
    grid = make_grid(8, 8, BoundaryType.CIRCULAR)
    neighbours = grid.get_neighbours(1, 4)
    # west neighbour (0, 4) lies outside the circle
    assert neighbours[1] == grid.reservoir_id
    assert neighbours[3] == grid.index(2, 4)


@pytest.mark.parametrize(
    "boundary_type",
    [
        BoundaryType.PERIODIC,
        BoundaryType.CIRCULAR,
        BoundaryType.RANDOM_NEIGHBOURS,
        BoundaryType.FULLY_CONNECTED,
    ],
)
def test_four_neighbours_everywhere(boundary_type):
    grid = make_grid(8, 8, boundary_type)
    for j in range(8):
        for i in range(8):
            assert len(grid.get_neighbours(i, j)) == 4


def test_random_neighbours_are_quenched():
    grid = make_grid(8, 8, BoundaryType.RANDOM_NEIGHBOURS)
    first = [grid.get_neighbours(i, j) for j in range(8) for i in range(8)]
    second = [grid.get_neighbours(i, j) for j in range(8) for i in range(8)]
    assert first == second
    assert sorted(grid.random_indices.tolist()) == list(range(64))


def test_fully_connected_neighbours():
    grid = make_grid(8, 8, BoundaryType.FULLY_CONNECTED)
    for _ in range(20):
        neighbours = grid.get_neighbours(3, 5)
        assert len(set(neighbours)) == 4
        assert grid.index(3, 5) not in neighbours
        assert all(0 <= n < 64 for n in neighbours)


def test_fully_connected_scratch_rng_leaves_stream_untouched():
    grid_a = make_grid(8, 8, BoundaryType.FULLY_CONNECTED)
    grid_b = make_grid(8, 8, BoundaryType.FULLY_CONNECTED)
    grid_a.get_neighbours(0, 0, rng=np.random.default_rng(99))
    assert grid_a.get_neighbours(1, 1) == grid_b.get_neighbours(1, 1)


def test_fully_connected_needs_enough_cells():
    grid = make_grid(2, 2, BoundaryType.FULLY_CONNECTED)
    with pytest.raises(InvariantViolation):
        grid.get_neighbours(0, 0)


def test_undefined_boundary_cannot_resolve():
    grid = make_grid(4, 4, BoundaryType.UNDEFINED)
    with pytest.raises(ConfigurationError):
        grid.get_neighbours(0, 0)


def test_heights_row_major():
    grid = make_grid(3, 2, BoundaryType.PERIODIC)
    grid.get_cell(2, 1).increase(4)
    heights = grid.heights()
    assert heights.shape == (6,)
    assert heights[5] == 4.0
    assert heights.sum() == 4.0
