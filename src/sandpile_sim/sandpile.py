from __future__ import annotations

import logging
from enum import Enum
from typing import Dict, Optional

import numpy as np

from .cell import NEIGHBOUR_COUNT
from .errors import ConfigurationError, InvariantViolation, ResourceMissing
from .events import EventCounter
from .grid import BoundaryType, Grid
from .multiresolution import as_field, max_level, order_parameters, patch_sums
from .toppling import Toppling, TopplingIterator, TopplingMethod
from .utils import RandomStreams

logger = logging.getLogger(__name__)

# Populate() must put at least this many grains in the dissipation grid
MIN_POPULATION = 10

# GVT_ORDERPARAM1 shows the order parameter of blocks on this level (4x4 cells)
ORDER_PARAMETER_LEVEL = 3


class GridValueType(Enum):
    """
    Values that can be requested from the sandpile.

    - HEIGHT:          height of a cell
    - HEIGHT_SCALED:   height divided by the cell's capacity
    - CRITICAL_CELLS:  critical cells (capacity where critical, else 0)
    - DISSIPATION:     scaled height of a cell in the dissipation grid
    - DIRECTION:       direction of a cell in the dissipation grid (/4)
    - NCN:             1 where some neighbour is critical, else 0
    - ORDERPARAM1:     order parameter from row and column sums of a block
    """

    HEIGHT = "height"
    HEIGHT_SCALED = "height scaled"
    CRITICAL_CELLS = "critical cells"
    DISSIPATION = "dissipation"
    DIRECTION = "direction"
    NCN = "non-critical neighbourhood"
    ORDERPARAM1 = "order parameter 1"


DEFAULT_BOUNDARIES = {
    TopplingMethod.ROSSUM2011: BoundaryType.PERIODIC,
    TopplingMethod.ROSSUM2011_DISS: BoundaryType.PERIODIC,
    TopplingMethod.LIN2006: BoundaryType.PERIODIC,
    TopplingMethod.MANNA_LIN2010: BoundaryType.CIRCULAR,
    TopplingMethod.BTW1987: BoundaryType.WALL_DISSIPATING,
}


class SandPile:
    """
    A sandpile of side ``L``: the grain grid with its toppling procedure and,
    for the Rossum2011 family, a second periodic "dissipation" grid whose
    field decides where grains vanish.

    Each call to ``drive`` drops one grain; ``relax`` then topples until the
    pile is stable and returns the avalanche size.
    """

    def __init__(
        self,
        L: int,
        method: TopplingMethod,
        boundary_type: BoundaryType = BoundaryType.UNDEFINED,
        streams: Optional[RandomStreams] = None,
    ) -> None:
        if method not in DEFAULT_BOUNDARIES:
            raise ConfigurationError(f"Unknown toppling method {method}, so what is the boundary condition?")
        self.L = int(L)
        self.method = method
        self.streams = streams or RandomStreams.from_feeds()

        self.boundary_type = DEFAULT_BOUNDARIES[method]
        if boundary_type != BoundaryType.UNDEFINED and boundary_type != self.boundary_type:
            logger.warning(
                'Overwriting default boundary type "%s" by "%s"', self.boundary_type, boundary_type
            )
            self.boundary_type = boundary_type
        else:
            logger.info('Standard boundary type "%s"', self.boundary_type)

        self.avalanches = EventCounter()
        self.grid: Optional[Grid] = None
        self.toppling: Optional[Toppling] = None
        self.diss_grid: Optional[Grid] = None
        self.diss_toppling: Optional[Toppling] = None

        # The flocking field can be studied on its own, without grains
        if method == TopplingMethod.ROSSUM2011_DISS:
            self._build_dissipation_grid()
            return

        self.grid = self._new_grid(self.boundary_type)
        self.toppling = self._new_toppling(self.grid)
        self.toppling.set_toppling_method(method)
        self.toppling.set_toppling_iterator(TopplingIterator.FOLLOW_ACTIVITY)
        for cell in self.grid.cells:
            cell.set_observer(self.toppling)

        if method == TopplingMethod.ROSSUM2011:
            self._build_dissipation_grid()

    # ---------------------------------------------------------------- builders
    def _new_grid(self, boundary_type: BoundaryType) -> Grid:
        return Grid(
            self.L,
            self.L,
            boundary_type,
            direction_rng=self.streams.direction,
            neighbour_rng=self.streams.neighbour,
        )

    def _new_toppling(self, grid: Grid) -> Toppling:
        return Toppling(grid, sweep_rng=self.streams.grid, toppling_rng=self.streams.toppling)

    def _build_dissipation_grid(self) -> None:
        self.diss_grid = self._new_grid(BoundaryType.PERIODIC)
        if self.toppling is not None:
            self.toppling.set_diss_grid(self.diss_grid)
        self.diss_toppling = self._new_toppling(self.diss_grid)
        self.diss_toppling.set_toppling_method(TopplingMethod.ROSSUM2011_DISS)
        self.diss_toppling.set_toppling_iterator(TopplingIterator.RANDOM_ALL)

    def _require_grid(self) -> Grid:
        if self.grid is None:
            raise ResourceMissing(f"{self.method} has no grain grid")
        return self.grid

    def _require_diss_grid(self) -> Grid:
        if self.diss_grid is None:
            raise ResourceMissing("There is no dissipation grid!")
        return self.diss_grid

    # -------------------------------------------------------------- accessors
    def get_toppling(self) -> Optional[Toppling]:
        return self.toppling

    def get_diss_toppling(self) -> Optional[Toppling]:
        return self.diss_toppling

    def get_avalanches(self) -> Dict[int, int]:
        return self.avalanches.get_events()

    def get_grains_during_avalanches(self) -> Optional[EventCounter]:
        return None if self.toppling is None else self.toppling.grains_during_avalanches

    # -------------------------------------------------------------- dynamics
    def populate(self, cell_count: int, particles_per_cell: float) -> float:
        """
        Seed the dissipation grid: every cell gets ``particles_per_cell`` grains
        with probability ``cell_count / L**2`` and is emptied otherwise.
        Returns the number of grains placed.
        """
        diss_grid = self._require_diss_grid()
        n_cells = diss_grid.size
        if cell_count >= n_cells:
            raise InvariantViolation(f"Cannot populate {cell_count} of {n_cells} cells")
        place = cell_count / float(n_cells)
        logger.info("Place if uniform() < %g", place)

        rng = self.streams.dissipation
        total = 0.0
        for cell in diss_grid.cells:
            cell.clear()
            if rng.random() < place:
                cell.increase(particles_per_cell)
                total += particles_per_cell
        if total <= MIN_POPULATION:
            raise InvariantViolation(
                f"Only {total:g} particles in dissipation grid, need more than {MIN_POPULATION}"
            )
        logger.info("Added %g particles to dissipation grid", total)
        return total

    def drive(self) -> None:
        """
        Drop one grain on a random cell. With a circular boundary only cells in
        the circle qualify; with walls the grain lands on one of the two walls.
        """
        grid = self._require_grid()
        rng = self.streams.drive
        while True:
            x = int(rng.integers(0, grid.width))
            y = int(rng.integers(0, grid.height))
            if self.boundary_type == BoundaryType.CIRCULAR:
                if grid.within_circle(x, y):
                    grid.get_cell(x, y).increase(1.0)
                    return
            elif self.boundary_type == BoundaryType.WALL_DISSIPATING:
                if y < grid.height // 2:
                    grid.get_cell(x, 0).increase(1.0)
                else:
                    grid.get_cell(0, x).increase(1.0)
                return
            else:
                grid.get_cell(x, y).increase(1.0)
                return

    def relax(self, measure: bool = True) -> int:
        """
        Topple the dissipation field (if any) and then the grain grid until both
        are stable. The avalanche size is recorded and returned when ``measure``
        is set and it is non-zero; otherwise 0 is returned.
        """
        avalanche_size = 0
        if self.diss_toppling is not None:
            avalanche_size += self.diss_toppling.topple()
        if self.toppling is not None:
            avalanche_size += self.toppling.topple()

        if avalanche_size > 0 and measure:
            self.avalanches.add_event(avalanche_size)
            return avalanche_size
        return 0

    def clear(self) -> None:
        if self.grid is not None:
            for cell in self.grid.cells:
                cell.clear()

    # -------------------------------------------------------------- snapshots
    def _critical_level(self, n_neighbours: int = NEIGHBOUR_COUNT) -> float:
        toppling = self.toppling
        return toppling.threshold - toppling.dissipation_amount / n_neighbours

    def get_values(self, gvt: GridValueType) -> np.ndarray:
        """Row-major float32 array with one value per cell. Never changes the pile."""
        if gvt == GridValueType.DISSIPATION:
            diss = self._require_diss_grid()
            return np.array(
                [c.height / c.max_capacity for c in diss.cells], dtype=np.float32
            )
        if gvt == GridValueType.DIRECTION:
            diss = self._require_diss_grid()
            return np.array(
                [int(c.direction) / float(NEIGHBOUR_COUNT) for c in diss.cells], dtype=np.float32
            )

        grid = self._require_grid()
        if gvt == GridValueType.HEIGHT:
            return grid.heights().astype(np.float32)
        if gvt == GridValueType.HEIGHT_SCALED:
            return np.array([c.height / c.max_capacity for c in grid.cells], dtype=np.float32)
        if gvt == GridValueType.CRITICAL_CELLS:
            level = self._critical_level()
            return np.array(
                [c.max_capacity if c.height >= level else 0.0 for c in grid.cells],
                dtype=np.float32,
            )
        if gvt == GridValueType.NCN:
            return self._non_critical_neighbourhood(grid)
        if gvt == GridValueType.ORDERPARAM1:
            return self._order_parameter_field(grid)
        raise ConfigurationError(f"Unknown grid value type: {gvt}")

    def _non_critical_neighbourhood(self, grid: Grid) -> np.ndarray:
        # a scratch generator keeps FULLY_CONNECTED queries off the simulation stream
        scratch = np.random.default_rng(0)
        values = np.zeros(grid.size, dtype=np.float32)
        for n in range(grid.size):
            i, j = grid.coordinates(n)
            neighbours = grid.get_neighbours(i, j, rng=scratch)
            level = self._critical_level(len(neighbours))
            if any(grid.get_cell(k).height >= level for k in neighbours):
                values[n] = 1.0
        return values

    def _order_parameter_input(self, grid: Grid) -> np.ndarray:
        if grid.width < 2:
            raise ConfigurationError(f"Order parameter needs L >= 2, got L={grid.width}")
        return as_field(grid.heights(), grid.width, grid.height)

    def _order_parameter_field(self, grid: Grid) -> np.ndarray:
        field = self._order_parameter_input(grid)
        level = min(ORDER_PARAMETER_LEVEL, max_level(grid.width) + 1)
        blocks = order_parameters(field, level)
        side = 1 << (level - 1)
        expanded = np.kron(blocks, np.ones((side, side)))
        return expanded.reshape(-1).astype(np.float32)

    def get_value(self, gvt: GridValueType) -> float:
        """
        Aggregate values. HEIGHT_SCALED gives the total number of grains; bulk
        dissipation is not tracked anywhere else, so counting is the faithful way.
        """
        if gvt == GridValueType.HEIGHT_SCALED:
            return self._require_grid().count_grains()
        if gvt == GridValueType.CRITICAL_CELLS:
            self._require_grid()
            return float(self.toppling.count_critical_cells())
        if gvt == GridValueType.DISSIPATION:
            return self._require_diss_grid().count_grains()
        if gvt == GridValueType.DIRECTION:
            diss = self._require_diss_grid()
            counts = np.bincount([int(c.direction) for c in diss.cells], minlength=NEIGHBOUR_COUNT)
            return float(np.argmax(counts))
        if gvt == GridValueType.ORDERPARAM1:
            grid = self._require_grid()
            field = self._order_parameter_input(grid)
            return float(order_parameters(field, max_level(grid.width) + 1)[0, 0])
        raise ConfigurationError(f"{gvt} is not available as an aggregate value")

    def coarsen(self, patch_size: int, size: Optional[int] = None) -> np.ndarray:
        """
        Heights summed over ``patch_size`` x ``patch_size`` patches, row-major over
        the patches. ``size``, if given, must equal the number of patches.
        """
        grid = self._require_grid()
        if patch_size == 1:
            return self.get_values(GridValueType.HEIGHT)
        if patch_size <= 0 or self.L % patch_size != 0:
            raise InvariantViolation(f"Patch size {patch_size} does not divide L={self.L}")
        expected = (self.L * self.L) // (patch_size * patch_size)
        if size is not None and size != expected:
            raise InvariantViolation(f"Expected {expected} patches, got size={size}")
        field = as_field(grid.heights(), grid.width, grid.height)
        return patch_sums(field, patch_size).reshape(-1).astype(np.float32)

    def print(self) -> None:
        if self.diss_grid is not None:
            self.diss_grid.print()
        if self.grid is not None:
            self.grid.print()


__all__ = ["SandPile", "GridValueType", "DEFAULT_BOUNDARIES", "MIN_POPULATION"]
