"""
Relaxation engine for one grid.

A ``Toppling`` decides when a cell is critical, how its grains are handed to
the neighbours and in which order the grid is swept until nothing topples any
more. The toppling methods are named after the papers they come from:

- MANNA_LIN2010:   "Renormalization-group approach to the Manna sandpile"
                   (conserving, stochastic)
- BTW1987:         Bak, Tang & Wiesenfeld, "Self-organized criticality: An
                   explanation of the 1/f noise" (conserving, deterministic)
- LIN2006:         Lin et al., "Effects of bulk dissipation on the critical
                   exponents of a sandpile" (dissipating, stochastic)
- ROSSUM2011:      BTW-like, but grains vanish where a companion dissipation
                   field is above a threshold (emergent dissipation)
- ROSSUM2011_DISS: the companion field itself, grains drift in the direction
                   stored in each cell ("flocking")

Three sweep strategies exist:

- RANDOM_ALL:      every pass visits all cells in a fresh random order
- RANDOM_FRACTION: every pass visits only ``width`` random cells, so the pass
                   length does not scale with the number of cells
- FOLLOW_ACTIVITY: only cells at or above threshold are visited; they are kept
                   in an active set that cells update through ``notify``
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import List, Optional, Sequence, Set

import numpy as np

from .cell import NEIGHBOUR_COUNT, Cell, Direction
from .errors import ConfigurationError, InvariantViolation, ResourceMissing
from .events import EventCounter
from .grid import Grid

logger = logging.getLogger(__name__)

# Chance per flocking move that a random neighbour gets a random direction
DIRECTION_NOISE = 0.01


class TopplingMethod(Enum):
    UNDEFINED = "undefined"
    MANNA_LIN2010 = "Lin2010, stochastic"
    BTW1987 = "BTW1987, deterministic"
    LIN2006 = "Lin2006, bulk-dissipation"
    ROSSUM2011 = "Rossum2011, emergent dissipation"
    ROSSUM2011_DISS = "Rossum2011_diss, emergent dissipation (second field)"

    def __str__(self) -> str:
        return self.value


class TopplingIterator(Enum):
    RANDOM_ALL = "random all"
    RANDOM_FRACTION = "random fraction"
    FOLLOW_ACTIVITY = "follow activity"


DEFAULT_THRESHOLDS = {
    TopplingMethod.MANNA_LIN2010: 2.0,
    TopplingMethod.BTW1987: 4.0,
    TopplingMethod.LIN2006: 4.0,
    TopplingMethod.ROSSUM2011: 4.0,
    TopplingMethod.ROSSUM2011_DISS: 0.0,
}


class Toppling:
    """
    Topples the cells of ``grid`` until it is stable.

    ``sweep_rng`` orders the cells within a pass, ``toppling_rng`` draws the
    redistribution (splits, random neighbours, bulk dissipation). Both are
    consumed continuously and are usually shared with the other toppling
    instance of a sandpile.
    """

    def __init__(
        self,
        grid: Grid,
        *,
        sweep_rng: np.random.Generator,
        toppling_rng: np.random.Generator,
    ) -> None:
        self.grid = grid
        self.diss_grid: Optional[Grid] = None
        self.sweep_rng = sweep_rng
        self.toppling_rng = toppling_rng

        self.threshold = 4.0
        self.dissipative_mode = False
        self.dissipation_rate = 0.1
        self.dissipation_threshold = 0.0
        self.dissipation_amount = 4.0
        self.equal_split = False

        self.method = TopplingMethod.UNDEFINED
        self.iterator = TopplingIterator.FOLLOW_ACTIVITY

        self.active_cells: Set[int] = set()
        self.random_indices: Optional[np.ndarray] = None

        self.count_during_avalanches = False
        self.grains_during_avalanches: Optional[EventCounter] = None

    # ------------------------------------------------------------- configuration
    def set_toppling_method(self, method: TopplingMethod) -> None:
        """Select the method and reset the threshold to that method's default."""
        if method == TopplingMethod.UNDEFINED:
            raise ConfigurationError("Undefined toppling method")
        self.method = method
        self._set_threshold(DEFAULT_THRESHOLDS[method])

    def set_toppling_threshold(self, threshold: float) -> None:
        """
        Overwrite the method's threshold. Call ``set_toppling_method`` first.
        A negative value restores the default threshold of the method.
        """
        if self.method == TopplingMethod.UNDEFINED:
            raise ConfigurationError("Set the toppling method before its threshold")
        if threshold < 0:
            self._set_threshold(DEFAULT_THRESHOLDS[self.method])
        elif threshold != self.threshold:
            logger.warning("Non-standard toppling threshold: %g", threshold)
            self._set_threshold(float(threshold))

    def _set_threshold(self, threshold: float) -> None:
        self.threshold = float(threshold)
        if self.iterator == TopplingIterator.FOLLOW_ACTIVITY:
            self._rebuild_active_cells()

    def set_toppling_iterator(self, iterator: TopplingIterator) -> None:
        self.iterator = iterator
        if iterator in (TopplingIterator.RANDOM_ALL, TopplingIterator.RANDOM_FRACTION):
            self.random_indices = np.arange(self.grid.size, dtype=np.int64)
            self.active_cells.clear()
        else:
            self.random_indices = None
            self._rebuild_active_cells()

    def set_dissipative_mode(self, mode: bool) -> None:
        self.dissipative_mode = bool(mode)
        if self.method == TopplingMethod.LIN2006 and not self.dissipative_mode:
            logger.warning("Toppling in Lin2006 normally is with bulk-dissipation!")

    def set_diss_grid(self, grid: Grid) -> None:
        self.diss_grid = grid

    def set_dissipation_threshold(self, threshold: float) -> None:
        self.dissipation_threshold = float(threshold)

    def set_dissipation_rate(self, rate: float) -> None:
        self.dissipation_rate = float(rate)

    def set_dissipation_amount(self, amount: float) -> None:
        self.dissipation_amount = float(amount)

    def set_equal_split(self, equal: bool) -> None:
        """Give every neighbour exactly ``decrease / n`` instead of a random share."""
        self.equal_split = bool(equal)

    def set_cell_capacity(self, capacity: float) -> None:
        """Set the maximum capacity of every cell in the grid (threshold first)."""
        if capacity < 2 * self.threshold:
            logger.warning(
                "Probably you want to set capacity (%g) at least two times the "
                "toppling threshold (%g)",
                capacity,
                self.threshold,
            )
        for cell in self.grid.cells:
            cell.max_capacity = float(capacity)

    def set_counter_during_avalanches(self, count: bool) -> None:
        """Counting grains between passes is expensive, so it is off by default."""
        self.count_during_avalanches = bool(count)
        self.grains_during_avalanches = EventCounter() if count else None

    # ------------------------------------------------------------ active cells
    def notify(self, cell_index: int, new_height: float) -> None:
        """Observer hook: keep the active set in sync with a cell's height."""
        if self.iterator != TopplingIterator.FOLLOW_ACTIVITY:
            return
        if new_height < self.threshold:
            self.active_cells.discard(cell_index)
        else:
            self.active_cells.add(cell_index)

    check_cell = notify

    def _rebuild_active_cells(self) -> None:
        self.active_cells = {
            cell.identity for cell in self.grid.cells if cell.height >= self.threshold
        }

    # ------------------------------------------------------------------ counts
    def count_critical_cells(self) -> int:
        """
        Number of cells one "share" below threshold, i.e. at
        ``threshold - dissipation_amount / 4``. With fractional grains this is
        only a pseudo-critical count.
        """
        level = self.threshold - self.dissipation_amount / NEIGHBOUR_COUNT
        return sum(
            1 for cell in self.grid.cells if math.isclose(cell.height, level, abs_tol=1e-9)
        )

    # ---------------------------------------------------------------- toppling
    def _split(self, decrease: float, n: int) -> np.ndarray:
        if self.equal_split:
            return np.full(n, decrease / n)
        shares = self.toppling_rng.random(n)
        return shares * (decrease / shares.sum())

    def topple_cell(self, cell: Cell, neighbours: Sequence[int]) -> bool:
        """
        Topple one cell onto the neighbours given by index. Returns True if the
        cell toppled (and so counts towards the avalanche size).
        """
        if self.method == TopplingMethod.ROSSUM2011_DISS:
            self._drift(cell, neighbours)
            return False

        if cell.height < self.threshold:
            return False
        if not neighbours:
            raise InvariantViolation(f"Cell {cell.identity} has no neighbours to topple onto")

        grid = self.grid
        n = len(neighbours)
        decrease = self.dissipation_amount if self.dissipation_amount > 0 else float(n)
        increase = self._split(decrease, n)
        method = self.method

        if method == TopplingMethod.MANNA_LIN2010:
            # every share goes to an independently drawn neighbour
            cell.decrease(decrease)
            for share in increase:
                target = neighbours[int(self.toppling_rng.integers(0, n))]
                grid.get_cell(target).increase(share)

        elif method == TopplingMethod.BTW1987:
            # decrease by the configured amount, not by the threshold, so that
            # reflecting walls stay conservative
            cell.decrease(decrease)
            for target, share in zip(neighbours, increase):
                grid.get_cell(target).increase(share)

        elif method == TopplingMethod.LIN2006:
            cell.decrease(decrease)
            if self.dissipative_mode:
                for target, share in zip(neighbours, increase):
                    if self.toppling_rng.random() >= self.dissipation_rate:
                        grid.get_cell(target).increase(share)
            else:
                # bulk-conservative like BTW, different from the authors
                for target, share in zip(neighbours, increase):
                    grid.get_cell(target).increase(share)

        elif method == TopplingMethod.ROSSUM2011:
            if self.dissipation_threshold <= 0:
                raise ConfigurationError("Rossum2011 needs a positive dissipation threshold")
            if self.diss_grid is None:
                raise ResourceMissing("Rossum2011 toppling needs a dissipation grid")
            absorbed = self.diss_grid.get_cell(cell.identity).height >= self.dissipation_threshold
            cell.decrease(decrease)
            if not absorbed:
                for target, share in zip(neighbours, increase):
                    grid.get_cell(target).increase(share)

        else:
            raise ConfigurationError(f"Undefined toppling method: {method}")

        return True

    def _drift(self, cell: Cell, neighbours: Sequence[int]) -> None:
        """Move one grain along the cell's direction and let the receiver adopt it."""
        if len(neighbours) != NEIGHBOUR_COUNT:
            raise InvariantViolation(
                f"Flocking needs exactly {NEIGHBOUR_COUNT} neighbours, got {len(neighbours)}"
            )
        if cell.height <= 0:
            return
        direction = cell.direction
        target = self.grid.get_cell(neighbours[direction])
        cell.transfer(target, 1.0)
        target.direction = direction

        # occasional noise keeps the field from freezing into a static pattern
        if self.toppling_rng.random() < DIRECTION_NOISE:
            which = int(self.toppling_rng.integers(0, NEIGHBOUR_COUNT))
            new_direction = int(self.toppling_rng.integers(0, NEIGHBOUR_COUNT))
            self.grid.get_cell(neighbours[which]).direction = Direction(new_direction)

    def _topple_index(self, index: int) -> bool:
        i, j = self.grid.coordinates(index)
        neighbours = self.grid.get_neighbours(i, j)
        return self.topple_cell(self.grid.cells[index], neighbours)

    def topple(self) -> int:
        """
        Topple until the grid is stable and return the number of toppling events.

        There is no cap on the number of passes: a method/boundary combination
        that never loses grains keeps toppling forever.
        """
        if self.method == TopplingMethod.UNDEFINED:
            raise ConfigurationError("Undefined toppling method")
        if self.iterator == TopplingIterator.FOLLOW_ACTIVITY:
            return self._follow_activity()
        return self._random_sweeps()

    def _random_sweeps(self) -> int:
        avalanche_size = 0
        if self.random_indices is None:
            self.random_indices = np.arange(self.grid.size, dtype=np.int64)
        if self.iterator == TopplingIterator.RANDOM_FRACTION:
            iterate_number = self.grid.width
        else:
            iterate_number = self.grid.size

        while True:
            self.sweep_rng.shuffle(self.random_indices)
            toppled = 0
            for index in self.random_indices[:iterate_number]:
                if self._topple_index(int(index)):
                    toppled += 1
            avalanche_size += toppled
            if toppled == 0:
                return avalanche_size

    def _follow_activity(self) -> int:
        avalanche_size = 0
        first = True
        while self.active_cells:
            # take the active set out before toppling; toppling refills it
            indices = np.fromiter(self.active_cells, dtype=np.int64, count=len(self.active_cells))
            indices.sort()
            self.sweep_rng.shuffle(indices)
            self.active_cells.clear()

            if self.count_during_avalanches and first:
                self.grains_during_avalanches.add_event(int(self.grid.count_grains()))
            first = False

            for index in indices:
                if self._topple_index(int(index)):
                    avalanche_size += 1

            if self.count_during_avalanches:
                self.grains_during_avalanches.add_event(int(self.grid.count_grains()))
        return avalanche_size

    def active_indices(self) -> List[int]:
        return sorted(self.active_cells)


__all__ = [
    "Toppling",
    "TopplingMethod",
    "TopplingIterator",
    "DEFAULT_THRESHOLDS",
    "DIRECTION_NOISE",
]
