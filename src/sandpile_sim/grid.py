"""
Square lattice of ``Cell`` objects with pluggable boundary topologies.

Cells live in one row-major list (``index = j * width + i``) and are referred
to by index everywhere outside this module. One extra cell, the reservoir,
stands for "outside the grid". It has the identity ``-1 - width``, which can
never be a valid row-major index, and several neighbour slots may point at it
at the same time.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import List, Optional

import numpy as np

from .cell import NEIGHBOUR_COUNT, Cell
from .errors import ConfigurationError, InvariantViolation

logger = logging.getLogger(__name__)


class BoundaryType(Enum):
    """
    How the neighbours of edge cells are resolved.

    - UNDEFINED:          use the default of the toppling method (never resolvable)
    - PERIODIC:           north connected to south, east to west
    - DISSIPATING:        all four borders lead into the reservoir
    - WALL_DISSIPATING:   two reflecting walls (north, west), two dissipating ones
    - CIRCULAR:           the inscribed circle, everything outside is the reservoir
    - RANDOM_NEIGHBOURS:  quenched random wiring, no dissipation
    - FULLY_CONNECTED:    four fresh random neighbours on every call
    """

    UNDEFINED = "undefined"
    PERIODIC = "periodic"
    DISSIPATING = "dissipating"
    WALL_DISSIPATING = "walls and dissipating"
    CIRCULAR = "circular"
    RANDOM_NEIGHBOURS = "random neighbours"
    FULLY_CONNECTED = "fully connected"

    def __str__(self) -> str:
        return self.value


# Offsets in Direction order: NORTH, WEST, SOUTH, EAST
_OFFSETS = ((0, -1), (-1, 0), (0, 1), (1, 0))


class Grid:
    """
    A ``width`` x ``height`` grid of cells plus one shared reservoir cell.

    The direction of every cell (and of the reservoir) is drawn from
    ``direction_rng`` at construction. ``neighbour_rng`` drives the random
    topologies: it shuffles the quenched wiring once for RANDOM_NEIGHBOURS and
    is consumed on every ``get_neighbours`` call for FULLY_CONNECTED.
    """

    def __init__(
        self,
        width: int,
        height: int,
        boundary_type: BoundaryType,
        *,
        direction_rng: np.random.Generator,
        neighbour_rng: np.random.Generator,
    ) -> None:
        if width <= 0 or height <= 0:
            raise InvariantViolation(f"Grid dimensions must be positive, got {width}x{height}")
        logger.debug(
            "Create cells %dx%d (total=%d) and type %s", width, height, width * height, boundary_type
        )
        self.width = int(width)
        self.height = int(height)
        self.boundary_type = boundary_type
        self.neighbour_rng = neighbour_rng

        # The reservoir exists before the cells (and draws its direction first)
        self.reservoir_id = -1 - self.width
        self.reservoir = Cell(self.reservoir_id, direction_rng)
        self.cells: List[Cell] = [Cell(n, direction_rng) for n in range(self.size)]

        self.random_indices: Optional[np.ndarray] = None
        if boundary_type == BoundaryType.RANDOM_NEIGHBOURS:
            self.random_indices = np.arange(self.size, dtype=np.int64)
            neighbour_rng.shuffle(self.random_indices)

    @property
    def size(self) -> int:
        return self.width * self.height

    # ------------------------------------------------------------------ access
    def index(self, i: int, j: int) -> int:
        if not (0 <= i < self.width and 0 <= j < self.height):
            raise InvariantViolation(
                f"Coordinate ({i}, {j}) outside grid {self.width}x{self.height}"
            )
        return j * self.width + i

    def coordinates(self, n: int) -> tuple[int, int]:
        if not 0 <= n < self.size:
            raise InvariantViolation(f"Index {n} outside grid of {self.size} cells")
        return n % self.width, n // self.width

    def get_cell(self, i: int, j: Optional[int] = None) -> Cell:
        """
        Return a cell by coordinates ``(i, j)`` or, with one argument, by
        row-major index. The reservoir identity is accepted as an index too.
        """
        if j is not None:
            return self.cells[self.index(i, j)]
        if i == self.reservoir_id:
            return self.reservoir
        if not 0 <= i < self.size:
            raise InvariantViolation(f"Index {i} outside grid of {self.size} cells")
        return self.cells[i]

    def count_grains(self) -> float:
        """Total number of grains over all grid cells (the reservoir excluded)."""
        return float(sum(cell.height for cell in self.cells))

    def heights(self) -> np.ndarray:
        """Row-major copy of all cell heights."""
        return np.fromiter((cell.height for cell in self.cells), dtype=np.float64, count=self.size)

    def within_circle(self, i: int, j: int) -> bool:
        """
        True if the centre of cell ``(i, j)`` lies in the largest circle that fits
        in the (square, even-sized) grid. Coordinates outside the grid are simply
        outside the circle.
        """
        if self.width != self.height:
            raise InvariantViolation("Circular topology requires a square grid")
        if self.width % 2 != 0:
            raise InvariantViolation("Circular topology requires an even grid size")
        d_i = abs(self.width / 2.0 - (i + 0.5))
        d_j = abs(self.width / 2.0 - (j + 0.5))
        radius = (self.width - 1) // 2
        return d_i * d_i + d_j * d_j <= radius * radius

    # --------------------------------------------------------------- neighbours
    def get_neighbours(self, i: int, j: int, rng: Optional[np.random.Generator] = None) -> List[int]:
        """
        Indices of the neighbours of cell ``(i, j)`` in NORTH, WEST, SOUTH, EAST
        order. Dissipating slots hold ``reservoir_id``. WALL_DISSIPATING omits
        the north/west neighbour in the first row/column, so fewer than four
        indices come back there.

        ``rng`` replaces the grid's neighbour stream for FULLY_CONNECTED; read-only
        queries pass a scratch generator so the simulation stream is untouched.
        """
        self.index(i, j)
        bt = self.boundary_type
        w, h = self.width, self.height

        if bt == BoundaryType.PERIODIC:
            return [((j + dj) % h) * w + (i + di) % w for di, dj in _OFFSETS]

        if bt == BoundaryType.DISSIPATING:
            result = []
            for di, dj in _OFFSETS:
                n_i, n_j = i + di, j + dj
                if 0 <= n_i < w and 0 <= n_j < h:
                    result.append(n_j * w + n_i)
                else:
                    result.append(self.reservoir_id)
            return result

        if bt == BoundaryType.WALL_DISSIPATING:
            result = []
            if j != 0:
                result.append((j - 1) * w + i)
            if i != 0:
                result.append(j * w + i - 1)
            result.append(self.reservoir_id if j == h - 1 else (j + 1) * w + i)
            result.append(self.reservoir_id if i == w - 1 else j * w + i + 1)
            return result

        if bt == BoundaryType.CIRCULAR:
            result = []
            for di, dj in _OFFSETS:
                n_i, n_j = i + di, j + dj
                if self.within_circle(n_i, n_j):
                    result.append(n_j * w + n_i)
                else:
                    result.append(self.reservoir_id)
            return result

        if bt == BoundaryType.RANDOM_NEIGHBOURS:
            # may occasionally wire a cell to itself, which barely changes the dynamics
            return [
                int(self.random_indices[((j + dj) % h) * w + (i + di) % w])
                for di, dj in _OFFSETS
            ]

        if bt == BoundaryType.FULLY_CONNECTED:
            if self.size <= NEIGHBOUR_COUNT:
                raise InvariantViolation(
                    f"Fully connected grid needs more than {NEIGHBOUR_COUNT} cells"
                )
            gen = self.neighbour_rng if rng is None else rng
            this = j * w + i
            result = []
            while len(result) < NEIGHBOUR_COUNT:
                n = int(gen.integers(0, self.size))
                if n != this and n not in result:
                    result.append(n)
            return result

        raise ConfigurationError(f"Undefined boundary type: {bt}")

    # ------------------------------------------------------------------ output
    def print(self) -> None:
        """Print the total number of grains followed by a table of heights."""
        print(f"Grid size = {self.count_grains():g}")
        for j in range(self.height):
            row = self.cells[j * self.width:(j + 1) * self.width]
            print(" ".join(f"{cell.height:.0f}" for cell in row))
        print()


__all__ = ["BoundaryType", "Grid"]
