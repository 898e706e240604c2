from __future__ import annotations

from enum import IntEnum
from typing import Optional, Protocol

import numpy as np

# Number of compass directions / lattice neighbours
NEIGHBOUR_COUNT = 4
DEFAULT_MAX_CAPACITY = 10.0


class Direction(IntEnum):
    """Wind directions. The order matches the neighbour order of ``Grid.get_neighbours``."""

    NORTH = 0
    WEST = 1
    SOUTH = 2
    EAST = 3


class CellObserver(Protocol):
    """Receives a call every time the height of an observed cell changes."""

    def notify(self, cell_index: int, new_height: float) -> None:
        ...


class Cell:
    """
    A single site of the grid holding a (possibly fractional) number of grains.

    ``increase``, ``decrease`` and ``clear`` report the new height to the
    registered observer. ``transfer`` moves grains between two cells without
    notifying anyone; it is only used by the dissipation field, which is swept
    over completely and keeps no active set.
    """

    __slots__ = ("height", "max_capacity", "direction", "_identity", "_observer")

    def __init__(
        self,
        identity: int,
        rng: np.random.Generator,
        max_capacity: float = DEFAULT_MAX_CAPACITY,
    ) -> None:
        self._identity = int(identity)
        self.height = 0.0
        self.max_capacity = float(max_capacity)
        self.direction = Direction(int(rng.integers(0, NEIGHBOUR_COUNT)))
        self._observer: Optional[CellObserver] = None

    @property
    def identity(self) -> int:
        return self._identity

    def set_observer(self, observer: Optional[CellObserver]) -> None:
        self._observer = observer

    def _notify(self) -> None:
        if self._observer is not None:
            self._observer.notify(self._identity, self.height)

    def increase(self, number: float) -> None:
        self.height += number
        self._notify()

    def decrease(self, number: float) -> None:
        self.height -= number
        self._notify()

    def clear(self) -> None:
        self.height = 0.0
        self._notify()

    def transfer(self, target: "Cell", number: float) -> float:
        """
        Move up to ``number`` grains from this cell to ``target``.

        The amount is bounded by the grains available here and by the room left
        in the target (``target.max_capacity - target.height``, never below
        zero). Returns the amount actually moved.
        """
        room = max(0.0, target.max_capacity - target.height)
        available = max(0.0, self.height)
        moved = min(number, available, room)
        if moved <= 0:
            return 0.0
        self.height -= moved
        target.height += moved
        return moved

    def __repr__(self) -> str:
        return (
            f"Cell(id={self._identity}, height={self.height:g}, "
            f"capacity={self.max_capacity:g}, direction={self.direction.name})"
        )


__all__ = ["Cell", "CellObserver", "Direction", "NEIGHBOUR_COUNT", "DEFAULT_MAX_CAPACITY"]
