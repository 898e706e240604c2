"""
Multi-resolution view of a height field.

The grid is cut into square "coarse cells" of side ``2**(level-1)``: level 1
are the cells themselves, level 2 are 2x2 blocks and level ``log2(L) + 1`` is
the whole grid. For every coarse cell an order parameter is computed from its
row and column sums:

    sum_{r0 != r1} R[r0] * R[r1] / |r0 - r1|^2   (plus the same for columns)

It grows the more evenly grains are spread over the rows (columns) and is
smallest when everything sits in a single row. The grid has to be square with
a power-of-two side.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List

import numpy as np
from numba import njit

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


###############################################################################
# Numba kernels
###############################################################################


@njit(cache=True)
def _pair_sum(sums: np.ndarray) -> float:
    total = 0.0
    n = sums.shape[0]
    for a in range(n):
        for b in range(n):
            if a != b:
                d = float(a - b)
                total += sums[a] * sums[b] / (d * d)
    return total


@njit(cache=True)
def order_parameter(block: np.ndarray) -> float:
    """Order parameter of one coarse cell given as a 2-D ``[row, column]`` array."""
    rows = block.shape[0]
    cols = block.shape[1]
    row_sums = np.zeros(rows)
    col_sums = np.zeros(cols)
    for r in range(rows):
        for c in range(cols):
            row_sums[r] += block[r, c]
            col_sums[c] += block[r, c]
    return _pair_sum(row_sums) + _pair_sum(col_sums)


@njit(cache=True)
def _order_parameters(field: np.ndarray, side: int) -> np.ndarray:
    n_blocks = field.shape[0] // side
    out = np.zeros((n_blocks, n_blocks))
    for by in range(n_blocks):
        for bx in range(n_blocks):
            block = field[by * side:(by + 1) * side, bx * side:(bx + 1) * side]
            out[by, bx] = order_parameter(block)
    return out


@njit(cache=True)
def patch_sums(field: np.ndarray, patch: int) -> np.ndarray:
    """Sum a ``[row, column]`` field over non-overlapping ``patch`` x ``patch`` blocks."""
    rows = field.shape[0] // patch
    cols = field.shape[1] // patch
    out = np.zeros((rows, cols))
    for j in range(field.shape[0]):
        for i in range(field.shape[1]):
            out[j // patch, i // patch] += field[j, i]
    return out


###############################################################################
# Helpers
###############################################################################


def max_level(side: int) -> int:
    """``log2(side)``; raises if the side is not a power of two."""
    if side <= 0 or side & (side - 1):
        raise ConfigurationError(f"Size L={side} should be a power of 2")
    return side.bit_length() - 1


def as_field(heights: np.ndarray, width: int, height: int) -> np.ndarray:
    """Reshape row-major heights into a ``[row, column]`` float array."""
    return np.asarray(heights, dtype=np.float64).reshape(height, width)


def _block_side(field: np.ndarray, level: int) -> int:
    if field.ndim != 2 or field.shape[0] != field.shape[1]:
        raise ConfigurationError("Coarse cells need a square grid")
    top = max_level(field.shape[0])
    if level <= 1:
        raise ConfigurationError("Level should be higher than 1")
    if level > top + 1:
        raise ConfigurationError(f"Level should be lower than maximum level {top + 1}")
    return 1 << (level - 1)


def coarse_cells(field: np.ndarray, level: int) -> List[np.ndarray]:
    """
    Cut a square field into coarse cells of side ``2**(level-1)``, listed in
    row-major block order.
    """
    cs = _block_side(field, level)
    n = field.shape[0] // cs
    return [field[y * cs:(y + 1) * cs, x * cs:(x + 1) * cs].copy() for y in range(n) for x in range(n)]


def order_parameters(field: np.ndarray, level: int) -> np.ndarray:
    """Order parameter of every coarse cell on ``level`` as a 2-D block array."""
    cs = _block_side(field, level)
    return _order_parameters(np.ascontiguousarray(field, dtype=np.float64), cs)


@dataclass
class Multiresolution:
    """
    Computes order parameters over all levels from the coarsest (one block
    covering the grid) down to, but not including, ``min_level``.
    """

    min_level: int = 2

    def tick(self, field: np.ndarray) -> Dict[int, np.ndarray]:
        side = field.shape[0]
        top = max_level(side)
        logger.debug("Iterate from level %d down to level %d", top + 1, self.min_level)
        return {
            level: order_parameters(field, level)
            for level in range(top + 1, self.min_level, -1)
        }


__all__ = [
    "Multiresolution",
    "order_parameter",
    "order_parameters",
    "coarse_cells",
    "patch_sums",
    "max_level",
    "as_field",
]
