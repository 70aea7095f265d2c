"""90 degree rotations of tensors, unit cells, PEPS and environments.

``rotl90`` rotates the lattice counter-clockwise: what was east faces north
afterwards. All CTMRG moves are written for a single orientation and reach
the other three through these rotations.
"""

from __future__ import annotations

import jax
import numpy as np

from pepstax.core.directions import Direction
from pepstax.core.env import CTMRGEnv
from pepstax.core.peps import InfinitePEPS


def _rotl90_grid(grid: tuple) -> tuple:
    """Counter-clockwise rotation of a row-major grid: ``new[i][j] = old[j][C-1-i]``."""
    nrows, ncols = len(grid), len(grid[0])
    return tuple(
        tuple(grid[j][ncols - 1 - i] for j in range(nrows)) for i in range(ncols)
    )


def _rotl90_tensor(x):
    # PEPS tensor A[p, n, e, s, w]: the east leg becomes the north leg
    if x.ndim != 5:
        raise ValueError(f"can only rotate rank-5 PEPS tensors, got rank {x.ndim}")
    return x.transpose(0, 2, 3, 4, 1)


def rotl90(x):
    """Counter-clockwise rotation of a PEPS tensor, unit-cell grid, PEPS or
    environment.

    Raises:
        TypeError: For any other type.
    """
    if isinstance(x, InfinitePEPS):
        grid = _rotl90_grid(x.A)
        return InfinitePEPS(tuple(tuple(_rotl90_tensor(A) for A in row) for row in grid))
    if isinstance(x, CTMRGEnv):
        # the east edge becomes the north edge, the north-east corner the north-west
        corners = tuple(_rotl90_grid(x.corners[(i + 1) % 4]) for i in range(4))
        edges = tuple(_rotl90_grid(x.edges[(i + 1) % 4]) for i in range(4))
        return CTMRGEnv(corners, edges)
    if isinstance(x, (jax.Array, np.ndarray)):
        return _rotl90_tensor(x)
    if isinstance(x, tuple):
        return _rotl90_grid(x)
    raise TypeError(f"cannot rotate object of type {type(x).__name__}")


def rotr90(x):
    """Clockwise rotation, the inverse of :func:`rotl90`."""
    for _ in range(3):
        x = rotl90(x)
    return x


def rotate_north(x, direction: Direction):
    """Rotate *x* so that side *direction* faces north.

    ``rotate_north(x, NORTH)`` returns *x* itself. Everything here is
    immutable, so no copy is needed in that case.
    """
    direction = Direction(direction)
    for _ in range(direction):
        x = rotl90(x)
    return x
