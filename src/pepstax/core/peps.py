"""Infinite PEPS unit cell.

Each site carries a rank-5 tensor ``A[p, n, e, s, w]``: one physical leg
followed by the four virtual legs in clockwise order starting north. The
unit cell is periodic, so ``site(r, c)`` wraps both coordinates.
"""

from __future__ import annotations

from typing import NamedTuple

import jax
import jax.numpy as jnp

Grid = tuple[tuple[jax.Array, ...], ...]


def _as_grid(tensors) -> Grid:
    """Normalize a single tensor, a list of tensors or a nested list to a grid."""
    if hasattr(tensors, "ndim"):
        return ((jnp.asarray(tensors),),)
    rows = tuple(tensors)
    if not rows:
        raise ValueError("unit cell must contain at least one site")
    if hasattr(rows[0], "ndim"):
        rows = (rows,)
    grid = tuple(tuple(jnp.asarray(t) for t in row) for row in rows)
    ncols = len(grid[0])
    if ncols == 0 or any(len(row) != ncols for row in grid):
        raise ValueError("unit cell rows must be non-empty and of equal length")
    return grid


class InfinitePEPS(NamedTuple):
    """Unit cell of PEPS tensors with periodic boundary conditions.

    Attributes:
        A: Grid (tuple of rows) of site tensors ``A[p, n, e, s, w]``.

    Being a NamedTuple of nested tuples, an ``InfinitePEPS`` is a JAX pytree:
    gradients with respect to it come back as an ``InfinitePEPS`` too.
    Build instances with :meth:`from_tensors` or :meth:`random` to get the
    gluing check.
    """

    A: Grid

    @classmethod
    def from_tensors(cls, tensors) -> InfinitePEPS:
        """Create a PEPS from one tensor or a (nested) list of tensors.

        Raises:
            ValueError: If a tensor is not rank 5 or neighbouring virtual
                bonds have different dimensions.
        """
        peps = cls(_as_grid(tensors))
        peps.check_gluing()
        return peps

    @classmethod
    def random(
        cls,
        key: jax.Array,
        d: int,
        D: int,
        unitcell: tuple[int, int] = (1, 1),
        dtype=jnp.float64,
    ) -> InfinitePEPS:
        """Random Gaussian PEPS with physical dimension *d* and bond dimension *D*."""
        nrows, ncols = unitcell
        keys = jax.random.split(key, nrows * ncols)
        grid = []
        for r in range(nrows):
            row = []
            for c in range(ncols):
                A = jax.random.normal(keys[r * ncols + c], (d, D, D, D, D), dtype=dtype)
                row.append(A / jnp.linalg.norm(A))
            grid.append(tuple(row))
        return cls(tuple(grid))

    @property
    def unitcell(self) -> tuple[int, int]:
        return len(self.A), len(self.A[0])

    def site(self, r: int, c: int) -> jax.Array:
        nrows, ncols = self.unitcell
        return self.A[r % nrows][c % ncols]

    @property
    def dtype(self):
        return jnp.result_type(*(A for row in self.A for A in row))

    def check_gluing(self) -> None:
        nrows, ncols = self.unitcell
        for r in range(nrows):
            for c in range(ncols):
                A = self.site(r, c)
                if A.ndim != 5:
                    raise ValueError(
                        f"PEPS tensor at ({r}, {c}) has rank {A.ndim}, expected 5"
                    )
                if A.shape[2] != self.site(r, c + 1).shape[4]:
                    raise ValueError(
                        f"east bond of site ({r}, {c}) has dimension {A.shape[2]}, "
                        f"west bond of site ({r}, {c + 1}) has "
                        f"{self.site(r, c + 1).shape[4]}"
                    )
                if A.shape[3] != self.site(r + 1, c).shape[1]:
                    raise ValueError(
                        f"south bond of site ({r}, {c}) has dimension {A.shape[3]}, "
                        f"north bond of site ({r + 1}, {c}) has "
                        f"{self.site(r + 1, c).shape[1]}"
                    )
