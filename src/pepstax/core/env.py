"""CTMRG environment of an infinite PEPS.

The environment of site ``(r, c)`` consists of four corners and four edges
arranged clockwise around the site::

    C_NW -- E_N -- C_NE
     |      |       |
    E_W --  A  --  E_E
     |      |       |
    C_SW -- E_S -- C_SE

Leg conventions (all legs ordered clockwise around the site):

- corners ``C[first, last]``
- edges ``T[first, ket, bra, last]`` where ``ket``/``bra`` attach to the
  corresponding virtual leg of ``A`` and ``conj(A)``

``first`` always connects to the previous tensor in clockwise order and
``last`` to the next one, so rotating the lattice never permutes the legs
of environment tensors.
"""

from __future__ import annotations

from typing import NamedTuple

import jax
import jax.numpy as jnp

from pepstax.core.directions import (
    EAST,
    NORTH,
    NORTHEAST,
    NORTHWEST,
    SOUTH,
    SOUTHEAST,
    SOUTHWEST,
    WEST,
    Corner,
    Direction,
)
from pepstax.core.linalg import contract
from pepstax.core.peps import Grid, InfinitePEPS

# Offset of the site a boundary tensor stands in for, and the contraction
# of its double layer into clockwise leg order (outward legs traced)
_CORNER_LAYERS = {
    NORTHWEST: ((-1, -1), "pnesw,pnESw->sSeE"),
    NORTHEAST: ((-1, 1), "pnesw,pneSW->wWsS"),
    SOUTHEAST: ((1, 1), "pnesw,pNesW->nNwW"),
    SOUTHWEST: ((1, -1), "pnesw,pNEsw->eEnN"),
}
_EDGE_LAYERS = {
    NORTH: ((-1, 0), "pnesw,pnESW->wWsSeE"),
    EAST: ((0, 1), "pnesw,pNeSW->nNwWsS"),
    SOUTH: ((1, 0), "pnesw,pNEsW->eEnNwW"),
    WEST: ((0, -1), "pnesw,pNESw->sSeEnN"),
}


def _normalize(x: jax.Array) -> jax.Array:
    return x / jnp.linalg.norm(x)


def _random_tensor(key: jax.Array, shape: tuple[int, ...], dtype) -> jax.Array:
    return _normalize(jax.random.normal(key, shape, dtype=dtype))


def set_site(grid: Grid, r: int, c: int, value: jax.Array) -> Grid:
    """Return a copy of *grid* with entry ``(r, c)`` (periodic) replaced."""
    nrows, ncols = len(grid), len(grid[0])
    r, c = r % nrows, c % ncols
    row = grid[r][:c] + (value,) + grid[r][c + 1:]
    return grid[:r] + (row,) + grid[r + 1:]


class CTMRGEnv(NamedTuple):
    """Corner and edge tensors for every site of the unit cell.

    Attributes:
        corners: ``corners[Corner][r][c]`` is the rank-2 corner tensor.
        edges:   ``edges[Direction][r][c]`` is the rank-4 edge tensor.

    Updates are functional: :meth:`set_corner` and :meth:`set_edge` return
    a new environment and leave the original untouched, so the environment
    can flow through ``jax.vjp`` without aliasing.
    """

    corners: tuple[Grid, Grid, Grid, Grid]
    edges: tuple[Grid, Grid, Grid, Grid]

    @classmethod
    def random(
        cls,
        peps: InfinitePEPS,
        chi: int,
        key: jax.Array,
        dtype=None,
    ) -> CTMRGEnv:
        """Random environment with bond dimension *chi* on every boundary bond.

        The ket/bra legs of the edges take the dimension of the virtual leg
        of the PEPS tensor they attach to.
        """
        if chi < 1:
            raise ValueError(f"environment bond dimension must be positive, got {chi}")
        dtype = peps.dtype if dtype is None else dtype
        nrows, ncols = peps.unitcell
        keys = iter(jax.random.split(key, 8 * nrows * ncols))
        corners = tuple(
            tuple(
                tuple(_random_tensor(next(keys), (chi, chi), dtype) for c in range(ncols))
                for r in range(nrows)
            )
            for _ in Corner
        )
        edges = []
        for d in Direction:
            grid = []
            for r in range(nrows):
                row = []
                for c in range(ncols):
                    D = peps.site(r, c).shape[1 + d]
                    row.append(_random_tensor(next(keys), (chi, D, D, chi), dtype))
                grid.append(tuple(row))
            edges.append(tuple(grid))
        return cls(corners, tuple(edges))

    @classmethod
    def from_peps(cls, peps: InfinitePEPS) -> CTMRGEnv:
        """Environment made of the double layer ``A conj(A)`` of *peps*.

        Each corner and edge is the double-layer tensor of the site it
        stands in for, with the legs pointing away from the centre traced
        out and every remaining ket/bra pair fused into one boundary leg.
        Boundary bonds therefore have dimension ``D**2``. For a product
        state this environment is already a CTMRG fixed point.
        """
        nrows, ncols = peps.unitcell

        def layer(offset, subscripts, r, c):
            A = peps.site(r + offset[0], c + offset[1])
            x = contract(subscripts, A, A.conj())
            if x.ndim == 4:
                shape = (x.shape[0] * x.shape[1], x.shape[2] * x.shape[3])
            else:
                shape = (x.shape[0] * x.shape[1], x.shape[2], x.shape[3], x.shape[4] * x.shape[5])
            return _normalize(x.reshape(shape))

        corners = tuple(
            tuple(
                tuple(layer(*_CORNER_LAYERS[corner], r, c) for c in range(ncols))
                for r in range(nrows)
            )
            for corner in Corner
        )
        edges = tuple(
            tuple(
                tuple(layer(*_EDGE_LAYERS[d], r, c) for c in range(ncols))
                for r in range(nrows)
            )
            for d in Direction
        )
        return cls(corners, edges)

    @classmethod
    def random_like(cls, env: CTMRGEnv, key: jax.Array) -> CTMRGEnv:
        """Fresh random environment with the same spaces as *env*."""
        leaves, treedef = jax.tree_util.tree_flatten(env)
        keys = jax.random.split(key, len(leaves))
        new = [_random_tensor(k, x.shape, x.dtype) for k, x in zip(keys, leaves)]
        return jax.tree_util.tree_unflatten(treedef, new)

    @property
    def unitcell(self) -> tuple[int, int]:
        grid = self.corners[0]
        return len(grid), len(grid[0])

    def corner(self, corner: Corner, r: int, c: int) -> jax.Array:
        grid = self.corners[corner]
        return grid[r % len(grid)][c % len(grid[0])]

    def edge(self, direction: Direction, r: int, c: int) -> jax.Array:
        grid = self.edges[direction]
        return grid[r % len(grid)][c % len(grid[0])]

    def set_corner(self, corner: Corner, r: int, c: int, value: jax.Array) -> CTMRGEnv:
        corners = list(self.corners)
        corners[corner] = set_site(corners[corner], r, c, value)
        return CTMRGEnv(tuple(corners), self.edges)

    def set_edge(self, direction: Direction, r: int, c: int, value: jax.Array) -> CTMRGEnv:
        edges = list(self.edges)
        edges[direction] = set_site(edges[direction], r, c, value)
        return CTMRGEnv(self.corners, tuple(edges))

    def bond_dims(self) -> tuple:
        """Shapes of all environment tensors, for comparing spaces."""
        return tuple(x.shape for x in jax.tree_util.tree_leaves(self))

    def check_gluing(self, peps: InfinitePEPS) -> None:
        """Verify the environment of every site contracts with *peps*.

        Raises:
            ValueError: On the first bond whose dimensions disagree.
        """
        if self.unitcell != peps.unitcell:
            raise ValueError(
                f"environment unit cell {self.unitcell} does not match "
                f"PEPS unit cell {peps.unitcell}"
            )
        nrows, ncols = self.unitcell
        for r in range(nrows):
            for c in range(ncols):
                A = peps.site(r, c)
                # clockwise ring C_NW, E_N, C_NE, E_E, C_SE, E_S, C_SW, E_W
                ring = []
                for d in Direction:
                    ring.append((f"corner {Corner(d).name}", self.corner(Corner(d), r, c)))
                    ring.append((f"edge {d.name}", self.edge(d, r, c)))
                for (name1, x1), (name2, x2) in zip(ring, ring[1:] + ring[:1]):
                    if x1.shape[-1] != x2.shape[0]:
                        raise ValueError(
                            f"site ({r}, {c}): {name1} and {name2} disagree on "
                            f"bond dimension ({x1.shape[-1]} != {x2.shape[0]})"
                        )
                for d in Direction:
                    T = self.edge(d, r, c)
                    D = A.shape[1 + d]
                    if T.shape[1] != D or T.shape[2] != D:
                        raise ValueError(
                            f"site ({r}, {c}): edge {d.name} has virtual legs "
                            f"{T.shape[1:3]}, PEPS leg has dimension {D}"
                        )
