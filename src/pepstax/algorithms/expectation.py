"""Reduced density matrices and expectation values from a CTMRG environment.

Density matrices are returned with all ket indices first and all bra
indices second: ``rho[p, q]`` for one site, ``rho[p1, p2, q1, q2]`` for two.
Operators use the matching convention ``O[a, b, a', b'] = <a b|O|a' b'>``,
i.e. ``jnp.kron(o1, o2).reshape(d, d, d, d)``.
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
)
from pepstax.core.env import CTMRGEnv
from pepstax.core.linalg import contract
from pepstax.core.peps import InfinitePEPS
from pepstax.core.rotations import rotl90


class OnSite(NamedTuple):
    """Single-site operator ``op[a, a']`` applied on every site."""

    op: jax.Array


class NearestNeighbor(NamedTuple):
    """Two-site operator ``op[a, b, a', b']`` applied on every nearest-neighbour bond."""

    op: jax.Array


def one_site_rho(peps: InfinitePEPS, env: CTMRGEnv, r: int, c: int) -> jax.Array:
    """Unnormalized reduced density matrix ``rho[p, q]`` of site ``(r, c)``."""
    A = peps.site(r, c)
    return contract(
        "ab,bnNc,cd,deEf,fg,gsSh,hi,iwWa,pnesw,qNESW->pq",
        env.corner(NORTHWEST, r, c),
        env.edge(NORTH, r, c),
        env.corner(NORTHEAST, r, c),
        env.edge(EAST, r, c),
        env.corner(SOUTHEAST, r, c),
        env.edge(SOUTH, r, c),
        env.corner(SOUTHWEST, r, c),
        env.edge(WEST, r, c),
        A,
        A.conj(),
    )


def two_site_rho(peps: InfinitePEPS, env: CTMRGEnv, r: int, c: int) -> jax.Array:
    """Unnormalized density matrix of the horizontal pair ``(r, c)``, ``(r, c + 1)``.

    Returns:
        ``rho[p1, p2, q1, q2]``.
    """
    A1 = peps.site(r, c)
    A2 = peps.site(r, c + 1)
    return contract(
        "ab,bnNc,cmMd,df,feEg,gh,htTi,isSj,jk,kwWa,pnxsw,qNXSW,Pmetx,QMETX->pPqQ",
        env.corner(NORTHWEST, r, c),
        env.edge(NORTH, r, c),
        env.edge(NORTH, r, c + 1),
        env.corner(NORTHEAST, r, c + 1),
        env.edge(EAST, r, c + 1),
        env.corner(SOUTHEAST, r, c + 1),
        env.edge(SOUTH, r, c + 1),
        env.edge(SOUTH, r, c),
        env.corner(SOUTHWEST, r, c),
        env.edge(WEST, r, c),
        A1,
        A1.conj(),
        A2,
        A2.conj(),
    )


def network_norm(peps: InfinitePEPS, env: CTMRGEnv) -> jax.Array:
    """Sum over the unit cell of the contracted one-site networks."""
    nrows, ncols = peps.unitcell
    return sum(
        jnp.trace(one_site_rho(peps, env, r, c))
        for r in range(nrows)
        for c in range(ncols)
    )


def expectation_value(peps: InfinitePEPS, env: CTMRGEnv, O) -> jax.Array:
    """Expectation value of a local operator on every site of the unit cell.

    For a :class:`NearestNeighbor` operator entry ``(r, c)`` refers to the
    horizontal bond between ``(r, c)`` and ``(r, c + 1)``.

    Returns:
        Array of shape ``peps.unitcell``.
    """
    nrows, ncols = peps.unitcell
    match O:
        case OnSite(op):
            vals = [
                [
                    _normalized_trace(one_site_rho(peps, env, r, c), op, "ij,ji->", "ii->")
                    for c in range(ncols)
                ]
                for r in range(nrows)
            ]
        case NearestNeighbor(op):
            vals = [
                [
                    _normalized_trace(
                        two_site_rho(peps, env, r, c), op, "ijkl,klij->", "ijij->"
                    )
                    for c in range(ncols)
                ]
                for r in range(nrows)
            ]
        case _:
            raise TypeError(f"unsupported operator type {type(O).__name__}")
    return jnp.array(vals)


def _normalized_trace(rho, op, subscripts, trace_subscripts):
    return contract(subscripts, rho, op) / contract(trace_subscripts, rho)


def next_neighbor_energy(peps: InfinitePEPS, env: CTMRGEnv, H) -> jax.Array:
    """Energy per unit cell of a nearest-neighbour Hamiltonian.

    Horizontal bonds are evaluated directly, vertical bonds by rotating the
    network so that they become horizontal. The upper site of a vertical
    bond takes the first index of ``H``.
    """
    if not isinstance(H, NearestNeighbor):
        H = NearestNeighbor(jnp.asarray(H))
    e_h = jnp.sum(expectation_value(peps, env, H))
    e_v = jnp.sum(expectation_value(rotl90(peps), rotl90(env), H))
    return jnp.real(e_h + e_v)


def energy_expectation(peps: InfinitePEPS, env: CTMRGEnv, H) -> jax.Array:
    """Real energy per unit cell of an on-site or nearest-neighbour Hamiltonian.

    A bare array is interpreted by its rank: 2 for on-site, 4 for
    nearest-neighbour terms.
    """
    if not isinstance(H, (OnSite, NearestNeighbor)):
        H = jnp.asarray(H)
        if H.ndim == 2:
            H = OnSite(H)
        elif H.ndim == 4:
            H = NearestNeighbor(H)
        else:
            raise ValueError(f"Hamiltonian term must have rank 2 or 4, got {H.ndim}")
    if isinstance(H, OnSite):
        return jnp.real(jnp.sum(expectation_value(peps, env, H)))
    return next_neighbor_energy(peps, env, H)
