"""Corner Transfer Matrix Renormalization Group for infinite PEPS.

One CTMRG iteration performs a *left move* (absorb one column into the
west boundary, column by column) in each of the four directions, reaching
the other directions by rotating the network. Iterations are repeated
until consecutive environments agree element-wise after gauge fixing.

Projectors follow the half-system construction of Corboz et al.,
PRB 84, 041108 (2011); gauge fixing follows Francuz et al.,
arXiv:2311.11894 (2023): the boundary MPS of each row/column is compared
with the previous iterate through the fixed point of their mixed transfer
matrix, which fixes the unitary freedom on every boundary bond.
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import NamedTuple

import jax
import jax.numpy as jnp

from pepstax.algorithms.expectation import network_norm
from pepstax.core import CTMRG_MAXITER, CTMRG_MINITER, CTMRG_TOL
from pepstax.core.directions import (
    EAST,
    NORTH,
    NORTHWEST,
    SOUTH,
    SOUTHWEST,
    WEST,
    Corner,
    Direction,
)
from pepstax.core.env import CTMRGEnv
from pepstax.core.linalg import (
    RANK_RTOL,
    NoTrunc,
    TruncationScheme,
    contract,
    tsvd,
)
from pepstax.core.peps import InfinitePEPS
from pepstax.core.rotations import rotl90

# Power iteration for the mixed transfer matrix fixed points
GAUGE_TOL = 1e-13
GAUGE_MAXITER = 1000
# Gauge fixing starts once the corner spectra change by less than this
GAUGE_SPECTRUM_TOL = 1e-6


@dataclass(frozen=True)
class CTMRG:
    """Configuration of the CTMRG boundary algorithm.

    Attributes:
        trscheme:   Truncation scheme for the projector SVDs.
        tol:        Convergence tolerance on both the largest element-wise
                    corner change and the change of the network norm.
        maxiter:    Maximum number of iterations. Reaching it is reported
                    with a warning, the last environment is still returned.
        miniter:    Minimum number of iterations.
        verbosity:  0 silent, 1 summary, 2 every iteration.
        fixedspace: Keep every boundary bond at its current dimension
                    instead of applying *trscheme*.
    """

    trscheme: TruncationScheme = field(default_factory=NoTrunc)
    tol: float = CTMRG_TOL
    maxiter: int = CTMRG_MAXITER
    miniter: int = CTMRG_MINITER
    verbosity: int = 0
    fixedspace: bool = False

    def __post_init__(self):
        if self.tol <= 0:
            raise ValueError(f"tol must be positive, got {self.tol}")
        if self.maxiter < 1:
            raise ValueError(f"maxiter must be at least 1, got {self.maxiter}")
        if not 0 <= self.miniter <= self.maxiter:
            raise ValueError(
                f"miniter must lie in [0, maxiter={self.maxiter}], got {self.miniter}"
            )


class CTMRGInfo(NamedTuple):
    """Diagnostics of a CTMRG run.

    Attributes:
        iterations:       Number of iterations performed.
        converged:        Whether both errors dropped below ``tol``.
        corner_error:     Largest element-wise corner change in the last
                          iteration. While the corner spectra still move it
                          is their change instead (``inf`` if the bond
                          spaces changed).
        norm_error:       Change of the network norm in the last iteration.
        truncation_error: Largest truncation error of the last iteration.
    """

    iterations: int
    converged: bool
    corner_error: float
    norm_error: float
    truncation_error: float


# ---------------------------------------------------------------------------
# Left move
# ---------------------------------------------------------------------------


def _enlarged_northwest(env: CTMRGEnv, A: jax.Array, r: int, c: int) -> jax.Array:
    """``Q[y, s, s', x, e, e']``: cut legs (south) first, east legs last."""
    return contract(
        "ab,bnNx,ywWa,pnesw,pNESW->ysSxeE",
        env.corner(NORTHWEST, r, c),
        env.edge(NORTH, r, c),
        env.edge(WEST, r, c),
        A,
        A.conj(),
    )


def _enlarged_southwest(env: CTMRGEnv, A: jax.Array, r: int, c: int) -> jax.Array:
    """``Q[g, e, e', z, n, n']``: east legs first, cut legs (north) last."""
    return contract(
        "hi,gsSh,iwWz,pnesw,pNESW->geEznN",
        env.corner(SOUTHWEST, r, c),
        env.edge(SOUTH, r, c),
        env.edge(WEST, r, c),
        A,
        A.conj(),
    )


def _projectors(
    Q_nw: jax.Array,
    Q_sw: jax.Array,
    trscheme: TruncationScheme,
    fixed_dim: int | None,
) -> tuple[jax.Array, jax.Array, jax.Array]:
    """Projector pair on the horizontal cut between two enlarged corners.

    With ``Q_sw @ Q_nw = U S Vh``, ``P_a = Q_nw Vh^H S^-1/2`` and
    ``P_b = S^-1/2 U^H Q_sw`` satisfy ``P_b @ P_a = 1`` on the kept space.
    ``P_a[env, ket, bra, k]`` attaches to the tensors below the cut,
    ``P_b[k, env, ket, bra]`` to the tensors above it.
    """
    cut = Q_nw.shape[:3]
    K = cut[0] * cut[1] * cut[2]
    nw = Q_nw.reshape(K, -1)
    sw = Q_sw.reshape(-1, K)
    U, S, Vh, err = tsvd(sw @ nw, trscheme, fixed_dim=fixed_dim)

    nonzero = S > S[0] * RANK_RTOL
    inv_sqrt = jnp.where(nonzero, 1.0 / jnp.sqrt(jnp.where(nonzero, S, 1.0)), 0.0)
    P_a = (nw @ Vh.conj().T) * inv_sqrt[None, :]
    P_b = inv_sqrt[:, None] * (U.conj().T @ sw)
    k = S.shape[0]
    return P_a.reshape(*cut, k), P_b.reshape(k, *cut), err


def _normalize(x: jax.Array) -> jax.Array:
    return x / jnp.linalg.norm(x)


def left_move(
    peps: InfinitePEPS,
    env: CTMRGEnv,
    alg: CTMRG,
) -> tuple[CTMRGEnv, jax.Array]:
    """Grow the west boundary through every column of the unit cell.

    For each column ``c`` (in order), the projectors of all bonds are
    computed from the current environment, then column ``c`` is absorbed
    into the corners and west edges of column ``c + 1``.

    Returns:
        ``(env, err)`` with the largest truncation error over all bonds.
    """
    nrows, ncols = peps.unitcell
    err = jnp.zeros(())
    for c in range(ncols):
        P_a, P_b = [], []
        for r in range(nrows):
            # bond r sits between rows r - 1 and r
            fixed_dim = env.edge(WEST, r, c + 1).shape[3] if alg.fixedspace else None
            Q_nw = _enlarged_northwest(env, peps.site(r - 1, c), r - 1, c)
            Q_sw = _enlarged_southwest(env, peps.site(r, c), r, c)
            pa, pb, e = _projectors(Q_nw, Q_sw, alg.trscheme, fixed_dim)
            P_a.append(pa)
            P_b.append(pb)
            err = jnp.maximum(err, e)

        new_env = env
        for r in range(nrows):
            A = peps.site(r, c)
            C_nw = contract(
                "kanN,ab,bnNx->kx",
                P_b[r],
                env.corner(NORTHWEST, r, c),
                env.edge(NORTH, r, c),
            )
            C_sw = contract(
                "gsSh,hi,isSk->gk",
                env.edge(SOUTH, r, c),
                env.corner(SOUTHWEST, r, c),
                P_a[(r + 1) % nrows],
            )
            E_w = contract(
                "kysS,ywWz,pnesw,pNESW,znNl->keEl",
                P_b[(r + 1) % nrows],
                env.edge(WEST, r, c),
                A,
                A.conj(),
                P_a[r],
            )
            new_env = new_env.set_corner(NORTHWEST, r, c + 1, _normalize(C_nw))
            new_env = new_env.set_corner(SOUTHWEST, r, c + 1, _normalize(C_sw))
            new_env = new_env.set_edge(WEST, r, c + 1, _normalize(E_w))
        env = new_env
    return env, err


def ctmrg_iter(
    peps: InfinitePEPS,
    env: CTMRGEnv,
    alg: CTMRG,
) -> tuple[CTMRGEnv, jax.Array]:
    """One CTMRG iteration: left moves towards west, north, east and south.

    Returns:
        ``(env, err)`` with the largest truncation error of the iteration.
    """
    err = jnp.zeros(())
    for _ in range(4):
        env, e = left_move(peps, env, alg)
        peps, env = rotl90(peps), rotl90(env)
        err = jnp.maximum(err, e)
    return env, err


# ---------------------------------------------------------------------------
# Gauge fixing
# ---------------------------------------------------------------------------

# Step to the next edge along a boundary line, in clockwise order
_NEXT = {NORTH: (0, 1), EAST: (1, 0), SOUTH: (0, -1), WEST: (-1, 0)}


def _boundary_lines(direction: Direction, nrows: int, ncols: int) -> list[list[tuple[int, int]]]:
    """Coordinates of the edges of every boundary line, in clockwise order."""
    if direction == NORTH:
        return [[(r, c) for c in range(ncols)] for r in range(nrows)]
    if direction == EAST:
        return [[(r, c) for r in range(nrows)] for c in range(ncols)]
    if direction == SOUTH:
        return [[(r, c) for c in reversed(range(ncols))] for r in range(nrows)]
    return [[(r, c) for r in reversed(range(nrows))] for c in range(ncols)]


def _transfer_apply(rho: jax.Array, T: jax.Array, M: jax.Array) -> jax.Array:
    return contract("aA,akbc,AkbC->cC", rho, T, M.conj())


def _transfer_fixedpoints(Ts: list[jax.Array], Ms: list[jax.Array]) -> list[jax.Array]:
    """Left fixed points of the mixed transfer matrix of two boundary MPS.

    Returns one normalized ``rho[t, m]`` per site of the line, located on the
    ``first`` leg of the corresponding tensor.
    """
    rho = jnp.eye(Ts[0].shape[0], Ms[0].shape[0], dtype=jnp.result_type(Ts[0], Ms[0]))
    for _ in range(GAUGE_MAXITER):
        new = rho
        for T, M in zip(Ts, Ms):
            new = _transfer_apply(new, T, M)
        new = _normalize(new)
        overlap = jnp.vdot(rho, new)
        phase = overlap / jnp.abs(overlap)
        err = float(jax.lax.stop_gradient(jnp.linalg.norm(new - phase * rho)))
        rho = new
        if err < GAUGE_TOL:
            break
    else:
        warnings.warn(
            f"transfer matrix fixed point not converged after {GAUGE_MAXITER} "
            f"iterations (err = {err:.3e})",
            RuntimeWarning,
            stacklevel=3,
        )
    rhos = [rho]
    for T, M in zip(Ts[:-1], Ms[:-1]):
        rhos.append(_normalize(_transfer_apply(rhos[-1], T, M)))
    return rhos


def _qr_positive(x: jax.Array) -> jax.Array:
    """Q factor of the QR decomposition whose R has a positive diagonal."""
    Q, R = jnp.linalg.qr(x)
    d = jnp.diag(R)
    return Q * (d / jnp.abs(d))[None, :]


def _fix_phase(x: jax.Array, ref: jax.Array) -> jax.Array:
    overlap = jnp.vdot(ref, x)
    return x * (overlap.conj() / jnp.abs(overlap))


def gauge_fix(envprev: CTMRGEnv, envfinal: CTMRGEnv) -> CTMRGEnv:
    """Fix the gauge of *envfinal* relative to *envprev*.

    *envfinal* is assumed to be the result of one CTMRG iteration on
    *envprev*. For every boundary bond a unitary ``sigma`` is determined such
    that the gauge-transformed *envfinal* becomes element-wise close to
    *envprev* once CTMRG has converged. Edges transform as
    ``sigma_first @ T @ sigma_last^H`` on their boundary legs, corners as
    ``sigma_first @ C @ sigma_last^H``; a remaining global phase is fixed
    per tensor.

    Raises:
        ValueError: If the two environments do not have the same spaces.
    """
    if envprev.bond_dims() != envfinal.bond_dims():
        raise ValueError("cannot gauge fix environments with different bond spaces")
    nrows, ncols = envprev.unitcell

    # sigma[d][r][c] acts on the first leg of edges[d][r][c]
    sigma = {}
    for d in Direction:
        grid = [[None] * ncols for _ in range(nrows)]
        for line in _boundary_lines(d, nrows, ncols):
            Ts_prev = [envprev.edge(d, r, c) for r, c in line]
            Ts_final = [envfinal.edge(d, r, c) for r, c in line]
            rhos_prev = _transfer_fixedpoints(Ts_prev, Ts_prev)
            rhos_final = _transfer_fixedpoints(Ts_final, Ts_prev)
            for (r, c), rho_p, rho_f in zip(line, rhos_prev, rhos_final):
                grid[r][c] = _qr_positive(rho_p).conj() @ _qr_positive(rho_f).T
        sigma[d] = grid

    def sig(d: Direction, r: int, c: int) -> jax.Array:
        return sigma[d][r % nrows][c % ncols]

    env = envfinal
    for r in range(nrows):
        for c in range(ncols):
            for d in Direction:
                dr, dc = _NEXT[d]
                T = contract(
                    "ab,bklc,dc->akld",
                    sig(d, r, c),
                    envfinal.edge(d, r, c),
                    sig(d, r + dr, c + dc).conj(),
                )
                env = env.set_edge(d, r, c, _fix_phase(T, envprev.edge(d, r, c)))

                # corner d sits between sides d - 1 and d
                corner = Corner(d)
                side = d.prev()
                dr, dc = _NEXT[side]
                C = (
                    sig(side, r + dr, c + dc)
                    @ envfinal.corner(corner, r, c)
                    @ sig(d, r, c).conj().T
                )
                env = env.set_corner(corner, r, c, _fix_phase(C, envprev.corner(corner, r, c)))
    return env


def ctmrg_gauged_iter(peps: InfinitePEPS, env: CTMRGEnv, alg: CTMRG) -> CTMRGEnv:
    """One CTMRG iteration followed by gauge fixing against its input.

    At the CTMRG fixed point this map returns its input environment, which
    makes it the map whose Jacobian enters the fixed-point gradient.
    """
    envfinal, _ = ctmrg_iter(peps, env, alg)
    return gauge_fix(env, envfinal)


def _max_abs_diff(xs, ys) -> float:
    diffs = jax.tree_util.tree_map(lambda a, b: jnp.max(jnp.abs(a - b)), xs, ys)
    return max(float(jax.lax.stop_gradient(x)) for x in jax.tree_util.tree_leaves(diffs))


def _spectrum_diff(envprev: CTMRGEnv, envfinal: CTMRGEnv) -> float:
    """Largest change of the normalized singular values of any corner."""
    err = 0.0
    for C_prev, C_final in zip(
        jax.tree_util.tree_leaves(envprev.corners), jax.tree_util.tree_leaves(envfinal.corners)
    ):
        s_prev = jnp.linalg.svd(jax.lax.stop_gradient(C_prev), compute_uv=False)
        s_final = jnp.linalg.svd(jax.lax.stop_gradient(C_final), compute_uv=False)
        diff = s_final / jnp.linalg.norm(s_final) - s_prev / jnp.linalg.norm(s_prev)
        err = max(err, float(jnp.max(jnp.abs(diff))))
    return err


def check_elementwise_convergence(
    envprev: CTMRGEnv,
    envfix: CTMRGEnv,
    atol: float = 1e-6,
) -> bool:
    """Whether every corner and edge of *envfix* is within *atol* of *envprev*."""
    if envprev.bond_dims() != envfix.bond_dims():
        return False
    return _max_abs_diff(envprev, envfix) <= atol


# ---------------------------------------------------------------------------
# Fixed-point loop
# ---------------------------------------------------------------------------


def ctmrg_converge(
    env: CTMRGEnv,
    peps: InfinitePEPS,
    alg: CTMRG,
) -> tuple[CTMRGEnv, CTMRGInfo]:
    """Iterate CTMRG until the environment reaches its fixed point.

    Once the singular values of the corners have settled, every new
    environment is gauge fixed against the previous one. Before that the
    corner error is the change of the corner spectra and no gauge is fixed.
    The run is converged once the largest element-wise corner change and
    the change of the network norm are both below ``alg.tol``, and stops at
    the first converged iteration not before ``alg.miniter``.

    Returns:
        ``(env, info)``; *env* is the last iterate, gauge fixed once the
        corner spectra have settled.

    Raises:
        ValueError: If the environment does not fit the PEPS.
    """
    peps.check_gluing()
    env.check_gluing(peps)

    norm_prev = network_norm(peps, env)
    converged = False
    corner_err = norm_err = float("inf")
    trunc_err = 0.0
    for it in range(1, alg.maxiter + 1):
        envfinal, err = ctmrg_iter(peps, env, alg)
        if envfinal.bond_dims() == env.bond_dims():
            spectrum_err = _spectrum_diff(env, envfinal)
            if spectrum_err < max(alg.tol, GAUGE_SPECTRUM_TOL):
                envfinal = gauge_fix(env, envfinal)
                corner_err = _max_abs_diff(env.corners, envfinal.corners)
            else:
                corner_err = spectrum_err
        else:
            corner_err = float("inf")
        norm_new = network_norm(peps, envfinal)
        norm_err = float(jax.lax.stop_gradient(jnp.abs(norm_new - norm_prev)))
        trunc_err = float(jax.lax.stop_gradient(err))
        env, norm_prev = envfinal, norm_new

        converged = corner_err < alg.tol and norm_err < alg.tol
        if alg.verbosity >= 2:
            print(
                f"CTMRG iter {it}: corner err = {corner_err:.3e}, "
                f"norm err = {norm_err:.3e}, trunc err = {trunc_err:.3e}"
            )
        if converged and it >= alg.miniter:
            break

    if converged:
        if alg.verbosity >= 1:
            norm = float(jnp.real(jax.lax.stop_gradient(norm_prev)))
            print(f"CTMRG converged after {it} iterations: norm = {norm:.10g}")
    else:
        warnings.warn(
            f"CTMRG did not converge after {alg.maxiter} iterations "
            f"(corner err = {corner_err:.3e}, norm err = {norm_err:.3e})",
            RuntimeWarning,
            stacklevel=2,
        )
    return env, CTMRGInfo(it, converged, corner_err, norm_err, trunc_err)


def leading_boundary(env: CTMRGEnv, peps: InfinitePEPS, alg: CTMRG) -> CTMRGEnv:
    """Converged CTMRG environment of *peps*, starting from *env*."""
    env, _ = ctmrg_converge(env, peps, alg)
    return env
