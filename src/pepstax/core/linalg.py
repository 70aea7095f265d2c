"""Linear algebra primitives for CTMRG.

1. Truncation schemes and a truncated SVD whose derivative stays finite for
   degenerate singular values (Lorentzian broadening of the F-matrix, as in
   Lootens et al., Phys. Rev. Research 7, 013237 (2025)).
2. ``contract``: einsum with opt_einsum path finding, executed on JAX.
3. Vector-space operations on pytrees of arrays (environments, PEPS and
   their cotangents).
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

import jax
import jax.numpy as jnp
import opt_einsum

# Singular values below RANK_RTOL * s_max are treated as numerically zero
RANK_RTOL = 1e-12
# Lorentzian broadening of 1 / (s_j^2 - s_i^2), relative to s_max^2
LORENTZ_EPS = 1e-12


# ---------------------------------------------------------------------------
# Truncation schemes
# ---------------------------------------------------------------------------


def _numerical_rank(s: jax.Array) -> int:
    return max(1, int(jnp.sum(s > s[0] * RANK_RTOL)))


@dataclass(frozen=True)
class NoTrunc:
    """Keep every singular value above the numerical rank floor."""

    def truncation_dim(self, s: jax.Array) -> int:
        return _numerical_rank(s)


@dataclass(frozen=True)
class TruncDim:
    """Keep the *dim* largest singular values.

    Attributes:
        dim: Target bond dimension (chi).
    """

    dim: int

    def __post_init__(self):
        if self.dim < 1:
            raise ValueError(f"truncation dimension must be positive, got {self.dim}")

    def truncation_dim(self, s: jax.Array) -> int:
        return min(self.dim, s.shape[0])


@dataclass(frozen=True)
class TruncBelow:
    """Discard singular values smaller than *tol* (absolute)."""

    tol: float

    def __post_init__(self):
        if self.tol < 0:
            raise ValueError(f"truncation tolerance must be non-negative, got {self.tol}")

    def truncation_dim(self, s: jax.Array) -> int:
        return max(1, int(jnp.sum(s > self.tol)))


TruncationScheme = NoTrunc | TruncDim | TruncBelow


# ---------------------------------------------------------------------------
# SVD with broadened derivative
# ---------------------------------------------------------------------------


@jax.custom_jvp
def svd(M: jax.Array) -> tuple[jax.Array, jax.Array, jax.Array]:
    """Thin SVD ``M = U @ diag(s) @ Vh`` with a degeneracy-safe derivative."""
    U, s, Vh = jnp.linalg.svd(M, full_matrices=False)
    return U, s, Vh


@svd.defjvp
def _svd_jvp(primals, tangents):
    (M,) = primals
    (dM,) = tangents
    U, s, Vh = jnp.linalg.svd(M, full_matrices=False)

    s_max = s[0]
    eps = LORENTZ_EPS * s_max ** 2
    nonzero = s > s_max * RANK_RTOL
    s_inv = jnp.where(nonzero, 1.0 / jnp.where(nonzero, s, 1.0), 0.0)

    Ut = U.conj().T
    V = Vh.conj().T
    dS = Ut @ dM @ V
    ds = jnp.real(jnp.diag(dS))

    s_row = s[None, :]
    s_col = s[:, None]
    # F_ij = 1 / (s_j^2 - s_i^2), broadened so that degenerate pairs give 0
    diff = s_row ** 2 - s_col ** 2
    F = diff / (diff ** 2 + eps ** 2)

    dSS = dS * s_row
    SdS = s_col * dS
    dUdV_diag = 0.5 * (dS - dS.conj().T) * jnp.diag(s_inv)
    dU = U @ (F * (dSS + dSS.conj().T) + dUdV_diag)
    dV = V @ (F * (SdS + SdS.conj().T))

    m, n = M.shape
    if m > n:
        dMV = dM @ V
        dU = dU + (dMV - U @ (Ut @ dMV)) * s_inv[None, :]
    if n > m:
        dMhU = dM.conj().T @ U
        dV = dV + (dMhU - V @ (Vh @ dMhU)) * s_inv[None, :]
    return (U, s, Vh), (dU, ds, dV.conj().T)


def tsvd(
    M: jax.Array,
    trscheme: TruncationScheme = NoTrunc(),
    fixed_dim: int | None = None,
) -> tuple[jax.Array, jax.Array, jax.Array, jax.Array]:
    """Truncated SVD of a matrix.

    Args:
        M:         2-D matrix.
        trscheme:  How many singular values to keep.
        fixed_dim: If given, keep exactly this many singular values and
                   ignore *trscheme* (used to preserve existing bond spaces).

    Returns:
        ``(U, S, Vh, err)`` where ``err`` is the discarded weight
        ``||s_discarded|| / ||s||``.

    Raises:
        ValueError: If *fixed_dim* exceeds the number of singular values.
    """
    U, S, Vh = svd(M)
    s = jax.lax.stop_gradient(S)
    if fixed_dim is None:
        k = trscheme.truncation_dim(s)
    else:
        if fixed_dim > s.shape[0]:
            raise ValueError(
                f"cannot keep {fixed_dim} singular values of a {M.shape} matrix"
            )
        k = fixed_dim
    err = jnp.linalg.norm(s[k:]) / jnp.linalg.norm(s)
    return U[:, :k], S[:k], Vh[:k, :], err


# ---------------------------------------------------------------------------
# Contraction
# ---------------------------------------------------------------------------


@lru_cache(maxsize=None)
def _contraction_path(subscripts: str, shapes: tuple[tuple[int, ...], ...]) -> list:
    path, _ = opt_einsum.contract_path(subscripts, *shapes, shapes=True, optimize="auto")
    return path


def contract(subscripts: str, *operands: jax.Array) -> jax.Array:
    """Einsum over JAX arrays with a cached opt_einsum contraction path."""
    path = _contraction_path(subscripts, tuple(tuple(x.shape) for x in operands))
    return opt_einsum.contract(subscripts, *operands, optimize=path, backend="jax")


# ---------------------------------------------------------------------------
# Pytree vector space
# ---------------------------------------------------------------------------


def tree_inner(x, y) -> jax.Array:
    """Real part of the conjugate-linear dot product over all leaves."""
    leaves = jax.tree_util.tree_leaves(
        jax.tree_util.tree_map(lambda a, b: jnp.real(jnp.vdot(a, b)), x, y)
    )
    return sum(leaves, jnp.zeros(()))


def tree_norm(x) -> jax.Array:
    return jnp.sqrt(tree_inner(x, x))


def tree_add(x, y, alpha=1.0):
    """``x + alpha * y``."""
    return jax.tree_util.tree_map(lambda a, b: a + alpha * b, x, y)


def tree_sub(x, y):
    return jax.tree_util.tree_map(lambda a, b: a - b, x, y)


def tree_scale(x, alpha):
    return jax.tree_util.tree_map(lambda a: alpha * a, x)


def tree_zeros_like(x):
    return jax.tree_util.tree_map(jnp.zeros_like, x)


def tree_conj(x):
    return jax.tree_util.tree_map(jnp.conj, x)


def tree_has_nan(x) -> bool:
    return any(bool(jnp.any(jnp.isnan(a))) for a in jax.tree_util.tree_leaves(x))
