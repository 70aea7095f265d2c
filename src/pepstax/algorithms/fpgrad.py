"""Gradients through the CTMRG fixed point.

For a cost ``F(A, x*)`` with ``x* = f(A, x*)`` the implicit function theorem
gives::

    dF/dA = dF/dA|_x + dF/dx (1 - df/dx)^-1 df/dA

All linear maps are applied as vector-Jacobian products of a single
(gauge-fixed) CTMRG iteration, so the CTMRG loop itself is never unrolled.
The vector ``y = dF/dx (1 - df/dx)^-1`` solves ``y = dF/dx + y df/dx`` and
is obtained by one of three strategies:

- :class:`GeomSum`:    explicit Neumann series ``sum_n dF/dx (df/dx)^n``
- :class:`ManualIter`: fixed-point iteration of the equation above
- :class:`LinSolve`:   GMRES on ``(1 - df/dx) y = dF/dx``

:class:`NaiveAD` instead differentiates through every CTMRG iteration and
never reaches :func:`fpgrad`.
"""

from __future__ import annotations

import warnings
from collections.abc import Callable
from dataclasses import dataclass

from jax.scipy.sparse.linalg import gmres

from pepstax.core import FPGRAD_MAXITER, FPGRAD_TOL
from pepstax.core.directions import NORTHWEST
from pepstax.core.linalg import tree_add, tree_norm, tree_sub, tree_zeros_like


@dataclass(frozen=True)
class NaiveAD:
    """Differentiate through the whole CTMRG loop with JAX autodiff."""


@dataclass(frozen=True)
class _IterativeGradMode:
    maxiter: int = FPGRAD_MAXITER
    tol: float = FPGRAD_TOL
    verbosity: int = 0

    def __post_init__(self):
        if self.maxiter < 1:
            raise ValueError(f"maxiter must be at least 1, got {self.maxiter}")
        if self.tol <= 0:
            raise ValueError(f"tol must be positive, got {self.tol}")


@dataclass(frozen=True)
class GeomSum(_IterativeGradMode):
    """Sum the geometric series until the newest term has norm below ``tol``."""


@dataclass(frozen=True)
class ManualIter(_IterativeGradMode):
    """Picard iteration, converged when the north-west corners change by
    less than ``tol`` relative to their norm."""


@dataclass(frozen=True)
class LinSolve(_IterativeGradMode):
    """GMRES solve with relative tolerance ``tol``.

    Attributes:
        restart: Krylov subspace size between GMRES restarts; ``maxiter``
                 counts restarts.
    """

    restart: int = 20


GradMode = NaiveAD | GeomSum | ManualIter | LinSolve

LinearMap = Callable[[object], object]


def fpgrad(
    dFdx,
    dfdx: LinearMap,
    dfdA: LinearMap,
    y0,
    alg: GradMode,
):
    """Fixed-point contribution ``dF/dx (1 - df/dx)^-1 df/dA`` to the gradient.

    Args:
        dFdx: Gradient of the cost with respect to the environment.
        dfdx: Environment cotangent -> environment cotangent of one iteration.
        dfdA: Environment cotangent -> PEPS cotangent of one iteration.
        y0:   Initial guess for ``y`` (ignored by :class:`GeomSum`).
        alg:  Gradient mode.

    Returns:
        Cotangent with respect to the PEPS tensors.

    Non-convergence within ``alg.maxiter`` is reported as a
    ``RuntimeWarning``; the current approximation is returned.
    """
    match alg:
        case GeomSum():
            return _geomsum(dFdx, dfdx, dfdA, alg)
        case ManualIter():
            return _manualiter(dFdx, dfdx, dfdA, y0, alg)
        case LinSolve():
            return _linsolve(dFdx, dfdx, dfdA, y0, alg)
        case NaiveAD():
            raise TypeError("NaiveAD differentiates the CTMRG loop directly, not via fpgrad")
        case _:
            raise TypeError(f"unknown gradient mode {type(alg).__name__}")


def _warn(name: str, alg, err: float) -> None:
    warnings.warn(
        f"{name} gradient did not converge after {alg.maxiter} iterations "
        f"(err = {err:.3e})",
        RuntimeWarning,
        stacklevel=3,
    )


def _geomsum(dFdx, dfdx, dfdA, alg: GeomSum):
    g = dFdx
    dx = dfdA(g)
    err = float(tree_norm(dx))
    for it in range(1, alg.maxiter + 1):
        g = dfdx(g)
        term = dfdA(g)
        dx = tree_add(dx, term)
        err = float(tree_norm(term))
        if alg.verbosity >= 2:
            print(f"GeomSum iter {it}: err = {err:.3e}")
        if err < alg.tol:
            if alg.verbosity >= 1:
                print(f"GeomSum converged after {it} iterations")
            return dx
    _warn("GeomSum", alg, err)
    return dx


def _manualiter(dFdx, dfdx, dfdA, y0, alg: ManualIter):
    y = y0
    err = float("inf")
    for it in range(1, alg.maxiter + 1):
        y_new = tree_add(dFdx, dfdx(y))
        diff = float(tree_norm(tree_sub(y_new.corners[NORTHWEST], y.corners[NORTHWEST])))
        ref = float(tree_norm(y.corners[NORTHWEST]))
        err = diff / ref if ref > 0 else diff
        y = y_new
        if alg.verbosity >= 2:
            print(f"ManualIter iter {it}: err = {err:.3e}")
        if err < alg.tol:
            if alg.verbosity >= 1:
                print(f"ManualIter converged after {it} iterations")
            return dfdA(y)
    _warn("ManualIter", alg, err)
    return dfdA(y)


def _linsolve(dFdx, dfdx, dfdA, y0, alg: LinSolve):
    b_norm = float(tree_norm(dFdx))
    if b_norm == 0:
        return dfdA(tree_zeros_like(dFdx))

    def operator(v):
        return tree_sub(v, dfdx(v))

    y, _ = gmres(operator, dFdx, x0=y0, tol=alg.tol, restart=alg.restart, maxiter=alg.maxiter)
    # jax's gmres reports no convergence info, check the residual instead
    err = float(tree_norm(tree_sub(operator(y), dFdx))) / b_norm
    if alg.verbosity >= 1:
        print(f"LinSolve residual: {err:.3e}")
    if err > alg.tol:
        warnings.warn(
            f"LinSolve gradient did not converge (relative residual = {err:.3e})",
            RuntimeWarning,
            stacklevel=3,
        )
    return dfdA(y)
