"""Variational ground-state search for infinite PEPS.

The energy and its gradient are evaluated at the CTMRG fixed point of the
current PEPS; the gradient is computed with the strategy selected by
``PEPSOptimize.gradient_alg`` (see :mod:`pepstax.algorithms.fpgrad`), and
an optax optimizer turns gradients into updates.

Optimization points are pairs ``(peps, env)``: the PEPS is the variable,
the environment is carried along as the starting point of the next CTMRG
run when ``reuse_env`` is set.
"""

from __future__ import annotations

import math
import warnings
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, NamedTuple

import jax
import jax.numpy as jnp

from pepstax.algorithms.ctmrg import CTMRG, ctmrg_gauged_iter, leading_boundary
from pepstax.algorithms.expectation import energy_expectation
from pepstax.algorithms.fpgrad import GeomSum, GradMode, NaiveAD, fpgrad
from pepstax.core import OPTIMIZER_GRADTOL, OPTIMIZER_MAXITER
from pepstax.core.env import CTMRGEnv
from pepstax.core.linalg import (
    tree_add,
    tree_conj,
    tree_has_nan,
    tree_inner,
    tree_scale,
    tree_zeros_like,
)
from pepstax.core.peps import InfinitePEPS

if TYPE_CHECKING:
    import optax


@dataclass(frozen=True)
class PEPSOptimize:
    """Configuration of the PEPS optimization.

    Attributes:
        boundary_alg:  CTMRG settings for every cost evaluation.
        optimizer:     ``"adam"``, ``"sgd"``, ``"lbfgs"`` or an
                       ``optax.GradientTransformation``.
        learning_rate: Step size for named optimizers.
        maxiter:       Maximum number of optimizer updates.
        gradtol:       Stop once the gradient norm drops below this value.
        reuse_env:     Start each CTMRG run from the previous environment
                       instead of a fresh random one.
        gradient_alg:  How to differentiate through the CTMRG fixed point.
        verbosity:     0 silent, 1 one line per step.
        seed:          Seed for random initial environments.
    """

    boundary_alg: CTMRG = field(default_factory=CTMRG)
    optimizer: str | optax.GradientTransformation = "adam"
    learning_rate: float = 1e-2
    maxiter: int = OPTIMIZER_MAXITER
    gradtol: float = OPTIMIZER_GRADTOL
    reuse_env: bool = True
    gradient_alg: GradMode = field(default_factory=GeomSum)
    verbosity: int = 0
    seed: int = 0

    def __post_init__(self):
        if self.maxiter < 0:
            raise ValueError(f"maxiter must be non-negative, got {self.maxiter}")
        if self.gradtol <= 0:
            raise ValueError(f"gradtol must be positive, got {self.gradtol}")


class OptimizationInfo(NamedTuple):
    """Diagnostics of :func:`fixedpoint`.

    Attributes:
        converged:  True if the gradient norm dropped below ``gradtol``.
        num_steps:  Number of optimizer updates performed.
        energies:   Energy at every evaluated point.
        gradnorms:  Gradient norm at every evaluated point.
    """

    converged: bool
    num_steps: int
    energies: list[float]
    gradnorms: list[float]


class OptimizationResult(NamedTuple):
    """Result of :func:`fixedpoint`.

    Attributes:
        peps:   Optimized PEPS.
        env:    Converged environment of ``peps``.
        energy: Energy per unit cell of ``peps``.
        grad:   Gradient at ``peps``.
        info:   Convergence diagnostics.
    """

    peps: InfinitePEPS
    env: CTMRGEnv
    energy: float
    grad: InfinitePEPS
    info: OptimizationInfo


# ---------------------------------------------------------------------------
# Manifold operations on (peps, env) points
# ---------------------------------------------------------------------------


def retract(
    x: tuple[InfinitePEPS, CTMRGEnv],
    dx: InfinitePEPS,
    alpha: float,
) -> tuple[InfinitePEPS, CTMRGEnv]:
    """Move the PEPS by ``alpha * dx``, keeping the environment."""
    peps, env = x
    return tree_add(peps, dx, alpha), env


def inner(x, g1: InfinitePEPS, g2: InfinitePEPS) -> jax.Array:
    """Real part of the dot product of two gradients at the point *x*."""
    return tree_inner(g1, g2)


def add(y: InfinitePEPS, x: InfinitePEPS, a: float = 1.0) -> InfinitePEPS:
    """``y + a * x``."""
    return tree_add(y, x, a)


def scale(g: InfinitePEPS, beta: float) -> InfinitePEPS:
    return tree_scale(g, beta)


# ---------------------------------------------------------------------------
# Cost and gradient
# ---------------------------------------------------------------------------


@jax.jit
def _pullback_peps(pullback, cotangent):
    return pullback(cotangent)[0]


@jax.jit
def _pullback_env(pullback, cotangent):
    return pullback(cotangent)[1]


def costfun(peps: InfinitePEPS, env: CTMRGEnv, H, alg: PEPSOptimize) -> jax.Array:
    """Energy of *peps* at the CTMRG fixed point reached from *env*.

    Environments are immutable, so *env* can be reused as the starting point
    of any number of evaluations.
    """
    E, _ = costfun_reuse(peps, env, H, alg)
    return E


def costfun_reuse(
    peps: InfinitePEPS,
    env: CTMRGEnv,
    H,
    alg: PEPSOptimize,
) -> tuple[jax.Array, CTMRGEnv]:
    """Like :func:`costfun`, also returning the converged environment."""
    env = leading_boundary(env, peps, alg.boundary_alg)
    return energy_expectation(peps, env, H), env


def ctmrg_gradient(
    peps: InfinitePEPS,
    env: CTMRGEnv,
    H,
    alg: PEPSOptimize,
) -> tuple[jax.Array, InfinitePEPS, CTMRGEnv]:
    """Energy, energy gradient and converged environment of *peps*.

    The gradient is returned as the direction of steepest ascent, i.e. the
    complex conjugate of JAX's cotangent for complex tensors.

    Raises:
        FloatingPointError: If the energy or the gradient contains NaN.
    """
    boundary_alg = alg.boundary_alg

    def energyfun(p, e):
        return energy_expectation(p, e, H)

    match alg.gradient_alg:
        case NaiveAD():
            def loss(p):
                e = leading_boundary(env, p, boundary_alg)
                return energyfun(p, e), e

            (E, env), grad = jax.value_and_grad(loss, has_aux=True)(peps)
        case _:
            env = leading_boundary(env, peps, boundary_alg)
            E, (dFdA, dFdx) = jax.value_and_grad(energyfun, argnums=(0, 1))(peps, env)
            fixed_alg = replace(boundary_alg, fixedspace=True)
            _, pullback = jax.vjp(
                lambda p, e: ctmrg_gauged_iter(p, e, fixed_alg), peps, env
            )
            dx = fpgrad(
                dFdx,
                lambda v: _pullback_env(pullback, v),
                lambda v: _pullback_peps(pullback, v),
                tree_zeros_like(dFdx),
                alg.gradient_alg,
            )
            grad = tree_add(dFdA, dx)

    grad = tree_conj(grad)
    if math.isnan(float(E)) or tree_has_nan(grad):
        raise FloatingPointError("energy gradient contains NaN")
    return E, grad, env


def _make_optimizer(alg: PEPSOptimize):
    import optax

    if not isinstance(alg.optimizer, str):
        return alg.optimizer
    if alg.optimizer == "adam":
        return optax.adam(alg.learning_rate)
    if alg.optimizer == "sgd":
        return optax.sgd(alg.learning_rate)
    if alg.optimizer == "lbfgs":
        return optax.lbfgs(learning_rate=alg.learning_rate, linesearch=None)
    raise ValueError(f"unknown optimizer {alg.optimizer!r}")


def fixedpoint(
    peps: InfinitePEPS,
    H,
    alg: PEPSOptimize | None = None,
    env: CTMRGEnv | None = None,
) -> OptimizationResult:
    """Minimize the energy of *H* starting from *peps*.

    Args:
        peps: Initial PEPS.
        H:    Hamiltonian term: ``NearestNeighbor``, ``OnSite`` or a bare
              rank-4 (nearest-neighbour) or rank-2 (on-site) array.
        alg:  Optimization settings.
        env:  Initial environment. Defaults to the double-layer environment
              of *peps* (see :meth:`CTMRGEnv.from_peps`).

    Returns:
        ``OptimizationResult(peps, env, energy, grad, info)``.
    """
    alg = PEPSOptimize() if alg is None else alg
    key = jax.random.PRNGKey(alg.seed)
    if env is None:
        env = CTMRGEnv.from_peps(peps)
    env.check_gluing(peps)
    env0 = env

    optimizer = _make_optimizer(alg)
    opt_state = optimizer.init(peps)

    energies, gradnorms = [], []
    converged = False
    step = 0
    while True:
        if alg.reuse_env:
            env_init = env
        else:
            env_init = CTMRGEnv.random_like(env0, jax.random.fold_in(key, step))
        E, grad, env = ctmrg_gradient(peps, env_init, H, alg)
        gradnorm = float(jnp.sqrt(inner((peps, env), grad, grad)))
        energies.append(float(E))
        gradnorms.append(gradnorm)
        if alg.verbosity >= 1:
            print(f"Step {step}: E = {float(E):.10f}, |grad| = {gradnorm:.3e}")
        if gradnorm < alg.gradtol:
            converged = True
            break
        if step == alg.maxiter:
            break
        updates, opt_state = optimizer.update(grad, opt_state, peps)
        peps, env = retract((peps, env), updates, 1.0)
        step += 1

    if not converged:
        warnings.warn(
            f"PEPS optimization did not converge after {alg.maxiter} steps "
            f"(|grad| = {gradnorms[-1]:.3e})",
            RuntimeWarning,
            stacklevel=2,
        )
    info = OptimizationInfo(converged, step, energies, gradnorms)
    return OptimizationResult(peps, env, float(E), grad, info)
