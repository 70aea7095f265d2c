"""pepstax: CTMRG contraction and gradient optimization of infinite PEPS in JAX.

An infinite PEPS is stored as a unit cell of rank-5 tensors ``A[p, n, e, s, w]``.
Its environment is computed with CTMRG, and the energy gradient is obtained
by differentiating through the CTMRG fixed point.

.. note::
    Importing ``pepstax`` enables JAX 64-bit mode (``jax_enable_x64``).
    CTMRG tolerances below single precision need it.

Quick start::

    import jax
    import jax.numpy as jnp
    from pepstax import CTMRG, InfinitePEPS, PEPSOptimize, TruncDim, fixedpoint

    peps = InfinitePEPS.random(jax.random.PRNGKey(0), d=2, D=2)
    alg = PEPSOptimize(boundary_alg=CTMRG(trscheme=TruncDim(8)))
    result = fixedpoint(peps, H, alg)   # H: (d, d, d, d) nearest-neighbour term
    print(result.energy)
"""

import jax

jax.config.update("jax_enable_x64", True)

from pepstax.algorithms import (  # noqa: E402
    CTMRG,
    CTMRGInfo,
    GeomSum,
    GradMode,
    LinSolve,
    ManualIter,
    NaiveAD,
    NearestNeighbor,
    OnSite,
    OptimizationInfo,
    OptimizationResult,
    PEPSOptimize,
    check_elementwise_convergence,
    costfun,
    costfun_reuse,
    ctmrg_converge,
    ctmrg_gauged_iter,
    ctmrg_gradient,
    ctmrg_iter,
    energy_expectation,
    expectation_value,
    fixedpoint,
    fpgrad,
    gauge_fix,
    leading_boundary,
    left_move,
    network_norm,
    next_neighbor_energy,
    one_site_rho,
    two_site_rho,
)
from pepstax.algorithms.peps_opt import add, inner, retract, scale  # noqa: E402
from pepstax.core import (  # noqa: E402
    EAST,
    NORTH,
    NORTHEAST,
    NORTHWEST,
    SOUTH,
    SOUTHEAST,
    SOUTHWEST,
    WEST,
    Corner,
    CTMRGEnv,
    Direction,
    InfinitePEPS,
    NoTrunc,
    TruncBelow,
    TruncDim,
    rotate_north,
    rotl90,
    rotr90,
    tsvd,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "Direction",
    "Corner",
    "NORTH",
    "EAST",
    "SOUTH",
    "WEST",
    "NORTHWEST",
    "NORTHEAST",
    "SOUTHEAST",
    "SOUTHWEST",
    "InfinitePEPS",
    "CTMRGEnv",
    "NoTrunc",
    "TruncDim",
    "TruncBelow",
    "tsvd",
    "rotl90",
    "rotr90",
    "rotate_north",
    # CTMRG
    "CTMRG",
    "CTMRGInfo",
    "left_move",
    "ctmrg_iter",
    "gauge_fix",
    "ctmrg_gauged_iter",
    "check_elementwise_convergence",
    "ctmrg_converge",
    "leading_boundary",
    # Observables
    "OnSite",
    "NearestNeighbor",
    "one_site_rho",
    "two_site_rho",
    "network_norm",
    "expectation_value",
    "next_neighbor_energy",
    "energy_expectation",
    # Gradients and optimization
    "NaiveAD",
    "GeomSum",
    "ManualIter",
    "LinSolve",
    "GradMode",
    "fpgrad",
    "PEPSOptimize",
    "OptimizationInfo",
    "OptimizationResult",
    "costfun",
    "costfun_reuse",
    "ctmrg_gradient",
    "fixedpoint",
    "retract",
    "inner",
    "add",
    "scale",
]
