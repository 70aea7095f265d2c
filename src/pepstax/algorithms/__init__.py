"""PEPS algorithms: CTMRG contraction, fixed-point gradients, optimization."""

from pepstax.algorithms.ctmrg import (
    CTMRG,
    CTMRGInfo,
    check_elementwise_convergence,
    ctmrg_converge,
    ctmrg_gauged_iter,
    ctmrg_iter,
    gauge_fix,
    leading_boundary,
    left_move,
)
from pepstax.algorithms.expectation import (
    NearestNeighbor,
    OnSite,
    energy_expectation,
    expectation_value,
    network_norm,
    next_neighbor_energy,
    one_site_rho,
    two_site_rho,
)
from pepstax.algorithms.fpgrad import (
    GeomSum,
    GradMode,
    LinSolve,
    ManualIter,
    NaiveAD,
    fpgrad,
)
from pepstax.algorithms.peps_opt import (
    OptimizationInfo,
    OptimizationResult,
    PEPSOptimize,
    costfun,
    costfun_reuse,
    ctmrg_gradient,
    fixedpoint,
)

__all__ = [
    "CTMRG",
    "CTMRGInfo",
    "left_move",
    "ctmrg_iter",
    "gauge_fix",
    "ctmrg_gauged_iter",
    "check_elementwise_convergence",
    "ctmrg_converge",
    "leading_boundary",
    "OnSite",
    "NearestNeighbor",
    "one_site_rho",
    "two_site_rho",
    "network_norm",
    "expectation_value",
    "next_neighbor_energy",
    "energy_expectation",
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
]
