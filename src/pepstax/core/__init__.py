"""Data model and numerical primitives: PEPS, CTMRG environments, rotations."""

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
from pepstax.core.env import CTMRGEnv
from pepstax.core.linalg import NoTrunc, TruncBelow, TruncDim, tsvd
from pepstax.core.peps import InfinitePEPS
from pepstax.core.rotations import rotate_north, rotl90, rotr90

# Default algorithm parameters shared by the CTMRG, gradient and optimizer
# configurations.
CTMRG_TOL = 1e-10
CTMRG_MAXITER = 100
CTMRG_MINITER = 4
FPGRAD_TOL = 1e-6
FPGRAD_MAXITER = 100
OPTIMIZER_GRADTOL = 1e-4
OPTIMIZER_MAXITER = 100

__all__ = [
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
    "CTMRG_TOL",
    "CTMRG_MAXITER",
    "CTMRG_MINITER",
    "FPGRAD_TOL",
    "FPGRAD_MAXITER",
    "OPTIMIZER_GRADTOL",
    "OPTIMIZER_MAXITER",
]
