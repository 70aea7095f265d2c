"""Cardinal directions and corners of a lattice site.

Both enumerations are ordered clockwise, starting from north (north-west
for corners), so that a 90 degree rotation is a shift by one modulo 4.
"""

from __future__ import annotations

from enum import IntEnum


class Direction(IntEnum):
    """Side of a site, in clockwise order.

    The integer value is also the number of 90 degree counter-clockwise
    rotations (``rotl90``) needed to bring that side to the north.
    """

    NORTH = 0
    EAST = 1
    SOUTH = 2
    WEST = 3

    def next(self) -> Direction:
        """Next side in clockwise order."""
        return Direction((self + 1) % 4)

    def prev(self) -> Direction:
        """Previous side in clockwise order."""
        return Direction((self - 1) % 4)


class Corner(IntEnum):
    """Corner of a site, in clockwise order.

    Corner ``c`` sits between sides ``Direction(c - 1)`` and ``Direction(c)``,
    e.g. NORTHWEST lies between WEST and NORTH.
    """

    NORTHWEST = 0
    NORTHEAST = 1
    SOUTHEAST = 2
    SOUTHWEST = 3

    def next(self) -> Corner:
        return Corner((self + 1) % 4)

    def prev(self) -> Corner:
        return Corner((self - 1) % 4)


NORTH, EAST, SOUTH, WEST = Direction
NORTHWEST, NORTHEAST, SOUTHEAST, SOUTHWEST = Corner
