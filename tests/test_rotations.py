"""Tests for directions and 90 degree rotations."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from pepstax import (
    EAST,
    NORTH,
    NORTHEAST,
    NORTHWEST,
    SOUTH,
    SOUTHWEST,
    WEST,
    Corner,
    CTMRGEnv,
    Direction,
    InfinitePEPS,
    rotate_north,
    rotl90,
    rotr90,
)


def _trees_equal(x, y):
    xs, ys = jax.tree_util.tree_leaves(x), jax.tree_util.tree_leaves(y)
    return len(xs) == len(ys) and all(
        a.shape == b.shape and bool(jnp.array_equal(a, b)) for a, b in zip(xs, ys)
    )


def _random_cell(key, nrows, ncols):
    """PEPS with distinct bond dimensions on every bond, to catch leg mix-ups."""
    keys = jax.random.split(key, nrows * ncols)
    # horizontal bond (r, c)-(r, c+1) has dim 2 + (r + c) % 2,
    # vertical bond (r, c)-(r+1, c) has dim 2 + (r * ncols + c) % 3
    h = lambda r, c: 2 + ((r % nrows) + (c % ncols)) % 2
    v = lambda r, c: 2 + ((r % nrows) * ncols + (c % ncols)) % 3
    grid = []
    for r in range(nrows):
        row = []
        for c in range(ncols):
            shape = (2, v(r - 1, c), h(r, c), v(r, c), h(r, c - 1))
            row.append(jax.random.normal(keys[r * ncols + c], shape))
        grid.append(row)
    return InfinitePEPS.from_tensors(grid)


class TestDirections:
    def test_clockwise_order(self):
        assert [d.name for d in Direction] == ["NORTH", "EAST", "SOUTH", "WEST"]
        assert NORTH.next() == EAST
        assert NORTH.prev() == WEST
        assert WEST.next() == NORTH

    def test_corner_arithmetic(self):
        assert NORTHWEST.prev() == SOUTHWEST
        assert SOUTHWEST.next() == NORTHWEST
        assert NORTHEAST.prev() == NORTHWEST

    def test_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            Direction(4)
        with pytest.raises(ValueError):
            Corner(-1)


class TestRotateTensor:
    def test_east_leg_becomes_north(self, rng):
        A = jax.random.normal(rng, (2, 3, 4, 5, 6))
        B = rotl90(A)
        assert B.shape == (2, 4, 5, 6, 3)

    def test_four_rotations_identity(self, rng):
        A = jax.random.normal(rng, (2, 3, 4, 5, 6))
        B = A
        for _ in range(4):
            B = rotl90(B)
        assert jnp.array_equal(A, B)

    def test_rotr90_inverts_rotl90(self, rng):
        A = jax.random.normal(rng, (2, 3, 4, 5, 6))
        assert jnp.array_equal(rotr90(rotl90(A)), A)

    def test_numpy_input(self):
        A = np.zeros((1, 2, 3, 4, 5))
        assert rotl90(A).shape == (1, 3, 4, 5, 2)

    def test_wrong_rank(self):
        with pytest.raises(ValueError):
            rotl90(jnp.zeros((2, 2)))

    def test_unsupported_type(self):
        with pytest.raises(TypeError):
            rotl90("north")


class TestRotateGrid:
    def test_grid_layout(self):
        grid = ((1, 2, 3), (4, 5, 6))
        # top-right entry moves to the top-left
        assert rotl90(grid) == ((3, 6), (2, 5), (1, 4))

    def test_rotate_north_noop(self, rng):
        peps = InfinitePEPS.random(rng, 2, 2)
        assert rotate_north(peps, NORTH) is peps


class TestRotatePEPS:
    @given(
        st.integers(min_value=1, max_value=3),
        st.integers(min_value=1, max_value=3),
        st.sampled_from(list(Direction)),
    )
    @settings(max_examples=20, deadline=None)
    def test_round_trip(self, nrows, ncols, direction):
        """Rotating to north and back restores the PEPS exactly."""
        peps = _random_cell(jax.random.PRNGKey(nrows * 10 + ncols), nrows, ncols)
        rotated = rotate_north(peps, direction)
        back = rotate_north(rotated, (4 - direction) % 4)
        assert _trees_equal(back, peps)

    @pytest.mark.parametrize("unitcell", [(1, 1), (2, 3), (3, 2)])
    def test_rotated_peps_glues(self, rng, unitcell):
        peps = _random_cell(rng, *unitcell)
        for direction in Direction:
            rotated = rotate_north(peps, direction)
            rotated.check_gluing()
            if direction % 2:
                assert rotated.unitcell == unitcell[::-1]

    def test_vertical_bond_becomes_horizontal(self, rng):
        peps = _random_cell(rng, 2, 1)
        rotated = rotl90(peps)
        assert rotated.unitcell == (1, 2)
        # the upper site ends up on the left
        assert jnp.array_equal(rotated.site(0, 0), rotl90(peps.site(0, 0)))
        assert jnp.array_equal(rotated.site(0, 1), rotl90(peps.site(1, 0)))


class TestRotateEnv:
    @pytest.mark.parametrize("unitcell", [(1, 1), (2, 3)])
    def test_rotated_env_glues(self, rng, unitcell):
        peps = _random_cell(rng, *unitcell)
        env = CTMRGEnv.random(peps, 3, rng)
        for direction in Direction:
            rotate_north(env, direction).check_gluing(rotate_north(peps, direction))

    def test_east_edges_become_north_edges(self, rng):
        peps = _random_cell(rng, 2, 3)
        env = CTMRGEnv.random(peps, 3, rng)
        rotated = rotl90(env)
        assert jnp.array_equal(rotated.edge(NORTH, 0, 0), env.edge(EAST, 0, 2))
        assert jnp.array_equal(rotated.corner(NORTHWEST, 0, 0), env.corner(NORTHEAST, 0, 2))
        assert jnp.array_equal(rotated.edge(WEST, 2, 1), env.edge(NORTH, 1, 0))

    @given(st.sampled_from(list(Direction)))
    @settings(max_examples=8, deadline=None)
    def test_round_trip(self, direction):
        key = jax.random.PRNGKey(3)
        peps = _random_cell(key, 2, 3)
        env = CTMRGEnv.random(peps, 2, key)
        back = rotate_north(rotate_north(env, direction), (4 - direction) % 4)
        assert _trees_equal(back, env)

    def test_south_west_cycle(self, rng):
        peps = _random_cell(rng, 1, 1)
        env = CTMRGEnv.random(peps, 2, rng)
        twice = rotl90(rotl90(env))
        assert jnp.array_equal(twice.edge(NORTH, 0, 0), env.edge(SOUTH, 0, 0))
        assert jnp.array_equal(twice.corner(NORTHWEST, 0, 0), env.corner(Corner.SOUTHEAST, 0, 0))
