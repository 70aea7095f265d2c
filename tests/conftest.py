"""Shared fixtures for the pepstax test suite."""

import jax
import jax.numpy as jnp
import pytest

from pepstax import InfinitePEPS

# ------------------------------------------------------------------ #
# Random key fixtures                                                  #
# ------------------------------------------------------------------ #

@pytest.fixture
def rng():
    return jax.random.PRNGKey(42)


@pytest.fixture
def rng2():
    return jax.random.PRNGKey(99)


# ------------------------------------------------------------------ #
# States and Hamiltonians                                              #
# ------------------------------------------------------------------ #

def product_peps(phi, D=2, unitcell=(1, 1)):
    """Product state: every virtual leg carries the basis vector |0>."""
    phi = jnp.asarray(phi, dtype=jnp.float64)
    phi = phi / jnp.linalg.norm(phi)
    v = jnp.zeros(D).at[0].set(1.0)
    A = jnp.einsum("p,n,e,s,w->pnesw", phi, v, v, v, v)
    nrows, ncols = unitcell
    return InfinitePEPS.from_tensors([[A] * ncols for _ in range(nrows)])


def noisy_product_peps(key, noise=0.4, d=2, D=2):
    """Product state plus Gaussian noise: short-ranged but entangled."""
    A = product_peps(jnp.linspace(1.0, 0.5, d), D=D).A[0][0]
    A = A + noise * jax.random.normal(key, A.shape)
    return InfinitePEPS.from_tensors(A / jnp.linalg.norm(A))


def heisenberg_rotated():
    """Sublattice-rotated Heisenberg bond -Sz*Sz - 0.5*(S+S+ + S-S-)."""
    Sz = jnp.array([[0.5, 0.0], [0.0, -0.5]])
    Sp = jnp.array([[0.0, 1.0], [0.0, 0.0]])
    Sm = jnp.array([[0.0, 0.0], [1.0, 0.0]])
    H = -jnp.kron(Sz, Sz) - 0.5 * (jnp.kron(Sp, Sp) + jnp.kron(Sm, Sm))
    return H.reshape(2, 2, 2, 2)


@pytest.fixture
def heisenberg():
    return heisenberg_rotated()
