"""Tests for energy gradients and the PEPS optimization loop."""

import warnings

import jax
import jax.numpy as jnp
import optax
import pytest

from conftest import heisenberg_rotated, noisy_product_peps, product_peps
from pepstax import (
    CTMRG,
    NORTH,
    CTMRGEnv,
    GeomSum,
    InfinitePEPS,
    LinSolve,
    ManualIter,
    NaiveAD,
    NoTrunc,
    PEPSOptimize,
    TruncDim,
    add,
    costfun,
    costfun_reuse,
    ctmrg_gradient,
    fixedpoint,
    inner,
    retract,
    scale,
)

BOUNDARY = CTMRG(trscheme=TruncDim(4), tol=1e-11, maxiter=300)
FIXED_POINT_MODES = {
    "GeomSum": GeomSum(tol=1e-10, maxiter=200),
    "ManualIter": ManualIter(tol=1e-10, maxiter=200),
    "LinSolve": LinSolve(tol=1e-10, maxiter=20),
}


def _start():
    peps = noisy_product_peps(jax.random.PRNGKey(3))
    env = CTMRGEnv.random(peps, 4, jax.random.PRNGKey(5))
    return peps, env


def _max_rel_diff(x, y):
    xs, ys = jax.tree_util.tree_leaves(x), jax.tree_util.tree_leaves(y)
    num = max(float(jnp.max(jnp.abs(a - b))) for a, b in zip(xs, ys))
    den = max(float(jnp.max(jnp.abs(b))) for b in ys)
    return num / den


@pytest.fixture(scope="module")
def gradients():
    peps, env = _start()
    H = heisenberg_rotated()
    out = {}
    for name, mode in FIXED_POINT_MODES.items():
        alg = PEPSOptimize(boundary_alg=BOUNDARY, gradient_alg=mode)
        E, grad, _ = ctmrg_gradient(peps, env, H, alg)
        out[name] = (E, grad)
    return out


class TestManifold:
    def test_retract_moves_peps_only(self, rng, rng2):
        peps = InfinitePEPS.random(rng, 2, 2)
        dx = InfinitePEPS.random(rng2, 2, 2)
        env = CTMRGEnv.random(peps, 2, rng)
        new_peps, new_env = retract((peps, env), dx, 0.1)
        assert new_env is env
        assert jnp.allclose(new_peps.A[0][0], peps.A[0][0] + 0.1 * dx.A[0][0])

    def test_inner(self, rng, rng2):
        g1 = InfinitePEPS.random(rng, 2, 2, unitcell=(1, 2), dtype=jnp.complex128)
        g2 = InfinitePEPS.random(rng2, 2, 2, unitcell=(1, 2), dtype=jnp.complex128)
        expected = sum(
            jnp.real(jnp.vdot(a, b)) for a, b in zip(g1.A[0], g2.A[0])
        )
        assert jnp.isclose(inner(None, g1, g2), expected)
        assert jnp.isclose(inner(None, g1, g1), 2.0)

    def test_add_and_scale(self, rng, rng2):
        x = InfinitePEPS.random(rng, 2, 2)
        y = InfinitePEPS.random(rng2, 2, 2)
        z = add(y, x, -2.0)
        assert jnp.allclose(z.A[0][0], y.A[0][0] - 2.0 * x.A[0][0])
        assert jnp.allclose(scale(x, 3.0).A[0][0], 3.0 * x.A[0][0])
        assert isinstance(add(y, x), InfinitePEPS)


class TestConfig:
    def test_defaults(self):
        alg = PEPSOptimize()
        assert alg.maxiter == 100
        assert alg.gradtol == 1e-4
        assert alg.reuse_env
        assert isinstance(alg.gradient_alg, GeomSum)

    @pytest.mark.parametrize("kwargs", [{"maxiter": -1}, {"gradtol": 0.0}])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            PEPSOptimize(**kwargs)

    def test_unknown_optimizer(self, heisenberg):
        with pytest.raises(ValueError, match="optimizer"):
            fixedpoint(product_peps([1.0, 0.0]), heisenberg, PEPSOptimize(optimizer="newton"))


class TestCostfun:
    def test_ferromagnet(self, rng, heisenberg):
        peps = product_peps([1.0, 0.0])
        env = CTMRGEnv.random(peps, 1, rng)
        alg = PEPSOptimize()
        E, new_env = costfun_reuse(peps, env, heisenberg, alg)
        assert jnp.isclose(E, -0.5, atol=1e-12)
        assert new_env.bond_dims() == env.bond_dims()
        assert jnp.isclose(costfun(peps, env, heisenberg, alg), E)
        assert jnp.isclose(costfun(peps, new_env, heisenberg, alg), E)


class TestGradient:
    @pytest.mark.parametrize("name", ["ManualIter", "LinSolve"])
    def test_modes_agree(self, gradients, name):
        E_ref, g_ref = gradients["GeomSum"]
        E, g = gradients[name]
        assert jnp.isclose(E, E_ref, atol=1e-10)
        assert _max_rel_diff(g, g_ref) < 1e-5

    def test_finite_difference(self, gradients):
        peps, env = _start()
        H = heisenberg_rotated()
        _, grad = gradients["GeomSum"]
        direction = InfinitePEPS.random(jax.random.PRNGKey(11), 2, 2)
        alg = PEPSOptimize(boundary_alg=BOUNDARY)

        h = 1e-4
        E_plus = costfun(add(peps, direction, h), env, H, alg)
        E_minus = costfun(add(peps, direction, -h), env, H, alg)
        fd = float(E_plus - E_minus) / (2 * h)
        ad = float(inner((peps, env), grad, direction))
        assert abs(fd - ad) < 1e-4 * abs(ad) + 1e-7, f"fd={fd}, ad={ad}"

    def test_naive_ad(self, gradients):
        peps, env = _start()
        alg = PEPSOptimize(boundary_alg=BOUNDARY, gradient_alg=NaiveAD())
        E, grad, new_env = ctmrg_gradient(peps, env, heisenberg_rotated(), alg)
        E_ref, g_ref = gradients["GeomSum"]
        assert jnp.isclose(E, E_ref, atol=1e-10)
        assert _max_rel_diff(grad, g_ref) < 1e-3
        assert isinstance(new_env, CTMRGEnv)

    def test_gradient_orthogonal_to_peps(self, gradients):
        """The energy does not depend on the norm of the tensors."""
        peps, env = _start()
        _, grad = gradients["GeomSum"]
        assert abs(float(inner((peps, env), grad, peps))) < 1e-7

    @pytest.mark.filterwarnings("ignore::RuntimeWarning")
    def test_nan_raises(self, rng):
        peps = product_peps([0.6, 0.8])
        env = CTMRGEnv.random(peps, 1, rng)
        H = jnp.full((2, 2, 2, 2), jnp.nan)
        alg = PEPSOptimize(gradient_alg=GeomSum(maxiter=1))
        with pytest.raises(FloatingPointError):
            ctmrg_gradient(peps, env, H, alg)


class TestFixedpoint:
    def test_zero_hamiltonian_converges_immediately(self):
        peps = product_peps([0.6, 0.8])
        with warnings.catch_warnings():
            warnings.simplefilter("error", RuntimeWarning)
            result = fixedpoint(peps, jnp.zeros((2, 2, 2, 2)), PEPSOptimize())
        assert result.info.converged
        assert result.info.num_steps == 0
        assert result.info.energies == [0.0]
        assert result.energy == 0.0
        assert isinstance(result.env, CTMRGEnv)
        assert result.peps is peps

    def test_zero_hamiltonian_no_truncation_chi4(self):
        """D = 2 with a chi = 4 double-layer start and no truncation."""
        peps = product_peps([0.6, 0.8])
        env = CTMRGEnv.from_peps(peps)
        assert env.edge(NORTH, 0, 0).shape == (4, 2, 2, 4)
        alg = PEPSOptimize(boundary_alg=CTMRG(trscheme=NoTrunc()))
        with warnings.catch_warnings():
            warnings.simplefilter("error", RuntimeWarning)
            result = fixedpoint(peps, jnp.zeros((2, 2, 2, 2)), alg, env=env)
        assert result.info.converged
        assert result.info.num_steps <= 1
        assert abs(result.energy) < alg.boundary_alg.tol
        result.env.check_gluing(peps)

    @pytest.mark.parametrize("optimizer", ["sgd", "lbfgs", optax.adam(1e-3)])
    def test_optimizer_choices(self, optimizer):
        peps = product_peps([0.6, 0.8])
        alg = PEPSOptimize(optimizer=optimizer, reuse_env=False)
        env = CTMRGEnv.random(peps, 1, jax.random.PRNGKey(7))
        result = fixedpoint(peps, jnp.zeros((2, 2, 2, 2)), alg, env=env)
        assert result.info.converged

    def test_energy_decreases(self, heisenberg, capsys):
        peps, env = _start()
        alg = PEPSOptimize(
            boundary_alg=CTMRG(trscheme=TruncDim(4), tol=1e-10, maxiter=300),
            optimizer="sgd",
            learning_rate=0.05,
            maxiter=1,
            verbosity=1,
        )
        with pytest.warns(RuntimeWarning, match="PEPS optimization did not converge"):
            result = fixedpoint(peps, heisenberg, alg, env=env)
        energies = result.info.energies
        assert len(energies) == 2
        assert energies[1] < energies[0]
        assert result.info.num_steps == 1
        assert len(result.info.gradnorms) == 2
        assert "Step 0: E =" in capsys.readouterr().out
