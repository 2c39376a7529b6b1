import jax
import jax.numpy as jnp
import pytest

from jacobax.derivatives import AutoDiff, FiniteDifference
from jacobax.operator import JacobianOperator


@pytest.mark.parametrize("order, tol", [(1, 1e-6), (2, 1e-8)])
def test_finite_difference_agrees_with_autodiff(g_residual, order, tol):
    G, _ = g_residual
    u = jnp.array([1.3, 0.7])
    exact = JacobianOperator(G, jnp.zeros(3), u, provider=AutoDiff())
    approx = JacobianOperator(G, jnp.zeros(3), u, provider=FiniteDifference(order=order))

    key = jax.random.PRNGKey(42)
    for v in jax.random.normal(key, (4, 2)):
        assert jnp.allclose(approx.apply(v), exact.apply(v), rtol=tol, atol=tol)


def test_finite_difference_in_place_residual(g_residual):
    _, G_in_place = g_residual
    u = jnp.array([1.3, 0.7])
    exact = JacobianOperator(G_in_place, jnp.zeros(3), u)
    approx = JacobianOperator(G_in_place, jnp.zeros(3), u, provider=FiniteDifference(order=2))

    assert jnp.allclose(approx.as_matrix(), exact.as_matrix(), rtol=1e-8, atol=1e-8)


def test_jvp_returns_primal():
    provider = AutoDiff()
    f0, jv = provider.jvp(jnp.sin, jnp.array([0.0, 1.0]), jnp.array([1.0, 1.0]))

    assert jnp.allclose(f0, jnp.sin(jnp.array([0.0, 1.0])))
    assert jnp.allclose(jv, jnp.cos(jnp.array([0.0, 1.0])))


def test_step_size_defaults():
    eps = float(jnp.finfo(jnp.float64).eps)

    assert FiniteDifference(order=1).step_size(jnp.float64) == pytest.approx(eps ** 0.5)
    assert FiniteDifference(order=2).step_size(jnp.float64) == pytest.approx((eps / 2) ** (1 / 3))
    assert FiniteDifference(epsilon=1e-4).step_size(jnp.float64) == 1e-4


def test_invalid_order():
    with pytest.raises(ValueError, match="order"):
        FiniteDifference(order=3)


def test_transpose_support():
    assert AutoDiff().supports_transpose
    assert not FiniteDifference().supports_transpose
    with pytest.raises(NotImplementedError):
        FiniteDifference().vjp(jnp.sin, jnp.ones(2), jnp.ones(2))
