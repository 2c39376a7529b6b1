import jax.numpy as jnp
import lineax as lx
import optimistix as optx
import pytest

from jacobax.solvers.root_find import root_find


def test_sqrt2():
    sol = root_find(lambda x: x ** 2 - 2, jnp.array([37.0]))

    assert sol.result == optx.RESULTS.successful
    assert jnp.allclose(sol.value, jnp.sqrt(2.0), atol=1e-6)


@pytest.mark.parametrize("u0", [[2.0, 0.5], [2.5, 3.0]])
def test_two_circles(two_circles, u0):
    sol = root_find(two_circles, jnp.array(u0))

    assert jnp.linalg.norm(two_circles(sol.value)) < 1e-6
    assert int(sol.stats["num_steps"]) > 0


def test_in_place_residual():
    def two_circles_in_place(out, x):
        out = out.at[0].set(x[0] ** 2 + x[1] ** 2 - 2)
        return out.at[1].set(jnp.exp(x[0] - 1) + x[1] ** 2 - 2)

    sol = root_find(two_circles_in_place, jnp.array([2.0, 0.5]))
    assert jnp.allclose(sol.value, jnp.array([1.0, 1.0]), atol=1e-6)


def test_custom_linear_solver(tridiagonal_system):
    A, _ = tridiagonal_system

    def residual(u):
        return A @ u + 0.1 * u ** 3 - 1.0

    sol = root_find(residual, jnp.zeros(A.shape[0]), linear_solver=lx.LU())
    assert jnp.linalg.norm(residual(sol.value)) < 1e-6


def test_failure_without_throw():
    sol = root_find(lambda x: x ** 2 + 1, jnp.array([0.5]), max_steps=5, throw=False)

    assert sol.result != optx.RESULTS.successful
