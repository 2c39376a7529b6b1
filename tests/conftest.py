import sys
from pathlib import Path
import pytest
import jax
import jax.numpy as jnp

# Ensure project root is on sys.path so tests can import the local package
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Shared fixtures for tests
jax.config.update("jax_enable_x64", True)


def _g(x):
    return jnp.array([
        x[0] ** 4 - 3,
        jnp.exp(x[1]) - 2,
        jnp.log(x[0]) - x[1] ** 2,
    ])


def _g_in_place(y, x):
    y = y.at[0].set(x[0] ** 4 - 3)
    y = y.at[1].set(jnp.exp(x[1]) - 2)
    return y.at[2].set(jnp.log(x[0]) - x[1] ** 2)


def _two_circles(x):
    return jnp.array([
        x[0] ** 2 + x[1] ** 2 - 2,
        jnp.exp(x[0] - 1) + x[1] ** 2 - 2,
    ])


def _heat_1d(u, a=0.01, dx=0.01):
    """Interior second difference with homogeneous Dirichlet ends."""
    u = u.at[0].set(0.0).at[-1].set(0.0)
    interior = a * (u[2:] - 2 * u[1:-1] + u[:-2]) / dx ** 2
    return jnp.concatenate([jnp.zeros(1), interior, jnp.zeros(1)])


@pytest.fixture
def g_residual():
    """Returns (pure, in_place) forms of G: R^2 -> R^3."""
    return _g, _g_in_place


@pytest.fixture
def two_circles():
    """F(x, y) = (x^2 + y^2 - 2, exp(x - 1) + y^2 - 2)."""
    return _two_circles


@pytest.fixture
def heat_1d():
    return _heat_1d


@pytest.fixture
def tridiagonal_system():
    """A well-conditioned, diagonally dominant nonsymmetric matrix and its linear residual."""
    n = 12
    A = (4.0 * jnp.eye(n)
         - 1.0 * jnp.eye(n, k=1)
         - 0.5 * jnp.eye(n, k=-1))

    def residual(u):
        return A @ u

    return A, residual
