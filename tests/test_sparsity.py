import jax.numpy as jnp
import numpy as np
import pytest

from jacobax.errors import ColoringInvariantViolated
from jacobax.operator import JacobianOperator
from jacobax.sparsity import (
    ColumnColoring,
    SparsityCache,
    SparsityPattern,
    column_intersection_graph,
    detect_sparsity,
    greedy_coloring,
)


def _product(x):
    return jnp.array([x[0] * x[1], x[1]])


def _branching(x):
    # Row 0 depends on x[0] or x[2] depending on the sign of x[1]
    first = jnp.where(x[1] > 0, x[0] ** 2, x[2] ** 2)
    return jnp.array([first, x[1], x[2]])


def test_local_detection_misses_vanishing_entry():
    pattern = detect_sparsity(_product, jnp.array([1.0, 0.0]), method="local")

    assert pattern.shape == (2, 2)
    assert pattern.mask.tolist() == [[False, True], [False, True]]
    assert np.array_equal(pattern.point, np.array([1.0, 0.0]))


def test_sampled_detection_finds_vanishing_entry():
    pattern = detect_sparsity(_product, jnp.array([1.0, 0.0]), method="sampled")

    assert pattern.mask.tolist() == [[True, True], [False, True]]
    assert pattern.nnz == 3


def test_detection_of_in_place_residual(g_residual):
    G, G_in_place = g_residual
    u = jnp.array([1.3, 0.7])
    pure = detect_sparsity(G, u)
    in_place = detect_sparsity(G_in_place, u, out_size=3)

    assert np.array_equal(pure.mask, in_place.mask)
    assert pure.mask.tolist() == [[True, False], [False, True], [True, True]]


def test_unknown_method():
    with pytest.raises(ValueError, match="Unknown sparsity detection method"):
        detect_sparsity(_product, jnp.ones(2), method="symbolic")


def test_pattern_constructors():
    pattern = SparsityPattern.from_coo([0, 1, 2], [0, 2, 1], (3, 3))

    assert pattern.nnz == 3
    assert pattern.column_rows(2).tolist() == [1]
    rows, cols = pattern.nonzero()
    assert rows.tolist() == [0, 1, 2]
    assert cols.tolist() == [0, 2, 1]
    with pytest.raises(ValueError):
        SparsityPattern.from_mask(np.ones(3))


def test_heat_1d_needs_three_colours(heat_1d):
    n = 20
    pattern = detect_sparsity(heat_1d, jnp.linspace(0.0, 1.0, n))
    coloring = greedy_coloring(pattern)

    assert coloring.ncolors == 3
    assert coloring.colors.shape == (n,)
    coloring.validate()
    assert sum(len(g) for g in coloring.groups()) == n


def test_seeds_partition_columns(heat_1d):
    coloring = greedy_coloring(detect_sparsity(heat_1d, jnp.ones(10)))
    seeds = coloring.seeds()

    assert seeds.shape == (coloring.ncolors, 10)
    assert jnp.array_equal(seeds.sum(axis=0), jnp.ones(10))


@pytest.mark.parametrize("strategy", ["natural", "largest_first", "smallest_last", "saturation_largest_first"])
def test_strategies_give_valid_colorings(heat_1d, strategy):
    pattern = detect_sparsity(heat_1d, jnp.ones(15))
    coloring = greedy_coloring(pattern, strategy=strategy)

    coloring.validate()
    assert 3 <= coloring.ncolors <= 15


def test_diagonal_pattern_needs_one_colour():
    coloring = greedy_coloring(SparsityPattern.from_mask(np.eye(6, dtype=bool)))

    assert coloring.ncolors == 1
    assert column_intersection_graph(coloring.pattern).number_of_edges() == 0


def test_empty_pattern():
    coloring = greedy_coloring(SparsityPattern.from_mask(np.zeros((0, 0), dtype=bool)))

    assert coloring.ncolors == 0
    assert coloring.colors.shape == (0,)


def test_validate_rejects_overlapping_colours():
    mask = np.array([[True, True, False],
                     [False, True, True]])
    pattern = SparsityPattern.from_mask(mask)
    bad = ColumnColoring(colors=np.array([0, 0, 1]), ncolors=2, pattern=pattern)

    with pytest.raises(ColoringInvariantViolated, match="row 0"):
        bad.validate()


def test_validate_rejects_wrong_column_count():
    pattern = SparsityPattern.from_mask(np.eye(3, dtype=bool))
    bad = ColumnColoring(colors=np.array([0, 0]), ncolors=1, pattern=pattern)

    with pytest.raises(ColoringInvariantViolated):
        bad.validate()


def test_cache_reuses_coloring(heat_1d):
    cache = SparsityCache()
    first = cache.coloring(heat_1d, jnp.ones(8))
    second = cache.coloring(heat_1d, 2.0 * jnp.ones(8))

    assert first is second
    assert len(cache) == 1
    assert None in cache


def test_cache_redetects_on_size_change(heat_1d):
    cache = SparsityCache()
    small = cache.coloring(heat_1d, jnp.ones(8))
    large = cache.coloring(heat_1d, jnp.ones(12))

    assert small is not large
    assert large.colors.shape == (12,)


def test_cache_regions_follow_branches():
    cache = SparsityCache(region=lambda u: bool(u[1] > 0))
    zeros = jnp.zeros(3)

    op_pos = JacobianOperator(_branching, zeros, jnp.array([1.0, 1.0, 2.0]))
    op_neg = JacobianOperator(_branching, zeros, jnp.array([1.0, -1.0, 2.0]))

    J_pos = cache.assemble(op_pos, validate=True)
    J_neg = cache.assemble(op_neg, validate=True)

    assert len(cache) == 2
    assert True in cache and False in cache
    assert jnp.allclose(J_pos.todense(), op_pos.as_matrix())
    assert jnp.allclose(J_neg.todense(), op_neg.as_matrix())


def test_stale_pattern_is_caught_by_validation():
    # One region for every point: the local pattern from u[1] > 0 is reused below zero
    cache = SparsityCache(method="local")
    zeros = jnp.zeros(3)
    cache.assemble(JacobianOperator(_branching, zeros, jnp.array([1.0, 1.0, 2.0])))

    with pytest.raises(ColoringInvariantViolated, match="stale"):
        cache.assemble(JacobianOperator(_branching, zeros, jnp.array([1.0, -1.0, 2.0])), validate=True)


def test_cache_invalidate():
    cache = SparsityCache(region=lambda u: bool(u[0] > 0))
    cache.coloring(_product, jnp.array([1.0, 1.0]))
    cache.coloring(_product, jnp.array([-1.0, 1.0]))
    assert len(cache) == 2

    cache.invalidate(True)
    assert len(cache) == 1 and True not in cache
    cache.invalidate()
    assert len(cache) == 0


def test_cache_keeps_residuals_apart(heat_1d):
    def diagonal(u):
        return u ** 3 - 8.0

    cache = SparsityCache()
    heat = cache.coloring(heat_1d, jnp.ones(6))
    diag = cache.coloring(diagonal, jnp.ones(6))

    assert heat is not diag
    assert diag.ncolors == 1 and heat.ncolors == 3
    assert len(cache) == 2
    assert cache.coloring(heat_1d, jnp.zeros(6)) is heat


def test_cache_keys_on_output_size():
    cache = SparsityCache()
    square = cache.coloring(_product, jnp.ones(2), out_size=2)
    unsized = cache.coloring(_product, jnp.ones(2))

    assert square is not unsized
    assert len(cache) == 2


def test_default_cache_keeps_entries_vanishing_at_first_point():
    # d(u0 * u1)/du0 is zero at u1 = 0 but not elsewhere
    cache = SparsityCache()
    zeros = jnp.zeros(2)
    cache.assemble(JacobianOperator(_product, zeros, jnp.array([1.0, 0.0])))

    op = JacobianOperator(_product, zeros, jnp.array([1.0, 2.0]))
    J = cache.assemble(op, validate=True)
    assert jnp.allclose(J.todense(), op.as_matrix())


def test_local_cache_misses_entries_vanishing_at_first_point():
    cache = SparsityCache(method="local")
    zeros = jnp.zeros(2)
    cache.assemble(JacobianOperator(_product, zeros, jnp.array([1.0, 0.0])))

    with pytest.raises(ColoringInvariantViolated):
        cache.assemble(JacobianOperator(_product, zeros, jnp.array([1.0, 2.0])), validate=True)
