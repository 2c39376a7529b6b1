"""Explicit Jacobian assembly from a matrix-free operator.

Both routines batch their operator applications with ``jax.vmap``: the
number of JVPs is N for :func:`assemble_dense` and ``ncolors`` for
:func:`assemble_colored`.
"""

from typing import TYPE_CHECKING, Union

import jax
import jax.numpy as jnp
import numpy as np
from jax.experimental import sparse

from jacobax import logger
from jacobax.errors import ColoringInvariantViolated, NonFiniteResult

if TYPE_CHECKING:
    from jacobax.operator import JacobianOperator
    from jacobax.sparsity import ColumnColoring


def _ensure_finite(values: jax.Array, what: str) -> None:
    if not bool(jnp.all(jnp.isfinite(values))):
        raise NonFiniteResult(f"{what}: the Jacobian contains NaN or Inf entries.")


def assemble_dense(op: 'JacobianOperator', sparse_output: bool = False) -> Union[jax.Array, sparse.BCOO]:
    """Materialises the Jacobian column by column.

    Column ``j`` is ``op.mv(e_j)`` for the ``j``-th standard basis vector.

    Args:
        op: The operator to assemble.
        sparse_output: Return a ``BCOO`` matrix with exact zeros dropped
            instead of a dense array.

    Returns:
        The (M, N) Jacobian.

    Raises:
        NonFiniteResult: If any entry is NaN or Inf.
    """
    m, n = op.size()
    if n == 0:
        jac = jnp.zeros((m, 0), dtype=op.dtype)
    else:
        basis = jnp.eye(n, dtype=op.dtype)
        # vmap over basis vectors gives columns as rows
        jac = jax.vmap(op.mv)(basis).T
    _ensure_finite(jac, "assemble_dense")

    if sparse_output:
        return sparse.BCOO.fromdense(jac)
    return jac


def assemble_colored(op: 'JacobianOperator',
                     coloring: 'ColumnColoring',
                     validate: bool = False) -> sparse.BCOO:
    """Recovers the Jacobian from one JVP per colour.

    For colour ``c`` the seed has ones on every column of colour ``c``; the
    resulting compressed column holds, in row ``i``, the single nonzero of row
    ``i`` among those columns. Decompression scatters it back to ``(i, j)``
    for each pattern nonzero with ``colors[j] == c``.

    A coloring whose same-coloured columns overlap silently sums entries.
    Pass ``validate=True`` while developing to check the coloring against its
    pattern and the result against :func:`assemble_dense` (N extra JVPs).

    Args:
        op: The operator to assemble.
        coloring: A coloring of the Jacobian's sparsity pattern.
        validate: Run the structural and numerical consistency checks.

    Returns:
        jax.experimental.sparse.BCOO: The (M, N) Jacobian on the pattern's nonzeros.

    Raises:
        ValueError: If the coloring's pattern does not match ``op.size()``.
        NonFiniteResult: If any compressed column contains NaN or Inf.
        ColoringInvariantViolated: If ``validate`` finds an inconsistency.
    """
    m, n = op.size()
    pattern = coloring.pattern
    if pattern.shape != (m, n):
        raise ValueError(f"Coloring pattern has shape {pattern.shape}, operator has size {(m, n)}.")
    if validate:
        coloring.validate()

    # 1. Compressed Jacobian: one JVP per colour, shape (ncolors, M)
    if coloring.ncolors:
        compressed = jax.vmap(op.mv)(coloring.seeds(op.dtype))
    else:
        compressed = jnp.zeros((0, m), dtype=op.dtype)
    _ensure_finite(compressed, "assemble_colored")

    # 2. Decompress onto the pattern
    rows, cols = pattern.nonzero()
    values = compressed[coloring.colors[cols], rows]
    indices = jnp.asarray(np.stack([rows, cols], axis=1), dtype=jnp.int32)
    jac = sparse.BCOO((values, indices), shape=(m, n))
    logger.debug(f"Colored assembly: {coloring.ncolors} JVPs for {pattern.nnz} nonzeros")

    if validate:
        dense = assemble_dense(op)
        diff = jnp.abs(jac.todense() - dense)
        tol = 1e-8 * (1.0 + jnp.abs(dense))
        if not bool(jnp.all(diff <= tol)):
            i, j = np.unravel_index(int(jnp.argmax(diff - tol)), (m, n))
            raise ColoringInvariantViolated(
                f"Colored assembly disagrees with dense assembly at ({i}, {j}): "
                f"{float(jac.todense()[i, j])} vs {float(dense[i, j])}. "
                "The sparsity pattern is stale or too small for this point."
            )
    return jac
