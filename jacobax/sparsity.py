"""
Jacobian Sparsity Detection & Column Coloring
=============================================

Structure lives on the host: patterns and colorings are NumPy arrays computed
once and reused across many numerical evaluations, in the same way a sparse
solver pre-computes its row/column indices.

- :func:`detect_sparsity` finds which ``dF_i/du_j`` can be nonzero.
- :func:`greedy_coloring` groups structurally orthogonal columns so that one
  JVP recovers a whole group.
- :class:`SparsityCache` keeps one coloring per residual and region of
  input space and re-detects when the iterate moves to a new region.

A pattern detected at one point is only valid where ``F`` follows the same
control-flow path. For functions that branch on their inputs, give the cache a
``region`` function that distinguishes the branches.
"""

import itertools
from typing import Callable, Dict, Hashable, List, NamedTuple, Optional, Tuple, Union

import jax
import jax.numpy as jnp
import networkx as nx
import numpy as np

from jacobax import logger
from jacobax.errors import ColoringInvariantViolated
from jacobax.residual import as_residual


class SparsityPattern(NamedTuple):
    """
    Boolean structure of a Jacobian.

    Attributes:
        mask (np.ndarray): Shape (M, N). ``mask[i, j]`` is True when
            ``dF_i/du_j`` may be nonzero.
        point (np.ndarray | None): The point the pattern was detected at, if any.
    """
    mask: np.ndarray
    point: Optional[np.ndarray] = None

    @classmethod
    def from_mask(cls, mask) -> "SparsityPattern":
        mask = np.asarray(mask, dtype=bool)
        if mask.ndim != 2:
            raise ValueError(f"A sparsity mask must be 2-D, got shape {mask.shape}.")
        return cls(mask=mask)

    @classmethod
    def from_coo(cls, rows, cols, shape: Tuple[int, int]) -> "SparsityPattern":
        mask = np.zeros(shape, dtype=bool)
        mask[np.asarray(rows, dtype=np.int64), np.asarray(cols, dtype=np.int64)] = True
        return cls(mask=mask)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.mask.shape

    @property
    def nnz(self) -> int:
        return int(self.mask.sum())

    def nonzero(self) -> Tuple[np.ndarray, np.ndarray]:
        """Row and column indices of the structural nonzeros, row-major order."""
        return np.nonzero(self.mask)

    def column_rows(self, j: int) -> np.ndarray:
        return np.flatnonzero(self.mask[:, j])


def _jacobian_mask(jac: np.ndarray) -> np.ndarray:
    # NaN entries count as structurally nonzero
    return ~(jac == 0)


def detect_sparsity(fn: Callable,
                    point: jax.Array,
                    method: str = "local",
                    num_samples: int = 4,
                    seed: int = 0,
                    in_place: Optional[bool] = None,
                    out_size: Optional[int] = None) -> SparsityPattern:
    """Detects the nonzero structure of the Jacobian of ``fn``.

    Args:
        fn: Residual, pure ``fn(u)`` or in-place ``fn(out, u)``.
        point: Point to detect at.
        method: ``"local"`` keeps the nonzeros of ``J(point)`` only.
            ``"sampled"`` takes the union over ``point`` and ``num_samples``
            random perturbations of it, which recovers entries that happen to
            vanish at ``point`` (e.g. ``d(x1*x2)/dx1`` at ``x2 = 0``).
        num_samples: Extra points for ``"sampled"``.
        seed: PRNG seed for ``"sampled"``.
        in_place: Force the residual form (see :func:`~jacobax.residual.as_residual`).
        out_size: Residual length, required for in-place functions.

    Returns:
        SparsityPattern: The detected pattern.

    Raises:
        ValueError: On an unknown ``method``.
    """
    point = jnp.asarray(point)
    if not jnp.issubdtype(point.dtype, jnp.inexact):
        point = point.astype(jnp.result_type(float))
    residual = as_residual(fn, out_size=out_size, in_place=in_place)
    jac_fn = jax.jacfwd(residual)

    if method == "local":
        mask = _jacobian_mask(np.asarray(jac_fn(point)))
    elif method == "sampled":
        key = jax.random.PRNGKey(seed)
        scale = 1.0 + jnp.abs(point)
        noise = jax.random.uniform(key, (num_samples,) + point.shape, dtype=point.dtype, minval=-0.5, maxval=0.5)
        samples = jnp.concatenate([point[None], point[None] + noise * scale], axis=0)
        jacs = np.asarray(jax.vmap(jac_fn)(samples))
        mask = _jacobian_mask(jacs).any(axis=0)
    else:
        raise ValueError(f"Unknown sparsity detection method: '{method}'. Use 'local' or 'sampled'.")

    logger.debug(f"Detected {int(mask.sum())} structural nonzeros of {mask.size} ({method})")
    return SparsityPattern(mask=mask, point=np.asarray(point))


# ==============================================================================
# COLORING
# ==============================================================================

class ColumnColoring(NamedTuple):
    """
    A partition of Jacobian columns into structurally orthogonal groups.

    Attributes:
        colors (np.ndarray): Shape (N,), the colour of each column.
        ncolors (int): Number of colours used.
        pattern (SparsityPattern): The pattern the coloring was computed for.
    """
    colors: np.ndarray
    ncolors: int
    pattern: SparsityPattern

    def groups(self) -> List[np.ndarray]:
        """Column indices of each colour, in colour order."""
        return [np.flatnonzero(self.colors == c) for c in range(self.ncolors)]

    def seeds(self, dtype=jnp.float64) -> jax.Array:
        """Seed matrix of shape (ncolors, N): row ``c`` is 1 on the columns of colour ``c``."""
        seeds = np.zeros((self.ncolors, self.colors.shape[0]))
        seeds[self.colors, np.arange(self.colors.shape[0])] = 1.0
        return jnp.asarray(seeds, dtype=dtype)

    def validate(self) -> None:
        """Checks that no two columns of the same colour share a nonzero row.

        Raises:
            ColoringInvariantViolated: On the first colour with overlapping columns.
        """
        mask = self.pattern.mask
        if self.colors.shape[0] != mask.shape[1]:
            raise ColoringInvariantViolated(
                f"Coloring covers {self.colors.shape[0]} columns but the pattern has {mask.shape[1]}."
            )
        for c, cols in enumerate(self.groups()):
            hits = mask[:, cols].sum(axis=1)
            if np.any(hits > 1):
                row = int(np.argmax(hits > 1))
                clash = cols[mask[row, cols]].tolist()
                raise ColoringInvariantViolated(
                    f"Columns {clash} share colour {c} but all have a nonzero in row {row}."
                )


def _natural_order(G: nx.Graph, colors: dict):
    return sorted(G)


def column_intersection_graph(pattern: SparsityPattern) -> nx.Graph:
    """Graph with one node per column and an edge between columns sharing a nonzero row."""
    mask = pattern.mask
    G = nx.Graph()
    G.add_nodes_from(range(mask.shape[1]))
    for row in mask:
        cols = np.flatnonzero(row)
        G.add_edges_from(itertools.combinations(cols.tolist(), 2))
    return G


def greedy_coloring(pattern: SparsityPattern,
                    strategy: Union[str, Callable] = "natural") -> ColumnColoring:
    """Colours the columns of ``pattern`` greedily.

    Args:
        pattern: The Jacobian structure.
        strategy: ``"natural"`` visits columns in index order. Any other value
            is passed to :func:`networkx.greedy_color` (e.g. ``"largest_first"``,
            ``"smallest_last"``, ``"saturation_largest_first"``, or a callable).

    Returns:
        ColumnColoring: A valid coloring with ``ncolors <= N``.
    """
    G = column_intersection_graph(pattern)
    nx_strategy = _natural_order if strategy == "natural" else strategy
    coloring = nx.greedy_color(G, strategy=nx_strategy)

    n = pattern.shape[1]
    colors = np.array([coloring[j] for j in range(n)], dtype=np.int64)
    ncolors = int(colors.max()) + 1 if n else 0
    logger.debug(f"Greedy coloring ({strategy}): {n} columns -> {ncolors} colours")
    return ColumnColoring(colors=colors, ncolors=ncolors, pattern=pattern)


# ==============================================================================
# PER-REGION CACHE
# ==============================================================================

class SparsityCache:
    """
    Caches sparsity patterns and colorings per residual, shape and region.

    A plain Python object (not an Equinox module): it is mutated as new
    regions are visited and is never traced.

    Entries are keyed by ``(fn, M, N, region(u))``, so one cache can serve
    several residuals. The residual is identified by the user callable; the
    cache holds a reference to it for as long as the entry lives.

    Args:
        method: Detection method passed to :func:`detect_sparsity`. The default
            ``"sampled"`` over-approximates the structure around the first
            point seen. ``"local"`` drops every entry that vanishes at that
            point (e.g. ``d(u**3)/du`` at ``u = 0``) and the coloring is then
            wrong at later points: only use it when the pattern cannot change.
        strategy: Coloring strategy passed to :func:`greedy_coloring`.
        region: Maps a point to a hashable region key. Points with the same
            key share a coloring. ``None`` puts every point in one region,
            which is only correct when ``F`` has no input-dependent branches.

    Example::

        # F branches on the sign of u[1]
        cache = SparsityCache(region=lambda u: bool(u[1] > 0))
        J = cache.assemble(JacobianOperator(F, jnp.zeros(3), u))
    """

    def __init__(self,
                 method: str = "sampled",
                 strategy: Union[str, Callable] = "natural",
                 region: Optional[Callable[[jax.Array], Hashable]] = None):
        self.method = method
        self.strategy = strategy
        self.region = region
        self._entries: Dict[Tuple[int, Optional[int], int, Hashable], Tuple[Callable, ColumnColoring]] = {}

    def key(self, point: jax.Array) -> Hashable:
        """Region key of ``point``."""
        return None if self.region is None else self.region(point)

    def coloring(self, fn: Callable, point: jax.Array, out_size: Optional[int] = None) -> ColumnColoring:
        """Returns the coloring for ``fn`` at ``point``'s region, detecting it on first use."""
        residual = as_residual(fn, out_size=out_size)
        # Newton rewraps the same user function on every solve
        user_fn = residual.fn
        n = point.shape[0]
        m = residual.out_size if residual.in_place else out_size
        region = self.key(point)
        entry_key = (id(user_fn), m, n, region)

        entry = self._entries.get(entry_key)
        if entry is None:
            logger.debug(f"Sparsity cache miss for {getattr(user_fn, '__name__', user_fn)!r}, region {region!r}")
            pattern = detect_sparsity(residual, point, method=self.method)
            coloring = greedy_coloring(pattern, strategy=self.strategy)
            entry = (user_fn, coloring)
            self._entries[entry_key] = entry
        return entry[1]

    def assemble(self, op, validate: bool = False):
        """Colored assembly of ``op`` using the cached coloring for ``op.u``."""
        from jacobax.assembly import assemble_colored
        m, _ = op.size()
        coloring = self.coloring(op.fn, op.u, out_size=m)
        return assemble_colored(op, coloring, validate=validate)

    def invalidate(self, key: Hashable = ...) -> None:
        """Drops every entry of one region, or every entry when called without a key."""
        if key is ...:
            self._entries.clear()
        else:
            for entry_key in [k for k in self._entries if k[3] == key]:
                del self._entries[entry_key]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        """True if any residual has an entry for region ``key``."""
        return any(k[3] == key for k in self._entries)
