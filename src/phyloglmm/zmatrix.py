"""Tree-to-design-matrix construction.

The phylogenetic random effect is expressed as one independent effect
per branch.  Each tip (observation) loads on every branch between it
and the root, weighted by that branch's length:

    Z[t, e] = w(ℓ_e)   if edge e lies on the root path of tip t
            = 0         otherwise

so Z has shape ``(T, E)`` and row ``t`` has exactly ``depth(t)``
stored entries.  With ``w(ℓ) = √ℓ`` and i.i.d. unit-variance branch
effects, ``Z Zᵀ`` is the Brownian-motion covariance: entry ``(i, j)``
is the branch length shared by the root paths of tips ``i`` and ``j``.

Traversal
~~~~~~~~~
Every tip is walked to the root independently using the tree's
``parent_edge`` lookup, so the cost is ``O(Σ_t depth(t))``: linear in
the tip count for balanced trees (``O(T log N)``) and quadratic for a
caterpillar (``O(T·N)``).  Column indices within a row are sorted, so
the result is a canonical CSR matrix regardless of walk order.

Parallelism
~~~~~~~~~~~
The per-tip walks are read-only with respect to the tree and write
disjoint rows, so they can be split across joblib workers.  The walk
is pure-Python pointer chasing that holds the GIL, so the default
(process-based) joblib backend is used, and work is chunked to keep
per-task overhead small.  Trees below ``PARALLEL_MIN_TIPS`` tips are
always traversed serially.  Serial and parallel builds are identical.

Caching
~~~~~~~
A tree is usually fitted many times (different responses, different
fixed effects), so matrices built with a named transform are cached
by ``(tree.fingerprint, transform, scale)`` in a small LRU cache
whose capacity comes from :func:`~phyloglmm.get_cache_size`.  Callers
always receive a copy, so mutating a returned matrix never leaks into
later builds.  Callable transforms bypass the cache because they may
close over parameters (an OU-style decay, for instance) that the key
cannot see.
"""

from __future__ import annotations

import logging
import warnings
from collections import OrderedDict
from collections.abc import Callable

import numpy as np
import scipy.sparse as sp
from joblib import Parallel, delayed

from ._config import get_cache_size, get_n_jobs
from .tree import Tree, _walk_to_root

logger = logging.getLogger(__name__)

PARALLEL_MIN_TIPS = 256
"""Trees with fewer tips than this are always traversed serially."""

_TRANSFORMS: dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "length": lambda lengths: lengths,
    "sqrt": np.sqrt,
}

Transform = str | Callable[[np.ndarray], np.ndarray]

_Z_CACHE: OrderedDict[tuple[str, str, bool], sp.csr_array] = OrderedDict()


def clear_z_cache() -> None:
    """Drop every cached Z matrix."""
    _Z_CACHE.clear()


# ------------------------------------------------------------------ #
# Traversal
# ------------------------------------------------------------------ #


def _traverse_tips(
    parent_edge: np.ndarray,
    parents: np.ndarray,
    root: int,
    tips: range,
) -> list[np.ndarray]:
    """Sorted root-path edge indices for each tip in *tips*."""
    return [
        np.sort(np.asarray(_walk_to_root(parent_edge, parents, root, t), dtype=np.int64))
        for t in tips
    ]


def _root_paths(tree: Tree, n_jobs: int) -> list[np.ndarray]:
    parent_edge = tree._parent_edge
    parents = tree.edges[:, 0]
    root = tree.root
    T = tree.n_tips

    if n_jobs == 1 or T < PARALLEL_MIN_TIPS:
        return _traverse_tips(parent_edge, parents, root, range(1, T + 1))

    n_chunks = max(1, min(T, 4 * (n_jobs if n_jobs > 0 else 8)))
    bounds = np.linspace(1, T + 1, n_chunks + 1).astype(int)
    chunks = [range(lo, hi) for lo, hi in zip(bounds[:-1], bounds[1:]) if hi > lo]
    logger.debug(
        "Traversing %d tips in %d chunks with n_jobs=%d", T, len(chunks), n_jobs
    )
    results = Parallel(n_jobs=n_jobs)(
        delayed(_traverse_tips)(parent_edge, parents, root, chunk) for chunk in chunks
    )
    return [path for chunk_paths in results for path in chunk_paths]


def _edge_weights(tree: Tree, transform: Transform, scale: bool) -> np.ndarray:
    lengths = np.array(tree.edge_lengths, dtype=np.float64)
    if scale:
        height = float(tree.path_lengths().max())
        if height <= 0:
            msg = "Cannot scale a tree whose root-to-tip path lengths are all zero."
            raise ValueError(msg)
        lengths = lengths / height

    if callable(transform):
        fn = transform
    else:
        try:
            fn = _TRANSFORMS[transform]
        except KeyError:
            msg = (
                f"Unknown transform {transform!r}. Choose from "
                f"{sorted(_TRANSFORMS)} or pass a callable."
            )
            raise ValueError(msg) from None

    weights = np.asarray(fn(lengths), dtype=np.float64)
    if weights.shape != lengths.shape:
        msg = (
            f"transform must return one weight per edge "
            f"({lengths.shape}), got {weights.shape}."
        )
        raise ValueError(msg)
    if not np.all(np.isfinite(weights)) or np.any(weights < 0):
        msg = "transform produced negative or non-finite edge weights."
        raise ValueError(msg)
    return weights


# ------------------------------------------------------------------ #
# Public API
# ------------------------------------------------------------------ #


def build_z(
    tree: Tree,
    *,
    transform: Transform = "length",
    scale: bool = False,
    n_jobs: int | None = None,
    cache: bool = True,
) -> sp.csr_array:
    """Build the tip-by-edge phylogenetic design matrix.

    Args:
        tree: A validated :class:`~phyloglmm.Tree`.
        transform: Edge-weight function.  ``"length"`` (default) uses
            the branch length itself, ``"sqrt"`` its square root (so
            that ``Z Zᵀ`` is the Brownian covariance).  A callable
            receives the ``(E,)`` length vector and must return
            non-negative weights of the same shape.
        scale: Divide lengths by the tree height (maximum
            root-to-tip path length) before transforming.
        n_jobs: joblib workers for the tip traversals.  ``None`` uses
            :func:`~phyloglmm.get_n_jobs`.
        cache: Look up and store the result in the Z cache.  Ignored
            for callable transforms.

    Returns:
        ``(T, E)`` CSR array.  Row ``t - 1`` corresponds to tip ``t``;
        column ``j`` to row ``j`` of ``tree.edges``.
    """
    if np.any(tree.edge_lengths == 0):
        warnings.warn(
            f"{int(np.sum(tree.edge_lengths == 0))} edge(s) have zero length "
            "and contribute no phylogenetic variance.",
            UserWarning,
            stacklevel=2,
        )

    use_cache = cache and not callable(transform) and get_cache_size() > 0
    key = (tree.fingerprint, str(transform), bool(scale))
    if use_cache and key in _Z_CACHE:
        _Z_CACHE.move_to_end(key)
        logger.debug("Z cache hit for tree %s…", tree.fingerprint[:12])
        return _Z_CACHE[key].copy()

    weights = _edge_weights(tree, transform, scale)

    if n_jobs is None:
        n_jobs = get_n_jobs()
    paths = _root_paths(tree, n_jobs)

    indptr = np.zeros(tree.n_tips + 1, dtype=np.int64)
    indptr[1:] = np.cumsum([p.size for p in paths])
    indices = np.concatenate(paths) if paths else np.empty(0, dtype=np.int64)
    data = weights[indices]
    Z = sp.csr_array(
        (data, indices, indptr),
        shape=(tree.n_tips, tree.n_edges),
    )

    if use_cache:
        _Z_CACHE[key] = Z.copy()
        while len(_Z_CACHE) > get_cache_size():
            _Z_CACHE.popitem(last=False)
        logger.debug(
            "Z cache miss for tree %s…; %d matrices cached",
            tree.fingerprint[:12],
            len(_Z_CACHE),
        )
    return Z


def brownian_covariance(tree: Tree, *, scale: bool = False) -> np.ndarray:
    """Brownian-motion covariance among tips.

    Entry ``(i, j)`` is the total length of the branches shared by
    the root paths of tips ``i + 1`` and ``j + 1``; the diagonal holds
    the root-to-tip path lengths.

    Returns:
        Dense ``(T, T)`` array.
    """
    Zs = build_z(tree, transform="sqrt", scale=scale)
    return (Zs @ Zs.T).toarray()


__all__ = ["PARALLEL_MIN_TIPS", "brownian_covariance", "build_z", "clear_z_cache"]
