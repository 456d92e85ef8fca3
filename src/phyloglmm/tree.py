"""Immutable rooted phylogeny.

A :class:`Tree` is the edge-list representation used throughout
comparative biology: nodes are the integers ``1..N``, tips occupy
``1..T`` and internal nodes ``T+1..N``.  Each row of ``edges`` is one
``(parent, child)`` branch with a matching entry in ``edge_lengths``.

Construction validates the whole topology up front:

* exactly one node (the root) never appears as a child,
* every other node appears as a child exactly once,
* following parent links from any node reaches the root in at most
  ``N`` steps (no cycles, a single connected component),
* the nodes without children are exactly the tips ``1..T``.

Any violation raises :class:`~phyloglmm.MalformedTreeError` and no
partial object is returned.  Once built, the tree is read-only: the
arrays are copied and flagged non-writeable, so a single instance can
be shared by any number of Z-matrix builds.

A ``parent_edge`` lookup (node id → index of the edge whose child is
that node) is computed once at construction.  Root-path walks are then
``O(depth)`` instead of rescanning the edge list at every step.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any

import numpy as np
import pandas as pd
from typing_extensions import Self

from ._compat import DataFrameLike, _ensure_pandas_df
from ._exceptions import MalformedTreeError

# ------------------------------------------------------------------ #
# Traversal primitives
# ------------------------------------------------------------------ #
#
# Kept at module level (rather than as methods) so they can be shipped
# to joblib workers without pickling the whole Tree.


def _walk_to_root(
    parent_edge: np.ndarray,
    parents: np.ndarray,
    root: int,
    node: int,
) -> list[int]:
    """Return the edge indices from *node* up to *root*, in walk order."""
    path: list[int] = []
    while node != root:
        e = int(parent_edge[node])
        path.append(e)
        node = int(parents[e])
    return path


def _check_acyclic(
    parent_edge: np.ndarray,
    parents: np.ndarray,
    root: int,
    n_nodes: int,
) -> None:
    """Raise if some node's parent chain does not reach *root*.

    Nodes already known to reach the root are memoised, so the check
    is linear in ``N`` overall.
    """
    reaches_root = np.zeros(n_nodes + 1, dtype=bool)
    reaches_root[root] = True
    for start in range(1, n_nodes + 1):
        path: list[int] = []
        node = start
        while not reaches_root[node]:
            if len(path) > n_nodes:
                msg = (
                    f"Cycle detected: parent links from node {start} do not "
                    f"reach the root ({root}) within {n_nodes} steps."
                )
                raise MalformedTreeError(msg)
            path.append(node)
            node = int(parents[parent_edge[node]])
        reaches_root[path] = True


def _as_labels(labels: Any, expected: int, what: str) -> tuple[str, ...] | None:
    if labels is None:
        return None
    out = tuple(str(x) for x in labels)
    if len(out) != expected:
        msg = f"Expected {expected} {what} labels, got {len(out)}."
        raise MalformedTreeError(msg)
    return out


# ------------------------------------------------------------------ #
# Tree
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class Tree:
    """Rooted phylogenetic tree with branch lengths.

    Parameters
    ----------
    edges : array-like of shape (E, 2)
        ``(parent, child)`` node ids, 1-based.
    edge_lengths : array-like of shape (E,)
        Non-negative, finite branch lengths.
    n_tips : int
        Number of tips ``T``.  Tips must be numbered ``1..T``.
    tip_labels : sequence of str, optional
        One unique label per tip, in tip-number order.
    node_labels : sequence of str, optional
        One label per internal node (``T+1..N``), diagnostics only.

    Raises
    ------
    MalformedTreeError
        If the edge list is not a single rooted tree.
    """

    edges: np.ndarray
    edge_lengths: np.ndarray
    n_tips: int
    tip_labels: tuple[str, ...] | None = None
    node_labels: tuple[str, ...] | None = None

    _root: int = field(init=False, repr=False, default=0)
    _n_nodes: int = field(init=False, repr=False, default=0)
    _parent_edge: np.ndarray = field(init=False, repr=False, default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        edges = np.asarray(self.edges)
        if edges.ndim != 2 or edges.shape[1] != 2:
            msg = f"edges must have shape (E, 2), got {edges.shape}."
            raise MalformedTreeError(msg)
        if edges.shape[0] == 0:
            msg = "Tree has no edges; a rooted tree needs at least one branch."
            raise MalformedTreeError(msg)
        if not np.issubdtype(edges.dtype, np.integer):
            if not np.all(np.mod(edges, 1) == 0):
                msg = "Node ids in edges must be integers."
                raise MalformedTreeError(msg)
        edges = edges.astype(np.int64)
        n_edges = edges.shape[0]

        lengths = np.array(self.edge_lengths, dtype=np.float64)
        if lengths.shape != (n_edges,):
            msg = (
                f"edge_lengths must have shape ({n_edges},) to match edges, "
                f"got {lengths.shape}."
            )
            raise MalformedTreeError(msg)
        if not np.all(np.isfinite(lengths)):
            msg = "edge_lengths must be finite."
            raise MalformedTreeError(msg)
        if np.any(lengths < 0):
            bad = np.flatnonzero(lengths < 0).tolist()
            msg = f"edge_lengths must be non-negative; negative at edge(s) {bad}."
            raise MalformedTreeError(msg)

        n_tips = int(self.n_tips)
        if n_tips < 1:
            msg = f"n_tips must be >= 1, got {n_tips}."
            raise MalformedTreeError(msg)

        if edges.min() < 1:
            msg = "Node ids must be >= 1."
            raise MalformedTreeError(msg)
        n_nodes = int(edges.max())
        present = np.zeros(n_nodes + 1, dtype=bool)
        present[edges.ravel()] = True
        missing = np.flatnonzero(~present[1:]) + 1
        if missing.size:
            msg = (
                f"Node ids must be contiguous 1..{n_nodes}; "
                f"missing {missing.tolist()}."
            )
            raise MalformedTreeError(msg)

        parents = edges[:, 0]
        children = edges[:, 1]

        child_counts = np.bincount(children, minlength=n_nodes + 1)
        dup = np.flatnonzero(child_counts > 1)
        if dup.size:
            msg = f"Node(s) {dup.tolist()} appear as a child more than once."
            raise MalformedTreeError(msg)

        # Root: the one parent id that never appears as a child.
        roots = np.unique(parents[child_counts[parents] == 0])
        if roots.size == 0:
            msg = "No root found: every parent also appears as a child."
            raise MalformedTreeError(msg)
        if roots.size > 1:
            msg = f"Multiple roots found: {roots.tolist()}."
            raise MalformedTreeError(msg)
        root = int(roots[0])

        is_parent = np.zeros(n_nodes + 1, dtype=bool)
        is_parent[parents] = True
        leaves = np.flatnonzero(~is_parent[1:]) + 1
        if not np.array_equal(leaves, np.arange(1, n_tips + 1)):
            msg = (
                f"Tips must be exactly the nodes 1..{n_tips}; "
                f"childless nodes found: {leaves.tolist()}."
            )
            raise MalformedTreeError(msg)

        parent_edge = np.full(n_nodes + 1, -1, dtype=np.int64)
        parent_edge[children] = np.arange(n_edges)

        _check_acyclic(parent_edge, parents, root, n_nodes)

        tip_labels = _as_labels(self.tip_labels, n_tips, "tip")
        if tip_labels is not None and len(set(tip_labels)) != n_tips:
            msg = "tip_labels must be unique."
            raise MalformedTreeError(msg)
        node_labels = _as_labels(self.node_labels, n_nodes - n_tips, "internal node")

        for arr in (edges, lengths, parent_edge):
            arr.flags.writeable = False

        object.__setattr__(self, "edges", edges)
        object.__setattr__(self, "edge_lengths", lengths)
        object.__setattr__(self, "n_tips", n_tips)
        object.__setattr__(self, "tip_labels", tip_labels)
        object.__setattr__(self, "node_labels", node_labels)
        object.__setattr__(self, "_root", root)
        object.__setattr__(self, "_n_nodes", n_nodes)
        object.__setattr__(self, "_parent_edge", parent_edge)

    # ---- Constructors ----------------------------------------------

    @classmethod
    def from_frame(
        cls,
        frame: DataFrameLike,
        *,
        parent: str = "parent",
        child: str = "child",
        length: str = "length",
        n_tips: int | None = None,
        tip_labels: Any = None,
        node_labels: Any = None,
    ) -> Self:
        """Build a tree from an edge table.

        Args:
            frame: pandas or Polars DataFrame with one row per edge.
            parent: Column holding parent node ids.
            child: Column holding child node ids.
            length: Column holding branch lengths.
            n_tips: Tip count.  When omitted, it is inferred as the
                number of child ids that never appear as parents.
            tip_labels: Optional tip labels in tip-number order.
            node_labels: Optional internal-node labels.

        Returns:
            A validated :class:`Tree`.
        """
        df = _ensure_pandas_df(frame, name="frame")
        missing = [c for c in (parent, child, length) if c not in df.columns]
        if missing:
            msg = f"Edge table is missing column(s) {missing}."
            raise KeyError(msg)
        edges = df[[parent, child]].to_numpy()
        if n_tips is None:
            n_tips = len(set(df[child].tolist()) - set(df[parent].tolist()))
        return cls(
            edges=edges,
            edge_lengths=df[length].to_numpy(dtype=np.float64),
            n_tips=n_tips,
            tip_labels=tip_labels,
            node_labels=node_labels,
        )

    def to_frame(self) -> pd.DataFrame:
        """Return the edge table as a DataFrame (one row per edge)."""
        df = pd.DataFrame(
            {
                "parent": self.edges[:, 0],
                "child": self.edges[:, 1],
                "length": self.edge_lengths,
            }
        )
        if self.tip_labels is not None:
            labels = np.full(self.n_edges, None, dtype=object)
            tip_rows = df["child"].to_numpy() <= self.n_tips
            labels[tip_rows] = [
                self.tip_labels[c - 1] for c in df["child"].to_numpy()[tip_rows]
            ]
            df["tip_label"] = pd.Series(labels, dtype=object, index=df.index)
        return df

    # ---- Topology --------------------------------------------------

    @property
    def root(self) -> int:
        return self._root

    @property
    def n_edges(self) -> int:
        return int(self.edges.shape[0])

    @property
    def n_nodes(self) -> int:
        return self._n_nodes

    def _check_node(self, node: int) -> int:
        node = int(node)
        if not 1 <= node <= self._n_nodes:
            msg = f"Node {node} is outside 1..{self._n_nodes}."
            raise ValueError(msg)
        return node

    def _check_tip(self, tip: int) -> int:
        tip = int(tip)
        if not 1 <= tip <= self.n_tips:
            msg = f"Tip {tip} is outside 1..{self.n_tips}."
            raise ValueError(msg)
        return tip

    def is_tip(self, node: int) -> bool:
        return 1 <= int(node) <= self.n_tips

    def edge_length(self, edge: int) -> float:
        """Length of edge *edge* (0-based row of ``edges``)."""
        return float(self.edge_lengths[edge])

    def parent_edge(self, node: int) -> int | None:
        """Index of the edge whose child is *node*, or ``None`` for the root."""
        e = int(self._parent_edge[self._check_node(node)])
        return None if e < 0 else e

    def parent(self, node: int) -> int | None:
        """Parent of *node*, or ``None`` for the root."""
        e = self.parent_edge(node)
        return None if e is None else int(self.edges[e, 0])

    def children(self, node: int) -> tuple[int, ...]:
        node = self._check_node(node)
        return tuple(int(c) for c in self.edges[self.edges[:, 0] == node, 1])

    # ---- Root paths ------------------------------------------------

    def root_path(self, tip: int) -> np.ndarray:
        """Edge indices on the path from *tip* to the root, tip first."""
        tip = self._check_tip(tip)
        path = _walk_to_root(self._parent_edge, self.edges[:, 0], self._root, tip)
        return np.asarray(path, dtype=np.intp)

    def depth(self, tip: int) -> int:
        """Number of edges between *tip* and the root."""
        return int(self.root_path(tip).size)

    def path_length(self, tip: int) -> float:
        """Total branch length from *tip* to the root."""
        return float(self.edge_lengths[self.root_path(tip)].sum())

    def path_lengths(self) -> np.ndarray:
        """Root-to-tip path lengths for all tips, shape ``(T,)``."""
        return np.array([self.path_length(t) for t in range(1, self.n_tips + 1)])

    def tip_index(self, label: str) -> int:
        """Tip number (1-based) carrying *label*."""
        if self.tip_labels is None:
            msg = "Tree has no tip labels."
            raise ValueError(msg)
        try:
            return self.tip_labels.index(str(label)) + 1
        except ValueError:
            raise KeyError(label) from None

    # ---- Identity --------------------------------------------------

    @cached_property
    def fingerprint(self) -> str:
        """Content hash of the topology and branch lengths.

        Labels are excluded: two trees that differ only in labels
        produce the same Z matrix.
        """
        h = hashlib.sha256()
        h.update(str(self.n_tips).encode())
        h.update(self.edges.tobytes())
        h.update(self.edge_lengths.tobytes())
        return h.hexdigest()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Tree):
            return NotImplemented
        return (
            self.fingerprint == other.fingerprint
            and self.tip_labels == other.tip_labels
            and self.node_labels == other.node_labels
        )

    def __hash__(self) -> int:
        return hash((self.fingerprint, self.tip_labels))


__all__ = ["Tree"]
