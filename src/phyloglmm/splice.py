"""Splicing a tree-derived block into a random-effects structure.

A formula front end cannot express "one effect per branch of a tree",
so the phylogenetic term is first written as an ordinary scalar random
intercept grouped by species, e.g. ``(1 | phylo)``.  That placeholder
owns one effect per tip and one θ parameter.  :func:`splice_term`
swaps it for the per-edge block derived from the tree:

1. resolve the term's position ``p``;
2. replace ``Ztlist[p]`` with ``Zᵀ · Ztlist[p]`` (edges × observations;
   the placeholder block maps tips to observations, so this is just
   ``Zᵀ`` when every tip is observed once);
3. restack ``Zt``;
4. rebuild ``Gp`` with term ``p`` owning ``E`` effects;
5. split ``Lind`` at the *old* offsets and give term ``p`` ``E``
   entries, all pointing at the θ it already owned;
6. split ``Lambda`` at the *old* offsets and give term ``p`` an
   ``E × E`` identity pattern;
7. replace the grouping factor with the edge ordinals ``1..E``.

Branch effects are modelled as independent with a common variance:
the correlation between tips lives entirely in the branch-length
weights of Z, not in Λ.  The phylogenetic variance is therefore still
a single θ, and the solver needs no knowledge of the tree.

The input structure is never modified.  The spliced pieces are handed
to the validating constructor of
:class:`~phyloglmm.RandomEffectsStructure`, so the call either returns
a fully consistent new structure or raises and leaves the caller with
the original.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Sequence
from typing import Any

import numpy as np
import pandas as pd
import scipy.sparse as sp

from ._exceptions import StructuralMismatchError
from ._typing import MatrixLike
from .reterms import (
    RandomEffectsStructure,
    TermId,
    _block_diag_csc,
    _split_block_diag,
)
from .tree import Tree
from .zmatrix import Transform, build_z

logger = logging.getLogger(__name__)


def _identity_csc(n: int, value: float) -> sp.csc_array:
    """n × n diagonal pattern with every stored value set to *value*."""
    return sp.csc_array(
        (np.full(n, value, dtype=np.float64), np.arange(n), np.arange(n + 1)),
        shape=(n, n),
    )


def _align_tips(
    Z: sp.csr_array,
    tip_labels: Sequence[Any],
    factor: pd.Categorical,
    term: str,
) -> sp.csr_array:
    """Reorder the rows of *Z* to follow the levels of *factor*."""
    labels = [str(t) for t in tip_labels]
    if len(labels) != Z.shape[0]:
        msg = f"Got {len(labels)} tip labels for a Z matrix with {Z.shape[0]} rows."
        raise StructuralMismatchError(
            msg, term=term, expected=Z.shape[0], actual=len(labels)
        )
    position = {label: i for i, label in enumerate(labels)}
    if len(position) != len(labels):
        msg = "tip_labels must be unique."
        raise StructuralMismatchError(msg, term=term)

    levels = [str(level) for level in factor.categories]
    missing = [level for level in levels if level not in position]
    if missing:
        msg = (
            f"Term {term!r} has {len(missing)} level(s) with no matching tip "
            f"label, e.g. {missing[:5]}."
        )
        raise StructuralMismatchError(msg, term=term, expected=levels, actual=labels)
    order = np.array([position[level] for level in levels], dtype=np.intp)
    return sp.csr_array(Z[order, :])


def splice_term(
    structure: RandomEffectsStructure,
    term: TermId | str,
    z: MatrixLike,
    *,
    tip_labels: Sequence[Any] | None = None,
) -> RandomEffectsStructure:
    """Replace a scalar placeholder term with a tip-by-edge design.

    Args:
        structure: Structure containing the placeholder term.
        term: :class:`~phyloglmm.TermId` of the placeholder, or its
            name.
        z: ``(T, E)`` design matrix, typically from
            :func:`~phyloglmm.build_z`.  ``T`` must equal the number
            of placeholder levels.
        tip_labels: Labels of the rows of *z*.  When given, rows are
            matched to the placeholder's grouping levels by label;
            otherwise row ``i`` is taken to be level ``i`` (levels are
            sorted).

    Returns:
        A new, validated :class:`~phyloglmm.RandomEffectsStructure`
        in which the term owns ``E`` effects.

    Raises:
        UnknownTermError: If *term* is not in *structure*.
        StructuralMismatchError: If the term is not a scalar
            single-parameter term, if *z* does not have one row per
            placeholder level, or if the spliced structure is
            inconsistent.
    """
    # 1. Locate the term.
    tid = term if isinstance(term, TermId) else structure.term_id(term)
    p = structure._position(tid)
    name = tid.name

    old_Gp = structure.Gp
    old_counts = np.diff(old_Gp)
    K = structure.n_terms

    if structure.n_theta[p] != 1 or len(structure.cnms[p]) != 1:
        msg = (
            f"Term {name!r} must be a scalar term with one θ parameter and "
            f"one effect per level; it has {structure.n_theta[p]} parameter(s) "
            f"and effects {list(structure.cnms[p])}."
        )
        raise StructuralMismatchError(
            msg, term=name, expected=1, actual=structure.n_theta[p]
        )

    if np.ndim(z) != 2:
        msg = f"Z must be two-dimensional, got {np.ndim(z)} dimension(s)."
        raise StructuralMismatchError(msg, term=name, expected=2, actual=np.ndim(z))
    Z = sp.csr_array(z, dtype=np.float64)
    n_tips, n_edges = Z.shape
    if n_tips != old_counts[p]:
        msg = (
            f"Z has {n_tips} rows but term {name!r} has {int(old_counts[p])} "
            f"levels; Z must have one row per level (tip)."
        )
        raise StructuralMismatchError(
            msg, term=name, expected=int(old_counts[p]), actual=n_tips
        )
    if tip_labels is not None:
        Z = _align_tips(Z, tip_labels, structure.flist[p], name)

    # 2. Per-edge design block (edges × observations).
    Ztlist = list(structure.Ztlist)
    Ztlist[p] = sp.csr_array(Z.T @ structure.Ztlist[p])

    # 3. Restack.  Z has one row per level, so the new block keeps n_obs
    # columns.
    Zt = sp.vstack(Ztlist, format="csr")

    # 4. Offsets.
    counts = old_counts.copy()
    counts[p] = n_edges
    Gp = np.concatenate([[0], np.cumsum(counts)]).astype(np.int64)

    # 5. θ index map, segmented by the old Λ layout.
    lind_off = structure.lind_offsets
    segments = [structure.Lind[lind_off[k] : lind_off[k + 1]] for k in range(K)]
    owned = int(structure.theta_offsets[p])
    segments[p] = np.full(n_edges, owned, dtype=np.int64)
    Lind = np.concatenate(segments)

    # 6. Λ blocks, split at the old offsets.
    blocks = _split_block_diag(structure.Lambda, old_Gp)
    blocks[p] = _identity_csc(n_edges, float(structure.theta[owned]))
    Lambda = _block_diag_csc(blocks)

    # 7. One synthetic level per edge.
    flist = list(structure.flist)
    flist[p] = pd.Categorical(np.arange(1, n_edges + 1))

    spliced = dataclasses.replace(
        structure,
        Ztlist=tuple(Ztlist),
        flist=tuple(flist),
        Zt=Zt,
        Gp=Gp,
        Lind=Lind,
        Lambda=Lambda,
    )
    logger.debug(
        "Spliced term %r: %d -> %d effects (total %d -> %d)",
        name,
        int(old_counts[p]),
        n_edges,
        structure.n_effects,
        spliced.n_effects,
    )
    return spliced


def add_phylogeny(
    structure: RandomEffectsStructure,
    tree: Tree,
    term: TermId | str = "phylo",
    *,
    transform: Transform = "length",
    scale: bool = False,
    n_jobs: int | None = None,
    cache: bool = True,
) -> RandomEffectsStructure:
    """Build Z for *tree* and splice it into *term*.

    Rows are matched to the placeholder's levels through the tree's
    tip labels; an unlabelled tree is matched by position.  Keyword
    arguments are forwarded to :func:`~phyloglmm.build_z`.
    """
    Z = build_z(tree, transform=transform, scale=scale, n_jobs=n_jobs, cache=cache)
    return splice_term(structure, term, Z, tip_labels=tree.tip_labels)


__all__ = ["add_phylogeny", "splice_term"]
