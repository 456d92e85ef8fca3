"""Random-effects structure for a mixed model.

A :class:`RandomEffectsStructure` is the set of parallel arrays a
mixed-model solver needs to evaluate

    y = Xβ + Zb + ε,   b = Λ_θ u,   u ~ N(0, σ²I)

for K named terms, following the ``reTrms`` layout of Bates et al.
(2015).  Per term k it holds:

* ``Ztlist[k]``: the transposed design block ``(q_k, n)``,
* ``flist[k]``: the grouping factor,
* ``cnms[k]``: the effect names within one level (``"(Intercept)"``
  plus any slope columns),
* ``n_theta[k]``: how many relative-covariance parameters it owns,

and globally:

* ``Zt``: ``Ztlist`` stacked row-wise, shape ``(q, n)``,
* ``Gp``: cumulative offsets: term k owns rows ``Gp[k]:Gp[k+1]``,
* ``Lambda``: lower-triangular, block-diagonal relative covariance
  factor ``(q, q)``; block k spans rows/columns ``Gp[k]:Gp[k+1]``,
* ``Lind``: for each stored entry of ``Lambda`` (CSC order), the
  0-based index into ``theta`` that supplies its value,
* ``theta`` / ``lower``: start values and lower bounds.

The pieces are mutually constrained (row counts, offsets, block
sizes, index ranges).  All of those constraints are checked in
``__post_init__``; an inconsistent combination raises
:class:`~phyloglmm.StructuralMismatchError` and never produces an
object.  Instances are frozen and hold private read-only copies of
every array, sparse buffers included.  A structure is changed only by
building a new one, which is how :func:`~phyloglmm.splice_term` keeps its
replacements atomic.

Terms are addressed through :class:`TermId` values resolved once when
the structure is built.  Name lookup (:meth:`term_id`) exists for the
boundary where names come from formula text or user input.

References:
    Bates, D., Mächler, M., Bolker, B. & Walker, S. (2015). Fitting
    linear mixed-effects models using lme4. *Journal of Statistical
    Software*, 67(1), 1–48.
"""

from __future__ import annotations

from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
import pandas as pd
import scipy.sparse as sp
from typing_extensions import Self

from ._compat import DataFrameLike, _as_label_array, _ensure_pandas_df, _is_dataframe_like
from ._exceptions import StructuralMismatchError, UnknownTermError

# ------------------------------------------------------------------ #
# Block-diagonal helpers
# ------------------------------------------------------------------ #
#
# scipy's block_diag / slicing routines go through COO and may drop
# explicitly stored zeros.  Λ's stored-entry pattern is what Lind
# indexes, so the pattern has to survive split/reassemble untouched.
# These helpers work directly on the CSC arrays.


def _block_diag_csc(blocks: Sequence[Any]) -> sp.csc_array:
    """Assemble square CSC blocks into a block-diagonal CSC array."""
    data: list[np.ndarray] = []
    indices: list[np.ndarray] = []
    indptr: list[np.ndarray] = [np.zeros(1, dtype=np.int64)]
    offset = 0
    nnz = 0
    for blk in blocks:
        blk = sp.csc_array(blk)
        if blk.shape[0] != blk.shape[1]:
            msg = f"Diagonal blocks must be square, got {blk.shape}."
            raise ValueError(msg)
        k = int(blk.indptr[-1])
        data.append(np.asarray(blk.data[:k], dtype=np.float64))
        indices.append(blk.indices[:k].astype(np.int64) + offset)
        indptr.append(blk.indptr[1:].astype(np.int64) + nnz)
        offset += blk.shape[0]
        nnz += k
    return sp.csc_array(
        (
            np.concatenate(data) if data else np.empty(0),
            np.concatenate(indices) if indices else np.empty(0, dtype=np.int64),
            np.concatenate(indptr),
        ),
        shape=(offset, offset),
    )


def _split_block_diag(mat: Any, offsets: np.ndarray) -> list[sp.csc_array]:
    """Split a block-diagonal CSC array at *offsets* (length K + 1)."""
    mat = sp.csc_array(mat)
    blocks: list[sp.csc_array] = []
    for a, b in zip(offsets[:-1], offsets[1:]):
        a, b = int(a), int(b)
        lo, hi = int(mat.indptr[a]), int(mat.indptr[b])
        blocks.append(
            sp.csc_array(
                (
                    mat.data[lo:hi].copy(),
                    mat.indices[lo:hi].astype(np.int64) - a,
                    mat.indptr[a : b + 1].astype(np.int64) - lo,
                ),
                shape=(b - a, b - a),
            )
        )
    return blocks


def _frozen_sparse(mat: Any, fmt: str) -> Any:
    """Private copy of *mat* in *fmt* with read-only data and index buffers."""
    out = sp.csr_array(mat, copy=True) if fmt == "csr" else sp.csc_array(mat, copy=True)
    for arr in (out.data, out.indices, out.indptr):
        arr.flags.writeable = False
    return out


def _lower_tri_pattern(d: int) -> tuple[np.ndarray, np.ndarray]:
    """Row indices and column pointers of a full d×d lower triangle (CSC)."""
    rows = np.concatenate([np.arange(j, d) for j in range(d)])
    indptr = np.concatenate([[0], np.cumsum(np.arange(d, 0, -1))])
    return rows.astype(np.int64), indptr.astype(np.int64)


# ------------------------------------------------------------------ #
# Term identifiers
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class TermId:
    """Stable handle for one term of a :class:`RandomEffectsStructure`.

    Obtained from :meth:`RandomEffectsStructure.term_id` or
    :attr:`RandomEffectsStructure.terms`.  Splicing preserves term
    order and names, so an id stays valid for the spliced structure.
    """

    name: str
    position: int


# ------------------------------------------------------------------ #
# RandomEffectsStructure
# ------------------------------------------------------------------ #


@dataclass(frozen=True, eq=False)
class RandomEffectsStructure:
    """Validated random-effects structure (see module docstring).

    Parameters
    ----------
    term_names : tuple[str, ...]
        Unique term names, in model order.
    Ztlist : tuple of sparse arrays
        Per-term transposed design blocks ``(q_k, n)``.
    flist : tuple of pandas.Categorical
        Per-term grouping factors.
    cnms : tuple[tuple[str, ...], ...]
        Per-term effect names within one grouping level.
    n_theta : tuple[int, ...]
        Per-term count of relative-covariance parameters.
    Zt : sparse array
        Row concatenation of ``Ztlist``, ``(q, n)``.
    Gp : np.ndarray
        Cumulative effect offsets, length ``K + 1``.
    Lind : np.ndarray
        θ index for each stored entry of ``Lambda``.
    Lambda : sparse array
        Lower-triangular block-diagonal factor ``(q, q)``.
    theta : np.ndarray
        Relative-covariance parameter start values.
    lower : np.ndarray
        Lower bounds for ``theta``.

    Raises
    ------
    StructuralMismatchError
        If any of the cross-structure invariants fails.
    """

    term_names: tuple[str, ...]
    Ztlist: tuple[sp.csr_array, ...]
    flist: tuple[pd.Categorical, ...]
    cnms: tuple[tuple[str, ...], ...]
    n_theta: tuple[int, ...]
    Zt: sp.csr_array
    Gp: np.ndarray
    Lind: np.ndarray
    Lambda: sp.csc_array
    theta: np.ndarray
    lower: np.ndarray

    _registry: dict[str, TermId] = field(init=False, repr=False, default=None)  # type: ignore[assignment]

    def __post_init__(self) -> None:
        term_names = tuple(str(t) for t in self.term_names)
        K = len(term_names)
        if K == 0:
            msg = "A random-effects structure needs at least one term."
            raise StructuralMismatchError(msg, expected=">= 1", actual=0)
        if len(set(term_names)) != K:
            msg = f"Term names must be unique, got {list(term_names)}."
            raise StructuralMismatchError(msg)

        Ztlist = tuple(_frozen_sparse(b, "csr") for b in self.Ztlist)
        flist = tuple(
            f if isinstance(f, pd.Categorical) else pd.Categorical(f)
            for f in self.flist
        )
        cnms = tuple(tuple(str(c) for c in names) for names in self.cnms)
        n_theta = tuple(int(m) for m in self.n_theta)
        for label, seq in (
            ("Ztlist", Ztlist),
            ("flist", flist),
            ("cnms", cnms),
            ("n_theta", n_theta),
        ):
            if len(seq) != K:
                msg = f"{label} has {len(seq)} entries for {K} terms."
                raise StructuralMismatchError(msg, expected=K, actual=len(seq))

        Zt = _frozen_sparse(self.Zt, "csr")
        Lambda = _frozen_sparse(self.Lambda, "csc")
        Gp = np.array(self.Gp, dtype=np.int64)
        Lind = np.array(self.Lind, dtype=np.int64)
        theta = np.array(self.theta, dtype=np.float64)
        lower = np.array(self.lower, dtype=np.float64)

        n_obs = Zt.shape[1]
        q_k = np.array([b.shape[0] for b in Ztlist], dtype=np.int64)
        for name, blk in zip(term_names, Ztlist):
            if blk.shape[1] != n_obs:
                msg = (
                    f"Term {name!r} design block has {blk.shape[1]} observation "
                    f"columns, expected {n_obs}."
                )
                raise StructuralMismatchError(
                    msg, term=name, expected=n_obs, actual=blk.shape[1]
                )

        # Per-term effect counts add up to the stacked design.
        q = int(Zt.shape[0])
        if int(q_k.sum()) != q:
            msg = f"Per-term effect counts sum to {int(q_k.sum())}, but Zt has {q} rows."
            raise StructuralMismatchError(msg, expected=q, actual=int(q_k.sum()))
        mismatched = (Zt != sp.vstack(Ztlist, format="csr")).nnz
        if mismatched:
            msg = f"Zt differs from the row concatenation of Ztlist in {mismatched} entries."
            raise StructuralMismatchError(msg, expected=0, actual=int(mismatched))

        # Offsets: non-decreasing, anchored at 0 and q, matching q_k.
        if Gp.shape != (K + 1,):
            msg = f"Gp must have length {K + 1}, got {Gp.shape[0]}."
            raise StructuralMismatchError(msg, expected=K + 1, actual=Gp.shape[0])
        if Gp[0] != 0 or Gp[-1] != q or np.any(np.diff(Gp) < 0):
            msg = f"Gp must be non-decreasing from 0 to {q}, got {Gp.tolist()}."
            raise StructuralMismatchError(msg, expected=q, actual=int(Gp[-1]))
        if not np.array_equal(np.diff(Gp), q_k):
            msg = (
                f"Gp offsets {Gp.tolist()} do not match per-term effect "
                f"counts {q_k.tolist()}."
            )
            raise StructuralMismatchError(msg, expected=q_k.tolist(), actual=np.diff(Gp).tolist())

        # Λ: square, lower-triangular, entries inside their own block.
        if Lambda.shape != (q, q):
            msg = f"Lambda must be ({q}, {q}), got {Lambda.shape}."
            raise StructuralMismatchError(msg, expected=(q, q), actual=Lambda.shape)
        nnz = int(Lambda.indptr[-1])
        entry_col = np.repeat(np.arange(q), np.diff(Lambda.indptr))
        entry_row = Lambda.indices[:nnz]
        block_end = np.repeat(Gp[1:], q_k)
        if nnz and (
            np.any(entry_row < entry_col) or np.any(entry_row >= block_end[entry_col])
        ):
            msg = "Lambda must be lower-triangular and block-diagonal with blocks Gp."
            raise StructuralMismatchError(msg)

        # θ bookkeeping.
        n_theta_total = sum(n_theta)
        if theta.shape != (n_theta_total,) or lower.shape != (n_theta_total,):
            msg = (
                f"theta and lower must have length {n_theta_total}, got "
                f"{theta.shape[0]} and {lower.shape[0]}."
            )
            raise StructuralMismatchError(msg, expected=n_theta_total, actual=theta.shape[0])

        # Lind: one θ index per stored Λ entry, owned by the right term.
        if Lind.shape != (nnz,):
            msg = f"Lind has {Lind.shape[0]} entries, Lambda stores {nnz}."
            raise StructuralMismatchError(msg, expected=nnz, actual=Lind.shape[0])
        theta_off = np.concatenate([[0], np.cumsum(n_theta, dtype=np.int64)])
        nnz_off = Lambda.indptr[Gp]
        for k, name in enumerate(term_names):
            seg = Lind[nnz_off[k] : nnz_off[k + 1]]
            if seg.size and (seg.min() < theta_off[k] or seg.max() >= theta_off[k + 1]):
                msg = (
                    f"Lind entries for term {name!r} must index theta "
                    f"[{theta_off[k]}, {theta_off[k + 1]})."
                )
                raise StructuralMismatchError(msg, term=name)

        # Grouping factor levels × effects per level = effect count.
        for k, name in enumerate(term_names):
            expected = len(flist[k].categories) * len(cnms[k])
            if expected != q_k[k]:
                msg = (
                    f"Term {name!r}: {len(flist[k].categories)} levels × "
                    f"{len(cnms[k])} effects = {expected}, but its design "
                    f"block has {q_k[k]} rows."
                )
                raise StructuralMismatchError(msg, term=name, expected=expected, actual=int(q_k[k]))

        for arr in (Gp, Lind, theta, lower):
            arr.flags.writeable = False

        object.__setattr__(self, "term_names", term_names)
        object.__setattr__(self, "Ztlist", Ztlist)
        object.__setattr__(self, "flist", flist)
        object.__setattr__(self, "cnms", cnms)
        object.__setattr__(self, "n_theta", n_theta)
        object.__setattr__(self, "Zt", Zt)
        object.__setattr__(self, "Gp", Gp)
        object.__setattr__(self, "Lind", Lind)
        object.__setattr__(self, "Lambda", Lambda)
        object.__setattr__(self, "theta", theta)
        object.__setattr__(self, "lower", lower)
        object.__setattr__(
            self,
            "_registry",
            {name: TermId(name, k) for k, name in enumerate(term_names)},
        )

    # ---- Assembly --------------------------------------------------

    @classmethod
    def assemble(
        cls,
        term_names: Sequence[str],
        Ztlist: Sequence[Any],
        flist: Sequence[Any],
        cnms: Sequence[Sequence[str]],
        lambda_blocks: Sequence[Any],
        lind_segments: Sequence[np.ndarray],
        theta: np.ndarray,
        lower: np.ndarray,
        n_theta: Sequence[int],
    ) -> Self:
        """Build a structure from per-term pieces, deriving the globals.

        ``Zt`` is the row concatenation of *Ztlist*, ``Gp`` the running
        sum of block row counts, ``Lambda`` the block-diagonal assembly
        of *lambda_blocks* and ``Lind`` the concatenation of
        *lind_segments* (each already expressed in global θ indices).
        """
        Ztlist = [sp.csr_array(b) for b in Ztlist]
        counts = [b.shape[0] for b in Ztlist]
        return cls(
            term_names=tuple(term_names),
            Ztlist=tuple(Ztlist),
            flist=tuple(flist),
            cnms=tuple(tuple(c) for c in cnms),
            n_theta=tuple(n_theta),
            Zt=sp.vstack(Ztlist, format="csr"),
            Gp=np.concatenate([[0], np.cumsum(counts)]).astype(np.int64),
            Lind=np.concatenate([np.asarray(s, dtype=np.int64) for s in lind_segments]),
            Lambda=_block_diag_csc(lambda_blocks),
            theta=theta,
            lower=lower,
        )

    # ---- Sizes -----------------------------------------------------

    @property
    def n_terms(self) -> int:
        return len(self.term_names)

    @property
    def n_obs(self) -> int:
        return int(self.Zt.shape[1])

    @property
    def n_effects(self) -> int:
        return int(self.Zt.shape[0])

    @property
    def effect_counts(self) -> np.ndarray:
        """Effects owned by each term, in term order."""
        return np.diff(self.Gp)

    @property
    def theta_offsets(self) -> np.ndarray:
        return np.concatenate([[0], np.cumsum(self.n_theta, dtype=np.int64)])

    @property
    def lind_offsets(self) -> np.ndarray:
        """Where each term's segment of ``Lind`` begins and ends."""
        return np.asarray(self.Lambda.indptr[self.Gp], dtype=np.int64)

    # ---- Term registry ---------------------------------------------

    @property
    def terms(self) -> tuple[TermId, ...]:
        return tuple(self._registry.values())

    def term_id(self, name: str) -> TermId:
        """Resolve a term name to its :class:`TermId`.

        Raises:
            UnknownTermError: If no term has this name.
        """
        try:
            return self._registry[name]
        except KeyError:
            raise UnknownTermError(name, self.term_names) from None

    def _position(self, term: TermId | str) -> int:
        if isinstance(term, TermId):
            if self._registry.get(term.name) != term:
                raise UnknownTermError(term, self.term_names)
            return term.position
        return self.term_id(term).position

    def term_slice(self, term: TermId | str) -> slice:
        """Rows of ``Zt`` (and of Λ) owned by *term*."""
        p = self._position(term)
        return slice(int(self.Gp[p]), int(self.Gp[p + 1]))

    def theta_slice(self, term: TermId | str) -> slice:
        p = self._position(term)
        off = self.theta_offsets
        return slice(int(off[p]), int(off[p + 1]))

    def lind_segment(self, term: TermId | str) -> np.ndarray:
        p = self._position(term)
        off = self.lind_offsets
        return self.Lind[off[p] : off[p + 1]]

    def lambda_blocks(self) -> list[sp.csc_array]:
        """Per-term diagonal blocks of ``Lambda``."""
        return _split_block_diag(self.Lambda, self.Gp)

    # ---- θ-dependent quantities ------------------------------------

    def lambda_at(self, theta: np.ndarray | None = None) -> sp.csc_array:
        """Return Λ_θ: the stored pattern of ``Lambda`` filled from θ.

        Args:
            theta: Parameter vector, length ``len(self.theta)``.
                Defaults to the start values.
        """
        th = self.theta if theta is None else np.asarray(theta, dtype=np.float64)
        if th.shape != self.theta.shape:
            msg = f"theta must have length {self.theta.shape[0]}, got {th.shape[0]}."
            raise ValueError(msg)
        L = self.Lambda.copy()
        L.data[: self.Lind.shape[0]] = th[self.Lind]
        return L

    def marginal_covariance(self, theta: np.ndarray | None = None) -> np.ndarray:
        """Random-effect covariance of the linear predictor, relative to σ².

        Returns ``Ztᵀ Λ_θ Λ_θᵀ Zt`` as a dense ``(n, n)`` array.
        """
        A = self.Zt.T @ self.lambda_at(theta)
        return np.asarray((A @ A.T).toarray())

    # ---- Display ---------------------------------------------------

    def summary(self) -> pd.DataFrame:
        """One row per term: levels, effects, θ count and offsets."""
        th_off = self.theta_offsets
        return pd.DataFrame(
            {
                "term": list(self.term_names),
                "n_levels": [len(f.categories) for f in self.flist],
                "effects_per_level": [len(c) for c in self.cnms],
                "n_effects": self.effect_counts.tolist(),
                "n_theta": list(self.n_theta),
                "first_effect": self.Gp[:-1].tolist(),
                "first_theta": th_off[:-1].tolist(),
            }
        )

    def __repr__(self) -> str:
        terms = ", ".join(
            f"{name}[{q}]" for name, q in zip(self.term_names, self.effect_counts)
        )
        return f"RandomEffectsStructure(n_obs={self.n_obs}, terms=({terms}))"


# ------------------------------------------------------------------ #
# Group-based builder
# ------------------------------------------------------------------ #


def _normalise_factors(
    groups: Any,
    random_slopes: list[int] | dict[str, list[int]] | None,
) -> list[tuple[str, np.ndarray, list[int]]]:
    """Normalise (groups, random_slopes) into ``(name, labels, slope_cols)``."""
    factors: list[tuple[str, np.ndarray, list[int]]] = []

    if _is_dataframe_like(groups):
        df = _ensure_pandas_df(groups, name="groups")
        groups = OrderedDict((str(c), df[c].to_numpy()) for c in df.columns)

    if isinstance(groups, dict):
        if len(groups) == 0:
            msg = "groups dict must contain at least one grouping factor."
            raise ValueError(msg)
        if random_slopes is None:
            slopes_dict: dict[str, list[int]] = {}
        elif isinstance(random_slopes, dict):
            slopes_dict = random_slopes
        else:
            msg = (
                "random_slopes must be a dict when groups is a dict, "
                f"got {type(random_slopes).__name__}."
            )
            raise ValueError(msg)

        for name, val in OrderedDict(groups).items():
            if isinstance(val, tuple):
                labels, slope_cols = val
            else:
                labels, slope_cols = val, slopes_dict.get(name, [])
            labels = _as_label_array(labels, name=str(name))
            factors.append((str(name), labels, list(slope_cols)))
    else:
        labels = _as_label_array(groups, name="groups")
        if random_slopes is None:
            slope_cols_single: list[int] = []
        elif isinstance(random_slopes, list):
            slope_cols_single = random_slopes
        else:
            msg = (
                "random_slopes must be a list[int] when groups is a "
                f"1-D array, got {type(random_slopes).__name__}."
            )
            raise ValueError(msg)
        factors.append(("factor_0", labels, slope_cols_single))
    return factors


def build_random_effects(
    groups: np.ndarray | dict[str, Any] | DataFrameLike,
    X: np.ndarray | DataFrameLike | None = None,
    random_slopes: list[int] | dict[str, list[int]] | None = None,
) -> RandomEffectsStructure:
    """Build a random-effects structure from grouping factors.

    This is the minimal stand-in for a formula front end: each
    grouping factor becomes one term with a random intercept and,
    optionally, correlated random slopes.  For factor k with G_k
    levels and slope columns ``[c_1, …, c_s]`` the effect dimension
    is ``d_k = 1 + s``, and the rows of ``Zt_k`` are arranged
    group-major::

        [group_0_intercept, group_0_slope_c1, …,
         group_1_intercept, group_1_slope_c1, …, …]

    so ``Λ_k = I_{G_k} ⊗ L_k`` where ``L_k`` is a full ``d_k × d_k``
    lower triangle with ``d_k(d_k+1)/2`` θ parameters in column-major
    order.  θ starts at 1 on the diagonal and 0 elsewhere; diagonal
    elements are bounded below by 0.

    Args:
        groups: Grouping factor specification.
            * 1-D array ``(n,)`` of labels → single term ``"factor_0"``.
            * dict ``{name: array}`` → one intercept term per factor.
            * dict ``{name: (array, slope_cols)}`` → terms with
              correlated random slopes.
            * DataFrame (pandas or Polars) → one term per column.
        X: Covariates ``(n, p)``; required when slopes are requested.
            Column names of a DataFrame become effect names.
        random_slopes: Slope columns (0-based indices into *X*), a
            list for a 1-D *groups* or a dict per factor.

    Returns:
        A validated :class:`RandomEffectsStructure`.

    Raises:
        ValueError: If label arrays differ in length, groups is
            empty, or slopes are requested without X.
    """
    factors = _normalise_factors(groups, random_slopes)

    col_names: list[str] | None = None
    X_arr: np.ndarray | None = None
    if X is not None:
        if _is_dataframe_like(X):
            X_df = _ensure_pandas_df(X, name="X")
            col_names = [str(c) for c in X_df.columns]
            X_arr = X_df.to_numpy(dtype=np.float64)
        else:
            X_arr = np.asarray(X, dtype=np.float64)
            if X_arr.ndim == 1:
                X_arr = X_arr[:, None]

    has_slopes = any(len(sc) > 0 for _, _, sc in factors)
    if has_slopes and X_arr is None:
        msg = (
            "X must be provided when random_slopes is specified "
            "(needed to build slope rows of Zt)."
        )
        raise ValueError(msg)

    n: int | None = None
    names: list[str] = []
    Ztlist: list[sp.csr_array] = []
    flist: list[pd.Categorical] = []
    cnms: list[tuple[str, ...]] = []
    lambda_blocks: list[sp.csc_array] = []
    lind_segments: list[np.ndarray] = []
    theta_parts: list[np.ndarray] = []
    lower_parts: list[np.ndarray] = []
    n_theta: list[int] = []
    theta_offset = 0

    for name, labels, slope_cols in factors:
        if n is None:
            n = len(labels)
        elif len(labels) != n:
            msg = f"Grouping factor '{name}' has {len(labels)} observations, expected {n}."
            raise ValueError(msg)
        if X_arr is not None and slope_cols and X_arr.shape[0] != n:
            msg = f"X has {X_arr.shape[0]} rows, expected {n}."
            raise ValueError(msg)

        unique_labels, coded = np.unique(labels, return_inverse=True)
        G_k = len(unique_labels)
        d_k = 1 + len(slope_cols)
        obs = np.arange(n)

        # Intercept row of each group, then one row per slope.
        rows = [coded * d_k]
        vals = [np.ones(n)]
        for s_idx, col_idx in enumerate(slope_cols):
            assert X_arr is not None  # validated above
            rows.append(coded * d_k + 1 + s_idx)
            vals.append(X_arr[:, col_idx])
        Zt_k = sp.csr_array(
            (np.concatenate(vals), (np.concatenate(rows), np.tile(obs, d_k))),
            shape=(G_k * d_k, n),
        )

        tri_rows, tri_ptr = _lower_tri_pattern(d_k)
        m_k = tri_rows.size
        tri_cols = np.repeat(np.arange(d_k), np.diff(tri_ptr))
        is_diag = tri_rows == tri_cols
        theta_k = np.where(is_diag, 1.0, 0.0)
        block_k = sp.csc_array((theta_k, tri_rows, tri_ptr), shape=(d_k, d_k))
        # I_G ⊗ L_k, assembled without dropping stored zeros.
        lambda_blocks.append(_block_diag_csc([block_k] * G_k))
        lind_segments.append(np.tile(theta_offset + np.arange(m_k), G_k))

        slope_names = [
            col_names[c] if col_names is not None else f"x{c}" for c in slope_cols
        ]
        names.append(name)
        Ztlist.append(Zt_k)
        flist.append(pd.Categorical(labels, categories=unique_labels))
        cnms.append(("(Intercept)", *slope_names))
        theta_parts.append(theta_k)
        lower_parts.append(np.where(is_diag, 0.0, -np.inf))
        n_theta.append(m_k)
        theta_offset += m_k

    return RandomEffectsStructure.assemble(
        term_names=names,
        Ztlist=Ztlist,
        flist=flist,
        cnms=cnms,
        lambda_blocks=lambda_blocks,
        lind_segments=lind_segments,
        theta=np.concatenate(theta_parts),
        lower=np.concatenate(lower_parts),
        n_theta=n_theta,
    )


__all__ = ["RandomEffectsStructure", "TermId", "build_random_effects"]
