"""Tests for RandomEffectsStructure and the group-based builder.

Covers intercept-only and random-slope construction, the term
registry, θ-dependent quantities, the summary table, and every
cross-structure invariant enforced at construction.
"""

from __future__ import annotations

import dataclasses

import numpy as np
import pandas as pd
import pytest
import scipy.sparse as sp

from phyloglmm import (
    RandomEffectsStructure,
    StructuralMismatchError,
    TermId,
    UnknownTermError,
    build_random_effects,
)
from phyloglmm.reterms import _block_diag_csc, _split_block_diag

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def two_factor():
    """school: 2 levels, classroom: 3 levels, n = 6."""
    groups = {
        "school": np.array(["s1", "s1", "s2", "s2", "s1", "s2"]),
        "classroom": np.array([0, 0, 1, 1, 2, 2]),
    }
    return build_random_effects(groups)


@pytest.fixture()
def slope_structure():
    """One factor with 3 levels, intercept + slope on X[:, 1]."""
    X = np.column_stack([np.zeros(6), np.arange(1.0, 7.0)])
    labels = np.array([0, 0, 1, 1, 2, 2])
    return build_random_effects({"g": (labels, [1])}, X=X), X


# ------------------------------------------------------------------ #
# Intercept-only terms
# ------------------------------------------------------------------ #


class TestInterceptTerms:
    def test_single_factor_1d(self):
        re = build_random_effects(np.array([10, 10, 20, 20, 30, 30]))
        assert re.term_names == ("factor_0",)
        assert re.Zt.shape == (3, 6)
        assert re.Gp.tolist() == [0, 3]
        assert re.Lind.tolist() == [0, 0, 0]
        assert re.theta.tolist() == [1.0]
        assert re.lower.tolist() == [0.0]
        assert re.cnms == (("(Intercept)",),)
        np.testing.assert_array_equal(re.Lambda.toarray(), np.eye(3))
        assert list(re.flist[0].categories) == [10, 20, 30]

    def test_indicator_rows(self):
        re = build_random_effects(np.array([1, 0, 1, 2]))
        np.testing.assert_array_equal(
            re.Zt.toarray(),
            [[0, 1, 0, 0], [1, 0, 1, 0], [0, 0, 0, 1]],
        )

    def test_two_factors(self, two_factor):
        re = two_factor
        assert re.term_names == ("school", "classroom")
        assert re.Gp.tolist() == [0, 2, 5]
        assert re.Lind.tolist() == [0, 0, 1, 1, 1]
        assert re.n_theta == (1, 1)
        assert re.n_obs == 6
        assert re.n_effects == 5
        np.testing.assert_array_equal(
            re.Zt.toarray(),
            np.vstack([re.Ztlist[0].toarray(), re.Ztlist[1].toarray()]),
        )

    def test_dataframe_groups(self):
        df = pd.DataFrame({"a": [0, 1, 0, 1], "b": ["x", "x", "y", "z"]})
        re = build_random_effects(df)
        assert re.term_names == ("a", "b")
        assert re.effect_counts.tolist() == [2, 3]


# ------------------------------------------------------------------ #
# Random slopes
# ------------------------------------------------------------------ #


class TestSlopeTerms:
    def test_layout(self, slope_structure):
        re, X = slope_structure
        assert re.Zt.shape == (6, 6)
        Zt = re.Zt.toarray()
        # Group-major: rows 2j (intercept) and 2j + 1 (slope).
        np.testing.assert_array_equal(Zt[0], [1, 1, 0, 0, 0, 0])
        np.testing.assert_array_equal(Zt[1], [1, 2, 0, 0, 0, 0])
        np.testing.assert_array_equal(Zt[5], [0, 0, 0, 0, 5, 6])

    def test_theta(self, slope_structure):
        re, _ = slope_structure
        assert re.n_theta == (3,)
        assert re.theta.tolist() == [1.0, 0.0, 1.0]
        assert re.lower.tolist() == [0.0, -np.inf, 0.0]
        assert re.Lind.tolist() == [0, 1, 2] * 3

    def test_lambda_pattern_keeps_off_diagonal_zeros(self, slope_structure):
        re, _ = slope_structure
        assert re.Lambda.indptr[-1] == 9
        np.testing.assert_array_equal(re.Lambda.toarray(), np.eye(6))

    def test_cnms_default_names(self, slope_structure):
        re, _ = slope_structure
        assert re.cnms == (("(Intercept)", "x1"),)

    def test_cnms_from_dataframe(self):
        X = pd.DataFrame({"age": [1.0, 2.0, 3.0, 4.0], "dose": [0.0, 1.0, 0.0, 1.0]})
        re = build_random_effects(np.array([0, 0, 1, 1]), X=X, random_slopes=[1])
        assert re.cnms == (("(Intercept)", "dose"),)

    def test_slope_dict(self):
        X = np.arange(8.0).reshape(4, 2)
        re = build_random_effects(
            {"g": np.array([0, 0, 1, 1]), "h": np.array([0, 1, 0, 1])},
            X=X,
            random_slopes={"h": [0]},
        )
        assert re.n_theta == (1, 3)
        assert re.effect_counts.tolist() == [2, 4]
        assert re.Lind.tolist() == [0, 0, 1, 2, 3, 1, 2, 3]


# ------------------------------------------------------------------ #
# Builder validation
# ------------------------------------------------------------------ #


class TestBuilderValidation:
    def test_length_mismatch(self):
        with pytest.raises(ValueError, match="expected 3"):
            build_random_effects({"a": [0, 1, 2], "b": [0, 1]})

    def test_empty_dict(self):
        with pytest.raises(ValueError, match="at least one"):
            build_random_effects({})

    def test_slopes_without_x(self):
        with pytest.raises(ValueError, match="X must be provided"):
            build_random_effects(np.array([0, 1]), random_slopes=[0])

    def test_two_dimensional_groups(self):
        with pytest.raises(ValueError, match="1-D"):
            build_random_effects(np.zeros((3, 2)))

    def test_slopes_type_mismatch(self):
        with pytest.raises(ValueError, match="must be a dict"):
            build_random_effects({"a": [0, 1]}, X=np.ones((2, 1)), random_slopes=[0])


# ------------------------------------------------------------------ #
# Term registry
# ------------------------------------------------------------------ #


class TestRegistry:
    def test_term_id(self, two_factor):
        assert two_factor.term_id("classroom") == TermId("classroom", 1)
        assert two_factor.terms == (TermId("school", 0), TermId("classroom", 1))

    def test_unknown_name(self, two_factor):
        with pytest.raises(UnknownTermError, match="phylo") as exc:
            two_factor.term_id("phylo")
        assert exc.value.available == ("school", "classroom")
        assert isinstance(exc.value, LookupError)

    def test_stale_id(self, two_factor):
        with pytest.raises(UnknownTermError):
            two_factor.term_slice(TermId("classroom", 0))

    def test_slices(self, two_factor):
        assert two_factor.term_slice("classroom") == slice(2, 5)
        assert two_factor.theta_slice("classroom") == slice(1, 2)
        assert two_factor.lind_segment("school").tolist() == [0, 0]

    def test_lambda_blocks(self, two_factor):
        blocks = two_factor.lambda_blocks()
        assert [b.shape for b in blocks] == [(2, 2), (3, 3)]


# ------------------------------------------------------------------ #
# θ-dependent quantities
# ------------------------------------------------------------------ #


class TestTheta:
    def test_lambda_at(self, two_factor):
        L = two_factor.lambda_at(np.array([2.0, 3.0]))
        np.testing.assert_array_equal(L.diagonal(), [2, 2, 3, 3, 3])
        # The stored start values are untouched.
        np.testing.assert_array_equal(two_factor.Lambda.diagonal(), np.ones(5))

    def test_lambda_at_wrong_length(self, two_factor):
        with pytest.raises(ValueError, match="length 2"):
            two_factor.lambda_at(np.ones(3))

    def test_lambda_at_slope(self, slope_structure):
        re, _ = slope_structure
        L = re.lambda_at(np.array([1.0, 0.5, 2.0])).toarray()
        np.testing.assert_array_equal(L[:2, :2], [[1.0, 0.0], [0.5, 2.0]])

    def test_marginal_covariance_random_intercept(self):
        labels = np.array([0, 0, 1, 2, 2])
        re = build_random_effects(labels)
        V = re.marginal_covariance(np.array([1.5]))
        same = (labels[:, None] == labels[None, :]).astype(float)
        np.testing.assert_allclose(V, 2.25 * same)


# ------------------------------------------------------------------ #
# Summary and immutability
# ------------------------------------------------------------------ #


class TestSummary:
    def test_columns(self, two_factor):
        df = two_factor.summary()
        assert df["term"].tolist() == ["school", "classroom"]
        assert df["n_levels"].tolist() == [2, 3]
        assert df["n_effects"].tolist() == [2, 3]
        assert df["first_effect"].tolist() == [0, 2]
        assert df["first_theta"].tolist() == [0, 1]

    def test_repr(self, two_factor):
        assert repr(two_factor) == "RandomEffectsStructure(n_obs=6, terms=(school[2], classroom[3]))"

    def test_frozen(self, two_factor):
        with pytest.raises(dataclasses.FrozenInstanceError):
            two_factor.Gp = np.array([0, 5])  # type: ignore[misc]

    def test_arrays_read_only(self, two_factor):
        with pytest.raises(ValueError):
            two_factor.Lind[0] = 1

    @pytest.mark.parametrize("attr", ["data", "indices", "indptr"])
    def test_sparse_buffers_read_only(self, two_factor, attr):
        for mat in (two_factor.Zt, two_factor.Lambda, *two_factor.Ztlist):
            with pytest.raises(ValueError):
                getattr(mat, attr)[0] = 0

    def test_sparse_inputs_are_copied(self, two_factor):
        block = sp.csr_array(two_factor.Ztlist[0].toarray())
        re = dataclasses.replace(
            two_factor, Ztlist=(block, two_factor.Ztlist[1])
        )
        block.data[:] = 99.0
        assert re.Ztlist[0].toarray().max() == 1.0
        assert block.data.flags.writeable

    def test_lambda_at_returns_writable_copy(self, two_factor):
        L = two_factor.lambda_at()
        L.data[:] = -5.0
        assert np.all(two_factor.Lambda.data == 1.0)


# ------------------------------------------------------------------ #
# Construction invariants
# ------------------------------------------------------------------ #


class TestInvariants:
    def test_offsets_must_match_blocks(self, two_factor):
        with pytest.raises(StructuralMismatchError, match="do not match"):
            dataclasses.replace(two_factor, Gp=np.array([0, 3, 5]))

    def test_offsets_must_end_at_total(self, two_factor):
        with pytest.raises(StructuralMismatchError, match="non-decreasing"):
            dataclasses.replace(two_factor, Gp=np.array([0, 2, 4]))

    def test_offsets_length(self, two_factor):
        with pytest.raises(StructuralMismatchError, match="length 3"):
            dataclasses.replace(two_factor, Gp=np.array([0, 5]))

    def test_block_rows_must_sum_to_zt(self, two_factor):
        with pytest.raises(StructuralMismatchError, match="sum to"):
            dataclasses.replace(two_factor, Zt=two_factor.Zt[:4, :])

    def test_zt_must_equal_stacked_blocks(self, two_factor):
        bogus = sp.csr_array(np.full(two_factor.Zt.shape, 7.0))
        with pytest.raises(StructuralMismatchError, match="row concatenation") as exc:
            dataclasses.replace(two_factor, Zt=bogus)
        assert exc.value.actual > 0

    def test_zt_rows_in_wrong_order(self, two_factor):
        swapped = sp.csr_array(two_factor.Zt.toarray()[[1, 0, 2, 3, 4]])
        with pytest.raises(StructuralMismatchError, match="row concatenation"):
            dataclasses.replace(two_factor, Zt=swapped)

    def test_observation_columns_must_agree(self, two_factor):
        Ztlist = (two_factor.Ztlist[0], two_factor.Ztlist[1][:, :5])
        with pytest.raises(StructuralMismatchError, match="observation") as exc:
            dataclasses.replace(two_factor, Ztlist=Ztlist)
        assert exc.value.term == "classroom"
        assert exc.value.expected == 6
        assert exc.value.actual == 5

    def test_lind_length(self, two_factor):
        with pytest.raises(StructuralMismatchError, match="Lind has 4"):
            dataclasses.replace(two_factor, Lind=np.array([0, 0, 1, 1]))

    def test_lind_must_stay_in_term(self, two_factor):
        with pytest.raises(StructuralMismatchError, match="'school'"):
            dataclasses.replace(two_factor, Lind=np.array([0, 1, 1, 1, 1]))

    def test_lambda_off_block_entry(self, two_factor):
        dense = np.eye(5)
        dense[3, 1] = 0.5  # row in "classroom", column in "school"
        with pytest.raises(StructuralMismatchError, match="block-diagonal"):
            dataclasses.replace(two_factor, Lambda=sp.csc_array(dense), Lind=np.array([0, 0, 0, 1, 1, 1]))

    def test_lambda_upper_entry(self, two_factor):
        dense = np.eye(5)
        dense[2, 3] = 0.5
        with pytest.raises(StructuralMismatchError, match="lower-triangular"):
            dataclasses.replace(two_factor, Lambda=sp.csc_array(dense), Lind=np.array([0, 0, 1, 1, 1, 1]))

    def test_theta_length(self, two_factor):
        with pytest.raises(StructuralMismatchError, match="theta and lower"):
            dataclasses.replace(two_factor, theta=np.ones(3))

    def test_levels_times_effects(self, two_factor):
        flist = (two_factor.flist[0], pd.Categorical([0, 1, 0, 1, 0, 1]))
        with pytest.raises(StructuralMismatchError, match="2 levels"):
            dataclasses.replace(two_factor, flist=flist)

    def test_duplicate_names(self, two_factor):
        with pytest.raises(StructuralMismatchError, match="unique"):
            dataclasses.replace(two_factor, term_names=("a", "a"))

    def test_parallel_tuple_lengths(self, two_factor):
        with pytest.raises(StructuralMismatchError, match="cnms has 1"):
            dataclasses.replace(two_factor, cnms=(("(Intercept)",),))


# ------------------------------------------------------------------ #
# Block-diagonal helpers
# ------------------------------------------------------------------ #


class TestBlockHelpers:
    def test_round_trip_keeps_stored_zeros(self):
        a = sp.csc_array((np.array([1.0, 0.0, 2.0]), np.array([0, 1, 1]), np.array([0, 2, 3])), shape=(2, 2))
        b = sp.csc_array(np.array([[3.0]]))
        M = _block_diag_csc([a, b])
        assert M.indptr[-1] == 4
        np.testing.assert_array_equal(M.toarray(), [[1, 0, 0], [0, 2, 0], [0, 0, 3]])
        back = _split_block_diag(M, np.array([0, 2, 3]))
        assert back[0].indptr[-1] == 3
        np.testing.assert_array_equal(back[0].toarray(), a.toarray())
        np.testing.assert_array_equal(back[1].toarray(), [[3.0]])

    def test_non_square_block(self):
        with pytest.raises(ValueError, match="square"):
            _block_diag_csc([sp.csc_array(np.ones((2, 3)))])
