"""Tests for Polars DataFrame input compatibility."""

import numpy as np
import pandas as pd
import pytest

from phyloglmm import Tree, build_random_effects
from phyloglmm._compat import _as_label_array, _ensure_pandas_df, _is_dataframe_like

# Import polars; skip all tests in this module if not installed.
pl = pytest.importorskip("polars")


class TestEnsurePandasDf:
    """Tests for the _ensure_pandas_df converter."""

    def test_pandas_passthrough(self):
        df = pd.DataFrame({"a": [1, 2, 3]})
        result = _ensure_pandas_df(df)
        assert result is df  # exact same object, no copy

    def test_polars_converted(self):
        pl_df = pl.DataFrame({"a": [1, 2, 3]})
        result = _ensure_pandas_df(pl_df)
        assert isinstance(result, pd.DataFrame)
        assert result["a"].tolist() == [1, 2, 3]

    def test_polars_lazyframe_collected_and_converted(self):
        lf = pl.DataFrame({"a": [1, 2, 3]}).lazy()
        result = _ensure_pandas_df(lf)
        assert isinstance(result, pd.DataFrame)
        assert result["a"].tolist() == [1, 2, 3]

    def test_rejects_invalid_type(self):
        with pytest.raises(TypeError, match="must be a pandas DataFrame"):
            _ensure_pandas_df([1, 2, 3])

    def test_error_includes_name(self):
        with pytest.raises(TypeError, match="'frame'"):
            _ensure_pandas_df({"a": 1}, name="frame")

    def test_is_dataframe_like(self):
        assert _is_dataframe_like(pl.DataFrame({"a": [1]}))
        assert _is_dataframe_like(pd.DataFrame({"a": [1]}))
        assert not _is_dataframe_like({"a": [1]})
        assert not _is_dataframe_like(np.zeros(3))


class TestPolarsEndToEnd:
    """Verify that public API functions accept Polars DataFrames."""

    EDGES = {
        "parent": [5, 6, 6, 5, 7, 7],
        "child": [6, 1, 2, 7, 3, 4],
        "length": [1.0, 0.5, 0.25, 2.0, 0.75, 1.5],
    }

    def test_tree_from_polars_frame(self):
        t_pl = Tree.from_frame(pl.DataFrame(self.EDGES))
        t_pd = Tree.from_frame(pd.DataFrame(self.EDGES))
        assert t_pl == t_pd
        assert t_pl.n_tips == 4

    def test_tree_from_lazyframe(self):
        t = Tree.from_frame(pl.DataFrame(self.EDGES).lazy())
        assert t.root == 5

    def test_random_effects_from_polars_groups(self):
        groups = pl.DataFrame({"school": ["s1", "s1", "s2", "s2"], "class": [0, 1, 2, 0]})
        re = build_random_effects(groups)
        assert re.term_names == ("school", "class")
        assert re.effect_counts.tolist() == [2, 3]

    def test_polars_covariates_name_slopes(self):
        groups = {"g": (np.array([0, 0, 1, 1]), [0])}
        X = pl.DataFrame({"dose": [1.0, 2.0, 3.0, 4.0]})
        re = build_random_effects(groups, X=X)
        assert re.cnms[0] == ("(Intercept)", "dose")

    def test_results_match_pandas(self):
        """Polars and pandas inputs should produce identical structures."""
        data = {"a": [0, 1, 1, 2], "b": ["x", "y", "x", "y"]}
        re_pl = build_random_effects(pl.DataFrame(data))
        re_pd = build_random_effects(pd.DataFrame(data))
        np.testing.assert_array_equal(re_pl.Zt.toarray(), re_pd.Zt.toarray())
        assert re_pl.Gp.tolist() == re_pd.Gp.tolist()

    def test_polars_series_as_dict_values(self):
        groups = {"g": pl.Series(["b", "a", "b"]), "h": pd.Series([1, 1, 2])}
        re = build_random_effects(groups)
        assert list(re.flist[0].categories) == ["a", "b"]
        assert re.effect_counts.tolist() == [2, 2]


class TestAsLabelArray:
    """Tests for the _as_label_array column converter."""

    def test_single_column_frame(self):
        labels = _as_label_array(pl.DataFrame({"sp": ["x", "y"]}))
        assert labels.tolist() == ["x", "y"]

    def test_multi_column_frame_rejected(self):
        with pytest.raises(ValueError, match="single column"):
            _as_label_array(pd.DataFrame({"a": [1], "b": [2]}), name="species")

    def test_two_dimensional_rejected(self):
        with pytest.raises(ValueError, match="'species' must be a 1-D"):
            _as_label_array(np.zeros((2, 2)), name="species")
