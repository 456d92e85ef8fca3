"""Boundary conversion for tabular and column inputs.

Edge tables and grouping factors arrive as pandas objects, Polars
objects, or plain sequences.  Everything past the public entry points
works on pandas DataFrames and 1-D NumPy arrays, so conversion happens
exactly once, here.

Polars is optional.  Without it, only pandas and array inputs are
recognised and the error messages say so.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeAlias

import numpy as np
import pandas as pd

from ._typing import ArrayLike

if TYPE_CHECKING:
    import polars as pl

    DataFrameLike: TypeAlias = pd.DataFrame | pl.DataFrame | pl.LazyFrame
else:
    DataFrameLike: TypeAlias = pd.DataFrame

try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _is_dataframe_like(obj: Any) -> bool:
    """``True`` for a pandas DataFrame or a Polars DataFrame/LazyFrame."""
    if isinstance(obj, pd.DataFrame):
        return True
    return _HAS_POLARS and isinstance(obj, (pl.DataFrame, pl.LazyFrame))


def _ensure_pandas_df(obj: DataFrameLike, *, name: str = "input") -> pd.DataFrame:
    """Return *obj* as a pandas DataFrame.

    pandas input is returned unchanged (no copy); a Polars LazyFrame is
    collected first.

    Raises:
        TypeError: If *obj* is not a DataFrame of either library.
    """
    if isinstance(obj, pd.DataFrame):
        return obj
    if _HAS_POLARS:
        if isinstance(obj, pl.LazyFrame):
            obj = obj.collect()
        if isinstance(obj, pl.DataFrame):
            return obj.to_pandas()

    accepted = "a pandas DataFrame" + (" or Polars DataFrame/LazyFrame" if _HAS_POLARS else "")
    msg = f"'{name}' must be {accepted}, got {type(obj).__name__}."
    raise TypeError(msg)


def _as_label_array(obj: ArrayLike | Any, *, name: str = "labels") -> np.ndarray:
    """Return a grouping column as a 1-D NumPy array.

    Accepts arrays, sequences, pandas Series and Polars Series.  A
    single-column DataFrame is taken as its only column.

    Raises:
        ValueError: If the result is not one-dimensional.
    """
    if _HAS_POLARS and isinstance(obj, pl.Series):
        obj = obj.to_numpy()
    elif _is_dataframe_like(obj):
        df = _ensure_pandas_df(obj, name=name)
        if df.shape[1] != 1:
            msg = f"'{name}' must be a single column, got {df.shape[1]} columns."
            raise ValueError(msg)
        obj = df.iloc[:, 0]
    if isinstance(obj, pd.Series):
        obj = obj.to_numpy()
    labels = np.asarray(obj)
    if labels.ndim != 1:
        msg = f"'{name}' must be a 1-D array, got shape {labels.shape}."
        raise ValueError(msg)
    return labels
