"""Shared type aliases for the phyloglmm package."""

import numpy as np
import pandas as pd
import scipy.sparse as sp

# Array-like inputs accepted by the public API.
ArrayLike = np.ndarray | pd.DataFrame | pd.Series

# Matrices accepted wherever a Z matrix is expected.
MatrixLike = np.ndarray | sp.sparray | sp.spmatrix
