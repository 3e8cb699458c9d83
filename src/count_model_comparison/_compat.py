"""Input conversion for survey tables.

Survey tables are handled internally as pandas DataFrames with plain
NumPy dtypes.  Two kinds of input need converting at the boundary:

* a ``polars.DataFrame`` or ``polars.LazyFrame`` (Polars is an
  optional extra, detected at import time);
* pandas nullable extension dtypes (``Int64``, ``Float64``,
  ``boolean``), which readers produce for count columns with gaps.
  Nullable numbers become ``float64`` with ``NaN`` so the per-model
  missing-row logic sees one missing marker.

The aggregation and design-matrix code only ever sees the result.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, TypeAlias

import numpy as np
import pandas as pd

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


def _plain_dtypes(df: pd.DataFrame) -> pd.DataFrame:
    """Replace nullable numeric columns with float64 / NaN."""
    nullable = [
        col
        for col in df.columns
        if isinstance(df[col].dtype, pd.api.extensions.ExtensionDtype)
        and pd.api.types.is_numeric_dtype(df[col])
        and not pd.api.types.is_bool_dtype(df[col])
    ]
    if not nullable:
        return df
    out = df.copy()
    for col in nullable:
        out[col] = out[col].to_numpy(dtype=float, na_value=np.nan)
    return out


def _ensure_pandas_df(obj: DataFrameLike, *, name: str = "input") -> pd.DataFrame:
    """Return *obj* as a pandas DataFrame with plain dtypes.

    A pandas frame without nullable numeric columns is returned as-is
    (same object); callers that keep it copy it themselves.

    Raises:
        TypeError: If *obj* is not a pandas or Polars table.
    """
    if isinstance(obj, pd.DataFrame):
        return _plain_dtypes(obj)

    if _HAS_POLARS:
        if isinstance(obj, pl.LazyFrame):
            obj = obj.collect()
        if isinstance(obj, pl.DataFrame):
            return _plain_dtypes(obj.to_pandas())

    raise TypeError(
        f"'{name}' must be a pandas DataFrame"
        + (" or Polars DataFrame/LazyFrame" if _HAS_POLARS else "")
        + f", got {type(obj).__name__}."
    )
