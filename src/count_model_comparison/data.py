"""Survey observations and the immutable dataset handle.

A survey table has one row per observation::

    species | site | year | month | day | latitude | longitude | count

Counts are non-negative integers.  A missing count is allowed (the
visit happened but nothing was recorded) and is carried through as
``NaN`` and never imputed.  Each model later drops the rows it
cannot use (see :mod:`count_model_comparison.design`).

:class:`SurveyData` wraps a private copy of the table so the same
dataset can be passed to every fit without any of them mutating it.
:func:`aggregate_counts` derives the series the models are fitted to:
counts summed by species, site and a time bucket.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import numpy as np
import pandas as pd

from ._compat import DataFrameLike, _ensure_pandas_df

logger = logging.getLogger(__name__)

OBSERVATION_COLUMNS: tuple[str, ...] = (
    "species",
    "site",
    "year",
    "month",
    "day",
    "latitude",
    "longitude",
    "count",
)

# Columns that identify the time bucket, by granularity.
_BUCKET_COLUMNS: dict[str, tuple[str, ...]] = {
    "year": ("year",),
    "month": ("year", "month"),
    "day": ("year", "month", "day"),
}


class SurveyData:
    """Read-only handle over a survey table.

    The wrapped frame is copied on construction and every accessor
    returns a fresh copy, so callers cannot mutate the shared data.

    Args:
        frame: pandas (or Polars) DataFrame.
        name: Optional label shown in reports.

    Raises:
        ValueError: If *frame* has no rows.
    """

    __slots__ = ("_frame", "_name")

    def __init__(self, frame: DataFrameLike, *, name: str | None = None) -> None:
        df = _ensure_pandas_df(frame, name="frame")
        if len(df) == 0:
            raise ValueError("SurveyData requires at least one row.")
        self._frame = df.reset_index(drop=True).copy()
        self._name = name

    @property
    def name(self) -> str | None:
        return self._name

    @property
    def columns(self) -> list[str]:
        return list(self._frame.columns)

    @property
    def n_rows(self) -> int:
        return len(self._frame)

    def __len__(self) -> int:
        return len(self._frame)

    def __contains__(self, column: object) -> bool:
        return column in self._frame.columns

    def __repr__(self) -> str:
        label = f"{self._name!r}, " if self._name else ""
        return f"SurveyData({label}n_rows={self.n_rows}, columns={self.columns})"

    def to_pandas(self) -> pd.DataFrame:
        """Return a copy of the underlying table."""
        return self._frame.copy()

    def subset(self, columns: Sequence[str]) -> pd.DataFrame:
        """Return a copy of the named columns, in the given order.

        Raises:
            KeyError: If any column is absent.
        """
        missing = [c for c in columns if c not in self._frame.columns]
        if missing:
            raise KeyError(f"Columns not in dataset: {missing}")
        return self._frame.loc[:, list(dict.fromkeys(columns))].copy()


def validate_observations(
    frame: DataFrameLike,
    *,
    required: Sequence[str] = OBSERVATION_COLUMNS,
    count: str = "count",
) -> pd.DataFrame:
    """Check a raw observation table and return it as pandas.

    Missing counts are accepted; present counts must be non-negative
    whole numbers.

    Raises:
        ValueError: If a required column is absent, the count column is
            non-numeric, or a count is negative or fractional.
    """
    df = _ensure_pandas_df(frame, name="observations")
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"Observation table is missing columns: {missing}")
    if count not in df.columns:
        raise ValueError(f"Observation table has no count column {count!r}.")

    counts = df[count]
    if not pd.api.types.is_numeric_dtype(counts):
        raise ValueError(f"Column {count!r} must be numeric.")
    present = counts.dropna().to_numpy(dtype=float)
    if np.any(present < 0):
        raise ValueError(f"Column {count!r} contains negative counts.")
    if not np.allclose(present, np.round(present)):
        raise ValueError(f"Column {count!r} contains non-integer counts.")
    return df


def aggregate_counts(
    observations: DataFrameLike,
    *,
    bucket: str = "year",
    keys: Sequence[str] = ("species", "site"),
    count: str = "count",
    coordinates: Sequence[str] = ("latitude", "longitude"),
) -> SurveyData:
    """Sum counts by species, site and time bucket.

    Args:
        observations: Raw observation table.
        bucket: ``"year"``, ``"month"`` (year and month) or ``"day"``
            (year, month and day).
        keys: Non-time grouping columns.
        count: Count column to sum.
        coordinates: Columns averaged within each group (site location).
            Absent columns are skipped.

    Returns:
        A :class:`SurveyData` with one row per group: the grouping
        columns, the averaged coordinates, the summed count, and
        ``n_visits`` (number of observations in the group).  A group
        whose counts are all missing keeps a missing total.

    Raises:
        ValueError: On an unknown *bucket* or invalid observations.
    """
    if bucket not in _BUCKET_COLUMNS:
        raise ValueError(
            f"Unknown bucket {bucket!r}. Choose from: {sorted(_BUCKET_COLUMNS)}"
        )
    group_cols = [*keys, *_BUCKET_COLUMNS[bucket]]
    df = validate_observations(observations, required=group_cols, count=count)

    coord_cols = [c for c in coordinates if c in df.columns]
    grouped = df.groupby(group_cols, sort=True, dropna=False, observed=True)
    # min_count=1 keeps an all-missing group missing instead of 0.
    out = grouped[count].sum(min_count=1).to_frame(count)
    out["n_visits"] = grouped[count].size()
    for col in coord_cols:
        out[col] = grouped[col].mean()
    out = out.reset_index()
    out = out[[*group_cols, *coord_cols, count, "n_visits"]]

    logger.debug(
        "Aggregated %d observations into %d %s-level rows.",
        len(df),
        len(out),
        bucket,
    )
    return SurveyData(out, name=f"{count} by {', '.join(group_cols)}")
