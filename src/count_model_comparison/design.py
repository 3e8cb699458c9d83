"""Model frames and design matrices.

Every candidate reads its own set of columns, so the rows with a
missing response, covariate, grouping label or offset are dropped
**per model**.  A missing covariate in one candidate never removes
rows from another, and nothing is imputed.

Term expansion
~~~~~~~~~~~~~~
Terms are handed to :func:`patsy.dmatrix`, so coding follows the
statsmodels formula conventions:

* Numeric column  → one column.
* Categorical column (object, category, bool, string) → ``C(column)``
  treatment dummies, first level as reference, named ``term[level]``.
* ``"a:b"``       → a patsy interaction term.  Without the ``a`` and
  ``b`` main effects the factors are coded full-rank, so ``a:b``
  alone is a cell-means model.

Patsy groups columns by the numeric factors they contain, so
categorical-only terms come before numeric ones in ``coef_names``.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, replace

import numpy as np
import pandas as pd
import patsy

from .candidates import CandidateModel
from .data import SurveyData

logger = logging.getLogger(__name__)

# One piece of a patsy column name: ``C(v0)[T.level]``, ``C(v0)[level]`` or ``v0``.
_PIECE = re.compile(r"^(?:C\((v\d+)\)|(v\d+))(?:\[(?:T\.)?(.*)\])?$")
_PIECE_SPLIT = re.compile(r":(?=(?:C\()?v\d+(?:\)|\[|:|$))")


@dataclass(frozen=True)
class ModelDesign:
    """Arrays one estimator needs, built from a candidate and a dataset.

    Attributes:
        y: Response counts ``(n,)``.
        X: Mean design matrix ``(n, p)`` including the intercept column.
        coef_names: Column labels of *X*.
        offset: Linear-predictor offset ``(n,)`` or ``None``.
        groups: Integer group codes ``(n,)`` for the random intercept.
        group_labels: Original labels, indexed by code.
        Z: Dispersion design ``(n, q)`` (with intercept) or ``None``.
        dispersion_names: Column labels of *Z*.
        row_index: Dataset rows used, in order.
    """

    y: np.ndarray
    X: np.ndarray
    coef_names: tuple[str, ...]
    offset: np.ndarray | None = None
    groups: np.ndarray | None = None
    group_labels: tuple[object, ...] = ()
    Z: np.ndarray | None = None
    dispersion_names: tuple[str, ...] = ()
    row_index: tuple[int, ...] = ()

    @property
    def n_obs(self) -> int:
        return len(self.y)

    @property
    def n_groups(self) -> int:
        return len(self.group_labels)

    @property
    def eta_offset(self) -> np.ndarray:
        """Offset vector, zeros when the model has none."""
        if self.offset is None:
            return np.zeros(self.n_obs)
        return self.offset

    def with_response(self, y: np.ndarray) -> ModelDesign:
        """Copy with a replacement response (used for simulation refits)."""
        y = np.asarray(y, dtype=float)
        if y.shape != self.y.shape:
            raise ValueError(f"Response shape {y.shape} != design shape {self.y.shape}.")
        return replace(self, y=y)


def _is_categorical(series: pd.Series) -> bool:
    return bool(
        isinstance(series.dtype, pd.CategoricalDtype)
        or pd.api.types.is_object_dtype(series)
        or pd.api.types.is_bool_dtype(series)
        or pd.api.types.is_string_dtype(series)
    )


def _patsy_factor(series: pd.Series) -> pd.Categorical | np.ndarray:
    if not _is_categorical(series):
        return series.to_numpy(dtype=float)
    if isinstance(series.dtype, pd.CategoricalDtype):
        return series.cat.remove_unused_categories().array
    return pd.Categorical(series.astype(str))


def _column_label(name: str, labels: dict[str, str]) -> str:
    """Rewrite a patsy column name with the dataset's column names."""
    if name == "Intercept":
        return name
    pieces = []
    for piece in _PIECE_SPLIT.split(name):
        match = _PIECE.match(piece)
        if match is None:
            pieces.append(piece)
            continue
        categorical, numeric, level = match.groups()
        column = labels[categorical or numeric]
        pieces.append(column if level is None else f"{column}[{level}]")
    return ":".join(pieces)


def build_matrix(
    frame: pd.DataFrame,
    terms: Sequence[str],
    *,
    fit_intercept: bool = True,
) -> tuple[np.ndarray, tuple[str, ...]]:
    """Build a design matrix from *terms* over a complete-case frame.

    Columns are bound to positional patsy names (``v0``, ``v1``, ...)
    so any dataset column name can appear in a term.
    """
    if not terms:
        if not fit_intercept:
            return np.empty((len(frame), 0)), ()
        # patsy cannot size an intercept-only matrix without a variable.
        return np.ones((len(frame), 1)), ("Intercept",)

    columns = list(dict.fromkeys(part for term in terms for part in term.split(":")))
    env: dict[str, object] = {}
    codes: dict[str, str] = {}
    labels: dict[str, str] = {}
    for i, column in enumerate(columns):
        var = f"v{i}"
        env[var] = _patsy_factor(frame[column])
        codes[column] = f"C({var})" if _is_categorical(frame[column]) else var
        labels[var] = column

    rhs = [":".join(codes[part] for part in term.split(":")) for term in terms]
    formula = " + ".join(["1" if fit_intercept else "0", *rhs])
    matrix = patsy.dmatrix(formula, env, NA_action="raise", return_type="matrix")
    names = tuple(_column_label(c, labels) for c in matrix.design_info.column_names)
    return np.asarray(matrix, dtype=float), names


def complete_rows(data: SurveyData, columns: Sequence[str]) -> pd.DataFrame:
    """Return the named columns restricted to rows with no missing value."""
    frame = data.subset(columns)
    complete = frame.dropna()
    n_dropped = len(frame) - len(complete)
    if n_dropped:
        logger.debug(
            "Excluded %d of %d rows with missing values in %s.",
            n_dropped,
            len(frame),
            list(columns),
        )
    return complete


def build_design(
    data: SurveyData,
    candidate: CandidateModel,
    response: str,
    *,
    rows: pd.Index | None = None,
) -> ModelDesign:
    """Build the :class:`ModelDesign` for *candidate* on *data*.

    Args:
        data: Dataset handle.
        candidate: Model specification.
        response: Count column.
        rows: Restrict to these dataset rows (they must be complete for
            *candidate*).  Used to fit nested models on a common sample.

    Raises:
        KeyError: If a referenced column is absent.
        ValueError: If no complete rows remain or the response is not a
            non-negative integer count.
    """
    frame = complete_rows(data, candidate.required_columns(response))
    if rows is not None:
        frame = frame.loc[frame.index.intersection(rows)]
    if len(frame) == 0:
        raise ValueError(
            f"Candidate {candidate.name!r} has no complete rows for response "
            f"{response!r}."
        )

    y = frame[response].to_numpy(dtype=float)
    if np.any(y < 0) or not np.allclose(y, np.round(y)):
        raise ValueError(f"Response {response!r} must hold non-negative integer counts.")

    X, coef_names = build_matrix(
        frame, candidate.terms, fit_intercept=candidate.fit_intercept
    )

    offset = None
    if candidate.offset is not None:
        offset = frame[candidate.offset].to_numpy(dtype=float)

    groups = None
    group_labels: tuple[object, ...] = ()
    if candidate.random_effects is not None:
        labels, codes = np.unique(
            frame[candidate.random_effects].astype(str).to_numpy(), return_inverse=True
        )
        groups = codes.astype(np.intp)
        group_labels = tuple(labels.tolist())

    Z = None
    dispersion_names: tuple[str, ...] = ()
    if candidate.dispersion_terms is not None:
        Z, dispersion_names = build_matrix(frame, candidate.dispersion_terms)

    return ModelDesign(
        y=y,
        X=X,
        coef_names=coef_names,
        offset=offset,
        groups=groups,
        group_labels=group_labels,
        Z=Z,
        dispersion_names=dispersion_names,
        row_index=tuple(int(i) for i in frame.index),
    )
