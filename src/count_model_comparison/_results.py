"""Typed result objects for model fits, comparisons and diagnostics.

Frozen dataclasses that provide:

* **Attribute access** — ``fit.aic``, ``result.selected``, etc.
* **Dict-like access** — ``fit["deviance"]``, ``fit.get("key")``,
  ``"key" in fit`` for consumers that prefer bracket syntax.
* **Serialisation** — ``.to_dict()`` returns a plain ``dict[str, Any]``
  with all NumPy types converted to native Python; :class:`FitResult`
  also round-trips through ``from_dict`` / JSON without losing a bit
  of any estimate.

All result types are frozen: a fit is a snapshot of a completed
estimation and is only ever read by the ranking and diagnostic code.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field, fields
from typing import Any, ClassVar

import numpy as np

from .candidates import CandidateModel

# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types.

    Handles nested dicts, lists, np.ndarray, np.integer, and
    np.floating so that :meth:`to_dict` returns a fully
    JSON-serialisable structure.
    """
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_numpy_to_python(item) for item in obj]
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports three access patterns:

    1. ``result["key"]``      — raises ``KeyError`` on miss
    2. ``result.get(key, d)`` — returns *d* on miss (default ``None``)
    3. ``"key" in result``    — membership test

    Subclasses may override ``_SERIALIZERS`` to register conversion
    functions for non-primitive fields (e.g. ``CandidateModel`` →
    ``dict``).  Serialized values still pass through
    :func:`_numpy_to_python`.
    """

    _SERIALIZERS: ClassVar[dict[str, Any]] = {}

    def __getitem__(self, key: str) -> Any:
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain, JSON-serialisable dictionary."""
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            val = getattr(self, f.name)
            if f.name in self._SERIALIZERS and val is not None:
                val = self._SERIALIZERS[f.name](val)
            result[f.name] = _numpy_to_python(val)
        return result


def _array_or_none(value: Any) -> np.ndarray | None:
    return None if value is None else np.asarray(value, dtype=float)


# ------------------------------------------------------------------ #
# FitResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FitResult(_DictAccessMixin):
    """Estimates and fit statistics for one successfully fitted candidate."""

    # ---- Identity --------------------------------------------------
    candidate: str
    """Name of the fitted :class:`CandidateModel`."""

    family: str
    """``"poisson"``, ``"quasi_poisson"`` or ``"negative_binomial"``."""

    estimator: str
    """``"glm"``, ``"glmm"`` or ``"mean_dispersion"``."""

    # ---- Mean model ------------------------------------------------
    coef_names: list[str]
    params: np.ndarray
    """Fixed-effect estimates, shape ``(p,)``."""

    bse: np.ndarray
    """Standard errors, dispersion-scaled for quasi fits."""

    # ---- Fit statistics --------------------------------------------
    log_likelihood: float | None
    """Maximised log-likelihood; ``None`` under quasi-likelihood."""

    deviance: float
    pearson_chi2: float
    dispersion: float
    """Pearson χ² / residual df.  Values ≫ 1 signal overdispersion."""

    n_observations: int
    n_params: int
    """Estimated parameters counted by AIC (β, α, τ², γ)."""

    df_resid: float
    converged: bool
    n_iter: int | None = None

    # ---- Family / structure extras ---------------------------------
    alpha: float | None = None
    """NB2 dispersion α in Var(Y) = μ + αμ² (constant-dispersion NB)."""

    dispersion_names: list[str] = field(default_factory=list)
    dispersion_params: np.ndarray | None = None
    dispersion_bse: np.ndarray | None = None
    observation_dispersion: np.ndarray | None = None
    """Per-observation α_i (NB) or φ_i (quasi) from a dispersion sub-model."""

    random_effect_variance: float | None = None
    """Random-intercept variance τ² (GLMM only)."""

    random_effects: np.ndarray | None = None
    """Predicted random intercepts, one per group (GLMM only)."""

    fitted_values: np.ndarray = field(default_factory=lambda: np.zeros(0))
    """Fitted means μ̂ (conditional on predicted random effects)."""

    _ARRAY_FIELDS: ClassVar[tuple[str, ...]] = (
        "params",
        "bse",
        "dispersion_params",
        "dispersion_bse",
        "observation_dispersion",
        "random_effects",
        "fitted_values",
    )

    # ---- Derived criteria ------------------------------------------

    @property
    def likelihood_based(self) -> bool:
        return self.log_likelihood is not None

    @property
    def aic(self) -> float | None:
        """AIC = 2k − 2·log L, or ``None`` for quasi-likelihood fits."""
        if self.log_likelihood is None:
            return None
        return 2.0 * self.n_params - 2.0 * self.log_likelihood

    @property
    def bic(self) -> float | None:
        """BIC = log(n)·k − 2·log L, or ``None`` for quasi-likelihood fits."""
        if self.log_likelihood is None:
            return None
        return math.log(self.n_observations) * self.n_params - 2.0 * self.log_likelihood

    def coefficients(self) -> dict[str, tuple[float, float]]:
        """Map coefficient name → ``(estimate, standard error)``."""
        return {
            name: (float(b), float(s))
            for name, b, s in zip(self.coef_names, self.params, self.bse, strict=True)
        }

    # ---- Round-trip ------------------------------------------------

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FitResult:
        """Rebuild a :class:`FitResult` from :meth:`to_dict` output."""
        kwargs = dict(data)
        for name in cls._ARRAY_FIELDS:
            if name in kwargs:
                kwargs[name] = _array_or_none(kwargs[name])
        kwargs["coef_names"] = list(kwargs["coef_names"])
        kwargs["dispersion_names"] = list(kwargs.get("dispersion_names", []))
        return cls(**kwargs)

    def to_json(self, **kwargs: Any) -> str:
        return json.dumps(self.to_dict(), **kwargs)

    @classmethod
    def from_json(cls, text: str) -> FitResult:
        return cls.from_dict(json.loads(text))


# ------------------------------------------------------------------ #
# Failures and tests
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class FitFailure(_DictAccessMixin):
    """Why a candidate could not be fitted."""

    candidate: str
    reason: str
    error_type: str


@dataclass(frozen=True)
class NestedTestResult(_DictAccessMixin):
    """Comparison of a reduced model against a model that nests it.

    ``test`` is ``"lrt"`` (χ² on the deviance/log-likelihood
    difference) or ``"f"`` (dispersion-scaled deviance difference).
    The decision to drop a term is left to the reader.
    """

    reduced: str
    full: str
    test: str
    statistic: float
    df: int
    p_value: float
    df_resid: float | None = None
    dispersion: float | None = None
    term: str | None = None
    """Dropped term, for :func:`~count_model_comparison.drop_term_tests`."""

    def significant(self, level: float = 0.05) -> bool:
        return self.p_value < level


# ------------------------------------------------------------------ #
# Comparison
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class RankedCandidate(_DictAccessMixin):
    """One row of the ranked comparison table.

    ``criterion`` is one of

    * ``"aic"`` for likelihood-based fits;
    * ``"dispersion"`` for a quasi fit ranked just ahead of an
      overdispersed Poisson fit with the same mean model (value: the
      quasi fit's Pearson dispersion p-value);
    * ``"f_test"`` for the other quasi fits (value: p-value against the
      quasi reference, or ``None`` for the reference itself);
    * ``None`` for failures.

    Every fitted row also carries the Pearson dispersion diagnostic:
    ``dispersion_p_value`` is the upper-tail χ²(df_resid) probability
    of the Pearson statistic, and ``overdispersed`` is ``True`` when it
    falls below the comparison's significance level.
    """

    rank: int | None
    spec: CandidateModel
    fit: FitResult | None
    failure: FitFailure | None
    criterion: str | None
    criterion_value: float | None
    delta_aic: float | None = None
    akaike_weight: float | None = None
    dispersion_p_value: float | None = None
    overdispersed: bool | None = None

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "spec": lambda s: s.to_dict(),
        "fit": lambda f: f.to_dict(),
        "failure": lambda f: f.to_dict(),
    }

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def succeeded(self) -> bool:
        return self.fit is not None


@dataclass(frozen=True)
class ComparisonResult(_DictAccessMixin):
    """Output of :func:`~count_model_comparison.compare_models`."""

    response: str
    ranking: list[RankedCandidate]
    selected: str | None
    """Name of the selected candidate, ``None`` if every fit failed."""

    quasi_reference: str | None = None
    quasi_tests: list[NestedTestResult] = field(default_factory=list)

    _SERIALIZERS: ClassVar[dict[str, Any]] = {
        "ranking": lambda rows: [r.to_dict() for r in rows],
        "quasi_tests": lambda rows: [t.to_dict() for t in rows],
    }

    def entry(self, name: str) -> RankedCandidate:
        """Return the ranked row of candidate *name*.

        Raises:
            KeyError: If no candidate has that name.
        """
        for row in self.ranking:
            if row.name == name:
                return row
        raise KeyError(f"No candidate named {name!r} in this comparison.")

    @property
    def selected_fit(self) -> FitResult | None:
        if self.selected is None:
            return None
        return self.entry(self.selected).fit

    @property
    def failures(self) -> list[FitFailure]:
        return [r.failure for r in self.ranking if r.failure is not None]

    def to_json(self, **kwargs: Any) -> str:
        return json.dumps(self.to_dict(), **kwargs)


# ------------------------------------------------------------------ #
# Goodness-of-fit envelopes
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class EnvelopeResult(_DictAccessMixin):
    """Simulated reference band for a residual plot.

    Arrays are indexed by order statistic: ``theoretical`` holds the
    plotting positions (half-normal or normal quantiles), ``observed``
    the sorted observed residual statistic, and ``lower`` / ``median``
    / ``upper`` the simulated band.
    """

    kind: str
    """``"half_normal"`` or ``"worm"``."""

    candidate: str
    residual_type: str
    theoretical: np.ndarray
    observed: np.ndarray
    lower: np.ndarray
    median: np.ndarray
    upper: np.ndarray
    level: float
    n_simulations: int
    n_failed: int
    n_outside: int
    fraction_outside: float
    tolerance: float
    misfit: bool
