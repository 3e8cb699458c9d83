"""Model comparison driver and nested-model tests.

Ranking rules
~~~~~~~~~~~~~
1. **Likelihood-based fits** (Poisson, negative binomial, their mixed
   and dispersion-model variants) are ranked by AIC, ties broken by
   candidate name.  ΔAIC and Akaike weights are reported alongside.
2. **Quasi-Poisson stand-ins.**  Every fit gets a Pearson dispersion
   test (χ² against χ²(df_resid)).  When a Poisson fit is
   overdispersed and a quasi-Poisson fit shares its mean model and
   rows, the quasi fit is ranked immediately ahead of it, with the
   dispersion p-value as its criterion.
3. **Other quasi-likelihood fits** have no AIC.  They follow the
   likelihood block, ordered by parameter count, then deviance, then
   name.  The quasi *reference* is the quasi fit with the fewest
   parameters (ties by name); every quasi fit that nests it gets a
   dispersion-adjusted F-test against it, and that p-value is its
   criterion value.
4. **Failures** come last, by name, with no rank.

Selection is the top-ranked fit.  When that is a quasi stand-in, or
when no likelihood fit succeeded, the quasi walk decides instead:
starting from the stand-in (or the reference), it moves to a larger
quasi model only if that model nests the current choice and improves
on it significantly by F-test.

Every sort key ends with the candidate name, so the ranking does not
depend on the order in which candidates are submitted.

Nested tests
~~~~~~~~~~~~
* LRT:  G² = max(0, 2·(ℓ_full − ℓ_reduced)) ~ χ²(k_full − k_reduced)
* F:    F  = ((D_reduced − D_full)/df) / φ̂_full ~ F(df, n − k_full)

``drop_term_tests`` drops each fixed-effect term from the full model
*independently* (never sequentially) and tests each reduction against
the full model.  Terms contained in a retained interaction are not
dropped.  Results are reported; nothing is removed automatically.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats

from ._config import get_option
from ._results import (
    ComparisonResult,
    FitFailure,
    FitResult,
    NestedTestResult,
    RankedCandidate,
)
from .candidates import CandidateModel, validate_candidates
from .data import SurveyData, validate_observations
from .design import build_design
from .exceptions import IncomparableFamiliesError, NotNestedError
from .fitting import FIT_ERRORS, fit_design, try_fit

logger = logging.getLogger(__name__)

_TESTS = ("auto", "lrt", "f")


# ------------------------------------------------------------------ #
# Pairwise criteria
# ------------------------------------------------------------------ #


def _require_likelihood(fits: Sequence[FitResult], what: str) -> None:
    quasi = sorted(f.candidate for f in fits if not f.likelihood_based)
    if quasi:
        raise IncomparableFamiliesError(
            f"{what} is undefined for quasi-likelihood fits {quasi}; "
            "compare them with an F-test instead."
        )


def _check_same_sample(reduced: FitResult, full: FitResult) -> None:
    if reduced.n_observations != full.n_observations:
        raise ValueError(
            f"Fits {reduced.candidate!r} and {full.candidate!r} use different "
            f"samples ({reduced.n_observations} vs {full.n_observations} rows); "
            "refit them on common rows with nested_test()."
        )


def _check_parameter_gain(reduced: FitResult, full: FitResult) -> int:
    df = full.n_params - reduced.n_params
    if df <= 0:
        raise NotNestedError(
            f"{reduced.candidate!r} ({reduced.n_params} parameters) cannot be "
            f"nested in {full.candidate!r} ({full.n_params} parameters)."
        )
    return df


def compare_aic(fits: Sequence[FitResult]) -> pd.DataFrame:
    """AIC table for likelihood-based fits, best first.

    Returns:
        DataFrame indexed by candidate with columns ``log_likelihood``,
        ``n_params``, ``aic``, ``bic``, ``delta_aic`` and
        ``akaike_weight``, sorted by (AIC, name).

    Raises:
        ValueError: If *fits* is empty.
        IncomparableFamiliesError: If any fit is quasi-likelihood.
    """
    if len(fits) == 0:
        raise ValueError("compare_aic() needs at least one fit.")
    _require_likelihood(fits, "AIC")
    if len({f.n_observations for f in fits}) > 1:
        logger.warning(
            "AIC compared across different sample sizes: %s",
            {f.candidate: f.n_observations for f in fits},
        )

    ordered = sorted(fits, key=lambda f: (f.aic, f.candidate))
    aics = np.array([f.aic for f in ordered], dtype=float)
    delta = aics - aics[0]
    weights = np.exp(-0.5 * delta)
    weights /= weights.sum()
    return pd.DataFrame(
        {
            "log_likelihood": [f.log_likelihood for f in ordered],
            "n_params": [f.n_params for f in ordered],
            "aic": aics,
            "bic": [f.bic for f in ordered],
            "delta_aic": delta,
            "akaike_weight": weights,
        },
        index=pd.Index([f.candidate for f in ordered], name="candidate"),
    )


def lr_test(reduced: FitResult, full: FitResult) -> NestedTestResult:
    """Likelihood-ratio test of *reduced* against *full*.

    Raises:
        IncomparableFamiliesError: If either fit is quasi-likelihood.
        NotNestedError: If *full* does not have more parameters.
        ValueError: If the fits use different rows.
    """
    _require_likelihood([reduced, full], "A likelihood-ratio test")
    df = _check_parameter_gain(reduced, full)
    _check_same_sample(reduced, full)
    assert reduced.log_likelihood is not None and full.log_likelihood is not None
    statistic = max(0.0, 2.0 * (full.log_likelihood - reduced.log_likelihood))
    return NestedTestResult(
        reduced=reduced.candidate,
        full=full.candidate,
        test="lrt",
        statistic=statistic,
        df=df,
        p_value=float(stats.chi2.sf(statistic, df)),
    )


def f_test(reduced: FitResult, full: FitResult) -> NestedTestResult:
    """Dispersion-adjusted F-test of *reduced* against *full*.

    The deviance drop per extra parameter is scaled by the full
    model's Pearson dispersion and referred to F(df, df_resid_full).

    Raises:
        IncomparableFamiliesError: If the fits come from different families.
        NotNestedError: If *full* does not have more parameters.
        ValueError: If the fits use different rows, or the full model
            has no residual degrees of freedom.
    """
    if reduced.family != full.family:
        raise IncomparableFamiliesError(
            f"F-test between different families: {reduced.family!r} vs {full.family!r}."
        )
    df = _check_parameter_gain(reduced, full)
    _check_same_sample(reduced, full)
    if full.df_resid <= 0 or not math.isfinite(full.dispersion) or full.dispersion <= 0:
        raise ValueError(
            f"Fit {full.candidate!r} has no usable dispersion estimate for an F-test."
        )
    statistic = max(0.0, (reduced.deviance - full.deviance) / df) / full.dispersion
    return NestedTestResult(
        reduced=reduced.candidate,
        full=full.candidate,
        test="f",
        statistic=statistic,
        df=df,
        p_value=float(stats.f.sf(statistic, df, full.df_resid)),
        df_resid=full.df_resid,
        dispersion=full.dispersion,
    )


def _run_test(reduced: FitResult, full: FitResult, test: str) -> NestedTestResult:
    if test not in _TESTS:
        raise ValueError(f"test must be one of {list(_TESTS)}, got {test!r}.")
    if test == "auto":
        test = "lrt" if (reduced.likelihood_based and full.likelihood_based) else "f"
    return lr_test(reduced, full) if test == "lrt" else f_test(reduced, full)


# ------------------------------------------------------------------ #
# Nested-model tests with refitting
# ------------------------------------------------------------------ #


def nested_test(
    data: SurveyData,
    reduced: CandidateModel,
    full: CandidateModel,
    response: str,
    *,
    test: str = "auto",
) -> NestedTestResult:
    """Fit two nested candidates on a common sample and test them.

    Both models are fitted on the rows complete for *full*; the
    reduced model reads a subset of those columns, so both see the
    same observations.

    Args:
        test: ``"lrt"``, ``"f"`` or ``"auto"`` (LRT for likelihood
            families, F for quasi-likelihood).

    Raises:
        NotNestedError: If *reduced* is not a strict sub-model of *full*.
        ModelFitError: If either fit fails.
    """
    if not reduced.is_nested_in(full):
        raise NotNestedError(
            f"{reduced.name!r} is not nested in {full.name!r}: the reduced "
            "terms must be a strict subset with identical family, link, "
            "random effect, dispersion model, offset and intercept."
        )
    full_design = build_design(data, full, response)
    full_fit = fit_design(full, full_design)
    reduced_fit = fit_design(
        reduced,
        build_design(data, reduced, response, rows=pd.Index(full_design.row_index)),
    )
    return _run_test(reduced_fit, full_fit, test)


def _marginal_terms(terms: Sequence[str]) -> set[str]:
    """Terms that appear inside a higher-order interaction."""
    contained: set[str] = set()
    for term in terms:
        parts = term.split(":")
        if len(parts) < 2:
            continue
        for other in terms:
            if other != term and set(other.split(":")) < set(parts):
                contained.add(other)
    return contained


def drop_term_tests(
    data: SurveyData,
    full: CandidateModel,
    response: str,
    *,
    test: str = "auto",
) -> list[NestedTestResult]:
    """Test each term of *full* by dropping it alone (``drop1`` style).

    Every reduction starts from the full model; a term found
    non-significant is **not** removed before the next term is tested.

    Returns:
        One :class:`NestedTestResult` per droppable term, in term order.

    Raises:
        ValueError: If *full* has no terms.
        ModelFitError: If the full fit or any reduced fit fails.
    """
    if not full.terms:
        raise ValueError(f"Candidate {full.name!r} has no terms to drop.")
    full_design = build_design(data, full, response)
    full_fit = fit_design(full, full_design)
    rows = pd.Index(full_design.row_index)

    marginal = _marginal_terms(full.terms)
    results: list[NestedTestResult] = []
    for term in full.terms:
        if term in marginal:
            logger.debug("Skipping %r: contained in a retained interaction.", term)
            continue
        reduced = full.without_term(term)
        reduced_fit = fit_design(reduced, build_design(data, reduced, response, rows=rows))
        outcome = _run_test(reduced_fit, full_fit, test)
        results.append(
            NestedTestResult(
                reduced=outcome.reduced,
                full=outcome.full,
                test=outcome.test,
                statistic=outcome.statistic,
                df=outcome.df,
                p_value=outcome.p_value,
                df_resid=outcome.df_resid,
                dispersion=outcome.dispersion,
                term=term,
            )
        )
    return results


# ------------------------------------------------------------------ #
# Driver
# ------------------------------------------------------------------ #


def pearson_dispersion_test(fit: FitResult) -> float | None:
    """Upper-tail p-value of the Pearson statistic against χ²(df_resid).

    Under the fitted variance function Pearson χ² ≈ χ²(n − k), so a
    small p-value means the counts vary more than the model allows.
    For a Poisson or quasi-Poisson fit this is the dispersion test of
    φ̂ = χ²/df_resid against 1.  ``None`` without residual df.
    """
    if fit.df_resid <= 0 or not math.isfinite(fit.pearson_chi2):
        return None
    return float(stats.chi2.sf(fit.pearson_chi2, fit.df_resid))


@dataclass(frozen=True)
class _Entry:
    spec: CandidateModel
    outcome: FitResult | FitFailure

    @property
    def fit(self) -> FitResult | None:
        return self.outcome if isinstance(self.outcome, FitResult) else None


def _quasi_f_test(
    data: SurveyData,
    response: str,
    reduced: _Entry,
    full: _Entry,
) -> NestedTestResult | None:
    """F-test between two fitted quasi candidates, refitting on common rows if needed."""
    assert reduced.fit is not None and full.fit is not None
    try:
        if reduced.fit.n_observations == full.fit.n_observations:
            return f_test(reduced.fit, full.fit)
        return nested_test(data, reduced.spec, full.spec, response, test="f")
    except (*FIT_ERRORS, ValueError) as exc:
        logger.warning(
            "F-test of %r against %r failed: %s", reduced.spec.name, full.spec.name, exc
        )
        return None


def _select_quasi(
    data: SurveyData,
    response: str,
    quasi: list[_Entry],
    level: float,
    start: _Entry | None = None,
) -> str:
    """Forward walk over quasi fits, moving only on a significant F-test."""
    ordered = sorted(quasi, key=lambda e: (e.fit.n_params, e.spec.name))  # type: ignore[union-attr]
    current = ordered[0] if start is None else start
    for entry in ordered:
        if entry is current or not current.spec.is_nested_in(entry.spec):
            continue
        result = _quasi_f_test(data, response, current, entry)
        if result is not None and result.p_value < level:
            logger.debug(
                "Quasi selection: %r -> %r (p = %.4g)",
                current.spec.name,
                entry.spec.name,
                result.p_value,
            )
            current = entry
    return current.spec.name


def _quasi_stand_ins(
    likelihood: list[_Entry],
    quasi: list[_Entry],
    overdispersed: dict[str, bool],
) -> dict[str, _Entry]:
    """Map each overdispersed Poisson fit to the quasi fit that replaces it.

    The quasi fit must share the Poisson fit's mean model and rows; the
    first match by name is used, and each quasi fit stands in once.
    """
    stand_ins: dict[str, _Entry] = {}
    used: set[str] = set()
    for entry in sorted(likelihood, key=lambda e: e.spec.name):
        if entry.spec.family != "poisson" or not overdispersed[entry.spec.name]:
            continue
        for candidate in sorted(quasi, key=lambda e: e.spec.name):
            if (
                candidate.spec.name not in used
                and candidate.spec.family == "quasi_poisson"
                and candidate.spec.shares_mean_model(entry.spec)
                and candidate.fit.n_observations == entry.fit.n_observations  # type: ignore[union-attr]
            ):
                stand_ins[entry.spec.name] = candidate
                used.add(candidate.spec.name)
                break
    return stand_ins


def compare_models(
    data: SurveyData,
    response: str,
    candidates: Sequence[CandidateModel],
    *,
    significance_level: float | None = None,
) -> ComparisonResult:
    """Fit every candidate to *data* and rank them.

    A candidate that fails to fit is recorded with its reason and
    excluded from ranking and selection; the remaining candidates are
    still fitted.

    Args:
        data: Dataset handle (e.g. from :func:`aggregate_counts`).
        response: Count column to model.
        candidates: Candidate specifications with unique names.
        significance_level: Level for the Pearson dispersion flag and
            the quasi-likelihood selection walk.  Defaults to the
            ``significance_level`` option.

    Returns:
        :class:`ComparisonResult` with the ranking and selected name.

    Raises:
        ValueError: On an empty candidate list, duplicate names, or a
            response holding negative or fractional counts.
        KeyError: If *response* is not a column of *data*.
    """
    validate_candidates(candidates)
    if response not in data:
        raise KeyError(f"Response column {response!r} not in dataset.")
    validate_observations(data.subset([response]), required=(), count=response)
    level = get_option("significance_level") if significance_level is None else significance_level

    entries = [_Entry(spec, try_fit(data, spec, response)) for spec in candidates]
    likelihood = [e for e in entries if e.fit is not None and e.fit.likelihood_based]
    quasi = [e for e in entries if e.fit is not None and not e.fit.likelihood_based]
    failed = sorted(
        (e for e in entries if e.fit is None), key=lambda e: e.spec.name
    )

    p_dispersion: dict[str, float | None] = {
        e.spec.name: pearson_dispersion_test(e.fit)  # type: ignore[arg-type]
        for e in (*likelihood, *quasi)
    }
    overdispersed = {
        name: p is not None and p < level for name, p in p_dispersion.items()
    }
    stand_ins = _quasi_stand_ins(likelihood, quasi, overdispersed)

    def ranked(
        entry: _Entry, rank: int, criterion: str, value: float | None, **extra: float
    ) -> RankedCandidate:
        name = entry.spec.name
        return RankedCandidate(
            rank=rank,
            spec=entry.spec,
            fit=entry.fit,
            failure=None,
            criterion=criterion,
            criterion_value=value,
            dispersion_p_value=p_dispersion[name],
            overdispersed=overdispersed[name],
            **extra,
        )

    ranking: list[RankedCandidate] = []
    rank = 0

    if likelihood:
        table = compare_aic([e.fit for e in likelihood])  # type: ignore[misc]
        by_name = {e.spec.name: e for e in likelihood}
        for name, row in table.iterrows():
            stand_in = stand_ins.get(str(name))
            if stand_in is not None:
                rank += 1
                ranking.append(
                    ranked(
                        stand_in, rank, "dispersion", p_dispersion[stand_in.spec.name]
                    )
                )
                logger.debug(
                    "Ranked %r ahead of overdispersed Poisson fit %r.",
                    stand_in.spec.name,
                    name,
                )
            rank += 1
            ranking.append(
                ranked(
                    by_name[str(name)],
                    rank,
                    "aic",
                    float(row["aic"]),
                    delta_aic=float(row["delta_aic"]),
                    akaike_weight=float(row["akaike_weight"]),
                )
            )

    quasi_reference: str | None = None
    quasi_tests: list[NestedTestResult] = []
    if quasi:
        reference = min(quasi, key=lambda e: (e.fit.n_params, e.spec.name))  # type: ignore[union-attr]
        quasi_reference = reference.spec.name
        p_values: dict[str, float | None] = {}
        for entry in quasi:
            p_values[entry.spec.name] = None
            if entry is reference or not reference.spec.is_nested_in(entry.spec):
                continue
            result = _quasi_f_test(data, response, reference, entry)
            if result is not None:
                quasi_tests.append(result)
                p_values[entry.spec.name] = result.p_value
        quasi_tests.sort(key=lambda t: t.full)

        placed = {e.spec.name for e in stand_ins.values()}
        for entry in sorted(
            quasi,
            key=lambda e: (e.fit.n_params, e.fit.deviance, e.spec.name),  # type: ignore[union-attr]
        ):
            if entry.spec.name in placed:
                continue
            rank += 1
            ranking.append(ranked(entry, rank, "f_test", p_values[entry.spec.name]))

    for entry in failed:
        ranking.append(
            RankedCandidate(
                rank=None,
                spec=entry.spec,
                fit=None,
                failure=entry.outcome,  # type: ignore[arg-type]
                criterion=None,
                criterion_value=None,
            )
        )

    if likelihood:
        top = ranking[0]
        if top.criterion == "dispersion":
            start = next(e for e in quasi if e.spec.name == top.name)
            selected: str | None = _select_quasi(data, response, quasi, level, start)
        else:
            selected = top.name
    elif quasi:
        selected = _select_quasi(data, response, quasi, level)
    else:
        selected = None
        logger.warning("No candidate could be fitted for response %r.", response)

    logger.debug(
        "Compared %d candidates for %r: %d likelihood, %d quasi, %d failed; selected %r.",
        len(entries),
        response,
        len(likelihood),
        len(quasi),
        len(failed),
        selected,
    )
    return ComparisonResult(
        response=response,
        ranking=ranking,
        selected=selected,
        quasi_reference=quasi_reference,
        quasi_tests=quasi_tests,
    )
