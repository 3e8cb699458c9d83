"""Dispatch a candidate to its estimator.

=====================  ======================================================
``estimator``          Routine
=====================  ======================================================
``glm``                ``CountFamily.fit`` (statsmodels GLM / NB2 MLE)
``glmm``               :func:`~.families_mixed.fit_random_intercept`
``mean_dispersion``    :func:`~.dispersion.fit_negative_binomial_dispersion`
                       or :func:`~.dispersion.fit_quasi_poisson_dispersion`
=====================  ======================================================

:func:`try_fit` is the single place where estimator errors are
converted to :class:`FitFailure` records, so the comparison driver
and the envelope refits treat failures identically.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from ._results import FitFailure, FitResult
from .candidates import CandidateModel
from .data import SurveyData
from .design import ModelDesign, build_design
from .dispersion import fit_negative_binomial_dispersion, fit_quasi_poisson_dispersion
from .exceptions import ModelFitError
from .families import resolve_family
from .families_mixed import fit_random_intercept, simulate_random_intercept

logger = logging.getLogger(__name__)

FIT_ERRORS: tuple[type[Exception], ...] = (ModelFitError, np.linalg.LinAlgError)
"""Exceptions recorded as a fit failure rather than propagated.

Data errors (a negative or fractional count, a candidate with no
complete rows) are plain ``ValueError`` and reach the caller.
"""


def fit_design(candidate: CandidateModel, design: ModelDesign) -> FitResult:
    """Fit *candidate* to an already-built design."""
    family = resolve_family(candidate.family)
    if candidate.estimator == "glmm":
        return fit_random_intercept(family, design, name=candidate.name)
    if candidate.estimator == "mean_dispersion":
        if family.likelihood_based:
            return fit_negative_binomial_dispersion(design, name=candidate.name)
        return fit_quasi_poisson_dispersion(design, name=candidate.name)
    return family.fit(design, name=candidate.name, link=candidate.link)


def fit_candidate(
    data: SurveyData,
    candidate: CandidateModel,
    response: str,
    *,
    rows: pd.Index | None = None,
) -> FitResult:
    """Build the design for *candidate* and fit it.

    Raises:
        ModelFitError: On non-convergence, a rank-deficient design, or
            non-finite estimates.
        KeyError: If a referenced column is missing from *data*.
        ValueError: If no usable rows remain or the response is not a
            count.
    """
    design = build_design(data, candidate, response, rows=rows)
    logger.debug(
        "Fitting %r (%s, %s) on %d rows.",
        candidate.name,
        candidate.family,
        candidate.estimator,
        design.n_obs,
    )
    return fit_design(candidate, design)


def try_fit(
    data: SurveyData,
    candidate: CandidateModel,
    response: str,
) -> FitResult | FitFailure:
    """Fit *candidate*, returning a :class:`FitFailure` on a fitting error."""
    try:
        return fit_candidate(data, candidate, response)
    except FIT_ERRORS as exc:
        logger.warning("Candidate %r failed to fit: %s", candidate.name, exc)
        return FitFailure(
            candidate=candidate.name,
            reason=str(exc),
            error_type=type(exc).__name__,
        )


def simulate_response(
    candidate: CandidateModel,
    fit: FitResult,
    design: ModelDesign,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw one response vector from the fitted model.

    Random-intercept fits draw fresh intercepts for every replicate;
    all other fits simulate around their fitted means.
    """
    family = resolve_family(candidate.family)
    if candidate.estimator == "glmm":
        return simulate_random_intercept(family, fit, design, rng)
    return family.simulate(fit.fitted_values, family.dispersion_of(fit), rng)
