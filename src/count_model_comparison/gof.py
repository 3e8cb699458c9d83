"""Simulated goodness-of-fit envelopes and an overdispersion test.

Both envelopes follow the same recipe:

1. compute a sorted residual statistic for the observed data;
2. simulate ``n_simulations`` responses from the fitted model
   (quasi-Poisson through a negative binomial with variance φ·μ,
   random-intercept fits with freshly drawn intercepts);
3. refit the *same* candidate to each simulated response and compute
   the same statistic (replicates whose refit fails are counted and
   skipped);
4. take per-order-statistic quantiles of the simulated statistics as
   the reference band and count observed points outside it.

A fit is flagged as a misfit when the fraction of observed points
outside the band exceeds ``tolerance``.

=================  =============================  ==============================
Envelope           Statistic                       Reference positions
=================  =============================  ==============================
half-normal        sorted |deviance residuals|    Φ⁻¹((i + n − 1/8)/(2n + 1/2))
worm               sorted quantile residuals      Φ⁻¹((i − 3/8)/(n + 1/4))
                   minus the reference position
=================  =============================  ==============================

References:
    Atkinson, A. C. (1985). *Plots, Transformations and Regression*.
    Oxford University Press.

    van Buuren, S. & Fredriks, M. (2001). Worm plot: a simple
    diagnostic device for modelling growth reference curves.
    *Statistics in Medicine*, 20(8), 1259-1277.

    Dunn, P. K. & Smyth, G. K. (1996). Randomized quantile residuals.
    *Journal of Computational and Graphical Statistics*, 5(3), 236-244.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import numpy as np
import statsmodels.api as sm
from scipy import stats

from ._config import get_option
from ._results import EnvelopeResult, FitResult
from .candidates import CandidateModel
from .data import SurveyData
from .design import ModelDesign, build_design
from .exceptions import ModelFitError
from .families import deviance_residuals, quantile_residuals, resolve_family
from .fitting import FIT_ERRORS, fit_design, simulate_response

logger = logging.getLogger(__name__)

_Statistic = Callable[[CandidateModel, FitResult, np.ndarray, np.random.Generator], np.ndarray]


# ------------------------------------------------------------------ #
# Plotting positions and residual statistics
# ------------------------------------------------------------------ #


def half_normal_positions(n: int) -> np.ndarray:
    """Expected half-normal order statistics for a sample of *n*."""
    i = np.arange(1, n + 1)
    return np.asarray(stats.norm.ppf((i + n - 0.125) / (2 * n + 0.5)))


def normal_positions(n: int) -> np.ndarray:
    """Blom normal scores for a sample of *n*."""
    i = np.arange(1, n + 1)
    return np.asarray(stats.norm.ppf((i - 0.375) / (n + 0.25)))


def _abs_deviance(
    candidate: CandidateModel, fit: FitResult, y: np.ndarray, rng: np.random.Generator
) -> np.ndarray:
    family = resolve_family(candidate.family)
    r = deviance_residuals(family, y, fit.fitted_values, family.dispersion_of(fit))
    return np.sort(np.abs(r))


def _detrended_quantile(
    candidate: CandidateModel, fit: FitResult, y: np.ndarray, rng: np.random.Generator
) -> np.ndarray:
    family = resolve_family(candidate.family)
    r = quantile_residuals(family, y, fit.fitted_values, family.dispersion_of(fit), rng)
    return np.sort(r) - normal_positions(len(r))


# ------------------------------------------------------------------ #
# Shared envelope loop
# ------------------------------------------------------------------ #


def _prepare(
    data: SurveyData,
    candidate: CandidateModel,
    response: str,
    fit: FitResult | None,
) -> tuple[ModelDesign, FitResult]:
    design = build_design(data, candidate, response)
    if fit is None:
        fit = fit_design(candidate, design)
    elif fit.candidate != candidate.name or fit.n_observations != design.n_obs:
        raise ValueError(
            f"Fit {fit.candidate!r} ({fit.n_observations} rows) does not belong to "
            f"candidate {candidate.name!r} on this dataset ({design.n_obs} rows)."
        )
    return design, fit


def _envelope(
    kind: str,
    residual_type: str,
    statistic: _Statistic,
    theoretical: np.ndarray,
    candidate: CandidateModel,
    design: ModelDesign,
    fit: FitResult,
    *,
    n_simulations: int | None,
    level: float | None,
    tolerance: float | None,
    random_state: int | np.random.Generator | None,
) -> EnvelopeResult:
    n_simulations = get_option("n_simulations") if n_simulations is None else n_simulations
    level = get_option("envelope_level") if level is None else level
    tolerance = get_option("misfit_tolerance") if tolerance is None else tolerance
    if n_simulations < 1:
        raise ValueError(f"n_simulations must be >= 1, got {n_simulations}.")
    if not 0.0 < level < 1.0:
        raise ValueError(f"level must be in (0, 1), got {level}.")
    rng = np.random.default_rng(random_state)

    observed = statistic(candidate, fit, design.y, rng)

    simulated: list[np.ndarray] = []
    n_failed = 0
    for _ in range(n_simulations):
        y_sim = simulate_response(candidate, fit, design, rng)
        try:
            sim_fit = fit_design(candidate, design.with_response(y_sim))
        except FIT_ERRORS as exc:
            n_failed += 1
            logger.debug("Envelope refit of %r failed: %s", candidate.name, exc)
            continue
        simulated.append(statistic(candidate, sim_fit, y_sim, rng))

    if not simulated:
        raise ModelFitError(
            f"Candidate {candidate.name!r}: all {n_simulations} simulated refits failed."
        )
    if n_failed:
        logger.warning(
            "Envelope for %r: %d of %d simulated refits failed and were skipped.",
            candidate.name,
            n_failed,
            n_simulations,
        )

    sims = np.vstack(simulated)
    tail = (1.0 - level) / 2.0
    lower, median, upper = np.quantile(sims, [tail, 0.5, 1.0 - tail], axis=0)
    outside = (observed < lower) | (observed > upper)
    n_outside = int(np.sum(outside))
    fraction = n_outside / len(observed)

    logger.debug(
        "%s envelope for %r: %d/%d points outside the %.0f%% band.",
        kind,
        candidate.name,
        n_outside,
        len(observed),
        100 * level,
    )
    return EnvelopeResult(
        kind=kind,
        candidate=candidate.name,
        residual_type=residual_type,
        theoretical=theoretical,
        observed=observed,
        lower=lower,
        median=median,
        upper=upper,
        level=level,
        n_simulations=n_simulations,
        n_failed=n_failed,
        n_outside=n_outside,
        fraction_outside=fraction,
        tolerance=tolerance,
        misfit=fraction > tolerance,
    )


# ------------------------------------------------------------------ #
# Public envelopes
# ------------------------------------------------------------------ #


def half_normal_envelope(
    data: SurveyData,
    candidate: CandidateModel,
    response: str,
    *,
    fit: FitResult | None = None,
    n_simulations: int | None = None,
    level: float | None = None,
    tolerance: float | None = None,
    random_state: int | np.random.Generator | None = None,
) -> EnvelopeResult:
    """Half-normal plot of absolute deviance residuals with a simulated envelope.

    Args:
        data: Dataset handle.
        candidate: Candidate to check.
        response: Count column.
        fit: Existing fit of *candidate* on *data*; refitted if omitted.
        n_simulations: Replicates (default: ``n_simulations`` option).
        level: Envelope coverage (default: ``envelope_level`` option).
        tolerance: Allowed fraction outside (default:
            ``misfit_tolerance`` option).
        random_state: Seed or ``numpy.random.Generator``.

    Raises:
        ModelFitError: If the observed fit or every simulated refit fails.
    """
    design, fit = _prepare(data, candidate, response, fit)
    return _envelope(
        "half_normal",
        "deviance",
        _abs_deviance,
        half_normal_positions(design.n_obs),
        candidate,
        design,
        fit,
        n_simulations=n_simulations,
        level=level,
        tolerance=tolerance,
        random_state=random_state,
    )


def worm_envelope(
    data: SurveyData,
    candidate: CandidateModel,
    response: str,
    *,
    fit: FitResult | None = None,
    n_simulations: int | None = None,
    level: float | None = None,
    tolerance: float | None = None,
    random_state: int | np.random.Generator | None = None,
) -> EnvelopeResult:
    """Worm plot (detrended normal Q-Q) of randomized quantile residuals.

    Arguments are as for :func:`half_normal_envelope`.  The observed
    curve is flat around zero under a well-specified model.
    """
    design, fit = _prepare(data, candidate, response, fit)
    return _envelope(
        "worm",
        "quantile",
        _detrended_quantile,
        normal_positions(design.n_obs),
        candidate,
        design,
        fit,
        n_simulations=n_simulations,
        level=level,
        tolerance=tolerance,
        random_state=random_state,
    )


# ------------------------------------------------------------------ #
# Overdispersion test
# ------------------------------------------------------------------ #


def overdispersion_test(
    data: SurveyData,
    candidate: CandidateModel,
    response: str,
) -> dict[str, Any]:
    """Cameron-Trivedi score test for overdispersion in a Poisson fit.

    Fits the candidate's mean model as a Poisson GLM and regresses
    ((y − μ)² − y)/μ on μ without an intercept.  Under equidispersion
    the slope is zero; a positive slope estimates the NB2 α.

    Returns:
        Dict with ``alpha`` (slope), ``statistic`` (t), ``p_value``
        (one-sided, H1: α > 0) and ``dispersion`` (Pearson χ²/df of
        the Poisson fit).

    Raises:
        ValueError: If *candidate* is not a fixed-effects Poisson or
            quasi-Poisson model.
    """
    if candidate.family == "negative_binomial" or candidate.estimator != "glm":
        raise ValueError(
            "overdispersion_test() needs a fixed-effects Poisson or quasi-Poisson candidate."
        )
    design = build_design(data, candidate, response)
    fit = resolve_family("poisson").fit(design, name=candidate.name, link=candidate.link)
    y = design.y
    mu = fit.fitted_values
    aux = sm.OLS(((y - mu) ** 2 - y) / mu, mu).fit()
    t_stat = float(aux.tvalues[0])
    return {
        "alpha": float(aux.params[0]),
        "statistic": t_stat,
        "p_value": float(stats.t.sf(t_stat, aux.df_resid)),
        "dispersion": fit.dispersion,
    }
