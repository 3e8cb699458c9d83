"""Joint mean-dispersion models.

Two estimators model the dispersion with its own log-linear
predictor, ``log(dispersion_i) = z_i'γ``, alongside the usual mean
model ``log(μ_i) = x_i'β + offset_i``:

* **Negative binomial** with observation-specific α_i
  (Var = μ_i + α_i·μ_i²).  This is a full likelihood, maximised
  jointly in (β, γ) through a statsmodels ``GenericLikelihoodModel``;
  the fit has an AIC and counts p + q parameters.

* **Quasi-Poisson double GLM** with observation-specific φ_i
  (Var = φ_i·μ_i).  Estimated by alternating two GLMs until γ
  settles:

  1. mean:       Poisson GLM with ``var_weights = 1/φ_i``;
  2. dispersion: Gamma GLM (log link) of the unit deviances d_i on
     Z, with the dispersion of the dispersion model fixed at 2
     (the saddle-point approximation, d_i/φ_i ≈ φ_i·χ²₁).

  There is no likelihood, so the fit is compared by F-tests.  Its
  deviance is the dispersion-scaled Σ d_i/φ_i.
"""

from __future__ import annotations

import logging
import warnings
from typing import Any

import numpy as np
import statsmodels.api as sm
from statsmodels.base.model import GenericLikelihoodModel
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning as SmConvergenceWarning,
)
from statsmodels.tools.sm_exceptions import (
    HessianInversionWarning,
)

from ._config import get_option
from ._results import FitResult
from .design import ModelDesign
from .exceptions import ModelFitError
from .families import (
    NegativeBinomialFamily,
    QuasiPoissonFamily,
    check_design,
    check_finite,
    pearson_dispersion,
)

logger = logging.getLogger(__name__)

_LOG_DISP_CLIP = 15.0
_DEVIANCE_FLOOR = 1e-8
_DGLM_MAX_ITER = 30
_DGLM_TOL = 1e-6
# Per-observation score accepted when BFGS stops on precision loss.
_SCORE_TOL = 1e-4


# ------------------------------------------------------------------ #
# Negative binomial with log-linear dispersion
# ------------------------------------------------------------------ #


class NegativeBinomialDispersionModel(GenericLikelihoodModel):
    """NB2 likelihood with log α_i = z_i'γ.

    Parameters are ``(β, γ)``; γ is registered through
    ``extra_params_names`` so statsmodels labels and counts it.
    """

    def __init__(
        self,
        endog: np.ndarray,
        exog: np.ndarray,
        exog_disp: np.ndarray,
        *,
        eta_offset: np.ndarray | None = None,
        disp_names: list[str] | None = None,
        **kwds: Any,
    ) -> None:
        self.exog_disp = np.asarray(exog_disp, dtype=float)
        self.eta_offset = (
            np.zeros(len(endog)) if eta_offset is None else np.asarray(eta_offset, dtype=float)
        )
        self._family = NegativeBinomialFamily()
        q = self.exog_disp.shape[1]
        extra = [f"disp:{n}" for n in (disp_names or [f"z{j}" for j in range(q)])]
        super().__init__(endog, exog, extra_params_names=extra, **kwds)

    def split(self, params: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        p = self.exog.shape[1]
        return params[:p], params[p:]

    def mean_and_alpha(self, params: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        beta, gamma = self.split(params)
        mu = self._family.mean(self.exog @ beta + self.eta_offset)
        alpha = np.exp(np.clip(self.exog_disp @ gamma, -_LOG_DISP_CLIP, _LOG_DISP_CLIP))
        return mu, alpha

    def nloglikeobs(self, params: np.ndarray) -> np.ndarray:
        mu, alpha = self.mean_and_alpha(params)
        return -self._family.loglik_obs(self.endog, mu, alpha)


def _moment_alpha(y: np.ndarray, mu: np.ndarray) -> float:
    """Method-of-moments NB2 α from a Poisson fit, floored at 0.01."""
    return max(float(np.sum((y - mu) ** 2 - mu) / np.sum(mu**2)), 0.01)


def _poisson_start(design: ModelDesign) -> Any:
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=SmConvergenceWarning)
        warnings.filterwarnings("ignore", category=RuntimeWarning)
        return sm.GLM(
            design.y, design.X, family=sm.families.Poisson(), offset=design.offset
        ).fit()


def fit_negative_binomial_dispersion(design: ModelDesign, *, name: str) -> FitResult:
    """Maximum-likelihood NB2 fit with a log-linear dispersion model.

    Raises:
        ModelFitError: On a degenerate mean or dispersion design,
            non-convergence, or non-finite estimates.
    """
    if design.Z is None:
        raise ValueError(f"Candidate {name!r} has no dispersion design.")
    check_design(design.X, name)
    check_design(design.Z, name)

    poisson = _poisson_start(design)
    q = design.Z.shape[1]
    gamma0 = np.zeros(q)
    gamma0[0] = np.log(_moment_alpha(design.y, np.asarray(poisson.fittedvalues)))
    start = np.concatenate([np.asarray(poisson.params, dtype=float), gamma0])

    model = NegativeBinomialDispersionModel(
        design.y,
        design.X,
        design.Z,
        eta_offset=design.offset,
        disp_names=list(design.dispersion_names),
    )
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=SmConvergenceWarning)
        warnings.filterwarnings("ignore", category=HessianInversionWarning)
        warnings.filterwarnings("ignore", category=RuntimeWarning)
        try:
            res = model.fit(
                start_params=start,
                method="bfgs",
                maxiter=get_option("max_iter") * 5,
                disp=0,
            )
        except ValueError as exc:
            raise ModelFitError(
                f"Candidate {name!r}: NB dispersion-model likelihood failed: {exc}"
            ) from exc
        converged = bool(res.mle_retvals.get("converged", False))
        if not converged:
            # BFGS reports precision loss at an optimum it cannot improve.
            score = model.score(res.params) / design.n_obs
            converged = bool(np.all(np.isfinite(score)) and np.max(np.abs(score)) < _SCORE_TOL)
        bse = np.asarray(res.bse, dtype=float)
    if not converged:
        raise ModelFitError(
            f"Candidate {name!r}: NB dispersion-model likelihood did not converge."
        )

    params = np.asarray(res.params, dtype=float)
    beta, gamma = model.split(params)
    mu, alpha = model.mean_and_alpha(params)
    check_finite(name, coefficients=beta, dispersion_coefficients=gamma, log_likelihood=res.llf)

    family = model._family
    y = design.y
    p = design.X.shape[1]
    pearson_chi2 = float(np.sum((y - mu) ** 2 / family.variance(mu, alpha)))
    n_params = p + q
    df_resid = float(design.n_obs - n_params)
    logger.debug("Candidate %r: NB dispersion model gamma = %s", name, np.round(gamma, 4))
    return FitResult(
        candidate=name,
        family=family.name,
        estimator="mean_dispersion",
        coef_names=list(design.coef_names),
        params=beta,
        bse=bse[:p],
        log_likelihood=float(res.llf),
        deviance=float(np.sum(family.unit_deviance(y, mu, alpha))),
        pearson_chi2=pearson_chi2,
        dispersion=pearson_dispersion(pearson_chi2, df_resid),
        n_observations=design.n_obs,
        n_params=n_params,
        df_resid=df_resid,
        converged=True,
        n_iter=res.mle_retvals.get("iterations"),
        dispersion_names=list(design.dispersion_names),
        dispersion_params=gamma,
        dispersion_bse=bse[p:],
        observation_dispersion=alpha,
        fitted_values=mu,
    )


# ------------------------------------------------------------------ #
# Quasi-Poisson double GLM
# ------------------------------------------------------------------ #


def fit_quasi_poisson_dispersion(design: ModelDesign, *, name: str) -> FitResult:
    """Alternating double-GLM fit of a quasi-Poisson dispersion model.

    Raises:
        ModelFitError: On a degenerate design, an IRLS failure in either
            sub-model, or if γ has not settled after the iteration cap.
    """
    if design.Z is None:
        raise ValueError(f"Candidate {name!r} has no dispersion design.")
    check_design(design.X, name)
    check_design(design.Z, name)

    family = QuasiPoissonFamily()
    y = design.y
    phi = np.ones(design.n_obs)
    gamma = np.zeros(design.Z.shape[1])
    converged = False
    n_iter = 0

    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=SmConvergenceWarning)
        warnings.filterwarnings("ignore", category=RuntimeWarning)
        for n_iter in range(1, _DGLM_MAX_ITER + 1):
            mean_res = sm.GLM(
                y,
                design.X,
                family=sm.families.Poisson(),
                offset=design.offset,
                var_weights=1.0 / phi,
            ).fit(maxiter=get_option("max_iter"))
            mu = np.asarray(mean_res.fittedvalues, dtype=float)

            d = np.maximum(family.unit_deviance(y, mu), _DEVIANCE_FLOOR)
            disp_res = sm.GLM(
                d,
                design.Z,
                family=sm.families.Gamma(link=sm.families.links.Log()),
            ).fit(maxiter=get_option("max_iter"), scale=2.0)
            if not (mean_res.converged and disp_res.converged):
                raise ModelFitError(
                    f"Candidate {name!r}: double-GLM sub-model IRLS did not converge."
                )

            new_gamma = np.asarray(disp_res.params, dtype=float)
            phi = np.exp(np.clip(design.Z @ new_gamma, -_LOG_DISP_CLIP, _LOG_DISP_CLIP))
            step = np.max(np.abs(new_gamma - gamma))
            gamma = new_gamma
            if step < _DGLM_TOL:
                converged = True
                break

    if not converged:
        raise ModelFitError(
            f"Candidate {name!r}: double GLM did not converge in {_DGLM_MAX_ITER} iterations."
        )

    beta = np.asarray(mean_res.params, dtype=float)
    check_finite(name, coefficients=beta, dispersion_coefficients=gamma)

    p = design.X.shape[1]
    q = design.Z.shape[1]
    pearson_chi2 = float(np.sum((y - mu) ** 2 / family.variance(mu, phi)))
    n_params = p + q
    df_resid = float(design.n_obs - n_params)
    logger.debug("Candidate %r: double GLM converged in %d iterations.", name, n_iter)
    return FitResult(
        candidate=name,
        family=family.name,
        estimator="mean_dispersion",
        coef_names=list(design.coef_names),
        params=beta,
        bse=np.asarray(mean_res.bse, dtype=float),
        log_likelihood=None,
        deviance=float(np.sum(family.unit_deviance(y, mu) / phi)),
        pearson_chi2=pearson_chi2,
        dispersion=pearson_dispersion(pearson_chi2, df_resid),
        n_observations=design.n_obs,
        n_params=n_params,
        df_resid=df_resid,
        converged=True,
        n_iter=n_iter,
        dispersion_names=list(design.dispersion_names),
        dispersion_params=gamma,
        dispersion_bse=np.asarray(disp_res.bse, dtype=float),
        observation_dispersion=phi,
        fitted_values=mu,
    )
