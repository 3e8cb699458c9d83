"""Count-family protocol, concrete families and fixed-effects fitting.

The ``CountFamily`` protocol is the tagged variant over distribution
families.  Each family bundles:

* a **mean function** (inverse log link) and **variance function**,
* a **log-likelihood** (undefined for quasi-likelihood families),
* the **valid links** for a fixed-effects fit,
* the **unit deviance** and residuals,
* **simulation** and a **CDF**, used by the goodness-of-fit
  envelopes and by randomized quantile residuals,
* the first two derivatives of the log-likelihood with respect to
  the linear predictor, used by the random-intercept solver.

The comparison driver, the envelopes and the mixed / mean-dispersion
estimators program against this protocol, never against a concrete
class, so they stay family-agnostic.

The ``dispersion`` argument threaded through the protocol methods
means different things per family and may be a scalar or an ``(n,)``
array:

=======================  ==============================  ===============
Family                   Variance                         ``dispersion``
=======================  ==============================  ===============
``PoissonFamily``        μ                                ignored
``QuasiPoissonFamily``   φ·μ                              φ
``NegativeBinomialFamily``  μ + α·μ²                      α
=======================  ==============================  ===============

Fixed-effects fits delegate to statsmodels: ``sm.GLM`` for Poisson
and quasi-Poisson (Pearson-scaled, ``scale="X2"``) and the discrete
``sm.NegativeBinomial`` NB2 MLE, which estimates β and α jointly.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import numpy as np
import statsmodels.api as sm
from scipy import stats
from scipy.special import gammaln
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

logger = logging.getLogger(__name__)

_LINKS: dict[str, type] = {
    "log": sm.families.links.Log,
    "sqrt": sm.families.links.Sqrt,
    "identity": sm.families.links.Identity,
}

_MU_FLOOR = 1e-10
_ETA_CLIP = 30.0


# ------------------------------------------------------------------ #
# Shared helpers
# ------------------------------------------------------------------ #


def _xlogy_ratio(y: np.ndarray, mu: np.ndarray) -> np.ndarray:
    """``y·log(y/μ)`` with the convention ``0·log(0/μ) = 0``."""
    y = np.asarray(y, dtype=float)
    mu = np.broadcast_to(np.maximum(mu, _MU_FLOOR), y.shape)
    out = np.zeros_like(y)
    pos = y > 0
    out[pos] = y[pos] * np.log(y[pos] / mu[pos])
    return out


def inverse_log_link(eta: np.ndarray) -> np.ndarray:
    """μ = exp(η), with η clipped to keep μ finite."""
    return np.exp(np.clip(eta, -_ETA_CLIP, _ETA_CLIP))


def check_design(X: np.ndarray, name: str) -> None:
    """Raise :class:`ModelFitError` on a rank-deficient or saturated design."""
    n, p = X.shape
    if p == 0:
        return
    if n <= p:
        raise ModelFitError(
            f"Candidate {name!r}: {n} observations for {p} coefficients."
        )
    rank = int(np.linalg.matrix_rank(X))
    if rank < p:
        raise ModelFitError(
            f"Candidate {name!r}: rank-deficient design matrix "
            f"(rank {rank} < {p} columns)."
        )


def check_finite(name: str, **arrays: Any) -> None:
    """Raise :class:`ModelFitError` if any estimate is NaN or infinite."""
    for label, value in arrays.items():
        if value is not None and not np.all(np.isfinite(value)):
            raise ModelFitError(f"Candidate {name!r}: non-finite {label}.")


def pearson_dispersion(pearson_chi2: float, df_resid: float) -> float:
    return pearson_chi2 / df_resid if df_resid > 0 else float("nan")


# ------------------------------------------------------------------ #
# CountFamily protocol
# ------------------------------------------------------------------ #


@runtime_checkable
class CountFamily(Protocol):
    """Interface every count family implements.

    Attributes:
        name: Registry key (``"poisson"``, ``"quasi_poisson"``,
            ``"negative_binomial"``).
        likelihood_based: ``False`` when only a quasi-likelihood
            exists; such fits get no AIC and are compared by F-tests.
        valid_links: Links accepted by :meth:`fit`.
    """

    @property
    def name(self) -> str: ...

    @property
    def likelihood_based(self) -> bool: ...

    @property
    def valid_links(self) -> tuple[str, ...]: ...

    def mean(self, eta: np.ndarray) -> np.ndarray:
        """Inverse log link."""
        ...

    def variance(self, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        """Var(Y) as a function of μ."""
        ...

    def loglik_obs(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        """Per-observation log-likelihood (raises for quasi families)."""
        ...

    def unit_deviance(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        """Per-observation deviance contribution d_i ≥ 0."""
        ...

    def score_eta(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        """∂ℓ_i/∂η_i under the log link."""
        ...

    def weight_eta(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        """−∂²ℓ_i/∂η_i² under the log link (observed information)."""
        ...

    def simulate(
        self, mu: np.ndarray, dispersion: Any, rng: np.random.Generator
    ) -> np.ndarray:
        """Draw one response vector with mean μ."""
        ...

    def cdf(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        """P(Y ≤ y) under the fitted distribution."""
        ...

    def fit(
        self,
        design: ModelDesign,
        *,
        name: str,
        link: str = "log",
    ) -> FitResult:
        """Fixed-effects fit; raises :class:`ModelFitError` on failure."""
        ...

    def dispersion_of(self, fit: FitResult) -> Any:
        """Extract the ``dispersion`` argument from a fitted result."""
        ...


# ------------------------------------------------------------------ #
# Residuals (shared by all families)
# ------------------------------------------------------------------ #


def deviance_residuals(
    family: CountFamily, y: np.ndarray, mu: np.ndarray, dispersion: Any = None
) -> np.ndarray:
    """sign(y − μ)·√d_i."""
    d = np.maximum(family.unit_deviance(y, mu, dispersion), 0.0)
    return np.sign(y - mu) * np.sqrt(d)


def pearson_residuals(
    family: CountFamily, y: np.ndarray, mu: np.ndarray, dispersion: Any = None
) -> np.ndarray:
    """(y − μ)/√V(μ)."""
    return (y - mu) / np.sqrt(np.maximum(family.variance(mu, dispersion), _MU_FLOOR))


def quantile_residuals(
    family: CountFamily,
    y: np.ndarray,
    mu: np.ndarray,
    dispersion: Any,
    rng: np.random.Generator,
) -> np.ndarray:
    """Randomized quantile residuals (Dunn & Smyth, 1996).

    For a discrete response the CDF jumps at each integer, so u is
    drawn uniformly between F(y − 1) and F(y) and mapped through the
    normal quantile function.  Under a correct model the result is
    exactly N(0, 1).
    """
    upper = family.cdf(y, mu, dispersion)
    lower = family.cdf(y - 1.0, mu, dispersion)
    u = lower + rng.uniform(size=len(y)) * (upper - lower)
    u = np.clip(u, 1e-12, 1.0 - 1e-12)
    return np.asarray(stats.norm.ppf(u))


# ------------------------------------------------------------------ #
# PoissonFamily
# ------------------------------------------------------------------ #


def _glm_fit(
    design: ModelDesign,
    family: Any,
    *,
    name: str,
    scale: str | None = None,
) -> Any:
    """Fit an ``sm.GLM`` with warnings suppressed and convergence checked."""
    check_design(design.X, name)
    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=SmConvergenceWarning)
        warnings.filterwarnings("ignore", category=RuntimeWarning)
        model = sm.GLM(design.y, design.X, family=family, offset=design.offset)
        try:
            res = model.fit(maxiter=get_option("max_iter"), scale=scale)
        except ValueError as exc:
            raise ModelFitError(f"Candidate {name!r}: IRLS failed: {exc}") from exc
    if not res.converged:
        raise ModelFitError(f"Candidate {name!r}: IRLS did not converge.")
    check_finite(name, coefficients=res.params, fitted_values=res.fittedvalues)
    return res


@dataclass(frozen=True)
class PoissonFamily:
    """Poisson family: Var(Y) = μ, full likelihood, AIC defined."""

    @property
    def name(self) -> str:
        return "poisson"

    @property
    def likelihood_based(self) -> bool:
        return True

    @property
    def valid_links(self) -> tuple[str, ...]:
        return ("log", "sqrt", "identity")

    def mean(self, eta: np.ndarray) -> np.ndarray:
        return inverse_log_link(eta)

    def variance(self, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        return np.asarray(mu, dtype=float)

    def loglik_obs(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        return np.asarray(stats.poisson.logpmf(y, np.maximum(mu, _MU_FLOOR)))

    def unit_deviance(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        return 2.0 * (_xlogy_ratio(y, mu) - (y - mu))

    def score_eta(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        return y - mu

    def weight_eta(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        return np.asarray(mu, dtype=float)

    def simulate(
        self, mu: np.ndarray, dispersion: Any, rng: np.random.Generator
    ) -> np.ndarray:
        return rng.poisson(np.maximum(mu, _MU_FLOOR)).astype(float)

    def cdf(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        return np.asarray(stats.poisson.cdf(y, np.maximum(mu, _MU_FLOOR)))

    def dispersion_of(self, fit: FitResult) -> Any:
        return None

    def fit(self, design: ModelDesign, *, name: str, link: str = "log") -> FitResult:
        """Poisson GLM via statsmodels IRLS."""
        res = _glm_fit(
            design, sm.families.Poisson(link=_LINKS[link]()), name=name
        )
        pearson_chi2 = float(res.pearson_chi2)
        df_resid = float(res.df_resid)
        return FitResult(
            candidate=name,
            family=self.name,
            estimator="glm",
            coef_names=list(design.coef_names),
            params=np.asarray(res.params, dtype=float),
            bse=np.asarray(res.bse, dtype=float),
            log_likelihood=float(res.llf),
            deviance=float(res.deviance),
            pearson_chi2=pearson_chi2,
            dispersion=pearson_dispersion(pearson_chi2, df_resid),
            n_observations=design.n_obs,
            n_params=design.X.shape[1],
            df_resid=df_resid,
            converged=True,
            n_iter=int(res.fit_history["iteration"]),
            fitted_values=np.asarray(res.fittedvalues, dtype=float),
        )


# ------------------------------------------------------------------ #
# QuasiPoissonFamily
# ------------------------------------------------------------------ #
#
# Quasi-Poisson keeps the Poisson mean model and estimating equations
# but lets the variance be φ·μ.  The point estimates are identical to
# the Poisson fit; standard errors are inflated by √φ̂ where
# φ̂ = Pearson χ² / (n − p).  There is no likelihood, so AIC is
# undefined and nested fits are compared with an F-test.
#
# For simulation and CDF evaluation a distribution with the same
# mean-variance relation is needed: a negative binomial with size
# r = μ/(φ − 1) has Var = μ + μ²/r = φ·μ.  When φ ≤ 1 the Poisson is
# used instead.


@dataclass(frozen=True)
class QuasiPoissonFamily:
    """Quasi-Poisson family: Var(Y) = φ·μ, no likelihood."""

    @property
    def name(self) -> str:
        return "quasi_poisson"

    @property
    def likelihood_based(self) -> bool:
        return False

    @property
    def valid_links(self) -> tuple[str, ...]:
        return ("log", "sqrt", "identity")

    def mean(self, eta: np.ndarray) -> np.ndarray:
        return inverse_log_link(eta)

    def variance(self, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        phi = 1.0 if dispersion is None else dispersion
        return np.asarray(phi * np.asarray(mu, dtype=float))

    def loglik_obs(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        raise NotImplementedError(
            "quasi_poisson has no likelihood; compare quasi fits with an F-test."
        )

    def unit_deviance(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        return 2.0 * (_xlogy_ratio(y, mu) - (y - mu))

    def score_eta(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        raise NotImplementedError("quasi_poisson cannot be used in a random-effects fit.")

    def weight_eta(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        raise NotImplementedError("quasi_poisson cannot be used in a random-effects fit.")

    @staticmethod
    def _nb_size(mu: np.ndarray, phi: np.ndarray) -> np.ndarray:
        """Negative binomial size giving variance φ·μ (inf where φ ≤ 1)."""
        excess = phi - 1.0
        with np.errstate(divide="ignore"):
            return np.where(excess > 1e-8, mu / np.maximum(excess, 1e-8), np.inf)

    def simulate(
        self, mu: np.ndarray, dispersion: Any, rng: np.random.Generator
    ) -> np.ndarray:
        mu = np.maximum(np.asarray(mu, dtype=float), _MU_FLOOR)
        phi = np.broadcast_to(np.asarray(1.0 if dispersion is None else dispersion), mu.shape)
        size = self._nb_size(mu, phi)
        over = np.isfinite(size)
        out = np.empty_like(mu)
        out[~over] = rng.poisson(mu[~over])
        out[over] = rng.negative_binomial(size[over], size[over] / (size[over] + mu[over]))
        return out

    def cdf(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        mu = np.maximum(np.asarray(mu, dtype=float), _MU_FLOOR)
        phi = np.broadcast_to(np.asarray(1.0 if dispersion is None else dispersion), mu.shape)
        size = self._nb_size(mu, phi)
        over = np.isfinite(size)
        safe_size = np.where(over, size, 1.0)
        nb = stats.nbinom.cdf(y, safe_size, safe_size / (safe_size + mu))
        return np.asarray(np.where(over, nb, stats.poisson.cdf(y, mu)))

    def dispersion_of(self, fit: FitResult) -> Any:
        if fit.observation_dispersion is not None:
            return fit.observation_dispersion
        return fit.dispersion

    def fit(self, design: ModelDesign, *, name: str, link: str = "log") -> FitResult:
        """Poisson GLM with Pearson-scaled dispersion (``scale="X2"``)."""
        res = _glm_fit(
            design, sm.families.Poisson(link=_LINKS[link]()), name=name, scale="X2"
        )
        return FitResult(
            candidate=name,
            family=self.name,
            estimator="glm",
            coef_names=list(design.coef_names),
            params=np.asarray(res.params, dtype=float),
            bse=np.asarray(res.bse, dtype=float),
            log_likelihood=None,
            deviance=float(res.deviance),
            pearson_chi2=float(res.pearson_chi2),
            dispersion=float(res.scale),
            n_observations=design.n_obs,
            n_params=design.X.shape[1],
            df_resid=float(res.df_resid),
            converged=True,
            n_iter=int(res.fit_history["iteration"]),
            fitted_values=np.asarray(res.fittedvalues, dtype=float),
        )


# ------------------------------------------------------------------ #
# NegativeBinomialFamily
# ------------------------------------------------------------------ #
#
# NB2 parameterisation: Var(Y) = μ + α·μ², with size r = 1/α.  The
# fixed-effects fit uses the discrete ``sm.NegativeBinomial`` model,
# which maximises the full likelihood in (β, ln α) jointly, so the
# reported log-likelihood and AIC count α as an estimated parameter.


def nb_size_prob(mu: np.ndarray, alpha: Any) -> tuple[np.ndarray, np.ndarray]:
    """NB2 (α, μ) → numpy/scipy (size, success probability)."""
    alpha = np.maximum(np.asarray(alpha, dtype=float), 1e-10)
    size = 1.0 / alpha
    return size, size / (size + np.maximum(mu, _MU_FLOOR))


@dataclass(frozen=True)
class NegativeBinomialFamily:
    """Negative binomial (NB2) family: Var(Y) = μ + α·μ²."""

    @property
    def name(self) -> str:
        return "negative_binomial"

    @property
    def likelihood_based(self) -> bool:
        return True

    @property
    def valid_links(self) -> tuple[str, ...]:
        return ("log",)

    def mean(self, eta: np.ndarray) -> np.ndarray:
        return inverse_log_link(eta)

    def variance(self, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        alpha = 0.0 if dispersion is None else dispersion
        mu = np.asarray(mu, dtype=float)
        return np.asarray(mu + alpha * mu**2)

    def loglik_obs(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        size, _ = nb_size_prob(mu, dispersion)
        mu = np.maximum(mu, _MU_FLOOR)
        return np.asarray(
            gammaln(y + size)
            - gammaln(size)
            - gammaln(y + 1.0)
            + size * np.log(size / (size + mu))
            + y * np.log(mu / (size + mu))
        )

    def unit_deviance(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        alpha = np.maximum(np.asarray(dispersion, dtype=float), 1e-10)
        mu = np.maximum(mu, _MU_FLOOR)
        tail = (y + 1.0 / alpha) * np.log((1.0 + alpha * y) / (1.0 + alpha * mu))
        return 2.0 * (_xlogy_ratio(y, mu) - tail)

    def score_eta(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        return (y - mu) / (1.0 + dispersion * mu)

    def weight_eta(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        return mu * (1.0 + dispersion * y) / (1.0 + dispersion * mu) ** 2

    def simulate(
        self, mu: np.ndarray, dispersion: Any, rng: np.random.Generator
    ) -> np.ndarray:
        size, prob = nb_size_prob(mu, dispersion)
        return rng.negative_binomial(size, prob).astype(float)

    def cdf(self, y: np.ndarray, mu: np.ndarray, dispersion: Any = None) -> np.ndarray:
        size, prob = nb_size_prob(mu, dispersion)
        return np.asarray(stats.nbinom.cdf(y, size, prob))

    def dispersion_of(self, fit: FitResult) -> Any:
        if fit.observation_dispersion is not None:
            return fit.observation_dispersion
        return fit.alpha

    def fit(self, design: ModelDesign, *, name: str, link: str = "log") -> FitResult:
        """NB2 maximum likelihood via ``sm.NegativeBinomial``."""
        if link != "log":
            raise ValueError("negative_binomial supports only the log link.")
        check_design(design.X, name)
        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=SmConvergenceWarning)
            warnings.filterwarnings("ignore", category=HessianInversionWarning)
            warnings.filterwarnings("ignore", category=RuntimeWarning)
            model = sm.NegativeBinomial(
                design.y, design.X, loglike_method="nb2", offset=design.offset
            )
            try:
                res = model.fit(disp=0, maxiter=get_option("max_iter"))
            except ValueError as exc:
                raise ModelFitError(
                    f"Candidate {name!r}: NB2 likelihood failed: {exc}"
                ) from exc
        if not res.mle_retvals.get("converged", False):
            raise ModelFitError(f"Candidate {name!r}: NB2 likelihood did not converge.")

        params = np.asarray(res.params, dtype=float)
        bse = np.asarray(res.bse, dtype=float)
        beta, alpha = params[:-1], float(params[-1])
        check_finite(name, coefficients=beta, alpha=alpha)

        mu = self.mean(design.X @ beta + design.eta_offset)
        y = design.y
        pearson_chi2 = float(np.sum((y - mu) ** 2 / self.variance(mu, alpha)))
        n_params = design.X.shape[1] + 1
        df_resid = float(design.n_obs - n_params)
        logger.debug("Candidate %r: NB2 alpha = %.4g", name, alpha)
        return FitResult(
            candidate=name,
            family=self.name,
            estimator="glm",
            coef_names=list(design.coef_names),
            params=beta,
            bse=bse[:-1],
            log_likelihood=float(res.llf),
            deviance=float(np.sum(self.unit_deviance(y, mu, alpha))),
            pearson_chi2=pearson_chi2,
            dispersion=pearson_dispersion(pearson_chi2, df_resid),
            n_observations=design.n_obs,
            n_params=n_params,
            df_resid=df_resid,
            converged=True,
            n_iter=res.mle_retvals.get("iterations"),
            alpha=alpha,
            fitted_values=mu,
        )


# ------------------------------------------------------------------ #
# Family registry
# ------------------------------------------------------------------ #

_FAMILIES: dict[str, type] = {}
"""Registry mapping family name strings to concrete CountFamily classes."""


def register_family(name: str, cls: type) -> None:
    """Register a concrete ``CountFamily`` class under *name*.

    Raises:
        TypeError: If *cls* does not satisfy the ``CountFamily``
            protocol.
    """
    try:
        instance = cls()
    except Exception:  # noqa: BLE001
        msg = f"{cls!r} could not be instantiated for protocol check."
        raise TypeError(msg) from None
    if not isinstance(instance, CountFamily):
        msg = f"{cls!r} does not implement the CountFamily protocol."
        raise TypeError(msg)
    _FAMILIES[name] = cls


def resolve_family(family: str | CountFamily) -> CountFamily:
    """Resolve a family string or instance to a concrete ``CountFamily``.

    Raises:
        ValueError: If *family* is a string not found in the registry.
    """
    if isinstance(family, CountFamily):
        return family
    if family not in _FAMILIES:
        available = ", ".join(sorted(_FAMILIES)) or "(none registered)"
        msg = f"Unknown family {family!r}.  Available families: {available}."
        raise ValueError(msg)
    instance: CountFamily = _FAMILIES[family]()
    return instance


register_family("poisson", PoissonFamily)
register_family("quasi_poisson", QuasiPoissonFamily)
register_family("negative_binomial", NegativeBinomialFamily)
