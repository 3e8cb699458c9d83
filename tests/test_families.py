"""Tests for the CountFamily protocol and the fixed-effects families."""

import numpy as np
import pytest
from scipy import stats

from count_model_comparison.design import ModelDesign
from count_model_comparison.exceptions import ModelFitError
from count_model_comparison.families import (
    CountFamily,
    NegativeBinomialFamily,
    PoissonFamily,
    QuasiPoissonFamily,
    deviance_residuals,
    quantile_residuals,
    register_family,
    resolve_family,
)

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def rng():
    return np.random.default_rng(42)


def _design(x, y, offset=None):
    X = np.column_stack([np.ones(len(x)), x])
    return ModelDesign(y=np.asarray(y, dtype=float), X=X, coef_names=("Intercept", "x"), offset=offset)


@pytest.fixture()
def poisson_design(rng):
    n = 2000
    x = rng.standard_normal(n)
    y = rng.poisson(np.exp(0.5 + 0.3 * x))
    return _design(x, y)


@pytest.fixture()
def nb_design(rng):
    n = 3000
    x = rng.standard_normal(n)
    mu = np.exp(1.0 + 0.5 * x)
    alpha = 0.5
    y = rng.negative_binomial(1.0 / alpha, 1.0 / (1.0 + alpha * mu))
    return _design(x, y)


ALL_FAMILIES = [PoissonFamily(), QuasiPoissonFamily(), NegativeBinomialFamily()]


# ------------------------------------------------------------------ #
# Protocol conformance
# ------------------------------------------------------------------ #


class TestProtocolConformance:
    @pytest.mark.parametrize("family", ALL_FAMILIES, ids=lambda f: f.name)
    def test_isinstance_check(self, family):
        assert isinstance(family, CountFamily)

    def test_names_and_likelihood(self):
        assert [f.name for f in ALL_FAMILIES] == [
            "poisson",
            "quasi_poisson",
            "negative_binomial",
        ]
        assert [f.likelihood_based for f in ALL_FAMILIES] == [True, False, True]

    def test_valid_links(self):
        assert PoissonFamily().valid_links == ("log", "sqrt", "identity")
        assert NegativeBinomialFamily().valid_links == ("log",)


class TestRegistry:
    def test_resolve_by_name(self):
        assert isinstance(resolve_family("negative_binomial"), NegativeBinomialFamily)

    def test_resolve_instance_passthrough(self):
        family = PoissonFamily()
        assert resolve_family(family) is family

    def test_unknown_family(self):
        with pytest.raises(ValueError, match="Unknown family"):
            resolve_family("zero_inflated")

    def test_register_rejects_non_protocol(self):
        class NotAFamily:
            pass

        with pytest.raises(TypeError, match="does not implement"):
            register_family("bogus", NotAFamily)


# ------------------------------------------------------------------ #
# Distribution functions
# ------------------------------------------------------------------ #


class TestDistributionFunctions:
    def test_variances(self):
        mu = np.array([1.0, 4.0])
        np.testing.assert_allclose(PoissonFamily().variance(mu), mu)
        np.testing.assert_allclose(QuasiPoissonFamily().variance(mu, 2.5), 2.5 * mu)
        np.testing.assert_allclose(
            NegativeBinomialFamily().variance(mu, 0.5), mu + 0.5 * mu**2
        )

    @pytest.mark.parametrize("family", ALL_FAMILIES, ids=lambda f: f.name)
    def test_unit_deviance_zero_at_saturation(self, family):
        y = np.array([0.0, 1.0, 5.0, 20.0])
        d = family.unit_deviance(y, np.maximum(y, 1e-10), 0.7)
        np.testing.assert_allclose(d, 0.0, atol=1e-6)

    @pytest.mark.parametrize("family", ALL_FAMILIES, ids=lambda f: f.name)
    def test_unit_deviance_non_negative(self, family, rng):
        y = rng.poisson(3.0, size=200).astype(float)
        mu = rng.uniform(0.5, 6.0, size=200)
        assert np.all(family.unit_deviance(y, mu, 0.7) >= -1e-10)

    def test_nb_loglik_matches_scipy(self):
        y = np.array([0.0, 2.0, 7.0])
        mu = np.array([1.5, 2.0, 4.0])
        alpha = 0.8
        expected = stats.nbinom.logpmf(y, 1 / alpha, 1 / (1 + alpha * mu))
        np.testing.assert_allclose(
            NegativeBinomialFamily().loglik_obs(y, mu, alpha), expected, rtol=1e-10
        )

    def test_poisson_loglik_matches_scipy(self):
        y = np.array([0.0, 2.0, 7.0])
        mu = np.array([1.5, 2.0, 4.0])
        np.testing.assert_allclose(
            PoissonFamily().loglik_obs(y, mu), stats.poisson.logpmf(y, mu)
        )

    def test_quasi_has_no_likelihood(self):
        with pytest.raises(NotImplementedError, match="no likelihood"):
            QuasiPoissonFamily().loglik_obs(np.ones(3), np.ones(3), 2.0)

    def test_nb_derivatives_match_finite_differences(self):
        family = NegativeBinomialFamily()
        y = np.array([0.0, 3.0, 11.0])
        eta = np.array([0.2, 1.0, 2.0])
        alpha = 0.6
        h = 1e-5

        def ll(e):
            return family.loglik_obs(y, np.exp(e), alpha)

        d1 = (ll(eta + h) - ll(eta - h)) / (2 * h)
        d2 = (ll(eta + h) - 2 * ll(eta) + ll(eta - h)) / h**2
        mu = np.exp(eta)
        np.testing.assert_allclose(family.score_eta(y, mu, alpha), d1, rtol=1e-5)
        np.testing.assert_allclose(family.weight_eta(y, mu, alpha), -d2, rtol=1e-3)

    def test_quasi_simulation_variance(self, rng):
        mu = np.full(200_000, 5.0)
        draws = QuasiPoissonFamily().simulate(mu, 3.0, rng)
        assert draws.mean() == pytest.approx(5.0, rel=0.02)
        assert draws.var() == pytest.approx(15.0, rel=0.05)

    def test_quasi_cdf_falls_back_to_poisson(self):
        y = np.array([0.0, 2.0, 5.0])
        mu = np.array([1.0, 2.0, 3.0])
        np.testing.assert_allclose(
            QuasiPoissonFamily().cdf(y, mu, 0.8), stats.poisson.cdf(y, mu)
        )

    def test_nb_simulation_moments(self, rng):
        mu = np.full(200_000, 4.0)
        draws = NegativeBinomialFamily().simulate(mu, 0.5, rng)
        assert draws.mean() == pytest.approx(4.0, rel=0.02)
        assert draws.var() == pytest.approx(4.0 + 0.5 * 16.0, rel=0.05)


class TestResiduals:
    def test_deviance_residual_sign(self):
        family = PoissonFamily()
        r = deviance_residuals(family, np.array([0.0, 5.0]), np.array([2.0, 2.0]))
        assert r[0] < 0 < r[1]

    def test_quantile_residuals_standard_normal(self, rng):
        family = PoissonFamily()
        mu = np.full(5000, 3.0)
        y = rng.poisson(mu).astype(float)
        r = quantile_residuals(family, y, mu, None, rng)
        assert abs(r.mean()) < 0.05
        assert r.std() == pytest.approx(1.0, abs=0.05)


# ------------------------------------------------------------------ #
# Fixed-effects fits
# ------------------------------------------------------------------ #


class TestPoissonFit:
    def test_recovers_coefficients(self, poisson_design):
        fit = PoissonFamily().fit(poisson_design, name="p")
        np.testing.assert_allclose(fit.params, [0.5, 0.3], atol=0.08)
        assert fit.converged
        assert fit.n_params == 2
        assert fit.df_resid == poisson_design.n_obs - 2
        assert fit.dispersion == pytest.approx(1.0, abs=0.15)

    def test_log_likelihood_matches_scipy(self, poisson_design):
        fit = PoissonFamily().fit(poisson_design, name="p")
        expected = stats.poisson.logpmf(poisson_design.y, fit.fitted_values).sum()
        assert fit.log_likelihood == pytest.approx(expected, rel=1e-8)
        assert fit.aic == pytest.approx(2 * 2 - 2 * expected, rel=1e-8)

    def test_offset_shifts_intercept(self, rng):
        n = 2000
        x = rng.standard_normal(n)
        log_effort = rng.uniform(0.0, 2.0, n)
        y = rng.poisson(np.exp(0.2 + 0.4 * x + log_effort))
        fit = PoissonFamily().fit(_design(x, y, offset=log_effort), name="p")
        np.testing.assert_allclose(fit.params, [0.2, 0.4], atol=0.08)

    def test_sqrt_link(self, rng):
        n = 2000
        x = rng.uniform(0.0, 1.0, n)
        y = rng.poisson((1.0 + 2.0 * x) ** 2)
        fit = PoissonFamily().fit(_design(x, y), name="p", link="sqrt")
        np.testing.assert_allclose(fit.params, [1.0, 2.0], atol=0.15)

    def test_rank_deficient_raises(self, rng):
        x = rng.standard_normal(50)
        X = np.column_stack([np.ones(50), x, 2 * x])
        design = ModelDesign(
            y=rng.poisson(2.0, 50).astype(float), X=X, coef_names=("Intercept", "x", "x2")
        )
        with pytest.raises(ModelFitError, match="rank-deficient"):
            PoissonFamily().fit(design, name="collinear")

    def test_saturated_raises(self):
        design = _design(np.array([0.1, 0.2]), np.array([1.0, 2.0]))
        with pytest.raises(ModelFitError, match="observations for"):
            PoissonFamily().fit(design, name="tiny")


class TestQuasiPoissonFit:
    def test_same_estimates_scaled_errors(self, nb_design):
        pois = PoissonFamily().fit(nb_design, name="p")
        quasi = QuasiPoissonFamily().fit(nb_design, name="q")
        np.testing.assert_allclose(quasi.params, pois.params, rtol=1e-8)
        np.testing.assert_allclose(
            quasi.bse, pois.bse * np.sqrt(quasi.dispersion), rtol=1e-6
        )
        assert quasi.log_likelihood is None
        assert quasi.aic is None
        assert quasi.bic is None
        assert quasi.dispersion > 2.0


class TestNegativeBinomialFit:
    def test_recovers_alpha_and_coefficients(self, nb_design):
        fit = NegativeBinomialFamily().fit(nb_design, name="nb")
        np.testing.assert_allclose(fit.params, [1.0, 0.5], atol=0.08)
        assert fit.alpha == pytest.approx(0.5, abs=0.1)
        assert fit.n_params == 3

    def test_log_likelihood_consistent(self, nb_design):
        family = NegativeBinomialFamily()
        fit = family.fit(nb_design, name="nb")
        expected = family.loglik_obs(nb_design.y, fit.fitted_values, fit.alpha).sum()
        assert fit.log_likelihood == pytest.approx(expected, rel=1e-6)

    def test_beats_poisson_on_overdispersed_data(self, nb_design):
        pois = PoissonFamily().fit(nb_design, name="p")
        nb = NegativeBinomialFamily().fit(nb_design, name="nb")
        assert nb.aic < pois.aic

    def test_rejects_non_log_link(self, nb_design):
        with pytest.raises(ValueError, match="only the log link"):
            NegativeBinomialFamily().fit(nb_design, name="nb", link="sqrt")
