"""Tests for the joint mean-dispersion estimators."""

import numpy as np
import pandas as pd
import pytest

from count_model_comparison.candidates import CandidateModel
from count_model_comparison.data import SurveyData
from count_model_comparison.design import ModelDesign
from count_model_comparison.dispersion import (
    fit_negative_binomial_dispersion,
    fit_quasi_poisson_dispersion,
)
from count_model_comparison.exceptions import ModelFitError
from count_model_comparison.families import NegativeBinomialFamily
from count_model_comparison.fitting import fit_candidate

# ------------------------------------------------------------------ #
# Fixtures
# ------------------------------------------------------------------ #


@pytest.fixture()
def rng():
    return np.random.default_rng(42)


@pytest.fixture()
def nb_heterogeneous(rng):
    """NB2 counts whose log α shifts by +1 between two habitats."""
    n = 3000
    x = rng.standard_normal(n)
    wet = rng.integers(0, 2, n)
    mu = np.exp(1.5 + 0.3 * x)
    alpha = np.exp(-1.0 + 1.0 * wet)
    y = rng.negative_binomial(1.0 / alpha, 1.0 / (1.0 + alpha * mu))
    habitat = np.where(wet == 1, "wetland", "forest")
    return SurveyData(pd.DataFrame({"count": y, "x": x, "habitat": habitat}))


@pytest.fixture()
def quasi_heterogeneous(rng):
    """Counts with Var = φ·μ and log φ shifting by +0.8 between habitats."""
    n = 2000
    x = rng.standard_normal(n)
    wet = rng.integers(0, 2, n)
    mu = np.exp(3.0 + 0.2 * x)
    phi = np.exp(0.3 + 0.8 * wet)
    size = mu / (phi - 1.0)
    y = rng.negative_binomial(size, size / (size + mu))
    habitat = np.where(wet == 1, "wetland", "forest")
    return SurveyData(pd.DataFrame({"count": y, "x": x, "habitat": habitat}))


# ------------------------------------------------------------------ #
# Negative binomial dispersion model
# ------------------------------------------------------------------ #


class TestNegativeBinomialDispersion:
    def test_recovers_dispersion_slope(self, nb_heterogeneous):
        spec = CandidateModel(
            "nb_disp", "negative_binomial", terms=("x",), dispersion_terms=("habitat",)
        )
        fit = fit_candidate(nb_heterogeneous, spec, "count")
        assert fit.estimator == "mean_dispersion"
        assert fit.dispersion_names == ["Intercept", "habitat[wetland]"]
        np.testing.assert_allclose(fit.dispersion_params, [-1.0, 1.0], atol=0.25)
        np.testing.assert_allclose(fit.params, [1.5, 0.3], atol=0.08)
        assert fit.n_params == 4
        assert fit.observation_dispersion.shape == (3000,)

    def test_log_likelihood_consistent(self, nb_heterogeneous):
        spec = CandidateModel(
            "nb_disp", "negative_binomial", terms=("x",), dispersion_terms=("habitat",)
        )
        fit = fit_candidate(nb_heterogeneous, spec, "count")
        y = nb_heterogeneous.to_pandas()["count"].to_numpy(dtype=float)
        expected = NegativeBinomialFamily().loglik_obs(
            y, fit.fitted_values, fit.observation_dispersion
        ).sum()
        assert fit.log_likelihood == pytest.approx(expected, rel=1e-8)

    def test_beats_constant_dispersion(self, nb_heterogeneous):
        constant = fit_candidate(
            nb_heterogeneous, CandidateModel("nb", "negative_binomial", terms=("x",)), "count"
        )
        varying = fit_candidate(
            nb_heterogeneous,
            CandidateModel(
                "nb_disp", "negative_binomial", terms=("x",), dispersion_terms=("habitat",)
            ),
            "count",
        )
        assert varying.aic < constant.aic

    def test_constant_dispersion_submodel_matches_nb2(self, nb_heterogeneous):
        constant = fit_candidate(
            nb_heterogeneous, CandidateModel("nb", "negative_binomial", terms=("x",)), "count"
        )
        joint = fit_candidate(
            nb_heterogeneous,
            CandidateModel("nb0", "negative_binomial", terms=("x",), dispersion_terms=()),
            "count",
        )
        assert joint.log_likelihood == pytest.approx(constant.log_likelihood, abs=0.05)
        assert np.exp(joint.dispersion_params[0]) == pytest.approx(constant.alpha, rel=0.05)

    def test_requires_dispersion_design(self):
        design = ModelDesign(y=np.ones(10), X=np.ones((10, 1)), coef_names=("Intercept",))
        with pytest.raises(ValueError, match="no dispersion design"):
            fit_negative_binomial_dispersion(design, name="m")


# ------------------------------------------------------------------ #
# Quasi-Poisson double GLM
# ------------------------------------------------------------------ #


class TestQuasiPoissonDoubleGLM:
    def test_recovers_dispersion_slope(self, quasi_heterogeneous):
        spec = CandidateModel(
            "qp_disp", "quasi_poisson", terms=("x",), dispersion_terms=("habitat",)
        )
        fit = fit_candidate(quasi_heterogeneous, spec, "count")
        assert fit.log_likelihood is None
        assert fit.aic is None
        assert fit.dispersion_params[1] == pytest.approx(0.8, abs=0.3)
        np.testing.assert_allclose(fit.params, [3.0, 0.2], atol=0.05)
        assert fit.n_params == 4
        assert np.all(fit.observation_dispersion > 1.0)

    def test_scaled_pearson_dispersion_near_one(self, quasi_heterogeneous):
        spec = CandidateModel(
            "qp_disp", "quasi_poisson", terms=("x",), dispersion_terms=("habitat",)
        )
        fit = fit_candidate(quasi_heterogeneous, spec, "count")
        assert fit.dispersion == pytest.approx(1.0, abs=0.2)

    def test_rank_deficient_dispersion_design(self, rng):
        n = 100
        z = rng.standard_normal(n)
        design = ModelDesign(
            y=rng.poisson(3.0, n).astype(float),
            X=np.ones((n, 1)),
            coef_names=("Intercept",),
            Z=np.column_stack([np.ones(n), z, z]),
            dispersion_names=("Intercept", "z", "z2"),
        )
        with pytest.raises(ModelFitError, match="rank-deficient"):
            fit_quasi_poisson_dispersion(design, name="bad")
