"""Tests for candidate model specifications."""

import pytest

from count_model_comparison.candidates import CandidateModel, validate_candidates


class TestConstruction:
    def test_lists_become_tuples(self):
        spec = CandidateModel("m", "poisson", terms=["x", "habitat"])
        assert spec.terms == ("x", "habitat")
        assert {spec: 1}[spec] == 1

    def test_unknown_family(self):
        with pytest.raises(ValueError, match="Unknown family"):
            CandidateModel("m", "binomial")

    def test_empty_name(self):
        with pytest.raises(ValueError, match="non-empty name"):
            CandidateModel("", "poisson")

    def test_repeated_term(self):
        with pytest.raises(ValueError, match="repeats a term"):
            CandidateModel("m", "poisson", terms=("x", "x"))

    def test_invalid_link(self):
        with pytest.raises(ValueError, match="not valid for family"):
            CandidateModel("m", "negative_binomial", terms=("x",), link="sqrt")

    def test_quasi_random_effect_rejected(self):
        with pytest.raises(ValueError, match="full likelihood"):
            CandidateModel("m", "quasi_poisson", random_effects="site")

    def test_random_effect_with_dispersion_rejected(self):
        with pytest.raises(ValueError, match="cannot be combined"):
            CandidateModel(
                "m", "negative_binomial", random_effects="site", dispersion_terms=("x",)
            )

    def test_poisson_dispersion_rejected(self):
        with pytest.raises(ValueError, match="no dispersion parameter"):
            CandidateModel("m", "poisson", dispersion_terms=("x",))

    def test_mixed_model_needs_log_link(self):
        with pytest.raises(ValueError, match="only the log link"):
            CandidateModel("m", "poisson", random_effects="site", link="sqrt")

    def test_no_terms_no_intercept(self):
        with pytest.raises(ValueError, match="neither terms nor an intercept"):
            CandidateModel("m", "poisson", fit_intercept=False)


class TestDerived:
    def test_estimator(self):
        assert CandidateModel("a", "poisson").estimator == "glm"
        assert CandidateModel("b", "poisson", random_effects="site").estimator == "glmm"
        assert (
            CandidateModel("c", "negative_binomial", dispersion_terms=()).estimator
            == "mean_dispersion"
        )

    def test_likelihood_based(self):
        assert CandidateModel("a", "negative_binomial").likelihood_based
        assert not CandidateModel("b", "quasi_poisson").likelihood_based

    def test_required_columns(self):
        spec = CandidateModel(
            "m",
            "negative_binomial",
            terms=("x", "x:habitat"),
            dispersion_terms=("effort",),
            offset="log_effort",
        )
        assert spec.required_columns("count") == [
            "count",
            "x",
            "habitat",
            "effort",
            "log_effort",
        ]

    def test_required_columns_random_effect(self):
        spec = CandidateModel("m", "poisson", terms=("x",), random_effects="site")
        assert spec.required_columns("count") == ["count", "x", "site"]


class TestNesting:
    def test_strict_subset_nested(self):
        small = CandidateModel("small", "poisson", terms=("x",))
        big = CandidateModel("big", "poisson", terms=("x", "habitat"))
        assert small.is_nested_in(big)
        assert not big.is_nested_in(small)

    def test_equal_terms_not_nested(self):
        a = CandidateModel("a", "poisson", terms=("x",))
        b = CandidateModel("b", "poisson", terms=("x",))
        assert not a.is_nested_in(b)

    def test_term_order_irrelevant(self):
        a = CandidateModel("a", "poisson", terms=("habitat",))
        b = CandidateModel("b", "poisson", terms=("x", "habitat"))
        assert a.is_nested_in(b)

    def test_different_family_not_nested(self):
        a = CandidateModel("a", "poisson")
        b = CandidateModel("b", "negative_binomial", terms=("x",))
        assert not a.is_nested_in(b)

    def test_different_random_effect_not_nested(self):
        a = CandidateModel("a", "poisson")
        b = CandidateModel("b", "poisson", terms=("x",), random_effects="site")
        assert not a.is_nested_in(b)

    def test_shared_mean_model_across_families(self):
        pois = CandidateModel("p", "poisson", terms=("x", "habitat"), offset="effort")
        quasi = CandidateModel("q", "quasi_poisson", terms=("habitat", "x"), offset="effort")
        assert pois.shares_mean_model(quasi)
        assert quasi.shares_mean_model(pois)

    def test_mean_model_differs(self):
        pois = CandidateModel("p", "poisson", terms=("x",))
        assert not pois.shares_mean_model(CandidateModel("q", "quasi_poisson"))
        assert not pois.shares_mean_model(
            CandidateModel("q", "quasi_poisson", terms=("x",), offset="effort")
        )
        assert not pois.shares_mean_model(
            CandidateModel("q", "quasi_poisson", terms=("x",), dispersion_terms=("x",))
        )
        assert not pois.shares_mean_model(
            CandidateModel("r", "poisson", terms=("x",), random_effects="site")
        )

    def test_without_term(self):
        full = CandidateModel("full", "poisson", terms=("x", "habitat"))
        reduced = full.without_term("x")
        assert reduced.name == "full - x"
        assert reduced.terms == ("habitat",)
        assert reduced.is_nested_in(full)

    def test_without_unknown_term(self):
        with pytest.raises(KeyError, match="not in candidate"):
            CandidateModel("full", "poisson", terms=("x",)).without_term("z")


class TestSerialisation:
    def test_dict_round_trip(self):
        spec = CandidateModel(
            "m", "quasi_poisson", terms=("x",), dispersion_terms=("z",), offset="off"
        )
        assert CandidateModel.from_dict(spec.to_dict()) == spec


class TestValidateCandidates:
    def test_empty(self):
        with pytest.raises(ValueError, match="At least one"):
            validate_candidates([])

    def test_duplicate_names(self):
        specs = [CandidateModel("m", "poisson"), CandidateModel("m", "negative_binomial")]
        with pytest.raises(ValueError, match="duplicated"):
            validate_candidates(specs)
