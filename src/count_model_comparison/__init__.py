"""count_model_comparison — Count-model selection for wildlife-survey data.

Aggregates survey observations into species × site × time series,
fits an ordered set of candidate count models (Poisson,
quasi-Poisson, negative binomial, random-intercept mixed models and
joint mean-dispersion models), ranks them by AIC (quasi-likelihood
fits by dispersion-adjusted F-tests), runs likelihood-ratio / F tests
between nested candidates, and checks distributional adequacy with
simulated half-normal and worm-plot envelopes.

Public API:
    .. autosummary::
        SurveyData
        aggregate_counts
        validate_observations
        CandidateModel
        compare_models
        compare_aic
        lr_test
        f_test
        nested_test
        drop_term_tests
        pearson_dispersion_test
        fit_candidate
        half_normal_envelope
        worm_envelope
        overdispersion_test
        print_comparison_table
        print_fit_table
        print_nested_tests_table
        print_envelope_summary
        CountFamily
        PoissonFamily
        QuasiPoissonFamily
        NegativeBinomialFamily
        resolve_family
        register_family
        get_option
        set_option
        reset_options
        FitResult
        FitFailure
        NestedTestResult
        RankedCandidate
        ComparisonResult
        EnvelopeResult
        ModelFitError
        IncomparableFamiliesError
        NotNestedError
"""

from ._config import get_option, reset_options, set_option
from ._results import (
    ComparisonResult,
    EnvelopeResult,
    FitFailure,
    FitResult,
    NestedTestResult,
    RankedCandidate,
)
from .candidates import CandidateModel
from .comparison import (
    compare_aic,
    compare_models,
    drop_term_tests,
    f_test,
    lr_test,
    nested_test,
    pearson_dispersion_test,
)
from .data import SurveyData, aggregate_counts, validate_observations
from .display import (
    print_comparison_table,
    print_envelope_summary,
    print_fit_table,
    print_nested_tests_table,
)
from .exceptions import IncomparableFamiliesError, ModelFitError, NotNestedError
from .families import (
    CountFamily,
    NegativeBinomialFamily,
    PoissonFamily,
    QuasiPoissonFamily,
    register_family,
    resolve_family,
)
from .fitting import fit_candidate
from .gof import half_normal_envelope, overdispersion_test, worm_envelope

__all__ = [
    "SurveyData",
    "aggregate_counts",
    "validate_observations",
    "CandidateModel",
    "compare_models",
    "compare_aic",
    "lr_test",
    "f_test",
    "nested_test",
    "drop_term_tests",
    "pearson_dispersion_test",
    "fit_candidate",
    "half_normal_envelope",
    "worm_envelope",
    "overdispersion_test",
    "print_comparison_table",
    "print_fit_table",
    "print_nested_tests_table",
    "print_envelope_summary",
    "CountFamily",
    "PoissonFamily",
    "QuasiPoissonFamily",
    "NegativeBinomialFamily",
    "resolve_family",
    "register_family",
    "get_option",
    "set_option",
    "reset_options",
    "FitResult",
    "FitFailure",
    "NestedTestResult",
    "RankedCandidate",
    "ComparisonResult",
    "EnvelopeResult",
    "ModelFitError",
    "IncomparableFamiliesError",
    "NotNestedError",
]

__version__ = "0.1.0"
