"""Exception types raised by the fitting and comparison layers."""

from __future__ import annotations


class ModelFitError(RuntimeError):
    """A candidate model could not be fitted.

    Raised for non-convergence, rank-deficient designs, and non-finite
    estimates.  :func:`~count_model_comparison.compare_models` records
    the message as the candidate's failure reason instead of aborting.
    """


class IncomparableFamiliesError(ValueError):
    """Two fits cannot be compared with the requested criterion.

    AIC and likelihood-ratio tests are undefined when either fit uses
    quasi-likelihood.
    """


class NotNestedError(ValueError):
    """The reduced candidate is not a strict sub-model of the full one."""
