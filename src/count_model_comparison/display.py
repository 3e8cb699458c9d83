"""Formatted ASCII tables for comparison, fit, test and envelope results.

Every table is 80 columns wide, opens and closes with a ``=`` rule,
and ends with a *Notes* section when something deserves a second
look (overdispersion left in a Poisson fit, failed candidates,
an envelope that flags misfit).  The tables only print; they never
change a result.
"""

from __future__ import annotations

import math
import textwrap
from collections.abc import Sequence

from scipy import stats as _sp_stats

from ._results import ComparisonResult, EnvelopeResult, FitResult, NestedTestResult

_W = 80
_COL1 = 40
_COL2 = 38

# Pearson dispersion above which a Poisson fit is flagged.
_OVERDISPERSION_FLAG = 1.5

_FAMILY_LABELS = {
    "poisson": "Poisson",
    "quasi_poisson": "Quasi-Poisson",
    "negative_binomial": "NegBin",
}
_ESTIMATOR_SUFFIX = {"glm": "", "glmm": " mixed", "mean_dispersion": " disp"}


def _truncate(name: str, max_len: int) -> str:
    """Truncate *name* to *max_len*, appending ``'...'`` if needed."""
    if len(name) <= max_len:
        return name
    return name[: max_len - 3] + "..."


def _fmt(val: object, spec: str = ".4f") -> str:
    """Format a number, rendering ``None`` and NaN as ``'N/A'``."""
    if val is None:
        return "N/A"
    if isinstance(val, float) and math.isnan(val):
        return "N/A"
    if isinstance(val, (int, float)):
        return format(val, spec)
    return str(val)


def _fmt_p(p: float | None) -> str:
    if p is None:
        return "N/A"
    if p < 0.001:
        return f"{p:.1e}"
    return f"{p:.4f}"


def _stars(p: float) -> str:
    if p < 0.001:
        return "(***)"
    if p < 0.01:
        return "(**)"
    if p < 0.05:
        return "(*)"
    return "(ns)"


def _wrap(text: str, width: int = _W, indent: int = 2) -> str:
    """Word-wrap *text*, indenting continuation lines only."""
    return textwrap.fill(text, width=width, subsequent_indent=" " * indent)


def _title(title: str) -> None:
    print("=" * _W)
    for line in textwrap.wrap(title, width=_W - 2):
        print(f"{line:^{_W}}")
    print("=" * _W)


def _header(ll: str, lv: str, rl: str = "", rv: str = "") -> None:
    left = f"{ll:<16}{_truncate(lv, _COL1 - 17):<{_COL1 - 16}}"
    right = f"{rl:>{_COL2 - 11}} {rv:>10}" if rl else ""
    print(f"{left}{right}")


def _notes(notes: list[str]) -> None:
    if not notes:
        return
    print("-" * _W)
    print("Notes")
    print("-" * _W)
    for note in notes:
        print(_wrap(f"  [!] {note}", indent=6))


def _family_label(family: str, estimator: str) -> str:
    return _FAMILY_LABELS.get(family, family) + _ESTIMATOR_SUFFIX.get(estimator, "")


def _legend() -> None:
    print("(***) p < 0.001   (**) p < 0.01   (*) p < 0.05   (ns) p >= 0.05")


# ------------------------------------------------------------------ #
# Comparison table
# ------------------------------------------------------------------ #


def print_comparison_table(
    result: ComparisonResult,
    *,
    title: str = "Count Model Comparison",
) -> None:
    """Print the ranked candidates of a :func:`compare_models` run.

    Likelihood-based candidates show AIC, ΔAIC and the Akaike weight;
    a quasi-Poisson stand-in shows its Pearson dispersion p-value, and
    other quasi-likelihood candidates the F-test p-value against the
    quasi reference; failed candidates are listed with their reason.
    """
    _title(title)
    n_failed = len(result.failures)
    _header(
        "Dep. Variable:",
        result.response,
        "No. Candidates:",
        str(len(result.ranking)),
    )
    _header(
        "Selected:",
        result.selected or "none",
        "Failed fits:",
        str(n_failed),
    )
    if result.quasi_reference is not None:
        _header("Quasi ref.:", result.quasi_reference)
    print("-" * _W)

    # 4 rank + 1 + 22 name + 17 family + 4 k + 1 + 12 value + 1 + 9 dAIC
    # + 1 + 8 weight = 80
    print(
        f"{'Rank':>4} {'Candidate':<22}{'Family':<17}{'k':>4} "
        f"{'AIC / p':>12} {'dAIC':>9} {'Weight':>8}"
    )
    print("-" * _W)

    notes: list[str] = []
    for row in result.ranking:
        spec = row.spec
        label = _truncate(_family_label(spec.family, spec.estimator), 16)
        name = _truncate(row.name, 21)
        if row.fit is None:
            print(f"{'--':>4} {name:<22}{label:<17}{'':>4} {'FAILED':>12}")
            continue
        if row.criterion == "aic":
            value = _fmt(row.criterion_value, ".2f")
        elif row.criterion_value is None:
            value = "ref" if row.name == result.quasi_reference else "N/A"
        else:
            value = _fmt_p(row.criterion_value)
        marker = "*" if row.name == result.selected else " "
        print(
            f"{row.rank:>3}{marker} {name:<22}{label:<17}{row.fit.n_params:>4} "
            f"{value:>12} {_fmt(row.delta_aic, '.2f'):>9} "
            f"{_fmt(row.akaike_weight, '.3f'):>8}"
        )

    for row in result.ranking:
        if row.fit is None:
            continue
        if row.criterion == "dispersion":
            notes.append(
                f"{row.name} ranked ahead of the Poisson fit with the same mean "
                f"model: Pearson dispersion {row.fit.dispersion:.2f} "
                f"(p = {_fmt_p(row.dispersion_p_value)})."
            )
        elif row.fit.family == "poisson" and row.overdispersed:
            notes.append(
                f"{row.name}: Pearson dispersion {row.fit.dispersion:.2f} "
                f"(p = {_fmt_p(row.dispersion_p_value)}) shows overdispersion. "
                "Consider a negative binomial or quasi-Poisson candidate."
            )
    sample_sizes = {r.fit.n_observations for r in result.ranking if r.fit is not None}
    if len(sample_sizes) > 1:
        notes.append(
            "Candidates were fitted on different numbers of rows (missing "
            "values are excluded per model); AIC differences mix samples."
        )
    for failure in result.failures:
        notes.append(f"{failure.candidate}: {failure.error_type}: {failure.reason}")

    _notes(notes)
    print("=" * _W)
    print("* selected model.  k = number of estimated parameters.")
    print()


# ------------------------------------------------------------------ #
# Single-fit table
# ------------------------------------------------------------------ #


def print_fit_table(
    fit: FitResult,
    *,
    response: str | None = None,
    title: str | None = None,
) -> None:
    """Print estimates and fit statistics of one candidate."""
    _title(title or f"Fit: {fit.candidate}")
    if response:
        _header("Dep. Variable:", response, "No. Observations:", str(fit.n_observations))
    else:
        _header("Candidate:", fit.candidate, "No. Observations:", str(fit.n_observations))
    _header(
        "Family:",
        _family_label(fit.family, fit.estimator),
        "Df Residuals:",
        _fmt(fit.df_resid, ".0f"),
    )
    _header("Log-Likelihood:", _fmt(fit.log_likelihood, ".3f"), "AIC:", _fmt(fit.aic, ".2f"))
    _header("Deviance:", _fmt(fit.deviance, ".3f"), "BIC:", _fmt(fit.bic, ".2f"))
    _header("Pearson chi2:", _fmt(fit.pearson_chi2, ".3f"), "Dispersion:", _fmt(fit.dispersion, ".4f"))
    if fit.alpha is not None:
        _header("NB alpha:", _fmt(fit.alpha, ".4f"), "Parameters:", str(fit.n_params))
    if fit.random_effect_variance is not None:
        n_groups = 0 if fit.random_effects is None else len(fit.random_effects)
        _header(
            "RE variance:",
            _fmt(fit.random_effect_variance, ".4f"),
            "Groups:",
            str(n_groups),
        )
    print("-" * _W)

    fc = 30
    print(f"{'Coefficient':<{fc}}{'Estimate':>12}{'Std.Err':>12}{'z':>10}{'P>|z|':>12}")
    print("-" * _W)
    for name, b, se in zip(fit.coef_names, fit.params, fit.bse, strict=True):
        z = b / se if se and math.isfinite(se) and se > 0 else float("nan")
        p = float(2 * _sp_stats.norm.sf(abs(z))) if math.isfinite(z) else None
        print(
            f"{_truncate(name, fc - 1):<{fc}}{b:>12.4f}{_fmt(float(se)):>12}"
            f"{_fmt(z, '.3f'):>10}{_fmt_p(p):>12}"
        )

    if fit.dispersion_params is not None:
        print("-" * _W)
        print("Dispersion model (log scale)")
        print("-" * _W)
        bse = fit.dispersion_bse if fit.dispersion_bse is not None else [float("nan")] * len(
            fit.dispersion_params
        )
        for name, g, se in zip(fit.dispersion_names, fit.dispersion_params, bse, strict=True):
            print(f"{_truncate(name, fc - 1):<{fc}}{g:>12.4f}{_fmt(float(se)):>12}")

    notes: list[str] = []
    if fit.family == "poisson" and fit.dispersion > _OVERDISPERSION_FLAG:
        notes.append(
            f"Dispersion = {fit.dispersion:.2f}: overdispersion detected "
            f"(> {_OVERDISPERSION_FLAG}). Consider a negative binomial model."
        )
    if not fit.likelihood_based:
        notes.append(
            "Quasi-likelihood fit: no log-likelihood or AIC; standard errors "
            "are scaled by the estimated dispersion."
        )
    _notes(notes)
    print("=" * _W)
    print()


# ------------------------------------------------------------------ #
# Nested tests
# ------------------------------------------------------------------ #


def print_nested_tests_table(
    tests: Sequence[NestedTestResult],
    *,
    title: str = "Nested Model Tests",
) -> None:
    """Print LRT / F-test results, one row per comparison.

    For :func:`drop_term_tests` output the dropped term labels the row.
    """
    _title(title)
    # 28 label + 6 test + 12 stat + 5 df + 12 df_resid + 12 p + 5 stars = 80
    print(f"{'Comparison':<28}{'Test':>6}{'Statistic':>12}{'df':>5}{'Df Resid':>12}{'P-value':>12}{'':>5}")
    print("-" * _W)
    for t in tests:
        label = f"- {t.term}" if t.term is not None else f"{t.reduced} vs {t.full}"
        print(
            f"{_truncate(label, 27):<28}{t.test.upper():>6}{t.statistic:>12.4f}{t.df:>5}"
            f"{_fmt(t.df_resid, '.0f'):>12}{_fmt_p(t.p_value):>12}{_stars(t.p_value):>5}"
        )
    if tests and tests[0].term is not None:
        _notes(
            [
                f"Each term is dropped independently from {tests[0].full!r}; "
                "no term has been removed."
            ]
        )
    print("=" * _W)
    _legend()
    print()


# ------------------------------------------------------------------ #
# Envelopes
# ------------------------------------------------------------------ #


def print_envelope_summary(
    envelopes: Sequence[EnvelopeResult],
    *,
    title: str = "Goodness-of-Fit Envelopes",
) -> None:
    """Print one summary line per envelope with its misfit flag."""
    _title(title)
    # 24 candidate + 13 kind + 10 sims + 8 failed + 13 outside + 12 verdict = 80
    print(
        f"{'Candidate':<24}{'Envelope':<13}{'Sims':>10}{'Failed':>8}"
        f"{'Outside':>13}{'Verdict':>12}"
    )
    print("-" * _W)
    notes: list[str] = []
    for env in envelopes:
        outside = f"{env.n_outside}/{len(env.observed)}"
        verdict = "MISFIT" if env.misfit else "ok"
        print(
            f"{_truncate(env.candidate, 23):<24}{env.kind:<13}{env.n_simulations:>10}"
            f"{env.n_failed:>8}{outside:>13}{verdict:>12}"
        )
        if env.misfit:
            notes.append(
                f"{env.candidate}: {100 * env.fraction_outside:.1f}% of points outside "
                f"the {100 * env.level:.0f}% {env.kind.replace('_', '-')} band "
                f"(tolerance {100 * env.tolerance:.0f}%)."
            )
        if env.n_failed:
            notes.append(
                f"{env.candidate}: {env.n_failed} simulated refits failed and were skipped."
            )
    _notes(notes)
    print("=" * _W)
    print()
