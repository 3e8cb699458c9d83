"""Candidate model specifications.

A :class:`CandidateModel` names one point in the comparison grid::

    (distribution family, linear predictor, random-effect structure)

plus the optional link, offset, and dispersion sub-model that the
survey analysis uses for its joint mean-dispersion fits.  Specs are
frozen and hashable, so the driver can key results by them and the
same spec can be refitted on simulated data by the envelope code.

Terms are column names of the dataset.  Categorical columns expand
to treatment-coded dummies; ``"a:b"`` is the product interaction of
the expanded columns of ``a`` and ``b``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Any

FAMILY_NAMES: tuple[str, ...] = ("poisson", "quasi_poisson", "negative_binomial")

# Links each family accepts for a fixed-effects fit.  Mixed and
# mean-dispersion fits are log-link only.
_VALID_LINKS: dict[str, tuple[str, ...]] = {
    "poisson": ("log", "sqrt", "identity"),
    "quasi_poisson": ("log", "sqrt", "identity"),
    "negative_binomial": ("log",),
}


@dataclass(frozen=True)
class CandidateModel:
    """Specification of one candidate model.

    Attributes:
        name: Unique label used in reports.
        family: ``"poisson"``, ``"quasi_poisson"`` or
            ``"negative_binomial"``.
        terms: Fixed-effect terms of the linear predictor.
        random_effects: Grouping column for a random intercept, or
            ``None`` for a fixed-effects model.
        dispersion_terms: Terms of a log-linear dispersion sub-model,
            or ``None``.  An empty tuple means a constant dispersion
            fitted through the joint estimator.
        link: Mean link function.
        offset: Column added to the linear predictor with a fixed
            coefficient of one (e.g. log survey effort).
        fit_intercept: Whether the linear predictor has an intercept.
    """

    name: str
    family: str
    terms: tuple[str, ...] = ()
    random_effects: str | None = None
    dispersion_terms: tuple[str, ...] | None = None
    link: str = "log"
    offset: str | None = None
    fit_intercept: bool = True
    _term_set: frozenset[str] = field(
        init=False, repr=False, compare=False, hash=False, default=frozenset()
    )

    def __post_init__(self) -> None:
        # Accept lists for convenience; store tuples so the spec stays hashable.
        object.__setattr__(self, "terms", tuple(self.terms))
        if self.dispersion_terms is not None:
            object.__setattr__(self, "dispersion_terms", tuple(self.dispersion_terms))
        object.__setattr__(self, "_term_set", frozenset(self.terms))

        if not self.name:
            raise ValueError("CandidateModel requires a non-empty name.")
        if self.family not in FAMILY_NAMES:
            raise ValueError(
                f"Unknown family {self.family!r}. Choose from: {list(FAMILY_NAMES)}"
            )
        if len(self._term_set) != len(self.terms):
            raise ValueError(f"Candidate {self.name!r} repeats a term: {self.terms}")
        if self.link not in _VALID_LINKS[self.family]:
            raise ValueError(
                f"Link {self.link!r} is not valid for family {self.family!r}. "
                f"Valid links: {list(_VALID_LINKS[self.family])}"
            )
        if self.random_effects is not None:
            if self.family == "quasi_poisson":
                raise ValueError(
                    "Random effects need a full likelihood; quasi_poisson "
                    "cannot carry a random intercept."
                )
            if self.dispersion_terms is not None:
                raise ValueError(
                    "Random effects and a dispersion sub-model cannot be "
                    "combined in one candidate."
                )
        if self.dispersion_terms is not None and self.family == "poisson":
            raise ValueError(
                "The Poisson family has no dispersion parameter; use "
                "quasi_poisson or negative_binomial for a dispersion sub-model."
            )
        if (
            self.random_effects is not None or self.dispersion_terms is not None
        ) and self.link != "log":
            raise ValueError(
                "Mixed and mean-dispersion models support only the log link."
            )
        if not self.terms and not self.fit_intercept:
            raise ValueError(
                f"Candidate {self.name!r} has neither terms nor an intercept."
            )

    # ---- Derived properties ----------------------------------------

    @property
    def estimator(self) -> str:
        """Which estimator fits this spec: glm, glmm or mean_dispersion."""
        if self.random_effects is not None:
            return "glmm"
        if self.dispersion_terms is not None:
            return "mean_dispersion"
        return "glm"

    @property
    def likelihood_based(self) -> bool:
        """``False`` for quasi-likelihood fits, which have no AIC."""
        return self.family != "quasi_poisson"

    def required_columns(self, response: str) -> list[str]:
        """Every dataset column the model reads, response first."""
        cols = [response]
        for term in (*self.terms, *(self.dispersion_terms or ())):
            cols.extend(term.split(":"))
        if self.random_effects is not None:
            cols.append(self.random_effects)
        if self.offset is not None:
            cols.append(self.offset)
        return list(dict.fromkeys(cols))

    # ---- Nesting ---------------------------------------------------

    def same_structure(self, other: CandidateModel) -> bool:
        """True when both specs differ at most in their fixed-effect terms."""
        return (
            self.family == other.family
            and self.link == other.link
            and self.random_effects == other.random_effects
            and self.dispersion_terms == other.dispersion_terms
            and self.offset == other.offset
            and self.fit_intercept == other.fit_intercept
        )

    def shares_mean_model(self, other: CandidateModel) -> bool:
        """True when both are plain GLMs with the same linear predictor.

        The family may differ, so a Poisson and a quasi-Poisson spec
        with the same terms, link and offset share a mean model.
        """
        return (
            self.estimator == "glm"
            and other.estimator == "glm"
            and self.link == other.link
            and self.offset == other.offset
            and self.fit_intercept == other.fit_intercept
            and self._term_set == other._term_set
        )

    def is_nested_in(self, other: CandidateModel) -> bool:
        """True if this linear predictor is a strict subset of *other*'s."""
        return self.same_structure(other) and self._term_set < other._term_set

    def without_term(self, term: str) -> CandidateModel:
        """Return a copy with *term* removed from the linear predictor."""
        if term not in self._term_set:
            raise KeyError(f"Term {term!r} is not in candidate {self.name!r}.")
        return replace(
            self,
            name=f"{self.name} - {term}",
            terms=tuple(t for t in self.terms if t != term),
        )

    # ---- Serialisation ---------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "family": self.family,
            "terms": list(self.terms),
            "random_effects": self.random_effects,
            "dispersion_terms": (
                None if self.dispersion_terms is None else list(self.dispersion_terms)
            ),
            "link": self.link,
            "offset": self.offset,
            "fit_intercept": self.fit_intercept,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CandidateModel:
        return cls(**data)


def validate_candidates(candidates: Sequence[CandidateModel]) -> None:
    """Reject an empty candidate list or duplicate names."""
    if len(candidates) == 0:
        raise ValueError("At least one candidate model is required.")
    names = [c.name for c in candidates]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ValueError(f"Candidate names must be unique; duplicated: {dupes}")
