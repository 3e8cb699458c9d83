"""Option configuration for the count_model_comparison package.

Controls the defaults used by the goodness-of-fit envelopes, the
nested-model tests, and the iterative estimators.

Resolution order (first match wins):
    1. Programmatic override via :func:`set_option`.
    2. The ``COUNT_MODEL_COMPARISON_<NAME>`` environment variable.
    3. The built-in default.

Examples:
    Use more envelope replicates from the shell::

        export COUNT_MODEL_COMPARISON_N_SIMULATIONS=199

    Or programmatically::

        import count_model_comparison
        count_model_comparison.set_option("n_simulations", 199)

    Restore the defaults::

        count_model_comparison.reset_options()
"""

from __future__ import annotations

import os
from typing import Any

_ENV_PREFIX = "COUNT_MODEL_COMPARISON_"

# name -> (default, type)
_DEFAULTS: dict[str, tuple[Any, type]] = {
    "n_simulations": (99, int),
    "envelope_level": (0.95, float),
    "misfit_tolerance": (0.05, float),
    "significance_level": (0.05, float),
    "max_iter": (200, int),
    "n_agq": (1, int),
}

# Programmatic overrides set by set_option().
_overrides: dict[str, Any] = {}


def _validate(name: str, value: Any) -> Any:
    """Coerce *value* to the option's type and check its range."""
    _, kind = _DEFAULTS[name]
    if kind is int and isinstance(value, float) and not value.is_integer():
        raise ValueError(f"Option '{name}' expects int, got {value!r}.")
    try:
        coerced = kind(value)
    except (TypeError, ValueError):
        raise ValueError(
            f"Option '{name}' expects {kind.__name__}, got {value!r}."
        ) from None
    if kind is int and coerced < 1:
        raise ValueError(f"Option '{name}' must be >= 1, got {coerced}.")
    if kind is float and not 0.0 < coerced < 1.0:
        raise ValueError(f"Option '{name}' must lie in (0, 1), got {coerced}.")
    return coerced


def get_option(name: str) -> Any:
    """Return the active value of option *name*.

    Raises:
        KeyError: If *name* is not a known option.
    """
    if name not in _DEFAULTS:
        raise KeyError(f"Unknown option '{name}'. Choose from: {sorted(_DEFAULTS)}")

    # 1. Programmatic override
    if name in _overrides:
        return _overrides[name]

    # 2. Environment variable
    env = os.environ.get(_ENV_PREFIX + name.upper(), "").strip()
    if env:
        return _validate(name, env)

    # 3. Default
    return _DEFAULTS[name][0]


def set_option(name: str, value: Any) -> None:
    """Override option *name* for the rest of the process.

    Args:
        name: One of the keys of :data:`_DEFAULTS`.
        value: New value, coerced to the option's type.

    Raises:
        KeyError: If *name* is not a known option.
        ValueError: If *value* has the wrong type or is out of range.
    """
    if name not in _DEFAULTS:
        raise KeyError(f"Unknown option '{name}'. Choose from: {sorted(_DEFAULTS)}")
    _overrides[name] = _validate(name, value)


def reset_options() -> None:
    """Drop every programmatic override."""
    _overrides.clear()
