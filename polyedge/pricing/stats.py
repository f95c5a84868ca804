"""Closed-form normal distribution helpers.

Uses the Abramowitz & Stegun 7.1.26 rational approximation of erf, accurate
to about 1.5e-7 absolute, which is far below forecast noise.
"""

from __future__ import annotations

import math

_P = 0.3275911
_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429


def erf(x: float) -> float:
    sign = 1.0 if x >= 0 else -1.0
    x = abs(x)
    t = 1.0 / (1.0 + _P * x)
    poly = t * (_A1 + t * (_A2 + t * (_A3 + t * (_A4 + t * _A5))))
    return sign * (1.0 - poly * math.exp(-x * x))


def norm_cdf(x: float, mean: float = 0.0, sigma: float = 1.0) -> float:
    """P(X <= x) for X ~ N(mean, sigma^2)."""
    if sigma <= 0:
        raise ValueError("sigma must be positive")
    return 0.5 * (1.0 + erf((x - mean) / (sigma * math.sqrt(2.0))))


def mass_between(low: float, high: float, mean: float, sigma: float) -> float:
    """P(low < X <= high), clamped at zero for inverted bounds."""
    return max(0.0, norm_cdf(high, mean, sigma) - norm_cdf(low, mean, sigma))
