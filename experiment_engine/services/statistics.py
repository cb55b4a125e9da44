"""
Frequentist statistics for conversion experiments.

Pure functions only: no database access, no logging. Everything here is a
fixed-horizon test; the analysis service feeds it counts read from the
result log.
"""

import math
from datetime import datetime
from typing import NamedTuple

from scipy import stats

# Two-sided 95% confidence and 80% power. The sample size formula uses these
# regardless of the significance level and power it is called with, unless
# exact quantiles are requested.
Z_ALPHA = 1.96
Z_BETA = 0.84

SIGNIFICANCE_THRESHOLD = 95.0

INTERVALS = ("day", "week", "month")

# Chebyshev coefficients of the complementary error function
# (Numerical Recipes erfcc), fractional error below 1.2e-7 everywhere.
_ERFC_COEFFICIENTS = (
    -1.26551223,
    1.00002368,
    0.37409196,
    0.09678418,
    -0.18628806,
    0.27886807,
    -1.13520398,
    1.48851587,
    -0.82215223,
    0.17087277,
)


class ZTestResult(NamedTuple):
    z_score: float
    p_value: float
    confidence_level: float
    significant: bool


NO_DIFFERENCE = ZTestResult(z_score=0.0, p_value=1.0, confidence_level=0.0, significant=False)


def erf(x: float) -> float:
    """Gauss error function via the rational erfc approximation."""
    t = 1.0 / (1.0 + 0.5 * abs(x))

    # Horner evaluation, innermost coefficient first
    poly = 0.0
    for coefficient in reversed(_ERFC_COEFFICIENTS[1:]):
        poly = coefficient + t * poly
    tau = t * math.exp(-x * x + _ERFC_COEFFICIENTS[0] + t * poly)

    return 1 - tau if x >= 0 else tau - 1


def p_value(z: float) -> float:
    """Normal tail probability beyond |z|."""
    return 1 - 0.5 * (1 + erf(abs(z) / math.sqrt(2)))


def conversion_rate(conversions: int, impressions: int) -> float:
    return conversions / impressions if impressions > 0 else 0.0


def relative_improvement(control_rate: float, variant_rate: float) -> float:
    """Relative lift of a variant over control; 0 when control never converted."""
    if control_rate > 0:
        return (variant_rate - control_rate) / control_rate
    return 0.0


def two_proportion_z_test(
    control_conversions: int,
    control_impressions: int,
    variant_conversions: int,
    variant_impressions: int,
) -> ZTestResult:
    """
    Pooled two-proportion z-test of a variant against control.

    An arm without impressions, or a pooled rate outside (0, 1), carries no
    evidence: the result is z=0, p=1. Conversions are counted per event, so a
    busy arm can log more conversions than impressions.
    """
    if control_impressions <= 0 or variant_impressions <= 0:
        return NO_DIFFERENCE

    p1 = control_conversions / control_impressions
    p2 = variant_conversions / variant_impressions

    p = (control_conversions + variant_conversions) / (control_impressions + variant_impressions)
    if not 0 < p < 1:
        return NO_DIFFERENCE

    se = math.sqrt(p * (1 - p) * (1 / control_impressions + 1 / variant_impressions))

    z = (p2 - p1) / se
    p_val = p_value(z)
    confidence = (1 - p_val) * 100

    return ZTestResult(
        z_score=z,
        p_value=p_val,
        confidence_level=confidence,
        significant=confidence >= SIGNIFICANCE_THRESHOLD,
    )


def required_sample_size(
    baseline_conversion_rate: float,
    minimum_detectable_effect: float,
    significance_level: float = 0.05,
    power: float = 0.8,
    exact_quantiles: bool = False,
) -> int:
    """
    Subjects needed per variant to detect a relative lift of
    minimum_detectable_effect over the baseline rate.

    With exact_quantiles=False the z values are the fixed 1.96 and 0.84 and
    significance_level/power are ignored. Raises ValueError when the expected
    lift is zero.
    """
    if exact_quantiles:
        z_alpha = float(stats.norm.ppf(1 - significance_level / 2))
        z_beta = float(stats.norm.ppf(power))
    else:
        z_alpha = Z_ALPHA
        z_beta = Z_BETA

    variant_conversion_rate = baseline_conversion_rate * (1 + minimum_detectable_effect)
    if variant_conversion_rate == baseline_conversion_rate:
        raise ValueError("Sample size is undefined when the expected lift is zero")

    p = (baseline_conversion_rate + variant_conversion_rate) / 2
    se = math.sqrt(2 * p * (1 - p))

    n = ((z_alpha + z_beta) / (variant_conversion_rate - baseline_conversion_rate)) ** 2 * se

    return math.ceil(n)


def period_label(timestamp: datetime, interval: str) -> str:
    """
    Zero-padded bucket label, so labels sort chronologically as strings.

    day -> YYYY-MM-DD, week -> YYYY-WW (week of year, week 01 starts Jan 1),
    month -> YYYY-MM.
    """
    if interval == "day":
        return timestamp.strftime("%Y-%m-%d")
    if interval == "week":
        week = (timestamp.timetuple().tm_yday - 1) // 7 + 1
        return f"{timestamp.year:04d}-{week:02d}"
    if interval == "month":
        return timestamp.strftime("%Y-%m")
    raise ValueError(f"Unknown interval: {interval}")
