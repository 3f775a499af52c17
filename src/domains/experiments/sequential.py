"""Group-sequential boundaries for repeated looks at a running test.

The pipeline re-evaluates significance on every tick, so a fixed-horizon
p < alpha check would inflate the false positive rate. Lan-DeMets alpha
spending with an O'Brien-Fleming shape keeps the overall error at alpha:
early looks need a much larger z, the final look (t = 1) uses the classical
critical value.
"""

import math

from scipy import stats as scipy_stats

from .models import SequentialBoundary


def information_fraction(sample_size: int, planned_sample_size: int) -> float:
    if planned_sample_size <= 0:
        return 1.0
    return min(1.0, max(sample_size, 0) / planned_sample_size)


def obrien_fleming_boundary(fraction: float, alpha: float = 0.05) -> float:
    """Critical |z| at information fraction ``fraction`` (two-sided)."""
    if fraction <= 0:
        return math.inf
    return float(scipy_stats.norm.ppf(1 - alpha / 2)) / math.sqrt(min(fraction, 1.0))


def alpha_spent(fraction: float, alpha: float = 0.05) -> float:
    """Cumulative alpha spent by the O'Brien-Fleming spending function."""
    if fraction <= 0:
        return 0.0
    return float(2 * scipy_stats.norm.sf(obrien_fleming_boundary(fraction, alpha)))


def evaluate_boundary(
    statistic: float,
    sample_size: int,
    planned_sample_size: int,
    alpha: float = 0.05,
) -> SequentialBoundary:
    """Check an observed test statistic against the current look's boundary.

    ``sample_size`` is the smallest per-variant count in the comparison.
    """
    fraction = information_fraction(sample_size, planned_sample_size)
    boundary = obrien_fleming_boundary(fraction, alpha)
    return SequentialBoundary(
        information_fraction=fraction,
        planned_sample_size=planned_sample_size,
        boundary_z=boundary if math.isfinite(boundary) else 0.0,
        nominal_alpha=alpha_spent(fraction, alpha),
        crossed=math.isfinite(boundary) and abs(statistic) >= boundary,
    )
