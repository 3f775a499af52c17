"""Significance tests for experiment variants.

Conversion metrics use the pooled two-proportion z-test. Revenue metrics use
Welch's t-test over per-visitor values (zero for visitors who never bought).
CUPED and the bootstrap are reported next to the parametric result as
cross-checks; they never replace it.
"""

import math
from collections.abc import Sequence

import numpy as np
import structlog
from scipy import stats as scipy_stats

from .models import BootstrapResult, CupedResult, SignificanceResult

logger = structlog.get_logger()

# Bound on resampled values held in memory at once during bootstrap
_BOOTSTRAP_CHUNK_CELLS = 5_000_000


def _relative_improvement(control: float, variant: float) -> float:
    if control == 0:
        return 0.0
    return (variant - control) / abs(control) * 100


def _null_result(method: str, confidence_level: float) -> SignificanceResult:
    return SignificanceResult(method=method, confidence_level=confidence_level)


# ---------------------------------------------------------------------------
# Conversion rate
# ---------------------------------------------------------------------------


def two_proportion_z_test(
    control_visitors: int,
    control_conversions: int,
    variant_visitors: int,
    variant_conversions: int,
    confidence_level: float = 0.95,
) -> SignificanceResult:
    """Pooled two-proportion z-test, two-tailed.

    The confidence interval is on the absolute difference in conversion rate,
    in percentage points, using the unpooled standard error.
    """
    if control_visitors <= 0 or variant_visitors <= 0:
        return _null_result("two_proportion_z", confidence_level)

    p_c = control_conversions / control_visitors
    p_v = variant_conversions / variant_visitors
    pooled = (control_conversions + variant_conversions) / (control_visitors + variant_visitors)

    se = math.sqrt(pooled * (1 - pooled) * (1 / control_visitors + 1 / variant_visitors))
    if se == 0:
        return _null_result("two_proportion_z", confidence_level)

    z = (p_v - p_c) / se
    p_value = float(2 * scipy_stats.norm.sf(abs(z)))

    alpha = 1 - confidence_level
    z_crit = float(scipy_stats.norm.ppf(1 - alpha / 2))
    se_diff = math.sqrt(p_c * (1 - p_c) / control_visitors + p_v * (1 - p_v) / variant_visitors)
    diff = p_v - p_c
    margin = z_crit * se_diff

    return SignificanceResult(
        method="two_proportion_z",
        statistic=z,
        p_value=p_value,
        is_significant=p_value < alpha,
        improvement=_relative_improvement(p_c, p_v),
        difference=diff,
        confidence_level=confidence_level,
        confidence_interval=((diff - margin) * 100, (diff + margin) * 100),
    )


# ---------------------------------------------------------------------------
# Revenue (continuous) metrics
# ---------------------------------------------------------------------------


def welch_t_test_from_moments(
    n_control: int,
    mean_control: float,
    var_control: float,
    n_variant: int,
    mean_variant: float,
    var_variant: float,
    confidence_level: float = 0.95,
) -> SignificanceResult:
    """Welch's t-test from per-group size, mean and sample variance."""
    if n_control < 2 or n_variant < 2:
        return _null_result("welch_t", confidence_level)

    se_c = var_control / n_control
    se_v = var_variant / n_variant
    se = math.sqrt(se_c + se_v)
    if se == 0:
        return _null_result("welch_t", confidence_level)

    t_stat = (mean_variant - mean_control) / se

    # Welch-Satterthwaite degrees of freedom
    denom = se_c**2 / (n_control - 1) + se_v**2 / (n_variant - 1)
    df = (se_c + se_v) ** 2 / denom if denom > 0 else float(n_control + n_variant - 2)

    p_value = float(2 * scipy_stats.t.sf(abs(t_stat), df))
    alpha = 1 - confidence_level
    t_crit = float(scipy_stats.t.ppf(1 - alpha / 2, df))
    diff = mean_variant - mean_control
    margin = t_crit * se

    return SignificanceResult(
        method="welch_t",
        statistic=t_stat,
        p_value=p_value,
        is_significant=p_value < alpha,
        improvement=_relative_improvement(mean_control, mean_variant),
        difference=diff,
        confidence_level=confidence_level,
        confidence_interval=(diff - margin, diff + margin),
        degrees_of_freedom=df,
    )


def welch_t_test(
    control_values: Sequence[float] | np.ndarray,
    variant_values: Sequence[float] | np.ndarray,
    confidence_level: float = 0.95,
) -> SignificanceResult:
    """Welch's t-test over raw per-visitor values."""
    c = np.asarray(control_values, dtype=float)
    v = np.asarray(variant_values, dtype=float)
    if len(c) < 2 or len(v) < 2:
        return _null_result("welch_t", confidence_level)
    return welch_t_test_from_moments(
        len(c), float(c.mean()), float(c.var(ddof=1)),
        len(v), float(v.mean()), float(v.var(ddof=1)),
        confidence_level,
    )


# ---------------------------------------------------------------------------
# CUPED
# ---------------------------------------------------------------------------


def apply_cuped(
    values: Sequence[float] | np.ndarray,
    covariates: Sequence[float | None] | np.ndarray,
    min_correlation: float = 0.1,
) -> tuple[np.ndarray, CupedResult]:
    """Adjust outcomes with a pre-experiment covariate.

    ``Y_adj = Y - theta * (X - mean(X))`` with ``theta = Cov(Y, X) / Var(X)``.
    Visitors without a covariate are imputed at the covariate mean, which
    leaves their outcome unchanged. Returns the adjusted values (the input
    values when the adjustment is not applied) and a summary.
    """
    y = np.asarray(values, dtype=float)
    x = np.asarray([np.nan if c is None else c for c in covariates], dtype=float)
    if len(y) != len(x):
        raise ValueError("values and covariates must have the same length")

    original_variance = float(y.var(ddof=1)) if len(y) > 1 else 0.0
    not_applied = CupedResult(
        applied=False,
        original_variance=original_variance,
        adjusted_variance=original_variance,
    )

    observed = ~np.isnan(x)
    if observed.sum() < 3:
        return y, not_applied

    x_mean = float(x[observed].mean())
    x = np.where(observed, x, x_mean)

    var_x = float(x.var(ddof=1))
    if var_x == 0 or original_variance == 0:
        return y, not_applied

    cov_xy = float(np.cov(x, y, ddof=1)[0, 1])
    correlation = cov_xy / math.sqrt(var_x * original_variance)
    if abs(correlation) < min_correlation:
        return y, not_applied.model_copy(update={"correlation": correlation})

    theta = cov_xy / var_x
    adjusted = y - theta * (x - x_mean)
    adjusted_variance = float(adjusted.var(ddof=1))

    return adjusted, CupedResult(
        applied=True,
        theta=theta,
        correlation=correlation,
        original_variance=original_variance,
        adjusted_variance=adjusted_variance,
        variance_reduction=max(0.0, (1 - adjusted_variance / original_variance) * 100),
    )


def cuped_comparison(
    control_values: Sequence[float],
    control_covariates: Sequence[float | None],
    variant_values: Sequence[float],
    variant_covariates: Sequence[float | None],
    confidence_level: float = 0.95,
    min_correlation: float = 0.1,
) -> CupedResult:
    """Estimate theta on the pooled sample, then re-run Welch on adjusted outcomes."""
    n_control = len(control_values)
    pooled_values = list(control_values) + list(variant_values)
    pooled_covariates = list(control_covariates) + list(variant_covariates)

    adjusted, summary = apply_cuped(pooled_values, pooled_covariates, min_correlation)
    if not summary.applied:
        return summary

    result = welch_t_test(adjusted[:n_control], adjusted[n_control:], confidence_level)
    return summary.model_copy(update={"result": result})


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


def _bootstrap_means(data: np.ndarray, n_resamples: int, rng: np.random.Generator) -> np.ndarray:
    n = len(data)
    chunk = max(1, _BOOTSTRAP_CHUNK_CELLS // max(n, 1))
    means = np.empty(n_resamples)
    done = 0
    while done < n_resamples:
        size = min(chunk, n_resamples - done)
        idx = rng.integers(0, n, size=(size, n))
        means[done : done + size] = data[idx].mean(axis=1)
        done += size
    return means


def bootstrap_mean_difference(
    control_values: Sequence[float] | np.ndarray,
    variant_values: Sequence[float] | np.ndarray,
    n_resamples: int = 2_000,
    confidence_level: float = 0.95,
    seed: int | None = None,
) -> BootstrapResult | None:
    """Percentile bootstrap CI for ``mean(variant) - mean(control)``.

    Each group is resampled with replacement independently. Returns None when
    either group is empty.
    """
    c = np.asarray(control_values, dtype=float)
    v = np.asarray(variant_values, dtype=float)
    if len(c) == 0 or len(v) == 0:
        return None

    rng = np.random.default_rng(seed)
    diffs = _bootstrap_means(v, n_resamples, rng) - _bootstrap_means(c, n_resamples, rng)

    alpha = 1 - confidence_level
    lower, upper = np.percentile(diffs, [100 * alpha / 2, 100 * (1 - alpha / 2)])

    return BootstrapResult(
        estimate=float(v.mean() - c.mean()),
        lower=float(lower),
        upper=float(upper),
        standard_error=float(diffs.std(ddof=1)) if n_resamples > 1 else 0.0,
        samples=n_resamples,
        confidence_level=confidence_level,
    )


def bootstrap_mean_interval(
    values: Sequence[float] | np.ndarray,
    n_resamples: int = 2_000,
    confidence_level: float = 0.95,
    seed: int | None = None,
) -> tuple[float, float]:
    """Percentile bootstrap CI for the mean of one sample; (0, 0) when empty."""
    data = np.asarray(values, dtype=float)
    if len(data) == 0:
        return 0.0, 0.0
    means = _bootstrap_means(data, n_resamples, np.random.default_rng(seed))
    alpha = 1 - confidence_level
    lower, upper = np.percentile(means, [100 * alpha / 2, 100 * (1 - alpha / 2)])
    return float(lower), float(upper)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def required_sample_size(
    baseline_rate: float,
    mde: float,
    alpha: float = 0.05,
    power: float = 0.8,
) -> int:
    """Visitors per variant to detect a relative lift ``mde`` on a conversion rate.

    Raises:
        ValueError: baseline outside (0, 1), non-positive MDE, or a target rate
            at or above 100%.
    """
    if not 0 < baseline_rate < 1:
        raise ValueError("baseline rate must be between 0 and 1")
    if mde <= 0:
        raise ValueError("minimum detectable effect must be positive")

    p1 = baseline_rate
    p2 = baseline_rate * (1 + mde)
    if p2 >= 1:
        raise ValueError("target rate exceeds 100%")

    z_alpha = scipy_stats.norm.ppf(1 - alpha / 2)
    z_beta = scipy_stats.norm.ppf(power)
    pooled = (p1 + p2) / 2

    numerator = (
        z_alpha * math.sqrt(2 * pooled * (1 - pooled))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return math.ceil(numerator / (p2 - p1) ** 2)


def required_sample_size_continuous(
    mean: float,
    variance: float,
    mde: float,
    alpha: float = 0.05,
    power: float = 0.8,
) -> int:
    """Visitors per variant to detect a relative lift ``mde`` on a mean."""
    delta = abs(mean) * mde
    if delta <= 0 or variance <= 0:
        raise ValueError("mean, variance and MDE must be positive")
    z_alpha = scipy_stats.norm.ppf(1 - alpha / 2)
    z_beta = scipy_stats.norm.ppf(power)
    return math.ceil(2 * (z_alpha + z_beta) ** 2 * variance / delta**2)


def statistical_power(
    sample_size: int,
    baseline_rate: float,
    mde: float,
    alpha: float = 0.05,
) -> float:
    """Power of the two-proportion test at ``sample_size`` visitors per variant."""
    if sample_size <= 0:
        return 0.0
    p1 = baseline_rate
    p2 = baseline_rate * (1 + mde)
    pooled = (p1 + p2) / 2

    se_null = math.sqrt(2 * pooled * (1 - pooled) / sample_size)
    se_alt = math.sqrt((p1 * (1 - p1) + p2 * (1 - p2)) / sample_size)
    if se_alt == 0:
        return 1.0 if p1 != p2 else alpha

    z_alpha = scipy_stats.norm.ppf(1 - alpha / 2)
    z_beta = (abs(p2 - p1) - z_alpha * se_null) / se_alt
    return float(scipy_stats.norm.cdf(z_beta))
