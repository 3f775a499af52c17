"""Data-quality checks run on every pipeline pass.

Nothing here raises on bad data: every finding is returned as a result object
and surfaced in the result snapshot.
"""

import math
from collections.abc import Mapping, Sequence
from datetime import date

import numpy as np
from scipy import stats as scipy_stats

from .config import QualitySettings
from .models import (
    DriftResult,
    DriftWindow,
    LearningEffectCheck,
    LearningEffectResult,
    MismatchSummary,
    NoveltyCheck,
    NoveltyResult,
    OptimizationMetric,
    SrmResult,
    VisitorRollup,
)

# ---------------------------------------------------------------------------
# Sample ratio mismatch
# ---------------------------------------------------------------------------


def check_srm(
    observed: Mapping[str, int],
    allocations: Mapping[str, float],
    alpha: float = 0.001,
) -> SrmResult:
    """Chi-square goodness of fit of observed visitors against configured allocations.

    Variants with zero allocation are left out of the test. The expected
    shares are renormalised over the remaining variants.
    """
    variant_ids = [vid for vid, share in allocations.items() if share > 0]
    counts = {vid: int(observed.get(vid, 0)) for vid in variant_ids}
    total = sum(counts.values())
    if len(variant_ids) < 2 or total == 0:
        return SrmResult(observed=counts)

    share_sum = sum(allocations[vid] for vid in variant_ids)
    expected = {vid: total * allocations[vid] / share_sum for vid in variant_ids}

    f_obs = np.array([counts[vid] for vid in variant_ids], dtype=float)
    f_exp = np.array([expected[vid] for vid in variant_ids], dtype=float)
    chi2, p_value = scipy_stats.chisquare(f_obs, f_exp)

    contributions = {
        vid: (counts[vid] - expected[vid]) ** 2 / expected[vid] for vid in variant_ids
    }
    return SrmResult(
        chi_square=float(chi2),
        p_value=float(p_value),
        detected=bool(p_value < alpha),
        observed=counts,
        expected=expected,
        contributions=contributions,
    )


# ---------------------------------------------------------------------------
# Novelty effect
# ---------------------------------------------------------------------------


def metric_value(rollup: VisitorRollup, metric: str) -> float:
    """Per-visitor value of the optimization metric."""
    if metric == OptimizationMetric.REVENUE_PER_VISITOR:
        return float(rollup.revenue_cents)
    if metric == OptimizationMetric.NET_REVENUE_PER_VISITOR:
        return float(rollup.net_revenue_cents)
    return 1.0 if rollup.converted else 0.0


def _lift(control: Sequence[float], variant: Sequence[float]) -> float:
    c_mean = float(np.mean(control))
    if c_mean == 0:
        return 0.0
    return (float(np.mean(variant)) - c_mean) / abs(c_mean) * 100


def detect_novelty(
    rollups: Sequence[VisitorRollup],
    control_id: str,
    metric: str,
    settings: QualitySettings | None = None,
) -> NoveltyResult:
    """Compare the treatment effect among early visitors with later visitors.

    Exposed visitors are ordered by first exposure across all variants; the
    first ``novelty_early_fraction`` of them form the early segment. A
    treatment whose early lift is material and positive but whose later lift
    falls below ``novelty_decay_ratio`` of it is flagged.
    """
    settings = settings or QualitySettings()
    timed = sorted(
        (r for r in rollups if r.exposed and r.first_exposed_at is not None),
        key=lambda r: (r.first_exposed_at, r.visitor_id),
    )
    if not timed:
        return NoveltyResult(message="no exposure timestamps yet")

    cutoff = math.ceil(len(timed) * settings.novelty_early_fraction)
    segments: dict[str, tuple[list[float], list[float]]] = {}
    for i, rollup in enumerate(timed):
        early, late = segments.setdefault(rollup.variant_id, ([], []))
        (early if i < cutoff else late).append(metric_value(rollup, metric))

    if control_id not in segments:
        return NoveltyResult(message="no control visitors yet")

    control_early, control_late = segments[control_id]
    minimum = settings.novelty_min_visitors
    checks: list[NoveltyCheck] = []
    for variant_id in sorted(segments):
        if variant_id == control_id:
            continue
        early, late = segments[variant_id]
        if min(len(early), len(late), len(control_early), len(control_late)) < minimum:
            continue
        early_effect = _lift(control_early, early)
        late_effect = _lift(control_late, late)
        detected = (
            early_effect >= settings.novelty_min_effect
            and late_effect < early_effect * settings.novelty_decay_ratio
        )
        checks.append(
            NoveltyCheck(
                variant_id=variant_id,
                early_effect=early_effect,
                late_effect=late_effect,
                detected=detected,
            )
        )

    if not checks:
        return NoveltyResult(message="not enough visitors per segment")

    detected = any(c.detected for c in checks)
    return NoveltyResult(
        detected=detected,
        sufficient_data=True,
        checks=checks,
        message=(
            "early lift decays; observe longer before trusting the result"
            if detected
            else "treatment effect stable over time"
        ),
    )


# ---------------------------------------------------------------------------
# Learning effect
# ---------------------------------------------------------------------------


def daily_lifts(
    rollups: Sequence[VisitorRollup], control_id: str, variant_id: str, metric: str
) -> list[float]:
    """Percent lift of ``variant_id`` over control per day of first exposure.

    Days where either side has no exposed visitors are skipped.
    """
    days: dict[date, tuple[list[float], list[float]]] = {}
    for r in rollups:
        if not r.exposed or r.first_exposed_at is None:
            continue
        if r.variant_id not in (control_id, variant_id):
            continue
        control, variant = days.setdefault(r.first_exposed_at.date(), ([], []))
        (control if r.variant_id == control_id else variant).append(metric_value(r, metric))

    return [
        _lift(control, variant)
        for _, (control, variant) in sorted(days.items())
        if control and variant
    ]


def detect_learning_effect(
    rollups: Sequence[VisitorRollup],
    control_id: str,
    metric: str,
    settings: QualitySettings | None = None,
) -> LearningEffectResult:
    """Flag treatments whose daily lift keeps growing as visitors learn the change.

    Daily lifts are split into a first and second half. Growth is
    ``(second - first) / |first|``; a treatment is flagged when growth exceeds
    ``learning_growth_threshold`` and the second half is higher. The projected
    lift adds the half-over-half gain to the latest day.
    """
    settings = settings or QualitySettings()
    treatments = sorted({r.variant_id for r in rollups if r.variant_id != control_id})

    checks: list[LearningEffectCheck] = []
    days_seen = 0
    for variant_id in treatments:
        lifts = daily_lifts(rollups, control_id, variant_id, metric)
        days_seen = max(days_seen, len(lifts))
        if len(lifts) < max(settings.learning_min_days, 2):
            continue
        half = len(lifts) // 2
        first = float(np.mean(lifts[:half]))
        second = float(np.mean(lifts[half:]))
        growth = (second - first) / abs(first) if first != 0 else 0.0
        current = lifts[-1]
        checks.append(
            LearningEffectCheck(
                variant_id=variant_id,
                first_half_lift=first,
                second_half_lift=second,
                growth_rate=growth,
                current_lift=current,
                projected_lift=current + (second - first),
                detected=growth > settings.learning_growth_threshold and second > first,
            )
        )

    if not checks:
        return LearningEffectResult(
            days=days_seen,
            message=f"insufficient data ({days_seen}/{settings.learning_min_days} days)",
        )

    flagged = [c for c in checks if c.detected]
    return LearningEffectResult(
        detected=bool(flagged),
        sufficient_data=True,
        days=days_seen,
        checks=checks,
        message=(
            "; ".join(
                f"{c.variant_id} lift improving from {c.first_half_lift:.1f}% "
                f"to {c.second_half_lift:.1f}%"
                for c in flagged
            )
            if flagged
            else "no learning effect detected"
        ),
    )


# ---------------------------------------------------------------------------
# Covariate drift
# ---------------------------------------------------------------------------


def _window_table(
    window: Sequence[VisitorRollup], dimension: str
) -> np.ndarray | None:
    variants = sorted({r.variant_id for r in window})
    categories = sorted({getattr(r, dimension) or "unknown" for r in window})
    if len(variants) < 2 or len(categories) < 2:
        return None

    table = np.zeros((len(variants), len(categories)))
    v_index = {v: i for i, v in enumerate(variants)}
    c_index = {c: i for i, c in enumerate(categories)}
    for r in window:
        table[v_index[r.variant_id], c_index[getattr(r, dimension) or "unknown"]] += 1
    return table


def detect_drift(
    rollups: Sequence[VisitorRollup],
    settings: QualitySettings | None = None,
) -> DriftResult:
    """Chi-square independence of variant and covariate over rolling windows.

    Assigned visitors are ordered by assignment time and split into
    ``drift_windows`` equal windows. Within each window and each dimension the
    variant x category table is tested; p-values are compared against
    ``drift_alpha / drift_windows``.
    """
    settings = settings or QualitySettings()
    ordered = sorted(
        (r for r in rollups if r.assigned_at is not None),
        key=lambda r: (r.assigned_at, r.visitor_id),
    )
    if len(ordered) < settings.drift_min_visitors:
        return DriftResult(message="not enough visitors for drift detection")

    threshold = settings.drift_alpha / settings.drift_windows
    bounds = np.array_split(np.arange(len(ordered)), settings.drift_windows)
    windows: list[DriftWindow] = []
    for dimension in settings.drift_dimensions:
        for i, idx in enumerate(bounds):
            if len(idx) == 0:
                continue
            table = _window_table([ordered[j] for j in idx], dimension)
            if table is None:
                continue
            chi2, p_value, _, _ = scipy_stats.chi2_contingency(table)
            windows.append(
                DriftWindow(
                    dimension=dimension,
                    window=i,
                    chi_square=float(chi2),
                    p_value=float(p_value),
                    significant=bool(p_value < threshold),
                )
            )

    if not windows:
        return DriftResult(message="covariates not captured")

    flagged = [w for w in windows if w.significant]
    return DriftResult(
        detected=bool(flagged),
        sufficient_data=True,
        windows=windows,
        message=(
            f"covariate imbalance in {', '.join(sorted({w.dimension for w in flagged}))}"
            if flagged
            else "covariates balanced across variants"
        ),
    )


# ---------------------------------------------------------------------------
# Shipping mismatch
# ---------------------------------------------------------------------------


def summarize_mismatches(
    total_orders: int,
    mismatched_orders: int,
    warning_rate: float = 0.05,
) -> MismatchSummary:
    rate = mismatched_orders / total_orders if total_orders else 0.0
    return MismatchSummary(
        total_orders=total_orders,
        mismatched_orders=mismatched_orders,
        mismatch_rate=rate,
        warning=rate > warning_rate,
    )
