"""Per-variant result assembly for one pipeline pass."""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime

import numpy as np
import structlog

from .config import ExperimentConfig, StatisticsSettings, default_config
from .decision import decide
from .guardrails import evaluate_guardrails
from .hashing import control_of, ordered_variants
from .models import (
    AllocationMode,
    Decision,
    DriftResult,
    GuardrailDefinition,
    GuardrailStatus,
    LearningEffectResult,
    NoveltyResult,
    OptimizationMetric,
    SignificanceResult,
    SrmResult,
    VariantDefinition,
    VariantResult,
    VariantTotals,
    VisitorRollup,
)
from .multiple_testing import benjamini_hochberg, holm_bonferroni
from .quality import (
    check_srm,
    detect_drift,
    detect_learning_effect,
    detect_novelty,
    metric_value,
)
from .sequential import evaluate_boundary
from .statistics import (
    bootstrap_mean_difference,
    cuped_comparison,
    required_sample_size,
    required_sample_size_continuous,
    two_proportion_z_test,
    welch_t_test,
)

logger = structlog.get_logger()


def _revenue_metric(metric: str) -> str:
    if metric == OptimizationMetric.NET_REVENUE_PER_VISITOR:
        return metric
    return OptimizationMetric.REVENUE_PER_VISITOR


def planned_sample_size(
    metric: str,
    control_totals: VariantTotals,
    control_values: np.ndarray,
    mde: float,
    alpha: float,
    power: float,
) -> int:
    """Visitors per variant the test is planned for; 0 when it cannot be estimated yet."""
    try:
        if metric == OptimizationMetric.CONVERSION_RATE:
            return required_sample_size(control_totals.conversion_rate, mde, alpha, power)
        if len(control_values) < 2:
            return 0
        return required_sample_size_continuous(
            float(control_values.mean()), float(control_values.var(ddof=1)), mde, alpha, power
        )
    except ValueError:
        return 0


def analyze_variants(
    variants: Sequence[VariantDefinition],
    totals: Mapping[str, VariantTotals],
    rollups: Sequence[VisitorRollup],
    metric: str,
    confidence_level: float = 0.95,
    mde: float | None = None,
    settings: StatisticsSettings | None = None,
) -> list[VariantResult]:
    """Compare every treatment with control on the optimization metric.

    The conversion z-test and the revenue Welch test are both reported; the
    one matching ``metric`` drives the headline fields. CUPED and bootstrap
    results are attached beside it.
    """
    settings = settings or StatisticsSettings()
    alpha = 1 - confidence_level
    control = control_of(variants)
    revenue_metric = _revenue_metric(metric)

    by_variant: dict[str, list[VisitorRollup]] = {v.id: [] for v in variants}
    for rollup in rollups:
        if rollup.exposed and rollup.variant_id in by_variant:
            by_variant[rollup.variant_id].append(rollup)

    def values(variant_id: str, which: str) -> np.ndarray:
        return np.array([metric_value(r, which) for r in by_variant[variant_id]], dtype=float)

    def covariates(variant_id: str) -> list[float | None]:
        return [r.covariate for r in by_variant[variant_id]]

    control_totals = totals.get(control.id, VariantTotals(variant_id=control.id))
    control_primary = values(control.id, metric)
    control_revenue = values(control.id, revenue_metric)
    planned = 0
    if settings.sequential_testing:
        planned = planned_sample_size(
            metric,
            control_totals,
            control_primary,
            mde or settings.default_mde,
            alpha,
            settings.power,
        )

    results: list[VariantResult] = []
    for variant in ordered_variants(variants):
        t = totals.get(variant.id, VariantTotals(variant_id=variant.id))
        net = sum(r.net_revenue_cents for r in by_variant[variant.id])
        result = VariantResult(
            variant_id=variant.id,
            name=variant.name,
            is_control=variant.is_control,
            visitors=t.visitors,
            conversions=t.conversions,
            orders=t.orders,
            conversion_rate=t.conversion_rate,
            revenue_cents=t.revenue_cents,
            revenue_per_visitor=t.revenue_per_visitor,
            net_revenue_per_visitor=net / t.visitors if t.visitors else 0.0,
            revenue_variance=t.revenue_variance,
        )
        if variant.id == control.id:
            results.append(result)
            continue

        conversion = two_proportion_z_test(
            control_totals.visitors,
            control_totals.conversions,
            t.visitors,
            t.conversions,
            confidence_level,
        )
        variant_revenue = values(variant.id, revenue_metric)
        revenue = welch_t_test(control_revenue, variant_revenue, confidence_level)
        primary: SignificanceResult = (
            conversion if metric == OptimizationMetric.CONVERSION_RATE else revenue
        )

        variant_primary = values(variant.id, metric)
        cuped = cuped_comparison(
            list(control_primary),
            covariates(control.id),
            list(variant_primary),
            covariates(variant.id),
            confidence_level,
            settings.cuped_min_correlation,
        )
        bootstrap = bootstrap_mean_difference(
            control_revenue,
            variant_revenue,
            settings.bootstrap_samples,
            confidence_level,
            settings.bootstrap_seed,
        )
        sequential = None
        if settings.sequential_testing:
            sequential = evaluate_boundary(
                primary.statistic, min(control_totals.visitors, t.visitors), planned, alpha
            )

        results.append(
            result.model_copy(
                update={
                    "z_score": primary.statistic,
                    "p_value": primary.p_value,
                    "confidence_interval": primary.confidence_interval,
                    "improvement": primary.improvement,
                    "is_significant": primary.is_significant,
                    "conversion": conversion,
                    "revenue": revenue,
                    "cuped": cuped,
                    "bootstrap": bootstrap,
                    "sequential": sequential,
                }
            )
        )

    treatments = {r.variant_id: r.p_value for r in results if not r.is_control}
    holm = holm_bonferroni(treatments, alpha)
    bh = benjamini_hochberg(treatments, alpha)
    return [
        r.model_copy(
            update={
                "holm_significant": holm.get(r.variant_id, False),
                "bh_significant": bh.get(r.variant_id, False),
            }
        )
        for r in results
    ]


@dataclass
class PassEvaluation:
    results: list[VariantResult]
    srm: SrmResult
    novelty: NoveltyResult
    learning_effect: LearningEffectResult
    drift: DriftResult
    guardrails: list[GuardrailStatus]
    decision: Decision

    @property
    def guardrail_breached(self) -> bool:
        return any(g.breached for g in self.guardrails)


def sample_ratio_check(
    variants: Sequence[VariantDefinition],
    totals: Mapping[str, VariantTotals],
    allocation_mode: str,
    alpha: float,
) -> SrmResult:
    """SRM against the configured split; skipped when a bandit moves the split."""
    observed = {vid: t.visitors for vid, t in totals.items()}
    if allocation_mode == AllocationMode.THOMPSON:
        return SrmResult(observed=observed, skipped=True)
    return check_srm(observed, {v.id: v.allocation for v in variants}, alpha)


def evaluate_pass(
    variants: Sequence[VariantDefinition],
    totals: Mapping[str, VariantTotals],
    rollups: Sequence[VisitorRollup],
    metric: str,
    *,
    confidence_level: float = 0.95,
    mde: float | None = None,
    allocation_mode: str = AllocationMode.HASH,
    guardrails: Sequence[GuardrailDefinition] = (),
    started_at: datetime | None = None,
    max_duration_days: int | None = None,
    config: ExperimentConfig = default_config,
) -> PassEvaluation:
    """Statistics, quality checks and the decision for one pass.

    CPU-bound and free of I/O, so the pipeline runs it off the event loop.
    """
    control = control_of(variants)
    results = analyze_variants(
        variants, totals, rollups, metric, confidence_level, mde, config.statistics
    )
    srm = sample_ratio_check(variants, totals, allocation_mode, config.quality.srm_alpha)
    statuses = evaluate_guardrails(guardrails, totals, control.id, config.guardrails)

    decision = decide(
        results,
        srm,
        any(g.breached for g in statuses),
        started_at,
        max_duration_days or config.decision.default_max_duration_days,
        config.statistics.min_sample_size,
        config.statistics.sequential_testing,
    )
    return PassEvaluation(
        results=[
            r.model_copy(
                update={
                    "srm_contribution": srm.contributions.get(r.variant_id, 0.0),
                    "guardrails": [g for g in statuses if g.variant_id == r.variant_id],
                }
            )
            for r in results
        ],
        srm=srm,
        novelty=detect_novelty(rollups, control.id, metric, config.quality),
        learning_effect=detect_learning_effect(rollups, control.id, metric, config.quality),
        drift=detect_drift(rollups, config.quality),
        guardrails=statuses,
        decision=decision,
    )
