"""Guardrail evaluation: secondary metrics that can halt a test on their own."""

import math
from collections.abc import Mapping, Sequence

from scipy import stats as scipy_stats

from .config import GuardrailSettings
from .models import GuardrailDefinition, GuardrailDirection, GuardrailStatus, VariantTotals


def _rate(totals: VariantTotals, metric: str) -> float:
    if not totals.visitors:
        return 0.0
    return totals.guardrail_counts.get(metric, 0) / totals.visitors


def check_guardrail(
    definition: GuardrailDefinition,
    control: VariantTotals,
    variant: VariantTotals,
    settings: GuardrailSettings | None = None,
) -> GuardrailStatus:
    """One-sided test of a variant's hit rate against the degraded control rate.

    For ``lower_is_better`` metrics the null is ``rate_v <= rate_c * (1 + d)``;
    for ``higher_is_better`` it is ``rate_v >= rate_c * (1 - d)``. The
    standard error accounts for sampling noise in both groups.
    """
    settings = settings or GuardrailSettings()
    rate_c = _rate(control, definition.metric)
    rate_v = _rate(variant, definition.metric)

    if definition.direction == GuardrailDirection.HIGHER_IS_BETTER:
        factor = 1 - definition.max_degradation
        excess = rate_c * factor - rate_v
    else:
        factor = 1 + definition.max_degradation
        excess = rate_v - rate_c * factor
    threshold = rate_c * factor

    status = GuardrailStatus(
        metric=definition.metric,
        variant_id=variant.variant_id,
        control_rate=rate_c,
        variant_rate=rate_v,
        threshold=threshold,
        direction=definition.direction,
    )
    if min(control.visitors, variant.visitors) < settings.min_visitors:
        return status

    se = math.sqrt(
        rate_v * (1 - rate_v) / variant.visitors
        + factor**2 * rate_c * (1 - rate_c) / control.visitors
    )
    if se == 0:
        p_value = 0.0 if excess > 0 else 1.0
    else:
        p_value = float(scipy_stats.norm.sf(excess / se))

    return status.model_copy(
        update={"p_value": p_value, "breached": p_value < settings.alpha}
    )


def evaluate_guardrails(
    definitions: Sequence[GuardrailDefinition],
    totals: Mapping[str, VariantTotals],
    control_id: str,
    settings: GuardrailSettings | None = None,
) -> list[GuardrailStatus]:
    """Check every guardrail for every non-control variant."""
    control = totals.get(control_id, VariantTotals(variant_id=control_id))
    statuses: list[GuardrailStatus] = []
    for definition in definitions:
        for variant_id in sorted(totals):
            if variant_id == control_id:
                continue
            statuses.append(check_guardrail(definition, control, totals[variant_id], settings))
    return statuses
