"""Lifetime value of the customers each variant converted.

A customer's LTV at ``N`` days is the revenue of every order placed within
``N`` days of their first order. Cohorts are compared period by period with
a bootstrap of the difference in mean LTV, so a variant that wins on the
first order but loses on repeat purchases shows up here and not in the
headline result.
"""

from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

import numpy as np
import structlog
from scipy import stats as scipy_stats
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import EventDB

from .config import LtvSettings
from .models import (
    CustomerOrders,
    EventType,
    LtvCohort,
    LtvComparison,
    LtvPeriodComparison,
    LtvPeriodStats,
    LtvReport,
)
from .statistics import bootstrap_mean_difference, bootstrap_mean_interval

logger = structlog.get_logger()


def orders_within(customer: CustomerOrders, days: int) -> list[int]:
    """Order values placed within ``days`` of the customer's first order."""
    cutoff = customer.first_order_at + timedelta(days=days)
    return [cents for placed_at, cents in customer.orders if placed_at <= cutoff]


def period_values(customers: Sequence[CustomerOrders], days: int) -> np.ndarray:
    return np.array([sum(orders_within(c, days)) for c in customers], dtype=float)


def period_stats(
    customers: Sequence[CustomerOrders],
    days: int,
    n_resamples: int = 2_000,
    confidence_level: float = 0.95,
    seed: int | None = None,
) -> LtvPeriodStats:
    if not customers:
        return LtvPeriodStats(days=days)

    per_customer = [orders_within(c, days) for c in customers]
    values = np.array([sum(orders) for orders in per_customer], dtype=float)
    counts = np.array([len(orders) for orders in per_customer])
    order_values = [sum(orders) / len(orders) for orders in per_customer if orders]
    return LtvPeriodStats(
        days=days,
        ltv_cents=float(values.mean()),
        orders_per_customer=float(counts.mean()),
        repurchase_rate=float((counts >= 2).mean()),
        average_order_value_cents=float(np.mean(order_values)) if order_values else 0.0,
        confidence_interval=bootstrap_mean_interval(
            values, n_resamples, confidence_level, seed
        ),
    )


def cohort_ltv(
    customers: Sequence[CustomerOrders],
    variant_id: str,
    is_control: bool = False,
    settings: LtvSettings | None = None,
    confidence_level: float = 0.95,
    seed: int | None = None,
) -> LtvCohort:
    settings = settings or LtvSettings()
    cohort = [c for c in customers if c.variant_id == variant_id]
    return LtvCohort(
        variant_id=variant_id,
        is_control=is_control,
        cohort_size=len(cohort),
        periods=[
            period_stats(cohort, days, settings.bootstrap_samples, confidence_level, seed)
            for days in settings.periods
        ],
    )


def _lift(control: float, variant: float) -> float:
    if control == 0:
        return 0.0
    return (variant - control) / control * 100


def _p_value(estimate: float, standard_error: float) -> float:
    """Two-sided normal p-value for a bootstrap estimate and its standard error."""
    if standard_error == 0:
        return 1.0
    return float(2 * scipy_stats.norm.sf(abs(estimate) / standard_error))


def _message(periods: Sequence[LtvPeriodComparison], long_term_different: bool) -> str:
    parts = []
    for p in (periods[0], periods[-1]):
        text = f"{p.days}-day LTV: {p.lift:+.1f}%"
        parts.append(f"{text} (significant)" if p.significant else text)
    if long_term_different:
        parts.append("long-term impact differs from short-term; wait for more data")
    return ". ".join(dict.fromkeys(parts))


def compare_ltv(
    customers: Sequence[CustomerOrders],
    control_id: str,
    variant_id: str,
    settings: LtvSettings | None = None,
    confidence_level: float = 0.95,
    seed: int | None = None,
) -> LtvComparison:
    """Compare a treatment cohort's LTV with control for every period."""
    settings = settings or LtvSettings()
    control = [c for c in customers if c.variant_id == control_id]
    treatment = [c for c in customers if c.variant_id == variant_id]
    if min(len(control), len(treatment)) < max(settings.min_cohort_size, 1):
        return LtvComparison(
            variant_id=variant_id,
            message=(
                f"cohorts too small ({len(control)} control, {len(treatment)} treatment; "
                f"need {settings.min_cohort_size})"
            ),
        )

    periods: list[LtvPeriodComparison] = []
    for days in settings.periods:
        c_values = period_values(control, days)
        v_values = period_values(treatment, days)
        difference = bootstrap_mean_difference(
            c_values, v_values, settings.bootstrap_samples, confidence_level, seed
        )
        periods.append(
            LtvPeriodComparison(
                days=days,
                lift=_lift(float(c_values.mean()), float(v_values.mean())),
                difference=difference,
                p_value=_p_value(difference.estimate, difference.standard_error),
                significant=difference.lower > 0 or difference.upper < 0,
            )
        )

    first, last = periods[0].lift, periods[-1].lift
    long_term_different = bool(
        np.sign(first) != np.sign(last) or abs(last - first) > settings.long_term_lift_gap
    )
    return LtvComparison(
        variant_id=variant_id,
        periods=periods,
        long_term_different=long_term_different,
        message=_message(periods, long_term_different),
    )


def available_periods(
    ended_at: datetime | None,
    periods: Sequence[int],
    now: datetime | None = None,
) -> list[int]:
    """Periods that have fully elapsed since the test ended."""
    if ended_at is None:
        return []
    elapsed = ((now or datetime.now(UTC)) - ended_at).days
    return [days for days in periods if elapsed >= days]


def ltv_report(
    test_id: str,
    control_id: str,
    variant_ids: Sequence[str],
    customers: Sequence[CustomerOrders],
    ended_at: datetime | None = None,
    settings: LtvSettings | None = None,
    confidence_level: float = 0.95,
    seed: int | None = None,
    now: datetime | None = None,
) -> LtvReport:
    settings = settings or LtvSettings()
    return LtvReport(
        test_id=test_id,
        control_variant_id=control_id,
        available_periods=available_periods(ended_at, settings.periods, now),
        cohorts=[
            cohort_ltv(customers, vid, vid == control_id, settings, confidence_level, seed)
            for vid in variant_ids
        ],
        comparisons=[
            compare_ltv(customers, control_id, vid, settings, confidence_level, seed)
            for vid in variant_ids
            if vid != control_id
        ],
    )


async def load_customer_orders(
    session: AsyncSession, tenant_id: str, test_id: str
) -> list[CustomerOrders]:
    """Recorded revenue events grouped into one order history per customer."""
    result = await session.execute(
        select(EventDB.visitor_id, EventDB.variant_id, EventDB.occurred_at, EventDB.value_cents)
        .where(
            EventDB.tenant_id == tenant_id,
            EventDB.test_id == test_id,
            EventDB.event_type == EventType.REVENUE,
        )
        .order_by(EventDB.visitor_id, EventDB.occurred_at, EventDB.id)
    )

    grouped: dict[str, tuple[str, list[tuple[datetime, int]]]] = {}
    for visitor_id, variant_id, occurred_at, cents in result.all():
        _, orders = grouped.setdefault(visitor_id, (variant_id, []))
        orders.append((occurred_at, int(cents or 0)))

    customers = [
        CustomerOrders(visitor_id=visitor_id, variant_id=variant_id, orders=tuple(orders))
        for visitor_id, (variant_id, orders) in grouped.items()
    ]
    logger.debug(
        "ltv_orders_loaded", tenant_id=tenant_id, test_id=test_id, customers=len(customers)
    )
    return customers
