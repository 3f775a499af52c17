"""Tests for cohort lifetime value analysis."""

from datetime import UTC, datetime, timedelta

import pytest

from src.domains.experiments.config import LtvSettings
from src.domains.experiments.ltv import (
    available_periods,
    cohort_ltv,
    compare_ltv,
    load_customer_orders,
    ltv_report,
    orders_within,
)
from src.domains.experiments.models import CustomerOrders
from tests.conftest import make_result, session_returning

T0 = datetime(2026, 1, 5, tzinfo=UTC)


def _customer(visitor_id: str, variant_id: str, *orders: tuple[int, int]) -> CustomerOrders:
    """``orders`` are (day offset from first order, cents)."""
    return CustomerOrders(
        visitor_id=visitor_id,
        variant_id=variant_id,
        orders=tuple((T0 + timedelta(days=day), cents) for day, cents in orders),
    )


def _cohorts(n: int = 40) -> list[CustomerOrders]:
    """Control buys once; treatment buys the same first order and again on day 45."""
    customers = []
    for i in range(n):
        first = 4000 + (i % 5) * 100
        customers.append(_customer(f"c-{i}", "control", (0, first)))
        customers.append(_customer(f"t-{i}", "treatment", (0, first), (45, 3000)))
    return customers


def _settings(**kwargs) -> LtvSettings:
    return LtvSettings(bootstrap_samples=300, **kwargs)


class TestOrdersWithin:
    def test_window_is_relative_to_first_order(self):
        customer = _customer("v", "control", (0, 1000), (30, 2000), (31, 500))
        assert orders_within(customer, 30) == [1000, 2000]
        assert orders_within(customer, 60) == [1000, 2000, 500]


class TestCohortLtv:
    def test_period_metrics(self):
        customers = [
            _customer("a", "treatment", (0, 1000), (10, 3000)),
            _customer("b", "treatment", (0, 2000)),
            _customer("z", "control", (0, 9999)),
        ]
        cohort = cohort_ltv(customers, "treatment", settings=_settings(), seed=1)

        assert cohort.cohort_size == 2
        day30 = cohort.periods[0]
        assert day30.days == 30
        assert day30.ltv_cents == pytest.approx(3000.0)
        assert day30.orders_per_customer == pytest.approx(1.5)
        assert day30.repurchase_rate == pytest.approx(0.5)
        # per-customer AOV: 2000 and 2000
        assert day30.average_order_value_cents == pytest.approx(2000.0)
        lower, upper = day30.confidence_interval
        assert lower <= day30.ltv_cents <= upper

    def test_empty_cohort(self):
        cohort = cohort_ltv([], "treatment", settings=_settings())
        assert cohort.cohort_size == 0
        assert all(p.ltv_cents == 0.0 for p in cohort.periods)


class TestCompareLtv:
    def test_repeat_purchases_show_up_after_thirty_days(self):
        comparison = compare_ltv(_cohorts(), "control", "treatment", _settings(), seed=3)

        by_days = {p.days: p for p in comparison.periods}
        assert by_days[30].lift == pytest.approx(0.0)
        assert not by_days[30].significant
        assert by_days[60].lift > 50
        assert by_days[60].significant
        assert by_days[60].p_value < 0.05
        assert comparison.long_term_different
        assert "90-day LTV" in comparison.message

    def test_consistent_lift_is_not_long_term_different(self):
        customers = []
        for i in range(40):
            customers.append(_customer(f"c-{i}", "control", (0, 4000 + i)))
            customers.append(_customer(f"t-{i}", "treatment", (0, 4400 + i)))
        comparison = compare_ltv(customers, "control", "treatment", _settings(), seed=3)
        assert not comparison.long_term_different
        assert all(p.lift == pytest.approx(comparison.periods[0].lift) for p in comparison.periods)

    def test_small_cohorts_are_not_compared(self):
        comparison = compare_ltv(_cohorts(10), "control", "treatment", _settings())
        assert comparison.periods == []
        assert "too small" in comparison.message


class TestAvailablePeriods:
    def test_not_ended(self):
        assert available_periods(None, (30, 60, 90)) == []

    def test_elapsed_days(self):
        now = T0 + timedelta(days=61)
        assert available_periods(T0, (30, 60, 90), now) == [30, 60]


class TestLtvReport:
    def test_cohort_per_variant_and_comparison_per_treatment(self):
        report = ltv_report(
            "checkout-copy",
            "control",
            ["control", "treatment"],
            _cohorts(),
            ended_at=T0,
            settings=_settings(),
            seed=5,
            now=T0 + timedelta(days=100),
        )
        assert [c.variant_id for c in report.cohorts] == ["control", "treatment"]
        assert report.cohorts[0].is_control
        assert [c.variant_id for c in report.comparisons] == ["treatment"]
        assert report.available_periods == [30, 60, 90]


class TestLoadCustomerOrders:
    @pytest.mark.asyncio
    async def test_groups_revenue_events_by_visitor(self):
        rows = [
            ("v-1", "control", T0, 1500),
            ("v-1", "control", T0 + timedelta(days=3), 800),
            ("v-2", "treatment", T0, None),
        ]
        session = session_returning(make_result(rows=rows))
        customers = await load_customer_orders(session, "tenant-1", "checkout-copy")

        by_id = {c.visitor_id: c for c in customers}
        assert by_id["v-1"].orders == ((T0, 1500), (T0 + timedelta(days=3), 800))
        assert by_id["v-1"].first_order_at == T0
        assert by_id["v-2"].variant_id == "treatment"
        assert by_id["v-2"].orders == ((T0, 0),)
