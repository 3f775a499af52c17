"""Tests for event folding and the watermarked aggregation pass."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from src.domains.experiments.aggregation import (
    aggregate_test,
    event_from_row,
    fold_events,
    get_watermark,
)
from src.domains.experiments.models import (
    Conversion,
    Exposure,
    GuardrailHit,
    RecordedEvent,
    Revenue,
    VariantTotals,
    VisitorRollup,
)
from tests.conftest import make_result, session_returning

T0 = datetime(2026, 4, 1, 12, 0, tzinfo=UTC)


def _rec(event_id: int, variant_id: str, event) -> RecordedEvent:
    return RecordedEvent(event_id=event_id, variant_id=variant_id, event=event)


class TestFoldEvents:
    def test_exposure_counts_visitor_once(self, two_variants):
        rollups, totals = {}, {}
        events = [
            _rec(1, "control", Exposure("v1", T0)),
            _rec(2, "control", Exposure("v1", T0 + timedelta(minutes=5))),
            _rec(3, "treatment", Exposure("v2", T0)),
        ]
        fold_events(rollups, totals, events, {v.id: v for v in two_variants})
        assert totals["control"].visitors == 1
        assert totals["treatment"].visitors == 1
        assert rollups["v1"].first_exposed_at == T0

    def test_unexposed_visitor_not_counted(self, two_variants):
        rollups, totals = {}, {}
        fold_events(
            rollups, totals, [_rec(1, "control", Conversion("v1"))], {v.id: v for v in two_variants}
        )
        assert totals["control"].visitors == 0
        assert totals["control"].conversions == 0
        assert rollups["v1"].converted

        # The exposure arrives later; the conversion now counts
        fold_events(rollups, totals, [_rec(2, "control", Exposure("v1", T0))], {})
        assert totals["control"].visitors == 1
        assert totals["control"].conversions == 1

    def test_revenue_marks_conversion_and_sums_squares(self, two_variants):
        rollups, totals = {}, {}
        events = [
            _rec(1, "treatment", Exposure("v1", T0)),
            _rec(2, "treatment", Revenue("v1", "order-1", 3000)),
            _rec(3, "treatment", Revenue("v1", "order-2", 2000, cost_cents=500)),
            _rec(4, "treatment", Exposure("v2", T0)),
        ]
        fold_events(rollups, totals, events, {v.id: v for v in two_variants})
        t = totals["treatment"]
        assert t.visitors == 2
        assert t.conversions == 1
        assert t.orders == 2
        assert t.revenue_cents == 5000
        # Per-visitor revenue: 5000 and 0
        assert t.revenue_sum_squares == 5000.0**2
        assert rollups["v1"].net_revenue_cents == 4500

    def test_incremental_matches_single_pass(self, two_variants):
        variants = {v.id: v for v in two_variants}
        events = [
            _rec(1, "control", Exposure("a", T0)),
            _rec(2, "control", Exposure("b", T0)),
            _rec(3, "control", Revenue("a", "o1", 1200)),
            _rec(4, "control", Revenue("b", "o2", 800)),
            _rec(5, "control", Revenue("a", "o3", 400)),
            _rec(6, "control", Exposure("c", T0)),
        ]
        once_rollups, once_totals = {}, {}
        fold_events(once_rollups, once_totals, events, variants)

        inc_rollups, inc_totals = {}, {}
        for chunk in (events[:2], events[2:4], events[4:]):
            fold_events(inc_rollups, inc_totals, chunk, variants)

        assert inc_totals["control"] == once_totals["control"]
        values = [1600.0, 800.0, 0.0]
        mean = sum(values) / 3
        expected_var = sum((x - mean) ** 2 for x in values) / 2
        assert inc_totals["control"].revenue_variance == pytest.approx(expected_var)

    def test_guardrail_hits_counted_per_visitor(self, two_variants):
        rollups, totals = {}, {}
        events = [
            _rec(1, "treatment", Exposure("v1", T0)),
            _rec(2, "treatment", GuardrailHit("v1", "page_error")),
            _rec(3, "treatment", GuardrailHit("v1", "page_error")),
            _rec(4, "treatment", GuardrailHit("v1", "checkout_abandon")),
        ]
        fold_events(rollups, totals, events, {v.id: v for v in two_variants})
        assert totals["treatment"].guardrail_counts == {"page_error": 1, "checkout_abandon": 1}

    def test_shipping_mismatch_recorded_once_and_revenue_kept(self, shipping_variants):
        rollups, totals = {}, {}
        events = [
            _rec(1, "ship_b", Exposure("v1", T0)),
            _rec(2, "ship_b", Revenue("v1", "order-9", 4500, shipping_suffix="A")),
            _rec(3, "ship_b", Exposure("v2", T0)),
            _rec(4, "ship_b", Revenue("v2", "order-10", 2500, shipping_suffix="b")),
        ]
        mismatches = fold_events(rollups, totals, events, {v.id: v for v in shipping_variants})
        assert len(mismatches) == 1
        assert mismatches[0].order_id == "order-9"
        assert mismatches[0].expected_suffix == "B"
        assert mismatches[0].observed_suffix == "A"
        assert totals["ship_b"].revenue_cents == 7000

    def test_unknown_event_kind(self):
        with pytest.raises(TypeError):
            fold_events({}, {}, [_rec(1, "control", object())], {})

    def test_existing_rollup_delta(self):
        rollups = {
            "v1": VisitorRollup("v1", "control", exposed=True, revenue_cents=1000, orders=1,
                                converted=True)
        }
        totals = {
            "control": VariantTotals(
                "control", visitors=1, conversions=1, orders=1, revenue_cents=1000,
                revenue_sum_squares=1000.0**2,
            )
        }
        fold_events(rollups, totals, [_rec(7, "control", Revenue("v1", "o2", 500))], {})
        assert totals["control"].visitors == 1
        assert totals["control"].conversions == 1
        assert totals["control"].revenue_cents == 1500
        assert totals["control"].revenue_sum_squares == 1500.0**2


def _event_row(event_id, event_type, visitor_id="v1", variant_id="control", **kwargs):
    row = MagicMock()
    row.id = event_id
    row.event_type = event_type
    row.visitor_id = visitor_id
    row.variant_id = variant_id
    row.occurred_at = kwargs.get("occurred_at", T0)
    row.order_id = kwargs.get("order_id")
    row.value_cents = kwargs.get("value_cents", 0)
    row.cost_cents = kwargs.get("cost_cents", 0)
    row.metric = kwargs.get("metric")
    row.shipping_suffix = kwargs.get("shipping_suffix")
    return row


class TestEventFromRow:
    def test_kinds(self):
        assert isinstance(event_from_row(_event_row(1, "exposure")), Exposure)
        assert isinstance(event_from_row(_event_row(2, "conversion")), Conversion)
        revenue = event_from_row(_event_row(3, "revenue", order_id="o1", value_cents=990))
        assert revenue == Revenue("v1", "o1", 990, 0, None, T0)
        hit = event_from_row(_event_row(4, "guardrail", metric="page_error"))
        assert hit.metric == "page_error"

    def test_unknown(self):
        with pytest.raises(ValueError):
            event_from_row(_event_row(5, "click"))


class TestAggregateTest:
    @pytest.mark.asyncio
    async def test_watermark_defaults_to_zero(self):
        session = session_returning(make_result(scalar=None))
        assert await get_watermark(session, "t1", "exp") == 0

    @pytest.mark.asyncio
    async def test_no_new_events(self, two_variants):
        session = session_returning(
            make_result(scalar=42),  # watermark
            make_result(scalars=[]),  # events
            make_result(scalars=[]),  # latest totals
        )
        outcome = await aggregate_test(session, "t1", "exp", two_variants)
        assert outcome.events_processed == 0
        assert outcome.watermark == 42
        assert set(outcome.totals) == {"control", "treatment"}
        session.add_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_folds_batch_and_advances_watermark(self, two_variants):
        rows = [
            _event_row(11, "exposure", "v1", "control"),
            _event_row(12, "exposure", "v2", "treatment"),
            _event_row(13, "revenue", "v2", "treatment", order_id="o1", value_cents=2500),
        ]
        session = session_returning(
            make_result(scalar=10),  # watermark
            make_result(scalars=rows),  # events
            make_result(scalars=[]),  # latest totals
            make_result(scalars=[]),  # existing rollups
            make_result(),  # upsert rollups
            make_result(),  # advance watermark
        )
        outcome = await aggregate_test(session, "t1", "exp", two_variants)

        assert outcome.events_processed == 3
        assert outcome.watermark == 13
        assert outcome.totals["treatment"].revenue_cents == 2500
        assert outcome.totals["control"].visitors == 1
        assert session.execute.await_count == 6
        snapshots = session.add_all.call_args[0][0]
        assert {s.variant_id for s in snapshots} == {"control", "treatment"}
        session.commit.assert_not_awaited()
