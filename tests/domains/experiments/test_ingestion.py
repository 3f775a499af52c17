"""Tests for event parsing, dedup keys and idempotent recording."""

from unittest.mock import MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from src.domains.experiments.ingestion import (
    EventRejected,
    dedup_key,
    parse_event,
    record_event,
)
from src.domains.experiments.models import (
    Conversion,
    EventRequest,
    Exposure,
    GuardrailHit,
    Revenue,
)
from tests.conftest import make_result, session_returning


def _request(**overrides) -> EventRequest:
    body = {"testId": "ship-test", "visitorId": "visitor-1", "eventType": "exposure"}
    body.update(overrides)
    return EventRequest.model_validate(body)


def _abtest(status="running", test_type="landing_page"):
    test = MagicMock()
    test.id = "ship-test"
    test.status = status
    test.test_type = test_type
    return test


def _assignment(variant_id="ship_b"):
    row = MagicMock()
    row.variant_id = variant_id
    return row


class TestParseEvent:
    def test_exposure(self):
        assert isinstance(parse_event(_request()), Exposure)

    def test_conversion(self):
        event = parse_event(_request(eventType="conversion", orderId="o-1"))
        assert isinstance(event, Conversion)
        assert event.order_id == "o-1"

    def test_revenue(self):
        event = parse_event(
            _request(eventType="revenue", orderId="o-1", valueCents=4999, costCents=1200)
        )
        assert isinstance(event, Revenue)
        assert event.cents == 4999
        assert event.cost_cents == 1200

    def test_revenue_requires_order_id(self):
        with pytest.raises(EventRejected) as exc_info:
            parse_event(_request(eventType="revenue", valueCents=100))
        assert exc_info.value.reason == "missing_order_id"

    def test_negative_revenue_rejected(self):
        with pytest.raises(EventRejected) as exc_info:
            parse_event(_request(eventType="revenue", orderId="o-1", valueCents=-5))
        assert exc_info.value.reason == "invalid_value"

    def test_guardrail_requires_metric(self):
        with pytest.raises(EventRejected):
            parse_event(_request(eventType="guardrail"))
        event = parse_event(_request(eventType="guardrail", metric="page_error"))
        assert isinstance(event, GuardrailHit)


class TestDedupKey:
    def test_order_id_wins(self):
        assert dedup_key(Revenue("v1", "o-9", 100)) == "order:o-9"
        assert dedup_key(Conversion("v1", "o-9")) == "order:o-9"

    def test_visitor_scoped(self):
        assert dedup_key(Exposure("v1")) == "visitor:v1"
        assert dedup_key(Conversion("v1")) == "visitor:v1"

    def test_guardrail_scoped_by_metric(self):
        assert dedup_key(GuardrailHit("v1", "page_error")) == "visitor:v1:page_error"


class TestRecordEvent:
    @pytest.mark.asyncio
    async def test_accepted(self):
        session = session_returning(
            make_result(scalar=_abtest()),
            make_result(scalar=_assignment()),
            make_result(rowcount=1),
        )
        result = await record_event(session, "tenant-1", _request())
        assert result.accepted
        assert result.reason is None
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_is_acknowledged(self):
        session = session_returning(
            make_result(scalar=_abtest()),
            make_result(scalar=_assignment()),
            make_result(rowcount=0),
        )
        result = await record_event(
            session, "tenant-1", _request(eventType="revenue", orderId="o-1", valueCents=100)
        )
        assert result.accepted
        assert result.reason == "duplicate"

    @pytest.mark.asyncio
    async def test_unknown_test(self):
        session = session_returning(make_result(scalar=None))
        result = await record_event(session, "tenant-1", _request())
        assert not result.accepted
        assert result.reason == "test_not_found"

    @pytest.mark.asyncio
    async def test_test_not_running(self):
        session = session_returning(make_result(scalar=_abtest(status="completed")))
        result = await record_event(session, "tenant-1", _request())
        assert result.reason == "test_not_running"

    @pytest.mark.asyncio
    async def test_no_assignment(self):
        session = session_returning(
            make_result(scalar=_abtest()),
            make_result(scalar=None),
        )
        result = await record_event(session, "tenant-1", _request())
        assert not result.accepted
        assert result.reason == "no_assignment"
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_event_never_touches_storage(self):
        session = session_returning()
        result = await record_event(session, "tenant-1", _request(eventType="revenue"))
        assert result.reason == "missing_order_id"
        session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_shipping_suffix_read_from_payload(self):
        session = session_returning(
            make_result(scalar=_abtest(test_type="shipping")),
            make_result(scalar=_assignment("ship_b")),
            make_result(rowcount=1),
        )
        payload = {"shipping_lines": [{"title": "Economy - A"}]}
        await record_event(
            session,
            "tenant-1",
            _request(eventType="revenue", orderId="o-7", valueCents=2500, payload=payload),
        )
        stmt = session.execute.await_args_list[2].args[0]
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert params["shipping_suffix"] == "A"
        assert params["variant_id"] == "ship_b"
        assert params["dedup_key"] == "order:o-7"
