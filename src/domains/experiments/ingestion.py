"""Idempotent event ingestion.

Events are appended to ``ab_events`` and nothing else: aggregates are only
touched by the batch pipeline. A retried webhook hits the
``uq_event_dedup`` constraint and is acknowledged as a duplicate.
"""

from datetime import UTC, datetime

import structlog
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import EventDB

from .assignment import read_assignment
from .channels import channel_for
from .models import (
    ABTestStatus,
    ABTestType,
    Conversion,
    EventRequest,
    EventType,
    ExperimentEvent,
    Exposure,
    GuardrailHit,
    IngestResult,
    Revenue,
)
from .repository import find_test

logger = structlog.get_logger()


class EventRejected(ValueError):
    """Inbound event cannot be recorded; ``reason`` is returned to the caller."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def parse_event(request: EventRequest) -> ExperimentEvent:
    """Turn the loosely-typed request body into one tagged event kind.

    Raises:
        EventRejected: with ``missing_order_id`` or ``invalid_value``.
    """
    occurred_at = request.occurred_at
    if request.event_type == EventType.EXPOSURE:
        return Exposure(visitor_id=request.visitor_id, occurred_at=occurred_at)

    if request.event_type == EventType.CONVERSION:
        return Conversion(
            visitor_id=request.visitor_id, order_id=request.order_id, occurred_at=occurred_at
        )

    if request.event_type == EventType.REVENUE:
        if not request.order_id:
            raise EventRejected("missing_order_id")
        if request.value_cents is None or request.value_cents < 0:
            raise EventRejected("invalid_value")
        if request.cost_cents is not None and request.cost_cents < 0:
            raise EventRejected("invalid_value")
        return Revenue(
            visitor_id=request.visitor_id,
            order_id=request.order_id,
            cents=request.value_cents,
            cost_cents=request.cost_cents or 0,
            shipping_suffix=request.shipping_suffix,
            occurred_at=occurred_at,
        )

    if request.event_type == EventType.GUARDRAIL:
        if not request.metric:
            raise EventRejected("invalid_value")
        return GuardrailHit(
            visitor_id=request.visitor_id, metric=request.metric, occurred_at=occurred_at
        )

    raise EventRejected("invalid_value")


def dedup_key(event: ExperimentEvent) -> str:
    """Order id when the event has one, otherwise the visitor (plus guardrail metric)."""
    order_id = getattr(event, "order_id", None)
    if order_id:
        return f"order:{order_id}"
    if isinstance(event, GuardrailHit):
        return f"visitor:{event.visitor_id}:{event.metric}"
    return f"visitor:{event.visitor_id}"


def _dropped(tenant_id: str, request: EventRequest, reason: str) -> IngestResult:
    logger.info(
        "event_dropped",
        tenant_id=tenant_id,
        test_id=request.test_id,
        visitor_id=request.visitor_id,
        event_type=request.event_type,
        reason=reason,
    )
    return IngestResult(accepted=False, reason=reason)


async def record_event(
    session: AsyncSession, tenant_id: str, request: EventRequest
) -> IngestResult:
    """Append one event. Rejections are results, not exceptions."""
    try:
        event = parse_event(request)
    except EventRejected as exc:
        return _dropped(tenant_id, request, exc.reason)

    test = await find_test(session, tenant_id, request.test_id)
    if test is None:
        return _dropped(tenant_id, request, "test_not_found")
    if test.status != ABTestStatus.RUNNING:
        return _dropped(tenant_id, request, "test_not_running")

    assignment = await read_assignment(session, tenant_id, request.test_id, request.visitor_id)
    if assignment is None:
        return _dropped(tenant_id, request, "no_assignment")

    value_cents = 0
    cost_cents = 0
    metric = None
    shipping_suffix = None
    if isinstance(event, Revenue):
        value_cents = event.cents
        cost_cents = event.cost_cents
        shipping_suffix = event.shipping_suffix
        if shipping_suffix is None and test.test_type == ABTestType.SHIPPING and request.payload:
            shipping_suffix = channel_for(test.test_type).observed_ref(request.payload)
    elif isinstance(event, GuardrailHit):
        metric = event.metric

    key = dedup_key(event)
    stmt = (
        pg_insert(EventDB)
        .values(
            tenant_id=tenant_id,
            test_id=request.test_id,
            variant_id=assignment.variant_id,
            visitor_id=request.visitor_id,
            event_type=request.event_type.value,
            value_cents=value_cents,
            cost_cents=cost_cents,
            order_id=request.order_id,
            dedup_key=key,
            metric=metric,
            shipping_suffix=shipping_suffix,
            occurred_at=request.occurred_at or datetime.now(UTC),
        )
        .on_conflict_do_nothing(constraint="uq_event_dedup")
    )
    result = await session.execute(stmt)
    await session.commit()

    if result.rowcount == 0:
        logger.info(
            "event_duplicate",
            tenant_id=tenant_id,
            test_id=request.test_id,
            event_type=request.event_type,
            dedup_key=key,
        )
        return IngestResult(accepted=True, reason="duplicate")

    logger.debug(
        "event_recorded",
        tenant_id=tenant_id,
        test_id=request.test_id,
        variant_id=assignment.variant_id,
        event_type=request.event_type,
    )
    return IngestResult(accepted=True)
