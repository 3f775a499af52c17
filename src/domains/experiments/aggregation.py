"""Watermarked aggregation of raw events into per-visitor and per-variant metrics.

Each pass folds events with ``id > last_processed_event_id`` into the
per-visitor rollups, then moves each variant's totals by the change in the
touched visitors' contributions. Working on deltas keeps the sum of squares
exact without rescanning history. Everything is written through the caller's
session; the watermark only becomes durable when the caller commits.
"""

from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field

import structlog
from sqlalchemy import and_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import (
    AggregationCheckpointDB,
    AssignmentDB,
    EventDB,
    MetricSnapshotDB,
    ShippingMismatchDB,
    VisitorMetricsDB,
)

from .channels import suffixes_match
from .models import (
    Conversion,
    EventType,
    ExperimentEvent,
    Exposure,
    GuardrailHit,
    MismatchRecord,
    RecordedEvent,
    Revenue,
    VariantDefinition,
    VariantTotals,
    VisitorRollup,
)
from .repository import latest_totals

logger = structlog.get_logger()

# Keeps IN lists and multi-row inserts under the asyncpg bind parameter limit
_CHUNK_SIZE = 2_000


@dataclass
class AggregationOutcome:
    events_processed: int = 0
    watermark: int = 0
    totals: dict[str, VariantTotals] = field(default_factory=dict)
    mismatches: list[MismatchRecord] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure folding
# ---------------------------------------------------------------------------


def _contribution(rollup: VisitorRollup) -> tuple[int, int, int, int, float, frozenset[str]]:
    """What one visitor adds to its variant's totals. Unexposed visitors add nothing."""
    if not rollup.exposed:
        return 0, 0, 0, 0, 0.0, frozenset()
    return (
        1,
        1 if rollup.converted else 0,
        rollup.orders,
        rollup.revenue_cents,
        float(rollup.revenue_cents) ** 2,
        frozenset(rollup.guardrail_hits),
    )


def _apply_delta(totals: VariantTotals, before: tuple, after: tuple) -> None:
    totals.visitors += after[0] - before[0]
    totals.conversions += after[1] - before[1]
    totals.orders += after[2] - before[2]
    totals.revenue_cents += after[3] - before[3]
    totals.revenue_sum_squares += after[4] - before[4]
    for metric in after[5] - before[5]:
        totals.guardrail_counts[metric] = totals.guardrail_counts.get(metric, 0) + 1
    for metric in before[5] - after[5]:
        totals.guardrail_counts[metric] = totals.guardrail_counts.get(metric, 0) - 1


def fold_events(
    rollups: dict[str, VisitorRollup],
    totals: dict[str, VariantTotals],
    events: Iterable[RecordedEvent],
    variants: Mapping[str, VariantDefinition],
) -> list[MismatchRecord]:
    """Fold events into ``rollups`` and ``totals`` in place.

    Returns a mismatch record for every revenue event whose observed shipping
    suffix differs from the suffix of the visitor's assigned variant. The order
    still counts towards revenue.
    """
    before: dict[str, tuple] = {}
    mismatches: list[MismatchRecord] = []

    for recorded in events:
        event = recorded.event
        rollup = rollups.get(event.visitor_id)
        if rollup is None:
            rollup = VisitorRollup(visitor_id=event.visitor_id, variant_id=recorded.variant_id)
            rollups[event.visitor_id] = rollup
        if event.visitor_id not in before:
            before[event.visitor_id] = _contribution(rollup)

        if isinstance(event, Exposure):
            if not rollup.exposed:
                rollup.exposed = True
            if event.occurred_at is not None and (
                rollup.first_exposed_at is None or event.occurred_at < rollup.first_exposed_at
            ):
                rollup.first_exposed_at = event.occurred_at
        elif isinstance(event, Conversion):
            rollup.converted = True
        elif isinstance(event, Revenue):
            rollup.converted = True
            rollup.orders += 1
            rollup.revenue_cents += event.cents
            rollup.cost_cents += event.cost_cents
            variant = variants.get(recorded.variant_id)
            expected = variant.shipping_suffix if variant else None
            if expected is not None and not suffixes_match(expected, event.shipping_suffix):
                mismatches.append(
                    MismatchRecord(
                        order_id=event.order_id,
                        visitor_id=event.visitor_id,
                        variant_id=recorded.variant_id,
                        expected_suffix=expected,
                        observed_suffix=event.shipping_suffix,
                    )
                )
        elif isinstance(event, GuardrailHit):
            rollup.guardrail_hits.add(event.metric)
        else:
            raise TypeError(f"unhandled event kind: {type(event).__name__}")

    for visitor_id, previous in before.items():
        rollup = rollups[visitor_id]
        variant_totals = totals.setdefault(
            rollup.variant_id, VariantTotals(variant_id=rollup.variant_id)
        )
        _apply_delta(variant_totals, previous, _contribution(rollup))

    return mismatches


def event_from_row(row: EventDB) -> ExperimentEvent:
    if row.event_type == EventType.EXPOSURE:
        return Exposure(visitor_id=row.visitor_id, occurred_at=row.occurred_at)
    if row.event_type == EventType.CONVERSION:
        return Conversion(
            visitor_id=row.visitor_id, order_id=row.order_id, occurred_at=row.occurred_at
        )
    if row.event_type == EventType.REVENUE:
        return Revenue(
            visitor_id=row.visitor_id,
            order_id=row.order_id or "",
            cents=row.value_cents or 0,
            cost_cents=row.cost_cents or 0,
            shipping_suffix=row.shipping_suffix,
            occurred_at=row.occurred_at,
        )
    if row.event_type == EventType.GUARDRAIL:
        return GuardrailHit(
            visitor_id=row.visitor_id, metric=row.metric or "", occurred_at=row.occurred_at
        )
    raise ValueError(f"unknown event type in store: {row.event_type}")


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def _chunks(items: Sequence, size: int = _CHUNK_SIZE) -> Iterator[Sequence]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _rollup_from_row(row: VisitorMetricsDB) -> VisitorRollup:
    return VisitorRollup(
        visitor_id=row.visitor_id,
        variant_id=row.variant_id,
        exposed=row.exposed,
        converted=row.converted,
        revenue_cents=row.revenue_cents,
        cost_cents=row.cost_cents,
        orders=row.orders,
        guardrail_hits=set(row.guardrail_hits or []),
        first_exposed_at=row.first_exposed_at,
    )


async def get_watermark(session: AsyncSession, tenant_id: str, test_id: str) -> int:
    result = await session.execute(
        select(AggregationCheckpointDB.last_processed_event_id).where(
            AggregationCheckpointDB.tenant_id == tenant_id,
            AggregationCheckpointDB.test_id == test_id,
        )
    )
    return result.scalar_one_or_none() or 0


async def _load_rollups(
    session: AsyncSession, tenant_id: str, test_id: str, visitor_ids: Sequence[str]
) -> dict[str, VisitorRollup]:
    rollups: dict[str, VisitorRollup] = {}
    for chunk in _chunks(visitor_ids):
        result = await session.execute(
            select(VisitorMetricsDB).where(
                VisitorMetricsDB.tenant_id == tenant_id,
                VisitorMetricsDB.test_id == test_id,
                VisitorMetricsDB.visitor_id.in_(chunk),
            )
        )
        for row in result.scalars().all():
            rollups[row.visitor_id] = _rollup_from_row(row)
    return rollups


async def _upsert_rollups(
    session: AsyncSession, tenant_id: str, test_id: str, rollups: Sequence[VisitorRollup]
) -> None:
    for chunk in _chunks(rollups):
        stmt = pg_insert(VisitorMetricsDB).values(
            [
                {
                    "tenant_id": tenant_id,
                    "test_id": test_id,
                    "visitor_id": r.visitor_id,
                    "variant_id": r.variant_id,
                    "exposed": r.exposed,
                    "converted": r.converted,
                    "revenue_cents": r.revenue_cents,
                    "cost_cents": r.cost_cents,
                    "orders": r.orders,
                    "guardrail_hits": sorted(r.guardrail_hits),
                    "first_exposed_at": r.first_exposed_at,
                }
                for r in chunk
            ]
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_visitor_metrics",
            set_={
                "exposed": stmt.excluded.exposed,
                "converted": stmt.excluded.converted,
                "revenue_cents": stmt.excluded.revenue_cents,
                "cost_cents": stmt.excluded.cost_cents,
                "orders": stmt.excluded.orders,
                "guardrail_hits": stmt.excluded.guardrail_hits,
                "first_exposed_at": stmt.excluded.first_exposed_at,
            },
        )
        await session.execute(stmt)


async def _insert_mismatches(
    session: AsyncSession, tenant_id: str, test_id: str, mismatches: Sequence[MismatchRecord]
) -> None:
    for chunk in _chunks(mismatches):
        stmt = (
            pg_insert(ShippingMismatchDB)
            .values(
                [
                    {
                        "tenant_id": tenant_id,
                        "test_id": test_id,
                        "order_id": m.order_id,
                        "visitor_id": m.visitor_id,
                        "variant_id": m.variant_id,
                        "expected_suffix": m.expected_suffix,
                        "observed_suffix": m.observed_suffix,
                    }
                    for m in chunk
                ]
            )
            .on_conflict_do_nothing(constraint="uq_shipping_mismatch")
        )
        await session.execute(stmt)


async def _advance_watermark(
    session: AsyncSession, tenant_id: str, test_id: str, event_id: int
) -> None:
    stmt = pg_insert(AggregationCheckpointDB).values(
        tenant_id=tenant_id, test_id=test_id, last_processed_event_id=event_id
    )
    stmt = stmt.on_conflict_do_update(
        constraint="uq_aggregation_checkpoint",
        set_={"last_processed_event_id": stmt.excluded.last_processed_event_id},
    )
    await session.execute(stmt)


async def aggregate_test(
    session: AsyncSession,
    tenant_id: str,
    test_id: str,
    variants: Sequence[VariantDefinition],
    batch_size: int = 50_000,
) -> AggregationOutcome:
    """Fold one batch of new events for a test. Does not commit."""
    watermark = await get_watermark(session, tenant_id, test_id)

    result = await session.execute(
        select(EventDB)
        .where(
            EventDB.tenant_id == tenant_id,
            EventDB.test_id == test_id,
            EventDB.id > watermark,
        )
        .order_by(EventDB.id)
        .limit(batch_size)
    )
    rows = list(result.scalars().all())

    totals = await latest_totals(session, tenant_id, test_id)
    for variant in variants:
        totals.setdefault(variant.id, VariantTotals(variant_id=variant.id))

    if not rows:
        return AggregationOutcome(watermark=watermark, totals=totals)

    visitor_ids = sorted({row.visitor_id for row in rows})
    rollups = await _load_rollups(session, tenant_id, test_id, visitor_ids)

    recorded = [RecordedEvent(row.id, row.variant_id, event_from_row(row)) for row in rows]
    mismatches = fold_events(rollups, totals, recorded, {v.id: v for v in variants})

    await _upsert_rollups(session, tenant_id, test_id, [rollups[v] for v in visitor_ids])
    if mismatches:
        await _insert_mismatches(session, tenant_id, test_id, mismatches)

    session.add_all(
        [
            MetricSnapshotDB(
                tenant_id=tenant_id,
                test_id=test_id,
                variant_id=t.variant_id,
                visitors=t.visitors,
                conversions=t.conversions,
                orders=t.orders,
                revenue_cents=t.revenue_cents,
                revenue_sum_squares=t.revenue_sum_squares,
                revenue_variance=t.revenue_variance,
                guardrail_counts=dict(t.guardrail_counts),
            )
            for t in totals.values()
        ]
    )

    new_watermark = rows[-1].id
    await _advance_watermark(session, tenant_id, test_id, new_watermark)

    logger.info(
        "events_aggregated",
        tenant_id=tenant_id,
        test_id=test_id,
        events=len(rows),
        visitors_touched=len(visitor_ids),
        mismatches=len(mismatches),
        watermark=new_watermark,
    )
    return AggregationOutcome(
        events_processed=len(rows),
        watermark=new_watermark,
        totals=totals,
        mismatches=mismatches,
    )


async def load_visitor_rollups(
    session: AsyncSession, tenant_id: str, test_id: str
) -> list[VisitorRollup]:
    """Exposed visitors of a test with their assignment context, for the statistics pass."""
    result = await session.execute(
        select(VisitorMetricsDB, AssignmentDB)
        .join(
            AssignmentDB,
            and_(
                AssignmentDB.tenant_id == VisitorMetricsDB.tenant_id,
                AssignmentDB.test_id == VisitorMetricsDB.test_id,
                AssignmentDB.visitor_id == VisitorMetricsDB.visitor_id,
            ),
        )
        .where(
            VisitorMetricsDB.tenant_id == tenant_id,
            VisitorMetricsDB.test_id == test_id,
            VisitorMetricsDB.exposed.is_(True),
        )
    )
    rollups = []
    for metrics, assignment in result.all():
        rollup = _rollup_from_row(metrics)
        rollup.covariate = assignment.covariate
        rollup.device_type = assignment.device_type
        rollup.traffic_source = assignment.traffic_source
        rollup.assigned_at = assignment.assigned_at
        rollups.append(rollup)
    return rollups
