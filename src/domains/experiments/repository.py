"""Tenant-scoped reads shared by assignment, ingestion and the pipeline."""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import ABTestDB, ABVariantDB, MetricSnapshotDB

from .errors import ABTestNotFoundError
from .models import (
    ABTestResponse,
    ABTestStatus,
    GuardrailDefinition,
    VariantDefinition,
    VariantTotals,
)


async def find_test(session: AsyncSession, tenant_id: str, test_id: str) -> ABTestDB | None:
    result = await session.execute(
        select(ABTestDB).where(ABTestDB.tenant_id == tenant_id, ABTestDB.id == test_id)
    )
    return result.scalar_one_or_none()


async def get_test(session: AsyncSession, tenant_id: str, test_id: str) -> ABTestDB:
    test = await find_test(session, tenant_id, test_id)
    if test is None:
        raise ABTestNotFoundError(test_id)
    return test


async def load_variants(
    session: AsyncSession, tenant_id: str, test_id: str
) -> list[VariantDefinition]:
    result = await session.execute(
        select(ABVariantDB)
        .where(ABVariantDB.tenant_id == tenant_id, ABVariantDB.test_id == test_id)
        .order_by(ABVariantDB.position, ABVariantDB.id)
    )
    return [variant_to_model(row) for row in result.scalars().all()]


async def list_running_tests(session: AsyncSession) -> list[tuple[str, str]]:
    """(tenant_id, test_id) of every running test, across tenants."""
    result = await session.execute(
        select(ABTestDB.tenant_id, ABTestDB.id)
        .where(ABTestDB.status == ABTestStatus.RUNNING)
        .order_by(ABTestDB.tenant_id, ABTestDB.id)
    )
    return [(row[0], row[1]) for row in result.all()]


async def list_due_tests(
    session: AsyncSession, status: ABTestStatus, due_column: str, now: datetime
) -> list[tuple[str, str]]:
    """(tenant_id, test_id) of tests in ``status`` whose ``due_column`` time has passed."""
    due_at = getattr(ABTestDB, due_column)
    result = await session.execute(
        select(ABTestDB.tenant_id, ABTestDB.id)
        .where(ABTestDB.status == status, due_at.is_not(None), due_at <= now)
        .order_by(ABTestDB.tenant_id, ABTestDB.id)
    )
    return [(row[0], row[1]) for row in result.all()]


async def latest_totals(
    session: AsyncSession, tenant_id: str, test_id: str
) -> dict[str, VariantTotals]:
    """Most recent metric snapshot of each variant."""
    latest_ids = (
        select(func.max(MetricSnapshotDB.id))
        .where(MetricSnapshotDB.tenant_id == tenant_id, MetricSnapshotDB.test_id == test_id)
        .group_by(MetricSnapshotDB.variant_id)
    )
    result = await session.execute(
        select(MetricSnapshotDB).where(MetricSnapshotDB.id.in_(latest_ids))
    )
    return {
        row.variant_id: VariantTotals(
            variant_id=row.variant_id,
            visitors=row.visitors,
            conversions=row.conversions,
            orders=row.orders,
            revenue_cents=row.revenue_cents,
            revenue_sum_squares=row.revenue_sum_squares,
            guardrail_counts=dict(row.guardrail_counts or {}),
        )
        for row in result.scalars().all()
    }


def variant_to_model(row: ABVariantDB) -> VariantDefinition:
    return VariantDefinition(
        id=row.id,
        name=row.name,
        allocation=row.allocation,
        is_control=row.is_control,
        position=row.position,
        shipping_suffix=row.shipping_suffix,
        shipping_price_cents=row.shipping_price_cents,
    )


def abtest_to_response(test: ABTestDB, variants: list[VariantDefinition]) -> ABTestResponse:
    return ABTestResponse(
        id=test.id,
        tenant_id=test.tenant_id,
        name=test.name,
        test_type=test.test_type,
        status=ABTestStatus(test.status),
        optimization_metric=test.optimization_metric,
        confidence_level=test.confidence_level,
        allocation_mode=test.allocation_mode,
        exclusion_group_id=test.exclusion_group_id,
        config_version=test.config_version or 0,
        decision_state=test.decision_state,
        winner_variant_id=test.winner_variant_id,
        variants=variants,
        guardrails=[GuardrailDefinition(**g) for g in test.guardrails or []],
        scheduled_start_at=test.scheduled_start_at,
        scheduled_end_at=test.scheduled_end_at,
        created_at=test.created_at,
        started_at=test.started_at,
        ended_at=test.ended_at,
    )
