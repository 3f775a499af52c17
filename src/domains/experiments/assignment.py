"""Visitor assignment on the request path.

Lookup order: Redis read-through cache, existing assignment row, then a fresh
allocation written with insert-if-absent. Two concurrent first requests for
the same visitor race on the ``uq_assignment_visitor`` constraint; the loser
re-reads the winner's row, so both callers see the same variant.
"""

import json

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import ABTestDB, AssignmentDB

from .allocators import get_allocator
from .channels import channel_for
from .errors import ABTestNotFoundError, AssignmentConflict
from .exclusion import find_conflicting_assignment
from .models import (
    ABTestStatus,
    AllocationMode,
    AssignmentDecision,
    VariantDefinition,
    VisitorContext,
)
from .repository import find_test, latest_totals, load_variants

logger = structlog.get_logger()

DEFAULT_CACHE_TTL_SECONDS = 86_400


def cache_key(tenant_id: str, test_id: str, visitor_id: str) -> str:
    return f"ab:assign:{tenant_id}:{test_id}:{visitor_id}"


async def _cache_get(cache: aioredis.Redis | None, key: str) -> AssignmentDecision | None:
    if cache is None:
        return None
    try:
        raw = await cache.get(key)
    except RedisError:
        logger.warning("assignment_cache_unavailable", key=key)
        return None
    if not raw:
        return None
    return AssignmentDecision.model_validate(json.loads(raw))


async def _cache_set(
    cache: aioredis.Redis | None, key: str, decision: AssignmentDecision, ttl: int
) -> None:
    if cache is None:
        return
    try:
        await cache.set(key, decision.model_dump_json(), ex=ttl)
    except RedisError:
        logger.warning("assignment_cache_write_failed", key=key)


def _decision(
    test: ABTestDB,
    variants: list[VariantDefinition],
    variant_id: str | None,
    config_version: int | None = None,
    excluded: bool = False,
) -> AssignmentDecision:
    channel_ref: dict[str, str] = {}
    variant = next((v for v in variants if v.id == variant_id), None)
    if variant is not None:
        channel_ref = channel_for(test.test_type).variant_ref(test.id, variant)
    return AssignmentDecision(
        variant_id=variant_id,
        excluded=excluded,
        config_version=config_version,
        channel_ref=channel_ref,
    )


async def read_assignment(
    session: AsyncSession, tenant_id: str, test_id: str, visitor_id: str
) -> AssignmentDB | None:
    result = await session.execute(
        select(AssignmentDB).where(
            AssignmentDB.tenant_id == tenant_id,
            AssignmentDB.test_id == test_id,
            AssignmentDB.visitor_id == visitor_id,
        )
    )
    return result.scalar_one_or_none()


async def assign_visitor(
    session: AsyncSession,
    tenant_id: str,
    test_id: str,
    visitor_id: str,
    context: VisitorContext | None = None,
    cache: aioredis.Redis | None = None,
    cache_ttl: int = DEFAULT_CACHE_TTL_SECONDS,
) -> AssignmentDecision:
    """Return the visitor's sticky variant, creating the assignment on first exposure.

    A storage failure never propagates: the caller is told to render the
    control experience (``fallback=True``) and nothing is recorded.

    Raises:
        ABTestNotFoundError: the tenant has no such test.
    """
    key = cache_key(tenant_id, test_id, visitor_id)
    cached = await _cache_get(cache, key)
    if cached is not None:
        return cached

    control_id: str | None = None
    try:
        test = await find_test(session, tenant_id, test_id)
        if test is None:
            raise ABTestNotFoundError(test_id)

        variants = await load_variants(session, tenant_id, test_id)
        control_id = next((v.id for v in variants if v.is_control), None)

        existing = await read_assignment(session, tenant_id, test_id, visitor_id)
        if existing is not None:
            decision = _decision(test, variants, existing.variant_id, existing.config_version)
            await _cache_set(cache, key, decision, cache_ttl)
            return decision

        if test.status != ABTestStatus.RUNNING:
            return _decision(test, variants, control_id, excluded=True)

        conflict = await find_conflicting_assignment(session, tenant_id, test, visitor_id)
        if conflict is not None:
            logger.info(
                "visitor_excluded",
                tenant_id=tenant_id,
                test_id=test_id,
                visitor_id=visitor_id,
                conflicting_test_id=conflict,
                group_id=test.exclusion_group_id,
            )
            return _decision(test, variants, control_id, excluded=True)

        totals = None
        if test.allocation_mode == AllocationMode.THOMPSON:
            totals = await latest_totals(session, tenant_id, test_id)
        variant_id = get_allocator(test.allocation_mode).choose(
            test_id, visitor_id, variants, totals
        )

        context = context or VisitorContext()
        stmt = (
            pg_insert(AssignmentDB)
            .values(
                tenant_id=tenant_id,
                test_id=test_id,
                visitor_id=visitor_id,
                variant_id=variant_id,
                config_version=test.config_version or 0,
                device_type=context.device_type,
                traffic_source=context.traffic_source,
                covariate=context.covariate,
            )
            .on_conflict_do_nothing(constraint="uq_assignment_visitor")
        )
        await session.execute(stmt)
        await session.commit()

        row = await read_assignment(session, tenant_id, test_id, visitor_id)
        if row is None:
            raise AssignmentConflict(f"assignment for {visitor_id} in {test_id} not readable")

        if row.variant_id != variant_id:
            logger.info(
                "assignment_race_resolved",
                tenant_id=tenant_id,
                test_id=test_id,
                visitor_id=visitor_id,
                variant_id=row.variant_id,
            )
        else:
            logger.info(
                "visitor_assigned",
                tenant_id=tenant_id,
                test_id=test_id,
                visitor_id=visitor_id,
                variant_id=variant_id,
                config_version=row.config_version,
            )

        decision = _decision(test, variants, row.variant_id, row.config_version)
        await _cache_set(cache, key, decision, cache_ttl)
        return decision

    except (SQLAlchemyError, AssignmentConflict):
        logger.exception(
            "assignment_fallback",
            tenant_id=tenant_id,
            test_id=test_id,
            visitor_id=visitor_id,
        )
        try:
            await session.rollback()
        except SQLAlchemyError:
            logger.warning("assignment_rollback_failed", tenant_id=tenant_id, test_id=test_id)
        return AssignmentDecision(variant_id=control_id, fallback=True)
