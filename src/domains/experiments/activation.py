"""Test intake and lifecycle: registration, activation, status transitions, allocations."""

from datetime import UTC, datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import ABTestDB, ABVariantDB, ConfigVersionDB, ExclusionGroupDB

from .config import ExperimentConfig, default_config
from .errors import ConfigError, InvalidTransitionError
from .exclusion import check_group_overlap
from .hashing import validate_allocations
from .models import (
    ABTestDefinition,
    ABTestResponse,
    ABTestStatus,
    DecisionState,
    VariantDefinition,
)
from .repository import (
    abtest_to_response,
    find_test,
    get_test,
    list_due_tests,
    load_variants,
)

logger = structlog.get_logger()

TRANSITIONS: dict[ABTestStatus, set[ABTestStatus]] = {
    ABTestStatus.DRAFT: {ABTestStatus.SCHEDULED, ABTestStatus.RUNNING},
    ABTestStatus.SCHEDULED: {ABTestStatus.RUNNING},
    ABTestStatus.RUNNING: {ABTestStatus.PAUSED, ABTestStatus.COMPLETED},
    ABTestStatus.PAUSED: {ABTestStatus.RUNNING, ABTestStatus.COMPLETED, ABTestStatus.ARCHIVED},
    ABTestStatus.COMPLETED: {ABTestStatus.ARCHIVED},
    ABTestStatus.ARCHIVED: set(),
}


def apply_transition(test: ABTestDB, target: ABTestStatus, now: datetime | None = None) -> None:
    """Move ``test`` to ``target`` in memory, stamping start and end times.

    Raises:
        InvalidTransitionError: ``target`` is not reachable from the current status.
    """
    current = ABTestStatus(test.status)
    if target not in TRANSITIONS[current]:
        raise InvalidTransitionError(test.id, current, target)

    now = now or datetime.now(UTC)
    test.status = target
    if target == ABTestStatus.RUNNING and test.started_at is None:
        test.started_at = now
    if target == ABTestStatus.COMPLETED:
        test.ended_at = now


async def _write_config_version(
    session: AsyncSession, tenant_id: str, test: ABTestDB, variants: list[VariantDefinition]
) -> int:
    test.config_version = (test.config_version or 0) + 1
    session.add(
        ConfigVersionDB(
            tenant_id=tenant_id,
            test_id=test.id,
            version=test.config_version,
            allocations={v.id: v.allocation for v in variants},
        )
    )
    return test.config_version


async def _join_exclusion_group(
    session: AsyncSession, tenant_id: str, group_id: str, test_id: str
) -> None:
    result = await session.execute(
        select(ExclusionGroupDB).where(
            ExclusionGroupDB.tenant_id == tenant_id, ExclusionGroupDB.id == group_id
        )
    )
    group = result.scalar_one_or_none()
    if group is None:
        session.add(
            ExclusionGroupDB(id=group_id, tenant_id=tenant_id, name=group_id, test_ids=[test_id])
        )
    elif test_id not in (group.test_ids or []):
        # Reassign so the JSONB column is flagged dirty
        group.test_ids = [*(group.test_ids or []), test_id]


async def register_test(
    session: AsyncSession, tenant_id: str, definition: ABTestDefinition
) -> ABTestResponse:
    """Store a test handed over by the admin layer, in draft status."""
    if await find_test(session, tenant_id, definition.id) is not None:
        raise ConfigError(f"test {definition.id} already exists")

    test = ABTestDB(
        id=definition.id,
        tenant_id=tenant_id,
        name=definition.name,
        test_type=definition.test_type,
        status=ABTestStatus.DRAFT,
        goal_event=definition.goal_event,
        optimization_metric=definition.optimization_metric,
        confidence_level=definition.confidence_level,
        allocation_mode=definition.allocation_mode,
        exclusion_group_id=definition.exclusion_group_id,
        allow_overlap=definition.allow_overlap,
        config_version=0,
        guardrails=[g.model_dump(mode="json") for g in definition.guardrails],
        max_duration_days=definition.max_duration_days,
        minimum_detectable_effect=definition.minimum_detectable_effect,
        scheduled_start_at=definition.scheduled_start_at,
        scheduled_end_at=definition.scheduled_end_at,
        decision_state=DecisionState.RUNNING,
    )
    session.add(test)
    session.add_all(
        [
            ABVariantDB(
                id=v.id,
                tenant_id=tenant_id,
                test_id=definition.id,
                name=v.name,
                allocation=v.allocation,
                is_control=v.is_control,
                position=v.position,
                shipping_suffix=v.shipping_suffix,
                shipping_price_cents=v.shipping_price_cents,
            )
            for v in definition.variants
        ]
    )
    if definition.exclusion_group_id:
        await _join_exclusion_group(session, tenant_id, definition.exclusion_group_id, definition.id)

    await session.commit()
    logger.info(
        "test_registered",
        tenant_id=tenant_id,
        test_id=definition.id,
        test_type=definition.test_type,
        variants=len(definition.variants),
    )
    return abtest_to_response(test, list(definition.variants))


async def change_status(
    session: AsyncSession,
    tenant_id: str,
    test_id: str,
    target: ABTestStatus,
    config: ExperimentConfig = default_config,
) -> ABTestResponse:
    """Lifecycle transition entry point for the API.

    Moving to ``running`` re-validates allocations, control uniqueness and
    exclusion-group overlap. The first activation writes config version 1.
    Scheduling needs a scheduled start time.

    Raises:
        ABTestNotFoundError, InvalidTransitionError, ConfigError
    """
    test = await get_test(session, tenant_id, test_id)
    variants = await load_variants(session, tenant_id, test_id)
    previous = test.status

    if target == ABTestStatus.RUNNING:
        # Check reachability before the heavier validation
        if target not in TRANSITIONS[ABTestStatus(test.status)]:
            raise InvalidTransitionError(test_id, test.status, target)
        validate_allocations(variants, config.allocation.allocation_epsilon)
        await check_group_overlap(session, tenant_id, test)
    elif target == ABTestStatus.SCHEDULED and test.scheduled_start_at is None:
        raise ConfigError(f"test {test_id} has no scheduled start time")

    apply_transition(test, target)

    if target == ABTestStatus.RUNNING:
        test.decision_state = DecisionState.RUNNING
        if previous in (ABTestStatus.DRAFT, ABTestStatus.SCHEDULED):
            await _write_config_version(session, tenant_id, test, variants)
    elif target == ABTestStatus.PAUSED:
        test.decision_state = DecisionState.PAUSED
    elif target == ABTestStatus.COMPLETED:
        test.decision_state = DecisionState.COMPLETED

    await session.commit()
    logger.info(
        "test_status_changed",
        tenant_id=tenant_id,
        test_id=test_id,
        previous=previous,
        status=target,
        config_version=test.config_version,
    )
    return abtest_to_response(test, variants)


async def update_allocations(
    session: AsyncSession,
    tenant_id: str,
    test_id: str,
    allocations: dict[str, float],
    config: ExperimentConfig = default_config,
) -> ABTestResponse:
    """Change traffic split mid-test as a new config version.

    Existing assignments keep the variant and version they were given.

    Raises:
        ABTestNotFoundError: unknown test.
        ConfigError: unknown variant ids, an invalid split, or a finished test.
    """
    test = await get_test(session, tenant_id, test_id)
    if test.status in (ABTestStatus.COMPLETED, ABTestStatus.ARCHIVED):
        raise ConfigError(f"test {test_id} is {test.status}; allocations are frozen")

    result = await session.execute(
        select(ABVariantDB).where(
            ABVariantDB.tenant_id == tenant_id, ABVariantDB.test_id == test_id
        )
    )
    rows = {row.id: row for row in result.scalars().all()}
    unknown = set(allocations) - set(rows)
    if unknown:
        raise ConfigError(f"unknown variant(s): {', '.join(sorted(unknown))}")

    proposed = [
        VariantDefinition(
            id=row.id,
            name=row.name,
            allocation=allocations.get(row.id, row.allocation),
            is_control=row.is_control,
            position=row.position,
            shipping_suffix=row.shipping_suffix,
            shipping_price_cents=row.shipping_price_cents,
        )
        for row in rows.values()
    ]
    validate_allocations(proposed, config.allocation.allocation_epsilon)

    for variant in proposed:
        rows[variant.id].allocation = variant.allocation
    version = await _write_config_version(session, tenant_id, test, proposed)
    await session.commit()

    logger.info(
        "allocations_updated",
        tenant_id=tenant_id,
        test_id=test_id,
        config_version=version,
        allocations={v.id: v.allocation for v in proposed},
    )
    return abtest_to_response(test, sorted(proposed, key=lambda v: (v.position, v.id)))


async def start_due_tests(
    session: AsyncSession,
    now: datetime | None = None,
    config: ExperimentConfig = default_config,
) -> list[str]:
    """Start every scheduled test whose start time has passed.

    Each test gets the same validation as a manual start. A test that fails
    it stays scheduled and is retried on the next sweep.
    """
    now = now or datetime.now(UTC)
    started: list[str] = []
    for tenant_id, test_id in await list_due_tests(
        session, ABTestStatus.SCHEDULED, "scheduled_start_at", now
    ):
        try:
            await change_status(session, tenant_id, test_id, ABTestStatus.RUNNING, config)
        except (ConfigError, InvalidTransitionError) as exc:
            await session.rollback()
            logger.warning(
                "scheduled_start_failed", tenant_id=tenant_id, test_id=test_id, error=str(exc)
            )
            continue
        started.append(test_id)
    return started


async def complete_due_tests(
    session: AsyncSession,
    now: datetime | None = None,
    config: ExperimentConfig = default_config,
) -> list[str]:
    """Complete every running test whose scheduled end time has passed."""
    now = now or datetime.now(UTC)
    completed: list[str] = []
    for tenant_id, test_id in await list_due_tests(
        session, ABTestStatus.RUNNING, "scheduled_end_at", now
    ):
        await change_status(session, tenant_id, test_id, ABTestStatus.COMPLETED, config)
        completed.append(test_id)
    return completed
