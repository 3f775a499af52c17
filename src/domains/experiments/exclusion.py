"""Mutual exclusivity between tests that share an exclusion group."""

import structlog
from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.models import ABTestDB, AssignmentDB

from .errors import ConfigError
from .models import ABTestStatus

logger = structlog.get_logger()


async def find_conflicting_assignment(
    session: AsyncSession,
    tenant_id: str,
    test: ABTestDB,
    visitor_id: str,
) -> str | None:
    """Id of another running test in the same group the visitor already belongs to."""
    if not test.exclusion_group_id:
        return None

    result = await session.execute(
        select(AssignmentDB.test_id)
        .join(
            ABTestDB,
            and_(
                ABTestDB.id == AssignmentDB.test_id,
                ABTestDB.tenant_id == AssignmentDB.tenant_id,
            ),
        )
        .where(
            AssignmentDB.tenant_id == tenant_id,
            AssignmentDB.visitor_id == visitor_id,
            AssignmentDB.test_id != test.id,
            ABTestDB.exclusion_group_id == test.exclusion_group_id,
            ABTestDB.status == ABTestStatus.RUNNING,
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def running_group_peers(
    session: AsyncSession, tenant_id: str, test: ABTestDB
) -> list[str]:
    if not test.exclusion_group_id:
        return []
    result = await session.execute(
        select(ABTestDB.id).where(
            ABTestDB.tenant_id == tenant_id,
            ABTestDB.exclusion_group_id == test.exclusion_group_id,
            ABTestDB.status == ABTestStatus.RUNNING,
            ABTestDB.id != test.id,
        )
    )
    return list(result.scalars().all())


async def check_group_overlap(session: AsyncSession, tenant_id: str, test: ABTestDB) -> None:
    """Refuse to start a test while a peer in its exclusion group is running.

    Raises:
        ConfigError: a peer is running and the test does not allow overlap.
    """
    peers = await running_group_peers(session, tenant_id, test)
    if not peers:
        return
    if test.allow_overlap:
        logger.info(
            "exclusion_overlap_allowed",
            tenant_id=tenant_id,
            test_id=test.id,
            group_id=test.exclusion_group_id,
            running_peers=peers,
        )
        return
    raise ConfigError(
        f"exclusion group {test.exclusion_group_id} already has running test(s): "
        f"{', '.join(peers)}"
    )
