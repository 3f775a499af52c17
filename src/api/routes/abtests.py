"""Test intake, lifecycle, results and winner endpoints."""

import asyncio

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_cache, get_tenant_id
from src.db.database import async_session_factory, get_session
from src.db.models import ResultSnapshotDB
from src.domains.experiments.activation import change_status, register_test, update_allocations
from src.domains.experiments.config import default_config
from src.domains.experiments.decision import declare_winner
from src.domains.experiments.hashing import control_of
from src.domains.experiments.ltv import load_customer_orders, ltv_report
from src.domains.experiments.models import (
    ABTestDefinition,
    ABTestStatus,
    AllocationUpdate,
    WinnerRequest,
)
from src.domains.experiments.repository import abtest_to_response, get_test, load_variants
from src.pipeline.runner import run_test_pipeline

logger = structlog.get_logger()
router = APIRouter(prefix="/api/v1/tests", tags=["tests"])


@router.post("", status_code=201)
async def register_test_endpoint(
    definition: ABTestDefinition,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Hand a validated test definition over to the engine (draft)."""
    test = await register_test(session, tenant_id, definition)
    return test.model_dump(mode="json")


@router.get("/{test_id}")
async def get_test_endpoint(
    test_id: str,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    test = await get_test(session, tenant_id, test_id)
    variants = await load_variants(session, tenant_id, test_id)
    return abtest_to_response(test, variants).model_dump(mode="json")


async def _transition(
    session: AsyncSession, tenant_id: str, test_id: str, target: ABTestStatus
) -> dict:
    test = await change_status(session, tenant_id, test_id, target)
    return test.model_dump(mode="json")


@router.put("/{test_id}/schedule")
async def schedule_test_endpoint(
    test_id: str,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    return await _transition(session, tenant_id, test_id, ABTestStatus.SCHEDULED)


@router.put("/{test_id}/activate")
async def activate_test_endpoint(
    test_id: str,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Start the test after re-validating allocations and exclusion overlap."""
    return await _transition(session, tenant_id, test_id, ABTestStatus.RUNNING)


@router.put("/{test_id}/pause")
async def pause_test_endpoint(
    test_id: str,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    return await _transition(session, tenant_id, test_id, ABTestStatus.PAUSED)


@router.put("/{test_id}/resume")
async def resume_test_endpoint(
    test_id: str,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Manual resume of a paused test, e.g. after a guardrail pause."""
    test = await get_test(session, tenant_id, test_id)
    if test.status != ABTestStatus.PAUSED:
        raise HTTPException(status_code=409, detail=f"test {test_id} is {test.status}")
    return await _transition(session, tenant_id, test_id, ABTestStatus.RUNNING)


@router.put("/{test_id}/complete")
async def complete_test_endpoint(
    test_id: str,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    return await _transition(session, tenant_id, test_id, ABTestStatus.COMPLETED)


@router.put("/{test_id}/archive")
async def archive_test_endpoint(
    test_id: str,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    return await _transition(session, tenant_id, test_id, ABTestStatus.ARCHIVED)


@router.put("/{test_id}/allocations")
async def update_allocations_endpoint(
    test_id: str,
    update: AllocationUpdate,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Change the traffic split as a new config version."""
    test = await update_allocations(session, tenant_id, test_id, update.allocations)
    return test.model_dump(mode="json")


@router.post("/{test_id}/winner")
async def declare_winner_endpoint(
    test_id: str,
    request: WinnerRequest,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Record the winner. Idempotent; never changes live traffic."""
    test = await declare_winner(session, tenant_id, test_id, request.variant_id)
    await session.commit()
    return {
        "test_id": test.id,
        "winner_variant_id": test.winner_variant_id,
        "decision_state": test.decision_state,
    }


@router.get("/{test_id}/results")
async def get_results_endpoint(
    test_id: str,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Latest result snapshot."""
    result = await session.execute(
        select(ResultSnapshotDB)
        .where(ResultSnapshotDB.tenant_id == tenant_id, ResultSnapshotDB.test_id == test_id)
        .order_by(ResultSnapshotDB.id.desc())
        .limit(1)
    )
    snapshot = result.scalar_one_or_none()
    if snapshot is None:
        raise HTTPException(status_code=404, detail=f"no results for test {test_id}")
    return snapshot.payload


@router.get("/{test_id}/results/history")
async def get_results_history_endpoint(
    test_id: str,
    limit: int = Query(20, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Previous snapshots, newest first, for trend charts and audit."""
    result = await session.execute(
        select(ResultSnapshotDB)
        .where(ResultSnapshotDB.tenant_id == tenant_id, ResultSnapshotDB.test_id == test_id)
        .order_by(ResultSnapshotDB.id.desc())
        .limit(limit)
    )
    rows = result.scalars().all()
    return {
        "test_id": test_id,
        "snapshots": [
            {
                "generated_at": row.generated_at.isoformat() if row.generated_at else None,
                "decision_state": row.decision_state,
                "srm_detected": row.srm_detected,
                "result": row.payload,
            }
            for row in rows
        ],
        "count": len(rows),
    }


@router.get("/{test_id}/ltv")
async def get_ltv_endpoint(
    test_id: str,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """30/60/90-day customer value per variant, compared with control."""
    test = await get_test(session, tenant_id, test_id)
    variants = await load_variants(session, tenant_id, test_id)
    customers = await load_customer_orders(session, tenant_id, test_id)
    report = await asyncio.to_thread(
        ltv_report,
        test_id,
        control_of(variants).id,
        [v.id for v in variants],
        customers,
        test.ended_at,
        default_config.ltv,
        test.confidence_level,
        default_config.statistics.bootstrap_seed,
    )
    return report.model_dump(mode="json")


@router.post("/{test_id}/refresh")
async def refresh_results_endpoint(
    test_id: str,
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
    cache=Depends(get_cache),
) -> dict:
    """Run the pipeline for one test now instead of waiting for the next tick."""
    await get_test(session, tenant_id, test_id)
    snapshot = await run_test_pipeline(
        async_session_factory,
        tenant_id,
        test_id,
        redis=cache,
        producer=getattr(request.app.state, "kafka_producer", None),
    )
    if snapshot is None:
        return {"test_id": test_id, "refreshed": False}
    return {"test_id": test_id, "refreshed": True, "result": snapshot.model_dump(mode="json")}
