"""Assignment API: which variant should this visitor see."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_cache, get_tenant_id
from src.config import settings
from src.db.database import get_session
from src.domains.experiments.assignment import assign_visitor
from src.domains.experiments.models import VisitorContext

router = APIRouter(prefix="/api/v1", tags=["assignments"])


@router.get("/assign")
async def assign_endpoint(
    test_id: str = Query(..., alias="testId"),
    visitor_id: str = Query(..., alias="visitorId"),
    device_type: str | None = Query(None, alias="deviceType"),
    traffic_source: str | None = Query(None, alias="trafficSource"),
    covariate: float | None = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
    cache=Depends(get_cache),
) -> dict:
    """Return the visitor's sticky variant, or control when excluded."""
    decision = await assign_visitor(
        session,
        tenant_id,
        test_id,
        visitor_id,
        context=VisitorContext(
            device_type=device_type, traffic_source=traffic_source, covariate=covariate
        ),
        cache=cache,
        cache_ttl=settings.assignment_cache_ttl_seconds,
    )
    return decision.model_dump(by_alias=True, mode="json")
