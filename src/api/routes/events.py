"""Event ingestion API."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies import get_tenant_id
from src.db.database import get_session
from src.domains.experiments.ingestion import record_event
from src.domains.experiments.models import EventRequest

router = APIRouter(prefix="/api/v1", tags=["events"])


@router.post("/events")
async def record_event_endpoint(
    request: EventRequest,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
) -> dict:
    """Record an exposure, conversion, revenue or guardrail event.

    Always 200 for well-formed bodies; ``accepted`` and ``reason`` carry the
    outcome so webhook senders do not retry rejected events.
    """
    result = await record_event(session, tenant_id, request)
    return result.model_dump(by_alias=True, mode="json")
