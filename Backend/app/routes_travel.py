"""
Travel time lookup between two saved locations.

Usage:
    GET /travel-time?origin_location_id=...&destination_location_id=...

Unlike slot and route computations, this endpoint surfaces provider
failures directly (503 TRAVEL_PROVIDER_UNAVAILABLE).
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.errors import ValidationFailed
from .core.request_context import RequestContext, get_request_context
from .tenancy.queries import fetch_location
from .travel_time import TravelTimeService

router = APIRouter(tags=["travel"])


class TravelTimeResponse(BaseModel):
    origin_location_id: uuid.UUID
    destination_location_id: uuid.UUID
    travel_minutes: int
    distance_meters: Optional[int] = None
    is_cached: bool
    calculated_at: datetime
    confidence: str


@router.get("/travel-time", response_model=TravelTimeResponse)
async def get_travel_time(
    origin_location_id: uuid.UUID = Query(...),
    destination_location_id: uuid.UUID = Query(...),
    depart_at: Optional[datetime] = Query(None, description="Departure time (defaults to now)"),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    if depart_at is not None and depart_at.tzinfo is None:
        raise ValidationFailed("depart_at must include a timezone offset")
    origin = await fetch_location(session, ctx.organization_id, origin_location_id)
    destination = await fetch_location(session, ctx.organization_id, destination_location_id)

    lookup = await TravelTimeService(session).lookup(
        origin, destination, depart_at or datetime.now(timezone.utc)
    )
    return TravelTimeResponse(
        origin_location_id=origin_location_id,
        destination_location_id=destination_location_id,
        **lookup.to_dict(),
    )
