"""
Availability routes.

Usage:
    GET /availability-slots?service_id=...&start_date=2026-03-02&end_date=2026-03-04
    GET /availability-slots?service_id=...&start_date=...&end_date=...&walker_id=...&location_id=...

When location_id is given, only walkers whose service areas cover it are
considered, and existing bookings are padded with the drive to and from
that location; otherwise a plain buffer-free subtraction is used.
"""

import logging
import uuid
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import get_settings
from .core.db import get_session
from .core.errors import ValidationFailed
from .core.request_context import RequestContext, get_request_context
from .scheduling.service_areas import eligible_walkers
from .scheduling.slots import SlotGenerator, validate_date_range
from .tenancy.queries import fetch_location, fetch_service, fetch_walker, list_active_walkers
from .travel_time import TravelTimeService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["availability"])


class AvailabilitySlot(BaseModel):
    walker_id: uuid.UUID
    start_time: datetime
    end_time: datetime
    confidence: str
    travel_minutes: Optional[int] = None


class AvailabilityResponse(BaseModel):
    slots: list[AvailabilitySlot]
    count: int


@router.get("/availability-slots", response_model=AvailabilityResponse)
async def get_availability_slots(
    service_id: uuid.UUID = Query(..., description="Service to fit into the schedule"),
    start_date: date = Query(..., description="First date (YYYY-MM-DD), walker-local"),
    end_date: date = Query(..., description="Last date (YYYY-MM-DD), inclusive"),
    walker_id: Optional[uuid.UUID] = Query(None, description="Restrict to one walker"),
    location_id: Optional[uuid.UUID] = Query(None, description="Customer location for travel-aware slots"),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    settings = get_settings()
    today = datetime.now(ZoneInfo(settings.default_timezone)).date()
    validate_date_range(start_date, end_date, today, settings.max_advance_days)

    service = await fetch_service(session, ctx.organization_id, service_id)
    if walker_id is not None:
        walkers = [await fetch_walker(session, ctx.organization_id, walker_id)]
    else:
        walkers = await list_active_walkers(session, ctx.organization_id)

    target_location = None
    travel = None
    if location_id is not None:
        target_location = await fetch_location(session, ctx.organization_id, location_id)
        travel = TravelTimeService(session)
        if walker_id is not None and not await eligible_walkers(session, walkers, target_location):
            raise ValidationFailed(
                "Location is outside the walker's service area",
                details={"walker_id": str(walker_id), "location_id": str(location_id)},
            )

    generator = SlotGenerator(session, travel=travel)
    slots = [
        AvailabilitySlot(
            walker_id=slot.walker_id,
            start_time=slot.interval.start,
            end_time=slot.interval.end,
            confidence=slot.confidence.value,
            travel_minutes=slot.travel_minutes,
        )
        async for slot in generator.slots_for(
            walkers, service, start_date, end_date, target_location, now=datetime.now(timezone.utc)
        )
    ]

    logger.info(
        f"Availability {start_date}..{end_date} service={service_id}: "
        f"{len(slots)} slot(s) across {len(walkers)} walker(s)"
    )
    return AvailabilityResponse(slots=slots, count=len(slots))
