"""
Walker day-route routes.

Usage:
    GET  /walkers/{walker_id}/route?date=2026-03-02           -> cached travel times
    POST /walkers/{walker_id}/route/optimize?date=2026-03-02  -> fresh provider lookups

Travel failures never fail these endpoints: the route comes back in
chronological order with is_optimized=false and the unknown legs null.
"""

import logging
import uuid
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.request_context import RequestContext, get_request_context, require_walker_access
from .scheduling.route import OptimizedRoute, RouteOptimizer
from .tenancy.queries import fetch_walker
from .travel_time import TravelTimeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/walkers", tags=["routes"])


class RouteStopResponse(BaseModel):
    sequence: int
    booking_id: uuid.UUID
    location_id: uuid.UUID
    address: Optional[str] = None
    arrival_time: datetime
    departure_time: datetime
    travel_from_previous_minutes: Optional[int] = None
    service_duration_minutes: int


class RouteResponse(BaseModel):
    walker_id: uuid.UUID
    date: date
    is_optimized: bool
    stops: list[RouteStopResponse]
    total_travel_minutes: int
    total_distance_meters: int
    savings_minutes: int


def _route_response(walker_id: uuid.UUID, route: OptimizedRoute) -> RouteResponse:
    return RouteResponse(walker_id=walker_id, **route.to_dict())


async def _optimize(
    session: AsyncSession,
    ctx: RequestContext,
    walker_id: uuid.UUID,
    day: date,
    use_cache: bool,
) -> RouteResponse:
    require_walker_access(ctx, walker_id)
    walker = await fetch_walker(session, ctx.organization_id, walker_id)
    optimizer = RouteOptimizer(session, TravelTimeService(session))
    route = await optimizer.optimize(walker, day, use_cache=use_cache)
    return _route_response(walker_id, route)


@router.get("/{walker_id}/route", response_model=RouteResponse)
async def get_walker_route(
    walker_id: uuid.UUID,
    date: date = Query(..., description="Walker-local date (YYYY-MM-DD)"),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    return await _optimize(session, ctx, walker_id, date, use_cache=True)


@router.post("/{walker_id}/route/optimize", response_model=RouteResponse)
async def optimize_walker_route(
    walker_id: uuid.UUID,
    date: date = Query(..., description="Walker-local date (YYYY-MM-DD)"),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    return await _optimize(session, ctx, walker_id, date, use_cache=False)
