"""
Walker service area routes.

Walkers manage their own areas (walker_id defaults to the caller); admins
pass walker_id explicitly.

Usage:
    GET    /service-areas[?walker_id=...]
    POST   /service-areas
    DELETE /service-areas/{area_id}
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.request_context import (
    RequestContext,
    get_request_context,
    require_walker_access,
    resolve_walker_id,
)
from .models import ServiceArea
from .scheduling.service_areas import PolygonPoint, create_area, delete_area, get_area, load_areas
from .tenancy.queries import fetch_walker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/service-areas", tags=["service-areas"])


class PolygonPointModel(BaseModel):
    lat: float
    lng: float


class ServiceAreaResponse(BaseModel):
    id: uuid.UUID
    walker_id: uuid.UUID
    name: str
    polygon: list[PolygonPointModel]
    priority: int
    is_active: bool
    created_at: datetime


class ServiceAreasResponse(BaseModel):
    areas: list[ServiceAreaResponse]
    count: int


class CreateServiceAreaRequest(BaseModel):
    walker_id: Optional[uuid.UUID] = None
    name: str = Field(..., min_length=1, max_length=255)
    polygon: list[PolygonPointModel] = Field(..., description="Vertices in order, at least three")
    priority: int = Field(0, description="Lower wins when areas overlap")
    is_active: bool = True


def _area_response(area: ServiceArea) -> ServiceAreaResponse:
    return ServiceAreaResponse(
        id=area.id,
        walker_id=area.walker_id,
        name=area.name,
        polygon=[PolygonPointModel(lat=lat, lng=lng) for lat, lng in area.polygon],
        priority=area.priority,
        is_active=area.is_active,
        created_at=area.created_at,
    )


@router.get("", response_model=ServiceAreasResponse)
async def list_service_areas(
    walker_id: Optional[uuid.UUID] = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    target = resolve_walker_id(ctx, walker_id)
    walker = await fetch_walker(session, ctx.organization_id, target)
    areas = (await load_areas(session, [walker.id], active_only=False))[walker.id]
    return ServiceAreasResponse(areas=[_area_response(a) for a in areas], count=len(areas))


@router.post("", response_model=ServiceAreaResponse, status_code=status.HTTP_201_CREATED)
async def create_service_area(
    request: CreateServiceAreaRequest,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    target = resolve_walker_id(ctx, request.walker_id)
    walker = await fetch_walker(session, ctx.organization_id, target)
    area = await create_area(
        session,
        organization_id=ctx.organization_id,
        walker_id=walker.id,
        name=request.name,
        points=[PolygonPoint(p.lat, p.lng) for p in request.polygon],
        priority=request.priority,
        is_active=request.is_active,
    )
    return _area_response(area)


@router.delete("/{area_id}")
async def delete_service_area(
    area_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    area = await get_area(session, ctx.organization_id, area_id)
    require_walker_access(ctx, area.walker_id)
    await delete_area(session, area)
    return {"status": "deleted", "area_id": str(area_id)}
