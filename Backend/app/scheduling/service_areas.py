"""
Walker service areas.

A walker may restrict where they work with one or more polygons. A walker
with no active areas serves every location; a walker with areas serves a
location only when one of them contains it. Locations without coordinates
cannot be placed, so only area-free walkers serve them.

Usage:
    from .service_areas import eligible_walkers

    walkers = await eligible_walkers(session, walkers, target_location)
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NotFound, ValidationFailed
from ..models import Location, ServiceArea, Walker
from ..tenancy.queries import require_owned
from ..travel_time import Coordinates

logger = logging.getLogger(__name__)

MIN_POLYGON_POINTS = 3


@dataclass(frozen=True)
class PolygonPoint:
    lat: float
    lng: float


def point_in_polygon(coords: Coordinates, polygon: Sequence[PolygonPoint]) -> bool:
    """Ray casting along the longitude axis. Fewer than three vertices contain nothing."""
    if len(polygon) < MIN_POLYGON_POINTS:
        return False

    inside = False
    j = len(polygon) - 1
    for i in range(len(polygon)):
        a, b = polygon[i], polygon[j]
        if (a.lng > coords.longitude) != (b.lng > coords.longitude):
            crossing = (b.lat - a.lat) * (coords.longitude - a.lng) / (b.lng - a.lng) + a.lat
            if coords.latitude < crossing:
                inside = not inside
        j = i
    return inside


def area_polygon(area: ServiceArea) -> List[PolygonPoint]:
    return [PolygonPoint(lat, lng) for lat, lng in area.polygon]


def area_contains(area: ServiceArea, coords: Coordinates) -> bool:
    # Bounding box first
    if not (area.min_latitude <= coords.latitude <= area.max_latitude):
        return False
    if not (area.min_longitude <= coords.longitude <= area.max_longitude):
        return False
    return point_in_polygon(coords, area_polygon(area))


def matching_area(areas: Sequence[ServiceArea], coords: Optional[Coordinates]) -> Optional[ServiceArea]:
    """Highest-priority (lowest number) active area containing coords."""
    if coords is None:
        return None
    matches = [area for area in areas if area.is_active and area_contains(area, coords)]
    return min(matches, key=lambda area: area.priority, default=None)


def walker_serves(areas: Sequence[ServiceArea], coords: Optional[Coordinates]) -> bool:
    active = [area for area in areas if area.is_active]
    if not active:
        return True
    return matching_area(active, coords) is not None


# ────────────────────────────────────────────────────────────────
# Store operations
# ────────────────────────────────────────────────────────────────

async def load_areas(
    session: AsyncSession,
    walker_ids: Sequence[uuid.UUID],
    active_only: bool = True,
) -> Dict[uuid.UUID, List[ServiceArea]]:
    if not walker_ids:
        return {}
    stmt = select(ServiceArea).where(ServiceArea.walker_id.in_(walker_ids))
    if active_only:
        stmt = stmt.where(ServiceArea.is_active.is_(True))
    result = await session.execute(stmt.order_by(ServiceArea.priority, ServiceArea.created_at))

    by_walker: Dict[uuid.UUID, List[ServiceArea]] = {walker_id: [] for walker_id in walker_ids}
    for area in result.scalars().all():
        by_walker[area.walker_id].append(area)
    return by_walker


async def eligible_walkers(
    session: AsyncSession,
    walkers: Sequence[Walker],
    location: Location,
) -> List[Walker]:
    """Walkers whose service areas cover location, in input order."""
    areas = await load_areas(session, [walker.id for walker in walkers])
    coords = Coordinates.from_location(location)
    eligible = [walker for walker in walkers if walker_serves(areas.get(walker.id, []), coords)]
    if len(eligible) < len(walkers):
        logger.info(f"Location {location.id}: {len(walkers) - len(eligible)} walker(s) outside service area")
    return eligible


def validate_polygon(points: Sequence[PolygonPoint]) -> None:
    if len(points) < MIN_POLYGON_POINTS:
        raise ValidationFailed(f"Polygon must have at least {MIN_POLYGON_POINTS} points")
    for point in points:
        try:
            Coordinates(point.lat, point.lng)
        except ValueError as e:
            raise ValidationFailed(str(e), details={"field": "polygon"})


async def create_area(
    session: AsyncSession,
    *,
    organization_id: uuid.UUID,
    walker_id: uuid.UUID,
    name: str,
    points: Sequence[PolygonPoint],
    priority: int = 0,
    is_active: bool = True,
) -> ServiceArea:
    validate_polygon(points)
    area = ServiceArea(
        organization_id=organization_id,
        walker_id=walker_id,
        name=name,
        polygon=[[p.lat, p.lng] for p in points],
        min_latitude=min(p.lat for p in points),
        max_latitude=max(p.lat for p in points),
        min_longitude=min(p.lng for p in points),
        max_longitude=max(p.lng for p in points),
        priority=priority,
        is_active=is_active,
    )
    session.add(area)
    await session.commit()
    logger.info(f"Created service area {area.id} '{name}' for walker {walker_id}")
    return area


async def get_area(session: AsyncSession, organization_id: uuid.UUID, area_id: uuid.UUID) -> ServiceArea:
    area = await require_owned(session, ServiceArea, area_id, organization_id)
    if area is None:
        raise NotFound("Service area", area_id)
    return area


async def delete_area(session: AsyncSession, area: ServiceArea) -> None:
    area_id = area.id
    await session.delete(area)
    await session.commit()
    logger.info(f"Deleted service area {area_id}")
