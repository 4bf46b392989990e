"""
Tenant-scoped query helpers.

ALL reads of tenant data go through these helpers or carry an explicit
organization_id filter. A row from another organization is treated
exactly like a missing row.

Usage:
    from app.tenancy.queries import fetch_service, scoped_select

    service = await fetch_service(session, ctx.organization_id, service_id)
    stmt = scoped_select(Walker, ctx.organization_id).where(Walker.is_active.is_(True))
"""

import uuid
from datetime import datetime
from typing import Optional, Sequence, Type, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

from ..core.errors import NotFound
from ..models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    Location,
    RecurringBookingSeries,
    Service,
    Walker,
)

# Type variable for generic model functions
T = TypeVar("T", bound=DeclarativeBase)


# ────────────────────────────────────────────────────────────────
# Composable Query Helpers
# ────────────────────────────────────────────────────────────────

def scoped_select(model: Type[T], organization_id: uuid.UUID) -> Select:
    """
    Create a SELECT statement pre-filtered by organization_id.

    Usage:
        stmt = scoped_select(Service, ctx.organization_id).where(Service.is_active.is_(True))
    """
    return select(model).where(model.organization_id == organization_id)


async def require_owned(
    session: AsyncSession,
    model: Type[T],
    entity_id: uuid.UUID,
    organization_id: uuid.UUID,
) -> Optional[T]:
    """
    Fetch an entity by ID, validating organization ownership.
    Returns None if not found or owned by another organization.
    """
    result = await session.execute(
        select(model).where(
            model.id == entity_id,
            model.organization_id == organization_id,
        )
    )
    return result.scalar_one_or_none()


# ────────────────────────────────────────────────────────────────
# Lookups that raise NotFound
# ────────────────────────────────────────────────────────────────

async def fetch_walker(session: AsyncSession, organization_id: uuid.UUID, walker_id: uuid.UUID) -> Walker:
    walker = await require_owned(session, Walker, walker_id, organization_id)
    if not walker or not walker.is_active:
        raise NotFound("Walker", walker_id)
    return walker


async def fetch_service(session: AsyncSession, organization_id: uuid.UUID, service_id: uuid.UUID) -> Service:
    """Service catalog lookup: duration and price for a bookable service."""
    service = await require_owned(session, Service, service_id, organization_id)
    if not service or not service.is_active:
        raise NotFound("Service", service_id)
    return service


async def fetch_location(session: AsyncSession, organization_id: uuid.UUID, location_id: uuid.UUID) -> Location:
    location = await require_owned(session, Location, location_id, organization_id)
    if not location:
        raise NotFound("Location", location_id)
    return location


async def fetch_booking(session: AsyncSession, organization_id: uuid.UUID, booking_id: uuid.UUID) -> Booking:
    booking = await require_owned(session, Booking, booking_id, organization_id)
    if not booking:
        raise NotFound("Booking", booking_id)
    return booking


async def fetch_series(
    session: AsyncSession,
    organization_id: uuid.UUID,
    series_id: uuid.UUID,
) -> RecurringBookingSeries:
    series = await require_owned(session, RecurringBookingSeries, series_id, organization_id)
    if not series:
        raise NotFound("Recurring series", series_id)
    return series


# ────────────────────────────────────────────────────────────────
# Listing
# ────────────────────────────────────────────────────────────────

async def list_active_walkers(session: AsyncSession, organization_id: uuid.UUID) -> Sequence[Walker]:
    result = await session.execute(
        scoped_select(Walker, organization_id)
        .where(Walker.is_active.is_(True))
        .order_by(Walker.name)
    )
    return result.scalars().all()


async def get_locations_by_ids(
    session: AsyncSession,
    organization_id: uuid.UUID,
    location_ids: Sequence[uuid.UUID],
) -> dict[uuid.UUID, Location]:
    """Get multiple locations by IDs, scoped to the organization."""
    if not location_ids:
        return {}
    result = await session.execute(
        scoped_select(Location, organization_id).where(Location.id.in_(set(location_ids)))
    )
    return {location.id: location for location in result.scalars().all()}


async def list_active_bookings_in_range(
    session: AsyncSession,
    walker_id: uuid.UUID,
    range_start: datetime,
    range_end: datetime,
) -> Sequence[Booking]:
    """Active bookings for one walker intersecting [range_start, range_end), by start time."""
    result = await session.execute(
        select(Booking)
        .where(
            Booking.walker_id == walker_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            Booking.scheduled_start < range_end,
            Booking.scheduled_end > range_start,
        )
        .order_by(Booking.scheduled_start, Booking.id)
    )
    return result.scalars().all()
