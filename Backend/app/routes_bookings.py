"""
Booking routes: single bookings, status transitions and recurring series.

Customers book for themselves and see only their own bookings. Walkers see
and move the bookings assigned to them; admins see everything in the org.

Usage:
    POST /bookings                         -> pending booking (409 if the slot was taken)
    GET  /bookings/{id}
    POST /bookings/{id}/confirm | /start | /complete | /cancel
    POST /bookings/recurring               -> create or preview a series
    GET  /bookings/recurring/{id}
    POST /bookings/recurring/{id}/cancel   -> {"scope": "all_future" | "entire_series"}
"""

import logging
import uuid
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.errors import InvalidRecurrenceRule, InvalidTransition, NotFound, ValidationFailed
from .core.request_context import (
    AuthorizationError,
    CallerRole,
    RequestContext,
    get_request_context,
    require_walker_access,
)
from .idempotency import IDEMPOTENCY_HEADER, get_stored_response, store_response
from .models import Booking, BookingStatus, RecurrenceFrequency, RecurringBookingSeries
from .scheduling.ledger import create_booking, transition_booking
from .scheduling.recurring import CancelScope, SeriesRule, cancel_series, create_series, series_bookings
from .scheduling.working_hours import parse_hhmm, sunday_based_weekday
from .tenancy.queries import fetch_booking, fetch_location, fetch_series, fetch_service, fetch_walker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])


# ────────────────────────────────────────────────────────────────
# Models
# ────────────────────────────────────────────────────────────────

class CreateBookingRequest(BaseModel):
    walker_id: uuid.UUID
    service_id: uuid.UUID
    location_id: uuid.UUID
    start_time: datetime = Field(..., description="ISO 8601 with offset")
    customer_id: Optional[uuid.UUID] = Field(None, description="Admins only; customers book for themselves")
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("start_time must include a timezone offset")
        return v


class BookingResponse(BaseModel):
    id: uuid.UUID
    customer_id: uuid.UUID
    walker_id: uuid.UUID
    service_id: uuid.UUID
    location_id: uuid.UUID
    scheduled_start: datetime
    scheduled_end: datetime
    status: BookingStatus
    price_cents: int
    notes: Optional[str] = None
    recurring_series_id: Optional[uuid.UUID] = None
    occurrence_number: Optional[int] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class EndCondition(BaseModel):
    occurrences: Optional[int] = Field(None, description="Stop after this many occurrences")
    end_date: Optional[date] = Field(None, description="Stop on or before this date")


class CreateRecurringRequest(BaseModel):
    walker_id: uuid.UUID
    service_id: uuid.UUID
    location_id: uuid.UUID
    frequency: str = Field(..., description="daily | weekly | bi_weekly | monthly")
    day_of_week: Optional[int] = Field(None, description="0 = Sunday; defaults to start_date's weekday")
    time_of_day: str = Field(..., description="HH:MM, walker-local")
    start_date: date
    end_condition: EndCondition
    customer_id: Optional[uuid.UUID] = None
    notes: Optional[str] = Field(None, max_length=2000)
    preview_only: bool = False


class SeriesResponse(BaseModel):
    id: uuid.UUID
    customer_id: uuid.UUID
    walker_id: uuid.UUID
    service_id: uuid.UUID
    location_id: uuid.UUID
    frequency: RecurrenceFrequency
    day_of_week: int
    time_of_day: str
    timezone: str
    start_date: date
    end_date: Optional[date] = None
    total_occurrences: Optional[int] = None
    is_active: bool
    price_cents_per_booking: int
    notes: Optional[str] = None


class OccurrenceConflictItem(BaseModel):
    date: date
    reason: str


class CreateRecurringResponse(BaseModel):
    series: Optional[SeriesResponse] = None
    bookings_created: int
    total_planned: int
    conflicts: list[OccurrenceConflictItem]
    preview_dates: list[date]
    bookings: list[BookingResponse] = []


class SeriesDetailResponse(BaseModel):
    series: SeriesResponse
    bookings: list[BookingResponse]


class CancelSeriesRequest(BaseModel):
    scope: CancelScope
    reason: Optional[str] = Field(None, max_length=255)


class CancelSeriesResponse(BaseModel):
    series_id: uuid.UUID
    scope: CancelScope
    cancelled_count: int
    is_active: bool


def _series_response(series: RecurringBookingSeries) -> SeriesResponse:
    return SeriesResponse(
        id=series.id,
        customer_id=series.customer_id,
        walker_id=series.walker_id,
        service_id=series.service_id,
        location_id=series.location_id,
        frequency=series.frequency,
        day_of_week=series.day_of_week,
        time_of_day=series.time_of_day.strftime("%H:%M"),
        timezone=series.timezone,
        start_date=series.start_date,
        end_date=series.end_date,
        total_occurrences=series.total_occurrences,
        is_active=series.is_active,
        price_cents_per_booking=series.price_cents_per_booking,
        notes=series.notes,
    )


# ────────────────────────────────────────────────────────────────
# Access helpers
# ────────────────────────────────────────────────────────────────

def _customer_for(ctx: RequestContext, requested: Optional[uuid.UUID]) -> uuid.UUID:
    if ctx.is_admin and requested is not None:
        return requested
    if ctx.role != CallerRole.CUSTOMER and not ctx.is_admin:
        raise AuthorizationError("Only customers and admins can create bookings")
    return ctx.user_id


def _can_view(ctx: RequestContext, customer_id: uuid.UUID, walker_id: uuid.UUID) -> bool:
    if ctx.role == CallerRole.CUSTOMER:
        return customer_id == ctx.user_id
    return ctx.can_manage_walker(walker_id)


async def _load_booking(session: AsyncSession, ctx: RequestContext, booking_id: uuid.UUID) -> Booking:
    booking = await fetch_booking(session, ctx.organization_id, booking_id)
    if not _can_view(ctx, booking.customer_id, booking.walker_id):
        # Other customers' bookings look exactly like missing ones.
        raise NotFound("Booking", booking_id)
    return booking


async def _load_series(session: AsyncSession, ctx: RequestContext, series_id: uuid.UUID) -> RecurringBookingSeries:
    series = await fetch_series(session, ctx.organization_id, series_id)
    if not _can_view(ctx, series.customer_id, series.walker_id):
        raise NotFound("Recurring series", series_id)
    return series


async def _load_booking_resources(session, ctx, customer_id, walker_id, service_id, location_id):
    walker = await fetch_walker(session, ctx.organization_id, walker_id)
    service = await fetch_service(session, ctx.organization_id, service_id)
    location = await fetch_location(session, ctx.organization_id, location_id)
    if location.customer_id != customer_id:
        raise NotFound("Location", location_id)
    return walker, service, location


# ────────────────────────────────────────────────────────────────
# Recurring series
# ────────────────────────────────────────────────────────────────

@router.post("/recurring", response_model=CreateRecurringResponse)
async def create_recurring_series(
    request: CreateRecurringRequest,
    idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    if idempotency_key and not request.preview_only:
        stored = await get_stored_response(session, ctx.organization_id, idempotency_key)
        if stored is not None:
            return JSONResponse(content=stored, status_code=status.HTTP_201_CREATED)

    try:
        frequency = RecurrenceFrequency(request.frequency.lower())
    except ValueError:
        raise InvalidRecurrenceRule(
            f"Unknown frequency '{request.frequency}'",
            details={"allowed": [f.value for f in RecurrenceFrequency]},
        )
    try:
        time_of_day = parse_hhmm(request.time_of_day, "time_of_day")
    except ValidationFailed as e:
        raise InvalidRecurrenceRule(e.message, details=e.details)

    customer_id = _customer_for(ctx, request.customer_id)
    walker, service, location = await _load_booking_resources(
        session, ctx, customer_id, request.walker_id, request.service_id, request.location_id
    )
    rule = SeriesRule(
        frequency=frequency,
        day_of_week=(
            request.day_of_week if request.day_of_week is not None else sunday_based_weekday(request.start_date)
        ),
        time_of_day=time_of_day,
        timezone=walker.timezone,
        start_date=request.start_date,
        occurrences=request.end_condition.occurrences,
        until=request.end_condition.end_date,
    )

    result = await create_series(
        session,
        organization_id=ctx.organization_id,
        customer_id=customer_id,
        walker=walker,
        service=service,
        location=location,
        rule=rule,
        notes=request.notes,
        preview_only=request.preview_only,
    )

    response = CreateRecurringResponse(
        series=_series_response(result.series) if result.series is not None else None,
        bookings_created=result.bookings_created,
        total_planned=result.total_planned,
        conflicts=[OccurrenceConflictItem(date=c.date, reason=c.reason) for c in result.conflicts],
        preview_dates=result.preview_dates,
        bookings=[BookingResponse.model_validate(b) for b in result.bookings],
    )
    if request.preview_only:
        return response

    body = response.model_dump(mode="json")
    if idempotency_key:
        await store_response(session, ctx.organization_id, ctx.user_id, idempotency_key, body)
    return JSONResponse(content=body, status_code=status.HTTP_201_CREATED)


@router.get("/recurring/{series_id}", response_model=SeriesDetailResponse)
async def get_recurring_series(
    series_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    series = await _load_series(session, ctx, series_id)
    bookings = await series_bookings(session, series.id)
    return SeriesDetailResponse(
        series=_series_response(series),
        bookings=[BookingResponse.model_validate(b) for b in bookings],
    )


@router.post("/recurring/{series_id}/cancel", response_model=CancelSeriesResponse)
async def cancel_recurring_series(
    series_id: uuid.UUID,
    request: CancelSeriesRequest,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    series = await _load_series(session, ctx, series_id)
    cancelled = await cancel_series(session, series, request.scope, reason=request.reason)
    return CancelSeriesResponse(
        series_id=series.id,
        scope=request.scope,
        cancelled_count=len(cancelled),
        is_active=series.is_active,
    )


# ────────────────────────────────────────────────────────────────
# Single bookings
# ────────────────────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_single_booking(
    request: CreateBookingRequest,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    customer_id = _customer_for(ctx, request.customer_id)
    walker, service, location = await _load_booking_resources(
        session, ctx, customer_id, request.walker_id, request.service_id, request.location_id
    )
    booking = await create_booking(
        session,
        organization_id=ctx.organization_id,
        customer_id=customer_id,
        walker=walker,
        service=service,
        location=location,
        start=request.start_time,
        notes=request.notes,
    )
    return BookingResponse.model_validate(booking)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    booking = await _load_booking(session, ctx, booking_id)
    return BookingResponse.model_validate(booking)


async def _walker_transition(
    session: AsyncSession,
    ctx: RequestContext,
    booking_id: uuid.UUID,
    target: BookingStatus,
) -> BookingResponse:
    booking = await _load_booking(session, ctx, booking_id)
    require_walker_access(ctx, booking.walker_id)
    booking = await transition_booking(session, booking, target)
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(
    booking_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    return await _walker_transition(session, ctx, booking_id, BookingStatus.CONFIRMED)


@router.post("/{booking_id}/start", response_model=BookingResponse)
async def start_booking(
    booking_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    return await _walker_transition(session, ctx, booking_id, BookingStatus.IN_PROGRESS)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    return await _walker_transition(session, ctx, booking_id, BookingStatus.COMPLETED)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: uuid.UUID,
    request: Optional[CancelBookingRequest] = None,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    booking = await _load_booking(session, ctx, booking_id)
    if not booking.can_cancel():
        raise InvalidTransition(
            f"Cannot cancel a booking that is {booking.status.value}",
            details={"from": booking.status.value, "to": BookingStatus.CANCELLED.value},
        )
    reason = request.reason if request else None
    booking = await transition_booking(session, booking, BookingStatus.CANCELLED, reason=reason)
    return BookingResponse.model_validate(booking)
