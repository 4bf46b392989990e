"""
Walker calendar routes: calendar events and weekly working hours.

Walkers manage their own calendar (walker_id defaults to the caller);
admins pass walker_id explicitly and may manage any walker in the org.

Usage:
    GET    /calendar-events?start=...&end=...[&event_type=block][&walker_id=...]
    POST   /calendar-events
    GET    /calendar-events/{event_id}
    PATCH  /calendar-events/{event_id}
    DELETE /calendar-events/{event_id}?scope=occurrence&occurrence_date=2026-03-09
    GET    /working-hours[?walker_id=...]
    PUT    /working-hours
"""

import logging
import uuid
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.errors import ValidationFailed
from .core.request_context import (
    RequestContext,
    get_request_context,
    require_walker_access,
    resolve_walker_id,
)
from .models import CalendarEvent, CalendarEventType, WorkingHours
from .scheduling.blocks import create_event, delete_event, get_event, load_events, occurrences_in, update_event
from .scheduling.intervals import TimeInterval
from .scheduling.working_hours import DAY_NAMES, DaySchedule, load_rules, parse_hhmm, update_schedule
from .tenancy.queries import fetch_walker

logger = logging.getLogger(__name__)

router = APIRouter(tags=["calendar"])


# ────────────────────────────────────────────────────────────────
# Calendar events
# ────────────────────────────────────────────────────────────────

class CalendarEventResponse(BaseModel):
    id: uuid.UUID
    walker_id: uuid.UUID
    title: Optional[str] = None
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    all_day: bool
    event_type: CalendarEventType
    is_blocking: bool
    recurrence_rule: Optional[str] = None
    recurrence_exceptions: list[str] = []
    color: Optional[str] = None
    occurrence_date: Optional[date] = Field(None, description="Set on expanded occurrences of a recurring event")

    model_config = {"from_attributes": True}


class CalendarEventsResponse(BaseModel):
    events: list[CalendarEventResponse]
    count: int


class CreateCalendarEventRequest(BaseModel):
    walker_id: Optional[uuid.UUID] = None
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    start_time: datetime
    end_time: datetime
    all_day: bool = False
    event_type: CalendarEventType = CalendarEventType.BLOCK
    is_blocking: bool = True
    recurrence_rule: Optional[str] = Field(None, max_length=512, description="RRULE, e.g. FREQ=WEEKLY;BYDAY=MO")
    color: Optional[str] = Field(None, max_length=16)


class UpdateCalendarEventRequest(BaseModel):
    title: Optional[str] = Field(None, max_length=255)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    all_day: Optional[bool] = None
    is_blocking: Optional[bool] = None
    recurrence_rule: Optional[str] = Field(None, max_length=512)
    color: Optional[str] = Field(None, max_length=16)


def _require_aware(*values: Optional[datetime]) -> None:
    for value in values:
        if value is not None and value.tzinfo is None:
            raise ValidationFailed("Timestamps must include a timezone offset")


@router.get("/calendar-events", response_model=CalendarEventsResponse)
async def list_calendar_events(
    start: datetime = Query(..., description="Window start (ISO 8601 with offset)"),
    end: datetime = Query(..., description="Window end (ISO 8601 with offset)"),
    event_type: Optional[CalendarEventType] = Query(None),
    walker_id: Optional[uuid.UUID] = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    _require_aware(start, end)
    if start >= end:
        raise ValidationFailed("start must be before end")
    target = resolve_walker_id(ctx, walker_id)
    walker = await fetch_walker(session, ctx.organization_id, target)

    window = TimeInterval(start, end)
    events = await load_events(session, walker.id, window, event_type=event_type)

    # Recurring events are listed once per occurrence in the window
    items = []
    for event in events:
        if event.organization_id != ctx.organization_id:
            continue
        base = CalendarEventResponse.model_validate(event)
        if not event.recurrence_rule:
            items.append(base)
            continue
        for occurrence in occurrences_in(event, window, walker.timezone):
            items.append(
                base.model_copy(
                    update={
                        "start_time": occurrence.start,
                        "end_time": occurrence.end,
                        "occurrence_date": occurrence.start.astimezone(ZoneInfo(walker.timezone)).date(),
                    }
                )
            )
    items.sort(key=lambda item: item.start_time)
    return CalendarEventsResponse(events=items, count=len(items))


@router.post("/calendar-events", response_model=CalendarEventResponse, status_code=status.HTTP_201_CREATED)
async def create_calendar_event(
    request: CreateCalendarEventRequest,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    _require_aware(request.start_time, request.end_time)
    target = resolve_walker_id(ctx, request.walker_id)
    walker = await fetch_walker(session, ctx.organization_id, target)

    event = await create_event(
        session,
        organization_id=ctx.organization_id,
        walker_id=walker.id,
        tz_name=walker.timezone,
        start_time=request.start_time,
        end_time=request.end_time,
        event_type=request.event_type,
        title=request.title,
        description=request.description,
        all_day=request.all_day,
        is_blocking=request.is_blocking,
        recurrence_rule=request.recurrence_rule,
        color=request.color,
    )
    return CalendarEventResponse.model_validate(event)


async def _load_managed_event(
    session: AsyncSession,
    ctx: RequestContext,
    event_id: uuid.UUID,
) -> CalendarEvent:
    event = await get_event(session, ctx.organization_id, event_id)
    require_walker_access(ctx, event.walker_id)
    return event


@router.get("/calendar-events/{event_id}", response_model=CalendarEventResponse)
async def get_calendar_event(
    event_id: uuid.UUID,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    event = await _load_managed_event(session, ctx, event_id)
    return CalendarEventResponse.model_validate(event)


@router.patch("/calendar-events/{event_id}", response_model=CalendarEventResponse)
async def patch_calendar_event(
    event_id: uuid.UUID,
    request: UpdateCalendarEventRequest,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    _require_aware(request.start_time, request.end_time)
    event = await _load_managed_event(session, ctx, event_id)
    walker = await fetch_walker(session, ctx.organization_id, event.walker_id)

    changes = request.model_dump(exclude_unset=True)
    for key in ("start_time", "end_time", "all_day", "is_blocking"):
        if key in changes and changes[key] is None:
            raise ValidationFailed(f"{key} cannot be null")

    event = await update_event(session, event, walker.timezone, changes)
    return CalendarEventResponse.model_validate(event)


@router.delete("/calendar-events/{event_id}")
async def delete_calendar_event(
    event_id: uuid.UUID,
    scope: str = Query("series", description="'series' deletes the event, 'occurrence' one date of it"),
    occurrence_date: Optional[date] = Query(None, description="Walker-local date of the occurrence"),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    event = await _load_managed_event(session, ctx, event_id)
    walker = await fetch_walker(session, ctx.organization_id, event.walker_id)
    await delete_event(session, event, walker.timezone, scope=scope, occurrence_date=occurrence_date)
    return {"status": "deleted", "event_id": str(event_id), "scope": scope}


# ────────────────────────────────────────────────────────────────
# Working hours
# ────────────────────────────────────────────────────────────────

class WorkingHoursDay(BaseModel):
    day_of_week: int = Field(..., description="0 = Sunday ... 6 = Saturday")
    start_time: str = Field(..., description="HH:MM, walker-local")
    end_time: str = Field(..., description="HH:MM, walker-local")
    is_active: bool = True


class WorkingHoursDayResponse(WorkingHoursDay):
    day_name: str


class WorkingHoursResponse(BaseModel):
    walker_id: uuid.UUID
    timezone: str
    days: list[WorkingHoursDayResponse]


class UpdateWorkingHoursRequest(BaseModel):
    walker_id: Optional[uuid.UUID] = None
    schedule: list[WorkingHoursDay]


def _working_hours_response(walker_id: uuid.UUID, tz_name: str, rules: list[WorkingHours]) -> WorkingHoursResponse:
    return WorkingHoursResponse(
        walker_id=walker_id,
        timezone=tz_name,
        days=[
            WorkingHoursDayResponse(
                day_of_week=rule.day_of_week,
                day_name=DAY_NAMES[rule.day_of_week],
                start_time=rule.start_time.strftime("%H:%M"),
                end_time=rule.end_time.strftime("%H:%M"),
                is_active=rule.is_active,
            )
            for rule in rules
        ],
    )


@router.get("/working-hours", response_model=WorkingHoursResponse)
async def get_working_hours(
    walker_id: Optional[uuid.UUID] = Query(None),
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    target = resolve_walker_id(ctx, walker_id)
    walker = await fetch_walker(session, ctx.organization_id, target)
    rules = list(await load_rules(session, walker.id))
    return _working_hours_response(walker.id, walker.timezone, rules)


@router.put("/working-hours", response_model=WorkingHoursResponse)
async def put_working_hours(
    request: UpdateWorkingHoursRequest,
    ctx: RequestContext = Depends(get_request_context),
    session: AsyncSession = Depends(get_session),
):
    target = resolve_walker_id(ctx, request.walker_id)
    walker = await fetch_walker(session, ctx.organization_id, target)
    walker_id, tz_name = walker.id, walker.timezone

    schedule = [
        DaySchedule(
            day_of_week=day.day_of_week,
            start_time=parse_hhmm(day.start_time, "start_time"),
            end_time=parse_hhmm(day.end_time, "end_time"),
            is_active=day.is_active,
        )
        for day in request.schedule
    ]
    rules = list(await update_schedule(session, walker_id, schedule))
    return _working_hours_response(walker_id, tz_name, rules)
