"""
Block calendar: walker calendar events overlaid on working hours.

Blocking events (personal appointments, closures, recurring lunch breaks)
remove time from availability. Non-blocking events and booking-derived
entries are informational; bookings are already accounted for by the
ledger and must not be subtracted twice.

Recurring events carry an RRULE (subset: FREQ=DAILY|WEEKLY|MONTHLY,
INTERVAL, BYDAY, COUNT, UNTIL) evaluated in the walker's local time, so a
"weekdays 12:00-13:00" block stays at noon across DST changes.

Usage:
    events = await load_events(session, walker.id, window)
    blocked = blocking_intervals_for(events, window, walker.timezone)
"""

import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from dateutil.rrule import rrule, rrulestr
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import InvalidRecurrenceRule, NotFound, ValidationFailed
from ..models import CalendarEvent, CalendarEventType
from .intervals import TimeInterval, merge_intervals

logger = logging.getLogger(__name__)

SUPPORTED_RRULE_PARTS = {"FREQ", "INTERVAL", "BYDAY", "COUNT", "UNTIL"}
SUPPORTED_FREQUENCIES = {"DAILY", "WEEKLY", "MONTHLY"}


# ────────────────────────────────────────────────────────────────
# Recurrence rules
# ────────────────────────────────────────────────────────────────

def _local_naive(value: datetime, tz_name: str) -> datetime:
    return value.astimezone(ZoneInfo(tz_name)).replace(tzinfo=None)


def _local_to_utc(value: datetime, tz_name: str) -> datetime:
    return value.replace(tzinfo=ZoneInfo(tz_name)).astimezone(timezone.utc)


def parse_recurrence_rule(rule_text: str, dtstart: datetime) -> rrule:
    """
    Parse an RRULE string anchored at a naive local dtstart.

    Raises:
        InvalidRecurrenceRule: unknown parts, unsupported FREQ, or a rule
            dateutil cannot parse.
    """
    text = rule_text.strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:"):]
    if not text:
        raise InvalidRecurrenceRule("Recurrence rule is empty")

    parts = {}
    for chunk in text.split(";"):
        if not chunk:
            continue
        key, sep, value = chunk.partition("=")
        if not sep:
            raise InvalidRecurrenceRule(f"Malformed recurrence rule part '{chunk}'")
        parts[key.strip().upper()] = value.strip()

    unknown = set(parts) - SUPPORTED_RRULE_PARTS
    if unknown:
        raise InvalidRecurrenceRule(
            f"Unsupported recurrence rule parts: {', '.join(sorted(unknown))}",
            details={"supported": sorted(SUPPORTED_RRULE_PARTS)},
        )
    if parts.get("FREQ", "").upper() not in SUPPORTED_FREQUENCIES:
        raise InvalidRecurrenceRule(
            f"Unsupported recurrence frequency '{parts.get('FREQ', '')}'",
            details={"supported": sorted(SUPPORTED_FREQUENCIES)},
        )
    if "COUNT" in parts and "UNTIL" in parts:
        raise InvalidRecurrenceRule("Recurrence rule cannot set both COUNT and UNTIL")

    try:
        # UNTIL is read as walker-local wall time, same as dtstart.
        return rrulestr(text, dtstart=dtstart, ignoretz=True)
    except (ValueError, TypeError) as exc:
        raise InvalidRecurrenceRule(f"Invalid recurrence rule: {exc}")


def occurrences_in(event: CalendarEvent, window: TimeInterval, tz_name: str) -> List[TimeInterval]:
    """Concrete intervals of `event` that intersect `window` (unclipped)."""
    base = TimeInterval(event.start_time, event.end_time)
    if not event.recurrence_rule:
        return [base] if base.overlaps(window) else []

    duration = base.duration
    rule = parse_recurrence_rule(event.recurrence_rule, _local_naive(event.start_time, tz_name))
    excluded = set(event.recurrence_exceptions or [])

    # An occurrence that starts before the window can still reach into it.
    search_start = _local_naive(window.start - duration, tz_name)
    search_end = _local_naive(window.end, tz_name)

    intervals = []
    for local_start in rule.between(search_start, search_end, inc=True):
        if local_start.date().isoformat() in excluded:
            continue
        start = _local_to_utc(local_start, tz_name)
        occurrence = TimeInterval(start, start + duration)
        if occurrence.overlaps(window):
            intervals.append(occurrence)
    return intervals


def blocking_intervals_for(
    events: Iterable[CalendarEvent],
    window: TimeInterval,
    tz_name: str,
) -> List[TimeInterval]:
    """
    Maximal disjoint blocking intervals within `window`.

    Recurring blocks are expanded per date before merging; non-blocking
    events and booking mirrors are skipped.
    """
    collected = []
    for event in events:
        if not event.is_blocking or event.event_type == CalendarEventType.BOOKING:
            continue
        for occurrence in occurrences_in(event, window, tz_name):
            clipped = occurrence.clip(window)
            if clipped is not None:
                collected.append(clipped)
    return merge_intervals(collected)


# ────────────────────────────────────────────────────────────────
# Store operations
# ────────────────────────────────────────────────────────────────

async def load_events(
    session: AsyncSession,
    walker_id: uuid.UUID,
    window: TimeInterval,
    event_type: Optional[CalendarEventType] = None,
) -> Sequence[CalendarEvent]:
    """One-off events intersecting the window plus recurring events that started before its end."""
    stmt = select(CalendarEvent).where(
        CalendarEvent.walker_id == walker_id,
        CalendarEvent.start_time < window.end,
        or_(
            CalendarEvent.end_time > window.start,
            CalendarEvent.recurrence_rule.isnot(None),
        ),
    )
    if event_type is not None:
        stmt = stmt.where(CalendarEvent.event_type == event_type)
    result = await session.execute(stmt.order_by(CalendarEvent.start_time))
    return result.scalars().all()


def _normalize_all_day(start: datetime, end: datetime, tz_name: str) -> tuple[datetime, datetime]:
    """All-day events cover whole local days: midnight of the first to midnight after the last."""
    tz = ZoneInfo(tz_name)
    first_day = start.astimezone(tz).date()
    local_end = end.astimezone(tz)
    last_day = local_end.date()
    if local_end.time() == time(0, 0) and last_day > first_day:
        last_day -= timedelta(days=1)
    day_start = datetime.combine(first_day, time(0, 0), tzinfo=tz)
    day_end = datetime.combine(last_day + timedelta(days=1), time(0, 0), tzinfo=tz)
    return day_start.astimezone(timezone.utc), day_end.astimezone(timezone.utc)


async def create_event(
    session: AsyncSession,
    *,
    organization_id: uuid.UUID,
    walker_id: uuid.UUID,
    tz_name: str,
    start_time: datetime,
    end_time: datetime,
    event_type: CalendarEventType = CalendarEventType.BLOCK,
    title: Optional[str] = None,
    description: Optional[str] = None,
    all_day: bool = False,
    is_blocking: bool = True,
    recurrence_rule: Optional[str] = None,
    color: Optional[str] = None,
) -> CalendarEvent:
    if start_time >= end_time:
        raise ValidationFailed("Event start_time must be before end_time")
    if all_day:
        start_time, end_time = _normalize_all_day(start_time, end_time, tz_name)
    if event_type == CalendarEventType.BOOKING:
        # Bookings already occupy time through the ledger.
        is_blocking = False
    if recurrence_rule:
        parse_recurrence_rule(recurrence_rule, _local_naive(start_time, tz_name))

    event = CalendarEvent(
        organization_id=organization_id,
        walker_id=walker_id,
        title=title,
        description=description,
        start_time=start_time,
        end_time=end_time,
        all_day=all_day,
        event_type=event_type,
        is_blocking=is_blocking,
        recurrence_rule=recurrence_rule or None,
        recurrence_exceptions=[],
        color=color,
    )
    session.add(event)
    await session.commit()
    logger.info(
        f"Created {event_type.value} event {event.id} for walker {walker_id} "
        f"(blocking={is_blocking}, recurring={bool(recurrence_rule)})"
    )
    return event


async def get_event(
    session: AsyncSession,
    organization_id: uuid.UUID,
    event_id: uuid.UUID,
) -> CalendarEvent:
    result = await session.execute(
        select(CalendarEvent).where(
            CalendarEvent.id == event_id,
            CalendarEvent.organization_id == organization_id,
        )
    )
    event = result.scalar_one_or_none()
    if event is None:
        raise NotFound("Calendar event", event_id)
    return event


async def update_event(
    session: AsyncSession,
    event: CalendarEvent,
    tz_name: str,
    changes: dict,
) -> CalendarEvent:
    """Apply a partial update; the resulting event is validated as a whole."""
    start_time = changes.get("start_time", event.start_time)
    end_time = changes.get("end_time", event.end_time)
    if start_time >= end_time:
        raise ValidationFailed("Event start_time must be before end_time")
    all_day = changes.get("all_day", event.all_day)
    if all_day:
        start_time, end_time = _normalize_all_day(start_time, end_time, tz_name)
    if "recurrence_rule" in changes and changes["recurrence_rule"]:
        parse_recurrence_rule(changes["recurrence_rule"], _local_naive(start_time, tz_name))

    for field in ("title", "description", "color", "is_blocking", "recurrence_rule"):
        if field in changes:
            setattr(event, field, changes[field])
    if event.event_type == CalendarEventType.BOOKING:
        event.is_blocking = False
    event.start_time = start_time
    event.end_time = end_time
    event.all_day = all_day

    await session.commit()
    return event


async def delete_event(
    session: AsyncSession,
    event: CalendarEvent,
    tz_name: str,
    scope: str = "series",
    occurrence_date: Optional[date] = None,
) -> None:
    """
    Delete a whole event (scope="series") or drop a single occurrence of a
    recurring event (scope="occurrence").
    """
    if scope == "occurrence":
        if not event.recurrence_rule:
            raise ValidationFailed("Only recurring events have occurrences to delete")
        if occurrence_date is None:
            raise ValidationFailed("occurrence_date is required when scope is 'occurrence'")
        day_start = datetime.combine(occurrence_date, time(0, 0), tzinfo=ZoneInfo(tz_name))
        day = TimeInterval(day_start.astimezone(timezone.utc), (day_start + timedelta(days=1)).astimezone(timezone.utc))
        matches = [
            occ for occ in occurrences_in(event, day, tz_name)
            if occ.start.astimezone(ZoneInfo(tz_name)).date() == occurrence_date
        ]
        if not matches:
            raise NotFound("Calendar event occurrence", occurrence_date.isoformat())
        # Reassign so the JSON column is flagged dirty.
        event.recurrence_exceptions = sorted(set(event.recurrence_exceptions or []) | {occurrence_date.isoformat()})
        await session.commit()
        logger.info(f"Removed occurrence {occurrence_date} from recurring event {event.id}")
        return

    if scope != "series":
        raise ValidationFailed(f"Unknown delete scope '{scope}'", details={"allowed": ["series", "occurrence"]})

    children = await session.execute(
        select(CalendarEvent).where(CalendarEvent.recurrence_parent_id == event.id)
    )
    for child in children.scalars().all():
        await session.delete(child)
    await session.delete(event)
    await session.commit()
    logger.info(f"Deleted calendar event {event.id}")
