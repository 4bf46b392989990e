"""
Recurring booking series.

A series (frequency, weekday, local time of day, end condition) expands into
concrete bookings tagged with occurrence_number 1..N. Every occurrence goes
through the same working-hours, calendar-block and overlap checks as a
manually created booking.

Conflict policy: conflict-free occurrences are created, conflicting ones are
skipped and reported. The series row and all of its bookings are committed
in a single transaction while the walker's affected days are locked, so a
series is either fully written (minus reported skips) or not written at all.

Usage:
    rule = SeriesRule(
        frequency=RecurrenceFrequency.WEEKLY,
        day_of_week=1,               # Monday (Sunday = 0)
        time_of_day=time(9, 0),
        timezone="America/Phoenix",
        start_date=date(2026, 3, 2),
        occurrences=4,
    )
    result = await create_series(session, ..., rule=rule)
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import List, Optional, Sequence

from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..core.errors import InvalidRecurrenceRule, InvalidTransition, SlotUnavailable
from ..models import (
    CANCELLABLE_BOOKING_STATUSES,
    Booking,
    BookingStatus,
    Location,
    RecurrenceFrequency,
    RecurringBookingSeries,
    Service,
    Walker,
)
from .intervals import TimeInterval
from .ledger import schedule_conflict_reason, walker_day_guard
from .working_hours import DAY_NAMES, single_utc_datetime, sunday_based_weekday

logger = logging.getLogger(__name__)

MAX_PREVIEW_DATES = 5
HORIZON_DAYS = 365


class CancelScope(str, Enum):
    ALL_FUTURE = "all_future"
    ENTIRE_SERIES = "entire_series"


@dataclass
class SeriesRule:
    frequency: RecurrenceFrequency
    day_of_week: int
    time_of_day: time
    timezone: str
    start_date: date
    occurrences: Optional[int] = None
    until: Optional[date] = None


@dataclass(frozen=True)
class Occurrence:
    occurrence_number: int
    date: date
    # None when time_of_day does not exist once on this date (DST change)
    interval: Optional[TimeInterval]


@dataclass(frozen=True)
class OccurrenceConflict:
    date: date
    reason: str

    def to_dict(self) -> dict:
        return {"date": self.date.isoformat(), "reason": self.reason}


@dataclass
class SeriesResult:
    series: Optional[RecurringBookingSeries]
    bookings: List[Booking] = field(default_factory=list)
    total_planned: int = 0
    conflicts: List[OccurrenceConflict] = field(default_factory=list)
    preview_dates: List[date] = field(default_factory=list)

    @property
    def bookings_created(self) -> int:
        return len(self.bookings)


# ────────────────────────────────────────────────────────────────
# Expansion
# ────────────────────────────────────────────────────────────────

def validate_rule(rule: SeriesRule, max_occurrences: Optional[int] = None) -> None:
    """Reject malformed rules before anything is generated or written."""
    max_occurrences = max_occurrences or get_settings().max_recurring_occurrences
    if not 0 <= rule.day_of_week <= 6:
        raise InvalidRecurrenceRule(
            f"day_of_week must be between 0 (Sunday) and 6 (Saturday), got {rule.day_of_week}"
        )
    if (rule.occurrences is None) == (rule.until is None):
        raise InvalidRecurrenceRule("End condition must set exactly one of occurrences or date")
    if rule.occurrences is not None and not 1 <= rule.occurrences <= max_occurrences:
        raise InvalidRecurrenceRule(
            f"occurrences must be between 1 and {max_occurrences}",
            details={"occurrences": rule.occurrences},
        )
    if rule.until is not None and rule.until <= rule.start_date:
        raise InvalidRecurrenceRule(
            "End date must be after the start date",
            details={"start_date": rule.start_date.isoformat(), "end_date": rule.until.isoformat()},
        )


def _next_monthly(current: date) -> date:
    """Same weekday, same week-of-month in the next month (one week earlier if that overflows)."""
    week_index = (current.day - 1) // 7
    first = (current + relativedelta(months=1)).replace(day=1)
    candidate = first + timedelta(days=(current.weekday() - first.weekday()) % 7 + 7 * week_index)
    if candidate.month != first.month:
        candidate -= timedelta(days=7)
    return candidate


def _advance(current: date, frequency: RecurrenceFrequency) -> date:
    if frequency == RecurrenceFrequency.DAILY:
        return current + timedelta(days=1)
    if frequency == RecurrenceFrequency.WEEKLY:
        return current + timedelta(weeks=1)
    if frequency == RecurrenceFrequency.BI_WEEKLY:
        return current + timedelta(weeks=2)
    return _next_monthly(current)


def generate_occurrence_dates(rule: SeriesRule, max_occurrences: Optional[int] = None) -> List[date]:
    """
    Dates of every occurrence, bounded by the end condition, the occurrence
    cap and a one-year horizon.
    """
    max_occurrences = max_occurrences or get_settings().max_recurring_occurrences
    limit = min(rule.occurrences or max_occurrences, max_occurrences)
    last_date = rule.start_date + timedelta(days=HORIZON_DAYS)
    if rule.until is not None:
        last_date = min(last_date, rule.until)

    current = rule.start_date
    if rule.frequency != RecurrenceFrequency.DAILY:
        current += timedelta(days=(rule.day_of_week - sunday_based_weekday(current)) % 7)

    dates = []
    while len(dates) < limit and current <= last_date:
        dates.append(current)
        current = _advance(current, rule.frequency)
    return dates


def expand(rule: SeriesRule, duration_minutes: int, max_occurrences: Optional[int] = None) -> List[Occurrence]:
    validate_rule(rule, max_occurrences)
    occurrences = []
    for number, day in enumerate(generate_occurrence_dates(rule, max_occurrences), start=1):
        start = single_utc_datetime(day, rule.time_of_day, rule.timezone)
        if start is None:
            occurrences.append(Occurrence(number, day, None))
            continue
        occurrences.append(Occurrence(number, day, TimeInterval(start, start + timedelta(minutes=duration_minutes))))
    return occurrences


# ────────────────────────────────────────────────────────────────
# Creation
# ────────────────────────────────────────────────────────────────

async def _check_occurrences(
    session: AsyncSession,
    walker: Walker,
    occurrences: Sequence[Occurrence],
    now: datetime,
) -> tuple[List[Occurrence], List[OccurrenceConflict]]:
    accepted: List[Occurrence] = []
    conflicts: List[OccurrenceConflict] = []
    for occurrence in occurrences:
        if occurrence.interval is None:
            conflicts.append(OccurrenceConflict(occurrence.date, "ambiguous_local_time"))
            continue
        if occurrence.interval.start <= now:
            conflicts.append(OccurrenceConflict(occurrence.date, "in_past"))
            continue
        reason = await schedule_conflict_reason(
            session, walker, occurrence.interval, pending=[o.interval for o in accepted]
        )
        if reason is not None:
            conflicts.append(OccurrenceConflict(occurrence.date, reason))
        else:
            accepted.append(occurrence)
    return accepted, conflicts


async def create_series(
    session: AsyncSession,
    *,
    organization_id: uuid.UUID,
    customer_id: uuid.UUID,
    walker: Walker,
    service: Service,
    location: Location,
    rule: SeriesRule,
    notes: Optional[str] = None,
    preview_only: bool = False,
    now: Optional[datetime] = None,
) -> SeriesResult:
    now = now or datetime.now(timezone.utc)
    occurrences = expand(rule, service.duration_minutes)
    preview_dates = [o.date for o in occurrences[:MAX_PREVIEW_DATES]]

    if preview_only:
        _, conflicts = await _check_occurrences(session, walker, occurrences, now)
        return SeriesResult(
            series=None,
            total_planned=len(occurrences),
            conflicts=conflicts,
            preview_dates=preview_dates,
        )

    walker_id = walker.id
    async with walker_day_guard(session, walker_id, [o.date for o in occurrences]):
        accepted, conflicts = await _check_occurrences(session, walker, occurrences, now)
        if not accepted:
            await session.rollback()
            raise SlotUnavailable(
                "None of the series occurrences are available",
                details={"conflicts": [c.to_dict() for c in conflicts]},
            )

        series = RecurringBookingSeries(
            organization_id=organization_id,
            customer_id=customer_id,
            walker_id=walker_id,
            service_id=service.id,
            location_id=location.id,
            frequency=rule.frequency,
            day_of_week=rule.day_of_week,
            time_of_day=rule.time_of_day,
            timezone=rule.timezone,
            start_date=rule.start_date,
            end_date=rule.until,
            total_occurrences=rule.occurrences,
            is_active=True,
            price_cents_per_booking=service.price_cents,
            notes=notes,
        )
        session.add(series)
        await session.flush()

        bookings = []
        for occurrence in accepted:
            booking = Booking(
                organization_id=organization_id,
                customer_id=customer_id,
                walker_id=walker_id,
                service_id=service.id,
                location_id=location.id,
                scheduled_start=occurrence.interval.start,
                scheduled_end=occurrence.interval.end,
                status=BookingStatus.PENDING,
                price_cents=service.price_cents,
                notes=notes,
                recurring_series_id=series.id,
                occurrence_number=occurrence.occurrence_number,
            )
            session.add(booking)
            bookings.append(booking)
        await session.commit()

    logger.info(
        f"Recurring series {series.id} ({rule.frequency.value} on {DAY_NAMES[rule.day_of_week]}) "
        f"created {len(bookings)}/{len(occurrences)} booking(s), {len(conflicts)} skipped"
    )
    return SeriesResult(
        series=series,
        bookings=bookings,
        total_planned=len(occurrences),
        conflicts=conflicts,
        preview_dates=preview_dates,
    )


# ────────────────────────────────────────────────────────────────
# Reads and cancellation
# ────────────────────────────────────────────────────────────────

async def series_bookings(session: AsyncSession, series_id: uuid.UUID) -> Sequence[Booking]:
    result = await session.execute(
        select(Booking)
        .where(Booking.recurring_series_id == series_id)
        .order_by(Booking.occurrence_number)
    )
    return result.scalars().all()


async def cancel_series(
    session: AsyncSession,
    series: RecurringBookingSeries,
    scope: CancelScope,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Booking]:
    """
    all_future:    pending/confirmed occurrences starting after `now`
    entire_series: every pending/confirmed occurrence, past ones included

    Completed, in-progress and already-cancelled occurrences are untouched.
    Only entire_series deactivates the series.
    """
    if not series.is_active:
        raise InvalidTransition("Series is already cancelled", details={"series_id": str(series.id)})

    now = now or datetime.now(timezone.utc)
    cancelled = []
    for booking in await series_bookings(session, series.id):
        if booking.status not in CANCELLABLE_BOOKING_STATUSES:
            continue
        if scope == CancelScope.ALL_FUTURE and booking.scheduled_start <= now:
            continue
        booking.status = BookingStatus.CANCELLED
        booking.cancelled_at = now
        booking.cancellation_reason = reason or f"series cancelled ({scope.value})"
        cancelled.append(booking)

    if scope == CancelScope.ENTIRE_SERIES:
        series.is_active = False
    await session.commit()

    logger.info(f"Recurring series {series.id} cancelled ({scope.value}): {len(cancelled)} booking(s)")
    return cancelled
