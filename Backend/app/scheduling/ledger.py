"""
Booking ledger: the authoritative record of which walker time is taken.

Invariant: for a fixed walker, no two bookings in an active status
(pending, confirmed, in_progress) overlap.

The slot generator's availability check is only a pre-flight. The guard
that actually holds the invariant is create_booking(), which re-checks for
overlap immediately before commit while holding the walker's per-day
serialization point:

    1. an in-process asyncio.Lock keyed by (walker_id, local date)
    2. on PostgreSQL, pg_advisory_xact_lock on the same key, so other API
       workers serialize too (released automatically at commit/rollback)

Two concurrent requests for the same slot therefore produce exactly one
booking and one SlotUnavailable.
"""

import asyncio
import logging
import uuid
import weakref
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import InvalidTransition, SlotUnavailable, ValidationFailed
from ..models import (
    ACTIVE_BOOKING_STATUSES,
    Booking,
    BookingStatus,
    Location,
    Service,
    Walker,
)
from ..tenancy.queries import list_active_bookings_in_range
from .blocks import blocking_intervals_for, load_events
from .intervals import TimeInterval
from .working_hours import load_rules, intervals_for

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────
# Status state machine
# ────────────────────────────────────────────────────────────────

ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def validate_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Cannot move booking from {current.value} to {target.value}",
            details={
                "from": current.value,
                "to": target.value,
                "allowed": sorted(s.value for s in ALLOWED_TRANSITIONS[current]),
            },
        )


# ────────────────────────────────────────────────────────────────
# Reads
# ────────────────────────────────────────────────────────────────

def local_day_window(day: date, tz_name: str) -> TimeInterval:
    """The walker-local calendar day [00:00, next 00:00) as a UTC interval."""
    tz = ZoneInfo(tz_name)
    start = datetime.combine(day, datetime.min.time(), tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), datetime.min.time(), tzinfo=tz)
    return TimeInterval(start.astimezone(timezone.utc), end.astimezone(timezone.utc))


def booking_interval(booking: Booking) -> TimeInterval:
    return TimeInterval(booking.scheduled_start, booking.scheduled_end)


async def occupied_intervals_for(
    session: AsyncSession,
    walker_id: uuid.UUID,
    window: TimeInterval,
) -> List[TimeInterval]:
    """Intervals of active bookings intersecting the window, sorted by start."""
    bookings = await list_active_bookings_in_range(session, walker_id, window.start, window.end)
    return [booking_interval(b) for b in bookings]


async def bookings_for(session: AsyncSession, walker: Walker, day: date) -> Sequence[Booking]:
    """Active bookings starting on the walker-local date, chronological."""
    window = local_day_window(day, walker.timezone)
    bookings = await list_active_bookings_in_range(session, walker.id, window.start, window.end)
    return [b for b in bookings if window.start <= b.scheduled_start < window.end]


async def find_overlapping(
    session: AsyncSession,
    walker_id: uuid.UUID,
    interval: TimeInterval,
    exclude_booking_id: Optional[uuid.UUID] = None,
) -> Sequence[Booking]:
    stmt = select(Booking).where(
        Booking.walker_id == walker_id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.scheduled_start < interval.end,
        Booking.scheduled_end > interval.start,
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    result = await session.execute(stmt)
    return result.scalars().all()


# ────────────────────────────────────────────────────────────────
# Serialization point
# ────────────────────────────────────────────────────────────────

_walker_day_locks: "weakref.WeakValueDictionary[tuple, asyncio.Lock]" = weakref.WeakValueDictionary()


def _get_walker_day_lock(walker_id: uuid.UUID, day: date) -> asyncio.Lock:
    key = (walker_id, day)
    lock = _walker_day_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _walker_day_locks[key] = lock
    return lock


async def _acquire_advisory_lock(session: AsyncSession, walker_id: uuid.UUID, day: date) -> None:
    if session.get_bind().dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:lock_key))"),
        {"lock_key": f"walker-day:{walker_id}:{day.isoformat()}"},
    )


@asynccontextmanager
async def walker_day_guard(session: AsyncSession, walker_id: uuid.UUID, days: Iterable[date]):
    """
    Hold the serialization point for one or more walker-local dates.

    Days are locked in sorted order so two batches touching the same dates
    cannot deadlock each other.
    """
    ordered = sorted(set(days))
    locks = [_get_walker_day_lock(walker_id, day) for day in ordered]
    acquired = []
    try:
        for lock in locks:
            await lock.acquire()
            acquired.append(lock)
        for day in ordered:
            await _acquire_advisory_lock(session, walker_id, day)
        yield
    finally:
        for lock in reversed(acquired):
            lock.release()


# ────────────────────────────────────────────────────────────────
# Validation shared by manual and recurring bookings
# ────────────────────────────────────────────────────────────────

async def schedule_conflict_reason(
    session: AsyncSession,
    walker: Walker,
    interval: TimeInterval,
    pending: Sequence[TimeInterval] = (),
) -> Optional[str]:
    """
    Why `interval` cannot be booked for this walker, or None if it can.

    `pending` holds intervals already accepted earlier in the same batch
    but not yet committed.
    """
    local_day = interval.start.astimezone(ZoneInfo(walker.timezone)).date()
    rules = await load_rules(session, walker.id)
    work_day = intervals_for(rules, local_day, walker.timezone)
    if not any(window.contains(interval) for window in work_day):
        return "outside_working_hours"

    events = await load_events(session, walker.id, interval)
    if blocking_intervals_for(events, interval, walker.timezone):
        return "blocked_by_calendar_event"

    if any(interval.overlaps(other) for other in pending):
        return "overlaps_booking"
    if await find_overlapping(session, walker.id, interval):
        return "overlaps_booking"
    return None


# ────────────────────────────────────────────────────────────────
# Writes
# ────────────────────────────────────────────────────────────────

async def create_booking(
    session: AsyncSession,
    *,
    organization_id: uuid.UUID,
    customer_id: uuid.UUID,
    walker: Walker,
    service: Service,
    location: Location,
    start: datetime,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """
    Create a pending booking, or raise SlotUnavailable.

    Never retried automatically: a retry could hand the customer a different
    time than the one they asked for.
    """
    now = now or datetime.now(timezone.utc)
    if start.tzinfo is None:
        raise ValidationFailed("start must include a timezone offset")
    interval = TimeInterval(start, start + timedelta(minutes=service.duration_minutes))
    if interval.start <= now:
        raise ValidationFailed("Bookings must start in the future", details={"start": interval.start.isoformat()})

    walker_id = walker.id
    local_day = interval.start.astimezone(ZoneInfo(walker.timezone)).date()

    async with walker_day_guard(session, walker_id, [local_day]):
        try:
            reason = await schedule_conflict_reason(session, walker, interval)
            if reason is not None:
                conflicts = await find_overlapping(session, walker_id, interval)
                raise SlotUnavailable(
                    "Requested time is no longer available",
                    details={
                        "reason": reason,
                        "walker_id": str(walker_id),
                        "requested": interval.to_dict(),
                        "conflicting_booking_ids": [str(b.id) for b in conflicts],
                    },
                )

            booking = Booking(
                organization_id=organization_id,
                customer_id=customer_id,
                walker_id=walker_id,
                service_id=service.id,
                location_id=location.id,
                scheduled_start=interval.start,
                scheduled_end=interval.end,
                status=BookingStatus.PENDING,
                price_cents=service.price_cents,
                notes=notes,
            )
            session.add(booking)
            await session.commit()
        except SlotUnavailable:
            await session.rollback()
            logger.info(f"Slot unavailable for walker {walker_id} at {interval.start.isoformat()}")
            raise

    logger.info(
        f"Booking {booking.id} created for walker {walker_id} "
        f"{interval.start.isoformat()} - {interval.end.isoformat()}"
    )
    return booking


async def transition_booking(
    session: AsyncSession,
    booking: Booking,
    target: BookingStatus,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Booking:
    """Apply a status transition; illegal transitions leave the booking untouched."""
    validate_transition(booking.status, target)
    previous = booking.status

    booking.status = target
    if target == BookingStatus.CANCELLED:
        booking.cancelled_at = now or datetime.now(timezone.utc)
        booking.cancellation_reason = reason
    await session.commit()

    logger.info(f"Booking {booking.id}: {previous.value} -> {target.value}")
    return booking
