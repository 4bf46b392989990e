"""
Slot generator.

For every requested date and eligible walker (when the customer location
is known, only walkers whose service areas cover it):

    free  = working hours
    free -= blocking calendar events
    free -= active bookings (padded by travel + buffer when the customer's
            location is known, so a new visit is never closer to a
            neighbouring stop than the drive allows)
    slots = every aligned [start, start + duration) that fits inside `free`

Slots are yielded lazily, walker by walker and day by day, so callers can
stop early. The computation reads a fresh snapshot per call and writes
nothing except travel-time cache rows.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import AsyncIterator, Iterator, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import Settings, get_settings
from ..core.errors import CostProviderUnavailable, ValidationFailed
from ..models import Location, Service, Walker
from ..tenancy.queries import get_locations_by_ids, list_active_bookings_in_range
from .blocks import blocking_intervals_for, load_events
from .intervals import TimeInterval, subtract_intervals
from .ledger import booking_interval, local_day_window
from .service_areas import eligible_walkers
from .working_hours import intervals_for, load_rules

logger = logging.getLogger(__name__)


class SlotConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class Slot:
    walker_id: uuid.UUID
    interval: TimeInterval
    confidence: SlotConfidence
    travel_minutes: Optional[int] = None  # from the previous stop, when known

    def to_dict(self) -> dict:
        return {
            "walker_id": str(self.walker_id),
            "start_time": self.interval.start.isoformat(),
            "end_time": self.interval.end.isoformat(),
            "confidence": self.confidence.value,
            "travel_minutes": self.travel_minutes,
        }


@dataclass(frozen=True)
class SlotOptions:
    duration_minutes: int
    granularity_minutes: int = 30
    min_buffer_minutes: int = 15
    default_travel_minutes: int = 20
    min_notice: timedelta = timedelta(hours=2)
    confidence_high_ratio: float = 1.5

    @classmethod
    def from_settings(cls, duration_minutes: int, settings: Optional[Settings] = None) -> "SlotOptions":
        settings = settings or get_settings()
        return cls(
            duration_minutes=duration_minutes,
            granularity_minutes=settings.slot_interval_minutes,
            min_buffer_minutes=settings.min_buffer_minutes,
            default_travel_minutes=settings.default_travel_minutes,
            min_notice=timedelta(hours=settings.min_notice_hours),
            confidence_high_ratio=settings.confidence_high_ratio,
        )


@dataclass(frozen=True)
class NeighbourBooking:
    """
    An existing booking as seen from a prospective new visit.

    travel_after: minutes from this booking's location to the new visit
    travel_before: minutes from the new visit to this booking's location
    Either is None when no target location was given or the provider failed.
    """
    interval: TimeInterval
    travel_after: Optional[int] = None
    travel_before: Optional[int] = None
    travel_failed: bool = False


@dataclass
class WalkerDay:
    """Snapshot of one walker's constraints on one date."""
    walker_id: uuid.UUID
    working: List[TimeInterval]
    blocks: List[TimeInterval]
    bookings: List[NeighbourBooking]
    travel_aware: bool = False


# ────────────────────────────────────────────────────────────────
# Pure slot computation
# ────────────────────────────────────────────────────────────────

def _booking_cut(booking: NeighbourBooking, options: SlotOptions, travel_aware: bool) -> TimeInterval:
    if not travel_aware:
        return booking.interval
    buffer = options.min_buffer_minutes
    before = (booking.travel_before if booking.travel_before is not None else options.default_travel_minutes) + buffer
    after = (booking.travel_after if booking.travel_after is not None else options.default_travel_minutes) + buffer
    return booking.interval.padded(timedelta(minutes=before), timedelta(minutes=after))


def _aligned_start(free_start: datetime, anchor: datetime, granularity: timedelta) -> datetime:
    if free_start <= anchor:
        return anchor
    steps = math.ceil((free_start - anchor) / granularity)
    return anchor + steps * granularity


def _confidence(
    slot: TimeInterval,
    day: WalkerDay,
    options: SlotOptions,
) -> tuple[SlotConfidence, Optional[int]]:
    """
    Bucket the ratio of actual slack to required slack against the nearest
    booking on each side. Required slack is travel + buffer.
    """
    previous = None
    following = None
    for booking in day.bookings:
        if booking.interval.end <= slot.start and (previous is None or booking.interval.end > previous.interval.end):
            previous = booking
        if booking.interval.start >= slot.end and (following is None or booking.interval.start < following.interval.start):
            following = booking

    if previous is None and following is None:
        return SlotConfidence.HIGH, None

    ratios = []
    travel_failed = False
    travel_from_previous = None
    if previous is not None:
        travel = previous.travel_after if previous.travel_after is not None else options.default_travel_minutes
        travel_from_previous = previous.travel_after
        travel_failed = travel_failed or (day.travel_aware and previous.travel_failed)
        actual = (slot.start - previous.interval.end).total_seconds() / 60
        ratios.append(actual / (travel + options.min_buffer_minutes))
    if following is not None:
        travel = following.travel_before if following.travel_before is not None else options.default_travel_minutes
        travel_failed = travel_failed or (day.travel_aware and following.travel_failed)
        actual = (following.interval.start - slot.end).total_seconds() / 60
        ratios.append(actual / (travel + options.min_buffer_minutes))

    if travel_failed:
        return SlotConfidence.LOW, travel_from_previous

    ratio = min(ratios)
    if ratio >= options.confidence_high_ratio:
        return SlotConfidence.HIGH, travel_from_previous
    if ratio >= 1.0:
        return SlotConfidence.MEDIUM, travel_from_previous
    return SlotConfidence.LOW, travel_from_previous


def generate_day_slots(day: WalkerDay, options: SlotOptions, now: datetime) -> Iterator[Slot]:
    """All bookable slots for one walker on one date, in start order."""
    if not day.working:
        return
    duration = timedelta(minutes=options.duration_minutes)
    granularity = timedelta(minutes=options.granularity_minutes)
    earliest = now + options.min_notice

    free = subtract_intervals(day.working, day.blocks)
    free = subtract_intervals(free, [_booking_cut(b, options, day.travel_aware) for b in day.bookings])

    for window in free:
        anchor = next((w.start for w in day.working if w.start <= window.start < w.end), window.start)
        start = _aligned_start(window.start, anchor, granularity)
        while start + duration <= window.end:
            if start >= earliest:
                interval = TimeInterval(start, start + duration)
                confidence, travel_minutes = _confidence(interval, day, options)
                yield Slot(day.walker_id, interval, confidence, travel_minutes)
            start += granularity


def validate_date_range(start_date: date, end_date: date, today: date, max_advance_days: int) -> None:
    if end_date < start_date:
        raise ValidationFailed("end_date must not be before start_date")
    if start_date < today:
        raise ValidationFailed("start_date must not be in the past", details={"today": today.isoformat()})
    last_allowed = today + timedelta(days=max_advance_days)
    if end_date > last_allowed:
        raise ValidationFailed(
            f"Availability can be requested at most {max_advance_days} days ahead",
            details={"last_allowed_date": last_allowed.isoformat()},
        )


def _daterange(start_date: date, end_date: date) -> Iterator[date]:
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


# ────────────────────────────────────────────────────────────────
# Store-backed generator
# ────────────────────────────────────────────────────────────────

class SlotGenerator:
    """
    Usage:
        generator = SlotGenerator(session, travel=TravelTimeService(session))
        async for slot in generator.slots_for(walkers, service, start, end, target_location):
            ...
    """

    def __init__(self, session: AsyncSession, travel=None, settings: Optional[Settings] = None):
        self.session = session
        self.travel = travel
        self.settings = settings or get_settings()

    async def load_walker_day(
        self,
        walker: Walker,
        day: date,
        target_location: Optional[Location] = None,
    ) -> WalkerDay:
        window = local_day_window(day, walker.timezone)
        rules = await load_rules(self.session, walker.id)
        working = intervals_for(rules, day, walker.timezone)
        if not working:
            return WalkerDay(walker.id, [], [], [])

        events = await load_events(self.session, walker.id, window)
        blocks = blocking_intervals_for(events, window, walker.timezone)
        bookings = await list_active_bookings_in_range(self.session, walker.id, window.start, window.end)

        travel_aware = target_location is not None and self.travel is not None
        if not travel_aware:
            neighbours = [NeighbourBooking(booking_interval(b)) for b in bookings]
            return WalkerDay(walker.id, working, blocks, neighbours)

        locations = await get_locations_by_ids(
            self.session, target_location.organization_id, [b.location_id for b in bookings]
        )
        neighbours = []
        for booking in bookings:
            stop = locations.get(booking.location_id)
            travel_after = travel_before = None
            failed = stop is None
            if stop is not None:
                try:
                    travel_after = await self.travel.cost(stop, target_location, booking.scheduled_end, walker.timezone)
                    travel_before = await self.travel.cost(target_location, stop, booking.scheduled_start, walker.timezone)
                except CostProviderUnavailable as e:
                    logger.warning(f"Travel time unavailable near booking {booking.id}, using default: {e.message}")
                    failed = True
            neighbours.append(NeighbourBooking(booking_interval(booking), travel_after, travel_before, failed))
        return WalkerDay(walker.id, working, blocks, neighbours, travel_aware=True)

    async def slots_for(
        self,
        walkers: Sequence[Walker],
        service: Service,
        start_date: date,
        end_date: date,
        target_location: Optional[Location] = None,
        now: Optional[datetime] = None,
    ) -> AsyncIterator[Slot]:
        now = now or datetime.now(timezone.utc)
        options = SlotOptions.from_settings(service.duration_minutes, self.settings)
        if target_location is not None:
            walkers = await eligible_walkers(self.session, walkers, target_location)
        for day in _daterange(start_date, end_date):
            for walker in walkers:
                walker_day = await self.load_walker_day(walker, day, target_location)
                for slot in generate_day_slots(walker_day, options, now):
                    yield slot
