"""
Route optimizer for a walker's day.

Booking times are commitments to customers, so visits are never moved or
re-sequenced past each other. "Optimizing" a day means visiting the stops
in chronological order and annotating each leg:

    travel_from_previous_minutes  cost(previous stop, this stop)
    arrival_time                  max(scheduled start, previous departure + travel)
    departure_time                arrival + service duration
    total_travel_minutes          sum of known legs
    total_distance_meters         sum of known leg distances
    savings_minutes               worst-case ordering total - chronological total (>= 0)

The worst-case ordering is the most expensive visiting order of the same
stops: exhaustive for small days, farthest-neighbour beyond that.

If the travel provider fails, the route is still returned in chronological
order with the affected legs set to None and is_optimized=False.
"""

import itertools
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import CostProviderUnavailable
from ..models import Location, Walker
from ..tenancy.queries import get_locations_by_ids
from .ledger import bookings_for

logger = logging.getLogger(__name__)

# Largest day whose worst-case ordering is found by trying every permutation
EXHAUSTIVE_BASELINE_MAX_STOPS = 7


@dataclass(frozen=True)
class Leg:
    minutes: int
    distance_meters: Optional[int] = None


# cost(origin, destination, depart_at) -> Leg; may raise CostProviderUnavailable
CostFunction = Callable[[Location, Location, datetime], Awaitable[Leg]]


@dataclass(frozen=True)
class Visit:
    booking_id: uuid.UUID
    location: Location
    scheduled_start: datetime
    scheduled_end: datetime

    @property
    def duration(self) -> timedelta:
        return self.scheduled_end - self.scheduled_start


@dataclass
class RouteStop:
    sequence: int
    booking_id: uuid.UUID
    location_id: uuid.UUID
    address: Optional[str]
    arrival_time: datetime
    departure_time: datetime
    travel_from_previous_minutes: Optional[int]
    service_duration_minutes: int

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "booking_id": str(self.booking_id),
            "location_id": str(self.location_id),
            "address": self.address,
            "arrival_time": self.arrival_time.isoformat(),
            "departure_time": self.departure_time.isoformat(),
            "travel_from_previous_minutes": self.travel_from_previous_minutes,
            "service_duration_minutes": self.service_duration_minutes,
        }


@dataclass
class OptimizedRoute:
    date: date
    is_optimized: bool
    stops: List[RouteStop] = field(default_factory=list)
    total_travel_minutes: int = 0
    total_distance_meters: int = 0
    savings_minutes: int = 0

    def to_dict(self) -> dict:
        return {
            "date": self.date.isoformat(),
            "is_optimized": self.is_optimized,
            "stops": [stop.to_dict() for stop in self.stops],
            "total_travel_minutes": self.total_travel_minutes,
            "total_distance_meters": self.total_distance_meters,
            "savings_minutes": self.savings_minutes,
        }


async def _leg(cost: CostFunction, origin: Visit, destination: Visit, depart_at: datetime) -> Optional[Leg]:
    try:
        return await cost(origin.location, destination.location, depart_at)
    except CostProviderUnavailable as e:
        logger.warning(f"No travel time for {origin.booking_id} -> {destination.booking_id}: {e.message}")
        return None


class _LegMatrix:
    """Memoized pairwise leg minutes, departing when the origin visit ends."""

    def __init__(self, cost: CostFunction, visits: Sequence[Visit]):
        self.cost = cost
        self.visits = visits
        self._minutes: Dict[Tuple[int, int], Optional[int]] = {}

    async def minutes(self, i: int, j: int) -> Optional[int]:
        if (i, j) not in self._minutes:
            origin, destination = self.visits[i], self.visits[j]
            leg = await _leg(self.cost, origin, destination, origin.scheduled_end)
            self._minutes[(i, j)] = leg.minutes if leg is not None else None
        return self._minutes[(i, j)]

    async def tour(self, order: Sequence[int]) -> Optional[int]:
        total = 0
        for i, j in zip(order, order[1:]):
            minutes = await self.minutes(i, j)
            if minutes is None:
                return None
            total += minutes
        return total


async def _worst_case_minutes(cost: CostFunction, ordered: Sequence[Visit]) -> Optional[int]:
    """Travel total of the most expensive visiting order of the same stops."""
    matrix = _LegMatrix(cost, ordered)
    indices = range(len(ordered))

    if len(ordered) <= EXHAUSTIVE_BASELINE_MAX_STOPS:
        worst = None
        for order in itertools.permutations(indices):
            total = await matrix.tour(order)
            if total is None:
                return None
            worst = total if worst is None else max(worst, total)
        return worst

    # Farthest neighbour from every starting stop
    worst = None
    for first in indices:
        order = [first]
        remaining = set(indices) - {first}
        total = 0
        while remaining:
            best_next, best_minutes = None, None
            for candidate in sorted(remaining):
                minutes = await matrix.minutes(order[-1], candidate)
                if minutes is None:
                    return None
                if best_minutes is None or minutes > best_minutes:
                    best_next, best_minutes = candidate, minutes
            order.append(best_next)
            remaining.discard(best_next)
            total += best_minutes
        worst = total if worst is None else max(worst, total)
    return worst


async def plan_route(day: date, visits: Sequence[Visit], cost: CostFunction) -> OptimizedRoute:
    """Chronological route with travel annotation. Deterministic for equal input."""
    ordered = sorted(visits, key=lambda v: (v.scheduled_start, str(v.booking_id)))
    if not ordered:
        return OptimizedRoute(date=day, is_optimized=False)

    stops: List[RouteStop] = []
    total = 0
    distance = 0
    degraded = False
    previous_departure: Optional[datetime] = None

    for index, visit in enumerate(ordered):
        travel = None
        arrival = visit.scheduled_start
        if index > 0:
            leg = await _leg(cost, ordered[index - 1], visit, previous_departure)
            if leg is None:
                degraded = True
                arrival = max(visit.scheduled_start, previous_departure)
            else:
                travel = leg.minutes
                total += leg.minutes
                distance += leg.distance_meters or 0
                arrival = max(visit.scheduled_start, previous_departure + timedelta(minutes=leg.minutes))
        departure = arrival + visit.duration
        stops.append(
            RouteStop(
                sequence=index + 1,
                booking_id=visit.booking_id,
                location_id=visit.location.id,
                address=visit.location.address,
                arrival_time=arrival,
                departure_time=departure,
                travel_from_previous_minutes=travel,
                service_duration_minutes=int(visit.duration.total_seconds() // 60),
            )
        )
        previous_departure = departure

    savings = 0
    if not degraded and len(ordered) > 1:
        baseline = await _worst_case_minutes(cost, ordered)
        if baseline is not None:
            savings = max(0, baseline - total)

    return OptimizedRoute(
        date=day,
        is_optimized=not degraded,
        stops=stops,
        total_travel_minutes=total,
        total_distance_meters=distance,
        savings_minutes=savings,
    )


class RouteOptimizer:
    """
    Usage:
        optimizer = RouteOptimizer(session, TravelTimeService(session))
        route = await optimizer.optimize(walker, date(2026, 3, 2))
    """

    def __init__(self, session: AsyncSession, travel):
        self.session = session
        self.travel = travel

    async def optimize(self, walker: Walker, day: date, use_cache: bool = True) -> OptimizedRoute:
        bookings = await bookings_for(self.session, walker, day)
        locations = await get_locations_by_ids(
            self.session, walker.organization_id, [b.location_id for b in bookings]
        )

        visits = []
        for booking in bookings:
            location = locations.get(booking.location_id)
            if location is None:
                logger.warning(f"Booking {booking.id} references missing location {booking.location_id}")
                location = Location(id=booking.location_id, organization_id=walker.organization_id,
                                    customer_id=booking.customer_id, address=None)
            visits.append(Visit(booking.id, location, booking.scheduled_start, booking.scheduled_end))

        async def cost(origin: Location, destination: Location, depart_at: datetime) -> Leg:
            lookup = await self.travel.lookup(origin, destination, depart_at, tz_name=walker.timezone,
                                              use_cache=use_cache)
            return Leg(lookup.travel_minutes, lookup.distance_meters)

        route = await plan_route(day, visits, cost)
        logger.info(
            f"Route for walker {walker.id} on {day}: {len(route.stops)} stop(s), "
            f"{route.total_travel_minutes} min travel, optimized={route.is_optimized}"
        )
        return route
