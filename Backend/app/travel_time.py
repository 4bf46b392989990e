"""
Travel Time Service - cost function between two walk locations

Travel time is an opaque cost supplied by a provider:
    - GoogleDistanceMatrixClient when GOOGLE_MAPS_API_KEY is configured
    - StraightLineEstimator (haversine distance + city speeds) otherwise

TravelTimeService wraps the provider with a per-pair cache of free-flow
minutes whose TTL is shorter during peak traffic hours. The peak multiplier
is applied on every read, cached or fresh, for the departure asked about.
Every provider failure becomes CostProviderUnavailable so slot and route
computations can degrade instead of failing.

Usage:
    from .travel_time import TravelTimeService

    travel = TravelTimeService(session)
    minutes = await travel.cost(origin_location, destination_location, depart_at)
"""

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

import httpx
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings, get_settings
from .core.errors import CostProviderUnavailable
from .models import Location, TravelTimeCache

logger = logging.getLogger(__name__)

# Constants
EARTH_RADIUS_KM = 6371.0
MIN_TRAVEL_MINUTES = 5
GOOGLE_DISTANCE_MATRIX_URL = "https://maps.googleapis.com/maps/api/distancematrix/json"


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float

    def __post_init__(self):
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")

    @classmethod
    def from_location(cls, location: Location) -> Optional["Coordinates"]:
        if not location.has_coordinates():
            return None
        return cls(location.latitude, location.longitude)

    def as_param(self) -> str:
        return f"{self.latitude},{self.longitude}"


@dataclass
class TravelEstimate:
    """Result of a single provider call. duration_minutes is free-flow."""
    duration_minutes: int
    distance_meters: Optional[int] = None
    source: str = "estimate"
    # Provider-priced traffic duration for departure_time, when it has one
    traffic_duration_minutes: Optional[int] = None


class TravelTimeError(Exception):
    """Exception raised when a provider cannot produce a travel time."""
    def __init__(self, message: str, status: str = "ERROR"):
        self.message = message
        self.status = status
        super().__init__(message)


class TravelConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_cache_age(cls, age_minutes: float, ttl_minutes: int) -> "TravelConfidence":
        if age_minutes <= ttl_minutes / 2:
            return cls.HIGH
        if age_minutes <= ttl_minutes:
            return cls.MEDIUM
        return cls.LOW


# ============================================================================
# TRAFFIC
# ============================================================================

class TrafficConfig:
    """Peak-hour windows (walker-local hours, end exclusive) and their effect."""

    def __init__(self, settings: Settings):
        self.peak_hours = settings.peak_hours_list
        self.peak_multiplier = settings.peak_traffic_multiplier
        self.peak_ttl_minutes = settings.travel_cache_peak_ttl_minutes
        self.offpeak_ttl_minutes = settings.travel_cache_offpeak_ttl_minutes

    def is_peak(self, at: datetime, tz_name: str) -> bool:
        hour = at.astimezone(ZoneInfo(tz_name)).hour
        return any(start <= hour < end for start, end in self.peak_hours)

    def apply_traffic(self, minutes: int, at: datetime, tz_name: str) -> int:
        if self.is_peak(at, tz_name):
            return math.ceil(minutes * self.peak_multiplier)
        return minutes

    def cache_ttl_minutes(self, at: datetime, tz_name: str) -> int:
        return self.peak_ttl_minutes if self.is_peak(at, tz_name) else self.offpeak_ttl_minutes


# ============================================================================
# PROVIDERS
# ============================================================================

def haversine_km(origin: Coordinates, destination: Coordinates) -> float:
    lat1, lon1 = math.radians(origin.latitude), math.radians(origin.longitude)
    lat2, lon2 = math.radians(destination.latitude), math.radians(destination.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def estimate_travel_minutes(origin: Coordinates, destination: Coordinates) -> int:
    """
    Straight-line travel estimate.

    Short hops crawl through residential streets, longer ones reach arterials:
        < 5 km  -> 25 km/h
        < 20 km -> 35 km/h
        else    -> 50 km/h
    Rounded up, never below MIN_TRAVEL_MINUTES.
    """
    distance = haversine_km(origin, destination)
    if distance < 5:
        speed = 25.0
    elif distance < 20:
        speed = 35.0
    else:
        speed = 50.0
    minutes = math.ceil(distance / speed * 60)
    return max(minutes, MIN_TRAVEL_MINUTES)


class StraightLineEstimator:
    """Provider used when no maps API key is configured. Returns free-flow minutes."""

    async def travel_time(
        self,
        origin: Coordinates,
        destination: Coordinates,
        departure_time: datetime,
        tz_name: str,
    ) -> TravelEstimate:
        return TravelEstimate(
            duration_minutes=estimate_travel_minutes(origin, destination),
            distance_meters=int(haversine_km(origin, destination) * 1000),
            source="estimate",
        )


class GoogleDistanceMatrixClient:
    """
    Google Maps Distance Matrix provider.

    Traffic is priced by Google through departure_time. When Google returns
    duration_in_traffic it is used as-is for this lookup; cached reads fall
    back to the free-flow duration plus the peak multiplier.
    """

    def __init__(self, api_key: str, timeout: float = 15.0):
        self.api_key = api_key
        self.timeout = timeout

    async def travel_time(
        self,
        origin: Coordinates,
        destination: Coordinates,
        departure_time: datetime,
        tz_name: str,
    ) -> TravelEstimate:
        """
        Raises:
            TravelTimeError: If the API call fails or no route exists
        """
        if not self.api_key:
            raise TravelTimeError("Distance service is not configured", status="CONFIG_ERROR")

        now = datetime.now(timezone.utc)
        params = {
            "origins": origin.as_param(),
            "destinations": destination.as_param(),
            "mode": "driving",
            # Google rejects departure times in the past.
            "departure_time": int(departure_time.timestamp()) if departure_time > now else "now",
            "key": self.api_key,
        }

        logger.info(f"Requesting travel time: {origin.as_param()} -> {destination.as_param()}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(GOOGLE_DISTANCE_MATRIX_URL, params=params)
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error from Distance Matrix API: {e}")
            raise TravelTimeError("Distance service is temporarily unavailable", status="HTTP_ERROR")
        except httpx.RequestError as e:
            logger.error(f"Request error to Distance Matrix API: {e}")
            raise TravelTimeError("Unable to connect to distance service", status="CONNECTION_ERROR")

        api_status = data.get("status", "UNKNOWN")
        if api_status != "OK":
            logger.warning(f"Distance Matrix API error: {api_status}")
            raise TravelTimeError(_get_api_error_message(api_status), status=api_status)

        rows = data.get("rows", [])
        elements = rows[0].get("elements", []) if rows else []
        if not elements:
            raise TravelTimeError("No route found between locations", status="NO_RESULTS")

        element = elements[0]
        element_status = element.get("status", "UNKNOWN")
        if element_status != "OK":
            logger.warning(f"Route element status: {element_status}")
            raise TravelTimeError(_get_element_error_message(element_status), status=element_status)

        duration_seconds = element.get("duration", {}).get("value", 0)
        traffic_seconds = element.get("duration_in_traffic", {}).get("value")
        distance_meters = element.get("distance", {}).get("value")

        return TravelEstimate(
            duration_minutes=(duration_seconds + 59) // 60,  # Round up
            distance_meters=distance_meters,
            source="google",
            traffic_duration_minutes=(traffic_seconds + 59) // 60 if traffic_seconds is not None else None,
        )


def _get_api_error_message(status: str) -> str:
    """Get message for API-level errors."""
    messages = {
        "INVALID_REQUEST": "Invalid distance request.",
        "MAX_ELEMENTS_EXCEEDED": "Too many locations requested.",
        "OVER_DAILY_LIMIT": "Distance calculation limit reached.",
        "OVER_QUERY_LIMIT": "Too many distance requests.",
        "REQUEST_DENIED": "Distance calculation service is not available.",
        "UNKNOWN_ERROR": "Unknown distance service error.",
    }
    return messages.get(status, f"Distance calculation failed: {status}")


def _get_element_error_message(status: str) -> str:
    """Get message for element-level errors."""
    messages = {
        "NOT_FOUND": "One or both locations could not be geocoded.",
        "ZERO_RESULTS": "No route found between the locations.",
        "MAX_ROUTE_LENGTH_EXCEEDED": "The route is too long to calculate.",
    }
    return messages.get(status, f"Route calculation failed: {status}")


def build_provider(settings: Optional[Settings] = None):
    settings = settings or get_settings()
    if settings.google_maps_api_key:
        return GoogleDistanceMatrixClient(settings.google_maps_api_key, timeout=settings.travel_provider_timeout_seconds)
    return StraightLineEstimator()


# ============================================================================
# CACHED COST FUNCTION
# ============================================================================

@dataclass
class TravelLookup:
    travel_minutes: int
    distance_meters: Optional[int]
    is_cached: bool
    calculated_at: datetime
    confidence: TravelConfidence

    def to_dict(self) -> dict:
        return {
            "travel_minutes": self.travel_minutes,
            "distance_meters": self.distance_meters,
            "is_cached": self.is_cached,
            "calculated_at": self.calculated_at.isoformat(),
            "confidence": self.confidence.value,
        }


class TravelTimeService:
    """Cached, failure-normalizing wrapper around a travel time provider."""

    def __init__(self, session: AsyncSession, provider=None, settings: Optional[Settings] = None):
        self.session = session
        self.settings = settings or get_settings()
        self.provider = provider or build_provider(self.settings)
        self.traffic = TrafficConfig(self.settings)

    async def cost(
        self,
        origin: Location,
        destination: Location,
        depart_at: datetime,
        tz_name: Optional[str] = None,
        use_cache: bool = True,
    ) -> int:
        """
        Minutes to drive from origin to destination leaving at depart_at.

        Raises:
            CostProviderUnavailable: provider error, timeout, or missing coordinates
        """
        lookup = await self.lookup(origin, destination, depart_at, tz_name=tz_name, use_cache=use_cache)
        return lookup.travel_minutes

    async def lookup(
        self,
        origin: Location,
        destination: Location,
        depart_at: datetime,
        tz_name: Optional[str] = None,
        use_cache: bool = True,
    ) -> TravelLookup:
        tz_name = tz_name or self.settings.default_timezone
        now = datetime.now(timezone.utc)

        if origin.id == destination.id:
            return TravelLookup(0, 0, False, now, TravelConfidence.HIGH)

        ttl_minutes = self.traffic.cache_ttl_minutes(depart_at, tz_name)
        if use_cache:
            cached = await self._get_cached(origin.id, destination.id)
            if cached is not None:
                age_minutes = (now - cached.calculated_at).total_seconds() / 60
                if age_minutes <= ttl_minutes:
                    return TravelLookup(
                        travel_minutes=self.traffic.apply_traffic(cached.travel_minutes, depart_at, tz_name),
                        distance_meters=cached.distance_meters,
                        is_cached=True,
                        calculated_at=cached.calculated_at,
                        confidence=TravelConfidence.from_cache_age(age_minutes, ttl_minutes),
                    )

        origin_coords = Coordinates.from_location(origin)
        destination_coords = Coordinates.from_location(destination)
        if origin_coords is None or destination_coords is None:
            raise CostProviderUnavailable(
                "Travel time unavailable: location has no coordinates",
                details={"origin_location_id": str(origin.id), "destination_location_id": str(destination.id)},
            )

        try:
            estimate = await asyncio.wait_for(
                self.provider.travel_time(origin_coords, destination_coords, depart_at, tz_name),
                timeout=self.settings.travel_provider_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Travel provider timed out for {origin.id} -> {destination.id}")
            raise CostProviderUnavailable("Travel time provider timed out")
        except TravelTimeError as e:
            logger.warning(f"Travel provider failed for {origin.id} -> {destination.id}: {e.status}")
            raise CostProviderUnavailable(e.message, details={"provider_status": e.status})
        except Exception as e:
            logger.exception(f"Unexpected travel provider error for {origin.id} -> {destination.id}")
            raise CostProviderUnavailable("Travel time provider failed") from e

        # The cache holds free-flow minutes only
        await self._store(origin.id, destination.id, estimate, now)
        minutes = estimate.traffic_duration_minutes
        if minutes is None:
            minutes = self.traffic.apply_traffic(estimate.duration_minutes, depart_at, tz_name)
        return TravelLookup(
            travel_minutes=minutes,
            distance_meters=estimate.distance_meters,
            is_cached=False,
            calculated_at=now,
            confidence=TravelConfidence.HIGH,
        )

    async def _get_cached(self, origin_id, destination_id) -> Optional[TravelTimeCache]:
        result = await self.session.execute(
            select(TravelTimeCache).where(
                TravelTimeCache.origin_location_id == origin_id,
                TravelTimeCache.destination_location_id == destination_id,
            )
        )
        return result.scalar_one_or_none()

    async def _store(self, origin_id, destination_id, estimate: TravelEstimate, calculated_at: datetime) -> None:
        dialect = self.session.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(TravelTimeCache).values(
            origin_location_id=origin_id,
            destination_location_id=destination_id,
            travel_minutes=estimate.duration_minutes,
            distance_meters=estimate.distance_meters,
            calculated_at=calculated_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["origin_location_id", "destination_location_id"],
            set_={
                "travel_minutes": stmt.excluded.travel_minutes,
                "distance_meters": stmt.excluded.distance_meters,
                "calculated_at": stmt.excluded.calculated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.commit()
