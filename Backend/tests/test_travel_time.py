"""
Tests for travel_time module.

Run with: pytest tests/test_travel_time.py -v
"""

import asyncio
import math
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from app.core.config import get_settings
from app.core.errors import CostProviderUnavailable
from app.models import Location
from app.travel_time import (
    MIN_TRAVEL_MINUTES,
    Coordinates,
    GoogleDistanceMatrixClient,
    StraightLineEstimator,
    TrafficConfig,
    TravelConfidence,
    TravelEstimate,
    TravelTimeError,
    TravelTimeService,
    build_provider,
    estimate_travel_minutes,
    haversine_km,
)

from conftest import TZ_NAME, local_dt, upcoming


# ============================================================================
# MOCK RESPONSE DATA
# ============================================================================

MOCK_SUCCESS_RESPONSE = {
    "status": "OK",
    "rows": [
        {
            "elements": [
                {
                    "status": "OK",
                    "distance": {"text": "5.1 mi", "value": 8208},
                    "duration": {"text": "18 mins", "value": 1080},
                }
            ]
        }
    ],
}

MOCK_TRAFFIC_RESPONSE = {
    "status": "OK",
    "rows": [
        {
            "elements": [
                {
                    "status": "OK",
                    "distance": {"text": "5.1 mi", "value": 8208},
                    "duration": {"text": "18 mins", "value": 1080},
                    "duration_in_traffic": {"text": "22 mins", "value": 1290},
                }
            ]
        }
    ],
}

MOCK_NOT_FOUND_RESPONSE = {
    "status": "OK",
    "rows": [{"elements": [{"status": "NOT_FOUND"}]}],
}

MOCK_API_ERROR_RESPONSE = {
    "status": "REQUEST_DENIED",
    "error_message": "The provided API key is invalid.",
}

TEMPE = Coordinates(33.4255, -111.9400)
RURAL_RD = Coordinates(33.4000, -111.9261)
TUCSON = Coordinates(32.2226, -110.9747)


def settings_with(**overrides):
    return get_settings().model_copy(update=overrides)


def mock_http_client(mock_client, payload=None, get_side_effect=None, status_error=None):
    mock_response = MagicMock()
    mock_response.json.return_value = payload
    mock_response.raise_for_status = MagicMock(side_effect=status_error)

    mock_instance = AsyncMock()
    if get_side_effect is not None:
        mock_instance.get.side_effect = get_side_effect
    else:
        mock_instance.get.return_value = mock_response
    mock_instance.__aenter__.return_value = mock_instance
    mock_instance.__aexit__.return_value = None
    mock_client.return_value = mock_instance
    return mock_instance


def future_departure() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=2)


# ============================================================================
# STRAIGHT-LINE ESTIMATES
# ============================================================================

class TestEstimates:

    def test_haversine_same_point(self):
        assert haversine_km(TEMPE, TEMPE) == 0.0

    def test_haversine_symmetric(self):
        assert haversine_km(TEMPE, TUCSON) == pytest.approx(haversine_km(TUCSON, TEMPE))
        assert 150 < haversine_km(TEMPE, TUCSON) < 170

    def test_short_hop_uses_residential_speed(self):
        distance = haversine_km(TEMPE, RURAL_RD)
        assert distance < 5
        assert estimate_travel_minutes(TEMPE, RURAL_RD) == max(math.ceil(distance / 25 * 60), MIN_TRAVEL_MINUTES)

    def test_long_trip_uses_highway_speed(self):
        distance = haversine_km(TEMPE, TUCSON)
        assert estimate_travel_minutes(TEMPE, TUCSON) == math.ceil(distance / 50 * 60)

    def test_minimum_travel_time(self):
        next_door = Coordinates(33.4256, -111.9401)
        assert estimate_travel_minutes(TEMPE, next_door) == MIN_TRAVEL_MINUTES

    def test_coordinates_validated(self):
        with pytest.raises(ValueError):
            Coordinates(91.0, 0.0)
        with pytest.raises(ValueError):
            Coordinates(0.0, -181.0)


class TestTraffic:

    def test_peak_multiplier(self):
        traffic = TrafficConfig(settings_with(peak_hours="7-9,16-18", peak_traffic_multiplier=1.3))
        monday = upcoming(0)
        assert traffic.apply_traffic(10, local_dt(monday, 8), TZ_NAME) == 13
        assert traffic.apply_traffic(10, local_dt(monday, 12), TZ_NAME) == 10
        # end hour is exclusive
        assert traffic.apply_traffic(10, local_dt(monday, 9), TZ_NAME) == 10

    def test_cache_ttl_shorter_at_peak(self):
        traffic = TrafficConfig(
            settings_with(travel_cache_peak_ttl_minutes=240, travel_cache_offpeak_ttl_minutes=1440)
        )
        monday = upcoming(0)
        assert traffic.cache_ttl_minutes(local_dt(monday, 17), TZ_NAME) == 240
        assert traffic.cache_ttl_minutes(local_dt(monday, 13), TZ_NAME) == 1440

    def test_confidence_decays_with_age(self):
        assert TravelConfidence.from_cache_age(10, 240) == TravelConfidence.HIGH
        assert TravelConfidence.from_cache_age(150, 240) == TravelConfidence.MEDIUM
        assert TravelConfidence.from_cache_age(300, 240) == TravelConfidence.LOW

    @pytest.mark.asyncio
    async def test_estimator_returns_free_flow_minutes(self):
        estimator = StraightLineEstimator()
        monday = upcoming(0)
        off_peak = await estimator.travel_time(TEMPE, RURAL_RD, local_dt(monday, 12), TZ_NAME)
        peak = await estimator.travel_time(TEMPE, RURAL_RD, local_dt(monday, 8), TZ_NAME)
        assert peak.duration_minutes == off_peak.duration_minutes == estimate_travel_minutes(TEMPE, RURAL_RD)
        assert peak.traffic_duration_minutes is None
        assert off_peak.source == "estimate"


# ============================================================================
# GOOGLE DISTANCE MATRIX - WITH MOCKED HTTP
# ============================================================================

class TestGoogleDistanceMatrix:

    @pytest.mark.asyncio
    async def test_success(self):
        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = mock_http_client(mock_client, MOCK_SUCCESS_RESPONSE)
            result = await GoogleDistanceMatrixClient("test-key").travel_time(
                TEMPE, RURAL_RD, future_departure(), TZ_NAME
            )

        assert result.duration_minutes == 18
        assert result.distance_meters == 8208
        assert result.source == "google"
        params = mock_instance.get.call_args.kwargs["params"]
        assert params["origins"] == "33.4255,-111.94"
        assert isinstance(params["departure_time"], int)

    @pytest.mark.asyncio
    async def test_prefers_duration_in_traffic(self):
        with patch("httpx.AsyncClient") as mock_client:
            mock_http_client(mock_client, MOCK_TRAFFIC_RESPONSE)
            result = await GoogleDistanceMatrixClient("test-key").travel_time(
                TEMPE, RURAL_RD, future_departure(), TZ_NAME
            )
        # 1290 seconds rounds up to 22 minutes
        assert result.traffic_duration_minutes == 22
        assert result.duration_minutes == 18

    @pytest.mark.asyncio
    async def test_past_departure_sent_as_now(self):
        with patch("httpx.AsyncClient") as mock_client:
            mock_instance = mock_http_client(mock_client, MOCK_SUCCESS_RESPONSE)
            await GoogleDistanceMatrixClient("test-key").travel_time(
                TEMPE, RURAL_RD, datetime(2020, 1, 1, tzinfo=timezone.utc), TZ_NAME
            )
        assert mock_instance.get.call_args.kwargs["params"]["departure_time"] == "now"

    @pytest.mark.asyncio
    async def test_api_error(self):
        with patch("httpx.AsyncClient") as mock_client:
            mock_http_client(mock_client, MOCK_API_ERROR_RESPONSE)
            with pytest.raises(TravelTimeError) as exc_info:
                await GoogleDistanceMatrixClient("bad-key").travel_time(TEMPE, RURAL_RD, future_departure(), TZ_NAME)
        assert exc_info.value.status == "REQUEST_DENIED"

    @pytest.mark.asyncio
    async def test_location_not_found(self):
        with patch("httpx.AsyncClient") as mock_client:
            mock_http_client(mock_client, MOCK_NOT_FOUND_RESPONSE)
            with pytest.raises(TravelTimeError) as exc_info:
                await GoogleDistanceMatrixClient("test-key").travel_time(TEMPE, RURAL_RD, future_departure(), TZ_NAME)
        assert exc_info.value.status == "NOT_FOUND"
        assert "geocoded" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_connection_error(self):
        with patch("httpx.AsyncClient") as mock_client:
            mock_http_client(mock_client, get_side_effect=httpx.ConnectError("Connection refused"))
            with pytest.raises(TravelTimeError) as exc_info:
                await GoogleDistanceMatrixClient("test-key").travel_time(TEMPE, RURAL_RD, future_departure(), TZ_NAME)
        assert exc_info.value.status == "CONNECTION_ERROR"

    @pytest.mark.asyncio
    async def test_http_error(self):
        status_error = httpx.HTTPStatusError("503", request=MagicMock(), response=MagicMock())
        with patch("httpx.AsyncClient") as mock_client:
            mock_http_client(mock_client, MOCK_SUCCESS_RESPONSE, status_error=status_error)
            with pytest.raises(TravelTimeError) as exc_info:
                await GoogleDistanceMatrixClient("test-key").travel_time(TEMPE, RURAL_RD, future_departure(), TZ_NAME)
        assert exc_info.value.status == "HTTP_ERROR"

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        with pytest.raises(TravelTimeError) as exc_info:
            await GoogleDistanceMatrixClient("").travel_time(TEMPE, RURAL_RD, future_departure(), TZ_NAME)
        assert exc_info.value.status == "CONFIG_ERROR"

    def test_build_provider(self):
        assert isinstance(build_provider(settings_with(google_maps_api_key="key")), GoogleDistanceMatrixClient)
        assert isinstance(build_provider(settings_with(google_maps_api_key="")), StraightLineEstimator)


# ============================================================================
# CACHED SERVICE
# ============================================================================

class StubProvider:

    def __init__(self, minutes=12, error=None, delay=0.0, traffic_minutes=None):
        self.minutes = minutes
        self.traffic_minutes = traffic_minutes
        self.error = error
        self.delay = delay
        self.calls = 0

    async def travel_time(self, origin, destination, departure_time, tz_name):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return TravelEstimate(
            duration_minutes=self.minutes,
            distance_meters=3100,
            source="stub",
            traffic_duration_minutes=self.traffic_minutes,
        )


class TestTravelTimeService:

    @pytest.mark.asyncio
    async def test_second_lookup_hits_cache(self, async_session, locations):
        provider = StubProvider(minutes=12)
        service = TravelTimeService(async_session, provider=provider)
        depart = local_dt(upcoming(0), 12)

        first = await service.lookup(locations[0], locations[1], depart, tz_name=TZ_NAME)
        second = await service.lookup(locations[0], locations[1], depart, tz_name=TZ_NAME)

        assert provider.calls == 1
        assert first.is_cached is False
        assert second.is_cached is True
        assert second.travel_minutes == 12
        assert second.confidence == TravelConfidence.HIGH

    @pytest.mark.asyncio
    async def test_cache_is_directional(self, async_session, locations):
        provider = StubProvider()
        service = TravelTimeService(async_session, provider=provider)
        depart = local_dt(upcoming(0), 12)

        await service.cost(locations[0], locations[1], depart, tz_name=TZ_NAME)
        await service.cost(locations[1], locations[0], depart, tz_name=TZ_NAME)
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_bypass_cache_refreshes_entry(self, async_session, locations):
        provider = StubProvider(minutes=12)
        service = TravelTimeService(async_session, provider=provider)
        depart = local_dt(upcoming(0), 12)

        await service.cost(locations[0], locations[1], depart, tz_name=TZ_NAME)
        provider.minutes = 16
        refreshed = await service.cost(locations[0], locations[1], depart, tz_name=TZ_NAME, use_cache=False)
        cached = await service.lookup(locations[0], locations[1], depart, tz_name=TZ_NAME)

        assert refreshed == 16
        assert cached.is_cached is True
        assert cached.travel_minutes == 16

    @pytest.mark.asyncio
    async def test_cached_value_priced_for_peak_departure(self, async_session, locations):
        """Off-peak lookup fills the cache; a peak departure still pays the multiplier."""
        provider = StubProvider(minutes=10)
        service = TravelTimeService(
            async_session, provider=provider, settings=settings_with(peak_hours="7-9,16-18", peak_traffic_multiplier=1.3)
        )
        monday = upcoming(0)

        off_peak = await service.lookup(locations[0], locations[1], local_dt(monday, 12), tz_name=TZ_NAME)
        peak = await service.lookup(locations[0], locations[1], local_dt(monday, 8), tz_name=TZ_NAME)

        assert provider.calls == 1
        assert off_peak.travel_minutes == 10
        assert peak.is_cached is True
        assert peak.travel_minutes == 13

    @pytest.mark.asyncio
    async def test_cached_value_not_inflated_off_peak(self, async_session, locations):
        provider = StubProvider(minutes=10)
        service = TravelTimeService(
            async_session, provider=provider, settings=settings_with(peak_hours="7-9,16-18", peak_traffic_multiplier=1.3)
        )
        monday = upcoming(0)

        peak = await service.lookup(locations[0], locations[1], local_dt(monday, 17), tz_name=TZ_NAME)
        off_peak = await service.lookup(locations[0], locations[1], local_dt(monday, 12), tz_name=TZ_NAME)

        assert peak.travel_minutes == 13
        assert off_peak.is_cached is True
        assert off_peak.travel_minutes == 10

    @pytest.mark.asyncio
    async def test_provider_traffic_used_fresh_free_flow_cached(self, async_session, locations):
        provider = StubProvider(minutes=18, traffic_minutes=22)
        service = TravelTimeService(
            async_session, provider=provider, settings=settings_with(peak_hours="7-9,16-18", peak_traffic_multiplier=1.3)
        )
        monday = upcoming(0)

        fresh = await service.lookup(locations[0], locations[1], local_dt(monday, 17), tz_name=TZ_NAME)
        cached = await service.lookup(locations[0], locations[1], local_dt(monday, 12), tz_name=TZ_NAME)

        assert fresh.travel_minutes == 22
        assert cached.is_cached is True
        assert cached.travel_minutes == 18

    @pytest.mark.asyncio
    async def test_same_location_is_zero(self, async_session, location):
        provider = StubProvider()
        service = TravelTimeService(async_session, provider=provider)
        assert await service.cost(location, location, local_dt(upcoming(0), 12)) == 0
        assert provider.calls == 0

    @pytest.mark.asyncio
    async def test_missing_coordinates(self, async_session, location):
        no_coords = Location(id=uuid.uuid4(), address="Unknown", latitude=None, longitude=None)
        service = TravelTimeService(async_session, provider=StubProvider())
        with pytest.raises(CostProviderUnavailable):
            await service.cost(location, no_coords, local_dt(upcoming(0), 12))

    @pytest.mark.asyncio
    async def test_provider_error_normalized(self, async_session, locations):
        provider = StubProvider(error=TravelTimeError("No route", status="ZERO_RESULTS"))
        service = TravelTimeService(async_session, provider=provider)
        with pytest.raises(CostProviderUnavailable) as exc_info:
            await service.cost(locations[0], locations[1], local_dt(upcoming(0), 12))
        assert exc_info.value.details == {"provider_status": "ZERO_RESULTS"}

    @pytest.mark.asyncio
    async def test_provider_timeout(self, async_session, locations):
        provider = StubProvider(delay=1.0)
        service = TravelTimeService(
            async_session, provider=provider, settings=settings_with(travel_provider_timeout_seconds=0.05)
        )
        with pytest.raises(CostProviderUnavailable):
            await service.cost(locations[0], locations[1], local_dt(upcoming(0), 12))

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_normalized(self, async_session, locations):
        provider = StubProvider(error=KeyError("rows"))
        service = TravelTimeService(async_session, provider=provider)
        with pytest.raises(CostProviderUnavailable):
            await service.cost(locations[0], locations[1], local_dt(upcoming(0), 12))
