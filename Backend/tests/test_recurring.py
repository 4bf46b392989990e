"""
Tests for recurring booking series: expansion, creation with conflict
reporting, preview and cancellation scopes.

Run with: pytest tests/test_recurring.py -v
"""

from datetime import date, datetime, time, timedelta, timezone

import pytest
from sqlalchemy import func, select

from app.core.errors import InvalidRecurrenceRule, InvalidTransition, SlotUnavailable
from app.models import Booking, BookingStatus, RecurrenceFrequency, RecurringBookingSeries
from app.scheduling.ledger import create_booking, transition_booking
from app.scheduling.recurring import (
    CancelScope,
    SeriesRule,
    cancel_series,
    create_series,
    expand,
    generate_occurrence_dates,
    series_bookings,
    validate_rule,
)

from conftest import TZ_NAME, local_dt, upcoming


def weekly_rule(start: date, **overrides) -> SeriesRule:
    values = dict(
        frequency=RecurrenceFrequency.WEEKLY,
        day_of_week=1,  # Monday
        time_of_day=time(9, 0),
        timezone=TZ_NAME,
        start_date=start,
        occurrences=4,
    )
    values.update(overrides)
    return SeriesRule(**values)


# ============================================================================
# EXPANSION
# ============================================================================

class TestExpansion:

    def test_weekly_four_occurrences(self):
        occurrences = expand(weekly_rule(date(2026, 3, 2)), duration_minutes=30)
        assert [o.occurrence_number for o in occurrences] == [1, 2, 3, 4]
        assert [o.date for o in occurrences] == [
            date(2026, 3, 2), date(2026, 3, 9), date(2026, 3, 16), date(2026, 3, 23)
        ]
        assert occurrences[0].interval.start == local_dt(date(2026, 3, 2), 9)
        assert occurrences[0].interval.minutes == 30

    def test_first_occurrence_on_requested_weekday(self):
        """Starting on a Wednesday, a Monday series begins the following Monday."""
        dates = generate_occurrence_dates(weekly_rule(date(2026, 3, 4), occurrences=2))
        assert dates == [date(2026, 3, 9), date(2026, 3, 16)]

    def test_bi_weekly(self):
        dates = generate_occurrence_dates(
            weekly_rule(date(2026, 3, 2), frequency=RecurrenceFrequency.BI_WEEKLY, occurrences=3)
        )
        assert dates == [date(2026, 3, 2), date(2026, 3, 16), date(2026, 3, 30)]

    def test_daily_starts_on_start_date(self):
        dates = generate_occurrence_dates(
            weekly_rule(date(2026, 3, 4), frequency=RecurrenceFrequency.DAILY, occurrences=3)
        )
        assert dates == [date(2026, 3, 4), date(2026, 3, 5), date(2026, 3, 6)]

    def test_monthly_same_week_of_month(self):
        dates = generate_occurrence_dates(
            weekly_rule(date(2026, 3, 2), frequency=RecurrenceFrequency.MONTHLY, occurrences=3)
        )
        assert dates == [date(2026, 3, 2), date(2026, 4, 6), date(2026, 5, 4)]

    def test_monthly_fifth_weekday_falls_back(self):
        """The fifth Thursday of January becomes the last Thursday of February."""
        dates = generate_occurrence_dates(
            weekly_rule(date(2026, 1, 29), frequency=RecurrenceFrequency.MONTHLY, day_of_week=4, occurrences=3)
        )
        assert dates == [date(2026, 1, 29), date(2026, 2, 26), date(2026, 3, 26)]

    def test_end_date(self):
        dates = generate_occurrence_dates(
            weekly_rule(date(2026, 3, 2), occurrences=None, until=date(2026, 3, 20))
        )
        assert dates == [date(2026, 3, 2), date(2026, 3, 9), date(2026, 3, 16)]

    def test_capped_at_max_occurrences(self):
        dates = generate_occurrence_dates(
            weekly_rule(date(2026, 3, 2), frequency=RecurrenceFrequency.DAILY, occurrences=None,
                        until=date(2028, 3, 2))
        )
        assert len(dates) == 52

    def test_one_year_horizon(self):
        dates = generate_occurrence_dates(
            weekly_rule(date(2026, 3, 2), frequency=RecurrenceFrequency.MONTHLY, occurrences=None,
                        until=date(2029, 1, 1))
        )
        assert dates[-1] <= date(2027, 3, 2)
        assert len(dates) <= 13

    def test_skipped_local_time_has_no_interval(self):
        """02:30 does not exist in New York on 2026-03-08 (spring forward)."""
        occurrences = expand(
            weekly_rule(date(2026, 3, 7), frequency=RecurrenceFrequency.DAILY, time_of_day=time(2, 30),
                        timezone="America/New_York", occurrences=3),
            duration_minutes=30,
        )
        assert [o.date for o in occurrences] == [date(2026, 3, 7), date(2026, 3, 8), date(2026, 3, 9)]
        assert occurrences[1].interval is None
        assert occurrences[0].interval is not None
        assert occurrences[2].interval is not None


class TestValidation:

    @pytest.mark.parametrize("occurrences", [0, 53, -1])
    def test_occurrence_bounds(self, occurrences):
        with pytest.raises(InvalidRecurrenceRule):
            validate_rule(weekly_rule(date(2026, 3, 2), occurrences=occurrences))

    def test_end_date_must_follow_start(self):
        with pytest.raises(InvalidRecurrenceRule):
            validate_rule(weekly_rule(date(2026, 3, 2), occurrences=None, until=date(2026, 3, 2)))

    def test_exactly_one_end_condition(self):
        with pytest.raises(InvalidRecurrenceRule):
            validate_rule(weekly_rule(date(2026, 3, 2), occurrences=None))
        with pytest.raises(InvalidRecurrenceRule):
            validate_rule(weekly_rule(date(2026, 3, 2), occurrences=2, until=date(2026, 4, 1)))

    def test_day_of_week_range(self):
        with pytest.raises(InvalidRecurrenceRule):
            validate_rule(weekly_rule(date(2026, 3, 2), day_of_week=7))


# ============================================================================
# CREATION
# ============================================================================

async def count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestCreateSeries:

    @pytest.mark.asyncio
    async def test_creates_numbered_bookings(self, async_session, org_id, customer_id, walker, service, location):
        start = upcoming(0)
        result = await create_series(
            async_session,
            organization_id=org_id,
            customer_id=customer_id,
            walker=walker,
            service=service,
            location=location,
            rule=weekly_rule(start),
        )

        assert result.bookings_created == 4
        assert result.total_planned == 4
        assert result.conflicts == []
        assert result.preview_dates == [start + timedelta(weeks=i) for i in range(4)]
        bookings = await series_bookings(async_session, result.series.id)
        assert [b.occurrence_number for b in bookings] == [1, 2, 3, 4]
        assert all(b.status == BookingStatus.PENDING for b in bookings)
        assert all(b.price_cents == service.price_cents for b in bookings)

    @pytest.mark.asyncio
    async def test_conflicting_occurrence_skipped_and_reported(
        self, async_session, org_id, customer_id, walker, service, location
    ):
        start = upcoming(0)
        second_week = start + timedelta(weeks=1)
        await create_booking(
            async_session,
            organization_id=org_id,
            customer_id=customer_id,
            walker=walker,
            service=service,
            location=location,
            start=local_dt(second_week, 9, 15),
        )

        result = await create_series(
            async_session,
            organization_id=org_id,
            customer_id=customer_id,
            walker=walker,
            service=service,
            location=location,
            rule=weekly_rule(start),
        )

        assert result.bookings_created == 3
        assert [(c.date, c.reason) for c in result.conflicts] == [(second_week, "overlaps_booking")]
        assert [b.occurrence_number for b in result.bookings] == [1, 3, 4]

    @pytest.mark.asyncio
    async def test_outside_hours_reported(self, async_session, org_id, customer_id, walker, service, location):
        result = await create_series(
            async_session,
            organization_id=org_id,
            customer_id=customer_id,
            walker=walker,
            service=service,
            location=location,
            rule=weekly_rule(upcoming(0), frequency=RecurrenceFrequency.DAILY, occurrences=7),
        )
        # Saturday and Sunday are days off
        assert result.bookings_created == 5
        assert {c.reason for c in result.conflicts} == {"outside_working_hours"}

    @pytest.mark.asyncio
    async def test_preview_writes_nothing(self, async_session, org_id, customer_id, walker, service, location):
        result = await create_series(
            async_session,
            organization_id=org_id,
            customer_id=customer_id,
            walker=walker,
            service=service,
            location=location,
            rule=weekly_rule(upcoming(0), occurrences=8),
            preview_only=True,
        )

        assert result.series is None
        assert result.total_planned == 8
        assert len(result.preview_dates) == 5
        assert await count(async_session, RecurringBookingSeries) == 0
        assert await count(async_session, Booking) == 0

    @pytest.mark.asyncio
    async def test_repeated_local_time_reported(self, async_session, org_id, customer_id, walker, service, location):
        """01:30 happens twice in New York on 2026-11-01 (fall back)."""
        result = await create_series(
            async_session,
            organization_id=org_id,
            customer_id=customer_id,
            walker=walker,
            service=service,
            location=location,
            rule=weekly_rule(date(2026, 10, 31), frequency=RecurrenceFrequency.DAILY, time_of_day=time(1, 30),
                             timezone="America/New_York", occurrences=3),
            preview_only=True,
            now=datetime(2026, 10, 1, tzinfo=timezone.utc),
        )

        reasons = {c.date: c.reason for c in result.conflicts}
        assert reasons[date(2026, 11, 1)] == "ambiguous_local_time"

    @pytest.mark.asyncio
    async def test_nothing_available_writes_nothing(self, async_session, org_id, customer_id, walker, service, location):
        saturday_rule = weekly_rule(upcoming(5), day_of_week=6, occurrences=3)
        with pytest.raises(SlotUnavailable):
            await create_series(
                async_session,
                organization_id=org_id,
                customer_id=customer_id,
                walker=walker,
                service=service,
                location=location,
                rule=saturday_rule,
            )
        assert await count(async_session, RecurringBookingSeries) == 0

    @pytest.mark.asyncio
    async def test_invalid_rule_writes_nothing(self, async_session, org_id, customer_id, walker, service, location):
        with pytest.raises(InvalidRecurrenceRule):
            await create_series(
                async_session,
                organization_id=org_id,
                customer_id=customer_id,
                walker=walker,
                service=service,
                location=location,
                rule=weekly_rule(upcoming(0), occurrences=60),
            )
        assert await count(async_session, Booking) == 0


# ============================================================================
# CANCELLATION
# ============================================================================

class TestCancelSeries:

    async def _series(self, session, org_id, customer_id, walker, service, location):
        return await create_series(
            session,
            organization_id=org_id,
            customer_id=customer_id,
            walker=walker,
            service=service,
            location=location,
            rule=weekly_rule(upcoming(0)),
        )

    @pytest.mark.asyncio
    async def test_all_future_leaves_past_and_completed(
        self, async_session, org_id, customer_id, walker, service, location
    ):
        result = await self._series(async_session, org_id, customer_id, walker, service, location)
        first, second, third, fourth = result.bookings
        await transition_booking(async_session, first, BookingStatus.CONFIRMED)
        for target in (BookingStatus.CONFIRMED, BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED):
            await transition_booking(async_session, second, target)

        now = second.scheduled_start + timedelta(hours=1)
        cancelled = await cancel_series(async_session, result.series, CancelScope.ALL_FUTURE, now=now)

        assert {b.id for b in cancelled} == {third.id, fourth.id}
        assert first.status == BookingStatus.CONFIRMED
        assert second.status == BookingStatus.COMPLETED
        assert third.status == BookingStatus.CANCELLED
        assert result.series.is_active is True

    @pytest.mark.asyncio
    async def test_entire_series_deactivates(self, async_session, org_id, customer_id, walker, service, location):
        result = await self._series(async_session, org_id, customer_id, walker, service, location)
        first = result.bookings[0]
        await transition_booking(async_session, first, BookingStatus.CONFIRMED)

        now = first.scheduled_start + timedelta(hours=1)
        cancelled = await cancel_series(async_session, result.series, CancelScope.ENTIRE_SERIES, now=now)

        assert len(cancelled) == 4
        assert result.series.is_active is False
        with pytest.raises(InvalidTransition):
            await cancel_series(async_session, result.series, CancelScope.ALL_FUTURE)
