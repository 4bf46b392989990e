"""
Working hours calendar.

One rule per walker per weekday (Sunday = 0 ... Saturday = 6), stored in the
walker's local time. The calendar turns a rule into the UTC envelope that
every other availability computation is cut out of.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import ValidationFailed
from ..models import Walker, WorkingHours
from .intervals import TimeInterval

logger = logging.getLogger(__name__)

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


def sunday_based_weekday(day: date) -> int:
    """Python's Monday=0 weekday shifted to the Sunday=0 convention."""
    return (day.weekday() + 1) % 7


def to_utc_datetime(day: date, local_time: time, tz_name: str) -> datetime:
    """Combine a local date and wall-clock time in tz_name, return UTC."""
    local_dt = datetime.combine(day, local_time, tzinfo=ZoneInfo(tz_name))
    return local_dt.astimezone(timezone.utc)


def single_utc_datetime(day: date, local_time: time, tz_name: str) -> Optional[datetime]:
    """
    Like to_utc_datetime, but None when the wall-clock time is skipped or
    repeated by a DST change in tz_name.
    """
    naive = datetime.combine(day, local_time)
    tz = ZoneInfo(tz_name)
    earlier = naive.replace(tzinfo=tz, fold=0)
    later = naive.replace(tzinfo=tz, fold=1)
    if earlier.utcoffset() != later.utcoffset():
        return None
    return earlier.astimezone(timezone.utc)


def parse_hhmm(value: str, field: str = "time") -> time:
    try:
        hour, minute = map(int, value.strip().split(":"))
        return time(hour=hour, minute=minute)
    except (ValueError, AttributeError):
        raise ValidationFailed(f"Invalid {field} '{value}', expected HH:MM", details={"field": field})


def intervals_for(rules: Iterable[WorkingHours], day: date, tz_name: str) -> List[TimeInterval]:
    """
    Open interval(s) for a walker on a calendar date.

    Returns an empty list when no active rule exists for that weekday;
    a day off is not an error.
    """
    weekday = sunday_based_weekday(day)
    for rule in rules:
        if rule.day_of_week != weekday or not rule.is_active:
            continue
        start = to_utc_datetime(day, rule.start_time, tz_name)
        end = to_utc_datetime(day, rule.end_time, tz_name)
        if start >= end:
            return []
        return [TimeInterval(start, end)]
    return []


# ────────────────────────────────────────────────────────────────
# Store operations
# ────────────────────────────────────────────────────────────────

@dataclass
class DaySchedule:
    day_of_week: int
    start_time: time
    end_time: time
    is_active: bool = True


async def load_rules(session: AsyncSession, walker_id: uuid.UUID) -> Sequence[WorkingHours]:
    result = await session.execute(
        select(WorkingHours)
        .where(WorkingHours.walker_id == walker_id)
        .order_by(WorkingHours.day_of_week)
    )
    return result.scalars().all()


async def walker_intervals_for(
    session: AsyncSession,
    walker: Walker,
    day: date,
    rules: Optional[Sequence[WorkingHours]] = None,
) -> List[TimeInterval]:
    if rules is None:
        rules = await load_rules(session, walker.id)
    return intervals_for(rules, day, walker.timezone)


def validate_schedule(schedule: Sequence[DaySchedule]) -> None:
    """Reject the whole update before anything is written."""
    seen = set()
    for entry in schedule:
        if not 0 <= entry.day_of_week <= 6:
            raise ValidationFailed(
                f"day_of_week must be between 0 (Sunday) and 6 (Saturday), got {entry.day_of_week}",
                details={"day_of_week": entry.day_of_week},
            )
        if entry.day_of_week in seen:
            raise ValidationFailed(
                f"{DAY_NAMES[entry.day_of_week]} appears more than once",
                details={"day_of_week": entry.day_of_week},
            )
        seen.add(entry.day_of_week)
        if entry.start_time >= entry.end_time:
            raise ValidationFailed(
                f"{DAY_NAMES[entry.day_of_week]}: start time must be before end time",
                details={"day_of_week": entry.day_of_week},
            )


async def update_schedule(
    session: AsyncSession,
    walker_id: uuid.UUID,
    schedule: Sequence[DaySchedule],
) -> Sequence[WorkingHours]:
    """Upsert one rule per listed weekday; unlisted days are left alone."""
    validate_schedule(schedule)

    existing = {rule.day_of_week: rule for rule in await load_rules(session, walker_id)}
    for entry in schedule:
        rule = existing.get(entry.day_of_week)
        if rule is None:
            rule = WorkingHours(walker_id=walker_id, day_of_week=entry.day_of_week)
            session.add(rule)
            existing[entry.day_of_week] = rule
        rule.start_time = entry.start_time
        rule.end_time = entry.end_time
        rule.is_active = entry.is_active

    await session.commit()
    logger.info(f"Updated working hours for walker {walker_id}: {len(schedule)} day(s)")
    return sorted(existing.values(), key=lambda r: r.day_of_week)
