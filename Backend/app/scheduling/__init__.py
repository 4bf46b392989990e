"""
Scheduling core: working hours, calendar blocks, the booking ledger, slot
generation, service areas, route annotation and recurring series.
"""
from .intervals import TimeInterval, merge_intervals, subtract_intervals
from .working_hours import DaySchedule, intervals_for, load_rules, single_utc_datetime, update_schedule
from .blocks import (
    blocking_intervals_for,
    create_event,
    delete_event,
    get_event,
    load_events,
    parse_recurrence_rule,
    update_event,
)
from .ledger import (
    ALLOWED_TRANSITIONS,
    bookings_for,
    create_booking,
    local_day_window,
    transition_booking,
    validate_transition,
)
from .service_areas import eligible_walkers, walker_serves
from .slots import Slot, SlotConfidence, SlotGenerator, validate_date_range
from .route import OptimizedRoute, RouteOptimizer, RouteStop
from .recurring import (
    CancelScope,
    SeriesResult,
    SeriesRule,
    cancel_series,
    create_series,
    series_bookings,
)

__all__ = [
    # Intervals
    "TimeInterval",
    "merge_intervals",
    "subtract_intervals",
    # Working hours
    "DaySchedule",
    "intervals_for",
    "load_rules",
    "single_utc_datetime",
    "update_schedule",
    # Calendar blocks
    "blocking_intervals_for",
    "create_event",
    "delete_event",
    "get_event",
    "load_events",
    "parse_recurrence_rule",
    "update_event",
    # Ledger
    "ALLOWED_TRANSITIONS",
    "bookings_for",
    "create_booking",
    "local_day_window",
    "transition_booking",
    "validate_transition",
    # Service areas
    "eligible_walkers",
    "walker_serves",
    # Slots
    "Slot",
    "SlotConfidence",
    "SlotGenerator",
    "validate_date_range",
    # Routes
    "OptimizedRoute",
    "RouteOptimizer",
    "RouteStop",
    # Recurring
    "CancelScope",
    "SeriesResult",
    "SeriesRule",
    "cancel_series",
    "create_series",
    "series_bookings",
]
