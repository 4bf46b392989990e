"""
Multi-tenancy package.

Every walker, service, location, booking and calendar row belongs to an
organization. The organization comes from the RequestContext
(app.core.request_context); this package turns it into query filters.

Modules:
    queries: Organization-scoped query helpers and NotFound-raising lookups
"""

from .queries import (
    # Composable helpers
    scoped_select,
    require_owned,
    # Lookups
    fetch_walker,
    fetch_service,
    fetch_location,
    fetch_booking,
    fetch_series,
    # Listing
    list_active_walkers,
    get_locations_by_ids,
    list_active_bookings_in_range,
)

__all__ = [
    "scoped_select",
    "require_owned",
    "fetch_walker",
    "fetch_service",
    "fetch_location",
    "fetch_booking",
    "fetch_series",
    "list_active_walkers",
    "get_locations_by_ids",
    "list_active_bookings_in_range",
]
