"""
Standardized Error Response Module

Every error leaving the API uses the same envelope so the booking UI can
branch on a stable code (for example re-querying slots on SLOT_UNAVAILABLE).

RESPONSE FORMAT:
    {
        "error": {
            "code": "ERROR_CODE",
            "message": "Human-readable message",
            "details": {...}  # Optional extra context
        },
        "status": "error"
    }

ERROR CODES:
    - AUTHENTICATION_REQUIRED: No identity headers on the request
    - AUTHORIZATION_DENIED: Caller may not act on this walker/booking
    - NOT_FOUND: Walker, service, booking, location, event or series not found
    - VALIDATION_ERROR: Request data failed validation
    - INVALID_RECURRENCE_RULE: Malformed frequency / end condition / RRULE
    - SLOT_UNAVAILABLE: Requested interval overlaps an active booking
    - INVALID_TRANSITION: Illegal booking or series state change
    - TRAVEL_PROVIDER_UNAVAILABLE: Travel time could not be computed
"""

from typing import Any, Optional
from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Structured error information."""
    code: str
    message: str
    details: Optional[dict[str, Any]] = None


class ErrorEnvelope(BaseModel):
    """Error body, used to document error responses in OpenAPI."""
    error: ErrorDetail
    status: str = "error"


# ============================================================================
# COMMON ERROR CODES
# ============================================================================

class ErrorCodes:
    """Standard error codes for API responses."""

    # Authentication errors (401)
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"

    # Authorization errors (403)
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"

    # Not found errors (404)
    NOT_FOUND = "NOT_FOUND"

    # Validation errors (422)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_RECURRENCE_RULE = "INVALID_RECURRENCE_RULE"

    # Conflict errors (409)
    SLOT_UNAVAILABLE = "SLOT_UNAVAILABLE"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Upstream errors (503)
    TRAVEL_PROVIDER_UNAVAILABLE = "TRAVEL_PROVIDER_UNAVAILABLE"


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def error_response(
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """
    Create a standardized error response dict.
    """
    response = {
        "error": {
            "code": code,
            "message": message,
        },
        "status": "error",
    }
    if details:
        response["error"]["details"] = details
    return response
