"""
Scheduling error taxonomy and its HTTP mapping.

Usage:
    from app.core.errors import SlotUnavailable, register_exception_handlers

    raise SlotUnavailable(
        "Walker already has a booking in this time range",
        details={"conflicting_booking_ids": [...]},
    )

    register_exception_handlers(app)  # once, in main.py
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .request_context import AuthenticationError, AuthorizationError
from .responses import ErrorCodes, error_response

logger = logging.getLogger(__name__)


class SchedulingError(Exception):
    """Base class for errors raised by the scheduling core."""

    code = ErrorCodes.VALIDATION_ERROR
    status_code = 400

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationFailed(SchedulingError):
    """Malformed input, rejected before any write."""
    code = ErrorCodes.VALIDATION_ERROR
    status_code = 422


class InvalidRecurrenceRule(SchedulingError):
    code = ErrorCodes.INVALID_RECURRENCE_RULE
    status_code = 422


class SlotUnavailable(SchedulingError):
    """Overlap detected at commit time. The caller should re-query slots."""
    code = ErrorCodes.SLOT_UNAVAILABLE
    status_code = 409


class InvalidTransition(SchedulingError):
    code = ErrorCodes.INVALID_TRANSITION
    status_code = 409


class NotFound(SchedulingError):
    code = ErrorCodes.NOT_FOUND
    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        details = {"resource": resource.lower()}
        if resource_id is not None:
            details["id"] = str(resource_id)
        super().__init__(message, details)


class CostProviderUnavailable(SchedulingError):
    """
    Travel time could not be produced (provider error, timeout, or no
    coordinates). Slot and route computations catch this and degrade.
    """
    code = ErrorCodes.TRAVEL_PROVIDER_UNAVAILABLE
    status_code = 503


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

async def _scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.code, exc.message, exc.details),
    )


async def _authentication_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(ErrorCodes.AUTHENTICATION_REQUIRED, exc.message),
    )


async def _authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    details = {"walker_id": str(exc.walker_id)} if exc.walker_id else None
    return JSONResponse(
        status_code=status.HTTP_403_FORBIDDEN,
        content=error_response(ErrorCodes.AUTHORIZATION_DENIED, exc.message, details),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SchedulingError, _scheduling_error_handler)
    app.add_exception_handler(AuthenticationError, _authentication_error_handler)
    app.add_exception_handler(AuthorizationError, _authorization_error_handler)
