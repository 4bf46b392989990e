"""
Core module - configuration, database, request context, errors and logging.
"""
from .config import Settings, get_settings
from .db import get_session, Base, engine, AsyncSessionLocal, UTCDateTime, utc_now
from .request_context import (
    CallerRole,
    RequestContext,
    get_request_context,
    require_walker_access,
    resolve_walker_id,
    AuthenticationError,
    AuthorizationError,
)
from .responses import (
    ErrorDetail,
    ErrorEnvelope,
    ErrorCodes,
    error_response,
)
from .errors import (
    SchedulingError,
    ValidationFailed,
    InvalidRecurrenceRule,
    SlotUnavailable,
    InvalidTransition,
    NotFound,
    CostProviderUnavailable,
    register_exception_handlers,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "get_session",
    "Base",
    "engine",
    "AsyncSessionLocal",
    "UTCDateTime",
    "utc_now",
    # Request Context
    "CallerRole",
    "RequestContext",
    "get_request_context",
    "require_walker_access",
    "resolve_walker_id",
    "AuthenticationError",
    "AuthorizationError",
    # Responses
    "ErrorDetail",
    "ErrorEnvelope",
    "ErrorCodes",
    "error_response",
    # Errors
    "SchedulingError",
    "ValidationFailed",
    "InvalidRecurrenceRule",
    "SlotUnavailable",
    "InvalidTransition",
    "NotFound",
    "CostProviderUnavailable",
    "register_exception_handlers",
]
