"""
Request Context Resolution Module

Single source of truth for who is calling and which organization they act in.

ARCHITECTURE:
    1. The API gateway authenticates the caller (sessions, cookies, JWTs all
       live there) and forwards the resolved identity as headers.
    2. get_request_context() turns those headers into a RequestContext.
    3. Routes pass the context explicitly into every scheduling call; the
       scheduling code never reads headers or globals itself.

HEADERS:
    X-Organization-Id: tenant UUID (required)
    X-User-Id:         caller UUID (required)
    X-User-Role:       customer | walker | admin (default: customer)
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Request

logger = logging.getLogger(__name__)


class CallerRole(str, Enum):
    CUSTOMER = "customer"
    WALKER = "walker"
    ADMIN = "admin"


@dataclass(frozen=True)
class RequestContext:
    """
    Resolved identity for a request.

    Attributes:
        organization_id: Tenant every query is scoped to
        user_id: The caller (a customer, or the walker themself)
        role: What the caller is allowed to manage
    """
    organization_id: uuid.UUID
    user_id: uuid.UUID
    role: CallerRole = CallerRole.CUSTOMER
    ip_address: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == CallerRole.ADMIN

    def can_manage_walker(self, walker_id: uuid.UUID) -> bool:
        """Admins manage every walker in the org; walkers only themselves."""
        if self.is_admin:
            return True
        return self.role == CallerRole.WALKER and self.user_id == walker_id


class AuthenticationError(Exception):
    """Raised when identity headers are missing or malformed."""
    def __init__(self, message: str, status_code: int = 401):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class AuthorizationError(Exception):
    """Raised when the caller may not act on the requested walker."""
    def __init__(self, message: str, walker_id: Optional[uuid.UUID] = None):
        self.message = message
        self.walker_id = walker_id
        super().__init__(message)


def _parse_uuid_header(request: Request, name: str) -> uuid.UUID:
    raw = request.headers.get(name, "").strip()
    if not raw:
        raise AuthenticationError(f"Missing {name} header")
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise AuthenticationError(f"Invalid {name} header")


async def get_request_context(request: Request) -> RequestContext:
    """
    FastAPI dependency resolving the caller's identity.

    Example:
        @router.get("/working-hours")
        async def get_working_hours(ctx: RequestContext = Depends(get_request_context)):
            ...
    """
    organization_id = _parse_uuid_header(request, "X-Organization-Id")
    user_id = _parse_uuid_header(request, "X-User-Id")

    raw_role = request.headers.get("X-User-Role", CallerRole.CUSTOMER.value).strip().lower()
    try:
        role = CallerRole(raw_role)
    except ValueError:
        raise AuthenticationError(f"Unknown role '{raw_role}'")

    logger.debug(f"Request context: org={organization_id} user={user_id} role={role.value}")
    return RequestContext(
        organization_id=organization_id,
        user_id=user_id,
        role=role,
        ip_address=request.client.host if request.client else None,
    )


def require_walker_access(ctx: RequestContext, walker_id: uuid.UUID) -> None:
    """Raise AuthorizationError unless the caller may manage this walker."""
    if not ctx.can_manage_walker(walker_id):
        logger.warning(
            f"Denied walker access: user={ctx.user_id} role={ctx.role.value} walker={walker_id}"
        )
        raise AuthorizationError("You do not have access to this walker's schedule", walker_id=walker_id)


def resolve_walker_id(ctx: RequestContext, walker_id: Optional[uuid.UUID]) -> uuid.UUID:
    """
    Pick the walker a calendar/working-hours request targets.

    Walkers default to themselves; admins must name the walker.
    """
    if walker_id is None:
        if ctx.role == CallerRole.WALKER:
            return ctx.user_id
        raise AuthorizationError("walker_id is required")
    require_walker_access(ctx, walker_id)
    return walker_id
