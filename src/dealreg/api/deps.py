"""FastAPI dependencies for staff context, capability checks and error mapping.

Staff identity arrives from the upstream gateway as X-Staff-Id and
X-Staff-Role headers. Whether a role holds a capability is a yes/no lookup
in Settings.CAPABILITY_ROLES.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel

from src.dealreg.config import Settings, get_settings
from src.dealreg.deals.errors import (
    DealRegistrationError,
    IntegrityViolation,
    NotFoundError,
    RepositoryUnavailable,
    ValidationError,
)


class StaffContext(BaseModel):
    """Acting staff member as asserted by the gateway."""

    staff_id: str
    role: str


async def get_staff(request: Request) -> StaffContext:
    """Read the staff headers; 401 when either is missing."""
    staff_id = request.headers.get("X-Staff-Id")
    role = request.headers.get("X-Staff-Role")
    if not staff_id or not role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Staff identity headers required",
        )
    return StaffContext(staff_id=staff_id, role=role)


def require_capability(capability: str) -> Callable[..., Awaitable[StaffContext]]:
    """Build a dependency that admits staff whose role holds ``capability``.

    Raises:
        HTTPException(401): No staff identity on the request.
        HTTPException(403): The role does not hold the capability.
    """

    async def _check(
        staff: StaffContext = Depends(get_staff),
        settings: Settings = Depends(get_settings),
    ) -> StaffContext:
        allowed = settings.get_capability_roles().get(capability, set())
        if staff.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{staff.role}' lacks capability '{capability}'",
            )
        return staff

    return _check


def to_http_error(exc: DealRegistrationError) -> HTTPException:
    """Map a domain error onto its HTTP status."""
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, ValidationError):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(exc, IntegrityViolation):
        code = status.HTTP_409_CONFLICT
    elif isinstance(exc, RepositoryUnavailable):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    else:
        code = status.HTTP_500_INTERNAL_SERVER_ERROR
    return HTTPException(status_code=code, detail=str(exc))
