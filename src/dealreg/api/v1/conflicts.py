"""REST API endpoints for the conflict review queue.

Listing joins each conflict with both deals' display summaries. Resolving a
conflict requires the conflicts:resolve capability.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from src.dealreg.api.deps import StaffContext, require_capability, to_http_error
from src.dealreg.api.v1.deals import (
    ConflictResponse,
    DealResponse,
    _get_conflict_repository,
    _get_resolution_service,
    conflict_to_response,
    deal_to_response,
)
from src.dealreg.deals.errors import DealRegistrationError
from src.dealreg.deals.schemas import ConflictFilter, ConflictType, ResolutionStatus

router = APIRouter(prefix="/api/v1/conflicts", tags=["conflicts"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class DealSummaryResponse(BaseModel):
    """Display fields for one side of a conflict."""

    deal_id: str
    reseller_id: str
    reseller_name: str | None = None
    end_customer_name: str
    territory: str | None = None
    total_value: float
    status: str


class ConflictListItemResponse(BaseModel):
    """A conflict joined with both deals."""

    conflict: ConflictResponse
    deal: DealSummaryResponse | None = None
    competing_deal: DealSummaryResponse | None = None


class ConflictPageResponse(BaseModel):
    """One page of the conflict queue."""

    items: list[ConflictListItemResponse] = Field(default_factory=list)
    total: int
    page: int
    limit: int
    total_pages: int


class ResolutionResponse(BaseModel):
    """Response for POST /conflicts/{id}/resolve."""

    conflict: ConflictResponse
    deal: DealResponse | None = None
    deals: list[DealResponse] = Field(default_factory=list)
    related_conflicts: list[ConflictResponse] = Field(default_factory=list)
    dismissed_conflicts: list[ConflictResponse] = Field(default_factory=list)


# ── Request Schemas ──────────────────────────────────────────────────────────


class ResolveConflictRequest(BaseModel):
    """Request body for resolving or dismissing a conflict."""

    resolution: str
    assigned_reseller_id: str | None = None
    winning_deal_id: str | None = None


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _summary_to_response(summary: Any) -> DealSummaryResponse | None:
    if summary is None:
        return None
    return DealSummaryResponse(
        deal_id=summary.deal_id,
        reseller_id=summary.reseller_id,
        reseller_name=summary.reseller_name,
        end_customer_name=summary.end_customer_name,
        territory=summary.territory,
        total_value=float(summary.total_value),
        status=summary.status.value,
    )


# ── Conflict Endpoints ───────────────────────────────────────────────────────


@router.get("", response_model=ConflictPageResponse)
async def list_conflicts(
    request: Request,
    resolution_status: ResolutionStatus | None = Query(
        default=None, description="Filter by resolution status"
    ),
    conflict_type: ConflictType | None = Query(
        default=None, description="Filter by conflict type"
    ),
    assigned_to_staff: str | None = Query(
        default=None, description="Filter by assigned staff member"
    ),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> ConflictPageResponse:
    """List conflicts with filters and pagination."""
    repo = _get_conflict_repository(request)
    filters = ConflictFilter(
        resolution_status=resolution_status,
        conflict_type=conflict_type,
        assigned_to_staff=assigned_to_staff,
        page=page,
        limit=limit,
    )
    try:
        result = await repo.list_conflicts(filters)
    except DealRegistrationError as exc:
        raise to_http_error(exc) from exc
    return ConflictPageResponse(
        items=[
            ConflictListItemResponse(
                conflict=conflict_to_response(item.conflict),
                deal=_summary_to_response(item.deal),
                competing_deal=_summary_to_response(item.competing_deal),
            )
            for item in result.items
        ],
        total=result.total,
        page=result.page,
        limit=result.limit,
        total_pages=result.total_pages,
    )


@router.get("/{conflict_id}", response_model=ConflictResponse)
async def get_conflict(conflict_id: str, request: Request) -> ConflictResponse:
    """Get a single conflict by ID."""
    repo = _get_conflict_repository(request)
    try:
        conflict = await repo.get_conflict(conflict_id)
    except DealRegistrationError as exc:
        raise to_http_error(exc) from exc
    if conflict is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Conflict not found: {conflict_id}",
        )
    return conflict_to_response(conflict)


@router.post("/{conflict_id}/resolve", response_model=ResolutionResponse)
async def resolve_conflict(
    conflict_id: str,
    body: ResolveConflictRequest,
    request: Request,
    staff: StaffContext = Depends(require_capability("conflicts:resolve")),
) -> ResolutionResponse:
    """Resolve (assigning the winning deal) or dismiss a pending conflict."""
    service = _get_resolution_service(request)
    try:
        result = await service.resolve(
            conflict_id,
            body.resolution,
            body.assigned_reseller_id,
            winning_deal_id=body.winning_deal_id,
            staff_id=staff.staff_id,
        )
    except DealRegistrationError as exc:
        raise to_http_error(exc) from exc
    return ResolutionResponse(
        conflict=conflict_to_response(result.conflict),
        deal=deal_to_response(result.deal) if result.deal else None,
        deals=[deal_to_response(d) for d in result.deals],
        related_conflicts=[conflict_to_response(c) for c in result.related_conflicts],
        dismissed_conflicts=[
            conflict_to_response(c) for c in result.dismissed_conflicts
        ],
    )
