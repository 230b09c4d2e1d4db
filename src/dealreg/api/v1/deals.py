"""REST API endpoints for deal submission and review.

Submitting a deal runs conflict detection in the same request; the response
carries the deal (with its post-detection status) and the conflict summary.
Approve and reject require the deals:review capability.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from src.dealreg.api.deps import StaffContext, require_capability, to_http_error
from src.dealreg.deals.errors import DealRegistrationError

router = APIRouter(prefix="/api/v1/deals", tags=["deals"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class EndCustomerResponse(BaseModel):
    """End customer as shown on a deal."""

    id: str
    company_name: str
    contact_name: str | None = None
    contact_email: str | None = None
    territory: str | None = None


class DealResponse(BaseModel):
    """Response for deal data, serializes datetimes to ISO strings."""

    id: str
    reseller_id: str
    end_customer: EndCustomerResponse
    assigned_reseller_id: str | None = None
    total_value: float
    status: str
    submission_date: str
    assignment_date: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class ConflictSummaryResponse(BaseModel):
    """One detected conflict as reported on submission."""

    conflict_id: str | None = None
    type: str
    severity: str
    reason: str
    competing_deal_id: str
    newly_created: bool = True


class FailedConflictResponse(BaseModel):
    """A matched conflict the store could not record."""

    type: str
    severity: str
    competing_deal_id: str
    error: str


class ConflictCheckResponse(BaseModel):
    """Detection summary attached to a submission."""

    has_conflicts: bool
    complete: bool = True
    conflicts: list[ConflictSummaryResponse] = Field(default_factory=list)
    failed: list[FailedConflictResponse] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class SubmitDealResponse(BaseModel):
    """Response for POST /deals."""

    deal: DealResponse
    conflict_check: ConflictCheckResponse


class ConflictResponse(BaseModel):
    """Response for conflict data."""

    id: str
    deal_id: str
    competing_deal_id: str
    conflict_type: str
    severity: str
    reason: str = ""
    resolution_status: str
    assigned_to_staff: str | None = None
    created_at: str | None = None
    resolved_at: str | None = None


class DealDecisionResponse(BaseModel):
    """Response for approve/reject."""

    deal: DealResponse
    dismissed_conflicts: list[ConflictResponse] = Field(default_factory=list)


# ── Request Schemas ──────────────────────────────────────────────────────────


class EndCustomerRequest(BaseModel):
    """End customer fields on a submission."""

    company_name: str = Field(min_length=1)
    contact_name: str | None = None
    contact_email: str | None = None
    territory: str | None = None


class DealProductRequest(BaseModel):
    """Line item on a submission."""

    product_id: str
    quantity: int = Field(gt=0)
    price: float = Field(gt=0)


class SubmitDealRequest(BaseModel):
    """Request body for submitting a deal (line items or total_value)."""

    reseller_id: str
    end_customer: EndCustomerRequest
    products: list[DealProductRequest] = Field(default_factory=list)
    total_value: float | None = Field(default=None, gt=0)
    submission_date: str | None = None


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_state(request: Request, name: str, label: str) -> Any:
    """Retrieve a service from app.state, 503 if not available."""
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return service


def _get_detection_engine(request: Request) -> Any:
    return _get_state(request, "detection_engine", "Conflict detection")


def _get_deal_repository(request: Request) -> Any:
    return _get_state(request, "deal_repository", "Deal repository")


def _get_conflict_repository(request: Request) -> Any:
    return _get_state(request, "conflict_repository", "Conflict store")


def _get_resolution_service(request: Request) -> Any:
    return _get_state(request, "resolution_service", "Conflict resolution")


# ── Conversion Helpers ───────────────────────────────────────────────────────


def deal_to_response(deal: Any) -> DealResponse:
    """Convert DealRead to DealResponse."""
    customer = deal.end_customer
    return DealResponse(
        id=deal.id,
        reseller_id=deal.reseller_id,
        end_customer=EndCustomerResponse(
            id=customer.id,
            company_name=customer.company_name,
            contact_name=customer.contact_name,
            contact_email=customer.contact_email,
            territory=customer.territory,
        ),
        assigned_reseller_id=deal.assigned_reseller_id,
        total_value=float(deal.total_value),
        status=deal.status.value,
        submission_date=deal.submission_date.isoformat(),
        assignment_date=deal.assignment_date.isoformat() if deal.assignment_date else None,
        created_at=deal.created_at.isoformat() if deal.created_at else None,
        updated_at=deal.updated_at.isoformat() if deal.updated_at else None,
    )


def conflict_to_response(conflict: Any) -> ConflictResponse:
    """Convert ConflictRead to ConflictResponse."""
    return ConflictResponse(
        id=conflict.id,
        deal_id=conflict.deal_id,
        competing_deal_id=conflict.competing_deal_id,
        conflict_type=conflict.conflict_type.value,
        severity=conflict.severity.value,
        reason=conflict.reason,
        resolution_status=conflict.resolution_status.value,
        assigned_to_staff=conflict.assigned_to_staff,
        created_at=conflict.created_at.isoformat() if conflict.created_at else None,
        resolved_at=conflict.resolved_at.isoformat() if conflict.resolved_at else None,
    )


def _check_to_response(result: Any) -> ConflictCheckResponse:
    return ConflictCheckResponse(
        has_conflicts=result.has_conflicts,
        complete=result.is_complete,
        conflicts=[
            ConflictSummaryResponse(
                conflict_id=c.conflict_id,
                type=c.conflict_type.value,
                severity=c.severity.value,
                reason=c.reason,
                competing_deal_id=c.competing_deal_id,
                newly_created=c.created,
            )
            for c in result.conflicts
        ],
        failed=[
            FailedConflictResponse(
                type=f.conflict_type.value,
                severity=f.severity.value,
                competing_deal_id=f.competing_deal_id,
                error=f.error,
            )
            for f in result.failed
        ],
        suggestions=result.suggestions,
    )


def _decision_to_response(decision: Any) -> DealDecisionResponse:
    return DealDecisionResponse(
        deal=deal_to_response(decision.deal),
        dismissed_conflicts=[conflict_to_response(c) for c in decision.dismissed_conflicts],
    )


# ── Deal Endpoints ───────────────────────────────────────────────────────────


@router.post("", response_model=SubmitDealResponse, status_code=201)
async def submit_deal(
    body: SubmitDealRequest,
    request: Request,
) -> SubmitDealResponse:
    """Submit a deal and run conflict detection for it."""
    engine = _get_detection_engine(request)

    from src.dealreg.deals.schemas import DealCreate

    try:
        data = DealCreate.model_validate(body.model_dump(exclude_none=True))
    except PydanticValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=exc.errors(include_url=False, include_context=False),
        )

    try:
        deal, result = await engine.submit_deal(data)
    except DealRegistrationError as exc:
        raise to_http_error(exc) from exc
    return SubmitDealResponse(
        deal=deal_to_response(deal),
        conflict_check=_check_to_response(result),
    )


@router.get("/{deal_id}", response_model=DealResponse)
async def get_deal(deal_id: str, request: Request) -> DealResponse:
    """Get a single deal by ID."""
    repo = _get_deal_repository(request)
    try:
        deal = await repo.get_deal(deal_id)
    except DealRegistrationError as exc:
        raise to_http_error(exc) from exc
    if deal is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Deal not found: {deal_id}",
        )
    return deal_to_response(deal)


@router.get("/{deal_id}/conflicts", response_model=list[ConflictResponse])
async def list_deal_conflicts(deal_id: str, request: Request) -> list[ConflictResponse]:
    """List the pending conflicts referencing a deal on either side."""
    repo = _get_conflict_repository(request)
    try:
        conflicts = await repo.get_open_conflicts(deal_id)
    except DealRegistrationError as exc:
        raise to_http_error(exc) from exc
    return [conflict_to_response(c) for c in conflicts]


@router.post("/{deal_id}/approve", response_model=DealDecisionResponse)
async def approve_deal(
    deal_id: str,
    request: Request,
    staff: StaffContext = Depends(require_capability("deals:review")),
) -> DealDecisionResponse:
    """Approve a pending or assigned deal that has no pending conflicts."""
    service = _get_resolution_service(request)
    try:
        decision = await service.approve_deal(deal_id)
    except DealRegistrationError as exc:
        raise to_http_error(exc) from exc
    return _decision_to_response(decision)


@router.post("/{deal_id}/reject", response_model=DealDecisionResponse)
async def reject_deal(
    deal_id: str,
    request: Request,
    staff: StaffContext = Depends(require_capability("deals:review")),
) -> DealDecisionResponse:
    """Reject a deal and dismiss its pending conflicts."""
    service = _get_resolution_service(request)
    try:
        decision = await service.reject_deal(deal_id, staff_id=staff.staff_id)
    except DealRegistrationError as exc:
        raise to_http_error(exc) from exc
    return _decision_to_response(decision)
