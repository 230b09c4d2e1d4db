"""Pydantic schemas for deal registration and conflict handling.

Defines all structured types crossing the repository/service boundary:
- Enums: DealStatus, ConflictType, ConflictSeverity, ResolutionStatus
- Deals: EndCustomerCreate/Read, DealProductCreate, DealCreate/Read, ResellerCreate/Read
- Rule output: MatchVerdict
- Conflict store: StagedConflict, ConflictRead, PersistedConflict, FailedConflict,
  ConflictWriteResult
- Engine output: ConflictCandidate, ConflictDetectionResult
- Listing: ConflictFilter, DealSummary, ConflictListItem, ConflictPage
- Resolution: ResolutionResult, DealDecision
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, model_validator


# ── Enums ───────────────────────────────────────────────────────────────────


class DealStatus(str, Enum):
    """Lifecycle status of a registered deal."""

    PENDING = "pending"
    ASSIGNED = "assigned"
    DISPUTED = "disputed"
    APPROVED = "approved"
    REJECTED = "rejected"


# Deals in these statuses are compared against new submissions.
NON_TERMINAL_STATUSES: frozenset[DealStatus] = frozenset(
    {DealStatus.PENDING, DealStatus.ASSIGNED, DealStatus.DISPUTED}
)


class ConflictType(str, Enum):
    """Kind of collision between two deals."""

    DUPLICATE_END_USER = "duplicate_end_user"
    TERRITORY_OVERLAP = "territory_overlap"
    TIMING_CONFLICT = "timing_conflict"


class ConflictSeverity(str, Enum):
    """How strongly a collision blocks normal deal progression."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ResolutionStatus(str, Enum):
    """Resolution state of a conflict. Only PENDING is non-terminal."""

    PENDING = "pending"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


SEVERITY_RANK: dict[ConflictSeverity, int] = {
    ConflictSeverity.HIGH: 3,
    ConflictSeverity.MEDIUM: 2,
    ConflictSeverity.LOW: 1,
}

TYPE_RANK: dict[ConflictType, int] = {
    ConflictType.DUPLICATE_END_USER: 3,
    ConflictType.TERRITORY_OVERLAP: 2,
    ConflictType.TIMING_CONFLICT: 1,
}


# ── Resellers & End Customers ───────────────────────────────────────────────


class ResellerCreate(BaseModel):
    """Schema for registering a reseller."""

    name: str
    contact_email: str | None = None


class ResellerRead(BaseModel):
    """Schema for reading a reseller."""

    id: str
    name: str
    contact_email: str | None = None
    created_at: datetime | None = None


class EndCustomerCreate(BaseModel):
    """End customer as entered on a deal submission."""

    company_name: str = Field(min_length=1)
    contact_name: str | None = None
    contact_email: str | None = None
    territory: str | None = None


class EndCustomerRead(BaseModel):
    """Persisted end customer including its normalized dedup key."""

    id: str
    company_name: str
    contact_name: str | None = None
    contact_email: str | None = None
    territory: str | None = None
    company_key: str
    territory_key: str = ""


# ── Deals ───────────────────────────────────────────────────────────────────


class DealProductCreate(BaseModel):
    """Line item on a deal submission."""

    product_id: str
    quantity: int = Field(gt=0)
    price: Decimal = Field(gt=0)


class DealCreate(BaseModel):
    """Schema for submitting a new deal.

    Either line items or an explicit total value must be supplied. When line
    items are present the total is their sum and total_value is ignored.
    """

    reseller_id: str
    end_customer: EndCustomerCreate
    products: list[DealProductCreate] = Field(default_factory=list)
    total_value: Decimal | None = Field(default=None, gt=0)
    submission_date: datetime | None = None

    @model_validator(mode="after")
    def _require_value(self) -> DealCreate:
        if not self.products and self.total_value is None:
            msg = "Either products or total_value is required"
            raise ValueError(msg)
        return self

    def computed_total(self) -> Decimal:
        """Total deal value: sum of line items, or the explicit total."""
        if self.products:
            return sum(
                (Decimal(p.quantity) * p.price for p in self.products),
                Decimal("0"),
            )
        if self.total_value is None:
            msg = "Either products or total_value is required"
            raise ValueError(msg)
        return self.total_value


class DealRead(BaseModel):
    """Schema for reading a deal with its end customer."""

    id: str
    reseller_id: str
    end_customer_id: str
    end_customer: EndCustomerRead
    assigned_reseller_id: str | None = None
    total_value: Decimal
    status: DealStatus = DealStatus.PENDING
    submission_date: datetime
    assignment_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Rule Output ─────────────────────────────────────────────────────────────


class MatchVerdict(BaseModel):
    """A single rule's verdict that two deals collide."""

    conflict_type: ConflictType
    severity: ConflictSeverity
    reason: str


# ── Conflict Store ──────────────────────────────────────────────────────────


class StagedConflict(BaseModel):
    """A matched pair waiting to be written to the conflict store."""

    deal_id: str
    competing_deal_id: str
    conflict_type: ConflictType
    severity: ConflictSeverity
    reason: str


class ConflictRead(BaseModel):
    """Schema for reading a persisted conflict."""

    id: str
    deal_id: str
    competing_deal_id: str
    conflict_type: ConflictType
    severity: ConflictSeverity
    reason: str = ""
    resolution_status: ResolutionStatus = ResolutionStatus.PENDING
    assigned_to_staff: str | None = None
    created_at: datetime | None = None
    resolved_at: datetime | None = None
    updated_at: datetime | None = None

    def involves(self, deal_id: str) -> bool:
        return deal_id in (self.deal_id, self.competing_deal_id)

    def other_side(self, deal_id: str) -> str:
        """Return the id of the pair member that is not ``deal_id``."""
        return self.competing_deal_id if self.deal_id == deal_id else self.deal_id


class PersistedConflict(BaseModel):
    """Outcome of writing one staged conflict.

    ``created`` is False when an open row for the same pair and type already
    existed and was reported instead of inserting a duplicate.
    """

    conflict: ConflictRead
    created: bool = True


class FailedConflict(BaseModel):
    """A matched pair that could not be written to the conflict store."""

    conflict_type: ConflictType
    severity: ConflictSeverity
    competing_deal_id: str
    error: str


class ConflictWriteResult(BaseModel):
    """Per-record outcome of a conflict store write."""

    persisted: list[PersistedConflict] = Field(default_factory=list)
    failed: list[FailedConflict] = Field(default_factory=list)


# ── Engine Output ───────────────────────────────────────────────────────────


class ConflictCandidate(BaseModel):
    """One detected collision as reported to the submitting user."""

    conflict_type: ConflictType
    severity: ConflictSeverity
    reason: str
    competing_deal_id: str
    conflict_id: str | None = None
    created: bool = True


class ConflictDetectionResult(BaseModel):
    """Aggregate result of one detection pass for a newly submitted deal."""

    deal_id: str
    has_conflicts: bool = False
    conflicts: list[ConflictCandidate] = Field(default_factory=list)
    failed: list[FailedConflict] = Field(default_factory=list)
    deal_status: DealStatus = DealStatus.PENDING
    suggestions: list[str] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        """False when some matches could not be persisted."""
        return not self.failed


# ── Listing ─────────────────────────────────────────────────────────────────


class ConflictFilter(BaseModel):
    """Filters and pagination for the conflict listing."""

    resolution_status: ResolutionStatus | None = None
    conflict_type: ConflictType | None = None
    assigned_to_staff: str | None = None
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class DealSummary(BaseModel):
    """Display fields for one side of a conflict."""

    deal_id: str
    reseller_id: str
    reseller_name: str | None = None
    end_customer_name: str
    territory: str | None = None
    total_value: Decimal
    status: DealStatus


class ConflictListItem(BaseModel):
    """A conflict joined with both deals' summaries."""

    conflict: ConflictRead
    deal: DealSummary | None = None
    competing_deal: DealSummary | None = None


class ConflictPage(BaseModel):
    """One page of the conflict listing."""

    items: list[ConflictListItem] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


# ── Resolution ──────────────────────────────────────────────────────────────


class ResolutionResult(BaseModel):
    """Outcome of a resolve call.

    ``deal`` is the winning deal (None on dismissal). ``deals`` holds both
    deals of the pair as they stand after disputes were re-evaluated.
    ``dismissed_conflicts`` are the losing deal's conflicts with other deals,
    dismissed when the losing deal was rejected.
    """

    conflict: ConflictRead
    deal: DealRead | None = None
    deals: list[DealRead] = Field(default_factory=list)
    related_conflicts: list[ConflictRead] = Field(default_factory=list)
    dismissed_conflicts: list[ConflictRead] = Field(default_factory=list)


class DealDecision(BaseModel):
    """Outcome of approving or rejecting a deal."""

    deal: DealRead
    dismissed_conflicts: list[ConflictRead] = Field(default_factory=list)
