"""Deal registration persistence models.

Six SQLAlchemy models:
- ResellerModel: Channel partners submitting deals
- EndCustomerModel: Companies deals are registered against (with normalized dedup key)
- DealModel: Registered opportunities and their lifecycle status
- DealProductModel: Line items making up a deal's total value
- DealConflictModel: Detected collisions between two deals (audit trail, never deleted)
- AssignmentHistoryModel: Audit trail of reseller assignments

Column types are dialect-neutral (Uuid, Numeric) so the same
metadata runs on PostgreSQL in production and SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.dealreg.core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResellerModel(Base):
    """Channel partner that submits deals and can be assigned deals."""

    __tablename__ = "resellers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class EndCustomerModel(Base):
    """Company a deal is registered against.

    company_key and territory_key hold the normalized dedup key so candidate
    queries can filter on them without re-normalizing every row.
    """

    __tablename__ = "end_customers"
    __table_args__ = (
        Index("idx_end_customers_key", "company_key", "territory_key"),
        Index("idx_end_customers_territory_key", "territory_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    company_name: Mapped[str] = mapped_column(String(300), nullable=False)
    contact_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    territory: Mapped[str | None] = mapped_column(String(100), nullable=True)
    company_key: Mapped[str] = mapped_column(String(300), nullable=False)
    territory_key: Mapped[str] = mapped_column(
        String(100), nullable=False, default="", server_default=text("''")
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class DealModel(Base):
    """Registered sales opportunity.

    References to resellers and end customers are application-level (no FK
    constraints), consistent with the repository owning referential checks.
    """

    __tablename__ = "deals"
    __table_args__ = (
        CheckConstraint("total_value > 0", name="positive_value"),
        Index("idx_deals_status", "status"),
        Index("idx_deals_end_customer", "end_customer_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reseller_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    end_customer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    assigned_reseller_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", server_default=text("'pending'")
    )
    total_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    submission_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    assignment_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class DealProductModel(Base):
    """Line item (product, quantity, unit price) on a deal."""

    __tablename__ = "deal_products"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="positive_quantity"),
        CheckConstraint("price > 0", name="positive_price"),
        Index("idx_deal_products_deal", "deal_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    product_id: Mapped[str] = mapped_column(String(100), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )


class DealConflictModel(Base):
    """Detected collision between two deals.

    deal_id is the newly submitted side. pair_low/pair_high hold the two deal
    ids in lexical order; the partial unique index on them guarantees at most
    one pending row per unordered pair and conflict type.
    """

    __tablename__ = "deal_conflicts"
    __table_args__ = (
        CheckConstraint("deal_id <> competing_deal_id", name="distinct_deals"),
        Index(
            "uq_deal_conflicts_open_pair_type",
            "pair_low",
            "pair_high",
            "conflict_type",
            unique=True,
            postgresql_where=text("resolution_status = 'pending'"),
            sqlite_where=text("resolution_status = 'pending'"),
        ),
        Index("idx_deal_conflicts_deal_id", "deal_id"),
        Index("idx_deal_conflicts_competing_deal_id", "competing_deal_id"),
        Index("idx_deal_conflicts_resolution_status", "resolution_status"),
        Index("idx_deal_conflicts_conflict_type", "conflict_type"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    competing_deal_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    pair_low: Mapped[str] = mapped_column(String(36), nullable=False)
    pair_high: Mapped[str] = mapped_column(String(36), nullable=False)
    conflict_type: Mapped[str] = mapped_column(String(30), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    resolution_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="pending", server_default=text("'pending'")
    )
    assigned_to_staff: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class AssignmentHistoryModel(Base):
    """Audit row written whenever a deal's assigned reseller changes."""

    __tablename__ = "assignment_history"
    __table_args__ = (Index("idx_assignment_history_deal", "deal_id"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    old_reseller_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    new_reseller_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    assigned_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
