"""Create deal registration and conflict tables.

Revision ID: 001_deal_registration
Revises:
Create Date: 2026-10-19

Creates six tables:
- resellers: Channel partners submitting deals
- end_customers: Companies deals are registered against, with normalized keys
- deals: Registered opportunities and their lifecycle status
- deal_products: Line items making up a deal's value
- deal_conflicts: Detected collisions between two deals (never deleted)
- assignment_history: Audit trail of reseller assignments

deal_conflicts carries a partial unique index so at most one pending
conflict exists per unordered deal pair and conflict type. No foreign key
constraints (application-level referential integrity via repository).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_deal_registration"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True))
    return columns


def _id() -> sa.Column:
    return sa.Column(
        "id",
        UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def upgrade() -> None:
    # ── resellers ───────────────────────────────────────────────────────

    op.create_table(
        "resellers",
        _id(),
        sa.Column("name", sa.String(300), nullable=False),
        sa.Column("contact_email", sa.String(255), nullable=True),
        *_timestamps(updated=False),
    )

    # ── end_customers ───────────────────────────────────────────────────

    op.create_table(
        "end_customers",
        _id(),
        sa.Column("company_name", sa.String(300), nullable=False),
        sa.Column("contact_name", sa.String(200), nullable=True),
        sa.Column("contact_email", sa.String(255), nullable=True),
        sa.Column("territory", sa.String(100), nullable=True),
        sa.Column("company_key", sa.String(300), nullable=False),
        sa.Column(
            "territory_key",
            sa.String(100),
            server_default=sa.text("''"),
            nullable=False,
        ),
        *_timestamps(),
    )
    op.create_index(
        "idx_end_customers_key", "end_customers", ["company_key", "territory_key"]
    )
    op.create_index(
        "idx_end_customers_territory_key", "end_customers", ["territory_key"]
    )

    # ── deals ───────────────────────────────────────────────────────────

    op.create_table(
        "deals",
        _id(),
        sa.Column("reseller_id", UUID(as_uuid=True), nullable=False),
        sa.Column("end_customer_id", UUID(as_uuid=True), nullable=False),
        sa.Column("assigned_reseller_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "status",
            sa.String(20),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column("total_value", sa.Numeric(12, 2), nullable=False),
        sa.Column(
            "submission_date",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("assignment_date", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("total_value > 0", name="ck_deals_positive_value"),
    )
    op.create_index("idx_deals_status", "deals", ["status"])
    op.create_index("idx_deals_end_customer", "deals", ["end_customer_id"])

    # ── deal_products ───────────────────────────────────────────────────

    op.create_table(
        "deal_products",
        _id(),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("product_id", sa.String(100), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        *_timestamps(updated=False),
        sa.CheckConstraint("quantity > 0", name="ck_deal_products_positive_quantity"),
        sa.CheckConstraint("price > 0", name="ck_deal_products_positive_price"),
    )
    op.create_index("idx_deal_products_deal", "deal_products", ["deal_id"])

    # ── deal_conflicts ──────────────────────────────────────────────────

    op.create_table(
        "deal_conflicts",
        _id(),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("competing_deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("pair_low", sa.String(36), nullable=False),
        sa.Column("pair_high", sa.String(36), nullable=False),
        sa.Column("conflict_type", sa.String(30), nullable=False),
        sa.Column("severity", sa.String(10), nullable=False),
        sa.Column("reason", sa.Text(), server_default=sa.text("''"), nullable=False),
        sa.Column(
            "resolution_status",
            sa.String(20),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column("assigned_to_staff", UUID(as_uuid=True), nullable=True),
        *_timestamps(updated=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "deal_id <> competing_deal_id", name="ck_deal_conflicts_distinct_deals"
        ),
        sa.CheckConstraint(
            "conflict_type IN ('duplicate_end_user', 'territory_overlap', 'timing_conflict')",
            name="ck_deal_conflicts_valid_type",
        ),
        sa.CheckConstraint(
            "resolution_status IN ('pending', 'resolved', 'dismissed')",
            name="ck_deal_conflicts_valid_resolution",
        ),
    )
    op.create_index(
        "uq_deal_conflicts_open_pair_type",
        "deal_conflicts",
        ["pair_low", "pair_high", "conflict_type"],
        unique=True,
        postgresql_where=sa.text("resolution_status = 'pending'"),
    )
    op.create_index("idx_deal_conflicts_deal_id", "deal_conflicts", ["deal_id"])
    op.create_index(
        "idx_deal_conflicts_competing_deal_id", "deal_conflicts", ["competing_deal_id"]
    )
    op.create_index(
        "idx_deal_conflicts_resolution_status", "deal_conflicts", ["resolution_status"]
    )
    op.create_index(
        "idx_deal_conflicts_conflict_type", "deal_conflicts", ["conflict_type"]
    )

    # ── assignment_history ──────────────────────────────────────────────

    op.create_table(
        "assignment_history",
        _id(),
        sa.Column("deal_id", UUID(as_uuid=True), nullable=False),
        sa.Column("old_reseller_id", UUID(as_uuid=True), nullable=True),
        sa.Column("new_reseller_id", UUID(as_uuid=True), nullable=True),
        sa.Column("assigned_by", UUID(as_uuid=True), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("idx_assignment_history_deal", "assignment_history", ["deal_id"])


def downgrade() -> None:
    op.drop_table("assignment_history")
    op.drop_table("deal_conflicts")
    op.drop_table("deal_products")
    op.drop_table("deals")
    op.drop_table("end_customers")
    op.drop_table("resellers")
