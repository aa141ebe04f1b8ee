"""create loans table

Revision ID: 20261018_loans
Revises:
Create Date: 2026-10-18
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261018_loans"
down_revision = None
branch_labels = None
depends_on = None

# Stages whose loans count as open: application_submitted through loan_active.
OPEN_STAGE_PREDICATE = (
    "current_stage IN ('agent_approved', 'agreement_generated', 'application_submitted', "
    "'funds_disbursed', 'loan_active', 'regional_approved')"
)


def upgrade() -> None:
    op.create_table(
        "loans",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("loan_application_id", sa.String(16), nullable=False),
        sa.Column("client_id", sa.String(64), nullable=False),
        sa.Column("assigned_agent_id", sa.String(64), nullable=False),
        sa.Column("assigned_regional_manager_id", sa.String(64), nullable=False),
        sa.Column("region_id", sa.String(64), nullable=True),
        sa.Column("primary_guarantor_id", sa.String(64), nullable=True),
        sa.Column("secondary_guarantor_id", sa.String(64), nullable=True),
        sa.Column("current_stage", sa.String(32), nullable=False),
        sa.Column("principal", sa.Numeric(18, 2), nullable=False),
        sa.Column("document", postgresql.JSONB(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint("version >= 1", name="ck_loans_version_positive"),
        sa.CheckConstraint("principal > 0", name="ck_loans_principal_positive"),
        sa.UniqueConstraint("loan_application_id", name="uq_loans_loan_application_id"),
    )
    op.create_index("ix_loans_client_id", "loans", ["client_id"])
    op.create_index("ix_loans_assigned_agent_id", "loans", ["assigned_agent_id"])
    op.create_index("ix_loans_assigned_regional_manager_id", "loans", ["assigned_regional_manager_id"])
    op.create_index("ix_loans_region_id", "loans", ["region_id"])
    op.create_index("ix_loans_primary_guarantor_id", "loans", ["primary_guarantor_id"])
    op.create_index("ix_loans_secondary_guarantor_id", "loans", ["secondary_guarantor_id"])
    op.create_index("ix_loans_current_stage", "loans", ["current_stage"])
    op.create_index(
        "uq_loans_client_open",
        "loans",
        ["client_id"],
        unique=True,
        postgresql_where=sa.text(OPEN_STAGE_PREDICATE),
    )


def downgrade() -> None:
    op.drop_index("uq_loans_client_open", table_name="loans")
    op.drop_index("ix_loans_current_stage", table_name="loans")
    op.drop_index("ix_loans_secondary_guarantor_id", table_name="loans")
    op.drop_index("ix_loans_primary_guarantor_id", table_name="loans")
    op.drop_index("ix_loans_region_id", table_name="loans")
    op.drop_index("ix_loans_assigned_regional_manager_id", table_name="loans")
    op.drop_index("ix_loans_assigned_agent_id", table_name="loans")
    op.drop_table("loans")
