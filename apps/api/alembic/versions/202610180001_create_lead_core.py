"""create lead ingestion core tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "lead",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("branch_ref", sa.String(length=64), nullable=True),
        sa.Column("provider_id", sa.String(length=128), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("phone", sa.String(length=32), nullable=True),
        sa.Column("street", sa.Text(), nullable=True),
        sa.Column("zip_code", sa.String(length=16), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("exam_ref", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("sales_stage", sa.String(length=64), nullable=True),
        sa.Column("score", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("source", sa.String(length=128), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("call_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("consent_date", sa.Date(), nullable=True),
        sa.Column("response_date", sa.Date(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_lead_tenant_email", "lead", ["tenant_id", "email"], unique=False)
    op.create_index("ix_lead_tenant_phone", "lead", ["tenant_id", "phone"], unique=False)
    op.create_index("ix_lead_tenant_source", "lead", ["tenant_id", "source"], unique=False)

    op.create_table(
        "lead_behavioral_event",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("event_metadata", sa.JSON(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["lead.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_lead_behavioral_event_lead_occurred",
        "lead_behavioral_event",
        ["lead_id", "occurred_at"],
        unique=False,
    )

    op.create_table(
        "lead_touchpoint",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("lead_id", sa.Uuid(), nullable=False),
        sa.Column("touchpoint_type", sa.String(length=64), nullable=False),
        sa.Column("source", sa.String(length=128), nullable=True),
        sa.Column("medium", sa.String(length=128), nullable=True),
        sa.Column("campaign", sa.String(length=255), nullable=True),
        sa.Column("content", sa.Text(), nullable=True),
        sa.Column("term", sa.Text(), nullable=True),
        sa.Column("referrer", sa.Text(), nullable=True),
        sa.Column("page_url", sa.Text(), nullable=True),
        sa.Column("touchpoint_metadata", sa.JSON(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["lead_id"], ["lead.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_lead_touchpoint_lead_occurred",
        "lead_touchpoint",
        ["lead_id", "occurred_at", "sequence"],
        unique=False,
    )

    op.create_table(
        "lead_ingestion_credential",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("provider_id", sa.String(length=128), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("api_key_hash", sa.String(length=64), nullable=False),
        sa.Column("allowed_ips", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("api_key_hash", name="uq_lead_ingestion_credential_key"),
    )

    op.create_table(
        "lead_branch_mapping",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tenant_id", sa.String(length=128), nullable=False),
        sa.Column("external_branch_id", sa.String(length=64), nullable=False),
        sa.Column("internal_tenant_id", sa.String(length=128), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "external_branch_id", name="uq_lead_branch_mapping_external"),
    )


def downgrade() -> None:
    op.drop_table("lead_branch_mapping")
    op.drop_table("lead_ingestion_credential")
    op.drop_index("ix_lead_touchpoint_lead_occurred", table_name="lead_touchpoint")
    op.drop_table("lead_touchpoint")
    op.drop_index("ix_lead_behavioral_event_lead_occurred", table_name="lead_behavioral_event")
    op.drop_table("lead_behavioral_event")
    op.drop_index("ix_lead_tenant_source", table_name="lead")
    op.drop_index("ix_lead_tenant_phone", table_name="lead")
    op.drop_index("ix_lead_tenant_email", table_name="lead")
    op.drop_table("lead")
