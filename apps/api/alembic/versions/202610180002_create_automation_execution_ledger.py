"""create automation execution ledger

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "automation_execution",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("pipeline_rule_id", sa.Integer(), nullable=True),
        sa.Column("communication_rule_id", sa.Integer(), nullable=True),
        sa.Column("invoice_rule_id", sa.Integer(), nullable=True),
        sa.Column("service_rule_id", sa.Integer(), nullable=True),
        sa.Column("tag_rule_id", sa.Integer(), nullable=True),
        sa.Column("lead_id", sa.Integer(), nullable=True),
        sa.Column("invoice_id", sa.Integer(), nullable=True),
        sa.Column("estimate_id", sa.Integer(), nullable=True),
        sa.Column("column_id", sa.Integer(), nullable=True),
        sa.Column("execute_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("job_id", sa.String(length=128), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        sa.Column("cascade_depth", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reschedule_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claim_token", sa.String(length=64), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(CASE WHEN pipeline_rule_id IS NOT NULL THEN 1 ELSE 0 END"
            " + CASE WHEN communication_rule_id IS NOT NULL THEN 1 ELSE 0 END"
            " + CASE WHEN invoice_rule_id IS NOT NULL THEN 1 ELSE 0 END"
            " + CASE WHEN service_rule_id IS NOT NULL THEN 1 ELSE 0 END"
            " + CASE WHEN tag_rule_id IS NOT NULL THEN 1 ELSE 0 END) = 1",
            name="ck_automation_execution_one_rule",
        ),
        sa.CheckConstraint(
            "(CASE WHEN lead_id IS NOT NULL THEN 1 ELSE 0 END"
            " + CASE WHEN invoice_id IS NOT NULL THEN 1 ELSE 0 END"
            " + CASE WHEN estimate_id IS NOT NULL THEN 1 ELSE 0 END) = 1",
            name="ck_automation_execution_one_entity",
        ),
        sa.CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'FAILED', 'CANCELLED')",
            name="ck_automation_execution_status",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_execution_status_execute_at",
        "automation_execution",
        ["status", "execute_at"],
        unique=False,
    )
    op.create_index(
        "ix_automation_execution_status_updated_at",
        "automation_execution",
        ["status", "updated_at"],
        unique=False,
    )
    op.create_index("ix_automation_execution_lead", "automation_execution", ["lead_id"], unique=False)
    op.create_index("ix_automation_execution_invoice", "automation_execution", ["invoice_id"], unique=False)
    op.create_index("ix_automation_execution_estimate", "automation_execution", ["estimate_id"], unique=False)
    op.create_index("ix_automation_execution_job_id", "automation_execution", ["job_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_automation_execution_job_id", table_name="automation_execution")
    op.drop_index("ix_automation_execution_estimate", table_name="automation_execution")
    op.drop_index("ix_automation_execution_invoice", table_name="automation_execution")
    op.drop_index("ix_automation_execution_lead", table_name="automation_execution")
    op.drop_index("ix_automation_execution_status_updated_at", table_name="automation_execution")
    op.drop_index("ix_automation_execution_status_execute_at", table_name="automation_execution")
    op.drop_table("automation_execution")
