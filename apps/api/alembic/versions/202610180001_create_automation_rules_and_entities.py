"""create automation rules, entities and calendar settings

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

_RULE_TABLES = (
    "automation_pipeline_rule",
    "automation_communication_rule",
    "automation_invoice_rule",
    "automation_service_rule",
    "automation_tag_rule",
)


def _rule_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("delay_seconds", sa.Integer(), nullable=True),
        sa.Column("is_paused", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _message_columns() -> list[sa.Column]:
    return [
        sa.Column("channel", sa.String(length=16), nullable=False, server_default="EMAIL"),
        sa.Column("subject", sa.Text(), nullable=True),
        sa.Column("email_body", sa.Text(), nullable=True),
        sa.Column("sms_body", sa.Text(), nullable=True),
        sa.Column("attachment_urls", sa.JSON(), nullable=False),
    ]


def _restriction_columns() -> list[sa.Column]:
    return [
        sa.Column("respect_weekdays", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("respect_office_hours", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    ]


def upgrade() -> None:
    op.create_table(
        "automation_pipeline_rule",
        *_rule_columns(),
        sa.Column("condition_type", sa.String(length=32), nullable=False),
        sa.Column("trigger_column_ids", sa.JSON(), nullable=False),
        sa.Column("target_column_id", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "automation_communication_rule",
        *_rule_columns(),
        *_message_columns(),
        *_restriction_columns(),
        sa.Column("trigger_column_ids", sa.JSON(), nullable=False),
        sa.Column("target_column_id", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "automation_invoice_rule",
        *_rule_columns(),
        *_message_columns(),
        sa.Column("document_type", sa.String(length=16), nullable=False),
        sa.Column("status_id", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "automation_service_rule",
        *_rule_columns(),
        *_message_columns(),
        sa.Column("condition_column_id", sa.Integer(), nullable=False),
        sa.Column("service_names", sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "automation_tag_rule",
        *_rule_columns(),
        *_message_columns(),
        *_restriction_columns(),
        sa.Column("pipeline_type", sa.String(length=16), nullable=False),
        sa.Column("condition_type", sa.String(length=32), nullable=False),
        sa.Column("rule_type", sa.String(length=16), nullable=False),
        sa.Column("tag_ids", sa.JSON(), nullable=False),
        sa.Column("trigger_column_ids", sa.JSON(), nullable=False),
        sa.Column("target_column_id", sa.Integer(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    for table_name in _RULE_TABLES:
        op.create_index(f"ix_{table_name}_company_paused", table_name, ["company_id", "is_paused"], unique=False)

    op.create_table(
        "automation_lead",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("column_id", sa.Integer(), nullable=True),
        sa.Column("column_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tag_ids", sa.JSON(), nullable=False),
        sa.Column("is_triggered", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("client_name", sa.String(length=255), nullable=True),
        sa.Column("client_email", sa.String(length=255), nullable=True),
        sa.Column("client_mobile", sa.String(length=32), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_automation_lead_company_id"), "automation_lead", ["company_id"], unique=False)

    op.create_table(
        "automation_document",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("document_type", sa.String(length=16), nullable=False),
        sa.Column("column_id", sa.Integer(), nullable=True),
        sa.Column("column_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("service_names", sa.JSON(), nullable=False),
        sa.Column("tag_ids", sa.JSON(), nullable=False),
        sa.Column("is_triggered", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("client_name", sa.String(length=255), nullable=True),
        sa.Column("client_email", sa.String(length=255), nullable=True),
        sa.Column("client_mobile", sa.String(length=32), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_automation_document_company_id"), "automation_document", ["company_id"], unique=False)

    op.create_table(
        "company_calendar_settings",
        sa.Column("company_id", sa.Integer(), nullable=False),
        sa.Column("week_start", sa.String(length=16), nullable=False),
        sa.Column("day_start", sa.String(length=8), nullable=False),
        sa.Column("day_end", sa.String(length=8), nullable=False),
        sa.Column("weekend1", sa.String(length=16), nullable=True),
        sa.Column("weekend2", sa.String(length=16), nullable=True),
        sa.Column("timezone", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("company_id"),
    )


def downgrade() -> None:
    op.drop_table("company_calendar_settings")
    op.drop_index(op.f("ix_automation_document_company_id"), table_name="automation_document")
    op.drop_table("automation_document")
    op.drop_index(op.f("ix_automation_lead_company_id"), table_name="automation_lead")
    op.drop_table("automation_lead")
    for table_name in reversed(_RULE_TABLES):
        op.drop_index(f"ix_{table_name}_company_paused", table_name=table_name)
        op.drop_table(table_name)
