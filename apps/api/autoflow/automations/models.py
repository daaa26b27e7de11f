from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from autoflow.automations.enums import EntityKind, ExecutionStatus, RuleDomain
from autoflow.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _MessagePayloadMixin:
    channel: Mapped[str] = mapped_column(String(16), nullable=False, default="EMAIL", server_default="EMAIL")
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    email_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    sms_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    attachment_urls: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)


class _RuleAuditMixin:
    is_paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class PipelineAutomationRule(_RuleAuditMixin, Base):
    __tablename__ = "automation_pipeline_rule"

    domain = RuleDomain.PIPELINE.value

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    condition_type: Mapped[str] = mapped_column(String(32), nullable=False, default="TIME_DELAY")
    trigger_column_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    target_column_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delay_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_automation_pipeline_rule_company_paused", "company_id", "is_paused"),
    )


class CommunicationAutomationRule(_MessagePayloadMixin, _RuleAuditMixin, Base):
    __tablename__ = "automation_communication_rule"

    domain = RuleDomain.COMMUNICATION.value

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    trigger_column_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    target_column_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delay_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    respect_weekdays: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    respect_office_hours: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")

    __table_args__ = (
        Index("ix_automation_communication_rule_company_paused", "company_id", "is_paused"),
    )


class InvoiceAutomationRule(_MessagePayloadMixin, _RuleAuditMixin, Base):
    __tablename__ = "automation_invoice_rule"

    domain = RuleDomain.INVOICE.value

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    document_type: Mapped[str] = mapped_column(String(16), nullable=False, default="Invoice")
    status_id: Mapped[int] = mapped_column(Integer, nullable=False)
    delay_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_automation_invoice_rule_company_paused", "company_id", "is_paused"),
    )


class ServiceAutomationRule(_MessagePayloadMixin, _RuleAuditMixin, Base):
    __tablename__ = "automation_service_rule"

    domain = RuleDomain.SERVICE.value

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    condition_column_id: Mapped[int] = mapped_column(Integer, nullable=False)
    service_names: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    delay_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_automation_service_rule_company_paused", "company_id", "is_paused"),
    )


class TagAutomationRule(_MessagePayloadMixin, _RuleAuditMixin, Base):
    __tablename__ = "automation_tag_rule"

    domain = RuleDomain.TAG.value

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pipeline_type: Mapped[str] = mapped_column(String(16), nullable=False, default="SALES")
    condition_type: Mapped[str] = mapped_column(String(32), nullable=False, default="communication")
    rule_type: Mapped[str] = mapped_column(String(16), nullable=False, default="recurring")
    tag_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    trigger_column_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    target_column_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delay_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    respect_weekdays: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    respect_office_hours: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")

    __table_args__ = (
        Index("ix_automation_tag_rule_company_paused", "company_id", "is_paused"),
    )


RULE_MODELS: dict[RuleDomain, type[Base]] = {
    RuleDomain.PIPELINE: PipelineAutomationRule,
    RuleDomain.COMMUNICATION: CommunicationAutomationRule,
    RuleDomain.INVOICE: InvoiceAutomationRule,
    RuleDomain.SERVICE: ServiceAutomationRule,
    RuleDomain.TAG: TagAutomationRule,
}


class _ClientContactMixin:
    client_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    client_mobile: Mapped[str | None] = mapped_column(String(32), nullable=True)


class AutomationLead(_ClientContactMixin, Base):
    __tablename__ = "automation_lead"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    column_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    column_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tag_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    is_triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class AutomationDocument(_ClientContactMixin, Base):
    """Invoices and estimates; `column_id` is the document's status column."""

    __tablename__ = "automation_document"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    document_type: Mapped[str] = mapped_column(String(16), nullable=False, default="Invoice")
    column_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    column_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    service_names: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    tag_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    is_triggered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )


class CompanyCalendarSettings(Base):
    __tablename__ = "company_calendar_settings"

    company_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    week_start: Mapped[str] = mapped_column(String(16), nullable=False, default="Monday")
    day_start: Mapped[str] = mapped_column(String(8), nullable=False, default="09:00")
    day_end: Mapped[str] = mapped_column(String(8), nullable=False, default="17:00")
    weekend1: Mapped[str | None] = mapped_column(String(16), nullable=True, default="Saturday")
    weekend2: Mapped[str | None] = mapped_column(String(16), nullable=True, default="Sunday")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")


_EXACTLY_ONE_RULE = (
    "(CASE WHEN pipeline_rule_id IS NOT NULL THEN 1 ELSE 0 END"
    " + CASE WHEN communication_rule_id IS NOT NULL THEN 1 ELSE 0 END"
    " + CASE WHEN invoice_rule_id IS NOT NULL THEN 1 ELSE 0 END"
    " + CASE WHEN service_rule_id IS NOT NULL THEN 1 ELSE 0 END"
    " + CASE WHEN tag_rule_id IS NOT NULL THEN 1 ELSE 0 END) = 1"
)
_EXACTLY_ONE_ENTITY = (
    "(CASE WHEN lead_id IS NOT NULL THEN 1 ELSE 0 END"
    " + CASE WHEN invoice_id IS NOT NULL THEN 1 ELSE 0 END"
    " + CASE WHEN estimate_id IS NOT NULL THEN 1 ELSE 0 END) = 1"
)

_RULE_COLUMNS: dict[RuleDomain, str] = {
    RuleDomain.PIPELINE: "pipeline_rule_id",
    RuleDomain.COMMUNICATION: "communication_rule_id",
    RuleDomain.INVOICE: "invoice_rule_id",
    RuleDomain.SERVICE: "service_rule_id",
    RuleDomain.TAG: "tag_rule_id",
}
_ENTITY_COLUMNS: dict[EntityKind, str] = {
    EntityKind.LEAD: "lead_id",
    EntityKind.INVOICE: "invoice_id",
    EntityKind.ESTIMATE: "estimate_id",
}


class AutomationExecution(Base):
    __tablename__ = "automation_execution"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # No foreign keys: a deleted rule must leave its ledger history intact.
    pipeline_rule_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    communication_rule_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    invoice_rule_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    service_rule_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tag_rule_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    lead_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    invoice_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    estimate_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    column_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    execute_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    job_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=ExecutionStatus.PENDING.value,
        server_default=ExecutionStatus.PENDING.value,
    )
    cascade_depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    reschedule_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint(_EXACTLY_ONE_RULE, name="ck_automation_execution_one_rule"),
        CheckConstraint(_EXACTLY_ONE_ENTITY, name="ck_automation_execution_one_entity"),
        CheckConstraint(
            "status IN ('PENDING', 'COMPLETED', 'FAILED', 'CANCELLED')",
            name="ck_automation_execution_status",
        ),
        Index("ix_automation_execution_status_execute_at", "status", "execute_at"),
        Index("ix_automation_execution_status_updated_at", "status", "updated_at"),
        Index("ix_automation_execution_lead", "lead_id"),
        Index("ix_automation_execution_invoice", "invoice_id"),
        Index("ix_automation_execution_estimate", "estimate_id"),
        Index("ix_automation_execution_job_id", "job_id"),
    )

    @property
    def rule_domain(self) -> RuleDomain:
        for domain, column in _RULE_COLUMNS.items():
            if getattr(self, column) is not None:
                return domain
        raise ValueError(f"ledger record {self.id} carries no rule reference")

    @property
    def rule_id(self) -> int:
        return int(getattr(self, _RULE_COLUMNS[self.rule_domain]))

    @property
    def entity_kind(self) -> EntityKind:
        for kind, column in _ENTITY_COLUMNS.items():
            if getattr(self, column) is not None:
                return kind
        raise ValueError(f"ledger record {self.id} carries no entity reference")

    @property
    def entity_id(self) -> int:
        return int(getattr(self, _ENTITY_COLUMNS[self.entity_kind]))

    def assign_rule(self, domain: RuleDomain, rule_id: int) -> None:
        for column in _RULE_COLUMNS.values():
            setattr(self, column, None)
        setattr(self, _RULE_COLUMNS[domain], rule_id)

    def assign_entity(self, kind: EntityKind, entity_id: int) -> None:
        for column in _ENTITY_COLUMNS.values():
            setattr(self, column, None)
        setattr(self, _ENTITY_COLUMNS[kind], entity_id)


def rule_column_name(domain: RuleDomain) -> str:
    return _RULE_COLUMNS[domain]


def entity_column_name(kind: EntityKind) -> str:
    return _ENTITY_COLUMNS[kind]
