from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from autoflow.automations.enums import (
    INSTANT_DELAY,
    Channel,
    EntityKind,
    EventKind,
    PipelineCondition,
    RuleDomain,
    TagCondition,
)

Delay = int | Literal["instant"]
DocumentType = Literal["Invoice", "Estimate"]
PipelineType = Literal["SALES", "SHOP"]
TagRuleType = Literal["one_time", "recurring"]


def _normalize_delay(value: Any) -> Any:
    if value is None:
        return INSTANT_DELAY
    if isinstance(value, str):
        cleaned = value.strip().lower()
        if cleaned in {"instant", "immediate", ""}:
            return INSTANT_DELAY
        if cleaned.isdigit():
            return int(cleaned)
    if isinstance(value, int) and value < 0:
        raise ValueError("delay must not be negative")
    return value


class _RuleBase(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    id: int
    company_id: int
    name: str | None = None
    is_paused: bool = False
    delay: Delay = Field(default=INSTANT_DELAY, validation_alias=AliasChoices("delay", "delay_seconds"))

    @field_validator("delay", mode="before")
    @classmethod
    def _coerce_delay(cls, value: Any) -> Any:
        return _normalize_delay(value)

    @property
    def delay_seconds(self) -> int:
        return 0 if self.delay == INSTANT_DELAY else int(self.delay)


class _MessagePayload(BaseModel):
    channel: Channel = Channel.EMAIL
    subject: str | None = None
    email_body: str | None = None
    sms_body: str | None = None
    attachment_urls: list[str] = Field(default_factory=list)


class PipelineRule(_RuleBase):
    domain: Literal["pipeline"] = "pipeline"
    condition_type: PipelineCondition = PipelineCondition.TIME_DELAY
    trigger_column_ids: list[int] = Field(default_factory=list)
    target_column_id: int | None = None


class CommunicationRule(_RuleBase, _MessagePayload):
    domain: Literal["communication"] = "communication"
    trigger_column_ids: list[int] = Field(default_factory=list)
    target_column_id: int | None = None
    respect_weekdays: bool = False
    respect_office_hours: bool = False


class InvoiceRule(_RuleBase, _MessagePayload):
    domain: Literal["invoice"] = "invoice"
    document_type: DocumentType = "Invoice"
    status_id: int


class ServiceRule(_RuleBase, _MessagePayload):
    domain: Literal["service"] = "service"
    condition_column_id: int
    service_names: list[str] = Field(default_factory=list)


class TagRule(_RuleBase, _MessagePayload):
    domain: Literal["tag"] = "tag"
    pipeline_type: PipelineType = "SALES"
    condition_type: TagCondition = TagCondition.COMMUNICATION
    rule_type: TagRuleType = "recurring"
    tag_ids: list[int] = Field(default_factory=list)
    trigger_column_ids: list[int] = Field(default_factory=list)
    target_column_id: int | None = None
    respect_weekdays: bool = False
    respect_office_hours: bool = False


AutomationRule = Annotated[
    Union[PipelineRule, CommunicationRule, InvoiceRule, ServiceRule, TagRule],
    Field(discriminator="domain"),
]
MessageRule = CommunicationRule | InvoiceRule | ServiceRule | TagRule

rule_adapter: TypeAdapter[AutomationRule] = TypeAdapter(AutomationRule)
rule_list_adapter: TypeAdapter[list[AutomationRule]] = TypeAdapter(list[AutomationRule])


def restriction_flags(rule: AutomationRule) -> tuple[bool, bool]:
    if isinstance(rule, (CommunicationRule, TagRule)):
        return rule.respect_weekdays, rule.respect_office_hours
    if isinstance(rule, (PipelineRule, InvoiceRule, ServiceRule)):
        return False, False
    raise TypeError(f"unsupported rule type {type(rule).__name__}")


def fires_on_event(rule: AutomationRule) -> bool:
    """Pipeline rules bound to a business event move the lead as soon as the event arrives."""
    return isinstance(rule, PipelineRule) and rule.condition_type != PipelineCondition.TIME_DELAY


def target_column_of(rule: AutomationRule) -> int | None:
    if isinstance(rule, (PipelineRule, CommunicationRule)):
        return rule.target_column_id
    if isinstance(rule, TagRule):
        return rule.target_column_id if rule.condition_type == TagCondition.PIPELINE else None
    if isinstance(rule, (InvoiceRule, ServiceRule)):
        return None
    raise TypeError(f"unsupported rule type {type(rule).__name__}")


def checks_column_drift(rule: AutomationRule) -> bool:
    """Whether a fire must be cancelled when the entity left the captured column."""
    if isinstance(rule, ServiceRule):
        return True
    if isinstance(rule, InvoiceRule):
        return False
    if isinstance(rule, (PipelineRule, CommunicationRule, TagRule)):
        return target_column_of(rule) is not None
    raise TypeError(f"unsupported rule type {type(rule).__name__}")


class EntityRef(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    kind: EntityKind
    id: int

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


class EntitySnapshot(BaseModel):
    ref: EntityRef
    company_id: int
    column_id: int | None = None
    column_changed_at: datetime | None = None
    document_type: DocumentType | None = None
    tag_ids: list[int] = Field(default_factory=list)
    service_names: list[str] = Field(default_factory=list)
    is_triggered: bool = False
    client_name: str | None = None
    client_email: str | None = None
    client_mobile: str | None = None


class CalendarSettings(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    week_start: str = "Monday"
    day_start: str = "09:00"
    day_end: str = "17:00"
    weekend1: str | None = "Saturday"
    weekend2: str | None = "Sunday"
    timezone: str = "UTC"


class TriggerContext(BaseModel):
    """What the rule catalog matches rule predicates against."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    event_kind: EventKind
    entity_kind: EntityKind
    column_id: int | None = None
    document_type: DocumentType | None = None
    tag_ids: tuple[int, ...] = ()
    service_names: tuple[str, ...] = ()


class ScheduledExecution(BaseModel):
    rule_id: int
    domain: RuleDomain
    job_id: str
    ledger_record_id: int
    execute_at: datetime


class TriggerEventRequest(BaseModel):
    company_id: int
    entity: EntityRef
    column_id: int | None = None
    event_kind: EventKind = EventKind.COLUMN_CHANGED


class TriggerEventResponse(BaseModel):
    matched: bool
    scheduled: list[ScheduledExecution] = Field(default_factory=list)


class CancelResponse(BaseModel):
    cancelled_count: int


class RuleChangeNotice(BaseModel):
    rule_id: int | None = None
    company_id: int
    previous_company_id: int | None = None
    change: Literal["created", "updated", "deleted", "paused", "resumed"] = "updated"


class RuleChangeResponse(BaseModel):
    invalidated_company_ids: list[int]
    cancelled_count: int = 0


class SweepRequest(BaseModel):
    older_than_days: int | None = Field(default=None, ge=0)


class SweepResponse(BaseModel):
    deleted_count: int
    cutoff: datetime


class ExecutionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    company_id: int
    rule_domain: RuleDomain
    rule_id: int
    entity_kind: EntityKind
    entity_id: int
    column_id: int | None
    execute_at: datetime
    job_id: str | None
    status: str
    cascade_depth: int
    reschedule_count: int
    last_error: str | None
    created_at: datetime
    updated_at: datetime
