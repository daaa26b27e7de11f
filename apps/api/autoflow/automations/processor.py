from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from autoflow.automations.calendar import adjust_to_next_valid_instant, is_valid_instant
from autoflow.automations.cascade import CascadeDispatcher
from autoflow.automations.catalog import RuleCatalog
from autoflow.automations.enums import ExecutionStatus, TagCondition
from autoflow.automations.errors import CalendarSettingsMissingError, EffectFailure, RuleNotFoundError
from autoflow.automations.models import AutomationExecution, utcnow
from autoflow.automations.notifier import Notifier, send_rule_message
from autoflow.automations.queue import DeferredJobQueue, ledger_job_id
from autoflow.automations.repositories import CalendarSettingsProvider, EntityStore, ExecutionLedger
from autoflow.automations.scheduler import DelayScheduler, delay_until
from autoflow.automations.schemas import (
    AutomationRule,
    CommunicationRule,
    EntityRef,
    EntitySnapshot,
    InvoiceRule,
    PipelineRule,
    ServiceRule,
    TagRule,
    checks_column_drift,
    restriction_flags,
)
from autoflow.context import reset_cascade_depth, reset_correlation_id, set_cascade_depth, set_correlation_id
from autoflow.core.config import get_settings
from autoflow.events import publish_execution_finished
from autoflow.metrics import observe_execution, observe_reschedule
from autoflow.otel import automation_span, get_tracer


logger = logging.getLogger("autoflow.automations.processor")
tracer = get_tracer("autoflow.automations.processor")

RESCHEDULED = "RESCHEDULED"
SKIPPED = "SKIPPED"
RELEASED = "RELEASED"


@dataclass
class EffectResult:
    moved_to_column_id: int | None = None
    added_tag_ids: list[int] = field(default_factory=list)
    channels: list[str] = field(default_factory=list)


@dataclass
class ExecutionOutcome:
    ledger_record_id: int
    status: str
    reason: str | None = None
    effect: EffectResult | None = None
    cascaded_record_ids: list[int] = field(default_factory=list)


class _Stop(Exception):
    def __init__(self, status: ExecutionStatus, reason: str) -> None:
        super().__init__(reason)
        self.status = status
        self.reason = reason


@dataclass
class ExecutionProcessor:
    catalog: RuleCatalog
    ledger: ExecutionLedger
    entities: EntityStore
    calendars: CalendarSettingsProvider
    scheduler: DelayScheduler
    queue: DeferredJobQueue
    notifier: Notifier
    cascade: CascadeDispatcher
    clock: Callable[[], datetime] = field(default=utcnow)

    def process(self, session: Session, ledger_record_id: int, *, job_id: str | None = None) -> ExecutionOutcome:
        record = self.ledger.get(session, ledger_record_id)
        if record is None:
            logger.warning("automation.record_missing", extra={"ledger_record_id": ledger_record_id, "job_id": job_id})
            return ExecutionOutcome(ledger_record_id=ledger_record_id, status=SKIPPED, reason="record_missing")

        correlation_token = set_correlation_id(record.correlation_id)
        depth_token = set_cascade_depth(record.cascade_depth)
        try:
            with automation_span(
                tracer,
                "automation.process",
                {"ledger_record_id": record.id, "job_id": job_id, "cascade_depth": record.cascade_depth},
            ):
                return self._process_record(session, record, job_id)
        finally:
            reset_cascade_depth(depth_token)
            reset_correlation_id(correlation_token)

    def _process_record(self, session: Session, record: AutomationExecution, job_id: str | None) -> ExecutionOutcome:
        domain = record.rule_domain
        entity_ref = EntityRef(kind=record.entity_kind, id=record.entity_id)
        log_fields: dict[str, Any] = {
            "rule_id": record.rule_id,
            "rule_domain": domain.value,
            "entity_ref": str(entity_ref),
            "ledger_record_id": record.id,
            "job_id": job_id or record.job_id,
        }

        if record.status != ExecutionStatus.PENDING.value:
            logger.info("automation.duplicate_delivery", extra={**log_fields, "status": record.status})
            return ExecutionOutcome(ledger_record_id=record.id, status=SKIPPED, reason="already_terminal")

        if job_id is not None and record.job_id is not None and job_id != record.job_id:
            # An older delivery superseded by a reschedule.
            logger.info("automation.superseded_job", extra={**log_fields, "reason": record.job_id})
            return ExecutionOutcome(ledger_record_id=record.id, status=SKIPPED, reason="superseded_job")

        settings = get_settings()
        claim_token = uuid.uuid4().hex
        if not self.ledger.claim(session, record.id, claim_token, self.clock(), settings.execution_claim_lease_seconds):
            logger.info("automation.claimed_elsewhere", extra=log_fields)
            return ExecutionOutcome(ledger_record_id=record.id, status=SKIPPED, reason="claimed_elsewhere")

        record_id = record.id
        started = time.perf_counter()
        final_status = ExecutionStatus.FAILED.value
        try:
            try:
                rule = self._load_rule(session, record)
                if self._reschedule_if_restricted(session, record, rule, claim_token, log_fields):
                    final_status = RESCHEDULED
                    return ExecutionOutcome(ledger_record_id=record.id, status=RESCHEDULED, reason="restricted_window")
                entity = self._load_entity(session, record, rule, entity_ref, log_fields)
            except _Stop as stop:
                final_status = stop.status.value
                self._finish(session, record, stop.status, claim_token, log_fields, reason=stop.reason)
                return ExecutionOutcome(ledger_record_id=record.id, status=final_status, reason=stop.reason)

            try:
                effect = self._apply_effect(session, rule, entity, record.company_id)
            except OperationalError:
                raise
            except Exception as exc:
                self._finish(
                    session,
                    record,
                    ExecutionStatus.FAILED,
                    claim_token,
                    log_fields,
                    reason="effect_failed",
                    error=str(exc),
                    exc_info=True,
                )
                return ExecutionOutcome(ledger_record_id=record.id, status=final_status, reason="effect_failed")

            completed = self._finish(session, record, ExecutionStatus.COMPLETED, claim_token, log_fields)
            final_status = ExecutionStatus.COMPLETED.value if completed else SKIPPED
            outcome = ExecutionOutcome(
                ledger_record_id=record.id,
                status=final_status,
                reason=None if completed else "claim_lost",
                effect=effect,
            )
            if completed:
                outcome.cascaded_record_ids = self._cascade(session, record, entity_ref, effect, log_fields)
            return outcome
        except Exception:
            final_status = RELEASED
            self._release_claim(session, record_id, claim_token, log_fields)
            raise
        finally:
            observe_execution(domain.value, final_status, time.perf_counter() - started)

    def _release_claim(self, session: Session, record_id: int, claim_token: str, log_fields: dict[str, Any]) -> None:
        session.rollback()
        try:
            released = self.ledger.release(session, record_id, claim_token, self.clock())
        except OperationalError:
            logger.exception("automation.claim_release_failed", extra=log_fields)
            session.rollback()
            return
        logger.warning(
            "automation.claim_released",
            extra={**log_fields, "reason": "error" if released else "claim_lost"},
        )

    def _load_rule(self, session: Session, record: AutomationExecution) -> AutomationRule:
        try:
            rule = self.catalog.require_rule(session, record.rule_domain, record.rule_id)
        except RuleNotFoundError as exc:
            raise _Stop(ExecutionStatus.CANCELLED, "rule_missing") from exc
        if rule.is_paused:
            raise _Stop(ExecutionStatus.CANCELLED, "rule_paused")
        return rule

    def _load_entity(
        self,
        session: Session,
        record: AutomationExecution,
        rule: AutomationRule,
        entity_ref: EntityRef,
        log_fields: dict[str, Any],
    ) -> EntitySnapshot:
        entity = self.entities.get_entity(session, entity_ref, record.company_id)
        if entity is None:
            raise _Stop(ExecutionStatus.CANCELLED, "entity_missing")

        # Compared against the captured column even when the entity already sits on the target.
        if checks_column_drift(rule) and entity.column_id != record.column_id:
            logger.info(
                "automation.column_drift",
                extra={**log_fields, "column_id": record.column_id, "reason": f"current={entity.column_id}"},
            )
            raise _Stop(ExecutionStatus.CANCELLED, "column_drift")

        if isinstance(rule, TagRule) and rule.rule_type == "one_time" and entity.is_triggered:
            raise _Stop(ExecutionStatus.CANCELLED, "already_triggered")
        return entity

    def _reschedule_if_restricted(
        self,
        session: Session,
        record: AutomationExecution,
        rule: AutomationRule,
        claim_token: str,
        log_fields: dict[str, Any],
    ) -> bool:
        respect_weekdays, respect_office_hours = restriction_flags(rule)
        if not respect_weekdays and not respect_office_hours:
            return False

        now = self.clock()
        calendar = self.calendars.get_calendar_settings(session, record.company_id)
        try:
            if is_valid_instant(now, calendar, respect_weekdays, respect_office_hours):
                return False
            next_valid = adjust_to_next_valid_instant(now, calendar, respect_weekdays, respect_office_hours)
        except CalendarSettingsMissingError:
            # The fallback was already applied when the record was scheduled.
            logger.warning("calendar.settings_missing", extra={**log_fields, "reason": "fire_time"})
            return False

        if next_valid <= now:
            return False

        reschedule_count = record.reschedule_count + 1
        job_id = ledger_job_id(record.id, reschedule_count)
        if not self.ledger.reschedule(session, record.id, claim_token, next_valid, reschedule_count, job_id, now):
            logger.warning("automation.reschedule_lost", extra=log_fields)
            return True

        self.queue.enqueue(job_id, self.scheduler.job_payload(record.id, record.correlation_id), delay_until(next_valid, now))
        observe_reschedule(rule.domain)
        logger.info(
            "automation.rescheduled",
            extra={
                **log_fields,
                "job_id": job_id,
                "execute_at": next_valid.isoformat(),
                "reschedule_count": reschedule_count,
            },
        )
        return True

    def _move(self, session: Session, entity: EntitySnapshot, company_id: int, target: int | None) -> int:
        if target is None:
            raise EffectFailure("rule has no target column")
        self.entities.set_column(session, entity.ref, company_id, target, self.clock())
        return target

    def _apply_effect(
        self,
        session: Session,
        rule: AutomationRule,
        entity: EntitySnapshot,
        company_id: int,
    ) -> EffectResult:
        result = EffectResult()
        if isinstance(rule, PipelineRule):
            result.moved_to_column_id = self._move(session, entity, company_id, rule.target_column_id)
        elif isinstance(rule, CommunicationRule):
            result.channels = send_rule_message(self.notifier, rule, entity)
            if rule.target_column_id is not None:
                result.moved_to_column_id = self._move(session, entity, company_id, rule.target_column_id)
        elif isinstance(rule, (InvoiceRule, ServiceRule)):
            result.channels = send_rule_message(self.notifier, rule, entity)
        elif isinstance(rule, TagRule):
            if rule.condition_type == TagCondition.PIPELINE:
                result.moved_to_column_id = self._move(session, entity, company_id, rule.target_column_id)
            elif rule.condition_type == TagCondition.COMMUNICATION:
                result.channels = send_rule_message(self.notifier, rule, entity)
            else:
                result.added_tag_ids = self.entities.add_tags(session, entity.ref, company_id, rule.tag_ids)
            if rule.rule_type == "one_time":
                self.entities.mark_triggered(session, entity.ref, company_id)
        else:
            raise EffectFailure(f"unsupported rule type {type(rule).__name__}")
        return result

    def _finish(
        self,
        session: Session,
        record: AutomationExecution,
        status: ExecutionStatus,
        claim_token: str,
        log_fields: dict[str, Any],
        *,
        reason: str | None = None,
        error: str | None = None,
        exc_info: bool = False,
    ) -> bool:
        applied = self.ledger.finish(
            session,
            record.id,
            status,
            self.clock(),
            claim_token=claim_token,
            error=(error or reason) if status != ExecutionStatus.COMPLETED else None,
        )
        if not applied:
            logger.warning("automation.transition_lost", extra={**log_fields, "status": status.value, "reason": reason})
            return False

        event = {
            ExecutionStatus.COMPLETED: "automation.completed",
            ExecutionStatus.FAILED: "automation.failed",
            ExecutionStatus.CANCELLED: "automation.cancelled",
        }[status]
        extra = {**log_fields, "status": status.value, "reason": reason}
        if error:
            extra["error"] = error
        if status == ExecutionStatus.FAILED:
            logger.error(event, exc_info=exc_info, extra=extra)
        else:
            logger.info(event, extra=extra)
        publish_execution_finished(
            ledger_record_id=record.id,
            company_id=record.company_id,
            rule_id=log_fields["rule_id"],
            rule_domain=log_fields["rule_domain"],
            entity_ref=log_fields["entity_ref"],
            status=status.value,
            reason=reason,
            correlation_id=record.correlation_id,
            cascade_depth=record.cascade_depth,
        )
        return True

    def _cascade(
        self,
        session: Session,
        record: AutomationExecution,
        entity_ref: EntityRef,
        effect: EffectResult,
        log_fields: dict[str, Any],
    ) -> list[int]:
        scheduled_ids: list[int] = []
        next_depth = record.cascade_depth + 1
        try:
            if effect.moved_to_column_id is not None:
                scheduled = self.cascade.on_column_changed(
                    session,
                    record.company_id,
                    entity_ref,
                    effect.moved_to_column_id,
                    depth=next_depth,
                )
                scheduled_ids.extend(item.ledger_record_id for item in scheduled)
            if effect.added_tag_ids:
                scheduled = self.cascade.on_tags_added(session, record.company_id, entity_ref, depth=next_depth)
                scheduled_ids.extend(item.ledger_record_id for item in scheduled)
        except Exception as exc:
            logger.exception("automation.cascade_failed", extra={**log_fields, "error": str(exc)})
        return scheduled_ids
