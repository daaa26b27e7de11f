from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from autoflow.automations.calendar import compute_execute_at, fallback_instant
from autoflow.automations.enums import RuleDomain
from autoflow.automations.errors import CalendarSettingsMissingError
from autoflow.automations.models import as_utc, utcnow
from autoflow.automations.queue import DeferredJobQueue, ledger_job_id
from autoflow.automations.repositories import CalendarSettingsProvider, EntityStore, ExecutionLedger
from autoflow.automations.schemas import (
    AutomationRule,
    EntityRef,
    ScheduledExecution,
    fires_on_event,
    restriction_flags,
)
from autoflow.context import get_cascade_depth, get_correlation_id
from autoflow.core.config import get_settings
from autoflow.metrics import observe_calendar_fallback, observe_schedule
from autoflow.otel import automation_span, get_tracer


logger = logging.getLogger("autoflow.automations.scheduler")
tracer = get_tracer("autoflow.automations.scheduler")


def delay_until(execute_at: datetime, now: datetime) -> int:
    return max(0, int((execute_at - now).total_seconds() * 1000))


@dataclass
class DelayScheduler:
    ledger: ExecutionLedger
    entities: EntityStore
    calendars: CalendarSettingsProvider
    queue: DeferredJobQueue
    clock: Callable[[], datetime] = field(default=utcnow)

    def compute_execute_at(
        self,
        session: Session,
        rule: AutomationRule,
        company_id: int,
        base: datetime,
        delay_seconds: int | None = None,
    ) -> datetime:
        respect_weekdays, respect_office_hours = restriction_flags(rule)
        if delay_seconds is not None:
            seconds = delay_seconds
        else:
            seconds = 0 if fires_on_event(rule) else rule.delay_seconds
        settings = None
        if respect_weekdays or respect_office_hours:
            settings = self.calendars.get_calendar_settings(session, company_id)
        try:
            return compute_execute_at(base, seconds, settings, respect_weekdays, respect_office_hours)
        except CalendarSettingsMissingError:
            app_settings = get_settings()
            fallback = fallback_instant(
                compute_execute_at(base, seconds, None, False, False),
                settings.timezone if settings is not None else app_settings.default_timezone,
                app_settings.calendar_fallback_hour,
            )
            observe_calendar_fallback()
            logger.warning(
                "calendar.settings_missing",
                extra={
                    "rule_id": rule.id,
                    "rule_domain": rule.domain,
                    "company_id": company_id,
                    "execute_at": fallback.isoformat(),
                },
            )
            return fallback

    def schedule(
        self,
        session: Session,
        rule: AutomationRule,
        entity_ref: EntityRef,
        column_id: int | None,
        company_id: int,
    ) -> ScheduledExecution:
        now = self.clock()
        depth = get_cascade_depth()
        with automation_span(
            tracer,
            "automation.schedule",
            {"rule_id": rule.id, "rule_domain": rule.domain, "entity_ref": str(entity_ref), "cascade_depth": depth},
        ):
            entity = self.entities.get_entity(session, entity_ref, company_id)
            if fires_on_event(rule) or entity is None or entity.column_changed_at is None:
                base = now
            else:
                base = as_utc(entity.column_changed_at)
            execute_at = self.compute_execute_at(session, rule, company_id, base)

            record = self.ledger.create_pending(
                session,
                company_id=company_id,
                domain=RuleDomain(rule.domain),
                rule_id=rule.id,
                entity=entity_ref,
                column_id=column_id,
                execute_at=execute_at,
                cascade_depth=depth,
                correlation_id=get_correlation_id(),
                now=now,
            )
            job_id = ledger_job_id(record.id)
            delay_ms = delay_until(execute_at, now)
            log_fields = {
                "rule_id": rule.id,
                "rule_domain": rule.domain,
                "entity_ref": str(entity_ref),
                "ledger_record_id": record.id,
                "column_id": column_id,
                "job_id": job_id,
            }
            try:
                handle = self.queue.enqueue(job_id, self.job_payload(record.id, record.correlation_id), delay_ms)
                job_id = handle.job_id
            except Exception as exc:
                # The record stays PENDING; overdue recovery re-enqueues it under the same job id.
                logger.exception("automation.enqueue_failed", extra={**log_fields, "error": str(exc)})
            self.ledger.attach_job_id(session, record.id, job_id)

        observe_schedule(rule.domain)
        logger.info(
            "automation.scheduled",
            extra={**log_fields, "execute_at": execute_at.isoformat(), "delay_ms": delay_ms, "cascade_depth": depth},
        )
        return ScheduledExecution(
            rule_id=rule.id,
            domain=RuleDomain(rule.domain),
            job_id=job_id,
            ledger_record_id=record.id,
            execute_at=execute_at,
        )

    @staticmethod
    def job_payload(ledger_record_id: int, correlation_id: str | None) -> dict[str, object]:
        return {"ledger_record_id": ledger_record_id, "correlation_id": correlation_id}
