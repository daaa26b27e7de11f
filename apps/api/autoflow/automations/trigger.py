from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.orm import Session

from autoflow.automations.cascade import context_for, is_self_target
from autoflow.automations.catalog import RuleCatalog
from autoflow.automations.enums import EventKind, RuleDomain
from autoflow.automations.errors import InvalidTriggerError
from autoflow.automations.models import AutomationExecution, utcnow
from autoflow.automations.queue import DeferredJobQueue
from autoflow.automations.repositories import EntityStore, ExecutionLedger
from autoflow.automations.scheduler import DelayScheduler
from autoflow.automations.schemas import (
    EntityRef,
    RuleChangeNotice,
    RuleChangeResponse,
    ScheduledExecution,
    TriggerEventResponse,
)
from autoflow.context import reset_cascade_depth, set_cascade_depth
from autoflow.otel import automation_span, get_tracer


logger = logging.getLogger("autoflow.automations.trigger")
tracer = get_tracer("autoflow.automations.trigger")


@dataclass
class AutomationTriggerService:
    catalog: RuleCatalog
    scheduler: DelayScheduler
    ledger: ExecutionLedger
    entities: EntityStore
    queue: DeferredJobQueue
    clock: Callable[[], datetime] = field(default=utcnow)

    def trigger_event(
        self,
        session: Session,
        company_id: int,
        entity_ref: EntityRef,
        column_id: int | None,
        event_kind: EventKind,
    ) -> TriggerEventResponse:
        entity = self.entities.get_entity(session, entity_ref, company_id)
        if entity is None:
            raise InvalidTriggerError(f"entity {entity_ref} not found for company {company_id}")

        effective_column = column_id if column_id is not None else entity.column_id
        ctx = context_for(entity, EventKind(event_kind), effective_column)
        scheduled: list[ScheduledExecution] = []

        depth_token = set_cascade_depth(0)
        try:
            with automation_span(
                tracer,
                "automation.trigger_event",
                {"company_id": company_id, "entity_ref": str(entity_ref), "event_kind": str(event_kind)},
            ):
                for rule in self.catalog.find_applicable(session, company_id, ctx):
                    if is_self_target(rule, effective_column):
                        logger.info(
                            "automation.self_target_skipped",
                            extra={"rule_id": rule.id, "rule_domain": rule.domain, "entity_ref": str(entity_ref)},
                        )
                        continue
                    try:
                        scheduled.append(self.scheduler.schedule(session, rule, entity_ref, effective_column, company_id))
                    except Exception as exc:
                        logger.exception(
                            "automation.schedule_failed",
                            extra={
                                "rule_id": rule.id,
                                "rule_domain": rule.domain,
                                "entity_ref": str(entity_ref),
                                "error": str(exc),
                            },
                        )
        finally:
            reset_cascade_depth(depth_token)

        if not scheduled:
            logger.info(
                "automation.no_match",
                extra={
                    "company_id": company_id,
                    "entity_ref": str(entity_ref),
                    "column_id": effective_column,
                    "event_kind": str(event_kind),
                },
            )
        return TriggerEventResponse(matched=bool(scheduled), scheduled=scheduled)

    def cancel_all_for(self, session: Session, entity_ref: EntityRef) -> int:
        records = self.ledger.list_pending_for_entity(session, entity_ref)
        return self._cancel_records(session, records, reason="entity_cancelled", entity_ref=str(entity_ref))

    def on_rule_changed(self, session: Session, domain: RuleDomain, notice: RuleChangeNotice) -> RuleChangeResponse:
        invalidated = self.catalog.invalidate(RuleDomain(domain), notice.company_id, notice.previous_company_id)
        cancelled = 0
        if notice.change == "deleted" and notice.rule_id is not None:
            records = self.ledger.list_pending_for_rule(session, RuleDomain(domain), notice.rule_id)
            cancelled = self._cancel_records(session, records, reason="rule_deleted", entity_ref=None)
        return RuleChangeResponse(invalidated_company_ids=invalidated, cancelled_count=cancelled)

    def _cancel_records(
        self,
        session: Session,
        records: list[AutomationExecution],
        *,
        reason: str,
        entity_ref: str | None,
    ) -> int:
        if not records:
            return 0
        job_ids = [record.job_id for record in records if record.job_id]
        record_ids = [record.id for record in records]
        cancelled = self.ledger.cancel_many(session, record_ids, self.clock(), reason)
        for job_id in job_ids:
            # Queue removal is best effort; the processor no-ops on terminal records.
            try:
                self.queue.remove(job_id)
            except Exception as exc:
                logger.warning("automation.job_remove_failed", extra={"job_id": job_id, "error": str(exc)})
        logger.info(
            "automation.cancelled_pending",
            extra={"entity_ref": entity_ref, "reason": reason, "status": "CANCELLED", "cancelled_count": cancelled},
        )
        return cancelled
