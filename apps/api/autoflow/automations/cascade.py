from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from autoflow.automations.catalog import RuleCatalog
from autoflow.automations.enums import EntityKind, EventKind, RuleDomain
from autoflow.automations.repositories import EntityStore
from autoflow.automations.scheduler import DelayScheduler
from autoflow.automations.schemas import (
    AutomationRule,
    EntityRef,
    EntitySnapshot,
    ScheduledExecution,
    TriggerContext,
    target_column_of,
)
from autoflow.context import reset_cascade_depth, set_cascade_depth
from autoflow.core.config import get_settings
from autoflow.metrics import observe_cascade_depth_warning


logger = logging.getLogger("autoflow.automations.cascade")

CASCADE_DOMAINS: dict[EntityKind, tuple[RuleDomain, ...]] = {
    EntityKind.LEAD: (RuleDomain.PIPELINE, RuleDomain.COMMUNICATION, RuleDomain.TAG),
    EntityKind.INVOICE: (RuleDomain.INVOICE, RuleDomain.SERVICE, RuleDomain.TAG),
    EntityKind.ESTIMATE: (RuleDomain.INVOICE, RuleDomain.TAG),
}


def column_event_for(kind: EntityKind) -> EventKind:
    return EventKind.COLUMN_CHANGED if kind == EntityKind.LEAD else EventKind.DOCUMENT_STATUS_CHANGED


def context_for(entity: EntitySnapshot, event_kind: EventKind, column_id: int | None) -> TriggerContext:
    return TriggerContext(
        event_kind=event_kind,
        entity_kind=entity.ref.kind,
        column_id=column_id,
        document_type=entity.document_type,
        tag_ids=tuple(entity.tag_ids),
        service_names=tuple(entity.service_names),
    )


def is_self_target(rule: AutomationRule, column_id: int | None) -> bool:
    target = target_column_of(rule)
    return target is not None and target == column_id


@dataclass
class CascadeDispatcher:
    """Re-enters scheduling after an automation changed an entity's state.

    Each domain is looked up independently. A rule whose target equals the
    column that just triggered it is never scheduled; that guard is what keeps
    the implicit rule graph from looping on itself.
    """

    catalog: RuleCatalog
    scheduler: DelayScheduler
    entities: EntityStore

    def on_column_changed(
        self,
        session: Session,
        company_id: int,
        entity_ref: EntityRef,
        new_column_id: int,
        *,
        depth: int,
    ) -> list[ScheduledExecution]:
        entity = self.entities.get_entity(session, entity_ref, company_id)
        if entity is None:
            logger.warning("automation.cascade_entity_missing", extra={"entity_ref": str(entity_ref), "company_id": company_id})
            return []
        kind = EntityKind(entity_ref.kind)
        ctx = context_for(entity, column_event_for(kind), new_column_id)
        return self._dispatch(session, company_id, entity_ref, ctx, CASCADE_DOMAINS[kind], depth)

    def on_tags_added(
        self,
        session: Session,
        company_id: int,
        entity_ref: EntityRef,
        *,
        depth: int,
    ) -> list[ScheduledExecution]:
        entity = self.entities.get_entity(session, entity_ref, company_id)
        if entity is None:
            return []
        ctx = context_for(entity, EventKind.TAG_ADDED, entity.column_id)
        return self._dispatch(session, company_id, entity_ref, ctx, (RuleDomain.TAG,), depth)

    def _dispatch(
        self,
        session: Session,
        company_id: int,
        entity_ref: EntityRef,
        ctx: TriggerContext,
        domains: tuple[RuleDomain, ...],
        depth: int,
    ) -> list[ScheduledExecution]:
        warning_depth = get_settings().cascade_depth_warning
        if depth > warning_depth:
            observe_cascade_depth_warning()
            logger.warning(
                "automation.cascade_depth_exceeded",
                extra={
                    "entity_ref": str(entity_ref),
                    "company_id": company_id,
                    "column_id": ctx.column_id,
                    "cascade_depth": depth,
                },
            )

        scheduled: list[ScheduledExecution] = []
        token = set_cascade_depth(depth)
        try:
            for domain in domains:
                for rule in self.catalog.find_applicable_in(session, company_id, domain, ctx):
                    if is_self_target(rule, ctx.column_id):
                        logger.info(
                            "automation.self_target_skipped",
                            extra={
                                "rule_id": rule.id,
                                "rule_domain": rule.domain,
                                "entity_ref": str(entity_ref),
                                "column_id": ctx.column_id,
                            },
                        )
                        continue
                    try:
                        scheduled.append(self.scheduler.schedule(session, rule, entity_ref, ctx.column_id, company_id))
                    except Exception as exc:
                        logger.exception(
                            "automation.cascade_schedule_failed",
                            extra={
                                "rule_id": rule.id,
                                "rule_domain": rule.domain,
                                "entity_ref": str(entity_ref),
                                "error": str(exc),
                            },
                        )
        finally:
            reset_cascade_depth(token)
        return scheduled
