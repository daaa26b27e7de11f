from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache

from sqlalchemy.orm import Session

from autoflow.automations.cascade import CascadeDispatcher
from autoflow.automations.catalog import InMemoryRuleCacheBackend, RedisRuleCacheBackend, RuleCacheBackend, RuleCatalog
from autoflow.automations.models import utcnow
from autoflow.automations.notifier import LoggingNotifier, Notifier
from autoflow.automations.processor import ExecutionOutcome, ExecutionProcessor
from autoflow.automations.queue import CeleryDeferredJobQueue, DeferredJobQueue, InMemoryDeferredJobQueue
from autoflow.automations.repositories import (
    CalendarSettingsProvider,
    EntityStore,
    ExecutionLedger,
    RuleStore,
    SqlAlchemyCalendarSettingsProvider,
    SqlAlchemyEntityStore,
    SqlAlchemyRuleStore,
)
from autoflow.automations.scheduler import DelayScheduler
from autoflow.automations.sweeper import OverdueRecovery, RetentionSweeper
from autoflow.automations.trigger import AutomationTriggerService
from autoflow.core.config import get_settings


logger = logging.getLogger("autoflow.automations.engine")


@dataclass
class AutomationEngine:
    catalog: RuleCatalog
    ledger: ExecutionLedger
    queue: DeferredJobQueue
    scheduler: DelayScheduler
    cascade: CascadeDispatcher
    processor: ExecutionProcessor
    triggers: AutomationTriggerService
    sweeper: RetentionSweeper
    recovery: OverdueRecovery

    def run_due_jobs(self, session: Session, now: datetime | None = None) -> list[ExecutionOutcome]:
        """Drain due jobs from an in-process queue, including jobs they enqueue that are already due."""
        if not isinstance(self.queue, InMemoryDeferredJobQueue):
            raise TypeError("run_due_jobs requires an in-memory queue")

        outcomes: list[ExecutionOutcome] = []
        while True:
            due = self.queue.due(now)
            if not due:
                return outcomes
            for job in due:
                if self.queue.pop(job.job_id) is None:
                    continue
                outcomes.append(
                    self.processor.process(session, int(job.payload["ledger_record_id"]), job_id=job.job_id)
                )


def build_rule_cache() -> RuleCacheBackend:
    settings = get_settings()
    if settings.rule_cache_backend.lower() == "redis":
        return RedisRuleCacheBackend(settings.redis_url)
    return InMemoryRuleCacheBackend()


def build_automation_engine(
    *,
    queue: DeferredJobQueue | None = None,
    cache: RuleCacheBackend | None = None,
    notifier: Notifier | None = None,
    rule_store: RuleStore | None = None,
    entity_store: EntityStore | None = None,
    calendars: CalendarSettingsProvider | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> AutomationEngine:
    settings = get_settings()
    queue = queue if queue is not None else CeleryDeferredJobQueue()
    entities = entity_store if entity_store is not None else SqlAlchemyEntityStore()
    calendar_provider = calendars if calendars is not None else SqlAlchemyCalendarSettingsProvider()
    ledger = ExecutionLedger()

    catalog = RuleCatalog(
        store=rule_store if rule_store is not None else SqlAlchemyRuleStore(),
        cache=cache if cache is not None else build_rule_cache(),
        ttl_seconds=settings.rule_cache_ttl_seconds,
    )
    scheduler = DelayScheduler(ledger=ledger, entities=entities, calendars=calendar_provider, queue=queue, clock=clock)
    cascade = CascadeDispatcher(catalog=catalog, scheduler=scheduler, entities=entities)
    processor = ExecutionProcessor(
        catalog=catalog,
        ledger=ledger,
        entities=entities,
        calendars=calendar_provider,
        scheduler=scheduler,
        queue=queue,
        notifier=notifier if notifier is not None else LoggingNotifier(),
        cascade=cascade,
        clock=clock,
    )
    triggers = AutomationTriggerService(
        catalog=catalog,
        scheduler=scheduler,
        ledger=ledger,
        entities=entities,
        queue=queue,
        clock=clock,
    )
    return AutomationEngine(
        catalog=catalog,
        ledger=ledger,
        queue=queue,
        scheduler=scheduler,
        cascade=cascade,
        processor=processor,
        triggers=triggers,
        sweeper=RetentionSweeper(ledger=ledger, clock=clock),
        recovery=OverdueRecovery(ledger=ledger, queue=queue, clock=clock),
    )


@lru_cache
def get_automation_engine() -> AutomationEngine:
    settings = get_settings()
    queue: DeferredJobQueue | None = InMemoryDeferredJobQueue() if settings.automation_auto_process else None
    logger.info("automation.engine_built", extra={"status": "inline" if queue is not None else "celery"})
    return build_automation_engine(queue=queue)
