from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from autoflow.automations.models import utcnow
from autoflow.automations.queue import DeferredJobQueue, ledger_job_id
from autoflow.automations.repositories import ExecutionLedger
from autoflow.automations.scheduler import DelayScheduler
from autoflow.core.config import get_settings
from autoflow.metrics import observe_ledger_swept


logger = logging.getLogger("autoflow.automations.sweeper")


@dataclass
class SweepResult:
    deleted_count: int
    cutoff: datetime


@dataclass
class RetentionSweeper:
    """Deletes terminal ledger records whose last update is older than the retention window."""

    ledger: ExecutionLedger
    clock: Callable[[], datetime] = field(default=utcnow)

    def sweep(self, session: Session, older_than_days: int | None = None) -> SweepResult:
        days = get_settings().ledger_retention_days if older_than_days is None else older_than_days
        cutoff = self.clock() - timedelta(days=days)
        deleted = self.ledger.delete_terminal_before(session, cutoff)
        observe_ledger_swept(deleted)
        logger.info("ledger.swept", extra={"deleted_count": deleted, "reason": f"older_than_days={days}"})
        return SweepResult(deleted_count=deleted, cutoff=cutoff)


@dataclass
class OverdueRecovery:
    """Re-enqueues PENDING records whose job never arrived, under their stored job id."""

    ledger: ExecutionLedger
    queue: DeferredJobQueue
    clock: Callable[[], datetime] = field(default=utcnow)

    def recover(self, session: Session) -> int:
        settings = get_settings()
        now = self.clock()
        overdue = self.ledger.list_overdue(
            session,
            due_before=now - timedelta(seconds=settings.overdue_grace_seconds),
            stale_claim_before=now - timedelta(seconds=settings.execution_claim_lease_seconds),
        )
        requeued = 0
        for record in overdue:
            job_id = record.job_id or ledger_job_id(record.id, record.reschedule_count)
            try:
                self.queue.enqueue(job_id, DelayScheduler.job_payload(record.id, record.correlation_id), 0)
            except Exception as exc:
                logger.exception(
                    "automation.recovery_enqueue_failed",
                    extra={"ledger_record_id": record.id, "job_id": job_id, "error": str(exc)},
                )
                continue
            if record.job_id is None:
                self.ledger.attach_job_id(session, record.id, job_id)
            requeued += 1
        if requeued:
            logger.info("automation.overdue_requeued", extra={"requeued_count": requeued})
        return requeued
