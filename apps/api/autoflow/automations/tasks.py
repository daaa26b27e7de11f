from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from autoflow.automations.engine import get_automation_engine
from autoflow.automations.queue import PROCESS_EXECUTION_TASK
from autoflow.context import reset_correlation_id, set_correlation_id
from autoflow.core.celery_app import celery_app
from autoflow.core.config import get_settings
from autoflow.core.database import SessionLocal


settings = get_settings()


@contextmanager
def _task_session_scope() -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@celery_app.task(
    name=PROCESS_EXECUTION_TASK,
    bind=True,
    autoretry_for=(OperationalError,),
    max_retries=max(0, settings.job_max_attempts - 1),
    retry_backoff=True,
)
def process_execution(self, ledger_record_id: int, correlation_id: str | None = None) -> dict[str, Any]:  # type: ignore[no-untyped-def]
    token = set_correlation_id(correlation_id)
    try:
        with _task_session_scope() as session:
            outcome = get_automation_engine().processor.process(session, int(ledger_record_id), job_id=self.request.id)
    finally:
        reset_correlation_id(token)
    return {"ledger_record_id": outcome.ledger_record_id, "status": outcome.status, "reason": outcome.reason}


@celery_app.task(name="autoflow.automations.sweep_ledger")
def sweep_ledger(older_than_days: int | None = None) -> dict[str, Any]:
    with _task_session_scope() as session:
        result = get_automation_engine().sweeper.sweep(session, older_than_days)
    return {"deleted_count": result.deleted_count, "cutoff": result.cutoff.isoformat()}


@celery_app.task(name="autoflow.automations.recover_overdue")
def recover_overdue() -> int:
    with _task_session_scope() as session:
        return get_automation_engine().recovery.recover(session)
