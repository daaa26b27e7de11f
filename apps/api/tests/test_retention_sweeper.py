from __future__ import annotations

import logging
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autoflow.automations.catalog import InMemoryRuleCacheBackend
from autoflow.automations.engine import AutomationEngine, build_automation_engine
from autoflow.automations.enums import EntityKind, ExecutionStatus, RuleDomain
from autoflow.automations.models import AutomationExecution
from autoflow.automations.queue import InMemoryDeferredJobQueue
from autoflow.core.config import get_settings
from autoflow.core.database import Base


NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("LEDGER_RETENTION_DAYS", "30")
    monkeypatch.setenv("OVERDUE_GRACE_SECONDS", "300")
    monkeypatch.setenv("EXECUTION_CLAIM_LEASE_SECONDS", "300")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def engine() -> AutomationEngine:
    return build_automation_engine(
        queue=InMemoryDeferredJobQueue(clock=lambda: NOW),
        cache=InMemoryRuleCacheBackend(),
        clock=lambda: NOW,
    )


def _record(
    session: Session,
    status: ExecutionStatus,
    *,
    updated_at: datetime = NOW,
    execute_at: datetime = NOW,
    job_id: str | None = None,
    claim_token: str | None = None,
    claimed_at: datetime | None = None,
) -> int:
    record = AutomationExecution(
        company_id=1,
        column_id=1,
        execute_at=execute_at,
        status=status.value,
        job_id=job_id,
        claim_token=claim_token,
        claimed_at=claimed_at,
        created_at=updated_at,
        updated_at=updated_at,
    )
    record.assign_rule(RuleDomain.PIPELINE, 1)
    record.assign_entity(EntityKind.LEAD, 1)
    session.add(record)
    session.commit()
    return record.id


def _remaining_ids(session: Session) -> set[int]:
    return set(session.scalars(select(AutomationExecution.id)).all())


def test_sweep_deletes_only_old_terminal_records(
    db_session: Session,
    engine: AutomationEngine,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    old = NOW - timedelta(days=31)
    recent = NOW - timedelta(days=29)
    old_completed = _record(db_session, ExecutionStatus.COMPLETED, updated_at=old)
    old_failed = _record(db_session, ExecutionStatus.FAILED, updated_at=old)
    old_cancelled = _record(db_session, ExecutionStatus.CANCELLED, updated_at=old)
    old_pending = _record(db_session, ExecutionStatus.PENDING, updated_at=old, execute_at=old)
    recent_completed = _record(db_session, ExecutionStatus.COMPLETED, updated_at=recent)
    before = REGISTRY.get_sample_value("automation_ledger_swept_total") or 0.0

    result = engine.sweeper.sweep(db_session)

    assert result.deleted_count == 3
    assert result.cutoff == NOW - timedelta(days=30)
    remaining = _remaining_ids(db_session)
    assert {old_completed, old_failed, old_cancelled}.isdisjoint(remaining)
    assert {old_pending, recent_completed} <= remaining
    assert (REGISTRY.get_sample_value("automation_ledger_swept_total") or 0.0) == before + 3
    assert any(
        record.getMessage() == "ledger.swept" and getattr(record, "deleted_count", None) == 3
        for record in caplog.records
    )


def test_sweep_accepts_explicit_window(db_session: Session, engine: AutomationEngine) -> None:
    _record(db_session, ExecutionStatus.COMPLETED, updated_at=NOW - timedelta(days=3))
    kept = _record(db_session, ExecutionStatus.COMPLETED, updated_at=NOW - timedelta(hours=12))

    result = engine.sweeper.sweep(db_session, older_than_days=1)

    assert result.deleted_count == 1
    assert _remaining_ids(db_session) == {kept}


def test_sweep_with_nothing_to_delete(db_session: Session, engine: AutomationEngine) -> None:
    _record(db_session, ExecutionStatus.COMPLETED)
    assert engine.sweeper.sweep(db_session).deleted_count == 0


def test_overdue_pending_records_are_requeued(db_session: Session, engine: AutomationEngine) -> None:
    overdue = _record(db_session, ExecutionStatus.PENDING, execute_at=NOW - timedelta(minutes=10), job_id="41")
    never_enqueued = _record(db_session, ExecutionStatus.PENDING, execute_at=NOW - timedelta(minutes=10))
    _record(db_session, ExecutionStatus.PENDING, execute_at=NOW - timedelta(seconds=60), job_id="within-grace")
    _record(db_session, ExecutionStatus.COMPLETED, execute_at=NOW - timedelta(hours=1), job_id="done")
    _record(
        db_session,
        ExecutionStatus.PENDING,
        execute_at=NOW - timedelta(minutes=10),
        job_id="in-flight",
        claim_token="worker-a",
        claimed_at=NOW - timedelta(seconds=30),
    )

    assert engine.recovery.recover(db_session) == 2

    assert set(engine.queue.jobs) == {"41", str(never_enqueued)}
    assert engine.queue.jobs["41"].payload["ledger_record_id"] == overdue
    assert engine.queue.jobs["41"].due_at == NOW
    refreshed = engine.ledger.get(db_session, never_enqueued)
    assert refreshed is not None and refreshed.job_id == str(never_enqueued)


def test_stale_claim_is_recovered(db_session: Session, engine: AutomationEngine) -> None:
    record_id = _record(
        db_session,
        ExecutionStatus.PENDING,
        execute_at=NOW - timedelta(hours=1),
        job_id="7-rescheduled-1",
        claim_token="crashed-worker",
        claimed_at=NOW - timedelta(minutes=20),
    )

    assert engine.recovery.recover(db_session) == 1
    assert engine.queue.jobs["7-rescheduled-1"].payload["ledger_record_id"] == record_id


def test_recovered_job_completes_the_record(db_session: Session, engine: AutomationEngine) -> None:
    record_id = _record(db_session, ExecutionStatus.PENDING, execute_at=NOW - timedelta(minutes=10), job_id="orphan")

    engine.recovery.recover(db_session)
    [outcome] = engine.run_due_jobs(db_session)

    # No rule row exists, so the fire cancels instead of applying anything.
    assert outcome.ledger_record_id == record_id
    assert outcome.status == "CANCELLED"
    assert outcome.reason == "rule_missing"
