from __future__ import annotations

import logging
import random
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autoflow.automations.enums import ExecutionStatus
from autoflow.automations.models import AutomationLead, CompanyCalendarSettings, as_utc
from autoflow.automations.queue import InMemoryDeferredJobQueue, JobHandle
from autoflow.automations.repositories import (
    ExecutionLedger,
    SqlAlchemyCalendarSettingsProvider,
    SqlAlchemyEntityStore,
)
from autoflow.automations.scheduler import DelayScheduler, delay_until
from autoflow.automations.schemas import CommunicationRule, EntityRef, PipelineRule
from autoflow.context import reset_cascade_depth, reset_correlation_id, set_cascade_depth, set_correlation_id
from autoflow.core.config import get_settings
from autoflow.core.database import Base


# Wednesday.
START = datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class BrokenQueue:
    def enqueue(self, job_id: str, payload: dict[str, Any], delay_ms: int) -> JobHandle:
        raise ConnectionError("broker unavailable")

    def remove(self, job_id: str) -> bool:
        return False


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
    monkeypatch.setenv("CALENDAR_FALLBACK_HOUR", "9")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(START)


@pytest.fixture()
def queue(clock: FrozenClock) -> InMemoryDeferredJobQueue:
    return InMemoryDeferredJobQueue(clock=clock)


@pytest.fixture()
def scheduler(queue: InMemoryDeferredJobQueue, clock: FrozenClock) -> DelayScheduler:
    return DelayScheduler(
        ledger=ExecutionLedger(),
        entities=SqlAlchemyEntityStore(),
        calendars=SqlAlchemyCalendarSettingsProvider(),
        queue=queue,
        clock=clock,
    )


def _lead(session: Session, column_id: int = 1, changed_at: datetime | None = None, company_id: int = 1) -> EntityRef:
    lead = AutomationLead(company_id=company_id, column_id=column_id, column_changed_at=changed_at, tag_ids=[])
    session.add(lead)
    session.commit()
    return EntityRef(kind="lead", id=lead.id)


def _communication_rule(**overrides: Any) -> CommunicationRule:
    values: dict[str, Any] = {
        "id": 11,
        "company_id": 1,
        "trigger_column_ids": [1],
        "delay": 3600,
        "respect_office_hours": True,
        "email_body": "Hello",
    }
    values.update(overrides)
    return CommunicationRule(**values)


def test_delay_until_never_negative() -> None:
    assert delay_until(START + timedelta(seconds=2), START) == 2000
    assert delay_until(START - timedelta(seconds=2), START) == 0


def test_schedule_counts_delay_from_column_change(
    db_session: Session,
    scheduler: DelayScheduler,
    queue: InMemoryDeferredJobQueue,
) -> None:
    ref = _lead(db_session, changed_at=START - timedelta(seconds=10))
    rule = PipelineRule(id=5, company_id=1, trigger_column_ids=[1], target_column_id=2, delay=60)

    scheduled = scheduler.schedule(db_session, rule, ref, 1, 1)

    assert scheduled.execute_at == START + timedelta(seconds=50)
    assert scheduled.job_id == str(scheduled.ledger_record_id)
    assert queue.history[-1] == JobHandle(job_id=scheduled.job_id, delay_ms=50_000)
    assert queue.jobs[scheduled.job_id].payload["ledger_record_id"] == scheduled.ledger_record_id

    record = scheduler.ledger.get(db_session, scheduled.ledger_record_id)
    assert record is not None
    assert record.status == ExecutionStatus.PENDING.value
    assert record.pipeline_rule_id == 5
    assert record.lead_id == ref.id
    assert record.column_id == 1
    assert record.job_id == scheduled.job_id
    assert as_utc(record.execute_at) == START + timedelta(seconds=50)


def test_instant_rule_without_column_timestamp_fires_now(
    db_session: Session,
    scheduler: DelayScheduler,
    queue: InMemoryDeferredJobQueue,
) -> None:
    ref = _lead(db_session, changed_at=None)
    rule = PipelineRule(id=5, company_id=1, trigger_column_ids=[1], target_column_id=2, delay="instant")

    scheduled = scheduler.schedule(db_session, rule, ref, 1, 1)

    assert scheduled.execute_at == START
    assert queue.history[-1].delay_ms == 0


def test_office_hours_push_execution_to_next_window(db_session: Session, scheduler: DelayScheduler) -> None:
    db_session.add(CompanyCalendarSettings(company_id=1, day_start="09:00", day_end="17:00", timezone="UTC"))
    db_session.commit()
    ref = _lead(db_session, changed_at=START + timedelta(hours=1, minutes=30))

    scheduled = scheduler.schedule(db_session, _communication_rule(), ref, 1, 1)

    assert scheduled.execute_at == datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc)


def test_missing_calendar_settings_fall_back_to_next_morning(
    db_session: Session,
    scheduler: DelayScheduler,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.WARNING)
    before = REGISTRY.get_sample_value("automation_calendar_fallbacks_total") or 0.0
    ref = _lead(db_session, changed_at=START)

    scheduled = scheduler.schedule(db_session, _communication_rule(respect_weekdays=True), ref, 1, 1)

    assert scheduled.execute_at == datetime(2026, 3, 5, 9, 0, tzinfo=timezone.utc)
    assert (REGISTRY.get_sample_value("automation_calendar_fallbacks_total") or 0.0) == before + 1
    assert any(
        record.getMessage() == "calendar.settings_missing" and getattr(record, "rule_id", None) == 11
        for record in caplog.records
    )


def test_rule_without_restrictions_ignores_missing_settings(db_session: Session, scheduler: DelayScheduler) -> None:
    ref = _lead(db_session, changed_at=START)
    scheduled = scheduler.schedule(
        db_session,
        _communication_rule(respect_office_hours=False, delay=600),
        ref,
        1,
        1,
    )
    assert scheduled.execute_at == START + timedelta(minutes=10)


def test_cascade_depth_and_correlation_id_are_recorded(db_session: Session, scheduler: DelayScheduler) -> None:
    ref = _lead(db_session, changed_at=START)
    rule = PipelineRule(id=5, company_id=1, trigger_column_ids=[1], target_column_id=2, delay=60)

    depth_token = set_cascade_depth(3)
    correlation_token = set_correlation_id("sched-corr-1")
    try:
        scheduled = scheduler.schedule(db_session, rule, ref, 1, 1)
    finally:
        reset_correlation_id(correlation_token)
        reset_cascade_depth(depth_token)

    record = scheduler.ledger.get(db_session, scheduled.ledger_record_id)
    assert record is not None
    assert record.cascade_depth == 3
    assert record.correlation_id == "sched-corr-1"


def test_enqueue_failure_leaves_pending_record_for_recovery(
    db_session: Session,
    clock: FrozenClock,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.ERROR)
    scheduler = DelayScheduler(
        ledger=ExecutionLedger(),
        entities=SqlAlchemyEntityStore(),
        calendars=SqlAlchemyCalendarSettingsProvider(),
        queue=BrokenQueue(),
        clock=clock,
    )
    ref = _lead(db_session, changed_at=START)
    rule = PipelineRule(id=5, company_id=1, trigger_column_ids=[1], target_column_id=2, delay=60)

    scheduled = scheduler.schedule(db_session, rule, ref, 1, 1)

    record = scheduler.ledger.get(db_session, scheduled.ledger_record_id)
    assert record is not None
    assert record.status == ExecutionStatus.PENDING.value
    assert record.job_id == str(record.id)
    assert any(item.getMessage() == "automation.enqueue_failed" for item in caplog.records)


@pytest.mark.parametrize("seed", [3, 17, 42, 1009])
def test_recomputing_unrestricted_schedule_is_deterministic(
    db_session: Session,
    scheduler: DelayScheduler,
    seed: int,
) -> None:
    rng = random.Random(seed)
    for _ in range(10):
        changed_at = START - timedelta(seconds=rng.randint(0, 7 * 86400))
        rule = PipelineRule(
            id=5,
            company_id=1,
            trigger_column_ids=[1],
            target_column_id=2,
            delay=rng.randint(0, 3 * 86400),
        )
        ref = _lead(db_session, changed_at=changed_at)

        scheduled = scheduler.schedule(db_session, rule, ref, 1, 1)
        record = scheduler.ledger.get(db_session, scheduled.ledger_record_id)

        assert record is not None
        recomputed = scheduler.compute_execute_at(db_session, rule, 1, changed_at)
        assert recomputed == scheduled.execute_at == as_utc(record.execute_at)
