from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autoflow.automations.catalog import InMemoryRuleCacheBackend
from autoflow.automations.engine import build_automation_engine
from autoflow.automations.enums import EventKind
from autoflow.automations.models import AutomationExecution, AutomationLead, PipelineAutomationRule
from autoflow.automations.queue import InMemoryDeferredJobQueue
from autoflow.automations.schemas import EntityRef
from autoflow.core.config import get_settings
from autoflow.core.database import Base


START = datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_pipeline_chain_with_competing_rule(db_session: Session) -> None:
    clock = FrozenClock(START)
    engine = build_automation_engine(
        queue=InMemoryDeferredJobQueue(clock=clock),
        cache=InMemoryRuleCacheBackend(),
        clock=clock,
    )
    lead = AutomationLead(company_id=1, column_id=1, column_changed_at=START, tag_ids=[])
    quick = PipelineAutomationRule(company_id=1, trigger_column_ids=[1], target_column_id=2, delay_seconds=60)
    slow = PipelineAutomationRule(company_id=1, trigger_column_ids=[1], target_column_id=9, delay_seconds=900)
    follow_up = PipelineAutomationRule(company_id=1, trigger_column_ids=[2], target_column_id=3, delay_seconds=120)
    db_session.add_all([lead, quick, slow, follow_up])
    db_session.commit()
    ref = EntityRef(kind="lead", id=lead.id)

    response = engine.triggers.trigger_event(db_session, 1, ref, 1, EventKind.COLUMN_CHANGED)
    by_rule = {item.rule_id: item for item in response.scheduled}
    assert set(by_rule) == {quick.id, slow.id}

    clock.advance(seconds=60)
    [first] = engine.run_due_jobs(db_session)
    assert first.ledger_record_id == by_rule[quick.id].ledger_record_id
    assert first.status == "COMPLETED"
    [follow_up_record_id] = first.cascaded_record_ids

    # Due 120s after the automated move, not after the original trigger.
    clock.advance(seconds=119)
    assert engine.run_due_jobs(db_session) == []
    clock.advance(seconds=1)
    [second] = engine.run_due_jobs(db_session)
    assert second.ledger_record_id == follow_up_record_id
    assert second.status == "COMPLETED"

    clock.now = START + timedelta(seconds=900)
    [third] = engine.run_due_jobs(db_session)
    assert third.ledger_record_id == by_rule[slow.id].ledger_record_id
    assert third.status == "CANCELLED"
    assert third.reason == "column_drift"

    db_session.refresh(lead)
    assert lead.column_id == 3
    records = {
        record.id: record
        for record in db_session.scalars(select(AutomationExecution).execution_options(populate_existing=True)).all()
    }
    assert records[follow_up_record_id].cascade_depth == 1
    assert records[follow_up_record_id].column_id == 2
    assert sorted(record.status for record in records.values()) == ["CANCELLED", "COMPLETED", "COMPLETED"]
    assert engine.queue.jobs == {}
