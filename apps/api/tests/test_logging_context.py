from __future__ import annotations

import json
import logging
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from autoflow.automations.catalog import InMemoryRuleCacheBackend
from autoflow.automations.engine import AutomationEngine, build_automation_engine, get_automation_engine
from autoflow.automations.models import AutomationLead, PipelineAutomationRule
from autoflow.automations.queue import InMemoryDeferredJobQueue
from autoflow.context import reset_cascade_depth, reset_correlation_id, set_cascade_depth, set_correlation_id
from autoflow.core.config import get_settings
from autoflow.core.database import Base, get_db
from autoflow.logging import JsonLogFormatter
from autoflow.main import app


START = datetime(2026, 3, 4, 15, 0, tzinfo=timezone.utc)


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


@pytest.fixture()
def engine() -> AutomationEngine:
    return build_automation_engine(
        queue=InMemoryDeferredJobQueue(clock=lambda: START),
        cache=InMemoryRuleCacheBackend(),
        clock=lambda: START,
    )


@pytest.fixture()
def client(db_session: Session, engine: AutomationEngine) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_automation_engine] = lambda: engine
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/automations/executions/42", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record for record in caplog.records if record.name == "autoflow.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/automations/executions/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_execution_context_and_correlation_id(
    client: TestClient,
    db_session: Session,
    engine: AutomationEngine,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    lead = AutomationLead(company_id=1, column_id=1, column_changed_at=START, tag_ids=[])
    rule = PipelineAutomationRule(company_id=1, trigger_column_ids=[1], target_column_id=2, delay_seconds=None)
    db_session.add_all([lead, rule])
    db_session.commit()

    response = client.post(
        "/api/automations/events",
        json={"company_id": 1, "entity": {"kind": "lead", "id": lead.id}, "column_id": 1},
        headers={"X-Correlation-Id": "abc-123"},
    )
    assert response.status_code == 200
    record_id = response.json()["scheduled"][0]["ledger_record_id"]
    engine.run_due_jobs(db_session)

    scheduled = [record for record in caplog.records if record.getMessage() == "automation.scheduled"]
    assert any(
        getattr(record, "ledger_record_id", None) == record_id
        and getattr(record, "rule_id", None) == rule.id
        and getattr(record, "rule_domain", None) == "pipeline"
        and getattr(record, "entity_ref", None) == f"lead:{lead.id}"
        and getattr(record, "job_id", None) == str(record_id)
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in scheduled
    )
    completed = [record for record in caplog.records if record.name == "autoflow.automations.processor"]
    assert any(
        record.getMessage() == "automation.completed"
        and getattr(record, "status", None) == "COMPLETED"
        and getattr(record, "correlation_id", None) == "abc-123"
        for record in completed
    )


def test_json_formatter_keeps_known_fields_and_context() -> None:
    correlation_token = set_correlation_id("fmt-1")
    depth_token = set_cascade_depth(4)
    try:
        record = logging.getLogger("autoflow.test").makeRecord(
            "autoflow.test",
            logging.WARNING,
            __file__,
            1,
            "automation.cascade_depth_exceeded",
            (),
            None,
            extra={"entity_ref": "lead:1", "secret": "drop-me", "error": "x" * 800},
        )
        payload = json.loads(JsonLogFormatter().format(record))
    finally:
        reset_cascade_depth(depth_token)
        reset_correlation_id(correlation_token)

    assert payload["msg"] == "automation.cascade_depth_exceeded"
    assert payload["level"] == "WARNING"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"]["entity_ref"] == "lead:1"
    assert payload["fields"]["cascade_depth"] == 4
    assert len(payload["fields"]["error"]) == 500
    assert "secret" not in payload["fields"]
