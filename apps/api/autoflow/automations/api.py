from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from autoflow.automations.engine import AutomationEngine, get_automation_engine
from autoflow.automations.enums import EntityKind, ExecutionStatus, RuleDomain
from autoflow.automations.errors import InvalidTriggerError, LedgerRecordNotFoundError
from autoflow.automations.schemas import (
    CancelResponse,
    EntityRef,
    ExecutionRead,
    RuleChangeNotice,
    RuleChangeResponse,
    SweepRequest,
    SweepResponse,
    TriggerEventRequest,
    TriggerEventResponse,
)
from autoflow.context import get_correlation_id
from autoflow.core.database import get_db


logger = logging.getLogger("autoflow.automations.api")

router = APIRouter(prefix="/api/automations", tags=["automations"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=payload.__dict__)


@router.post("/events", response_model=TriggerEventResponse)
def trigger_event(
    request: Request,
    dto: TriggerEventRequest,
    db: Session = Depends(get_db),
    engine: AutomationEngine = Depends(get_automation_engine),
) -> TriggerEventResponse | JSONResponse:
    try:
        return engine.triggers.trigger_event(db, dto.company_id, dto.entity, dto.column_id, dto.event_kind)
    except InvalidTriggerError as exc:
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="automation_trigger_invalid",
            message=str(exc),
            details={"entity_ref": str(dto.entity), "company_id": dto.company_id},
        )


@router.post("/entities/{kind}/{entity_id}/cancel", response_model=CancelResponse)
def cancel_for_entity(
    kind: EntityKind,
    entity_id: int,
    db: Session = Depends(get_db),
    engine: AutomationEngine = Depends(get_automation_engine),
) -> CancelResponse:
    cancelled = engine.triggers.cancel_all_for(db, EntityRef(kind=kind, id=entity_id))
    return CancelResponse(cancelled_count=cancelled)


@router.get("/executions", response_model=list[ExecutionRead])
def list_executions(
    entity_kind: EntityKind | None = Query(default=None),
    entity_id: int | None = Query(default=None),
    status_filter: ExecutionStatus | None = Query(default=None, alias="status"),
    company_id: int | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    engine: AutomationEngine = Depends(get_automation_engine),
) -> list[ExecutionRead]:
    entity = EntityRef(kind=entity_kind, id=entity_id) if entity_kind is not None and entity_id is not None else None
    records = engine.ledger.list_records(db, entity=entity, status=status_filter, company_id=company_id, limit=limit)
    return [ExecutionRead.model_validate(record) for record in records]


@router.get("/executions/{execution_id}", response_model=ExecutionRead)
def get_execution(
    request: Request,
    execution_id: int,
    db: Session = Depends(get_db),
    engine: AutomationEngine = Depends(get_automation_engine),
) -> ExecutionRead | JSONResponse:
    try:
        record = engine.ledger.get(db, execution_id)
        if record is None:
            raise LedgerRecordNotFoundError(execution_id)
        return ExecutionRead.model_validate(record)
    except LedgerRecordNotFoundError as exc:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="automation_execution_not_found",
            message=str(exc),
        )


@router.post("/rules/{domain}/changes", response_model=RuleChangeResponse)
def notify_rule_change(
    domain: RuleDomain,
    notice: RuleChangeNotice,
    db: Session = Depends(get_db),
    engine: AutomationEngine = Depends(get_automation_engine),
) -> RuleChangeResponse:
    return engine.triggers.on_rule_changed(db, domain, notice)


@router.post("/ledger/sweep", response_model=SweepResponse)
def sweep_ledger(
    dto: SweepRequest | None = None,
    db: Session = Depends(get_db),
    engine: AutomationEngine = Depends(get_automation_engine),
) -> SweepResponse:
    result = engine.sweeper.sweep(db, dto.older_than_days if dto is not None else None)
    logger.info("ledger.manual_sweep", extra={"deleted_count": result.deleted_count})
    return SweepResponse(deleted_count=result.deleted_count, cutoff=result.cutoff)
