from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.orm import Session

from autoflow.automations.enums import (
    DOCUMENT_TYPE_ESTIMATE,
    DOCUMENT_TYPE_INVOICE,
    TERMINAL_STATUSES,
    EntityKind,
    ExecutionStatus,
    RuleDomain,
)
from autoflow.automations.errors import EntityNotFoundError
from autoflow.automations.models import (
    RULE_MODELS,
    AutomationDocument,
    AutomationExecution,
    AutomationLead,
    CompanyCalendarSettings,
    as_utc,
    entity_column_name,
    rule_column_name,
)
from autoflow.automations.schemas import (
    AutomationRule,
    CalendarSettings,
    CommunicationRule,
    EntityRef,
    EntitySnapshot,
    InvoiceRule,
    PipelineRule,
    ServiceRule,
    TagRule,
)

RulePredicate = Callable[[AutomationRule], bool]

RULE_SCHEMAS: dict[RuleDomain, type[Any]] = {
    RuleDomain.PIPELINE: PipelineRule,
    RuleDomain.COMMUNICATION: CommunicationRule,
    RuleDomain.INVOICE: InvoiceRule,
    RuleDomain.SERVICE: ServiceRule,
    RuleDomain.TAG: TagRule,
}


class RuleStore(Protocol):
    def list_active_rules(
        self,
        session: Session,
        company_id: int,
        domain: RuleDomain,
        predicate: RulePredicate | None = None,
    ) -> list[AutomationRule]:
        ...

    def get_rule(self, session: Session, domain: RuleDomain, rule_id: int) -> AutomationRule | None:
        ...


class EntityStore(Protocol):
    def get_entity(self, session: Session, ref: EntityRef, company_id: int) -> EntitySnapshot | None:
        ...

    def set_column(
        self,
        session: Session,
        ref: EntityRef,
        company_id: int,
        column_id: int,
        changed_at: datetime,
    ) -> EntitySnapshot:
        ...

    def add_tags(self, session: Session, ref: EntityRef, company_id: int, tag_ids: Sequence[int]) -> list[int]:
        ...

    def mark_triggered(self, session: Session, ref: EntityRef, company_id: int) -> None:
        ...


class CalendarSettingsProvider(Protocol):
    def get_calendar_settings(self, session: Session, company_id: int) -> CalendarSettings | None:
        ...


def to_rule(domain: RuleDomain, row: Any) -> AutomationRule:
    return RULE_SCHEMAS[RuleDomain(domain)].model_validate(row)


class SqlAlchemyRuleStore:
    def list_active_rules(
        self,
        session: Session,
        company_id: int,
        domain: RuleDomain,
        predicate: RulePredicate | None = None,
    ) -> list[AutomationRule]:
        model = RULE_MODELS[RuleDomain(domain)]
        rows = session.scalars(
            select(model)
            .where(and_(model.company_id == company_id, model.is_paused.is_(False)))
            .order_by(model.id.asc())
        ).all()
        rules = [to_rule(domain, row) for row in rows]
        if predicate is None:
            return rules
        return [rule for rule in rules if predicate(rule)]

    def get_rule(self, session: Session, domain: RuleDomain, rule_id: int) -> AutomationRule | None:
        model = RULE_MODELS[RuleDomain(domain)]
        row = session.get(model, rule_id, populate_existing=True)
        if row is None:
            return None
        return to_rule(domain, row)


class SqlAlchemyEntityStore:
    def _load(self, session: Session, ref: EntityRef, company_id: int) -> AutomationLead | AutomationDocument | None:
        if ref.kind == EntityKind.LEAD:
            row: AutomationLead | AutomationDocument | None = session.get(AutomationLead, ref.id, populate_existing=True)
        else:
            row = session.get(AutomationDocument, ref.id, populate_existing=True)
            expected_type = DOCUMENT_TYPE_ESTIMATE if ref.kind == EntityKind.ESTIMATE else DOCUMENT_TYPE_INVOICE
            if row is not None and row.document_type != expected_type:
                return None
        if row is None or row.company_id != company_id:
            return None
        return row

    @staticmethod
    def _snapshot(ref: EntityRef, row: AutomationLead | AutomationDocument) -> EntitySnapshot:
        return EntitySnapshot(
            ref=ref,
            company_id=row.company_id,
            column_id=row.column_id,
            column_changed_at=as_utc(row.column_changed_at),
            document_type=getattr(row, "document_type", None),
            tag_ids=list(row.tag_ids or []),
            service_names=list(getattr(row, "service_names", None) or []),
            is_triggered=bool(row.is_triggered),
            client_name=row.client_name,
            client_email=row.client_email,
            client_mobile=row.client_mobile,
        )

    def get_entity(self, session: Session, ref: EntityRef, company_id: int) -> EntitySnapshot | None:
        row = self._load(session, ref, company_id)
        if row is None:
            return None
        return self._snapshot(ref, row)

    def set_column(
        self,
        session: Session,
        ref: EntityRef,
        company_id: int,
        column_id: int,
        changed_at: datetime,
    ) -> EntitySnapshot:
        row = self._load(session, ref, company_id)
        if row is None:
            raise EntityNotFoundError(str(ref))
        row.column_id = column_id
        row.column_changed_at = changed_at
        session.add(row)
        session.commit()
        return self._snapshot(ref, row)

    def add_tags(self, session: Session, ref: EntityRef, company_id: int, tag_ids: Sequence[int]) -> list[int]:
        row = self._load(session, ref, company_id)
        if row is None:
            raise EntityNotFoundError(str(ref))
        current = list(row.tag_ids or [])
        added = [tag_id for tag_id in tag_ids if tag_id not in current]
        if added:
            row.tag_ids = current + added
            session.add(row)
            session.commit()
        return added

    def mark_triggered(self, session: Session, ref: EntityRef, company_id: int) -> None:
        row = self._load(session, ref, company_id)
        if row is None:
            raise EntityNotFoundError(str(ref))
        row.is_triggered = True
        session.add(row)
        session.commit()


class SqlAlchemyCalendarSettingsProvider:
    def get_calendar_settings(self, session: Session, company_id: int) -> CalendarSettings | None:
        row = session.get(CompanyCalendarSettings, company_id)
        if row is None:
            return None
        return CalendarSettings.model_validate(row)


class ExecutionLedger:
    """Durable lifecycle records for scheduled automation firings.

    Every status change is a single conditional UPDATE guarded by
    `status = 'PENDING'`, so concurrent workers cannot both move a record
    out of PENDING.
    """

    def create_pending(
        self,
        session: Session,
        *,
        company_id: int,
        domain: RuleDomain,
        rule_id: int,
        entity: EntityRef,
        column_id: int | None,
        execute_at: datetime,
        cascade_depth: int,
        correlation_id: str | None,
        now: datetime,
    ) -> AutomationExecution:
        record = AutomationExecution(
            company_id=company_id,
            column_id=column_id,
            execute_at=execute_at,
            status=ExecutionStatus.PENDING.value,
            cascade_depth=cascade_depth,
            correlation_id=correlation_id,
            created_at=now,
            updated_at=now,
        )
        record.assign_rule(RuleDomain(domain), rule_id)
        record.assign_entity(EntityKind(entity.kind), entity.id)
        session.add(record)
        session.commit()
        session.refresh(record)
        return record

    def attach_job_id(self, session: Session, record_id: int, job_id: str) -> None:
        session.execute(
            update(AutomationExecution)
            .where(AutomationExecution.id == record_id)
            .values(job_id=job_id)
            .execution_options(synchronize_session=False)
        )
        session.commit()

    def get(self, session: Session, record_id: int) -> AutomationExecution | None:
        return session.get(AutomationExecution, record_id, populate_existing=True)

    def claim(self, session: Session, record_id: int, token: str, now: datetime, lease_seconds: int) -> bool:
        stale_before = now - timedelta(seconds=lease_seconds)
        result = session.execute(
            update(AutomationExecution)
            .where(
                AutomationExecution.id == record_id,
                AutomationExecution.status == ExecutionStatus.PENDING.value,
                or_(AutomationExecution.claim_token.is_(None), AutomationExecution.claimed_at < stale_before),
            )
            .values(claim_token=token, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return result.rowcount == 1

    def release(self, session: Session, record_id: int, token: str, now: datetime) -> bool:
        """Hand a claimed PENDING record back so the next delivery can claim it."""
        result = session.execute(
            update(AutomationExecution)
            .where(
                AutomationExecution.id == record_id,
                AutomationExecution.status == ExecutionStatus.PENDING.value,
                AutomationExecution.claim_token == token,
            )
            .values(claim_token=None, claimed_at=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return result.rowcount == 1

    def finish(
        self,
        session: Session,
        record_id: int,
        status: ExecutionStatus,
        now: datetime,
        *,
        claim_token: str | None = None,
        error: str | None = None,
    ) -> bool:
        conditions = [
            AutomationExecution.id == record_id,
            AutomationExecution.status == ExecutionStatus.PENDING.value,
        ]
        if claim_token is not None:
            conditions.append(AutomationExecution.claim_token == claim_token)
        result = session.execute(
            update(AutomationExecution)
            .where(*conditions)
            .values(
                status=ExecutionStatus(status).value,
                updated_at=now,
                claim_token=None,
                claimed_at=None,
                last_error=error[:2000] if error else None,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return result.rowcount == 1

    def reschedule(
        self,
        session: Session,
        record_id: int,
        claim_token: str,
        execute_at: datetime,
        reschedule_count: int,
        job_id: str,
        now: datetime,
    ) -> bool:
        result = session.execute(
            update(AutomationExecution)
            .where(
                AutomationExecution.id == record_id,
                AutomationExecution.status == ExecutionStatus.PENDING.value,
                AutomationExecution.claim_token == claim_token,
            )
            .values(
                execute_at=execute_at,
                reschedule_count=reschedule_count,
                job_id=job_id,
                claim_token=None,
                claimed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return result.rowcount == 1

    def list_pending_for_entity(self, session: Session, entity: EntityRef) -> list[AutomationExecution]:
        column = getattr(AutomationExecution, entity_column_name(EntityKind(entity.kind)))
        return list(
            session.scalars(
                select(AutomationExecution)
                .where(column == entity.id, AutomationExecution.status == ExecutionStatus.PENDING.value)
                .order_by(AutomationExecution.id.asc())
            ).all()
        )

    def list_pending_for_rule(self, session: Session, domain: RuleDomain, rule_id: int) -> list[AutomationExecution]:
        column = getattr(AutomationExecution, rule_column_name(RuleDomain(domain)))
        return list(
            session.scalars(
                select(AutomationExecution)
                .where(column == rule_id, AutomationExecution.status == ExecutionStatus.PENDING.value)
                .order_by(AutomationExecution.id.asc())
            ).all()
        )

    def cancel_many(self, session: Session, record_ids: Sequence[int], now: datetime, reason: str) -> int:
        if not record_ids:
            return 0
        result = session.execute(
            update(AutomationExecution)
            .where(
                AutomationExecution.id.in_(list(record_ids)),
                AutomationExecution.status == ExecutionStatus.PENDING.value,
            )
            .values(
                status=ExecutionStatus.CANCELLED.value,
                updated_at=now,
                claim_token=None,
                claimed_at=None,
                last_error=reason,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return int(result.rowcount or 0)

    def list_overdue(self, session: Session, due_before: datetime, stale_claim_before: datetime, limit: int = 500) -> list[AutomationExecution]:
        return list(
            session.scalars(
                select(AutomationExecution)
                .where(
                    AutomationExecution.status == ExecutionStatus.PENDING.value,
                    AutomationExecution.execute_at < due_before,
                    or_(
                        AutomationExecution.claim_token.is_(None),
                        AutomationExecution.claimed_at < stale_claim_before,
                    ),
                )
                .order_by(AutomationExecution.execute_at.asc())
                .limit(limit)
            ).all()
        )

    def list_records(
        self,
        session: Session,
        *,
        entity: EntityRef | None = None,
        status: ExecutionStatus | None = None,
        company_id: int | None = None,
        limit: int = 100,
    ) -> list[AutomationExecution]:
        query = select(AutomationExecution)
        if entity is not None:
            column = getattr(AutomationExecution, entity_column_name(EntityKind(entity.kind)))
            query = query.where(column == entity.id)
        if status is not None:
            query = query.where(AutomationExecution.status == ExecutionStatus(status).value)
        if company_id is not None:
            query = query.where(AutomationExecution.company_id == company_id)
        return list(session.scalars(query.order_by(AutomationExecution.id.asc()).limit(limit)).all())

    def delete_terminal_before(self, session: Session, cutoff: datetime) -> int:
        result = session.execute(
            delete(AutomationExecution)
            .where(
                AutomationExecution.status.in_([status.value for status in TERMINAL_STATUSES]),
                AutomationExecution.updated_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return int(result.rowcount or 0)
