from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Protocol

import redis
from sqlalchemy.orm import Session

from autoflow.automations.enums import (
    DOCUMENT_TYPE_INVOICE,
    EntityKind,
    EventKind,
    PipelineCondition,
    RuleDomain,
    TagCondition,
)
from autoflow.automations.errors import RuleNotFoundError
from autoflow.automations.repositories import RuleStore
from autoflow.automations.schemas import (
    AutomationRule,
    CommunicationRule,
    InvoiceRule,
    PipelineRule,
    ServiceRule,
    TagRule,
    TriggerContext,
    rule_list_adapter,
)
from autoflow.metrics import observe_rule_cache_hit, observe_rule_cache_miss


logger = logging.getLogger("autoflow.automations.catalog")

_COLUMN_EVENTS = {EventKind.COLUMN_CHANGED, EventKind.DOCUMENT_STATUS_CHANGED}

DOMAINS_BY_EVENT: dict[EventKind, tuple[RuleDomain, ...]] = {
    EventKind.COLUMN_CHANGED: (RuleDomain.PIPELINE, RuleDomain.COMMUNICATION, RuleDomain.TAG),
    EventKind.TAG_ADDED: (RuleDomain.TAG,),
    EventKind.DOCUMENT_STATUS_CHANGED: (RuleDomain.INVOICE, RuleDomain.SERVICE, RuleDomain.TAG),
    EventKind.APPOINTMENT_SCHEDULED: (RuleDomain.PIPELINE,),
    EventKind.ESTIMATE_CREATED: (RuleDomain.PIPELINE,),
    EventKind.MESSAGE_RECEIVED_CLIENT: (RuleDomain.PIPELINE,),
    EventKind.MESSAGE_SENT_CLIENT: (RuleDomain.PIPELINE,),
    EventKind.TASK_CREATED: (RuleDomain.PIPELINE,),
}


def normalize_service_name(value: str) -> str:
    return value.strip().lower()


def _pipeline_matches(rule: PipelineRule, ctx: TriggerContext) -> bool:
    if ctx.entity_kind != EntityKind.LEAD or ctx.column_id not in rule.trigger_column_ids:
        return False
    if rule.condition_type == PipelineCondition.TIME_DELAY:
        return ctx.event_kind == EventKind.COLUMN_CHANGED
    return ctx.event_kind == rule.condition_type


def _communication_matches(rule: CommunicationRule, ctx: TriggerContext) -> bool:
    return (
        ctx.entity_kind == EntityKind.LEAD
        and ctx.event_kind == EventKind.COLUMN_CHANGED
        and ctx.column_id in rule.trigger_column_ids
    )


def _invoice_matches(rule: InvoiceRule, ctx: TriggerContext) -> bool:
    return (
        ctx.entity_kind in {EntityKind.INVOICE, EntityKind.ESTIMATE}
        and ctx.event_kind == EventKind.DOCUMENT_STATUS_CHANGED
        and ctx.column_id == rule.status_id
        and ctx.document_type == rule.document_type
    )


def _service_matches(rule: ServiceRule, ctx: TriggerContext) -> bool:
    # Estimates never carry billable service lines.
    if ctx.entity_kind != EntityKind.INVOICE or ctx.document_type != DOCUMENT_TYPE_INVOICE:
        return False
    if ctx.event_kind != EventKind.DOCUMENT_STATUS_CHANGED or ctx.column_id != rule.condition_column_id:
        return False
    wanted = {normalize_service_name(name) for name in rule.service_names}
    present = {normalize_service_name(name) for name in ctx.service_names}
    return bool(wanted & present)


def _tag_matches(rule: TagRule, ctx: TriggerContext) -> bool:
    expected_pipeline = "SALES" if ctx.entity_kind == EntityKind.LEAD else "SHOP"
    if rule.pipeline_type != expected_pipeline:
        return False

    in_trigger_column = ctx.column_id in rule.trigger_column_ids
    if rule.condition_type == TagCondition.POST_TAG:
        return ctx.event_kind in _COLUMN_EVENTS and in_trigger_column

    if ctx.event_kind not in _COLUMN_EVENTS and ctx.event_kind != EventKind.TAG_ADDED:
        return False
    if not set(rule.tag_ids) & set(ctx.tag_ids):
        return False
    return not rule.trigger_column_ids or in_trigger_column


def rule_matches(rule: AutomationRule, ctx: TriggerContext) -> bool:
    if rule.is_paused:
        return False
    if isinstance(rule, PipelineRule):
        return _pipeline_matches(rule, ctx)
    if isinstance(rule, CommunicationRule):
        return _communication_matches(rule, ctx)
    if isinstance(rule, InvoiceRule):
        return _invoice_matches(rule, ctx)
    if isinstance(rule, ServiceRule):
        return _service_matches(rule, ctx)
    if isinstance(rule, TagRule):
        return _tag_matches(rule, ctx)
    raise TypeError(f"unsupported rule type {type(rule).__name__}")


class RuleCacheBackend(Protocol):
    def get(self, key: str) -> str | None:
        ...

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    def incr(self, key: str) -> int:
        ...


@dataclass
class _Entry:
    value: str
    expires_at: float | None


class InMemoryRuleCacheBackend:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl_seconds)

    def incr(self, key: str) -> int:
        with self._lock:
            entry = self._entries.get(key)
            current = int(entry.value) if entry is not None else 0
            self._entries[key] = _Entry(value=str(current + 1), expires_at=None)
            return current + 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisRuleCacheBackend:
    def __init__(self, url: str, client: redis.Redis | None = None) -> None:
        self._client = client if client is not None else redis.Redis.from_url(url, decode_responses=True)

    def get(self, key: str) -> str | None:
        try:
            value = self._client.get(key)
        except redis.RedisError as exc:
            logger.warning("rule_cache.unavailable", extra={"error": str(exc)})
            return None
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        try:
            self._client.setex(key, ttl_seconds, value)
        except redis.RedisError as exc:
            logger.warning("rule_cache.unavailable", extra={"error": str(exc)})

    def incr(self, key: str) -> int:
        return int(self._client.incr(key))


class RuleCatalog:
    """Read-through cache of each company's active rules, one namespace per domain.

    Keys look like ``automation_rules:{domain}:{company_id}:v{version}``; bumping
    the namespace version is the only invalidation, so a rule that moved
    between companies never leaves an orphaned key behind.
    """

    def __init__(self, store: RuleStore, cache: RuleCacheBackend, ttl_seconds: int) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def namespace(domain: RuleDomain, company_id: int) -> str:
        return f"automation_rules:{RuleDomain(domain).value}:{company_id}"

    def _version(self, domain: RuleDomain, company_id: int) -> int:
        raw = self.cache.get(f"{self.namespace(domain, company_id)}:version")
        return int(raw) if raw else 0

    def list_company_rules(self, session: Session, company_id: int, domain: RuleDomain) -> list[AutomationRule]:
        domain = RuleDomain(domain)
        key = f"{self.namespace(domain, company_id)}:v{self._version(domain, company_id)}"
        cached = self.cache.get(key)
        if cached is not None:
            observe_rule_cache_hit(domain.value)
            return list(rule_list_adapter.validate_json(cached))

        observe_rule_cache_miss(domain.value)
        rules = self.store.list_active_rules(session, company_id, domain)
        self.cache.set(key, rule_list_adapter.dump_json(rules).decode("utf-8"), self.ttl_seconds)
        return rules

    def find_applicable_in(
        self,
        session: Session,
        company_id: int,
        domain: RuleDomain,
        ctx: TriggerContext,
    ) -> list[AutomationRule]:
        return [rule for rule in self.list_company_rules(session, company_id, domain) if rule_matches(rule, ctx)]

    def find_applicable(
        self,
        session: Session,
        company_id: int,
        ctx: TriggerContext,
        domains: Iterable[RuleDomain] | None = None,
    ) -> list[AutomationRule]:
        selected = tuple(domains) if domains is not None else DOMAINS_BY_EVENT.get(EventKind(ctx.event_kind), ())
        matches: list[AutomationRule] = []
        for domain in selected:
            matches.extend(self.find_applicable_in(session, company_id, domain, ctx))
        return matches

    def get_rule(self, session: Session, domain: RuleDomain, rule_id: int) -> AutomationRule | None:
        # Fire-time checks always see authoritative storage.
        return self.store.get_rule(session, RuleDomain(domain), rule_id)

    def require_rule(self, session: Session, domain: RuleDomain, rule_id: int) -> AutomationRule:
        rule = self.get_rule(session, domain, rule_id)
        if rule is None:
            raise RuleNotFoundError(RuleDomain(domain).value, rule_id)
        return rule

    def invalidate(self, domain: RuleDomain, company_id: int, previous_company_id: int | None = None) -> list[int]:
        company_ids = [company_id]
        if previous_company_id is not None and previous_company_id != company_id:
            company_ids.append(previous_company_id)
        for affected in company_ids:
            version = self.cache.incr(f"{self.namespace(domain, affected)}:version")
            logger.info(
                "rule_cache.invalidated",
                extra={"rule_domain": RuleDomain(domain).value, "company_id": affected, "status": f"v{version}"},
            )
        return company_ids
