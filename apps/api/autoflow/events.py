from __future__ import annotations

from typing import Any

from autoflow.context import get_cascade_depth, get_correlation_id
from autoflow.core.events import event_bus

ENTITY_CHANGED_EVENT = "automation.entity.changed"
RULE_CHANGED_EVENT = "automation.rule.changed"
EXECUTION_FINISHED_EVENT = "automation.execution.finished"

published_events: list[dict[str, Any]] = []


def publish(envelope: dict[str, Any]) -> None:
    """Dispatch an envelope on its ``event_type``, filling correlation id and cascade depth from context."""
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()
    if envelope.get("cascade_depth") is None:
        envelope["cascade_depth"] = get_cascade_depth()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)


def publish_execution_finished(
    *,
    ledger_record_id: int,
    company_id: int,
    rule_id: int,
    rule_domain: str,
    entity_ref: str,
    status: str,
    reason: str | None,
    correlation_id: str | None,
    cascade_depth: int,
) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "event_type": EXECUTION_FINISHED_EVENT,
        "ledger_record_id": ledger_record_id,
        "company_id": company_id,
        "rule_id": rule_id,
        "rule_domain": rule_domain,
        "entity_ref": entity_ref,
        "status": status,
        "reason": reason,
        "correlation_id": correlation_id,
        "cascade_depth": cascade_depth,
    }
    publish(envelope)
    return envelope
