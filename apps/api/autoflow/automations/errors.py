from __future__ import annotations


class AutomationError(Exception):
    """Base class for errors raised inside the automation engine."""


class RuleNotFoundError(AutomationError):
    def __init__(self, domain: str, rule_id: int) -> None:
        super().__init__(f"{domain} rule {rule_id} not found")
        self.domain = domain
        self.rule_id = rule_id


class EntityNotFoundError(AutomationError):
    def __init__(self, entity_ref: str) -> None:
        super().__init__(f"entity {entity_ref} not found")
        self.entity_ref = entity_ref


class LedgerRecordNotFoundError(AutomationError):
    def __init__(self, ledger_record_id: int) -> None:
        super().__init__(f"ledger record {ledger_record_id} not found")
        self.ledger_record_id = ledger_record_id


class CalendarSettingsMissingError(AutomationError):
    def __init__(self, company_id: int | None = None) -> None:
        super().__init__("calendar settings are required when a restriction flag is set")
        self.company_id = company_id


class InvalidTriggerError(AutomationError):
    pass


class EffectFailure(AutomationError):
    """Raised by effect collaborators; always ends the execution as FAILED."""
