from __future__ import annotations

from enum import StrEnum


class RuleDomain(StrEnum):
    PIPELINE = "pipeline"
    COMMUNICATION = "communication"
    INVOICE = "invoice"
    SERVICE = "service"
    TAG = "tag"


class ExecutionStatus(StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED})


class EntityKind(StrEnum):
    LEAD = "lead"
    INVOICE = "invoice"
    ESTIMATE = "estimate"


class EventKind(StrEnum):
    COLUMN_CHANGED = "COLUMN_CHANGED"
    TAG_ADDED = "TAG_ADDED"
    DOCUMENT_STATUS_CHANGED = "DOCUMENT_STATUS_CHANGED"
    APPOINTMENT_SCHEDULED = "APPOINTMENT_SCHEDULED"
    ESTIMATE_CREATED = "ESTIMATE_CREATED"
    MESSAGE_RECEIVED_CLIENT = "MESSAGE_RECEIVED_CLIENT"
    MESSAGE_SENT_CLIENT = "MESSAGE_SENT_CLIENT"
    TASK_CREATED = "TASK_CREATED"


class PipelineCondition(StrEnum):
    TIME_DELAY = "TIME_DELAY"
    APPOINTMENT_SCHEDULED = "APPOINTMENT_SCHEDULED"
    ESTIMATE_CREATED = "ESTIMATE_CREATED"
    MESSAGE_RECEIVED_CLIENT = "MESSAGE_RECEIVED_CLIENT"
    MESSAGE_SENT_CLIENT = "MESSAGE_SENT_CLIENT"
    TASK_CREATED = "TASK_CREATED"


class TagCondition(StrEnum):
    PIPELINE = "pipeline"
    COMMUNICATION = "communication"
    POST_TAG = "post_tag"


class Channel(StrEnum):
    EMAIL = "EMAIL"
    SMS = "SMS"
    BOTH = "BOTH"


DOCUMENT_TYPE_INVOICE = "Invoice"
DOCUMENT_TYPE_ESTIMATE = "Estimate"

# Stored in place of a delay for rules that fire as soon as they match.
INSTANT_DELAY = "instant"
