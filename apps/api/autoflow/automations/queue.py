from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from celery import Celery

from autoflow.core.celery_app import celery_app


logger = logging.getLogger("autoflow.automations.queue")

PROCESS_EXECUTION_TASK = "autoflow.automations.process_execution"


@dataclass(frozen=True)
class JobHandle:
    job_id: str
    delay_ms: int


@dataclass
class DeferredJob:
    job_id: str
    payload: dict[str, Any]
    due_at: datetime
    attempts: int = 0


class DeferredJobQueue(Protocol):
    def enqueue(self, job_id: str, payload: dict[str, Any], delay_ms: int) -> JobHandle:
        ...

    def remove(self, job_id: str) -> bool:
        ...


def ledger_job_id(ledger_record_id: int, reschedule_count: int = 0) -> str:
    if reschedule_count <= 0:
        return str(ledger_record_id)
    return f"{ledger_record_id}-rescheduled-{reschedule_count}"


class CeleryDeferredJobQueue:
    """Countdown tasks on the Celery broker; the task id doubles as the job id."""

    def __init__(self, app: Celery = celery_app, task_name: str = PROCESS_EXECUTION_TASK) -> None:
        self.celery_app = app
        self.task_name = task_name

    def enqueue(self, job_id: str, payload: dict[str, Any], delay_ms: int) -> JobHandle:
        delay_ms = max(0, int(delay_ms))
        self.celery_app.send_task(
            self.task_name,
            kwargs=payload,
            task_id=job_id,
            countdown=delay_ms / 1000,
        )
        return JobHandle(job_id=job_id, delay_ms=delay_ms)

    def remove(self, job_id: str) -> bool:
        self.celery_app.control.revoke(job_id)
        return True


@dataclass
class InMemoryDeferredJobQueue:
    """Single-process queue keeping at most one live job per job id."""

    clock: Any = None
    jobs: dict[str, DeferredJob] = field(default_factory=dict)
    history: list[JobHandle] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()
        if self.clock is None:
            self.clock = lambda: datetime.now(timezone.utc)

    def enqueue(self, job_id: str, payload: dict[str, Any], delay_ms: int) -> JobHandle:
        delay_ms = max(0, int(delay_ms))
        handle = JobHandle(job_id=job_id, delay_ms=delay_ms)
        with self._lock:
            if job_id in self.jobs:
                logger.info("queue.duplicate_job_ignored", extra={"job_id": job_id})
                return handle
            self.jobs[job_id] = DeferredJob(
                job_id=job_id,
                payload=dict(payload),
                due_at=self.clock() + timedelta(milliseconds=delay_ms),
            )
            self.history.append(handle)
        return handle

    def remove(self, job_id: str) -> bool:
        with self._lock:
            return self.jobs.pop(job_id, None) is not None

    def due(self, now: datetime | None = None) -> list[DeferredJob]:
        current = now or self.clock()
        with self._lock:
            ready = [job for job in self.jobs.values() if job.due_at <= current]
        return sorted(ready, key=lambda job: (job.due_at, job.job_id))

    def pop(self, job_id: str) -> DeferredJob | None:
        with self._lock:
            return self.jobs.pop(job_id, None)

    def clear(self) -> None:
        with self._lock:
            self.jobs.clear()
            self.history.clear()
